"""HTTP surface: trigger a turn, subscribe to its broadcast.

Architecture:
    POST /ai-chat          -->  StreamOrchestrator.run() as a task
                           -->  Broadcaster for the request's session
    GET  /ai-chat/stream   -->  Subscriber registered on that session
                           -->  SSE frames until the client disconnects

The trigger returns ``202`` immediately; the turn keeps running after
every subscriber has gone.
"""

import asyncio
import logging
import uuid
from collections.abc import Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from openai import OpenAIError

from storyline.broadcast import RegistryDirectory, Subscriber
from storyline.config import Settings, configure_logging
from storyline.message import TurnRequest
from storyline.orchestrator import StreamOrchestrator
from storyline.policy import get_policy
from storyline.project_tools import ProjectTracking
from storyline.provider import ModelProvider, OpenAICompatibleProvider, OpenAIProvider
from storyline.sse import SSE_HEADERS, subscription
from storyline.store import StoryStore
from storyline.tools import ToolDispatcher

logger = logging.getLogger(__name__)

ProviderFactory = Callable[[str | None], ModelProvider]


def default_provider_factory(settings: Settings) -> ProviderFactory:
    def make(api_key: str | None) -> ModelProvider:
        key = api_key or settings.openai_api_key
        if settings.openai_base_url:
            return OpenAICompatibleProvider(settings.openai_base_url, api_key=key)
        return OpenAIProvider(api_key=key)
    return make


def create_app(
    settings: Settings | None = None,
    provider_factory: ProviderFactory | None = None,
    store: StoryStore | None = None,
) -> FastAPI:
    """Build the application.

    Args:
        settings: Configuration; read from the environment when omitted.
        provider_factory: Builds the upstream provider for a request,
            given the request's API key (or ``None``).
        store: Datastore behind the tools.
    """
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)
    store = store or StoryStore(settings.database_url)

    dispatcher = ToolDispatcher(timeout=settings.tool_timeout)
    ProjectTracking(store).attach(dispatcher)
    directory = RegistryDirectory(eviction_threshold=settings.eviction_threshold)
    tasks: set[asyncio.Task] = set()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Storyline ready with tools: {', '.join(dispatcher.names)}")
        yield
        directory.close_all()
        for task in list(tasks):
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    app = FastAPI(title="storyline", lifespan=lifespan)
    app.state.settings = settings
    app.state.store = store
    app.state.dispatcher = dispatcher
    app.state.directory = directory
    app.state.tasks = tasks
    app.state.provider_factory = provider_factory or default_provider_factory(settings)

    @app.exception_handler(RequestValidationError)
    async def invalid_body(request: Request, exc: RequestValidationError) -> JSONResponse:
        messages = "; ".join(str(e.get("msg")) for e in exc.errors())
        return JSONResponse(status_code=400, content={"error": messages})

    def _finished(task: asyncio.Task) -> None:
        tasks.discard(task)
        if task.cancelled():
            return
        if task.exception() is not None:
            logger.error(f"Turn task crashed: {task.exception()!r}")

    @app.post("/ai-chat", status_code=202)
    async def trigger(body: TurnRequest) -> JSONResponse:
        try:
            provider = app.state.provider_factory(body.api_key)
        except OpenAIError as e:
            return JSONResponse(status_code=400, content={"error": str(e)})

        request_id = uuid.uuid4().hex
        orchestrator = StreamOrchestrator(
            provider=provider,
            dispatcher=dispatcher,
            broadcaster=directory.broadcaster(body.session),
            policy=get_policy(settings.tool_policy),
            upstream_idle_timeout=settings.upstream_idle_timeout,
            system_prompt=settings.system_prompt,
            default_model=settings.model,
        )
        task = asyncio.create_task(orchestrator.run(body, request_id=request_id))
        tasks.add(task)
        task.add_done_callback(_finished)
        logger.info(f"Request {request_id} accepted for session {body.session}")
        return JSONResponse(
            status_code=202,
            content={"status": "accepted", "requestId": request_id, "session": body.session},
        )

    @app.get("/ai-chat/stream")
    async def stream(session: str = Query(default="default")) -> StreamingResponse:
        registry = directory.registry(session)
        subscriber = Subscriber(maxsize=settings.subscriber_queue_size, session=session)
        registry.register(subscriber)
        return StreamingResponse(
            subscription(subscriber, registry),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )

    @app.get("/health")
    async def health() -> dict:
        return {
            "status": "ok",
            "subscribers": directory.counts(),
            "inFlight": len(tasks),
        }

    return app
