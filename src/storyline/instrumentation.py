"""OpenTelemetry spans for orchestrated turns.

Tracing is off until :func:`instrument` is called.  Every helper here
degrades to a no-op while it is off, so ``opentelemetry-api`` is only
needed when tracing is wanted (``pip install storyline[otel]``).
"""

import importlib.util
import logging
from contextlib import asynccontextmanager

logger = logging.getLogger(__name__)

_tracer = None


def instrument(*, tracer_name: str = "storyline") -> None:
    """Start emitting spans through the global TracerProvider.

    Configure the provider (or run under ``opentelemetry-instrument``)
    before calling this.

    Args:
        tracer_name: Instrumentation scope name for the tracer.

    Raises:
        ImportError: If ``opentelemetry-api`` is missing.
    """
    global _tracer
    if importlib.util.find_spec("opentelemetry.trace") is None:
        raise ImportError(
            "tracing needs opentelemetry-api; "
            "pip install storyline[otel]"
        )
    from opentelemetry import trace

    tracer = trace.get_tracer(tracer_name)
    if isinstance(tracer, trace.NoOpTracer):
        logger.info("No TracerProvider configured, turn spans go nowhere")
    else:
        logger.info(f"Tracing turns with {tracer_name!r}")
    _tracer = tracer


def uninstrument() -> None:
    global _tracer
    _tracer = None


def enabled() -> bool:
    return _tracer is not None


@asynccontextmanager
async def _span(name: str, attributes: dict, **kwargs):
    if _tracer is None:
        yield None
        return
    with _tracer.start_as_current_span(name, attributes=attributes, **kwargs) as span:
        yield span


def turn_span(request_id: str, model: str, session: str):
    """Span around one triggering request, named ``chat <model>``."""
    span_kwargs = {}
    if _tracer is not None:
        from opentelemetry.trace import SpanKind
        span_kwargs["kind"] = SpanKind.CLIENT
    return _span(
        f"chat {model}",
        {
            "gen_ai.operation.name": "chat",
            "gen_ai.request.model": model,
            "storyline.request.id": request_id,
            "storyline.session": session,
        },
        **span_kwargs,
    )


def tool_span(tool_name: str, call_id: str):
    return _span(
        f"execute_tool {tool_name}",
        {
            "gen_ai.operation.name": "execute_tool",
            "gen_ai.tool.name": tool_name,
            "gen_ai.tool.call.id": call_id,
        },
    )


def record_result(span, state: str, frames: int) -> None:
    if span is None:
        return
    span.set_attribute("storyline.turn.state", state)
    span.set_attribute("storyline.turn.frames", frames)


def record_error(span, exception: BaseException) -> None:
    """Mark ``span`` as failed with ``exception``; no-op without a span."""
    if span is None:
        return
    from opentelemetry.trace import StatusCode

    span.set_status(StatusCode.ERROR, str(exception))
    span.record_exception(exception)
    span.set_attribute("error.type", type(exception).__qualname__)
