import asyncio
import inspect
import json
import logging
import re
from types import UnionType
from typing import Any, Callable, Union, get_args, get_origin, get_type_hints

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class UnknownToolError(Exception):
    """The model asked for a tool that is not registered."""

    def __init__(self, name: str):
        super().__init__(f"tool '{name}' not found")
        self.name = name


class ToolExecutionError(Exception):
    """A tool handler raised or exceeded its deadline."""

    def __init__(self, name: str, cause: BaseException):
        super().__init__(f"tool '{name}' failed: {cause}")
        self.name = name
        self.cause = cause


class LLMRecoverableError(Exception):
    """Raised by a tool to report a problem the user can act on.

    The message is shown as the tool result instead of an apology.
    """


class ToolCallResult(BaseModel):
    tool_name: str
    output: Any


_JSON_TYPES = {
    str: "string",
    int: "integer",
    float: "number",
    bool: "boolean",
    list: "array",
    dict: "object",
}


def _json_schema_for(annotation: Any) -> dict:
    if get_origin(annotation) in (Union, UnionType):
        # Optional[X] and X | None describe X
        args = [a for a in get_args(annotation) if a is not type(None)]
        annotation = args[0] if args else Any
    origin = get_origin(annotation) or annotation
    prop = {"type": _JSON_TYPES.get(origin, "string")}
    if prop["type"] == "array":
        args = get_args(annotation)
        prop["items"] = {"type": _JSON_TYPES.get(args[0], "string")} if args else {}
    return prop


def _parse_param_descriptions(func: Callable) -> dict[str, str]:
    """Read parameter descriptions from a Google-style ``Args:`` block."""
    doc = inspect.getdoc(func) or ""
    descriptions: dict[str, str] = {}
    in_args = False
    current = None
    for line in doc.splitlines():
        stripped = line.strip()
        if stripped in ("Args:", "Arguments:", "Parameters:"):
            in_args = True
            continue
        if not in_args:
            continue
        if not stripped:
            current = None
            continue
        if not line.startswith((" ", "\t")):
            # dedented line ends the section
            break
        match = re.match(r"^(\w+)\s*(?:\([^)]*\))?\s*:\s*(.*)$", stripped)
        if match:
            current = match.group(1)
            descriptions[current] = match.group(2)
        elif current:
            descriptions[current] = f"{descriptions[current]} {stripped}".strip()
    return descriptions


def _summary(func: Callable) -> str:
    doc = inspect.getdoc(func) or ""
    return doc.split("\n\n", 1)[0].strip()


def _build_parameters_schema(func: Callable) -> tuple[dict, list[str]]:
    """Build a JSON-schema ``parameters`` object from a signature."""
    descriptions = _parse_param_descriptions(func)
    try:
        hints = get_type_hints(func)
    except (NameError, TypeError):
        hints = {}
    properties: dict[str, dict] = {}
    required: list[str] = []
    for name, param in inspect.signature(func).parameters.items():
        prop = _json_schema_for(hints.get(name, param.annotation))
        if name in descriptions:
            prop["description"] = descriptions[name]
        properties[name] = prop
        if param.default is inspect.Parameter.empty:
            required.append(name)
    schema = {"type": "object", "properties": properties}
    if required:
        schema["required"] = required
    return schema, required


def render_default(result: Any) -> str:
    if isinstance(result, str):
        return result
    return json.dumps(result, indent=2, ensure_ascii=False, default=str)


class Tool(BaseModel):
    func: Callable = Field(exclude=True)
    name: str
    description: str = ""
    parameters: dict = Field(default_factory=dict)
    render: Callable[[Any], str] = Field(default=render_default, exclude=True)
    model_config = {"arbitrary_types_allowed": True}

    def model_dump(self, **kwargs):
        """Return the function descriptor sent to the model."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }

    def model_dump_json(self, **kwargs):
        return json.dumps(self.model_dump())

    async def __call__(self, **kwargs) -> ToolCallResult:
        if inspect.iscoroutinefunction(self.func):
            output = await self.func(**kwargs)
        else:
            # datastore handlers block; keep them off the event loop
            output = await asyncio.to_thread(self.func, **kwargs)
        return ToolCallResult(tool_name=self.name, output=output)


def tool(func: Callable | None = None, *, name: str | None = None,
         render: Callable[[Any], str] | None = None):
    """Turn a function into a :class:`Tool`.

    Usable bare (``@tool``) or with options (``@tool(render=...)``).
    The description is the docstring summary and the parameter schema
    comes from the signature plus the ``Args:`` section.

    Args:
        func: The handler, sync or async.
        name: Tool name; defaults to the function name.
        render: Turns the handler's result into display text.
    """
    def wrap(f: Callable) -> Tool:
        parameters, _ = _build_parameters_schema(f)
        return Tool(
            func=f,
            name=name or f.__name__,
            description=_summary(f),
            parameters=parameters,
            render=render or render_default,
        )

    if func is not None:
        return wrap(func)
    return wrap


class ToolDispatcher:
    """Maps tool names to handlers and runs at most one handler per call.

    Args:
        tools: Tools to register.
        timeout: Seconds a handler may run before it is treated as
            failed. ``None`` waits indefinitely.
    """

    def __init__(self, tools: list[Tool] | None = None, timeout: float | None = None):
        self.timeout = timeout
        self._tools: dict[str, Tool] = {}
        for t in tools or []:
            self.register(t)

    def register(self, t: Tool) -> None:
        if t.name in self._tools:
            raise ValueError(f"tool '{t.name}' already registered")
        self._tools[t.name] = t

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    @property
    def names(self) -> list[str]:
        return list(self._tools)

    def descriptors(self) -> list[dict]:
        """Tool descriptors for the upstream request, in registration order."""
        return [t.model_dump() for t in self._tools.values()]

    async def execute(self, name: str, arguments: Any) -> Any:
        """Run a handler and return its raw result.

        Raises:
            UnknownToolError: If no handler is registered under ``name``.
            ToolExecutionError: If the handler raises or times out.
            LLMRecoverableError: Passed through from the handler.
        """
        t = self._tools.get(name)
        if t is None:
            raise UnknownToolError(name)
        if arguments is None:
            arguments = {}
        if not isinstance(arguments, dict):
            raise ToolExecutionError(
                name, TypeError(f"expected an object of arguments, got {type(arguments).__name__}"),
            )

        logger.info(f"Calling {name} with {arguments}")
        try:
            result = await asyncio.wait_for(t(**arguments), timeout=self.timeout)
        except LLMRecoverableError:
            raise
        except asyncio.TimeoutError as e:
            logger.error(f"Tool {name} timed out after {self.timeout}s")
            raise ToolExecutionError(name, e) from e
        except Exception as e:
            logger.error(f"Tool {name} raised: {e}")
            raise ToolExecutionError(name, e) from e
        return result.output

    async def dispatch(self, name: str, arguments: Any) -> str:
        """Run a handler and render its result as display text."""
        try:
            output = await self.execute(name, arguments)
        except LLMRecoverableError as e:
            logger.info(f"Tool {name} reported: {e}")
            return str(e)
        try:
            return self._tools[name].render(output)
        except Exception as e:
            logger.error(f"Rendering result of {name} failed: {e}")
            raise ToolExecutionError(name, e) from e
