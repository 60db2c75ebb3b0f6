from storyline.broadcast import Broadcaster, RegistryDirectory, SessionBroadcaster, Subscriber, SubscriberRegistry
from storyline.instrumentation import instrument, uninstrument
from storyline.orchestrator import OrchestrationResult, StreamOrchestrator, TurnState
from storyline.policy import MultiCall, SingleCallPerTurn, ToolCallPolicy
from storyline.provider import ModelProvider, OpenAIProvider, UpstreamStreamError
from storyline.streaming import ToolCallAccumulator, ToolCallParseError
from storyline.tools import (
    LLMRecoverableError,
    Tool,
    ToolDispatcher,
    ToolExecutionError,
    UnknownToolError,
    tool,
)

__all__ = [
    "Broadcaster",
    "LLMRecoverableError",
    "ModelProvider",
    "MultiCall",
    "OpenAIProvider",
    "OrchestrationResult",
    "RegistryDirectory",
    "SessionBroadcaster",
    "SingleCallPerTurn",
    "StreamOrchestrator",
    "Subscriber",
    "SubscriberRegistry",
    "Tool",
    "ToolCallAccumulator",
    "ToolCallParseError",
    "ToolCallPolicy",
    "ToolDispatcher",
    "ToolExecutionError",
    "TurnState",
    "UnknownToolError",
    "UpstreamStreamError",
    "instrument",
    "tool",
    "uninstrument",
]
