from enum import Enum
from pydantic import BaseModel, Field, field_serializer, model_validator


class MessageRole(Enum):
    SYSTEM = "system"
    ASSISTANT = "assistant"
    USER = "user"
    TOOL = "tool"


class Message(BaseModel):
    role: MessageRole
    content: str

    @field_serializer('role')
    def serialize_role(self, role: MessageRole, _info) -> str:
        return role.value


class TurnRequest(BaseModel):
    """Body of a triggering request.

    Either ``prompt`` or a non-empty ``history`` is required; a history
    takes precedence over the prompt.
    """

    prompt: str | None = None
    history: list[Message] | None = None
    tools: bool = True
    model: str | None = None
    session: str = "default"
    api_key: str | None = Field(default=None, alias="openaiApiKey")

    model_config = {"populate_by_name": True}

    @model_validator(mode="after")
    def require_input(self):
        if not self.prompt and not self.history:
            raise ValueError("prompt or history is required")
        return self

    def messages(self, system_prompt: str | None = None) -> list[dict]:
        if self.history:
            transcript = list(self.history)
        else:
            transcript = [Message(role=MessageRole.USER, content=self.prompt)]
        dumped = [m.model_dump() for m in transcript]
        if system_prompt and not any(m["role"] == "system" for m in dumped):
            dumped.insert(0, {"role": "system", "content": system_prompt})
        return dumped
