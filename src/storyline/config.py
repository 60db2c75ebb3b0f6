import logging
import os

from pydantic import BaseModel

from storyline.policy import POLICIES

DEFAULT_SYSTEM_PROMPT = (
    "You are a project assistant. Use the available tools to read and "
    "update projects and user stories. Answer concisely."
)


def _float(name: str) -> float | None:
    value = os.getenv(name)
    return float(value) if value else None


def _int(name: str) -> int | None:
    value = os.getenv(name)
    return int(value) if value else None


class Settings(BaseModel):
    """Runtime configuration, read from the environment by :meth:`from_env`."""

    database_url: str = "sqlite:///storyline.sqlite"
    model: str = "gpt-4.1-mini"
    openai_api_key: str | None = None
    openai_base_url: str | None = None
    system_prompt: str | None = DEFAULT_SYSTEM_PROMPT
    tool_timeout: float | None = 30.0
    upstream_idle_timeout: float | None = 120.0
    eviction_threshold: int | None = 3
    subscriber_queue_size: int = 256
    tool_policy: str = "single"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        values = {
            "database_url": os.getenv("STORYLINE_DATABASE_URL"),
            "model": os.getenv("STORYLINE_MODEL"),
            "openai_api_key": os.getenv("OPENAI_API_KEY"),
            "openai_base_url": os.getenv("OPENAI_BASE_URL"),
            "system_prompt": os.getenv("STORYLINE_SYSTEM_PROMPT"),
            "tool_timeout": _float("STORYLINE_TOOL_TIMEOUT"),
            "upstream_idle_timeout": _float("STORYLINE_UPSTREAM_IDLE_TIMEOUT"),
            "eviction_threshold": _int("STORYLINE_EVICTION_THRESHOLD"),
            "subscriber_queue_size": _int("STORYLINE_SUBSCRIBER_QUEUE_SIZE"),
            "tool_policy": os.getenv("STORYLINE_TOOL_POLICY"),
            "log_level": os.getenv("STORYLINE_LOG_LEVEL"),
        }
        settings = cls(**{k: v for k, v in values.items() if v is not None})
        if settings.tool_policy not in POLICIES:
            raise ValueError(f"STORYLINE_TOOL_POLICY must be one of {sorted(POLICIES)}")
        return settings


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=level.upper(),
        format='%(asctime)s:%(name)s:%(levelname)s:%(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
    )
