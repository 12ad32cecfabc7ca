# nexus_records/config.py

import os
from typing import Literal, Optional

from pydantic import BaseModel, Field


def _env(*names: str, default: Optional[str] = None) -> Optional[str]:
    """First non-empty environment variable among `names`."""
    for name in names:
        value = os.getenv(name)
        if value:
            return value
    return default


class EngineConfig(BaseModel):
    """
    Opaque engine settings supplied by the surrounding application.

    provider="agent" routes through the pydantic-ai handler (model strings
    like "openai:gpt-4o-mini" or "ark:doubao-pro-32k"); provider="ark" talks
    to an OpenAI-compatible chat-completions endpoint directly.
    """
    provider: Literal["agent", "ark"] = "agent"
    extraction_model: str = "openai:gpt-4o-mini"
    reasoning_model: Optional[str] = None
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    request_timeout: float = Field(120.0, gt=0)
    stream_idle_timeout: float = Field(60.0, gt=0)
    requests_per_minute: Optional[int] = Field(None, gt=0)
    temperature: float = Field(0.1, ge=0, le=2)

    @property
    def effective_reasoning_model(self) -> str:
        return self.reasoning_model or self.extraction_model

    @classmethod
    def from_env(cls) -> "EngineConfig":
        """
        Read NEXUS_* variables. Provider key variables (ARK_API_KEY,
        OPENAI_API_KEY) are used when NEXUS_API_KEY is not set.
        """
        values = {
            "provider": _env("NEXUS_PROVIDER"),
            "extraction_model": _env("NEXUS_EXTRACTION_MODEL"),
            "reasoning_model": _env("NEXUS_REASONING_MODEL"),
            "api_key": _env("NEXUS_API_KEY", "ARK_API_KEY", "OPENAI_API_KEY"),
            "base_url": _env("NEXUS_BASE_URL"),
            "request_timeout": _env("NEXUS_REQUEST_TIMEOUT"),
            "stream_idle_timeout": _env("NEXUS_STREAM_IDLE_TIMEOUT"),
            "requests_per_minute": _env("NEXUS_REQUESTS_PER_MINUTE"),
            "temperature": _env("NEXUS_TEMPERATURE"),
        }
        return cls(**{k: v for k, v in values.items() if v is not None})


class SessionConfig(BaseModel):
    """Behavior knobs for a ClinicalSession."""
    report_separator: str = "\n\n---\n\n"
    dedupe_records: bool = Field(
        False,
        description="Merge content-identical records instead of appending them.",
    )
    label_max_length: int = Field(50, gt=0)
    max_image_bytes: Optional[int] = Field(
        None,
        gt=0,
        description="Reject images larger than this before calling the engine.",
    )
