# nexus_records/schemas/insight_schema.py

from enum import Enum
from typing import List

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class InsightKind(str, Enum):
    WARNING = "Warning"
    INFO = "Info"
    CAUSAL = "Causal"


class Insight(BaseModel):
    """
    Analytic note over the accumulated record set. The whole list is
    replaced on every regeneration, so instances are frozen.
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str = Field(..., description="Insight id chosen by the model.")
    kind: InsightKind = Field(
        ...,
        validation_alias=AliasChoices("kind", "type"),
        description="One of Warning, Info, Causal.",
    )
    title: str = Field(..., description="One-line headline.")
    description: str = Field(..., description="Explanation with clinical reasoning.")
    sourceIds: List[str] = Field(
        default_factory=list,
        description="ClinicalRecord ids that justify this insight.",
    )

    @field_validator("kind", mode="before")
    @classmethod
    def _normalize_kind(cls, value):
        # models often answer WARNING / info
        if isinstance(value, str):
            return value.strip().capitalize()
        return value
