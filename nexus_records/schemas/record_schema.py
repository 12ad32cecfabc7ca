# nexus_records/schemas/record_schema.py

import json
from datetime import date
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class ResourceKind(str, Enum):
    """Closed set of FHIR-like resource categories used for timeline grouping."""
    PATIENT = "Patient"
    OBSERVATION = "Observation"
    CONDITION = "Condition"
    MEDICATION_REQUEST = "MedicationRequest"
    PROCEDURE = "Procedure"


def parse_timestamp(timestamp: str) -> date:
    """
    Turn a normalized token like '2023-5-1' into a calendar date.
    Raises ValueError if the token is not a real date.
    """
    year, month, day = (int(part) for part in timestamp.split("-"))
    return date(year, month, day)


class ClinicalRecord(BaseModel):
    """
    One discrete, dated clinical fact extracted from a report.
    Records are never edited once created.
    """
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Opaque unique id assigned at extraction time.")
    kind: ResourceKind = Field(..., description="Resource category.")
    timestamp: str = Field(..., description="Date token with '-' separators, e.g. '2023-5-1'.")
    label: str = Field(..., description="Short summary derived from the source line.")
    source_line: Optional[str] = Field(
        None,
        description="Raw report line this record came from. Not part of the export form."
    )

    @property
    def iso_date(self) -> date:
        return parse_timestamp(self.timestamp)


class TimelineEntry(BaseModel):
    """
    Serialized form handed to export/persistence collaborators:
      { id, kind, timestamp, label }
    """
    id: str
    kind: str
    timestamp: str
    label: str

    @classmethod
    def from_record(cls, record: ClinicalRecord) -> "TimelineEntry":
        return cls(
            id=record.id,
            kind=record.kind.value,
            timestamp=record.timestamp,
            label=record.label,
        )

    def to_record(self) -> ClinicalRecord:
        return ClinicalRecord(
            id=self.id,
            kind=ResourceKind(self.kind),
            timestamp=self.timestamp,
            label=self.label,
        )


_ENTRIES = TypeAdapter(List[TimelineEntry])


def records_to_json(records: List[ClinicalRecord]) -> str:
    entries = [TimelineEntry.from_record(r).model_dump() for r in records]
    return json.dumps(entries, ensure_ascii=False)


def records_from_json(payload: str) -> List[ClinicalRecord]:
    return [entry.to_record() for entry in _ENTRIES.validate_json(payload)]
