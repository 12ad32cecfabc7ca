# nexus_records/schemas/conversation_schema.py

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import List, Literal

from pydantic import BaseModel, Field


class TurnStatus(str, Enum):
    STREAMING = "streaming"
    COMPLETE = "complete"
    PARTIAL = "partial"
    FAILED = "failed"
    ABORTED = "aborted"


def new_turn_id() -> str:
    return f"turn-{uuid.uuid4().hex[:12]}"


class ConversationTurn(BaseModel):
    """
    A single chat message. Assistant turns are created empty and their
    content grows in place while a reply streams in; the id never changes.
    """
    id: str = Field(default_factory=new_turn_id)
    role: Literal["user", "assistant"]
    content: str = ""
    createdAt: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    status: TurnStatus = TurnStatus.COMPLETE


class Conversation(BaseModel):
    """Append-only ordered sequence of turns."""
    turns: List[ConversationTurn] = Field(default_factory=list)

    def append(self, role: str, content: str = "", status: TurnStatus = TurnStatus.COMPLETE) -> ConversationTurn:
        turn = ConversationTurn(role=role, content=content, status=status)
        self.turns.append(turn)
        return turn

    def get(self, turn_id: str) -> ConversationTurn:
        for turn in self.turns:
            if turn.id == turn_id:
                return turn
        raise KeyError(turn_id)

    def __len__(self) -> int:
        return len(self.turns)
