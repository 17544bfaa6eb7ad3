"""Core domain models used across the relay."""

from __future__ import annotations

import hashlib
import time
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


# ======================================================================
# Conversation
# ======================================================================
class Role(str, Enum):
    USER = "user"
    MODEL = "model"


class Turn(BaseModel):
    """One party's contiguous contribution to a conversation."""

    role: Role
    parts: list[str] = Field(default_factory=list)

    @property
    def text(self) -> str:
        return " ".join(p for p in self.parts if p)


# ======================================================================
# Tool calls
# ======================================================================
class ToolCall(BaseModel):
    """A function invocation requested by the live backend."""

    id: Optional[str] = None
    name: str
    args: dict[str, Any] = Field(default_factory=dict)


class ToolCallEntry(BaseModel):
    """Observability record for one dispatched tool call."""

    id: Optional[str] = None
    name: str
    args: dict[str, Any] = Field(default_factory=dict)
    response: dict[str, Any] = Field(default_factory=dict)
    timestamp: float = Field(default_factory=time.time)


# ======================================================================
# Knowledge
# ======================================================================
class KnowledgeRecord(BaseModel):
    """A topic/content passage extracted from one product document."""

    source: str
    topic: str
    content: str = ""

    @property
    def record_id(self) -> str:
        digest = hashlib.sha1(
            f"{self.source}\x1f{self.topic}\x1f{self.content}".encode("utf-8")
        ).hexdigest()
        return digest[:20]

    @property
    def document(self) -> str:
        """Text that gets embedded."""
        if self.content:
            return f"{self.topic}\n{self.content}"
        return self.topic


class KnowledgeHit(BaseModel):
    """A retrieved passage and its relevance score (higher is closer)."""

    topic: str = ""
    content: str = ""
    source: str = ""
    score: float = 0.0

    def to_passage(self) -> str:
        topic = self.topic or "Unknown Topic"
        source = self.source or "Unknown Source"
        return f"Topic: {topic}\nContent: {self.content}\nSource: {source}"


# ======================================================================
# Client protocol
# ======================================================================
class ClientMessage(BaseModel):
    """A JSON text frame sent by a kiosk client."""

    type: str
    data: Optional[str] = None
    sample_rate: Optional[int] = Field(default=None, alias="sampleRate")
    text: Optional[str] = None
    action: Optional[str] = None

    model_config = {"populate_by_name": True, "extra": "ignore"}
