from __future__ import annotations

import json
from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from agenda.models import serialize_datetime

CHAT_ROLES = ("user", "assistant")

SYSTEM_PROMPT = """You are Agenda, an assistant that turns schedule requests into one operation.
Only return JSON in this schema:
{
  "kind": "create | update | delete | query | stats | backup | restore | clarify",
  "event_id": "string or null (update/delete)",
  "title": "string or null",
  "start": "ISO8601 datetime with offset or null",
  "end": "ISO8601 datetime with offset or null",
  "description": "string or null",
  "location": "string or null",
  "tags": ["string"] or null,
  "priority": "low | medium | high | urgent or null",
  "attendees": ["string"] or null,
  "filter": {"today": bool, "upcoming": bool, "text": "string", "start": "ISO8601 or null",
             "end": "ISO8601 or null", "tag": "string", "limit": int or null} or null,
  "snapshot_id": "string or null (restore)",
  "message": "question for the user when kind is clarify"
}

Rules:
1. Resolve relative dates (today, tomorrow, next week) against the current time given by the user message.
2. Every datetime must be absolute and carry a UTC offset.
3. If the request is ambiguous or information is missing, return kind=clarify with a short question.
4. Never invent event ids; use ids from the context only.
5. Earlier turns of the conversation come before the request; use them to resolve references such as "it" or "that meeting".
"""


class DraftFilter(BaseModel):
    model_config = ConfigDict(extra="forbid")

    today: bool = False
    upcoming: bool = False
    text: str = ""
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    tag: str = ""
    limit: Optional[int] = Field(default=None, ge=1)

    @field_validator("start", "end")
    @classmethod
    def _require_offset(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            raise ValueError("datetime must carry a UTC offset")
        return value


class OperationDraft(BaseModel):
    """Operation-shaped payload returned by a language-model interpreter."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    kind: Literal["create", "update", "delete", "query", "stats", "backup", "restore", "clarify"]
    event_id: Optional[str] = None
    title: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    description: Optional[str] = None
    location: Optional[str] = None
    tags: Optional[list[str]] = None
    priority: Optional[Literal["low", "medium", "high", "urgent"]] = None
    attendees: Optional[list[str]] = None
    filter: Optional[DraftFilter] = None
    snapshot_id: Optional[str] = None
    message: str = ""

    @field_validator("start", "end")
    @classmethod
    def _require_offset(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            raise ValueError("datetime must carry a UTC offset")
        return value

    @model_validator(mode="after")
    def _check_interval(self) -> "OperationDraft":
        if self.start is not None and self.end is not None and self.start >= self.end:
            raise ValueError("start must be before end")
        return self


def build_messages(
    *,
    utterance: str,
    current_time: datetime,
    timezone: str,
    context: dict[str, object] | None = None,
) -> list[dict[str, str]]:
    context = dict(context or {})
    history = context.pop("conversation", None) or []
    payload = {
        "utterance": utterance,
        "current_time": serialize_datetime(current_time),
        "timezone": timezone,
        "context": context,
    }
    messages = [{"role": "system", "content": SYSTEM_PROMPT}]
    for turn in history:
        if turn.get("role") in CHAT_ROLES and turn.get("content"):
            messages.append({"role": str(turn["role"]), "content": str(turn["content"])})
    messages.append({"role": "user", "content": json.dumps(payload, ensure_ascii=False)})
    return messages
