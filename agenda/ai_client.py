from __future__ import annotations

import json
import logging
import re
from datetime import datetime, time, timedelta
from typing import Any, Protocol
from zoneinfo import ZoneInfo

import requests
from pydantic import ValidationError as SchemaError

from agenda.errors import InterpretError
from agenda.models import AIConfig, parse_iso_datetime
from agenda.planner import OperationDraft, build_messages

logger = logging.getLogger(__name__)

JSON_BLOCK_PATTERN = re.compile(r"```(?:json)?\s*(\{.*\})\s*```", re.DOTALL)


def _extract_json_payload(content: str) -> str:
    text = content.strip()
    if text.startswith("{") and text.endswith("}"):
        return text
    block = JSON_BLOCK_PATTERN.search(text)
    if block:
        return block.group(1)
    start = text.find("{")
    end = text.rfind("}")
    if start >= 0 and end > start:
        return text[start : end + 1]
    raise ValueError("AI response does not contain valid JSON.")


def parse_draft(content: str) -> OperationDraft:
    try:
        payload = json.loads(_extract_json_payload(content))
    except ValueError as exc:
        raise InterpretError(f"Interpreter returned unreadable output: {exc}", operation="interpret") from exc
    if not isinstance(payload, dict):
        raise InterpretError("Interpreter response root must be an object.", operation="interpret")
    try:
        return OperationDraft.model_validate(payload)
    except SchemaError as exc:
        raise InterpretError(
            f"Interpreter response failed validation: {exc.error_count()} error(s)", operation="interpret"
        ) from exc


class Interpreter(Protocol):
    def interpret(
        self, utterance: str, current_time: datetime, context: dict[str, Any] | None = None
    ) -> OperationDraft: ...


class OpenAICompatibleClient:
    def __init__(self, config: AIConfig, timezone: str = "UTC") -> None:
        self.config = config
        self.timezone = timezone

    def is_configured(self) -> bool:
        return bool(self.config.base_url and self.config.api_key and self.config.model)

    def _chat_endpoint(self) -> str:
        base = self.config.base_url.rstrip("/")
        if base.endswith("/chat/completions"):
            return base
        return f"{base}/chat/completions"

    def _post(self, body: dict[str, Any]) -> requests.Response:
        return requests.post(
            self._chat_endpoint(),
            headers={
                "Authorization": f"Bearer {self.config.api_key}",
                "Content-Type": "application/json",
            },
            json=body,
            timeout=self.config.timeout_seconds,
        )

    def interpret(
        self, utterance: str, current_time: datetime, context: dict[str, Any] | None = None
    ) -> OperationDraft:
        if not self.is_configured():
            raise InterpretError("AI config incomplete: base_url/api_key/model required.", operation="interpret")
        messages = build_messages(
            utterance=utterance, current_time=current_time, timezone=self.timezone, context=context
        )
        try:
            response = self._post(
                {
                    "model": self.config.model,
                    "messages": messages,
                    "temperature": 0,
                    "response_format": {"type": "json_object"},
                }
            )
            response.raise_for_status()
            payload = response.json()
            content = payload["choices"][0]["message"]["content"]
        except requests.RequestException as exc:
            raise InterpretError(f"Interpreter request failed: {exc}", operation="interpret") from exc
        except (KeyError, IndexError, TypeError, ValueError) as exc:
            raise InterpretError(f"Unexpected interpreter response: {exc}", operation="interpret") from exc
        logger.debug("Interpreter raw content: %s", content)
        return parse_draft(str(content))

    def test_connectivity(self) -> tuple[bool, str]:
        if not self.is_configured():
            return False, "AI config incomplete: base_url/api_key/model required."
        try:
            response = self._post(
                {
                    "model": self.config.model,
                    "messages": [{"role": "user", "content": "Reply with: OK"}],
                    "temperature": 0,
                    "max_tokens": 8,
                }
            )
            if not response.ok:
                return False, f"HTTP {response.status_code}: {response.text[:300]}"
            payload = response.json()
            content = payload.get("choices", [{}])[0].get("message", {}).get("content", "")
            content_text = str(content).strip().replace("\n", " ")
            return True, f"Connected. Model response: {content_text[:120]}"
        except (requests.RequestException, ValueError) as exc:
            return False, f"{type(exc).__name__}: {exc}"


ISO_PATTERN = r"\d{4}-\d{2}-\d{2}T\d{2}:\d{2}(?::\d{2})?(?:\.\d+)?(?:Z|[+-]\d{2}:\d{2})"
CREATE_PATTERN = re.compile(
    rf"^(?:add|create|schedule|book)\s+(?P<title>.+?)\s+from\s+(?P<start>{ISO_PATTERN})\s+(?:to|until)\s+(?P<end>{ISO_PATTERN})",
    re.IGNORECASE,
)
SEARCH_PATTERN = re.compile(r"\b(?:search|find|look up)\s+(?:for\s+)?[\"']?(?P<text>[^\"']+?)[\"']?\s*$", re.IGNORECASE)
RESTORE_PATTERN = re.compile(r"\brestore\b.*?\b(?P<snapshot>snap-\d+)\b", re.IGNORECASE)
DELETE_PATTERN = re.compile(
    r"\b(?:delete|remove|cancel)\b.*?\b(?P<event_id>[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12})\b",
    re.IGNORECASE,
)


class MockInterpreter:
    """Deterministic keyword matcher standing in for the language model offline."""

    def __init__(self, timezone: str = "UTC") -> None:
        self.tz = ZoneInfo(timezone)

    def _day_range(self, current_time: datetime, offset_days: int) -> tuple[datetime, datetime]:
        day = current_time.astimezone(self.tz).date() + timedelta(days=offset_days)
        start = datetime.combine(day, time.min, tzinfo=self.tz)
        return start, start + timedelta(days=1)

    def interpret(
        self, utterance: str, current_time: datetime, context: dict[str, Any] | None = None
    ) -> OperationDraft:
        text = utterance.strip()
        lowered = text.lower()

        match = CREATE_PATTERN.search(text)
        if match:
            return OperationDraft(
                kind="create",
                title=match.group("title").strip().strip("\"'"),
                start=parse_iso_datetime(match.group("start")),
                end=parse_iso_datetime(match.group("end")),
            )
        match = RESTORE_PATTERN.search(text)
        if match:
            return OperationDraft(kind="restore", snapshot_id=match.group("snapshot").lower())
        match = DELETE_PATTERN.search(text)
        if match:
            return OperationDraft(kind="delete", event_id=match.group("event_id").lower())
        match = SEARCH_PATTERN.search(text)
        if match:
            return OperationDraft(kind="query", filter={"text": match.group("text").strip()})
        if "backup" in lowered or "back up" in lowered:
            return OperationDraft(kind="backup")
        if any(word in lowered for word in ("stats", "statistics", "how many")):
            return OperationDraft(kind="stats")
        if "today" in lowered:
            return OperationDraft(kind="query", filter={"today": True})
        if "tomorrow" in lowered:
            start, end = self._day_range(current_time, 1)
            return OperationDraft(kind="query", filter={"start": start, "end": end})
        if any(word in lowered for word in ("upcoming", "next", "coming up")):
            return OperationDraft(kind="query", filter={"upcoming": True})
        if any(word in lowered for word in ("list", "show", "schedule", "agenda")):
            return OperationDraft(kind="query")
        return OperationDraft(
            kind="clarify",
            message="Sorry, I could not understand that request. Please rephrase or use a structured command.",
        )


def build_interpreter(config: AIConfig, timezone: str = "UTC") -> Interpreter:
    if config.mock or not config.api_key:
        logger.info("Using mock interpreter")
        return MockInterpreter(timezone)
    return OpenAICompatibleClient(config, timezone)
