"""Line parser for the agent CLI's newline-delimited JSON output."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, TypeAlias


class RecordKind(StrEnum):
    ASSISTANT = "assistant"
    USER = "user"
    TOOL_USE = "tool_use"
    TOOL_RESULT = "tool_result"
    RESULT = "result"
    SYSTEM = "system"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class RawLine:
    """A stdout line that is not a JSON object; delivered as plain text."""

    text: str


@dataclass(frozen=True)
class StructuredRecord:
    kind: RecordKind
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def session_id(self) -> str | None:
        value = self.data.get("session_id")
        return value if isinstance(value, str) and value else None


ParsedLine: TypeAlias = RawLine | StructuredRecord


def parse_line(line: str) -> ParsedLine | None:
    """Classify one stdout line. Blank lines yield None."""
    stripped = line.strip()
    if not stripped:
        return None
    try:
        payload = json.loads(stripped)
    except ValueError:
        return RawLine(stripped)
    if not isinstance(payload, dict):
        return RawLine(stripped)
    return StructuredRecord(kind=_record_kind(payload.get("type")), data=payload)


def _record_kind(value: object) -> RecordKind:
    if isinstance(value, str):
        try:
            return RecordKind(value)
        except ValueError:
            return RecordKind.UNKNOWN
    return RecordKind.UNKNOWN


def content_blocks(record: StructuredRecord) -> list[dict[str, Any]]:
    """Return the content blocks of an assistant/user record.

    A plain string body is normalized into one text block.
    """
    message = record.data.get("message")
    if not isinstance(message, dict):
        if record.kind in (RecordKind.TOOL_USE, RecordKind.TOOL_RESULT):
            return [record.data]
        return []
    content = message.get("content")
    if isinstance(content, str):
        return [{"type": "text", "text": content}] if content else []
    if isinstance(content, list):
        return [block for block in content if isinstance(block, dict)]
    return []


def block_text(value: object) -> str:
    """Flatten tool result content, which may be a string or a list of text blocks."""
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        parts: list[str] = []
        for item in value:
            if isinstance(item, str):
                parts.append(item)
            elif isinstance(item, dict) and isinstance(item.get("text"), str):
                parts.append(item["text"])
        return "\n".join(parts)
    if value is None:
        return ""
    return json.dumps(value, ensure_ascii=False)


def usage_of(record: StructuredRecord) -> tuple[int, int] | None:
    usage = record.data.get("usage")
    if not isinstance(usage, dict):
        return None
    input_tokens = usage.get("input_tokens")
    output_tokens = usage.get("output_tokens")
    if not isinstance(input_tokens, int) or not isinstance(output_tokens, int):
        return None
    return input_tokens, output_tokens
