"""Turn a loosely structured completion reply into outbound segments.

Replies are expected as ``{"Stage": ..., "Response": [{"type", "content", "Jenis"?}]}``
but models wrap them in code fences, fall back to the older
``Stage: ...\\nResponse: [...]`` layout, or answer in plain text. Each layout is
handled by its own strategy; the first strategy that returns a reply wins.
"""

import json
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, List, Optional

from nodepath.logging_config import get_logger
from nodepath.services.result import ErrorCode, Result

logger = get_logger("response_parser")

GROUP_MARKER = "onemessage"
MEDIA_KINDS = {"image", "audio", "video"}

_FENCED_BLOCK = re.compile(r"^```[a-zA-Z]*\s*(.*?)\s*```$", re.DOTALL)
_LEADING_FENCE = re.compile(r"^```[a-zA-Z]*\s*")
_TRAILING_FENCE = re.compile(r"\s*```$")
_LEGACY_LAYOUT = re.compile(r"Stage:[ \t]*([^\n]+?)[ \t]*\n.*?Response:\s*(\[.*\])\s*$", re.DOTALL)
_BRACKET_MEDIA = re.compile(r"\[(?:IMAGE|AUDIO|VIDEO):\s*(.+?)\]", re.IGNORECASE)
_BACKTICK_IMAGE = re.compile(r"!\s*`(https?://[^`\s]+)`")


@dataclass(frozen=True)
class ResponsePart:
    kind: str
    content: str
    grouped: bool = False

    @property
    def is_valid(self) -> bool:
        return bool(self.kind) and bool(self.content)


@dataclass(frozen=True)
class CompletionReply:
    stage: Optional[str]
    parts: tuple[ResponsePart, ...]


@dataclass(frozen=True)
class OutboundSegment:
    kind: str  # text, image, audio, video
    content: str
    combined_parts: int = 1

    @property
    def is_media(self) -> bool:
        return self.kind in MEDIA_KINDS


def strip_code_fence(text: str) -> str:
    stripped = (text or "").strip()
    match = _FENCED_BLOCK.match(stripped)
    if match:
        return match.group(1).strip()
    stripped = _LEADING_FENCE.sub("", stripped)
    return _TRAILING_FENCE.sub("", stripped).strip()


def looks_fenced(text: str) -> bool:
    stripped = (text or "").strip()
    return stripped.startswith("```") and stripped.endswith("```") and len(stripped) > 6


def _load_json(text: str) -> Any:
    try:
        return json.loads(text, strict=False)
    except (TypeError, ValueError):
        return None


def _to_part(item: Any) -> ResponsePart:
    if not isinstance(item, dict):
        return ResponsePart(kind="", content="")
    kind = str(item.get("type") or "").strip().lower()
    content = item.get("content")
    content = "" if content is None else str(content)
    marker = item.get("Jenis") or item.get("jenis") or ""
    return ResponsePart(kind=kind, content=content, grouped=str(marker).strip().lower() == GROUP_MARKER)


def _to_parts(items: Any) -> Optional[tuple[ResponsePart, ...]]:
    if not isinstance(items, list) or not items:
        return None
    return tuple(_to_part(item) for item in items)


def _to_reply(payload: Any) -> Optional[CompletionReply]:
    if not isinstance(payload, dict):
        return None
    parts = _to_parts(payload.get("Response", payload.get("response")))
    if parts is None:
        return None
    stage = payload.get("Stage", payload.get("stage"))
    stage = str(stage).strip() if stage not in (None, "") else None
    return CompletionReply(stage=stage or None, parts=parts)


def _first_part_is_fenced(reply: CompletionReply) -> bool:
    first = reply.parts[0]
    return first.kind == "text" and looks_fenced(first.content)


class ParseStrategy(ABC):
    name = "base"

    @abstractmethod
    def try_parse(self, raw: str) -> Optional[CompletionReply]:
        """Return a reply when ``raw`` is in this strategy's layout, else None."""
        pass


class DirectJsonStrategy(ParseStrategy):
    name = "direct_json"

    def try_parse(self, raw: str) -> Optional[CompletionReply]:
        reply = _to_reply(_load_json(raw.strip()))
        if reply is None or _first_part_is_fenced(reply):
            return None
        return reply


class FencedJsonStrategy(ParseStrategy):
    name = "fenced_json"

    def try_parse(self, raw: str) -> Optional[CompletionReply]:
        if "```" not in raw:
            return None
        reply = _to_reply(_load_json(strip_code_fence(raw)))
        if reply is None or _first_part_is_fenced(reply):
            return None
        return reply


class LegacyLayoutStrategy(ParseStrategy):
    """A one-line ``Stage: <label>`` followed, possibly after other lines, by ``Response: [...]``."""

    name = "legacy_layout"

    def try_parse(self, raw: str) -> Optional[CompletionReply]:
        match = _LEGACY_LAYOUT.search(raw.strip())
        if not match:
            return None
        parts = _to_parts(_load_json(match.group(2)))
        if parts is None:
            return None
        return CompletionReply(stage=match.group(1).strip() or None, parts=parts)


class NestedFencedJsonStrategy(ParseStrategy):
    """Reply whose first text part is itself a fenced JSON reply."""

    name = "nested_fenced_json"

    def try_parse(self, raw: str) -> Optional[CompletionReply]:
        outer = _to_reply(_load_json(raw.strip())) or _to_reply(_load_json(strip_code_fence(raw)))
        if outer is None or not _first_part_is_fenced(outer):
            return None
        inner = _to_reply(_load_json(strip_code_fence(outer.parts[0].content)))
        if inner is None:
            return None
        return CompletionReply(stage=inner.stage or outer.stage, parts=inner.parts)


class PlainTextStrategy(ParseStrategy):
    """Whole reply as one text part under the default stage.

    Blank replies and replies that look like broken structured output are
    refused so that raw JSON is never sent to the user.
    """

    name = "plain_text"

    def __init__(self, default_stage: str):
        self.default_stage = default_stage

    def try_parse(self, raw: str) -> Optional[CompletionReply]:
        text = raw.strip()
        if not text:
            return None
        probe = strip_code_fence(text) if text.startswith("```") else text
        if probe.startswith("{") or (probe.startswith("[") and probe.endswith("]")):
            return None
        if re.search(r'"Response"\s*:', text):
            return None
        return CompletionReply(stage=self.default_stage, parts=(ResponsePart(kind="text", content=text),))


class ResponseParser:
    def __init__(self, default_stage: str = "Problem Identification", strategies: Optional[List[ParseStrategy]] = None):
        self.strategies = strategies or [
            DirectJsonStrategy(),
            FencedJsonStrategy(),
            LegacyLayoutStrategy(),
            NestedFencedJsonStrategy(),
            PlainTextStrategy(default_stage),
        ]

    def parse(self, raw: Optional[str]) -> Result[CompletionReply]:
        raw = raw or ""
        for strategy in self.strategies:
            reply = strategy.try_parse(raw)
            if reply is not None:
                logger.debug(f"Completion reply parsed with {strategy.name}")
                return Result.success(reply)

        logger.error(
            "Completion reply could not be parsed",
            extra={"context": {"raw": raw[:300]}},
        )
        return Result.failure("No parse strategy accepted the completion reply", ErrorCode.RESPONSE_PARSE_FAILED)


def media_content(content: str) -> str:
    """Extract the URL from ``[IMAGE: url]`` style content and drop stray backticks."""
    match = _BRACKET_MEDIA.search(content)
    if match:
        return match.group(1).strip().strip("`").strip()
    match = _BACKTICK_IMAGE.search(content)
    if match:
        return match.group(1)
    return content.strip().strip("`").strip()


def group_parts(parts: tuple[ResponsePart, ...] | list[ResponsePart]) -> list[OutboundSegment]:
    """Merge runs of grouped text parts into single segments, preserving order."""
    segments: list[OutboundSegment] = []
    buffer: list[str] = []

    def flush() -> None:
        if buffer:
            segments.append(OutboundSegment(kind="text", content="\n".join(buffer), combined_parts=len(buffer)))
            buffer.clear()

    for index, part in enumerate(parts):
        if not part.is_valid:
            logger.warning(
                "Skipping invalid response part",
                extra={"context": {"index": index, "kind": part.kind, "has_content": bool(part.content)}},
            )
            continue

        if part.kind == "text" and part.grouped:
            buffer.append(part.content)
            continue

        flush()
        if part.kind in MEDIA_KINDS:
            segments.append(OutboundSegment(kind=part.kind, content=media_content(part.content)))
        else:
            segments.append(OutboundSegment(kind=part.kind, content=part.content))

    flush()
    return segments


def format_log_entries(segments: list[OutboundSegment], role: str = "BOT") -> list[str]:
    entries = []
    for segment in segments:
        if segment.is_media:
            entries.append(f"{role}: {segment.content}")
        elif segment.combined_parts > 1:
            entries.append(f"{role}_COMBINED: {json.dumps(segment.content, ensure_ascii=False)}")
        else:
            entries.append(f"{role}: {json.dumps(segment.content, ensure_ascii=False)}")
    return entries
