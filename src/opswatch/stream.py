"""Stream classifier for the agent's stream-json output, plus durable log helpers."""

import json
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Iterator

from opswatch.models import ResultInfo

TRUNCATE_AT = 300
SESSION_STARTED = "--- session started ---"

# CSI escape sequences: ESC [ params final-byte
ANSI_PATTERN = re.compile(r"\x1b\[[\x20-\x3f]*[\x40-\x7e]?")


@dataclass
class Classification:
    """What one raw record means for viewers and for marker scanning.

    ``display`` is the rendered line (None when suppressed). ``text`` holds
    the agent's free text and is the only input marker parsing ever sees.
    ``result`` is set for the terminal result record.
    """
    display: str | None = None
    text: str = ""
    result: ResultInfo | None = None


def strip_ansi(s: str) -> str:
    return ANSI_PATTERN.sub("", s)


def truncate(s: str, max_len: int = TRUNCATE_AT) -> str:
    s = s.strip()
    if len(s) <= max_len:
        return s
    return s[:max_len] + "..."


def collapse_whitespace(s: str) -> str:
    return " ".join(s.split())


def _tool_result_content(content) -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, dict) and block.get("text"):
                parts.append(block["text"])
        return " ".join(parts)
    return json.dumps(content)


def _content_blocks(record: dict) -> list:
    message = record.get("message")
    if not isinstance(message, dict):
        return []
    content = message.get("content")
    if not isinstance(content, list):
        return []
    return [b for b in content if isinstance(b, dict)]


def _classify_assistant(record: dict) -> Classification:
    parts: list[str] = []
    texts: list[str] = []
    for block in _content_blocks(record):
        kind = block.get("type")
        if kind == "text":
            text = strip_ansi(block.get("text") or "").strip()
            if text:
                parts.append(text)
                texts.append(text)
        elif kind == "tool_use":
            tool_input = block.get("input")
            rendered = tool_input if isinstance(tool_input, str) else json.dumps(tool_input)
            parts.append(f"[tool] {block.get('name', '')}: {truncate(rendered)}")
    return Classification(
        display="\n".join(parts) if parts else None,
        text="\n".join(texts),
    )


def _classify_user(record: dict) -> Classification:
    for block in _content_blocks(record):
        if block.get("type") == "tool_result":
            content = strip_ansi(_tool_result_content(block.get("content")))
            return Classification(display=f"[result] {truncate(collapse_whitespace(content))}")
    return Classification()


def _classify_result(record: dict) -> Classification:
    response = record.get("result") or ""
    if not isinstance(response, str):
        raise TypeError(f"result is {type(response).__name__}, not str")
    info = ResultInfo(
        response=response,
        cost_usd=float(record.get("total_cost_usd") or 0.0),
        num_turns=int(record.get("num_turns") or 0),
        duration_ms=int(record.get("duration_ms") or 0),
        is_error=bool(record.get("is_error")),
    )
    label = "session error" if info.is_error else "session complete"
    display = (
        f"--- {label} (turns={info.num_turns}, cost=${info.cost_usd:.4f}, "
        f"duration={info.duration_ms}ms) ---"
    )
    return Classification(display=display, result=info)


def classify(raw: str) -> Classification:
    """Map one raw output line to a rendering decision. Pure; never raises.

    Records whose fields have unexpected types are shown raw and yield no
    marker text.
    """
    raw = raw.rstrip("\r\n")
    try:
        record = json.loads(raw)
    except (json.JSONDecodeError, ValueError):
        return Classification(display=raw if raw.strip() else None)
    if not isinstance(record, dict):
        return Classification(display=raw)
    try:
        return _classify_record(record)
    except (TypeError, ValueError, AttributeError, OverflowError):
        return Classification(display=raw)


def _classify_record(record: dict) -> Classification:
    kind = record.get("type")
    if kind == "system":
        if record.get("subtype") == "init":
            return Classification(display=SESSION_STARTED)
        return Classification()
    if kind == "assistant":
        return _classify_assistant(record)
    if kind == "user":
        return _classify_user(record)
    if kind == "result":
        return _classify_result(record)
    return Classification()


def format_log_line(raw: str, ts: datetime | None = None) -> str:
    """Durable log line: ``<timestamp>\\t<raw line>\\n``."""
    ts = ts or datetime.now(timezone.utc)
    raw = raw.rstrip("\r\n")
    return f"{ts.isoformat()}\t{raw}\n"


def parse_log_line(line: str) -> tuple[datetime | None, str]:
    """Split a durable log line into (timestamp, raw). Untimestamped lines pass through."""
    line = line.rstrip("\n")
    idx = line.find("\t")
    if 0 < idx < 40:
        try:
            ts = datetime.fromisoformat(line[:idx].replace("Z", "+00:00"))
            return ts, line[idx + 1:]
        except ValueError:
            pass
    return None, line


def render_lines(lines: Iterable[str]) -> Iterator[str]:
    for line in lines:
        _, raw = parse_log_line(line)
        display = classify(raw).display
        if display is not None:
            yield display


def render_log(path: Path) -> list[str]:
    """Regenerate display lines for a finished session from its durable log."""
    if not path.exists():
        return []
    with path.open(encoding="utf-8", errors="replace") as f:
        return list(render_lines(f))
