"""Parser for the [EVENT:...], [MEMORY:...] and [COOLDOWN:...] markers agents embed in their text."""

import logging
import re
from dataclasses import dataclass

from opswatch.models import ActionClass, EventLevel, MemoryCategory

logger = logging.getLogger(__name__)

EVENT_PATTERN = re.compile(r"\[EVENT:([A-Za-z_-]+)(?::([A-Za-z0-9_-]+))?\]\s*(.+)")
MEMORY_PATTERN = re.compile(r"\[MEMORY:([A-Za-z_-]+)(?::([A-Za-z0-9_-]+))?\]\s*(.+)")
COOLDOWN_PATTERN = re.compile(
    r"\[COOLDOWN:(restart|redeployment|redeploy):([A-Za-z0-9_-]+)\]\s*(success|failure)\s*[—–-]\s*(.+)"
)
COOLDOWN_PREFIX = "[COOLDOWN:"

COOLDOWN_ACTIONS = {
    "restart": ActionClass.RESTART,
    "redeploy": ActionClass.REDEPLOY,
    "redeployment": ActionClass.REDEPLOY,
}


@dataclass(frozen=True)
class EventMarker:
    level: EventLevel
    message: str
    service: str | None = None


@dataclass(frozen=True)
class MemoryMarker:
    category: MemoryCategory
    observation: str
    service: str | None = None


@dataclass(frozen=True)
class CooldownMarker:
    """A remediation attempt the agent reports having made."""
    action: ActionClass
    service: str
    success: bool
    message: str


Marker = EventMarker | MemoryMarker | CooldownMarker


def parse_line(line: str) -> Marker | None:
    """Parse a single line of agent text into a marker, or None.

    Unknown levels, categories and malformed cooldown reports are rejected
    with a warning rather than stored under a guessed value.
    """
    text = line.strip()
    if not text:
        return None

    match = EVENT_PATTERN.search(text)
    if match:
        raw_level, service, message = match.groups()
        try:
            level = EventLevel(raw_level.lower())
        except ValueError:
            logger.warning("Discarding event marker with unknown level %r: %s", raw_level, text)
            return None
        message = message.strip()
        if not message:
            return None
        return EventMarker(level=level, message=message, service=service)

    match = MEMORY_PATTERN.search(text)
    if match:
        raw_category, service, observation = match.groups()
        try:
            category = MemoryCategory(raw_category)
        except ValueError:
            logger.warning("Discarding memory marker with invalid category %r: %s",
                           raw_category, text)
            return None
        observation = observation.strip()
        if not observation:
            return None
        return MemoryMarker(category=category, observation=observation, service=service)

    match = COOLDOWN_PATTERN.search(text)
    if match:
        raw_action, service, outcome, message = match.groups()
        return CooldownMarker(
            action=COOLDOWN_ACTIONS[raw_action],
            service=service,
            success=outcome == "success",
            message=message.strip(),
        )
    if COOLDOWN_PREFIX in text:
        logger.warning("Discarding malformed cooldown marker: %s", text)

    return None


def parse_markers(text: str) -> list[Marker]:
    """All markers found in a block of agent text, in order."""
    markers = []
    for line in text.splitlines():
        marker = parse_line(line)
        if marker is not None:
            markers.append(marker)
    return markers
