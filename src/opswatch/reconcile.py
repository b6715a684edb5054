"""Marker reconciliation: events go straight in, memories are merged with what we know."""

import logging
import re
from dataclasses import dataclass
from difflib import SequenceMatcher
from enum import Enum

from opswatch.markers import EventMarker, Marker, MemoryMarker
from opswatch.models import Event, Memory
from opswatch.store import DEFAULT_CONFIDENCE, OpsStore

logger = logging.getLogger(__name__)

REINFORCE_DELTA = 0.1
CONTRADICT_DELTA = -0.2

NEGATIONS = frozenset({
    "not", "no", "never", "cannot", "cant", "dont", "doesnt", "didnt", "isnt",
    "arent", "wasnt", "werent", "wont", "shouldnt", "without", "neither", "nor",
})
NUMBER_PATTERN = re.compile(r"\d+(?:\.\d+)?")
PUNCT_PATTERN = re.compile(r"[^\w\s.]|(?<!\d)\.|\.(?!\d)")


def normalize(text: str) -> str:
    text = text.lower().replace("'", "").replace("’", "")
    text = PUNCT_PATTERN.sub(" ", text)
    return " ".join(text.split())


@dataclass
class SimilarityPolicy:
    """Deterministic stand-in for judging whether two observations agree.

    Both thresholds are SequenceMatcher ratios and are meant to be tuned.
    """
    reinforce_threshold: float = 0.85
    contradict_threshold: float = 0.6

    @staticmethod
    def _ratio(a: str, b: str) -> float:
        return SequenceMatcher(None, a, b).ratio()

    @staticmethod
    def _core(words: list[str]) -> str:
        return " ".join(w for w in words if w not in NEGATIONS and not NUMBER_PATTERN.fullmatch(w))

    @staticmethod
    def _negated(words: list[str]) -> bool:
        return sum(1 for w in words if w in NEGATIONS) % 2 == 1

    def is_contradiction(self, existing: str, new: str) -> bool:
        a, b = normalize(existing), normalize(new)
        if a == b:
            return False
        words_a, words_b = a.split(), b.split()
        core_ratio = self._ratio(self._core(words_a), self._core(words_b))
        logger.debug("contradiction core ratio %.3f for %r vs %r", core_ratio, a, b)
        if core_ratio < self.contradict_threshold:
            return False
        if self._negated(words_a) != self._negated(words_b):
            return True
        nums_a = NUMBER_PATTERN.findall(a)
        nums_b = NUMBER_PATTERN.findall(b)
        return bool(nums_a) and bool(nums_b) and sorted(nums_a) != sorted(nums_b)

    def is_duplicate(self, existing: str, new: str) -> bool:
        ratio = self._ratio(normalize(existing), normalize(new))
        logger.debug("duplicate ratio %.3f", ratio)
        return ratio >= self.reinforce_threshold


class Outcome(str, Enum):
    EVENT = "event"
    INSERTED = "inserted"
    REINFORCED = "reinforced"
    CONTRADICTED = "contradicted"


@dataclass
class ReconcileResult:
    outcome: Outcome
    record_id: int
    contradicted_id: int | None = None


class MarkerReconciler:
    """Applies parsed markers from a running session to the store."""

    def __init__(self, store: OpsStore, policy: SimilarityPolicy | None = None):
        self.store = store
        self.policy = policy or SimilarityPolicy()

    def apply(self, marker: Marker, session_id: int | None, tier: int | None) -> ReconcileResult:
        if isinstance(marker, EventMarker):
            return self.apply_event(marker, session_id)
        if isinstance(marker, MemoryMarker):
            return self.apply_memory(marker, session_id, tier)
        raise TypeError(f"Not a store marker: {marker!r}")

    def apply_event(self, marker: EventMarker, session_id: int | None) -> ReconcileResult:
        event = self.store.insert_event(Event(
            id=None,
            session_id=session_id,
            level=marker.level,
            message=marker.message,
            service=marker.service,
        ))
        return ReconcileResult(Outcome.EVENT, event.id)

    def apply_memory(self, marker: MemoryMarker, session_id: int | None,
                     tier: int | None) -> ReconcileResult:
        """Reinforce a near-duplicate, weaken a contradicted memory, or insert.

        Candidates are active memories with the same service scope and
        category, strongest first. Contradiction is checked before
        duplication since a changed number can still read as near-identical.
        """
        candidates = self.store.find_candidates(marker.service, marker.category)

        for existing in candidates:
            if self.policy.is_contradiction(existing.observation, marker.observation):
                weakened = self.store.adjust_confidence(existing.id, CONTRADICT_DELTA)
                logger.info("Memory %d contradicted (confidence %.2f, active=%s)",
                            existing.id, weakened.confidence, weakened.active)
                created = self._insert(marker, session_id, tier)
                return ReconcileResult(Outcome.CONTRADICTED, created.id, existing.id)

        for existing in candidates:
            if self.policy.is_duplicate(existing.observation, marker.observation):
                reinforced = self.store.adjust_confidence(existing.id, REINFORCE_DELTA)
                logger.info("Memory %d reinforced to %.2f", existing.id, reinforced.confidence)
                return ReconcileResult(Outcome.REINFORCED, existing.id)

        created = self._insert(marker, session_id, tier)
        return ReconcileResult(Outcome.INSERTED, created.id)

    def _insert(self, marker: MemoryMarker, session_id: int | None, tier: int | None) -> Memory:
        return self.store.insert_memory(Memory(
            id=None,
            category=marker.category,
            observation=marker.observation,
            service=marker.service,
            confidence=DEFAULT_CONFIDENCE,
            session_id=session_id,
            tier=tier,
        ))
