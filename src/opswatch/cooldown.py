"""Remediation cooldowns: sliding-window rate limits per service."""

import json
import logging
import os
import tempfile
import threading
from dataclasses import asdict
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable

from opswatch.models import ActionClass, CooldownAttempt, CooldownRecord, CooldownSummary

logger = logging.getLogger(__name__)

WINDOWS: dict[ActionClass, tuple[int, timedelta]] = {
    ActionClass.RESTART: (2, timedelta(hours=4)),
    ActionClass.REDEPLOY: (1, timedelta(hours=24)),
}

HEALTHY_STREAK_TO_RESET = 2
DEFAULT_PRUNE_MARGIN = timedelta(hours=24)


def _parse_ts(ts: str) -> datetime:
    dt = datetime.fromisoformat(ts.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


class CooldownLedger:
    """Per-service cooldown records persisted as a single JSON document.

    Saves write a temp file next to the ledger, fsync it and swap it into
    place, so a crash loses at most the latest update.
    """

    def __init__(self, path: Path):
        self.path = path

    def load(self) -> dict[str, CooldownRecord]:
        if not self.path.exists():
            return {}
        raw = json.loads(self.path.read_text(encoding="utf-8") or "{}")
        records = {}
        for service, data in raw.get("services", {}).items():
            records[service] = CooldownRecord(
                service=service,
                restarts=[CooldownAttempt(**a) for a in data.get("restarts", [])],
                redeploys=[CooldownAttempt(**a) for a in data.get("redeploys", [])],
                consecutive_healthy=data.get("consecutive_healthy", 0),
            )
        return records

    def save(self, records: dict[str, CooldownRecord]) -> None:
        payload = {
            "services": {
                service: {
                    "restarts": [asdict(a) for a in rec.restarts],
                    "redeploys": [asdict(a) for a in rec.redeploys],
                    "consecutive_healthy": rec.consecutive_healthy,
                }
                for service, rec in sorted(records.items())
            }
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            suffix=".tmp", prefix=self.path.stem + "_", dir=self.path.parent,
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except OSError:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

    def get(self, service: str) -> CooldownRecord:
        """Lookup-or-default: unknown services have no attempts and no streak."""
        return self.load().get(service) or CooldownRecord(service=service)


class CooldownEngine:
    """Permit/record decisions over a CooldownLedger.

    ``clock`` returns the current aware datetime; tests inject their own.
    """

    def __init__(self, ledger: CooldownLedger,
                 clock: Callable[[], datetime] | None = None):
        self.ledger = ledger
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = threading.Lock()

    def _in_window(self, attempts: list[CooldownAttempt], action: ActionClass,
                   now: datetime) -> list[CooldownAttempt]:
        _, window = WINDOWS[action]
        cutoff = now - window
        return [a for a in attempts if _parse_ts(a.timestamp) > cutoff]

    def permit(self, service: str, action: ActionClass) -> bool:
        """True while fewer than the allowed attempts fall inside the trailing window."""
        action = ActionClass(action)
        limit, _ = WINDOWS[action]
        record = self.ledger.get(service)
        recent = self._in_window(record.attempts(action), action, self.clock())
        allowed = len(recent) < limit
        if not allowed:
            logger.info("Cooldown active for %s %s (%d in window)",
                        service, action.value, len(recent))
        return allowed

    def record(self, service: str, action: ActionClass, success: bool,
               error: str | None = None) -> CooldownAttempt:
        """Append an attempt. Failed attempts count against the window too."""
        action = ActionClass(action)
        attempt = CooldownAttempt(
            timestamp=self.clock().isoformat(), success=success, error=error,
        )
        with self._lock:
            records = self.ledger.load()
            record = records.setdefault(service, CooldownRecord(service=service))
            record.attempts(action).append(attempt)
            self.ledger.save(records)
        logger.info("Recorded %s attempt for %s (success=%s)", action.value, service, success)
        return attempt

    def on_health_evaluation(self, service: str, healthy: bool) -> CooldownRecord:
        """Track consecutive healthy checks; two in a row clear the service's history."""
        with self._lock:
            records = self.ledger.load()
            record = records.setdefault(service, CooldownRecord(service=service))
            if healthy:
                record.consecutive_healthy += 1
                if record.consecutive_healthy >= HEALTHY_STREAK_TO_RESET:
                    record.restarts.clear()
                    record.redeploys.clear()
                    record.consecutive_healthy = 0
                    logger.info("%s healthy twice in a row; cooldown history cleared", service)
            else:
                record.consecutive_healthy = 0
            self.ledger.save(records)
        return record

    def prune(self, margin: timedelta = DEFAULT_PRUNE_MARGIN) -> int:
        """Drop attempts older than the longest window plus margin. Returns count removed."""
        longest = max(window for _, window in WINDOWS.values())
        cutoff = self.clock() - longest - margin
        removed = 0
        with self._lock:
            records = self.ledger.load()
            for record in records.values():
                for attempts in (record.restarts, record.redeploys):
                    keep = [a for a in attempts if _parse_ts(a.timestamp) >= cutoff]
                    removed += len(attempts) - len(keep)
                    attempts[:] = keep
            if removed:
                self.ledger.save(records)
        return removed

    def summary(self, service: str) -> CooldownSummary:
        return self._summarize(self.ledger.get(service), self.clock())

    def summaries(self) -> list[CooldownSummary]:
        now = self.clock()
        return [self._summarize(rec, now) for _, rec in sorted(self.ledger.load().items())]

    def _summarize(self, record: CooldownRecord, now: datetime) -> CooldownSummary:
        restarts = self._in_window(record.restarts, ActionClass.RESTART, now)
        redeploys = self._in_window(record.redeploys, ActionClass.REDEPLOY, now)
        all_attempts = record.restarts + record.redeploys
        last = max((a.timestamp for a in all_attempts), key=_parse_ts, default=None)
        return CooldownSummary(
            service=record.service,
            restarts_in_window=len(restarts),
            redeploys_in_window=len(redeploys),
            restart_permitted=len(restarts) < WINDOWS[ActionClass.RESTART][0],
            redeploy_permitted=len(redeploys) < WINDOWS[ActionClass.REDEPLOY][0],
            consecutive_healthy=record.consecutive_healthy,
            last_attempt=last,
        )
