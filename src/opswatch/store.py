"""OpsStore: SQLite persistence for sessions, events and memories (WAL mode)."""

import logging
import math
import sqlite3
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path

from opswatch.models import (
    Event, EventLevel, Memory, MemoryCategory, ResultInfo, Session,
    SessionStatus, TriggerKind,
)

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2

# Memories below this confidence are never active.
ACTIVE_THRESHOLD = 0.3
DEFAULT_CONFIDENCE = 0.7
STALE_GRACE_DAYS = 30
STALE_DECAY_PER_WEEK = 0.1

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS sessions (
    id                INTEGER PRIMARY KEY AUTOINCREMENT,
    tier              INTEGER NOT NULL,
    model             TEXT NOT NULL,
    status            TEXT NOT NULL DEFAULT 'running'
                      CHECK(status IN ('running','succeeded','failed','killed')),
    started_at        TEXT NOT NULL,
    ended_at          TEXT,
    exit_code         INTEGER,
    trigger           TEXT NOT NULL DEFAULT 'manual'
                      CHECK(trigger IN ('scheduled','manual','api','alert','escalation')),
    prompt_text       TEXT NOT NULL DEFAULT '',
    log_path          TEXT,
    response          TEXT,
    cost_usd          REAL,
    num_turns         INTEGER,
    duration_ms       INTEGER,
    parent_session_id INTEGER REFERENCES sessions(id),
    summary           TEXT
);

CREATE INDEX IF NOT EXISTS idx_sessions_started ON sessions(started_at);
CREATE INDEX IF NOT EXISTS idx_sessions_status  ON sessions(status);
CREATE INDEX IF NOT EXISTS idx_sessions_parent  ON sessions(parent_session_id);

CREATE TABLE IF NOT EXISTS events (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id  INTEGER REFERENCES sessions(id),
    level       TEXT NOT NULL CHECK(level IN ('info','warning','critical')),
    service     TEXT,
    message     TEXT NOT NULL,
    created_at  TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_events_created ON events(created_at);
CREATE INDEX IF NOT EXISTS idx_events_level   ON events(level);
CREATE INDEX IF NOT EXISTS idx_events_service ON events(service);

CREATE TABLE IF NOT EXISTS memories (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    service       TEXT,
    category      TEXT NOT NULL
                  CHECK(category IN ('timing','dependency','behavior','remediation','maintenance')),
    observation   TEXT NOT NULL,
    confidence    REAL NOT NULL DEFAULT 0.7
                  CHECK(confidence >= 0.0 AND confidence <= 1.0),
    active        INTEGER NOT NULL DEFAULT 1,
    created_at    TEXT NOT NULL,
    updated_at    TEXT NOT NULL,
    session_id    INTEGER REFERENCES sessions(id),
    tier          INTEGER,
    decayed_weeks INTEGER NOT NULL DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_memories_scope  ON memories(service, category);
CREATE INDEX IF NOT EXISTS idx_memories_active ON memories(active, confidence);

CREATE TABLE IF NOT EXISTS meta (
    key   TEXT PRIMARY KEY,
    value TEXT
);
"""


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse_iso(ts: str) -> datetime:
    dt = datetime.fromisoformat(ts.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def apply_confidence(active: bool, value: float, reactivate: bool = False) -> tuple[float, bool]:
    """Clamp a confidence value and derive the matching active flag.

    Dropping below the threshold deactivates. At or above it the flag is kept,
    unless ``reactivate`` asks for the memory to come back.
    """
    confidence = round(min(1.0, max(0.0, value)), 4)
    if confidence < ACTIVE_THRESHOLD:
        return confidence, False
    if reactivate:
        return confidence, True
    return confidence, active


class OpsStore:
    """SQLite-backed store shared by the supervisor and the query surfaces.

    One connection is used from several threads (the session reader thread,
    the summary thread and the caller), so every use of it is serialised
    through a re-entrant lock. Other processes open their own store and read
    concurrently thanks to WAL.
    """

    def __init__(self, db_path: Path):
        self.db_path = db_path
        self._conn: sqlite3.Connection | None = None
        self._migrated = False
        self._lock = threading.RLock()

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA foreign_keys=ON")
            self._conn.execute("PRAGMA busy_timeout=5000")
            self._conn.row_factory = sqlite3.Row
        if not self._migrated:
            self._migrate()
        return self._conn

    def close(self):
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def initialize(self) -> None:
        """Create tables and indexes."""
        with self._lock:
            self.conn.executescript(SCHEMA_SQL)
            if self.get_meta("schema_version") is None:
                self.set_meta("schema_version", str(SCHEMA_VERSION))

    def _migrate(self) -> None:
        """Run schema migrations if needed."""
        self._migrated = True
        tables = self._conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name='meta'"
        ).fetchone()
        if not tables:
            return

        current = self.get_meta("schema_version")
        version = int(current) if current else 1

        if version < 2:
            # v1 databases predate summaries and idempotent decay
            session_cols = {
                row[1] for row in self._conn.execute("PRAGMA table_info(sessions)").fetchall()
            }
            if "summary" not in session_cols:
                self._conn.execute("ALTER TABLE sessions ADD COLUMN summary TEXT")
            memory_cols = {
                row[1] for row in self._conn.execute("PRAGMA table_info(memories)").fetchall()
            }
            if "decayed_weeks" not in memory_cols:
                self._conn.execute(
                    "ALTER TABLE memories ADD COLUMN decayed_weeks INTEGER NOT NULL DEFAULT 0"
                )
            self.set_meta("schema_version", str(SCHEMA_VERSION))
            logger.info("Migrated %s to schema v%d", self.db_path, SCHEMA_VERSION)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_session(row: sqlite3.Row) -> Session:
        return Session(
            id=row["id"],
            tier=row["tier"],
            model=row["model"],
            status=SessionStatus(row["status"]),
            started_at=row["started_at"],
            ended_at=row["ended_at"],
            exit_code=row["exit_code"],
            trigger=TriggerKind(row["trigger"]),
            prompt_text=row["prompt_text"],
            log_path=row["log_path"],
            response=row["response"],
            cost_usd=row["cost_usd"],
            num_turns=row["num_turns"],
            duration_ms=row["duration_ms"],
            parent_session_id=row["parent_session_id"],
            summary=row["summary"],
        )

    def insert_session(self, session: Session) -> Session:
        """Insert a session in running state. Fills id and started_at."""
        if not session.started_at:
            session.started_at = _now_iso()
        session.status = SessionStatus.RUNNING
        with self._lock, self.conn:
            cur = self.conn.execute(
                "INSERT INTO sessions (tier, model, status, started_at, trigger, "
                "prompt_text, log_path, parent_session_id) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (session.tier, session.model, session.status.value, session.started_at,
                 session.trigger.value, session.prompt_text, session.log_path,
                 session.parent_session_id),
            )
            session.id = cur.lastrowid
        return session

    def set_session_log_path(self, session_id: int, log_path: str) -> None:
        with self._lock, self.conn:
            self.conn.execute(
                "UPDATE sessions SET log_path = ? WHERE id = ?", (log_path, session_id)
            )

    def finalize_session(
        self,
        session_id: int,
        status: SessionStatus,
        exit_code: int | None,
        result: ResultInfo | None = None,
        ended_at: str | None = None,
    ) -> Session:
        """Move a running session to its terminal status. Happens exactly once.

        Response, cost, turns and duration are written only for succeeded
        sessions; every other outcome leaves them NULL.
        """
        if status == SessionStatus.RUNNING:
            raise ValueError("Terminal status required")
        ended_at = ended_at or _now_iso()
        response = cost = turns = duration = None
        if status == SessionStatus.SUCCEEDED and result is not None:
            response = result.response
            cost = result.cost_usd
            turns = result.num_turns
            duration = result.duration_ms

        with self._lock, self.conn:
            cur = self.conn.execute(
                "UPDATE sessions SET status = ?, ended_at = ?, exit_code = ?, "
                "response = ?, cost_usd = ?, num_turns = ?, duration_ms = ? "
                "WHERE id = ? AND status = 'running'",
                (status.value, ended_at, exit_code, response, cost, turns, duration,
                 session_id),
            )
            if cur.rowcount == 0:
                raise ValueError(f"Session {session_id} is not running")
        return self.get_session(session_id)

    def update_session_summary(self, session_id: int, summary: str) -> None:
        with self._lock, self.conn:
            self.conn.execute(
                "UPDATE sessions SET summary = ? WHERE id = ?", (summary, session_id)
            )

    def get_session(self, session_id: int) -> Session | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM sessions WHERE id = ?", (session_id,)
            ).fetchone()
        return self._row_to_session(row) if row else None

    def list_sessions(self, limit: int = 50, offset: int = 0,
                      status: SessionStatus | None = None) -> list[Session]:
        """Newest first, paginated."""
        params: list = []
        where = "1=1"
        if status is not None:
            where = "status = ?"
            params.append(status.value)
        params.extend([limit, offset])
        with self._lock:
            rows = self.conn.execute(
                f"SELECT * FROM sessions WHERE {where} ORDER BY id DESC LIMIT ? OFFSET ?",
                params,
            ).fetchall()
        return [self._row_to_session(r) for r in rows]

    def count_sessions(self, status: SessionStatus | None = None) -> int:
        with self._lock:
            if status is None:
                row = self.conn.execute("SELECT COUNT(*) AS cnt FROM sessions").fetchone()
            else:
                row = self.conn.execute(
                    "SELECT COUNT(*) AS cnt FROM sessions WHERE status = ?", (status.value,)
                ).fetchone()
        return row["cnt"]

    def running_session(self) -> Session | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM sessions WHERE status = 'running' ORDER BY id DESC LIMIT 1"
            ).fetchone()
        return self._row_to_session(row) if row else None

    def mark_orphaned_sessions(self) -> int:
        """Fail sessions left running by a process that died. Returns count."""
        with self._lock, self.conn:
            cur = self.conn.execute(
                "UPDATE sessions SET status = 'failed', ended_at = ? WHERE status = 'running'",
                (_now_iso(),),
            )
        if cur.rowcount:
            logger.warning("Marked %d orphaned running session(s) as failed", cur.rowcount)
        return cur.rowcount

    def get_escalation_chain(self, session_id: int) -> list[Session]:
        """Return the chain of sessions from the root ancestor down to session_id."""
        sql = (
            "WITH RECURSIVE chain(id, depth) AS ("
            "  SELECT id, 0 FROM sessions WHERE id = ? "
            "  UNION ALL "
            "  SELECT s.parent_session_id, chain.depth + 1 FROM sessions s "
            "  JOIN chain ON s.id = chain.id WHERE s.parent_session_id IS NOT NULL"
            ") "
            "SELECT s.* FROM chain JOIN sessions s ON s.id = chain.id ORDER BY chain.depth DESC"
        )
        with self._lock:
            rows = self.conn.execute(sql, (session_id,)).fetchall()
        return [self._row_to_session(r) for r in rows]

    def get_child_sessions(self, session_id: int) -> list[Session]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM sessions WHERE parent_session_id = ? ORDER BY id",
                (session_id,),
            ).fetchall()
        return [self._row_to_session(r) for r in rows]

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_event(row: sqlite3.Row) -> Event:
        return Event(
            id=row["id"],
            session_id=row["session_id"],
            level=EventLevel(row["level"]),
            message=row["message"],
            service=row["service"],
            created_at=row["created_at"],
        )

    def insert_event(self, event: Event) -> Event:
        if not event.created_at:
            event.created_at = _now_iso()
        with self._lock, self.conn:
            cur = self.conn.execute(
                "INSERT INTO events (session_id, level, service, message, created_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (event.session_id, event.level.value, event.service, event.message,
                 event.created_at),
            )
            event.id = cur.lastrowid
        return event

    def list_events(
        self,
        levels: list[EventLevel] | None = None,
        service: str | None = None,
        since: str | None = None,
        session_id: int | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Event]:
        """Newest first with optional level/service/time filters."""
        conditions = []
        params: list = []

        if levels:
            placeholders = ",".join("?" for _ in levels)
            conditions.append(f"level IN ({placeholders})")
            params.extend(lv.value for lv in levels)

        if service:
            conditions.append("service = ?")
            params.append(service)

        if since:
            conditions.append("created_at >= ?")
            params.append(since)

        if session_id is not None:
            conditions.append("session_id = ?")
            params.append(session_id)

        where = " AND ".join(conditions) if conditions else "1=1"
        params.extend([limit, offset])
        with self._lock:
            rows = self.conn.execute(
                f"SELECT * FROM events WHERE {where} ORDER BY id DESC LIMIT ? OFFSET ?",
                params,
            ).fetchall()
        return [self._row_to_event(r) for r in rows]

    def count_events(self) -> int:
        with self._lock:
            row = self.conn.execute("SELECT COUNT(*) AS cnt FROM events").fetchone()
        return row["cnt"]

    # ------------------------------------------------------------------
    # Memories
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_memory(row: sqlite3.Row) -> Memory:
        return Memory(
            id=row["id"],
            category=MemoryCategory(row["category"]),
            observation=row["observation"],
            service=row["service"],
            confidence=row["confidence"],
            active=bool(row["active"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            session_id=row["session_id"],
            tier=row["tier"],
            decayed_weeks=row["decayed_weeks"],
        )

    def insert_memory(self, memory: Memory) -> Memory:
        """Insert a memory. Confidence is clamped and the active flag derived."""
        now = _now_iso()
        memory.created_at = memory.created_at or now
        memory.updated_at = memory.updated_at or memory.created_at
        memory.confidence, memory.active = apply_confidence(memory.active, memory.confidence)
        with self._lock, self.conn:
            cur = self.conn.execute(
                "INSERT INTO memories (service, category, observation, confidence, active, "
                "created_at, updated_at, session_id, tier, decayed_weeks) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 0)",
                (memory.service, memory.category.value, memory.observation,
                 memory.confidence, int(memory.active), memory.created_at,
                 memory.updated_at, memory.session_id, memory.tier),
            )
            memory.id = cur.lastrowid
        memory.decayed_weeks = 0
        return memory

    def get_memory(self, memory_id: int) -> Memory | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM memories WHERE id = ?", (memory_id,)
            ).fetchone()
        return self._row_to_memory(row) if row else None

    def list_memories(
        self,
        service: str | None = None,
        category: MemoryCategory | None = None,
        active: bool | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Memory]:
        """Highest confidence first."""
        conditions = []
        params: list = []
        if service:
            conditions.append("service = ?")
            params.append(service)
        if category is not None:
            conditions.append("category = ?")
            params.append(category.value)
        if active is not None:
            conditions.append("active = ?")
            params.append(int(active))

        where = " AND ".join(conditions) if conditions else "1=1"
        params.extend([limit, offset])
        with self._lock:
            rows = self.conn.execute(
                f"SELECT * FROM memories WHERE {where} "
                "ORDER BY confidence DESC, updated_at DESC, id ASC LIMIT ? OFFSET ?",
                params,
            ).fetchall()
        return [self._row_to_memory(r) for r in rows]

    def active_memories(self) -> list[Memory]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM memories WHERE active = 1 "
                "ORDER BY confidence DESC, updated_at DESC, id ASC"
            ).fetchall()
        return [self._row_to_memory(r) for r in rows]

    def find_candidates(self, service: str | None, category: MemoryCategory) -> list[Memory]:
        """Active memories sharing a scope and category, highest confidence first."""
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM memories WHERE active = 1 AND service IS ? AND category = ? "
                "ORDER BY confidence DESC, id ASC",
                (service, category.value),
            ).fetchall()
        return [self._row_to_memory(r) for r in rows]

    def set_confidence(self, memory_id: int, value: float, reactivate: bool = False) -> Memory:
        """Write a new confidence, refresh updated_at and reset the decay counter."""
        with self._lock, self.conn:
            current = self.get_memory(memory_id)
            if current is None:
                raise ValueError(f"Memory not found: {memory_id}")
            confidence, active = apply_confidence(current.active, value, reactivate)
            self.conn.execute(
                "UPDATE memories SET confidence = ?, active = ?, updated_at = ?, "
                "decayed_weeks = 0 WHERE id = ?",
                (confidence, int(active), _now_iso(), memory_id),
            )
        return self.get_memory(memory_id)

    def adjust_confidence(self, memory_id: int, delta: float) -> Memory:
        """Read-modify-write a confidence delta in one transaction."""
        with self._lock, self.conn:
            current = self.get_memory(memory_id)
            if current is None:
                raise ValueError(f"Memory not found: {memory_id}")
            return self.set_confidence(memory_id, current.confidence + delta)

    def update_memory(
        self,
        memory_id: int,
        observation: str | None = None,
        confidence: float | None = None,
        active: bool | None = None,
    ) -> Memory:
        """Operator edit. Raising confidence back to the threshold reactivates."""
        with self._lock, self.conn:
            current = self.get_memory(memory_id)
            if current is None:
                raise ValueError(f"Memory not found: {memory_id}")

            new_observation = observation if observation is not None else current.observation
            if not new_observation.strip():
                raise ValueError("Observation must not be empty")
            new_confidence = confidence if confidence is not None else current.confidence

            base_active = current.active if active is None else active
            reactivate = (
                active is None
                and confidence is not None
                and not current.active
                and current.confidence < ACTIVE_THRESHOLD
            )
            new_confidence, new_active = apply_confidence(base_active, new_confidence, reactivate)

            self.conn.execute(
                "UPDATE memories SET observation = ?, confidence = ?, active = ?, "
                "updated_at = ?, decayed_weeks = 0 WHERE id = ?",
                (new_observation, new_confidence, int(new_active), _now_iso(), memory_id),
            )
        return self.get_memory(memory_id)

    def delete_memory(self, memory_id: int) -> bool:
        with self._lock, self.conn:
            cur = self.conn.execute("DELETE FROM memories WHERE id = ?", (memory_id,))
        return cur.rowcount > 0

    def count_memories(self, active: bool | None = None) -> int:
        with self._lock:
            if active is None:
                row = self.conn.execute("SELECT COUNT(*) AS cnt FROM memories").fetchone()
            else:
                row = self.conn.execute(
                    "SELECT COUNT(*) AS cnt FROM memories WHERE active = ?", (int(active),)
                ).fetchone()
        return row["cnt"]

    def decay_stale_memories(
        self,
        now: datetime | None = None,
        grace_days: int = STALE_GRACE_DAYS,
        rate: float = STALE_DECAY_PER_WEEK,
    ) -> int:
        """Charge staleness decay to active memories untouched beyond the grace period.

        Each full week past the grace period costs ``rate`` confidence. Weeks
        already charged are remembered in ``decayed_weeks`` so repeated sweeps
        do not decay twice. Returns the number of memories changed.
        """
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(days=grace_days)
        changed = 0
        with self._lock, self.conn:
            rows = self.conn.execute(
                "SELECT * FROM memories WHERE active = 1 AND updated_at < ?",
                (cutoff.isoformat(),),
            ).fetchall()
            for row in rows:
                memory = self._row_to_memory(row)
                overdue = cutoff - _parse_iso(memory.updated_at)
                weeks = math.floor(overdue / timedelta(weeks=1))
                pending = weeks - memory.decayed_weeks
                if pending <= 0:
                    continue
                confidence, active = apply_confidence(
                    memory.active, memory.confidence - rate * pending
                )
                self.conn.execute(
                    "UPDATE memories SET confidence = ?, active = ?, decayed_weeks = ? "
                    "WHERE id = ?",
                    (confidence, int(active), weeks, memory.id),
                )
                changed += 1
        if changed:
            logger.info("Staleness sweep decayed %d memories", changed)
        return changed

    # ------------------------------------------------------------------
    # Meta
    # ------------------------------------------------------------------

    def get_meta(self, key: str) -> str | None:
        """Read from meta table."""
        with self._lock:
            row = self.conn.execute(
                "SELECT value FROM meta WHERE key = ?", (key,)
            ).fetchone()
        return row["value"] if row else None

    def set_meta(self, key: str, value: str) -> None:
        """Write to meta table (upsert)."""
        with self._lock, self.conn:
            self.conn.execute(
                "INSERT INTO meta (key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (key, value),
            )
