"""Fixed-window rate limiting.

A limiter applies named rules (``standard``, ``email``, ``auth``...) to an
identifier such as a user id or client IP.  Counting is delegated to a
counter store so the same limiter works in one process (in memory) or
across processes sharing a SQLite file.

Window semantics: the first hit opens a window of ``window_seconds``.
Hits within the window are counted up to ``max_requests``; once at the
limit, further hits are refused (and not counted) until the window ends.
"""

from __future__ import annotations

import logging
import math
import sqlite3
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol

from .config import NudgeConfig, RateLimitRule
from .errors import ConfigurationError, RateLimitExceeded

logger = logging.getLogger(__name__)

# Expired in-memory entries are swept at most this often.
CLEANUP_INTERVAL_SECONDS = 300


@dataclass(frozen=True)
class RateLimitResult:
    success: bool
    remaining: int
    reset_at: float          # epoch seconds

    def retry_after(self, now: Optional[float] = None) -> int:
        now = time.time() if now is None else now
        return max(0, math.ceil(self.reset_at - now))


class CounterStore(Protocol):
    def hit(self, key: str, window_seconds: int, limit: int, now: float) -> RateLimitResult:
        """Count one request against ``key`` and report whether it is allowed."""
        ...


# ---------------------------------------------------------------------------
# Counter stores
# ---------------------------------------------------------------------------

class InMemoryCounterStore:
    """Per-process counters.  Fine for a single worker."""

    def __init__(self) -> None:
        self._entries: dict[str, tuple[int, float]] = {}
        self._lock = threading.Lock()
        self._last_cleanup = 0.0

    def _cleanup(self, now: float) -> None:
        if now - self._last_cleanup < CLEANUP_INTERVAL_SECONDS:
            return
        self._last_cleanup = now
        expired = [k for k, (_, reset_at) in self._entries.items() if reset_at < now]
        for key in expired:
            del self._entries[key]

    def hit(self, key: str, window_seconds: int, limit: int, now: float) -> RateLimitResult:
        with self._lock:
            self._cleanup(now)
            entry = self._entries.get(key)
            if entry is None or entry[1] < now:
                reset_at = now + window_seconds
                self._entries[key] = (1, reset_at)
                return RateLimitResult(True, limit - 1, reset_at)

            count, reset_at = entry
            if count >= limit:
                return RateLimitResult(False, 0, reset_at)

            count += 1
            self._entries[key] = (count, reset_at)
            return RateLimitResult(True, limit - count, reset_at)


_COUNTER_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS rate_limit_counters (
    key         TEXT PRIMARY KEY,
    count       INTEGER NOT NULL DEFAULT 0,
    reset_at    REAL NOT NULL
);
"""


class SQLiteCounterStore:
    """Counters shared by every process using the same database file."""

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = self._get_conn()
        try:
            conn.executescript(_COUNTER_SCHEMA_SQL)
        finally:
            conn.close()

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), isolation_level=None)
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA busy_timeout=5000;")
        return conn

    def hit(self, key: str, window_seconds: int, limit: int, now: float) -> RateLimitResult:
        conn = self._get_conn()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                row = conn.execute(
                    "SELECT count, reset_at FROM rate_limit_counters WHERE key = ?", (key,),
                ).fetchone()

                if row is None or row[1] < now:
                    reset_at = now + window_seconds
                    conn.execute(
                        """INSERT INTO rate_limit_counters (key, count, reset_at) VALUES (?, 1, ?)
                           ON CONFLICT (key) DO UPDATE SET count = 1, reset_at = excluded.reset_at""",
                        (key, reset_at),
                    )
                    result = RateLimitResult(True, limit - 1, reset_at)
                elif row[0] >= limit:
                    result = RateLimitResult(False, 0, row[1])
                else:
                    conn.execute(
                        "UPDATE rate_limit_counters SET count = count + 1 WHERE key = ?", (key,),
                    )
                    result = RateLimitResult(True, limit - row[0] - 1, row[1])
            except sqlite3.Error:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
            return result
        finally:
            conn.close()


# ---------------------------------------------------------------------------
# Limiter
# ---------------------------------------------------------------------------

class RateLimiter:
    """Applies named fixed-window rules over a counter store."""

    def __init__(self, store: CounterStore, rules: dict[str, RateLimitRule]) -> None:
        self.store = store
        self.rules = rules

    def _rule(self, rule_name: str) -> RateLimitRule:
        rule = self.rules.get(rule_name)
        if rule is None:
            raise ConfigurationError(f"Unknown rate limit rule: {rule_name!r}")
        return rule

    def check(self, rule_name: str, identifier: str, now: Optional[float] = None) -> RateLimitResult:
        rule = self._rule(rule_name)
        now = time.time() if now is None else now
        return self.store.hit(f"{rule_name}:{identifier}", rule.window_seconds, rule.max_requests, now)

    def enforce(self, rule_name: str, identifier: str, now: Optional[float] = None) -> RateLimitResult:
        """Like ``check``, but raise RateLimitExceeded when refused."""
        result = self.check(rule_name, identifier, now)
        if not result.success:
            logger.warning("Rate limit %r exceeded for %s", rule_name, identifier)
            raise RateLimitExceeded(self._rule(rule_name).message, reset_at=result.reset_at)
        return result


def build_rate_limiter(config: NudgeConfig) -> RateLimiter:
    backend = config.rate_limits.backend
    if backend == "memory":
        store: CounterStore = InMemoryCounterStore()
    elif backend == "sqlite":
        store = SQLiteCounterStore(config.database.resolved_path)
    else:
        raise ConfigurationError(f"Unknown rate limit backend: {backend!r}")
    return RateLimiter(store, config.rate_limits.rules)
