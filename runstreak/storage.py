from __future__ import annotations

import json
import logging
import sqlite3
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Protocol

import redis

from .config import Settings
from .dates import parse_utc
from .errors import StorageUnavailableError


logger = logging.getLogger(__name__)

REDIS_KEY_PREFIX = "runstreak:"
_REDIS_RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _utc_now_iso() -> str:
    return _utc_now().isoformat()


def _to_json_string(value: Any) -> str:
    return json.dumps(value, sort_keys=True)


def _from_json_string(value_json: str) -> Any:
    return json.loads(value_json)


class StoreBackend(Protocol):
    name: str

    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value_json: str) -> None: ...

    def delete(self, key: str) -> None: ...

    def exists(self, key: str) -> bool: ...

    def keys(self, prefix: str) -> list[str]: ...

    def ping(self) -> None: ...

    def acquire_lock(self, lock_name: str, owner: str, ttl_seconds: int, now: datetime) -> bool: ...

    def release_lock(self, lock_name: str, owner: str) -> None: ...

    def lock_owner(self, lock_name: str, now: datetime) -> str | None: ...


class SqliteBackend:
    name = "sqlite"

    def __init__(self, db_path: Path):
        self.db_path = db_path

    def _connect(self) -> sqlite3.Connection:
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(self.db_path, timeout=30)
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA synchronous=NORMAL;")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS runtime_kv (
                    key TEXT PRIMARY KEY,
                    value_json TEXT NOT NULL,
                    updated_at_utc TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS runtime_locks (
                    lock_name TEXT PRIMARY KEY,
                    owner TEXT NOT NULL,
                    acquired_at_utc TEXT NOT NULL,
                    expires_at_utc TEXT NOT NULL
                )
                """
            )
        except (OSError, sqlite3.Error) as exc:
            raise StorageUnavailableError(f"sqlite store unavailable at {self.db_path}: {exc}") from exc
        return conn

    def _run(self, sql: str, params: tuple[Any, ...] = ()) -> list[tuple[Any, ...]]:
        conn = self._connect()
        try:
            with conn:
                return conn.execute(sql, params).fetchall()
        except sqlite3.Error as exc:
            raise StorageUnavailableError(f"sqlite store error: {exc}") from exc
        finally:
            conn.close()

    def get(self, key: str) -> str | None:
        rows = self._run("SELECT value_json FROM runtime_kv WHERE key = ? LIMIT 1", (key,))
        return str(rows[0][0]) if rows else None

    def set(self, key: str, value_json: str) -> None:
        self._run(
            """
            INSERT INTO runtime_kv (key, value_json, updated_at_utc)
            VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET
                value_json = excluded.value_json,
                updated_at_utc = excluded.updated_at_utc
            """,
            (key, value_json, _utc_now_iso()),
        )

    def delete(self, key: str) -> None:
        self._run("DELETE FROM runtime_kv WHERE key = ?", (key,))

    def exists(self, key: str) -> bool:
        return bool(self._run("SELECT 1 FROM runtime_kv WHERE key = ? LIMIT 1", (key,)))

    def keys(self, prefix: str) -> list[str]:
        rows = self._run(
            "SELECT key FROM runtime_kv WHERE substr(key, 1, ?) = ? ORDER BY key",
            (len(prefix), prefix),
        )
        return [str(row[0]) for row in rows]

    def ping(self) -> None:
        self._run("SELECT 1")

    def acquire_lock(self, lock_name: str, owner: str, ttl_seconds: int, now: datetime) -> bool:
        expires = now + timedelta(seconds=ttl_seconds)
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT owner, expires_at_utc FROM runtime_locks WHERE lock_name = ? LIMIT 1",
                (lock_name,),
            ).fetchone()
            if row:
                expires_at = parse_utc(row[1])
                if expires_at and expires_at > now and str(row[0]) != owner:
                    conn.rollback()
                    return False
            conn.execute(
                """
                INSERT INTO runtime_locks (lock_name, owner, acquired_at_utc, expires_at_utc)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(lock_name) DO UPDATE SET
                    owner = excluded.owner,
                    acquired_at_utc = excluded.acquired_at_utc,
                    expires_at_utc = excluded.expires_at_utc
                """,
                (lock_name, owner, now.isoformat(), expires.isoformat()),
            )
            conn.commit()
            return True
        except sqlite3.Error as exc:
            raise StorageUnavailableError(f"sqlite lock error: {exc}") from exc
        finally:
            conn.close()

    def release_lock(self, lock_name: str, owner: str) -> None:
        self._run(
            "DELETE FROM runtime_locks WHERE lock_name = ? AND owner = ?",
            (lock_name, owner),
        )

    def lock_owner(self, lock_name: str, now: datetime) -> str | None:
        rows = self._run(
            "SELECT owner, expires_at_utc FROM runtime_locks WHERE lock_name = ? LIMIT 1",
            (lock_name,),
        )
        if not rows:
            return None
        expires_at = parse_utc(rows[0][1])
        if expires_at is not None and expires_at <= now:
            return None
        return str(rows[0][0]).strip() or None


class RedisBackend:
    name = "redis"

    def __init__(self, url: str, *, client: redis.Redis | None = None):
        self.url = url
        self.client = client or redis.Redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=5,
            socket_connect_timeout=5,
        )

    def _key(self, key: str) -> str:
        return f"{REDIS_KEY_PREFIX}{key}"

    def _lock_key(self, lock_name: str) -> str:
        return f"{REDIS_KEY_PREFIX}lock:{lock_name}"

    def _call(self, method: str, *args: Any, **kwargs: Any) -> Any:
        try:
            return getattr(self.client, method)(*args, **kwargs)
        except redis.RedisError as exc:
            raise StorageUnavailableError(f"redis {method} failed: {exc}") from exc

    def get(self, key: str) -> str | None:
        value = self._call("get", self._key(key))
        return str(value) if value is not None else None

    def set(self, key: str, value_json: str) -> None:
        self._call("set", self._key(key), value_json)

    def delete(self, key: str) -> None:
        self._call("delete", self._key(key))

    def exists(self, key: str) -> bool:
        return bool(self._call("exists", self._key(key)))

    def keys(self, prefix: str) -> list[str]:
        matches = self._call("scan_iter", match=f"{REDIS_KEY_PREFIX}{prefix}*")
        try:
            found = [str(item)[len(REDIS_KEY_PREFIX):] for item in matches]
        except redis.RedisError as exc:
            raise StorageUnavailableError(f"redis scan failed: {exc}") from exc
        return sorted(key for key in found if not key.startswith("lock:"))

    def ping(self) -> None:
        self._call("ping")

    def acquire_lock(self, lock_name: str, owner: str, ttl_seconds: int, now: datetime) -> bool:
        key = self._lock_key(lock_name)
        if self._call("set", key, owner, nx=True, ex=ttl_seconds):
            return True
        if self._call("get", key) == owner:
            self._call("expire", key, ttl_seconds)
            return True
        return False

    def release_lock(self, lock_name: str, owner: str) -> None:
        self._call("eval", _REDIS_RELEASE_SCRIPT, 1, self._lock_key(lock_name), owner)

    def lock_owner(self, lock_name: str, now: datetime) -> str | None:
        owner = self._call("get", self._lock_key(lock_name))
        return str(owner) if owner else None


class MemoryBackend:
    name = "memory"

    def __init__(self) -> None:
        self._values: dict[str, str] = {}
        self._locks: dict[str, tuple[str, datetime]] = {}
        self._guard = threading.Lock()

    def get(self, key: str) -> str | None:
        with self._guard:
            return self._values.get(key)

    def set(self, key: str, value_json: str) -> None:
        with self._guard:
            self._values[key] = value_json

    def delete(self, key: str) -> None:
        with self._guard:
            self._values.pop(key, None)

    def exists(self, key: str) -> bool:
        with self._guard:
            return key in self._values

    def keys(self, prefix: str) -> list[str]:
        with self._guard:
            return sorted(key for key in self._values if key.startswith(prefix))

    def ping(self) -> None:
        return None

    def acquire_lock(self, lock_name: str, owner: str, ttl_seconds: int, now: datetime) -> bool:
        with self._guard:
            current = self._locks.get(lock_name)
            if current and current[1] > now and current[0] != owner:
                return False
            self._locks[lock_name] = (owner, now + timedelta(seconds=ttl_seconds))
            return True

    def release_lock(self, lock_name: str, owner: str) -> None:
        with self._guard:
            current = self._locks.get(lock_name)
            if current and current[0] == owner:
                del self._locks[lock_name]

    def lock_owner(self, lock_name: str, now: datetime) -> str | None:
        with self._guard:
            current = self._locks.get(lock_name)
        if not current or current[1] <= now:
            return None
        return current[0]


class StateStore:
    """JSON key-value store that degrades to process memory when its backend fails.

    Once degraded the store stays in memory for the life of the process so
    reads never mix stale backend values with newer in-memory writes.
    """

    def __init__(self, backend: StoreBackend):
        self.backend: StoreBackend = backend
        self.primary_name = backend.name
        self.degraded_reason: str | None = None
        self._switch_guard = threading.Lock()

    @property
    def degraded(self) -> bool:
        return self.degraded_reason is not None

    def _degrade(self, exc: StorageUnavailableError) -> None:
        with self._switch_guard:
            if self.degraded:
                return
            self.degraded_reason = str(exc)
            self.backend = MemoryBackend()
        logger.warning(
            "State store '%s' unavailable (%s). Falling back to in-memory state; changes will not survive a restart.",
            self.primary_name,
            exc,
        )

    def _call(self, method: str, *args: Any) -> Any:
        try:
            return getattr(self.backend, method)(*args)
        except StorageUnavailableError as exc:
            self._degrade(exc)
            return getattr(self.backend, method)(*args)

    def get(self, key: str, default: Any = None) -> Any:
        raw = self._call("get", key)
        if raw is None:
            return default
        try:
            return _from_json_string(raw)
        except (json.JSONDecodeError, TypeError, ValueError):
            logger.warning("Discarding unreadable value for key '%s'.", key)
            return default

    def set(self, key: str, value: Any) -> None:
        self._call("set", key, _to_json_string(value))

    def set_many(self, values: dict[str, Any]) -> None:
        for key, value in values.items():
            self.set(key, value)

    def delete(self, key: str) -> None:
        self._call("delete", key)

    def exists(self, key: str) -> bool:
        return bool(self._call("exists", key))

    def keys(self, prefix: str = "") -> list[str]:
        return list(self._call("keys", prefix))

    def acquire_lock(self, lock_name: str, owner: str, ttl_seconds: int, now_utc: datetime | None = None) -> bool:
        now = now_utc.astimezone(timezone.utc) if now_utc else _utc_now()
        return bool(self._call("acquire_lock", lock_name, owner, max(1, int(ttl_seconds)), now))

    def release_lock(self, lock_name: str, owner: str) -> None:
        self._call("release_lock", lock_name, owner)

    def lock_owner(self, lock_name: str) -> str | None:
        return self._call("lock_owner", lock_name, _utc_now())

    def health_check(self) -> dict[str, Any]:
        try:
            self.backend.ping()
            reachable = True
        except StorageUnavailableError as exc:
            self._degrade(exc)
            reachable = False
        return {
            "backend": self.backend.name,
            "primary": self.primary_name,
            "reachable": reachable and not self.degraded,
            "degraded": self.degraded,
            "degraded_reason": self.degraded_reason,
            "durable": not self.degraded,
        }


def build_store(settings: Settings) -> StateStore:
    if settings.redis_url:
        return StateStore(RedisBackend(settings.redis_url))
    return StateStore(SqliteBackend(settings.runtime_db_file))
