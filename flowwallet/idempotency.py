"""Idempotency-key checking for POST requests and the stores that back it."""

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Dict, Sequence

import redis
from werkzeug.wrappers import Response

log = logging.getLogger(__name__)

_TABLE = "idempotency_keys"


class IdempotencyStoreType(IntEnum):
    LOCAL = 0
    SHARED = 1
    REDIS = 2

    def __str__(self) -> str:
        return self.name.lower()


@dataclass
class IdempotencyHandlerOptions:
    """Paths that skip the check and how long a used key stays taken (seconds)."""

    ignore_paths: Sequence[str] = field(default_factory=tuple)
    expiry: float = 0.0


class LocalIdempotencyStore:
    """In-memory key store, mainly for tests and single-process use."""

    def __init__(self):
        self._keys: Dict[str, float] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> bool:
        """Tell whether the key is in use; an expired key is dropped."""
        with self._lock:
            expires = self._keys.get(key)
            if expires is None:
                return False
            now = time.time()
            if expires > now:
                return True
            if expires < now:
                del self._keys[key]
            return False

    def set(self, key: str, expiry: float) -> None:
        with self._lock:
            self._keys[key] = time.time() + expiry


class RedisIdempotencyStore:
    """Key store on a Redis connection; keys expire on the server."""

    def __init__(self, conn, prefix: str = "idempotencykey"):
        self.conn = conn
        self.prefix = prefix

    @classmethod
    def from_url(cls, url: str) -> "RedisIdempotencyStore":
        return cls(redis.Redis.from_url(url))

    def _prefixed_key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    def get(self, key: str) -> bool:
        return bool(self.conn.exists(self._prefixed_key(key)))

    def set(self, key: str, expiry: float) -> None:
        result = self.conn.psetex(self._prefixed_key(key), int(expiry * 1000), 1)
        if result not in (True, "OK", b"OK"):
            raise RuntimeError(f"failed to set key: {result!r}")


class SqlIdempotencyStore:
    """Key store in an SQL table, using a DB-API connection with qmark parameters."""

    def __init__(self, connection):
        self.connection = connection
        self._lock = threading.Lock()
        with self._lock:
            self.connection.execute(
                f"CREATE TABLE IF NOT EXISTS {_TABLE} "
                "(key TEXT PRIMARY KEY, expiry_date REAL)"
            )
            self.connection.commit()

    def get(self, key: str) -> bool:
        with self._lock:
            row = self.connection.execute(
                f"SELECT 1 FROM {_TABLE} WHERE key = ? AND expiry_date > ? LIMIT 1",
                (key, time.time()),
            ).fetchone()
        return row is not None

    def set(self, key: str, expiry: float) -> None:
        """Store the key, or move its expiry date if it exists."""
        with self._lock:
            self.connection.execute(
                f"INSERT INTO {_TABLE} (key, expiry_date) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET expiry_date = excluded.expiry_date",
                (key, time.time() + expiry),
            )
            self.connection.commit()

    def prune(self) -> None:
        """Delete all expired keys."""
        with self._lock:
            self.connection.execute(
                f"DELETE FROM {_TABLE} WHERE expiry_date < ?", (time.time(),)
            )
            self.connection.commit()


def _error_response(message: str, status: int) -> Response:
    response = Response(message + "\n", status=status, content_type="text/plain; charset=utf-8")
    response.headers["X-Content-Type-Options"] = "nosniff"
    return response


def idempotency_handler(app, options: IdempotencyHandlerOptions, store):
    """Wrap a WSGI app so that each POST needs a fresh Idempotency-Key header."""

    def handler(environ, start_response):
        path = environ.get("PATH_INFO", "")
        if any(path.startswith(prefix) for prefix in options.ignore_paths):
            return app(environ, start_response)
        if environ.get("REQUEST_METHOD") != "POST":
            return app(environ, start_response)

        key = environ.get("HTTP_IDEMPOTENCY_KEY", "")
        if not key:
            response = _error_response("Idempotency-Key header not found", 400)
            return response(environ, start_response)

        try:
            exists = store.get(key)
        except Exception as err:
            log.warning("Error while reading idempotency key from storage key=%s: %s", key, err)
            response = _error_response("Error while reading idempotency key", 500)
            return response(environ, start_response)

        if exists:
            response = _error_response(f"Idempotency-Key conflict, key: {key}", 409)
            return response(environ, start_response)

        try:
            store.set(key, options.expiry)
        except Exception as err:
            log.warning("Error while saving used idempotency key key=%s: %s", key, err)
            response = _error_response("Error while saving used idempotency key", 500)
            return response(environ, start_response)

        return app(environ, start_response)

    return handler