"""
Shared Redis connection with graceful degradation.

Every caller that touches Redis goes through ``RedisConnection.with_fallback``
so that an unreachable server degrades to a local fallback instead of failing
the execution. After a failure the connection stays marked unavailable for
``retry_after_s`` seconds before another connect attempt is made.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, TypeVar

import redis
from redis.exceptions import RedisError

from threadloop.config import RedisSettings

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RedisConnection:
    def __init__(
        self,
        settings: RedisSettings,
        client: Any | None = None,
        retry_after_s: float = 5.0,
    ) -> None:
        self.settings = settings
        self.retry_after_s = retry_after_s
        self._client = client
        self._available = client is not None
        self._last_failure = 0.0
        self._guard = threading.Lock()

    def _connect(self) -> Any | None:
        if not self.settings.enabled:
            return None
        if self._client is not None and self._available:
            return self._client
        if time.monotonic() - self._last_failure < self.retry_after_s and self._last_failure:
            return None
        with self._guard:
            if self._client is None:
                self._client = redis.Redis.from_url(
                    self.settings.url,
                    socket_connect_timeout=self.settings.socket_timeout_s,
                    socket_timeout=self.settings.socket_timeout_s,
                    decode_responses=True,
                )
            try:
                self._client.ping()
            except (RedisError, OSError) as exc:
                logger.error("[REDIS] connection failed: %s", exc)
                self.mark_unavailable()
                return None
            if not self._available:
                logger.info("[REDIS] connected: %s", self.settings.url)
            self._available = True
            return self._client

    def client(self) -> Any | None:
        """Return a live client, or None when Redis is disabled or unreachable."""
        return self._connect()

    def mark_unavailable(self) -> None:
        self._available = False
        self._last_failure = time.monotonic()

    def is_available(self) -> bool:
        return self._connect() is not None

    def with_fallback(
        self,
        operation: Callable[[Any], T],
        fallback: Callable[[], T],
        name: str,
    ) -> T:
        client = self._connect()
        if client is None:
            logger.debug("[REDIS] unavailable, using fallback for %s", name)
            return fallback()
        try:
            started = time.monotonic()
            result = operation(client)
            logger.debug(
                "[REDIS] %s completed in %.1fms", name, (time.monotonic() - started) * 1000
            )
            return result
        except (RedisError, OSError) as exc:
            logger.warning("[REDIS] %s failed, using fallback: %s", name, exc)
            self.mark_unavailable()
            return fallback()

    def best_effort(self, operation: Callable[[Any], T], name: str) -> T | None:
        """Run an operation whose failure is logged and otherwise ignored."""
        client = self._connect()
        if client is None:
            return None
        try:
            return operation(client)
        except (RedisError, OSError) as exc:
            logger.error("[REDIS] %s failed: %s", name, exc)
            self.mark_unavailable()
            return None

    def close(self) -> None:
        if self._client is not None:
            try:
                self._client.close()
            except (RedisError, OSError) as exc:
                logger.debug("[REDIS] close failed: %s", exc)
        self._client = None
        self._available = False
