"""
Cache Warmer - Per-Session Keep-Alive for the Vendor Prompt Cache
==================================================================

The vendor evicts cached prefixes after a few minutes of inactivity. While
a session is open, a per-session task issues a minimal completion (one
output token) over the stable prefix every ``interval_seconds``.

Lifecycle:
- ``start`` on session open (idempotent per session id)
- ``touch`` on every user request
- ``stop`` on session close; cancels and awaits the task
- A session idle for longer than ``idle_timeout_seconds`` tears itself down

The registry is an explicit object owned by whoever owns session
lifecycle; entries are keyed by session id.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from loguru import logger

from config.constants import TOKEN_LIMITS
from config.settings import CacheWarmerSettings
from infrastructure.llm_client import AbstractLLMClient
from infrastructure.monitoring import MetricsCollector

PingFn = Callable[[str], Awaitable[None]]

WARMING_MESSAGE = [{"role": "user", "content": "."}]


def make_vendor_ping(builder, llm_client: AbstractLLMClient) -> PingFn:
    """Ping that re-sends the cached prefix and asks for a single token."""

    async def ping(partition_id: str) -> None:
        segments = await builder.build_prefix()
        await llm_client.complete(
            segments, WARMING_MESSAGE, max_tokens=TOKEN_LIMITS.WARMING_MAX_TOKENS
        )

    return ping


@dataclass
class WarmSession:
    session_id: str
    partition_id: str
    last_activity: float
    owner: Optional[str] = None
    pings: int = 0
    task: Optional[asyncio.Task] = field(default=None, repr=False)


class CacheWarmer:
    """Registry of keep-alive tasks, one per open session."""

    def __init__(
        self,
        ping: PingFn,
        interval_seconds: float = 240,
        idle_timeout_seconds: float = 600,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        metrics_collector: Optional[MetricsCollector] = None,
        enabled: bool = True,
    ):
        self._ping = ping
        self.interval_seconds = interval_seconds
        self.idle_timeout_seconds = idle_timeout_seconds
        self._clock = clock
        self._sleep = sleep
        self._metrics = metrics_collector
        self.enabled = enabled
        self._sessions: dict[str, WarmSession] = {}

    @classmethod
    def from_settings(
        cls,
        ping: PingFn,
        warmer_settings: CacheWarmerSettings,
        metrics_collector: Optional[MetricsCollector] = None,
    ) -> "CacheWarmer":
        return cls(
            ping,
            interval_seconds=warmer_settings.interval_seconds,
            idle_timeout_seconds=warmer_settings.idle_timeout_seconds,
            metrics_collector=metrics_collector,
            enabled=warmer_settings.enabled,
        )

    def start(self, session_id: str, partition_id: str, owner: Optional[str] = None) -> bool:
        """Start warming a session; returns False when already running or disabled."""
        if not self.enabled:
            return False
        existing = self._sessions.get(session_id)
        if existing is not None:
            existing.last_activity = self._clock()
            return False

        session = WarmSession(session_id, partition_id, last_activity=self._clock(), owner=owner)
        session.task = asyncio.create_task(self._run(session), name=f"cache-warmer:{session_id}")
        self._sessions[session_id] = session
        self._publish_gauge()
        logger.info(f"Cache warmer started | session={session_id} | partition={partition_id}")
        return True

    def touch(self, session_id: str) -> bool:
        session = self._sessions.get(session_id)
        if session is None:
            return False
        session.last_activity = self._clock()
        return True

    async def stop(self, session_id: str) -> bool:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False

        if session.task is not None and not session.task.done():
            session.task.cancel()
            try:
                await session.task
            except asyncio.CancelledError:
                pass

        self._publish_gauge()
        logger.info(f"Cache warmer stopped | session={session_id} | pings={session.pings}")
        return True

    async def stop_all(self) -> None:
        for session_id in list(self._sessions):
            await self.stop(session_id)

    def active_sessions(self) -> list[str]:
        return sorted(self._sessions)

    def is_active(self, session_id: str) -> bool:
        return session_id in self._sessions

    def owner_of(self, session_id: str) -> Optional[str]:
        session = self._sessions.get(session_id)
        return session.owner if session is not None else None

    async def _run(self, session: WarmSession) -> None:
        try:
            while True:
                await self._sleep(self.interval_seconds)

                idle = self._clock() - session.last_activity
                if idle >= self.idle_timeout_seconds:
                    logger.info(f"Cache warmer idle teardown | session={session.session_id} | idle={idle:.0f}s")
                    break

                try:
                    await self._ping(session.partition_id)
                    session.pings += 1
                    self._record_ping("success")
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.warning(f"Cache warmer ping failed | session={session.session_id} | error={e}")
                    self._record_ping("error")
        finally:
            if self._sessions.get(session.session_id) is session:
                del self._sessions[session.session_id]
                self._publish_gauge()

    def _record_ping(self, status: str) -> None:
        if self._metrics:
            self._metrics.record_warmer_ping(status)

    def _publish_gauge(self) -> None:
        if self._metrics:
            self._metrics.set_warmer_sessions(len(self._sessions))
