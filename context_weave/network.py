"""
Network-status oracle.

The embedding chain and the indexing pipeline consult ``is_online()`` before
attempting network calls, so an offline host short-circuits those paths
instead of waiting for them to time out.
"""

from __future__ import annotations

import asyncio
import logging
import time
from enum import StrEnum
from typing import Callable, Protocol

import httpx

from context_weave.config import NetworkConfig

LOG = logging.getLogger("network")


class NetworkStatus(StrEnum):
    ONLINE = "online"
    OFFLINE = "offline"
    UNRELIABLE = "unreliable"
    UNKNOWN = "unknown"


class NetworkStatusOracle(Protocol):
    def is_online(self) -> bool: ...


class StaticNetwork:
    """Oracle with a fixed answer; used for offline hosts and tests."""

    def __init__(self, online: bool = False) -> None:
        self.online = online

    def is_online(self) -> bool:
        return self.online


class NetworkMonitor:
    """
    Periodic connectivity probe with hysteresis.

    ``reliability_threshold`` consecutive successes are needed to report
    ONLINE and ``unreliable_threshold`` consecutive failures to report
    OFFLINE; a single failure while online downgrades to UNRELIABLE.
    """

    def __init__(self, config: NetworkConfig | None = None, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._config = config or NetworkConfig()
        self._client = httpx.AsyncClient(timeout=self._config.timeout_s, transport=transport)
        self._status = NetworkStatus.UNKNOWN
        self._successes = 0
        self._failures = 0
        self._offline_since: float | None = None
        self._listeners: list[Callable[[NetworkStatus], None]] = []
        self._task: asyncio.Task | None = None

    @property
    def status(self) -> NetworkStatus:
        return self._status

    def is_online(self) -> bool:
        return self._status == NetworkStatus.ONLINE

    def is_offline(self) -> bool:
        return self._status == NetworkStatus.OFFLINE

    def offline_minutes(self) -> int | None:
        if self._offline_since is None:
            return None
        return round((time.monotonic() - self._offline_since) / 60)

    def on_status_change(self, listener: Callable[[NetworkStatus], None]) -> Callable[[], None]:
        """Register *listener*; returns a callable that unregisters it."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    async def check_connectivity(self) -> bool:
        try:
            resp = await self._client.head(self._config.endpoint_url)
        except httpx.HTTPError as exc:
            self._record_failure(str(exc) or type(exc).__name__)
            return False
        if resp.is_success:
            self._record_success()
            return True
        self._record_failure(f"status code {resp.status_code}")
        return False

    async def start_monitoring(self) -> None:
        if self._task is not None:
            self._task.cancel()
        await self.check_connectivity()
        self._task = asyncio.create_task(self._monitor_loop())
        LOG.info("Network monitoring started (every %.0fs)", self._config.check_interval_s)

    async def stop_monitoring(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self._client.aclose()
        LOG.info("Network monitoring stopped")

    async def _monitor_loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.check_interval_s)
            await self.check_connectivity()

    def _record_success(self) -> None:
        self._successes += 1
        self._failures = 0
        previous = self._status
        if self._successes >= self._config.reliability_threshold:
            self._status = NetworkStatus.ONLINE
            if previous in (NetworkStatus.OFFLINE, NetworkStatus.UNRELIABLE):
                self._offline_since = None
                self._notify(previous)
        LOG.debug("Network check ok: status=%s successes=%d", self._status, self._successes)

    def _record_failure(self, reason: str) -> None:
        self._failures += 1
        self._successes = 0
        previous = self._status
        if self._failures >= self._config.unreliable_threshold:
            self._status = NetworkStatus.OFFLINE
            if previous != NetworkStatus.OFFLINE:
                if self._offline_since is None:
                    self._offline_since = time.monotonic()
                self._notify(previous)
        elif self._status == NetworkStatus.ONLINE:
            self._status = NetworkStatus.UNRELIABLE
            self._notify(previous)
        LOG.debug("Network check failed (%s): status=%s failures=%d", reason, self._status, self._failures)

    def _notify(self, previous: NetworkStatus) -> None:
        LOG.info("Network status changed: %s -> %s", previous, self._status)
        for listener in list(self._listeners):
            try:
                listener(self._status)
            except Exception:
                LOG.exception("Network status listener failed")
