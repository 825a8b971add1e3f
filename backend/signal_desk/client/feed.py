"""Polling feeds that keep a ``QueryCache`` current.

Each feed re-fetches its endpoint on a fixed interval and can be nudged to
refetch immediately through cache invalidation. ``SignalFeed`` also listens
to the push channel: ``price_update`` patches the cached record in place and
``signal_update`` invalidates the signal list.
"""
import asyncio
import logging
from typing import Any, Iterable, List, Optional
from urllib.parse import urlsplit, urlunsplit

import aiohttp
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from signal_desk.client.cache import QueryCache, QueryKey
from signal_desk.client.notifier import NotifierClient

logger = logging.getLogger(__name__)

SIGNALS_KEY: QueryKey = ("/api/signals",)
LOGS_KEY: QueryKey = ("/api/logs",)

SIGNALS_REFRESH_INTERVAL = 5.0
ANALYSIS_REFRESH_INTERVAL = 10.0
FETCH_ATTEMPTS = 3
FETCH_RETRY_DELAY = 1.0

RETRYABLE_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError)


class ApiClient:
    def __init__(
        self,
        base_url: str,
        session: Optional[aiohttp.ClientSession] = None,
        attempts: int = FETCH_ATTEMPTS,
        retry_delay: float = FETCH_RETRY_DELAY,
        timeout: float = 10.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.attempts = attempts
        self.retry_delay = retry_delay
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session
        self._owns_session = session is None

    @property
    def session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def get_json(self, path: str) -> Any:
        """GET with a fixed-delay retry; the last error is re-raised."""
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.attempts),
            wait=wait_fixed(self.retry_delay),
            retry=retry_if_exception_type(RETRYABLE_ERRORS),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                async with self.session.get(self.base_url + path) as resp:
                    resp.raise_for_status()
                    return await resp.json()

    async def post_json(self, path: str, payload: Any = None) -> Any:
        # Mutations are not retried
        async with self.session.post(self.base_url + path, json=payload) as resp:
            resp.raise_for_status()
            return await resp.json()

    async def close(self):
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None


class PolledQuery:
    """Keeps one cache key filled from one GET endpoint."""

    def __init__(self, api: ApiClient, cache: QueryCache, key: QueryKey, path: str, interval: float):
        self.api = api
        self.cache = cache
        self.key = key
        self.path = path
        self.interval = interval
        self.last_error: Optional[Exception] = None
        self._task: Optional[asyncio.Task] = None
        self._pending: Optional[asyncio.Task] = None
        self._remove_hook = None

    async def refresh(self) -> bool:
        observed_at = self.cache.now()
        try:
            data = await self.api.get_json(self.path)
        except RETRYABLE_ERRORS as e:
            self.last_error = e
            logger.error(f"Fetching {self.path} failed after {self.api.attempts} attempts, keeping cached data: {e}")
            return False
        except Exception as e:
            # Bad bodies are not retried, but the poll loop must survive them
            self.last_error = e
            logger.exception(f"Unexpected response from {self.path}, keeping cached data: {e}")
            return False
        try:
            self.store(data, observed_at)
        except Exception as e:
            self.last_error = e
            logger.exception(f"Could not cache response from {self.path}: {e}")
            return False
        self.last_error = None
        return True

    def store(self, data: Any, observed_at: float):
        self.cache.set(self.key, data, observed_at=observed_at)

    async def start(self):
        self._remove_hook = self.cache.add_invalidation_hook(self.key, self._on_invalidated)
        self._task = asyncio.create_task(self._poll_loop())

    async def stop(self):
        if self._remove_hook:
            self._remove_hook()
            self._remove_hook = None
        for task in (self._task, self._pending):
            if task and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._task = self._pending = None

    async def _poll_loop(self):
        while True:
            await self.refresh()
            await asyncio.sleep(self.interval)

    def _on_invalidated(self, key: QueryKey):
        if self._pending and not self._pending.done():
            return
        self._pending = asyncio.create_task(self.refresh())


class RecordListQuery(PolledQuery):
    def store(self, data: Any, observed_at: float):
        self.cache.merge_records(self.key, data, observed_at=observed_at)


class SignalFeed(RecordListQuery):
    def __init__(self, api: ApiClient, cache: QueryCache, notifier: NotifierClient,
                 interval: float = SIGNALS_REFRESH_INTERVAL):
        super().__init__(api, cache, SIGNALS_KEY, SIGNALS_KEY[0], interval)
        self.notifier = notifier
        self._unsubscribers: List = []

    async def start(self):
        self._unsubscribers = [
            self.notifier.on("price_update", self.on_price_update),
            self.notifier.on("signal_update", self.on_signal_update),
        ]
        await self.notifier.connect()
        await super().start()

    async def stop(self):
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []
        await super().stop()

    def on_price_update(self, data):
        if not data or "id" not in data:
            return
        fields = {name: data[name] for name in ("currentPrice", "pnl") if name in data}
        if not self.cache.patch_record(self.key, data["id"], fields):
            logger.debug(f"price_update for uncached signal {data['id']}")

    def on_signal_update(self, data):
        self.cache.invalidate(self.key)


class LogFeed(RecordListQuery):
    def __init__(self, api: ApiClient, cache: QueryCache, notifier: NotifierClient,
                 interval: float = SIGNALS_REFRESH_INTERVAL):
        super().__init__(api, cache, LOGS_KEY, LOGS_KEY[0], interval)
        self.notifier = notifier
        self._unsubscribe = None

    async def start(self):
        self._unsubscribe = self.notifier.on("log", lambda data: self.cache.invalidate(self.key))
        await super().start()

    async def stop(self):
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None
        await super().stop()


class AnalysisFeed:
    """Market analysis and regime per instrument, computed by an external service."""

    def __init__(self, api: ApiClient, cache: QueryCache, instruments: Iterable[str],
                 interval: float = ANALYSIS_REFRESH_INTERVAL):
        self.queries: List[PolledQuery] = []
        for instrument in instruments:
            for path in ("/api/market-analysis", "/api/market-regime"):
                self.queries.append(
                    PolledQuery(api, cache, (path, instrument), f"{path}/{instrument}", interval)
                )

    async def start(self):
        for query in self.queries:
            await query.start()

    async def stop(self):
        for query in self.queries:
            await query.stop()


def websocket_url(base_url: str) -> str:
    parts = urlsplit(base_url)
    scheme = "wss" if parts.scheme == "https" else "ws"
    return urlunsplit((scheme, parts.netloc, "/ws", "", ""))


class DashboardClient:
    """Wires the API client, push channel, cache and feeds together."""

    def __init__(self, base_url: str, instruments: Iterable[str] = ("NIFTY",),
                 cache: Optional[QueryCache] = None):
        self.cache = cache or QueryCache()
        self.api = ApiClient(base_url)
        self.notifier = NotifierClient(websocket_url(base_url))
        self.signals = SignalFeed(self.api, self.cache, self.notifier)
        self.logs = LogFeed(self.api, self.cache, self.notifier)
        self.analysis = AnalysisFeed(self.api, self.cache, instruments)

    async def start(self):
        await self.signals.start()
        await self.logs.start()
        await self.analysis.start()

    async def stop(self):
        await self.analysis.stop()
        await self.logs.stop()
        await self.signals.stop()
        await self.notifier.disconnect()
        await self.api.close()

    async def exit_signal(self, signal_id: str, exit_price: float):
        result = await self.api.post_json(f"/api/signals/{signal_id}/exit", {"exitPrice": exit_price})
        self.cache.invalidate(SIGNALS_KEY)
        return result

    async def exit_all(self, which: str = "all") -> int:
        paths = {
            "all": "/api/signals/bulk/exit-all",
            "profits": "/api/signals/bulk/exit-profits",
            "losses": "/api/signals/bulk/exit-losses",
        }
        if which not in paths:
            raise ValueError(f"Unknown bulk exit '{which}'")
        result = await self.api.post_json(paths[which])
        self.cache.invalidate(SIGNALS_KEY)
        return result["count"]

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, *exc):
        await self.stop()
