# backend/client/reconciler.py
"""
Client-side view of trades.

Manual fetches, push events, polls and action results all go through
``TradeReconciler.apply_update`` so there is exactly one merge rule: a record
replaces the held one only if its version is newer.
"""
import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Union

from client.cache import TradeCache
from client.channel import ChannelClient
from client.gateway import TradeGatewayClient
from errors import AlreadyTerminal, InvalidTransition, TradeError
from models.events import ChannelEvent, EventType, trade_topic
from models.trade import ACTION_REQUIRED_STATUSES, TradeRecord, TransitionRequest

logger = logging.getLogger(__name__)

SHORT_POLL_SECONDS = 10.0
LONG_POLL_SECONDS = 30.0
MAX_CONSECUTIVE_FAILURES = 3

TRADE_EVENTS = frozenset({EventType.TRADE_UPDATE.value, EventType.TRADE_CREATED.value})


@dataclass
class TradeView:
    """What the client currently shows for one trade."""
    trade: TradeRecord
    source: str
    # Served from the local cache because the API could not be reached
    is_fallback: bool = False
    received_at: float = field(default_factory=time.monotonic)


async def _notify(callback: Optional[Callable[..., Any]], *args: Any) -> None:
    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


class TradeReconciler:
    """
    Keeps trade views current from push, polling and explicit fetches.

    Polling covers what push cannot: it runs while the channel is down, and
    for trades that are being watched without an open panel. Action-required
    trades are polled every ``short_poll`` seconds, other active trades every
    ``long_poll`` seconds, and terminal trades never.
    """

    def __init__(
        self,
        gateway: TradeGatewayClient,
        channel: ChannelClient,
        cache: TradeCache,
        on_change: Optional[Callable[[TradeView], None]] = None,
        on_retry_prompt: Optional[Callable[[str, TradeError], Union[None, Awaitable[None]]]] = None,
        on_trade_created: Optional[Callable[[str], Union[None, Awaitable[None]]]] = None,
        short_poll: float = SHORT_POLL_SECONDS,
        long_poll: float = LONG_POLL_SECONDS,
        max_failures: int = MAX_CONSECUTIVE_FAILURES,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.gateway = gateway
        self.channel = channel
        self.cache = cache
        self.on_change = on_change
        self.on_retry_prompt = on_retry_prompt
        self.on_trade_created = on_trade_created
        self.short_poll = short_poll
        self.long_poll = long_poll
        self.max_failures = max_failures
        self.clock = clock

        self._views: dict[str, TradeView] = {}
        self._panels: dict[str, Callable[[], Awaitable[None]]] = {}
        self._watched: set[str] = set()
        self._in_flight: set[str] = set()
        self._failures: dict[str, int] = {}
        self._next_poll: dict[str, float] = {}
        self._background: set[asyncio.Task] = set()
        self._poll_task: Optional[asyncio.Task[None]] = None
        self._user_unsubscribe: Optional[Callable[[], Awaitable[None]]] = None

        channel.add_state_listener(self._on_connection_change)

    # ============== State ==============

    def view(self, trade_id: str) -> Optional[TradeView]:
        return self._views.get(trade_id)

    def is_panel_open(self, trade_id: str) -> bool:
        return trade_id in self._panels

    def apply_update(self, record: TradeRecord, source: str, is_fallback: bool = False) -> bool:
        """
        Merge one record into the view. Returns whether it was applied.

        Older versions are dropped; an equal version only replaces a cached
        fallback with the authoritative copy.
        """
        current = self._views.get(record.trade_id)
        if current is not None:
            if record.version < current.trade.version:
                return False
            if record.version == current.trade.version and (is_fallback or not current.is_fallback):
                return False

        view = TradeView(trade=record, source=source, is_fallback=is_fallback, received_at=self.clock())
        self._views[record.trade_id] = view
        self._next_poll.pop(record.trade_id, None)
        if not is_fallback:
            self.cache.put_trade(record)
        logger.debug("Trade %s v%d applied from %s", record.trade_id, record.version, source)

        if self.on_change is not None:
            self.on_change(view)
        return True

    # ============== Fetching ==============

    async def refresh(self, trade_id: str, source: str = "fetch") -> Optional[TradeView]:
        """Authoritative fetch; on failure fall back to a fresh-enough cache entry."""
        try:
            record = await self.gateway.fetch_trade(trade_id)
        except TradeError as e:
            await self._on_fetch_failure(trade_id, e)
            return self._views.get(trade_id)

        self._failures.pop(trade_id, None)
        self.apply_update(record, source)
        return self._views.get(trade_id)

    async def _on_fetch_failure(self, trade_id: str, error: TradeError) -> None:
        failures = self._failures.get(trade_id, 0) + 1
        self._failures[trade_id] = failures
        logger.warning("Fetching trade %s failed (%d in a row): %s", trade_id, failures, error)

        if trade_id not in self._views:
            cached, fresh = self.cache.get_trade(trade_id)
            if cached is not None and fresh:
                self.apply_update(cached, "cache", is_fallback=True)

        if failures == self.max_failures:
            await _notify(self.on_retry_prompt, trade_id, error)

    async def load(self, trade_id: str) -> Optional[TradeView]:
        """
        Cold start: show a fresh cache entry right away, marked as fallback,
        and refresh in the background regardless.
        """
        if trade_id not in self._views:
            cached, fresh = self.cache.get_trade(trade_id)
            if cached is not None and fresh:
                self.apply_update(cached, "cache", is_fallback=True)
        self._spawn(self.refresh(trade_id))
        return self._views.get(trade_id)

    # ============== Panels ==============

    async def start(self) -> None:
        """Listen on the user's own channel and start the polling loop."""
        if self._user_unsubscribe is None:
            self._user_unsubscribe = await self.channel.subscribe(self.channel.own_topic, self._on_event)
        if self._poll_task is None:
            self._poll_task = asyncio.create_task(self.run_polling())

    async def stop(self) -> None:
        if self._poll_task is not None:
            self._poll_task.cancel()
            try:
                await self._poll_task
            except asyncio.CancelledError:
                pass
            self._poll_task = None
        if self._user_unsubscribe is not None:
            await self._user_unsubscribe()
            self._user_unsubscribe = None
        tasks = list(self._background)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def open_panel(self, trade_id: str) -> Optional[TradeView]:
        """Fetch the authoritative record first, then join the trade room."""
        view = await self.refresh(trade_id)
        if trade_id not in self._panels:
            self._panels[trade_id] = await self.channel.subscribe(trade_topic(trade_id), self._on_event)
        return view

    async def close_panel(self, trade_id: str) -> None:
        """Leave the trade room; an unfinished trade keeps being polled."""
        unsubscribe = self._panels.pop(trade_id, None)
        if unsubscribe is not None:
            await unsubscribe()
        self.watch(trade_id)

    def watch(self, trade_id: str) -> None:
        self._watched.add(trade_id)

    def unwatch(self, trade_id: str) -> None:
        self._watched.discard(trade_id)
        self._next_poll.pop(trade_id, None)

    # ============== Push ==============

    async def _on_event(self, event: ChannelEvent) -> None:
        if event.type not in TRADE_EVENTS or not event.trade_id:
            return

        trade_data = (event.payload or {}).get("trade")
        if trade_data:
            self.apply_update(TradeRecord.model_validate(trade_data), "push")
        else:
            await self.refresh(event.trade_id, source="push")

        if event.trade_id not in self._panels:
            self.watch(event.trade_id)
            if event.type == EventType.TRADE_CREATED.value:
                await _notify(self.on_trade_created, event.trade_id)

    async def _on_connection_change(self, connected: bool) -> None:
        if not connected:
            logger.info("Push channel down, falling back to polling")
            return
        # Nothing is replayed after a reconnect; ask for current state instead
        for trade_id in list(self._panels) + sorted(self._watched - set(self._panels)):
            view = self._views.get(trade_id)
            if view is not None and view.trade.is_terminal:
                continue
            await self.refresh(trade_id, source="reconnect")

    # ============== Polling ==============

    def poll_interval(self, trade_id: str) -> Optional[float]:
        """Seconds between polls for this trade, or None when it needs none."""
        view = self._views.get(trade_id)
        if view is not None and view.trade.is_terminal:
            return None
        if self.channel.connected and trade_id in self._panels:
            return None
        if view is None or view.trade.status in ACTION_REQUIRED_STATUSES:
            return self.short_poll
        return self.long_poll

    async def poll_due(self) -> list[str]:
        """Poll every trade whose interval has elapsed; returns the ids polled."""
        now = self.clock()
        polled = []
        for trade_id in list(self._panels) + sorted(self._watched - set(self._panels)):
            interval = self.poll_interval(trade_id)
            if interval is None:
                self._next_poll.pop(trade_id, None)
                continue

            due = self._next_poll.setdefault(trade_id, now + interval)
            if now < due:
                continue

            await self.refresh(trade_id, source="poll")
            polled.append(trade_id)
            next_interval = self.poll_interval(trade_id)
            if next_interval is not None:
                self._next_poll[trade_id] = self.clock() + next_interval

        return polled

    async def run_polling(self, tick: float = 1.0) -> None:
        while True:
            await self.poll_due()
            await asyncio.sleep(tick)

    # ============== Actions ==============

    async def perform(self, trade_id: str, request: TransitionRequest) -> Optional[TradeRecord]:
        """
        Request a transition. Returns None if one is already in flight for
        this trade.

        A rejected action (state moved on, or trade already finished) refreshes
        the view before the error propagates. Giving up on a slow request never
        cancels the trade.
        """
        if trade_id in self._in_flight:
            logger.info("Ignoring %s on trade %s: another action is in flight", request.action, trade_id)
            return None

        self._in_flight.add(trade_id)
        try:
            record = await self.gateway.transition(trade_id, request)
        except (InvalidTransition, AlreadyTerminal):
            await self.refresh(trade_id)
            raise
        finally:
            self._in_flight.discard(trade_id)

        self.apply_update(record, "action")
        return record

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
