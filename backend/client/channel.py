# backend/client/channel.py
"""
Push channel client with automatic reconnection.

- Reconnects with exponential backoff after any disconnect
- Replays topic subscriptions on every (re)connect
- Tells connection-state listeners, so they can refresh what they missed
  (the server keeps no replay queue)
"""
import asyncio
import inspect
import json
import logging
from collections import defaultdict
from typing import Any, Awaitable, Callable, Optional, Union
from urllib.parse import urlencode

import websockets
from pydantic import ValidationError as PydanticValidationError
from websockets.exceptions import ConnectionClosed, WebSocketException

from models.events import ChannelEvent, EventType, trade_topic, user_topic

logger = logging.getLogger(__name__)

EventHandler = Callable[[ChannelEvent], Union[None, Awaitable[None]]]
StateListener = Callable[[bool], Union[None, Awaitable[None]]]

CONTROL_EVENTS = frozenset({
    EventType.SUBSCRIBED.value,
    EventType.UNSUBSCRIBED.value,
    EventType.PONG.value,
})


async def _call(callback: Callable[..., Any], *args: Any) -> None:
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


class ChannelClient:
    """
    Subscribes one user to trade rooms and to their own user channel.

    ``subscribe(topic, handler)`` returns an async ``unsubscribe()``. The
    user channel is joined by the server on connect, so handlers for it never
    send a frame.
    """

    def __init__(
        self,
        url: str,
        user_id: str,
        initial_backoff: float = 1.0,
        max_backoff: float = 30.0,
        backoff_factor: float = 2.0,
        connect: Callable[..., Any] = websockets.connect,
    ) -> None:
        self.url = url
        self.user_id = user_id
        self.initial_backoff = initial_backoff
        self.max_backoff = max_backoff
        self.backoff_factor = backoff_factor
        self.current_backoff = initial_backoff
        self._connect = connect

        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)
        self._state_listeners: list[StateListener] = []
        self._ws: Optional[Any] = None
        self.connected = False
        self.is_running = False
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def own_topic(self) -> str:
        return user_topic(self.user_id)

    @property
    def topics(self) -> list[str]:
        return [topic for topic, handlers in self._handlers.items() if handlers]

    def add_state_listener(self, listener: StateListener) -> None:
        self._state_listeners.append(listener)

    async def subscribe(self, topic: str, handler: EventHandler) -> Callable[[], Awaitable[None]]:
        first = not self._handlers[topic]
        self._handlers[topic].append(handler)
        if first and topic != self.own_topic:
            await self._send({"action": "subscribe", "topic": topic})

        async def unsubscribe() -> None:
            handlers = self._handlers.get(topic, [])
            if handler in handlers:
                handlers.remove(handler)
            if not handlers:
                self._handlers.pop(topic, None)
                if topic != self.own_topic:
                    await self._send({"action": "unsubscribe", "topic": topic})

        return unsubscribe

    async def start(self) -> None:
        if self.is_running:
            logger.warning("Channel client already running")
            return
        self.is_running = True
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Close the connection and stop reconnecting."""
        self.is_running = False
        if self._ws is not None:
            await self._ws.close()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    def _endpoint(self) -> str:
        separator = "&" if "?" in self.url else "?"
        return f"{self.url}{separator}{urlencode({'user_id': self.user_id})}"

    async def _send(self, frame: dict[str, Any]) -> None:
        # Subscriptions made while offline are replayed on connect
        if self._ws is None or not self.connected:
            return
        try:
            await self._ws.send(json.dumps(frame))
        except (ConnectionClosed, WebSocketException) as e:
            logger.warning("Could not send %s frame: %s", frame.get("action"), e)

    async def _set_connected(self, connected: bool) -> None:
        if self.connected == connected:
            return
        self.connected = connected
        for listener in list(self._state_listeners):
            try:
                await _call(listener, connected)
            except Exception as e:
                logger.error("Connection listener error: %s", e)

    async def _run(self) -> None:
        while self.is_running:
            try:
                logger.info("Connecting to push channel %s", self.url)
                async with self._connect(self._endpoint()) as ws:
                    self._ws = ws
                    self.current_backoff = self.initial_backoff
                    for topic in self.topics:
                        if topic != self.own_topic:
                            await ws.send(json.dumps({"action": "subscribe", "topic": topic}))
                    await self._set_connected(True)

                    async for raw in ws:
                        await self.handle_message(raw)
            except (OSError, asyncio.TimeoutError, ConnectionClosed, WebSocketException) as e:
                logger.warning("Push channel connection lost: %s", e)
            except Exception as e:
                logger.error("Push channel failed: %s", e)
            finally:
                self._ws = None
                await self._set_connected(False)

            if not self.is_running:
                break

            logger.info("Reconnecting to push channel in %.1f seconds...", self.current_backoff)
            await asyncio.sleep(self.current_backoff)
            self.current_backoff = min(self.current_backoff * self.backoff_factor, self.max_backoff)

    async def handle_message(self, raw: Union[str, bytes]) -> None:
        """Route one server frame to the handlers of the topics it concerns."""
        try:
            event = ChannelEvent.model_validate_json(raw)
        except PydanticValidationError as e:
            logger.warning("Ignoring malformed push frame: %s", e)
            return

        if event.type in CONTROL_EVENTS:
            return
        if event.type == EventType.ERROR.value:
            logger.warning("Push channel error: %s", (event.payload or {}).get("detail"))
            return

        topics = [self.own_topic]
        if event.trade_id:
            topics.insert(0, trade_topic(event.trade_id))

        called: list[EventHandler] = []
        for topic in topics:
            for handler in list(self._handlers.get(topic, ())):
                if handler in called:
                    continue
                called.append(handler)
                try:
                    await _call(handler, event)
                except Exception as e:
                    # A bad handler must not take the channel down
                    logger.error("Push handler error: %s", e)
