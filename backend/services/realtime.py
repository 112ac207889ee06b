# backend/services/realtime.py
"""
Push fan-out over websocket sessions.

Sessions are grouped by topic: ``user:<id>`` (joined automatically on
connect) and ``trade:<id>`` (joined while a trade panel is open). Delivery is
at-most-once: nothing is queued for disconnected sessions, and a session that
fails to receive is dropped.
"""
import logging
from collections import defaultdict
from typing import Iterable, Optional

from fastapi import WebSocket

from models.events import ChannelEvent, EventType, trade_topic, user_topic
from models.trade import TradeRecord

logger = logging.getLogger(__name__)


class ConnectionHub:
    """Topic registry and publisher for connected websocket sessions."""

    def __init__(self) -> None:
        self._topics: dict[str, set[WebSocket]] = defaultdict(set)
        self._sessions: dict[WebSocket, set[str]] = {}

    @property
    def session_count(self) -> int:
        return len(self._sessions)

    def topics_of(self, websocket: WebSocket) -> set[str]:
        return set(self._sessions.get(websocket, ()))

    async def connect(self, websocket: WebSocket, user_id: str) -> None:
        await websocket.accept()
        self._sessions[websocket] = set()
        self.subscribe(websocket, user_topic(user_id))
        logger.info("Channel session opened for user %s (%d sessions)", user_id, self.session_count)

    def disconnect(self, websocket: WebSocket) -> None:
        for topic in self._sessions.pop(websocket, set()):
            members = self._topics.get(topic)
            if members is None:
                continue
            members.discard(websocket)
            if not members:
                del self._topics[topic]

    def subscribe(self, websocket: WebSocket, topic: str) -> None:
        self._topics[topic].add(websocket)
        self._sessions.setdefault(websocket, set()).add(topic)

    def unsubscribe(self, websocket: WebSocket, topic: str) -> None:
        members = self._topics.get(topic)
        if members is not None:
            members.discard(websocket)
            if not members:
                del self._topics[topic]
        self._sessions.get(websocket, set()).discard(topic)

    def subscribers(self, topics: Iterable[str]) -> list[WebSocket]:
        """Sessions listening on any of ``topics``, each listed once."""
        seen: list[WebSocket] = []
        for topic in topics:
            for websocket in self._topics.get(topic, ()):
                if websocket not in seen:
                    seen.append(websocket)
        return seen

    async def publish(self, event: ChannelEvent, topics: Iterable[str]) -> int:
        """Send ``event`` once to every session on ``topics``; returns deliveries."""
        message = event.to_wire()
        delivered = 0
        for websocket in self.subscribers(topics):
            try:
                await websocket.send_json(message)
                delivered += 1
            except Exception as e:
                logger.warning("Dropping channel session after failed send: %s", e)
                self.disconnect(websocket)
        return delivered

    async def publish_trade_update(self, trade: TradeRecord, actor_id: Optional[str]) -> int:
        """Tell both parties (and anyone in the trade room) about a new status."""
        event = ChannelEvent(
            type=EventType.TRADE_UPDATE,
            trade_id=trade.trade_id,
            new_status=trade.status.value,
            actor_id=actor_id,
            payload={"trade": trade.model_dump(mode="json")},
        )
        return await self.publish(
            event,
            [trade_topic(trade.trade_id), user_topic(trade.buyer_id), user_topic(trade.seller_id)],
        )

    async def notify_user(self, user_id: str, event: ChannelEvent) -> int:
        return await self.publish(event, [user_topic(user_id)])
