"""Tests for the client-side trade reconciler."""
import asyncio
import json

import pytest

from client.cache import TradeCache
from client.channel import ChannelClient
from client.reconciler import TradeReconciler
from errors import AlreadyTerminal, ExternalServiceDegraded, InvalidTransition, NotFound
from models.events import ChannelEvent, EventType, trade_topic
from models.trade import BuyerConfirmRequest, CancelRequest, TradeStatus

from factories import BUYER_ID, SELLER_ID


def bump(trade, status, **changes):
    """The same trade one write later."""
    return trade.model_copy(update={"status": status, "version": trade.version + 1, **changes})


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


class FakeGateway:
    """Trade API double holding the server-side copy of each trade."""

    def __init__(self):
        self.trades = {}
        self.fetches = []
        self.error = None
        self.transition_result = None
        self.transition_error = None
        self.release = None

    async def fetch_trade(self, trade_id, retry_not_found=False):
        self.fetches.append(trade_id)
        if self.error is not None:
            raise self.error
        if trade_id not in self.trades:
            raise NotFound("Trade not found", trade_id=trade_id)
        return self.trades[trade_id]

    async def transition(self, trade_id, request):
        if self.release is not None:
            await self.release.wait()
        if self.transition_error is not None:
            raise self.transition_error
        self.trades[trade_id] = self.transition_result
        return self.transition_result


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def channel():
    return ChannelClient("ws://trade.test/ws", BUYER_ID)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return TradeCache(clock=clock)


@pytest.fixture
def changes():
    return []


@pytest.fixture
def reconciler(gateway, channel, cache, clock, changes):
    return TradeReconciler(gateway, channel, cache, on_change=changes.append, clock=clock)


async def push(channel, trade, event_type=EventType.TRADE_UPDATE, with_payload=True):
    event = ChannelEvent(
        type=event_type,
        trade_id=trade.trade_id,
        new_status=trade.status.value,
        actor_id=SELLER_ID,
        payload={"trade": trade.model_dump(mode="json")} if with_payload else None,
    )
    await channel.handle_message(json.dumps(event.to_wire()))


class TestApplyUpdate:
    """One merge rule for every source: newer versions win."""

    def test_newer_replaces_older(self, reconciler, make_trade, changes):
        trade = make_trade(TradeStatus.AWAITING_SELLER)
        newer = bump(trade, TradeStatus.ACCEPTED)

        assert reconciler.apply_update(trade, "fetch") is True
        assert reconciler.apply_update(newer, "push") is True

        assert reconciler.view(trade.trade_id).trade.status == TradeStatus.ACCEPTED
        assert reconciler.view(trade.trade_id).source == "push"
        assert len(changes) == 2

    def test_older_and_equal_are_ignored(self, reconciler, make_trade, changes):
        trade = make_trade(TradeStatus.AWAITING_SELLER)
        newer = bump(trade, TradeStatus.ACCEPTED)
        reconciler.apply_update(newer, "push")

        assert reconciler.apply_update(trade, "poll") is False
        assert reconciler.apply_update(newer, "poll") is False
        assert reconciler.view(trade.trade_id).source == "push"
        assert len(changes) == 1

    def test_authoritative_copy_replaces_fallback(self, reconciler, make_trade):
        trade = make_trade(TradeStatus.AWAITING_SELLER)
        reconciler.apply_update(trade, "cache", is_fallback=True)

        assert reconciler.apply_update(trade, "fetch") is True
        assert reconciler.view(trade.trade_id).is_fallback is False
        assert reconciler.apply_update(trade, "cache", is_fallback=True) is False

    def test_authoritative_updates_are_cached(self, reconciler, cache, make_trade):
        trade = make_trade(TradeStatus.AWAITING_SELLER)
        reconciler.apply_update(trade, "cache", is_fallback=True)
        assert len(cache) == 0

        reconciler.apply_update(bump(trade, TradeStatus.ACCEPTED), "push")
        assert cache.get_trade(trade.trade_id)[0].status == TradeStatus.ACCEPTED


class TestPush:
    """Push events feed the same merge."""

    @pytest.mark.asyncio
    async def test_full_payload_needs_no_fetch(self, reconciler, gateway, channel, make_trade):
        trade = make_trade(TradeStatus.AWAITING_SELLER)
        gateway.trades[trade.trade_id] = trade
        await reconciler.open_panel(trade.trade_id)
        gateway.fetches.clear()

        await push(channel, bump(trade, TradeStatus.CANCELLED))

        assert gateway.fetches == []
        assert reconciler.view(trade.trade_id).trade.status == TradeStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_bare_event_triggers_refetch(self, reconciler, gateway, channel, make_trade):
        trade = make_trade(TradeStatus.AWAITING_SELLER)
        gateway.trades[trade.trade_id] = trade
        await reconciler.open_panel(trade.trade_id)
        gateway.trades[trade.trade_id] = bump(trade, TradeStatus.AWAITING_BUYER)

        await push(channel, gateway.trades[trade.trade_id], with_payload=False)

        assert reconciler.view(trade.trade_id).trade.status == TradeStatus.AWAITING_BUYER

    @pytest.mark.asyncio
    async def test_stale_push_after_action_is_ignored(self, reconciler, gateway, channel, make_trade):
        trade = make_trade(TradeStatus.AWAITING_BUYER)
        gateway.trades[trade.trade_id] = trade
        await reconciler.open_panel(trade.trade_id)
        completed = bump(trade, TradeStatus.COMPLETED)
        gateway.transition_result = completed

        await reconciler.perform(trade.trade_id, BuyerConfirmRequest())
        await push(channel, trade)

        assert reconciler.view(trade.trade_id).trade.status == TradeStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_new_trade_is_watched_and_announced(self, gateway, channel, cache, clock, make_trade):
        created = []
        reconciler = TradeReconciler(gateway, channel, cache, on_trade_created=created.append, clock=clock)
        await reconciler.start()
        trade = make_trade(TradeStatus.AWAITING_SELLER)

        await push(channel, trade, event_type=EventType.TRADE_CREATED)

        assert created == [trade.trade_id]
        assert reconciler.view(trade.trade_id) is not None
        assert reconciler.poll_interval(trade.trade_id) == reconciler.short_poll
        await reconciler.stop()


class TestPolling:
    """Polling interval rules and the poll loop."""

    def test_unknown_trade_is_polled_often(self, reconciler):
        assert reconciler.poll_interval("t1") == 10

    @pytest.mark.parametrize("status,expected", [
        (TradeStatus.AWAITING_SELLER, 10),
        (TradeStatus.ACCEPTED, 10),
        (TradeStatus.AWAITING_BUYER, 10),
        (TradeStatus.PENDING, 30),
        (TradeStatus.CREATED, 30),
        (TradeStatus.COMPLETED, None),
        (TradeStatus.CANCELLED, None),
    ])
    def test_interval_by_status(self, reconciler, make_trade, status, expected):
        trade = make_trade(status)
        reconciler.apply_update(trade, "fetch")
        assert reconciler.poll_interval(trade.trade_id) == expected

    @pytest.mark.asyncio
    async def test_open_panel_with_live_channel_is_not_polled(self, reconciler, gateway, channel, make_trade):
        trade = make_trade(TradeStatus.AWAITING_SELLER)
        gateway.trades[trade.trade_id] = trade
        await reconciler.open_panel(trade.trade_id)
        assert reconciler.poll_interval(trade.trade_id) == 10

        await channel._set_connected(True)
        assert reconciler.poll_interval(trade.trade_id) is None

    @pytest.mark.asyncio
    async def test_disconnected_buyer_sees_seller_update_within_one_cycle(
        self, reconciler, gateway, clock, make_trade,
    ):
        """Channel is down; the seller confirms sending; the short poll picks it up."""
        trade = make_trade(TradeStatus.AWAITING_SELLER)
        gateway.trades[trade.trade_id] = trade
        await reconciler.open_panel(trade.trade_id)

        assert await reconciler.poll_due() == []
        gateway.trades[trade.trade_id] = bump(trade, TradeStatus.AWAITING_BUYER, trade_offer_ref="TO-1")

        clock.now = 9.0
        assert await reconciler.poll_due() == []
        clock.now = 10.0
        assert await reconciler.poll_due() == [trade.trade_id]

        view = reconciler.view(trade.trade_id)
        assert view.trade.status == TradeStatus.AWAITING_BUYER
        assert view.source == "poll"

    @pytest.mark.asyncio
    async def test_terminal_trade_stops_polling(self, reconciler, gateway, clock, make_trade):
        trade = make_trade(TradeStatus.AWAITING_BUYER)
        gateway.trades[trade.trade_id] = trade
        await reconciler.open_panel(trade.trade_id)
        await reconciler.poll_due()
        gateway.trades[trade.trade_id] = bump(trade, TradeStatus.COMPLETED)

        clock.now = 10.0
        await reconciler.poll_due()
        fetches = len(gateway.fetches)
        clock.now = 100.0

        assert await reconciler.poll_due() == []
        assert len(gateway.fetches) == fetches

    @pytest.mark.asyncio
    async def test_closed_panel_keeps_polling(self, reconciler, gateway, channel, clock, make_trade):
        trade = make_trade(TradeStatus.AWAITING_BUYER)
        gateway.trades[trade.trade_id] = trade
        await reconciler.open_panel(trade.trade_id)
        await channel._set_connected(True)
        assert trade_topic(trade.trade_id) in channel.topics

        await reconciler.close_panel(trade.trade_id)

        assert trade_topic(trade.trade_id) not in channel.topics
        assert reconciler.poll_interval(trade.trade_id) == 10
        await reconciler.poll_due()
        clock.now = 10.0
        assert await reconciler.poll_due() == [trade.trade_id]

        reconciler.unwatch(trade.trade_id)
        clock.now = 100.0
        assert await reconciler.poll_due() == []


class TestFailures:
    """Fallback to cache and the retry prompt."""

    @pytest.mark.asyncio
    async def test_fresh_cache_shown_when_api_is_down(self, reconciler, gateway, cache, make_trade):
        trade = make_trade(TradeStatus.AWAITING_BUYER)
        cache.put_trade(trade)
        gateway.error = ExternalServiceDegraded("Trade API unreachable")

        view = await reconciler.refresh(trade.trade_id)

        assert view.trade == trade
        assert view.is_fallback is True
        assert view.source == "cache"

    @pytest.mark.asyncio
    async def test_stale_cache_not_shown(self, reconciler, gateway, cache, clock, make_trade):
        trade = make_trade(TradeStatus.AWAITING_BUYER)
        cache.put_trade(trade)
        clock.now += cache.freshness_seconds
        gateway.error = ExternalServiceDegraded("Trade API unreachable")

        assert await reconciler.refresh(trade.trade_id) is None

    @pytest.mark.asyncio
    async def test_retry_prompt_after_three_failures(self, gateway, channel, cache, clock):
        prompts = []
        reconciler = TradeReconciler(
            gateway, channel, cache,
            on_retry_prompt=lambda trade_id, error: prompts.append((trade_id, error)),
            clock=clock,
        )
        gateway.error = ExternalServiceDegraded("Trade API unreachable")

        for _ in range(2):
            await reconciler.refresh("t1")
        assert prompts == []
        await reconciler.refresh("t1")
        assert [p[0] for p in prompts] == ["t1"]

        await reconciler.refresh("t1")
        assert len(prompts) == 1

    @pytest.mark.asyncio
    async def test_success_resets_failure_count(self, gateway, channel, cache, clock, make_trade):
        prompts = []
        reconciler = TradeReconciler(
            gateway, channel, cache,
            on_retry_prompt=lambda trade_id, error: prompts.append(trade_id),
            clock=clock,
        )
        trade = make_trade(TradeStatus.AWAITING_SELLER)
        gateway.trades[trade.trade_id] = trade

        gateway.error = ExternalServiceDegraded("down")
        await reconciler.refresh(trade.trade_id)
        await reconciler.refresh(trade.trade_id)
        gateway.error = None
        await reconciler.refresh(trade.trade_id)
        gateway.error = ExternalServiceDegraded("down")
        await reconciler.refresh(trade.trade_id)
        await reconciler.refresh(trade.trade_id)

        assert prompts == []

    @pytest.mark.asyncio
    async def test_cold_start_uses_cache_then_refreshes(self, reconciler, gateway, cache, make_trade):
        trade = make_trade(TradeStatus.AWAITING_SELLER)
        cache.put_trade(trade)
        gateway.trades[trade.trade_id] = bump(trade, TradeStatus.ACCEPTED)

        view = await reconciler.load(trade.trade_id)
        assert view.is_fallback is True
        assert view.trade.status == TradeStatus.AWAITING_SELLER

        await asyncio.gather(*reconciler._background)

        view = reconciler.view(trade.trade_id)
        assert view.is_fallback is False
        assert view.trade.status == TradeStatus.ACCEPTED


class TestReconnect:
    """Nothing is replayed after a reconnect, so open trades are refetched."""

    @pytest.mark.asyncio
    async def test_reconnect_refreshes_open_and_watched(self, reconciler, gateway, channel, make_trade):
        open_trade = make_trade(TradeStatus.AWAITING_SELLER)
        watched = make_trade(TradeStatus.AWAITING_BUYER)
        finished = make_trade(TradeStatus.COMPLETED)
        for trade in (open_trade, watched, finished):
            gateway.trades[trade.trade_id] = trade
        await reconciler.open_panel(open_trade.trade_id)
        await reconciler.refresh(watched.trade_id)
        await reconciler.refresh(finished.trade_id)
        reconciler.watch(watched.trade_id)
        reconciler.watch(finished.trade_id)
        gateway.trades[open_trade.trade_id] = bump(open_trade, TradeStatus.CANCELLED)
        gateway.fetches.clear()

        await channel._set_connected(True)

        assert set(gateway.fetches) == {open_trade.trade_id, watched.trade_id}
        assert reconciler.view(open_trade.trade_id).trade.status == TradeStatus.CANCELLED
        assert reconciler.view(open_trade.trade_id).source == "reconnect"

    @pytest.mark.asyncio
    async def test_disconnect_does_not_fetch(self, reconciler, gateway, channel, make_trade):
        trade = make_trade(TradeStatus.AWAITING_SELLER)
        gateway.trades[trade.trade_id] = trade
        await reconciler.open_panel(trade.trade_id)
        await channel._set_connected(True)
        gateway.fetches.clear()

        await channel._set_connected(False)

        assert gateway.fetches == []
        assert reconciler.poll_interval(trade.trade_id) == 10


class TestPerform:
    """Actions through the reconciler."""

    @pytest.mark.asyncio
    async def test_success_updates_view(self, reconciler, gateway, make_trade):
        trade = make_trade(TradeStatus.AWAITING_BUYER)
        gateway.trades[trade.trade_id] = trade
        await reconciler.refresh(trade.trade_id)
        gateway.transition_result = bump(trade, TradeStatus.COMPLETED)

        record = await reconciler.perform(trade.trade_id, BuyerConfirmRequest())

        assert record.status == TradeStatus.COMPLETED
        assert reconciler.view(trade.trade_id).source == "action"

    @pytest.mark.asyncio
    async def test_second_action_while_in_flight_is_ignored(self, reconciler, gateway, make_trade):
        trade = make_trade(TradeStatus.AWAITING_BUYER)
        gateway.transition_result = bump(trade, TradeStatus.COMPLETED)
        gateway.release = asyncio.Event()

        first = asyncio.ensure_future(reconciler.perform(trade.trade_id, BuyerConfirmRequest()))
        await asyncio.sleep(0)
        second = await reconciler.perform(trade.trade_id, BuyerConfirmRequest())
        gateway.release.set()

        assert second is None
        assert (await first).status == TradeStatus.COMPLETED

        # Guard is released afterwards
        gateway.transition_error = AlreadyTerminal("Trade is already completed")
        with pytest.raises(AlreadyTerminal):
            await reconciler.perform(trade.trade_id, BuyerConfirmRequest())

    @pytest.mark.asyncio
    async def test_rejected_action_refetches(self, reconciler, gateway, make_trade):
        trade = make_trade(TradeStatus.AWAITING_BUYER)
        gateway.trades[trade.trade_id] = trade
        await reconciler.refresh(trade.trade_id)
        # The seller cancelled first
        gateway.trades[trade.trade_id] = bump(trade, TradeStatus.CANCELLED)
        gateway.transition_error = InvalidTransition("Trade is cancelled")

        with pytest.raises(InvalidTransition):
            await reconciler.perform(trade.trade_id, CancelRequest())

        assert reconciler.view(trade.trade_id).trade.status == TradeStatus.CANCELLED


class TestStop:
    """Stopping the reconciler."""

    @pytest.mark.asyncio
    async def test_stop_waits_for_background_refreshes(self, reconciler, gateway, monkeypatch):
        started = asyncio.Event()
        cancelled = []

        async def hanging_fetch(trade_id, retry_not_found=False):
            started.set()
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                cancelled.append(trade_id)
                raise

        monkeypatch.setattr(gateway, "fetch_trade", hanging_fetch)
        await reconciler.load("t1")
        await started.wait()

        await reconciler.stop()

        assert cancelled == ["t1"]
