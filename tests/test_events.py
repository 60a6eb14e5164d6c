"""Tests for lifecycle event translation."""

import asyncio
import logging

import pytest

from nodewatch.models import (
    ErrorSignal,
    FeedState,
    LifecycleChanged,
    LifecycleState,
    NewBlock,
)
from nodewatch.services.events import EventBridge
from nodewatch.services.subscriptions import ChainHeadSubscriptionManager
from tests.conftest import drain

EVENTS = ("starting", "started", "connect", "disconnect", "stopping", "stopped", "error")


@pytest.fixture
def manager(node, recorder):
    return ChainHeadSubscriptionManager(node, recorder)


@pytest.fixture
def bridge(node, recorder, manager):
    bridge = EventBridge(node, recorder, manager, settle_delay=0)
    bridge.register()
    return bridge


class TestEventBridge:
    def test_registers_one_listener_per_event(self, node, bridge):
        for name in EVENTS:
            assert node.listener_count(name) == 1

    def test_register_twice_is_noop(self, node, bridge):
        bridge.register()
        assert node.listener_count("connect") == 1

    def test_unregister_removes_the_same_handlers(self, node, bridge):
        bridge.unregister()

        for name in EVENTS:
            assert node.listener_count(name) == 0
        assert not bridge.registered

    @pytest.mark.parametrize(
        "event, state",
        [
            ("starting", LifecycleState.STARTING),
            ("started", LifecycleState.STARTED),
            ("stopping", LifecycleState.STOPPING),
            ("stopped", LifecycleState.STOPPED),
        ],
    )
    def test_lifecycle_events_map_to_states(self, node, recorder, bridge, event, state):
        node.emit(event)

        assert recorder.updates == [LifecycleChanged(state=state)]
        assert bridge.state is state

    def test_error_event_becomes_signal(self, node, recorder, bridge):
        error = RuntimeError("geth exited with code 1")

        node.emit("error", error)

        assert recorder.updates == [ErrorSignal(error=error, source="process")]
        assert bridge.state is LifecycleState.IDLE

    @pytest.mark.anyio
    async def test_connect_fetches_block_and_detects(self, node, recorder, manager, bridge):
        node.responses["eth_getBlockByNumber"] = {"number": "0x10", "timestamp": "0x5f5e100"}
        node.responses["eth_syncing"] = False

        node.emit("connect")
        await drain()

        assert recorder.updates[0] == LifecycleChanged(state=LifecycleState.CONNECTED)
        assert NewBlock(block_number=16, timestamp=100000000) in recorder.updates
        assert node.calls_to("eth_getBlockByNumber") == [["latest", False]]
        assert manager.state is FeedState.HEAD_FEED_ACTIVE

    @pytest.mark.anyio
    async def test_settle_delay_defers_detection(self, node, recorder, manager):
        bridge = EventBridge(node, recorder, manager, settle_delay=10)
        bridge.register()

        node.emit("connect")
        await drain()

        assert node.calls == []
        bridge.unregister()

    @pytest.mark.anyio
    async def test_disconnect_cancels_pending_settle(self, node, recorder, manager):
        bridge = EventBridge(node, recorder, manager, settle_delay=0.01)
        bridge.register()

        node.emit("connect")
        node.emit("disconnect")
        await asyncio.sleep(0.03)

        assert node.calls == []
        assert bridge.state is LifecycleState.DISCONNECTED

    @pytest.mark.anyio
    async def test_disconnect_discards_feed(self, node, manager, bridge):
        node.responses["eth_syncing"] = True
        node.emit("connect")
        await drain()
        assert manager.state is FeedState.SYNC_FEED_ACTIVE

        node.emit("disconnect")

        assert manager.state is FeedState.NO_FEED
        assert node.calls_to("eth_unsubscribe") == []

    @pytest.mark.anyio
    async def test_block_fetch_failure_does_not_block_detection(self, node, recorder, manager, bridge):
        node.responses["eth_getBlockByNumber"] = ConnectionResetError("reset")
        node.responses["eth_syncing"] = False

        node.emit("connect")
        await drain()

        assert recorder.of(NewBlock) == []
        assert manager.state is FeedState.HEAD_FEED_ACTIVE

    @pytest.mark.anyio
    async def test_unexpected_settle_failure_is_logged(self, node, manager, bridge, caplog):
        async def broken_detect():
            raise RuntimeError("sink exploded")

        manager.detect = broken_detect
        node.responses["eth_getBlockByNumber"] = {"number": "0x1", "timestamp": "0x1"}

        with caplog.at_level(logging.ERROR, logger="nodewatch.services.events"):
            node.emit("connect")
            await drain()

        [record] = [r for r in caplog.records if r.getMessage() == "Post-connect settle task failed"]
        assert record.exc_info[1].args == ("sink exploded",)

    @pytest.mark.anyio
    async def test_cancel_pending_blocks_detection_until_register(self, node, manager, bridge):
        node.responses["eth_syncing"] = False
        bridge.cancel_pending()

        node.emit("connect")
        await drain()
        assert node.calls == []

        bridge.unregister()
        bridge.register()
        node.emit("connect")
        await drain()
        assert manager.state is FeedState.HEAD_FEED_ACTIVE
