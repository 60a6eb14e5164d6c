import asyncio

import pytest

from nodewatch.models import ErrorSignal, PeerCountChanged
from nodewatch.services.poller import PeerCountPoller
from nodewatch.services.rpc import RpcConnectionError


class TestPeerCountPoller:
    @pytest.mark.anyio
    async def test_tick_emits_decimal_peer_count(self, node, recorder):
        node.responses["net_peerCount"] = "0xa"
        poller = PeerCountPoller(node, recorder)

        await poller.tick()

        assert recorder.updates == [PeerCountChanged(peer_count=10)]

    @pytest.mark.anyio
    async def test_failed_tick_is_reported(self, node, recorder):
        node.responses["net_peerCount"] = RpcConnectionError("Not connected")
        poller = PeerCountPoller(node, recorder)

        await poller.tick()

        [signal] = recorder.updates
        assert isinstance(signal, ErrorSignal)
        assert signal.source == "peer_count"

    @pytest.mark.anyio
    async def test_loop_survives_failures(self, node, recorder):
        results = iter([RpcConnectionError("down"), "0x3", "0x4"])

        def peer_count(params):
            result = next(results, "0x4")
            if isinstance(result, Exception):
                raise result
            return result

        node.responses["net_peerCount"] = peer_count
        poller = PeerCountPoller(node, recorder, interval=0.001)
        poller.start()
        await asyncio.sleep(0.05)
        poller.cancel()

        assert isinstance(recorder.updates[0], ErrorSignal)
        assert PeerCountChanged(peer_count=3) in recorder.updates
        assert not poller.running

    @pytest.mark.anyio
    async def test_cancel_stops_polling(self, node, recorder):
        node.responses["net_peerCount"] = "0x1"
        poller = PeerCountPoller(node, recorder, interval=0.001)
        poller.start()
        await asyncio.sleep(0.01)
        poller.cancel()
        await asyncio.sleep(0)
        count = len(node.calls)

        await asyncio.sleep(0.02)

        assert len(node.calls) == count

    def test_cancel_when_not_running(self, node, recorder):
        poller = PeerCountPoller(node, recorder)
        poller.cancel()
        poller.cancel()
        assert not poller.running

    @pytest.mark.anyio
    async def test_start_twice_keeps_one_loop(self, node, recorder):
        poller = PeerCountPoller(node, recorder, interval=10)
        poller.start()
        task = poller._task
        poller.start()

        assert poller._task is task
        poller.cancel()
