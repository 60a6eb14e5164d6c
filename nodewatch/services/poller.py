import asyncio
import logging
from typing import Optional

from nodewatch.models import Dispatch, ErrorSignal, NodeProcess, PeerCountChanged
from nodewatch.services.numeric import to_int

logger = logging.getLogger(__name__)

PEER_COUNT_INTERVAL = 3.0


class PeerCountPoller:
    """Queries net_peerCount on a fixed interval and dispatches the result."""

    def __init__(
        self,
        node: NodeProcess,
        dispatch: Dispatch,
        interval: float = PEER_COUNT_INTERVAL,
    ) -> None:
        self.node = node
        self.dispatch = dispatch
        self.interval = interval
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.ensure_future(self._run())

    def cancel(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            await self.tick()

    async def tick(self) -> None:
        try:
            hex_peer_count = await self.node.rpc("net_peerCount")
            peer_count = to_int(hex_peer_count)
        except Exception as exc:
            # One failed query must not stop the loop
            logger.warning("Peer count query failed: %s", exc)
            self.dispatch(ErrorSignal(error=exc, source="peer_count"))
            return
        self.dispatch(PeerCountChanged(peer_count=peer_count))
