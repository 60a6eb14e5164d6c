import asyncio
import logging
from typing import Any, Dict, Optional

from nodewatch.models import (
    Dispatch,
    ErrorSignal,
    Handler,
    LifecycleChanged,
    LifecycleState,
    NodeProcess,
)
from nodewatch.services.subscriptions import ChainHeadSubscriptionManager, parse_block_header

logger = logging.getLogger(__name__)

SETTLE_DELAY = 2.0

_EVENT_STATES = {
    "starting": LifecycleState.STARTING,
    "started": LifecycleState.STARTED,
    "connect": LifecycleState.CONNECTED,
    "disconnect": LifecycleState.DISCONNECTED,
    "stopping": LifecycleState.STOPPING,
    "stopped": LifecycleState.STOPPED,
}


class EventBridge:
    """Turns node lifecycle events into updates.

    The handlers registered in ``register`` are kept in ``_handlers`` so that
    ``unregister`` removes the very same objects.
    """

    def __init__(
        self,
        node: NodeProcess,
        dispatch: Dispatch,
        manager: ChainHeadSubscriptionManager,
        settle_delay: float = SETTLE_DELAY,
    ) -> None:
        self.node = node
        self.dispatch = dispatch
        self.manager = manager
        self.settle_delay = settle_delay
        self.state = LifecycleState.IDLE
        self._handlers: Dict[str, Handler] = {}
        self._settle_task: Optional[asyncio.Task] = None
        self._settle_enabled = False

    @property
    def registered(self) -> bool:
        return bool(self._handlers)

    def register(self) -> None:
        if self._handlers:
            return
        self._handlers = {
            "starting": self._on_starting,
            "started": self._on_started,
            "connect": self._on_connect,
            "disconnect": self._on_disconnect,
            "stopping": self._on_stopping,
            "stopped": self._on_stopped,
            "error": self._on_error,
        }
        for name, handler in self._handlers.items():
            self.node.on(name, handler)
        self._settle_enabled = True

    def cancel_pending(self) -> None:
        """Disable the post-connect settle task until the next register()."""
        self._settle_enabled = False
        self._cancel_settle()

    def unregister(self) -> None:
        self.cancel_pending()
        handlers, self._handlers = self._handlers, {}
        for name, handler in handlers.items():
            self.node.remove_listener(name, handler)

    def _set_state(self, event: str) -> None:
        self.state = _EVENT_STATES[event]
        self.dispatch(LifecycleChanged(state=self.state))

    def _on_starting(self) -> None:
        self._set_state("starting")

    def _on_started(self) -> None:
        self._set_state("started")

    def _on_connect(self) -> None:
        self._set_state("connect")
        self._cancel_settle()
        if not self._settle_enabled:
            return
        self._settle_task = asyncio.ensure_future(self._after_settle())
        self._settle_task.add_done_callback(self._settle_done)

    def _on_disconnect(self) -> None:
        self._set_state("disconnect")
        self._cancel_settle()
        # Subscriptions die with the connection
        self.manager.discard()

    def _on_stopping(self) -> None:
        self._set_state("stopping")

    def _on_stopped(self) -> None:
        self._set_state("stopped")

    def _on_error(self, error: Any = None) -> None:
        logger.error("Node process error: %s", error)
        self.dispatch(ErrorSignal(error=error, source="process"))

    def _cancel_settle(self) -> None:
        task, self._settle_task = self._settle_task, None
        if task is not None and not task.done():
            task.cancel()

    def _settle_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Post-connect settle task failed", exc_info=exc)

    async def _after_settle(self) -> None:
        await asyncio.sleep(self.settle_delay)
        await asyncio.gather(self._fetch_latest_block(), self.manager.detect())

    async def _fetch_latest_block(self) -> None:
        try:
            block = await self.node.rpc("eth_getBlockByNumber", ["latest", False])
            new_block = parse_block_header(block)
        except Exception as exc:
            logger.warning("Fetching latest block failed: %s", exc)
            return
        self.dispatch(new_block)
