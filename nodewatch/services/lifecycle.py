import logging
from typing import Any

from nodewatch.models import (
    Dispatch,
    ErrorSignal,
    LifecycleState,
    NetworkChanged,
    NodeProcess,
    SyncModeChanged,
)
from nodewatch.services.events import SETTLE_DELAY, EventBridge
from nodewatch.services.poller import PEER_COUNT_INTERVAL, PeerCountPoller
from nodewatch.services.subscriptions import ChainHeadSubscriptionManager

logger = logging.getLogger(__name__)


def _config_value(config: Any, *names: str) -> Any:
    for name in names:
        if isinstance(config, dict):
            if name in config:
                return config[name]
        elif hasattr(config, name):
            return getattr(config, name)
    return None


class LifecycleController:
    """Starts and stops a node and owns everything that watches it.

    One controller manages one node. ``start`` refuses to run twice; call
    ``stop`` first. Neither method raises: failures are logged and
    dispatched as ``ErrorSignal`` updates.
    """

    def __init__(
        self,
        node: NodeProcess,
        dispatch: Dispatch,
        poll_interval: float = PEER_COUNT_INTERVAL,
        settle_delay: float = SETTLE_DELAY,
    ) -> None:
        self.node = node
        self.dispatch = dispatch
        self.subscriptions = ChainHeadSubscriptionManager(node, dispatch)
        self.poller = PeerCountPoller(node, dispatch, interval=poll_interval)
        self.events = EventBridge(node, dispatch, self.subscriptions, settle_delay=settle_delay)
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    async def start(self, config: Any) -> bool:
        if self._started:
            logger.warning("Node already started, ignoring start request")
            return False
        self._started = True
        # Listen before starting so starting/started are not missed
        self.events.register()
        try:
            self.node.apply_config(config)
            await self.node.start()
        except Exception as exc:
            logger.error("Starting node failed: %s", exc)
            self.events.unregister()
            self._started = False
            self.dispatch(ErrorSignal(error=exc, source="process"))
            return False

        try:
            effective = self.node.get_config()
            self.dispatch(NetworkChanged(network=_config_value(effective, "network")))
            self.dispatch(SyncModeChanged(sync_mode=_config_value(effective, "sync_mode", "syncMode")))
        except Exception as exc:
            # The process is up, so stay started and let stop() clean up
            logger.warning("Reading back node config failed: %s", exc)
            self.dispatch(ErrorSignal(error=exc, source="config"))
        self.poller.start()
        return True

    async def stop(self) -> None:
        # No new feed may be opened once teardown has run
        self.events.cancel_pending()
        self.poller.cancel()
        try:
            await self.subscriptions.teardown()
        except Exception as exc:
            logger.warning("Subscription teardown failed: %s", exc)
        if self.node.is_running:
            try:
                await self.node.stop()
            except Exception as exc:
                logger.error("Stopping node failed: %s", exc)
                self.dispatch(ErrorSignal(error=exc, source="process"))
        self.events.unregister()
        if self._started:
            logger.info("Node stopped")
        self._started = False

    def is_running(self) -> bool:
        return bool(self.node.is_running)

    def get_state(self) -> LifecycleState:
        return self.node.state

    def get_network_stats(self) -> Any:
        return self.node.get_config()
