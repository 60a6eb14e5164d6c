import asyncio
import logging
from typing import Any, Dict, Optional, Set

from nodewatch.models import (
    Dispatch,
    ErrorSignal,
    FeedKind,
    FeedState,
    Handler,
    NewBlock,
    NodeProcess,
    SubscriptionHandle,
    SyncProgress,
)
from nodewatch.services.numeric import to_int

logger = logging.getLogger(__name__)

# geth dropped the state counters from its sync status in 1.10
_REQUIRED_SYNC_FIELDS = ("StartingBlock", "CurrentBlock", "HighestBlock")
_OPTIONAL_SYNC_FIELDS = ("KnownStates", "PulledStates")


def is_not_syncing(result: Any) -> bool:
    if result is False:
        return True
    return isinstance(result, dict) and result.get("syncing") is False


def _sync_field(status: Dict[str, Any], name: str, required: bool) -> int:
    # Subscription payloads use PascalCase, eth_syncing uses camelCase
    for key in (name, name[0].lower() + name[1:]):
        if key in status:
            return to_int(status[key])
    if required:
        raise KeyError(name)
    return 0


def parse_sync_progress(payload: Dict[str, Any]) -> SyncProgress:
    status = payload.get("status", payload)
    required = [_sync_field(status, name, True) for name in _REQUIRED_SYNC_FIELDS]
    optional = [_sync_field(status, name, False) for name in _OPTIONAL_SYNC_FIELDS]
    starting_block, current_block, highest_block = required
    known_states, pulled_states = optional
    return SyncProgress(
        starting_block=starting_block,
        current_block=current_block,
        highest_block=highest_block,
        known_states=known_states,
        pulled_states=pulled_states,
    )


def parse_block_header(header: Dict[str, Any]) -> NewBlock:
    return NewBlock(
        block_number=to_int(header["number"]),
        timestamp=to_int(header["timestamp"]),
    )


class ChainHeadSubscriptionManager:
    """Keeps one chain-head feed alive: sync progress while syncing, new heads after.

    The active feed lives in a single handle that only ``_transition`` replaces.
    Every continuation that resumes after an RPC compares the generation it
    started under with the current one; ``teardown`` and ``discard`` bump the
    generation so late responses are dropped.
    """

    def __init__(self, node: NodeProcess, dispatch: Dispatch) -> None:
        self.node = node
        self.dispatch = dispatch
        self._handle: Optional[SubscriptionHandle] = None
        self._listener: Optional[Handler] = None
        self._pending: Optional[FeedKind] = None
        self._detecting = False
        self._generation = 0
        self._tasks: Set[asyncio.Task] = set()

    @property
    def handle(self) -> Optional[SubscriptionHandle]:
        return self._handle

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def state(self) -> FeedState:
        if self._handle is None:
            return FeedState.NO_FEED
        if self._handle.kind is FeedKind.SYNC_PROGRESS:
            return FeedState.SYNC_FEED_ACTIVE
        return FeedState.HEAD_FEED_ACTIVE

    async def detect(self) -> None:
        """Query eth_syncing once and open the matching feed."""
        if self._handle is not None or self._pending is not None or self._detecting:
            logger.debug("Feed detection skipped, state is %s", self.state.value)
            return
        generation = self._generation
        self._detecting = True
        try:
            try:
                result = await self.node.rpc("eth_syncing")
            except Exception as exc:
                if generation == self._generation:
                    logger.warning("eth_syncing failed: %s", exc)
                    self.dispatch(ErrorSignal(error=exc, source="subscription"))
                return
            if generation != self._generation:
                logger.debug("Dropping eth_syncing result from generation %d", generation)
                return

            if is_not_syncing(result):
                await self._subscribe(FeedKind.NEW_HEADS, generation)
                return
            if isinstance(result, dict):
                self._emit_progress(result)
            await self._subscribe(FeedKind.SYNC_PROGRESS, generation)
        finally:
            if generation == self._generation:
                self._detecting = False

    async def teardown(self) -> None:
        """Unsubscribe whatever is registered and return to NO_FEED."""
        self._invalidate()
        previous = self._transition(None)
        if previous is not None:
            await self._unsubscribe(previous.subscription_id)

    def discard(self) -> None:
        """Forget local feed state without RPC, for when the connection is gone."""
        self._invalidate()
        self._transition(None)

    def _invalidate(self) -> None:
        self._generation += 1
        self._pending = None
        self._detecting = False

    def _transition(self, handle: Optional[SubscriptionHandle]) -> Optional[SubscriptionHandle]:
        previous, listener = self._handle, self._listener
        if previous is not None and listener is not None:
            self.node.remove_listener(previous.subscription_id, listener)
        self._handle, self._listener = handle, None
        if handle is not None:
            self._listener = self._make_listener(handle)
            self.node.on(handle.subscription_id, self._listener)
        before = previous.kind.value if previous else "none"
        after = handle.kind.value if handle else "none"
        logger.debug("Feed transition %s -> %s", before, after)
        return previous

    def _make_listener(self, handle: SubscriptionHandle) -> Handler:
        def listener(result: Any) -> None:
            self._on_result(handle, result)

        return listener

    async def _subscribe(self, kind: FeedKind, generation: int) -> Optional[SubscriptionHandle]:
        if generation != self._generation:
            return None
        self._pending = kind
        try:
            subscription_id = await self.node.rpc("eth_subscribe", [kind.value])
        except asyncio.CancelledError:
            if generation == self._generation:
                self._pending = None
            raise
        except Exception as exc:
            if generation == self._generation:
                self._pending = None
                logger.warning("eth_subscribe %s failed: %s", kind.value, exc)
                self.dispatch(ErrorSignal(error=exc, source="subscription"))
            return None
        if generation != self._generation:
            logger.debug("Releasing late %s subscription %s", kind.value, subscription_id)
            await self._unsubscribe(subscription_id)
            return None
        self._pending = None
        handle = SubscriptionHandle(subscription_id=subscription_id, kind=kind)
        self._transition(handle)
        return handle

    async def _unsubscribe(self, subscription_id: str) -> None:
        try:
            await self.node.rpc("eth_unsubscribe", [subscription_id])
        except Exception as exc:
            logger.warning("eth_unsubscribe %s failed: %s", subscription_id, exc)

    async def _handoff(self, sync_handle: SubscriptionHandle, generation: int) -> None:
        # Subscribe first so there is never a moment without a feed
        if await self._subscribe(FeedKind.NEW_HEADS, generation) is None:
            return
        await self._unsubscribe(sync_handle.subscription_id)

    def _spawn(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _on_result(self, handle: SubscriptionHandle, result: Any) -> None:
        if handle != self._handle:
            logger.debug("Dropping result for stale subscription %s", handle.subscription_id)
            return
        if handle.kind is FeedKind.SYNC_PROGRESS:
            self._on_sync_result(handle, result)
        else:
            self._on_head_result(result)

    def _on_sync_result(self, handle: SubscriptionHandle, result: Any) -> None:
        if is_not_syncing(result):
            if self._pending is FeedKind.NEW_HEADS:
                return
            self._pending = FeedKind.NEW_HEADS
            self._spawn(self._handoff(handle, self._generation))
            return
        if result is True:
            # Node has not worked out its sync status yet
            return
        self._emit_progress(result)

    def _on_head_result(self, result: Any) -> None:
        if not result:
            return
        try:
            block = parse_block_header(result)
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Malformed newHeads payload %r: %s", result, exc)
            return
        self.dispatch(block)

    def _emit_progress(self, payload: Any) -> None:
        try:
            progress = parse_sync_progress(payload)
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            logger.warning("Malformed sync status %r: %s", payload, exc)
            return
        self.dispatch(progress)
