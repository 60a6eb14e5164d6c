"""Update types, lifecycle states and the node process protocol."""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Protocol, Union


class LifecycleState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    STARTED = "started"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    STOPPING = "stopping"
    STOPPED = "stopped"


class FeedKind(str, Enum):
    SYNC_PROGRESS = "syncing"
    NEW_HEADS = "newHeads"


class FeedState(str, Enum):
    NO_FEED = "no_feed"
    SYNC_FEED_ACTIVE = "sync_feed_active"
    HEAD_FEED_ACTIVE = "head_feed_active"


@dataclass(frozen=True)
class SubscriptionHandle:
    subscription_id: str
    kind: FeedKind


@dataclass(frozen=True)
class LifecycleChanged:
    state: LifecycleState


@dataclass(frozen=True)
class ErrorSignal:
    error: Any
    source: str = "process"


@dataclass(frozen=True)
class NetworkChanged:
    network: Optional[str]


@dataclass(frozen=True)
class SyncModeChanged:
    sync_mode: Optional[str]


@dataclass(frozen=True)
class NewBlock:
    block_number: int
    timestamp: int


@dataclass(frozen=True)
class SyncProgress:
    # current_block <= highest_block is expected from the node but not checked
    starting_block: int
    current_block: int
    highest_block: int
    known_states: int
    pulled_states: int


@dataclass(frozen=True)
class PeerCountChanged:
    peer_count: int


Update = Union[
    LifecycleChanged,
    ErrorSignal,
    NetworkChanged,
    SyncModeChanged,
    NewBlock,
    SyncProgress,
    PeerCountChanged,
]

Dispatch = Callable[[Update], None]
Handler = Callable[..., None]


class NodeProcess(Protocol):
    """What the lifecycle controller needs from a managed node process."""

    def apply_config(self, config: Any) -> None: ...

    async def start(self) -> None: ...

    async def stop(self) -> None: ...

    def get_config(self) -> Any: ...

    @property
    def is_running(self) -> bool: ...

    @property
    def state(self) -> LifecycleState: ...

    def on(self, name: str, handler: Handler) -> None: ...

    def remove_listener(self, name: str, handler: Handler) -> None: ...

    def rpc(self, method: str, params: Optional[list] = None) -> Awaitable[Any]: ...
