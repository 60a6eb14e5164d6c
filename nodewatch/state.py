"""Application state mirrored from node updates."""

from dataclasses import dataclass
from typing import Any, Optional

from nodewatch.models import (
    ErrorSignal,
    LifecycleChanged,
    LifecycleState,
    NetworkChanged,
    NewBlock,
    PeerCountChanged,
    SyncModeChanged,
    SyncProgress,
    Update,
)


@dataclass
class ClientState:
    state: LifecycleState = LifecycleState.IDLE
    network: Optional[str] = None
    sync_mode: Optional[str] = None
    block_number: Optional[int] = None
    timestamp: Optional[int] = None
    sync: Optional[SyncProgress] = None
    peer_count: int = 0
    error: Any = None

    def apply(self, update: Update) -> None:
        if isinstance(update, LifecycleChanged):
            self.state = update.state
            if update.state is LifecycleState.STOPPED:
                self.peer_count = 0
            elif update.state is LifecycleState.STARTING:
                self.error = None
        elif isinstance(update, ErrorSignal):
            self.error = update.error
        elif isinstance(update, NetworkChanged):
            self.network = update.network
        elif isinstance(update, SyncModeChanged):
            self.sync_mode = update.sync_mode
        elif isinstance(update, NewBlock):
            self.block_number = update.block_number
            self.timestamp = update.timestamp
            if self.sync is not None and update.block_number > self.sync.highest_block:
                self.sync = None
        elif isinstance(update, SyncProgress):
            self.sync = update
        elif isinstance(update, PeerCountChanged):
            self.peer_count = update.peer_count

    @property
    def syncing(self) -> bool:
        return self.sync is not None

    def summary(self) -> str:
        parts = [self.state.value]
        if self.network:
            parts.append(f"network={self.network}")
        if self.sync is not None:
            parts.append(f"sync={self.sync.current_block}/{self.sync.highest_block}")
        elif self.block_number is not None:
            parts.append(f"block={self.block_number}")
        parts.append(f"peers={self.peer_count}")
        return " ".join(parts)
