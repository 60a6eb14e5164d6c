"""Pytest configuration and shared fixtures."""

import asyncio
import itertools
from typing import Any, Dict, List, Optional

import pytest

from nodewatch.models import LifecycleState


class FakeNode:
    """In-memory node process with scripted RPC responses."""

    def __init__(self) -> None:
        self.config: Any = None
        self.running = False
        self._state = LifecycleState.IDLE
        self.calls: List[tuple] = []
        self.responses: Dict[str, Any] = {}
        self.gates: Dict[str, asyncio.Event] = {}
        self.listeners: Dict[str, list] = {}
        self._ids = itertools.count(1)

    @property
    def is_running(self) -> bool:
        return self.running

    @property
    def state(self) -> LifecycleState:
        return self._state

    def apply_config(self, config: Any) -> None:
        self.config = config

    def get_config(self) -> Any:
        return self.config

    async def start(self) -> None:
        self.running = True
        self._state = LifecycleState.STARTED
        self.emit("starting")
        self.emit("started")

    async def stop(self) -> None:
        self.emit("stopping")
        self.running = False
        self._state = LifecycleState.STOPPED
        self.emit("stopped")

    def on(self, name: str, handler) -> None:
        self.listeners.setdefault(name, []).append(handler)

    def remove_listener(self, name: str, handler) -> None:
        handlers = self.listeners.get(name, [])
        if handler in handlers:
            handlers.remove(handler)

    def listener_count(self, name: str) -> int:
        return len(self.listeners.get(name, []))

    def emit(self, name: str, *args: Any) -> None:
        for handler in list(self.listeners.get(name, [])):
            handler(*args)

    def hold(self, method: str) -> asyncio.Event:
        """Block calls to ``method`` until the returned event is set."""
        gate = asyncio.Event()
        self.gates[method] = gate
        return gate

    async def rpc(self, method: str, params: Optional[list] = None) -> Any:
        self.calls.append((method, list(params or [])))
        gate = self.gates.get(method)
        if gate is not None:
            await gate.wait()
        response = self.responses.get(method)
        if isinstance(response, BaseException):
            raise response
        if callable(response):
            return response(params)
        if response is None and method == "eth_subscribe":
            return f"0x{next(self._ids):x}"
        return response

    def calls_to(self, method: str) -> List[list]:
        return [params for name, params in self.calls if name == method]


class Recorder:
    def __init__(self) -> None:
        self.updates: list = []

    def __call__(self, update) -> None:
        self.updates.append(update)

    def of(self, kind) -> list:
        return [u for u in self.updates if isinstance(u, kind)]


async def drain(rounds: int = 20) -> None:
    """Let scheduled callbacks and tasks run to completion."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def node() -> FakeNode:
    return FakeNode()


@pytest.fixture
def recorder() -> Recorder:
    return Recorder()


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"
