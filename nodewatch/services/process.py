import asyncio
import logging
import os
from typing import Any, Dict, List, Optional, Set

from nodewatch.config import NodeConfig
from nodewatch.models import Handler, LifecycleState
from nodewatch.services.rpc import IpcRpcClient, RpcConnectionError

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT = 60.0
CONNECT_RETRY = 0.5
STOP_GRACE = 10.0


class GethProcess:
    """Runs geth as a child process and talks to it over IPC.

    Emits ``starting``, ``started``, ``connect``, ``disconnect``,
    ``stopping``, ``stopped``, ``error`` and ``log`` events. Subscription
    notifications are emitted under their subscription id.
    """

    def __init__(
        self,
        config: Optional[NodeConfig] = None,
        connect_timeout: float = CONNECT_TIMEOUT,
        stop_grace: float = STOP_GRACE,
    ) -> None:
        self.config = config or NodeConfig()
        self.connect_timeout = connect_timeout
        self.stop_grace = stop_grace
        self._state = LifecycleState.IDLE
        self._listeners: Dict[str, List[Handler]] = {}
        self._proc: Optional[asyncio.subprocess.Process] = None
        self._client: Optional[IpcRpcClient] = None
        self._tasks: Set[asyncio.Task] = set()
        self._exit_task: Optional[asyncio.Task] = None
        self._stopping = False

    @property
    def state(self) -> LifecycleState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._proc is not None and self._proc.returncode is None

    def apply_config(self, config: NodeConfig) -> None:
        self.config = config

    def get_config(self) -> NodeConfig:
        return self.config

    def on(self, name: str, handler: Handler) -> None:
        self._listeners.setdefault(name, []).append(handler)

    def remove_listener(self, name: str, handler: Handler) -> None:
        handlers = self._listeners.get(name)
        if not handlers:
            return
        try:
            handlers.remove(handler)
        except ValueError:
            return
        if not handlers:
            del self._listeners[name]

    def listener_count(self, name: str) -> int:
        return len(self._listeners.get(name, ()))

    def emit(self, name: str, *args: Any) -> None:
        for handler in list(self._listeners.get(name, ())):
            try:
                handler(*args)
            except Exception:
                logger.exception("Listener for %r failed", name)

    def _set_state(self, state: LifecycleState, event: str) -> None:
        self._state = state
        self.emit(event)

    async def start(self) -> None:
        if self.is_running:
            raise RuntimeError("geth is already running")
        self._stopping = False
        args = self.config.to_args()
        self._set_state(LifecycleState.STARTING, "starting")
        logger.info("Starting %s", " ".join(args))
        try:
            self._proc = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError:
            self._set_state(LifecycleState.STOPPED, "stopped")
            raise
        self._set_state(LifecycleState.STARTED, "started")
        self._spawn(self._pump_output(self._proc))
        self._exit_task = asyncio.ensure_future(self._watch_exit(self._proc))
        self._spawn(self._connect())

    async def stop(self) -> None:
        proc = self._proc
        if proc is None or proc.returncode is not None:
            return
        self._stopping = True
        self._set_state(LifecycleState.STOPPING, "stopping")
        if self._client is not None:
            await self._client.close()
        proc.terminate()
        try:
            await asyncio.wait_for(proc.wait(), self.stop_grace)
        except asyncio.TimeoutError:
            logger.warning("geth did not exit within %ss, killing", self.stop_grace)
            proc.kill()
            await proc.wait()
        if self._exit_task is not None:
            await self._exit_task

    async def rpc(self, method: str, params: Optional[list] = None) -> Any:
        if self._client is None:
            raise RpcConnectionError("Not connected")
        return await self._client.call(method, params)

    def _spawn(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _connect(self) -> None:
        if self.is_running:
            self._state = LifecycleState.CONNECTING
        ipc_path = self.config.resolve_ipc_path()
        loop = asyncio.get_event_loop()
        deadline = loop.time() + self.connect_timeout
        while self.is_running and not self._stopping:
            if os.path.exists(ipc_path):
                client = IpcRpcClient(
                    ipc_path,
                    on_notification=self.emit,
                    on_close=self._on_connection_closed,
                )
                try:
                    await client.connect()
                except RpcConnectionError as exc:
                    logger.debug("IPC not ready: %s", exc)
                else:
                    self._client = client
                    self._set_state(LifecycleState.CONNECTED, "connect")
                    return
            if loop.time() > deadline:
                self.emit("error", RpcConnectionError(f"No IPC socket at {ipc_path}"))
                return
            await asyncio.sleep(CONNECT_RETRY)

    def _on_connection_closed(self) -> None:
        self._client = None
        self._set_state(LifecycleState.DISCONNECTED, "disconnect")

    async def _pump_output(self, proc: asyncio.subprocess.Process) -> None:
        while True:
            line = await proc.stdout.readline()
            if not line:
                return
            self.emit("log", line.decode(errors="replace").rstrip())

    async def _watch_exit(self, proc: asyncio.subprocess.Process) -> None:
        code = await proc.wait()
        if self._client is not None:
            await self._client.close()
        if not self._stopping and code != 0:
            self.emit("error", RuntimeError(f"geth exited with code {code}"))
        self._set_state(LifecycleState.STOPPED, "stopped")
