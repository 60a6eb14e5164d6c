import asyncio
import itertools
import json
import logging
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)

# Block headers and peer lists can be long single lines
READ_LIMIT = 16 * 1024 * 1024


class RpcError(RuntimeError):
    def __init__(self, code: Optional[int], message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


class RpcConnectionError(RpcError):
    def __init__(self, message: str) -> None:
        super().__init__(None, message)


class IpcRpcClient:
    """JSON-RPC over geth's IPC socket, with eth_subscription notifications."""

    def __init__(
        self,
        ipc_path: str,
        timeout: float = 10.0,
        on_notification: Optional[Callable[[str, Any], None]] = None,
        on_close: Optional[Callable[[], None]] = None,
    ) -> None:
        self.ipc_path = ipc_path
        self.timeout = timeout
        self.on_notification = on_notification
        self.on_close = on_close
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._read_task: Optional[asyncio.Task] = None
        self._pending: Dict[int, asyncio.Future] = {}
        self._ids = itertools.count(1)

    @property
    def connected(self) -> bool:
        return self._writer is not None and not self._writer.is_closing()

    async def connect(self) -> None:
        try:
            self._reader, self._writer = await asyncio.open_unix_connection(
                self.ipc_path, limit=READ_LIMIT
            )
        except OSError as exc:
            raise RpcConnectionError(f"Cannot connect to {self.ipc_path}: {exc}") from exc
        self._read_task = asyncio.ensure_future(self._read_loop())

    async def close(self) -> None:
        writer, self._writer = self._writer, None
        task, self._read_task = self._read_task, None
        if task is not None and not task.done():
            task.cancel()
        if writer is not None:
            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                pass
        self._fail_pending("Connection closed")

    async def call(self, method: str, params: Optional[list] = None) -> Any:
        if not self.connected:
            raise RpcConnectionError("Not connected")
        request_id = next(self._ids)
        payload = {"jsonrpc": "2.0", "id": request_id, "method": method, "params": params or []}
        future = asyncio.get_event_loop().create_future()
        self._pending[request_id] = future
        try:
            self._writer.write(json.dumps(payload).encode() + b"\n")
            await self._writer.drain()
            return await asyncio.wait_for(future, self.timeout)
        except asyncio.TimeoutError as exc:
            raise RpcError(None, f"{method} timed out after {self.timeout}s") from exc
        except (ConnectionError, OSError) as exc:
            raise RpcConnectionError(f"{method} failed: {exc}") from exc
        finally:
            self._pending.pop(request_id, None)

    async def _read_loop(self) -> None:
        try:
            while True:
                line = await self._reader.readline()
                if not line:
                    break
                try:
                    message = json.loads(line)
                except json.JSONDecodeError:
                    logger.warning("Ignoring malformed IPC message: %r", line[:200])
                    continue
                self._handle_message(message)
        except (ConnectionError, OSError) as exc:
            logger.warning("IPC connection lost: %s", exc)
        finally:
            self._writer = None
            self._fail_pending("Connection closed")
            if self.on_close is not None:
                self.on_close()

    def _handle_message(self, message: Dict[str, Any]) -> None:
        if message.get("method") == "eth_subscription":
            params = message.get("params") or {}
            if self.on_notification is not None:
                self.on_notification(params.get("subscription"), params.get("result"))
            return
        future = self._pending.get(message.get("id"))
        if future is None or future.done():
            return
        error = message.get("error")
        if error:
            future.set_exception(RpcError(error.get("code"), error.get("message", str(error))))
        else:
            future.set_result(message.get("result"))

    def _fail_pending(self, reason: str) -> None:
        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(RpcConnectionError(reason))
