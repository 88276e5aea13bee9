"""Newline-delimited JSON-RPC over a child process's stdio.

Shared by the ACP and Codex adapters. Both peers speak JSON-RPC 2.0
framed one object per line; Codex omits the ``"jsonrpc"`` member, so
the header is optional on the way out and never required on the way in.

The reader task demultiplexes three kinds of inbound objects:

- responses (``id`` without ``method``) resolve the matching request future;
- server requests (``id`` and ``method``) are served concurrently, because
  answering one may wait on the user (tool approvals);
- notifications (``method`` only) are handled inline so their order is kept.
"""
from __future__ import annotations

import asyncio
import itertools
import json
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from typing import Any

from agentdeck.engine.errors import (
    ConnectionClosedError,
    RpcError,
    RpcTimeoutError,
)

logger = logging.getLogger(__name__)

METHOD_NOT_FOUND = -32601
INTERNAL_ERROR = -32603

RequestHandler = Callable[[str, Any], Awaitable[Any]]
NotificationHandler = Callable[[str, Any], Awaitable[None]]
ExitHandler = Callable[[int | None, str], Awaitable[None]]

_DEFAULT = object()


class JsonRpcConnection:
    """One JSON-RPC peer living in a child process."""

    def __init__(
        self,
        name: str,
        *,
        include_jsonrpc_header: bool = True,
        request_handler: RequestHandler | None = None,
        notification_handler: NotificationHandler | None = None,
        on_exit: ExitHandler | None = None,
        default_timeout: float = 30.0,
    ) -> None:
        self._name = name
        self._include_header = include_jsonrpc_header
        self._request_handler = request_handler
        self._notification_handler = notification_handler
        self._on_exit = on_exit
        self._default_timeout = default_timeout

        self._process: asyncio.subprocess.Process | None = None
        self._reader: asyncio.StreamReader | None = None
        self._writer: Any = None
        self._ids = itertools.count(1)
        self._pending: dict[int, asyncio.Future] = {}
        self._write_lock = asyncio.Lock()
        self._reader_task: asyncio.Task | None = None
        self._stderr_task: asyncio.Task | None = None
        self._request_tasks: set[asyncio.Task] = set()
        self._stderr_tail: deque[str] = deque(maxlen=50)
        self._closed = False
        self._closing = False

    @property
    def is_alive(self) -> bool:
        return self._reader is not None and not self._closed

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    @property
    def stderr_tail(self) -> str:
        return "\n".join(self._stderr_tail)

    async def spawn(
        self,
        command: list[str],
        *,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
    ) -> None:
        """Start the child process and begin reading.

        Raises FileNotFoundError / OSError when the executable cannot run.
        """
        # create_subprocess_exec passes args as array, no shell
        proc = await asyncio.create_subprocess_exec(
            *command,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
            env=env,
            limit=16 * 1024 * 1024,
        )
        logger.info("%s process started (pid=%d): %s", self._name, proc.pid, command[0])
        self.attach(proc.stdout, proc.stdin, process=proc)
        if proc.stderr is not None:
            self._stderr_task = asyncio.create_task(self._drain_stderr(proc.stderr))

    def attach(
        self,
        reader: asyncio.StreamReader,
        writer: Any,
        *,
        process: asyncio.subprocess.Process | None = None,
    ) -> None:
        """Use existing streams (a spawned process, or a test double)."""
        self._process = process
        self._reader = reader
        self._writer = writer
        self._closed = False
        self._reader_task = asyncio.create_task(self._read_loop())

    # ── Outbound ──────────────────────────────────────────────

    async def _send(self, payload: dict[str, Any]) -> None:
        if self._closed or self._writer is None:
            raise ConnectionClosedError(f"{self._name} connection is closed")
        if self._include_header:
            payload = {"jsonrpc": "2.0", **payload}
        data = json.dumps(payload, ensure_ascii=False).encode("utf-8") + b"\n"
        async with self._write_lock:
            try:
                self._writer.write(data)
                await self._writer.drain()
            except (BrokenPipeError, ConnectionResetError) as exc:
                raise ConnectionClosedError(
                    f"{self._name} pipe closed: {exc}"
                ) from exc

    async def request(
        self,
        method: str,
        params: Any = None,
        *,
        timeout: Any = _DEFAULT,
    ) -> Any:
        """Send a request and wait for its result.

        ``timeout=None`` waits indefinitely (used for long-running turns).
        Raises RpcError, RpcTimeoutError or ConnectionClosedError.
        """
        if timeout is _DEFAULT:
            timeout = self._default_timeout
        request_id = next(self._ids)
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        payload: dict[str, Any] = {"id": request_id, "method": method}
        if params is not None:
            payload["params"] = params
        try:
            await self._send(payload)
            if timeout is None:
                return await future
            return await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError:
            raise RpcTimeoutError(method, timeout) from None
        finally:
            self._pending.pop(request_id, None)

    async def notify(self, method: str, params: Any = None) -> None:
        payload: dict[str, Any] = {"method": method}
        if params is not None:
            payload["params"] = params
        await self._send(payload)

    # ── Inbound ───────────────────────────────────────────────

    async def _read_loop(self) -> None:
        assert self._reader is not None
        try:
            while True:
                line = await self._reader.readline()
                if not line:
                    break
                text = line.decode("utf-8", errors="replace").strip()
                if not text:
                    continue
                try:
                    message = json.loads(text)
                except json.JSONDecodeError:
                    logger.debug("%s: skipping non-JSON line: %s", self._name, text[:200])
                    continue
                if not isinstance(message, dict):
                    logger.warning("%s: skipping non-object message: %s", self._name, text[:200])
                    continue
                await self._dispatch(message)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("%s: reader loop failed", self._name)
        await self._handle_eof()

    async def _dispatch(self, message: dict[str, Any]) -> None:
        method = message.get("method")
        msg_id = message.get("id")

        if method is None:
            future = self._pending.get(msg_id) if msg_id is not None else None
            if future is None or future.done():
                logger.debug("%s: response for unknown request id %s", self._name, msg_id)
                return
            error = message.get("error")
            if error is not None:
                if not isinstance(error, dict):
                    error = {"message": str(error)}
                future.set_exception(RpcError(
                    int(error.get("code", INTERNAL_ERROR)),
                    str(error.get("message", "")),
                    error.get("data"),
                ))
            else:
                future.set_result(message.get("result"))
            return

        params = message.get("params")
        if msg_id is not None:
            task = asyncio.create_task(self._serve_request(msg_id, method, params))
            self._request_tasks.add(task)
            task.add_done_callback(self._request_tasks.discard)
            return

        if self._notification_handler is None:
            return
        try:
            await self._notification_handler(method, params)
        except Exception:
            logger.exception("%s: notification handler failed for %s", self._name, method)

    async def _serve_request(self, msg_id: Any, method: str, params: Any) -> None:
        if self._request_handler is None:
            await self._reply_error(msg_id, METHOD_NOT_FOUND, f"Method not found: {method}")
            return
        try:
            result = await self._request_handler(method, params)
        except RpcError as exc:
            await self._reply_error(msg_id, exc.code, exc.rpc_message, exc.data)
            return
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("%s: request handler failed for %s", self._name, method)
            await self._reply_error(msg_id, INTERNAL_ERROR, str(exc))
            return
        try:
            await self._send({"id": msg_id, "result": result})
        except ConnectionClosedError:
            logger.debug("%s: peer gone before reply to %s", self._name, method)

    async def _reply_error(
        self, msg_id: Any, code: int, message: str, data: Any = None,
    ) -> None:
        error: dict[str, Any] = {"code": code, "message": message}
        if data is not None:
            error["data"] = data
        try:
            await self._send({"id": msg_id, "error": error})
        except ConnectionClosedError:
            logger.debug("%s: peer gone before error reply", self._name)

    async def _drain_stderr(self, stream: asyncio.StreamReader) -> None:
        while True:
            line = await stream.readline()
            if not line:
                return
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                self._stderr_tail.append(text)
                logger.debug("%s stderr: %s", self._name, text)

    def _fail_pending(self, reason: str) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(ConnectionClosedError(reason))
        self._pending.clear()

    async def _handle_eof(self) -> None:
        self._closed = True
        self._fail_pending(f"{self._name} closed the connection")
        code: int | None = None
        if self._process is not None:
            try:
                code = await asyncio.wait_for(self._process.wait(), timeout=5.0)
            except asyncio.TimeoutError:
                code = self._process.returncode
        if self._stderr_task is not None:
            try:
                await asyncio.wait_for(asyncio.shield(self._stderr_task), timeout=1.0)
            except (asyncio.TimeoutError, asyncio.CancelledError):
                pass
        if self._closing:
            return
        logger.warning("%s exited (code=%s)", self._name, code)
        if self._on_exit is not None:
            try:
                await self._on_exit(code, self.stderr_tail)
            except Exception:
                logger.exception("%s: exit handler failed", self._name)

    # ── Shutdown ──────────────────────────────────────────────

    async def close(self) -> None:
        """Stop the peer: terminate, wait 5s, then kill."""
        self._closing = True
        self._closed = True
        self._fail_pending(f"{self._name} connection closed")
        for task in list(self._request_tasks):
            task.cancel()
        if self._writer is not None:
            try:
                self._writer.close()
            except Exception:
                logger.debug("%s: error closing stdin", self._name, exc_info=True)

        proc = self._process
        if proc is not None and proc.returncode is None:
            pid = proc.pid
            try:
                proc.terminate()
                try:
                    await asyncio.wait_for(proc.wait(), timeout=5.0)
                except asyncio.TimeoutError:
                    proc.kill()
                    await proc.wait()
                logger.info("%s process stopped (pid=%d)", self._name, pid)
            except ProcessLookupError:
                pass

        for task in (self._reader_task, self._stderr_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except (asyncio.CancelledError, Exception):
                    pass
