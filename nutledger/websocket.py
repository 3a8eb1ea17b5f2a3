"""Minimal NUT-17 websocket client for mint state notifications."""

from __future__ import annotations

import asyncio
import inspect
import itertools
import json
import logging
from typing import Any, Awaitable, Callable, Union
from uuid import uuid4

import websockets

from .types import ProtocolError, TransportFailure

logger = logging.getLogger(__name__)

NotificationCallback = Callable[[dict[str, Any]], Union[Awaitable[None], None]]


def websocket_url(mint_url: str) -> str:
    """Map a mint's http(s) base url to its NUT-17 endpoint."""
    url = mint_url.rstrip("/")
    if url.startswith("https://"):
        url = "wss://" + url[len("https://") :]
    elif url.startswith("http://"):
        url = "ws://" + url[len("http://") :]
    return f"{url}/v1/ws"


class MintWebSocket:
    """JSON-RPC 2.0 subscriptions over the mint's websocket endpoint."""

    def __init__(self, mint_url: str, *, request_timeout: float = 10.0) -> None:
        """Initialize the client.

        Args:
            mint_url: Mint base URL (e.g. "https://mint.example.com")
            request_timeout: Seconds to wait for a subscribe/unsubscribe reply
        """
        self.url = websocket_url(mint_url)
        self.request_timeout = request_timeout
        self.ws: Any = None
        self.subscriptions: dict[str, NotificationCallback] = {}
        self._ids = itertools.count()
        self._pending: dict[int, asyncio.Future[dict[str, Any]]] = {}
        self._reader: asyncio.Task[None] | None = None
        self._send_lock = asyncio.Lock()

    @property
    def connected(self) -> bool:
        return self.ws is not None and self.ws.close_code is None

    async def connect(self) -> None:
        """Connect to the mint and start the reader task."""
        if self.connected:
            return
        try:
            async with asyncio.timeout(5.0):
                self.ws = await websockets.connect(
                    self.url, ping_interval=20, ping_timeout=10, close_timeout=10
                )
        except TimeoutError as e:
            raise TransportFailure(f"Connection timeout: {self.url}") from e
        except (OSError, websockets.exceptions.WebSocketException) as e:
            raise TransportFailure(f"Connection failed: {e}") from e
        self._reader = asyncio.create_task(self.process_messages())

    async def disconnect(self) -> None:
        """Disconnect and fail every outstanding request."""
        if self._reader is not None:
            self._reader.cancel()
            await asyncio.gather(self._reader, return_exceptions=True)
            self._reader = None
        if self.connected:
            await self.ws.close()
        self._fail_pending(TransportFailure("Websocket closed"))
        self.subscriptions.clear()

    async def wait_closed(self) -> None:
        """Return once the reader task has stopped."""
        if self._reader is not None:
            await asyncio.wait([self._reader])

    async def _send(self, message: dict[str, Any]) -> None:
        if not self.connected:
            raise TransportFailure("Not connected to mint websocket")
        async with self._send_lock:
            await self.ws.send(json.dumps(message))

    async def _call(self, method: str, params: dict[str, Any]) -> dict[str, Any]:
        request_id = next(self._ids)
        future: asyncio.Future[dict[str, Any]] = (
            asyncio.get_running_loop().create_future()
        )
        self._pending[request_id] = future
        try:
            await self._send(
                {"jsonrpc": "2.0", "id": request_id, "method": method, "params": params}
            )
            async with asyncio.timeout(self.request_timeout):
                return await future
        except TimeoutError as e:
            raise TransportFailure(f"No reply to {method} from {self.url}") from e
        finally:
            self._pending.pop(request_id, None)

    # ───────────────────────── Subscription Management ─────────────────────────────

    async def subscribe(
        self,
        kind: str,
        filters: list[str],
        callback: NotificationCallback,
    ) -> str:
        """Subscribe to state changes of ``kind`` for the given filters.

        Returns:
            Subscription ID (use to unsubscribe)
        """
        await self.connect()
        sub_id = str(uuid4())
        self.subscriptions[sub_id] = callback
        try:
            await self._call(
                "subscribe", {"kind": kind, "subId": sub_id, "filters": filters}
            )
        except (TransportFailure, ProtocolError):
            self.subscriptions.pop(sub_id, None)
            raise
        return sub_id

    async def unsubscribe(self, sub_id: str) -> None:
        """Close a subscription."""
        if self.subscriptions.pop(sub_id, None) is not None and self.connected:
            await self._call("unsubscribe", {"subId": sub_id})

    def _fail_pending(self, error: Exception) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(error)
        self._pending.clear()

    async def _dispatch(self, msg: dict[str, Any]) -> None:
        if "id" in msg and msg["id"] in self._pending:
            future = self._pending[msg["id"]]
            if future.done():
                return
            if "error" in msg:
                error = msg["error"] or {}
                future.set_exception(
                    ProtocolError(
                        f"Mint websocket error: {error.get('message')}",
                        code=error.get("code"),
                        detail=error.get("message"),
                    )
                )
            else:
                future.set_result(msg.get("result") or {})
            return

        if msg.get("method") == "subscribe":
            params = msg.get("params") or {}
            callback = self.subscriptions.get(params.get("subId"))
            if callback is None:
                return
            result = callback(params.get("payload") or {})
            if inspect.isawaitable(result):
                await result

    async def process_messages(self) -> None:
        """Read messages until the connection closes.

        Runs as a background task started by connect().
        """
        try:
            while self.connected:
                data = await self.ws.recv()
                try:
                    msg = json.loads(data)
                except json.JSONDecodeError:
                    logger.warning("Ignoring non-JSON websocket frame from %s", self.url)
                    continue
                if isinstance(msg, dict):
                    await self._dispatch(msg)
        except websockets.exceptions.ConnectionClosed:
            logger.info("Mint websocket %s closed", self.url)
        finally:
            self._fail_pending(TransportFailure("Websocket closed"))
