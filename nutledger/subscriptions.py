"""Subscription hub: per-subscriber queues for quote and proof state changes."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Any, Callable, Protocol
from uuid import uuid4

from .mint import MintConnector
from .quotes import melt_quote_from_response, mint_quote_from_response
from .types import (
    MeltQuoteUpdate,
    MintError,
    MintQuoteUpdate,
    NotificationPayload,
    ProofState,
    ProofStateUpdate,
    SubscribeParams,
    SubscriptionClosed,
    SubscriptionKind,
    TransportFailure,
    payload_kind,
)
from .websocket import MintWebSocket

logger = logging.getLogger(__name__)

Publish = Callable[[NotificationPayload], int]


class RemoteSource(Protocol):
    """Watches mint-side state for a subscription and publishes changes."""

    async def watch(self, params: SubscribeParams, publish: Publish) -> None: ...


# ──────────────────────────────────────────────────────────────────────────────
# Subscriptions
# ──────────────────────────────────────────────────────────────────────────────


class Subscription:
    """One consumer's FIFO of notifications.

    With ``max_queue_size`` set the oldest undelivered event is dropped when
    the queue is full. The same state for the same entity is delivered once.
    """

    def __init__(
        self,
        hub: "SubscriptionHub",
        params: SubscribeParams,
        *,
        max_queue_size: int | None = None,
    ) -> None:
        self.id = params.id or str(uuid4())
        self.params = params
        self._hub = hub
        self._queue: deque[NotificationPayload] = deque(maxlen=max_queue_size)
        self._event = asyncio.Event()
        self._last_state: dict[str, str] = {}
        self._closed = False
        self._receiving = False
        self._task: asyncio.Task[None] | None = None

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def size(self) -> int:
        """Current queue size."""
        return len(self._queue)

    def matches(self, payload: NotificationPayload) -> bool:
        if payload_kind(payload) != self.params.kind:
            return False
        return not self.params.filters or payload.entity_id in self.params.filters

    def _offer(self, payload: NotificationPayload) -> bool:
        if self._closed or not self.matches(payload):
            return False
        if self._last_state.get(payload.entity_id) == payload.state_key:
            return False
        self._last_state[payload.entity_id] = payload.state_key
        if self._queue.maxlen is not None and len(self._queue) == self._queue.maxlen:
            logger.warning(
                "Subscription %s queue full, dropping oldest notification", self.id
            )
        self._queue.append(payload)
        self._event.set()
        return True

    async def recv(self, timeout: float | None = None) -> NotificationPayload:
        """Next notification in arrival order.

        Raises:
            SubscriptionClosed: The subscription is closed, also when closed
                while waiting
            TimeoutError: Nothing arrived within ``timeout`` seconds
        """
        if self._receiving:
            raise RuntimeError(f"Subscription {self.id} already has a consumer")
        self._receiving = True
        try:
            async with asyncio.timeout(timeout):
                while True:
                    if self._closed:
                        raise SubscriptionClosed(
                            f"Subscription {self.id} is closed", entity_id=self.id
                        )
                    if self._queue:
                        return self._queue.popleft()
                    self._event.clear()
                    await self._event.wait()
        finally:
            self._receiving = False

    def _start(self, source: RemoteSource) -> None:
        self._task = asyncio.create_task(source.watch(self.params, self._hub.publish))
        self._task.add_done_callback(self._watch_done)

    def _watch_done(self, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.warning("Remote watch for subscription %s failed: %s", self.id, error)

    def close(self) -> None:
        """Close the subscription. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self._queue.clear()
        self._event.set()
        self._hub._remove(self)
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def aclose(self) -> None:
        self.close()
        if self._task is not None:
            # Failures were already reported by the done callback
            await asyncio.gather(self._task, return_exceptions=True)

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        await self.aclose()


class SubscriptionHub:
    """Fans state changes out to every matching subscription."""

    def __init__(self, *, max_queue_size: int | None = None) -> None:
        self.max_queue_size = max_queue_size
        self._subscriptions: dict[str, Subscription] = {}

    def subscribe(
        self, params: SubscribeParams, *, source: RemoteSource | None = None
    ) -> Subscription:
        """Register a subscription, optionally watching the mint through ``source``."""
        subscription = Subscription(self, params, max_queue_size=self.max_queue_size)
        if subscription.id in self._subscriptions:
            raise ValueError(f"Subscription id {subscription.id} already in use")
        self._subscriptions[subscription.id] = subscription
        if source is not None:
            subscription._start(source)
        logger.debug(
            "Subscribed %s to %s %s", subscription.id, params.kind.value, params.filters
        )
        return subscription

    def publish(self, payload: NotificationPayload) -> int:
        """Deliver ``payload`` to matching subscriptions; returns how many took it."""
        delivered = 0
        for subscription in list(self._subscriptions.values()):
            if subscription._offer(payload):
                delivered += 1
        return delivered

    def _remove(self, subscription: Subscription) -> None:
        self._subscriptions.pop(subscription.id, None)

    @property
    def active(self) -> list[Subscription]:
        return list(self._subscriptions.values())

    async def aclose(self) -> None:
        for subscription in list(self._subscriptions.values()):
            await subscription.aclose()


# ──────────────────────────────────────────────────────────────────────────────
# Remote sources
# ──────────────────────────────────────────────────────────────────────────────


def payload_from_notification(
    mint_url: str, kind: SubscriptionKind, data: dict[str, Any]
) -> NotificationPayload:
    """Build a payload from a mint response or NUT-17 notification body."""
    if kind == SubscriptionKind.BOLT11_MINT_QUOTE:
        return MintQuoteUpdate(mint_quote_from_response(mint_url, data))
    if kind == SubscriptionKind.BOLT11_MELT_QUOTE:
        return MeltQuoteUpdate(melt_quote_from_response(mint_url, data))
    if kind == SubscriptionKind.PROOF_STATE:
        return ProofStateUpdate(
            y=data["Y"], state=ProofState(data["state"]), witness=data.get("witness")
        )
    raise ValueError(f"Unknown subscription kind: {kind}")


class PollingSource:
    """Polls read-only mint endpoints with bounded exponential backoff.

    The interval doubles (up to ``max_interval``) while nothing changes or the
    mint cannot be reached, and resets when a change is seen.
    """

    def __init__(
        self,
        mint: MintConnector,
        *,
        interval: float = 1.0,
        max_interval: float = 30.0,
    ) -> None:
        self.mint = mint
        self.interval = interval
        self.max_interval = max_interval

    async def _fetch(self, params: SubscribeParams) -> list[NotificationPayload]:
        if params.kind == SubscriptionKind.PROOF_STATE:
            response = await self.mint.check_state(Ys=list(params.filters))
            return [
                payload_from_notification(self.mint.url, params.kind, dict(state))
                for state in response["states"]
            ]
        payloads: list[NotificationPayload] = []
        for quote_id in params.filters:
            if params.kind == SubscriptionKind.BOLT11_MINT_QUOTE:
                data: Any = await self.mint.get_mint_quote(quote_id)
            else:
                data = await self.mint.get_melt_quote(quote_id)
            payloads.append(payload_from_notification(self.mint.url, params.kind, data))
        return payloads

    async def watch(self, params: SubscribeParams, publish: Publish) -> None:
        delay = self.interval
        while True:
            try:
                payloads = await self._fetch(params)
            except TransportFailure as e:
                logger.warning("Polling %s failed: %s", self.mint.url, e)
                delay = min(delay * 2, self.max_interval)
            else:
                changed = sum(publish(payload) for payload in payloads)
                delay = self.interval if changed else min(delay * 2, self.max_interval)
            await asyncio.sleep(delay)


class WebSocketSource:
    """NUT-17 notifications, falling back to polling when the socket fails."""

    def __init__(
        self,
        mint_url: str,
        fallback: PollingSource,
        *,
        request_timeout: float = 10.0,
    ) -> None:
        self.mint_url = mint_url
        self.fallback = fallback
        self.request_timeout = request_timeout

    async def watch(self, params: SubscribeParams, publish: Publish) -> None:
        ws = MintWebSocket(self.mint_url, request_timeout=self.request_timeout)

        def _on_notification(data: dict[str, Any]) -> None:
            publish(payload_from_notification(self.mint_url, params.kind, data))

        try:
            await ws.subscribe(params.kind.value, list(params.filters), _on_notification)
            await ws.wait_closed()
            raise TransportFailure(f"Websocket to {self.mint_url} closed")
        except MintError as e:
            logger.warning(
                "Websocket subscription to %s failed (%s), falling back to polling",
                self.mint_url,
                e,
            )
        finally:
            await ws.disconnect()
        await self.fallback.watch(params, publish)
