"""Reqbench Plugin Bridge — Plugin-side Dispatcher

Turns typed API calls into request envelopes, awaits the correlated
response on the EventChannel and raises the matching BridgeError for error
outcomes. Also routes subscription notifications to per-subscription queues.
"""

from __future__ import annotations
import asyncio
import logging
from typing import Any, Dict, Optional

from core.channel import EventChannel
from core.errors import TransportError, error_from_wire
from models.events import EventKind, Notification, RequestEnvelope

logger = logging.getLogger("reqbench.plugin_dispatcher")


class PluginDispatcher:
    def __init__(self, channel: EventChannel):
        self.channel = channel
        self._streams: Dict[str, asyncio.Queue] = {}
        channel.set_notification_handler(self._on_notification)
        channel.on_close(self._on_channel_closed)

    async def call(
        self,
        kind: EventKind,
        payload: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Issue one request and return the response payload.

        Raises the typed BridgeError carried by an error outcome.
        """
        envelope = RequestEnvelope.create(kind, payload)
        logger.debug("[%s] -> %s", envelope.id, kind.value)
        response = await self.channel.send(envelope, timeout=timeout)
        if response.ok:
            return response.payload or {}

        error = error_from_wire(response.error)
        if isinstance(error, TransportError):
            error.reason = (response.error or {}).get("reason", TransportError.CLOSED)
        logger.debug("[%s] <- %s failed: %s", envelope.id, kind.value, error)
        raise error

    # --- Subscription streams ---

    def register_stream(self, subscription_id: str) -> asyncio.Queue:
        if subscription_id in self._streams:
            raise ValueError(f"Subscription {subscription_id!r} already registered")
        queue: asyncio.Queue = asyncio.Queue()
        if self.channel.is_closed:
            queue.put_nowait(None)
        self._streams[subscription_id] = queue
        return queue

    def unregister_stream(self, subscription_id: str) -> None:
        queue = self._streams.pop(subscription_id, None)
        if queue is not None:
            queue.put_nowait(None)

    def _on_notification(self, notification: Notification) -> None:
        queue = self._streams.get(notification.subscription)
        if queue is None:
            logger.debug("Notification for unknown subscription %s dropped",
                         notification.subscription[:64])
            return
        queue.put_nowait(notification.event)

    def _on_channel_closed(self, channel: EventChannel) -> None:
        # None ends every open stream
        for queue in self._streams.values():
            queue.put_nowait(None)
        self._streams.clear()
