"""Reqbench Plugin Bridge — Event Channel

Duplex, correlated request/response messaging over a Transport. The same
class serves both ends: the plugin side sends requests and receives
responses and notifications; the host side is constructed with a request
handler and answers inbound requests.

Guarantees:
- exactly one response per request id; ids are never reused while pending
- no ordering between outstanding requests; correlation is by id only
- every request has a bounded wait: on expiry a TransportError(timeout)
  outcome is synthesized and any late response is discarded
- closing the channel (or transport EOF) resolves every outstanding request
  with TransportError(cancelled) and cancels in-flight inbound handlers
"""

from __future__ import annotations
import asyncio
import json
import logging
from typing import Awaitable, Callable, Dict, List, Optional, Set

from core.errors import InternalError, TransportError, ValidationError
from core.transports import Transport
from models.events import ErrorKind, Notification, RequestEnvelope, ResponseEnvelope

logger = logging.getLogger("reqbench.channel")

DEFAULT_REQUEST_TIMEOUT = 30.0

RequestHandler = Callable[[RequestEnvelope, "EventChannel"], Awaitable[ResponseEnvelope]]
NotificationHandler = Callable[[Notification], None]
CloseCallback = Callable[["EventChannel"], None]


def _safe(value, max_len: int = 200) -> str:
    """Sanitize untrusted text for logging: strip CR/LF, truncate."""
    return str(value)[:max_len].replace("\r", " ").replace("\n", " ")


class EventChannel:
    def __init__(
        self,
        transport: Transport,
        handler: Optional[RequestHandler] = None,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        name: Optional[str] = None,
    ):
        if request_timeout <= 0:
            raise ValueError("request_timeout must be positive")
        self.transport = transport
        self.name = name or transport.name
        self.request_timeout = request_timeout
        self._handler = handler
        self._notification_handler: Optional[NotificationHandler] = None
        self._pending: Dict[str, asyncio.Future] = {}
        self._inbound: Set[asyncio.Task] = set()
        self._close_callbacks: List[CloseCallback] = []
        self._reader_task: Optional[asyncio.Task] = None
        self._close_task: Optional[asyncio.Task] = None
        self._write_lock = asyncio.Lock()
        self._closed = False
        self._closed_event = asyncio.Event()

    # --- Public API ---

    def start(self) -> "EventChannel":
        """Start the background reader. Must be called from a running loop."""
        if self._reader_task is None:
            self._reader_task = asyncio.create_task(
                self._reader_loop(), name=f"channel-{self.name}-reader"
            )
        return self

    async def send(
        self, envelope: RequestEnvelope, timeout: Optional[float] = None
    ) -> ResponseEnvelope:
        """Send a request and wait for its correlated response.

        Never raises for transport problems: timeouts, cancellation and a
        closed channel come back as TransportError outcomes.
        """
        if self._closed:
            return self._transport_failure(
                envelope.id, f"Channel {self.name!r} is closed", TransportError.CLOSED
            )
        if envelope.id in self._pending:
            raise ValueError(f"Request id {envelope.id!r} is already outstanding")

        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()
        self._pending[envelope.id] = future

        try:
            await self._write(envelope.to_wire())
        except (ConnectionError, ValueError) as e:
            self._pending.pop(envelope.id, None)
            future.cancel()
            logger.warning("[%s] %s send failed: %s", envelope.id, envelope.kind, _safe(e))
            return self._transport_failure(
                envelope.id, f"Channel {self.name!r} send failed", TransportError.CLOSED
            )

        wait = self.request_timeout if timeout is None else timeout
        try:
            return await asyncio.wait_for(future, timeout=wait)
        except asyncio.TimeoutError:
            self._pending.pop(envelope.id, None)
            logger.warning(
                "[%s] %s timed out after %ss on channel %r",
                envelope.id, envelope.kind, wait, self.name,
            )
            return self._transport_failure(
                envelope.id, f"{envelope.kind} timed out after {wait}s", TransportError.TIMEOUT
            )
        except asyncio.CancelledError:
            # Caller cancelled: forget the request so a late response is dropped
            self._pending.pop(envelope.id, None)
            raise

    async def notify(self, subscription_id: str, event: dict) -> None:
        """Push a notification to the peer. Raises ConnectionError if closed."""
        if self._closed:
            raise ConnectionError(f"Channel {self.name!r} is closed")
        await self._write(Notification(subscription_id, event).to_wire())

    def set_notification_handler(self, handler: Optional[NotificationHandler]) -> None:
        self._notification_handler = handler

    def on_close(self, callback: CloseCallback) -> None:
        if self._closed:
            callback(self)
        else:
            self._close_callbacks.append(callback)

    async def close(self, reason: str = "Channel closed") -> None:
        if self._closed:
            return
        self._closed = True
        logger.info("Channel %r closing: %s", self.name, reason)

        for request_id, future in list(self._pending.items()):
            if not future.done():
                future.set_result(self._transport_failure(
                    request_id, f"{reason} (request cancelled)", TransportError.CANCELLED
                ))
        self._pending.clear()

        current = asyncio.current_task()
        for task in list(self._inbound):
            if task is not current:
                task.cancel()
        if self._reader_task is not None and self._reader_task is not current:
            self._reader_task.cancel()

        await self.transport.close()

        for callback in self._close_callbacks:
            try:
                callback(self)
            except Exception:
                logger.exception("Channel %r close callback failed", self.name)
        self._close_callbacks.clear()
        self._closed_event.set()

    async def wait_closed(self) -> None:
        await self._closed_event.wait()

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    # --- Internals ---

    @staticmethod
    def _transport_failure(request_id: str, message: str, reason: str) -> ResponseEnvelope:
        response = ResponseEnvelope.failure(request_id, ErrorKind.TRANSPORT, message)
        response.error["reason"] = reason
        return response

    async def _write(self, message: dict) -> None:
        line = json.dumps(message)
        async with self._write_lock:
            await self.transport.send(line)

    async def _reader_loop(self) -> None:
        try:
            while True:
                line = await self.transport.receive()
                if line is None:
                    break
                try:
                    msg = json.loads(line)
                except (json.JSONDecodeError, RecursionError) as e:
                    logger.warning("Channel %r: non-JSON message: %s", self.name, _safe(e, 100))
                    continue
                if not isinstance(msg, dict):
                    logger.warning("Channel %r: non-object message", self.name)
                    continue
                self._route(msg)
        except asyncio.CancelledError:
            return
        except Exception as e:
            logger.error("Channel %r: reader error: %s", self.name, _safe(e))
        finally:
            if not self._closed:
                self._close_task = asyncio.create_task(self.close("Transport closed"))

    def _route(self, msg: dict) -> None:
        if "kind" in msg and "id" in msg:
            task = asyncio.create_task(self._handle_inbound(msg))
            self._inbound.add(task)
            task.add_done_callback(self._inbound.discard)

        elif "ok" in msg and "id" in msg:
            try:
                response = ResponseEnvelope.from_wire(msg)
            except ValueError as e:
                logger.warning("Channel %r: malformed response: %s", self.name, _safe(e))
                return
            future = self._pending.pop(response.id, None)
            if future is not None and not future.done():
                future.set_result(response)
            else:
                logger.debug(
                    "Channel %r: discarding late or unknown response %s",
                    self.name, _safe(response.id, 64),
                )

        elif "subscription" in msg:
            try:
                notification = Notification.from_wire(msg)
            except ValueError as e:
                logger.warning("Channel %r: malformed notification: %s", self.name, _safe(e))
                return
            if self._notification_handler is None:
                logger.debug("Channel %r: notification with no handler dropped", self.name)
                return
            try:
                self._notification_handler(notification)
            except Exception:
                logger.exception("Channel %r: notification handler failed", self.name)

        else:
            logger.warning("Channel %r: unrecognized message format", self.name)

    async def _handle_inbound(self, msg: dict) -> None:
        raw_id = msg.get("id")
        try:
            envelope = RequestEnvelope.from_wire(msg)
        except ValueError as e:
            if not isinstance(raw_id, str) or not raw_id:
                logger.warning("Channel %r: request without usable id dropped", self.name)
                return
            response = ResponseEnvelope.failure(raw_id[:128], ErrorKind.VALIDATION, str(e))
        else:
            if self._handler is None:
                error = ValidationError(f"Channel {self.name!r} does not accept requests")
                response = ResponseEnvelope.failure(envelope.id, error.kind, error.message)
            else:
                try:
                    response = await self._handler(envelope, self)
                except asyncio.CancelledError:
                    raise
                except Exception:
                    logger.error(
                        "[%s] handler error for %s", envelope.id, _safe(envelope.kind),
                        exc_info=True,
                    )
                    error = InternalError("Internal error")
                    response = ResponseEnvelope.failure(envelope.id, error.kind, error.message)

        try:
            await self._write(response.to_wire())
        except (ConnectionError, ValueError) as e:
            logger.debug("Channel %r: response %s not delivered: %s",
                         self.name, response.id, _safe(e))
