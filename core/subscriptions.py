"""Reqbench Plugin Bridge — Change Subscriptions

A Subscription is a cancellable, restartable stream of ChangeEvents for one
workspace, optionally narrowed to a set of entity kinds:

    async with context.subscribe(workspace_id, models=[ModelKind.HTTP_REQUEST]) as sub:
        async for change in sub:
            ...

Iteration ends when the subscription is closed or the channel goes away.
"""

from __future__ import annotations
import asyncio
import logging
import uuid
from typing import Iterable, List, Optional

from core.errors import NotFoundError, TransportError
from core.plugin_dispatcher import PluginDispatcher
from models.entities import ChangeEvent, ModelKind
from models.events import EventKind

logger = logging.getLogger("reqbench.subscriptions")


class Subscription:
    def __init__(
        self,
        dispatcher: PluginDispatcher,
        workspace_id: str,
        models: Optional[Iterable[ModelKind]] = None,
    ):
        self._dispatcher = dispatcher
        self.workspace_id = workspace_id
        self.models: List[ModelKind] = list(models or [])
        self.subscription_id: Optional[str] = None
        self._queue: Optional[asyncio.Queue] = None

    @property
    def active(self) -> bool:
        return self.subscription_id is not None

    async def start(self) -> "Subscription":
        if self.active:
            return self
        subscription_id = f"sub_{uuid.uuid4().hex[:12]}"
        # Queue first so no event can arrive before there is somewhere to put it
        self._queue = self._dispatcher.register_stream(subscription_id)
        payload = {"subscriptionId": subscription_id, "workspaceId": self.workspace_id}
        if self.models:
            payload["models"] = [m.value for m in self.models]
        try:
            await self._dispatcher.call(EventKind.SUBSCRIBE, payload)
        except BaseException:
            self._dispatcher.unregister_stream(subscription_id)
            self._queue = None
            raise
        self.subscription_id = subscription_id
        logger.debug("Subscribed %s to workspace %s", subscription_id, self.workspace_id)
        return self

    async def close(self) -> None:
        if not self.active:
            return
        subscription_id = self.subscription_id
        self.subscription_id = None
        self._dispatcher.unregister_stream(subscription_id)
        try:
            await self._dispatcher.call(
                EventKind.UNSUBSCRIBE, {"subscriptionId": subscription_id}
            )
        except (NotFoundError, TransportError) as e:
            logger.debug("Unsubscribe %s: %s", subscription_id, e)

    async def restart(self) -> "Subscription":
        """Close and re-open with a fresh subscription id. Events committed
        while no subscription was open are not replayed."""
        await self.close()
        return await self.start()

    def __aiter__(self):
        return self

    async def __anext__(self) -> ChangeEvent:
        if self._queue is None:
            raise StopAsyncIteration
        event = await self._queue.get()
        if event is None:
            self._queue = None
            raise StopAsyncIteration
        return ChangeEvent.from_wire(event)

    async def __aenter__(self) -> "Subscription":
        return await self.start()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
