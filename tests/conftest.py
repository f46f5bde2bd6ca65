import asyncio
from contextlib import asynccontextmanager
from types import SimpleNamespace

import pytest

from core.host_dispatcher import HostDispatcher
from core.http_sender import RequestSender, SendResult
from core.plugin_runtime import connect_local
from core.store import MemoryEntityStore


class FakeSender(RequestSender):
    """Records outgoing requests and answers without touching the network."""

    def __init__(self, status=200, body="pong", delay=0.0, error=None):
        self.status = status
        self.body = body
        self.delay = delay
        self.error = error
        self.sent = []

    async def send(self, request):
        self.sent.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            return SendResult(url=request.url, error=self.error)
        return SendResult(
            status=self.status,
            status_text="OK" if self.status == 200 else "Error",
            headers=[{"name": "Content-Type", "value": "text/plain", "enabled": True}],
            body=self.body,
            url=request.url,
            elapsed=3,
        )


@pytest.fixture
def fake_sender():
    return FakeSender()


@pytest.fixture
def bench(fake_sender):
    """``async with bench() as b``: a host over an in-memory store with a
    local plugin connection. ``b.ctx`` is the PluginContext."""

    @asynccontextmanager
    async def _open(request_timeout=5.0, sender=None):
        host = HostDispatcher(MemoryEntityStore(), sender or fake_sender)
        connection = connect_local(host, request_timeout)
        try:
            yield SimpleNamespace(
                host=host,
                store=host.store,
                ctx=connection.context,
                connection=connection,
                sender=sender or fake_sender,
            )
        finally:
            await connection.close()
            await host.close()

    return _open
