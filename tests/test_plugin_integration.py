"""Integration tests for subprocess plugins.

Runs tests/sample-plugin as a real child process speaking the event
protocol on stdin/stdout against an in-memory host.
"""

import asyncio
import logging
import os
import sys

import pytest

from core.host_dispatcher import HostDispatcher
from core.plugin_bridge import PluginBridge
from core.store import MemoryEntityStore
from models.entities import ModelKind
from models.models import MANIFEST_FILENAME, PluginDescriptor
from reqbench_server import discover_plugins

from conftest import FakeSender

TESTS_DIR = os.path.dirname(os.path.abspath(__file__))
SAMPLE_PLUGIN_DIR = os.path.join(TESTS_DIR, "sample-plugin")
SAMPLE_MANIFEST = os.path.join(SAMPLE_PLUGIN_DIR, MANIFEST_FILENAME)


def _sample_descriptor():
    desc = PluginDescriptor.from_json(SAMPLE_MANIFEST)
    # The interpreter running the tests has the dependencies installed
    desc.command = sys.executable
    return desc


def test_descriptor_loads_from_manifest():
    desc = PluginDescriptor.from_json(SAMPLE_MANIFEST)
    assert desc.name == "sample-smoke"
    assert desc.version == "0.1.0"
    assert os.path.isabs(desc.command)
    assert desc.args == ["-u", os.path.join(SAMPLE_PLUGIN_DIR, "plugin.py")]
    assert desc.working_dir == SAMPLE_PLUGIN_DIR
    assert desc.timeout_seconds == 10.0


def test_subprocess_env_is_minimal(monkeypatch):
    monkeypatch.setenv("PYTHONPATH", "/somewhere/else")
    monkeypatch.setenv("REQBENCH_SECRET_FOR_TEST", "x")
    env = _sample_descriptor().build_subprocess_env()
    assert "PATH" in env
    assert "PYTHONPATH" not in env
    assert "REQBENCH_SECRET_FOR_TEST" not in env


@pytest.mark.parametrize("overrides, message", [
    ({"name": "Bad Name"}, "invalid"),
    ({"version": "one"}, "semver"),
    ({"command": "definitely-not-a-real-binary-xyz"}, "not found"),
    ({"timeout_seconds": 0}, "positive"),
    ({"args": "plugin.py"}, "must be a list"),
])
def test_descriptor_rejects_bad_fields(overrides, message):
    fields = {
        "name": "ok-plugin",
        "version": "1.0.0",
        "command": sys.executable,
        "args": ["-u", "plugin.py"],
    }
    fields.update(overrides)
    with pytest.raises(ValueError, match=message):
        PluginDescriptor(**fields)


def test_discovery_finds_the_sample_plugin():
    logger = logging.getLogger("reqbench.test")
    found = discover_plugins([TESTS_DIR, os.path.join(TESTS_DIR, "missing")], logger)
    assert [d.name for d in found] == ["sample-smoke"]


def test_sample_plugin_round_trip():
    sender = FakeSender(status=200)

    async def scenario():
        host = HostDispatcher(MemoryEntityStore(), sender)
        bridge = PluginBridge(_sample_descriptor(), host)
        try:
            assert await bridge.start()
            code = await bridge.wait(30)
            tail = bridge.stderr_tail()
            async with host.store.transaction() as tx:
                requests = await tx.list(ModelKind.HTTP_REQUEST)
        finally:
            await bridge.stop()
            await host.close()
        return host, code, tail, requests

    host, code, tail, requests = asyncio.run(scenario())
    assert code == 0, "\n".join(tail)
    assert host.store.count(ModelKind.WORKSPACE) == 1
    assert host.store.count(ModelKind.FOLDER) == 1
    assert host.store.count(ModelKind.HTTP_REQUEST) == 1
    assert host.store.count(ModelKind.HTTP_RESPONSE) == 1
    assert [r.url for r in sender.sent] == ["http://localhost:9/health"]
    assert requests[0].headers == [{"name": "X-Last-Status", "value": "200", "enabled": True}]


def test_spawn_failure_is_reported():
    async def scenario():
        host = HostDispatcher(MemoryEntityStore(), FakeSender())
        desc = _sample_descriptor()
        desc.working_dir = os.path.join(TESTS_DIR, "no-such-dir")
        bridge = PluginBridge(desc, host)
        try:
            return await bridge.start(), bridge.is_alive
        finally:
            await host.close()

    assert asyncio.run(scenario()) == (False, False)
