"""Sample reqbench plugin for integration testing.

Builds a small workspace, sends its request once and tags the request with
the status it got back. Speaks the event protocol on stdin/stdout through
``run_plugin``.
"""
import logging
import os
import sys

# PYTHONPATH is never forwarded to plugins
REPO_ROOT = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.insert(0, REPO_ROOT)

from core.plugin_runtime import run_plugin  # noqa: E402

logger = logging.getLogger("sample-plugin")


async def main(context):
    ws = await context.workspace.create("Plugin Workspace", description="made by sample-plugin")
    folder = await context.folder.create(ws.id, "Smoke")
    await context.environment.create(ws.id, "Local", variables={"base": "localhost:9"}, active=True)

    request = await context.http_request.create(
        ws.id, "Health", folder_id=folder.id, url="{{base}}/health",
    )
    response = await request.send()
    await request.set_header("X-Last-Status", str(response.status))
    logger.info("Health -> %s in %sms", response.status, response.elapsed)

    names = [w.name for w in await context.workspace.list()]
    if "Plugin Workspace" not in names:
        sys.exit(2)


if __name__ == "__main__":
    run_plugin(main)
