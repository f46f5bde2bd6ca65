"""Reqbench Plugin Bridge — HTTP Request Sender

The host delegates request execution to a RequestSender. The bridge only
builds the outgoing request (variables rendered, disabled pairs dropped,
authentication applied) and records what comes back; network failures are
reported in ``SendResult.error`` rather than raised.
"""

from __future__ import annotations
import asyncio
import base64
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import aiohttp

from core.templating import render
from models.entities import HttpRequest

logger = logging.getLogger("reqbench.http_sender")

DEFAULT_SEND_TIMEOUT = 30.0
MAX_BODY_CHARS = 1_000_000


@dataclass
class OutgoingRequest:
    method: str
    url: str
    headers: List[Tuple[str, str]] = field(default_factory=list)
    params: List[Tuple[str, str]] = field(default_factory=list)
    body: str = ""


@dataclass
class SendResult:
    status: int = 0
    status_text: str = ""
    headers: List[Dict[str, object]] = field(default_factory=list)
    body: str = ""
    url: str = ""
    elapsed: int = 0
    error: Optional[str] = None


def _auth_header(auth: Optional[dict], variables: Dict[str, str]) -> Optional[Tuple[str, str]]:
    if not auth:
        return None
    if auth.get("type") == "bearer":
        return ("Authorization", f"Bearer {render(auth.get('token', ''), variables)}")
    if auth.get("type") == "basic":
        raw = f"{render(auth.get('username', ''), variables)}:{render(auth.get('password', ''), variables)}"
        return ("Authorization", "Basic " + base64.b64encode(raw.encode("utf-8")).decode("ascii"))
    return None


def build_outgoing(request: HttpRequest, variables: Dict[str, str]) -> OutgoingRequest:
    url = render(request.url, variables)
    if url and "://" not in url:
        url = f"http://{url}"

    headers = [
        (render(h["name"], variables), render(h.get("value", ""), variables))
        for h in request.headers
        if h.get("enabled", True) and h.get("name")
    ]
    auth = _auth_header(request.authentication, variables)
    if auth is not None and not any(name.lower() == "authorization" for name, _ in headers):
        headers.append(auth)

    params = [
        (render(p["name"], variables), render(p.get("value", ""), variables))
        for p in request.url_parameters
        if p.get("enabled", True) and p.get("name")
    ]
    return OutgoingRequest(
        method=request.method.upper(),
        url=url,
        headers=headers,
        params=params,
        body=render(request.body, variables),
    )


class RequestSender(ABC):
    @abstractmethod
    async def send(self, request: OutgoingRequest) -> SendResult:
        pass


class AiohttpRequestSender(RequestSender):
    def __init__(self, timeout: float = DEFAULT_SEND_TIMEOUT):
        self.timeout = timeout

    async def send(self, request: OutgoingRequest) -> SendResult:
        if not request.url:
            return SendResult(url=request.url, error="Request has no URL")

        started = time.monotonic()
        try:
            async with aiohttp.ClientSession() as session:
                async with session.request(
                    request.method,
                    request.url,
                    headers=request.headers,
                    params=request.params or None,
                    data=request.body.encode("utf-8") if request.body else None,
                    timeout=aiohttp.ClientTimeout(total=self.timeout),
                ) as resp:
                    body = await resp.text(errors="replace")
                    return SendResult(
                        status=resp.status,
                        status_text=resp.reason or "",
                        headers=[
                            {"name": k, "value": v, "enabled": True}
                            for k, v in resp.headers.items()
                        ],
                        body=body[:MAX_BODY_CHARS],
                        url=str(resp.url),
                        elapsed=int((time.monotonic() - started) * 1000),
                    )
        except asyncio.TimeoutError:
            error = f"Timed out after {self.timeout}s"
        except (aiohttp.ClientError, ValueError) as e:
            error = f"{type(e).__name__}: {e}"

        logger.info("Send %s %s failed: %s", request.method, request.url[:200], error)
        return SendResult(
            url=request.url,
            elapsed=int((time.monotonic() - started) * 1000),
            error=error,
        )
