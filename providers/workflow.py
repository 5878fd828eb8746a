from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

import httpx

logger = logging.getLogger(__name__)


class DispatchError(RuntimeError):
    """The job never reached the worker; safe to refund."""


class DispatchTimeout(RuntimeError):
    """The request left but no answer came back; the worker may still run it."""


@dataclass
class DispatchResponse:
    status_code: int
    body: Dict[str, Any]


class Dispatcher(Protocol):
    def dispatch(self, url: str, payload: Dict[str, Any]) -> DispatchResponse:
        ...


class WorkflowClient:
    """Fire-and-forget POSTs to the workflow engine / AI provider webhooks."""

    name = "workflow"

    def __init__(self, timeout: float = 10.0, transport: Optional[httpx.BaseTransport] = None) -> None:
        self.timeout = timeout
        self.transport = transport

    def dispatch(self, url: str, payload: Dict[str, Any]) -> DispatchResponse:
        if not url:
            raise DispatchError("webhook url is not configured")

        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                resp = client.post(url, json=payload, headers={"Content-Type": "application/json"})
        except (httpx.ConnectTimeout, httpx.PoolTimeout) as exc:
            raise DispatchError(f"could not reach {url}: {exc!r}") from exc
        except httpx.TimeoutException as exc:
            raise DispatchTimeout(f"no response from {url}: {exc!r}") from exc
        except httpx.HTTPError as exc:
            raise DispatchError(f"request to {url} failed: {exc!r}") from exc

        if resp.status_code >= 300:
            raise DispatchError(f"{url} answered {resp.status_code}: {resp.text[:200]}")

        try:
            body = resp.json() if resp.content else {}
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {"result": body}
        logger.debug("dispatched to %s: %s", url, resp.status_code)
        return DispatchResponse(status_code=resp.status_code, body=body)
