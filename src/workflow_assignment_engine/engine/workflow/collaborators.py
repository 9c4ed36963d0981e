"""External collaborators the action executor dispatches to.

The engine only depends on the protocols. The defaults log notifications, hand
agent runs to an out-of-process worker and call endpoints over HTTP. A worker
polls `GET /api/agent-invocations` for unresolved runs and posts each reply to
`/api/agent-results`.
"""

from __future__ import annotations

import logging
import uuid
from typing import Protocol

import requests

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    def notify(self, recipient: str, template_key: str, context: dict[str, object]) -> None: ...


class AgentInvoker(Protocol):
    def invoke(self, agent_ref: str, task_id: str, input: dict[str, object]) -> str:
        """Start an agent run for `task_id` and return its correlation id."""
        ...


class EndpointCaller(Protocol):
    def call(
        self,
        *,
        method: str,
        url: str,
        headers: dict[str, str],
        payload: dict[str, object],
    ) -> int: ...


class LoggingNotifier:
    """Notifier that only writes a structured log line."""

    def notify(self, recipient: str, template_key: str, context: dict[str, object]) -> None:
        logger.info(
            "Notification",
            extra={"recipient": recipient, "template_key": template_key, "context": context},
        )


class DeferredAgentInvoker:
    """Issues a correlation id and leaves the run to an external worker.

    The pending run is whatever the correlation store holds unresolved for that id.
    """

    def invoke(self, agent_ref: str, task_id: str, input: dict[str, object]) -> str:
        correlation_id = uuid.uuid4().hex
        logger.info(
            "Agent run deferred",
            extra={"agent_ref": agent_ref, "task_id": task_id, "correlation_id": correlation_id},
        )
        return correlation_id


class HttpEndpointCaller:
    """Calls webhooks with a shared `requests.Session`."""

    def __init__(self, *, timeout_seconds: float = 30.0, session: requests.Session | None = None):
        self._timeout = timeout_seconds
        self._session = session or requests.Session()

    def call(
        self,
        *,
        method: str,
        url: str,
        headers: dict[str, str],
        payload: dict[str, object],
    ) -> int:
        body = payload if method != "GET" else None
        params = payload if method == "GET" else None
        resp = self._session.request(
            method,
            url,
            headers=headers or None,
            json=body,
            params=params,
            timeout=self._timeout,
        )
        resp.raise_for_status()
        return resp.status_code

    def close(self) -> None:
        self._session.close()
