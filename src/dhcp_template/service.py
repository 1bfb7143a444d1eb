"""HTTP surfaces of both processes.

Authority side: the push protocol handler decides, for every agent push,
whether the cached node state is still current and what the agent should
send next. It is exposed as ``POST /api/v1/nodes/push``.

Agent side: an on-demand node service returning the node's current
interfaces from a Source, exposed as ``GET /api/v1/node``.

Stale or unknown tokens are not errors. They are encoded in the Refresh
directive as an immediate Full push request.
"""

from __future__ import annotations

import logging
from enum import Enum

from fastapi import FastAPI, HTTPException

from .models import Node, Refresh, Scope, Update
from .providers import ProviderError, Source
from .registry import NodeRegistry

logger = logging.getLogger(__name__)

PUSH_PATH = "/api/v1/nodes/push"
NODE_PATH = "/api/v1/node"


class TokenStatus(str, Enum):
    """Outcome of checking a shallow push against the registry."""

    OK = "ok"
    DEPRECATED = "deprecated"
    UNKNOWN = "unknown"


class PushHandler:
    """Applies agent pushes to the registry and answers with a Refresh."""

    def __init__(self, registry: NodeRegistry) -> None:
        self._registry = registry

    @property
    def refresh_seconds(self) -> int:
        return self._registry.refresh_seconds

    def status(self, update: Update) -> TokenStatus:
        """Check the token of a push against the cached record.

        Counts as an access of the record, so a matching shallow push keeps
        the node alive without resending its interfaces.
        """
        cached = self._registry.get(update.name)
        if cached is None:
            return TokenStatus.UNKNOWN

        token, _ = cached
        if token != update.token:
            return TokenStatus.DEPRECATED
        return TokenStatus.OK

    def push(self, update: Update) -> Refresh:
        """Handle one push and return the directive for the next one."""
        if update.full is not None:
            self._registry.insert(update.full, update.token)
            logger.info(
                "Accepted full node state",
                extra={
                    "node": update.name,
                    "token": update.token,
                    "interfaces": len(update.full.interfaces),
                },
            )
            return Refresh(backoff_seconds=self.refresh_seconds, scope=Scope.SHALLOW)

        status = self.status(update)
        if status is TokenStatus.OK:
            logger.debug("Shallow push is current", extra={"node": update.name})
            return Refresh(backoff_seconds=self.refresh_seconds, scope=Scope.SHALLOW)

        logger.info(
            "Requesting full node state",
            extra={"node": update.name, "token_status": status.value},
        )
        return Refresh(backoff_seconds=0, scope=Scope.FULL)


def create_app(handler: PushHandler, registry: NodeRegistry) -> FastAPI:
    """Build the authority's push server."""
    app = FastAPI(title="dhcp-template operator")

    @app.post(PUSH_PATH, response_model=Refresh, response_model_by_alias=True)
    async def push_node(update: Update) -> Refresh:
        return handler.push(update)

    @app.get("/healthz")
    async def healthz() -> dict[str, object]:
        return {"status": "ok", "nodes": len(registry)}

    return app


def create_agent_app(node_name: str, source: Source) -> FastAPI:
    """Build the agent's on-demand node service."""
    app = FastAPI(title="dhcp-template agent")

    @app.get(NODE_PATH, response_model=Node)
    async def get_node() -> Node:
        try:
            interfaces = await source.get_interfaces()
        except ProviderError as e:
            logger.error("Failed to read node interfaces", extra={"error": str(e)})
            raise HTTPException(status_code=500, detail=str(e)) from e
        return Node(name=node_name, interfaces=interfaces)

    @app.get("/healthz")
    async def healthz() -> dict[str, str]:
        return {"status": "ok"}

    return app
