"""Agent sync loop: keeps the authority's view of this node current.

The loop pushes the node's state, obeys the returned Refresh directive and
races the directive's backoff timer against the next local snapshot:

1. Push with the current scope (Full sends the node, Shallow only the
   name and token of the last Full push)
2. Wait for whichever comes first:
   - the backoff elapses: use the directive's scope for the next push
   - the provider yields new interfaces: replace the cached node, force
     a Full push and drop the pending timer
3. Repeat

A local change always wins when both are ready at once. Every Full push
carries a freshly drawn token. Transport failures are not retried inside
the loop; they propagate to ``run_forever``, which starts over with a new
provider, so every restart begins with a Full push.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any

import httpx

from .config import AgentConfig
from .models import Node, Refresh, Scope, Update, new_token
from .providers import Provider, ProviderClosedError
from .service import PUSH_PATH

logger = logging.getLogger(__name__)

DEFAULT_PUSH_TIMEOUT_SECONDS = 30.0

RESTARTABLE_ERRORS = (httpx.TransportError, httpx.HTTPStatusError)


class Agent:
    """Pushes one node's state to the authority."""

    def __init__(
        self,
        node_name: str,
        endpoint: str,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout_seconds: float = DEFAULT_PUSH_TIMEOUT_SECONDS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._node_name = node_name
        self._endpoint = endpoint
        self._transport = transport
        self._timeout_seconds = timeout_seconds
        self._sleep = sleep

    @classmethod
    def from_config(cls, config: AgentConfig) -> Agent:
        return cls(node_name=config.node_name, endpoint=config.endpoint)

    @property
    def node_name(self) -> str:
        return self._node_name

    async def push(self, update: Update) -> Refresh:
        """Send one update to the authority.

        Raises:
            httpx.TransportError: If the authority cannot be reached.
            httpx.HTTPStatusError: If the authority rejects the push.
        """
        async with httpx.AsyncClient(
            base_url=self._endpoint,
            transport=self._transport,
            timeout=self._timeout_seconds,
        ) as client:
            response = await client.post(
                PUSH_PATH,
                json=update.model_dump(mode="json", exclude_none=True),
            )
            response.raise_for_status()

        refresh = Refresh.model_validate(response.json())
        logger.debug(
            "Pushed node state",
            extra={
                "node": self._node_name,
                "token": update.token,
                "scope": update.scope.value,
                "backoff_seconds": refresh.backoff_seconds,
                "next_scope": refresh.scope.value,
            },
        )
        return refresh

    async def _nodes(self, provider: Provider) -> AsyncIterator[Node]:
        async for interfaces in provider.interfaces():
            yield Node(name=self._node_name, interfaces=interfaces)

    async def run(self, provider: Provider) -> None:
        """Run the sync loop until the provider ends or a push fails.

        Raises:
            ProviderClosedError: If the provider yields no initial state or
                its sequence ends.
            httpx.TransportError: If a push cannot reach the authority.
            httpx.HTTPStatusError: If the authority rejects a push.
        """
        nodes = self._nodes(provider)
        pending: asyncio.Future[Node] | None = None
        timer: asyncio.Future[Any] | None = None

        try:
            try:
                node = await anext(nodes)
            except StopAsyncIteration as e:
                raise ProviderClosedError("Could not get initial node state.") from e

            logger.info("Starting sync loop", extra={"node": self._node_name})
            scope = Scope.FULL

            while True:
                if scope is Scope.FULL:
                    latest = Update(token=new_token(), full=node)
                    refresh = await self.push(latest)
                else:
                    refresh = await self.push(latest.shallow_copy())
                scope = refresh.scope

                # The pending snapshot survives a timer win, so the provider is
                # never cancelled in the middle of producing an item.
                if pending is None:
                    pending = asyncio.ensure_future(anext(nodes))
                timer = asyncio.ensure_future(self._sleep(refresh.backoff_seconds))

                done, _ = await asyncio.wait({pending, timer}, return_when=asyncio.FIRST_COMPLETED)

                if pending in done:
                    timer.cancel()
                    try:
                        node = pending.result()
                    except StopAsyncIteration as e:
                        raise ProviderClosedError("Provider closed.") from e
                    finally:
                        pending = None

                    logger.debug("Interfaces changed", extra={"node": self._node_name})
                    scope = Scope.FULL
                else:
                    logger.debug("Backoff elapsed", extra={"node": self._node_name})
        finally:
            if timer is not None:
                timer.cancel()
            if pending is not None and not pending.done():
                pending.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await pending
            await nodes.aclose()

    async def run_forever(
        self,
        provider_factory: Callable[[], Provider],
        restart_delay_seconds: float,
    ) -> None:
        """Run the sync loop, restarting it after transport failures.

        Provider failures are not restarted; they propagate to the caller.
        """
        while True:
            try:
                await self.run(provider_factory())
            except RESTARTABLE_ERRORS as e:
                logger.warning(
                    "Push failed, restarting sync loop",
                    extra={
                        "node": self._node_name,
                        "error": str(e),
                        "error_type": type(e).__name__,
                        "restart_delay_seconds": restart_delay_seconds,
                    },
                )
                await self._sleep(restart_delay_seconds)
