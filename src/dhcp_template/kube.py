"""Kubernetes cluster access.

This is the only module talking to the Kubernetes API. Everything else
depends on the ``Cluster`` protocol, so tests can substitute an in-memory
cluster.

The ``kubernetes`` client is synchronous. Every call is run in the default
executor so the event loop never blocks; the DHCPTemplate watch runs in a
dedicated thread and hands its events to the loop with
``call_soon_threadsafe``.

Watch events are reduced to three kinds:
- APPLIED: an object was created or changed
- DELETED: an object was removed
- RESTARTED: the watch was (re)listed, carrying the complete object set
"""

from __future__ import annotations

import asyncio
import functools
import logging
import threading
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, TypeVar

from kubernetes import client, config, dynamic, watch
from kubernetes.client.exceptions import ApiException
from kubernetes.config.config_exception import ConfigException
from kubernetes.dynamic.exceptions import NotFoundError, ResourceNotFoundError

from .config import CONTROLLER_NAME
from .models import TEMPLATE_GROUP, TEMPLATE_PLURAL, TEMPLATE_VERSION

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Lightweight identity fetch: the API server strips everything but metadata.
PARTIAL_METADATA_ACCEPT = "application/json;as=PartialObjectMetadata;g=meta.k8s.io;v=v1"

WATCH_TIMEOUT_SECONDS = 300
WATCH_RETRY_SECONDS = 5
WATCH_JOIN_TIMEOUT_SECONDS = 1
HTTP_GONE = 410


@dataclass(frozen=True)
class ResolvedKind:
    """A kind as served by the cluster, including its scope."""

    api_version: str
    kind: str
    namespaced: bool
    # Client-specific handle used to address the kind.
    resource: Any = field(default=None, compare=False, repr=False)


class WatchEventType(str, Enum):
    APPLIED = "Applied"
    DELETED = "Deleted"
    RESTARTED = "Restarted"


@dataclass(frozen=True)
class WatchEvent:
    """A DHCPTemplate watch event.

    ``objects`` holds the affected object, or every object for RESTARTED.
    """

    type: WatchEventType
    objects: tuple[dict[str, Any], ...]


class Cluster(Protocol):
    """Cluster operations used by the controller."""

    async def resolve_kind(self, api_version: str, kind: str) -> ResolvedKind | None: ...

    async def get_metadata(
        self, kind: ResolvedKind, name: str, namespace: str | None
    ) -> dict[str, Any] | None: ...

    async def apply(
        self, kind: ResolvedKind, body: dict[str, Any], namespace: str | None
    ) -> dict[str, Any]: ...

    async def delete(self, kind: ResolvedKind, name: str, namespace: str | None) -> bool: ...

    async def get_template(self, name: str) -> dict[str, Any] | None: ...

    async def replace_template_status(self, name: str, body: dict[str, Any]) -> dict[str, Any]: ...

    def watch_templates(self) -> AsyncIterator[WatchEvent]: ...


def load_api_client() -> client.ApiClient:
    """Build an API client from in-cluster config, falling back to kubeconfig."""
    try:
        config.load_incluster_config()
        logger.debug("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        logger.debug("Loaded Kubernetes configuration from kubeconfig")
    return client.ApiClient()


class KubernetesCluster:
    """``Cluster`` implementation backed by the official Kubernetes client."""

    def __init__(self, api_client: client.ApiClient, field_manager: str = CONTROLLER_NAME) -> None:
        self._api_client = api_client
        self._custom = client.CustomObjectsApi(api_client)
        self._field_manager = field_manager
        self._dynamic: dynamic.DynamicClient | None = None

    @classmethod
    def from_environment(cls) -> KubernetesCluster:
        return cls(load_api_client())

    async def _call(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(fn, *args, **kwargs))

    async def _dynamic_client(self) -> dynamic.DynamicClient:
        # Construction performs API discovery, so it is deferred and run off-loop.
        if self._dynamic is None:
            self._dynamic = await self._call(dynamic.DynamicClient, self._api_client)
        return self._dynamic

    async def resolve_kind(self, api_version: str, kind: str) -> ResolvedKind | None:
        dyn = await self._dynamic_client()
        try:
            resource = await self._call(dyn.resources.get, api_version=api_version, kind=kind)
        except ResourceNotFoundError:
            return None

        return ResolvedKind(
            api_version=api_version,
            kind=kind,
            namespaced=bool(resource.namespaced),
            resource=resource,
        )

    async def get_metadata(
        self, kind: ResolvedKind, name: str, namespace: str | None
    ) -> dict[str, Any] | None:
        dyn = await self._dynamic_client()
        try:
            result = await self._call(
                dyn.get,
                kind.resource,
                name=name,
                namespace=namespace,
                header_params={"Accept": PARTIAL_METADATA_ACCEPT},
            )
        except NotFoundError:
            return None
        return result.to_dict()

    async def apply(
        self, kind: ResolvedKind, body: dict[str, Any], namespace: str | None
    ) -> dict[str, Any]:
        dyn = await self._dynamic_client()
        result = await self._call(
            dyn.server_side_apply,
            kind.resource,
            body=body,
            namespace=namespace,
            field_manager=self._field_manager,
            force_conflicts=True,
        )
        return result.to_dict()

    async def delete(self, kind: ResolvedKind, name: str, namespace: str | None) -> bool:
        dyn = await self._dynamic_client()
        try:
            await self._call(dyn.delete, kind.resource, name=name, namespace=namespace)
        except NotFoundError:
            return False
        return True

    async def get_template(self, name: str) -> dict[str, Any] | None:
        try:
            return await self._call(
                self._custom.get_cluster_custom_object,
                TEMPLATE_GROUP,
                TEMPLATE_VERSION,
                TEMPLATE_PLURAL,
                name,
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise

    async def replace_template_status(self, name: str, body: dict[str, Any]) -> dict[str, Any]:
        return await self._call(
            self._custom.replace_cluster_custom_object_status,
            TEMPLATE_GROUP,
            TEMPLATE_VERSION,
            TEMPLATE_PLURAL,
            name,
            body,
        )

    async def watch_templates(self) -> AsyncIterator[WatchEvent]:
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue[WatchEvent] = asyncio.Queue()
        stop = threading.Event()

        def emit(event: WatchEvent) -> None:
            # Nothing may reach the loop once the consumer has gone away.
            if stop.is_set() or loop.is_closed():
                return
            loop.call_soon_threadsafe(queue.put_nowait, event)

        thread = threading.Thread(
            target=self._watch_worker,
            args=(emit, stop),
            name="dhcptemplate-watch",
            daemon=True,
        )
        thread.start()

        try:
            while True:
                yield await queue.get()
        finally:
            stop.set()
            # A worker blocked in a long poll only notices at its next event.
            await loop.run_in_executor(None, thread.join, WATCH_JOIN_TIMEOUT_SECONDS)
            if thread.is_alive():
                logger.debug("Template watch thread still draining after close")

    def _watch_worker(self, emit: Callable[[WatchEvent], None], stop: threading.Event) -> None:
        while not stop.is_set():
            try:
                self._list_and_watch(emit, stop)
            except ApiException as e:
                if e.status == HTTP_GONE:
                    logger.debug("Template watch expired, relisting")
                    continue
                logger.warning(
                    "Template watch failed, retrying",
                    extra={"status": e.status, "error": str(e)},
                )
                stop.wait(WATCH_RETRY_SECONDS)
            except Exception as e:
                logger.warning(
                    "Template watch failed, retrying",
                    extra={"error": str(e), "error_type": type(e).__name__},
                )
                stop.wait(WATCH_RETRY_SECONDS)

    def _list_and_watch(self, emit: Callable[[WatchEvent], None], stop: threading.Event) -> None:
        listing = self._custom.list_cluster_custom_object(
            TEMPLATE_GROUP, TEMPLATE_VERSION, TEMPLATE_PLURAL
        )
        emit(WatchEvent(WatchEventType.RESTARTED, tuple(listing.get("items") or [])))
        resource_version = (listing.get("metadata") or {}).get("resourceVersion")

        while not stop.is_set():
            stream = watch.Watch()
            for event in stream.stream(
                self._custom.list_cluster_custom_object,
                TEMPLATE_GROUP,
                TEMPLATE_VERSION,
                TEMPLATE_PLURAL,
                resource_version=resource_version,
                timeout_seconds=WATCH_TIMEOUT_SECONDS,
            ):
                if stop.is_set():
                    stream.stop()
                    return

                obj = event["object"]
                match event["type"]:
                    case "ADDED" | "MODIFIED":
                        emit(WatchEvent(WatchEventType.APPLIED, (obj,)))
                    case "DELETED":
                        emit(WatchEvent(WatchEventType.DELETED, (obj,)))
                    case "ERROR":
                        if obj.get("code") == HTTP_GONE:
                            raise ApiException(status=HTTP_GONE, reason="Gone")
                        logger.warning("Template watch error event", extra={"event": obj})
                        continue

                resource_version = (obj.get("metadata") or {}).get("resourceVersion")
