"""Resource discovery: turn an ObjectRef into a scoped API handle.

Rendered objects are generic documents, so the scope of their kind is only
known to the cluster. Discovery resolves it at runtime and refuses, rather
than coerces, references whose namespace disagrees with that scope.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any

from .kube import Cluster, ResolvedKind
from .models import ObjectRef

logger = logging.getLogger(__name__)

# group/version or a bare core version, e.g. "apps/v1" or "v1"
API_VERSION_PATTERN = re.compile(r"^(?:[a-z0-9]([a-z0-9.-]*[a-z0-9])?/)?v[0-9]+[a-z0-9]*$")


class DiscoveryError(Exception):
    """Raised when no API handle can be derived for an object."""

    pass


class InvalidApiVersionError(DiscoveryError):
    """Raised when an apiVersion is not of the form group/version or version."""

    pass


class UnknownKindError(DiscoveryError):
    """Raised when the cluster does not serve the referenced kind."""

    pass


class ClusterScopeWithNamespaceError(DiscoveryError):
    """Raised when a cluster-scoped object carries a namespace."""

    pass


class NamespaceScopeWithoutNamespaceError(DiscoveryError):
    """Raised when a namespaced object carries no namespace."""

    pass


@dataclass(frozen=True)
class ScopedApi:
    """API handle for one kind, bound to the object's namespace if any."""

    cluster: Cluster
    kind: ResolvedKind
    namespace: str | None

    async def get_metadata(self, name: str) -> dict[str, Any] | None:
        """Fetch only the object's metadata, or None if it does not exist."""
        return await self.cluster.get_metadata(self.kind, name, self.namespace)

    async def apply(self, body: dict[str, Any]) -> dict[str, Any]:
        return await self.cluster.apply(self.kind, body, self.namespace)

    async def delete(self, name: str) -> bool:
        """Delete the object. Returns False if it was already absent."""
        return await self.cluster.delete(self.kind, name, self.namespace)


async def discover(cluster: Cluster, ref: ObjectRef) -> ScopedApi:
    """Resolve the API handle for a reference.

    Raises:
        InvalidApiVersionError: If ``ref.api_version`` is malformed.
        UnknownKindError: If the kind is not served by the cluster.
        ClusterScopeWithNamespaceError: If a cluster-scoped ref has a namespace.
        NamespaceScopeWithoutNamespaceError: If a namespaced ref has none.
    """
    if not API_VERSION_PATTERN.match(ref.api_version):
        raise InvalidApiVersionError(f"Invalid apiVersion: {ref.api_version!r}")

    kind = await cluster.resolve_kind(ref.api_version, ref.kind)
    if kind is None:
        raise UnknownKindError(f"Kind {ref.kind} is not served for {ref.api_version}.")

    if kind.namespaced:
        if ref.namespace is None:
            raise NamespaceScopeWithoutNamespaceError(
                "Cannot discover api for namespace scoped object, "
                f"when the object has no namespace: {ref}"
            )
    elif ref.namespace is not None:
        raise ClusterScopeWithNamespaceError(
            "Cannot discover api for cluster scoped object, "
            f"when the object has a namespace: {ref}"
        )

    logger.debug("Discovered api", extra={"object": str(ref), "namespaced": kind.namespaced})
    return ScopedApi(cluster=cluster, kind=kind, namespace=ref.namespace)
