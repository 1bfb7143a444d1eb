"""Ownership guard for every mutation of a templated object.

SAFETY: The operator must never modify or delete an object it did not
create. Before each apply or delete, the object's metadata is fetched and
classified by its managed-by label:

- MANAGED: carries our label, proceed
- ABSENT: does not exist, proceed (deleting it is a no-op)
- FOREIGN: exists without our label, refuse with ForeignObjectError

Objects we apply always carry the label and a controller owner reference to
their DHCPTemplate, so they are also garbage collected with the template.
"""

from __future__ import annotations

import copy
import logging
from enum import Enum
from typing import Any

from .config import CONTROLLER_NAME
from .discovery import ScopedApi
from .models import DHCPTemplate

logger = logging.getLogger(__name__)

MANAGED_BY_KEY = "app.kubernetes.io/managed-by"
MANAGED_BY_VALUE = CONTROLLER_NAME


class Ownership(str, Enum):
    MANAGED = "managed"
    FOREIGN = "foreign"
    ABSENT = "absent"


class OwnershipError(Exception):
    """Raised when an object may not be touched."""

    pass


class ForeignObjectError(OwnershipError):
    """Raised when an object exists but is not managed by this operator."""

    pass


class OwnerReferenceError(OwnershipError):
    """Raised when an owner reference cannot be built."""

    pass


class MissingObjectNameError(OwnershipError):
    """Raised when an object to apply has no metadata.name."""

    pass


def managed_by(metadata_object: dict[str, Any]) -> str | None:
    labels = (metadata_object.get("metadata") or {}).get("labels") or {}
    return labels.get(MANAGED_BY_KEY)


async def classify(api: ScopedApi, name: str) -> Ownership:
    """Classify an object using a metadata-only fetch."""
    current = await api.get_metadata(name)
    if current is None:
        return Ownership.ABSENT
    if managed_by(current) == MANAGED_BY_VALUE:
        return Ownership.MANAGED
    return Ownership.FOREIGN


def add_owner(obj: dict[str, Any], owner: DHCPTemplate) -> dict[str, Any]:
    """Return a copy of ``obj`` owned by ``owner`` and labelled as managed.

    Raises:
        OwnerReferenceError: If the owner has no name or uid.
    """
    if not owner.metadata.name or not owner.metadata.uid:
        raise OwnerReferenceError("Could not take owner reference.")

    owner_ref = {
        "apiVersion": owner.api_version,
        "kind": owner.kind,
        "name": owner.metadata.name,
        "uid": owner.metadata.uid,
        "controller": True,
        "blockOwnerDeletion": True,
    }

    result = copy.deepcopy(obj)
    metadata = result.setdefault("metadata", {})

    owner_refs = [
        ref
        for ref in metadata.get("ownerReferences") or []
        if ref.get("uid") != owner.metadata.uid
    ]
    owner_refs.append(owner_ref)
    metadata["ownerReferences"] = owner_refs

    labels = dict(metadata.get("labels") or {})
    labels[MANAGED_BY_KEY] = MANAGED_BY_VALUE
    metadata["labels"] = labels

    return result


async def _ensure_safe(api: ScopedApi, name: str) -> Ownership:
    ownership = await classify(api, name)
    if ownership is Ownership.FOREIGN:
        logger.warning(
            "Refusing to touch foreign object",
            extra={"kind": api.kind.kind, "namespace": api.namespace, "name": name},
        )
        raise ForeignObjectError(f"Will not execute api on foreign object {name!r}.")
    return ownership


async def safe_apply(api: ScopedApi, obj: dict[str, Any]) -> dict[str, Any]:
    """Server-side apply ``obj`` unless a foreign object of that name exists.

    Raises:
        MissingObjectNameError: If the object has no name.
        ForeignObjectError: If the existing object is not ours.
    """
    name = (obj.get("metadata") or {}).get("name")
    if not name:
        raise MissingObjectNameError("Missing resource name.")

    await _ensure_safe(api, name)
    result = await api.apply(obj)
    logger.debug(
        "Applied object",
        extra={"kind": api.kind.kind, "namespace": api.namespace, "name": name},
    )
    return result


async def safe_delete(api: ScopedApi, name: str) -> None:
    """Delete an object unless it is foreign. Absent objects are a no-op.

    Raises:
        ForeignObjectError: If the existing object is not ours.
    """
    ownership = await _ensure_safe(api, name)
    if ownership is Ownership.ABSENT:
        logger.debug("Object already absent", extra={"kind": api.kind.kind, "name": name})
        return

    if not await api.delete(name):
        logger.debug("Object already absent", extra={"kind": api.kind.kind, "name": name})
        return
    logger.info(
        "Deleted object",
        extra={"kind": api.kind.kind, "namespace": api.namespace, "name": name},
    )
