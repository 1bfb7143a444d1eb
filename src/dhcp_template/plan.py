"""Plan building and execution.

A plan compares the objects recorded by the previous pass with the objects
just rendered:

- apply: every rendered object
- delete: previously recorded objects that were not rendered again

Execution deletes first, then applies, so a stale object is never
transiently recreated. Every object is attempted even if another one
fails; the failures are raised together afterwards.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from .discovery import discover
from .guard import add_owner, safe_apply, safe_delete
from .kube import Cluster
from .models import DHCPTemplate, ObjectRef

logger = logging.getLogger(__name__)


class PlanExecutionError(Exception):
    """Raised when at least one object of a plan could not be processed."""

    def __init__(self, failures: list[tuple[ObjectRef, Exception]]) -> None:
        self.failures = failures
        details = "; ".join(f"{ref}: {error}" for ref, error in failures)
        super().__init__(f"{len(failures)} object(s) failed: {details}")


@dataclass
class Plan:
    """Objects to apply and delete in one reconciliation pass."""

    apply: set[ObjectRef] = field(default_factory=set)
    delete: set[ObjectRef] = field(default_factory=set)
    manifests: list[dict[str, Any]] = field(default_factory=list)

    @classmethod
    def diff(
        cls,
        previous: set[ObjectRef] | None,
        manifests: list[dict[str, Any]],
    ) -> Plan:
        """Build a plan from the previously owned objects and fresh manifests.

        Raises:
            ObjectRefError: If any manifest lacks apiVersion, kind or name.
        """
        apply = {ObjectRef.from_object(manifest) for manifest in manifests}
        delete = (previous or set()) - apply

        plan = cls(apply=apply, delete=delete, manifests=list(manifests))
        logger.debug("Planned objects", extra={"apply": len(apply), "delete": len(delete)})
        return plan

    def all(self) -> set[ObjectRef]:
        """Every object currently relevant to the template."""
        return self.apply | self.delete

    async def execute(self, owner: DHCPTemplate, cluster: Cluster) -> None:
        """Delete stale objects, then apply fresh ones.

        Raises:
            PlanExecutionError: If any object failed. All objects are attempted.
        """
        failures: list[tuple[ObjectRef, Exception]] = []

        for ref in sorted(self.delete):
            try:
                api = await discover(cluster, ref)
                await safe_delete(api, ref.name)
            except Exception as e:
                logger.warning("Failed to delete object", extra={"object": str(ref), "error": str(e)})
                failures.append((ref, e))

        for manifest in self.manifests:
            ref = ObjectRef.from_object(manifest)
            try:
                owned = add_owner(manifest, owner)
                api = await discover(cluster, ref)
                await safe_apply(api, owned)
            except Exception as e:
                logger.warning("Failed to apply object", extra={"object": str(ref), "error": str(e)})
                failures.append((ref, e))

        if failures:
            raise PlanExecutionError(failures)
