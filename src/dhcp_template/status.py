"""DHCPTemplate status writes.

Each write fetches the persisted object, merges conditions and replaces the
whole status subresource:

- conditions: new ones first, then the existing ones, keeping the first
  entry per type, so a new condition supersedes the old one of its type
- objects: replaced wholesale, never merged

The replace carries the fetched resourceVersion, so a concurrent writer
causes a conflict instead of a lost update. Within this process a single
reconcile worker keeps status writes per template totally ordered.
"""

from __future__ import annotations

import logging

from pydantic import ValidationError

from .kube import Cluster
from .models import (
    Condition,
    ConditionType,
    DHCPTemplate,
    ObjectRef,
    Reason,
    TemplateStatus,
)

logger = logging.getLogger(__name__)


class StatusError(Exception):
    """Raised when a status cannot be written."""

    pass


def merge_conditions(new: list[Condition], existing: list[Condition]) -> list[Condition]:
    """Concatenate new before existing conditions, keeping the first per type."""
    merged: list[Condition] = []
    seen: set[ConditionType] = set()
    for condition in [*new, *existing]:
        if condition.type in seen:
            continue
        seen.add(condition.type)
        merged.append(condition)
    return merged


async def set_status(cluster: Cluster, template: DHCPTemplate, status: TemplateStatus) -> None:
    """Merge ``status`` into the persisted status and write it back.

    Raises:
        StatusError: If the template has no name, vanished or has an
            unreadable status.
    """
    name = template.name
    if not name:
        raise StatusError("Missing resource name.")

    current = await cluster.get_template(name)
    if current is None:
        raise StatusError(f"DHCPTemplate {name!r} no longer exists.")

    try:
        existing = TemplateStatus.model_validate(current.get("status") or {})
    except ValidationError as e:
        raise StatusError(f"Unreadable status on DHCPTemplate {name!r}: {e}") from e

    merged = TemplateStatus(
        objects=set(status.objects),
        conditions=merge_conditions(status.conditions, existing.conditions),
    )
    current["status"] = merged.to_dict()

    await cluster.replace_template_status(name, current)
    logger.debug(
        "Wrote template status",
        extra={
            "template": name,
            "objects": len(merged.objects),
            "conditions": [c.type.value for c in merged.conditions],
        },
    )


async def set_template_status(
    cluster: Cluster,
    template: DHCPTemplate,
    objects: set[ObjectRef],
    reason: Reason,
    type_: ConditionType,
    message: str,
) -> None:
    """Record one new condition together with the current object set."""
    condition = Condition.new(template, reason, type_, message)
    await set_status(cluster, template, TemplateStatus(objects=objects, conditions=[condition]))


async def set_template_error(
    cluster: Cluster,
    template: DHCPTemplate,
    reason: Reason,
    message: str,
) -> None:
    """Record an Error condition, keeping the previously recorded objects."""
    objects = template.previous_objects() or set()
    await set_template_status(cluster, template, objects, reason, ConditionType.ERROR, message)
