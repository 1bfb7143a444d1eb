"""Manifest rendering: template + node list -> ordered list of objects.

A DHCPTemplate's ``spec.template`` is a Jinja2 template producing a
multi-document YAML stream. The template sees a single variable,
``nodes``, holding every registered node sorted by name:

    {% for node in nodes %}
    ---
    apiVersion: v1
    kind: ConfigMap
    metadata:
      name: dns-{{ node.name }}
      namespace: default
    data:
      servers: "{{ node.interfaces[0].lease4.dns | join(' ') }}"
    {% endfor %}

Empty documents are skipped; the order of the remaining documents is
preserved.
"""

from __future__ import annotations

import logging
from typing import Any

import jinja2
import yaml

from .models import Node

logger = logging.getLogger(__name__)


class TemplateError(Exception):
    """Raised when a template cannot be turned into objects."""

    pass


class RenderError(TemplateError):
    """Raised when template evaluation fails."""

    pass


class ParseError(TemplateError):
    """Raised when rendered output is not a stream of YAML mappings."""

    pass


def _environment() -> jinja2.Environment:
    # Output is YAML, not HTML.
    return jinja2.Environment(autoescape=False, keep_trailing_newline=True)


def render_string(template: str, nodes: list[Node]) -> str:
    """Evaluate the template against the node list.

    Raises:
        RenderError: If the template is invalid or fails to evaluate.
    """
    context = {"nodes": [node.model_dump(mode="json") for node in nodes]}
    try:
        return _environment().from_string(template).render(context)
    except jinja2.TemplateError as e:
        raise RenderError(f"Could not render template: {e}") from e


def parse_manifests(manifests: str) -> list[dict[str, Any]]:
    """Split a rendered YAML stream into objects, skipping empty documents.

    Raises:
        ParseError: If the stream is not valid YAML or a document is not a
            mapping.
    """
    objects: list[dict[str, Any]] = []
    try:
        for index, document in enumerate(yaml.safe_load_all(manifests)):
            if document is None:
                continue
            if not isinstance(document, dict):
                raise ParseError(
                    f"Could not parse manifests: document {index} is a "
                    f"{type(document).__name__}, not a mapping"
                )
            objects.append(document)
    except yaml.YAMLError as e:
        raise ParseError(f"Could not parse manifests: {e}") from e

    return objects


def render(template: str, nodes: list[Node]) -> list[dict[str, Any]]:
    """Render a template into the objects it describes.

    Args:
        template: Jinja2 template producing multi-document YAML.
        nodes: Node states, already sorted by name.

    Returns:
        The non-empty documents in render order.

    Raises:
        RenderError: If template evaluation fails.
        ParseError: If the output is not a stream of YAML mappings.
    """
    objects = parse_manifests(render_string(template, nodes))
    logger.debug("Rendered template", extra={"nodes": len(nodes), "objects": len(objects)})
    return objects
