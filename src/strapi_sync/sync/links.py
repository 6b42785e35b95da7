"""Relationship extraction from raw entries.

Walks a raw entry guided by its schema and yields one ``LinkRef`` per
related identifier.  Relations inside components carry a dotted
``field`` path and the id of the component element that owns them, so
the payload builder can re-attach them to the right element even when
the element order differs between instances.
"""

from __future__ import annotations

import itertools
import logging
from typing import Any, Iterator

from .fields import FieldResolver, Schema
from .models import LinkRef
from .schema import SchemaRegistry

logger = logging.getLogger(__name__)


def _related_items(value: Any) -> list:
    """Flatten a relation value into a list of related items."""
    if value is None:
        return []
    if isinstance(value, dict) and "data" in value and len(value) <= 2:
        # REST v4 style envelope: {"data": ...}
        return _related_items(value["data"])
    if isinstance(value, list):
        return value
    return [value]


def _identity(item: Any) -> tuple[int | None, str | None]:
    """Return ``(id, documentId)`` of one related item."""
    if isinstance(item, dict):
        raw_id = item.get("id")
        record_id = raw_id if isinstance(raw_id, int) else None
        document_id = item.get("documentId")
        return record_id, str(document_id) if document_id else None
    if isinstance(item, bool):
        return None, None
    if isinstance(item, int):
        return item, None
    if isinstance(item, str) and item:
        return None, item
    return None, None


def extract_links(
    raw: dict,
    schema: Schema,
    registry: SchemaRegistry,
    resolver: FieldResolver | None = None,
) -> list[LinkRef]:
    """Extract every relation and media reference from ``raw``.

    Args:
        raw: Verbatim entry payload.
        schema: Schema of the entry.
        registry: Registry used to descend into components.
        resolver: Field resolver to reuse; one is created if omitted.

    Returns:
        Links in document order, ``link_id`` numbered from 1.
    """
    resolver = resolver or FieldResolver(registry)
    sequence = itertools.count(1)
    owner_id = raw.get("id") if isinstance(raw.get("id"), int) else None
    return list(
        _walk(raw, schema, "", owner_id, registry, resolver, sequence)
    )


def _walk(
    node: dict,
    schema: Schema,
    prefix: str,
    owner_id: int | None,
    registry: SchemaRegistry,
    resolver: FieldResolver,
    sequence: Iterator[int],
) -> Iterator[LinkRef]:
    for key, value in node.items():
        name = resolver.resolve_key(key, schema)
        attribute = schema.attributes.get(name)
        if attribute is None or value is None:
            continue
        path = f"{prefix}{name}"

        if attribute.is_link:
            target_table = str(attribute.target_table)
            for order, item in enumerate(_related_items(value)):
                target_id, target_document_id = _identity(item)
                if target_id is None and target_document_id is None:
                    continue
                yield LinkRef(
                    source_id=owner_id,
                    field=path,
                    target_table=target_table,
                    target_id=target_id,
                    target_document_id=target_document_id,
                    order=float(order),
                    link_id=next(sequence),
                )

        elif attribute.is_component:
            component = registry.component_for(attribute)
            if component is None:
                continue
            elements = value if isinstance(value, list) else [value]
            for element in elements:
                if isinstance(element, dict):
                    yield from _walk(
                        element,
                        component,
                        f"{path}.",
                        element.get("id"),
                        registry,
                        resolver,
                        sequence,
                    )

        elif attribute.is_dynamic_zone and isinstance(value, list):
            for element in value:
                if not isinstance(element, dict):
                    continue
                component = registry.component(
                    str(element.get("__component", ""))
                )
                if component is None:
                    logger.debug(
                        "Unknown dynamic zone component in %s: %r",
                        path,
                        element.get("__component"),
                    )
                    continue
                yield from _walk(
                    element,
                    component,
                    f"{path}.",
                    element.get("id"),
                    registry,
                    resolver,
                    sequence,
                )
