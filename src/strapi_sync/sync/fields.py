"""Field name resolution between exported JSON and the target schema.

Exported entries may carry snake_case or otherwise altered keys
(``meta_title`` for ``metaTitle``).  ``FieldResolver`` maps every key to
the authoritative attribute name of the schema in scope, switching to a
component's own resolver map while descending into it.

Key design choices:

* **Total resolution** -- every key resolves to *some* name.  Keys the
  schema does not know fall back to ``convert_to_camel_case``; nothing in
  this module raises on unknown input.
* **Explicit context** -- the schema in scope is passed down the
  recursion instead of being looked up from the data, so a component
  attribute sharing a name with a top-level one resolves correctly.
* **Cached maps** -- resolver maps are built once per schema uid.
"""

from __future__ import annotations

import copy
import logging
from typing import Any, Union

from .schema import (
    Attribute,
    ComponentSchema,
    ContentTypeSchema,
    SchemaRegistry,
)

logger = logging.getLogger(__name__)

Schema = Union[ContentTypeSchema, ComponentSchema]

SYSTEM_FIELDS = (
    "documentId",
    "createdAt",
    "updatedAt",
    "publishedAt",
    "createdBy",
    "updatedBy",
    "locale",
    "localizations",
    "id",
)

# Keys that never reach the target payload.
DROPPED_KEYS = frozenset({"id", "documentId", "document_id", "__order", "__links"})


def normalize_key_name(name: str) -> str:
    """Lower-case ``name`` and remove underscores."""
    return name.lower().replace("_", "")


def convert_to_camel_case(name: str) -> str:
    """Convert ``snake_case`` to ``camelCase``; other keys are unchanged."""
    if "_" not in name:
        return name
    parts = [p for p in name.split("_") if p]
    if not parts:
        return name
    head = parts[0].lower()
    return head + "".join(p[:1].upper() + p[1:].lower() for p in parts[1:])


def build_field_name_resolver(schema: Schema) -> dict[str, str]:
    """Map normalized key names to the authoritative attribute names."""
    resolver = {
        normalize_key_name(name): name for name in schema.attributes
    }
    for name in SYSTEM_FIELDS:
        resolver.setdefault(normalize_key_name(name), name)
    return resolver


def deep_merge(base: dict, overlay: dict) -> dict:
    """Recursively merge ``overlay`` into a copy of ``base``.

    Nested dicts are merged; any other value in ``overlay`` replaces the
    one in ``base``.
    """
    merged = copy.deepcopy(base)
    for key, value in overlay.items():
        existing = merged.get(key)
        if isinstance(existing, dict) and isinstance(value, dict):
            merged[key] = deep_merge(existing, value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


class FieldResolver:
    """Resolve field names against a schema registry.

    Args:
        registry: Schemas used to descend into components.
    """

    def __init__(self, registry: SchemaRegistry) -> None:
        self.registry = registry
        self._maps: dict[str, dict[str, str]] = {}

    # ------------------------------------------------------------------
    # Key resolution
    # ------------------------------------------------------------------

    def resolver_for(self, schema: Schema) -> dict[str, str]:
        """Return the (cached) resolver map for ``schema``."""
        found = self._maps.get(schema.uid)
        if found is None:
            found = build_field_name_resolver(schema)
            self._maps[schema.uid] = found
        return found

    def resolve_key(self, key: str, schema: Schema) -> str:
        """Return the authoritative name of ``key`` in ``schema``."""
        if key.startswith("__"):
            return key
        resolved = self.resolver_for(schema).get(normalize_key_name(key))
        if resolved is not None:
            return resolved
        fallback = convert_to_camel_case(key)
        logger.debug(
            "Key %r not in schema %s, using %r", key, schema.uid, fallback
        )
        return fallback

    # ------------------------------------------------------------------
    # Payload preparation
    # ------------------------------------------------------------------

    def prepare_data(
        self,
        data: dict,
        schema: Schema,
        skip_links: bool = False,
    ) -> dict:
        """Rewrite every key of ``data`` to its authoritative name.

        Component attributes are prepared with the component's schema;
        repeatable components always come out as a list and single
        components as an object.  Identity keys (``id``, ``documentId``)
        are dropped at every depth.

        Args:
            data: Entry data, typically technical-field-stripped.
            schema: Schema ``data`` belongs to.
            skip_links: Drop relation and media attributes, which are
                rebuilt from links by the payload builder.
        """
        prepared: dict[str, Any] = {}
        for key, value in data.items():
            if key in DROPPED_KEYS:
                continue
            name = self.resolve_key(key, schema)
            attribute = schema.attributes.get(name)
            if attribute is None:
                prepared[name] = value
                continue
            if skip_links and attribute.is_link:
                continue
            if attribute.is_component:
                prepared[name] = self._prepare_component(
                    value, attribute, skip_links
                )
            elif attribute.is_dynamic_zone:
                prepared[name] = self._prepare_dynamic_zone(value, skip_links)
            else:
                prepared[name] = value
        return prepared

    def _prepare_component(
        self, value: Any, attribute: Attribute, skip_links: bool
    ) -> Any:
        repeatable = attribute.repeatable
        component = self.registry.component_for(attribute)
        if value is None:
            return [] if repeatable else None

        if repeatable:
            elements = value if isinstance(value, list) else [value]
            if component is None:
                return elements
            return [
                self.prepare_data(el, component, skip_links)
                if isinstance(el, dict)
                else el
                for el in elements
            ]

        if isinstance(value, list):
            value = value[0] if value else None
        if component is None or not isinstance(value, dict):
            return value
        return self.prepare_data(value, component, skip_links)

    def _prepare_dynamic_zone(self, value: Any, skip_links: bool) -> Any:
        if not isinstance(value, list):
            return value
        prepared = []
        for element in value:
            if not isinstance(element, dict):
                prepared.append(element)
                continue
            uid = element.get("__component")
            component = self.registry.component(uid) if uid else None
            if component is None:
                prepared.append(element)
                continue
            item = self.prepare_data(element, component, skip_links)
            item["__component"] = uid
            prepared.append(item)
        return prepared

    # ------------------------------------------------------------------
    # Nested paths
    # ------------------------------------------------------------------

    def build_nested_from_path(
        self, path: str, leaf: Any, schema: Schema
    ) -> dict:
        """Build a nested object placing ``leaf`` at dotted ``path``.

        Each segment is resolved against the schema at its depth.
        Segments naming a repeatable component are wrapped in a list.

        Example::

            build_nested_from_path("seo.image", 7, article)
            # -> {"seo": {"image": 7}}
        """
        segments = path.split(".")
        resolved: list[tuple[str, bool]] = []
        current: Schema | None = schema
        for segment in segments:
            if current is None:
                resolved.append((convert_to_camel_case(segment), False))
                continue
            name = self.resolve_key(segment, current)
            attribute = current.attributes.get(name)
            repeatable = bool(
                attribute is not None
                and attribute.is_component
                and attribute.repeatable
            )
            resolved.append((name, repeatable))
            current = (
                self.registry.component_for(attribute)
                if attribute is not None and attribute.is_component
                else None
            )

        node: Any = leaf
        for name, repeatable in reversed(resolved):
            if repeatable and not isinstance(node, list):
                node = [node]
            node = {name: node}
        return node
