"""Target payload construction.

Turns a source ``ContentRecord`` plus the target-side values of its
links into the ``data`` object of an upsert request.

* Scalar data comes from the technical-field-stripped raw entry, with
  every key resolved by ``FieldResolver`` and relation/media attributes
  removed.
* Top-level relations are written as ``{"set": [...]}`` in link order.
  Media attributes take the target file id (or a list of ids).  On
  update, relations the source holds none of are sent empty.
* Relations inside components are re-attached to the element whose
  *source* id owns them.  The whole component root is rebuilt from the
  raw entry for that, since component arrays are replaced as a unit.
"""

from __future__ import annotations

import logging
from typing import Any

from .comparator import strip_technical
from .fields import FieldResolver, Schema, deep_merge
from .models import ContentRecord, LinkRef
from .schema import Attribute, SchemaRegistry

logger = logging.getLogger(__name__)

ResolvedLink = tuple[LinkRef, Any]


def link_value(attribute: Attribute | None, items: list[ResolvedLink]) -> Any:
    """Payload value for the resolved links of one attribute."""
    values = [
        value
        for _, value in sorted(items, key=lambda p: (p[0].order, p[0].link_id))
    ]
    if attribute is not None and attribute.is_media:
        if attribute.multiple:
            return values
        return values[0] if values else None
    return {"set": values}


class PayloadBuilder:
    """Build upsert payloads for one schema registry.

    Args:
        registry: Schemas of the source instance.
        resolver: Field resolver to reuse; one is created if omitted.
    """

    def __init__(
        self, registry: SchemaRegistry, resolver: FieldResolver | None = None
    ) -> None:
        self.registry = registry
        self.resolver = resolver or FieldResolver(registry)

    def build(
        self,
        record: ContentRecord,
        schema: Schema,
        resolved: list[ResolvedLink],
        include_data: bool = True,
        clear_empty_links: bool = False,
    ) -> dict:
        """Build the ``data`` object for ``record``.

        Args:
            record: Source record.
            schema: Schema of the record.
            resolved: Links to write, each with its target-side value.
                Links left out are absent from the payload.
            include_data: Include the record's scalar data.  When
                ``False`` only relation fields are written, and component
                roots holding a relation are rebuilt whole.
            clear_empty_links: Write an empty value for every top-level
                relation or media attribute the record holds no link in.
                Fields whose links were left out are not touched.
        """
        payload: dict = {}
        if include_data:
            payload = self.resolver.prepare_data(
                strip_technical(record.raw), schema, skip_links=True
            )
            # The locale travels as a request parameter.
            payload.pop("locale", None)

        grouped: dict[str, list[ResolvedLink]] = {}
        for link, value in resolved:
            grouped.setdefault(link.field, []).append((link, value))

        rebuild: set[str] = set()
        for path in sorted(grouped):
            root = path.split(".", 1)[0]
            if "." in path and (
                not include_data or self._crosses_repeatable(path, schema)
            ):
                rebuild.add(root)
                continue
            attribute = self._leaf_attribute(path, schema)
            nested = self.resolver.build_nested_from_path(
                path, link_value(attribute, grouped[path]), schema
            )
            payload = deep_merge(payload, nested)

        if rebuild:
            index: dict[tuple[str, int | None], list[ResolvedLink]] = {}
            for link, value in resolved:
                index.setdefault((link.field, link.source_id), []).append(
                    (link, value)
                )
            raw_by_name = {
                self.resolver.resolve_key(k, schema): v
                for k, v in record.raw.items()
            }
            for root in sorted(rebuild):
                attribute = schema.attributes.get(root)
                if attribute is None:
                    continue
                payload[root] = self._rebuild(
                    raw_by_name.get(root), attribute, root, index
                )

        if include_data and clear_empty_links:
            linked = {link.root for link in record.links}
            for name, attribute in schema.attributes.items():
                if attribute.is_link and name not in linked and name not in payload:
                    payload[name] = link_value(attribute, [])
        return payload

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _crosses_repeatable(self, path: str, schema: Schema) -> bool:
        current: Schema | None = schema
        for segment in path.split(".")[:-1]:
            if current is None:
                return False
            attribute = current.attributes.get(
                self.resolver.resolve_key(segment, current)
            )
            if attribute is None:
                return False
            if attribute.is_dynamic_zone or attribute.repeatable:
                return True
            current = self.registry.component_for(attribute)
        return False

    def _leaf_attribute(self, path: str, schema: Schema) -> Attribute | None:
        current: Schema | None = schema
        attribute = None
        for segment in path.split("."):
            if current is None:
                return None
            attribute = current.attributes.get(
                self.resolver.resolve_key(segment, current)
            )
            if attribute is None:
                return None
            current = self.registry.component_for(attribute)
        return attribute

    def _rebuild(
        self,
        value: Any,
        attribute: Attribute,
        path: str,
        index: dict[tuple[str, int | None], list[ResolvedLink]],
    ) -> Any:
        if value is None:
            return [] if attribute.repeatable or attribute.is_dynamic_zone else None

        if attribute.is_dynamic_zone:
            elements = []
            for element in value if isinstance(value, list) else [value]:
                uid = element.get("__component") if isinstance(element, dict) else None
                component = self.registry.component(uid) if uid else None
                if component is None:
                    elements.append(element)
                    continue
                rebuilt = self._rebuild_element(element, component, path, index)
                rebuilt["__component"] = uid
                elements.append(rebuilt)
            return elements

        component = self.registry.component_for(attribute)
        if component is None:
            return value
        if attribute.repeatable:
            elements = value if isinstance(value, list) else [value]
            return [
                self._rebuild_element(el, component, path, index)
                for el in elements
                if isinstance(el, dict)
            ]
        if isinstance(value, list):
            value = value[0] if value else None
        if not isinstance(value, dict):
            return value
        return self._rebuild_element(value, component, path, index)

    def _rebuild_element(
        self,
        element: dict,
        component: Schema,
        path: str,
        index: dict[tuple[str, int | None], list[ResolvedLink]],
    ) -> dict:
        rebuilt = self.resolver.prepare_data(
            strip_technical(element), component, skip_links=True
        )
        owner = element.get("id")
        for key, value in element.items():
            name = self.resolver.resolve_key(key, component)
            attribute = component.attributes.get(name)
            if attribute is None:
                continue
            child = f"{path}.{name}"
            if attribute.is_link:
                items = index.get((child, owner))
                if items:
                    rebuilt[name] = link_value(attribute, items)
            elif attribute.is_component or attribute.is_dynamic_zone:
                rebuilt[name] = self._rebuild(value, attribute, child, index)
        return rebuilt
