"""Schema tree for content types and components.

Parses the content-type-builder payloads of an instance into a typed
tree that the field resolver, relationship extractor and payload builder
walk recursively.  Also provides the schema compatibility check that
must pass before any comparison is attempted.

Key design choices:

* **Tagged attributes** -- every attribute carries its ``type`` tag
  (``relation``, ``media``, ``component``, ``dynamiczone`` or a scalar
  type) so walkers dispatch on data instead of inspecting values.
* **Only API content types** -- plugin and admin types are never synced,
  except the media library which is handled through its own path.
"""

from __future__ import annotations

import logging

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

FILE_UID = "plugin::upload.file"

_MANY_RELATIONS = ("oneToMany", "manyToMany", "manyWay", "morphToMany")


class Attribute(BaseModel):
    """One attribute of a content type or component.

    Attributes:
        type: Strapi attribute type.
        relation: Relation cardinality (``manyToOne``, ...), relations only.
        target: Related content type uid, relations only.
        component: Component uid, components only.
        components: Allowed component uids, dynamic zones only.
        repeatable: Component holds an array of elements.
        multiple: Media attribute holds several files.
    """

    type: str
    relation: str | None = None
    target: str | None = None
    component: str | None = None
    components: list[str] = Field(default_factory=list)
    repeatable: bool = False
    multiple: bool = False
    unique: bool = False
    required: bool = False

    model_config = {"frozen": True}

    @property
    def is_relation(self) -> bool:
        return self.type == "relation" and bool(self.target)

    @property
    def is_media(self) -> bool:
        return self.type == "media"

    @property
    def is_link(self) -> bool:
        """Attribute value references another record or file."""
        if self.is_media:
            return True
        return self.is_relation and not str(self.target).startswith("admin::")

    @property
    def is_component(self) -> bool:
        return self.type == "component" and bool(self.component)

    @property
    def is_dynamic_zone(self) -> bool:
        return self.type == "dynamiczone"

    @property
    def is_many(self) -> bool:
        if self.is_media:
            return self.multiple
        return (self.relation or "") in _MANY_RELATIONS

    @property
    def target_table(self) -> str | None:
        if self.is_media:
            return FILE_UID
        return self.target

    def signature(self) -> tuple:
        """Shape that must match between source and target."""
        return (
            self.type,
            self.relation,
            self.target,
            self.component,
            tuple(sorted(self.components)),
            self.repeatable,
            self.multiple,
        )


class ComponentSchema(BaseModel):
    uid: str
    attributes: dict[str, Attribute] = Field(default_factory=dict)

    model_config = {"frozen": True}


class ContentTypeSchema(BaseModel):
    """Schema of one content type.

    Attributes:
        uid: Content type uid (``api::author.author``).
        kind: ``collectionType`` or ``singleType``.
        singular_name: Singular API name.
        plural_name: Plural API name.
        localized: Whether i18n is enabled for the type.
        attributes: Attribute tree.
    """

    uid: str
    kind: str = "collectionType"
    singular_name: str
    plural_name: str
    localized: bool = False
    attributes: dict[str, Attribute] = Field(default_factory=dict)

    model_config = {"frozen": True}

    @property
    def is_single(self) -> bool:
        return self.kind == "singleType"

    @property
    def query_name(self) -> str:
        """REST path segment: singular for single types, plural otherwise."""
        return self.singular_name if self.is_single else self.plural_name


class SchemaRegistry(BaseModel):
    """All schemas of one instance, indexed by uid."""

    content_types: dict[str, ContentTypeSchema] = Field(default_factory=dict)
    components: dict[str, ComponentSchema] = Field(default_factory=dict)

    model_config = {"frozen": True}

    def content_type(self, uid: str) -> ContentTypeSchema:
        try:
            return self.content_types[uid]
        except KeyError:
            raise KeyError(f"Unknown content type: {uid}") from None

    def component(self, uid: str) -> ComponentSchema | None:
        return self.components.get(uid)

    def component_for(self, attribute: Attribute) -> ComponentSchema | None:
        """Return the sub-schema of a component attribute, if known."""
        if not attribute.is_component:
            return None
        found = self.components.get(str(attribute.component))
        if found is None:
            logger.warning(
                "Component schema %s not found in registry",
                attribute.component,
            )
        return found

    # ------------------------------------------------------------------
    # Parsing
    # ------------------------------------------------------------------

    @classmethod
    def from_api(
        cls, content_types_payload: dict, components_payload: dict
    ) -> SchemaRegistry:
        """Build a registry from content-type-builder API responses.

        Args:
            content_types_payload: Body of
                ``GET /api/content-type-builder/content-types``.
            components_payload: Body of
                ``GET /api/content-type-builder/components``.
        """
        content_types: dict[str, ContentTypeSchema] = {}
        for item in content_types_payload.get("data", []):
            uid = item.get("uid", "")
            if not uid.startswith("api::"):
                continue
            schema = item.get("schema", {})
            localized = bool(
                schema.get("pluginOptions", {})
                .get("i18n", {})
                .get("localized", False)
            )
            content_types[uid] = ContentTypeSchema(
                uid=uid,
                kind=schema.get("kind", "collectionType"),
                singular_name=schema.get("singularName", ""),
                plural_name=schema.get("pluralName", ""),
                localized=localized,
                attributes=_parse_attributes(schema.get("attributes", {})),
            )

        components: dict[str, ComponentSchema] = {}
        for item in components_payload.get("data", []):
            uid = item.get("uid", "")
            schema = item.get("schema", {})
            components[uid] = ComponentSchema(
                uid=uid,
                attributes=_parse_attributes(schema.get("attributes", {})),
            )

        return cls(content_types=content_types, components=components)


def _parse_attributes(raw: dict) -> dict[str, Attribute]:
    return {
        name: Attribute(**{k: v for k, v in spec.items() if v is not None})
        for name, spec in raw.items()
        if isinstance(spec, dict) and "type" in spec
    }


# ---------------------------------------------------------------------------
# Compatibility
# ---------------------------------------------------------------------------


class CompatibilityReport(BaseModel):
    """Result of comparing two schema registries."""

    compatible: bool
    problems: list[str] = Field(default_factory=list)

    model_config = {"frozen": True}


def _compare_attributes(
    owner: str,
    source: dict[str, Attribute],
    target: dict[str, Attribute],
    problems: list[str],
) -> None:
    for name, attribute in sorted(source.items()):
        other = target.get(name)
        if other is None:
            problems.append(f"{owner}.{name}: missing in target")
        elif attribute.signature() != other.signature():
            problems.append(
                f"{owner}.{name}: type mismatch "
                f"({attribute.type} vs {other.type})"
            )


def check_compatibility(
    source: SchemaRegistry, target: SchemaRegistry
) -> CompatibilityReport:
    """Check that every source schema exists with the same shape in target.

    Extra types or attributes on the target are allowed: they never
    receive data from the source.
    """
    problems: list[str] = []

    for uid, schema in sorted(source.content_types.items()):
        other = target.content_types.get(uid)
        if other is None:
            problems.append(f"{uid}: content type missing in target")
            continue
        if schema.kind != other.kind:
            problems.append(
                f"{uid}: kind mismatch ({schema.kind} vs {other.kind})"
            )
        _compare_attributes(uid, schema.attributes, other.attributes, problems)

    for uid, component in sorted(source.components.items()):
        other_component = target.components.get(uid)
        if other_component is None:
            problems.append(f"{uid}: component missing in target")
            continue
        _compare_attributes(
            uid, component.attributes, other_component.attributes, problems
        )

    if problems:
        logger.warning("Schema check found %d problem(s)", len(problems))
    return CompatibilityReport(compatible=not problems, problems=problems)
