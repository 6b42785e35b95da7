"""Shared pytest fixtures for strapi-sync tests."""

import itertools

import pytest
from dotenv import load_dotenv

from strapi_sync.errors import UpstreamRequestFailed
from strapi_sync.sync.comparator import ContentComparator
from strapi_sync.sync.models import InstanceSnapshot
from strapi_sync.sync.schema import SchemaRegistry

load_dotenv()

AUTHOR = "api::author.author"
BOOK = "api::book.book"
CATEGORY = "api::category.category"
HOMEPAGE = "api::homepage.homepage"
FILE = "plugin::upload.file"

CONTENT_TYPES_PAYLOAD = {
    "data": [
        {
            "uid": AUTHOR,
            "schema": {
                "kind": "collectionType",
                "singularName": "author",
                "pluralName": "authors",
                "attributes": {
                    "name": {"type": "string"},
                    "url": {"type": "string"},
                    "createdBy": {
                        "type": "relation",
                        "relation": "oneToOne",
                        "target": "admin::user",
                    },
                },
            },
        },
        {
            "uid": BOOK,
            "schema": {
                "kind": "collectionType",
                "singularName": "book",
                "pluralName": "books",
                "attributes": {
                    "title": {"type": "string"},
                    "author": {
                        "type": "relation",
                        "relation": "manyToOne",
                        "target": AUTHOR,
                    },
                    "cover": {"type": "media", "multiple": False},
                    "seo": {"type": "component", "component": "shared.seo"},
                    "chapters": {
                        "type": "component",
                        "component": "shared.chapter",
                        "repeatable": True,
                    },
                },
            },
        },
        {
            "uid": CATEGORY,
            "schema": {
                "kind": "collectionType",
                "singularName": "category",
                "pluralName": "categories",
                "attributes": {
                    "name": {"type": "string"},
                    "parent": {
                        "type": "relation",
                        "relation": "manyToOne",
                        "target": CATEGORY,
                    },
                    "related": {
                        "type": "relation",
                        "relation": "manyToMany",
                        "target": CATEGORY,
                    },
                },
            },
        },
        {
            "uid": HOMEPAGE,
            "schema": {
                "kind": "singleType",
                "singularName": "homepage",
                "pluralName": "homepages",
                "attributes": {
                    "title": {"type": "string"},
                    "blocks": {
                        "type": "dynamiczone",
                        "components": ["shared.hero"],
                    },
                },
            },
        },
        {
            "uid": "plugin::users-permissions.user",
            "schema": {
                "kind": "collectionType",
                "singularName": "user",
                "pluralName": "users",
                "attributes": {"username": {"type": "string"}},
            },
        },
    ]
}

COMPONENTS_PAYLOAD = {
    "data": [
        {
            "uid": "shared.seo",
            "schema": {
                "attributes": {
                    "metaTitle": {"type": "string"},
                    "image": {"type": "media", "multiple": False},
                }
            },
        },
        {
            "uid": "shared.chapter",
            "schema": {
                "attributes": {
                    "title": {"type": "string"},
                    "reviewer": {
                        "type": "relation",
                        "relation": "manyToOne",
                        "target": AUTHOR,
                    },
                }
            },
        },
        {
            "uid": "shared.hero",
            "schema": {
                "attributes": {
                    "heading": {"type": "string"},
                    "featured": {
                        "type": "relation",
                        "relation": "manyToOne",
                        "target": BOOK,
                    },
                }
            },
        },
    ]
}


def make_registry() -> SchemaRegistry:
    return SchemaRegistry.from_api(CONTENT_TYPES_PAYLOAD, COMPONENTS_PAYLOAD)


# ---------------------------------------------------------------------------
# Raw entry builders
# ---------------------------------------------------------------------------


def author(document_id, record_id, name="Ann", **extra):
    return {"id": record_id, "documentId": document_id, "name": name, **extra}


def book(document_id, record_id, title="Dune", author_ref=None, **extra):
    entry = {"id": record_id, "documentId": document_id, "title": title, **extra}
    if author_ref is not None:
        entry["author"] = {"id": author_ref[1], "documentId": author_ref[0]}
    return entry


def category(document_id, record_id, name, parent_ref=None, related=()):
    entry = {"id": record_id, "documentId": document_id, "name": name}
    if parent_ref is not None:
        entry["parent"] = {"id": parent_ref[1], "documentId": parent_ref[0]}
    if related:
        entry["related"] = [{"id": i, "documentId": d} for d, i in related]
    return entry


def media_file(document_id, record_id, name="cat.png", size=100.0, **extra):
    return {
        "id": record_id,
        "documentId": document_id,
        "name": name,
        "ext": ".png",
        "mime": "image/png",
        "size": size,
        "url": f"/uploads/{name}",
        **extra,
    }


def snapshot(instance_id, entries=None, files=None, registry=None):
    return InstanceSnapshot(
        instance_id=instance_id,
        registry=registry or make_registry(),
        entries=entries or {},
        files=files or [],
    )


def compare_entries(source_entries, target_entries=None, source_files=None,
                    target_files=None, mappings=(), exclusions=()):
    """Comparison snapshot of two in-memory instances."""
    return ContentComparator(mappings, exclusions).compare(
        snapshot("https://source.example.com", source_entries, source_files),
        snapshot("https://target.example.com", target_entries, target_files),
    )


# ---------------------------------------------------------------------------
# Fake clients
# ---------------------------------------------------------------------------


class FakeTarget:
    """In-memory stand-in for a target ``StrapiClient``.

    Records every write in ``calls`` and the locale of every upsert in
    ``locales``.  Upserts of a query name listed in
    ``fail_on`` raise ``UpstreamRequestFailed``.
    """

    def __init__(self, instance_id="https://target.example.com", fail_on=()):
        self.instance_id = instance_id
        self.fail_on = set(fail_on)
        self.calls = []
        self.locales = []
        self._ids = itertools.count(101)

    def upsert_entry(self, query_name, data, single=False, document_id=None,
                     locale=None):
        self.calls.append(("upsert", query_name, data, document_id))
        self.locales.append(locale)
        if query_name in self.fail_on:
            raise UpstreamRequestFailed(
                f"PUT /api/{query_name} failed",
                status_code=400,
                body='{"error":{"message":"ValidationError"}}',
            )
        if document_id:
            return {"documentId": document_id, "id": next(self._ids)}
        new_id = next(self._ids)
        return {"documentId": f"t-{new_id}", "id": new_id}

    def delete_entry(self, query_name, single=False, document_id=None,
                     locale=None):
        self.calls.append(("delete", query_name, None, document_id))


class FakeInstance(FakeTarget):
    """Fake client serving a fixed snapshot for reads."""

    def __init__(self, instance_id, entries=None, files=None, registry=None,
                 fail_on=()):
        super().__init__(instance_id, fail_on)
        self.registry = registry or make_registry()
        self.entries = entries or {}
        self.files = files or []
        self.folders = []

    def get_registry(self):
        return self.registry

    def get_entries(self, schema, registry):
        return list(self.entries.get(schema.uid, []))

    def get_files(self):
        return list(self.files)

    def get_folders(self):
        return list(self.folders)


class WritableInstance(FakeInstance):
    """Fake instance whose upserts change the entries it serves.

    Relation values written as ``{"set": [...]}`` are stored the way
    Strapi returns them, so a fresh comparison sees the written state.
    """

    def upsert_entry(self, query_name, data, single=False, document_id=None,
                     locale=None):
        response = super().upsert_entry(
            query_name, data, single=single, document_id=document_id,
            locale=locale,
        )
        schema = next(
            s for s in self.registry.content_types.values()
            if s.query_name == query_name
        )
        entries = self.entries.setdefault(schema.uid, [])
        entry = next(
            (
                e for e in entries
                if e["documentId"] == response["documentId"]
                and e.get("locale") == locale
            ),
            None,
        )
        if entry is None:
            entry = {"id": response["id"], "documentId": response["documentId"]}
            if locale:
                entry["locale"] = locale
            entries.append(entry)
        for key, value in data.items():
            entry[key] = self._stored(schema.attributes.get(key), value)
        return response

    @staticmethod
    def _stored(attribute, value):
        if attribute is None or not attribute.is_link:
            return value
        if attribute.is_media:
            if isinstance(value, list):
                return [{"id": v} for v in value]
            return {"id": value} if value is not None else None
        related = [{"documentId": d} for d in value.get("set", [])]
        if attribute.is_many:
            return related
        return related[0] if related else None


@pytest.fixture
def registry():
    return make_registry()


@pytest.fixture
def fake_target():
    return FakeTarget()


def pytest_addoption(parser):
    """Add custom CLI options for test filtering."""
    parser.addoption(
        "--run-live",
        action="store_true",
        default=False,
        help="Run tests that require live Strapi instances",
    )


def pytest_collection_modifyitems(config, items):
    """Skip live tests unless --run-live is passed."""
    if config.getoption("--run-live"):
        return
    skip_live = pytest.mark.skip(reason="need --run-live option to run")
    for item in items:
        if "live" in item.keywords:
            item.add_marker(skip_live)
