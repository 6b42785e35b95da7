"""Tests for the Strapi HTTP client.

Covers:
- Authorization header and (connect, read) timeouts
- Collection pagination and single-type fetches
- POST for creation, PUT for updates and single types
- UpstreamRequestFailed carries status and body
- Admin login caching
"""

from __future__ import annotations

from unittest.mock import Mock, patch

import pytest
import requests
from conftest import make_registry

from strapi_sync.config import InstanceSettings
from strapi_sync.core.client import (
    CONNECT_TIMEOUT,
    StrapiClient,
    clear_token_cache,
    populate_params,
)
from strapi_sync.errors import UpstreamRequestFailed


def _response(status=200, body=None):
    response = Mock()
    response.status_code = status
    response.ok = 200 <= status < 300
    response.json.return_value = body if body is not None else {}
    response.content = b"{}" if body is not None else b""
    response.text = str(body)
    return response


def _client(**extra) -> StrapiClient:
    settings = InstanceSettings(
        url="https://cms.example.com", api_token="tok", timeout=30, **extra
    )
    return StrapiClient(settings, page_size=2)


@pytest.fixture(autouse=True)
def _fresh_tokens():
    clear_token_cache()
    yield
    clear_token_cache()


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------


class TestTransport:
    def test_session_verify_follows_insecure(self):
        assert _client()._get_session().verify
        assert not _client(insecure=True)._get_session().verify

    @patch("strapi_sync.core.client.requests.Session.request")
    def test_token_and_timeouts(self, mock_request):
        mock_request.return_value = _response(body={"data": []})
        _client().get_content_types()

        args, kwargs = mock_request.call_args
        assert args == (
            "GET",
            "https://cms.example.com/api/content-type-builder/content-types",
        )
        assert kwargs["headers"]["Authorization"] == "Bearer tok"
        assert kwargs["timeout"] == (CONNECT_TIMEOUT, 30)

    @patch("strapi_sync.core.client.requests.Session.request")
    def test_error_carries_status_and_body(self, mock_request):
        mock_request.return_value = _response(
            400, {"error": {"name": "ValidationError"}}
        )
        with pytest.raises(UpstreamRequestFailed) as exc_info:
            _client().upsert_entry("books", {"title": "x"})
        assert exc_info.value.status_code == 400
        assert "ValidationError" in str(exc_info.value)

    @patch("strapi_sync.core.client.requests.Session.request")
    def test_transport_error_is_wrapped(self, mock_request):
        mock_request.side_effect = requests.ConnectionError("refused")
        with pytest.raises(UpstreamRequestFailed, match="refused"):
            _client().get_components()


# ---------------------------------------------------------------------------
# Entries
# ---------------------------------------------------------------------------


class TestEntries:
    @patch("strapi_sync.core.client.requests.Session.request")
    def test_collection_is_paginated(self, mock_request):
        mock_request.side_effect = [
            _response(
                body={
                    "data": [{"documentId": "a"}, {"documentId": "b"}],
                    "meta": {"pagination": {"page": 1, "pageCount": 2}},
                }
            ),
            _response(
                body={
                    "data": [{"documentId": "c"}],
                    "meta": {"pagination": {"page": 2, "pageCount": 2}},
                }
            ),
        ]
        registry = make_registry()
        entries = _client().get_entries(
            registry.content_type("api::author.author"), registry
        )

        assert [e["documentId"] for e in entries] == ["a", "b", "c"]
        pages = [c.kwargs["params"]["pagination[page]"] for c in mock_request.call_args_list]
        assert pages == ["1", "2"]
        assert mock_request.call_args.args[1].endswith("/api/authors")

    @patch("strapi_sync.core.client.requests.Session.request")
    def test_empty_single_type(self, mock_request):
        mock_request.return_value = _response(404, {"error": {}})
        registry = make_registry()
        assert (
            _client().get_entries(registry.content_type("api::homepage.homepage"), registry)
            == []
        )

    @patch("strapi_sync.core.client.requests.Session.request")
    def test_create_posts(self, mock_request):
        mock_request.return_value = _response(body={"data": {"documentId": "n1"}})
        result = _client().upsert_entry("books", {"title": "x"})

        assert result == {"documentId": "n1"}
        args, kwargs = mock_request.call_args
        assert args == ("POST", "https://cms.example.com/api/books")
        assert kwargs["json"] == {"data": {"title": "x"}}

    @patch("strapi_sync.core.client.requests.Session.request")
    def test_update_puts_document(self, mock_request):
        mock_request.return_value = _response(body={"data": {"documentId": "d1"}})
        _client().upsert_entry("books", {"title": "x"}, document_id="d1", locale="en")

        args, kwargs = mock_request.call_args
        assert args == ("PUT", "https://cms.example.com/api/books/d1")
        assert kwargs["params"] == {"locale": "en"}

    @patch("strapi_sync.core.client.requests.Session.request")
    def test_single_type_puts_without_document(self, mock_request):
        mock_request.return_value = _response(body={"data": {}})
        _client().upsert_entry("homepage", {"title": "x"}, single=True)
        assert mock_request.call_args.args == (
            "PUT",
            "https://cms.example.com/api/homepage",
        )

    @patch("strapi_sync.core.client.requests.Session.request")
    def test_delete_of_missing_entry_is_ok(self, mock_request):
        mock_request.return_value = _response(404, {"error": {}})
        _client().delete_entry("books", document_id="gone")
        assert mock_request.call_args.args == (
            "DELETE",
            "https://cms.example.com/api/books/gone",
        )

    @patch("strapi_sync.core.client.requests.Session.request")
    def test_delete_failure_propagates(self, mock_request):
        mock_request.return_value = _response(500, {"error": {}})
        with pytest.raises(UpstreamRequestFailed):
            _client().delete_entry("books", document_id="d1")


class TestPopulateParams:
    def test_relations_media_and_components(self):
        registry = make_registry()
        params = populate_params(
            registry.content_type("api::book.book").attributes, registry
        )
        assert params["populate[author][fields][0]"] == "documentId"
        assert params["populate[cover][fields][1]"] == "name"
        assert params["populate[seo][populate][image][fields][0]"] == "documentId"
        assert (
            params["populate[chapters][populate][reviewer][fields][0]"]
            == "documentId"
        )

    def test_dynamic_zone(self):
        registry = make_registry()
        params = populate_params(
            registry.content_type("api::homepage.homepage").attributes, registry
        )
        assert params["populate[blocks][populate]"] == "*"


# ---------------------------------------------------------------------------
# Admin login
# ---------------------------------------------------------------------------


class TestLogin:
    @patch("strapi_sync.core.client.requests.Session.post")
    def test_token_is_cached(self, mock_post):
        mock_post.return_value = _response(body={"data": {"token": "jwt"}})
        client = _client(username="admin@example.com", password="pw")

        assert client.login() == "jwt"
        assert client.login() == "jwt"
        mock_post.assert_called_once()
        assert mock_post.call_args.kwargs["json"] == {
            "email": "admin@example.com",
            "password": "pw",
        }

    @patch("strapi_sync.core.client.requests.Session.post")
    def test_expired_token_logs_in_again(self, mock_post, monkeypatch):
        mock_post.return_value = _response(body={"data": {"token": "jwt"}})
        client = _client(username="admin@example.com", password="pw")
        client.login()

        import strapi_sync.core.client as mod

        real_time = mod.time.time
        monkeypatch.setattr(mod.time, "time", lambda: real_time() + 21 * 60)
        client.login()
        assert mock_post.call_count == 2

    @patch("strapi_sync.core.client.requests.Session.post")
    def test_failed_login(self, mock_post):
        mock_post.return_value = _response(401, {"error": {}})
        client = _client(username="admin@example.com", password="bad")
        with pytest.raises(UpstreamRequestFailed) as exc_info:
            client.login()
        assert exc_info.value.status_code == 401

    def test_without_credentials_uses_api_token(self):
        assert _client().login() == "tok"
