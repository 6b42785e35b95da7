"""HTTP client for one Strapi instance.

Wraps the REST content API (API token) and the admin upload endpoints
(admin login token) behind plain synchronous methods.  Every call uses a
``(connect, read)`` timeout; non-2xx responses and transport errors are
raised as ``UpstreamRequestFailed`` carrying the response body.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from typing import Any

import requests

from ..config import InstanceSettings
from ..errors import UpstreamRequestFailed
from ..sync.schema import ContentTypeSchema, SchemaRegistry

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT = 10
TOKEN_TTL_SECONDS = 20 * 60

# Admin login tokens shared by every client of the process:
# (base url, username) -> (token, obtained_at)
_token_cache: dict[tuple[str, str], tuple[str, float]] = {}
_token_lock = threading.Lock()


def clear_token_cache(base_url: str | None = None) -> None:
    """Forget cached admin tokens (all of them, or one instance's)."""
    with _token_lock:
        if base_url is None:
            _token_cache.clear()
            return
        for key in [k for k in _token_cache if k[0] == base_url]:
            del _token_cache[key]


def populate_params(
    attributes: dict, registry: SchemaRegistry, prefix: str = "populate"
) -> dict[str, str]:
    """Query parameters populating every relation, media and component.

    Relations and media only need their identity, so they are populated
    with ``documentId`` as the single selected field (``id`` is always
    returned).
    """
    params: dict[str, str] = {}
    for name, attribute in sorted(attributes.items()):
        key = f"{prefix}[{name}]"
        if attribute.is_link:
            params[f"{key}[fields][0]"] = "documentId"
            if attribute.is_media:
                params[f"{key}[fields][1]"] = "name"
        elif attribute.is_component:
            component = registry.component_for(attribute)
            nested = (
                populate_params(component.attributes, registry, f"{key}[populate]")
                if component is not None
                else {}
            )
            if nested:
                params.update(nested)
            else:
                params[key] = "true"
        elif attribute.is_dynamic_zone:
            params[f"{key}[populate]"] = "*"
    return params


class StrapiClient:
    """Client for one Strapi instance.

    Args:
        settings: Connection settings of the instance.
        page_size: Page size used for paginated listings.
    """

    def __init__(self, settings: InstanceSettings, page_size: int = 100):
        self.settings = settings
        self.base_url = settings.url.rstrip("/")
        self.page_size = page_size
        self._thread_local = threading.local()

    @property
    def instance_id(self) -> str:
        return self.base_url

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _get_session(self) -> requests.Session:
        """Get or create a thread-local requests.Session."""
        if not hasattr(self._thread_local, "session"):
            session = requests.Session()
            session.verify = not self.settings.insecure
            self._thread_local.session = session
        return self._thread_local.session

    def _request(
        self,
        method: str,
        path: str,
        admin: bool = False,
        **kwargs: Any,
    ) -> requests.Response:
        url = f"{self.base_url}{path}"
        token = self.login() if admin else self.settings.api_token
        headers = kwargs.pop("headers", {})
        if token:
            headers["Authorization"] = f"Bearer {token}"
        try:
            response = self._get_session().request(
                method,
                url,
                headers=headers,
                timeout=(CONNECT_TIMEOUT, self.settings.timeout),
                **kwargs,
            )
        except requests.RequestException as exc:
            raise UpstreamRequestFailed(f"{method} {url} failed: {exc}") from exc

        if not response.ok:
            logger.debug(
                "%s %s -> %d: %s", method, url, response.status_code, response.text
            )
            raise UpstreamRequestFailed(
                f"{method} {url} failed",
                status_code=response.status_code,
                body=response.text,
            )
        return response

    def _json(self, method: str, path: str, **kwargs: Any) -> Any:
        response = self._request(method, path, **kwargs)
        if not response.content:
            return {}
        return response.json()

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    def login(self) -> str:
        """Return an admin token, logging in when the cached one expired."""
        username = self.settings.username or ""
        key = (self.base_url, username)
        with _token_lock:
            cached = _token_cache.get(key)
            if cached is not None and time.time() - cached[1] < TOKEN_TTL_SECONDS:
                return cached[0]

            if not username or not self.settings.password:
                if self.settings.api_token:
                    return self.settings.api_token
                raise UpstreamRequestFailed(
                    f"No credentials configured for {self.base_url}"
                )

            url = f"{self.base_url}/admin/login"
            try:
                response = self._get_session().post(
                    url,
                    json={"email": username, "password": self.settings.password},
                    timeout=(CONNECT_TIMEOUT, self.settings.timeout),
                )
            except requests.RequestException as exc:
                raise UpstreamRequestFailed(f"Login to {url} failed: {exc}") from exc
            if not response.ok:
                raise UpstreamRequestFailed(
                    f"Login to {url} failed",
                    status_code=response.status_code,
                    body=response.text,
                )
            token = response.json()["data"]["token"]
            _token_cache[key] = (token, time.time())
            logger.info("Logged in to %s as %s", self.base_url, username)
            return token

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    def get_content_types(self) -> dict:
        return self._json("GET", "/api/content-type-builder/content-types")

    def get_components(self) -> dict:
        return self._json("GET", "/api/content-type-builder/components")

    def get_registry(self) -> SchemaRegistry:
        return SchemaRegistry.from_api(
            self.get_content_types(), self.get_components()
        )

    # ------------------------------------------------------------------
    # Entries
    # ------------------------------------------------------------------

    def get_entries(
        self, schema: ContentTypeSchema, registry: SchemaRegistry
    ) -> list[dict]:
        """Fetch every entry of a content type.

        Single types are fetched with one call (an empty single type
        answers 404, returned as no entries); collections page through
        ``pagination[page]`` until ``pageCount`` is reached.
        """
        params = populate_params(schema.attributes, registry)
        path = f"/api/{schema.query_name}"

        if schema.is_single:
            try:
                body = self._json("GET", path, params=params)
            except UpstreamRequestFailed as exc:
                if exc.status_code == 404:
                    return []
                raise
            data = body.get("data")
            return [data] if data else []

        entries: list[dict] = []
        page = 1
        while True:
            page_params = dict(params)
            page_params["pagination[page]"] = str(page)
            page_params["pagination[pageSize]"] = str(self.page_size)
            body = self._json("GET", path, params=page_params)
            entries.extend(body.get("data") or [])
            page_count = (
                body.get("meta", {}).get("pagination", {}).get("pageCount", 1)
            )
            if page >= page_count:
                break
            page += 1
        logger.debug("Fetched %d %s entries", len(entries), schema.uid)
        return entries

    def upsert_entry(
        self,
        query_name: str,
        data: dict,
        single: bool = False,
        document_id: str | None = None,
        locale: str | None = None,
    ) -> dict:
        """Create or update an entry and return the stored entry.

        Single types and entries with a known ``document_id`` are updated
        with ``PUT``; everything else is created with ``POST``.
        """
        path = f"/api/{query_name}"
        if not single and document_id:
            path = f"{path}/{document_id}"
        method = "PUT" if single or document_id else "POST"
        params = {"locale": locale} if locale else None
        body = self._json(method, path, json={"data": data}, params=params)
        return body.get("data") or {}

    def delete_entry(
        self,
        query_name: str,
        single: bool = False,
        document_id: str | None = None,
        locale: str | None = None,
    ) -> None:
        path = f"/api/{query_name}"
        if not single:
            path = f"{path}/{document_id}"
        params = {"locale": locale} if locale else None
        try:
            self._request("DELETE", path, params=params)
        except UpstreamRequestFailed as exc:
            if exc.status_code != 404:
                raise
            logger.info("%s already deleted on %s", path, self.base_url)

    # ------------------------------------------------------------------
    # Media library
    # ------------------------------------------------------------------

    def get_files(self) -> list[dict]:
        files: list[dict] = []
        page = 1
        while True:
            body = self._json(
                "GET",
                "/upload/files",
                admin=True,
                params={
                    "sort": "createdAt:DESC",
                    "page": page,
                    "pageSize": self.page_size,
                },
            )
            files.extend(body.get("results") or [])
            page_count = body.get("pagination", {}).get("pageCount", 0)
            if page >= page_count:
                break
            page += 1
        return files

    def get_folders(self) -> list[dict]:
        return self._json("GET", "/upload/folders", admin=True).get("data") or []

    def create_folder(self, name: str, parent_id: int | None = None) -> dict:
        body = self._json(
            "POST",
            "/upload/folders",
            admin=True,
            json={"name": name, "parent": parent_id},
        )
        return body.get("data") or body

    def download_file(self, url: str) -> bytes:
        """Download file bytes; relative URLs are resolved on this instance."""
        if url.startswith("/"):
            url = f"{self.base_url}{url}"
        try:
            response = self._get_session().get(
                url, timeout=(CONNECT_TIMEOUT, self.settings.timeout)
            )
        except requests.RequestException as exc:
            raise UpstreamRequestFailed(f"Download of {url} failed: {exc}") from exc
        if not response.ok:
            raise UpstreamRequestFailed(
                f"Download of {url} failed",
                status_code=response.status_code,
                body=response.text,
            )
        return response.content

    def upload_file(
        self,
        content: bytes,
        file_name: str,
        mime: str | None = None,
        file_info: dict | None = None,
        file_id: int | None = None,
    ) -> dict:
        """Upload a file, replacing ``file_id`` when given.

        Returns:
            The uploaded file object (``id``, ``documentId``, ...).
        """
        path = "/upload" if file_id is None else f"/upload?id={file_id}"
        body = self._json(
            "POST",
            path,
            admin=True,
            files={
                "files": (file_name, content, mime or "application/octet-stream")
            },
            data={"fileInfo": json.dumps(file_info or {"name": file_name})},
        )
        if isinstance(body, list):
            return body[0] if body else {}
        return body

    def delete_file(self, file_id: int) -> None:
        try:
            self._request("DELETE", f"/api/upload/files/{file_id}")
        except UpstreamRequestFailed as exc:
            if exc.status_code != 404:
                raise
