"""OneNote client over the Microsoft Graph REST API.

Uses httpx for async HTTP.  Authentication is out of scope: the caller
injects an async *token provider* returning a bearer token (or ``None``
when signed out), and the client raises :class:`CloudAuthError` at call
time when no token is available.
"""

from __future__ import annotations

import html
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

import httpx
from pydantic import BaseModel, ConfigDict, Field

from inkbridge.errors import CloudAuthError, CloudClientError, CloudConnectionError

logger = logging.getLogger(__name__)

ONENOTE_BASE_URL = "https://graph.microsoft.com/v1.0/me/onenote"

TokenProvider = Callable[[], Awaitable["str | None"]]


class _GraphModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class Notebook(_GraphModel):
    id: str
    display_name: str = Field(default="", alias="displayName")


class Section(_GraphModel):
    id: str
    display_name: str = Field(default="", alias="displayName")


class CloudPage(_GraphModel):
    id: str
    title: str | None = None
    content_url: str | None = Field(default=None, alias="contentUrl")
    web_url: str | None = None


class OneNoteClient:
    """Thin async wrapper around the OneNote Graph endpoints.

    A single :class:`httpx.AsyncClient` is reused across calls.  Call
    :meth:`aclose` (or use as an async context manager) when done.
    """

    def __init__(
        self,
        token_provider: TokenProvider,
        base_url: str = ONENOTE_BASE_URL,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._token_provider = token_provider
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "OneNoteClient":
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.aclose()

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    async def is_authenticated(self) -> bool:
        return bool(await self._token_provider())

    async def get_notebooks(self) -> list[Notebook]:
        logger.info("Fetching OneNote notebooks")
        result = await self._request("GET", "/notebooks")
        notebooks = [Notebook.model_validate(n) for n in result.json().get("value", [])]
        logger.info("Found %d notebooks", len(notebooks))
        return notebooks

    async def create_notebook(self, display_name: str) -> Notebook:
        logger.info("Creating notebook: %s", display_name)
        result = await self._request("POST", "/notebooks", json={"displayName": display_name})
        return Notebook.model_validate(result.json())

    async def get_sections(self, notebook_id: str) -> list[Section]:
        result = await self._request("GET", f"/notebooks/{notebook_id}/sections")
        return [Section.model_validate(s) for s in result.json().get("value", [])]

    async def create_section(self, notebook_id: str, display_name: str) -> Section:
        logger.info("Creating section '%s' in notebook %s", display_name, notebook_id)
        result = await self._request(
            "POST", f"/notebooks/{notebook_id}/sections", json={"displayName": display_name}
        )
        return Section.model_validate(result.json())

    async def create_page(self, section_id: str, title: str, body_html: str) -> CloudPage:
        """Create an HTML-only page."""
        result = await self._request(
            "POST",
            f"/sections/{section_id}/pages",
            content=_page_html(title, body_html).encode("utf-8"),
            headers={"Content-Type": "text/html"},
        )
        return _page_from_response(result)

    async def upload_page(
        self,
        section_id: str,
        title: str,
        data: bytes,
        metadata: dict[str, str],
        filename: str = "page.rm",
    ) -> CloudPage:
        """Create a page carrying *data* as an attachment plus a metadata panel.

        The page id comes from the ``Location`` header when present,
        otherwise from the response body.
        """
        logger.info("Uploading page '%s' to section %s", title, section_id)
        panel = "\n".join(
            f"<p><b>{html.escape(k)}:</b> {html.escape(str(v))}</p>" for k, v in metadata.items()
        )
        body = (
            f"<h1>{html.escape(title)}</h1>\n{panel}\n"
            f"<object data-attachment='{html.escape(filename)}' data='name:PageData' "
            "type='application/octet-stream' />"
        )
        files = {
            "Presentation": (None, _page_html(title, body), "text/html"),
            "PageData": (filename, data, "application/octet-stream"),
        }
        result = await self._request("POST", f"/sections/{section_id}/pages", files=files)
        page = _page_from_response(result)
        logger.info("Uploaded page with ID: %s", page.id)
        return page

    async def update_page(self, page_id: str, body_html: str) -> CloudPage:
        patch = [{"target": "body", "action": "replace", "content": body_html}]
        await self._request("PATCH", f"/pages/{page_id}/content", json=patch)
        return await self.get_page(page_id)

    async def get_page(self, page_id: str) -> CloudPage:
        result = await self._request("GET", f"/pages/{page_id}")
        return _page_from_response(result)

    async def get_page_content(self, page_id: str) -> str:
        result = await self._request("GET", f"/pages/{page_id}/content")
        return result.text

    async def delete_page(self, page_id: str) -> bool:
        """Returns False (logged) instead of raising when the delete fails."""
        try:
            await self._request("DELETE", f"/pages/{page_id}")
        except CloudClientError as exc:
            logger.warning("Failed to delete page %s: %s", page_id, exc)
            return False
        logger.info("Deleted page %s", page_id)
        return True

    # ------------------------------------------------------------------ #
    # Private helpers
    # ------------------------------------------------------------------ #

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        token = await self._token_provider()
        if not token:
            raise CloudAuthError("Not authenticated with OneNote")

        headers = {"Authorization": f"Bearer {token}", **kwargs.pop("headers", {})}
        url = f"{self.base_url}{path}"
        try:
            response = await self._client.request(method, url, headers=headers, **kwargs)
        except (httpx.ConnectError, httpx.TimeoutException, httpx.NetworkError) as exc:
            raise CloudConnectionError(f"Cannot reach OneNote at {url}: {exc}") from exc

        if response.status_code in (401, 403):
            raise CloudAuthError(f"OneNote returned {response.status_code}; token rejected")
        if response.is_error:
            raise CloudClientError(
                f"{method} {path} failed with {response.status_code}: {response.text[:200]}"
            )
        return response


def _page_html(title: str, body: str) -> str:
    created = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"
    return (
        "<!DOCTYPE html>\n<html>\n<head>\n"
        f"    <title>{html.escape(title)}</title>\n"
        f"    <meta name='created' content='{created}' />\n"
        "</head>\n<body data-absolute-enabled='true'>\n"
        f"{body}\n"
        "</body>\n</html>"
    )


def _page_from_response(response: httpx.Response) -> CloudPage:
    payload: dict[str, Any] = {}
    if response.content:
        try:
            payload = response.json()
        except ValueError:
            payload = {}

    location = response.headers.get("location", "")
    page_id = location.rstrip("/").rsplit("/", 1)[-1] if location else ""
    page_id = page_id or str(payload.get("id") or "")
    if not page_id:
        raise CloudClientError("Response carried no page id")

    web_url = ((payload.get("links") or {}).get("oneNoteWebUrl") or {}).get("href")
    return CloudPage(
        id=page_id,
        title=payload.get("title"),
        content_url=payload.get("contentUrl"),
        web_url=web_url,
    )
