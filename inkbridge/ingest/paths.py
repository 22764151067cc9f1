"""Mapping device paths onto notebook / section / page names."""

from __future__ import annotations

import posixpath
import re
import uuid
from typing import NamedTuple

NOTEBOOK_PREFIX = "rm_"
DEFAULT_NOTEBOOK = f"{NOTEBOOK_PREFIX}Uncategorized"
DEFAULT_SECTION = "Default"
DEFAULT_PAGE = "Untitled"

_INVALID_NAME_CHARS = re.compile(r'[/\\:*?"<>|]')
_PAGE_NUMBER_RE = re.compile(r"(?:page|p)\s*[_\s]?\s*(\d+)", re.IGNORECASE)


class PageLocation(NamedTuple):
    notebook: str
    section: str
    page: str


class UploadName(NamedTuple):
    document_id: str
    page_id: str
    extension: str


def sanitize_name(name: str) -> str:
    """Replace characters the notebook service rejects in names with ``_``."""
    return _INVALID_NAME_CHARS.sub("_", name)


def parse_virtual_path(virtual_path: str) -> PageLocation:
    """Split a device folder path into (notebook, section, page).

    The last segment is the page, the one before it the section, and
    everything above becomes the notebook name::

        >>> parse_virtual_path("Physics/Ch1/Page 3")
        PageLocation(notebook='rm_Physics', section='Ch1', page='Page 3')
    """
    segments = [s for s in (virtual_path or "").split("/") if s]

    if not segments:
        return PageLocation(DEFAULT_NOTEBOOK, DEFAULT_SECTION, DEFAULT_PAGE)
    if len(segments) == 1:
        return PageLocation(DEFAULT_NOTEBOOK, DEFAULT_SECTION, segments[0])
    if len(segments) == 2:
        return PageLocation(NOTEBOOK_PREFIX + sanitize_name(segments[0]), segments[0], segments[1])

    notebook = "_".join(sanitize_name(s) for s in segments[:-2])
    return PageLocation(NOTEBOOK_PREFIX + notebook, segments[-2], segments[-1])


def extract_page_number(page_name: str) -> str:
    """``"Page 3"`` -> ``"3"``, ``"p_12"`` -> ``"12"``; ``"1"`` when absent."""
    match = _PAGE_NUMBER_RE.search(page_name or "")
    return match.group(1) if match else "1"


def parse_upload_filename(filename: str) -> UploadName:
    """Decode the agent's ``{documentId}/{pageId}.ext`` header value."""
    directory, base = posixpath.split((filename or "").replace("\\", "/"))
    page_id, extension = posixpath.splitext(base)
    if page_id.startswith(".") and not extension:
        # ".rm" alone is an extension with no name
        page_id, extension = "", page_id
    if page_id in ("", ".", ".."):
        page_id = str(uuid.uuid4())

    document_id = posixpath.basename(directory.rstrip("/")) if directory else ""
    if document_id in ("", ".", ".."):
        document_id = "unknown"
    return UploadName(document_id, page_id, extension)
