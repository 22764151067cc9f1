"""Tests for virtual-path decomposition and upload filename parsing."""

from __future__ import annotations

import uuid

import pytest

from inkbridge.ingest.paths import (
    extract_page_number,
    parse_upload_filename,
    parse_virtual_path,
    sanitize_name,
)


class TestParseVirtualPath:
    @pytest.mark.parametrize(
        "path, expected",
        [
            ("", ("rm_Uncategorized", "Default", "Untitled")),
            ("///", ("rm_Uncategorized", "Default", "Untitled")),
            ("Page 1", ("rm_Uncategorized", "Default", "Page 1")),
            ("Physics/Page 1", ("rm_Physics", "Physics", "Page 1")),
            ("Physics/Ch1/Page 3", ("rm_Physics", "Ch1", "Page 3")),
            (
                "Academy/YearOne/BA-Phys/Math Prep I/Page 3",
                ("rm_Academy_YearOne_BA-Phys", "Math Prep I", "Page 3"),
            ),
        ],
    )
    def test_decomposition(self, path, expected):
        assert tuple(parse_virtual_path(path)) == expected

    def test_empty_segments_are_ignored(self):
        assert parse_virtual_path("/Physics//Ch1/Page 3/") == ("rm_Physics", "Ch1", "Page 3")

    def test_notebook_segments_are_sanitized(self):
        loc = parse_virtual_path('Work: 2024/Q?1/Meeting/Page 2')
        assert loc.notebook == "rm_Work_ 2024_Q_1"
        # section and page keep their original names
        assert loc.section == "Meeting"
        assert loc.page == "Page 2"

    def test_two_segments_sanitize_notebook_only(self):
        loc = parse_virtual_path("A|B/notes")
        assert loc.notebook == "rm_A_B"
        assert loc.section == "A|B"


class TestSanitizeName:
    def test_replaces_every_reserved_character(self):
        assert sanitize_name('a/b\\c:d*e?f"g<h>i|j') == "a_b_c_d_e_f_g_h_i_j"

    def test_leaves_ordinary_names_alone(self):
        assert sanitize_name("Math Prep I") == "Math Prep I"


class TestExtractPageNumber:
    @pytest.mark.parametrize(
        "name, expected",
        [
            ("Page 3", "3"),
            ("page_12", "12"),
            ("PAGE7", "7"),
            ("p 4", "4"),
            ("Notes", "1"),
            ("", "1"),
        ],
    )
    def test_extract(self, name, expected):
        assert extract_page_number(name) == expected


class TestParseUploadFilename:
    def test_document_and_page(self):
        name = parse_upload_filename("doc123/page1.rm")
        assert name.document_id == "doc123"
        assert name.page_id == "page1"
        assert name.extension == ".rm"

    def test_nested_directory_uses_last_component(self):
        name = parse_upload_filename("xochitl/doc123/page1.rm")
        assert name.document_id == "doc123"

    def test_missing_directory_is_unknown(self):
        name = parse_upload_filename("page1.rm")
        assert name.document_id == "unknown"
        assert name.page_id == "page1"

    def test_empty_page_gets_fresh_uuid(self):
        name = parse_upload_filename("doc123/.rm")
        assert name.document_id == "doc123"
        uuid.UUID(name.page_id)
        assert name.extension == ".rm"

    def test_parent_references_do_not_escape(self):
        name = parse_upload_filename("../page1.rm")
        assert name.document_id == "unknown"
