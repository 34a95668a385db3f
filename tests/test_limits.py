from __future__ import annotations

import unittest

import pytest

from bodyparser.bodyparser import File
from bodyparser.limits import (
    DEFAULT_MAX_FIELD_NAME_SIZE,
    Limits,
    Violation,
    ViolationKind,
    accepts,
    check_field_size,
    check_file_count,
    check_file_size,
    check_json_size,
    check_mime_type,
    format_size,
    parse_size,
)


@pytest.mark.parametrize(
    "value, expected",
    [
        (1024, 1024),
        ("10mb", 10485760),
        ("10MB", 10485760),
        ("1kb", 1024),
        ("1.5kb", 1536),
        ("512", 512),
        ("512b", 512),
        (" 2 gb ", 2 * 1024 ** 3),
        ("", None),
        (None, None),
        (0, None),
        ("0", None),
        (-5, None),
        ("ten megs", None),
        ("10xb", None),
    ],
)
def test_parse_size(value: int | str | None, expected: int | None) -> None:
    assert parse_size(value) == expected


@pytest.mark.parametrize(
    "size, expected",
    [
        (0, "0B"),
        (None, "0B"),
        (10, "10B"),
        (1023, "1023B"),
        (1024, "1KB"),
        (1536, "1.5KB"),
        (10485760, "10MB"),
        (1024 ** 3, "1GB"),
    ],
)
def test_format_size(size: int | None, expected: str) -> None:
    assert format_size(size) == expected


class TestAccepts(unittest.TestCase):
    def test_empty_pattern_accepts_everything(self) -> None:
        self.assertTrue(accepts("a.exe", "application/x-msdownload", None))
        self.assertTrue(accepts("a.exe", "application/x-msdownload", ""))

    def test_wildcard(self) -> None:
        self.assertTrue(accepts("a.png", "image/png", "image/*"))
        self.assertFalse(accepts("a.txt", "text/plain", "image/*"))

    def test_exact_type(self) -> None:
        self.assertTrue(accepts("a.pdf", "application/pdf", "application/pdf"))
        self.assertFalse(accepts("a.pdf", "application/x-pdf", "application/pdf"))

    def test_extension(self) -> None:
        self.assertTrue(accepts("Report.PDF", "application/octet-stream", ".pdf"))
        self.assertFalse(accepts("report.pdf.exe", "application/octet-stream", ".pdf"))

    def test_list(self) -> None:
        pattern = "image/*, .pdf ,text/csv"
        self.assertTrue(accepts("a.jpg", "image/jpeg", pattern))
        self.assertTrue(accepts("a.pdf", "application/octet-stream", pattern))
        self.assertTrue(accepts("a.csv", "TEXT/CSV", pattern))
        self.assertFalse(accepts("a.txt", "text/plain", pattern))


class TestLimits(unittest.TestCase):
    def test_defaults_are_unbounded(self) -> None:
        limits = Limits()
        self.assertIsNone(limits.max_file_count)
        self.assertIsNone(limits.max_file_size)
        self.assertIsNone(limits.max_field_size)
        self.assertIsNone(limits.max_json_size)
        self.assertIsNone(limits.accept)
        self.assertEqual(limits.max_field_name_size, DEFAULT_MAX_FIELD_NAME_SIZE)

    def test_from_config(self) -> None:
        limits = Limits.from_config(
            {
                "MAX_FILE_COUNT": 3,
                "MAX_FILE_SIZE": "1mb",
                "MAX_FIELD_SIZE": 100,
                "MAX_JSON_SIZE": "2kb",
                "ACCEPT": "image/*",
            }
        )
        self.assertEqual(limits, Limits(3, 1048576, 100, DEFAULT_MAX_FIELD_NAME_SIZE, 2048, "image/*"))

    def test_from_config_empty_values(self) -> None:
        limits = Limits.from_config({"MAX_FILE_COUNT": 0, "MAX_FILE_SIZE": "", "ACCEPT": "", "MAX_FIELD_NAME_SIZE": None})
        self.assertEqual(limits, Limits())

    def test_immutable(self) -> None:
        limits = Limits()
        with self.assertRaises(AttributeError):
            limits.max_file_size = 10  # type: ignore[misc]


class TestChecks(unittest.TestCase):
    def test_field_size(self) -> None:
        self.assertIsNone(check_field_size("a", 10, 10))
        self.assertIsNone(check_field_size("a", 10, None))
        self.assertEqual(
            check_field_size("a", 11, 10),
            Violation(ViolationKind.FIELD_SIZE_EXCEEDED, 'field "a" exceeds 10B'),
        )

    def test_field_size_truncated(self) -> None:
        violation = check_field_size("a.b", 0, 1024, truncated=True)
        assert violation is not None
        self.assertEqual(violation.kind, ViolationKind.FIELD_SIZE_EXCEEDED)
        self.assertEqual(violation.message, 'field "a.b" exceeds 1KB')

    def test_file_size(self) -> None:
        self.assertIsNone(check_file_size("a.txt", False, 10))
        self.assertEqual(
            check_file_size("a.txt", True, 2048),
            Violation(ViolationKind.FILE_SIZE_EXCEEDED, 'file "a.txt" exceeds 2KB'),
        )

    def test_file_count(self) -> None:
        self.assertIsNone(check_file_count(False, 2))
        self.assertEqual(
            check_file_count(True, 2),
            Violation(ViolationKind.FILE_COUNT_EXCEEDED, "file count exceeds 2"),
        )

    def test_mime_type(self) -> None:
        self.assertIsNone(check_mime_type(File("a.png", "image/png"), "image/*"))
        self.assertIsNone(check_mime_type(File("a.txt", "text/plain"), None))
        self.assertEqual(
            check_mime_type(File("a.txt", "text/plain"), "image/*"),
            Violation(ViolationKind.FILE_TYPE_REJECTED, 'file "a.txt" is not of type "image/*"'),
        )

    def test_json_size(self) -> None:
        self.assertIsNone(check_json_size(False, 10))
        self.assertEqual(
            check_json_size(True, 1024),
            Violation(ViolationKind.JSON_SIZE_EXCEEDED, "json object exceeds 1KB"),
        )

    def test_violation_as_dict(self) -> None:
        violation = Violation(ViolationKind.FILE_COUNT_EXCEEDED, "file count exceeds 1")
        self.assertEqual(violation.as_dict(), {"name": "FILE_COUNT_EXCEEDED", "message": "file count exceeds 1"})
