from __future__ import annotations

import asyncio
import os
from pathlib import Path
from typing import TYPE_CHECKING

import pytest
import yaml
from formdata import split, split_all

from bodyparser.bodyparser import Failure, File, Success, parse_body
from bodyparser.exceptions import MalformedBodyError

if TYPE_CHECKING:
    from typing import Any, TypedDict

    class HttpCase(TypedDict):
        name: str
        test: bytes
        result: Any


# Get the current directory for our later test cases.
curr_dir = os.path.abspath(os.path.dirname(__file__))

# Load our list of HTTP test cases: each .http body has a .yaml next to it with
# the boundary, an optional config and the expected outcome.
http_tests_dir = os.path.join(curr_dir, "test_data", "http")
http_tests: list[HttpCase] = []
for f in sorted(os.listdir(http_tests_dir)):
    fname, ext = os.path.splitext(f)
    if ext != ".http":
        continue

    with open(os.path.join(http_tests_dir, f), "rb") as fh:
        test_data = fh.read()

    with open(os.path.join(http_tests_dir, fname + ".yaml"), "rb") as fy:
        yaml_data = yaml.safe_load(fy)

    http_tests.append({"name": fname, "test": test_data, "result": yaml_data})


def plain(value: Any) -> Any:
    """Replaces the files in a decoded body by their name, type and contents."""
    if isinstance(value, dict):
        return {key: plain(child) for key, child in value.items()}
    if isinstance(value, list):
        return [plain(child) for child in value]
    if isinstance(value, File):
        assert value.path is not None
        return {"file_name": value.name, "type": value.content_type, "data": Path(value.path).read_text()}
    return value


def run_case(case: HttpCase, body: Any, upload_dir: Path) -> None:
    result = case["result"]
    headers = {"Content-Type": "multipart/form-data; boundary=%s" % result["boundary"]}
    config = dict(result.get("config") or {}, UPLOAD_DIR=str(upload_dir))
    expected = result["expected"]

    if "error" in expected:
        with pytest.raises(MalformedBodyError):
            asyncio.run(parse_body(headers, body, config=config))
        return

    outcome = asyncio.run(parse_body(headers, body, config=config))

    if "errors" in expected:
        assert isinstance(outcome, Failure), case["name"]
        assert [e.as_dict() for e in outcome.errors] == expected["errors"]
    else:
        assert isinstance(outcome, Success), case["name"]
        assert plain(outcome.body) == expected["body"]


@pytest.mark.parametrize("case", http_tests, ids=[t["name"] for t in http_tests])
def test_http(case: HttpCase, tmp_path: Path) -> None:
    run_case(case, case["test"], tmp_path)


@pytest.mark.parametrize("case", http_tests, ids=[t["name"] for t in http_tests])
def test_http_single_byte(case: HttpCase, tmp_path: Path) -> None:
    run_case(case, split(case["test"], 1), tmp_path)


def test_random_splitting(tmp_path: Path) -> None:
    """
    Runs a body with one field and one file through every possible split into
    two chunks.
    """
    (case,) = [t for t in http_tests if t["name"] == "single_field_single_file"]
    for i, chunks in enumerate(split_all(case["test"])):
        upload_dir = tmp_path / str(i)
        run_case(case, list(chunks), upload_dir)
