from __future__ import annotations

from pathlib import Path

import allure
import pytest

from pr_batch.batch.endpoints import (
    UnitParseError,
    load_batch_file,
    parse_batch_text,
    parse_unit_line,
)
from pr_batch.batch.models import MalformedUnit, UnitDescriptor

pytestmark = [
    allure.epic("Batch Orchestration"),
    allure.feature("Batch Input"),
]

SAMPLE = """\
# Cards backlog
CONFIG:SPREADSHEET_NAME=Backend endpoints
CONFIG:WORKSHEET_NAME = Cards
CONFIG:BASE_BRANCH=develop
CONFIG:UNKNOWN=ignored

BE07-0201-12 | vault/cards/replacement
BE07-0201-13|vault/cards/limits
no separator here
|vault/empty-id
"""


def test_parse_batch_text_collects_config_and_ordered_entries() -> None:
    batch = parse_batch_text(SAMPLE)

    assert batch.spreadsheet_name == "Backend endpoints"
    assert batch.worksheet_name == "Cards"
    assert batch.base_branch == "develop"
    assert "UNKNOWN" not in batch.config
    assert batch.source_id == "Backend endpoints/Cards"
    assert [type(entry) for entry in batch.entries] == [
        UnitDescriptor,
        UnitDescriptor,
        MalformedUnit,
        MalformedUnit,
    ]
    assert batch.units[0] == UnitDescriptor(
        unit_id="BE07-0201-12",
        destination_path="vault/cards/replacement",
        line_no=7,
    )
    assert batch.malformed[0].line_no == 9


def test_parse_unit_line_splits_on_first_separator() -> None:
    descriptor = parse_unit_line("U1|docs/a|b")

    assert descriptor.unit_id == "U1"
    assert descriptor.destination_path == "docs/a|b"


@pytest.mark.parametrize("line", ["missing separator", "U1|", "|docs/a", "  |  "])
def test_parse_unit_line_rejects_malformed_lines(line: str) -> None:
    with pytest.raises(UnitParseError):
        parse_unit_line(line)


def test_repo_path_is_expanded(tmp_path: Path) -> None:
    path = tmp_path / "endpoints.txt"
    path.write_text(f"CONFIG:REPO_PATH={tmp_path}\n", "utf-8")

    assert load_batch_file(path).repo_path == tmp_path


def test_missing_config_values_are_none() -> None:
    batch = parse_batch_text("A|x/y\n")

    assert batch.spreadsheet_name is None
    assert batch.worksheet_name is None
    assert batch.repo_path is None
