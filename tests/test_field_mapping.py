from __future__ import annotations

import json
from pathlib import Path

import pytest
from pydantic import ValidationError

from field_mapping import FieldMapping, load_csv_rows, load_fields, parse_color, parse_csv_rows, parse_fields


def test_field_mapping_accepts_camel_case_and_defaults() -> None:
    field = FieldMapping.model_validate({"id": "1", "column": "Name", "x": 10, "y": 5, "maxWidth": 300})

    assert field.font_family == "Arial"
    assert field.font_size == 28
    assert field.color == "#000000"
    assert field.align == "left"
    assert field.max_width == 300


@pytest.mark.parametrize(
    "overrides",
    [{"x": -1}, {"y": -0.5}, {"fontSize": 7}, {"maxWidth": -10}, {"align": "justify"}],
)
def test_field_mapping_rejects_invalid_values(overrides: dict) -> None:
    values = {"id": "1", "column": "Name", "x": 0, "y": 0}
    values.update(overrides)
    with pytest.raises(ValidationError):
        FieldMapping.model_validate(values)


def test_field_mapping_is_frozen() -> None:
    field = FieldMapping(id="1", column="Name", x=0, y=0)
    with pytest.raises(ValidationError):
        field.x = 50


@pytest.mark.parametrize(
    "value, expected",
    [
        ("#000", (0, 0, 0, 255)),
        ("#1e90ff", (30, 144, 255, 255)),
        ("#ff000080", (255, 0, 0, 128)),
        ("rgb(10, 20, 30)", (10, 20, 30, 255)),
        ("navy", (0, 0, 128, 255)),
        ("rgba(255, 0, 0, 0.5)", (255, 0, 0, 128)),
        ("rgba(0,0,255,50%)", (0, 0, 255, 128)),
        ("RGBA(10, 20, 30, .25)", (10, 20, 30, 64)),
        ("rgba(10, 20, 30, 1)", (10, 20, 30, 255)),
        ("rgba(10, 20, 30, 0)", (10, 20, 30, 0)),
        ("hsla(0, 100%, 50%, 0.5)", (255, 0, 0, 128)),
        ("rgba(10, 20, 0.5)", (0, 0, 0, 255)),
        ("not-a-color", (0, 0, 0, 255)),
        ("", (0, 0, 0, 255)),
    ],
)
def test_parse_color(value: str, expected: tuple) -> None:
    assert parse_color(value) == expected


def test_parse_fields_accepts_list_or_wrapper() -> None:
    items = [{"id": "1", "column": "Name", "x": 1, "y": 2}]

    assert parse_fields(items) == parse_fields({"fields": items})
    with pytest.raises(ValueError):
        parse_fields("Name")


def test_load_fields(tmp_path: Path) -> None:
    path = tmp_path / "fields.json"
    path.write_text(json.dumps({"fields": [{"id": "a", "column": "Course", "x": 0, "y": 0, "fontSize": 40}]}))

    fields = load_fields(path)

    assert [f.column for f in fields] == ["Course"]
    assert fields[0].font_size == 40


def test_parse_csv_rows_trims_and_pads() -> None:
    text = "Name , Course,Date\n  Alice ,Python\n\nBob,Go,2024-01-01\n"

    headers, rows = parse_csv_rows(text)

    assert headers == ["Name", "Course", "Date"]
    assert rows == [
        {"Name": "Alice", "Course": "Python", "Date": ""},
        {"Name": "Bob", "Course": "Go", "Date": "2024-01-01"},
    ]


def test_parse_csv_rows_requires_a_data_row() -> None:
    with pytest.raises(ValueError):
        parse_csv_rows("Name,Course\n")


def test_load_csv_rows_strips_bom(tmp_path: Path) -> None:
    path = tmp_path / "data.csv"
    path.write_bytes("\ufeffName\nZo\u00eb\n".encode("utf-8"))

    headers, rows = load_csv_rows(path)

    assert headers == ["Name"]
    assert rows == [{"Name": "Zo\u00eb"}]
