import json

import pytest

from json_repair import (
    JsonRepairError,
    extract_array_text,
    normalize_page_key,
    reconcile_pages,
    repair_batch_json,
    strip_code_fences,
)


def _item(label, prompt="p"):
    return {"pageNumber": label, "template": "T1", "prompt": prompt}


def test_repair_parses_valid_array():
    raw = json.dumps([_item("Page 1"), _item("Page 2")])
    assert repair_batch_json(raw) == [_item("Page 1"), _item("Page 2")]


def test_repair_strips_fences_and_prose():
    raw = "Here you go:\n```json\n" + json.dumps([_item("Page 1")]) + "\n```"
    assert repair_batch_json(raw) == [_item("Page 1")]


def test_repair_missing_final_bracket():
    raw = json.dumps([_item("Page 1"), _item("Page 2")])[:-1]
    assert [i["pageNumber"] for i in repair_batch_json(raw)] == ["Page 1", "Page 2"]


def test_repair_drops_truncated_tail_object():
    complete = json.dumps([_item("Page 1"), _item("Page 2")])[:-1]
    raw = complete + ', {"pageNumber": "Page 3", "templ'
    assert [i["pageNumber"] for i in repair_batch_json(raw)] == ["Page 1", "Page 2"]


def test_repair_truncated_inside_string_with_brace():
    complete = json.dumps([_item("Page 1")])[:-1]
    raw = complete + ', {"pageNumber": "Page 2", "prompt": "a {brace} insi'
    assert [i["pageNumber"] for i in repair_batch_json(raw)] == ["Page 1"]


def test_repair_trailing_comma():
    raw = json.dumps([_item("Page 1")])[:-1] + ","
    assert repair_batch_json(raw) == [_item("Page 1")]


def test_repair_failures():
    with pytest.raises(JsonRepairError):
        repair_batch_json("")
    with pytest.raises(JsonRepairError):
        repair_batch_json("no json at all")
    with pytest.raises(JsonRepairError):
        repair_batch_json('{"pageNumber": "Page 1"}')


def test_strip_code_fences_and_extract_array():
    assert strip_code_fences("```json\n[1]\n```") == "[1]"
    assert extract_array_text("prefix [1, 2] suffix") == "[1, 2]"
    assert extract_array_text("prefix [1, 2") == "[1, 2"


@pytest.mark.parametrize("token,expected", [
    ("Page 1", "page1"),
    (" PAGE  12 ", "page12"),
    ("Cover", "cover"),
    ("表紙", "cover"),
    ("Title Page", "cover"),
])
def test_normalize_page_key(token, expected):
    assert normalize_page_key(token) == expected


def test_reconcile_fills_missing_pages_with_placeholders():
    raw = json.dumps([_item("Page 1", "a"), _item("Page 2", "b")])[:-1] + ', {"pageNumber": "Page 3", "te'
    rows = reconcile_pages(repair_batch_json(raw), ["Page 1", "Page 2", "Page 3"])

    assert [r["pageNumber"] for r in rows] == ["Page 1", "Page 2", "Page 3"]
    assert [r["skipped"] for r in rows] == [False, False, True]
    assert rows[2]["template"] == "T01_FULL"
    assert "skipped" in rows[2]["prompt"]


def test_reconcile_matches_by_number_and_cover():
    items = [
        {"pageNumber": "COVER", "template": "TC", "prompt": "cover"},
        {"pageNumber": "Page02", "template": "T2", "prompt": "two"},
        {"pageNumber": "p.1", "template": "T1", "prompt": "one"},
    ]
    rows = reconcile_pages(items, ["Cover", "Page 1", "Page 2"])

    assert [(r["pageNumber"], r["prompt"]) for r in rows] == [
        ("Cover", "cover"), ("Page 1", "one"), ("Page 2", "two"),
    ]


def test_reconcile_first_duplicate_wins_and_extras_dropped():
    items = [_item("Page 1", "first"), _item("Page 1", "second"), _item("Page 9", "extra"), "junk"]
    rows = reconcile_pages(items, ["Page 1"])

    assert rows == [{"pageNumber": "Page 1", "template": "T1", "prompt": "first", "skipped": False}]


def test_reconcile_always_one_row_per_label():
    labels = ["Cover"] + [f"Page {i}" for i in range(1, 6)]
    for kept in range(len(labels) + 1):
        rows = reconcile_pages([_item(l) for l in labels[:kept]], labels)
        assert [r["pageNumber"] for r in rows] == labels
