"""Tests for reading model output into default shapes."""

import json

import pytest

from trustflow.core.exceptions import SchemaViolation
from trustflow.utils.json_parser import enforce, merge_with_defaults, parse_json_object

DEFAULT_SHAPE = {
    "verified": False,
    "confidence": 0.5,
    "extracted_info": {},
    "issues": [],
    "summary": "Document verification completed",
}


@pytest.mark.parametrize(
    "raw_text",
    [
        "",
        "   ",
        None,
        42,
        "not json at all",
        "[1, 2, 3]",
        '"just a string"',
        "null",
        '{"verified": true',
        json.dumps({"verified": True}),
        json.dumps({"unexpected": 1, "other": [1]}),
        json.dumps({**DEFAULT_SHAPE, "extra": "dropped"}),
        "```json\n" + json.dumps({"confidence": 0.8}) + "\n```",
    ],
)
def test_enforce_keyset_always_matches_default(raw_text):
    result = enforce(raw_text, DEFAULT_SHAPE)

    assert set(result) == set(DEFAULT_SHAPE)


def test_enforce_returns_default_on_array():
    assert enforce('[{"verified": true}]', DEFAULT_SHAPE) == DEFAULT_SHAPE


def test_enforce_merges_parsed_fields_over_defaults():
    raw = json.dumps({"verified": True, "issues": ["blurry"], "extra": 1})

    result = enforce(raw, DEFAULT_SHAPE)

    assert result["verified"] is True
    assert result["issues"] == ["blurry"]
    assert result["confidence"] == 0.5
    assert "extra" not in result


def test_enforce_strips_markdown_fences():
    raw = "```json\n{\"summary\": \"Looks valid\"}\n```"

    assert enforce(raw, DEFAULT_SHAPE)["summary"] == "Looks valid"


def test_enforce_ignores_values_of_the_wrong_type():
    raw = json.dumps({"verified": "yes", "confidence": True, "issues": "one issue"})

    result = enforce(raw, DEFAULT_SHAPE)

    assert result["verified"] is False
    assert result["confidence"] == 0.5
    assert result["issues"] == []


def test_enforce_does_not_share_mutable_defaults():
    first = enforce("garbage", DEFAULT_SHAPE)
    first["issues"].append("mutated")

    assert DEFAULT_SHAPE["issues"] == []
    assert enforce("garbage", DEFAULT_SHAPE)["issues"] == []


def test_parse_json_object_reports_violation_instead_of_raising():
    result = parse_json_object("{broken")

    assert not result.ok
    assert isinstance(result.error, SchemaViolation)
    assert result.value is None


def test_merge_with_defaults_accepts_ints_for_float_defaults():
    merged = merge_with_defaults({"confidence": 1}, DEFAULT_SHAPE)

    assert merged["confidence"] == 1
