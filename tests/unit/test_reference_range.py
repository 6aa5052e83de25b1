from __future__ import annotations

import pytest

from packages.shared.errors import AMBIGUOUS_REFERENCE_RANGE_MATCH, DomainError
from packages.shared.models import LabResultFlag
from packages.shared.utils.reference_range import (
    ReferenceRange,
    build_reference_text,
    compute_flag,
    ensure_single_reference_range_match,
    parse_numeric_value,
)

POTASSIUM = ReferenceRange(id="k", ref_low=3.5, ref_high=5.2)


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("4.5", 4.5),
        (" 4.5 ", 4.5),
        ("-2", -2.0),
        ("+.5", 0.5),
        ("1e3", 1000.0),
        ("7.", 7.0),
    ],
)
def test_parse_numeric_value_accepts_decimals(raw, expected):
    assert parse_numeric_value(raw) == expected


@pytest.mark.parametrize("raw", [None, "", "   ", "positive", "4,5", "nan", "inf", "1e999", "4.5 mmol"])
def test_parse_numeric_value_rejects_non_numbers(raw):
    assert parse_numeric_value(raw) is None


def test_bounds_are_inclusive():
    assert compute_flag(POTASSIUM, 3.5) == LabResultFlag.NORMAL
    assert compute_flag(POTASSIUM, 5.2) == LabResultFlag.NORMAL
    assert compute_flag(POTASSIUM, 4.5) == LabResultFlag.NORMAL


def test_values_outside_the_range_are_flagged():
    assert compute_flag(POTASSIUM, 2.5) == LabResultFlag.LOW
    assert compute_flag(POTASSIUM, 6.2) == LabResultFlag.HIGH


def test_one_sided_ranges():
    lower_only = ReferenceRange(id="p", ref_low=150)
    upper_only = ReferenceRange(id="c", ref_high=200)
    assert compute_flag(lower_only, 149) == LabResultFlag.LOW
    assert compute_flag(lower_only, 10_000) == LabResultFlag.NORMAL
    assert compute_flag(upper_only, 201) == LabResultFlag.HIGH
    assert compute_flag(upper_only, -5) == LabResultFlag.NORMAL


def test_missing_value_or_bounds_is_unknown():
    assert compute_flag(POTASSIUM, None) == LabResultFlag.UNKNOWN
    assert compute_flag(None, 4.5) == LabResultFlag.UNKNOWN
    assert compute_flag(ReferenceRange(id="t", ref_text="Clear"), 4.5) == LabResultFlag.UNKNOWN


def test_single_candidate_wins():
    assert ensure_single_reference_range_match([POTASSIUM]) is POTASSIUM
    assert ensure_single_reference_range_match([]) is None


def test_multiple_candidates_are_ambiguous():
    other = ReferenceRange(id="a-range", ref_low=3.0, ref_high=5.0)
    with pytest.raises(DomainError) as exc:
        ensure_single_reference_range_match([POTASSIUM, other])
    assert exc.value.code == AMBIGUOUS_REFERENCE_RANGE_MATCH
    assert exc.value.details == {"candidate_ids": ["a-range", "k"]}


def test_reference_text():
    assert build_reference_text(POTASSIUM) == "3.5-5.2"
    assert build_reference_text(ReferenceRange(id="p", ref_low=150.0)) == ">= 150"
    assert build_reference_text(ReferenceRange(id="c", ref_high=200.0)) == "<= 200"
    assert build_reference_text(ReferenceRange(id="t", ref_low=1, ref_high=2, ref_text=" Clear ")) == "Clear"
    assert build_reference_text(None) == "-"
