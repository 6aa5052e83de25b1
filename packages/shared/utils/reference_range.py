"""
Reference-range evaluation for numeric lab results.
"""
from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Iterable

from packages.shared.errors import AMBIGUOUS_REFERENCE_RANGE_MATCH, DomainError
from packages.shared.models.enums import LabResultFlag

_NUMERIC_RE = re.compile(r"^[+-]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?$")


@dataclass(frozen=True)
class ReferenceRange:
    id: str
    ref_low: float | None = None
    ref_high: float | None = None
    ref_text: str | None = None


def parse_numeric_value(raw: str | None) -> float | None:
    """Parse a result value as a finite number; None for anything else."""
    if raw is None:
        return None
    text = raw.strip()
    if not text or not _NUMERIC_RE.match(text):
        return None
    value = float(text)
    if not math.isfinite(value):
        return None
    return value


def compute_flag(reference: ReferenceRange | None, value: float | None) -> LabResultFlag:
    """
    Classify *value* against *reference*. Both bounds are inclusive, so a value
    equal to a bound is NORMAL.
    """
    if value is None or reference is None:
        return LabResultFlag.UNKNOWN
    low, high = reference.ref_low, reference.ref_high
    if low is not None and value < low:
        return LabResultFlag.LOW
    if high is not None and value > high:
        return LabResultFlag.HIGH
    if low is not None or high is not None:
        return LabResultFlag.NORMAL
    return LabResultFlag.UNKNOWN


def ensure_single_reference_range_match(
    candidates: Iterable[ReferenceRange],
) -> ReferenceRange | None:
    """Collapse matching ranges to one; more than one is a catalog defect."""
    matches = list(candidates)
    if len(matches) > 1:
        raise DomainError(
            AMBIGUOUS_REFERENCE_RANGE_MATCH,
            "Multiple reference ranges match this result",
            {"candidate_ids": sorted(candidate.id for candidate in matches)},
        )
    return matches[0] if matches else None


def _fmt(bound: float) -> str:
    return f"{bound:g}"


def build_reference_text(reference: ReferenceRange | None) -> str:
    if reference is None:
        return "-"
    if reference.ref_text and reference.ref_text.strip():
        return reference.ref_text.strip()
    low, high = reference.ref_low, reference.ref_high
    if low is not None and high is not None:
        return f"{_fmt(low)}-{_fmt(high)}"
    if low is not None:
        return f">= {_fmt(low)}"
    if high is not None:
        return f"<= {_fmt(high)}"
    return "-"
