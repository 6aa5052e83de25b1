"""
Derived, read-only lab status of a LAB encounter.
"""
from __future__ import annotations

from typing import Iterable

from packages.shared.models.enums import LabEncounterStatus, LabOrderItemStatus


def derive_lab_encounter_status(
    item_statuses: Iterable[str],
    has_rendered_document: bool = False,
) -> LabEncounterStatus:
    statuses = [str(getattr(s, "value", s)) for s in item_statuses]
    if not statuses:
        return LabEncounterStatus.DRAFT

    all_verified = all(s == LabOrderItemStatus.VERIFIED.value for s in statuses)
    if all_verified and has_rendered_document:
        return LabEncounterStatus.PUBLISHED
    if all_verified:
        return LabEncounterStatus.VERIFIED
    if any(
        s in (LabOrderItemStatus.RESULTS_ENTERED.value, LabOrderItemStatus.VERIFIED.value)
        for s in statuses
    ):
        return LabEncounterStatus.RESULTS_ENTERED
    return LabEncounterStatus.ORDERED
