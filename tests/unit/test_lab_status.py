from packages.shared.models import LabEncounterStatus, LabOrderItemStatus
from packages.shared.utils.lab_status import derive_lab_encounter_status


def test_no_items_is_draft():
    assert derive_lab_encounter_status([]) == LabEncounterStatus.DRAFT


def test_only_ordered_items():
    assert derive_lab_encounter_status(["ORDERED", "ORDERED"]) == LabEncounterStatus.ORDERED


def test_any_entered_or_verified_item_means_results_entered():
    assert derive_lab_encounter_status(["ORDERED", "RESULTS_ENTERED"]) == LabEncounterStatus.RESULTS_ENTERED
    assert derive_lab_encounter_status(["ORDERED", "VERIFIED"]) == LabEncounterStatus.RESULTS_ENTERED


def test_all_verified():
    statuses = [LabOrderItemStatus.VERIFIED, LabOrderItemStatus.VERIFIED]
    assert derive_lab_encounter_status(statuses) == LabEncounterStatus.VERIFIED


def test_all_verified_with_rendered_document_is_published():
    assert derive_lab_encounter_status(["VERIFIED"], has_rendered_document=True) == LabEncounterStatus.PUBLISHED


def test_rendered_document_alone_does_not_publish():
    assert derive_lab_encounter_status(["RESULTS_ENTERED"], has_rendered_document=True) == (
        LabEncounterStatus.RESULTS_ENTERED
    )
