"""
Seed a tenant's lab test catalog.

Usage:
    python -m scripts.seed_lab_catalog --tenant t1
    python -m scripts.seed_lab_catalog --tenant t1 --catalog my_catalog.json

A catalog file is a JSON list of tests:
    [{"code": "K", "name": "Potassium", "department": "Chemistry",
      "parameters": [{"name": "Potassium", "unit": "mmol/L", "refLow": 3.5, "refHigh": 5.2}]}]

Tests are matched on (tenant, code); existing tests are left untouched.
"""
from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from sqlalchemy.orm import Session

from packages.db.database import get_session, init_db
from packages.db.models import LabTestDefinition, LabTestParameter

logger = logging.getLogger("clinflow.seed")

DEFAULT_CATALOG = [
    {
        "code": "K",
        "name": "Potassium",
        "department": "Chemistry",
        "parameters": [
            {"name": "Potassium", "unit": "mmol/L", "refLow": 3.5, "refHigh": 5.2},
        ],
    },
    {
        "code": "CBC",
        "name": "Complete Blood Count",
        "department": "Hematology",
        "parameters": [
            {"name": "Hemoglobin", "unit": "g/dL", "refLow": 12.0, "refHigh": 17.5},
            {"name": "WBC", "unit": "10^9/L", "refLow": 4.0, "refHigh": 11.0},
            {"name": "Platelets", "unit": "10^9/L", "refLow": 150, "refHigh": 450},
        ],
    },
    {
        "code": "UA",
        "name": "Urinalysis",
        "department": "Clinical Pathology",
        "parameters": [
            {"name": "Appearance", "refText": "Clear"},
            {"name": "pH", "refLow": 4.5, "refHigh": 8.0},
        ],
    },
]


def seed_catalog(session: Session, tenant_id: str, catalog: list[dict]) -> list[LabTestDefinition]:
    """Insert missing catalog tests for the tenant. Returns every test named in the catalog."""
    tests: list[LabTestDefinition] = []
    for entry in catalog:
        existing = (
            session.query(LabTestDefinition)
            .filter(LabTestDefinition.tenant_id == tenant_id, LabTestDefinition.code == entry["code"])
            .first()
        )
        if existing is not None:
            tests.append(existing)
            continue

        test = LabTestDefinition(
            tenant_id=tenant_id,
            code=entry["code"],
            name=entry["name"],
            department=entry.get("department", "General"),
        )
        session.add(test)
        session.flush()
        for order, param in enumerate(entry.get("parameters", [])):
            session.add(
                LabTestParameter(
                    tenant_id=tenant_id,
                    test_id=test.id,
                    name=param["name"],
                    unit=param.get("unit"),
                    ref_low=param.get("refLow"),
                    ref_high=param.get("refHigh"),
                    ref_text=param.get("refText"),
                    display_order=param.get("displayOrder", order),
                )
            )
        session.flush()
        logger.info("Seeded test %s (%s) for tenant %s", test.code, test.id, tenant_id)
        tests.append(test)
    return tests


def main() -> int:
    parser = argparse.ArgumentParser(description="Seed a tenant's lab test catalog")
    parser.add_argument("--tenant", required=True, help="Tenant id to seed")
    parser.add_argument("--catalog", type=Path, default=None, help="JSON catalog file (defaults to a built-in set)")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    catalog = DEFAULT_CATALOG
    if args.catalog is not None:
        if not args.catalog.exists():
            logger.error("Catalog file not found: %s", args.catalog)
            return 1
        catalog = json.loads(args.catalog.read_text(encoding="utf-8"))

    init_db()
    with get_session() as session:
        tests = seed_catalog(session, args.tenant, catalog)
        for test in tests:
            print(f"{test.code}\t{test.id}\t{test.name}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
