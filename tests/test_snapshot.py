from __future__ import annotations

import json
from datetime import date
from decimal import Decimal

import pytest
from pydantic import ValidationError
from sqlalchemy.orm import Session

from factories import make_allocation, make_material, make_project, make_user, make_workpackage
from rdplan.models.entities import MaterialCategory, ProjectState
from rdplan.repositories.planning_repository import PlanningRepository
from rdplan.services.snapshot import MalformedSnapshotError, capture_snapshot, parse_snapshot

LEGACY_SNAPSHOT = {
    "valor_eti": 4500,
    "workpackages": [
        {
            "id": "wp-1",
            "nome": "Research",
            "recursos": [
                {"userId": "u-1", "mes": 1, "ano": 2026, "ocupacao": "0.5", "user": {"salario": "2000"}},
                {"userId": "u-2", "mes": 2, "ano": 2025, "ocupacao": 0.25, "user": {"salario": None}},
            ],
            "materiais": [{"preco": "10.5", "quantidade": 2, "rubrica": "TRAVEL", "ano_utilizacao": 2025}],
        },
        {
            "id": "wp-2",
            "nome": "Dissemination",
            "recursos": [{"userId": "u-1", "mes": 3, "ano": 2025, "ocupacao": "0.25", "user": {}}],
            "materiais": [],
        },
    ],
}


def test_parses_legacy_snapshot_document() -> None:
    snapshot = parse_snapshot(LEGACY_SNAPSHOT)

    assert snapshot.version == 1
    assert snapshot.eti_rate == Decimal("4500")
    assert snapshot.occupancy_by_year() == {2025: Decimal("0.5"), 2026: Decimal("0.5")}
    assert list(snapshot.occupancy_by_year()) == [2025, 2026]
    assert snapshot.total_occupancy(year=2025) == Decimal("0.5")
    assert snapshot.total_occupancy(workpackage_id="wp-2") == Decimal("0.25")
    assert [resource.month for resource in snapshot.resources_for_user("u-1")] == [1, 3]
    assert snapshot.workpackages[0].materials[0].price == Decimal("10.5")


def test_parses_json_text() -> None:
    snapshot = parse_snapshot(json.dumps(LEGACY_SNAPSHOT))

    assert snapshot.total_occupancy() == Decimal("1.0")


def test_missing_rate_reads_as_zero() -> None:
    snapshot = parse_snapshot({"valor_eti": None, "workpackages": []})

    assert snapshot.eti_rate == Decimal("0")


def test_snapshot_is_immutable() -> None:
    snapshot = parse_snapshot(LEGACY_SNAPSHOT)

    with pytest.raises(ValidationError):
        snapshot.eti_rate = Decimal("1")


@pytest.mark.parametrize(
    "raw",
    [
        None,
        "",
        "[1, 2]",
        b"\xff",
        {"workpackages": [{"nome": "no id"}]},
        {"workpackages": [{"id": "x", "recursos": [{"userId": "u", "mes": 13, "ano": 2025, "ocupacao": 1}]}]},
        {"workpackages": [{"id": "x", "recursos": [{"userId": "u", "mes": 1, "ano": 2025, "ocupacao": 1.5}]}]},
        {"valor_eti": -1, "workpackages": []},
        {"versao": 2, "workpackages": []},
    ],
)
def test_rejects_malformed_snapshots(raw: object) -> None:
    with pytest.raises(MalformedSnapshotError):
        parse_snapshot(raw)


def test_capture_round_trips_through_parser(db_session: Session) -> None:
    user = make_user(db_session, salary="1800")
    project = make_project(
        db_session,
        eti_rate="3000",
        state=ProjectState.PENDING,
        start_date=date(2025, 1, 1),
    )
    workpackage = make_workpackage(db_session, project, name="Prototype")
    make_allocation(db_session, workpackage, user, month=4, year=2025, occupancy="0.4")
    make_material(
        db_session,
        workpackage,
        unit_price="99.90",
        quantity=4,
        year=2025,
        category=MaterialCategory.OTHER_SERVICES,
    )

    document = capture_snapshot(PlanningRepository(db_session), project)
    snapshot = parse_snapshot(json.loads(json.dumps(document)))

    assert document["versao"] == 1
    assert Decimal(document["valor_eti"]) == Decimal("3000")
    assert document["workpackages"][0]["nome"] == "Prototype"
    assert snapshot.eti_rate == Decimal("3000")
    assert snapshot.total_occupancy() == Decimal("0.4")
    resource = snapshot.workpackages[0].resources[0]
    assert resource.user_id == str(user.id)
    assert resource.user.salary == Decimal("1800")
    material = snapshot.workpackages[0].materials[0]
    assert (material.price, material.quantity, material.category) == (Decimal("99.90"), 4, "other_services")
