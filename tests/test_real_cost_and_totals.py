from __future__ import annotations

import uuid
from datetime import date
from decimal import Decimal, InvalidOperation

import pytest
from fastapi import HTTPException
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from factories import make_allocation, make_material, make_project, make_user, make_workpackage
from rdplan.core.money import ZERO, adjusted_salary, q2
from rdplan.models.entities import MaterialCategory, ProjectState, Task
from rdplan.services.financial_totals import FinancialTotalsService, financial_indicators, physical_progress
from rdplan.services.real_cost import CompletedCost, RealCost, RealCostCalculator, is_month_elapsed


def _july_2025() -> date:
    return date(2025, 7, 15)


def test_month_is_realized_only_strictly_before_current_month() -> None:
    today = date(2025, 7, 15)

    assert is_month_elapsed(2024, 12, today) is True
    assert is_month_elapsed(2025, 6, today) is True
    assert is_month_elapsed(2025, 7, today) is False
    assert is_month_elapsed(2025, 8, today) is False
    assert is_month_elapsed(2026, 1, today) is False


def test_real_cost_breakdowns(db_session: Session) -> None:
    alice = make_user(db_session, name="Alice", salary="3000")
    bob = make_user(db_session, name="Bob", salary="2000")
    volunteer = make_user(db_session, name="Volunteer", salary=None)
    project = make_project(db_session)
    workpackage = make_workpackage(db_session, project)
    make_allocation(db_session, workpackage, alice, month=1, year=2025, occupancy="0.5")
    make_allocation(db_session, workpackage, alice, month=2, year=2025, occupancy="0.25")
    make_allocation(db_session, workpackage, bob, month=1, year=2026, occupancy="1")
    make_allocation(db_session, workpackage, volunteer, month=1, year=2025, occupancy="1")
    make_material(db_session, workpackage, name="Laptop", unit_price="1000", quantity=3, year=2025)
    make_material(
        db_session,
        workpackage,
        name="Flight",
        unit_price="250.50",
        quantity=2,
        year=2026,
        category=MaterialCategory.TRAVEL,
    )

    real = RealCostCalculator(db_session).get_real_cost(project.id)

    expected_resources = Decimal("0.75") * adjusted_salary(Decimal("3000")) + adjusted_salary(Decimal("2000"))
    assert q2(real.resource_cost) == q2(expected_resources)
    assert real.material_cost == Decimal("3501")
    assert real.total == real.resource_cost + real.material_cost

    assert [row.user_name for row in real.per_user] == ["Alice", "Bob"]
    assert real.per_user[0].occupancy == Decimal("0.75")
    assert [(row.category, row.total) for row in real.per_category] == [
        (MaterialCategory.MATERIALS, Decimal("3000")),
        (MaterialCategory.TRAVEL, Decimal("501")),
    ]
    assert [row.year for row in real.by_year] == [2025, 2026]
    assert real.by_year[0].occupancy == Decimal("1.75")
    assert real.by_year[1].material_cost == Decimal("501")


def test_real_cost_year_and_workpackage_filters(db_session: Session) -> None:
    user = make_user(db_session, salary="1000")
    project = make_project(db_session)
    wp_a = make_workpackage(db_session, project, name="A")
    wp_b = make_workpackage(db_session, project, name="B")
    make_material(db_session, wp_a, unit_price="10", year=2025)
    make_material(db_session, wp_b, unit_price="20", year=2025)
    make_material(db_session, wp_b, unit_price="40", year=2026)
    make_allocation(db_session, wp_b, user, month=3, year=2026, occupancy="0.5")

    calculator = RealCostCalculator(db_session)

    assert calculator.get_real_cost(project.id, year=2025).total == Decimal("30")
    assert calculator.get_real_cost(project.id, workpackage_id=wp_a.id).total == Decimal("10")
    only_b_2026 = calculator.get_real_cost(project.id, year=2026, workpackage_id=wp_b.id)
    assert only_b_2026.material_cost == Decimal("40")
    assert only_b_2026.resource_cost > ZERO


def test_workpackage_of_another_project_is_not_found(db_session: Session) -> None:
    project = make_project(db_session, name="Mine")
    other = make_workpackage(db_session, make_project(db_session, name="Theirs"))

    with pytest.raises(HTTPException) as missing:
        RealCostCalculator(db_session).get_real_cost(project.id, workpackage_id=other.id)

    assert missing.value.status_code == 404


def test_completed_costs_use_date_cutoff_for_staff_and_flag_for_materials(db_session: Session) -> None:
    user = make_user(db_session, salary="2200")
    project = make_project(db_session)
    workpackage = make_workpackage(db_session, project)
    make_allocation(db_session, workpackage, user, month=6, year=2025, occupancy="0.5")
    make_allocation(db_session, workpackage, user, month=7, year=2025, occupancy="1")
    make_allocation(db_session, workpackage, user, month=1, year=2030, occupancy="1")
    make_material(db_session, workpackage, unit_price="100", year=2030, acquired=True)
    make_material(db_session, workpackage, unit_price="999", year=2020, acquired=False)

    completed = RealCostCalculator(db_session, today=_july_2025).get_completed_cost(project.id)

    assert completed.resources == Decimal("0.5") * adjusted_salary(Decimal("2200"))
    assert completed.materials == Decimal("100")
    assert completed.total == completed.resources + completed.materials


def test_monthly_spend_separates_estimated_and_realized(db_session: Session) -> None:
    user = make_user(db_session, salary="1100")
    project = make_project(db_session)
    workpackage = make_workpackage(db_session, project)
    make_allocation(db_session, workpackage, user, month=6, year=2025, occupancy="1")
    make_allocation(db_session, workpackage, user, month=8, year=2025, occupancy="1")
    make_material(db_session, workpackage, unit_price="50", year=2025, month=8, acquired=True)
    make_material(db_session, workpackage, unit_price="70", year=2025, month=8, acquired=False)

    rows = RealCostCalculator(db_session, today=_july_2025).monthly_spend(project.id, year=2025)
    staff = adjusted_salary(Decimal("1100"))

    assert [row.month for row in rows] == list(range(1, 13))
    june, august = rows[5], rows[7]
    assert june.estimated == june.realized == staff
    assert august.estimated == staff + Decimal("120")
    assert august.realized == Decimal("50")
    assert rows[0].estimated == rows[0].realized == ZERO


def _real_cost(resource: str, material: str) -> RealCost:
    return RealCost(
        resource_cost=Decimal(resource),
        material_cost=Decimal(material),
        per_user=[],
        per_category=[],
        by_year=[],
    )


def test_financial_indicator_formulas() -> None:
    indicators = financial_indicators(
        submitted_budget=Decimal("10000"),
        financing_rate=Decimal("0.75"),
        real_cost=_real_cost("4000", "1000"),
        completed_costs=CompletedCost(resources=ZERO, materials=ZERO),
    )

    assert indicators.financed_value == Decimal("7500")
    assert indicators.overhead == Decimal("-600")
    assert indicators.result == Decimal("1900")
    assert indicators.vab == Decimal("6500")
    assert indicators.margin == Decimal("19")
    assert indicators.vab_over_staff_cost == Decimal("1.625")
    assert indicators.slack == Decimal("4400")


def test_zero_denominators_yield_zero() -> None:
    indicators = financial_indicators(
        submitted_budget=ZERO,
        financing_rate=Decimal("0.5"),
        real_cost=_real_cost("0", "300"),
        completed_costs=CompletedCost(resources=ZERO, materials=ZERO),
    )

    assert indicators.margin == ZERO
    assert indicators.vab_over_staff_cost == ZERO
    assert indicators.result == Decimal("-300")


def test_totals_for_empty_project_are_zero(db_session: Session) -> None:
    project = make_project(db_session, financing_rate="0.8")

    totals = FinancialTotalsService(db_session).get_totals(project.id)

    assert totals.indicators.submitted_budget == ZERO
    assert totals.indicators.margin == ZERO
    assert totals.indicators.vab_over_staff_cost == ZERO
    assert totals.years == []


def test_totals_with_yearly_rows_over_project_span(db_session: Session) -> None:
    user = make_user(db_session, salary="1000")
    project = make_project(
        db_session,
        eti_rate="2000",
        financing_rate="0.8",
        start_date=date(2024, 10, 1),
        end_date=date(2026, 3, 31),
    )
    workpackage = make_workpackage(db_session, project)
    make_allocation(db_session, workpackage, user, month=11, year=2024, occupancy="0.5")
    make_allocation(db_session, workpackage, user, month=2, year=2026, occupancy="0.25")
    make_material(db_session, workpackage, unit_price="300", year=2025)

    service = FinancialTotalsService(db_session, today=_july_2025)
    totals = service.get_totals(project.id)

    assert totals.budget_mode.value == "ETI_DB"
    assert totals.indicators.submitted_budget == Decimal("1500")
    assert totals.indicators.financed_value == Decimal("1200")
    assert totals.years == [2024, 2025, 2026]
    by_year = {row.year: row for row in totals.yearly}
    assert by_year[2024].indicators.submitted_budget == Decimal("1000")
    assert by_year[2024].occupancy == Decimal("0.5")
    assert by_year[2025].indicators.submitted_budget == ZERO
    assert by_year[2025].indicators.real_cost.material_cost == Decimal("300")
    assert by_year[2025].indicators.margin == ZERO
    assert by_year[2026].indicators.submitted_budget == Decimal("500")
    assert by_year[2024].indicators.completed_costs.resources == Decimal("0.5") * adjusted_salary(Decimal("1000"))

    yearly_sum = sum((row.indicators.real_cost.total for row in totals.yearly), ZERO)
    assert q2(yearly_sum) == q2(totals.indicators.real_cost.total)

    filtered = service.get_totals(project.id, year=2024)
    assert filtered.year == 2024
    assert filtered.yearly == []
    assert filtered.indicators.submitted_budget == Decimal("1000")


def test_totals_years_fall_back_to_recorded_data(db_session: Session) -> None:
    user = make_user(db_session, salary="1000")
    project = make_project(db_session, eti_rate="100")
    workpackage = make_workpackage(db_session, project)
    make_allocation(db_session, workpackage, user, month=1, year=2023, occupancy="0.5")
    make_material(db_session, workpackage, unit_price="10", year=2027)

    totals = FinancialTotalsService(db_session).get_totals(project.id)

    assert totals.years == [2023, 2027]


def test_workpackage_breakdown(db_session: Session) -> None:
    user = make_user(db_session, salary="1000")
    project = make_project(db_session, eti_rate="1000")
    wp_a = make_workpackage(db_session, project, name="A")
    wp_b = make_workpackage(db_session, project, name="B")
    make_allocation(db_session, wp_a, user, month=1, year=2025, occupancy="0.5")
    make_material(db_session, wp_b, unit_price="40", year=2025)

    rows = FinancialTotalsService(db_session).get_workpackage_breakdown(project.id)

    by_name = {row.name: row for row in rows}
    assert by_name["A"].submitted_budget == Decimal("500")
    assert by_name["A"].real_cost.material_cost == ZERO
    assert by_name["B"].submitted_budget == ZERO
    assert by_name["B"].real_cost.total == Decimal("40")


def test_physical_progress_rounds_to_whole_percent() -> None:
    assert physical_progress(0, 0) == ZERO
    assert physical_progress(1, 3) == Decimal("33")
    assert physical_progress(2, 3) == Decimal("67")


def test_portfolio_overview_classifies_active_projects(db_session: Session) -> None:
    volunteer = make_user(db_session, name="Volunteer", salary=None)
    paid = make_user(db_session, name="Paid", salary="1000")

    healthy = make_project(
        db_session,
        name="Healthy",
        eti_rate="1000",
        financing_rate="1",
        state=ProjectState.IN_DEVELOPMENT,
    )
    healthy_wp = make_workpackage(db_session, healthy)
    make_allocation(db_session, healthy_wp, volunteer, month=1, year=2025, occupancy="1")
    db_session.add_all(
        [
            Task(workpackage_id=healthy_wp.id, name="Design", completed=True),
            Task(workpackage_id=healthy_wp.id, name="Build", completed=False),
        ]
    )
    db_session.commit()

    critical = make_project(
        db_session,
        name="Critical",
        eti_rate="100",
        financing_rate="0.5",
        state=ProjectState.IN_DEVELOPMENT,
    )
    make_allocation(db_session, make_workpackage(db_session, critical), paid, month=1, year=2025, occupancy="0.5")

    make_project(db_session, name="Draft", eti_rate="100", state=ProjectState.DRAFT)

    overview = FinancialTotalsService(db_session).portfolio_overview()

    assert overview.projects_considered == 2
    assert [row.name for row in overview.projects] == ["Critical", "Healthy"]
    assert overview.healthy == 1
    assert overview.at_risk == 0
    assert overview.critical == 1
    assert overview.positive_result == 1
    assert overview.negative_result == 1
    assert overview.submitted_budget == Decimal("1050")
    progress = {row.name: row.physical_progress for row in overview.projects}
    assert progress == {"Critical": ZERO, "Healthy": Decimal("50")}
    assert overview.average_physical_progress == Decimal("25")

    everything = FinancialTotalsService(db_session).portfolio_overview(only_active=False)
    assert everything.projects_considered == 3


def test_unknown_project_totals_not_found(db_session: Session) -> None:
    with pytest.raises(HTTPException) as missing:
        FinancialTotalsService(db_session).get_totals(uuid.uuid4())

    assert missing.value.status_code == 404


def test_portfolio_overview_skips_project_whose_figures_fail(
    db_session: Session, monkeypatch: pytest.MonkeyPatch
) -> None:
    broken = make_project(db_session, name="Broken", eti_rate="100", state=ProjectState.IN_DEVELOPMENT)
    make_project(db_session, name="Sound", eti_rate="100", state=ProjectState.IN_DEVELOPMENT)
    service = FinancialTotalsService(db_session)
    get_totals = service.get_totals

    def failing_totals(project_id, **kwargs):
        if project_id == broken.id:
            raise InvalidOperation("unrepresentable figure")
        return get_totals(project_id, **kwargs)

    monkeypatch.setattr(service, "get_totals", failing_totals)

    overview = service.portfolio_overview()

    assert overview.projects_considered == 2
    assert [row.name for row in overview.projects] == ["Sound"]


def test_portfolio_overview_propagates_database_errors(
    db_session: Session, monkeypatch: pytest.MonkeyPatch
) -> None:
    make_project(db_session, name="First", eti_rate="100", state=ProjectState.IN_DEVELOPMENT)
    make_project(db_session, name="Second", eti_rate="100", state=ProjectState.IN_DEVELOPMENT)
    service = FinancialTotalsService(db_session)

    def lost_connection(project_id, **kwargs):
        raise OperationalError("SELECT 1", {}, Exception("server closed the connection"))

    monkeypatch.setattr(service, "get_totals", lost_connection)

    with pytest.raises(OperationalError):
        service.portfolio_overview()


def test_portfolio_monthly_splits_revenue_and_spend(db_session: Session) -> None:
    paid = make_user(db_session, name="Paid", salary="1100")
    volunteer = make_user(db_session, name="Volunteer", salary=None)

    running = make_project(
        db_session,
        name="Running",
        eti_rate="1000",
        financing_rate="0.5",
        state=ProjectState.IN_DEVELOPMENT,
    )
    running_wp = make_workpackage(db_session, running)
    make_allocation(db_session, running_wp, paid, month=6, year=2025, occupancy="0.5")
    make_allocation(db_session, running_wp, paid, month=8, year=2025, occupancy="0.25")
    make_material(db_session, running_wp, unit_price="100", quantity=2, year=2025, month=6, acquired=True)

    closed = make_project(db_session, name="Closed", eti_rate="0", financing_rate="1", state=ProjectState.COMPLETED)
    closed_wp = make_workpackage(db_session, closed)
    make_allocation(db_session, closed_wp, volunteer, month=6, year=2025, occupancy="0.5")
    make_material(db_session, closed_wp, unit_price="300", quantity=1, year=2025, month=6, acquired=False)

    pending = make_project(db_session, name="Pending", eti_rate="1000", financing_rate="1")
    make_allocation(db_session, make_workpackage(db_session, pending), paid, month=6, year=2025, occupancy="0.25")

    rows = FinancialTotalsService(db_session, today=_july_2025).portfolio_monthly(2025)

    assert [row.month for row in rows] == list(range(1, 13))
    june, august = rows[5], rows[7]

    assert june.elapsed is True
    assert june.revenue == Decimal("550")
    assert q2(june.staff_estimated) == q2(june.staff_realized) == Decimal("856.10")
    assert june.materials_estimated == Decimal("500")
    assert june.materials_realized == Decimal("200")
    assert june.eti_value_estimated == june.eti_value_realized == Decimal("500")
    assert q2(june.estimated) == Decimal("1356.10")
    assert q2(june.realized) == Decimal("1056.10")
    assert {person.user_name: person.occupancy for person in june.staff} == {
        "Paid": Decimal("0.5"),
        "Volunteer": Decimal("0.5"),
    }
    assert len(june.materials) == 2

    assert august.elapsed is False
    assert august.revenue == Decimal("125")
    assert q2(august.staff_estimated) == Decimal("428.05")
    assert august.staff_realized == ZERO
    assert august.eti_value_realized == ZERO
    assert rows[0].revenue == ZERO


def test_portfolio_monthly_for_a_single_month(db_session: Session) -> None:
    user = make_user(db_session, salary="1000")
    project = make_project(db_session, eti_rate="200", financing_rate="1", state=ProjectState.APPROVED)
    workpackage = make_workpackage(db_session, project)
    make_allocation(db_session, workpackage, user, month=3, year=2025, occupancy="0.5")
    make_allocation(db_session, workpackage, user, month=4, year=2025, occupancy="0.5")

    rows = FinancialTotalsService(db_session, today=_july_2025).portfolio_monthly(2025, month=3)

    assert len(rows) == 1
    assert rows[0].month == 3
    assert rows[0].revenue == Decimal("100")
