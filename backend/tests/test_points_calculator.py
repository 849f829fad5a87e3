"""
Tests for the visit point calculator.
"""

import pytest
from datetime import date, datetime, timezone

from app.db.models import (
    BonusCalculationHistory,
    InsuranceCard,
    InsuranceCardType,
    InsuranceType,
    NursingRecord,
    ServiceCode,
)
from app.services.points import (
    RecordDraft,
    billed_insurance_type,
    calculate_bonuses_and_points,
    recalculate_record,
    recalculate_same_day_records,
    resolve_base_service_code,
    save_bonus_calculation_history,
)
from app.services.points.calculator import resolve_insurance_type

VISIT_DAY = date(2024, 6, 1)


def history_codes(db, record) -> list[str]:
    rows = (
        db.query(BonusCalculationHistory)
        .filter(BonusCalculationHistory.nursing_record_id == record.record_id)
        .all()
    )
    return sorted(r.bonus_code for r in rows)


class TestTwoVisitsOneDay:
    """Test the same-day ordinal, default fee and multiple-visit bonus."""

    def test_first_visit_gets_default_fee(self, db, make_record, service_codes, bonus_catalog):
        visit_a = make_record(VISIT_DAY, (8, 0), (8, 30))
        assert visit_a.daily_visit_count == 1
        assert visit_a.base_points == service_codes["131111"].points
        assert visit_a.is_default_service_code is True
        assert visit_a.resolved_service_code_id == service_codes["131111"].service_code_id
        assert visit_a.calculated_points == service_codes["131111"].points
        assert history_codes(db, visit_a) == []

    def test_second_visit_gets_bonuses_and_no_base(self, db, make_record, service_codes, bonus_catalog):
        visit_a = make_record(VISIT_DAY, (8, 0), (8, 30))
        visit_b = make_record(VISIT_DAY, (14, 0), (14, 40), emergency_visit_reason="Sudden fever")
        db.refresh(visit_a)

        assert visit_b.daily_visit_count == 2
        assert visit_b.base_points == 0
        assert visit_b.resolved_service_code_id is None
        assert visit_b.calculated_points == bonus_catalog["emergency_visit"].fixed_points + bonus_catalog["multiple_visit"].fixed_points
        assert history_codes(db, visit_b) == ["emergency_visit", "multiple_visit"]

        assert visit_a.calculated_points == service_codes["131111"].points
        assert history_codes(db, visit_a) == []

    def test_earlier_visit_saved_later_takes_the_default_fee(self, db, make_record, service_codes, bonus_catalog):
        afternoon = make_record(VISIT_DAY, (14, 0), (14, 40))
        morning = make_record(VISIT_DAY, (8, 0), (8, 30))
        db.refresh(afternoon)

        assert morning.daily_visit_count == 1
        assert morning.base_points == service_codes["131111"].points
        assert afternoon.daily_visit_count == 2
        assert afternoon.base_points == 0
        assert history_codes(db, afternoon) == ["multiple_visit"]

    def test_only_one_default_fee_per_day(self, db, make_record, service_codes, bonus_catalog):
        visits = [make_record(VISIT_DAY, (h, 0), (h, 30)) for h in (9, 12, 16)]
        for visit in visits:
            db.refresh(visit)
        assert sum(1 for v in visits if v.is_default_service_code) == 1
        assert sum(v.base_points for v in visits) == service_codes["131111"].points

    def test_aware_times_are_ordered_in_clinic_time(self, db, facility, patient, make_record, service_codes,
                                                    bonus_catalog):
        make_record(VISIT_DAY, (8, 0), (8, 30))
        afternoon = RecordDraft(
            patient_id=patient.patient_id,
            visit_date=VISIT_DAY,
            actual_start_time=datetime(2024, 6, 1, 5, 0, tzinfo=timezone.utc),
            actual_end_time=datetime(2024, 6, 1, 5, 40, tzinfo=timezone.utc),
        )
        early = RecordDraft(
            patient_id=patient.patient_id,
            visit_date=VISIT_DAY,
            actual_start_time=datetime(2024, 5, 31, 22, 0, tzinfo=timezone.utc),
            actual_end_time=datetime(2024, 5, 31, 22, 30, tzinfo=timezone.utc),
        )

        later = calculate_bonuses_and_points(db, afternoon, facility.facility_id)
        first = calculate_bonuses_and_points(db, early, facility.facility_id)

        assert (later.daily_visit_count, later.base_points) == (2, 0)
        assert (first.daily_visit_count, first.base_points) == (1, service_codes["131111"].points)

    def test_deleted_visit_leaves_the_ordinal(self, db, make_record, service_codes, bonus_catalog):
        visit_a = make_record(VISIT_DAY, (8, 0), (8, 30))
        visit_b = make_record(VISIT_DAY, (14, 0), (14, 40))

        visit_a.deleted_at = datetime.utcnow()
        db.flush()
        recalculate_same_day_records(db, visit_a.patient_id, visit_a.facility_id, VISIT_DAY)
        db.commit()
        db.refresh(visit_b)

        assert visit_b.daily_visit_count == 1
        assert visit_b.base_points == service_codes["131111"].points
        assert history_codes(db, visit_b) == []


class TestBaseServiceCode:
    """Test base service code resolution."""

    def test_explicit_code_bills_its_points(self, db, make_record, service_codes, bonus_catalog):
        make_record(VISIT_DAY, (8, 0), (8, 30))
        chosen = service_codes["131211"]
        second = make_record(VISIT_DAY, (14, 0), (14, 40), service_code_id=chosen.service_code_id)
        assert second.base_points == chosen.points
        assert second.is_default_service_code is False

    def test_default_code_is_date_versioned(self, db, facility, patient, service_codes):
        db.add(ServiceCode(
            service_code="131111",
            name="訪問看護I1 (2025 revision)",
            insurance_type=InsuranceType.CARE,
            points=830,
            valid_from=date(2025, 1, 1),
        ))
        service_codes["131111"].valid_to = date(2024, 12, 31)
        db.commit()

        old = resolve_base_service_code(
            db, RecordDraft(patient_id=patient.patient_id, visit_date=date(2024, 12, 31)), facility, InsuranceType.CARE
        )
        new = resolve_base_service_code(
            db, RecordDraft(patient_id=patient.patient_id, visit_date=date(2025, 1, 2)), facility, InsuranceType.CARE
        )
        assert old.points == service_codes["131111"].points
        assert new.points == 830

    def test_facility_default_code_wins(self, db, facility, patient, service_codes):
        facility.default_service_code = "131211"
        db.commit()
        resolution = resolve_base_service_code(
            db, RecordDraft(patient_id=patient.patient_id, visit_date=VISIT_DAY), facility, InsuranceType.CARE
        )
        assert resolution.service_code.service_code == "131211"
        assert resolution.is_default is True

    def test_missing_default_code_bills_zero(self, db, facility, patient):
        resolution = resolve_base_service_code(
            db, RecordDraft(patient_id=patient.patient_id, visit_date=VISIT_DAY), facility, InsuranceType.CARE
        )
        assert resolution.points == 0
        assert resolution.service_code is None


class TestRecalculation:
    """Test that recalculation replaces history instead of appending."""

    def test_recalculating_twice_does_not_double_count(self, db, make_record, service_codes, bonus_catalog):
        make_record(VISIT_DAY, (8, 0), (8, 30))
        visit = make_record(VISIT_DAY, (14, 0), (15, 40), emergency_visit_reason="Fall")
        first_total = visit.calculated_points

        recalculate_record(db, visit)
        recalculate_record(db, visit)
        db.commit()
        db.refresh(visit)

        assert visit.calculated_points == first_total
        assert history_codes(db, visit) == ["emergency_visit", "long_visit", "multiple_visit"]
        assert first_total == bonus_catalog["emergency_visit"].fixed_points + bonus_catalog["multiple_visit"].fixed_points + bonus_catalog["long_visit"].fixed_points

    def test_cached_fields_match_history(self, db, make_record, service_codes, bonus_catalog):
        make_record(VISIT_DAY, (8, 0), (8, 30))
        visit = make_record(VISIT_DAY, (14, 0), (14, 40), emergency_visit_reason="Fall")
        history_points = sum(
            r.calculated_points for r in db.query(BonusCalculationHistory)
            .filter(BonusCalculationHistory.nursing_record_id == visit.record_id)
        )
        assert visit.calculated_points == visit.base_points + history_points
        assert sorted(b["bonus_code"] for b in visit.applied_bonuses) == history_codes(db, visit)

    def test_dry_run_writes_nothing(self, db, facility, patient, service_codes, bonus_catalog):
        draft = RecordDraft(
            patient_id=patient.patient_id,
            visit_date=VISIT_DAY,
            actual_start_time=datetime(2024, 6, 1, 9, 0),
            actual_end_time=datetime(2024, 6, 1, 10, 45),
        )
        calculation = calculate_bonuses_and_points(db, draft, facility.facility_id)
        assert calculation.calculated_points == service_codes["131111"].points + bonus_catalog["long_visit"].fixed_points
        assert calculation.bonus_points == bonus_catalog["long_visit"].fixed_points
        assert db.query(NursingRecord).count() == 0
        assert db.query(BonusCalculationHistory).count() == 0

    def test_unknown_patient_rejected(self, db, facility, other_facility, patient):
        draft = RecordDraft(patient_id=patient.patient_id, visit_date=VISIT_DAY)
        with pytest.raises(ValueError):
            calculate_bonuses_and_points(db, draft, other_facility.facility_id)

    def test_manual_service_code_survives_recalculation(self, db, make_record, service_codes, bonus_catalog):
        visit = make_record(VISIT_DAY, (14, 0), (15, 40))
        row = db.query(BonusCalculationHistory).filter_by(
            nursing_record_id=visit.record_id, bonus_code="long_visit"
        ).one()
        row.service_code_id = service_codes["131211"].service_code_id
        row.is_manually_adjusted = True
        db.commit()

        recalculate_record(db, visit)
        db.commit()

        row = db.query(BonusCalculationHistory).filter_by(
            nursing_record_id=visit.record_id, bonus_code="long_visit"
        ).one()
        assert row.is_manually_adjusted is True
        assert row.service_code_id == service_codes["131211"].service_code_id

    def test_duplicate_codes_saved_once(self, db, make_record, service_codes, bonus_catalog):
        visit = make_record(VISIT_DAY, (14, 0), (15, 40))
        calculation = recalculate_record(db, visit)
        duplicated = calculation.applied_bonuses * 2
        saved = save_bonus_calculation_history(db, visit.record_id, duplicated)
        db.commit()
        assert len(saved) == len(calculation.applied_bonuses)


class TestInsuranceType:
    """Test insurance type resolution for a visit."""

    def test_patient_type_backed_by_card(self, db, patient):
        assert resolve_insurance_type(db, patient, VISIT_DAY) == InsuranceType.CARE

    def test_card_decides_when_patient_type_unbacked(self, db, facility, patient):
        patient.insurance_type = InsuranceType.MEDICAL
        db.commit()
        assert resolve_insurance_type(db, patient, VISIT_DAY) == InsuranceType.CARE

    def test_medical_card_backs_medical_patient(self, db, facility, patient):
        patient.insurance_type = InsuranceType.MEDICAL
        db.add(InsuranceCard(
            facility_id=facility.facility_id,
            patient_id=patient.patient_id,
            card_type=InsuranceCardType.MEDICAL,
            insurer_number="06131234",
            insured_number="12-345",
            relationship_type="self",
            valid_from=date(2024, 5, 1),
        ))
        db.commit()
        assert resolve_insurance_type(db, patient, VISIT_DAY) == InsuranceType.MEDICAL

    def test_no_card_and_no_type_is_medical(self, db, patient):
        patient.insurance_type = None
        for card in patient.insurance_cards:
            card.is_active = False
        db.commit()
        assert resolve_insurance_type(db, patient, VISIT_DAY) == InsuranceType.MEDICAL

    def test_visit_keeps_the_insurance_it_was_billed_under(self, db, make_record, service_codes, bonus_catalog):
        visit = make_record(VISIT_DAY, (8, 0), (8, 30))
        assert visit.insurance_type == InsuranceType.CARE

        visit.insurance_type = None
        db.commit()
        assert billed_insurance_type(db, visit) == InsuranceType.CARE
