"""
Tests for the bonus catalog, condition patterns, point patterns and engine.
"""

import uuid
import pytest
from datetime import date, datetime, timezone

from app.db.models import BonusDefinition, InsuranceType, PointsType, SpecialManagementDefinition
from app.services.bonus import (
    BonusDefinitionConflict,
    BonusDefinitionError,
    BonusEvaluationContext,
    AssignedNurse,
    calculate_bonuses,
    create_definition,
    deactivate_definition,
    resolve_definitions,
    round_points,
    update_definition,
)
from app.services.bonus.conditions import evaluate_condition, month_bounds
from app.services.bonus.patterns import calculate_points


def make_context(**overrides) -> BonusEvaluationContext:
    values = dict(
        patient_id=uuid.uuid4(),
        facility_id=uuid.uuid4(),
        visit_date=date(2024, 6, 15),
        insurance_type=InsuranceType.CARE,
        visit_start_time=datetime(2024, 6, 15, 10, 0),
        visit_end_time=datetime(2024, 6, 15, 11, 40),
    )
    values.update(overrides)
    return BonusEvaluationContext(**values)


def conditional(pattern: str, config: dict) -> BonusDefinition:
    return BonusDefinition(
        bonus_code=f"test_{pattern}",
        bonus_name=pattern,
        insurance_type=InsuranceType.CARE,
        points_type=PointsType.CONDITIONAL,
        conditional_pattern=pattern,
        points_config=config,
        valid_from=date(2024, 1, 1),
    )


def definition_values(code: str, points: int, valid_from: date, valid_to=None, **extra) -> dict:
    values = dict(
        bonus_code=code,
        bonus_name=code,
        insurance_type=InsuranceType.CARE,
        points_type=PointsType.FIXED,
        fixed_points=points,
        predefined_conditions=[],
        valid_from=valid_from,
        valid_to=valid_to,
    )
    values.update(extra)
    return values


class TestRounding:
    """Test whole-point rounding."""

    def test_half_rounds_up(self):
        assert round_points(2.5) == 3
        assert round_points(81.6) == 82
        assert round_points(81.4) == 81

    def test_integers_unchanged(self):
        assert round_points(300) == 300

    def test_month_bounds(self):
        assert month_bounds(date(2024, 2, 10)) == (date(2024, 2, 1), date(2024, 2, 29))
        assert month_bounds(date(2024, 12, 31)) == (date(2024, 12, 1), date(2024, 12, 31))


class TestConditions:
    """Test predefined condition patterns."""

    def test_visit_duration_gte(self):
        context = make_context()
        assert evaluate_condition({"pattern": "visit_duration_gte", "value": 90}, context).passed
        assert not evaluate_condition({"pattern": "visit_duration_gte", "value": 120}, context).passed

    def test_duration_without_times_fails(self):
        context = make_context(visit_start_time=None, visit_end_time=None)
        result = evaluate_condition({"pattern": "visit_duration_gte", "value": 90}, context)
        assert not result.passed

    def test_field_not_empty_accepts_camel_case(self):
        context = make_context(emergency_visit_reason="Fever")
        spec = {"pattern": "field_not_empty", "field": "emergencyVisitReason"}
        assert evaluate_condition(spec, context).passed
        assert not evaluate_condition(spec, make_context()).passed

    def test_unknown_field_is_definition_error(self):
        with pytest.raises(BonusDefinitionError):
            evaluate_condition({"pattern": "field_not_empty", "field": "noSuchField"}, make_context())

    def test_unknown_pattern_is_definition_error(self):
        with pytest.raises(BonusDefinitionError):
            evaluate_condition({"pattern": "moon_phase"}, make_context())

    def test_equals_false_inverts_boolean_pattern(self):
        spec = {"pattern": "is_discharge_date", "operator": "equals", "value": False}
        assert evaluate_condition(spec, make_context()).passed
        assert not evaluate_condition(spec, make_context(is_discharge_date=True)).passed

    def test_late_night_uses_clinic_time(self):
        # 13:30 UTC is 22:30 in Tokyo
        context = make_context(
            visit_start_time=datetime(2024, 6, 15, 13, 30, tzinfo=timezone.utc),
            visit_end_time=datetime(2024, 6, 15, 14, 30, tzinfo=timezone.utc),
        )
        assert evaluate_condition({"pattern": "medical_late_night_time"}, context).passed
        assert not evaluate_condition({"pattern": "medical_night_time"}, context).passed

    def test_early_morning_band_excludes_eight(self):
        context = make_context(visit_start_time=datetime(2024, 6, 15, 8, 0))
        assert not evaluate_condition({"pattern": "care_early_morning_time"}, context).passed
        context = make_context(visit_start_time=datetime(2024, 6, 15, 7, 59))
        assert evaluate_condition({"pattern": "care_early_morning_time"}, context).passed

    def test_daily_visit_count_gte(self):
        spec = {"pattern": "daily_visit_count_gte", "value": 2}
        assert not evaluate_condition(spec, make_context(daily_visit_count=1)).passed
        assert evaluate_condition(spec, make_context(daily_visit_count=2)).passed

    def test_specialties_match(self):
        nurse = AssignedNurse(user_id=uuid.uuid4(), full_name="Nurse", specialist_certifications=["緩和ケア"])
        spec = {"pattern": "specialties_match", "value": ["緩和ケア", "褥瘡ケア"]}
        matching = make_context(assigned_nurse=nurse, specialist_care_type="palliative_care")
        other = make_context(assigned_nurse=nurse, specialist_care_type="pressure_ulcer")
        assert evaluate_condition(spec, matching).passed
        assert not evaluate_condition(spec, other).passed

    def test_enhanced_24h_support_needs_two_measures(self):
        spec = {"pattern": "has_24h_support_system_enhanced"}
        one = make_context(has_24h_support_system_enhanced=True, burden_reduction_measures=["a"])
        two = make_context(has_24h_support_system_enhanced=True, burden_reduction_measures=["a", "b"])
        assert not evaluate_condition(spec, one).passed
        assert evaluate_condition(spec, two).passed

    def test_same_record_guidance_reads_applied_codes(self):
        spec = {"pattern": "has_discharge_joint_guidance_in_same_record"}
        assert evaluate_condition(spec, make_context(), applied_codes=["medical_discharge_joint_guidance"]).passed
        assert not evaluate_condition(spec, make_context(), applied_codes=[]).passed


class TestPointPatterns:
    """Test conditional point patterns."""

    def test_base_points_percentage_rounds(self):
        definition = conditional("base_points_percentage", {"percent": 10})
        result = calculate_points(definition, make_context(base_points=816))
        assert result.points == 82

    def test_base_points_percentage_with_flat_add(self):
        definition = conditional("base_points_percentage", {"percent": 50, "add": 10})
        assert calculate_points(definition, make_context(base_points=100)).points == 60

    def test_duration_based_longest_threshold_wins(self):
        definition = conditional("duration_based", {
            "conditions": [
                {"durationMinutes": 60, "operator": "greater_than_or_equal", "points": 100},
                {"durationMinutes": 90, "operator": "greater_than_or_equal", "points": 300},
            ],
        })
        assert calculate_points(definition, make_context()).points == 300

    def test_duration_based_legacy_keys(self):
        definition = conditional("duration_based", {"duration_60": 100, "duration_90": 300})
        context = make_context(visit_end_time=datetime(2024, 6, 15, 11, 5))
        assert calculate_points(definition, context).points == 100

    def test_age_based_ranges(self):
        definition = conditional("age_based", {"age_0_6": 500, "age_6": 250})
        assert calculate_points(definition, make_context(patient_age=5)).points == 500
        assert calculate_points(definition, make_context(patient_age=6)).points == 250

    def test_visit_count(self):
        definition = conditional("visit_count", {"visit_1": 0, "visit_2": 450, "visit_3_plus": 800})
        assert calculate_points(definition, make_context(daily_visit_count=2)).points == 450
        assert calculate_points(definition, make_context(daily_visit_count=4)).points == 800

    def test_time_based_band(self):
        definition = conditional("time_based", {"night": 210, "late_night": 420, "early_morning": 210})
        context = make_context(visit_start_time=datetime(2024, 6, 15, 19, 0))
        result = calculate_points(definition, context)
        assert result.points == 210
        assert result.matched_condition == "night"

    def test_unknown_pattern_is_definition_error(self):
        with pytest.raises(BonusDefinitionError):
            calculate_points(conditional("no_such_pattern", {"a": 1}), make_context())

    def test_db_pattern_without_session_is_definition_error(self):
        with pytest.raises(BonusDefinitionError):
            calculate_points(conditional("monthly_14day_threshold", {"up_to_14": 265}), make_context())


class TestCatalogResolution:
    """Test two-tier definition resolution."""

    def test_facility_definition_shadows_global(self):
        facility_id = uuid.uuid4()
        global_def = BonusDefinition(facility_id=None, bonus_code="long_visit", valid_from=date(2020, 1, 1))
        local_def = BonusDefinition(facility_id=facility_id, bonus_code="long_visit", valid_from=date(2024, 1, 1))
        assert resolve_definitions([global_def, local_def], facility_id) == [local_def]
        assert resolve_definitions([local_def, global_def], facility_id) == [local_def]

    def test_other_facility_definitions_ignored(self):
        global_def = BonusDefinition(facility_id=None, bonus_code="long_visit", valid_from=date(2020, 1, 1))
        foreign = BonusDefinition(facility_id=uuid.uuid4(), bonus_code="long_visit", valid_from=date(2024, 1, 1))
        assert resolve_definitions([foreign, global_def], uuid.uuid4()) == [global_def]

    def test_display_order_then_code(self):
        facility_id = uuid.uuid4()
        b = BonusDefinition(facility_id=None, bonus_code="b", valid_from=date(2020, 1, 1), display_order=1)
        a = BonusDefinition(facility_id=None, bonus_code="a", valid_from=date(2020, 1, 1))
        c = BonusDefinition(facility_id=None, bonus_code="c", valid_from=date(2020, 1, 1), display_order=1)
        assert [d.bonus_code for d in resolve_definitions([a, c, b], facility_id)] == ["b", "c", "a"]


class TestCatalogOverlap:
    """Test the overlap rule at create and update time."""

    def test_overlapping_window_rejected(self, db, facility):
        create_definition(db, facility.facility_id, definition_values("long_visit", 500, date(2024, 1, 1)))
        with pytest.raises(BonusDefinitionConflict):
            create_definition(
                db, facility.facility_id, definition_values("long_visit", 600, date(2024, 6, 1), date(2024, 12, 31))
            )

    def test_adjacent_windows_allowed(self, db, facility):
        create_definition(
            db, facility.facility_id, definition_values("long_visit", 500, date(2024, 1, 1), date(2024, 3, 31))
        )
        created = create_definition(
            db, facility.facility_id, definition_values("long_visit", 600, date(2024, 4, 1))
        )
        assert created.definition_id is not None

    def test_scopes_do_not_conflict(self, db, facility):
        create_definition(db, None, definition_values("long_visit", 300, date(2020, 1, 1)))
        created = create_definition(db, facility.facility_id, definition_values("long_visit", 500, date(2024, 1, 1)))
        assert created.facility_id == facility.facility_id

    def test_inactive_definition_does_not_conflict(self, db, facility):
        first = create_definition(db, facility.facility_id, definition_values("long_visit", 500, date(2024, 1, 1)))
        deactivate_definition(db, first)
        create_definition(db, facility.facility_id, definition_values("long_visit", 600, date(2024, 1, 1)))

    def test_update_rechecks_overlap(self, db, facility):
        create_definition(
            db, facility.facility_id, definition_values("long_visit", 500, date(2024, 1, 1), date(2024, 3, 31))
        )
        second = create_definition(db, facility.facility_id, definition_values("long_visit", 600, date(2024, 4, 1)))
        with pytest.raises(BonusDefinitionConflict):
            update_definition(db, second, {"valid_from": date(2024, 3, 1)})

    def test_update_rejects_unknown_fields(self, db, facility):
        definition = create_definition(db, facility.facility_id, definition_values("long_visit", 500, date(2024, 1, 1)))
        with pytest.raises(ValueError):
            update_definition(db, definition, {"bonus_code": "renamed"})


class TestBonusEngine:
    """Test catalog evaluation for one visit."""

    def test_facility_long_visit_replaces_global(self, db, facility):
        create_definition(db, None, definition_values(
            "long_visit", 300, date(2020, 1, 1),
            predefined_conditions=[{"pattern": "visit_duration_gte", "value": 90}],
        ))
        create_definition(db, facility.facility_id, definition_values(
            "long_visit", 500, date(2024, 1, 1), date(2024, 12, 31),
            predefined_conditions=[{"pattern": "visit_duration_gte", "value": 90}],
        ))

        inside = calculate_bonuses(db, make_context(facility_id=facility.facility_id))
        assert [(b.bonus_code, b.calculated_points) for b in inside] == [("long_visit", 500)]

        after = calculate_bonuses(db, make_context(
            facility_id=facility.facility_id,
            visit_date=date(2025, 1, 10),
            visit_start_time=datetime(2025, 1, 10, 10, 0),
            visit_end_time=datetime(2025, 1, 10, 11, 40),
        ))
        assert [(b.bonus_code, b.calculated_points) for b in after] == [("long_visit", 300)]

    def test_different_codes_are_additive(self, db, facility):
        create_definition(db, None, definition_values("long_visit", 300, date(2020, 1, 1)))
        create_definition(db, None, definition_values("emergency_visit", 265, date(2020, 1, 1)))
        applied = calculate_bonuses(db, make_context(facility_id=facility.facility_id))
        assert sum(b.calculated_points for b in applied) == 565

    def test_malformed_definition_is_skipped(self, db, facility):
        create_definition(db, None, definition_values("long_visit", 300, date(2020, 1, 1)))
        create_definition(db, None, dict(
            bonus_code="broken",
            bonus_name="broken",
            insurance_type=InsuranceType.CARE,
            points_type=PointsType.CONDITIONAL,
            conditional_pattern="no_such_pattern",
            points_config={"x": 1},
            predefined_conditions=[],
            valid_from=date(2020, 1, 1),
        ))
        applied = calculate_bonuses(db, make_context(facility_id=facility.facility_id))
        assert [b.bonus_code for b in applied] == ["long_visit"]

    def test_cannot_combine_with_blocks_later_bonus(self, db, facility):
        create_definition(db, None, definition_values("initial_bonus_1", 350, date(2020, 1, 1), display_order=1))
        create_definition(db, None, definition_values(
            "initial_bonus_2", 300, date(2020, 1, 1), display_order=2, cannot_combine_with=["initial_bonus_1"],
        ))
        applied = calculate_bonuses(db, make_context(facility_id=facility.facility_id))
        assert [b.bonus_code for b in applied] == ["initial_bonus_1"]

    def test_insurance_type_must_match(self, db, facility):
        create_definition(db, None, definition_values(
            "medical_long_visit", 5200, date(2020, 1, 1), insurance_type=InsuranceType.MEDICAL,
        ))
        assert calculate_bonuses(db, make_context(facility_id=facility.facility_id)) == []

    def test_inactive_definition_not_applied(self, db, facility):
        definition = create_definition(db, None, definition_values("long_visit", 300, date(2020, 1, 1)))
        deactivate_definition(db, definition)
        assert calculate_bonuses(db, make_context(facility_id=facility.facility_id)) == []

    def test_applied_bonus_explains_match(self, db, facility):
        create_definition(db, None, definition_values(
            "long_visit", 300, date(2020, 1, 1),
            predefined_conditions=[{"pattern": "visit_duration_gte", "value": 90}],
        ))
        bonus = calculate_bonuses(db, make_context(facility_id=facility.facility_id))[0]
        details = bonus.to_dict()
        assert details["calculated_points"] == 300
        assert details["conditions_passed"] == ["Visit duration 100min >= 90min"]
        assert details["calculation_details"]["matched_condition"] == "fixed_points"

    def test_context_without_insurance_type_rejected(self, db, facility):
        with pytest.raises(ValueError):
            calculate_bonuses(db, make_context(facility_id=facility.facility_id, insurance_type=None))

    def test_special_management_tier_follows_category(self, db, facility):
        for code, points in (("special_management_1", 500), ("special_management_2", 250)):
            create_definition(db, None, definition_values(
                code, points, date(2020, 1, 1),
                predefined_conditions=[{"pattern": "patient_has_special_management"}],
            ))
        db.add(SpecialManagementDefinition(
            category="tracheostomy", display_name="気管カニューレ", insurance_type="care_500",
        ))
        db.flush()

        tier_one = calculate_bonuses(db, make_context(
            facility_id=facility.facility_id, special_management_types=["tracheostomy"],
        ))
        assert [b.bonus_code for b in tier_one] == ["special_management_1"]

        unmapped = calculate_bonuses(db, make_context(
            facility_id=facility.facility_id, special_management_types=["oxygen_therapy"],
        ))
        assert [b.bonus_code for b in unmapped] == ["special_management_2"]

        assert calculate_bonuses(db, make_context(facility_id=facility.facility_id)) == []
