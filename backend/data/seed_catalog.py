"""
Seed script for creating the schema and populating the fee schedule and bonus catalog.
Run with: python data/seed_catalog.py
"""
import sys
from pathlib import Path
from datetime import date

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy.orm import Session
from app.core.security import hash_password
from app.db import Base, SessionLocal, engine
from app.db.models import (
    BonusDefinition, Facility, InsuranceType, PointsType, ServiceCode, SpecialManagementDefinition, User,
)
from app.db.models.user import UserRole
from app.services.bonus.catalog import create_definition

FEE_SCHEDULE_START = date(2024, 6, 1)

SERVICE_CODES = [
    ("131111", "訪問看護I1 (20分未満)", InsuranceType.CARE, 314),
    ("131211", "訪問看護I2 (30分未満)", InsuranceType.CARE, 471),
    ("131311", "訪問看護I3 (30分以上1時間未満)", InsuranceType.CARE, 823),
    ("131411", "訪問看護I4 (1時間以上1時間30分未満)", InsuranceType.CARE, 1128),
    ("510000110", "訪問看護基本療養費(I) 週3日目まで", InsuranceType.MEDICAL, 5550),
    ("510000210", "訪問看護基本療養費(I) 週4日目以降", InsuranceType.MEDICAL, 6550),
    ("510003210", "訪問看護管理療養費 (月の初日)", InsuranceType.MEDICAL, 7670),
]

BONUS_DEFINITIONS = [
    {
        "bonus_code": "emergency_visit",
        "bonus_name": "緊急訪問看護加算",
        "bonus_category": "emergency",
        "insurance_type": InsuranceType.MEDICAL,
        "points_type": PointsType.CONDITIONAL,
        "conditional_pattern": "monthly_14day_threshold",
        "points_config": {"up_to_14": 2650, "after_14": 2000},
        "predefined_conditions": [
            {"pattern": "field_not_empty", "field": "emergency_visit_reason"},
            {"pattern": "has_24h_support_system"},
        ],
        "display_order": 10,
    },
    {
        "bonus_code": "emergency_visit",
        "bonus_name": "緊急時訪問看護加算",
        "bonus_category": "emergency",
        "insurance_type": InsuranceType.CARE,
        "points_type": PointsType.FIXED,
        "fixed_points": 600,
        "predefined_conditions": [
            {"pattern": "field_not_empty", "field": "emergency_visit_reason"},
            {"pattern": "has_emergency_support_system"},
        ],
        "display_order": 10,
    },
    {
        "bonus_code": "night_visit",
        "bonus_name": "夜間・早朝訪問看護加算",
        "bonus_category": "time",
        "insurance_type": InsuranceType.MEDICAL,
        "points_type": PointsType.CONDITIONAL,
        "conditional_pattern": "time_based",
        "points_config": {"early_morning": 2100, "night": 2100, "late_night": 4200, "daytime": 0},
        "predefined_conditions": [{"pattern": "time_based"}],
        "display_order": 20,
    },
    {
        "bonus_code": "care_night_visit",
        "bonus_name": "夜間・早朝訪問加算",
        "bonus_category": "time",
        "insurance_type": InsuranceType.CARE,
        "points_type": PointsType.CONDITIONAL,
        "conditional_pattern": "base_points_percentage",
        "points_config": {"percent": 25},
        "predefined_conditions": [{"pattern": "care_night_time"}],
        "cannot_combine_with": ["care_late_night_visit"],
        "display_order": 20,
    },
    {
        "bonus_code": "care_late_night_visit",
        "bonus_name": "深夜訪問加算",
        "bonus_category": "time",
        "insurance_type": InsuranceType.CARE,
        "points_type": PointsType.CONDITIONAL,
        "conditional_pattern": "base_points_percentage",
        "points_config": {"percent": 50},
        "predefined_conditions": [{"pattern": "care_late_night_time"}],
        "cannot_combine_with": ["care_night_visit"],
        "display_order": 21,
    },
    {
        "bonus_code": "multiple_visit",
        "bonus_name": "難病等複数回訪問加算",
        "bonus_category": "visit_count",
        "insurance_type": InsuranceType.MEDICAL,
        "points_type": PointsType.CONDITIONAL,
        "conditional_pattern": "visit_count",
        "points_config": {"visit_2": 4500, "visit_3_plus": 8000},
        "predefined_conditions": [{"pattern": "daily_visit_count_gte", "value": 2}],
        "display_order": 30,
    },
    {
        "bonus_code": "long_visit",
        "bonus_name": "長時間訪問看護加算",
        "bonus_category": "duration",
        "insurance_type": InsuranceType.MEDICAL,
        "points_type": PointsType.FIXED,
        "fixed_points": 5200,
        "predefined_conditions": [
            {"pattern": "visit_duration_gte", "value": 90},
            {"pattern": "patient_has_special_management"},
        ],
        "display_order": 40,
    },
    {
        "bonus_code": "long_visit",
        "bonus_name": "長時間訪問看護加算",
        "bonus_category": "duration",
        "insurance_type": InsuranceType.CARE,
        "points_type": PointsType.FIXED,
        "fixed_points": 300,
        "predefined_conditions": [{"pattern": "care_visit_duration_90plus"}],
        "display_order": 40,
    },
    {
        "bonus_code": "infant_visit",
        "bonus_name": "乳幼児加算",
        "bonus_category": "age",
        "insurance_type": InsuranceType.MEDICAL,
        "points_type": PointsType.CONDITIONAL,
        "conditional_pattern": "age_based",
        "points_config": {"age_0_6": 1300},
        "predefined_conditions": [{"pattern": "age_lt", "value": 6}],
        "display_order": 50,
    },
    {
        "bonus_code": "same_building_reduction",
        "bonus_name": "同一建物居住者訪問看護",
        "bonus_category": "reduction",
        "insurance_type": InsuranceType.MEDICAL,
        "points_type": PointsType.CONDITIONAL,
        "conditional_pattern": "building_occupancy",
        "points_config": {"occupancy_1_2": 0, "occupancy_3_plus": -2775},
        "predefined_conditions": [{"pattern": "has_building"}],
        "display_order": 60,
    },
    {
        "bonus_code": "terminal_care_1",
        "bonus_name": "訪問看護ターミナルケア療養費",
        "bonus_category": "terminal",
        "insurance_type": InsuranceType.MEDICAL,
        "points_type": PointsType.FIXED,
        "fixed_points": 25000,
        "predefined_conditions": [
            {"pattern": "is_terminal_care"},
            {"pattern": "terminal_care_requirement"},
        ],
        "display_order": 70,
    },
    {
        "bonus_code": "special_management_1",
        "bonus_name": "特別管理加算(I)",
        "bonus_category": "special_management",
        "insurance_type": InsuranceType.MEDICAL,
        "points_type": PointsType.FIXED,
        "fixed_points": 5000,
        "predefined_conditions": [
            {"pattern": "patient_has_special_management"},
            {"pattern": "is_first_visit_of_plan"},
        ],
        "display_order": 80,
    },
    {
        "bonus_code": "special_management_2",
        "bonus_name": "特別管理加算(II)",
        "bonus_category": "special_management",
        "insurance_type": InsuranceType.MEDICAL,
        "points_type": PointsType.FIXED,
        "fixed_points": 2500,
        "predefined_conditions": [
            {"pattern": "patient_has_special_management"},
            {"pattern": "is_first_visit_of_plan"},
        ],
        "display_order": 81,
    },
]

# Category -> tier marker; medical_5000 selects special management I
SPECIAL_MANAGEMENT_CATEGORIES = [
    ("tracheostomy", "気管カニューレ", "medical_5000"),
    ("central_venous", "在宅中心静脈栄養法指導管理", "medical_5000"),
    ("oxygen_therapy", "在宅酸素療法指導管理", "medical_2500"),
    ("pressure_ulcer", "真皮を越える褥瘡", "medical_2500"),
]


def get_or_create_facility(db: Session) -> Facility:
    """Get the demo facility or create it."""
    facility = db.query(Facility).filter(Facility.slug == "demo-station").first()
    if not facility:
        facility = Facility(
            name="デモ訪問看護ステーション",
            slug="demo-station",
            facility_code="1312345",
            prefecture_code="13",
            has_24h_support_system=True,
            has_emergency_support_system=True,
        )
        db.add(facility)
        db.commit()
        db.refresh(facility)
        print(f"  Created facility: {facility.name}")
    else:
        print(f"  Found existing facility: {facility.name}")
    return facility


def get_or_create_admin(db: Session, facility: Facility) -> User:
    """Get the demo administrator or create one."""
    user = db.query(User).filter(User.email == "admin@demo-station.example").first()
    if not user:
        user = User(
            facility_id=facility.facility_id,
            email="admin@demo-station.example",
            full_name="Demo Admin",
            password_hash=hash_password("change-me"),
            role=UserRole.ADMIN,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        print(f"  Created user: {user.full_name} ({user.email})")
    else:
        print(f"  Found existing user: {user.full_name} ({user.email})")
    return user


def seed_service_codes(db: Session) -> int:
    created = 0
    for code, name, insurance_type, points in SERVICE_CODES:
        existing = db.query(ServiceCode).filter(
            ServiceCode.service_code == code,
            ServiceCode.valid_from == FEE_SCHEDULE_START,
        ).first()
        if existing:
            print(f"  Skipping service code {code} (already exists)")
            continue
        db.add(ServiceCode(
            service_code=code,
            name=name,
            insurance_type=insurance_type,
            points=points,
            valid_from=FEE_SCHEDULE_START,
        ))
        created += 1
    db.commit()
    return created


def seed_bonus_definitions(db: Session) -> int:
    created = 0
    for values in BONUS_DEFINITIONS:
        existing = db.query(BonusDefinition).filter(
            BonusDefinition.bonus_code == values["bonus_code"],
            BonusDefinition.insurance_type == values["insurance_type"],
            BonusDefinition.facility_id.is_(None),
        ).first()
        if existing:
            print(f"  Skipping {values['bonus_code']} ({values['insurance_type'].value}) (already exists)")
            continue
        create_definition(db, None, {**values, "valid_from": FEE_SCHEDULE_START})
        created += 1
    db.commit()
    return created


def seed_special_management(db: Session) -> int:
    created = 0
    for category, display_name, insurance_type in SPECIAL_MANAGEMENT_CATEGORIES:
        existing = db.query(SpecialManagementDefinition).filter(
            SpecialManagementDefinition.category == category,
            SpecialManagementDefinition.facility_id.is_(None),
        ).first()
        if existing:
            continue
        db.add(SpecialManagementDefinition(
            category=category,
            display_name=display_name,
            insurance_type=insurance_type,
        ))
        created += 1
    db.commit()
    return created


def seed_catalog():
    """Create the schema and seed the global catalog."""
    print("\n" + "="*60)
    print("SEEDING FEE SCHEDULE AND BONUS CATALOG")
    print("="*60 + "\n")

    Base.metadata.create_all(bind=engine)
    db = SessionLocal()

    try:
        facility = get_or_create_facility(db)
        get_or_create_admin(db, facility)

        codes = seed_service_codes(db)
        bonuses = seed_bonus_definitions(db)
        categories = seed_special_management(db)

        print("\n" + "="*60)
        print("SEEDING COMPLETE!")
        print("="*60)

        print(f"\nCreated:")
        print(f"  Service codes: {codes}")
        print(f"  Bonus definitions: {bonuses}")
        print(f"  Special management categories: {categories}")

        print(f"\nDatabase Summary:")
        print(f"  Facilities: {db.query(Facility).count()}")
        print(f"  Users: {db.query(User).count()}")
        print(f"  Service codes: {db.query(ServiceCode).count()}")
        print(f"  Bonus definitions: {db.query(BonusDefinition).count()}")
        print()

    except Exception as e:
        print(f"\nError: {e}")
        db.rollback()
        raise
    finally:
        db.close()


if __name__ == "__main__":
    seed_catalog()
