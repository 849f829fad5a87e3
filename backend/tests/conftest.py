"""
Test configuration and fixtures for the receipt engine backend tests.
"""

import pytest
from datetime import date, datetime
from typing import Generator
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from main import app
from app.db.base import Base
from app.db.session import get_db
from app.core.security import create_access_token, hash_password
from app.db.models import (
    BonusDefinition,
    DoctorOrder,
    Facility,
    InsuranceCard,
    InsuranceCardType,
    InsuranceType,
    MedicalInstitution,
    NursingRecord,
    Patient,
    PointsType,
    RecordStatus,
    ServiceCode,
    User,
    UserRole,
)
from app.services.points import recalculate_record, recalculate_same_day_records


# Use in-memory SQLite for testing
SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"

engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(scope="function")
def db() -> Generator[Session, None, None]:
    """Create a fresh database for each test."""
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def client(db: Session) -> Generator[TestClient, None, None]:
    """Create a test client with database override."""
    app.dependency_overrides[get_db] = lambda: db
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def facility(db: Session) -> Facility:
    """A nursing station with complete receipt identifiers."""
    facility = Facility(
        name="Sakura Visiting Nursing Station",
        slug="sakura",
        facility_code="1312345",
        prefecture_code="13",
        burden_reduction_measures=[],
    )
    db.add(facility)
    db.commit()
    db.refresh(facility)
    return facility


@pytest.fixture
def other_facility(db: Session) -> Facility:
    facility = Facility(name="Other Station", slug="other", facility_code="2700001", prefecture_code="27")
    db.add(facility)
    db.commit()
    db.refresh(facility)
    return facility


def _make_user(db: Session, facility: Facility, email: str, role: UserRole, **extra) -> User:
    user = User(
        facility_id=facility.facility_id,
        email=email,
        password_hash=hash_password("testpass123"),
        full_name=email.split("@")[0].title(),
        role=role,
        **extra,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def admin_user(db: Session, facility: Facility) -> User:
    return _make_user(db, facility, "admin@example.com", UserRole.ADMIN)


@pytest.fixture
def manager_user(db: Session, facility: Facility) -> User:
    return _make_user(db, facility, "manager@example.com", UserRole.MANAGER)


@pytest.fixture
def nurse_user(db: Session, facility: Facility) -> User:
    return _make_user(
        db, facility, "nurse@example.com", UserRole.NURSE, specialist_certifications=["緩和ケア"]
    )


@pytest.fixture
def clerk_user(db: Session, facility: Facility) -> User:
    return _make_user(db, facility, "clerk@example.com", UserRole.CLERK)


def _headers(user: User) -> dict:
    token = create_access_token(
        data={
            "sub": str(user.user_id),
            "role": user.role.value,
            "facility_id": str(user.facility_id),
        }
    )
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin_headers(admin_user: User) -> dict:
    """Get authorization headers for the facility admin."""
    return _headers(admin_user)


@pytest.fixture
def manager_headers(manager_user: User) -> dict:
    return _headers(manager_user)


@pytest.fixture
def nurse_headers(nurse_user: User) -> dict:
    """Get authorization headers for a nurse."""
    return _headers(nurse_user)


@pytest.fixture
def clerk_headers(clerk_user: User) -> dict:
    return _headers(clerk_user)


@pytest.fixture
def service_codes(db: Session) -> dict:
    """Basic visit fee codes, keyed by code string."""
    codes = [
        ServiceCode(
            service_code="131111",
            name="訪問看護I1",
            insurance_type=InsuranceType.CARE,
            points=816,
            valid_from=date(2024, 1, 1),
        ),
        ServiceCode(
            service_code="510000110",
            name="訪問看護基本療養費(I)",
            insurance_type=InsuranceType.MEDICAL,
            points=5550,
            valid_from=date(2024, 1, 1),
        ),
        ServiceCode(
            service_code="131211",
            name="訪問看護I2",
            insurance_type=InsuranceType.CARE,
            points=1189,
            valid_from=date(2024, 1, 1),
        ),
    ]
    db.add_all(codes)
    db.commit()
    return {c.service_code: c for c in codes}


@pytest.fixture
def institution(db: Session, facility: Facility) -> MedicalInstitution:
    institution = MedicalInstitution(
        facility_id=facility.facility_id,
        name="Minato Clinic",
        institution_code="1311111",
        prefecture_code="13",
        doctor_name="Dr. Tanaka",
    )
    db.add(institution)
    db.commit()
    db.refresh(institution)
    return institution


@pytest.fixture
def patient(db: Session, facility: Facility, institution: MedicalInstitution) -> Patient:
    """Care-insurance patient with a valid card and doctor order for mid 2024."""
    patient = Patient(
        facility_id=facility.facility_id,
        patient_number="P001",
        last_name="Yamada",
        first_name="Hanako",
        kana_name="ヤマダ ハナコ",
        date_of_birth=date(1940, 3, 15),
        insurance_number="0001234567",
        insurance_type=InsuranceType.CARE,
        special_management_types=[],
    )
    db.add(patient)
    db.flush()
    db.add(InsuranceCard(
        facility_id=facility.facility_id,
        patient_id=patient.patient_id,
        card_type=InsuranceCardType.LONG_TERM_CARE,
        insurer_number="131001",
        insured_number="0001234567",
        age_category="elderly",
        certification_date=date(2023, 12, 1),
        valid_from=date(2024, 1, 1),
    ))
    db.add(DoctorOrder(
        facility_id=facility.facility_id,
        patient_id=patient.patient_id,
        medical_institution_id=institution.institution_id,
        order_date=date(2024, 3, 25),
        start_date=date(2024, 4, 1),
        end_date=date(2024, 9, 30),
        diagnosis="Cerebral infarction",
        icd10_code="I639",
        insurance_type="care",
        instruction_type="regular",
    ))
    db.commit()
    db.refresh(patient)
    return patient


def _definition(code: str, name: str, insurance_type: InsuranceType, points: int, conditions: list,
                display_order: int, **extra) -> BonusDefinition:
    return BonusDefinition(
        bonus_code=code,
        bonus_name=name,
        insurance_type=insurance_type,
        points_type=PointsType.FIXED,
        fixed_points=points,
        predefined_conditions=conditions,
        valid_from=extra.pop("valid_from", date(2020, 1, 1)),
        display_order=display_order,
        **extra,
    )


@pytest.fixture
def bonus_catalog(db: Session) -> dict:
    """Global care-insurance bonuses used across the scenarios."""
    definitions = [
        _definition(
            "emergency_visit", "緊急時訪問看護加算", InsuranceType.CARE, 265,
            [{"pattern": "field_not_empty", "field": "emergencyVisitReason"}], 10,
        ),
        _definition(
            "multiple_visit", "複数回訪問加算", InsuranceType.CARE, 450,
            [{"pattern": "daily_visit_count_gte", "value": 2}], 20,
        ),
        _definition(
            "long_visit", "長時間訪問看護加算", InsuranceType.CARE, 300,
            [{"pattern": "visit_duration_gte", "value": 90}], 30,
        ),
    ]
    db.add_all(definitions)
    db.commit()
    return {d.bonus_code: d for d in definitions}


@pytest.fixture
def make_record(db: Session, facility: Facility, patient: Patient, nurse_user: User):
    """Save a visit and recalculate its day, the way the records API does."""

    def _make(visit_date: date, start: tuple, end: tuple, **fields) -> NursingRecord:
        record = NursingRecord(
            facility_id=facility.facility_id,
            patient_id=fields.pop("patient_id", patient.patient_id),
            nurse_id=nurse_user.user_id,
            status=fields.pop("status", RecordStatus.COMPLETED),
            visit_date=visit_date,
            actual_start_time=datetime.combine(visit_date, datetime.min.time()).replace(hour=start[0], minute=start[1]),
            actual_end_time=datetime.combine(visit_date, datetime.min.time()).replace(hour=end[0], minute=end[1]),
            **fields,
        )
        db.add(record)
        db.flush()
        recalculate_record(db, record)
        recalculate_same_day_records(
            db, record.patient_id, record.facility_id, record.visit_date, excluding_record_id=record.record_id
        )
        db.commit()
        db.refresh(record)
        return record

    return _make
