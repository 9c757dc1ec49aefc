"""Pytest fixtures for testing"""

import pytest
from datetime import date, datetime
from typing import Callable, Generator
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from homecare_billing.api.main import create_app
from homecare_billing.infrastructure.database.models import (
    Base,
    BonusRule,
    DoctorOrder,
    Facility,
    InsuranceCard,
    Patient,
    VisitRate,
    VisitRecord,
)
from homecare_billing.infrastructure.database.session import get_db


# Test database
TEST_DATABASE_URL = "sqlite:///./test.db"
engine = create_engine(TEST_DATABASE_URL, connect_args={"check_same_thread": False})
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db() -> Generator[Session, None, None]:
    """Create test database and session"""
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def client(db: Session) -> TestClient:
    """Create FastAPI test client with test database"""
    app = create_app()

    def override_get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    return TestClient(app)


@pytest.fixture
def facility(db: Session) -> Facility:
    row = Facility(name="Sakura Visiting Nursing", facility_code="1312345678", capabilities=["24h_support"])
    db.add(row)
    db.commit()
    return row


@pytest.fixture
def patient(db: Session, facility: Facility) -> Patient:
    """Medical-insurance patient with a card and a doctor order covering 2025"""
    row = Patient(
        facility_id=facility.id,
        patient_number="P-0001",
        full_name="Yamada Hanako",
        date_of_birth=date(1940, 4, 1),
        insurance_type="medical",
    )
    db.add(row)
    db.flush()
    db.add(InsuranceCard(patient_id=row.id, card_type="medical", valid_from=date(2025, 1, 1), valid_until=None))
    db.add(DoctorOrder(patient_id=row.id, start_date=date(2025, 1, 1), end_date=date(2025, 12, 31)))
    db.add(VisitRate(insurance_type="medical", valid_from=date(2024, 6, 1), points=5550))
    db.add(VisitRate(insurance_type="long_term_care", valid_from=date(2024, 6, 1), points=821))
    db.commit()
    return row


@pytest.fixture
def add_visit(db: Session, patient: Patient, facility: Facility) -> Callable[..., VisitRecord]:
    """Factory for completed visits; times are billing-local"""

    def _add(visit_date: date, start: str | None = "10:00", end: str | None = "11:00", **fields) -> VisitRecord:
        row = VisitRecord(
            patient_id=fields.pop("patient_id", patient.id),
            facility_id=fields.pop("facility_id", facility.id),
            visit_date=visit_date,
            actual_start_time=datetime.combine(visit_date, datetime.strptime(start, "%H:%M").time()) if start else None,
            actual_end_time=datetime.combine(visit_date, datetime.strptime(end, "%H:%M").time()) if end else None,
            status=fields.pop("status", "completed"),
            **fields,
        )
        db.add(row)
        db.commit()
        return row

    return _add


@pytest.fixture
def add_rule(db: Session) -> Callable[..., BonusRule]:
    """Factory for active medical bonus rules valid from 2024-06"""

    def _add(code: str, points_spec: dict, conditions=None, **fields) -> BonusRule:
        row = BonusRule(
            code=code,
            name=fields.pop("name", code),
            version=fields.pop("version", 1),
            category=fields.pop("category", "other"),
            insurance_type=fields.pop("insurance_type", "medical"),
            valid_from=fields.pop("valid_from", date(2024, 6, 1)),
            points_spec=points_spec,
            conditions=conditions,
            **fields,
        )
        db.add(row)
        db.commit()
        return row

    return _add
