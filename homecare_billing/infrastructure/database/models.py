"""SQLAlchemy ORM models for the billing schema"""

import uuid
from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func

Base = declarative_base()


class Facility(Base):
    """Visiting-nursing station"""

    __tablename__ = "facility"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(Text, nullable=False)
    facility_code = Column(Text, nullable=True)
    unit_price = Column(Numeric(6, 2), nullable=True)  # yen per long-term-care unit
    capabilities = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())


class Patient(Base):
    __tablename__ = "patient"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    facility_id = Column(Uuid, ForeignKey("facility.id"), nullable=False, index=True)
    patient_number = Column(Text, nullable=True)
    full_name = Column(Text, nullable=True)
    date_of_birth = Column(Date, nullable=True)
    insurance_type = Column(Text, nullable=False)  # medical | long_term_care
    building_id = Column(Uuid, nullable=True)
    death_date = Column(Date, nullable=True)
    death_place_code = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    special_management_periods = relationship(
        "SpecialManagementPeriod", back_populates="patient", cascade="all, delete-orphan"
    )


class SpecialManagementPeriod(Base):
    """Special management eligibility window, end exclusive"""

    __tablename__ = "special_management_period"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    patient_id = Column(Uuid, ForeignKey("patient.id", ondelete="CASCADE"), nullable=False, index=True)
    category = Column(Text, nullable=False)
    tier = Column(Text, nullable=True)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=True)

    patient = relationship("Patient", back_populates="special_management_periods")


class InsuranceCard(Base):
    __tablename__ = "insurance_card"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    patient_id = Column(Uuid, ForeignKey("patient.id", ondelete="CASCADE"), nullable=False, index=True)
    card_type = Column(Text, nullable=False)  # medical | long_term_care
    valid_from = Column(Date, nullable=False)
    valid_until = Column(Date, nullable=True)


class DoctorOrder(Base):
    __tablename__ = "doctor_order"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    patient_id = Column(Uuid, ForeignKey("patient.id", ondelete="CASCADE"), nullable=False, index=True)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)


class VisitRecord(Base):
    """Nursing visit record; written by the record-keeping side, read-only here"""

    __tablename__ = "visit_record"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    patient_id = Column(Uuid, ForeignKey("patient.id"), nullable=False, index=True)
    facility_id = Column(Uuid, ForeignKey("facility.id"), nullable=False, index=True)
    nurse_id = Column(Uuid, nullable=True)
    visit_date = Column(Date, nullable=False, index=True)
    actual_start_time = Column(DateTime(timezone=True), nullable=True)
    actual_end_time = Column(DateTime(timezone=True), nullable=True)
    status = Column(Text, nullable=False, default="draft")
    is_terminal_care = Column(Boolean, nullable=False, default=False)
    is_discharge_date = Column(Boolean, nullable=False, default=False)
    is_emergency = Column(Boolean, nullable=False, default=False)
    is_first_visit_of_plan = Column(Boolean, nullable=False, default=False)
    vital_signs = Column(JSON, nullable=True)
    deleted_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())


class BonusRule(Base):
    """Versioned bonus rule; superseded rather than edited"""

    __tablename__ = "bonus_rule"
    __table_args__ = (UniqueConstraint("code", "version", name="uq_bonus_rule_code_version"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    code = Column(Text, nullable=False, index=True)
    name = Column(Text, nullable=False)
    version = Column(Integer, nullable=False, default=1)
    category = Column(Text, nullable=False)
    insurance_type = Column(Text, nullable=False)
    facility_id = Column(Uuid, ForeignKey("facility.id"), nullable=True)  # NULL = every facility
    valid_from = Column(Date, nullable=False)
    valid_to = Column(Date, nullable=True)
    points_spec = Column(JSON, nullable=False)
    conditions = Column(JSON, nullable=True)
    monthly_limit = Column(Integer, nullable=True)
    display_order = Column(Integer, nullable=False, default=999)
    cannot_combine_with = Column(JSON, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    superseded_by_id = Column(Uuid, ForeignKey("bonus_rule.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())


class VisitRate(Base):
    """Base per-visit points"""

    __tablename__ = "visit_rate"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    insurance_type = Column(Text, nullable=False)
    facility_id = Column(Uuid, ForeignKey("facility.id"), nullable=True)
    valid_from = Column(Date, nullable=False)
    valid_to = Column(Date, nullable=True)
    points = Column(Integer, nullable=False)


class MonthlyReceipt(Base):
    """Per patient, facility, month and insurance type billing aggregate"""

    __tablename__ = "monthly_receipt"
    __table_args__ = (
        UniqueConstraint(
            "patient_id", "facility_id", "target_year", "target_month", "insurance_type",
            name="uq_monthly_receipt_key",
        ),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    patient_id = Column(Uuid, ForeignKey("patient.id"), nullable=False, index=True)
    facility_id = Column(Uuid, ForeignKey("facility.id"), nullable=False)
    target_year = Column(Integer, nullable=False)
    target_month = Column(Integer, nullable=False)
    insurance_type = Column(Text, nullable=False)
    visit_count = Column(Integer, nullable=False, default=0)
    base_visit_points = Column(Integer, nullable=False, default=0)
    category_subtotals = Column(JSON, nullable=False, default=dict)
    grand_total_points = Column(Integer, nullable=False, default=0)
    grand_total_amount = Column(Integer, nullable=False, default=0)
    is_confirmed = Column(Boolean, nullable=False, default=False)
    is_sent = Column(Boolean, nullable=False, default=False)
    has_errors = Column(Boolean, nullable=False, default=False)
    has_warnings = Column(Boolean, nullable=False, default=False)
    errors = Column(JSON, nullable=False, default=list)
    warnings = Column(JSON, nullable=False, default=list)
    confirmed_at = Column(DateTime(timezone=True), nullable=True)
    confirmed_by = Column(Text, nullable=True)
    sent_at = Column(DateTime(timezone=True), nullable=True)
    last_calculated_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    applications = relationship("BonusApplication", back_populates="receipt", cascade="all, delete-orphan")


class BonusApplication(Base):
    """One applied bonus; at most one per (visit record, rule)"""

    __tablename__ = "bonus_application"
    __table_args__ = (
        UniqueConstraint("visit_record_id", "bonus_rule_id", name="uq_bonus_application_record_rule"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    receipt_id = Column(Uuid, ForeignKey("monthly_receipt.id", ondelete="CASCADE"), nullable=False, index=True)
    visit_record_id = Column(Uuid, ForeignKey("visit_record.id"), nullable=False)
    bonus_rule_id = Column(Uuid, ForeignKey("bonus_rule.id"), nullable=False)
    patient_id = Column(Uuid, nullable=False, index=True)
    visit_date = Column(Date, nullable=False)
    insurance_type = Column(Text, nullable=False)
    rule_code = Column(Text, nullable=False)
    rule_version = Column(Integer, nullable=False)
    category = Column(Text, nullable=False)
    points = Column(Integer, nullable=False)
    explanation = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    receipt = relationship("MonthlyReceipt", back_populates="applications")
