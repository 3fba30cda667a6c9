
# backend/mgnrega_pulse/models/dataset.py
from sqlalchemy import Column, Integer, String, DateTime, JSON, Float, Boolean, Text, Index, UniqueConstraint
from sqlalchemy.sql import func
from mgnrega_pulse.db.database import Base


class District(Base):
    __tablename__ = "districts"
    id = Column(Integer, primary_key=True, index=True)
    district_code = Column(String(64), nullable=False, unique=True, index=True)
    district_name = Column(String(128), nullable=False)
    state_code = Column(String(32), nullable=False, index=True)
    state_name = Column(String(128), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("ix_state_district", "state_code", "district_code"),
    )


class PeriodRecord(Base):
    __tablename__ = "period_records"
    id = Column(Integer, primary_key=True, index=True)
    district_code = Column(String(64), nullable=False, index=True)
    district_name = Column(String(128), nullable=False)
    state_code = Column(String(32), nullable=False, index=True)
    state_name = Column(String(128), nullable=False)
    period_year = Column(Integer, nullable=False)
    period_month = Column(Integer, nullable=False)
    period_key = Column(Integer, nullable=False, index=True)   # year * 100 + month
    fin_year = Column(String(32), nullable=False)
    month = Column(String(8), nullable=False)
    indicators = Column(JSON, nullable=False)
    total_households_worked = Column(Float, default=0.0)
    total_expenditure = Column(Float, default=0.0)
    fetched_from = Column(String(16), nullable=False, default="api")
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False, index=True)

    __table_args__ = (
        UniqueConstraint("district_code", "period_key", name="uq_district_period"),
        Index("ix_state_updated", "state_code", "updated_at"),
    )


class IngestionAudit(Base):
    __tablename__ = "ingestion_audit"
    id = Column(Integer, primary_key=True, index=True)
    source = Column(String(32), nullable=False, index=True)
    fetched_at = Column(DateTime(timezone=True), nullable=False, index=True)
    payload = Column(JSON)
    record_count = Column(Integer, default=0)
    success = Column(Boolean)
    error_message = Column(Text)
    processing_time_ms = Column(Integer, default=0)
