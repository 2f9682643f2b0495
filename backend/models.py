"""
SQLAlchemy models for the entry/exit attendance service.
"""
from sqlalchemy import (
    Column, Integer, String, DateTime, Date, Float, LargeBinary,
    UniqueConstraint, CheckConstraint,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class Student(Base):
    """Registered student with a reference photo."""
    __tablename__ = "students"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False, index=True)
    enrollment_code = Column(String, unique=True, nullable=False, index=True)
    phone = Column(String, nullable=True, index=True)  # digits, optional leading +
    class_name = Column(String, nullable=True)
    department = Column(String, nullable=True)
    address = Column(String, nullable=True)
    photo = Column(LargeBinary, nullable=False)  # JPEG bytes
    embedding = Column(LargeBinary, nullable=True)  # float32 array as bytes
    created_at = Column(DateTime, nullable=False)


class AttendanceRecord(Base):
    """
    One entry/exit pair for a person.

    `open_day` holds the local date of `entry_time` while the record is open
    and is cleared when the exit is recorded, so the unique constraint below
    allows at most one open record per person per day.
    """
    __tablename__ = "attendance_records"
    __table_args__ = (
        UniqueConstraint("person_id", "open_day", name="uq_attendance_open_per_day"),
        CheckConstraint(
            "exit_time IS NULL OR exit_time >= entry_time",
            name="ck_attendance_exit_after_entry",
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    person_id = Column(String(64), nullable=False, index=True)
    display_name = Column(String, nullable=False)  # Denormalized snapshot
    entry_time = Column(DateTime, nullable=False, index=True)  # naive UTC
    exit_time = Column(DateTime, nullable=True)  # naive UTC
    open_day = Column(Date, nullable=True)
    verification_method = Column(String, nullable=False)
    confidence_score = Column(Float, nullable=True)
    station_id = Column(String, nullable=False, default="main_entrance")
    created_at = Column(DateTime, nullable=False)
