"""
Identity directory: students, their enrollment codes and reference photos.
"""
import base64
import logging
import os
import re
from datetime import datetime, timezone
from typing import List, Optional

import numpy as np
from sqlalchemy.orm import Session

from models import Student

logger = logging.getLogger(__name__)

ENROLLMENT_CODE_PATTERN = os.getenv("ENROLLMENT_CODE_PATTERN", r"^[A-Z]{3}\d{8}$")


class DuplicateEnrollment(Exception):
    """A student with this enrollment code is already registered."""


PROFILE_FIELDS = ("name", "phone", "class_name", "department", "address")


def normalize_code(raw: str) -> str:
    """Codes arrive from QR payloads and keyboards; compare them trimmed and upper-cased."""
    return (raw or "").strip().upper()


def validate_code(code: str, pattern: str = ENROLLMENT_CODE_PATTERN) -> bool:
    return re.match(pattern, code) is not None


def normalize_phone(raw: Optional[str]) -> Optional[str]:
    """Digits only, keeping a leading `+`; None for blank input."""
    if not raw or not raw.strip():
        return None
    raw = raw.strip()
    digits = re.sub(r"\D", "", raw)
    if not digits:
        return None
    return f"+{digits}" if raw.startswith("+") else digits


def resolve(db: Session, code: str) -> Optional[Student]:
    return db.query(Student).filter(Student.enrollment_code == normalize_code(code)).first()


def lookup(db: Session, code: str, phone: str) -> Optional[Student]:
    """Student portal sign-in: the code and the phone on file must both match."""
    phone = normalize_phone(phone)
    if not phone:
        return None
    return db.query(Student).filter(
        Student.enrollment_code == normalize_code(code),
        Student.phone == phone,
    ).first()


def list_students(db: Session) -> List[Student]:
    return db.query(Student).order_by(Student.name).all()


def register(db: Session, name: str, code: str, photo: bytes,
             embedding: Optional[np.ndarray], **profile) -> Student:
    """Add a student. The caller commits."""
    code = normalize_code(code)
    if resolve(db, code):
        raise DuplicateEnrollment(f"Student with enrollment code {code} already exists")

    student = Student(
        name=name.strip(),
        enrollment_code=code,
        phone=normalize_phone(profile.get("phone")),
        class_name=profile.get("class_name"),
        department=profile.get("department"),
        address=profile.get("address"),
        photo=photo,
        embedding=embedding.astype(np.float32).tobytes() if embedding is not None else None,
        created_at=datetime.now(timezone.utc).replace(tzinfo=None),
    )
    db.add(student)
    db.flush()
    logger.info("Registered student %s (%s)", student.name, code)
    return student


def update_profile(db: Session, student: Student, **changes) -> Student:
    """
    Apply profile changes. The enrollment code is immutable once issued, so
    only `PROFILE_FIELDS` are accepted. The caller commits.
    """
    unknown = set(changes) - set(PROFILE_FIELDS)
    if unknown:
        raise ValueError(f"Cannot update {', '.join(sorted(unknown))}")

    for field, value in changes.items():
        if field == "name":
            if not value or not value.strip():
                raise ValueError("Name is required")
            value = value.strip()
        elif field == "phone":
            value = normalize_phone(value)
        setattr(student, field, value)

    db.flush()
    logger.info("Updated student %s: %s", student.enrollment_code, ", ".join(sorted(changes)))
    return student


def reference_embedding(student: Student) -> Optional[np.ndarray]:
    if student.embedding is None:
        return None
    return np.frombuffer(student.embedding, dtype=np.float32)


def person_id(student: Student) -> str:
    """Identifier the attendance ledger files this student's records under."""
    return str(student.id)


def student_to_dict(student: Student, include_photo: bool = False) -> dict:
    data = {
        "id": student.id,
        "person_id": person_id(student),
        "name": student.name,
        "enrollment_code": student.enrollment_code,
        "phone": student.phone,
        "class_name": student.class_name,
        "department": student.department,
        "address": student.address,
        "has_embedding": student.embedding is not None,
        "created_at": student.created_at.isoformat(),
    }
    if include_photo:
        data["photo"] = f"data:image/jpeg;base64,{base64.b64encode(student.photo).decode('utf-8')}"
    return data


def remove(db: Session, code: str) -> Optional[Student]:
    """Delete a student by code and return it, or None. The caller commits."""
    student = resolve(db, code)
    if student:
        db.delete(student)
        db.flush()
        logger.info("Removed student %s (%s)", student.name, student.enrollment_code)
    return student
