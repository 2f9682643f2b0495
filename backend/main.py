import os
import logging
from datetime import date, datetime, timedelta
from typing import Optional
from contextlib import asynccontextmanager

from fastapi import FastAPI, File, UploadFile, HTTPException, Form, Depends, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, Field, AliasChoices

from database import SessionLocal, init_db
from directory import (
    DuplicateEnrollment, normalize_code, validate_code, resolve, list_students,
    register, remove, reference_embedding, student_to_dict, lookup, update_profile,
    person_id as student_person_id,
)
from ledger import (
    AttendanceLedger, resolve_timezone, LedgerError, PersistenceUnavailable, InvalidTimestamp,
    InvalidScanInput, ConcurrentCreationLost,
)
from logger_helper import configure_logging, setup_logger, create_logging_middleware
from verification import FaceVerificationGate, decode_image, decode_base64_image, encode_jpeg

# Configuration
LEDGER_TIMEZONE = os.getenv("LEDGER_TIMEZONE")
CLOCK_SKEW_TOLERANCE_MINUTES = float(os.getenv("CLOCK_SKEW_TOLERANCE_MINUTES", "5"))
SIMILARITY_THRESHOLD = float(os.getenv("SIMILARITY_THRESHOLD", "0.6"))
FACE_MODEL = os.getenv("FACE_MODEL", "buffalo_l")
USE_GPU = os.getenv("USE_GPU", "true").lower() in ("1", "true", "yes")

configure_logging()
logger = logging.getLogger(__name__)

ledger = AttendanceLedger(
    SessionLocal,
    tz=resolve_timezone(LEDGER_TIMEZONE),
    skew_tolerance=timedelta(minutes=CLOCK_SKEW_TOLERANCE_MINUTES),
)

# Loaded at startup; None until then or if the model cannot be loaded
recognizer = None


# Request Models

class ScanRequest(BaseModel):
    """
    A pre-verified scan. Field names used by the kiosk and portal clients
    (`student_id`, camelCase variants) are all accepted here so
    the ledger only ever sees one shape.
    """
    person_id: str = Field(validation_alias=AliasChoices("person_id", "personId", "student_id"))
    display_name: str = Field(validation_alias=AliasChoices("display_name", "displayName", "student_name"))
    verification_method: str = Field(
        default="qr+face",
        validation_alias=AliasChoices("verification_method", "verificationMethod"),
    )
    confidence_score: Optional[float] = Field(
        default=None,
        validation_alias=AliasChoices("confidence_score", "confidenceScore", "face_match_score"),
    )
    occurred_at: Optional[datetime] = Field(
        default=None,
        validation_alias=AliasChoices("occurred_at", "occurredAt"),
    )
    station_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("station_id", "stationId"))


class UpdateStudentRequest(BaseModel):
    """Profile changes; the enrollment code cannot be changed."""
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = None
    phone: Optional[str] = None
    class_name: Optional[str] = None
    department: Optional[str] = None
    address: Optional[str] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize resources on startup."""
    global recognizer

    init_db()
    logger.info("Database initialized")

    try:
        from recognition import FaceRecognizer
        recognizer = FaceRecognizer(model_name=FACE_MODEL, use_gpu=USE_GPU)
    except Exception as e:
        logger.error("Face recognizer unavailable, face verification disabled: %s", e)
        recognizer = None

    yield

    logger.info("Shutting down...")

app = FastAPI(
    title="Campus Entry/Exit Attendance",
    description="Student directory, kiosk scan verification and entry/exit ledger",
    version="1.0.0",
    lifespan=lifespan
)

# CORS for the portal and kiosk frontends
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

create_logging_middleware(app, setup_logger())


# Dependencies

def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_ledger() -> AttendanceLedger:
    return ledger


def get_recognizer():
    return recognizer


def require_recognizer(recognizer=Depends(get_recognizer)):
    if recognizer is None:
        raise HTTPException(status_code=503, detail="Recognizer not initialized")
    return recognizer


def ledger_http_error(e: LedgerError) -> HTTPException:
    """Translate ledger failures into HTTP errors."""
    if isinstance(e, (InvalidTimestamp, InvalidScanInput)):
        return HTTPException(status_code=422, detail=str(e))
    if isinstance(e, PersistenceUnavailable):
        return HTTPException(status_code=503, detail="Attendance store unavailable")
    if isinstance(e, ConcurrentCreationLost):
        return HTTPException(status_code=409, detail="Concurrent scan in progress, retry")
    return HTTPException(status_code=500, detail=str(e))


def parse_day(value: Optional[str], ledger: AttendanceLedger) -> date:
    if not value:
        return ledger.now().date()
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid date {value!r}, expected YYYY-MM-DD")


@app.get("/health")
async def health_check(ledger: AttendanceLedger = Depends(get_ledger), recognizer=Depends(get_recognizer)):
    """Health check endpoint."""
    info = recognizer.get_provider_info() if recognizer else {"providers": [], "using_gpu": False}
    return {
        "status": "running",
        "timezone": str(ledger.tz),
        "face_verification": recognizer is not None,
        "threshold": SIMILARITY_THRESHOLD,
        "gpu_enabled": info["using_gpu"],
        "providers": info["providers"],
    }


# Student Directory Endpoints

@app.post("/students/")
async def add_student(
    name: str = Form(...),
    enrollment_code: str = Form(...),
    file: UploadFile = File(...),
    phone: Optional[str] = Form(None),
    class_name: Optional[str] = Form(None),
    department: Optional[str] = Form(None),
    address: Optional[str] = Form(None),
    db=Depends(get_db),
    recognizer=Depends(require_recognizer),
):
    """Register a student with a reference photo."""
    code = normalize_code(enrollment_code)
    if not validate_code(code):
        raise HTTPException(status_code=400, detail=f"Invalid enrollment code {code!r}")
    if not name.strip():
        raise HTTPException(status_code=400, detail="Name is required")

    try:
        img = decode_image(await file.read())
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    faces = recognizer.detect_faces(img)
    if not faces:
        raise HTTPException(status_code=400, detail="No face detected in image")
    if len(faces) > 1:
        raise HTTPException(status_code=400, detail="Multiple faces detected. Please upload image with single face.")

    try:
        student = register(
            db, name, code, encode_jpeg(img), faces[0]["embedding"],
            phone=phone, class_name=class_name, department=department, address=address,
        )
        db.commit()
        db.refresh(student)
    except DuplicateEnrollment as e:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        db.rollback()
        logger.exception("Failed to add student")
        raise HTTPException(status_code=500, detail=f"Failed to add student: {str(e)}")

    return {"message": "Student added successfully", "student": student_to_dict(student)}


@app.get("/students/")
async def get_students(db=Depends(get_db)):
    """List registered students."""
    return {"students": [student_to_dict(s) for s in list_students(db)]}


@app.get("/students/lookup")
async def lookup_student(enrollment_code: str, phone: str, db=Depends(get_db)):
    """Student portal: find your own record by enrollment code and phone number."""
    student = lookup(db, enrollment_code, phone)
    if not student:
        raise HTTPException(status_code=404, detail="No student with that enrollment code and phone")
    return student_to_dict(student, include_photo=True)


@app.get("/students/{code}")
async def get_student(code: str, db=Depends(get_db)):
    """Resolve an enrollment code."""
    student = resolve(db, code)
    if not student:
        raise HTTPException(status_code=404, detail="Student not found")
    return student_to_dict(student, include_photo=True)


@app.put("/students/{code}")
async def update_student(code: str, request: UpdateStudentRequest, db=Depends(get_db)):
    """Edit a student's profile. The enrollment code is the identity and stays fixed."""
    student = resolve(db, code)
    if not student:
        raise HTTPException(status_code=404, detail="Student not found")

    try:
        update_profile(db, student, **request.model_dump(exclude_unset=True))
        db.commit()
        db.refresh(student)
    except ValueError as e:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(e))

    return {"message": "Student updated", "student": student_to_dict(student)}


@app.delete("/students/{code}")
async def delete_student(code: str, db=Depends(get_db), ledger: AttendanceLedger = Depends(get_ledger)):
    """Remove a student and all of their attendance records."""
    try:
        student = remove(db, code)
        if not student:
            raise HTTPException(status_code=404, detail="Student not found")
        deleted = ledger.delete_all_for_person(student_person_id(student), db=db)
        db.commit()
    except HTTPException:
        raise
    except LedgerError as e:
        db.rollback()
        raise ledger_http_error(e)
    except Exception:
        db.rollback()
        raise

    return {"message": "Student removed", "records_deleted": deleted}


# Kiosk Endpoint

@app.post("/scan/")
async def scan(
    enrollment_code: str = Form(...),
    image_base64: str = Form(...),
    source: str = Form("qr"),
    station_id: Optional[str] = Form(None),
    db=Depends(get_db),
    ledger: AttendanceLedger = Depends(get_ledger),
    recognizer=Depends(require_recognizer),
):
    """
    Kiosk flow: resolve the scanned (or typed) enrollment code, match the
    live frame against the registered photo, then record entry or exit.
    """
    if source not in ("qr", "manual"):
        raise HTTPException(status_code=400, detail="source must be 'qr' or 'manual'")

    code = normalize_code(enrollment_code)
    if not validate_code(code):
        raise HTTPException(status_code=400, detail=f"Invalid enrollment code {code!r}")

    student = resolve(db, code)
    if not student:
        raise HTTPException(status_code=404, detail="Student not found")

    try:
        frame = decode_base64_image(image_base64)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    gate = FaceVerificationGate(recognizer, SIMILARITY_THRESHOLD)
    verdict = gate.evaluate(frame, reference_embedding(student))
    if not verdict.passed:
        raise HTTPException(
            status_code=403,
            detail={"reason": verdict.reason, "confidence": verdict.confidence},
        )

    try:
        result = ledger.record_scan(
            student_person_id(student),
            student.name,
            f"{source}+face",
            confidence_score=verdict.confidence,
            station_id=station_id,
        )
    except LedgerError as e:
        raise ledger_http_error(e)

    return {**result.to_dict(), "enrollment_code": student.enrollment_code}


# Attendance Ledger Endpoints

@app.post("/attendance/")
async def record_attendance(request: ScanRequest, ledger: AttendanceLedger = Depends(get_ledger)):
    """Record a scan that was verified elsewhere."""
    try:
        result = ledger.record_scan(
            request.person_id,
            request.display_name,
            request.verification_method,
            confidence_score=request.confidence_score,
            occurred_at=request.occurred_at,
            station_id=request.station_id,
        )
    except LedgerError as e:
        raise ledger_http_error(e)
    return result.to_dict()


@app.get("/attendance/day")
async def attendance_for_day(day: Optional[str] = Query(None, alias="date"), ledger: AttendanceLedger = Depends(get_ledger)):
    """Records whose entry falls on the given local day (default today)."""
    day = parse_day(day, ledger)
    try:
        records = ledger.list_for_day(day)
    except LedgerError as e:
        raise ledger_http_error(e)
    return {"date": day.isoformat(), "records": [r.to_dict() for r in records]}


@app.get("/attendance/summary")
async def attendance_summary(day: Optional[str] = Query(None, alias="date"), ledger: AttendanceLedger = Depends(get_ledger)):
    """Entry, exit and currently-inside counts for a local day."""
    day = parse_day(day, ledger)
    try:
        return ledger.day_summary(day).to_dict()
    except LedgerError as e:
        raise ledger_http_error(e)


@app.get("/attendance/person/{person_id}")
async def attendance_for_person(
    person_id: str,
    limit: Optional[int] = None,
    ledger: AttendanceLedger = Depends(get_ledger),
):
    """A person's history, newest first."""
    try:
        records = ledger.list_for_person(person_id, limit)
    except LedgerError as e:
        raise ledger_http_error(e)
    return {"person_id": person_id, "records": [r.to_dict() for r in records]}


@app.delete("/attendance/person/{person_id}")
async def delete_attendance_for_person(person_id: str, ledger: AttendanceLedger = Depends(get_ledger)):
    """Remove all of a person's records."""
    try:
        deleted = ledger.delete_all_for_person(person_id)
    except LedgerError as e:
        raise ledger_http_error(e)
    return {"person_id": person_id, "deleted": deleted}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
