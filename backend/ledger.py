"""
Attendance ledger: decides entry vs exit for each accepted scan and answers
day and per-person queries.

The ledger keeps no state between calls. Every operation opens a session
from the supplied factory, and the "one open record per person per day"
rule is enforced by the database (see `models.AttendanceRecord`), so any
number of request workers or processes can share one store.
"""
import logging
from contextlib import contextmanager
from dataclasses import dataclass, asdict
from datetime import datetime, date, time, timedelta, timezone, tzinfo
from enum import Enum
from numbers import Real
from typing import Callable, Iterator, List, Optional, Tuple

from dateutil.tz import gettz
from sqlalchemy import exc, func, update
from sqlalchemy.orm import Session

from models import AttendanceRecord

logger = logging.getLogger(__name__)

DEFAULT_SKEW_TOLERANCE = timedelta(minutes=5)
DEFAULT_STATION = "main_entrance"

# Store unreachable, as opposed to constraint violations
STORE_ERRORS = (exc.OperationalError, exc.InterfaceError, exc.TimeoutError)


class LedgerError(Exception):
    """Base class for ledger failures."""


class PersistenceUnavailable(LedgerError):
    """The backing store could not be reached."""


class InvalidTimestamp(LedgerError):
    """A scan time is too far in the future or precedes the open entry."""


class InvalidScanInput(LedgerError, ValueError):
    """Scan arguments are malformed."""


class ConcurrentCreationLost(LedgerError):
    """Another scan for the same person won the conditional write."""


class Outcome(str, Enum):
    ENTRY = "entry"
    EXIT = "exit"


@dataclass(frozen=True)
class RecordView:
    """Detached, read-only copy of an attendance row in local time."""
    record_id: int
    person_id: str
    display_name: str
    entry_time: datetime
    exit_time: Optional[datetime]
    verification_method: str
    confidence_score: Optional[float]
    station_id: str

    @property
    def is_open(self) -> bool:
        return self.exit_time is None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["entry_time"] = self.entry_time.isoformat()
        data["exit_time"] = self.exit_time.isoformat() if self.exit_time else None
        return data


@dataclass(frozen=True)
class ScanResult:
    outcome: Outcome
    record: RecordView

    def to_dict(self) -> dict:
        data = self.record.to_dict()
        data["outcome"] = self.outcome.value
        return data


@dataclass(frozen=True)
class DaySummary:
    day: date
    entries: int
    exits: int
    inside: int

    def to_dict(self) -> dict:
        return {
            "date": self.day.isoformat(),
            "entries": self.entries,
            "exits": self.exits,
            "inside": self.inside,
        }


def resolve_timezone(name: Optional[str] = None) -> tzinfo:
    """
    IANA zone by name, or the host zone (`TZ`, then /etc/localtime) with its
    full DST rules when `name` is empty.
    """
    zone = gettz(name) if name else gettz()
    if zone is None:
        raise ValueError(f"Unknown timezone {name!r}")
    return zone


def localize(instant: datetime, tz: tzinfo) -> datetime:
    """Interpret naive instants as wall-clock time in `tz`; convert aware ones."""
    if instant.tzinfo is None:
        return instant.replace(tzinfo=tz)
    return instant.astimezone(tz)


def day_window(day: date, tz: tzinfo) -> Tuple[datetime, datetime]:
    """[local midnight of `day`, local midnight of the next day)."""
    start = datetime.combine(day, time.min, tzinfo=tz)
    end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=tz)
    return start, end


def local_day_window(instant: datetime, tz: tzinfo) -> Tuple[datetime, datetime]:
    """Local calendar-day boundaries containing `instant`."""
    return day_window(localize(instant, tz).date(), tz)


def to_storage(instant: datetime) -> datetime:
    """Aware instant -> naive UTC, the column representation."""
    return instant.astimezone(timezone.utc).replace(tzinfo=None)


def from_storage(value: Optional[datetime], tz: tzinfo) -> Optional[datetime]:
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc).astimezone(tz)


class AttendanceLedger:
    """
    Entry/exit ledger over a SQLAlchemy session factory.

    Args:
        session_factory: callable returning a new `Session`
        tz: timezone whose midnight bounds a "day"; defaults to the host zone
        skew_tolerance: how far in the future a supplied scan time may be
        clock: returns the current aware instant; injectable for tests
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        tz: Optional[tzinfo] = None,
        skew_tolerance: timedelta = DEFAULT_SKEW_TOLERANCE,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.session_factory = session_factory
        self.tz = tz or resolve_timezone()
        self.skew_tolerance = skew_tolerance
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def now(self) -> datetime:
        return localize(self.clock(), self.tz)

    @contextmanager
    def _session(self) -> Iterator[Session]:
        db = self.session_factory()
        try:
            yield db
        except STORE_ERRORS as e:
            db.rollback()
            logger.error("Attendance store unavailable: %s", e)
            raise PersistenceUnavailable(str(e)) from e
        finally:
            db.close()

    def _view(self, row: AttendanceRecord) -> RecordView:
        return RecordView(
            record_id=row.id,
            person_id=row.person_id,
            display_name=row.display_name,
            entry_time=from_storage(row.entry_time, self.tz),
            exit_time=from_storage(row.exit_time, self.tz),
            verification_method=row.verification_method,
            confidence_score=row.confidence_score,
            station_id=row.station_id,
        )

    # Scans

    def record_scan(
        self,
        person_id: str,
        display_name: str,
        verification_method: str,
        confidence_score: Optional[float] = None,
        occurred_at: Optional[datetime] = None,
        station_id: Optional[str] = None,
    ) -> ScanResult:
        """
        Record an accepted scan: closes today's open record for the person if
        there is one, otherwise opens a new one.
        """
        _validate_scan(person_id, display_name, verification_method, confidence_score, station_id)

        now = self.now()
        occurred = localize(occurred_at, self.tz) if occurred_at is not None else now
        if occurred - now > self.skew_tolerance:
            raise InvalidTimestamp(
                f"Scan time {occurred.isoformat()} is more than "
                f"{self.skew_tolerance} ahead of {now.isoformat()}"
            )

        try:
            return self._apply_scan(person_id, display_name, verification_method,
                                    confidence_score, occurred, station_id or DEFAULT_STATION)
        except ConcurrentCreationLost:
            logger.info("Concurrent scan for person %s, re-evaluating", person_id)
            return self._apply_scan(person_id, display_name, verification_method,
                                    confidence_score, occurred, station_id or DEFAULT_STATION)

    def _find_open(self, db: Session, person_id: str, day: date) -> Optional[AttendanceRecord]:
        return db.query(AttendanceRecord).filter(
            AttendanceRecord.person_id == person_id,
            AttendanceRecord.open_day == day,
            AttendanceRecord.exit_time.is_(None),
        ).first()

    def _find_open_after(self, db: Session, person_id: str, occurred: datetime) -> Optional[AttendanceRecord]:
        """Any open record of the person entered after `occurred`, on whatever day."""
        return db.query(AttendanceRecord).filter(
            AttendanceRecord.person_id == person_id,
            AttendanceRecord.exit_time.is_(None),
            AttendanceRecord.entry_time > to_storage(occurred),
        ).order_by(AttendanceRecord.entry_time.desc()).first()

    def _apply_scan(self, person_id, display_name, verification_method,
                    confidence_score, occurred: datetime, station_id: str) -> ScanResult:
        day_start, _ = local_day_window(occurred, self.tz)
        day = day_start.date()

        with self._session() as db:
            later_open = self._find_open_after(db, person_id, occurred)
            if later_open:
                raise InvalidTimestamp(
                    f"Scan at {occurred.isoformat()} precedes open entry at "
                    f"{from_storage(later_open.entry_time, self.tz).isoformat()}"
                )

            open_record = self._find_open(db, person_id, day)

            if open_record:
                entry_time = from_storage(open_record.entry_time, self.tz)
                if occurred < entry_time:
                    raise InvalidTimestamp(
                        f"Exit at {occurred.isoformat()} precedes entry at {entry_time.isoformat()}"
                    )

                result = db.execute(
                    update(AttendanceRecord)
                    .where(
                        AttendanceRecord.id == open_record.id,
                        AttendanceRecord.exit_time.is_(None),
                    )
                    .values(exit_time=to_storage(occurred), open_day=None)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    db.rollback()
                    raise ConcurrentCreationLost(f"Record {open_record.id} was closed concurrently")
                db.commit()
                db.refresh(open_record)

                logger.info("Exit recorded for %s (record %s)", person_id, open_record.id)
                return ScanResult(Outcome.EXIT, self._view(open_record))

            record = AttendanceRecord(
                person_id=person_id,
                display_name=display_name,
                entry_time=to_storage(occurred),
                exit_time=None,
                open_day=day,
                verification_method=verification_method,
                confidence_score=confidence_score,
                station_id=station_id,
                created_at=to_storage(self.now()),
            )
            db.add(record)
            try:
                db.commit()
            except exc.IntegrityError as e:
                db.rollback()
                raise ConcurrentCreationLost(
                    f"Open record for {person_id} on {day} already exists"
                ) from e

            logger.info("Entry recorded for %s (record %s)", person_id, record.id)
            return ScanResult(Outcome.ENTRY, self._view(record))

    # Queries

    def list_for_day(self, day: date) -> List[RecordView]:
        """Records whose entry falls on the local `day`, newest entry first."""
        start, end = day_window(day, self.tz)
        with self._session() as db:
            rows = db.query(AttendanceRecord).filter(
                AttendanceRecord.entry_time >= to_storage(start),
                AttendanceRecord.entry_time < to_storage(end),
            ).order_by(AttendanceRecord.entry_time.desc(), AttendanceRecord.id.desc()).all()
            return [self._view(row) for row in rows]

    def list_for_person(self, person_id: str, limit: Optional[int] = None) -> List[RecordView]:
        """A person's records, newest first. Unknown people yield an empty list."""
        if limit is not None and (isinstance(limit, bool) or not isinstance(limit, int) or limit < 1):
            raise InvalidScanInput(f"limit must be a positive integer, got {limit!r}")

        with self._session() as db:
            query = db.query(AttendanceRecord)\
                .filter(AttendanceRecord.person_id == person_id)\
                .order_by(AttendanceRecord.entry_time.desc(), AttendanceRecord.id.desc())
            if limit is not None:
                query = query.limit(limit)
            return [self._view(row) for row in query.all()]

    def day_summary(self, day: date) -> DaySummary:
        start, end = day_window(day, self.tz)
        with self._session() as db:
            in_day = (
                AttendanceRecord.entry_time >= to_storage(start),
                AttendanceRecord.entry_time < to_storage(end),
            )
            entries = db.query(func.count(AttendanceRecord.id)).filter(*in_day).scalar()
            inside = db.query(func.count(AttendanceRecord.id)).filter(
                *in_day, AttendanceRecord.exit_time.is_(None)
            ).scalar()
        return DaySummary(day=day, entries=entries, exits=entries - inside, inside=inside)

    # Administration

    def delete_all_for_person(self, person_id: str, db: Optional[Session] = None) -> int:
        """
        Remove every record of a person; returns how many were removed.

        When `db` is given the delete joins that session's transaction and the
        caller commits, so it can be made atomic with removing the student.
        """
        if db is not None:
            try:
                deleted = _delete_rows(db, person_id)
            except STORE_ERRORS as e:
                raise PersistenceUnavailable(str(e)) from e
        else:
            with self._session() as db:
                deleted = _delete_rows(db, person_id)
                db.commit()

        if deleted:
            logger.info("Deleted %d attendance records for %s", deleted, person_id)
        return deleted


def _delete_rows(db: Session, person_id: str) -> int:
    return db.query(AttendanceRecord)\
        .filter(AttendanceRecord.person_id == person_id)\
        .delete(synchronize_session=False)


def _validate_scan(person_id, display_name, verification_method, confidence_score, station_id):
    if not isinstance(person_id, str) or not person_id.strip():
        raise InvalidScanInput("person_id must be a non-empty string")
    if not isinstance(display_name, str):
        raise InvalidScanInput("display_name must be a string")
    if not isinstance(verification_method, str) or not verification_method.strip():
        raise InvalidScanInput("verification_method must be a non-empty string")
    if confidence_score is not None and (
        isinstance(confidence_score, bool) or not isinstance(confidence_score, Real)
    ):
        raise InvalidScanInput("confidence_score must be a number")
    if station_id is not None and not isinstance(station_id, str):
        raise InvalidScanInput("station_id must be a string")
