"""Persistence for sessions and attendance records.

The unique constraint on (session_id, device_fingerprint) is the final word on
duplicate submissions; everything upstream of it is advisory.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from tpo_attendance import db
from tpo_attendance.models.attendance import AttendanceRecord
from tpo_attendance.models.session import AttendanceSession
from tpo_attendance.services.geo_math import Geofence
from tpo_attendance.utils.validators import StudentInfo

logger = logging.getLogger(__name__)

class DuplicateSessionCodeError(Exception):
    """Session code or network token already in use by another session."""
    pass

class InsertStatus(Enum):
    OK = 'ok'
    CONFLICT = 'conflict'
    SESSION_CLOSED = 'session_closed'
    INVALID = 'invalid'

@dataclass
class InsertResult:
    status: InsertStatus
    record: Optional[AttendanceRecord] = None
    message: str = ''

    @property
    def ok(self) -> bool:
        return self.status == InsertStatus.OK

class AttendanceRepository:
    """SQLAlchemy-backed session and attendance storage."""

    # =================== SESSIONS ===================

    def create_session(
        self,
        name: str,
        code: str,
        token: str,
        expires_at: datetime,
        creator_id: int,
        starts_at: Optional[datetime] = None,
        geofence: Optional[Geofence] = None
    ) -> AttendanceSession:
        """Create a session. Raises DuplicateSessionCodeError on a reused code or token."""
        now = datetime.utcnow()
        token_in_use = AttendanceSession.query.filter(
            AttendanceSession.network_token == token,
            AttendanceSession.is_active.is_(True),
            AttendanceSession.expires_at > now
        ).first()
        if token_in_use:
            raise DuplicateSessionCodeError("Network token already in use by an active session")

        session = AttendanceSession(
            session_name=name,
            session_code=code,
            network_token=token,
            expires_at=expires_at,
            starts_at=starts_at,
            created_by=creator_id,
            is_active=True
        )
        if geofence is not None:
            session.target_latitude = geofence.latitude
            session.target_longitude = geofence.longitude
            session.radius_meters = geofence.radius_meters

        try:
            db.session.add(session)
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            raise DuplicateSessionCodeError("Session code already exists")

        logger.info("Created session %s (%s) expiring %s", session.id, name, expires_at.isoformat())
        return session

    def get_session(self, session_id: int) -> Optional[AttendanceSession]:
        return db.session.get(AttendanceSession, session_id)

    def find_active_session_by_code(self, code: str, now: Optional[datetime] = None) -> Optional[AttendanceSession]:
        """Active, unexpired session with this code, if any."""
        now = now or datetime.utcnow()
        return AttendanceSession.query.filter(
            AttendanceSession.session_code == code,
            AttendanceSession.is_active.is_(True),
            AttendanceSession.expires_at > now
        ).first()

    def list_sessions(self, creator_id: int) -> List[AttendanceSession]:
        return AttendanceSession.query.filter_by(created_by=creator_id).order_by(
            AttendanceSession.created_at.desc(), AttendanceSession.id.desc()
        ).all()

    def set_session_active(self, session_id: int, active: bool) -> Optional[AttendanceSession]:
        session = self.get_session(session_id)
        if session is None:
            return None
        session.is_active = active
        db.session.commit()
        return session

    def delete_session(self, session_id: int) -> bool:
        """Delete a session together with all of its attendance records."""
        session = self.get_session(session_id)
        if session is None:
            return False
        db.session.delete(session)
        db.session.commit()
        logger.info("Deleted session %s and its attendance records", session_id)
        return True

    def deactivate_expired_sessions(self, now: Optional[datetime] = None) -> int:
        now = now or datetime.utcnow()
        expired = AttendanceSession.query.filter(
            AttendanceSession.is_active.is_(True),
            AttendanceSession.expires_at <= now
        ).all()
        for session in expired:
            session.is_active = False
        db.session.commit()
        return len(expired)

    # =================== ATTENDANCE ===================

    def insert_attendance(
        self,
        session_id: int,
        student: StudentInfo,
        device_fingerprint: str,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
        now: Optional[datetime] = None
    ) -> InsertResult:
        """Insert a record; never overwrites an existing one."""
        now = now or datetime.utcnow()

        if not device_fingerprint:
            return InsertResult(InsertStatus.INVALID, message="Device fingerprint is required")

        session = self.get_session(session_id)
        if session is None:
            return InsertResult(InsertStatus.INVALID, message="Session not found")
        if not session.accepts_attendance(now):
            return InsertResult(InsertStatus.SESSION_CLOSED, message="Session is no longer accepting attendance")

        record = AttendanceRecord(
            session_id=session_id,
            device_fingerprint=device_fingerprint,
            latitude=latitude,
            longitude=longitude,
            recorded_at=now,
            **student.to_dict()
        )

        try:
            db.session.add(record)
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            logger.info("Duplicate attendance rejected for session %s", session_id)
            return InsertResult(
                InsertStatus.CONFLICT,
                message="You have already recorded attendance for this session"
            )
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception("Could not store attendance for session %s", session_id)
            return InsertResult(InsertStatus.INVALID, message="Could not store attendance details")

        return InsertResult(InsertStatus.OK, record=record)

    def find_attendance_by_device(self, session_id: int, device_fingerprint: str) -> Optional[AttendanceRecord]:
        return AttendanceRecord.query.filter_by(
            session_id=session_id,
            device_fingerprint=device_fingerprint
        ).first()

    def count_attendance(self, session_id: int) -> int:
        return AttendanceRecord.query.filter_by(session_id=session_id).count()

    def list_attendance(self, session_id: int) -> List[AttendanceRecord]:
        return AttendanceRecord.query.filter_by(session_id=session_id).order_by(
            AttendanceRecord.recorded_at.asc(), AttendanceRecord.id.asc()
        ).all()
