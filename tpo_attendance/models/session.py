"""Attendance session guarded by a session code and a network token."""
from datetime import datetime
from typing import Optional
from tpo_attendance import db
from tpo_attendance.models.base import BaseModel
from tpo_attendance.services.geo_math import Geofence

class AttendanceSession(BaseModel):
    """A window during which students may record attendance."""

    __tablename__ = 'tpo_sessions'

    session_name = db.Column(db.String(200), nullable=False)
    session_code = db.Column(db.String(16), unique=True, nullable=False, index=True)
    network_token = db.Column(db.String(16), nullable=False)
    created_by = db.Column(db.Integer, db.ForeignKey('users.id', ondelete='CASCADE'), nullable=False)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    starts_at = db.Column(db.DateTime, nullable=True)
    expires_at = db.Column(db.DateTime, nullable=False)

    # Optional geofence
    target_latitude = db.Column(db.Float, nullable=True)
    target_longitude = db.Column(db.Float, nullable=True)
    radius_meters = db.Column(db.Float, nullable=True)

    records = db.relationship(
        'AttendanceRecord',
        backref='session',
        cascade='all, delete-orphan'
    )

    __table_args__ = (
        db.Index('idx_sessions_active', 'is_active', 'expires_at'),
    )

    def is_expired(self, now: datetime = None) -> bool:
        """Check if session is expired."""
        return (now or datetime.utcnow()) >= self.expires_at

    def accepts_attendance(self, now: datetime = None) -> bool:
        return bool(self.is_active) and not self.is_expired(now)

    @property
    def geofence(self) -> Optional[Geofence]:
        if None in (self.target_latitude, self.target_longitude, self.radius_meters):
            return None
        return Geofence(self.target_latitude, self.target_longitude, self.radius_meters)

    def to_dict(self, include_secrets: bool = True) -> dict:
        """Convert to dictionary."""
        result = {
            'id': self.id,
            'session_name': self.session_name,
            'is_active': self.is_active,
            'accepting': self.accepts_attendance(),
            'starts_at': self.starts_at.isoformat() if self.starts_at else None,
            'expires_at': self.expires_at.isoformat(),
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'created_by': self.created_by,
            'geofence': self.geofence.to_dict() if self.geofence else None
        }
        if include_secrets:
            result['session_code'] = self.session_code
            result['network_token'] = self.network_token
        return result
