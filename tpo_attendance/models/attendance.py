"""Attendance record model."""
from datetime import datetime
from tpo_attendance import db

class AttendanceRecord(db.Model):
    """One student's attendance for one session, bound to one device."""

    __tablename__ = 'attendance_records'

    id = db.Column(db.Integer, primary_key=True)
    session_id = db.Column(
        db.Integer,
        db.ForeignKey('tpo_sessions.id', ondelete='CASCADE'),
        nullable=False,
        index=True
    )

    # Student identity
    student_name = db.Column(db.String(100), nullable=False)
    uid = db.Column(db.String(20), nullable=False)
    branch = db.Column(db.String(100), nullable=False)
    division = db.Column(db.String(10), nullable=False)
    batch = db.Column(db.String(10), nullable=False)
    room = db.Column(db.String(10), nullable=False)

    device_fingerprint = db.Column(db.String(64), nullable=False)

    # Location where the student submitted from
    latitude = db.Column(db.Float, nullable=True)
    longitude = db.Column(db.Float, nullable=True)

    recorded_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        db.UniqueConstraint('session_id', 'device_fingerprint', name='uq_attendance_session_device'),
    )

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'session_id': self.session_id,
            'student_name': self.student_name,
            'uid': self.uid,
            'branch': self.branch,
            'division': self.division,
            'batch': self.batch,
            'room': self.room,
            'device_fingerprint': self.device_fingerprint,
            'latitude': self.latitude,
            'longitude': self.longitude,
            'recorded_at': self.recorded_at.isoformat() if self.recorded_at else None
        }

    def __repr__(self):
        return f'<AttendanceRecord {self.session_id}-{self.uid}>'
