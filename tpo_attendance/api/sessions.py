"""Session management endpoints for operators."""
import io
import logging
from datetime import datetime, timedelta, timezone

from flask import Blueprint, current_app, g, request, send_file
from flask_jwt_extended import jwt_required

from tpo_attendance import limiter
from tpo_attendance.services.attendance_repository import AttendanceRepository, DuplicateSessionCodeError
from tpo_attendance.services.code_generator import (
    generate_network_token, generate_session_code, is_well_formed
)
from tpo_attendance.services.export_service import XLSX_MIMETYPE, export_attendance
from tpo_attendance.services.geo_math import Geofence
from tpo_attendance.utils.decorators import admin_required
from tpo_attendance.utils.helpers import success_response, error_response

logger = logging.getLogger(__name__)

sessions_bp = Blueprint('sessions', __name__)

MAX_CODE_ATTEMPTS = 3

def _owned_session(repository: AttendanceRepository, session_id: int):
    """Session owned by the current operator, or an error response."""
    session = repository.get_session(session_id)
    if session is None:
        return None, error_response("Session not found", 404)
    if session.created_by != g.current_user.id:
        return None, error_response("You can only manage your own sessions", 403)
    return session, None

def _parse_geofence(value):
    if value is None:
        return None
    geofence = Geofence.from_config(value)
    if not (-90 <= geofence.latitude <= 90 and -180 <= geofence.longitude <= 180):
        raise ValueError("Geofence coordinates out of range")
    if geofence.radius_meters <= 0:
        raise ValueError("Geofence radius must be positive")
    return geofence

@sessions_bp.route('/health', methods=['GET'])
def health_check():
    """Health check endpoint."""
    return success_response(message='Session service is running')

@sessions_bp.route('/codes', methods=['POST'])
@jwt_required()
@admin_required
@limiter.limit("60 per hour")
def generate_codes():
    """Draw a fresh session code and network token."""
    return success_response(
        data={
            'session_code': generate_session_code(),
            'network_token': generate_network_token()
        },
        message="Codes generated"
    )

@sessions_bp.route('', methods=['POST'])
@jwt_required()
@admin_required
def create_session():
    """Create a new attendance session."""
    data = request.get_json(silent=True) or {}
    config = current_app.config

    name = (data.get('session_name') or '').strip()
    if not name:
        return error_response("Please enter a session name", 400)

    try:
        duration = int(data.get('duration_minutes', config['SESSION_DEFAULT_DURATION_MINUTES']))
    except (TypeError, ValueError):
        return error_response("Duration must be a number of minutes", 400)
    if not config['SESSION_MIN_DURATION_MINUTES'] <= duration <= config['SESSION_MAX_DURATION_MINUTES']:
        return error_response(
            f"Duration must be between {config['SESSION_MIN_DURATION_MINUTES']} "
            f"and {config['SESSION_MAX_DURATION_MINUTES']} minutes",
            400
        )

    starts_at = None
    if data.get('starts_at'):
        try:
            starts_at = datetime.fromisoformat(data['starts_at'])
        except (TypeError, ValueError):
            return error_response("starts_at must be an ISO timestamp", 400)
        if starts_at.tzinfo is not None:
            starts_at = starts_at.astimezone(timezone.utc).replace(tzinfo=None)

    try:
        geofence = _parse_geofence(data.get('geofence'))
    except (KeyError, TypeError, ValueError) as e:
        return error_response(f"Invalid geofence: {e}", 400)

    code_length = config['SESSION_CODE_LENGTH']
    code = (data.get('session_code') or '').strip().upper()
    token = (data.get('network_token') or '').strip().upper()
    for label, value in (('Session code', code), ('Network token', token)):
        if value and not is_well_formed(value, code_length):
            return error_response(f"{label} must be {code_length} characters from A-Z and 2-9", 400)

    expires_at = (starts_at or datetime.utcnow()) + timedelta(minutes=duration)
    repository = AttendanceRepository()
    generated = not code or not token

    for attempt in range(MAX_CODE_ATTEMPTS):
        try:
            session = repository.create_session(
                name=name,
                code=code or generate_session_code(),
                token=token or generate_network_token(),
                expires_at=expires_at,
                creator_id=g.current_user.id,
                starts_at=starts_at,
                geofence=geofence
            )
            return success_response(data=session.to_dict(), message="Session created successfully!", status_code=201)
        except DuplicateSessionCodeError as e:
            if not generated:
                return error_response(str(e), 409)
            logger.warning("Generated code collided, retrying (attempt %d)", attempt + 1)

    return error_response("Could not allocate a unique session code", 409)

@sessions_bp.route('', methods=['GET'])
@jwt_required()
@admin_required
def list_sessions():
    """List the operator's sessions, newest first, with attendance counts."""
    repository = AttendanceRepository()
    sessions = []
    for session in repository.list_sessions(g.current_user.id):
        item = session.to_dict()
        item['attendance_count'] = repository.count_attendance(session.id)
        sessions.append(item)
    return success_response(data=sessions)

@sessions_bp.route('/<int:session_id>/active', methods=['PATCH'])
@jwt_required()
@admin_required
def set_active(session_id):
    """Activate or deactivate a session."""
    data = request.get_json(silent=True) or {}
    if not isinstance(data.get('is_active'), bool):
        return error_response("is_active must be true or false", 400)

    repository = AttendanceRepository()
    session, error = _owned_session(repository, session_id)
    if error:
        return error

    session = repository.set_session_active(session_id, data['is_active'])
    return success_response(
        data=session.to_dict(),
        message='Session activated' if session.is_active else 'Session deactivated'
    )

@sessions_bp.route('/<int:session_id>', methods=['DELETE'])
@jwt_required()
@admin_required
def delete_session(session_id):
    """Delete a session and every attendance record in it."""
    repository = AttendanceRepository()
    session, error = _owned_session(repository, session_id)
    if error:
        return error

    repository.delete_session(session_id)
    return success_response(message='Session deleted')

@sessions_bp.route('/<int:session_id>/attendance', methods=['GET'])
@jwt_required()
@admin_required
def list_attendance(session_id):
    """Attendance records for a session in submission order."""
    repository = AttendanceRepository()
    session, error = _owned_session(repository, session_id)
    if error:
        return error

    records = repository.list_attendance(session_id)
    return success_response(data={
        'session': session.to_dict(),
        'count': len(records),
        'records': [record.to_dict() for record in records]
    })

@sessions_bp.route('/<int:session_id>/export', methods=['GET'])
@jwt_required()
@admin_required
def export_session(session_id):
    """Download the session's attendance as an Excel sheet."""
    repository = AttendanceRepository()
    session, error = _owned_session(repository, session_id)
    if error:
        return error

    records = repository.list_attendance(session_id)
    if not records:
        return error_response("No attendance records to export", 404)

    location_aware = request.args.get('location', '').lower() in ('1', 'true', 'yes')
    filename, content = export_attendance(
        records,
        session.session_name,
        location_aware=location_aware,
        reference=current_app.config['CAMPUS_REFERENCE_POINT'],
        campus_radius_meters=current_app.config['CAMPUS_RADIUS_METERS']
    )

    return send_file(
        io.BytesIO(content),
        as_attachment=True,
        download_name=filename,
        mimetype=XLSX_MIMETYPE
    )
