"""Student-facing attendance endpoints.

``/verify`` runs the verification flow over the signals the browser reports
and, once every check passes, hands back a short-lived verification token.
``/submit`` exchanges that token plus the student's details for a record.
"""
import logging
import secrets

from flask import Blueprint, current_app, request, make_response

from tpo_attendance import limiter
from tpo_attendance.services.attendance_repository import AttendanceRepository
from tpo_attendance.services.devtools_monitor import DevToolsMonitor, EnvironmentSnapshot, KeyEvent
from tpo_attendance.services.fingerprint_service import DeviceFingerprintEngine, ReportedSignalSource
from tpo_attendance.services.geo_math import Geofence
from tpo_attendance.services.location_verifier import LocationVerifier
from tpo_attendance.services.spoof_heuristics import ApiIntegrityProbe, ReportedLocationProvider
from tpo_attendance.services.submission_ledger import SubmissionLedger
from tpo_attendance.services.verification_state_machine import (
    Phase, Step, StepStatus, SubmissionStatus, VerificationStateMachine
)
from tpo_attendance.services.verification_token import VerificationTokenService
from tpo_attendance.utils.helpers import success_response, error_response

logger = logging.getLogger(__name__)

attendance_bp = Blueprint('attendance', __name__)

SUBMISSION_STATUS_CODES = {
    SubmissionStatus.RECORDED: 201,
    SubmissionStatus.ALREADY_RECORDED: 409,
    SubmissionStatus.INVALID: 400,
    SubmissionStatus.SESSION_CLOSED: 410,
    SubmissionStatus.NOT_READY: 410,
    SubmissionStatus.ERROR: 500
}

def _no_wait(seconds):
    # The browser already spaced its fixes apart
    pass

def _device_id():
    """Device id from the cookie, or a freshly minted one. Returns (id, is_new)."""
    device_id = request.cookies.get(current_app.config['DEVICE_COOKIE_NAME'])
    if device_id:
        return device_id, False
    return secrets.token_urlsafe(24), True

def _device_store(device_id):
    return current_app.extensions['kv_store'].scoped(f'device:{device_id}')

def _token_service():
    return VerificationTokenService(
        current_app.config['SECRET_KEY'],
        expiry_seconds=current_app.config['VERIFICATION_TOKEN_EXPIRY']
    )

def _default_geofence():
    value = current_app.config.get('DEFAULT_GEOFENCE')
    return Geofence.from_config(value) if value else None

def _as_dict(value):
    return value if isinstance(value, dict) else {}

def _location_factory(location_data):
    config = current_app.config
    integrity = dict(_as_dict(location_data.get('integrity')))
    integrity.setdefault('user_agent', request.headers.get('User-Agent', ''))

    def build(geofence):
        return LocationVerifier(
            ReportedLocationProvider(
                location_data.get('fixes'),
                supported=bool(location_data.get('supported', True))
            ),
            ApiIntegrityProbe.from_dict(integrity),
            geofence=geofence,
            sample_count=config['LOCATION_SAMPLE_COUNT'],
            sample_interval_ms=config['LOCATION_SAMPLE_INTERVAL_MS'],
            timeout_ms=config['LOCATION_TIMEOUT_MS'],
            place_label=config['GEOFENCE_LABEL'],
            sleep=_no_wait
        )

    return build

def _devtools_open(data):
    monitor = DevToolsMonitor()
    try:
        monitor.start(EnvironmentSnapshot.from_dict(_as_dict(data.get('environment'))))
    except (TypeError, ValueError):
        logger.warning("Ignoring malformed environment snapshot")
        monitor.start(EnvironmentSnapshot())
    key_events = data.get('key_events')
    for event in key_events if isinstance(key_events, list) else []:
        if isinstance(event, dict):
            monitor.handle_key(KeyEvent.from_dict(event))
    is_open = monitor.is_open
    monitor.stop()
    return is_open

def _first_failure(machine):
    for step in Step:
        state = machine.steps[step]
        if state.status == StepStatus.FAILED:
            return state.reason
    return None

def _with_device_cookie(response, device_id, is_new):
    response = make_response(response)
    if is_new:
        response.set_cookie(
            current_app.config['DEVICE_COOKIE_NAME'],
            device_id,
            max_age=current_app.config['DEVICE_COOKIE_MAX_AGE'],
            httponly=True,
            samesite='Lax',
            secure=request.is_secure
        )
    return response

@attendance_bp.route('/health', methods=['GET'])
def health_check():
    """Health check endpoint."""
    return success_response(message='Attendance service is running')

@attendance_bp.route('/client-config', methods=['GET'])
def client_config():
    """Parameters the browser needs to collect its signals."""
    config = current_app.config
    return success_response(data={
        'code_length': config['SESSION_CODE_LENGTH'],
        'location': {
            'sample_count': config['LOCATION_SAMPLE_COUNT'],
            'sample_interval_ms': config['LOCATION_SAMPLE_INTERVAL_MS'],
            'timeout_ms': config['LOCATION_TIMEOUT_MS'],
            'high_accuracy': True,
            'maximum_age': 0
        }
    })

@attendance_bp.route('/verify', methods=['POST'])
@limiter.limit("30 per minute")
def verify():
    """Run the verification steps in order, stopping at the first failure."""
    data = request.get_json(silent=True)
    if not data or not isinstance(data, dict):
        return error_response("Request body must be JSON", 400)

    config = current_app.config
    device_id, is_new = _device_id()
    store = _device_store(device_id)
    ledger = SubmissionLedger(store)

    engine = None
    device_data = data.get('device')
    if isinstance(device_data, dict):
        engine = DeviceFingerprintEngine(ReportedSignalSource(device_data), store)

    machine = VerificationStateMachine(
        AttendanceRepository(),
        fingerprint_engine=engine,
        ledger=ledger,
        location_verifier_factory=_location_factory(_as_dict(data.get('location'))),
        default_geofence=_default_geofence(),
        settle_delay=config['FORM_SETTLE_DELAY_SECONDS'],
        code_length=config['SESSION_CODE_LENGTH']
    )

    steps = [
        (Step.CODE, lambda: machine.submit_code(data.get('session_code'))),
        (Step.NETWORK, lambda: machine.submit_network_token(data.get('network_token'))),
    ]
    if 'location' in data:
        steps.append((Step.LOCATION, machine.verify_location))
    if 'device' in data:
        steps.append((Step.DEVICE, machine.verify_device))

    for step, run in steps:
        state = run()
        if state.status != StepStatus.VERIFIED:
            break

    machine.refresh()
    result = machine.to_dict()
    result['devtools_open'] = _devtools_open(data)

    if machine.device_fingerprint:
        result['device_id'] = DeviceFingerprintEngine.short_form(machine.device_fingerprint)

    if machine.phase == Phase.ALREADY_SUBMITTED:
        message = 'You have already recorded attendance for this session'
    elif machine.ready:
        location = machine.location
        result['verification_token'] = _token_service().create(
            machine.session.id,
            machine.session.session_code,
            machine.device_fingerprint,
            latitude=location.latitude if location else None,
            longitude=location.longitude if location else None
        )
        result['form_delay_ms'] = int(config['FORM_SETTLE_DELAY_SECONDS'] * 1000)
        message = 'All verifications passed'
    else:
        message = _first_failure(machine) or 'Verification incomplete'

    return _with_device_cookie(success_response(data=result, message=message), device_id, is_new)

@attendance_bp.route('/submit', methods=['POST'])
@limiter.limit("10 per minute")
def submit():
    """Record attendance for a verified device."""
    data = request.get_json(silent=True)
    if not data or not isinstance(data, dict):
        return error_response("Request body must be JSON", 400)

    ok, claims, error = _token_service().verify(data.get('verification_token'))
    if not ok:
        return error_response(error, 401)

    repository = AttendanceRepository()
    session = repository.get_session(claims['session_id'])
    if session is None or session.session_code != claims['session_code'] or not session.accepts_attendance():
        return error_response("Session is no longer accepting attendance", 410)

    device_id = request.cookies.get(current_app.config['DEVICE_COOKIE_NAME'])
    ledger = SubmissionLedger(_device_store(device_id)) if device_id else None

    machine = VerificationStateMachine.resume(
        repository,
        session,
        claims['device_fingerprint'],
        latitude=claims.get('latitude'),
        longitude=claims.get('longitude'),
        ledger=ledger
    )

    student_data = data.get('student') if isinstance(data.get('student'), dict) else data
    result = machine.submit(student_data)
    status_code = SUBMISSION_STATUS_CODES[result.status]

    if result.status == SubmissionStatus.RECORDED:
        return success_response(data=result.record.to_dict(), message=result.message, status_code=status_code)
    if result.status == SubmissionStatus.INVALID:
        return error_response(result.message, status_code, data={'errors': result.errors})
    return error_response(result.message, status_code)
