"""Tests for the sequential verification flow."""
from datetime import datetime, timedelta

import pytest

from tpo_attendance.models import AttendanceSession
from tpo_attendance.services.attendance_repository import InsertResult, InsertStatus
from tpo_attendance.services.fingerprint_service import DeviceFingerprintEngine, ReportedSignalSource
from tpo_attendance.services.geo_math import Geofence
from tpo_attendance.services.kv_store import MemoryStore
from tpo_attendance.services.location_verifier import LocationVerifier
from tpo_attendance.services.spoof_heuristics import ApiIntegrityProbe, ReportedLocationProvider
from tpo_attendance.services.submission_ledger import SubmissionLedger
from tpo_attendance.services.verification_state_machine import (
    DEVICE_MISMATCH, INVALID_CODE, INVALID_CODE_FORMAT, INVALID_TOKEN, LOCATION_ERROR, LOOKUP_FAILED, MISSING_TOKEN,
    Phase, Step, StepInProgressError, StepNotEligibleError, StepStatus, SubmissionStatus,
    VerificationStateMachine
)

NOW = datetime(2024, 3, 5, 10, 0)
NATIVE = ApiIntegrityProbe('function getCurrentPosition() { [native code] }', 'Mozilla/5.0')

class FakeRepository:
    """In-memory stand-in for AttendanceRepository."""

    def __init__(self, sessions=(), fail_lookup=False):
        self.sessions = {s.session_code: s for s in sessions}
        self.records = []
        self.fail_lookup = fail_lookup

    def find_active_session_by_code(self, code, now=None):
        if self.fail_lookup:
            raise RuntimeError('database unavailable')
        session = self.sessions.get(code)
        if session and session.is_active and session.expires_at > now:
            return session
        return None

    def find_attendance_by_device(self, session_id, fingerprint):
        for record in self.records:
            if record['session_id'] == session_id and record['device_fingerprint'] == fingerprint:
                return record
        return None

    def insert_attendance(self, session_id, student, device_fingerprint, latitude=None, longitude=None, now=None):
        if self.find_attendance_by_device(session_id, device_fingerprint):
            return InsertResult(InsertStatus.CONFLICT, message='duplicate')
        record = dict(student.to_dict(), session_id=session_id, device_fingerprint=device_fingerprint,
                      latitude=latitude, longitude=longitude)
        self.records.append(record)
        return InsertResult(InsertStatus.OK, record=record)

def make_session(starts_at=None, minutes=60, geofence=None, **kwargs):
    session = AttendanceSession(
        id=kwargs.pop('id', 1),
        session_name='Placement Talk',
        session_code=kwargs.pop('code', 'ABCD2345'),
        network_token=kwargs.pop('token', 'NETW2345'),
        created_by=1,
        is_active=True,
        starts_at=starts_at,
        expires_at=(starts_at or NOW) + timedelta(minutes=minutes)
    )
    if geofence:
        session.target_latitude = geofence.latitude
        session.target_longitude = geofence.longitude
        session.radius_meters = geofence.radius_meters
    return session

def good_fixes(lat=19.1231, lng=72.8361):
    return [{'latitude': lat + i * 0.00001, 'longitude': lng, 'accuracy': 12 + i, 'altitude': 8.0} for i in range(3)]

def location_factory(fixes):
    def build(geofence):
        return LocationVerifier(ReportedLocationProvider(fixes), NATIVE, geofence=geofence, sample_interval_ms=0)
    return build

class Clock:
    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)

@pytest.fixture
def store():
    return MemoryStore()

@pytest.fixture
def clock():
    return Clock()

@pytest.fixture
def build_machine(device_payload, store, clock):
    def _build(repository=None, fixes=None, payload=None, **kwargs):
        repository = repository or FakeRepository([make_session()])
        engine = DeviceFingerprintEngine(ReportedSignalSource(payload or device_payload), store)
        return VerificationStateMachine(
            repository,
            fingerprint_engine=engine,
            ledger=SubmissionLedger(store),
            location_verifier_factory=kwargs.pop(
                'location_verifier_factory', location_factory(good_fixes() if fixes is None else fixes)
            ),
            settle_delay=kwargs.pop('settle_delay', 0),
            clock=clock,
            **kwargs
        )
    return _build

def run_all(machine, code='ABCD2345', token='NETW2345'):
    machine.submit_code(code)
    machine.submit_network_token(token)
    machine.verify_location()
    machine.verify_device()
    return machine

def test_initial_state(build_machine):
    machine = build_machine()
    assert machine.phase == Phase.VERIFYING
    assert machine.status(Step.CODE) == StepStatus.PENDING
    assert machine.status(Step.TIME) == StepStatus.VERIFIED
    assert machine.is_eligible(Step.CODE)
    assert not machine.is_eligible(Step.NETWORK)
    assert not machine.ready

def test_steps_must_run_in_order(build_machine):
    machine = build_machine()
    with pytest.raises(StepNotEligibleError):
        machine.submit_network_token('NETW2345')
    with pytest.raises(StepNotEligibleError):
        machine.verify_device()

def test_step_in_progress_cannot_be_retriggered(build_machine):
    machine = build_machine()
    machine.steps[Step.CODE].status = StepStatus.VERIFYING
    with pytest.raises(StepInProgressError):
        machine.submit_code('ABCD2345')

def test_happy_path_shows_form(build_machine):
    machine = run_all(build_machine())
    assert machine.ready
    assert machine.form_visible
    assert machine.location.latitude == pytest.approx(19.12312)
    assert machine.steps[Step.DEVICE].detail['first_visit'] is True

def test_form_waits_for_settle_delay(build_machine, clock):
    machine = run_all(build_machine(settle_delay=0.5))
    assert machine.ready
    assert machine.phase == Phase.VERIFYING

    clock.advance(0.5)
    assert machine.refresh() == Phase.FORM

def test_code_is_normalised(build_machine):
    machine = build_machine()
    assert machine.submit_code('  abcd2345 ').status == StepStatus.VERIFIED
    assert machine.steps[Step.CODE].detail['session_name'] == 'Placement Talk'

def test_bad_codes(build_machine):
    machine = build_machine()
    assert machine.submit_code('ABC').reason == INVALID_CODE_FORMAT
    assert machine.submit_code('ZZZZ2222').reason == INVALID_CODE
    assert machine.session is None

def test_lookup_error_is_reported(build_machine):
    machine = build_machine(repository=FakeRepository(fail_lookup=True))
    assert machine.submit_code('ABCD2345').reason == LOOKUP_FAILED

def test_non_string_code_fails_format_check(build_machine):
    machine = build_machine()
    state = machine.submit_code(12345678)
    assert state.status == StepStatus.FAILED
    assert state.reason == INVALID_CODE_FORMAT

def test_non_string_network_token_is_missing(build_machine):
    machine = build_machine()
    machine.submit_code('ABCD2345')
    state = machine.submit_network_token(12345)
    assert state.status == StepStatus.FAILED
    assert state.reason == MISSING_TOKEN

def test_wrong_network_token(build_machine):
    machine = build_machine()
    machine.submit_code('ABCD2345')
    state = machine.submit_network_token('WRNG2345')
    assert state.status == StepStatus.FAILED
    assert state.reason == INVALID_TOKEN
    assert not machine.is_eligible(Step.LOCATION)

def test_network_token_is_case_insensitive(build_machine):
    machine = build_machine()
    machine.submit_code('ABCD2345')
    assert machine.submit_network_token('netw2345').status == StepStatus.VERIFIED

def test_retrying_a_step_resets_later_steps(build_machine):
    machine = run_all(build_machine())
    assert machine.ready

    machine.submit_network_token('NETW2345')
    assert machine.status(Step.LOCATION) == StepStatus.PENDING
    assert machine.status(Step.DEVICE) == StepStatus.PENDING
    assert machine.phase == Phase.VERIFYING

def test_session_geofence_is_enforced(build_machine):
    campus = Geofence(19.1231, 72.8361, 200)
    repository = FakeRepository([make_session(geofence=campus)])
    machine = build_machine(repository=repository, fixes=good_fixes(lat=19.2))
    machine.submit_code('ABCD2345')
    machine.submit_network_token('NETW2345')

    state = machine.verify_location()
    assert state.status == StepStatus.FAILED
    assert 'm away from' in state.reason
    assert not machine.is_eligible(Step.DEVICE)

def test_spoofed_location_keeps_failed_step_status(build_machine):
    static = [{'latitude': 19.1231, 'longitude': 72.8361, 'accuracy': 5, 'altitude': 3.0}] * 3
    machine = build_machine(fixes=static)
    machine.submit_code('ABCD2345')
    machine.submit_network_token('NETW2345')

    state = machine.verify_location()
    assert state.status == StepStatus.FAILED
    assert state.detail['location']['status'] == 'spoofed'

    reported = machine.to_dict()['steps']['location']
    assert reported['status'] == 'failed'
    assert reported['location']['verified'] is False

def test_crashing_location_check_fails_the_step(build_machine):
    def explode(geofence):
        raise RuntimeError('sensor unavailable')

    machine = build_machine(location_verifier_factory=explode)
    machine.submit_code('ABCD2345')
    machine.submit_network_token('NETW2345')

    state = machine.verify_location()
    assert state.status == StepStatus.FAILED
    assert state.reason == LOCATION_ERROR
    assert machine.verify_location().status == StepStatus.FAILED

def test_default_geofence_applies_when_session_has_none(build_machine):
    machine = build_machine(fixes=good_fixes(lat=19.2), default_geofence=Geofence(19.1231, 72.8361, 200))
    machine.submit_code('ABCD2345')
    machine.submit_network_token('NETW2345')
    assert machine.verify_location().status == StepStatus.FAILED

def test_device_mismatch_blocks(build_machine, device_payload, store):
    DeviceFingerprintEngine(ReportedSignalSource(device_payload), store).verify_consistency()

    changed = dict(device_payload, user_agent='Mozilla/5.0 (Windows NT 10.0)')
    machine = run_all(build_machine(payload=changed))
    assert machine.status(Step.DEVICE) == StepStatus.FAILED
    assert machine.steps[Step.DEVICE].reason == DEVICE_MISMATCH
    assert not machine.form_visible

def test_time_window_not_started(build_machine):
    repository = FakeRepository([make_session(starts_at=NOW + timedelta(minutes=30))])
    machine = run_all(build_machine(repository=repository))
    state = machine.steps[Step.TIME]
    assert state.status == StepStatus.FAILED
    assert state.reason == 'Session starts at 10:30 UTC'
    assert not machine.ready

def test_time_window_open_reports_remaining(build_machine):
    repository = FakeRepository([make_session(starts_at=NOW - timedelta(minutes=10), minutes=40)])
    machine = run_all(build_machine(repository=repository))
    assert machine.steps[Step.TIME].detail['remaining_minutes'] == 30
    assert machine.form_visible

def test_time_window_ended(build_machine, clock):
    repository = FakeRepository([make_session(starts_at=NOW - timedelta(minutes=10), minutes=20)])
    machine = run_all(build_machine(repository=repository))
    assert machine.form_visible

    clock.advance(11 * 60)
    machine.refresh()
    assert machine.steps[Step.TIME].reason == 'Session has ended. Attendance window closed.'
    assert machine.phase == Phase.VERIFYING

def test_submit_records_attendance(build_machine, student, store):
    repository = FakeRepository([make_session()])
    machine = run_all(build_machine(repository=repository))

    result = machine.submit(student)
    assert result.status == SubmissionStatus.RECORDED
    assert machine.phase == Phase.SUBMITTED
    assert repository.records[0]['uid'] == '2021CS042'
    assert repository.records[0]['latitude'] == pytest.approx(19.12312)
    assert SubmissionLedger(store).has_submitted('ABCD2345', machine.device_fingerprint)

def test_submit_before_ready(build_machine, student):
    machine = build_machine()
    machine.submit_code('ABCD2345')
    assert machine.submit(student).status == SubmissionStatus.NOT_READY

def test_submit_validates_student(build_machine, student):
    machine = run_all(build_machine())
    result = machine.submit(dict(student, student_name='A', room=''))
    assert result.status == SubmissionStatus.INVALID
    assert 'Room is required' in result.errors
    assert 'Name must be at least 2 characters' in result.errors
    assert machine.form_visible

    result = machine.submit(['Asha Patil', '2021CS042'])
    assert result.status == SubmissionStatus.INVALID
    assert result.errors == ['Student details must be an object']

def test_device_that_already_submitted_skips_form(build_machine, student):
    repository = FakeRepository([make_session()])
    run_all(build_machine(repository=repository)).submit(student)

    machine = run_all(build_machine(repository=repository))
    assert machine.phase == Phase.ALREADY_SUBMITTED
    assert machine.submit(student).status == SubmissionStatus.ALREADY_RECORDED
    assert len(repository.records) == 1

def test_ledger_alone_marks_already_submitted(build_machine, device_payload, store):
    fingerprint = DeviceFingerprintEngine(ReportedSignalSource(device_payload), store).generate()
    SubmissionLedger(store).record_submission('ABCD2345', fingerprint, '2021CS042')

    machine = run_all(build_machine())
    assert machine.phase == Phase.ALREADY_SUBMITTED

def test_conflict_on_insert_is_already_recorded(build_machine, student, device_payload):
    repository = FakeRepository([make_session()])
    machine = run_all(build_machine(repository=repository))

    # Another tab got there first
    repository.records.append({'session_id': 1, 'device_fingerprint': machine.device_fingerprint})
    result = machine.submit(student)
    assert result.status == SubmissionStatus.ALREADY_RECORDED
    assert machine.phase == Phase.ALREADY_SUBMITTED

def test_resume_restores_gated_steps(student):
    repository = FakeRepository([make_session()])
    session = repository.sessions['ABCD2345']
    machine = VerificationStateMachine.resume(repository, session, 'f' * 64, 19.1, 72.8, clock=Clock())

    assert machine.form_visible
    assert machine.submit(student).ok
    assert repository.records[0]['longitude'] == 72.8
