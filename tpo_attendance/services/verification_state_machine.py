"""Sequential verification flow for one student attendance attempt.

Steps run strictly in order: code -> network -> location -> device. The time
window is evaluated on its own whenever the flow is refreshed. When every step
is verified the form becomes visible after a short settle delay, unless the
device turns out to have submitted already.
"""
import hmac
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from functools import wraps
from typing import Any, Callable, Dict, List, Optional

from tpo_attendance.models.session import AttendanceSession
from tpo_attendance.services.attendance_repository import AttendanceRepository, InsertStatus
from tpo_attendance.services.code_generator import DEFAULT_CODE_LENGTH, is_well_formed
from tpo_attendance.services.fingerprint_service import DeviceFingerprintEngine
from tpo_attendance.services.geo_math import Geofence
from tpo_attendance.services.location_verifier import LocationOutcome, LocationStatus, LocationVerifier
from tpo_attendance.services.submission_ledger import SubmissionLedger
from tpo_attendance.utils.validators import ValidationError, Validator

logger = logging.getLogger(__name__)

class Step(Enum):
    CODE = 'code'
    NETWORK = 'network'
    LOCATION = 'location'
    DEVICE = 'device'
    TIME = 'time'

class StepStatus(Enum):
    PENDING = 'pending'
    VERIFYING = 'verifying'
    VERIFIED = 'verified'
    FAILED = 'failed'

class Phase(Enum):
    VERIFYING = 'verifying'
    FORM = 'form'
    ALREADY_SUBMITTED = 'already_submitted'
    SUBMITTED = 'submitted'

class SubmissionStatus(Enum):
    RECORDED = 'recorded'
    ALREADY_RECORDED = 'already_recorded'
    INVALID = 'invalid'
    SESSION_CLOSED = 'session_closed'
    NOT_READY = 'not_ready'
    ERROR = 'error'

GATED_STEPS = [Step.CODE, Step.NETWORK, Step.LOCATION, Step.DEVICE]

INVALID_CODE_FORMAT = 'Session code must be 8 characters from A-Z and 2-9'
INVALID_CODE = 'Invalid or expired session code'
LOOKUP_FAILED = 'Verification failed'
MISSING_TOKEN = 'Please enter the network token'
INVALID_TOKEN = 'Invalid network token'
DEVICE_MISMATCH = 'Device mismatch detected. This may indicate session sharing.'
DEVICE_ERROR = 'Unable to verify device. Please try again.'
LOCATION_ERROR = 'Unable to verify your location.'
ALREADY_RECORDED = 'You have already recorded attendance for this session'

STEP_ERRORS = {
    Step.CODE: LOOKUP_FAILED,
    Step.NETWORK: 'Unable to verify network token',
    Step.LOCATION: LOCATION_ERROR,
    Step.DEVICE: DEVICE_ERROR,
}

def verification_step(step: Step):
    """Run the decorated check as ``step``. It always ends verified or failed."""
    def decorator(method):
        @wraps(method)
        def wrapper(self, *args, **kwargs):
            self._begin(step)
            try:
                return method(self, *args, **kwargs)
            except Exception:
                logger.exception("%s verification crashed", step.value)
                return self._resolve(step, False, STEP_ERRORS[step])
            finally:
                if self.steps[step].status == StepStatus.VERIFYING:
                    self._resolve(step, False, STEP_ERRORS[step])
        return wrapper
    return decorator

class StepInProgressError(Exception):
    """A step was triggered again while its check is still running."""
    pass

class StepNotEligibleError(Exception):
    """A step was triggered before every preceding step was verified."""
    pass

@dataclass
class StepState:
    status: StepStatus = StepStatus.PENDING
    reason: Optional[str] = None
    detail: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        result = dict(self.detail)
        result.update(status=self.status.value, reason=self.reason)
        return result

@dataclass
class SubmissionResult:
    status: SubmissionStatus
    message: str
    record: Any = None
    errors: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status == SubmissionStatus.RECORDED

class VerificationStateMachine:
    """Gates the attendance form behind the five verification steps."""

    def __init__(
        self,
        repository: AttendanceRepository,
        fingerprint_engine: Optional[DeviceFingerprintEngine] = None,
        ledger: Optional[SubmissionLedger] = None,
        location_verifier_factory: Optional[Callable[[Optional[Geofence]], LocationVerifier]] = None,
        default_geofence: Optional[Geofence] = None,
        settle_delay: float = 0.5,
        code_length: int = DEFAULT_CODE_LENGTH,
        clock: Callable[[], datetime] = datetime.utcnow
    ):
        self.repository = repository
        self.fingerprint_engine = fingerprint_engine
        self.ledger = ledger
        self.location_verifier_factory = location_verifier_factory
        self.default_geofence = default_geofence
        self.settle_delay = timedelta(seconds=settle_delay)
        self.code_length = code_length
        self.clock = clock

        self.steps: Dict[Step, StepState] = {step: StepState() for step in Step}
        self.phase = Phase.VERIFYING
        self.session: Optional[AttendanceSession] = None
        self.device_fingerprint: Optional[str] = None
        self.location: Optional[LocationOutcome] = None
        self.ready_since: Optional[datetime] = None

        self.evaluate_time()

    @classmethod
    def resume(
        cls,
        repository: AttendanceRepository,
        session: AttendanceSession,
        device_fingerprint: str,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
        ledger: Optional[SubmissionLedger] = None,
        clock: Callable[[], datetime] = datetime.utcnow
    ) -> 'VerificationStateMachine':
        """Rebuild a flow whose gated steps were verified in an earlier request.

        The time window is evaluated afresh.
        """
        machine = cls(repository, ledger=ledger, settle_delay=0, clock=clock)
        machine.session = session
        machine.device_fingerprint = device_fingerprint
        if latitude is not None and longitude is not None:
            machine.location = LocationOutcome(LocationStatus.VERIFIED, latitude=latitude, longitude=longitude)
        for step in GATED_STEPS:
            machine.steps[step] = StepState(StepStatus.VERIFIED)
        machine.refresh()
        return machine

    # =================== STATE ===================

    def status(self, step: Step) -> StepStatus:
        return self.steps[step].status

    @property
    def ready(self) -> bool:
        return all(state.status == StepStatus.VERIFIED for state in self.steps.values())

    @property
    def form_visible(self) -> bool:
        return self.phase == Phase.FORM

    def is_eligible(self, step: Step) -> bool:
        if self.phase in (Phase.ALREADY_SUBMITTED, Phase.SUBMITTED):
            return False
        if step == Step.TIME:
            return True
        index = GATED_STEPS.index(step)
        return all(self.steps[s].status == StepStatus.VERIFIED for s in GATED_STEPS[:index])

    def _begin(self, step: Step) -> None:
        if self.steps[step].status == StepStatus.VERIFYING:
            raise StepInProgressError(f"{step.value} verification already in progress")
        if not self.is_eligible(step):
            raise StepNotEligibleError(f"{step.value} verification is not available yet")

        # A retried step invalidates everything after it
        index = GATED_STEPS.index(step)
        for later in GATED_STEPS[index + 1:]:
            self.steps[later] = StepState()
        self.steps[step] = StepState(StepStatus.VERIFYING)
        self._recompute()

    def _resolve(self, step: Step, ok: bool, reason: Optional[str] = None, **detail) -> StepState:
        self.steps[step] = StepState(
            StepStatus.VERIFIED if ok else StepStatus.FAILED,
            reason,
            detail
        )
        self._recompute()
        return self.steps[step]

    def _recompute(self) -> None:
        if self.ready:
            if self.ready_since is None:
                self.ready_since = self.clock()
        else:
            self.ready_since = None
        self._update_phase()

    def _update_phase(self) -> None:
        if self.phase in (Phase.ALREADY_SUBMITTED, Phase.SUBMITTED):
            return
        if self.ready_since is not None and self.clock() - self.ready_since >= self.settle_delay:
            self.phase = Phase.FORM
        else:
            self.phase = Phase.VERIFYING

    def refresh(self) -> Phase:
        """Re-evaluate the time window and the form gate."""
        self.evaluate_time()
        self._update_phase()
        return self.phase

    # =================== STEPS ===================

    @verification_step(Step.CODE)
    def submit_code(self, code: str) -> StepState:
        self.session = None

        normalized = code.strip().upper() if isinstance(code, str) else ''
        if not is_well_formed(normalized, self.code_length):
            return self._resolve(Step.CODE, False, INVALID_CODE_FORMAT)

        session = self.repository.find_active_session_by_code(normalized, now=self.clock())

        if session is None:
            return self._resolve(Step.CODE, False, INVALID_CODE)

        self.session = session
        self.evaluate_time()
        return self._resolve(Step.CODE, True, session_name=session.session_name)

    @verification_step(Step.NETWORK)
    def submit_network_token(self, token: str) -> StepState:
        normalized = token.strip().upper() if isinstance(token, str) else ''
        if not normalized:
            return self._resolve(Step.NETWORK, False, MISSING_TOKEN)

        expected = self.session.network_token.upper()
        if not hmac.compare_digest(normalized.encode(), expected.encode()):
            return self._resolve(Step.NETWORK, False, INVALID_TOKEN)

        return self._resolve(Step.NETWORK, True)

    @verification_step(Step.LOCATION)
    def verify_location(self) -> StepState:
        self.location = None

        if self.location_verifier_factory is None:
            return self._resolve(Step.LOCATION, False, LOCATION_ERROR)

        geofence = self.session.geofence or self.default_geofence
        outcome = self.location_verifier_factory(geofence).verify()

        if outcome is None:
            return self._resolve(Step.LOCATION, False, 'Location verification was cancelled')

        if not outcome.verified:
            return self._resolve(Step.LOCATION, False, outcome.message, location=outcome.to_dict())

        self.location = outcome
        return self._resolve(Step.LOCATION, True, outcome.message, location=outcome.to_dict())

    @verification_step(Step.DEVICE)
    def verify_device(self) -> StepState:
        self.device_fingerprint = None

        if self.fingerprint_engine is None:
            return self._resolve(Step.DEVICE, False, DEVICE_ERROR)

        consistency = self.fingerprint_engine.verify_consistency()

        if not consistency.is_consistent:
            logger.warning("Device fingerprint mismatch for session %s", self.session.id)
            return self._resolve(Step.DEVICE, False, DEVICE_MISMATCH)

        fingerprint = consistency.current
        self.device_fingerprint = fingerprint
        state = self._resolve(
            Step.DEVICE, True,
            device_id=DeviceFingerprintEngine.short_form(fingerprint),
            first_visit=consistency.stored is None
        )

        if self._already_submitted(fingerprint):
            self.phase = Phase.ALREADY_SUBMITTED
        return state

    def _already_submitted(self, fingerprint: str) -> bool:
        try:
            if self.repository.find_attendance_by_device(self.session.id, fingerprint) is not None:
                return True
        except Exception:
            logger.exception("Duplicate submission lookup failed")
        if self.ledger is not None:
            return self.ledger.has_submitted(self.session.session_code, fingerprint)
        return False

    def evaluate_time(self, now: Optional[datetime] = None) -> StepState:
        """Check the current instant against the session window, if it has one."""
        now = now or self.clock()
        session = self.session

        if session is None or session.starts_at is None or session.expires_at is None:
            self.steps[Step.TIME] = StepState(StepStatus.VERIFIED, 'Session is currently active')
        elif now < session.starts_at:
            self.steps[Step.TIME] = StepState(
                StepStatus.FAILED,
                f"Session starts at {session.starts_at.strftime('%H:%M')} UTC",
                {'window': 'not_started'}
            )
        elif now > session.expires_at:
            self.steps[Step.TIME] = StepState(
                StepStatus.FAILED,
                'Session has ended. Attendance window closed.',
                {'window': 'ended'}
            )
        else:
            remaining = math.ceil((session.expires_at - now).total_seconds() / 60)
            self.steps[Step.TIME] = StepState(
                StepStatus.VERIFIED,
                f'{remaining} minutes remaining to mark attendance',
                {'window': 'open', 'remaining_minutes': remaining}
            )

        if self.ready:
            if self.ready_since is None:
                self.ready_since = now
        else:
            self.ready_since = None
        return self.steps[Step.TIME]

    # =================== SUBMISSION ===================

    def submit(self, student_data: Dict[str, Any]) -> SubmissionResult:
        """Record attendance once the form is visible."""
        if self.phase == Phase.ALREADY_SUBMITTED:
            return SubmissionResult(SubmissionStatus.ALREADY_RECORDED, ALREADY_RECORDED)

        self.refresh()
        if self.phase != Phase.FORM:
            reason = self.steps[Step.TIME].reason if self.status(Step.TIME) == StepStatus.FAILED \
                else 'Complete all verification steps first'
            return SubmissionResult(SubmissionStatus.NOT_READY, reason)

        try:
            student = Validator.parse_student_info(student_data)
        except ValidationError as e:
            return SubmissionResult(SubmissionStatus.INVALID, 'Invalid student details', errors=e.errors)

        location = self.location
        try:
            result = self.repository.insert_attendance(
                self.session.id,
                student,
                self.device_fingerprint,
                latitude=location.latitude if location else None,
                longitude=location.longitude if location else None,
                now=self.clock()
            )
        except Exception:
            logger.exception("Attendance insert failed")
            return SubmissionResult(SubmissionStatus.ERROR, 'Failed to record attendance')

        if result.status == InsertStatus.CONFLICT:
            self.phase = Phase.ALREADY_SUBMITTED
            self._remember(student.uid)
            return SubmissionResult(SubmissionStatus.ALREADY_RECORDED, ALREADY_RECORDED)
        if result.status == InsertStatus.SESSION_CLOSED:
            return SubmissionResult(SubmissionStatus.SESSION_CLOSED, result.message)
        if result.status == InsertStatus.INVALID:
            return SubmissionResult(SubmissionStatus.INVALID, result.message, errors=[result.message])

        self.phase = Phase.SUBMITTED
        self._remember(student.uid)
        logger.info("Attendance recorded for session %s", self.session.id)
        return SubmissionResult(SubmissionStatus.RECORDED, 'Attendance recorded successfully!', record=result.record)

    def _remember(self, student_id: str) -> None:
        if self.ledger is None:
            return
        if not self.ledger.has_submitted(self.session.session_code, self.device_fingerprint):
            self.ledger.record_submission(self.session.session_code, self.device_fingerprint, student_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'phase': self.phase.value,
            'ready': self.ready,
            'steps': {step.value: state.to_dict() for step, state in self.steps.items()},
            'session': self.session.to_dict(include_secrets=False) if self.session else None
        }
