"""GPS spoofing heuristics.

None of these checks is proof of spoofing. They look for the artefacts that
mock-location apps and patched browser APIs commonly leave behind.
"""
import logging
import time
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 5000
MAX_PLAUSIBLE_SPEED = 100  # m/s
MOCK_UA_MARKERS = ('mock', 'fake')

class LocationErrorCode(IntEnum):
    """Browser geolocation error codes plus a code for a missing API."""
    UNSUPPORTED = 0
    PERMISSION_DENIED = 1
    POSITION_UNAVAILABLE = 2
    TIMEOUT = 3

class LocationError(Exception):
    """A single location request failed."""

    def __init__(self, code: int, message: str = ''):
        super().__init__(message or f'Location error {code}')
        self.code = code

@dataclass
class GeolocationSample:
    """One position fix."""
    latitude: float
    longitude: float
    accuracy: float
    altitude: Optional[float] = None
    speed: Optional[float] = None
    timestamp: Optional[float] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'GeolocationSample':
        altitude = data.get('altitude')
        speed = data.get('speed')
        timestamp = data.get('timestamp')
        return cls(
            latitude=float(data['latitude']),
            longitude=float(data['longitude']),
            accuracy=float(data['accuracy']),
            altitude=float(altitude) if altitude is not None else None,
            speed=float(speed) if speed is not None else None,
            timestamp=float(timestamp) if timestamp is not None else None
        )

@dataclass
class ApiIntegrityProbe:
    """What the browser saw when it inspected its own geolocation API."""
    get_current_position_source: Optional[str]
    user_agent: str = ''
    probe_error: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'ApiIntegrityProbe':
        data = data or {}
        return cls(
            get_current_position_source=data.get('get_current_position_source'),
            user_agent=data.get('user_agent') or '',
            probe_error=data.get('probe_error')
        )

@dataclass
class IntegrityResult:
    is_suspicious: bool
    reasons: List[str] = field(default_factory=list)

@dataclass
class ReadingValidation:
    is_valid: bool
    warnings: List[str] = field(default_factory=list)

@dataclass
class SampleAnalysis:
    is_suspicious: bool
    reason: str = ''

def check_api_integrity(probe: ApiIntegrityProbe) -> IntegrityResult:
    """Look for a monkey-patched geolocation API or a mock-location user agent.

    Failing to inspect the API counts as a reason: it cannot be shown to be
    native.
    """
    reasons = []

    try:
        if probe.probe_error:
            raise RuntimeError(probe.probe_error)
        if 'native code' not in probe.get_current_position_source:
            reasons.append('Geolocation API appears to be modified')
    except Exception as e:
        logger.info("Geolocation integrity probe failed: %s", e)
        reasons.append('Unable to verify Geolocation API integrity')

    ua = (probe.user_agent or '').lower()
    if any(marker in ua for marker in MOCK_UA_MARKERS):
        reasons.append('Mock location indicator detected in user agent')

    return IntegrityResult(is_suspicious=len(reasons) > 0, reasons=reasons)

def validate_reading(sample: GeolocationSample) -> ReadingValidation:
    """Quality flags for a single fix. Warnings never block on their own."""
    warnings = []

    if sample.accuracy == 0:
        warnings.append('GPS accuracy is exactly 0, likely spoofed')

    if sample.accuracy < 1:
        warnings.append('GPS accuracy is suspiciously precise')

    # Mock providers usually omit altitude
    if sample.altitude is None and sample.accuracy < 10:
        warnings.append('High accuracy but no altitude data, possible spoofing')

    if sample.speed is not None and sample.speed > MAX_PLAUSIBLE_SPEED:
        warnings.append('Unrealistic movement speed detected')

    return ReadingValidation(is_valid=len(warnings) == 0, warnings=warnings)

class LocationProvider:
    """Source of single-shot position fixes."""

    supported = True

    def get_current_position(
        self,
        high_accuracy: bool = True,
        maximum_age: int = 0,
        timeout_ms: int = DEFAULT_TIMEOUT_MS
    ) -> GeolocationSample:
        """Return one fix or raise LocationError."""
        raise NotImplementedError

class ReportedLocationProvider(LocationProvider):
    """Replays the fixes a browser captured, one per request.

    Each entry is either a position dict or ``{"error": {"code": n}}``. A fix
    whose ``elapsed_ms`` exceeds the request timeout is treated as a timeout.
    """

    def __init__(self, fixes: Optional[List[Dict[str, Any]]], supported: bool = True):
        self._fixes = list(fixes) if isinstance(fixes, list) else []
        self._index = 0
        self.supported = supported

    def get_current_position(
        self,
        high_accuracy: bool = True,
        maximum_age: int = 0,
        timeout_ms: int = DEFAULT_TIMEOUT_MS
    ) -> GeolocationSample:
        if self._index >= len(self._fixes):
            raise LocationError(LocationErrorCode.POSITION_UNAVAILABLE, 'No more position fixes reported')

        fix = self._fixes[self._index]
        self._index += 1
        if not isinstance(fix, dict):
            raise LocationError(LocationErrorCode.POSITION_UNAVAILABLE, 'Malformed position fix')

        error = fix.get('error')
        if error:
            code = error.get('code') if isinstance(error, dict) else error
            raise LocationError(int(code), str(error.get('message', '')) if isinstance(error, dict) else '')

        elapsed = fix.get('elapsed_ms')
        if elapsed is not None and float(elapsed) > timeout_ms:
            raise LocationError(LocationErrorCode.TIMEOUT, 'Position request timed out')

        try:
            return GeolocationSample.from_dict(fix)
        except (KeyError, TypeError, ValueError) as e:
            raise LocationError(LocationErrorCode.POSITION_UNAVAILABLE, f'Malformed position fix: {e}')

def collect_samples(
    provider: LocationProvider,
    count: int = 3,
    interval_ms: int = 1000,
    timeout_ms: int = DEFAULT_TIMEOUT_MS,
    sleep: Callable[[float], None] = time.sleep
) -> List[GeolocationSample]:
    """Request ``count`` fixes one after another, ``interval_ms`` apart.

    All-or-nothing: the first LocationError propagates and any fixes already
    collected are dropped.
    """
    samples = []
    for i in range(count):
        if i > 0 and interval_ms > 0:
            sleep(interval_ms / 1000.0)
        samples.append(provider.get_current_position(
            high_accuracy=True,
            maximum_age=0,
            timeout_ms=timeout_ms
        ))
    return samples

def analyze_samples(samples: List[GeolocationSample]) -> SampleAnalysis:
    """Flag a sequence of fixes with no jitter at all.

    Real receivers wander a little between fixes even when stationary.
    """
    if len(samples) < 2:
        return SampleAnalysis(is_suspicious=False)

    first = samples[0]
    all_same_position = all(
        s.latitude == first.latitude and s.longitude == first.longitude
        for s in samples
    )
    if all_same_position and all(s.accuracy == first.accuracy for s in samples):
        return SampleAnalysis(
            is_suspicious=True,
            reason='GPS readings are perfectly identical across samples, likely spoofed'
        )

    return SampleAnalysis(is_suspicious=False)
