"""Location verification state machine.

idle -> requesting -> verifying -> verified | failed | spoofed

Every attempt starts from scratch. Attempts are numbered; when an attempt is
superseded or cancelled its eventual result is dropped instead of being
applied to the verifier.
"""
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional

from tpo_attendance.services.geo_math import Geofence
from tpo_attendance.services.spoof_heuristics import (
    ApiIntegrityProbe, LocationError, LocationErrorCode, LocationProvider,
    analyze_samples, check_api_integrity, collect_samples, validate_reading,
    DEFAULT_TIMEOUT_MS
)

logger = logging.getLogger(__name__)

class LocationStatus(Enum):
    IDLE = 'idle'
    REQUESTING = 'requesting'
    VERIFYING = 'verifying'
    VERIFIED = 'verified'
    FAILED = 'failed'
    SPOOFED = 'spoofed'

ERROR_MESSAGES = {
    LocationErrorCode.UNSUPPORTED: 'Geolocation is not supported by your browser',
    LocationErrorCode.PERMISSION_DENIED: 'Location access denied. You must enable location to mark attendance.',
    LocationErrorCode.POSITION_UNAVAILABLE: 'Location information unavailable. Please try again.',
    LocationErrorCode.TIMEOUT: 'Location request timed out. Please try again.',
}
UNKNOWN_ERROR_MESSAGE = 'Unable to verify your location.'
API_SPOOF_MESSAGE = 'Location spoofing detected. Disable mock location apps and developer mode.'
STATIC_SPOOF_MESSAGE = ('GPS spoofing detected. Your location readings are artificially static. '
                        'Disable any mock location apps.')

@dataclass
class LocationOutcome:
    """Terminal result of one verification attempt."""
    status: LocationStatus
    message: str = ''
    warnings: List[str] = field(default_factory=list)
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    accuracy: Optional[float] = None
    distance_meters: Optional[float] = None

    @property
    def verified(self) -> bool:
        return self.status == LocationStatus.VERIFIED

    def to_dict(self) -> dict:
        return {
            'status': self.status.value,
            'verified': self.verified,
            'message': self.message,
            'warnings': list(self.warnings),
            'latitude': self.latitude,
            'longitude': self.longitude,
            'accuracy': self.accuracy,
            'distance_meters': round(self.distance_meters, 1) if self.distance_meters is not None else None
        }

def describe_location_error(code: int) -> str:
    try:
        return ERROR_MESSAGES[LocationErrorCode(code)]
    except ValueError:
        return UNKNOWN_ERROR_MESSAGE

class LocationVerifier:
    """Runs the anti-spoof checks and the geofence test for one client."""

    def __init__(
        self,
        provider: LocationProvider,
        integrity_probe: ApiIntegrityProbe,
        geofence: Optional[Geofence] = None,
        sample_count: int = 3,
        sample_interval_ms: int = 800,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        place_label: str = 'the session location',
        on_complete: Optional[Callable[[LocationOutcome], None]] = None,
        sleep: Callable[[float], None] = time.sleep
    ):
        self.provider = provider
        self.integrity_probe = integrity_probe
        self.geofence = geofence
        self.sample_count = sample_count
        self.sample_interval_ms = sample_interval_ms
        self.timeout_ms = timeout_ms
        self.place_label = place_label
        self.on_complete = on_complete
        self.sleep = sleep

        self.status = LocationStatus.IDLE
        self.outcome: Optional[LocationOutcome] = None
        self._generation = 0

    def cancel(self) -> None:
        """Detach: any attempt still running will have its result ignored."""
        self._generation += 1
        self.status = LocationStatus.IDLE

    def _finish(self, generation: int, outcome: LocationOutcome) -> Optional[LocationOutcome]:
        if generation != self._generation:
            logger.debug("Dropping result of superseded location attempt %s", generation)
            return None
        self.status = outcome.status
        self.outcome = outcome
        if self.on_complete:
            self.on_complete(outcome)
        return outcome

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation

    def verify(self) -> Optional[LocationOutcome]:
        """Run one attempt. Returns None if the attempt was cancelled meanwhile."""
        self._generation += 1
        generation = self._generation
        self.outcome = None

        if not getattr(self.provider, 'supported', True):
            return self._finish(generation, LocationOutcome(
                LocationStatus.FAILED, describe_location_error(LocationErrorCode.UNSUPPORTED)
            ))

        self.status = LocationStatus.REQUESTING

        integrity = check_api_integrity(self.integrity_probe)
        if integrity.is_suspicious:
            logger.warning("Geolocation API tampering suspected: %s", '; '.join(integrity.reasons))
            return self._finish(generation, LocationOutcome(
                LocationStatus.SPOOFED, API_SPOOF_MESSAGE, warnings=integrity.reasons
            ))

        self.status = LocationStatus.VERIFYING
        try:
            samples = collect_samples(
                self.provider,
                count=self.sample_count,
                interval_ms=self.sample_interval_ms,
                timeout_ms=self.timeout_ms,
                sleep=self.sleep
            )
        except LocationError as e:
            return self._finish(generation, LocationOutcome(
                LocationStatus.FAILED, describe_location_error(e.code)
            ))
        except Exception:
            logger.exception("Unexpected error while collecting location samples")
            return self._finish(generation, LocationOutcome(LocationStatus.FAILED, UNKNOWN_ERROR_MESSAGE))

        if not self._is_current(generation):
            return None

        analysis = analyze_samples(samples)
        if analysis.is_suspicious:
            logger.warning("Static GPS readings detected across %d samples", len(samples))
            return self._finish(generation, LocationOutcome(
                LocationStatus.SPOOFED, STATIC_SPOOF_MESSAGE, warnings=[analysis.reason]
            ))

        position = samples[-1]
        quality = validate_reading(position)

        base = dict(
            warnings=quality.warnings,
            latitude=position.latitude,
            longitude=position.longitude,
            accuracy=position.accuracy
        )

        # Capability check only
        if self.geofence is None:
            return self._finish(generation, LocationOutcome(
                LocationStatus.VERIFIED, 'Location verified', **base
            ))

        distance = self.geofence.distance_from(position.latitude, position.longitude)
        if distance <= self.geofence.radius_meters:
            return self._finish(generation, LocationOutcome(
                LocationStatus.VERIFIED,
                f'You are within {self.place_label}',
                distance_meters=distance,
                **base
            ))

        return self._finish(generation, LocationOutcome(
            LocationStatus.FAILED,
            f'You are {round(distance)}m away from {self.place_label}. '
            f'You must be within {self.geofence.radius_meters:g}m to mark attendance.',
            distance_meters=distance,
            **base
        ))
