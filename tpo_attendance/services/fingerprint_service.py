"""Device fingerprinting to recognise repeat visits from the same device.

A fingerprint is a SHA-256 over a canonical snapshot of browser/device
signals. It is a quasi-identifier, not a secret: it helps stop one student
marking attendance for others from the same phone, nothing more.
"""
import hashlib
import json
import logging
from dataclasses import dataclass, fields
from typing import Any, Callable, Dict, Optional, Tuple

from tpo_attendance.services.kv_store import KeyValueStore

logger = logging.getLogger(__name__)

FINGERPRINT_KEY = 'device_fingerprint'

# Sentinels for signals the device could not provide
NO_CANVAS = 'no-canvas'
CANVAS_ERROR = 'canvas-error'
NO_WEBGL = 'no-webgl'
WEBGL_UNKNOWN = 'unknown'
WEBGL_ERROR = 'error'
UNKNOWN = 'unknown'

CANVAS_HASH_LENGTH = 50

class SignalUnavailable(Exception):
    """The client did not report a signal."""
    pass

@dataclass(frozen=True)
class DeviceSignals:
    """Canonical snapshot of the signals that make up a fingerprint."""
    user_agent: str
    language: str
    platform: str
    screen_resolution: str
    timezone: str
    cookies_enabled: bool
    color_depth: int
    device_memory: Optional[float] = None
    hardware_concurrency: Optional[int] = None
    touch_support: bool = False
    webgl_vendor: str = WEBGL_UNKNOWN
    webgl_renderer: str = WEBGL_UNKNOWN
    canvas_hash: str = NO_CANVAS

    def canonical(self) -> str:
        """Serialize in declaration order, omitting absent optional signals."""
        ordered = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if value is not None:
                ordered[f.name] = value
        return json.dumps(ordered, separators=(',', ':'), ensure_ascii=False)

@dataclass
class ConsistencyResult:
    is_consistent: bool
    current: str
    stored: Optional[str]

class SignalSource:
    """Where raw device signals are read from.

    Every method may raise when the capability is missing; the collector
    turns that into a sentinel.
    """

    def user_agent(self) -> str:
        raise NotImplementedError

    def language(self) -> str:
        raise NotImplementedError

    def platform(self) -> str:
        raise NotImplementedError

    def screen(self) -> Tuple[int, int, int, int]:
        """(width, height, avail_width, avail_height)"""
        raise NotImplementedError

    def timezone(self) -> str:
        raise NotImplementedError

    def cookies_enabled(self) -> bool:
        raise NotImplementedError

    def color_depth(self) -> int:
        raise NotImplementedError

    def device_memory(self) -> Optional[float]:
        return None

    def hardware_concurrency(self) -> Optional[int]:
        return None

    def touch_support(self) -> bool:
        raise NotImplementedError

    def webgl_info(self) -> Optional[Tuple[Optional[str], Optional[str]]]:
        """(vendor, renderer), or None when there is no WebGL context."""
        raise NotImplementedError

    def canvas_data_url(self) -> Optional[str]:
        """Rendered probe canvas as a data URL, or None without a 2D context."""
        raise NotImplementedError

class ReportedSignalSource(SignalSource):
    """Signals reported by the browser in the verification request body."""

    def __init__(self, payload: Optional[Dict[str, Any]]):
        self.payload = payload or {}

    def _require(self, key: str) -> Any:
        value = self.payload.get(key)
        if value is None or value == '':
            raise SignalUnavailable(key)
        return value

    def user_agent(self) -> str:
        return str(self._require('user_agent'))

    def language(self) -> str:
        return str(self._require('language'))

    def platform(self) -> str:
        return str(self._require('platform'))

    def screen(self) -> Tuple[int, int, int, int]:
        screen = self._require('screen')
        return (
            int(screen['width']), int(screen['height']),
            int(screen['avail_width']), int(screen['avail_height'])
        )

    def timezone(self) -> str:
        return str(self._require('timezone'))

    def cookies_enabled(self) -> bool:
        return bool(self._require('cookies_enabled'))

    def color_depth(self) -> int:
        return int(self._require('color_depth'))

    def device_memory(self) -> Optional[float]:
        value = self.payload.get('device_memory')
        return float(value) if value is not None else None

    def hardware_concurrency(self) -> Optional[int]:
        value = self.payload.get('hardware_concurrency')
        return int(value) if value is not None else None

    def touch_support(self) -> bool:
        return bool(self._require('touch_support'))

    def webgl_info(self) -> Optional[Tuple[Optional[str], Optional[str]]]:
        webgl = self.payload.get('webgl')
        if not webgl or not webgl.get('available', True):
            return None
        if webgl.get('error'):
            raise RuntimeError(webgl['error'])
        return webgl.get('vendor'), webgl.get('renderer')

    def canvas_data_url(self) -> Optional[str]:
        canvas = self.payload.get('canvas')
        if not canvas or not canvas.get('available', True):
            return None
        if canvas.get('error'):
            raise RuntimeError(canvas['error'])
        return canvas.get('data_url') or None

def _probe(name: str, reader: Callable[[], Any], fallback: Any) -> Any:
    try:
        return reader()
    except Exception as e:
        logger.debug("Signal %s unavailable: %s", name, e)
        return fallback

class DeviceFingerprintEngine:
    """Collects, hashes and remembers the device fingerprint."""

    def __init__(self, source: SignalSource, store: KeyValueStore):
        self.source = source
        self.store_backend = store

    # =================== SIGNALS ===================

    def _webgl(self) -> Tuple[str, str]:
        try:
            info = self.source.webgl_info()
        except Exception as e:
            logger.debug("WebGL probe failed: %s", e)
            return WEBGL_ERROR, WEBGL_ERROR
        if info is None:
            return NO_WEBGL, NO_WEBGL
        vendor, renderer = info
        return vendor or WEBGL_UNKNOWN, renderer or WEBGL_UNKNOWN

    def _canvas_hash(self) -> str:
        try:
            data_url = self.source.canvas_data_url()
        except Exception as e:
            logger.debug("Canvas probe failed: %s", e)
            return CANVAS_ERROR
        if data_url is None:
            return NO_CANVAS
        if not isinstance(data_url, str):
            logger.debug("Canvas probe returned %s", type(data_url).__name__)
            return CANVAS_ERROR
        return data_url[-CANVAS_HASH_LENGTH:]

    def collect_signals(self) -> DeviceSignals:
        """Gather every signal, degrading missing ones to sentinels. Never raises."""
        source = self.source
        screen = _probe('screen', source.screen, None)
        screen_resolution = 'x'.join(str(v) for v in screen) if screen else UNKNOWN
        vendor, renderer = self._webgl()

        return DeviceSignals(
            user_agent=_probe('user_agent', source.user_agent, UNKNOWN),
            language=_probe('language', source.language, UNKNOWN),
            platform=_probe('platform', source.platform, UNKNOWN),
            screen_resolution=screen_resolution,
            timezone=_probe('timezone', source.timezone, UNKNOWN),
            cookies_enabled=_probe('cookies_enabled', source.cookies_enabled, False),
            color_depth=_probe('color_depth', source.color_depth, 0),
            device_memory=_probe('device_memory', source.device_memory, None),
            hardware_concurrency=_probe('hardware_concurrency', source.hardware_concurrency, None),
            touch_support=_probe('touch_support', source.touch_support, False),
            webgl_vendor=vendor,
            webgl_renderer=renderer,
            canvas_hash=self._canvas_hash()
        )

    @staticmethod
    def compute_fingerprint(signals: DeviceSignals) -> str:
        """SHA-256 of the canonical signal string, lowercase hex."""
        return hashlib.sha256(signals.canonical().encode('utf-8')).hexdigest()

    def generate(self) -> str:
        return self.compute_fingerprint(self.collect_signals())

    # =================== STORAGE ===================

    def get_stored(self) -> Optional[str]:
        return self.store_backend.get(FINGERPRINT_KEY)

    def store(self, fingerprint: str) -> None:
        self.store_backend.set(FINGERPRINT_KEY, fingerprint)

    def verify_consistency(self) -> ConsistencyResult:
        """Compare the current fingerprint with the stored baseline.

        The first observation on a device becomes the baseline. After that
        only an exact match is consistent.
        """
        current = self.generate()
        stored = self.get_stored()

        if not stored:
            self.store(current)
            return ConsistencyResult(is_consistent=True, current=current, stored=None)

        return ConsistencyResult(is_consistent=current == stored, current=current, stored=stored)

    @staticmethod
    def short_form(fingerprint: str) -> str:
        """Eight-character display identifier."""
        return fingerprint[:8].upper()
