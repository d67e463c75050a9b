"""Developer-tools detection as an instance-owned observer.

Each monitor keeps its own subscribers and open/closed state, so several
monitors (one per verification attempt, say) never interfere.
"""
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

SIZE_THRESHOLD_PX = 160

Listener = Callable[[bool], None]

@dataclass
class EnvironmentSnapshot:
    """Window geometry and console probe result reported by the browser."""
    outer_width: int = 0
    inner_width: int = 0
    outer_height: int = 0
    inner_height: int = 0
    console_probe_triggered: bool = False

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'EnvironmentSnapshot':
        data = data or {}
        return cls(
            outer_width=int(data.get('outer_width') or 0),
            inner_width=int(data.get('inner_width') or 0),
            outer_height=int(data.get('outer_height') or 0),
            inner_height=int(data.get('inner_height') or 0),
            console_probe_triggered=bool(data.get('console_probe_triggered', False))
        )

    def size_gap_detected(self) -> bool:
        return (self.outer_width - self.inner_width > SIZE_THRESHOLD_PX or
                self.outer_height - self.inner_height > SIZE_THRESHOLD_PX)

@dataclass
class KeyEvent:
    key: str
    ctrl: bool = False
    meta: bool = False
    shift: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'KeyEvent':
        return cls(
            key=str(data.get('key', '')),
            ctrl=bool(data.get('ctrl', False)),
            meta=bool(data.get('meta', False)),
            shift=bool(data.get('shift', False))
        )

    def opens_devtools(self) -> bool:
        if self.key == 'F12':
            return True
        return (self.ctrl or self.meta) and self.shift and self.key in ('I', 'J')

class DevToolsMonitor:
    """Tracks whether developer tools look open and notifies on changes."""

    def __init__(self):
        self._listeners: List[Listener] = []
        self._running = False
        self.is_open = False

    @property
    def running(self) -> bool:
        return self._running

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener; the returned callable removes it again."""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def start(self, initial: Optional[EnvironmentSnapshot] = None) -> None:
        self._running = True
        if initial is not None:
            self.check(initial)

    def stop(self) -> None:
        """Stop reacting to input and drop every listener."""
        self._running = False
        self._listeners.clear()

    def _set_state(self, is_open: bool) -> None:
        if is_open == self.is_open:
            return
        self.is_open = is_open
        if is_open:
            logger.info("Developer tools appear to be open")
        for listener in list(self._listeners):
            listener(is_open)

    def check(self, snapshot: EnvironmentSnapshot) -> bool:
        """Evaluate one poll of the environment. Ignored once stopped."""
        if not self._running:
            return self.is_open
        self._set_state(snapshot.size_gap_detected() or snapshot.console_probe_triggered)
        return self.is_open

    def handle_key(self, event: KeyEvent) -> bool:
        """Devtools shortcuts mark the tools as open."""
        if self._running and event.opens_devtools():
            self._set_state(True)
        return self.is_open
