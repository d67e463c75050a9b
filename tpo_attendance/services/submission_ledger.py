"""Per-device record of submissions, used to block obvious resubmits early.

This is only a UX signal. The database unique constraint on
(session, device fingerprint) is what actually prevents duplicates.
"""
import json
import logging
import time
from dataclasses import dataclass, asdict
from typing import List, Optional

from tpo_attendance.services.kv_store import KeyValueStore

logger = logging.getLogger(__name__)

SUBMISSION_KEY = 'tpo_submissions'

@dataclass
class SubmissionEntry:
    session_code: str
    device_fingerprint: str
    timestamp: int  # epoch milliseconds
    student_id: str

class SubmissionLedger:
    """JSON list of submissions kept in the device's key-value space."""

    def __init__(self, store: KeyValueStore, clock=time.time):
        self.store = store
        self.clock = clock

    def get_submissions(self) -> List[SubmissionEntry]:
        raw = self.store.get(SUBMISSION_KEY)
        if not raw:
            return []
        try:
            return [SubmissionEntry(**item) for item in json.loads(raw)]
        except (ValueError, TypeError) as e:
            logger.warning("Discarding unreadable submission ledger: %s", e)
            return []

    def has_submitted(self, session_code: str, device_fingerprint: str) -> bool:
        return self.get_submission_for_session(session_code, device_fingerprint) is not None

    def get_submission_for_session(self, session_code: str, device_fingerprint: str) -> Optional[SubmissionEntry]:
        for entry in self.get_submissions():
            if entry.session_code == session_code and entry.device_fingerprint == device_fingerprint:
                return entry
        return None

    def record_submission(self, session_code: str, device_fingerprint: str, student_id: str) -> SubmissionEntry:
        entries = self.get_submissions()
        entry = SubmissionEntry(
            session_code=session_code,
            device_fingerprint=device_fingerprint,
            timestamp=int(self.clock() * 1000),
            student_id=student_id
        )
        entries.append(entry)
        self.store.set(SUBMISSION_KEY, json.dumps([asdict(e) for e in entries]))
        return entry

    def clear(self) -> None:
        self.store.delete(SUBMISSION_KEY)
