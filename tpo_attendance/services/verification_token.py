"""Short-lived token proving a client completed verification."""
import secrets
from datetime import datetime, timedelta
from typing import Dict, Optional, Tuple

import jwt

TOKEN_PURPOSE = 'attendance-verification'

class VerificationTokenService:
    """Signs and checks verification tokens with the app's secret."""

    def __init__(self, secret: str, expiry_seconds: int = 600, algorithm: str = 'HS256'):
        self.secret = secret
        self.expiry_seconds = expiry_seconds
        self.algorithm = algorithm

    def create(
        self,
        session_id: int,
        session_code: str,
        device_fingerprint: str,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None
    ) -> str:
        now = datetime.utcnow()
        payload = {
            'purpose': TOKEN_PURPOSE,
            'session_id': session_id,
            'session_code': session_code,
            'device_fingerprint': device_fingerprint,
            'latitude': latitude,
            'longitude': longitude,
            'iat': now,
            'exp': now + timedelta(seconds=self.expiry_seconds),
            'nonce': secrets.token_hex(8)
        }
        return jwt.encode(payload, self.secret, algorithm=self.algorithm)

    def verify(self, token: str) -> Tuple[bool, Optional[Dict], Optional[str]]:
        """Returns (is_valid, payload, error_message)."""
        if not token:
            return False, None, "Verification token is required"
        try:
            payload = jwt.decode(token, self.secret, algorithms=[self.algorithm])
        except jwt.ExpiredSignatureError:
            return False, None, "Verification expired. Please verify again"
        except jwt.InvalidTokenError:
            return False, None, "Invalid verification token"

        if payload.get('purpose') != TOKEN_PURPOSE:
            return False, None, "Invalid verification token"
        return True, payload, None
