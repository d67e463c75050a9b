"""Cryptographically secure short codes for sessions and network tokens."""
import secrets

# Excludes the look-alike characters 0, O, I and 1
ALPHABET = 'ABCDEFGHJKLMNPQRSTUVWXYZ23456789'

DEFAULT_CODE_LENGTH = 8

def secure_code(length: int = DEFAULT_CODE_LENGTH) -> str:
    """Draw ``length`` 32-bit values from the OS CSPRNG and map each into ALPHABET."""
    if length < 1:
        raise ValueError("Code length must be positive")
    return ''.join(ALPHABET[secrets.randbits(32) % len(ALPHABET)] for _ in range(length))

def generate_session_code() -> str:
    return secure_code(DEFAULT_CODE_LENGTH)

def generate_network_token() -> str:
    return secure_code(DEFAULT_CODE_LENGTH)

def is_well_formed(code: str, length: int = DEFAULT_CODE_LENGTH) -> bool:
    """True when ``code`` has the right length and only uses ALPHABET characters."""
    return isinstance(code, str) and len(code) == length and all(c in ALPHABET for c in code)
