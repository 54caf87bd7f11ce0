import hmac
import secrets

from app.utils.hashing import sha256_text

ACCESS_TOKEN_BYTES = 32
VERIFICATION_CODE_DIGITS = 6


def generate_access_token() -> str:
    """256-bit random capability token, hex encoded."""
    return secrets.token_hex(ACCESS_TOKEN_BYTES)


def generate_verification_code() -> str:
    upper = 10**VERIFICATION_CODE_DIGITS
    return str(secrets.randbelow(upper)).zfill(VERIFICATION_CODE_DIGITS)


def hash_verification_code(code: str) -> str:
    return sha256_text(code.strip())


def verification_code_matches(code: str, expected_hash: str) -> bool:
    return hmac.compare_digest(hash_verification_code(code), expected_hash)
