from __future__ import annotations

from functools import lru_cache

from email_validator import EmailNotValidError, validate_email

# Domains reserved for testing should not trigger DNS lookups.
_TEST_DOMAIN_ALLOWLIST = {
    "example.com",
    "example.org",
    "example.net",
}


@lru_cache(maxsize=512)
def _normalize(candidate: str, check_deliverability: bool) -> str:
    info = validate_email(candidate, check_deliverability=check_deliverability)
    return info.normalized


def normalize_signer_email(value: str, *, check_deliverability: bool = False) -> str:
    """Return the normalized signer address or raise ``ValueError``.

    Deliverability (DNS) checks are opt-in and never run for reserved test domains.
    """
    candidate = (value or "").strip().lower()
    if not candidate:
        raise ValueError("Signer email is required")

    domain = candidate.split("@", 1)[1] if "@" in candidate else ""
    if domain in _TEST_DOMAIN_ALLOWLIST:
        check_deliverability = False

    try:
        return _normalize(candidate, check_deliverability)
    except EmailNotValidError as exc:
        raise ValueError(f"Invalid signer email: {exc}") from exc
