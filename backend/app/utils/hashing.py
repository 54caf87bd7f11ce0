import hashlib


def sha256_hex(data: bytes) -> str:
    """Content fingerprint used for original uploads and finalized artifacts."""
    return hashlib.sha256(data).hexdigest()


def sha256_text(value: str) -> str:
    return sha256_hex(value.encode("utf-8"))
