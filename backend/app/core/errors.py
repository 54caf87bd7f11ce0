"""Domain errors raised by the signing core.

All of them subclass ``ValueError`` so callers that already treat service
failures as ``ValueError`` keep working.
"""


class SigningError(ValueError):
    """Base class for signing workflow failures."""


class NotFoundError(SigningError):
    """Unknown token, document, signer or certificate."""


class InvalidStateError(SigningError):
    """The requested transition is not allowed in the current state."""


class ValidationError(SigningError):
    """Input rejected: missing consent, malformed or expired certificate, wrong passphrase."""


class IntegrityFailure(SigningError):
    """Fatal finalization failure. Not retried."""


class TransientStorageError(SigningError):
    """Blob store I/O failed; the caller may retry."""
