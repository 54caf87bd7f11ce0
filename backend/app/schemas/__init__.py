from app.schemas.certificate import CertificateInfo, CertificateStatus
from app.schemas.signing import AcceptSignaturePayload, FieldValue, SigningContext

__all__ = [
    "AcceptSignaturePayload",
    "CertificateInfo",
    "CertificateStatus",
    "FieldValue",
    "SigningContext",
]
