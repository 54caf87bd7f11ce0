from datetime import datetime

from pydantic import BaseModel


class CertificateInfo(BaseModel):
    subject: str
    issuer: str
    expires_at: datetime


class CertificateStatus(BaseModel):
    configured: bool
    subject: str | None = None
    issuer: str | None = None
    expires_at: datetime | None = None
    configured_at: datetime | None = None
    is_expired: bool = False
