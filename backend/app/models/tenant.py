from datetime import datetime
from uuid import UUID

from sqlmodel import Field

from app.models.base import TimestampedModel, UUIDModel


class TenantCertificate(UUIDModel, TimestampedModel, table=True):
    """PKCS#12 container configured by a tenant. At most one per tenant."""

    __tablename__ = "tenant_certificates"

    tenant_id: UUID = Field(unique=True, index=True)
    file_key: str
    # "ivhex:taghex:ciphertexthex", never the raw passphrase
    encrypted_passphrase: str
    subject: str = Field(max_length=255)
    issuer: str = Field(max_length=255)
    expires_at: datetime
    configured_at: datetime
