from typing import Optional
from sqlmodel import Field
from rcep.models.base import TimestampMixin


class DeviceKey(TimestampMixin, table=True):
    __table_args__ = {"extend_existing": True}
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(index=True, unique=True, description="Key slot, e.g. 'device_signing_v1'")

    private_key_pem: bytes  # PKCS8 encrypted with DEVICE_KEY_PASSPHRASE, never exported through the seal API
    key_id: str = Field(description="SHA-256 hex of the SPKI DER public key")
    public_key_spki: str = Field(description="Base64 SPKI DER public key")
