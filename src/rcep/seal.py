"""
Integrity seal: device-bound ECDSA P-256 signature over an artifact checksum.

A seal proves the artifact was sealed on this device and has not changed
since. It proves neither authorship nor semantic truth.
"""
import base64
import hashlib
from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from sqlmodel import Session, select
from rcep.compaction.canonical import compute_checksum, sha256_hex
from rcep.config import settings
from rcep.errors import SealError
from rcep.models.device import DeviceKey
from rcep.logging import logger

KEY_NAME = "device_signing_v1"
SIGNATURE_TYPE = "device_integrity_v1"
SIGNATURE_ALGO = "ECDSA_P256_SHA256"


def signed_payload(checksum: str) -> str:
    return f"checksum:{checksum}"


class DeviceSigner:
    """
    Creates the device key on first use and keeps it in the DeviceKey table,
    encrypted under DEVICE_KEY_PASSPHRASE.
    """

    def __init__(self, engine=None, key_name: str = KEY_NAME, passphrase: Optional[str] = None):
        if engine is None:
            from rcep.db import engine as default_engine
            engine = default_engine
        self.engine = engine
        self.key_name = key_name
        self._passphrase = passphrase
        self._private_key: Optional[ec.EllipticCurvePrivateKey] = None
        self.key_id = ""
        self.public_key_spki = ""

    def _get_passphrase(self) -> bytes:
        passphrase = self._passphrase
        if passphrase is None and settings.DEVICE_KEY_PASSPHRASE is not None:
            passphrase = settings.DEVICE_KEY_PASSPHRASE.get_secret_value()
        if not passphrase:
            raise SealError(
                "DEVICE_KEY_PASSPHRASE must be set to create or unlock the device signing key."
            )
        return passphrase.encode("utf-8")

    def _load_or_create(self) -> ec.EllipticCurvePrivateKey:
        if self._private_key is not None:
            return self._private_key
        passphrase = self._get_passphrase()
        with Session(self.engine) as session:
            record = session.exec(select(DeviceKey).where(DeviceKey.name == self.key_name)).first()
            if record is None:
                key = ec.generate_private_key(ec.SECP256R1())
                spki = key.public_key().public_bytes(
                    serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo
                )
                record = DeviceKey(
                    name=self.key_name,
                    private_key_pem=key.private_bytes(
                        serialization.Encoding.PEM,
                        serialization.PrivateFormat.PKCS8,
                        serialization.BestAvailableEncryption(passphrase),
                    ),
                    key_id=hashlib.sha256(spki).hexdigest(),
                    public_key_spki=base64.b64encode(spki).decode("ascii"),
                )
                session.add(record)
                session.commit()
                session.refresh(record)
                logger.info(f"Created device signing key {record.key_id[:16]}...")
            try:
                key = serialization.load_pem_private_key(record.private_key_pem, password=passphrase)
            except (ValueError, TypeError) as e:
                raise SealError(f"Device key {self.key_name} is unusable: {e}") from e
            if not isinstance(key, ec.EllipticCurvePrivateKey):
                raise SealError(f"Device key {self.key_name} is not an EC key")
            self._private_key = key
            self.key_id = record.key_id
            self.public_key_spki = record.public_key_spki
        return self._private_key

    def sign_checksum(self, checksum: str) -> Dict[str, str]:
        checksum = str(checksum or "").strip()
        if not checksum:
            raise SealError("Missing checksum for signature.")
        key = self._load_or_create()
        payload = signed_payload(checksum)
        value = key.sign(payload.encode("utf-8"), ec.ECDSA(hashes.SHA256()))
        return {
            "type": SIGNATURE_TYPE,
            "algo": SIGNATURE_ALGO,
            "key_id": self.key_id,
            "public_key_spki": self.public_key_spki,
            "signed_payload": payload,
            "value": base64.b64encode(value).decode("ascii"),
        }

    def seal_artifact(self, artifact: Dict[str, Any]) -> Dict[str, Any]:
        """Recompute the checksum and attach a fresh signature, in place."""
        artifact.pop("signature", None)
        artifact["checksum"] = compute_checksum(artifact)
        artifact["signature"] = self.sign_checksum(artifact["checksum"])
        return artifact


def verify_signature(signature: Dict[str, Any], checksum: str) -> bool:
    if signature.get("algo") != SIGNATURE_ALGO:
        return False
    if signature.get("signed_payload") != signed_payload(checksum):
        return False
    try:
        spki = base64.b64decode(signature.get("public_key_spki") or "")
        public_key = serialization.load_der_public_key(spki)
        value = base64.b64decode(signature.get("value") or "")
    except ValueError:
        return False
    if not isinstance(public_key, ec.EllipticCurvePublicKey):
        return False
    if signature.get("key_id") and signature["key_id"] != hashlib.sha256(spki).hexdigest():
        return False
    try:
        public_key.verify(value, signed_payload(checksum).encode("utf-8"), ec.ECDSA(hashes.SHA256()))
    except InvalidSignature:
        return False
    return True


@dataclass
class VerificationReport:
    checksum_ok: bool
    signature_ok: Optional[bool]  # None when unsigned
    fingerprint_ok: Optional[bool]  # None when no transcript was supplied
    expected_checksum: str
    key_id: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.checksum_ok and self.signature_ok is not False and self.fingerprint_ok is not False

    def to_dict(self) -> Dict[str, Any]:
        return {**asdict(self), "ok": self.ok}


def verify_artifact(artifact: Dict[str, Any], transcript: Optional[str] = None) -> VerificationReport:
    expected = compute_checksum(artifact)
    checksum_ok = artifact.get("checksum") == expected

    signature = artifact.get("signature")
    signature_ok = None
    if isinstance(signature, dict):
        signature_ok = checksum_ok and verify_signature(signature, artifact.get("checksum") or "")

    fingerprint_ok = None
    if transcript is not None:
        claimed = (artifact.get("conversation_fingerprint") or {}).get("sha256")
        fingerprint_ok = bool(claimed) and sha256_hex(transcript) == claimed

    return VerificationReport(
        checksum_ok=checksum_ok,
        signature_ok=signature_ok,
        fingerprint_ok=fingerprint_ok,
        expected_checksum=expected,
        key_id=signature.get("key_id") if isinstance(signature, dict) else None,
    )
