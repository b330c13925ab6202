"""
Envelope encryption for memory record content.

Each payload is encrypted with a fresh 256-bit data key (DEK) using
AES-256-GCM. The DEK is then wrapped by a key-encryption key (KEK) held by a
KMS provider and stored next to the ciphertext. The envelope records which KEK
wrapped its DEK, so rotating the active KEK never requires touching old rows.

KMS providers:
- memory: KEKs held in process memory (development and tests only)
- aws / gcp: reserved; not implemented and refused at construction
"""

from __future__ import annotations

import base64
import binascii
import os
import threading
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

import memory_layer.config as config
from memory_layer.config import EncryptionSettings, KMSProviderName
from memory_layer.errors import (
    ConfigurationError,
    CryptoError,
    DecryptionError,
    EncryptionError,
    KMSKeyNotFoundError,
)

logger = config.logger

ENCRYPTION_VERSION = "v1-aes256gcm"
GCM_IV_LENGTH = 12
GCM_AUTH_TAG_LENGTH = 16
DEK_BYTES = 32
KEK_BYTES = 32
DEFAULT_KEK_ALIAS = "kek-default"
HEALTH_CHECK_PROBE = b"kms-health-check-test-data"

ENVELOPE_FIELDS = (
    "data_ciphertext",
    "dek_ciphertext",
    "dek_kid",
    "encryption_version",
    "auth_tag",
    "iv",
)


def _b64encode(value: bytes) -> str:
    return base64.b64encode(value).decode("ascii")


def _b64decode(value: str, field: str) -> bytes:
    if not isinstance(value, str):
        raise DecryptionError(f"envelope field {field} must be a base64 string")
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise DecryptionError(f"envelope field {field} is not valid base64") from exc


def _zero(buffer: bytearray) -> None:
    for index in range(len(buffer)):
        buffer[index] = 0


def default_kek_id(now: Optional[datetime] = None) -> str:
    """Monthly KEK id, e.g. kek-202501."""
    current = now or datetime.now(timezone.utc)
    return f"kek-{current.year}{current.month:02d}"


@dataclass(frozen=True)
class EncryptedEnvelope:
    data_ciphertext: str
    dek_ciphertext: str
    dek_kid: str
    encryption_version: str
    auth_tag: str
    iv: str

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict) -> "EncryptedEnvelope":
        if not isinstance(payload, dict):
            raise DecryptionError("encrypted envelope must be an object")
        missing = [name for name in ENVELOPE_FIELDS if not payload.get(name)]
        if missing:
            raise DecryptionError(f"encrypted envelope missing fields: {', '.join(missing)}")
        return cls(**{name: payload[name] for name in ENVELOPE_FIELDS})


# =============================================================================
# KMS providers
# =============================================================================

class KMSProvider(ABC):
    """Wraps and unwraps data keys with a named key-encryption key."""

    name = "abstract"

    @abstractmethod
    def encrypt_dek(self, plain_dek: bytes, kek_id: str) -> str:
        """Return the wrapped DEK, base64 encoded."""

    @abstractmethod
    def decrypt_dek(self, wrapped_dek: str, kek_id: str) -> bytearray:
        """Return the raw DEK; callers zero it after use."""


class MemoryKMSProvider(KMSProvider):
    """
    Process-local KEK storage for development and tests.

    Set DEV_KEK_BASE64 to keep the same KEK across restarts; otherwise an
    ephemeral KEK is generated and anything encrypted with it is unreadable
    after the process exits.
    """

    name = KMSProviderName.memory.value

    def __init__(
        self,
        environment: str = "development",
        dev_kek_base64: Optional[str] = None,
        initial_kek_id: Optional[str] = None,
    ):
        if environment.strip().lower() in config.PRODUCTION_ENVIRONMENTS:
            raise ConfigurationError(
                "MemoryKMSProvider is for development/testing only. "
                "Production deployments must use a cloud KMS provider."
            )
        self._lock = threading.Lock()
        self._keys: dict[str, bytes] = {}

        if dev_kek_base64:
            try:
                kek = base64.b64decode(dev_kek_base64, validate=True)
            except (binascii.Error, ValueError) as exc:
                raise ConfigurationError(
                    f"Invalid DEV_KEK_BASE64: must be base64-encoded {KEK_BYTES * 8}-bit key"
                ) from exc
            if len(kek) != KEK_BYTES:
                raise ConfigurationError(
                    f"Invalid DEV_KEK_BASE64 length: {len(kek)} bytes (expected {KEK_BYTES})"
                )
            logger.info("Using persistent KEK from DEV_KEK_BASE64")
        else:
            kek = os.urandom(KEK_BYTES)
            logger.warning(
                "Using ephemeral KEK (DEV_KEK_BASE64 not set); encrypted data will be lost on restart"
            )

        self._keys[DEFAULT_KEK_ALIAS] = kek
        if initial_kek_id:
            self._keys[initial_kek_id] = kek

    def add_kek(self, kek_id: str, key: Optional[bytes] = None) -> None:
        """Register a KEK for rotation. Existing KEKs are never dropped."""
        material = key if key is not None else os.urandom(KEK_BYTES)
        if len(material) != KEK_BYTES:
            raise ConfigurationError(f"KEK must be {KEK_BYTES} bytes")
        with self._lock:
            self._keys[kek_id] = bytes(material)

    def has_kek(self, kek_id: str) -> bool:
        with self._lock:
            return kek_id in self._keys

    def _get_kek(self, kek_id: str) -> bytes:
        with self._lock:
            kek = self._keys.get(kek_id)
        if kek is None:
            raise KMSKeyNotFoundError(f"KEK not found: {kek_id}")
        return kek

    def encrypt_dek(self, plain_dek: bytes, kek_id: str) -> str:
        kek = self._get_kek(kek_id)
        iv = os.urandom(GCM_IV_LENGTH)
        sealed = AESGCM(kek).encrypt(iv, bytes(plain_dek), None)
        ciphertext, auth_tag = sealed[:-GCM_AUTH_TAG_LENGTH], sealed[-GCM_AUTH_TAG_LENGTH:]
        # iv || auth_tag || ciphertext
        return _b64encode(iv + auth_tag + ciphertext)

    def decrypt_dek(self, wrapped_dek: str, kek_id: str) -> bytearray:
        kek = self._get_kek(kek_id)
        combined = _b64decode(wrapped_dek, "dek_ciphertext")
        if len(combined) <= GCM_IV_LENGTH + GCM_AUTH_TAG_LENGTH:
            raise DecryptionError("wrapped DEK is truncated")
        iv = combined[:GCM_IV_LENGTH]
        auth_tag = combined[GCM_IV_LENGTH:GCM_IV_LENGTH + GCM_AUTH_TAG_LENGTH]
        ciphertext = combined[GCM_IV_LENGTH + GCM_AUTH_TAG_LENGTH:]
        try:
            return bytearray(AESGCM(kek).decrypt(iv, ciphertext + auth_tag, None))
        except InvalidTag as exc:
            raise DecryptionError("wrapped DEK failed authentication") from exc


class AWSKMSProvider(KMSProvider):
    """
    AWS KMS integration is not implemented.

    Wiring it up means calling the KMS Encrypt/Decrypt APIs with the key ARN
    and dropping this constructor guard.
    """

    name = KMSProviderName.aws.value

    def __init__(self, *args, **kwargs):
        raise ConfigurationError(
            "AWS KMS provider is not implemented. Use KMS_PROVIDER=memory outside production."
        )

    def encrypt_dek(self, plain_dek: bytes, kek_id: str) -> str:
        raise ConfigurationError("AWS KMS not implemented")

    def decrypt_dek(self, wrapped_dek: str, kek_id: str) -> bytearray:
        raise ConfigurationError("AWS KMS not implemented")


class GCPKMSProvider(KMSProvider):
    """Google Cloud KMS integration is not implemented."""

    name = KMSProviderName.gcp.value

    def __init__(self, *args, **kwargs):
        raise ConfigurationError(
            "GCP KMS provider is not implemented. Use KMS_PROVIDER=memory outside production."
        )

    def encrypt_dek(self, plain_dek: bytes, kek_id: str) -> str:
        raise ConfigurationError("GCP KMS not implemented")

    def decrypt_dek(self, wrapped_dek: str, kek_id: str) -> bytearray:
        raise ConfigurationError("GCP KMS not implemented")


_UNIMPLEMENTED_PROVIDERS = {KMSProviderName.aws.value, KMSProviderName.gcp.value}


def select_kms_provider(settings: EncryptionSettings) -> KMSProvider:
    provider = settings.kms_provider
    if settings.is_production and provider in _UNIMPLEMENTED_PROVIDERS:
        raise ConfigurationError(
            f"KMS provider '{provider}' is not implemented; production deployments "
            "require a working cloud KMS integration."
        )
    if provider == KMSProviderName.memory.value:
        return MemoryKMSProvider(
            environment=settings.environment,
            dev_kek_base64=settings.dev_kek_base64,
            initial_kek_id=settings.kek_id or default_kek_id(),
        )
    if provider == KMSProviderName.aws.value:
        return AWSKMSProvider()
    if provider == KMSProviderName.gcp.value:
        return GCPKMSProvider()
    raise ConfigurationError(f"Unknown KMS_PROVIDER: {provider}")


# =============================================================================
# Encryption service
# =============================================================================

class EncryptionService:
    """Envelope encryption over a pluggable KMS provider."""

    def __init__(self, kms_provider: KMSProvider, kek_id: Optional[str] = None):
        self._kms_provider = kms_provider
        self._current_kek_id = kek_id or default_kek_id()
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: EncryptionSettings) -> "EncryptionService":
        kek_id = settings.kek_id or default_kek_id()
        return cls(select_kms_provider(settings), kek_id=kek_id)

    @property
    def kms_provider(self) -> KMSProvider:
        return self._kms_provider

    @property
    def current_kek_id(self) -> str:
        with self._lock:
            return self._current_kek_id

    def rotate_kek(self, new_kek_id: str) -> None:
        """
        Use ``new_kek_id`` for future encryptions.

        Existing envelopes keep their own ``dek_kid`` and stay decryptable as
        long as the provider still resolves the old KEK.
        """
        if not new_kek_id:
            raise ConfigurationError("new KEK id must be non-empty")
        with self._lock:
            previous = self._current_kek_id
            self._current_kek_id = new_kek_id
        logger.info("kek_rotated", extra={"from_kek_id": previous, "to_kek_id": new_kek_id})

    def encrypt(self, plaintext: bytes, kek_id: Optional[str] = None) -> EncryptedEnvelope:
        use_kek_id = kek_id or self.current_kek_id
        dek = bytearray(os.urandom(DEK_BYTES))
        try:
            iv = os.urandom(GCM_IV_LENGTH)
            sealed = AESGCM(dek).encrypt(iv, bytes(plaintext), None)
            ciphertext, auth_tag = sealed[:-GCM_AUTH_TAG_LENGTH], sealed[-GCM_AUTH_TAG_LENGTH:]
            dek_ciphertext = self._kms_provider.encrypt_dek(dek, use_kek_id)
            return EncryptedEnvelope(
                data_ciphertext=_b64encode(ciphertext),
                dek_ciphertext=dek_ciphertext,
                dek_kid=use_kek_id,
                encryption_version=ENCRYPTION_VERSION,
                auth_tag=_b64encode(auth_tag),
                iv=_b64encode(iv),
            )
        except CryptoError:
            raise
        except (ValueError, TypeError) as exc:
            raise EncryptionError("envelope encryption failed") from exc
        finally:
            _zero(dek)

    def decrypt(self, envelope: EncryptedEnvelope) -> bytes:
        if envelope.encryption_version != ENCRYPTION_VERSION:
            raise DecryptionError(
                f"Unsupported encryption version: {envelope.encryption_version}. "
                f"Expected: {ENCRYPTION_VERSION}"
            )
        iv = _b64decode(envelope.iv, "iv")
        auth_tag = _b64decode(envelope.auth_tag, "auth_tag")
        ciphertext = _b64decode(envelope.data_ciphertext, "data_ciphertext")
        if len(iv) != GCM_IV_LENGTH or len(auth_tag) != GCM_AUTH_TAG_LENGTH:
            raise DecryptionError("envelope iv or auth_tag has the wrong length")

        dek = self._kms_provider.decrypt_dek(envelope.dek_ciphertext, envelope.dek_kid)
        try:
            return AESGCM(dek).decrypt(iv, ciphertext + auth_tag, None)
        except InvalidTag as exc:
            raise DecryptionError("ciphertext failed authentication") from exc
        except ValueError as exc:
            raise DecryptionError("data key is invalid") from exc
        finally:
            _zero(dek)


def assert_kms_usable(service: Optional[EncryptionService], settings: EncryptionSettings) -> None:
    """
    Startup check: refuse unimplemented providers in production and verify an
    encrypt/decrypt round trip through the configured provider.
    """
    provider = settings.kms_provider
    if settings.is_production and provider in _UNIMPLEMENTED_PROVIDERS:
        raise ConfigurationError(
            f"KMS provider '{provider}' is not implemented for production use"
        )
    try:
        active = service or EncryptionService.from_settings(settings)
        envelope = active.encrypt(HEALTH_CHECK_PROBE)
        decrypted = active.decrypt(envelope)
    except (CryptoError, ConfigurationError) as exc:
        logger.error("kms_health_check_failed", extra={"provider": provider, "category": type(exc).__name__})
        raise ConfigurationError(f"KMS provider '{provider}' is not usable: {exc}") from exc
    if decrypted != HEALTH_CHECK_PROBE:
        raise ConfigurationError(f"KMS provider '{provider}' is not usable: round-trip mismatch")
    logger.info("kms_health_check_passed", extra={"provider": provider})
