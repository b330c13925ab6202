"""
Shared error types for the memory layer.
"""


class ValidationIssue(ValueError):
    category = "validation"

    def __init__(
        self,
        message: str,
        field: str = "unknown",
        error_type: str = "invalid",
        error_code: str | None = None,
        data: dict | None = None,
    ):
        super().__init__(message)
        self.field = field
        self.error_type = error_type
        self.error_code = error_code
        self.data = data


class StorageUnavailableError(RuntimeError):
    """Raised when a storage backend cannot serve requests (pool exhausted, connection lost)."""

    category = "backend_unavailable"


class CircuitBreakerOpenError(StorageUnavailableError):
    """Raised without touching the database while the store's breaker is open."""

    category = "circuit_breaker_open"


class CryptoError(RuntimeError):
    category = "crypto"


class EncryptionError(CryptoError):
    category = "encryption_failed"


class DecryptionError(CryptoError):
    """Authentication failure, unsupported format or missing envelope fields."""

    category = "decryption_failed"


class KMSKeyNotFoundError(CryptoError):
    category = "kms_key_not_found"


class ComplianceConsistencyError(RuntimeError):
    """
    Erasure could not be confirmed on every store.

    These need manual remediation and must never be retried silently.
    """

    category = "compliance_consistency"

    def __init__(
        self,
        message: str,
        primary_deleted: int = 0,
        secondary_deleted: int | None = None,
    ):
        super().__init__(message)
        self.primary_deleted = primary_deleted
        self.secondary_deleted = secondary_deleted


class SecondaryForgetError(ComplianceConsistencyError):
    category = "secondary_forget_failed"


class ForgetCountMismatchError(ComplianceConsistencyError):
    category = "forget_count_mismatch"


class ConfigurationError(RuntimeError):
    """Fatal startup misconfiguration; the process must not serve traffic."""

    category = "configuration"


def error_category(exc: BaseException) -> str:
    return getattr(exc, "category", None) or type(exc).__name__


def http_status_for(exc: BaseException) -> int:
    if isinstance(exc, ValidationIssue):
        return 400
    if isinstance(exc, StorageUnavailableError):
        return 503
    return 500
