"""
Exceptions for the wager resolver.

Every exception carries an ``ErrorCategory`` so the sweep loop can decide
whether a failure is contained to one wager, defers it, or halts the chain.
"""
from enum import Enum
from typing import Optional


class ErrorCategory(str, Enum):
    """
    Operator-facing error categories.

    TRANSIENT, DATA_QUALITY and VALIDATION_MISMATCH are contained to a single
    wager. FATAL_SIGNER aborts the remainder of a chain's sweep.
    """
    TRANSIENT = "TRANSIENT"
    DATA_QUALITY = "DATA_QUALITY"
    VALIDATION_MISMATCH = "VALIDATION_MISMATCH"
    IDEMPOTENT = "IDEMPOTENT"
    FATAL_SIGNER = "FATAL_SIGNER"
    REVERTED = "REVERTED"
    CONFIGURATION = "CONFIGURATION"


class ResolverError(Exception):
    """Base exception for wager resolver errors."""
    category: ErrorCategory = ErrorCategory.TRANSIENT

    def __init__(self, message: str, escrow_address: Optional[str] = None):
        self.escrow_address = escrow_address
        super().__init__(message)


class ConfigurationError(ResolverError):
    """Raised when chain or service configuration is unusable."""
    category = ErrorCategory.CONFIGURATION


class TransientError(ResolverError):
    """Raised for infrastructure failures worth retrying (RPC, network)."""
    category = ErrorCategory.TRANSIENT


class RateLimitedError(TransientError):
    """Raised when an upstream provider rate-limits us."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        self.retry_after = retry_after
        super().__init__(message)


class UpstreamTimeoutError(TransientError):
    """Raised when an upstream call times out."""
    pass


class DataQualityError(ResolverError):
    """Raised when upstream data is missing or malformed; retried next sweep."""
    category = ErrorCategory.DATA_QUALITY


class GameNotFoundError(DataQualityError):
    """Raised when the game-data provider does not know the game (yet)."""
    pass


class AttestationUnavailableError(DataQualityError):
    """Raised when the attestation provider has no proof for the game yet."""
    pass


class AttestationFieldError(DataQualityError):
    """Raised when none of the known key aliases resolve a required field."""

    def __init__(self, message: str, field: str):
        self.field = field
        super().__init__(message)


class StaleAttestationError(DataQualityError):
    """Raised when an attestation is outside the freshness window."""
    pass


class UnresolvedOutcomeError(DataQualityError):
    """Raised when the agreed result is Unknown; settlement is deferred."""
    pass


class ValidationMismatchError(ResolverError):
    """
    Raised when independent sources disagree.

    These may indicate manipulation and are never settled automatically.
    """
    category = ErrorCategory.VALIDATION_MISMATCH


class ResultMismatchError(ValidationMismatchError):
    """Raised when the raw result and the attested result disagree."""
    pass


class ParticipantMismatchError(ValidationMismatchError):
    """Raised when game handles do not match the wager participants."""
    pass


class AmbiguousParticipantError(ValidationMismatchError):
    """Raised when a handle matches both participants."""
    pass


class InvalidAttestationError(ValidationMismatchError):
    """Raised when an attestation fails signature or consistency checks."""
    pass


class DuplicateReconciliationError(ValidationMismatchError):
    """Raised when a wager is reconciled twice within one sweep."""
    pass


class AlreadyResolvedError(ResolverError):
    """Raised when the contract reports the wager as already resolved."""
    category = ErrorCategory.IDEMPOTENT


class SignerError(ResolverError):
    """Raised when the operator credential cannot pay for transactions."""
    category = ErrorCategory.FATAL_SIGNER

    def __init__(self, message: str, chain_key: Optional[str] = None, escrow_address: Optional[str] = None):
        self.chain_key = chain_key
        super().__init__(message, escrow_address=escrow_address)


class SettlementRevertedError(ResolverError):
    """Raised when a settlement reverts for a reason we do not recognise."""
    category = ErrorCategory.REVERTED

    def __init__(self, message: str, escrow_address: Optional[str] = None, reason: Optional[str] = None):
        self.reason = reason
        super().__init__(message, escrow_address=escrow_address)
