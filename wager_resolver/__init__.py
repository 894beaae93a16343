"""
Wager resolver - settles chess wager escrows from verified game results.
"""
from .attestation import AttestationClient, ProofAttestor
from .chain import EscrowScanner, SettlementSubmitter
from .config import ChainRegistry, NetworkCatalog, Settings, Signer
from .exceptions import (
    AlreadyResolvedError, ConfigurationError, DataQualityError, ErrorCategory, ResolverError,
    SettlementRevertedError, SignerError, TransientError, ValidationMismatchError
)
from .models import (
    Attestation, ChainConfig, EscrowInstance, EscrowState, RawOutcome, ReconciledOutcome,
    ResultCode, SettlementAttempt, SettlementStatus, SweepReport, TxReceipt
)
from .reconciler import OutcomeReconciler, determine_winner
from .scheduler import ChainSweeper, Scheduler, build_scheduler
from .sources import GameApiClient
from .version import __version__

__all__ = [
    "AttestationClient",
    "ProofAttestor",
    "EscrowScanner",
    "SettlementSubmitter",
    "ChainRegistry",
    "NetworkCatalog",
    "Settings",
    "Signer",
    "AlreadyResolvedError",
    "ConfigurationError",
    "DataQualityError",
    "ErrorCategory",
    "ResolverError",
    "SettlementRevertedError",
    "SignerError",
    "TransientError",
    "ValidationMismatchError",
    "Attestation",
    "ChainConfig",
    "EscrowInstance",
    "EscrowState",
    "RawOutcome",
    "ReconciledOutcome",
    "ResultCode",
    "SettlementAttempt",
    "SettlementStatus",
    "SweepReport",
    "TxReceipt",
    "OutcomeReconciler",
    "determine_winner",
    "ChainSweeper",
    "Scheduler",
    "build_scheduler",
    "GameApiClient",
    "__version__",
]
