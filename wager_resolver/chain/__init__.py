"""
On-chain access: reading wagers and sending settlements.
"""
from .scanner import EscrowScanner
from .submitter import SettlementSubmitter, classify_error, encode_outcome

__all__ = [
    "EscrowScanner",
    "SettlementSubmitter",
    "classify_error",
    "encode_outcome",
]
