"""
Attestation module for the wager resolver.

Fetches witness-signed proofs of a game's result and verifies them before
the result is trusted for settlement.
"""
from .attestor import FIELD_ALIASES, ProofAttestor, resolve_alias
from .client import AttestationClient
from .signatures import claim_identifier, recover_witness, serialize_claim, sign_claim

__all__ = [
    'AttestationClient',
    'ProofAttestor',
    'FIELD_ALIASES',
    'resolve_alias',
    'claim_identifier',
    'recover_witness',
    'serialize_claim',
    'sign_claim',
]
