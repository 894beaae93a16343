"""
ProofAttestor - verifies witness-signed game attestations and extracts the result.
"""
import json
import logging
import time
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from web3 import Web3

from ..exceptions import (
    AttestationFieldError, InvalidAttestationError, StaleAttestationError
)
from ..models import Attestation, ResultCode
from .signatures import claim_identifier, recover_witness

logger = logging.getLogger(__name__)

# Ordered key aliases per field. The chess provider emits "white_paper" for the
# white player; the others cover providers that spell the keys correctly.
FIELD_ALIASES: Dict[str, Tuple[str, ...]] = {
    "white": ("white_player", "white_paper", "whitePlayer", "white"),
    "black": ("black_player", "black_paper", "blackPlayer", "black"),
    "result": ("result", "game_result", "gameResult"),
    "game_id": ("URL_PARAMS_1_GRD", "game_id", "gameId"),
}


def resolve_alias(params: Dict[str, Any], field: str, aliases: Optional[Sequence[str]] = None) -> str:
    """
    Return the first non-empty value among a field's aliases.

    Raises:
        AttestationFieldError: If no alias resolves
    """
    for key in aliases or FIELD_ALIASES[field]:
        value = params.get(key)
        if value is not None and str(value).strip():
            return str(value).strip()
    raise AttestationFieldError(
        f"Attestation context has no usable '{field}' field (tried {', '.join(aliases or FIELD_ALIASES[field])})",
        field=field
    )


class ProofAttestor:
    """
    Verifies attestation payloads against a set of trusted witnesses.

    With no trusted witnesses configured, every payload is rejected.
    """

    def __init__(
        self,
        trusted_witnesses: Iterable[str],
        freshness_window: int = 3600,
        max_clock_skew: int = 300,
        min_witnesses: int = 1,
        provider_id: Optional[str] = None
    ):
        """
        Initialize the attestor.

        Args:
            trusted_witnesses: Addresses whose signatures are accepted
            freshness_window: Maximum attestation age in seconds
            max_clock_skew: How far in the future timestampS may be, in seconds
            min_witnesses: Distinct trusted signatures required
            provider_id: Expected claim provider (any provider if None)
        """
        self.trusted_witnesses = frozenset(Web3.to_checksum_address(w) for w in trusted_witnesses)
        self.freshness_window = freshness_window
        self.max_clock_skew = max_clock_skew
        self.min_witnesses = min_witnesses
        self.provider_id = provider_id
        if not self.trusted_witnesses:
            logger.warning("No trusted attestation witnesses configured; every attestation will be rejected")

    def verify(self, payload: Dict[str, Any], expected_game_id: str, now: Optional[float] = None) -> Attestation:
        """
        Verify a payload and decode the attested game result.

        Args:
            payload: Raw payload with claimData and signatures
            expected_game_id: The game the wager is linked to
            now: Reference time (defaults to the current time)

        Returns:
            Attestation

        Raises:
            InvalidAttestationError: Structure, provider, identifier, signature
                or game id checks failed
            StaleAttestationError: timestampS outside the freshness window
            AttestationFieldError: A field could not be resolved from the context
        """
        claim = payload.get("claimData") if isinstance(payload, dict) else None
        if not isinstance(claim, dict):
            raise InvalidAttestationError("Attestation payload has no claimData")

        signatures = payload.get("signatures") or []
        if not isinstance(signatures, list) or not signatures:
            raise InvalidAttestationError("Attestation payload carries no signatures")

        provider = str(claim.get("provider", ""))
        if self.provider_id and provider != self.provider_id:
            raise InvalidAttestationError(f"Attestation from unexpected provider {provider!r}")

        context_text = claim.get("context") or ""
        identifier = claim_identifier(provider, str(claim.get("parameters", "")), context_text)
        if identifier != str(claim.get("identifier", "")).lower():
            raise InvalidAttestationError("Attestation identifier does not match its claim")

        witnesses = self._verified_witnesses(claim, signatures)

        attested_at = self._check_freshness(claim, now if now is not None else time.time())

        try:
            context = json.loads(context_text) if context_text else {}
        except (TypeError, ValueError) as e:
            raise AttestationFieldError(f"Attestation context is not valid JSON: {e}", field="context")
        params = context.get("extractedParameters") if isinstance(context, dict) else None
        if not isinstance(params, dict):
            raise AttestationFieldError("Attestation context has no extractedParameters", field="extractedParameters")

        white = resolve_alias(params, "white")
        black = resolve_alias(params, "black")
        notation = resolve_alias(params, "result")
        game_id = resolve_alias(params, "game_id")

        if game_id != str(expected_game_id).strip():
            raise InvalidAttestationError(
                f"Attestation is for game {game_id}, expected {expected_game_id}"
            )

        logger.debug(f"Attestation {identifier[:10]}... for game {game_id} verified by {len(witnesses)} witness(es)")
        return Attestation(
            external_game_id=game_id,
            white_handle=white,
            black_handle=black,
            result_code=ResultCode.from_notation(notation),
            result_notation=notation,
            attested_at=attested_at,
            raw_payload=payload,
            provenance_tag=provider,
            identifier=identifier,
            witnesses=tuple(witnesses),
        )

    def _verified_witnesses(self, claim: Dict[str, Any], signatures: List[Any]) -> List[str]:
        recovered = []
        for signature in signatures:
            try:
                address = recover_witness(claim, signature)
            except Exception as e:
                logger.debug(f"Unrecoverable witness signature: {e}")
                continue
            if address in self.trusted_witnesses and address not in recovered:
                recovered.append(address)

        if len(recovered) < self.min_witnesses:
            raise InvalidAttestationError(
                f"Attestation has {len(recovered)} trusted witness signature(s), {self.min_witnesses} required"
            )
        return recovered

    def _check_freshness(self, claim: Dict[str, Any], now: float) -> int:
        try:
            attested_at = int(claim.get("timestampS"))
        except (TypeError, ValueError):
            raise InvalidAttestationError("Attestation has no valid timestampS")

        self.check_fresh(attested_at, now)
        return attested_at

    def check_fresh(self, attested_at: int, now: Optional[float] = None) -> None:
        """
        Raise StaleAttestationError unless attested_at lies in the freshness window.

        Checked on verify() and again right before each settlement is sent.
        """
        now = now if now is not None else time.time()
        if attested_at < now - self.freshness_window:
            raise StaleAttestationError(
                f"Attestation is {int(now - attested_at)}s old (window {self.freshness_window}s)"
            )
        if attested_at > now + self.max_clock_skew:
            raise StaleAttestationError(f"Attestation timestamp is {int(attested_at - now)}s in the future")
