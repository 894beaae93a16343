"""
OutcomeReconciler - the single place where a game result becomes a winning address.

The raw result and the attested result must agree, the players must be the
wager's participants in one of the two color assignments, and the agreed
result is then mapped to an address. Anything ambiguous is rejected.
"""
import logging
import threading
from typing import Optional, Set, Tuple

from .exceptions import (
    AmbiguousParticipantError, DuplicateReconciliationError, ParticipantMismatchError,
    ResultMismatchError, UnresolvedOutcomeError, ValidationMismatchError
)
from .models import Attestation, EscrowInstance, RawOutcome, ReconciledOutcome, ResultCode
from .sources.game_api import extract_game_id

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("wager_resolver.audit")


def normalize_handle(handle: Optional[str]) -> str:
    return (handle or "").strip().lower()


def assign_colors(instance: EscrowInstance, white_handle: str, black_handle: str) -> Tuple[str, str]:
    """
    Work out which participant played which color.

    Args:
        instance: The wager
        white_handle: Handle of the white player
        black_handle: Handle of the black player

    Returns:
        (white_address, black_address)

    Raises:
        AmbiguousParticipantError: Creator and opponent handles coincide, or
            white and black are the same handle
        ParticipantMismatchError: Neither color assignment matches both handles
    """
    creator = normalize_handle(instance.creator_handle)
    opponent = normalize_handle(instance.opponent_handle)
    white = normalize_handle(white_handle)
    black = normalize_handle(black_handle)

    if not creator or not opponent:
        raise ParticipantMismatchError(
            f"Wager {instance.address} is missing a participant handle", escrow_address=instance.address
        )
    if creator == opponent or white == black:
        raise AmbiguousParticipantError(
            f"Ambiguous participants for {instance.address}: creator={creator!r} opponent={opponent!r} "
            f"white={white!r} black={black!r}",
            escrow_address=instance.address
        )

    if white == creator and black == opponent:
        return instance.creator_address, instance.opponent_address
    if white == opponent and black == creator:
        return instance.opponent_address, instance.creator_address

    raise ParticipantMismatchError(
        f"Game players {white!r}/{black!r} do not match wager participants {creator!r}/{opponent!r}",
        escrow_address=instance.address
    )


def determine_winner(result_code: ResultCode, white_address: str, black_address: str) -> Optional[str]:
    """
    Map an agreed result to the winning address.

    Returns:
        The winner's address, or None for a draw

    Raises:
        UnresolvedOutcomeError: The result is Unknown
    """
    if result_code == ResultCode.WHITE_WIN:
        return white_address
    if result_code == ResultCode.BLACK_WIN:
        return black_address
    if result_code == ResultCode.DRAW:
        return None
    raise UnresolvedOutcomeError("Game has no decisive result yet")


class OutcomeReconciler:
    """Stateless reconciliation rules; use begin_sweep() for per-sweep issuance."""

    def reconcile(
        self,
        chain_key: str,
        instance: EscrowInstance,
        raw: RawOutcome,
        attestation: Attestation
    ) -> ReconciledOutcome:
        """
        Reconcile a wager against the raw and attested results of its game.

        Args:
            chain_key: Chain the wager lives on
            instance: The wager, observed in GameLinked state
            raw: Untrusted result from the game-data provider
            attestation: Verified attestation for the same game

        Returns:
            ReconciledOutcome

        Raises:
            ValidationMismatchError: The sources disagree or the players do not match
            UnresolvedOutcomeError: Both sources agree the result is Unknown
        """
        try:
            return self._reconcile(chain_key, instance, raw, attestation)
        except ValidationMismatchError as e:
            audit_logger.error(
                f"Validation mismatch on {chain_key} wager {instance.address} "
                f"(game {instance.external_game_id}): {e}"
            )
            raise

    def _reconcile(
        self,
        chain_key: str,
        instance: EscrowInstance,
        raw: RawOutcome,
        attestation: Attestation
    ) -> ReconciledOutcome:
        game_id = extract_game_id(instance.external_game_id)
        if not (game_id == raw.external_game_id == attestation.external_game_id):
            raise ResultMismatchError(
                f"Game id mismatch: wager={game_id!r} raw={raw.external_game_id!r} "
                f"attested={attestation.external_game_id!r}",
                escrow_address=instance.address
            )

        if raw.result_code != attestation.result_code:
            raise ResultMismatchError(
                f"Raw result {raw.result_code.value} disagrees with attested result "
                f"{attestation.result_code.value}",
                escrow_address=instance.address
            )

        if (normalize_handle(raw.white_handle), normalize_handle(raw.black_handle)) != (
            normalize_handle(attestation.white_handle), normalize_handle(attestation.black_handle)
        ):
            raise ParticipantMismatchError(
                f"Raw players {raw.white_handle}/{raw.black_handle} disagree with attested players "
                f"{attestation.white_handle}/{attestation.black_handle}",
                escrow_address=instance.address
            )

        white_address, black_address = assign_colors(instance, attestation.white_handle, attestation.black_handle)

        try:
            winner = determine_winner(attestation.result_code, white_address, black_address)
        except UnresolvedOutcomeError as e:
            e.escrow_address = instance.address
            raise

        logger.info(
            f"Reconciled {instance.address}: {attestation.result_code.value} "
            f"(white={attestation.white_handle}, black={attestation.black_handle}) -> "
            f"{winner or 'draw'}"
        )
        return ReconciledOutcome(
            chain_key=chain_key,
            escrow_address=instance.address,
            winner_address=winner,
            result_code=attestation.result_code,
            used_attestation_ref=attestation.identifier,
            external_game_id=game_id,
            white_handle=attestation.white_handle,
            black_handle=attestation.black_handle,
            white_address=white_address,
            black_address=black_address,
            result_notation=attestation.result_notation,
            attested_at=attestation.attested_at,
        )

    def begin_sweep(self, chain_key: str) -> "ReconciliationLedger":
        return ReconciliationLedger(self, chain_key)


class ReconciliationLedger:
    """
    Issues at most one ReconciledOutcome per wager address within one sweep.
    """

    def __init__(self, reconciler: OutcomeReconciler, chain_key: str):
        self.reconciler = reconciler
        self.chain_key = chain_key
        self._issued: Set[str] = set()
        self._lock = threading.Lock()

    def reconcile(self, instance: EscrowInstance, raw: RawOutcome, attestation: Attestation) -> ReconciledOutcome:
        key = instance.address.lower()
        with self._lock:
            if key in self._issued:
                raise DuplicateReconciliationError(
                    f"Wager {instance.address} was already reconciled in this sweep",
                    escrow_address=instance.address
                )
            self._issued.add(key)
        return self.reconciler.reconcile(self.chain_key, instance, raw, attestation)

    def __contains__(self, address: str) -> bool:
        with self._lock:
            return address.lower() in self._issued
