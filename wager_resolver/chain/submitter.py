"""
SettlementSubmitter - sends the resolution transaction for a reconciled wager.

Sends on one chain are serialized through a per-chain lock so the operator's
nonces stay monotonic; different chains send independently.
"""
import logging
import re
import threading
import time
from typing import Any, Dict, List, Optional, Set, Tuple

import requests
from eth_abi import encode
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted, TransactionNotFound

from .._http import with_backoff
from ..config import ChainRegistry
from ..exceptions import (
    AlreadyResolvedError, ErrorCategory, ResolverError, ResultMismatchError, SettlementRevertedError,
    SignerError, TransientError
)
from ..models import ReconciledOutcome, SettlementAttempt, SettlementStatus, TxReceipt
from .abis import ENCODED_PROOF_TYPE, RECLAIM_VERIFIER_ABI

logger = logging.getLogger(__name__)

IDEMPOTENT_MARKERS = (
    "wagernotactive",
    "proofalreadyused",
    "alreadyresolved",
    "already resolved",
    "already verified",
    "proof already used",
)

SIGNER_MARKERS = (
    "insufficient funds",
    "gas required exceeds allowance",
    "insufficient balance",
)

TRANSIENT_MARKERS = (
    "nonce too low",
    "replacement transaction underpriced",
    "timeout",
    "timed out",
    "rate limit",
    "too many requests",
)

# Matched against the message only, never against revert data
TRANSIENT_PATTERN = re.compile(r"\b(?:429|502|503|504|connection)\b")

# The node rejected the nonce itself, so nothing of ours went out
NONCE_CONFLICT_MARKERS = (
    "nonce too low",
    "replacement transaction underpriced",
)

# Answers to a rebroadcast of bytes the node already holds
ALREADY_BROADCAST_MARKERS = (
    "already known",
    "known transaction",
    "already imported",
    "nonce too low",
)

# Custom-error selectors surface as raw revert data rather than names
IDEMPOTENT_SELECTORS = tuple(
    Web3.to_hex(Web3.keccak(text=signature)[:4])
    for signature in ("WagerNotActive()", "ProofAlreadyUsed()")
)


def encode_outcome(outcome: ReconciledOutcome) -> bytes:
    """
    ABI-encode the proof struct the verifier decodes.

    Layout: (gameId, result, timestamp, keccak(white handle), keccak(black handle))
    """
    return encode(
        [ENCODED_PROOF_TYPE],
        [(
            outcome.external_game_id,
            outcome.result_notation,
            int(outcome.attested_at),
            Web3.keccak(text=outcome.white_handle),
            Web3.keccak(text=outcome.black_handle),
        )]
    )


def _error_text(error: BaseException, include_data: bool = True) -> str:
    parts = [str(error)]
    data = getattr(error, "data", None)
    if include_data and data is not None:
        parts.append(str(data))
    message = getattr(error, "message", None)
    if message:
        parts.append(str(message))
    return " ".join(parts).lower()


def _mentions(error: BaseException, markers: Tuple[str, ...]) -> bool:
    text = _error_text(error)
    return any(marker in text for marker in markers)


def classify_error(error: BaseException) -> ErrorCategory:
    """
    Classify a failure from the send path.

    Args:
        error: Exception raised by gas estimation, sending or confirmation

    Returns:
        IDEMPOTENT, FATAL_SIGNER, TRANSIENT or REVERTED
    """
    if isinstance(error, ResolverError):
        return error.category

    text = _error_text(error)
    if any(marker in text for marker in IDEMPOTENT_MARKERS) or any(s in text for s in IDEMPOTENT_SELECTORS):
        return ErrorCategory.IDEMPOTENT
    if any(marker in text for marker in SIGNER_MARKERS):
        return ErrorCategory.FATAL_SIGNER
    if isinstance(error, ContractLogicError):
        return ErrorCategory.REVERTED
    if isinstance(error, (requests.ConnectionError, requests.Timeout, TimeExhausted, TimeoutError, ConnectionError)):
        return ErrorCategory.TRANSIENT
    message = _error_text(error, include_data=False)
    if any(marker in message for marker in TRANSIENT_MARKERS) or TRANSIENT_PATTERN.search(message):
        return ErrorCategory.TRANSIENT
    return ErrorCategory.REVERTED


class SettlementSubmitter:
    """
    Builds, signs and sends verifyChessGameProof() for reconciled outcomes.

    Attempt bookkeeping is advisory: the wager's on-chain state decides
    whether it still needs settling.
    """

    def __init__(
        self,
        registry: ChainRegistry,
        max_retries: int = 3,
        backoff_base: float = 0.5,
        gas_limit: int = 500000,
        receipt_timeout: float = 120.0,
        poll_latency: float = 0.5,
        preflight: bool = True
    ):
        """
        Initialize the submitter.

        Args:
            registry: Chain registry holding the operator credential
            max_retries: Retries for transient send failures
            backoff_base: Base delay for exponential backoff in seconds
            gas_limit: Gas limit used when estimation is unavailable
            receipt_timeout: Seconds to wait for confirmation
            poll_latency: Receipt polling interval in seconds
            preflight: Call validateProof() before sending
        """
        self.registry = registry
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.gas_limit = gas_limit
        self.receipt_timeout = receipt_timeout
        self.poll_latency = poll_latency
        self.preflight = preflight

        self._send_locks: Dict[str, threading.Lock] = {key: threading.Lock() for key in registry.chain_keys}
        self._state_lock = threading.Lock()
        self._in_flight: Set[Tuple[str, str]] = set()
        self._attempts: Dict[Tuple[str, str], SettlementAttempt] = {}

    def _verifier(self, chain_key: str):
        chain = self.registry.get(chain_key)
        return self.registry.web3(chain_key).eth.contract(address=chain.verifier_address, abi=RECLAIM_VERIFIER_ABI)

    def submit(self, outcome: ReconciledOutcome) -> SettlementAttempt:
        """
        Settle one wager.

        Args:
            outcome: Reconciled outcome for the wager

        Returns:
            A snapshot of the attempt: Confirmed, or Skipped when the wager
            was already resolved or another settlement is in flight

        Raises:
            ResultMismatchError: The verifier's preflight disagrees with the outcome
            TransientError: Retries exhausted; deferred to the next sweep
            SignerError: The operator cannot pay for the transaction
            SettlementRevertedError: Any other revert; left for the next sweep
        """
        key = (outcome.chain_key, outcome.escrow_address.lower())
        with self._state_lock:
            if key in self._in_flight:
                logger.warning(f"Settlement of {outcome.escrow_address} already in flight; skipping duplicate")
                return SettlementAttempt(
                    escrow_address=outcome.escrow_address,
                    chain_key=outcome.chain_key,
                    status=SettlementStatus.SKIPPED,
                    last_error="settlement already in flight",
                    updated_at=int(time.time()),
                )
            self._in_flight.add(key)
            attempt = self._attempts.get(key)
            if attempt is None:
                attempt = SettlementAttempt(escrow_address=outcome.escrow_address, chain_key=outcome.chain_key)
                self._attempts[key] = attempt

        try:
            self._submit(outcome, attempt)
            return self._snapshot(attempt)
        finally:
            with self._state_lock:
                self._in_flight.discard(key)

    def _submit(self, outcome: ReconciledOutcome, attempt: SettlementAttempt) -> None:
        address = outcome.escrow_address
        encoded = encode_outcome(outcome)

        try:
            if self.preflight:
                with_backoff(
                    lambda: self._preflight(outcome, encoded),
                    self.max_retries,
                    self.backoff_base,
                    f"preflight of {address}",
                    logger
                )
            tx_hash = with_backoff(
                lambda: self._send_once(outcome, encoded, attempt),
                self.max_retries,
                self.backoff_base,
                f"settlement of {address}",
                logger
            )
        except AlreadyResolvedError as e:
            self._mark(attempt, SettlementStatus.SKIPPED, str(e))
            logger.info(f"Wager {address} on {outcome.chain_key} is already resolved; skipping")
            return
        except TransientError as e:
            self._mark(attempt, SettlementStatus.FAILED, str(e))
            raise
        except SignerError as e:
            self._mark(attempt, SettlementStatus.FAILED, str(e))
            raise
        except SettlementRevertedError as e:
            self._mark(attempt, SettlementStatus.PENDING, str(e))
            logger.error(
                f"Settlement of {address} on {outcome.chain_key} reverted: {e.reason or e}. "
                f"Outcome: game={outcome.external_game_id} result={outcome.result_code.value} "
                f"winner={outcome.winner_or_sentinel} white={outcome.white_address} "
                f"black={outcome.black_address} attestation={outcome.used_attestation_ref}"
            )
            raise

        receipt = self._await_receipt(outcome, attempt, tx_hash)
        if receipt.status != 1:
            reason = f"transaction {receipt.tx_hash} reverted in block {receipt.block_number}"
            self._mark(attempt, SettlementStatus.PENDING, reason)
            logger.error(f"Settlement of {address} on {outcome.chain_key} failed on chain: {reason}")
            raise SettlementRevertedError(f"Settlement of {address} reverted", escrow_address=address, reason=reason)

        self._mark(attempt, SettlementStatus.CONFIRMED, None)
        logger.info(
            f"Settled {address} on {outcome.chain_key}: winner={outcome.winner_or_sentinel} "
            f"tx={receipt.tx_hash} block={receipt.block_number}"
        )

    def _preflight(self, outcome: ReconciledOutcome, encoded: bytes) -> None:
        verifier = self._verifier(outcome.chain_key)
        try:
            is_valid, game_data = verifier.functions.validateProof(
                encoded, outcome.white_address, outcome.black_address
            ).call()
        except Exception as e:
            self._raise_for(e, outcome)

        if not is_valid:
            raise ResultMismatchError(
                f"Verifier rejected the proof for {outcome.escrow_address} in preflight",
                escrow_address=outcome.escrow_address
            )
        predicted = game_data[1] if len(game_data) > 1 else None
        if not predicted or str(predicted).lower() != outcome.winner_or_sentinel.lower():
            raise ResultMismatchError(
                f"Verifier would pay {predicted} but the reconciled winner is {outcome.winner_or_sentinel}",
                escrow_address=outcome.escrow_address
            )
        logger.debug(f"Preflight for {outcome.escrow_address} agrees on winner {predicted}")

    def _send_once(self, outcome: ReconciledOutcome, encoded: bytes, attempt: SettlementAttempt) -> str:
        chain_key = outcome.chain_key
        w3 = self.registry.web3(chain_key)
        operator = self.registry.operator
        call = self._verifier(chain_key).functions.verifyChessGameProof(
            encoded, outcome.escrow_address, outcome.white_address, outcome.black_address
        )

        with self._send_locks[chain_key]:
            with self._state_lock:
                attempt.attempt_count += 1
                attempt.updated_at = int(time.time())
            try:
                nonce = w3.eth.get_transaction_count(operator.address, "pending")
                gas = self._estimate_gas(call, operator.address, outcome)
                tx = call.build_transaction({
                    "from": operator.address,
                    "nonce": nonce,
                    "gas": gas,
                    "gasPrice": w3.eth.gas_price,
                })
            except ResolverError:
                raise
            except Exception as e:
                self._raise_for(e, outcome)

            try:
                signed_tx = operator.sign_transaction(tx)
            except Exception as e:
                logger.critical(f"Operator failed to sign transaction on {chain_key}: {e}")
                raise SignerError(
                    f"Failed to sign transaction: {e}", chain_key=chain_key, escrow_address=outcome.escrow_address
                )

            tx_hash = self._broadcast(outcome, w3, signed_tx)

        tx_hash_hex = tx_hash if isinstance(tx_hash, str) else Web3.to_hex(tx_hash)
        with self._state_lock:
            attempt.status = SettlementStatus.SUBMITTED
            attempt.tx_hash = tx_hash_hex
            attempt.updated_at = int(time.time())
        logger.info(f"Settlement transaction for {outcome.escrow_address} sent: {tx_hash_hex} (nonce {nonce})")
        return tx_hash_hex

    def _broadcast(self, outcome: ReconciledOutcome, w3: Web3, signed_tx: Any) -> Any:
        """
        Send a signed transaction, rebroadcasting the same bytes after an
        ambiguous failure.

        A timeout or dropped connection may come after the node accepted the
        transaction, so the transaction is never rebuilt in that case: the
        same raw bytes are sent again, and an "already known" answer counts
        as sent. Only when the node does not know the hash once retries are
        exhausted is the failure raised as transient, which lets the caller
        build a fresh transaction.
        """
        raw = signed_tx.raw_transaction
        signed_hash = Web3.to_hex(signed_tx.hash)
        try:
            return w3.eth.send_raw_transaction(raw)
        except Exception as e:
            if classify_error(e) != ErrorCategory.TRANSIENT or _mentions(e, NONCE_CONFLICT_MARKERS):
                self._raise_for(e, outcome)
            logger.warning(f"Broadcast of {signed_hash} for {outcome.escrow_address} is unconfirmed: {e}")

        def rebroadcast() -> Any:
            try:
                return w3.eth.send_raw_transaction(raw)
            except Exception as e:
                if _mentions(e, ALREADY_BROADCAST_MARKERS):
                    logger.info(f"Node already holds {signed_hash}; treating it as sent")
                    return signed_hash
                self._raise_for(e, outcome)

        try:
            return with_backoff(
                rebroadcast,
                self.max_retries,
                self.backoff_base,
                f"rebroadcast of {signed_hash}",
                logger
            )
        except TransientError:
            if self._is_known(w3, signed_hash):
                logger.info(f"{signed_hash} for {outcome.escrow_address} reached the node; awaiting receipt")
                return signed_hash
            raise

    @staticmethod
    def _is_known(w3: Web3, tx_hash: str) -> bool:
        try:
            w3.eth.get_transaction(tx_hash)
        except TransactionNotFound:
            return False
        except Exception as e:
            # Treated as possibly pending
            logger.warning(f"Could not look up {tx_hash}: {e}")
            return True
        return True

    def _estimate_gas(self, call: Any, sender: str, outcome: ReconciledOutcome) -> int:
        try:
            gas = int(call.estimate_gas({"from": sender}) * 1.1)
            logger.debug(f"Estimated gas: {gas}")
            return gas
        except Exception as e:
            category = classify_error(e)
            if category == ErrorCategory.REVERTED and not isinstance(e, ContractLogicError):
                logger.warning(f"Gas estimation failed, using default: {self.gas_limit}. Error: {e}")
                return self.gas_limit
            self._raise_for(e, outcome)

    def _await_receipt(self, outcome: ReconciledOutcome, attempt: SettlementAttempt, tx_hash: str) -> TxReceipt:
        w3 = self.registry.web3(outcome.chain_key)
        try:
            receipt = w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self.receipt_timeout, poll_latency=self.poll_latency
            )
        except Exception as e:
            # A sent transaction is never re-sent here; the next sweep re-reads state instead
            self._mark(attempt, SettlementStatus.SUBMITTED, str(e))
            raise TransientError(
                f"No receipt for {tx_hash} ({outcome.escrow_address}) yet: {e}",
                escrow_address=outcome.escrow_address
            )
        return self._convert_receipt(receipt)

    @staticmethod
    def _convert_receipt(web3_receipt: Any) -> TxReceipt:
        receipt_dict = dict(web3_receipt)
        for key, value in list(receipt_dict.items()):
            if isinstance(value, bytes):
                receipt_dict[key] = Web3.to_hex(value)
        return TxReceipt.model_validate(receipt_dict)

    def _raise_for(self, error: Exception, outcome: ReconciledOutcome) -> None:
        category = classify_error(error)
        address = outcome.escrow_address
        if category == ErrorCategory.IDEMPOTENT:
            raise AlreadyResolvedError(f"Wager {address} already resolved: {error}", escrow_address=address)
        if category == ErrorCategory.FATAL_SIGNER:
            logger.critical(f"Operator {self.registry.operator.address} cannot pay on {outcome.chain_key}: {error}")
            raise SignerError(str(error), chain_key=outcome.chain_key, escrow_address=address)
        if category == ErrorCategory.TRANSIENT:
            raise TransientError(f"Transient error settling {address}: {error}", escrow_address=address)
        raise SettlementRevertedError(f"Settlement of {address} failed: {error}", escrow_address=address, reason=str(error))

    def _mark(self, attempt: SettlementAttempt, status: SettlementStatus, error: Optional[str]) -> None:
        with self._state_lock:
            attempt.status = status
            attempt.last_error = error
            attempt.updated_at = int(time.time())

    def _snapshot(self, attempt: SettlementAttempt) -> SettlementAttempt:
        with self._state_lock:
            return attempt.model_copy()

    def attempts(self) -> List[SettlementAttempt]:
        with self._state_lock:
            return [attempt.model_copy() for attempt in self._attempts.values()]

    def attempt_for(self, chain_key: str, escrow_address: str) -> Optional[SettlementAttempt]:
        with self._state_lock:
            attempt = self._attempts.get((chain_key, escrow_address.lower()))
            return attempt.model_copy() if attempt else None
