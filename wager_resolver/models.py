"""
Data models for the wager resolver.
"""
from enum import Enum, IntEnum
from typing import Dict, Any, Optional, List, Sequence, Tuple

from pydantic import BaseModel, ConfigDict, Field

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

# Draw notations beyond the PGN "1/2-1/2" that the game provider has emitted
_DRAW_NOTATIONS = ("1/2-1/2", "1/2", "draw")


class EscrowState(IntEnum):
    """Wager contract state, as the uint8 returned by getWagerData()"""
    CREATED = 0
    FUNDED = 1
    GAME_LINKED = 2
    COMPLETED = 3
    SETTLED = 4
    CANCELLED = 5
    DISPUTED = 6


class ResultCode(str, Enum):
    """Result of a chess game from white's point of view"""
    WHITE_WIN = "WhiteWin"
    BLACK_WIN = "BlackWin"
    DRAW = "Draw"
    UNKNOWN = "Unknown"

    @classmethod
    def from_notation(cls, notation: Optional[str]) -> "ResultCode":
        """
        Parse a PGN-style result notation.

        Args:
            notation: Result string, e.g. "1-0", "0-1", "1/2-1/2", or the
                provider tokens "White wins" / "Black wins"

        Returns:
            The matching ResultCode; UNKNOWN for anything unrecognised
        """
        if not notation:
            return cls.UNKNOWN
        token = notation.strip()
        if token == "1-0" or token == "White wins":
            return cls.WHITE_WIN
        if token == "0-1" or token == "Black wins":
            return cls.BLACK_WIN
        if token.lower() in _DRAW_NOTATIONS:
            return cls.DRAW
        return cls.UNKNOWN


class SettlementStatus(str, Enum):
    PENDING = "Pending"
    SUBMITTED = "Submitted"
    CONFIRMED = "Confirmed"
    SKIPPED = "Skipped"
    FAILED = "Failed"


class ChainConfig(BaseModel):
    """Static description of one supported chain"""
    model_config = ConfigDict(frozen=True)

    chain_key: str
    display_name: str
    chain_id: int
    rpc_endpoint: str
    escrow_factory_address: str
    verifier_address: str


class EscrowInstance(BaseModel):
    """Read-only projection of a wager contract's on-chain state"""
    model_config = ConfigDict(frozen=True)

    address: str
    creator_address: str
    opponent_address: str
    token_address: str
    amount: int
    creator_handle: str
    opponent_handle: str
    external_game_id: str
    state: EscrowState
    winner_address: str = ZERO_ADDRESS
    created_at: int = 0
    funded_at: int = 0
    expires_at: int = 0
    settled_at: int = 0

    @property
    def is_awaiting_resolution(self) -> bool:
        return self.state == EscrowState.GAME_LINKED and bool(self.external_game_id.strip())

    @classmethod
    def from_contract_tuple(cls, address: str, data: Sequence[Any]) -> "EscrowInstance":
        """
        Build an instance from the getWagerData() return tuple.

        Args:
            address: Wager contract address
            data: Tuple in ABI order (creator, opponent, token, amount,
                creatorChessUsername, opponentChessUsername, gameId, state,
                winner, createdAt, fundedAt, expiresAt, settledAt, ...)

        Returns:
            EscrowInstance

        Raises:
            ValueError: If the tuple is too short or the state is unknown
        """
        if len(data) < 12:
            raise ValueError(f"getWagerData() returned {len(data)} fields, expected at least 12")
        return cls(
            address=address,
            creator_address=data[0],
            opponent_address=data[1],
            token_address=data[2],
            amount=int(data[3]),
            creator_handle=data[4] or "",
            opponent_handle=data[5] or "",
            external_game_id=data[6] or "",
            state=EscrowState(int(data[7])),
            winner_address=data[8] or ZERO_ADDRESS,
            created_at=int(data[9]),
            funded_at=int(data[10]),
            expires_at=int(data[11]),
            settled_at=int(data[12]) if len(data) > 12 else 0,
        )


class RawOutcome(BaseModel):
    """Untrusted game result as reported by the game-data provider"""
    model_config = ConfigDict(frozen=True)

    external_game_id: str
    white_handle: str
    black_handle: str
    result_code: ResultCode
    result_notation: str = ""
    observed_at: int
    ended_at: Optional[int] = None


class Attestation(BaseModel):
    """Witness-signed claim about a game's result"""
    model_config = ConfigDict(frozen=True)

    external_game_id: str
    white_handle: str
    black_handle: str
    result_code: ResultCode
    result_notation: str = ""
    attested_at: int
    raw_payload: Dict[str, Any]
    provenance_tag: str
    identifier: str
    witnesses: Tuple[str, ...] = ()


class ReconciledOutcome(BaseModel):
    """Agreed outcome for one wager, consumed once by the submitter"""
    model_config = ConfigDict(frozen=True)

    chain_key: str
    escrow_address: str
    winner_address: Optional[str] = None
    result_code: ResultCode
    used_attestation_ref: str
    external_game_id: str
    white_handle: str
    black_handle: str
    white_address: str
    black_address: str
    result_notation: str
    attested_at: int

    @property
    def winner_or_sentinel(self) -> str:
        """Winner address, or the zero address the contract reads as a draw"""
        return self.winner_address or ZERO_ADDRESS


class SettlementAttempt(BaseModel):
    """Advisory bookkeeping for settlement of one wager; the chain is the authority"""
    escrow_address: str
    chain_key: str
    attempt_count: int = 0
    last_error: Optional[str] = None
    status: SettlementStatus = SettlementStatus.PENDING
    tx_hash: Optional[str] = None
    updated_at: Optional[int] = None


class TxReceipt(BaseModel):
    """Transaction receipt from the blockchain"""
    model_config = ConfigDict(populate_by_name=True)

    tx_hash: str = Field(..., alias="transactionHash")
    block_number: int = Field(..., alias="blockNumber")
    block_hash: str = Field(..., alias="blockHash")
    status: int
    gas_used: int = Field(..., alias="gasUsed")
    from_address: Optional[str] = Field(None, alias="from")
    to_address: Optional[str] = Field(None, alias="to")
    logs: List[Dict[str, Any]] = Field(default_factory=list)


class SweepReport(BaseModel):
    """Summary of one chain sweep"""
    chain_key: str
    started_at: float
    finished_at: Optional[float] = None
    scanned: int = 0
    candidates: int = 0
    settled: int = 0
    skipped: int = 0
    deferred: int = 0
    rejected: int = 0
    aborted: bool = False
    abort_reason: Optional[str] = None
