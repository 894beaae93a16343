"""
OutcomeSource - fetches the untrusted result of a chess game from the game-data provider.
"""
import logging
import re
import time
import urllib.parse
from typing import Any, Dict, Optional

import requests

from .._http import build_session, get_json, with_backoff
from ..exceptions import DataQualityError, GameNotFoundError
from ..models import RawOutcome, ResultCode

logger = logging.getLogger(__name__)

DEFAULT_GAME_API_URL = "https://www.chess.com/callback/live/game"

_GAME_ID_PATTERNS = (
    re.compile(r"/game/live/(\d+)"),
    re.compile(r"/game/(\d+)"),
    re.compile(r"/live/(\d+)"),
    re.compile(r"(\d+)$"),
)


def extract_game_id(game_id_or_url: str) -> str:
    """
    Extract a numeric game id from a bare id or a chess.com game URL.

    Args:
        game_id_or_url: e.g. "123456789" or "https://www.chess.com/game/live/123456789"

    Returns:
        The game id, or an empty string if none can be found
    """
    value = (game_id_or_url or "").strip()
    if "/" not in value:
        return value
    for pattern in _GAME_ID_PATTERNS:
        match = pattern.search(value.rstrip("/"))
        if match:
            return match.group(1)
    return re.sub(r"[^0-9]", "", value)


class GameApiClient:
    """
    Client for the game-data provider.

    Missing games, rate limits and timeouts raise; a game whose result is
    not (yet) decisive is returned with ResultCode.UNKNOWN.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_GAME_API_URL,
        timeout: float = 10.0,
        retry_count: int = 3,
        max_retries: int = 2,
        backoff_base: float = 0.5,
        session: Optional[requests.Session] = None
    ):
        """
        Initialize the client.

        Args:
            base_url: Endpoint the game id is appended to
            timeout: HTTP timeout in seconds
            retry_count: Adapter-level retries for 5xx / connection errors
            max_retries: Client-level retries for rate limits and transient errors
            backoff_base: Base delay for exponential backoff in seconds
            session: Pre-built session (defaults to a retrying session)
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.session = session or build_session(retry_count)

    def fetch_outcome(self, game_id: str) -> RawOutcome:
        """
        Fetch a game's players and result.

        Args:
            game_id: External game id (or game URL)

        Returns:
            RawOutcome

        Raises:
            GameNotFoundError: Unknown game; retried on the next sweep
            RateLimitedError: Still rate limited after retries
            TransientError: Network failure after retries
            DataQualityError: Response lacks the player headers
        """
        clean_id = extract_game_id(game_id)
        if not clean_id:
            raise DataQualityError(f"Cannot extract a game id from {game_id!r}")

        url = f"{self.base_url}/{urllib.parse.quote(clean_id, safe='')}"
        body = with_backoff(
            lambda: get_json(self.session, url, self.timeout, GameNotFoundError, f"game {clean_id}"),
            self.max_retries,
            self.backoff_base,
            f"game fetch {clean_id}",
            logger
        )
        return self._parse_game(clean_id, body)

    @staticmethod
    def _parse_game(game_id: str, body: Dict[str, Any]) -> RawOutcome:
        game = body.get("game") if isinstance(body.get("game"), dict) else body
        headers = game.get("pgnHeaders") or {}
        if not isinstance(headers, dict):
            raise DataQualityError(f"Game {game_id} has malformed pgnHeaders")

        white = (headers.get("White") or "").strip()
        black = (headers.get("Black") or "").strip()
        if not white or not black:
            raise DataQualityError(f"Game {game_id} response is missing player names")

        notation = (headers.get("Result") or "").strip()
        result = ResultCode.from_notation(notation)
        if result == ResultCode.UNKNOWN:
            logger.debug(f"Game {game_id} has no decisive result yet ({notation!r})")

        ended_at = game.get("endTime")
        return RawOutcome(
            external_game_id=game_id,
            white_handle=white,
            black_handle=black,
            result_code=result,
            result_notation=notation,
            observed_at=int(time.time()),
            ended_at=int(ended_at) if isinstance(ended_at, (int, float)) else None,
        )

    def close(self) -> None:
        self.session.close()
