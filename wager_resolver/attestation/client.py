"""
AttestationClient - fetches proof payloads from the attestation provider.
"""
import logging
import urllib.parse
from typing import Any, Dict, Optional

import requests

from .._http import build_session, get_json, with_backoff
from ..exceptions import AttestationUnavailableError

logger = logging.getLogger(__name__)

DEFAULT_ATTESTOR_URL = "https://attestor.reclaimprotocol.org"


class AttestationClient:
    """HTTP client returning raw, unverified attestation payloads"""

    def __init__(
        self,
        base_url: str = DEFAULT_ATTESTOR_URL,
        provider_id: Optional[str] = None,
        timeout: float = 10.0,
        retry_count: int = 3,
        max_retries: int = 2,
        backoff_base: float = 0.5,
        session: Optional[requests.Session] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.provider_id = provider_id
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.session = session or build_session(retry_count)

    def proof_url(self, game_id: str) -> str:
        quoted = urllib.parse.quote(game_id, safe="")
        if self.provider_id:
            return f"{self.base_url}/proofs/{urllib.parse.quote(self.provider_id, safe='')}/{quoted}"
        return f"{self.base_url}/proofs/{quoted}"

    def fetch_payload(self, game_id: str) -> Dict[str, Any]:
        """
        Fetch the latest proof payload for a game.

        Args:
            game_id: External game id

        Returns:
            Raw payload (claimData, signatures, witnesses)

        Raises:
            AttestationUnavailableError: No proof exists yet
            RateLimitedError: Still rate limited after retries
            TransientError: Network failure after retries
            DataQualityError: Body is not a JSON object
        """
        url = self.proof_url(game_id)
        payload = with_backoff(
            lambda: get_json(self.session, url, self.timeout, AttestationUnavailableError, f"attestation for game {game_id}"),
            self.max_retries,
            self.backoff_base,
            f"attestation fetch {game_id}",
            logger
        )
        # Some deployments wrap the proof in {"proof": {...}}
        if isinstance(payload.get("proof"), dict):
            payload = payload["proof"]
        return payload

    def close(self) -> None:
        self.session.close()
