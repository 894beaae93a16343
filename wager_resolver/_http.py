"""
Shared HTTP plumbing for the game-data and attestation providers.
"""
import logging
import random
import time
from typing import Any, Callable, Dict, Optional, Type, TypeVar

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .exceptions import DataQualityError, RateLimitedError, TransientError, UpstreamTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")

USER_AGENT = "ChainMate-Resolver/1.0 (contact@chainmate.app)"

# Upper bound for a single backoff sleep, whatever Retry-After says
MAX_BACKOFF = 30.0


def build_session(retry_count: int = 3, user_agent: str = USER_AGENT) -> requests.Session:
    """
    Create a session that retries server errors and connection failures.

    429 is not retried by the adapter; get_json raises it as RateLimitedError.
    """
    session = requests.Session()
    retries = Retry(
        total=retry_count,
        backoff_factor=0.5,
        status_forcelist=[500, 502, 503, 504],
        allowed_methods=["GET"],
        raise_on_status=False,
        connect=retry_count,
        read=retry_count,
        other=retry_count
    )
    session.mount("http://", HTTPAdapter(max_retries=retries))
    session.mount("https://", HTTPAdapter(max_retries=retries))
    session.headers.update({"User-Agent": user_agent, "Accept": "application/json"})
    return session


def _retry_after(response: requests.Response) -> Optional[float]:
    value = response.headers.get("Retry-After")
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def get_json(
    session: requests.Session,
    url: str,
    timeout: float,
    not_found: Type[DataQualityError],
    what: str
) -> Dict[str, Any]:
    """
    GET a JSON document and translate failures into resolver errors.

    Args:
        session: HTTP session
        url: Absolute URL
        timeout: Request timeout in seconds
        not_found: Exception class raised for a 404
        what: Human-readable name of the resource, for messages

    Returns:
        Decoded JSON object

    Raises:
        DataQualityError: 404 (as ``not_found``), other 4xx, or a non-object body
        RateLimitedError: 429
        UpstreamTimeoutError: Request timed out
        TransientError: Connection errors and 5xx
    """
    try:
        response = session.get(url, timeout=timeout)
    except requests.Timeout as e:
        raise UpstreamTimeoutError(f"Timed out fetching {what}: {e}")
    except requests.RequestException as e:
        raise TransientError(f"Network error fetching {what}: {e}")

    if response.status_code == 404:
        raise not_found(f"{what} not found")
    if response.status_code == 429:
        raise RateLimitedError(f"Rate limited fetching {what}", retry_after=_retry_after(response))
    if response.status_code >= 500:
        raise TransientError(f"Server error {response.status_code} fetching {what}")
    if response.status_code >= 400:
        raise DataQualityError(f"Unexpected status {response.status_code} fetching {what}")

    content_type = response.headers.get("Content-Type", "")
    if "json" not in content_type:
        logger.debug(f"Unexpected Content-Type for {what}: {content_type}")

    try:
        body = response.json()
    except ValueError as e:
        raise DataQualityError(f"Invalid JSON for {what}: {e}")
    if not isinstance(body, dict):
        raise DataQualityError(f"Expected a JSON object for {what}, got {type(body).__name__}")
    return body


def with_backoff(
    operation: Callable[[], T],
    max_retries: int,
    backoff_base: float,
    what: str,
    log: Optional[logging.Logger] = None
) -> T:
    """
    Run an operation, retrying TransientError with exponential backoff.

    Args:
        operation: Zero-argument callable
        max_retries: Retries after the first attempt
        backoff_base: Base delay in seconds; doubled each retry, plus up to 10% jitter
        what: Description used in log messages
        log: Logger to report retries on

    Returns:
        The operation's result

    Raises:
        TransientError: The last transient error once retries are exhausted
        ResolverError: Any non-transient error, immediately
    """
    log = log or logger
    attempt = 0
    while True:
        try:
            return operation()
        except TransientError as e:
            if attempt >= max_retries:
                log.warning(f"Giving up on {what} after {attempt + 1} attempts: {e}")
                raise
            attempt += 1
            delay = backoff_base * (2 ** (attempt - 1))
            if isinstance(e, RateLimitedError) and e.retry_after:
                delay = min(max(delay, e.retry_after), MAX_BACKOFF)
            delay += delay * random.uniform(0, 0.1)
            log.info(f"Retrying {what} (attempt {attempt + 1}/{max_retries + 1}) in {delay:.2f}s: {e}")
            time.sleep(delay)
