"""
Configuration for the wager resolver.

``Settings`` holds the service-wide knobs read from the environment.
``ChainRegistry`` holds the chains that are fully configured, the shared
operator credential and one Web3 client per chain. A registry is built once
and passed to every component; nothing here is module-level mutable state
apart from the read-only network catalogue cache.
"""
import importlib.resources
import json
import logging
import os
import threading
import urllib.parse
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Protocol, Tuple

from eth_account import Account
from pydantic import BaseModel, Field, SecretStr, ValidationError, field_validator
from web3 import Web3

from .exceptions import ConfigurationError
from .models import ChainConfig

logger = logging.getLogger(__name__)

LOCAL_HOSTS = ("localhost", "127.0.0.1", "::1")


class Signer(Protocol):
    """Protocol for the operator credential"""
    address: str

    def sign_transaction(self, transaction_dict: Dict[str, Any]) -> Any:
        """Sign transaction and return signed tx object"""
        ...


def _env_flag(value: Optional[str], default: bool) -> bool:
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    """Service settings, normally loaded with ``Settings.from_env()``"""
    operator_private_key: Optional[SecretStr] = None
    sweep_interval: float = Field(60.0, gt=0)
    attestation_freshness: int = Field(3600, gt=0)
    attestation_max_skew: int = Field(300, ge=0)
    game_api_url: str = "https://www.chess.com/callback/live/game"
    attestor_url: str = "https://attestor.reclaimprotocol.org"
    attestor_provider_id: Optional[str] = "41ec4915-c413-4d4a-9c21-e8639f7997c2"
    trusted_witnesses: Tuple[str, ...] = ()
    min_witnesses: int = Field(1, ge=1)
    http_timeout: float = Field(10.0, gt=0)
    http_retries: int = Field(3, ge=0)
    send_retries: int = Field(3, ge=0)
    backoff_base: float = Field(0.5, ge=0)
    gas_limit: int = Field(500000, gt=0)
    receipt_timeout: float = Field(120.0, gt=0)
    fetch_concurrency: int = Field(4, ge=1)
    preflight: bool = True

    @field_validator("trusted_witnesses", mode="before")
    @classmethod
    def _split_witnesses(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("trusted_witnesses")
    @classmethod
    def _checksum_witnesses(cls, value: Tuple[str, ...]) -> Tuple[str, ...]:
        checked = []
        for address in value:
            if not Web3.is_address(address):
                raise ValueError(f"invalid witness address: {address}")
            checked.append(Web3.to_checksum_address(address))
        return tuple(checked)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """
        Load settings from environment variables.

        Args:
            environ: Mapping to read from (defaults to os.environ)

        Returns:
            Settings

        Raises:
            ConfigurationError: If a value fails validation
        """
        env = os.environ if environ is None else environ
        mapping = {
            "operator_private_key": "VERIFIER_PRIVATE_KEY",
            "sweep_interval": "WAGER_SWEEP_INTERVAL",
            "attestation_freshness": "WAGER_ATTESTATION_FRESHNESS",
            "attestation_max_skew": "WAGER_ATTESTATION_MAX_SKEW",
            "game_api_url": "WAGER_GAME_API_URL",
            "attestor_url": "WAGER_ATTESTOR_URL",
            "attestor_provider_id": "WAGER_ATTESTOR_PROVIDER_ID",
            "trusted_witnesses": "WAGER_TRUSTED_WITNESSES",
            "min_witnesses": "WAGER_MIN_WITNESSES",
            "http_timeout": "WAGER_HTTP_TIMEOUT",
            "http_retries": "WAGER_HTTP_RETRIES",
            "send_retries": "WAGER_SEND_RETRIES",
            "backoff_base": "WAGER_BACKOFF_BASE",
            "gas_limit": "WAGER_GAS_LIMIT",
            "receipt_timeout": "WAGER_RECEIPT_TIMEOUT",
            "fetch_concurrency": "WAGER_FETCH_CONCURRENCY",
        }
        values: Dict[str, Any] = {}
        for field_name, env_name in mapping.items():
            raw = env.get(env_name)
            if raw is not None and raw != "":
                values[field_name] = raw
        values["preflight"] = _env_flag(env.get("WAGER_PREFLIGHT"), True)

        try:
            return cls.model_validate(values)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid settings: {e}")


class NetworkCatalog:
    """Catalogue of supported chains and the environment variables configuring them"""

    _networks_cache: Optional[Dict[str, Dict[str, Any]]] = None
    _cache_lock = threading.Lock()

    @classmethod
    def load_networks(cls) -> Dict[str, Dict[str, Any]]:
        """
        Load the packaged networks.json catalogue (cached after first read).

        Returns:
            Mapping of chain key to catalogue entry, in file order
        """
        with cls._cache_lock:
            if cls._networks_cache is None:
                resource = importlib.resources.files("wager_resolver").joinpath("networks.json")
                cls._networks_cache = json.loads(resource.read_text(encoding="utf-8"))
            return cls._networks_cache


def _is_secure_endpoint(url: str, environ: Mapping[str, str]) -> bool:
    parsed = urllib.parse.urlparse(url)
    if parsed.scheme == "https":
        return True
    if parsed.scheme == "http" and (parsed.hostname or "") in LOCAL_HOSTS:
        return True
    return environ.get("WAGER_ALLOW_INSECURE_RPC") == "1" and parsed.scheme in ("http", "https")


def _default_web3_factory(timeout: float) -> Callable[[ChainConfig], Web3]:
    def factory(chain: ChainConfig) -> Web3:
        return Web3(Web3.HTTPProvider(chain.rpc_endpoint, request_kwargs={"timeout": timeout}))
    return factory


class ChainRegistry:
    """
    Fully configured chains plus the operator credential shared across them.

    A chain missing its endpoint, factory or verifier is left out entirely
    rather than partially activated.
    """

    def __init__(
        self,
        environ: Optional[Mapping[str, str]] = None,
        private_key: Optional[str] = None,
        signer: Optional[Signer] = None,
        networks: Optional[Dict[str, Dict[str, Any]]] = None,
        web3_factory: Optional[Callable[[ChainConfig], Web3]] = None,
        http_timeout: float = 10.0
    ):
        """
        Initialize the registry.

        Args:
            environ: Mapping to read chain settings from (defaults to os.environ)
            private_key: Operator private key (defaults to VERIFIER_PRIVATE_KEY)
            signer: Custom signer, used instead of a private key
            networks: Chain catalogue (defaults to the packaged networks.json)
            web3_factory: Builds the Web3 client for a chain
            http_timeout: RPC request timeout in seconds

        Raises:
            ConfigurationError: If no chain is fully configured or no usable
                operator credential is available
        """
        env = os.environ if environ is None else environ
        catalog = networks if networks is not None else NetworkCatalog.load_networks()

        self._chains: Dict[str, ChainConfig] = {}
        for chain in self._load_chains(catalog, env):
            self._chains[chain.chain_key] = chain

        if not self._chains:
            raise ConfigurationError(
                "No chains configured! Set the RPC URL, wager factory and verifier "
                "address for at least one chain."
            )

        self.operator: Signer = self._load_operator(signer, private_key, env)
        self._web3_factory = web3_factory or _default_web3_factory(http_timeout)
        self._web3_clients: Dict[str, Web3] = {}
        self._web3_lock = threading.Lock()

        logger.info(f"Chain registry initialized with {len(self._chains)} chain(s), operator {self.operator.address}")
        for chain in self._chains.values():
            logger.info(
                f"  - {chain.display_name} (chain id {chain.chain_id}) "
                f"factory={chain.escrow_factory_address} verifier={chain.verifier_address}"
            )

    @staticmethod
    def _load_chains(catalog: Dict[str, Dict[str, Any]], env: Mapping[str, str]) -> List[ChainConfig]:
        primary = [(k, v) for k, v in catalog.items() if not v.get("fallbackOnly")]
        fallback = [(k, v) for k, v in catalog.items() if v.get("fallbackOnly")]

        chains = [c for c in (ChainRegistry._chain_from_env(k, v, env) for k, v in primary) if c]
        if not chains:
            chains = [c for c in (ChainRegistry._chain_from_env(k, v, env) for k, v in fallback) if c]
        return chains

    @staticmethod
    def _chain_from_env(chain_key: str, entry: Dict[str, Any], env: Mapping[str, str]) -> Optional[ChainConfig]:
        rpc = (env.get(entry["rpcEnv"]) or "").strip()
        factory = (env.get(entry["factoryEnv"]) or "").strip()
        verifier = (env.get(entry["verifierEnv"]) or "").strip()

        provided = [bool(rpc), bool(factory), bool(verifier)]
        if not any(provided):
            return None
        if not all(provided):
            missing = [name for name, ok in zip(
                (entry["rpcEnv"], entry["factoryEnv"], entry["verifierEnv"]), provided) if not ok]
            logger.warning(f"Chain {chain_key} is half-configured (missing {', '.join(missing)}); skipping it")
            return None

        for label, address in (("factory", factory), ("verifier", verifier)):
            if not Web3.is_address(address):
                logger.warning(f"Chain {chain_key} has an invalid {label} address {address!r}; skipping it")
                return None

        if not _is_secure_endpoint(rpc, env):
            logger.warning(
                f"Chain {chain_key} RPC endpoint must use https:// (set WAGER_ALLOW_INSECURE_RPC=1 "
                "to allow http for development); skipping it"
            )
            return None

        return ChainConfig(
            chain_key=chain_key,
            display_name=entry.get("displayName", chain_key),
            chain_id=int(entry.get("chainId", 0)),
            rpc_endpoint=rpc,
            escrow_factory_address=Web3.to_checksum_address(factory),
            verifier_address=Web3.to_checksum_address(verifier),
        )

    @staticmethod
    def _load_operator(signer: Optional[Signer], private_key: Optional[str], env: Mapping[str, str]) -> Signer:
        if signer is not None:
            return signer
        key = private_key or env.get("VERIFIER_PRIVATE_KEY")
        if not key:
            raise ConfigurationError("VERIFIER_PRIVATE_KEY must be set in environment")
        try:
            return Account.from_key(key)
        except (ValueError, TypeError) as e:
            # Never include the key itself in the message
            raise ConfigurationError(f"VERIFIER_PRIVATE_KEY is not a valid private key: {type(e).__name__}")

    @property
    def chains(self) -> Tuple[ChainConfig, ...]:
        return tuple(self._chains.values())

    @property
    def chain_keys(self) -> Tuple[str, ...]:
        return tuple(self._chains.keys())

    def __iter__(self) -> Iterator[ChainConfig]:
        return iter(self.chains)

    def __len__(self) -> int:
        return len(self._chains)

    def get(self, chain_key: str) -> ChainConfig:
        try:
            return self._chains[chain_key]
        except KeyError:
            raise ConfigurationError(
                f"Chain '{chain_key}' is not configured. Available: {', '.join(self._chains)}"
            )

    def web3(self, chain_key: str) -> Web3:
        """
        Get the Web3 client for a chain, creating it on first use.

        Args:
            chain_key: Configured chain key

        Returns:
            Web3 instance
        """
        chain = self.get(chain_key)
        with self._web3_lock:
            client = self._web3_clients.get(chain_key)
            if client is None:
                client = self._web3_factory(chain)
                self._web3_clients[chain_key] = client
            return client

    def describe(self) -> Dict[str, Any]:
        return {
            "operator": self.operator.address,
            "chains": [
                {
                    "key": chain.chain_key,
                    "name": chain.display_name,
                    "chainId": chain.chain_id,
                    "wagerFactory": chain.escrow_factory_address,
                    "verifier": chain.verifier_address,
                }
                for chain in self.chains
            ],
            "chainsCount": len(self._chains),
        }
