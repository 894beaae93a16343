"""
EscrowScanner - enumerates wagers on one chain and finds those awaiting resolution.
"""
import logging
from typing import List

from web3 import Web3
from web3.exceptions import BadFunctionCallOutput, ContractLogicError

from ..config import ChainRegistry
from ..exceptions import DataQualityError, ResolverError, TransientError
from ..models import ChainConfig, EscrowInstance, EscrowState
from .abis import WAGER_ABI, WAGER_FACTORY_ABI

logger = logging.getLogger(__name__)


class EscrowScanner:
    """
    Reads wager contracts created by one chain's factory.

    Read failures for a single wager never abort the scan: that wager is
    skipped and picked up again on the next sweep.
    """

    def __init__(self, registry: ChainRegistry, chain_key: str):
        self.registry = registry
        self.chain: ChainConfig = registry.get(chain_key)
        self.last_scanned = 0

    @property
    def w3(self) -> Web3:
        return self.registry.web3(self.chain.chain_key)

    def _factory(self):
        return self.w3.eth.contract(address=self.chain.escrow_factory_address, abi=WAGER_FACTORY_ABI)

    def list_addresses(self) -> List[str]:
        """
        List wager addresses in factory insertion order.

        Returns:
            Wager addresses; indices that failed to read are left out

        Raises:
            TransientError: If the wager count itself cannot be read
        """
        factory = self._factory()
        try:
            total = int(factory.functions.getTotalWagers().call())
        except Exception as e:
            raise TransientError(f"Failed to read wager count on {self.chain.display_name}: {e}")

        logger.debug(f"Found {total} total wagers on {self.chain.display_name}")

        addresses = []
        for index in range(total):
            try:
                addresses.append(factory.functions.allWagers(index).call())
            except Exception as e:
                logger.warning(f"Skipping wager index {index} on {self.chain.display_name}: {e}")
        return addresses

    def read_instance(self, address: str) -> EscrowInstance:
        """
        Read one wager's state.

        Args:
            address: Wager contract address

        Returns:
            EscrowInstance projection

        Raises:
            DataQualityError: If the contract returns data we cannot decode
            TransientError: For RPC failures
        """
        wager = self.w3.eth.contract(address=address, abi=WAGER_ABI)
        try:
            data = wager.functions.getWagerData().call()
        except (ContractLogicError, BadFunctionCallOutput) as e:
            raise DataQualityError(f"getWagerData() failed for {address}: {e}", escrow_address=address)
        except Exception as e:
            raise TransientError(f"RPC error reading {address}: {e}", escrow_address=address)

        try:
            return EscrowInstance.from_contract_tuple(address, data)
        except (ValueError, TypeError) as e:
            raise DataQualityError(f"Undecodable wager data for {address}: {e}", escrow_address=address)

    def scan(self) -> List[EscrowInstance]:
        """
        Find wagers that are GameLinked and carry a game id.

        Returns:
            Candidate instances in factory order
        """
        candidates = []
        addresses = self.list_addresses()
        self.last_scanned = len(addresses)
        for address in addresses:
            try:
                instance = self.read_instance(address)
            except ResolverError as e:
                logger.warning(f"Skipping wager {address} this sweep: {e}")
                continue

            if instance.is_awaiting_resolution:
                candidates.append(instance)
            elif instance.state == EscrowState.GAME_LINKED:
                logger.warning(f"Wager {address} is GameLinked but has no game id; leaving it")

        logger.info(f"{len(candidates)} wager(s) awaiting resolution on {self.chain.display_name}")
        return candidates

    def is_still_pending(self, address: str) -> bool:
        """
        Re-read a wager right before settling it.

        Returns:
            True only if the wager is still GameLinked; False on any read failure
        """
        try:
            return self.read_instance(address).state == EscrowState.GAME_LINKED
        except ResolverError as e:
            logger.warning(f"Could not re-check state of {address}: {e}")
            return False
