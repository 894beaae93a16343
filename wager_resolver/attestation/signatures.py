"""
Witness signature primitives for Reclaim-style claims.

A claim is identified by keccak256(provider + "\\n" + parameters + "\\n" + context).
Each witness signs, as an EIP-191 personal message, the newline-joined
identifier, lower-cased owner, timestampS and epoch.
"""
from typing import Any, Dict, Union

from eth_account import Account
from eth_account.messages import encode_defunct
from web3 import Web3


def claim_identifier(provider: str, parameters: str, context: str = "") -> str:
    """
    Compute the claim identifier.

    Returns:
        0x-prefixed lower-case keccak256 hex digest
    """
    message = f"{provider}\n{parameters}\n{context or ''}"
    return Web3.to_hex(Web3.keccak(text=message)).lower()


def serialize_claim(claim_data: Dict[str, Any]) -> str:
    """Build the message witnesses sign for a claim."""
    return "\n".join([
        str(claim_data["identifier"]).lower(),
        str(claim_data.get("owner", "")).lower(),
        str(claim_data["timestampS"]),
        str(claim_data.get("epoch", 1)),
    ])


def recover_witness(claim_data: Dict[str, Any], signature: Union[str, bytes]) -> str:
    """
    Recover the address that produced a witness signature.

    Raises:
        ValueError: If the signature is malformed
    """
    message = encode_defunct(text=serialize_claim(claim_data))
    return Account.recover_message(message, signature=signature)


def sign_claim(claim_data: Dict[str, Any], private_key: Union[str, bytes]) -> str:
    """Sign a claim as a witness; returns a 0x-prefixed signature."""
    message = encode_defunct(text=serialize_claim(claim_data))
    signed = Account.sign_message(message, private_key=private_key)
    return Web3.to_hex(signed.signature)
