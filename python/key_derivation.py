"""
Wallet-derived symmetric key
============================
The enrollment key is never stored. Each session asks the wallet to sign a
constant message and hashes the signature:

    key = SHA-256( "0x" + hex(signature) )

EIP-191 personal_sign signatures are deterministic (RFC 6979), so the same
wallet always yields the same key. The 0x-hex string form is what wallets
return over JSON-RPC and what the browser client hashed, which keeps keys
interchangeable between both clients.
"""

import hashlib
import logging
from dataclasses import dataclass, field

import requests
from eth_account import Account
from eth_account.messages import encode_defunct
from web3.exceptions import Web3Exception

from errors import SignerRejected, SignerUnavailable

logger = logging.getLogger(__name__)

KEY_MESSAGE = "Decentralized Identity Key"

# EIP-1193 "User Rejected Request"
USER_REJECTED_CODE = 4001


@dataclass(frozen=True)
class SymmetricKey:
    material: bytes = field(repr=False)

    def __post_init__(self):
        if len(self.material) != 32:
            raise ValueError("SymmetricKey needs 32 bytes of key material")

    @property
    def passphrase(self):
        """Hex digest, the passphrase form used by the AES-CBC backend."""
        return self.material.hex()


def signature_to_hex(signature):
    return "0x" + bytes(signature).hex()


def derive_key(signer, message=KEY_MESSAGE):
    """Sign ``message`` with the wallet and hash the signature into a key.

    Raises:
        SignerUnavailable: no signer, or the wallet/node cannot be reached
        SignerRejected: the owner declined to sign
    """
    if signer is None:
        raise SignerUnavailable("No wallet signer configured")

    signature = signer.sign_message(message)
    if not signature:
        raise SignerUnavailable("Wallet returned an empty signature")

    digest = hashlib.sha256(signature_to_hex(signature).encode("utf-8")).digest()
    logger.debug("Derived session key from wallet signature")
    return SymmetricKey(digest)


# =============================================================================
# Signers
# =============================================================================

class LocalWalletSigner:
    """Signs with a private key held by eth_account.

    confirm: optional callable(message) -> bool standing in for the wallet
    prompt; returning False rejects the request.
    """

    def __init__(self, private_key, confirm=None):
        try:
            self.account = Account.from_key(private_key)
        except (ValueError, TypeError) as exc:
            raise SignerUnavailable(f"Invalid wallet private key: {exc}") from exc
        self.confirm = confirm

    def get_address(self):
        return self.account.address

    def sign_message(self, text):
        if self.confirm is not None and not self.confirm(text):
            raise SignerRejected("Signature request declined")
        signed = self.account.sign_message(encode_defunct(text=text))
        return bytes(signed.signature)


def _rpc_error_code(exc):
    response = getattr(exc, "rpc_response", None)
    if isinstance(response, dict):
        error = response.get("error") or {}
        return error.get("code")
    if exc.args and isinstance(exc.args[0], dict):
        return exc.args[0].get("code")
    return None


class RpcWalletSigner:
    """Signs through a node-managed account (eth_sign over JSON-RPC)."""

    def __init__(self, web3, address=None):
        self.web3 = web3
        self._address = address

    def get_address(self):
        if self._address is None:
            try:
                accounts = self.web3.eth.accounts
            except requests.exceptions.RequestException as exc:
                raise SignerUnavailable(f"Wallet node unreachable: {exc}") from exc
            if not accounts:
                raise SignerUnavailable("Wallet node exposes no accounts")
            self._address = accounts[0]
        return self._address

    def sign_message(self, text):
        address = self.get_address()
        try:
            return bytes(self.web3.eth.sign(address, text=text))
        except requests.exceptions.RequestException as exc:
            raise SignerUnavailable(f"Wallet node unreachable: {exc}") from exc
        except (ValueError, Web3Exception) as exc:
            if _rpc_error_code(exc) == USER_REJECTED_CODE:
                raise SignerRejected("Signature request declined") from exc
            raise SignerUnavailable(f"Wallet could not sign: {exc}") from exc
