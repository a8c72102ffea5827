"""
On-chain identity registry
==========================
Only two contract calls are consumed:

    registerUser(string name, string email, string faceHashOrIPFS)
    getUser(address) -> (name, email, faceHashOrIPFS, account)

faceHashOrIPFS holds the CID of the encrypted enrollment payload.
"""

import logging
from dataclasses import dataclass

import requests
from eth_utils import to_checksum_address
from web3 import Web3
from web3.exceptions import ContractLogicError

from errors import CapabilityUnavailable, IdentityNotFound

logger = logging.getLogger(__name__)

IDENTITY_ABI = [
    {
        "inputs": [
            {"internalType": "string", "name": "name", "type": "string"},
            {"internalType": "string", "name": "email", "type": "string"},
            {"internalType": "string", "name": "faceHashOrIPFS", "type": "string"},
        ],
        "name": "registerUser",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [
            {"internalType": "address", "name": "user", "type": "address"},
        ],
        "name": "getUser",
        "outputs": [
            {"internalType": "string", "name": "name", "type": "string"},
            {"internalType": "string", "name": "email", "type": "string"},
            {"internalType": "string", "name": "faceHashOrIPFS", "type": "string"},
            {"internalType": "address", "name": "account", "type": "address"},
        ],
        "stateMutability": "view",
        "type": "function",
    },
]

RECEIPT_TIMEOUT = 180


@dataclass(frozen=True)
class UserRecord:
    name: str
    email: str
    reference: str
    account: str = ""


class ContractIdentityRegistry:
    """Identity contract reached over JSON-RPC.

    With ``account`` (an eth_account LocalAccount) transactions are built and
    signed locally, then sent raw; without it the node signs for ``sender``.
    """

    def __init__(self, web3, contract_address, account=None, sender=None):
        if not contract_address:
            raise CapabilityUnavailable("CONTRACT_ADDRESS is not configured")
        self.web3 = web3
        self.contract = web3.eth.contract(
            address=to_checksum_address(contract_address), abi=IDENTITY_ABI
        )
        self.account = account
        self.sender = sender

    @classmethod
    def connect(cls, rpc_url, contract_address, account=None, sender=None):
        web3 = Web3(Web3.HTTPProvider(rpc_url))
        if not web3.is_connected():
            raise CapabilityUnavailable(f"Failed to connect to blockchain at {rpc_url}")
        return cls(web3, contract_address, account=account, sender=sender)

    def register_user(self, name, email, reference):
        """Send registerUser and wait for the receipt."""
        call = self.contract.functions.registerUser(name, email, reference)
        try:
            if self.account is not None:
                address = self.account.address
                tx = call.build_transaction({
                    "from": address,
                    "nonce": self.web3.eth.get_transaction_count(address),
                    "chainId": self.web3.eth.chain_id,
                })
                signed = self.account.sign_transaction(tx)
                tx_hash = self.web3.eth.send_raw_transaction(signed.raw_transaction)
            else:
                sender = self.sender or self.web3.eth.accounts[0]
                tx_hash = call.transact({"from": sender})
            receipt = self.web3.eth.wait_for_transaction_receipt(tx_hash, timeout=RECEIPT_TIMEOUT)
        except requests.exceptions.RequestException as exc:
            raise CapabilityUnavailable(f"Blockchain node unreachable: {exc}") from exc

        if receipt["status"] != 1:
            raise RuntimeError(f"registerUser reverted in tx {tx_hash.hex()}")
        logger.info("User %s registered in tx %s", name, tx_hash.hex())
        return receipt

    def get_user(self, address):
        """Return the UserRecord for ``address``.

        Raises IdentityNotFound when the contract reverts or holds no CID.
        """
        try:
            name, email, reference, account = self.contract.functions.getUser(
                to_checksum_address(address)
            ).call()
        except ContractLogicError as exc:
            raise IdentityNotFound(f"No identity registered for {address}") from exc
        except requests.exceptions.RequestException as exc:
            raise CapabilityUnavailable(f"Blockchain node unreachable: {exc}") from exc

        if not reference:
            raise IdentityNotFound(f"No identity registered for {address}")
        return UserRecord(name=name, email=email, reference=reference, account=account)


class MemoryIdentityRegistry:
    """Dictionary-backed registry keyed by lower-cased address."""

    def __init__(self, owner=None):
        self.owner = owner
        self.users = {}

    def register_user(self, name, email, reference, address=None):
        address = address or self.owner
        if address is None:
            raise CapabilityUnavailable("No account to register the user under")
        self.users[address.lower()] = UserRecord(name, email, reference, address)
        return {"status": 1}

    def get_user(self, address):
        record = self.users.get(address.lower())
        if record is None or not record.reference:
            raise IdentityNotFound(f"No identity registered for {address}")
        return record
