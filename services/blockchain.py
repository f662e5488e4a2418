"""
Chain and IPFS calls for the NFT marketplace, fan clubs and royalties.

Contracts are bound lazily from the configured addresses. ``BlockchainError``
reaches the app exception handler, which answers 503 when the chain is not
configured and 502 when a call fails.
"""

import json
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple

import httpx
import requests
import structlog
from web3 import Web3
from web3.exceptions import Web3Exception
from web3.logs import DISCARD

from settings import Settings, get_settings

logger = structlog.get_logger()

CONTENT_TYPES = {"song": 0, "video": 1, "merch": 2, "event": 3, "artwork": 4}
TIERS = ["BRONZE", "SILVER", "GOLD", "PLATINUM"]

AMOY_PUBLIC_RPC = "https://rpc-amoy.polygon.technology"
CHAIN_IDS = {"local": 1337, "amoy": 80002}
GAS_LIMIT = 500000
RECEIPT_TIMEOUT = 120


def _abi_fn(name: str, inputs: Sequence[Tuple[str, str]], outputs: Sequence[Tuple[str, str]] = (),
            mutability: str = "nonpayable") -> dict:
    return {
        "type": "function",
        "name": name,
        "inputs": [{"type": t, "name": n} for t, n in inputs],
        "outputs": [{"type": t, "name": n} for t, n in outputs],
        "stateMutability": mutability,
    }


def _abi_event(name: str, inputs: Sequence[Tuple[str, str, bool]]) -> dict:
    return {
        "type": "event",
        "name": name,
        "anonymous": False,
        "inputs": [{"type": t, "name": n, "indexed": idx} for t, n, idx in inputs],
    }


NFT_ABI = [
    _abi_fn("mintNFT", [("address", "to"), ("string", "tokenURI"), ("uint8", "contentType"),
                        ("uint256", "royaltyPercentage"), ("uint256", "platformFee"),
                        ("string", "contentHash"), ("uint256", "originalContentId")],
            [("uint256", "")]),
    _abi_fn("ownerOf", [("uint256", "tokenId")], [("address", "")], "view"),
    _abi_fn("tokenURI", [("uint256", "tokenId")], [("string", "")], "view"),
    _abi_event("NFTMinted", [("uint256", "tokenId", True), ("address", "creator", True),
                             ("uint8", "contentType", False)]),
]

MARKETPLACE_ABI = [
    _abi_fn("listNFT", [("uint256", "tokenId"), ("uint256", "price")]),
    _abi_fn("buyNFT", [("uint256", "tokenId")], mutability="payable"),
    _abi_fn("unlistNFT", [("uint256", "tokenId")]),
    _abi_fn("startAuction", [("uint256", "tokenId"), ("uint256", "startingPrice"), ("uint256", "duration")]),
    _abi_fn("placeBid", [("uint256", "tokenId")], mutability="payable"),
    _abi_fn("endAuction", [("uint256", "tokenId")]),
]

FAN_CLUB_ABI = [
    _abi_fn("mintMembership", [("address", "to"), ("string", "tokenURI")], [("uint256", "")]),
    _abi_fn("upgradeMembership", [("uint256", "membershipId")]),
    _abi_fn("hasAccess", [("address", "user"), ("uint8", "requiredTier")], [("bool", "")], "view"),
    _abi_fn("tierRequirements", [("uint8", "tier")], [("uint256", "")], "view"),
    _abi_event("MembershipMinted", [("uint256", "membershipId", True), ("address", "holder", True)]),
]

ROYALTY_ABI = [
    _abi_fn("setRoyaltySplits", [("uint256", "tokenId"), ("address[]", "recipients"), ("uint256[]", "percentages")]),
    {
        "type": "function",
        "name": "getRoyaltySplits",
        "inputs": [{"type": "uint256", "name": "tokenId"}],
        "outputs": [{
            "type": "tuple[]",
            "name": "",
            "components": [{"type": "address", "name": "recipient"}, {"type": "uint256", "name": "percentage"}],
        }],
        "stateMutability": "view",
    },
    _abi_fn("calculateRoyalty", [("uint256", "tokenId"), ("uint256", "salePrice")],
            [("address[]", "recipients"), ("uint256[]", "amounts")], "view"),
    _abi_fn("claimRoyalties", [("uint256", "tokenId")]),
    _abi_fn("recordStreamingRoyalty", [("uint256", "tokenId"), ("address", "streamer"), ("uint256", "streams"),
                                       ("uint256", "earnings")]),
    _abi_fn("claimStreamingRoyalties", [("uint256", "tokenId")]),
    _abi_fn("getStreamingRoyalty", [("uint256", "tokenId")],
            [("uint256", "totalStreams"), ("uint256", "totalEarnings"), ("uint256", "lastClaimTime"),
             ("uint256", "claimableAmount")], "view"),
]


class BlockchainError(Exception):
    def __init__(self, message: str, configured: bool = True):
        super().__init__(message)
        self.configured = configured


def to_basis_points(percentage: float) -> int:
    return int(round(percentage * 100))


def content_type_number(content_type: Optional[str]) -> int:
    return CONTENT_TYPES.get((content_type or "").lower(), 0)


def tier_index(tier: Optional[str]) -> int:
    try:
        return TIERS.index((tier or "").upper())
    except ValueError:
        return 0


class BlockchainService:
    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self._w3: Optional[Web3] = None
        self._account = None
        self._contracts: Dict[str, Any] = {}

    # ---------------
    # Connection
    # ---------------

    @property
    def rpc_url(self) -> str:
        if self.settings.network == "amoy" and "127.0.0.1" in self.settings.rpc_url:
            return AMOY_PUBLIC_RPC
        return self.settings.rpc_url

    def _connect(self):
        if self._w3 is None:
            if not self.settings.private_key:
                raise BlockchainError("Blockchain signer is not configured", configured=False)
            self._w3 = Web3(Web3.HTTPProvider(self.rpc_url, request_kwargs={"timeout": 30}))
            self._account = self._w3.eth.account.from_key(self.settings.private_key)
            logger.info("Blockchain provider ready", network=self.settings.network, signer=self._account.address)
        return self._w3

    def _contract(self, name: str):
        if name in self._contracts:
            return self._contracts[name]
        addresses = {
            "nft": (self.settings.nft_contract_address, NFT_ABI),
            "marketplace": (self.settings.marketplace_contract_address, MARKETPLACE_ABI),
            "fan_club": (self.settings.fan_club_contract_address, FAN_CLUB_ABI),
            "royalty": (self.settings.royalty_contract_address, ROYALTY_ABI),
        }
        address, abi = addresses[name]
        if not address:
            raise BlockchainError(f"{name.replace('_', ' ').title()} contract not initialized", configured=False)
        w3 = self._connect()
        contract = w3.eth.contract(address=Web3.to_checksum_address(address), abi=abi)
        self._contracts[name] = contract
        return contract

    @property
    def signer_address(self) -> str:
        self._connect()
        return self._account.address

    def default_recipient(self) -> str:
        return self.settings.platform_wallet or self.signer_address

    def _transact(self, fn, value: int = 0):
        w3 = self._connect()
        try:
            tx = fn.build_transaction({
                "from": self._account.address,
                "nonce": w3.eth.get_transaction_count(self._account.address),
                "gas": GAS_LIMIT,
                "value": value,
                "chainId": CHAIN_IDS[self.settings.network],
            })
            signed = self._account.sign_transaction(tx)
            tx_hash = w3.eth.send_raw_transaction(signed.raw_transaction)
            return w3.eth.wait_for_transaction_receipt(tx_hash, timeout=RECEIPT_TIMEOUT)
        except (Web3Exception, requests.exceptions.RequestException, ValueError) as exc:
            logger.error("Blockchain transaction failed", function=fn.fn_name, error=str(exc))
            raise BlockchainError(str(exc))

    def _call(self, fn):
        try:
            return fn.call()
        except (Web3Exception, requests.exceptions.RequestException, ValueError) as exc:
            logger.error("Blockchain call failed", function=fn.fn_name, error=str(exc))
            raise BlockchainError(str(exc))

    # ---------------
    # NFTs & marketplace
    # ---------------

    def mint_nft(self, to: str, token_uri: str, content_type: int, royalty_bps: int, platform_fee_bps: int,
                 content_hash: str, original_content_id: int) -> Tuple[str, str]:
        """Mint and return ``(token_id, tx_hash)``."""
        contract = self._contract("nft")
        if not Web3.is_address(to):
            raise BlockchainError(f"Invalid Ethereum address: {to}")
        fn = contract.functions.mintNFT(Web3.to_checksum_address(to), token_uri, content_type, royalty_bps,
                                        platform_fee_bps, content_hash, original_content_id)
        receipt = self._transact(fn)
        events = contract.events.NFTMinted().process_receipt(receipt, errors=DISCARD)
        token_id = str(events[0]["args"]["tokenId"]) if events else ""
        return token_id, Web3.to_hex(receipt["transactionHash"])

    def list_nft(self, token_id: str, price: float) -> str:
        fn = self._contract("marketplace").functions.listNFT(int(token_id), Web3.to_wei(Decimal(str(price)), "ether"))
        return Web3.to_hex(self._transact(fn)["transactionHash"])

    def buy_nft(self, token_id: str, price: float) -> str:
        fn = self._contract("marketplace").functions.buyNFT(int(token_id))
        receipt = self._transact(fn, value=Web3.to_wei(Decimal(str(price)), "ether"))
        return Web3.to_hex(receipt["transactionHash"])

    def start_auction(self, token_id: str, starting_price: float, duration: int) -> str:
        fn = self._contract("marketplace").functions.startAuction(
            int(token_id), Web3.to_wei(Decimal(str(starting_price)), "ether"), int(duration)
        )
        return Web3.to_hex(self._transact(fn)["transactionHash"])

    def place_bid(self, token_id: str, amount: float) -> str:
        fn = self._contract("marketplace").functions.placeBid(int(token_id))
        receipt = self._transact(fn, value=Web3.to_wei(Decimal(str(amount)), "ether"))
        return Web3.to_hex(receipt["transactionHash"])

    # ---------------
    # Fan clubs
    # ---------------

    def mint_membership(self, to: str, token_uri: str) -> Tuple[str, str]:
        contract = self._contract("fan_club")
        receipt = self._transact(contract.functions.mintMembership(Web3.to_checksum_address(to), token_uri))
        events = contract.events.MembershipMinted().process_receipt(receipt, errors=DISCARD)
        membership_id = str(events[0]["args"]["membershipId"]) if events else ""
        return membership_id, Web3.to_hex(receipt["transactionHash"])

    def upgrade_membership(self, membership_id: str) -> str:
        fn = self._contract("fan_club").functions.upgradeMembership(int(membership_id))
        return Web3.to_hex(self._transact(fn)["transactionHash"])

    def tier_requirements(self) -> Dict[str, int]:
        contract = self._contract("fan_club")
        return {tier: int(self._call(contract.functions.tierRequirements(i))) for i, tier in enumerate(TIERS)}

    # ---------------
    # Royalties
    # ---------------

    def set_royalty_splits(self, token_id: str, recipients: List[str], percentages: List[float]) -> str:
        fn = self._contract("royalty").functions.setRoyaltySplits(
            int(token_id),
            [Web3.to_checksum_address(r) for r in recipients],
            [to_basis_points(p) for p in percentages],
        )
        return Web3.to_hex(self._transact(fn)["transactionHash"])

    def get_royalty_splits(self, token_id: str) -> List[dict]:
        splits = self._call(self._contract("royalty").functions.getRoyaltySplits(int(token_id)))
        return [{"recipient": recipient, "percentage": int(bps) / 100} for recipient, bps in splits]

    def calculate_royalty(self, token_id: str, sale_price: float) -> dict:
        recipients, amounts = self._call(self._contract("royalty").functions.calculateRoyalty(
            int(token_id), Web3.to_wei(Decimal(str(sale_price)), "ether")
        ))
        return {
            "recipients": list(recipients),
            "amounts": [str(Web3.from_wei(a, "ether")) for a in amounts],
        }

    def claim_royalties(self, token_id: str) -> str:
        fn = self._contract("royalty").functions.claimRoyalties(int(token_id))
        return Web3.to_hex(self._transact(fn)["transactionHash"])

    def record_streaming_royalty(self, token_id: str, streamer: str, streams: int, earnings: float) -> str:
        contract = self._contract("royalty")
        if not Web3.is_address(streamer):
            raise BlockchainError(f"Invalid Ethereum address: {streamer}")
        fn = contract.functions.recordStreamingRoyalty(
            int(token_id), Web3.to_checksum_address(streamer), int(streams), Web3.to_wei(Decimal(str(earnings)), "ether")
        )
        return Web3.to_hex(self._transact(fn)["transactionHash"])

    def claim_streaming_royalties(self, token_id: str) -> str:
        fn = self._contract("royalty").functions.claimStreamingRoyalties(int(token_id))
        return Web3.to_hex(self._transact(fn)["transactionHash"])

    def get_streaming_royalty(self, token_id: str) -> dict:
        streams, earnings, last_claim, claimable = self._call(
            self._contract("royalty").functions.getStreamingRoyalty(int(token_id))
        )
        return {
            "total_streams": int(streams),
            "total_earnings": str(Web3.from_wei(earnings, "ether")),
            "last_claim_time": int(last_claim),
            "claimable_amount": str(Web3.from_wei(claimable, "ether")),
        }

    # ---------------
    # IPFS
    # ---------------

    def upload_json_to_ipfs(self, data: Dict[str, Any]) -> str:
        payload = json.dumps(data, default=str).encode()
        try:
            response = httpx.post(
                f"{self.settings.ipfs_api_url}/api/v0/add",
                files={"file": ("metadata.json", payload, "application/json")},
                timeout=30.0,
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error("IPFS upload failed", error=str(exc))
            raise BlockchainError(f"IPFS upload failed: {exc}")
        return f"ipfs://{response.json()['Hash']}"


blockchain = BlockchainService()
