import secrets
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from auth import get_user_from_token
from database import create_document, find_by_id, get_documents, serialize, update_by_id, utcnow
from routes.dao import award_governance_tokens, token_balance
from routes.deps import get_or_404, require_artist, track
from schemas import NFT, NFTTransaction
from services.blockchain import CONTENT_TYPES, blockchain, content_type_number, to_basis_points

logger = structlog.get_logger()

router = APIRouter(prefix="/api/nfts", tags=["nfts"])

PLATFORM_FEE = 2.5
PURCHASE_REWARD = 1


class Attribute(BaseModel):
    trait_type: str
    value: Any


class MintBody(BaseModel):
    name: str
    description: str = ""
    image: str
    preview_image: Optional[str] = None
    content_type: str = "song"
    royalty_percentage: float = Field(0, ge=0, le=100)
    price: float = Field(0, ge=0)
    currency: str = "matic"
    tags: List[str] = Field(default_factory=list)
    editions: int = Field(1, ge=1)
    sale_type: str = "fixed"
    fan_club_tier: str = ""
    external_link: Optional[str] = None
    custom_attributes: List[Attribute] = Field(default_factory=list)
    expiration_date: Optional[datetime] = None
    allow_resale: bool = True


class ListBody(BaseModel):
    price: float = Field(..., gt=0)


class AuctionBody(BaseModel):
    starting_price: float = Field(..., gt=0)
    duration: int = Field(..., gt=0, description="Seconds")


class BidBody(BaseModel):
    bid_amount: float = Field(..., gt=0)


def build_metadata(body: MintBody, creator_name: str) -> Dict[str, Any]:
    """ERC-721 metadata JSON for a mint request."""
    attributes = [
        {"trait_type": "Content Type", "value": body.content_type},
        {"trait_type": "Creator", "value": creator_name},
        {"trait_type": "Royalty Percentage", "value": body.royalty_percentage},
        {"trait_type": "Currency", "value": body.currency},
        {"trait_type": "Sale Type", "value": body.sale_type},
        {"trait_type": "Editions", "value": body.editions},
        {"trait_type": "Fan Club Tier", "value": body.fan_club_tier or "None"},
        {"trait_type": "Allow Resale", "value": "Yes" if body.allow_resale else "No"},
    ]
    attributes += [a.model_dump() for a in body.custom_attributes]
    attributes += [{"trait_type": "Tag", "value": tag} for tag in body.tags]
    if body.expiration_date:
        attributes.append({"trait_type": "Expiration Date", "value": body.expiration_date.isoformat()})
    return {
        "name": body.name,
        "description": body.description,
        "image": body.image,
        "preview_image": body.preview_image,
        "external_url": body.external_link,
        "attributes": attributes,
    }


def _tradable(nft_id: str) -> dict:
    nft = get_or_404("nft", nft_id, "NFT")
    if nft.get("frozen"):
        raise HTTPException(status_code=403, detail="NFT is frozen")
    return nft


def _owned(nft_id: str, user: dict) -> dict:
    nft = _tradable(nft_id)
    if nft["owner_id"] != str(user["_id"]):
        raise HTTPException(status_code=403, detail="Not authorized")
    return nft


@router.get("")
def list_nfts():
    return {"nfts": serialize(get_documents("nft", sort=[("created_at", -1)]))}


@router.get("/marketplace/listings")
def marketplace_listings():
    listings = get_documents(
        "nft", {"is_listed": True, "auction_end_time": None, "frozen": {"$ne": True}}, sort=[("updated_at", -1)]
    )
    return {"nfts": serialize(listings)}


@router.get("/marketplace/auctions")
def marketplace_auctions():
    auctions = get_documents(
        "nft",
        {"is_listed": True, "auction_end_time": {"$gt": utcnow()}, "frozen": {"$ne": True}},
        sort=[("auction_end_time", 1)],
    )
    return {"nfts": serialize(auctions)}


@router.get("/user/{user_id}")
def user_nfts(user_id: str, user=Depends(get_user_from_token)):
    return {"nfts": serialize(get_documents("nft", {"owner_id": user_id}, sort=[("created_at", -1)]))}


@router.get("/{nft_id}")
def get_nft(nft_id: str):
    return serialize(get_or_404("nft", nft_id, "NFT"))


@router.post("/mint")
def mint_nft(body: MintBody, user=Depends(require_artist)):
    if body.content_type.lower() not in CONTENT_TYPES:
        raise HTTPException(status_code=400, detail="Invalid content type")
    uid = str(user["_id"])
    metadata = build_metadata(body, user["name"])
    metadata_uri = blockchain.upload_json_to_ipfs(metadata)

    recipient = user.get("wallet_address") or blockchain.default_recipient()
    token_id, tx_hash = blockchain.mint_nft(
        recipient,
        metadata_uri,
        content_type_number(body.content_type),
        to_basis_points(body.royalty_percentage),
        to_basis_points(PLATFORM_FEE),
        body.image,
        secrets.randbelow(1_000_000),
    )

    nft_id = create_document("nft", NFT(
        token_id=token_id,
        contract_address=blockchain.settings.nft_contract_address,
        owner_id=uid,
        creator_id=uid,
        metadata=metadata,
        metadata_uri=metadata_uri,
        content_type=body.content_type.lower(),
        content_id=f"nft_{secrets.token_hex(8)}",
        royalty_percentage=body.royalty_percentage,
        platform_fee=PLATFORM_FEE,
        price=body.price,
        currency=body.currency,
        tags=body.tags,
        editions=body.editions,
        sale_type=body.sale_type,
        fan_club_tier=body.fan_club_tier,
        allow_resale=body.allow_resale,
    ))
    track("nft_mint", user, content_id=nft_id, content_type="nft", token_id=token_id)
    logger.info("NFT minted", nft_id=nft_id, token_id=token_id, tx_hash=tx_hash)
    return {
        "nft": serialize(find_by_id("nft", nft_id)),
        "token_id": token_id,
        "transaction_hash": tx_hash,
        "metadata_uri": metadata_uri,
    }


@router.post("/{nft_id}/list")
def list_nft(nft_id: str, body: ListBody, user=Depends(get_user_from_token)):
    nft = _owned(nft_id, user)
    tx_hash = blockchain.list_nft(nft["token_id"], body.price)
    update_by_id("nft", nft_id, {"is_listed": True, "price": body.price, "listed_at": utcnow()})
    return {"message": "NFT listed successfully", "transaction_hash": tx_hash}


@router.post("/{nft_id}/buy")
def buy_nft(nft_id: str, user=Depends(get_user_from_token)):
    nft = _tradable(nft_id)
    buyer_id = str(user["_id"])
    if not nft.get("is_listed"):
        raise HTTPException(status_code=400, detail="NFT not listed for sale")
    auction_end = nft.get("auction_end_time")
    if auction_end and auction_end > utcnow():
        raise HTTPException(status_code=400, detail="NFT is in an active auction, place a bid instead")
    if nft["owner_id"] == buyer_id:
        raise HTTPException(status_code=400, detail="You already own this NFT")

    tx_hash = blockchain.buy_nft(nft["token_id"], nft["price"])
    update_by_id("nft", nft_id, {"owner_id": buyer_id, "is_listed": False, "price": 0, "auction_end_time": None})
    award_governance_tokens(buyer_id, PURCHASE_REWARD)
    create_document("nfttransaction", NFTTransaction(
        nft_id=nft_id,
        from_user_id=nft["owner_id"],
        to_user_id=buyer_id,
        transaction_type="purchase",
        price=nft["price"],
        transaction_hash=tx_hash,
    ))
    track("nft_purchase", user, content_id=nft_id, content_type="nft", price=nft["price"], seller_id=nft["owner_id"])
    return {
        "message": "NFT purchased successfully",
        "governance_tokens_awarded": PURCHASE_REWARD,
        "new_balance": token_balance(buyer_id)["balance"],
        "transaction_hash": tx_hash,
    }


@router.post("/{nft_id}/auction")
def start_auction(nft_id: str, body: AuctionBody, user=Depends(get_user_from_token)):
    nft = _owned(nft_id, user)
    tx_hash = blockchain.start_auction(nft["token_id"], body.starting_price, body.duration)
    end_time = utcnow() + timedelta(seconds=body.duration)
    update_by_id("nft", nft_id, {"is_listed": True, "price": body.starting_price, "auction_end_time": end_time})
    return {"message": "Auction started successfully", "auction_end_time": end_time, "transaction_hash": tx_hash}


@router.post("/{nft_id}/bid")
def place_bid(nft_id: str, body: BidBody, user=Depends(get_user_from_token)):
    nft = _tradable(nft_id)
    end_time = nft.get("auction_end_time")
    if not end_time or end_time < utcnow():
        raise HTTPException(status_code=400, detail="NFT is not in an active auction")
    tx_hash = blockchain.place_bid(nft["token_id"], body.bid_amount)
    create_document("nfttransaction", NFTTransaction(
        nft_id=nft_id,
        from_user_id=str(user["_id"]),
        to_user_id=nft["owner_id"],
        transaction_type="bid",
        price=body.bid_amount,
        transaction_hash=tx_hash,
    ))
    return {"message": "Bid placed successfully", "transaction_hash": tx_hash}
