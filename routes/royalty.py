from typing import List

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from auth import get_user_from_token
from database import create_document, db
from routes.deps import get_or_404
from schemas import StreamingRoyalty
from services.blockchain import blockchain

router = APIRouter(prefix="/api/royalty", tags=["royalty"])


class SplitsBody(BaseModel):
    recipients: List[str] = Field(..., min_length=1)
    percentages: List[float] = Field(..., min_length=1)


class CalculateBody(BaseModel):
    nft_id: str
    sale_price: float = Field(..., gt=0)


class StreamingBody(BaseModel):
    streams: int = Field(..., gt=0)
    earnings: float = Field(..., ge=0)


@router.post("/splits/{nft_id}")
def set_splits(nft_id: str, body: SplitsBody, user=Depends(get_user_from_token)):
    nft = get_or_404("nft", nft_id, "NFT")
    if nft["owner_id"] != str(user["_id"]):
        raise HTTPException(status_code=403, detail="Not authorized")
    if len(body.recipients) != len(body.percentages):
        raise HTTPException(status_code=400, detail="Recipients and percentages must have the same length")
    if sum(body.percentages) > 100:
        raise HTTPException(status_code=400, detail="Royalty percentages cannot exceed 100")
    tx_hash = blockchain.set_royalty_splits(nft["token_id"], body.recipients, body.percentages)
    return {"message": "Royalty splits set successfully", "transaction_hash": tx_hash}


@router.get("/splits/{nft_id}")
def get_splits(nft_id: str):
    nft = get_or_404("nft", nft_id, "NFT")
    return {"splits": blockchain.get_royalty_splits(nft["token_id"])}


@router.post("/claim/{nft_id}")
def claim(nft_id: str, user=Depends(get_user_from_token)):
    nft = get_or_404("nft", nft_id, "NFT")
    tx_hash = blockchain.claim_royalties(nft["token_id"])
    return {"message": "Royalties claimed successfully", "transaction_hash": tx_hash}


@router.post("/calculate")
def calculate(body: CalculateBody):
    nft = get_or_404("nft", body.nft_id, "NFT")
    return blockchain.calculate_royalty(nft["token_id"], body.sale_price)


# -----------------
# Streaming royalties
# -----------------

@router.post("/streaming/claim/{nft_id}")
def claim_streaming(nft_id: str, user=Depends(get_user_from_token)):
    nft = get_or_404("nft", nft_id, "NFT")
    tx_hash = blockchain.claim_streaming_royalties(nft["token_id"])
    return {"message": "Streaming royalties claimed", "transaction_hash": tx_hash}


@router.post("/streaming/{nft_id}")
def record_streaming(nft_id: str, body: StreamingBody, user=Depends(get_user_from_token)):
    nft = get_or_404("nft", nft_id, "NFT")
    streamer = user.get("wallet_address") or blockchain.default_recipient()
    tx_hash = blockchain.record_streaming_royalty(nft["token_id"], streamer, body.streams, body.earnings)
    create_document("streamingroyalty", StreamingRoyalty(
        nft_id=nft_id,
        token_id=nft["token_id"],
        user_id=str(user["_id"]),
        streams=body.streams,
        earnings=body.earnings,
        transaction_hash=tx_hash,
    ))
    return {"message": "Streaming royalty recorded", "transaction_hash": tx_hash}


@router.get("/streaming/{nft_id}")
def streaming_info(nft_id: str, user=Depends(get_user_from_token)):
    """On-chain totals plus what this backend has recorded for the NFT."""
    nft = get_or_404("nft", nft_id, "NFT")
    records = list(db["streamingroyalty"].find({"nft_id": nft_id}))
    return {
        **blockchain.get_streaming_royalty(nft["token_id"]),
        "recorded_streams": sum(r["streams"] for r in records),
        "recorded_earnings": round(sum(r["earnings"] for r in records), 6),
    }
