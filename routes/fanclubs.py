from typing import Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from auth import get_user_from_token
from database import create_document, db, find_by_id, get_documents, serialize, update_by_id, utcnow
from schemas import FanClubMembership
from services.blockchain import TIERS, blockchain, tier_index

logger = structlog.get_logger()

router = APIRouter(prefix="/api/fanclubs", tags=["fanclubs"])


class MintMembershipBody(BaseModel):
    token_uri: str
    tier: str = "BRONZE"
    artist_id: Optional[str] = None


def membership_for(user_id: str) -> Optional[dict]:
    cursor = db["fanclubmembership"].find({"user_id": user_id, "is_active": True}).sort("joined_at", -1).limit(1)
    return next(iter(cursor), None)


@router.get("")
def list_memberships():
    memberships = get_documents("fanclubmembership", sort=[("joined_at", -1)])
    return {"memberships": serialize(memberships)}


@router.get("/user/{user_id}")
def user_membership(user_id: str, user=Depends(get_user_from_token)):
    return {"membership": serialize(membership_for(user_id))}


@router.post("/mint")
def mint_membership(body: MintMembershipBody, user=Depends(get_user_from_token)):
    tier = body.tier.upper()
    if tier not in TIERS:
        raise HTTPException(status_code=400, detail="Invalid tier")
    uid = str(user["_id"])
    existing = membership_for(uid)
    if existing and existing["tier"] == tier:
        raise HTTPException(status_code=400, detail=f"User already has {tier} fan club membership")

    recipient = user.get("wallet_address") or blockchain.default_recipient()
    membership_id, tx_hash = blockchain.mint_membership(recipient, body.token_uri)
    doc_id = create_document("fanclubmembership", FanClubMembership(
        membership_id=membership_id,
        user_id=uid,
        artist_id=body.artist_id,
        tier=tier,
        contract_address=blockchain.settings.fan_club_contract_address,
        joined_at=utcnow(),
    ))
    logger.info("Fan club membership minted", user_id=uid, tier=tier, membership_id=membership_id)
    return {
        "membership": serialize(find_by_id("fanclubmembership", doc_id)),
        "membership_id": membership_id,
        "transaction_hash": tx_hash,
    }


@router.post("/upgrade")
def upgrade_membership(user=Depends(get_user_from_token)):
    membership = membership_for(str(user["_id"]))
    if not membership:
        raise HTTPException(status_code=404, detail="Fan club membership not found")
    current = tier_index(membership["tier"])
    if current >= len(TIERS) - 1:
        raise HTTPException(status_code=400, detail="Membership is already at the highest tier")

    tx_hash = blockchain.upgrade_membership(membership["membership_id"])
    new_tier = TIERS[current + 1]
    update_by_id("fanclubmembership", membership["_id"], {"tier": new_tier})
    return {"message": "Fan club membership upgraded successfully", "tier": new_tier, "transaction_hash": tx_hash}


@router.get("/access/{content_id}")
def check_access(content_id: str, required_tier: str = "BRONZE", user=Depends(get_user_from_token)):
    membership = membership_for(str(user["_id"]))
    if not membership:
        return {"has_access": False, "content_id": content_id}
    has_access = tier_index(membership["tier"]) >= tier_index(required_tier)
    return {"has_access": has_access, "content_id": content_id, "membership": serialize(membership)}


@router.get("/stats")
def fanclub_stats():
    distribution = {tier: 0 for tier in TIERS}
    total = active = 0
    for membership in db["fanclubmembership"].find():
        total += 1
        if membership.get("is_active"):
            active += 1
            tier = membership.get("tier", "BRONZE")
            distribution[tier] = distribution.get(tier, 0) + 1
    return {"total_members": total, "active_members": active, "tier_distribution": distribution}


@router.get("/tiers")
def tier_requirements():
    return {"tiers": blockchain.tier_requirements()}
