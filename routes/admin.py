import platform
import sys
import time
from datetime import timedelta
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from pymongo.errors import PyMongoError

from database import create_document, db, find_by_id, get_documents, serialize, update_by_id, utcnow
from routes.dao import award_governance_tokens, token_balance
from routes.deps import changes, get_or_404, log_admin_action, require_admin, system_settings
from schemas import GovernanceTokenIssuance
from services import media
from settings import get_settings

logger = structlog.get_logger()

router = APIRouter(prefix="/api/admin", tags=["admin"])

ROLES = ("fan", "artist", "admin")
DEFAULT_TAX_SETTINGS = {"gst_rate": 18, "is_inclusive": False, "is_active": True}
NFT_STATUS_FILTERS = {
    "listed": {"is_listed": True},
    "unlisted": {"is_listed": False},
    "frozen": {"frozen": True},
}
STARTED_AT = time.time()


class VerifyArtistBody(BaseModel):
    approved: bool
    reason: Optional[str] = None


class BanBody(BaseModel):
    reason: Optional[str] = None
    duration: Optional[int] = None


class ChangeRoleBody(BaseModel):
    new_role: str
    reason: Optional[str] = None


class TaxSettingsBody(BaseModel):
    gst_rate: float
    is_inclusive: bool = False
    is_active: bool = True


class FreezeBody(BaseModel):
    frozen: bool = True
    reason: Optional[str] = None


class ReasonBody(BaseModel):
    reason: Optional[str] = None


class FlagBody(BaseModel):
    reason: str
    risk_level: str = Field("medium", pattern="^(low|medium|high)$")


class IssueTokensBody(BaseModel):
    recipient_id: str
    amount: int = Field(..., gt=0)
    reason: Optional[str] = None


class SystemSettingsBody(BaseModel):
    platform_name: Optional[str] = None
    support_email: Optional[str] = None
    registrations_open: Optional[bool] = None


def _user_or_404(user_id: str) -> dict:
    user = find_by_id("user", user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user


@router.get("/dashboard")
def dashboard(admin=Depends(require_admin)):
    since = utcnow() - timedelta(days=30)
    paid = db["order"].find({"status": "PAID"})
    return {
        "pending_artists": db["user"].count_documents({"role": "artist", "artist.verified": False}),
        "active_users": db["user"].count_documents({"last_login": {"$gte": since}}),
        "total_orders": db["order"].count_documents({}),
        "platform_revenue": round(sum(o.get("total_amount", 0) for o in paid), 2),
    }


@router.get("/pending-artists")
def pending_artists(admin=Depends(require_admin)):
    artists = get_documents("user", {"role": "artist", "artist.verified": False}, sort=[("created_at", 1)])
    return {"artists": serialize(artists)}


@router.post("/verify-artist/{artist_id}")
def verify_artist(artist_id: str, body: VerifyArtistBody, admin=Depends(require_admin)):
    artist = find_by_id("user", artist_id, role="artist")
    if not artist:
        raise HTTPException(status_code=404, detail="Artist not found")
    update_by_id("user", artist_id, {"artist.verified": body.approved})
    log_admin_action(admin, "verify_artist", user_id=artist_id, approved=body.approved, reason=body.reason)
    return {"message": "Artist verification updated", "verified": body.approved}


@router.get("/users")
def list_users(role: Optional[str] = None, limit: int = 50, offset: int = 0, admin=Depends(require_admin)):
    query = {"role": role} if role and role != "all" else {}
    users = get_documents("user", query, limit=limit, skip=offset, sort=[("created_at", -1)])
    return {"users": serialize(users), "total": db["user"].count_documents(query), "limit": limit, "offset": offset}


@router.get("/users/{user_id}")
def get_user(user_id: str, admin=Depends(require_admin)):
    return serialize(_user_or_404(user_id))


@router.post("/users/{user_id}/ban")
def ban_user(user_id: str, body: BanBody, admin=Depends(require_admin)):
    _user_or_404(user_id)
    ban_until = utcnow() + timedelta(days=body.duration) if body.duration else None
    user = update_by_id("user", user_id, {
        "banned": True,
        "ban_reason": body.reason,
        "ban_until": ban_until,
        "banned_at": utcnow(),
        "banned_by": str(admin["_id"]),
    })
    log_admin_action(admin, "ban_user", user_id=user_id, reason=body.reason, duration=body.duration)
    return {"message": "User banned successfully", "user": serialize(user)}


@router.post("/users/{user_id}/unban")
def unban_user(user_id: str, admin=Depends(require_admin)):
    _user_or_404(user_id)
    user = update_by_id("user", user_id, {
        "banned": False,
        "ban_reason": None,
        "ban_until": None,
        "banned_at": None,
        "banned_by": None,
    })
    log_admin_action(admin, "unban_user", user_id=user_id)
    return {"message": "User unbanned successfully", "user": serialize(user)}


@router.post("/users/{user_id}/change-role")
def change_role(user_id: str, body: ChangeRoleBody, admin=Depends(require_admin)):
    if body.new_role not in ROLES:
        raise HTTPException(status_code=400, detail="Invalid role")
    old_role = _user_or_404(user_id)["role"]
    user = update_by_id("user", user_id, {"role": body.new_role})
    log_admin_action(admin, "change_role", user_id=user_id, old_role=old_role, new_role=body.new_role, reason=body.reason)
    return {"message": "User role changed successfully", "user": serialize(user)}


@router.get("/orders")
def list_orders(status: Optional[str] = None, limit: int = 50, offset: int = 0, admin=Depends(require_admin)):
    query = {"status": status} if status and status != "all" else {}
    orders = get_documents("order", query, limit=limit, skip=offset, sort=[("created_at", -1)])
    return {"orders": serialize(orders), "total": db["order"].count_documents(query), "limit": limit, "offset": offset}


@router.get("/logs")
def admin_logs(action: Optional[str] = None, limit: int = 50, offset: int = 0, admin=Depends(require_admin)):
    query = {"action": action} if action and action != "all" else {}
    logs = get_documents("adminlog", query, limit=limit, skip=offset, sort=[("created_at", -1)])
    return {"logs": serialize(logs), "total": db["adminlog"].count_documents(query), "limit": limit, "offset": offset}


@router.get("/tax-settings")
def get_tax_settings(admin=Depends(require_admin)):
    settings = db["systemsetting"].find_one({"type": "tax"})
    return serialize(settings) if settings else dict(DEFAULT_TAX_SETTINGS)


@router.put("/tax-settings")
def update_tax_settings(body: TaxSettingsBody, admin=Depends(require_admin)):
    if not 0 <= body.gst_rate <= 100:
        raise HTTPException(status_code=400, detail="GST rate must be between 0 and 100")
    data = {
        "type": "tax",
        **body.model_dump(),
        "updated_at": utcnow(),
        "updated_by": str(admin["_id"]),
    }
    db["systemsetting"].update_one({"type": "tax"}, {"$set": data}, upsert=True)
    log_admin_action(admin, "update_tax_settings", **body.model_dump())
    return {"message": "Tax settings updated successfully", "settings": serialize(data)}


# -----------------
# NFT & marketplace moderation
# -----------------

@router.get("/nfts")
def list_nfts(
    status: Optional[str] = None,
    creator: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
    admin=Depends(require_admin),
):
    query = dict(NFT_STATUS_FILTERS.get(status or "all", {}))
    if creator:
        query["creator_id"] = creator
    nfts = get_documents("nft", query, limit=limit, skip=offset, sort=[("created_at", -1)])
    return {"nfts": serialize(nfts), "total": db["nft"].count_documents(query), "limit": limit, "offset": offset}


@router.post("/nfts/{nft_id}/freeze")
def freeze_nft(nft_id: str, body: FreezeBody, admin=Depends(require_admin)):
    get_or_404("nft", nft_id, "NFT")
    fields = {
        "frozen": body.frozen,
        "frozen_reason": body.reason if body.frozen else None,
        "frozen_at": utcnow() if body.frozen else None,
        "frozen_by": str(admin["_id"]) if body.frozen else None,
    }
    if body.frozen:
        fields.update(is_listed=False, auction_end_time=None)
    nft = update_by_id("nft", nft_id, fields)
    log_admin_action(admin, "freeze_nft" if body.frozen else "unfreeze_nft", nft_id=nft_id, reason=body.reason)
    return {"message": f"NFT {'frozen' if body.frozen else 'unfrozen'} successfully", "nft": serialize(nft)}


@router.post("/nfts/{nft_id}/takedown")
def takedown_listing(nft_id: str, body: ReasonBody, admin=Depends(require_admin)):
    """Pull an NFT off the marketplace, cancelling any running auction."""
    nft = get_or_404("nft", nft_id, "NFT")
    if not nft.get("is_listed"):
        raise HTTPException(status_code=400, detail="NFT is not listed")
    update_by_id("nft", nft_id, {
        "is_listed": False,
        "auction_end_time": None,
        "removed_at": utcnow(),
        "removed_by": str(admin["_id"]),
        "removal_reason": body.reason,
    })
    log_admin_action(admin, "takedown_listing", nft_id=nft_id, reason=body.reason)
    return {"message": "Listing taken down successfully"}


@router.get("/nfts/transactions")
def nft_transactions(flagged: Optional[bool] = None, limit: int = 50, offset: int = 0, admin=Depends(require_admin)):
    query = {} if flagged is None else {"flagged": flagged}
    txs = get_documents("nfttransaction", query, limit=limit, skip=offset, sort=[("created_at", -1)])
    return {"transactions": serialize(txs), "total": db["nfttransaction"].count_documents(query)}


@router.post("/nfts/transactions/{transaction_id}/flag")
def flag_transaction(transaction_id: str, body: FlagBody, admin=Depends(require_admin)):
    get_or_404("nfttransaction", transaction_id, "Transaction")
    update_by_id("nfttransaction", transaction_id, {
        "flagged": True,
        "flag_reason": body.reason,
        "risk_level": body.risk_level,
        "flagged_by": str(admin["_id"]),
    })
    log_admin_action(admin, "flag_transaction", transaction_id=transaction_id, risk_level=body.risk_level)
    return {"message": "Transaction flagged successfully"}


# -----------------
# DAO oversight
# -----------------

@router.get("/dao/proposals")
def dao_proposals(status: Optional[str] = None, limit: int = 50, offset: int = 0, admin=Depends(require_admin)):
    now = utcnow()
    filters = {
        "active": {"executed": False, "canceled": False, "frozen": {"$ne": True}, "end_time": {"$gt": now}},
        "executed": {"executed": True},
        "frozen": {"frozen": True},
    }
    query = filters.get(status or "all", {})
    proposals = get_documents("daoproposal", query, limit=limit, skip=offset, sort=[("created_at", -1)])
    return {"proposals": serialize(proposals), "total": db["daoproposal"].count_documents(query)}


@router.post("/dao/proposals/{proposal_id}/freeze")
def freeze_proposal(proposal_id: str, body: FreezeBody, admin=Depends(require_admin)):
    get_or_404("daoproposal", proposal_id, "Proposal")
    update_by_id("daoproposal", proposal_id, {
        "frozen": body.frozen,
        "freeze_reason": body.reason if body.frozen else None,
        "frozen_by": str(admin["_id"]) if body.frozen else None,
    })
    log_admin_action(admin, "freeze_proposal" if body.frozen else "unfreeze_proposal",
                     proposal_id=proposal_id, reason=body.reason)
    return {"message": f"Proposal {'frozen' if body.frozen else 'unfrozen'} successfully"}


@router.post("/dao/issue-tokens")
def issue_tokens(body: IssueTokensBody, admin=Depends(require_admin)):
    _user_or_404(body.recipient_id)
    award_governance_tokens(body.recipient_id, body.amount)
    create_document("governancetokenissuance", GovernanceTokenIssuance(
        recipient_id=body.recipient_id,
        amount=body.amount,
        reason=body.reason,
        issued_by=str(admin["_id"]),
    ))
    log_admin_action(admin, "issue_governance_tokens", recipient_id=body.recipient_id, amount=body.amount,
                     reason=body.reason)
    return {
        "message": "Governance tokens issued successfully",
        "new_balance": token_balance(body.recipient_id)["balance"],
    }


# -----------------
# System
# -----------------

@router.get("/settings")
def get_system_settings(admin=Depends(require_admin)):
    return system_settings()


@router.patch("/settings")
def update_system_settings(body: SystemSettingsBody, admin=Depends(require_admin)):
    fields = changes(body)
    if not fields:
        raise HTTPException(status_code=400, detail="No settings to update")
    db["systemsetting"].update_one(
        {"type": "system"},
        {"$set": {**fields, "updated_at": utcnow(), "updated_by": str(admin["_id"])}},
        upsert=True,
    )
    log_admin_action(admin, "update_system_settings", **fields)
    return {"message": "System settings updated successfully", "settings": system_settings()}


@router.get("/health")
def health(admin=Depends(require_admin)):
    settings = get_settings()
    timestamp = utcnow().isoformat()
    try:
        names = db.list_collection_names()
        documents = sum(db[name].count_documents({}) for name in names)
    except PyMongoError as e:
        logger.error("Health check failed", error=str(e))
        return JSONResponse(status_code=503, content={"status": "unhealthy", "error": str(e), "timestamp": timestamp})
    return {
        "status": "healthy",
        "timestamp": timestamp,
        "database": {"connected": True, "name": db.name, "collections": len(names), "documents": documents},
        "integrations": {
            "payments": bool(settings.razorpay_key_id and settings.razorpay_key_secret),
            "blockchain": bool(settings.private_key),
            "media": media.is_configured(settings),
        },
        "system": {
            "uptime": int(time.time() - STARTED_AT),
            "python_version": platform.python_version(),
            "platform": sys.platform,
        },
    }
