from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from auth import get_optional_user, get_user_from_token
from database import create_document, db, find_by_id, get_documents, naive_utc, serialize, update_by_id, utcnow
from routes.deps import changes, ensure_owner, get_or_404, log_admin_action, require_admin, require_artist
from schemas import AdCampaign, AdClick, AdImpression, AdPlacement, AdRevenue, AudioAd, BannerAd
from services.ad_selection import eligible_ads, is_ad_free, select_ad

logger = structlog.get_logger()

router = APIRouter(prefix="/api/ads", tags=["ads"])

AD_COLLECTIONS = {"audio": "audioad", "banner": "bannerad"}
ARTIST_SHARE = 0.30
DEFAULT_SONG_AD_SETTINGS = {
    "ads_enabled": True,
    "ad_types": ["PRE_ROLL", "MID_ROLL"],
    "custom_settings": {"skip_enabled": True, "max_ads_per_session": 3, "ad_frequency": 5},
}


# -----------------
# Request bodies
# -----------------

class CampaignBody(BaseModel):
    name: str
    advertiser: str
    budget: float = Field(..., ge=0)
    status: str = "DRAFT"
    start_at: Optional[datetime] = None
    end_at: Optional[datetime] = None


class CampaignUpdateBody(BaseModel):
    name: Optional[str] = None
    advertiser: Optional[str] = None
    budget: Optional[float] = None
    status: Optional[str] = None
    start_at: Optional[datetime] = None
    end_at: Optional[datetime] = None


class AdBody(BaseModel):
    campaign_id: Optional[str] = None
    title: str
    audio_url: Optional[str] = None
    image_url: Optional[str] = None
    duration: int = 15
    size: str = "728x90"
    click_url: Optional[str] = None
    placements: Optional[List[str]] = None
    status: str = "ACTIVE"
    approved: bool = False
    start_at: Optional[datetime] = None
    end_at: Optional[datetime] = None
    budget: Optional[float] = None
    cost_per_impression: float = 0


class AdUpdateBody(BaseModel):
    title: Optional[str] = None
    audio_url: Optional[str] = None
    image_url: Optional[str] = None
    duration: Optional[int] = None
    size: Optional[str] = None
    click_url: Optional[str] = None
    placements: Optional[List[str]] = None
    status: Optional[str] = None
    approved: Optional[bool] = None
    start_at: Optional[datetime] = None
    end_at: Optional[datetime] = None
    remaining_budget: Optional[float] = None
    cost_per_impression: Optional[float] = None


class PlacementBody(BaseModel):
    name: str
    type: str = Field(..., pattern="^(audio|banner)$")
    slot: str
    ad_ids: List[str] = Field(default_factory=list)
    user_types: List[str] = Field(default_factory=list)
    device_types: List[str] = Field(default_factory=list)
    priority: int = 0
    is_active: bool = True


class AdEventBody(BaseModel):
    ad_id: str
    ad_type: str = Field(..., pattern="^(audio|banner)$")
    song_id: Optional[str] = None
    placement: Optional[str] = None
    device_type: Optional[str] = None


class RevenueBody(BaseModel):
    ad_id: str
    song_id: Optional[str] = None
    artist_id: str
    amount: float = Field(..., ge=0)


class SongAdSettingsBody(BaseModel):
    ads_enabled: Optional[bool] = None
    ad_types: Optional[List[str]] = None
    custom_settings: Optional[Dict[str, Any]] = None


# -----------------
# Helpers
# -----------------

def _timestamps(fields: dict) -> dict:
    for key in ("start_at", "end_at"):
        if fields.get(key) is not None:
            fields[key] = naive_utc(fields[key])
    return fields


def _find_ad(ad_id: str, ad_type: Optional[str] = None) -> Optional[dict]:
    kinds = [ad_type] if ad_type else list(AD_COLLECTIONS)
    for kind in kinds:
        ad = find_by_id(AD_COLLECTIONS[kind], ad_id)
        if ad:
            return ad
    return None


def _live(collection_name: str, doc_id: str, label: str) -> dict:
    doc = get_or_404(collection_name, doc_id, label)
    if doc.get("is_deleted"):
        raise HTTPException(status_code=404, detail=f"{label} not found")
    return doc


# -----------------
# Campaigns
# -----------------

@router.get("/campaigns")
def list_campaigns(admin=Depends(require_admin)):
    campaigns = get_documents("adcampaign", {"is_deleted": {"$ne": True}}, sort=[("created_at", -1)])
    return {"campaigns": serialize(campaigns)}


@router.get("/campaigns/{campaign_id}")
def get_campaign(campaign_id: str, admin=Depends(require_admin)):
    return serialize(_live("adcampaign", campaign_id, "Ad campaign"))


@router.post("/campaigns")
def create_campaign(body: CampaignBody, admin=Depends(require_admin)):
    data = _timestamps(body.model_dump())
    campaign_id = create_document("adcampaign", AdCampaign(created_by=str(admin["_id"]), **data))
    log_admin_action(admin, "create_ad_campaign", campaign_id=campaign_id)
    return serialize(find_by_id("adcampaign", campaign_id))


@router.put("/campaigns/{campaign_id}")
def update_campaign(campaign_id: str, body: CampaignUpdateBody, admin=Depends(require_admin)):
    _live("adcampaign", campaign_id, "Ad campaign")
    campaign = update_by_id("adcampaign", campaign_id, _timestamps(changes(body)))
    log_admin_action(admin, "update_ad_campaign", campaign_id=campaign_id)
    return serialize(campaign)


@router.delete("/campaigns/{campaign_id}")
def delete_campaign(campaign_id: str, admin=Depends(require_admin)):
    _live("adcampaign", campaign_id, "Ad campaign")
    update_by_id("adcampaign", campaign_id, {"is_deleted": True})
    log_admin_action(admin, "delete_ad_campaign", campaign_id=campaign_id)
    return {"message": "Ad campaign deleted"}


# -----------------
# Audio & banner ads
# -----------------

def _list_ads(kind: str, campaign_id: Optional[str] = None) -> dict:
    query: Dict[str, Any] = {"is_deleted": {"$ne": True}}
    if campaign_id:
        query["campaign_id"] = campaign_id
    return {"ads": serialize(get_documents(AD_COLLECTIONS[kind], query, sort=[("created_at", -1)]))}


def _create_ad(kind: str, body: AdBody, admin: dict) -> dict:
    data = _timestamps(body.model_dump(exclude_none=True))
    data["remaining_budget"] = body.budget
    if kind == "audio":
        if not body.audio_url:
            raise HTTPException(status_code=400, detail="audio_url is required")
        ad = AudioAd(**{k: v for k, v in data.items() if k in AudioAd.model_fields})
    else:
        if not body.image_url:
            raise HTTPException(status_code=400, detail="image_url is required")
        ad = BannerAd(**{k: v for k, v in data.items() if k in BannerAd.model_fields})
    ad_id = create_document(AD_COLLECTIONS[kind], ad)
    log_admin_action(admin, f"create_{kind}_ad", ad_id=ad_id)
    return serialize(find_by_id(AD_COLLECTIONS[kind], ad_id))


def _update_ad(kind: str, ad_id: str, body: AdUpdateBody, admin: dict) -> dict:
    _live(AD_COLLECTIONS[kind], ad_id, "Ad")
    ad = update_by_id(AD_COLLECTIONS[kind], ad_id, _timestamps(changes(body)))
    log_admin_action(admin, f"update_{kind}_ad", ad_id=ad_id)
    return serialize(ad)


def _delete_ad(kind: str, ad_id: str, admin: dict) -> dict:
    _live(AD_COLLECTIONS[kind], ad_id, "Ad")
    update_by_id(AD_COLLECTIONS[kind], ad_id, {"is_deleted": True})
    log_admin_action(admin, f"delete_{kind}_ad", ad_id=ad_id)
    return {"message": "Ad deleted"}


@router.get("/audio")
def list_audio_ads(campaign_id: Optional[str] = None, admin=Depends(require_admin)):
    return _list_ads("audio", campaign_id)


@router.post("/audio")
def create_audio_ad(body: AdBody, admin=Depends(require_admin)):
    return _create_ad("audio", body, admin)


@router.put("/audio/{ad_id}")
def update_audio_ad(ad_id: str, body: AdUpdateBody, admin=Depends(require_admin)):
    return _update_ad("audio", ad_id, body, admin)


@router.delete("/audio/{ad_id}")
def delete_audio_ad(ad_id: str, admin=Depends(require_admin)):
    return _delete_ad("audio", ad_id, admin)


@router.get("/banner")
def list_banner_ads(campaign_id: Optional[str] = None, admin=Depends(require_admin)):
    return _list_ads("banner", campaign_id)


@router.post("/banner")
def create_banner_ad(body: AdBody, admin=Depends(require_admin)):
    return _create_ad("banner", body, admin)


@router.put("/banner/{ad_id}")
def update_banner_ad(ad_id: str, body: AdUpdateBody, admin=Depends(require_admin)):
    return _update_ad("banner", ad_id, body, admin)


@router.delete("/banner/{ad_id}")
def delete_banner_ad(ad_id: str, admin=Depends(require_admin)):
    return _delete_ad("banner", ad_id, admin)


# -----------------
# Placements & serving
# -----------------

@router.get("/placements")
def list_placements(type: Optional[str] = None):
    query: Dict[str, Any] = {"is_active": True}
    if type:
        query["type"] = type
    placements = get_documents("adplacement", query, sort=[("priority", -1)])
    return {"placements": serialize(placements)}


@router.post("/placements")
def create_placement(body: PlacementBody, admin=Depends(require_admin)):
    placement_id = create_document("adplacement", AdPlacement(**body.model_dump()))
    log_admin_action(admin, "create_ad_placement", placement_id=placement_id)
    return serialize(find_by_id("adplacement", placement_id))


@router.get("/serve")
def serve_ad(
    type: str = "audio",
    placement: Optional[str] = None,
    device_type: Optional[str] = None,
    user=Depends(get_optional_user),
):
    if type not in AD_COLLECTIONS:
        raise HTTPException(status_code=400, detail="Invalid ad type")
    if is_ad_free(user):
        return {"ads": []}

    ads = eligible_ads(get_documents(AD_COLLECTIONS[type], {"is_deleted": {"$ne": True}}), placement, utcnow())
    query: Dict[str, Any] = {"type": type}
    if placement:
        query["slot"] = placement
    placements = get_documents("adplacement", query)
    user_type = (user.get("plan") or "FREE") if user else "GUEST"

    ad = select_ad(ads, placements, user_type=user_type, device_type=device_type)
    return {"ads": [serialize(ad)] if ad else []}


# -----------------
# Impressions, clicks & stats
# -----------------

@router.post("/impressions")
def record_impression(body: AdEventBody, user=Depends(get_optional_user)):
    ad = _find_ad(body.ad_id, body.ad_type)
    if not ad:
        raise HTTPException(status_code=404, detail="Ad not found")
    cost = ad.get("cost_per_impression") or 0
    impression_id = create_document("adimpression", AdImpression(
        user_id=str(user["_id"]) if user else None, cost=cost, **body.model_dump()
    ))
    if cost and ad.get("remaining_budget") is not None:
        db[AD_COLLECTIONS[body.ad_type]].update_one({"_id": ad["_id"]}, {"$inc": {"remaining_budget": -cost}})
    return {"id": impression_id, "cost": cost}


@router.post("/clicks")
def record_click(body: AdEventBody, user=Depends(get_optional_user)):
    if not _find_ad(body.ad_id, body.ad_type):
        raise HTTPException(status_code=404, detail="Ad not found")
    click_id = create_document("adclick", AdClick(user_id=str(user["_id"]) if user else None, **body.model_dump()))
    return {"id": click_id}


def ad_stats(ad_id: str) -> dict:
    impressions = db["adimpression"].count_documents({"ad_id": ad_id})
    clicks = db["adclick"].count_documents({"ad_id": ad_id})
    revenue = sum(r.get("amount", 0) for r in db["adrevenue"].find({"ad_id": ad_id}))
    return {
        "impressions": impressions,
        "clicks": clicks,
        "ctr": round(clicks / impressions * 100, 2) if impressions else 0,
        "revenue": round(revenue, 2),
    }


@router.get("/analytics")
def ads_overview(admin=Depends(require_admin)):
    ads = []
    for kind, collection_name in AD_COLLECTIONS.items():
        for ad in get_documents(collection_name, {"is_deleted": {"$ne": True}}):
            ads.append({"ad_id": str(ad["_id"]), "type": kind, "title": ad.get("title"), **ad_stats(str(ad["_id"]))})
    impressions = sum(a["impressions"] for a in ads)
    clicks = sum(a["clicks"] for a in ads)
    return {
        "total_impressions": impressions,
        "total_clicks": clicks,
        "total_revenue": round(sum(a["revenue"] for a in ads), 2),
        "ctr": round(clicks / impressions * 100, 2) if impressions else 0,
        "top_ads": sorted(ads, key=lambda a: a["impressions"], reverse=True)[:5],
    }


# -----------------
# Revenue sharing
# -----------------

@router.post("/revenue")
def record_revenue(body: RevenueBody, admin=Depends(require_admin)):
    artist = find_by_id("user", body.artist_id, role="artist")
    if not artist:
        raise HTTPException(status_code=404, detail="Artist not found")
    artist_share = round(body.amount * ARTIST_SHARE, 2)
    platform_share = round(body.amount - artist_share, 2)
    revenue_id = create_document("adrevenue", AdRevenue(
        artist_share=artist_share, platform_share=platform_share, **body.model_dump()
    ))
    db["user"].update_one({"_id": artist["_id"]}, {"$inc": {"artist.revenue.ads": artist_share}})
    log_admin_action(admin, "distribute_ad_revenue", ad_id=body.ad_id, artist_id=body.artist_id, amount=body.amount)
    return serialize(find_by_id("adrevenue", revenue_id))


@router.get("/earnings")
def artist_earnings(user=Depends(require_artist)):
    now = utcnow()
    this_month = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    last_month = (this_month.replace(year=this_month.year - 1, month=12) if this_month.month == 1
                  else this_month.replace(month=this_month.month - 1))

    entries = get_documents("adrevenue", {"artist_id": str(user["_id"])}, sort=[("created_at", -1)])
    by_song: Dict[str, dict] = {}
    for e in entries:
        song = by_song.setdefault(e.get("song_id") or "", {"song_id": e.get("song_id"), "total": 0, "distributions": 0})
        song["total"] = round(song["total"] + e["artist_share"], 2)
        song["distributions"] += 1

    return {
        "total": round(sum(e["artist_share"] for e in entries), 2),
        "this_month": round(sum(e["artist_share"] for e in entries if e["created_at"] >= this_month), 2),
        "last_month": round(sum(e["artist_share"] for e in entries if last_month <= e["created_at"] < this_month), 2),
        "recent": serialize(entries[:10]),
        "by_song": list(by_song.values()),
    }


@router.get("/{ad_id}/stats")
def get_ad_stats(ad_id: str, user=Depends(get_user_from_token)):
    if not _find_ad(ad_id):
        raise HTTPException(status_code=404, detail="Ad not found")
    return ad_stats(ad_id)


# -----------------
# Per-song settings
# -----------------

def song_ad_settings(song: dict) -> dict:
    stored = song.get("ad_settings") or {}
    custom = {**DEFAULT_SONG_AD_SETTINGS["custom_settings"], **(stored.get("custom_settings") or {})}
    return {**DEFAULT_SONG_AD_SETTINGS, **stored, "custom_settings": custom, "song_id": str(song["_id"])}


@router.get("/songs/{song_id}/settings")
def get_song_ad_settings(song_id: str):
    return song_ad_settings(get_or_404("song", song_id, "Song"))


@router.put("/songs/{song_id}/settings")
def update_song_ad_settings(song_id: str, body: SongAdSettingsBody, user=Depends(require_artist)):
    song = get_or_404("song", song_id, "Song")
    ensure_owner(song, user)
    current = song_ad_settings(song)
    current.pop("song_id")
    updates = changes(body)
    if "custom_settings" in updates:
        updates["custom_settings"] = {**current["custom_settings"], **updates["custom_settings"]}
    song = update_by_id("song", song_id, {"ad_settings": {**current, **updates}})
    return song_ad_settings(song)
