import secrets

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from auth import get_user_from_token
from database import create_document, db, find_by_id, get_documents, serialize, update_by_id, utcnow
from routes.deps import get_or_404
from schemas import LoyaltyProfile, Staking, UserAchievement

router = APIRouter(prefix="/api/loyalty", tags=["loyalty"])

POINTS_PER_LEVEL = 100


class EarnAchievementBody(BaseModel):
    achievement_id: str


class StakeBody(BaseModel):
    token_id: str


def loyalty_profile(user_id: str) -> dict:
    """Fetch the profile, creating an empty one on first access."""
    profile = db["loyaltyprofile"].find_one({"user_id": user_id})
    if profile is None:
        create_document("loyaltyprofile", LoyaltyProfile(user_id=user_id))
        profile = db["loyaltyprofile"].find_one({"user_id": user_id})
    return profile


def level_for(points: int) -> int:
    return points // POINTS_PER_LEVEL + 1


@router.get("/profile")
def get_profile(user=Depends(get_user_from_token)):
    return serialize(loyalty_profile(str(user["_id"])))


@router.get("/achievements")
def list_achievements():
    return {"achievements": serialize(get_documents("achievement", sort=[("points_reward", 1)]))}


@router.get("/user-achievements")
def user_achievements(user=Depends(get_user_from_token)):
    earned = get_documents("userachievement", {"user_id": str(user["_id"])}, sort=[("earned_at", -1)])
    return {"achievements": serialize(earned)}


@router.post("/earn-achievement")
def earn_achievement(body: EarnAchievementBody, user=Depends(get_user_from_token)):
    achievement = get_or_404("achievement", body.achievement_id, "Achievement")
    uid = str(user["_id"])
    if db["userachievement"].find_one({"user_id": uid, "achievement_id": body.achievement_id}):
        raise HTTPException(status_code=400, detail="Achievement already earned")

    earned_id = create_document("userachievement", UserAchievement(
        user_id=uid,
        achievement_id=body.achievement_id,
        token_id=f"achievement_{secrets.token_hex(8)}",
        earned_at=utcnow(),
    ))
    profile = loyalty_profile(uid)
    db["loyaltyprofile"].update_one(
        {"_id": profile["_id"]},
        {"$inc": {"total_points": achievement.get("points_reward", 0), "achievements_earned": 1}},
    )
    return serialize(find_by_id("userachievement", earned_id))


@router.post("/stake")
def stake(body: StakeBody, user=Depends(get_user_from_token)):
    uid = str(user["_id"])
    if db["staking"].find_one({"user_id": uid, "token_id": body.token_id, "is_active": True}):
        raise HTTPException(status_code=400, detail="Token already staked")
    staking_id = create_document("staking", Staking(user_id=uid, token_id=body.token_id, staked_at=utcnow()))
    return serialize(find_by_id("staking", staking_id))


@router.get("/stats")
def loyalty_stats():
    profiles = list(db["loyaltyprofile"].find())
    return {
        "total_members": len(profiles),
        "total_points": sum(p.get("total_points", 0) for p in profiles),
        "achievements_earned": db["userachievement"].count_documents({}),
        "active_stakes": db["staking"].count_documents({"is_active": True}),
    }


@router.post("/upgrade")
def upgrade_level(user=Depends(get_user_from_token)):
    profile = loyalty_profile(str(user["_id"]))
    new_level = level_for(profile.get("total_points", 0))
    update_by_id("loyaltyprofile", profile["_id"], {"level": new_level})
    return {"message": "Membership upgraded successfully", "new_level": new_level}
