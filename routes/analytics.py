from collections import Counter
from datetime import timedelta
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from auth import get_user_from_token
from database import db, find_by_id, serialize, utcnow
from routes.deps import require_admin, track

router = APIRouter(prefix="/api/analytics", tags=["analytics"])

CONTENT_COLLECTIONS = {"song": "song", "event": "event", "merch": "merch", "blog": "blog", "nft": "nft"}


class TrackBody(BaseModel):
    action: str
    content_id: Optional[str] = None
    content_type: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


@router.post("/track")
def track_action(body: TrackBody, user=Depends(get_user_from_token)):
    event_id = track(body.action, user, content_id=body.content_id, content_type=body.content_type, **body.metadata)
    return {"message": "Action tracked successfully", "id": event_id}


@router.get("/trending")
def trending(content_type: str = "song", days: int = 7, limit: int = 20):
    """Most-played content over the last ``days`` days."""
    since = utcnow() - timedelta(days=days)
    counts = Counter(
        e["content_id"]
        for e in db["analyticsevent"].find(
            {"action": "play", "content_type": content_type, "created_at": {"$gte": since}}
        )
        if e.get("content_id")
    )
    collection_name = CONTENT_COLLECTIONS.get(content_type)
    items = []
    for content_id, plays in counts.most_common(limit):
        doc = find_by_id(collection_name, content_id) if collection_name else None
        if doc:
            items.append({**serialize(doc), "recent_plays": plays})
    return {"content_type": content_type, "days": days, "items": items}


@router.get("/platform")
def platform_metrics(days: int = 30, admin=Depends(require_admin)):
    since = utcnow() - timedelta(days=days)
    events = list(db["analyticsevent"].find({"created_at": {"$gte": since}}))
    by_action = Counter(e["action"] for e in events)
    return {
        "days": days,
        "total_events": len(events),
        "active_users": len({e["user_id"] for e in events if e.get("user_id")}),
        "by_action": dict(by_action),
        "new_users": db["user"].count_documents({"created_at": {"$gte": since}}),
    }
