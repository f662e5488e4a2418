from datetime import timedelta
from typing import Dict, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from database import db, find_by_id, get_documents, serialize, update_by_id, utcnow
from routes.deps import require_artist

router = APIRouter(prefix="/api/artists", tags=["artists"])


class ArtistProfileBody(BaseModel):
    name: Optional[str] = None
    bio: Optional[str] = None
    social_links: Optional[Dict[str, str]] = None
    avatar_url: Optional[str] = None


def _summary(artist: dict) -> dict:
    songs = get_documents("song", {"artist_id": str(artist["_id"])})
    item = serialize(artist)
    item["songs_count"] = len(songs)
    item["total_plays"] = sum(s.get("plays", 0) for s in songs)
    return item


@router.get("")
def list_artists(limit: int = 20):
    artists = get_documents("user", {"role": "artist"}, limit=limit, sort=[("artist.trending_score", -1)])
    return {"artists": [_summary(a) for a in artists]}


@router.get("/featured")
def featured_artists(limit: int = 6):
    artists = get_documents("user", {"role": "artist", "artist.featured": True}, limit=limit)
    if not artists:
        artists = get_documents("user", {"role": "artist"}, limit=limit, sort=[("artist.trending_score", -1)])
    return {"artists": serialize(artists)}


@router.get("/profile")
def my_profile(user=Depends(require_artist)):
    return serialize(user)


@router.patch("/profile")
def update_profile(body: ArtistProfileBody, user=Depends(require_artist)):
    fields = {}
    if body.name is not None:
        fields["name"] = body.name
    if body.avatar_url is not None:
        fields["avatar_url"] = body.avatar_url
    if body.bio is not None:
        fields["artist.bio"] = body.bio
    if body.social_links is not None:
        fields["artist.social_links"] = body.social_links
    if not fields:
        return serialize(user)
    return serialize(update_by_id("user", user["_id"], fields))


@router.get("/songs")
def my_songs(user=Depends(require_artist)):
    songs = get_documents("song", {"artist_id": str(user["_id"])}, sort=[("created_at", -1)])
    return {"songs": serialize(songs)}


@router.get("/analytics")
def my_analytics(user=Depends(require_artist)):
    artist_id = str(user["_id"])
    since = utcnow() - timedelta(days=30)
    songs = get_documents("song", {"artist_id": artist_id})

    listeners = set()
    for song in songs:
        listeners.update(song.get("unique_listeners") or [])

    profile = user.get("artist") or {}
    followers = len(profile.get("followers") or [])
    subscribers = db["subscription"].count_documents({"artist_id": artist_id, "status": "ACTIVE"})
    new_followers = db["analyticsevent"].count_documents(
        {"action": "follow", "content_id": artist_id, "created_at": {"$gte": since}}
    )
    new_subscribers = db["subscription"].count_documents({"artist_id": artist_id, "created_at": {"$gte": since}})

    top_songs = sorted(songs, key=lambda s: s.get("plays", 0), reverse=True)[:5]
    return {
        "total_plays": sum(s.get("plays", 0) for s in songs),
        "total_likes": sum(s.get("likes", 0) for s in songs),
        "unique_listeners": len(listeners),
        "followers": followers,
        "subscribers": subscribers,
        "new_followers": new_followers,
        "new_subscribers": new_subscribers,
        "conversion_rate": round(subscribers / followers * 100, 2) if followers else 0,
        "revenue": profile.get("revenue") or {"subscriptions": 0, "merch": 0, "events": 0, "ads": 0},
        "top_songs": serialize(top_songs),
    }


@router.get("/{artist_id}")
def artist_detail(artist_id: str):
    artist = find_by_id("user", artist_id, role="artist")
    if not artist:
        raise HTTPException(status_code=404, detail="Artist not found")
    query = {"artist_id": artist_id}
    return {
        "artist": serialize(artist),
        "songs": serialize(get_documents("song", {**query, "visibility": "PUBLIC"}, sort=[("created_at", -1)])),
        "events": serialize(get_documents("event", query, sort=[("date", 1)])),
        "merch": serialize(get_documents("merch", query)),
        "blogs": serialize(get_documents("blog", {**query, "visibility": "PUBLIC"}, sort=[("created_at", -1)])),
    }
