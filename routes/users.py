from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, File, HTTPException, UploadFile
from pydantic import BaseModel

from auth import get_user_from_token
from database import db, find_by_id, get_documents, serialize, to_object_id, update_by_id, utcnow
from routes.deps import changes, track
from routes.songs import toggle_favorite
from schemas import Playlist
from services import media
from settings import get_settings

logger = structlog.get_logger()

router = APIRouter(prefix="/api/users", tags=["users"])


class UpdateMeBody(BaseModel):
    name: Optional[str] = None
    avatar_url: Optional[str] = None
    wallet_address: Optional[str] = None
    settings: Optional[Dict[str, Any]] = None


class PlaylistBody(BaseModel):
    name: str


class PlaylistSongBody(BaseModel):
    song_id: str


def _uid(user) -> str:
    return str(user["_id"])


@router.get("/me")
def get_me(user=Depends(get_user_from_token)):
    return serialize(user)


@router.patch("/me")
def update_me(body: UpdateMeBody, user=Depends(get_user_from_token)):
    fields = changes(body)
    if not fields:
        return serialize(user)
    return serialize(update_by_id("user", user["_id"], fields))


@router.post("/me/avatar")
def upload_avatar(avatar: UploadFile = File(...), user=Depends(get_user_from_token)):
    data = media.read_upload(avatar, "image", get_settings().max_image_upload_mb)
    avatar_url = media.upload_image(data, f"avatar_{_uid(user)}", "avatars")
    update_by_id("user", user["_id"], {"avatar_url": avatar_url})
    return {"message": "Avatar uploaded successfully", "avatar_url": avatar_url}


@router.delete("/me")
def delete_me(user=Depends(get_user_from_token)):
    uid = _uid(user)
    db["user"].delete_one({"_id": user["_id"]})
    db["user"].update_many({"artist.followers": uid}, {"$pull": {"artist.followers": uid}})
    logger.info("User deleted account", user_id=uid)
    return {"message": "Account deleted"}


@router.get("/me/recent-plays")
def recent_plays(user=Depends(get_user_from_token)):
    plays = get_documents(
        "analyticsevent",
        {"user_id": _uid(user), "action": "play"},
        limit=20,
        sort=[("created_at", -1)],
    )
    songs = []
    for play in plays:
        song = find_by_id("song", play.get("content_id"))
        if song:
            songs.append({**serialize(song), "played_at": play["created_at"]})
    return {"songs": songs}


@router.get("/me/following-content")
def following_content(user=Depends(get_user_from_token)):
    following = user.get("following") or []
    if not following:
        return {"songs": [], "events": [], "blogs": []}
    query = {"artist_id": {"$in": following}}
    return {
        "songs": serialize(get_documents("song", {**query, "visibility": "PUBLIC"}, limit=20, sort=[("created_at", -1)])),
        "events": serialize(get_documents("event", {**query, "date": {"$gte": utcnow()}}, limit=10, sort=[("date", 1)])),
        "blogs": serialize(get_documents("blog", query, limit=10, sort=[("created_at", -1)])),
    }


@router.post("/follow/{artist_id}")
def toggle_follow(artist_id: str, user=Depends(get_user_from_token)):
    artist = find_by_id("user", artist_id, role="artist")
    if not artist:
        raise HTTPException(status_code=404, detail="Artist not found")
    uid = _uid(user)
    if artist_id == uid:
        raise HTTPException(status_code=400, detail="You cannot follow yourself")

    if artist_id in (user.get("following") or []):
        db["user"].update_one({"_id": user["_id"]}, {"$pull": {"following": artist_id}})
        db["user"].update_one({"_id": artist["_id"]}, {"$pull": {"artist.followers": uid}})
        return {"following": False}

    db["user"].update_one({"_id": user["_id"]}, {"$addToSet": {"following": artist_id}})
    db["user"].update_one({"_id": artist["_id"]}, {"$addToSet": {"artist.followers": uid}})
    track("follow", user, content_id=artist_id, content_type="artist")
    return {"following": True}


@router.get("/me/favorites")
def favorites(user=Depends(get_user_from_token)):
    ids = [oid for oid in (to_object_id(s) for s in user.get("favorites") or []) if oid]
    songs = get_documents("song", {"_id": {"$in": ids}}) if ids else []
    return {"songs": serialize(songs)}


@router.post("/me/favorites/{song_id}")
def toggle_favorite_song(song_id: str, user=Depends(get_user_from_token)):
    song = find_by_id("song", song_id)
    if not song:
        raise HTTPException(status_code=404, detail="Song not found")
    return {"favorited": toggle_favorite(user, song)}


@router.get("/me/playlists")
def list_playlists(user=Depends(get_user_from_token)):
    return {"playlists": user.get("playlists") or []}


@router.post("/me/playlists")
def create_playlist(body: PlaylistBody, user=Depends(get_user_from_token)):
    playlists = user.get("playlists") or []
    if any(p["name"] == body.name for p in playlists):
        raise HTTPException(status_code=400, detail="Playlist already exists")
    playlist = Playlist(name=body.name, created_at=utcnow()).model_dump()
    db["user"].update_one({"_id": user["_id"]}, {"$push": {"playlists": playlist}})
    return playlist


@router.post("/me/playlists/{name}/songs")
def add_song_to_playlist(name: str, body: PlaylistSongBody, user=Depends(get_user_from_token)):
    if not find_by_id("song", body.song_id):
        raise HTTPException(status_code=404, detail="Song not found")
    playlists = user.get("playlists") or []
    playlist = next((p for p in playlists if p["name"] == name), None)
    if playlist is None:
        raise HTTPException(status_code=404, detail="Playlist not found")
    if body.song_id not in playlist["songs"]:
        playlist["songs"].append(body.song_id)
        update_by_id("user", user["_id"], {"playlists": playlists})
    return playlist


@router.patch("/me/settings")
def update_settings(body: Dict[str, Any], user=Depends(get_user_from_token)):
    merged = {**(user.get("settings") or {}), **body}
    update_by_id("user", user["_id"], {"settings": merged})
    return {"settings": merged}
