import re
import secrets
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from pydantic import BaseModel

from auth import get_user_from_token
from database import create_document, db, find_by_id, get_documents, serialize, to_object_id, update_by_id
from routes.deps import changes, ensure_owner, get_or_404, require_artist, track
from schemas import Song
from services import media
from settings import get_settings

router = APIRouter(prefix="/api/songs", tags=["songs"])

SORTS = {
    "popular": [("plays", -1), ("likes", -1)],
    "trending": [("plays", -1), ("created_at", -1)],
    "alphabetical": [("title", 1)],
    "latest": [("created_at", -1)],
}
TRENDING_SORT = [("plays", -1), ("likes", -1), ("created_at", -1)]


class SongBody(BaseModel):
    title: str
    genre: Optional[str] = None
    file_url: str
    artwork_url: Optional[str] = None
    duration: int = 0
    visibility: str = "PUBLIC"


class SongUpdateBody(BaseModel):
    title: Optional[str] = None
    genre: Optional[str] = None
    file_url: Optional[str] = None
    artwork_url: Optional[str] = None
    duration: Optional[int] = None
    visibility: Optional[str] = None


def with_artist_names(songs):
    """Attach ``artist_name`` to each song, falling back to "Unknown Artist"."""
    ids = {oid for oid in (to_object_id(s.get("artist_id")) for s in songs) if oid}
    names = {str(a["_id"]): a.get("name") for a in db["user"].find({"_id": {"$in": list(ids)}})} if ids else {}
    out = []
    for song in songs:
        item = serialize(song)
        item["artist_name"] = names.get(song.get("artist_id")) or "Unknown Artist"
        out.append(item)
    return out


def toggle_favorite(user: dict, song: dict) -> bool:
    """Add or remove ``song`` from the user's favorites, keeping like counters in step."""
    song_id = str(song["_id"])
    liked = song_id not in (user.get("favorites") or [])
    delta = 1 if liked else -1
    op = "$addToSet" if liked else "$pull"
    db["user"].update_one({"_id": user["_id"]}, {op: {"favorites": song_id}})
    db["song"].update_one({"_id": song["_id"]}, {"$inc": {"likes": delta}})
    artist_oid = to_object_id(song.get("artist_id"))
    if artist_oid:
        db["user"].update_one({"_id": artist_oid, "role": "artist"}, {"$inc": {"artist.total_likes": delta}})
    return liked


@router.get("")
def list_songs(genre: Optional[str] = None, sort: str = "latest", limit: int = 20):
    query = {"visibility": "PUBLIC"}
    if genre and genre != "all":
        query["genre"] = {"$regex": re.escape(genre), "$options": "i"}
    songs = get_documents("song", query, limit=limit, sort=SORTS.get(sort, SORTS["latest"]))
    return {"songs": with_artist_names(songs)}


@router.get("/trending")
def trending_songs(limit: int = 10):
    songs = get_documents(
        "song",
        {"visibility": "PUBLIC"},
        limit=limit,
        sort=TRENDING_SORT,
    )
    return {"songs": with_artist_names(songs)}


@router.get("/recommended")
def recommended_songs(limit: int = 10, user=Depends(get_user_from_token)):
    """Popular songs in the genres the user has liked, topped up with trending picks."""
    seen = [oid for oid in (to_object_id(s) for s in user.get("favorites") or []) if oid]
    genres = sorted({s["genre"] for s in db["song"].find({"_id": {"$in": seen}}) if s.get("genre")})
    picks = []
    if genres:
        query = {"visibility": "PUBLIC", "genre": {"$in": genres}, "_id": {"$nin": seen}}
        picks = get_documents("song", query, limit=limit, sort=TRENDING_SORT)
    if len(picks) < limit:
        query = {"visibility": "PUBLIC", "_id": {"$nin": seen + [s["_id"] for s in picks]}}
        picks += get_documents("song", query, limit=limit - len(picks), sort=TRENDING_SORT)
    return {"songs": with_artist_names(picks)}


@router.get("/search")
def search_songs(q: Optional[str] = None, limit: int = 20):
    if not q:
        raise HTTPException(status_code=400, detail="Search query required")
    pattern = {"$regex": re.escape(q), "$options": "i"}
    songs = get_documents(
        "song",
        {"visibility": "PUBLIC", "$or": [{"title": pattern}, {"genre": pattern}]},
        limit=limit,
    )
    return {"songs": with_artist_names(songs)}


@router.get("/{song_id}")
def get_song(song_id: str):
    song = get_or_404("song", song_id, "Song")
    return with_artist_names([song])[0]


@router.post("")
def create_song(body: SongBody, user=Depends(require_artist)):
    song_id = create_document("song", Song(artist_id=str(user["_id"]), **body.model_dump()))
    return serialize(find_by_id("song", song_id))


@router.post("/upload")
def upload_song(
    audio: UploadFile = File(...),
    artwork: UploadFile = File(...),
    title: str = Form(...),
    genre: Optional[str] = Form(None),
    visibility: str = Form("PUBLIC"),
    user=Depends(require_artist),
):
    settings = get_settings()
    audio_data = media.read_upload(audio, "audio", settings.max_audio_upload_mb)
    artwork_data = media.read_upload(artwork, "image", settings.max_image_upload_mb)

    stamp = secrets.token_hex(6)
    uploaded = media.upload_audio(audio_data, f"song_{stamp}")
    artwork_url = media.upload_image(artwork_data, f"artwork_{stamp}", "artwork")
    song_id = create_document("song", Song(
        artist_id=str(user["_id"]),
        title=title,
        genre=genre,
        visibility=visibility,
        file_url=uploaded["url"],
        artwork_url=artwork_url,
        duration=uploaded["duration"],
    ))
    return serialize(find_by_id("song", song_id))


@router.patch("/{song_id}")
def update_song(song_id: str, body: SongUpdateBody, user=Depends(require_artist)):
    song = get_or_404("song", song_id, "Song")
    ensure_owner(song, user)
    return serialize(update_by_id("song", song_id, changes(body)))


@router.delete("/{song_id}")
def delete_song(song_id: str, user=Depends(require_artist)):
    song = get_or_404("song", song_id, "Song")
    ensure_owner(song, user)
    db["song"].delete_one({"_id": song["_id"]})
    return {"message": "Song deleted successfully"}


@router.post("/{song_id}/play")
def play_song(song_id: str, user=Depends(get_user_from_token)):
    song = get_or_404("song", song_id, "Song")
    uid = str(user["_id"])
    db["song"].update_one({"_id": song["_id"]}, {"$inc": {"plays": 1}, "$addToSet": {"unique_listeners": uid}})
    artist_oid = to_object_id(song.get("artist_id"))
    if artist_oid:
        db["user"].update_one({"_id": artist_oid, "role": "artist"}, {"$inc": {"artist.total_plays": 1}})
    track("play", user, content_id=song_id, content_type="song", artist_id=song.get("artist_id"))
    return {"message": "Play recorded", "plays": song.get("plays", 0) + 1}


@router.post("/{song_id}/like")
def like_song(song_id: str, user=Depends(get_user_from_token)):
    song = get_or_404("song", song_id, "Song")
    liked = toggle_favorite(user, song)
    if liked:
        track("like", user, content_id=song_id, content_type="song")
    return {"liked": liked}
