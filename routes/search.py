import re
from typing import Optional

from fastapi import APIRouter, HTTPException

from database import get_documents, serialize

router = APIRouter(prefix="/api/search", tags=["search"])


def _pattern(q: str) -> dict:
    return {"$regex": re.escape(q), "$options": "i"}


def search_songs(q):
    p = _pattern(q)
    return get_documents("song", {"visibility": "PUBLIC", "$or": [{"title": p}, {"genre": p}]})


def search_artists(q):
    p = _pattern(q)
    return get_documents("user", {"role": "artist", "$or": [{"name": p}, {"artist.bio": p}]})


def search_merch(q):
    p = _pattern(q)
    return get_documents("merch", {"$or": [{"name": p}, {"description": p}, {"category": p}]})


def search_events(q):
    p = _pattern(q)
    return get_documents("event", {"$or": [{"title": p}, {"description": p}, {"location": p}]})


def search_blogs(q):
    p = _pattern(q)
    return get_documents("blog", {"visibility": "PUBLIC", "$or": [{"title": p}, {"content": p}]})


SEARCHERS = {
    "songs": search_songs,
    "artists": search_artists,
    "merch": search_merch,
    "events": search_events,
    "blogs": search_blogs,
}


def _clip(text: Optional[str], size: int = 50) -> str:
    text = text or ""
    return text[:size] + "..." if len(text) > size else text


@router.get("")
def global_search(q: Optional[str] = None, type: Optional[str] = None, limit: int = 10):
    if not q:
        raise HTTPException(status_code=400, detail="Search query required")
    if type:
        searcher = SEARCHERS.get(type)
        if searcher is None:
            raise HTTPException(status_code=400, detail="Invalid search type")
        found = searcher(q)
        return {type: serialize(found[:limit]), "total": len(found)}

    results = {name: searcher(q) for name, searcher in SEARCHERS.items()}
    response = {name: serialize(found[:limit]) for name, found in results.items()}
    response["totals"] = {name: len(found) for name, found in results.items()}
    return response


@router.get("/suggestions")
def suggestions(q: Optional[str] = None, limit: int = 5):
    if not q:
        raise HTTPException(status_code=400, detail="Search query required")
    results = {name: searcher(q) for name, searcher in SEARCHERS.items()}

    out = []
    for song in results["songs"][:limit]:
        out.append({"id": str(song["_id"]), "title": song["title"], "type": "song",
                    "subtitle": song.get("genre"), "url": f"/song/{song['_id']}"})
    for artist in results["artists"][:limit]:
        bio = (artist.get("artist") or {}).get("bio")
        out.append({"id": str(artist["_id"]), "title": artist["name"], "type": "artist",
                    "subtitle": _clip(bio) if bio else "Artist", "url": f"/artist/{artist['_id']}"})
    for item in results["merch"][:limit]:
        out.append({"id": str(item["_id"]), "title": item["name"], "type": "merch",
                    "subtitle": f"₹{item.get('price', 0):g}", "url": f"/merch/{item['_id']}"})
    for event in results["events"][:limit]:
        out.append({"id": str(event["_id"]), "title": event["title"], "type": "event",
                    "subtitle": event.get("location"), "url": f"/event/{event['_id']}"})
    for blog in results["blogs"][:limit]:
        out.append({"id": str(blog["_id"]), "title": blog["title"], "type": "blog",
                    "subtitle": _clip(blog.get("content")), "url": f"/blog/{blog['_id']}"})

    return {
        "suggestions": out[:limit * 2],
        "totals": {name: len(found) for name, found in results.items()},
    }
