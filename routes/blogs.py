from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from auth import get_optional_user, is_admin
from database import create_document, db, find_by_id, get_documents, serialize, update_by_id, utcnow
from routes.deps import changes, ensure_owner, get_or_404, require_artist
from schemas import Blog

router = APIRouter(prefix="/api/blogs", tags=["blogs"])


class BlogBody(BaseModel):
    title: str
    content: str
    visibility: str = "PUBLIC"
    images: List[str] = []


class BlogUpdateBody(BaseModel):
    title: Optional[str] = None
    content: Optional[str] = None
    visibility: Optional[str] = None
    images: Optional[List[str]] = None


def has_active_subscription(fan_id: str, artist_id: str) -> bool:
    return db["subscription"].count_documents({
        "fan_id": fan_id,
        "artist_id": artist_id,
        "status": "ACTIVE",
        "end_date": {"$gt": utcnow()},
    }) > 0


@router.get("")
def list_blogs(limit: int = 50):
    blogs = get_documents("blog", {"visibility": "PUBLIC"}, limit=limit, sort=[("created_at", -1)])
    return {"blogs": serialize(blogs)}


@router.get("/artist/{artist_id}")
def artist_blogs(artist_id: str, user=Depends(get_optional_user)):
    query = {"artist_id": artist_id}
    uid = str(user["_id"]) if user else None
    if uid != artist_id and not is_admin(user) and not (uid and has_active_subscription(uid, artist_id)):
        query["visibility"] = "PUBLIC"
    return {"blogs": serialize(get_documents("blog", query, sort=[("created_at", -1)]))}


@router.get("/{blog_id}")
def get_blog(blog_id: str, user=Depends(get_optional_user)):
    blog = get_or_404("blog", blog_id, "Blog")
    if blog.get("visibility") == "SUBSCRIBER_ONLY":
        uid = str(user["_id"]) if user else None
        is_author = uid == blog.get("artist_id")
        if not (is_author or is_admin(user) or (uid and has_active_subscription(uid, blog["artist_id"]))):
            raise HTTPException(status_code=403, detail="Subscriber access required")
    return serialize(blog)


@router.post("")
def create_blog(body: BlogBody, user=Depends(require_artist)):
    blog_id = create_document("blog", Blog(artist_id=str(user["_id"]), **body.model_dump()))
    return serialize(find_by_id("blog", blog_id))


@router.patch("/{blog_id}")
def update_blog(blog_id: str, body: BlogUpdateBody, user=Depends(require_artist)):
    blog = get_or_404("blog", blog_id, "Blog")
    ensure_owner(blog, user)
    return serialize(update_by_id("blog", blog_id, changes(body)))


@router.delete("/{blog_id}")
def delete_blog(blog_id: str, user=Depends(require_artist)):
    blog = get_or_404("blog", blog_id, "Blog")
    ensure_owner(blog, user)
    db["blog"].delete_one({"_id": blog["_id"]})
    return {"message": "Blog deleted successfully"}
