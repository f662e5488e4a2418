import re
import secrets
from typing import List, Optional

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile
from pydantic import BaseModel

from database import create_document, db, find_by_id, get_documents, serialize, update_by_id
from routes.deps import changes, ensure_owner, get_or_404, require_artist
from schemas import Merch
from services import media
from settings import get_settings

router = APIRouter(prefix="/api/merch", tags=["merch"])

MAX_IMAGES = 5


class MerchBody(BaseModel):
    name: str
    description: Optional[str] = None
    price: float
    stock: int = 0
    category: Optional[str] = None
    images: List[str] = []


class MerchUpdateBody(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = None
    stock: Optional[int] = None
    category: Optional[str] = None
    images: Optional[List[str]] = None


@router.get("")
def list_merch(
    search: Optional[str] = None,
    category: Optional[str] = None,
    min_price: Optional[float] = None,
    max_price: Optional[float] = None,
    sort: Optional[str] = None,
    limit: int = 50,
):
    query = {}
    if search:
        pattern = {"$regex": re.escape(search), "$options": "i"}
        query["$or"] = [{"name": pattern}, {"description": pattern}]
    if category and category != "all":
        query["category"] = category
    price = {}
    if min_price is not None:
        price["$gte"] = min_price
    if max_price is not None:
        price["$lte"] = max_price
    if price:
        query["price"] = price

    items = get_documents("merch", query)
    if sort == "price-low":
        items.sort(key=lambda m: m.get("price", 0))
    elif sort == "price-high":
        items.sort(key=lambda m: m.get("price", 0), reverse=True)
    elif sort == "popular":
        items.sort(key=lambda m: len(m.get("orders") or []), reverse=True)
    else:
        items.sort(key=lambda m: m["created_at"], reverse=True)
    return {"merch": serialize(items[:limit])}


@router.get("/artist/{artist_id}")
def artist_merch(artist_id: str):
    return {"merch": serialize(get_documents("merch", {"artist_id": artist_id}, sort=[("created_at", -1)]))}


@router.get("/{merch_id}")
def get_merch(merch_id: str):
    return serialize(get_or_404("merch", merch_id, "Merch"))


@router.post("")
def create_merch(body: MerchBody, user=Depends(require_artist)):
    merch_id = create_document("merch", Merch(artist_id=str(user["_id"]), **body.model_dump()))
    return serialize(find_by_id("merch", merch_id))


@router.patch("/{merch_id}")
def update_merch(merch_id: str, body: MerchUpdateBody, user=Depends(require_artist)):
    item = get_or_404("merch", merch_id, "Merch")
    ensure_owner(item, user)
    return serialize(update_by_id("merch", merch_id, changes(body)))


@router.post("/{merch_id}/images")
def upload_merch_images(merch_id: str, images: List[UploadFile] = File(...), user=Depends(require_artist)):
    """Upload up to five product photos and append them to ``images``."""
    item = get_or_404("merch", merch_id, "Merch")
    ensure_owner(item, user)
    if len(images) > MAX_IMAGES:
        raise HTTPException(status_code=400, detail=f"At most {MAX_IMAGES} images per upload")
    max_mb = get_settings().max_image_upload_mb
    payloads = [media.read_upload(image, "image", max_mb) for image in images]
    urls = [media.upload_image(data, f"merch_{merch_id}_{secrets.token_hex(4)}", "merch") for data in payloads]
    db["merch"].update_one({"_id": item["_id"]}, {"$push": {"images": {"$each": urls}}})
    return serialize(find_by_id("merch", merch_id))


@router.delete("/{merch_id}")
def delete_merch(merch_id: str, user=Depends(require_artist)):
    item = get_or_404("merch", merch_id, "Merch")
    ensure_owner(item, user)
    db["merch"].delete_one({"_id": item["_id"]})
    return {"message": "Merch deleted successfully"}
