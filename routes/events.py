import re
import secrets
from datetime import datetime, timedelta
from typing import Optional

from fastapi import APIRouter, Depends, File, UploadFile
from pydantic import BaseModel

from database import create_document, db, find_by_id, get_documents, naive_utc, serialize, update_by_id, utcnow
from routes.deps import changes, ensure_owner, get_or_404, require_artist
from schemas import Event
from services import media
from settings import get_settings

router = APIRouter(prefix="/api/events", tags=["events"])


class EventBody(BaseModel):
    title: str
    description: Optional[str] = None
    date: datetime
    location: str
    online_url: Optional[str] = None
    ticket_price: float = 0
    capacity: Optional[int] = None
    image_url: Optional[str] = None


class EventUpdateBody(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    date: Optional[datetime] = None
    location: Optional[str] = None
    online_url: Optional[str] = None
    ticket_price: Optional[float] = None
    capacity: Optional[int] = None
    image_url: Optional[str] = None


def date_window(date: Optional[str], now: datetime) -> dict:
    if date == "this-week":
        return {"$gte": now, "$lte": now + timedelta(days=7)}
    if date == "this-month":
        return {"$gte": now, "$lte": now + timedelta(days=30)}
    if date == "past":
        return {"$lt": now}
    return {"$gte": now}


@router.get("")
def list_events(
    search: Optional[str] = None,
    location: Optional[str] = None,
    date: Optional[str] = None,
    limit: int = 50,
):
    query = {"date": date_window(date, utcnow())}
    if search:
        pattern = {"$regex": re.escape(search), "$options": "i"}
        query["$or"] = [{"title": pattern}, {"description": pattern}, {"location": pattern}]
    if location and location != "all-locations":
        query["location"] = {"$regex": re.escape(location), "$options": "i"}
    events = get_documents("event", query, limit=limit, sort=[("date", 1)])
    return {"events": serialize(events)}


@router.get("/artist/{artist_id}")
def artist_events(artist_id: str):
    return {"events": serialize(get_documents("event", {"artist_id": artist_id}, sort=[("date", 1)]))}


@router.get("/{event_id}")
def get_event(event_id: str):
    return serialize(get_or_404("event", event_id, "Event"))


@router.post("")
def create_event(body: EventBody, user=Depends(require_artist)):
    data = body.model_dump()
    data["date"] = naive_utc(body.date)
    event_id = create_document("event", Event(artist_id=str(user["_id"]), **data))
    return serialize(find_by_id("event", event_id))


@router.patch("/{event_id}")
def update_event(event_id: str, body: EventUpdateBody, user=Depends(require_artist)):
    event = get_or_404("event", event_id, "Event")
    ensure_owner(event, user)
    fields = changes(body)
    if "date" in fields:
        fields["date"] = naive_utc(fields["date"])
    return serialize(update_by_id("event", event_id, fields))


@router.post("/{event_id}/image")
def upload_event_image(event_id: str, image: UploadFile = File(...), user=Depends(require_artist)):
    event = get_or_404("event", event_id, "Event")
    ensure_owner(event, user)
    data = media.read_upload(image, "image", get_settings().max_image_upload_mb)
    image_url = media.upload_image(data, f"event_{event_id}_{secrets.token_hex(4)}", "events")
    return serialize(update_by_id("event", event_id, {"image_url": image_url}))


@router.delete("/{event_id}")
def delete_event(event_id: str, user=Depends(require_artist)):
    event = get_or_404("event", event_id, "Event")
    ensure_owner(event, user)
    db["event"].delete_one({"_id": event["_id"]})
    return {"message": "Event deleted successfully"}
