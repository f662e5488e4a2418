"""Shared helpers for the route modules."""

from typing import Any, Dict, Optional

import structlog
from fastapi import HTTPException

from auth import is_admin, require_role
from database import create_document, db, find_by_id
from schemas import SystemSettings

logger = structlog.get_logger()

require_artist = require_role("artist", "admin")
require_admin = require_role("admin")


def get_or_404(collection_name: str, doc_id: str, label: str) -> dict:
    doc = find_by_id(collection_name, doc_id)
    if not doc:
        raise HTTPException(status_code=404, detail=f"{label} not found")
    return doc


def ensure_owner(doc: dict, user: dict, field: str = "artist_id") -> None:
    if doc.get(field) != str(user["_id"]) and not is_admin(user):
        raise HTTPException(status_code=403, detail="Not authorized")


def changes(body) -> Dict[str, Any]:
    """Fields explicitly set on a PATCH body."""
    return body.model_dump(exclude_unset=True)


def track(action: str, user: Optional[dict] = None, content_id: Optional[str] = None,
          content_type: Optional[str] = None, **metadata) -> str:
    return create_document("analyticsevent", {
        "user_id": str(user["_id"]) if user else None,
        "action": action,
        "content_id": content_id,
        "content_type": content_type,
        "metadata": metadata,
    })


def log_admin_action(admin: dict, action: str, **details) -> None:
    create_document("adminlog", {"admin_id": str(admin["_id"]), "action": action, "details": details})
    logger.info("Admin action", admin_id=str(admin["_id"]), action=action, **details)


def system_settings() -> dict:
    """Platform settings as stored by admins, with defaults for unset fields."""
    stored = db["systemsetting"].find_one({"type": "system"}) or {}
    return {name: stored.get(name, default) for name, default in SystemSettings().model_dump().items()}
