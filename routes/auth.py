from typing import Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from auth import (
    ResetTokenError,
    create_access_token,
    get_user_from_token,
    hash_password,
    reset_tokens,
    verify_password,
)
from database import create_document, db, serialize, update_by_id, utcnow
from routes.deps import system_settings
from schemas import ArtistProfile, User

logger = structlog.get_logger()

router = APIRouter(prefix="/api/auth", tags=["auth"])


class RegisterBody(BaseModel):
    name: str
    email: str
    password: str
    role: str = "fan"


class LoginBody(BaseModel):
    email: str
    password: str


class ForgotPasswordBody(BaseModel):
    email: str


class ResetPasswordBody(BaseModel):
    token: Optional[str] = None
    password: Optional[str] = None


class ChangePasswordBody(BaseModel):
    current_password: str
    new_password: str


def _auth_response(user: dict) -> dict:
    return {"token": create_access_token(user), "user": serialize(user)}


@router.post("/register")
def register(body: RegisterBody):
    if not system_settings()["registrations_open"]:
        raise HTTPException(status_code=403, detail="Registrations are currently closed")
    email = body.email.strip().lower()
    if db["user"].find_one({"email": email}):
        raise HTTPException(status_code=400, detail="User already exists")
    if body.role not in ("fan", "artist"):
        raise HTTPException(status_code=400, detail="Invalid role")
    if len(body.password) < 6:
        raise HTTPException(status_code=400, detail="Password must be at least 6 characters")

    user = User(
        name=body.name,
        email=email,
        password_hash=hash_password(body.password),
        role=body.role,
        artist=ArtistProfile() if body.role == "artist" else None,
    )
    user_id = create_document("user", user)
    logger.info("User registered", user_id=user_id, role=body.role)
    return _auth_response(db["user"].find_one({"email": email}))


@router.post("/login")
def login(body: LoginBody):
    user = db["user"].find_one({"email": body.email.strip().lower()})
    if not user or not verify_password(body.password, user.get("password_hash")):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    if user.get("banned"):
        ban_until = user.get("ban_until")
        if ban_until is None or ban_until > utcnow():
            raise HTTPException(status_code=403, detail="Account suspended")
    user = update_by_id("user", user["_id"], {"last_login": utcnow()})
    return _auth_response(user)


@router.get("/me")
def me(user=Depends(get_user_from_token)):
    return serialize(user)


@router.post("/forgot-password")
def forgot_password(body: ForgotPasswordBody):
    user = db["user"].find_one({"email": body.email.strip().lower()})
    if not user:
        raise HTTPException(status_code=404, detail="No account found with that email")
    token = reset_tokens.issue(str(user["_id"]))
    # Delivery is out of band; the code is logged for the operator.
    logger.info("Password reset token issued", user_id=str(user["_id"]), reset_token=token)
    return {"message": "Password reset code sent to your email"}


@router.post("/reset-password")
def reset_password(body: ResetPasswordBody):
    if not body.token or not body.password:
        raise HTTPException(status_code=400, detail="Token and password are required")
    if len(body.password) < 6:
        raise HTTPException(status_code=400, detail="Password must be at least 6 characters")
    try:
        user_id = reset_tokens.consume(body.token)
    except ResetTokenError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    update_by_id("user", user_id, {"password_hash": hash_password(body.password)})
    return {"message": "Password reset successfully"}


@router.post("/change-password")
def change_password(body: ChangePasswordBody, user=Depends(get_user_from_token)):
    if not verify_password(body.current_password, user.get("password_hash")):
        raise HTTPException(status_code=400, detail="Current password is incorrect")
    if len(body.new_password) < 6:
        raise HTTPException(status_code=400, detail="Password must be at least 6 characters")
    update_by_id("user", user["_id"], {"password_hash": hash_password(body.new_password)})
    return {"message": "Password changed successfully"}
