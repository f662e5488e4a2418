import asyncio
import contextlib
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.errors import PyMongoError
from starlette.exceptions import HTTPException
from starlette.middleware.sessions import SessionMiddleware

from database import db
from logging_setup import configure_logging
from middleware import RateLimitMiddleware, RequestIDMiddleware
from routes import (
    admin,
    ads,
    analytics,
    artists,
    auth,
    blogs,
    commerce,
    dao,
    events,
    fanclubs,
    loyalty,
    merch,
    nfts,
    royalty,
    search,
    songs,
    users,
)
from services.blockchain import BlockchainError
from services.media import MediaError, is_configured as media_configured
from services.payments import PaymentError, run_tracking_cleanup
from services.pricing import PromoCodeError
from settings import get_settings

settings = get_settings()
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    logger.info("Starting music platform backend", environment=settings.environment, network=settings.network)
    cleanup = asyncio.create_task(run_tracking_cleanup())
    yield
    cleanup.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await cleanup
    logger.info("Shutting down music platform backend")


app = FastAPI(title="Music Platform Backend", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(SessionMiddleware, secret_key=settings.session_secret, https_only=settings.is_production)
if settings.rate_limit_enabled:
    app.add_middleware(
        RateLimitMiddleware,
        window_seconds=settings.rate_limit_window_seconds,
        api_limit=settings.rate_limit_api,
        auth_limit=settings.rate_limit_auth,
    )
app.add_middleware(RequestIDMiddleware)

for module in (auth, users, artists, songs, events, merch, blogs, search, commerce,
               ads, dao, fanclubs, loyalty, nfts, royalty, analytics, admin):
    app.include_router(module.router)


# -----------------
# Error handling
# -----------------

@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(status_code=exc.status_code, content={"message": exc.detail}, headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"message": "Validation failed", "errors": jsonable_encoder(exc.errors())})


@app.exception_handler(PaymentError)
async def payment_exception_handler(request: Request, exc: PaymentError):
    return JSONResponse(status_code=exc.status_code, content={"message": str(exc)})


@app.exception_handler(BlockchainError)
async def blockchain_exception_handler(request: Request, exc: BlockchainError):
    logger.error("Blockchain operation failed", path=request.url.path, error=str(exc), configured=exc.configured)
    return JSONResponse(status_code=502 if exc.configured else 503, content={"message": str(exc)})


@app.exception_handler(MediaError)
async def media_exception_handler(request: Request, exc: MediaError):
    logger.error("Media upload failed", path=request.url.path, error=str(exc), configured=exc.configured)
    return JSONResponse(status_code=502 if exc.configured else 503, content={"message": str(exc)})


@app.exception_handler(PromoCodeError)
async def promo_exception_handler(request: Request, exc: PromoCodeError):
    return JSONResponse(status_code=400, content={"message": str(exc)})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error", path=request.url.path, method=request.method)
    return JSONResponse(status_code=500, content={"message": "Internal server error"})


# -----------------
# Diagnostics
# -----------------

@app.get("/")
def root():
    return {"message": "Music platform backend is running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_name": db.name,
        "connection_status": "Not Connected",
        "collections": [],
        "payments": "✅ Configured" if settings.razorpay_key_id and settings.razorpay_key_secret else "❌ Not Set",
        "blockchain": "✅ Configured" if settings.private_key else "❌ Not Set",
        "media": "✅ Configured" if media_configured(settings) else "❌ Not Set",
    }
    try:
        response["collections"] = db.list_collection_names()[:20]
        response["database"] = "✅ Connected & Working"
        response["connection_status"] = "Connected"
    except PyMongoError as e:
        logger.warning("Database check failed", error=str(e))
        response["database"] = f"⚠️  Connected but Error: {str(e)[:50]}"
    return response


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.port)
