"""Application configuration loaded from the environment (and .env)."""

from functools import lru_cache
from typing import List, Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    environment: str = Field(default="development")
    port: int = Field(default=8000)

    # MongoDB
    database_url: str = Field(default="mongodb://localhost:27017")
    database_name: str = Field(default="musicplatform")

    # Auth
    session_secret: str = Field(default="change-me")
    jwt_algorithm: str = Field(default="HS256")
    jwt_expiry_hours: int = Field(default=24)
    reset_token_ttl_minutes: int = Field(default=15)

    cors_origins: List[str] = Field(default=["*"])

    # Fixed-window rate limiting
    rate_limit_enabled: bool = Field(default=True)
    rate_limit_window_seconds: int = Field(default=15 * 60)
    rate_limit_api: int = Field(default=100)
    rate_limit_auth: int = Field(default=10)

    # Razorpay
    razorpay_key_id: Optional[str] = Field(default=None)
    razorpay_key_secret: Optional[str] = Field(default=None)

    # Blockchain
    network: Literal["local", "amoy"] = Field(default="local")
    rpc_url: str = Field(default="http://127.0.0.1:8545")
    private_key: Optional[str] = Field(default=None)
    platform_wallet: Optional[str] = Field(default=None)
    nft_contract_address: Optional[str] = Field(default=None)
    marketplace_contract_address: Optional[str] = Field(default=None)
    fan_club_contract_address: Optional[str] = Field(default=None)
    royalty_contract_address: Optional[str] = Field(default=None)
    ipfs_api_url: str = Field(default="http://127.0.0.1:5001")

    # Cloudinary media uploads
    cloudinary_cloud_name: Optional[str] = Field(default=None)
    cloudinary_api_key: Optional[str] = Field(default=None)
    cloudinary_api_secret: Optional[str] = Field(default=None)
    cloudinary_folder: str = Field(default="ruc")
    max_image_upload_mb: int = Field(default=5)
    max_audio_upload_mb: int = Field(default=50)

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    log_format: Literal["json", "text"] = Field(default="json")

    @property
    def is_production(self) -> bool:
        return self.environment == "production"


@lru_cache
def get_settings() -> Settings:
    return Settings()
