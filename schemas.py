"""
Database Schemas

MongoDB collection schemas, one Pydantic model per collection. Route modules
build documents through these models before inserting them so that defaults
and types stay consistent.

Model name is converted to lowercase for the collection name:
- User -> "user" collection
- Song -> "song" collection
- DAOProposal -> "daoproposal" collection
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


# -----------------
# Users & artists
# -----------------

class ArtistRevenue(BaseModel):
    subscriptions: float = 0
    merch: float = 0
    events: float = 0
    ads: float = 0


class ArtistProfile(BaseModel):
    """Embedded in ``User.artist`` for users with the artist role."""
    bio: str = ""
    social_links: Dict[str, str] = Field(default_factory=dict)
    followers: List[str] = Field(default_factory=list, description="User ids following this artist")
    total_plays: int = 0
    total_likes: int = 0
    revenue: ArtistRevenue = Field(default_factory=ArtistRevenue)
    trending_score: float = 0
    featured: bool = False
    verified: bool = False


class Playlist(BaseModel):
    name: str
    songs: List[str] = Field(default_factory=list)
    created_at: Optional[datetime] = None


class User(BaseModel):
    """
    Users collection schema
    Collection name: "user"
    """
    name: str = Field(..., description="Display name")
    email: str = Field(..., description="Email address, unique")
    password_hash: str = Field(..., description="bcrypt hash")
    role: str = Field("fan", description="fan | artist | admin")
    plan: str = Field("FREE", description="FREE | PREMIUM | VIP")
    avatar_url: Optional[str] = Field(None, description="Avatar image URL")
    favorites: List[str] = Field(default_factory=list, description="Favorite song ids")
    following: List[str] = Field(default_factory=list, description="Followed artist user ids")
    playlists: List[Playlist] = Field(default_factory=list)
    settings: Dict[str, Any] = Field(default_factory=dict)
    artist: Optional[ArtistProfile] = Field(None, description="Present for artists only")
    wallet_address: Optional[str] = Field(None, description="EVM address for on-chain mints")
    banned: bool = False
    ban_until: Optional[datetime] = Field(None, description="None with banned=True means permanent")
    last_login: Optional[datetime] = None


# -----------------
# Content
# -----------------

class Song(BaseModel):
    artist_id: str = Field(..., description="Owner user id")
    title: str
    genre: Optional[str] = None
    file_url: str = Field(..., description="Audio file URL")
    artwork_url: Optional[str] = None
    duration: int = Field(0, ge=0, description="Seconds")
    visibility: str = Field("PUBLIC", description="PUBLIC | SUBSCRIBER_ONLY | PRIVATE")
    plays: int = 0
    likes: int = 0
    unique_listeners: List[str] = Field(default_factory=list)
    ad_settings: Optional[Dict[str, Any]] = None


class Event(BaseModel):
    artist_id: str
    title: str
    description: Optional[str] = None
    date: datetime
    location: str
    online_url: Optional[str] = None
    ticket_price: float = Field(0, ge=0)
    capacity: Optional[int] = None
    image_url: Optional[str] = None
    attendees: List[str] = Field(default_factory=list)


class Merch(BaseModel):
    artist_id: str
    name: str
    description: Optional[str] = None
    price: float = Field(..., ge=0, description="Price in INR")
    stock: int = Field(0, ge=0)
    category: Optional[str] = None
    images: List[str] = Field(default_factory=list)
    orders: List[str] = Field(default_factory=list, description="Order ids containing this item")


class Blog(BaseModel):
    artist_id: str
    title: str
    content: str
    visibility: str = Field("PUBLIC", description="PUBLIC | SUBSCRIBER_ONLY")
    images: List[str] = Field(default_factory=list)


class AnalyticsEvent(BaseModel):
    user_id: Optional[str] = None
    action: str = Field(..., description="play | like | view | search | ...")
    content_id: Optional[str] = None
    content_type: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


# -----------------
# Commerce
# -----------------

class OrderItem(BaseModel):
    merch_id: Optional[str] = None
    event_id: Optional[str] = None
    qty: int = Field(..., ge=1)
    unit_price: float = Field(..., ge=0)


class Order(BaseModel):
    user_id: str
    type: str = Field(..., description="MERCH | TICKET | MIXED")
    items: List[OrderItem]
    total_amount: float = Field(..., ge=0)
    currency: str = "INR"
    status: str = Field("PENDING", description="PENDING | PAID | SHIPPED | DELIVERED | RETURN_INITIATED | REFUNDED | CANCELLED")
    promo_code: Optional[str] = None
    razorpay_order_id: Optional[str] = None
    razorpay_payment_id: Optional[str] = None
    qr_ticket_url: Optional[str] = None


class Subscription(BaseModel):
    fan_id: str
    artist_id: str
    tier: str = Field("BRONZE", description="BRONZE | SILVER | GOLD | PLATINUM")
    amount: float = 0
    status: str = Field("ACTIVE", description="ACTIVE | CANCELLED | EXPIRED")
    start_date: datetime
    end_date: datetime


class PromoCode(BaseModel):
    code: str = Field(..., description="Upper-cased code")
    description: Optional[str] = None
    discount_type: str = Field(..., description="PERCENTAGE | FIXED | FREE_SHIPPING")
    discount_value: float = Field(..., ge=0)
    minimum_order_amount: float = Field(0, ge=0)
    maximum_discount: Optional[float] = None
    usage_limit: Optional[int] = None
    usage_count: int = 0
    valid_from: datetime
    valid_until: datetime
    is_active: bool = True


class OrderTracking(BaseModel):
    order_id: str
    status: str = Field(..., description="ORDER_PLACED | CONFIRMED | PROCESSING | SHIPPED | OUT_FOR_DELIVERY | DELIVERED | RETURNED | CANCELLED")
    location: Optional[str] = None
    description: Optional[str] = None
    updated_by: Optional[str] = None


class ReturnItem(BaseModel):
    item_id: str
    quantity: int = Field(..., ge=1)


class ReturnRequest(BaseModel):
    order_id: str
    user_id: str
    items: List[ReturnItem]
    reason: str
    refund_amount: float = 0
    refund_method: str = "ORIGINAL_PAYMENT"
    status: str = Field("PENDING", description="PENDING | APPROVED | REJECTED | REFUNDED")
    admin_notes: Optional[str] = None


# -----------------
# Web3
# -----------------

class NFT(BaseModel):
    token_id: str
    contract_address: Optional[str] = None
    owner_id: str
    creator_id: str
    metadata: Dict[str, Any]
    metadata_uri: Optional[str] = None
    content_type: str
    content_id: str
    royalty_percentage: float = Field(0, ge=0, le=100)
    platform_fee: float = 2.5
    price: float = 0
    currency: str = "matic"
    tags: List[str] = Field(default_factory=list)
    editions: int = 1
    sale_type: str = "fixed"
    fan_club_tier: str = ""
    allow_resale: bool = True
    is_listed: bool = False
    auction_end_time: Optional[datetime] = None
    frozen: bool = Field(False, description="Frozen NFTs cannot be listed, sold or bid on")
    frozen_reason: Optional[str] = None


class NFTTransaction(BaseModel):
    nft_id: str
    from_user_id: str
    to_user_id: str
    transaction_type: str = Field(..., description="purchase | transfer | bid")
    price: float = 0
    transaction_hash: Optional[str] = None
    flagged: bool = False
    risk_level: Optional[str] = None


class StreamingRoyalty(BaseModel):
    nft_id: str
    token_id: str
    user_id: str
    streams: int
    earnings: float = Field(..., description="Earnings in native currency")
    transaction_hash: Optional[str] = None


class GovernanceToken(BaseModel):
    user_id: str
    balance: int = 0
    total_earned: int = 0


class GovernanceTokenIssuance(BaseModel):
    recipient_id: str
    amount: int
    reason: Optional[str] = None
    issued_by: str


class DAOProposal(BaseModel):
    proposer_id: str
    title: str
    description: str
    proposal_type: str = Field("general", description="general | funding | feature")
    value: float = Field(0, description="Requested amount for funding proposals")
    start_time: datetime
    end_time: datetime
    for_votes: int = 0
    against_votes: int = 0
    abstain_votes: int = 0
    executed: bool = False
    canceled: bool = False
    frozen: bool = False
    freeze_reason: Optional[str] = None


class DAOVote(BaseModel):
    proposal_id: str
    voter_id: str
    support: str = Field(..., description="for | against | abstain")
    votes: int


class FanClubMembership(BaseModel):
    membership_id: str
    user_id: str
    artist_id: Optional[str] = None
    tier: str = "BRONZE"
    is_active: bool = True
    contract_address: Optional[str] = None
    joined_at: datetime


class LoyaltyProfile(BaseModel):
    user_id: str
    total_points: int = 0
    level: int = 1
    achievements_earned: int = 0


class Achievement(BaseModel):
    name: str
    description: Optional[str] = None
    points_reward: int = 0
    icon: Optional[str] = None


class UserAchievement(BaseModel):
    user_id: str
    achievement_id: str
    token_id: str
    earned_at: datetime


class Staking(BaseModel):
    user_id: str
    token_id: str
    staked_at: datetime
    rewards_earned: float = 0
    is_active: bool = True


# -----------------
# Ads
# -----------------

class AdCampaign(BaseModel):
    name: str
    advertiser: str
    budget: float = Field(..., ge=0)
    status: str = Field("DRAFT", description="DRAFT | ACTIVE | PAUSED | COMPLETED")
    start_at: Optional[datetime] = None
    end_at: Optional[datetime] = None
    created_by: Optional[str] = None
    is_deleted: bool = False


class AudioAd(BaseModel):
    campaign_id: Optional[str] = None
    title: str
    audio_url: str
    duration: int = Field(15, ge=1, description="Seconds")
    click_url: Optional[str] = None
    placements: List[str] = Field(default_factory=lambda: ["PRE_ROLL"])
    status: str = "ACTIVE"
    approved: bool = False
    start_at: Optional[datetime] = None
    end_at: Optional[datetime] = None
    budget: Optional[float] = None
    remaining_budget: Optional[float] = None
    cost_per_impression: float = 0
    is_deleted: bool = False


class BannerAd(BaseModel):
    campaign_id: Optional[str] = None
    title: str
    image_url: str
    click_url: Optional[str] = None
    size: str = Field("728x90", description="Pixel dimensions")
    placements: List[str] = Field(default_factory=lambda: ["HEADER"])
    status: str = "ACTIVE"
    approved: bool = False
    start_at: Optional[datetime] = None
    end_at: Optional[datetime] = None
    budget: Optional[float] = None
    remaining_budget: Optional[float] = None
    cost_per_impression: float = 0
    is_deleted: bool = False


class AdPlacement(BaseModel):
    """Maps an ad to a page slot, with targeting rules and a selection priority."""
    name: str
    type: str = Field(..., description="audio | banner")
    slot: str = Field(..., description="PRE_ROLL | MID_ROLL | HEADER | SIDEBAR | ...")
    ad_ids: List[str] = Field(default_factory=list)
    user_types: List[str] = Field(default_factory=list, description="Empty matches everyone")
    device_types: List[str] = Field(default_factory=list, description="Empty matches everyone")
    priority: int = 0
    is_active: bool = True


class AdImpression(BaseModel):
    ad_id: str
    ad_type: str
    user_id: Optional[str] = None
    song_id: Optional[str] = None
    placement: Optional[str] = None
    device_type: Optional[str] = None
    cost: float = 0


class AdClick(BaseModel):
    ad_id: str
    ad_type: str
    user_id: Optional[str] = None
    song_id: Optional[str] = None
    placement: Optional[str] = None
    device_type: Optional[str] = None


class AdRevenue(BaseModel):
    ad_id: str
    song_id: Optional[str] = None
    artist_id: str
    amount: float = Field(..., ge=0)
    artist_share: float
    platform_share: float


# -----------------
# Admin
# -----------------

class AdminLog(BaseModel):
    admin_id: str
    action: str
    details: Dict[str, Any] = Field(default_factory=dict)


class SystemSettings(BaseModel):
    """Stored in "systemsetting" under ``type: "system"``."""
    platform_name: str = "Music Platform"
    support_email: Optional[str] = None
    registrations_open: bool = Field(True, description="New accounts can sign up")
