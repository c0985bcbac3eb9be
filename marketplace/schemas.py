"""
Database Schemas for the marketplace

Each Pydantic model maps to a MongoDB collection (lowercased class name).
Cross-document references are stored as string ids.

Collections:
- user
- address
- shop
- category
- product
- review
- cart
- order
- notification
"""
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field

from . import config

PHONE_PATTERN = r"^\+?[1-9]\d{1,14}$"
PINCODE_PATTERN = r"^\d{6}$"
TIME_PATTERN = r"^([01]?[0-9]|2[0-3]):[0-5][0-9]$"

Role = Literal["customer", "shop_owner", "admin", "delivery_partner"]
BusinessType = Literal["restaurant", "shop", "firm", "grocery", "pharmacy", "electronics", "clothing", "other"]
PaymentMethod = Literal["cash", "card", "upi", "wallet", "bank_transfer"]
PaymentStatus = Literal["pending", "paid", "failed", "refunded", "partially_refunded"]
OrderStatus = Literal["pending", "confirmed", "preparing", "ready", "out_for_delivery", "delivered", "cancelled", "refunded"]
ProductStatus = Literal["draft", "active", "inactive", "out_of_stock"]
Weekday = Literal["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]


class Coordinates(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)


class User(BaseModel):
    """
    Users collection schema
    Collection name: "user"
    """
    name: str = Field(..., min_length=1, max_length=100, description="Full name")
    email: EmailStr = Field(..., description="Email address")
    phone: str = Field(..., pattern=PHONE_PATTERN)
    password_hash: str = Field(..., description="BCrypt password hash")
    role: Role = "customer"
    is_active: bool = True
    is_email_verified: bool = False
    is_phone_verified: bool = False
    email_verification_token: Optional[str] = None
    phone_verification_token: Optional[str] = None
    password_reset_token: Optional[str] = None
    password_reset_expires: Optional[datetime] = None
    login_attempts: int = 0
    lock_until: Optional[datetime] = None
    last_login: Optional[datetime] = None
    default_address_id: Optional[str] = None
    date_of_birth: Optional[str] = None
    gender: Optional[Literal["male", "female", "other"]] = None
    preferences: Dict[str, Any] = Field(default_factory=dict)


class Address(BaseModel):
    """
    Addresses collection schema
    Collection name: "address"
    """
    user_id: str
    type: Literal["home", "office", "other"] = "home"
    nickname: Optional[str] = Field(None, max_length=50)
    full_name: str = Field(..., min_length=1, max_length=100)
    phone: str = Field(..., pattern=PHONE_PATTERN)
    address_line1: str = Field(..., min_length=1, max_length=200)
    address_line2: Optional[str] = Field(None, max_length=200)
    landmark: Optional[str] = Field(None, max_length=100)
    city: str = Field(..., min_length=1, max_length=50)
    state: str = Field(..., min_length=1, max_length=50)
    country: str = "India"
    pincode: str = Field(..., pattern=PINCODE_PATTERN)
    coordinates: Optional[Coordinates] = None
    is_default: bool = False
    is_active: bool = True
    delivery_instructions: Optional[str] = Field(None, max_length=500)


class ContactInfo(BaseModel):
    phone: str = Field(..., pattern=PHONE_PATTERN)
    email: Optional[EmailStr] = None
    website: Optional[str] = Field(None, pattern=r"^https?://.+")


class ShopAddress(BaseModel):
    address_line1: str
    address_line2: Optional[str] = None
    landmark: Optional[str] = None
    city: str
    state: str
    country: str = "India"
    pincode: str = Field(..., pattern=PINCODE_PATTERN)
    coordinates: Optional[Coordinates] = None


class BusinessHours(BaseModel):
    day: Weekday
    is_open: bool = True
    open_time: Optional[str] = Field(None, pattern=TIME_PATTERN)
    close_time: Optional[str] = Field(None, pattern=TIME_PATTERN)


class DeliveryZone(BaseModel):
    type: Literal["pincode", "area", "radius"]
    value: str = Field(..., min_length=1, description="Pincode, area name, or radius in km")
    delivery_fee: Optional[float] = Field(None, ge=0)
    is_active: bool = True


class ShopSettings(BaseModel):
    is_open: bool = True
    accepts_orders: bool = True
    minimum_order_amount: float = Field(0, ge=0)
    delivery_fee: float = Field(0, ge=0)
    free_delivery_above: Optional[float] = Field(None, ge=0)
    service_radius: float = Field(5, ge=1, le=50)
    preparation_time: int = Field(30, ge=5)
    payment_methods: List[PaymentMethod] = Field(default_factory=lambda: ["cash"])
    auto_accept_orders: bool = False
    pause_orders_until: Optional[datetime] = None
    max_active_orders: Optional[int] = Field(None, ge=1)
    max_orders_per_hour: Optional[int] = Field(None, ge=1)


class ShopDocuments(BaseModel):
    business_license: str = "pending"
    tax_id: str = "pending"
    pan_card: Optional[str] = None


class ShopImages(BaseModel):
    logo: Optional[str] = None
    cover: Optional[str] = None
    gallery: List[str] = Field(default_factory=list, max_length=10)


class Verification(BaseModel):
    status: Literal["pending", "verified", "rejected"] = "pending"
    verified_at: Optional[datetime] = None
    verified_by: Optional[str] = None
    rejection_reason: Optional[str] = None


class ShopStats(BaseModel):
    total_orders: int = 0
    total_revenue: float = 0
    average_rating: float = 0
    total_reviews: int = 0
    total_products: int = 0


class Shop(BaseModel):
    """
    Shops collection schema
    Collection name: "shop"
    """
    owner_id: str
    business_name: str = Field(..., min_length=1, max_length=200)
    slug: str
    description: Optional[str] = Field(None, max_length=1000)
    business_type: BusinessType
    category_ids: List[str] = Field(default_factory=list)
    contact_info: ContactInfo
    address: ShopAddress
    documents: ShopDocuments = Field(default_factory=ShopDocuments)
    business_hours: List[BusinessHours] = Field(default_factory=list)
    settings: ShopSettings = Field(default_factory=ShopSettings)
    delivery_zones: List[DeliveryZone] = Field(default_factory=list)
    images: ShopImages = Field(default_factory=ShopImages)
    verification: Verification = Field(default_factory=Verification)
    is_active: bool = True
    is_featured: bool = False
    stats: ShopStats = Field(default_factory=ShopStats)
    social_media: Dict[str, str] = Field(default_factory=dict)


class Category(BaseModel):
    """
    Categories collection schema
    Collection name: "category"
    """
    name: str = Field(..., min_length=1, max_length=100)
    slug: str
    description: Optional[str] = Field(None, max_length=500)
    image: Optional[str] = None
    icon: Optional[str] = None
    parent_id: Optional[str] = None
    level: int = Field(0, ge=0, le=3)
    path: List[str] = Field(default_factory=list, description="Ancestor ids, root first")
    is_active: bool = True
    is_featured: bool = False
    sort_order: int = 0


class Variant(BaseModel):
    id: str
    name: str
    value: str
    price: float = Field(..., ge=0)
    compare_price: Optional[float] = Field(None, ge=0)
    sku: Optional[str] = None
    stock: int = Field(0, ge=0)
    is_active: bool = True


class Attribute(BaseModel):
    name: str
    value: Any


class ProductRating(BaseModel):
    average: float = Field(0, ge=0, le=5)
    count: int = 0
    distribution: Dict[str, int] = Field(default_factory=lambda: {str(i): 0 for i in range(1, 6)})


class ProductStats(BaseModel):
    views: int = 0
    orders: int = 0
    revenue: float = 0


class Product(BaseModel):
    """
    Products collection schema
    Collection name: "product"
    """
    name: str = Field(..., min_length=1, max_length=200)
    slug: str
    description: str = Field(..., min_length=1, max_length=2000)
    short_description: Optional[str] = Field(None, max_length=500)
    shop_id: str
    category_id: str
    subcategory_ids: List[str] = Field(default_factory=list)
    price: float = Field(..., ge=0)
    compare_price: Optional[float] = Field(None, ge=0)
    cost_price: Optional[float] = Field(None, ge=0)
    sku: Optional[str] = None
    stock: int = Field(0, ge=0)
    low_stock_threshold: int = Field(5, ge=0)
    track_quantity: bool = True
    has_variants: bool = False
    variants: List[Variant] = Field(default_factory=list)
    images: List[str] = Field(default_factory=list, max_length=10)
    weight: Optional[float] = Field(None, ge=0)
    status: ProductStatus = "active"
    is_active: bool = True
    is_featured: bool = False
    attributes: List[Attribute] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    rating: ProductRating = Field(default_factory=ProductRating)
    stats: ProductStats = Field(default_factory=ProductStats)


class Voter(BaseModel):
    user_id: str
    vote: Literal["helpful", "not_helpful"]
    voted_at: datetime


class Review(BaseModel):
    """
    Reviews collection schema
    Collection name: "review"
    """
    customer_id: str
    product_id: Optional[str] = None
    shop_id: Optional[str] = None
    order_id: Optional[str] = None
    rating: int = Field(..., ge=1, le=5)
    title: Optional[str] = Field(None, max_length=200)
    comment: str = Field(..., min_length=1, max_length=1000)
    images: List[str] = Field(default_factory=list, max_length=5)
    status: Literal["pending", "approved", "rejected"] = "approved"
    is_verified: bool = False
    helpful_votes: int = 0
    total_votes: int = 0
    voters: List[Voter] = Field(default_factory=list)
    shop_response: Optional[Dict[str, Any]] = None
    is_edited: bool = False


class CartItem(BaseModel):
    product_id: str
    variant_id: Optional[str] = None
    name: str
    price: float = Field(..., ge=0)
    quantity: int = Field(1, ge=1)
    shop_id: str
    image: Optional[str] = None
    is_available: bool = True
    available_stock: int = 0


def _cart_expiry() -> datetime:
    return datetime.now(timezone.utc) + timedelta(days=config.CART_TTL_DAYS)


class Cart(BaseModel):
    """
    Carts collection schema
    Collection name: "cart"
    """
    user_id: str
    items: List[CartItem] = Field(default_factory=list)
    subtotal: float = 0
    total_items: int = 0
    expires_at: datetime = Field(default_factory=_cart_expiry)
    last_activity: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class OrderItem(BaseModel):
    product_id: str
    variant_id: Optional[str] = None
    name: str
    price: float
    quantity: int = Field(..., ge=1)
    total: float


class StatusEntry(BaseModel):
    status: OrderStatus
    timestamp: datetime
    note: Optional[str] = None
    updated_by: Optional[str] = None


class DeliveryInfo(BaseModel):
    type: Literal["delivery", "pickup"] = "delivery"
    address: Optional[Dict[str, Any]] = None
    distance: Optional[float] = None
    estimated_time: Optional[int] = None
    instructions: Optional[str] = None


class PaymentInfo(BaseModel):
    method: PaymentMethod
    status: PaymentStatus = "pending"
    gateway: Optional[str] = None
    transaction_id: Optional[str] = None
    paid_at: Optional[datetime] = None
    refund_amount: float = 0
    refunded_at: Optional[datetime] = None


class Order(BaseModel):
    """
    Orders collection schema
    Collection name: "order"
    """
    order_number: str
    customer_id: str
    shop_id: str
    items: List[OrderItem]
    subtotal: float
    delivery_fee: float = 0
    tax: float = 0
    total: float
    status: OrderStatus = "pending"
    status_history: List[StatusEntry] = Field(default_factory=list)
    delivery: DeliveryInfo
    payment: PaymentInfo
    customer_notes: Optional[str] = None
    cancellation: Optional[Dict[str, Any]] = None
    rating: Optional[Dict[str, Any]] = None
    timestamps: Dict[str, datetime] = Field(default_factory=dict)


class Notification(BaseModel):
    """
    In-app notifications collection schema
    Collection name: "notification"
    """
    user_id: str
    subject: str
    message: str
    data: Dict[str, Any] = Field(default_factory=dict)
    is_read: bool = False
