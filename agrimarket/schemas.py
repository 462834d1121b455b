import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .models import BookingStatus, DamageReportStatus, ItemCategory, PaymentMethod


class PurposePrice(BaseModel):
    name: str
    price: int = Field(ge=0)


class BookingBase(BaseModel):
    item_category: ItemCategory
    work_purpose: str
    date: datetime.date
    start_time: Optional[datetime.time] = None
    end_time: Optional[datetime.time] = None
    estimated_duration: Optional[float] = Field(default=None, gt=0)
    location: str
    quantity: Optional[int] = Field(default=None, ge=1)
    operator_required: bool = False
    allow_multiple_suppliers: bool = False
    additional_instructions: Optional[str] = None
    estimated_price: Optional[int] = Field(default=None, ge=0)
    advance_amount: Optional[int] = Field(default=None, ge=0)
    advance_payment_id: Optional[str] = None


class BookingCreate(BookingBase):
    # farmer_id comes from the JWT token.
    # A direct request names the supplier and item up front.
    status: BookingStatus = BookingStatus.SEARCHING
    supplier_id: Optional[str] = None
    item_id: Optional[int] = None

    @model_validator(mode="after")
    def check_initial_status(self):
        if self.status not in (BookingStatus.SEARCHING, BookingStatus.PENDING_CONFIRMATION):
            raise ValueError("A new booking must be 'Searching' or 'Pending Confirmation'.")
        if self.status == BookingStatus.PENDING_CONFIRMATION and (self.supplier_id is None or self.item_id is None):
            raise ValueError("A direct request needs both supplier_id and item_id.")
        return self


class BookingRead(BookingBase):
    id: str
    farmer_id: str
    status: BookingStatus
    supplier_id: Optional[str] = None
    item_id: Optional[int] = None
    operator_id: Optional[str] = None
    operator_item_id: Optional[int] = None
    final_price: Optional[int] = None
    discount_amount: Optional[int] = None
    final_payment_id: Optional[str] = None
    payment_method: Optional[PaymentMethod] = None
    payment_details: Optional[dict] = None
    otp_verified: bool
    work_start_time: Optional[datetime.datetime] = None
    dispute_raised: bool
    dispute_resolved: bool
    damage_reported: bool
    is_rebroadcast: bool
    created_at: datetime.datetime

    model_config = ConfigDict(from_attributes=True)


class AcceptRequest(BaseModel):
    # supplier_id comes from the JWT token
    item_id: int
    operate_self: Optional[bool] = None
    quantity_to_provide: Optional[int] = Field(default=None, ge=1)


class AcceptanceRead(BaseModel):
    confirmed: BookingRead
    # Set only when a partial fulfillment left part of the request open
    remaining: Optional[BookingRead] = None


class AllotRequest(BaseModel):
    supplier_id: str
    item_id: int


class VerifyOtpRequest(BaseModel):
    otp: str = Field(min_length=6, max_length=6, pattern=r"^\d{6}$")


class PaymentRequest(BaseModel):
    method: PaymentMethod = PaymentMethod.CASH


class ItemUpsert(BaseModel):
    id: int
    name: str
    category: ItemCategory
    owner_id: str
    location: str = ""
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    purposes: list[PurposePrice] = []
    operator_charge: Optional[int] = None
    available: bool = True
    quantity_available: Optional[int] = Field(default=None, ge=0)


class DamageReportCreate(BaseModel):
    # reporter_id comes from the JWT token
    booking_id: str
    item_id: Optional[int] = None
    description: str


class DamageReportRead(BaseModel):
    id: int
    booking_id: str
    item_id: Optional[int] = None
    reporter_id: str
    description: str
    status: DamageReportStatus
    timestamp: datetime.datetime

    model_config = ConfigDict(from_attributes=True)
