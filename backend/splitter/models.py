from datetime import datetime, timezone
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


Step = Literal["setup", "input", "assign", "summary"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CamelModel(BaseModel):
    """Immutable model serialized with camelCase keys for the web client. Amounts must be finite."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        allow_inf_nan=False,
    )


class Person(CamelModel):
    """Someone taking part in the split."""
    id: str
    name: str
    color: Optional[str] = None


class MenuItem(CamelModel):
    """A line on a receipt. A missing original price means it is still pending."""
    id: str
    name: str
    original_price: Optional[float] = Field(default=None, ge=0)
    final_price: float = 0.0
    assigned_to: list[str] = []
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Receipt(CamelModel):
    """An itemized receipt with user-supplied tax and tip."""
    id: str
    name: str
    items: list[MenuItem] = []
    subtotal: float = 0.0
    tax: float = 0.0
    tip: float = 0.0
    total: float = 0.0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class PersonalBillItem(CamelModel):
    """One person's portion of a single item."""
    item_id: str
    item_name: str
    receipt_id: str
    receipt_name: str
    share: int
    original_share: float
    final_share: float


class PersonalBill(CamelModel):
    """What one person owes across the receipts it was computed over."""
    person_id: str
    person_name: str
    items: list[PersonalBillItem] = []
    total_original: float = 0.0
    total_final: float = 0.0


class BillSummary(CamelModel):
    """Aggregate over every receipt and person in a session."""
    receipts: list[Receipt]
    people: list[Person]
    personal_bills: list[PersonalBill]
    total_subtotal: float
    total_tax: float
    total_tip: float
    grand_total: float
    created_at: datetime = Field(default_factory=utcnow)


class SessionSnapshot(CamelModel):
    """The persisted part of a session. Unknown (transient UI) fields are dropped."""
    people: list[Person] = []
    receipts: list[Receipt] = []
    current_step: Step = "setup"


class StoredSession(CamelModel):
    """A snapshot as kept in storage, with its bookkeeping timestamps."""
    uuid: str
    data: SessionSnapshot
    created_at: datetime
    updated_at: datetime


class RecognizedItem(CamelModel):
    """A parsed line item from a receipt image."""
    name: str = Field(min_length=1)
    price: Optional[float] = Field(default=None, ge=0)
    description: Optional[str] = None


class RecognizedReceipt(CamelModel):
    """Structured result handed over by the receipt recognizer."""
    business_name: Optional[str] = None
    items: list[RecognizedItem] = []
    subtotal: Optional[float] = None
    tax: Optional[float] = Field(default=None, ge=0)
    tip: Optional[float] = Field(default=None, ge=0)
    total: Optional[float] = None
    date: Optional[str] = None
    confidence: float = Field(default=0.0, ge=0, le=1)


class SessionWriteRequest(CamelModel):
    """Request body for overwriting a session snapshot."""
    data: SessionSnapshot


class SessionResponse(CamelModel):
    uuid: str
    data: SessionSnapshot
    success: bool = True


class SessionReadResponse(CamelModel):
    uuid: str
    data: SessionSnapshot
    created_at: datetime
    updated_at: datetime
    success: bool = True


class SessionDeleteResponse(CamelModel):
    uuid: str
    success: bool = True


class RecognizeRequest(BaseModel):
    """Request body for receipt recognition with a base64 image."""
    image_base64: str
    media_type: str = "image/jpeg"


class ExchangeRateResponse(BaseModel):
    """Response for exchange rate queries."""
    base: str
    target: str
    rate: float
    source: str
    cached: bool
    amount: Optional[float] = None
    converted: Optional[float] = None
