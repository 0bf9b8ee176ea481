from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional

from pydantic import Field, field_validator

from epicerie.errors import ValidationError
from epicerie.utils.money import quantize, to_decimal
from epicerie.utils.schemas import CamelModel

STATUS_CONFIRMED = "confirmed"
STATUS_PENDING_VERIFICATION = "pending_verification"


def _money(v: Any) -> Decimal:
    # Les erreurs pydantic doivent être des ValueError pour produire un 422 standard
    try:
        return quantize(to_decimal(v))
    except ValidationError as e:
        raise ValueError(e.message)


class OrderItem(CamelModel):
    product_id: str = Field(min_length=1)
    name: str = ""
    quantity: int = Field(gt=0)
    unit_price: Decimal

    @field_validator("unit_price", mode="before")
    @classmethod
    def _unit_price(cls, v):
        return _money(v)


class OrderDraft(CamelModel):
    customer_id: str = Field(min_length=1)
    merchant_id: str = Field(min_length=1)
    driver_id: Optional[str] = None
    items: List[OrderItem] = Field(min_length=1)
    subtotal: Decimal
    delivery_fee: Decimal = Decimal("0.00")
    total_amount: Decimal

    @field_validator("subtotal", "delivery_fee", "total_amount", mode="before")
    @classmethod
    def _amounts(cls, v):
        return _money(v)

    @field_validator("driver_id", mode="before")
    @classmethod
    def _blank_driver(cls, v):
        return (str(v).strip() or None) if v is not None else None


class Breakdown(CamelModel):
    merchant_amount: Decimal
    driver_amount: Decimal
    platform_amount: Decimal

    @field_validator("merchant_amount", "driver_amount", "platform_amount", mode="before")
    @classmethod
    def _amounts(cls, v):
        return _money(v)

    def total(self) -> Decimal:
        return quantize(self.merchant_amount + self.driver_amount + self.platform_amount)


class ProofFileIn(CamelModel):
    name: str
    size: int = Field(ge=0)
    mime_type: str
    storage_ref: Optional[str] = None


class ProofIn(CamelModel):
    reference: Optional[str] = None
    files: List[ProofFileIn] = Field(default_factory=list)
    amount: Optional[Decimal] = None
    payee_identifiers: Dict[str, str] = Field(default_factory=dict)
    uploaded_at: Optional[str] = None


class FinalizeOrderRequest(CamelModel):
    payment_reference: str = Field(min_length=1)
    method: Literal["card", "interac"]
    breakdown: Breakdown
    order_draft: OrderDraft
    proof: Optional[ProofIn] = None

    @field_validator("payment_reference", mode="before")
    @classmethod
    def _strip_ref(cls, v):
        return str(v or "").strip()


class Order(CamelModel):
    id: str
    order_number: str
    customer_id: str
    merchant_id: str
    driver_id: Optional[str] = None
    items: List[Dict[str, Any]] = Field(default_factory=list)
    subtotal: Decimal
    delivery_fee: Decimal
    total_amount: Decimal
    payment_method: str
    payment_reference: str
    payment_data: Dict[str, Any] = Field(default_factory=dict)
    status: str
    commission_split: Breakdown
    created_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Order":
        """Construit l'Order depuis une ligne 'orders' (colonnes snake_case, montants numeric)."""
        return cls(
            id=str(row.get("id")),
            order_number=str(row.get("order_number") or ""),
            customer_id=str(row.get("customer_id") or ""),
            merchant_id=str(row.get("merchant_id") or ""),
            driver_id=row.get("driver_id"),
            items=row.get("items") or [],
            subtotal=row.get("subtotal") or 0,
            delivery_fee=row.get("delivery_fee") or 0,
            total_amount=row.get("total_amount") or 0,
            payment_method=str(row.get("payment_method") or ""),
            payment_reference=str(row.get("payment_reference") or ""),
            payment_data=row.get("payment_data") or {},
            status=str(row.get("status") or ""),
            commission_split=Breakdown(
                merchant_amount=row.get("merchant_amount") or 0,
                driver_amount=row.get("driver_amount") or 0,
                platform_amount=row.get("platform_amount") or 0,
            ),
            created_at=str(row["created_at"]) if row.get("created_at") else None,
        )

    @field_validator("subtotal", "delivery_fee", "total_amount", mode="before")
    @classmethod
    def _amounts(cls, v):
        return _money(v)


class FinalizeResult(CamelModel):
    order: Order
    created: bool
