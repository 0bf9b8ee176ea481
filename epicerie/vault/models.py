from typing import Any, Dict, Optional
from pydantic import Field, field_validator

from epicerie.utils.schemas import CamelModel


class StoredInstrument(CamelModel):
    id: str
    owner_id: str
    gateway_customer_ref: str = ""
    gateway_method_token: str
    brand: str = ""
    last4: str = ""
    expiry_month: Optional[int] = None
    expiry_year: Optional[int] = None
    is_default: bool = False
    is_active: bool = True
    created_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "StoredInstrument":
        """Ligne 'customer_payment_methods' -> instrument (colonnes stripe_* côté base)."""
        return cls(
            id=str(row.get("id")),
            owner_id=str(row.get("user_id") or ""),
            gateway_customer_ref=str(row.get("stripe_customer_id") or ""),
            gateway_method_token=str(row.get("stripe_payment_method_id") or ""),
            brand=str(row.get("brand") or ""),
            last4=str(row.get("last4") or ""),
            expiry_month=row.get("expiry_month"),
            expiry_year=row.get("expiry_year"),
            is_default=bool(row.get("is_default")),
            is_active=bool(row.get("is_active")),
            created_at=str(row["created_at"]) if row.get("created_at") else None,
        )


class SetupIntentRequest(CamelModel):
    owner_id: Optional[str] = None
    email: str = Field(min_length=3)
    name: str = ""

    @field_validator("email")
    @classmethod
    def _email(cls, v: str) -> str:
        v = v.strip()
        if "@" not in v:
            raise ValueError("Email invalide")
        return v


class ConfirmSetupRequest(CamelModel):
    owner_id: Optional[str] = None
    setup_ref: str = Field(min_length=1)
    method_token: str = Field(min_length=1)
    make_default: bool = False
