"""
Relevés livreur / marchand: agrégation jour, semaine (début dimanche), mois.

- Livreur: lignes commission_entries (pending | completed ; failed exclu)
- Marchand: merchant_amount des commandes (pending_verification -> pending,
  cancelled / refunded exclus, autres statuts -> completed)
Les bornes sont calculées en UTC.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple

from epicerie.errors import ValidationError
from epicerie.utils.money import format_amount, quantize, to_decimal
from .repository import LedgerRepository

PENDING = "pending"
COMPLETED = "completed"

MERCHANT_EXCLUDED = {"cancelled", "refunded"}


@dataclass
class PeriodTotals:
    total: Decimal = Decimal("0")
    pending: Decimal = Decimal("0")
    completed: Decimal = Decimal("0")
    count: int = 0

    def add(self, amount: Decimal, state: str) -> None:
        self.total += amount
        self.count += 1
        if state == PENDING:
            self.pending += amount
        else:
            self.completed += amount

    def to_json(self) -> Dict[str, Any]:
        return {
            "total": format_amount(self.total),
            "pending": format_amount(self.pending),
            "completed": format_amount(self.completed),
            "count": self.count,
        }


def period_starts(now: datetime) -> Tuple[datetime, datetime, datetime]:
    """(début du jour, début de semaine au dimanche, début du mois)."""
    day = now.replace(hour=0, minute=0, second=0, microsecond=0)
    week = day - timedelta(days=(now.weekday() + 1) % 7)
    month = day.replace(day=1)
    return day, week, month

def _parse_ts(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        ts = value
    else:
        try:
            ts = datetime.fromisoformat(str(value or "").replace("Z", "+00:00"))
        except ValueError:
            return None
    return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)

def _amount(value: Any) -> Optional[Decimal]:
    try:
        return quantize(to_decimal(value if value is not None else 0))
    except ValidationError:
        return None

def summarize(entries: Iterable[Tuple[Any, str, Any]], now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    entries: (montant, état pending|completed, created_at)
    Retour: {today, week, month, pending, completed} (montants en chaînes à 2 décimales)
    """
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    day_start, week_start, month_start = period_starts(now)

    today, week, month, overall = PeriodTotals(), PeriodTotals(), PeriodTotals(), PeriodTotals()
    for raw_amount, state, created_at in entries:
        amount = _amount(raw_amount)
        if amount is None:
            continue
        overall.add(amount, state)
        ts = _parse_ts(created_at)
        if ts is None or ts > now:
            continue
        if ts >= day_start:
            today.add(amount, state)
        if ts >= week_start:
            week.add(amount, state)
        if ts >= month_start:
            month.add(amount, state)

    return {
        "today": today.to_json(),
        "week": week.to_json(),
        "month": month.to_json(),
        "pending": format_amount(overall.pending),
        "completed": format_amount(overall.completed),
    }


# module epicerie.ledger.service
def driver_summary(repository: LedgerRepository, driver_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    rows = repository.commissions_for_driver(driver_id)
    entries: List[Tuple[Any, str, Any]] = []
    for r in rows:
        status = str(r.get("status") or "").lower()
        if status not in (PENDING, COMPLETED):
            continue
        entries.append((r.get("amount"), status, r.get("created_at")))
    return {"driverId": driver_id, **summarize(entries, now)}

def merchant_summary(repository: LedgerRepository, merchant_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    rows = repository.orders_for_merchant(merchant_id)
    entries: List[Tuple[Any, str, Any]] = []
    for r in rows:
        status = str(r.get("status") or "").lower()
        if status in MERCHANT_EXCLUDED:
            continue
        state = PENDING if status == "pending_verification" else COMPLETED
        entries.append((r.get("merchant_amount"), state, r.get("created_at")))
    return {"merchantId": merchant_id, **summarize(entries, now)}
