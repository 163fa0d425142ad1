from __future__ import annotations
from dataclasses import dataclass
from typing import Optional


COFFEE_TYPES: dict[str, str] = {
    "raw": "Raw Coffee",
    "dried": "Dried Coffee",
    "premium": "Premium Grade",
    "fine": "Fine Grade",
    "commercial": "Commercial Grade",
}

ADMIN_ROLE = "admin"

PRICE_UPDATE_REASON = "Price update"


def coffee_type_label(coffee_type: str) -> str:
    return COFFEE_TYPES.get(coffee_type, coffee_type)


def display_name(first_name: Optional[str], last_name: Optional[str]) -> str:
    parts = [p.strip() for p in (first_name, last_name) if p and p.strip()]
    return " ".join(parts) if parts else "Unknown"


@dataclass(frozen=True)
class User:
    id: int
    username: str
    role: str
    first_name: str = ""
    last_name: str = ""
    active: int = 1

    @property
    def display_name(self) -> str:
        return display_name(self.first_name, self.last_name)

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE


@dataclass(frozen=True)
class PriceRecord:
    id: int
    coffee_type: str
    price_per_kg: float
    currency: str
    is_active: bool
    created_by: Optional[int]
    updated_at: str
    creator_name: str = "Unknown"
    request_key: Optional[str] = None

    def matches(self, coffee_type: str, price_per_kg: float) -> bool:
        return self.coffee_type == coffee_type and round(self.price_per_kg, 2) == round(float(price_per_kg), 2)


@dataclass(frozen=True)
class PriceHistoryEntry:
    id: int
    price_id: int
    coffee_type: str
    old_price: float
    new_price: float
    changed_by: Optional[int]
    change_date: str
    reason: str
    changer_name: str = "Unknown"


@dataclass(frozen=True)
class PriceChange:
    """Outcome of one price update.

    `previous` and `history` are None when the coffee type had no active price.
    `replayed` is set when an idempotency key matched an earlier submission.
    """

    record: PriceRecord
    previous: Optional[PriceRecord] = None
    history: Optional[PriceHistoryEntry] = None
    replayed: bool = False


@dataclass(frozen=True)
class PriceForm:
    coffee_type: str = "raw"
    price_per_kg: str = ""
    currency: str = "PHP"
