from __future__ import annotations

from typing import Optional, Protocol

from cpm.domain.models import PriceHistoryEntry, PriceRecord, User


class UserRepository(Protocol):
    def get_user(self, user_id: int) -> Optional[User]: ...


class PriceRepository(UserRepository, Protocol):
    """Row-level operations every price store offers.

    Each call is its own round trip; grouping them atomically is the job of a unit of work.
    """

    def list_active_prices(self) -> list[PriceRecord]: ...
    def list_price_history(self) -> list[PriceHistoryEntry]: ...
    def get_active_price(self, coffee_type: str) -> Optional[PriceRecord]: ...
    def find_price_by_request_key(self, request_key: str) -> Optional[PriceRecord]: ...
    def find_history_for_price(self, price_id: int) -> Optional[PriceHistoryEntry]: ...
    def get_price(self, price_id: int) -> Optional[PriceRecord]: ...

    def insert_price(
        self,
        coffee_type: str,
        price_per_kg: float,
        currency: str,
        created_by: int,
        updated_at: str,
        request_key: Optional[str] = None,
    ) -> PriceRecord: ...

    def deactivate_price(self, price_id: int) -> bool: ...
    def reactivate_price(self, price_id: int) -> bool: ...
    def delete_price(self, price_id: int) -> None: ...

    def insert_history(
        self,
        price_id: int,
        coffee_type: str,
        old_price: float,
        new_price: float,
        changed_by: int,
        change_date: str,
        reason: str,
    ) -> PriceHistoryEntry: ...
