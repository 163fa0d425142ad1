from __future__ import annotations

import logging
from typing import Any, Callable, Optional, TypeVar

import requests

from cpm.domain.errors import StoreError
from cpm.domain.models import PriceHistoryEntry, PriceRecord, User, display_name

log = logging.getLogger(__name__)

PRICES_TABLE = "coffee_prices"
HISTORY_TABLE = "coffee_price_history"
USERS_TABLE = "users"

_PRICE_SELECT = "*,creator:created_by(first_name,last_name)"
_HISTORY_SELECT = "*,user:changed_by(first_name,last_name)"

T = TypeVar("T")


def _joined_name(row: dict, key: str) -> str:
    joined = row.get(key) or {}
    return display_name(joined.get("first_name"), joined.get("last_name"))


def _user_from_row(row: dict) -> User:
    return User(
        id=int(row["id"]),
        username=str(row.get("username") or ""),
        role=str(row["role"]),
        first_name=str(row.get("first_name") or ""),
        last_name=str(row.get("last_name") or ""),
        active=int(bool(row.get("active", True))),
    )


def _price_from_row(row: dict) -> PriceRecord:
    return PriceRecord(
        id=int(row["price_id"]),
        coffee_type=str(row["coffee_type"]),
        price_per_kg=float(row["price_per_kg"]),
        currency=str(row["currency"]),
        is_active=bool(row["is_active"]),
        created_by=(int(row["created_by"]) if row.get("created_by") is not None else None),
        updated_at=str(row.get("updated_at") or ""),
        creator_name=_joined_name(row, "creator"),
        request_key=row.get("request_key"),
    )


def _history_from_row(row: dict) -> PriceHistoryEntry:
    return PriceHistoryEntry(
        id=int(row["history_id"]),
        price_id=int(row["price_id"]),
        coffee_type=str(row["coffee_type"]),
        old_price=float(row["old_price"]),
        new_price=float(row["new_price"]),
        changed_by=(int(row["changed_by"]) if row.get("changed_by") is not None else None),
        change_date=str(row.get("change_date") or ""),
        reason=str(row.get("reason") or ""),
        changer_name=_joined_name(row, "user"),
    )


def _map(mapper: Callable[[dict], T], row: dict, table: str) -> T:
    try:
        return mapper(row)
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        log.warning("store_row_malformed table=%s error=%r", table, e)
        raise StoreError(f"{table} returned a malformed row: {e!r}") from e


class RestRepository:
    """Price store backed by a PostgREST endpoint (`<base_url>/rest/v1/<table>`).

    Every method is a single HTTP round trip. There is no multi-request
    transaction, so writes are grouped by `StepwiseUnitOfWork`.
    """

    def __init__(self, base_url: str, api_key: str | None = None, session: requests.Session | None = None, timeout: float = 10):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.session = session or requests.Session()
        self.timeout = timeout

    def _headers(self, prefer: str | None = None) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["apikey"] = self.api_key
            headers["Authorization"] = f"Bearer {self.api_key}"
        if prefer:
            headers["Prefer"] = prefer
        return headers

    def _request(
        self,
        method: str,
        table: str,
        params: dict[str, str] | None = None,
        payload: Any = None,
        prefer: str | None = None,
    ) -> list[dict]:
        url = f"{self.base_url}/rest/v1/{table}"
        try:
            r = self.session.request(
                method,
                url,
                params=params,
                json=payload,
                headers=self._headers(prefer),
                timeout=self.timeout,
            )
            r.raise_for_status()
        except requests.RequestException as e:
            log.warning("store_request_failed method=%s table=%s error=%s", method, table, e)
            raise StoreError(f"{method} {table} failed: {e}") from e

        if not r.content:
            return []
        try:
            data = r.json()
        except ValueError as e:
            raise StoreError(f"{method} {table} returned invalid JSON.") from e
        return data if isinstance(data, list) else [data]

    def _first(self, rows: list[dict]) -> Optional[dict]:
        return rows[0] if rows else None

    # ---------- Users ----------
    def get_user(self, user_id: int) -> Optional[User]:
        rows = self._request(
            "GET",
            USERS_TABLE,
            params={
                "select": "id,username,role,first_name,last_name,active",
                "id": f"eq.{int(user_id)}",
                "active": "eq.true",
            },
        )
        row = self._first(rows)
        if not row:
            return None
        return _map(_user_from_row, row, USERS_TABLE)

    # ---------- Prices ----------
    def list_active_prices(self) -> list[PriceRecord]:
        rows = self._request(
            "GET",
            PRICES_TABLE,
            params={"select": _PRICE_SELECT, "is_active": "eq.true", "order": "coffee_type.asc,price_id.asc"},
        )
        return [_map(_price_from_row, r, PRICES_TABLE) for r in rows]

    def list_price_history(self) -> list[PriceHistoryEntry]:
        rows = self._request(
            "GET",
            HISTORY_TABLE,
            params={"select": _HISTORY_SELECT, "order": "change_date.desc,history_id.desc"},
        )
        return [_map(_history_from_row, r, HISTORY_TABLE) for r in rows]

    def _get_one_price(self, **filters: str) -> Optional[PriceRecord]:
        params = {"select": _PRICE_SELECT, "order": "price_id.desc", "limit": "1"}
        params.update(filters)
        row = self._first(self._request("GET", PRICES_TABLE, params=params))
        return _map(_price_from_row, row, PRICES_TABLE) if row else None

    def get_active_price(self, coffee_type: str) -> Optional[PriceRecord]:
        return self._get_one_price(coffee_type=f"eq.{coffee_type}", is_active="eq.true")

    def get_price(self, price_id: int) -> Optional[PriceRecord]:
        return self._get_one_price(price_id=f"eq.{int(price_id)}")

    def find_price_by_request_key(self, request_key: str) -> Optional[PriceRecord]:
        return self._get_one_price(request_key=f"eq.{request_key}")

    def find_history_for_price(self, price_id: int) -> Optional[PriceHistoryEntry]:
        rows = self._request(
            "GET",
            HISTORY_TABLE,
            params={"select": _HISTORY_SELECT, "price_id": f"eq.{int(price_id)}", "order": "history_id.desc", "limit": "1"},
        )
        row = self._first(rows)
        return _map(_history_from_row, row, HISTORY_TABLE) if row else None

    def insert_price(
        self,
        coffee_type: str,
        price_per_kg: float,
        currency: str,
        created_by: int,
        updated_at: str,
        request_key: Optional[str] = None,
    ) -> PriceRecord:
        record = {
            "coffee_type": coffee_type,
            "price_per_kg": float(price_per_kg),
            "currency": currency,
            "is_active": True,
            "created_by": int(created_by),
            "updated_at": updated_at,
        }
        if request_key:
            record["request_key"] = request_key
        rows = self._request(
            "POST",
            PRICES_TABLE,
            params={"select": _PRICE_SELECT},
            payload=[record],
            prefer="return=representation",
        )
        row = self._first(rows)
        if not row:
            raise StoreError("Insert into coffee_prices returned no row.")
        return _map(_price_from_row, row, PRICES_TABLE)

    def _set_active(self, price_id: int, active: bool) -> bool:
        rows = self._request(
            "PATCH",
            PRICES_TABLE,
            params={"price_id": f"eq.{int(price_id)}", "is_active": f"eq.{str(not active).lower()}"},
            payload={"is_active": active},
            prefer="return=representation",
        )
        return bool(rows)

    def deactivate_price(self, price_id: int) -> bool:
        return self._set_active(price_id, False)

    def reactivate_price(self, price_id: int) -> bool:
        return self._set_active(price_id, True)

    def delete_price(self, price_id: int) -> None:
        self._request("DELETE", PRICES_TABLE, params={"price_id": f"eq.{int(price_id)}"})

    def insert_history(
        self,
        price_id: int,
        coffee_type: str,
        old_price: float,
        new_price: float,
        changed_by: int,
        change_date: str,
        reason: str,
    ) -> PriceHistoryEntry:
        rows = self._request(
            "POST",
            HISTORY_TABLE,
            params={"select": _HISTORY_SELECT},
            payload=[{
                "price_id": int(price_id),
                "coffee_type": coffee_type,
                "old_price": float(old_price),
                "new_price": float(new_price),
                "changed_by": int(changed_by),
                "change_date": change_date,
                "reason": reason,
            }],
            prefer="return=representation",
        )
        row = self._first(rows)
        if not row:
            raise StoreError("Insert into coffee_price_history returned no row.")
        return _map(_history_from_row, row, HISTORY_TABLE)
