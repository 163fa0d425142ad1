from __future__ import annotations

import logging
import math
import sqlite3
from typing import Callable, Optional

from cpm.config import DEFAULT_CURRENCY
from cpm.domain.errors import AppError, PriceReadError, ValidationError
from cpm.domain.models import COFFEE_TYPES, PriceChange, PriceHistoryEntry, PriceRecord, User
from cpm.logging_config import PRICES_LOGGER
from cpm.repositories.contracts import PriceRepository
from cpm.repositories.unit_of_work import RepositoryUnitOfWork, StepwiseUnitOfWork, UnitOfWork

log = logging.getLogger(PRICES_LOGGER)


def _default_uow_factory(repo) -> Callable[[], UnitOfWork]:
    if hasattr(repo, "apply_price_change"):
        return lambda: RepositoryUnitOfWork(repo)
    return lambda: StepwiseUnitOfWork(repo)


class PriceService:
    def __init__(
        self,
        repo: PriceRepository,
        auth,
        currency: str = DEFAULT_CURRENCY,
        uow_factory: Callable[[], UnitOfWork] | None = None,
    ):
        self.repo = repo
        self.auth = auth
        self.currency = currency
        self.uow_factory = uow_factory or _default_uow_factory(repo)

    # ---------- Reads ----------
    def list_active_prices(self) -> list[PriceRecord]:
        try:
            return self.repo.list_active_prices()
        except (AppError, sqlite3.Error) as e:
            raise PriceReadError(f"Could not load current prices: {e}") from e

    def list_price_history(self) -> list[PriceHistoryEntry]:
        try:
            return self.repo.list_price_history()
        except (AppError, sqlite3.Error) as e:
            raise PriceReadError(f"Could not load price history: {e}") from e

    def get_active_price(self, coffee_type: str) -> Optional[PriceRecord]:
        try:
            return self.repo.get_active_price(coffee_type)
        except (AppError, sqlite3.Error) as e:
            raise PriceReadError(f"Could not load {coffee_type} price: {e}") from e

    # ---------- Writes ----------
    def validate(self, coffee_type: str, price_per_kg, currency: str | None = None) -> tuple[str, float, str]:
        ctype = (coffee_type or "").strip().lower()
        if ctype not in COFFEE_TYPES:
            raise ValidationError(f"Unknown coffee type: '{coffee_type}'.")

        if isinstance(price_per_kg, str):
            price_per_kg = price_per_kg.strip()
            if price_per_kg == "":
                raise ValidationError("Price per KG is required.")
        if isinstance(price_per_kg, bool):
            raise ValidationError("Price per KG must be a number.")
        try:
            price = float(price_per_kg)
        except (TypeError, ValueError):
            raise ValidationError("Price per KG must be a number.")
        if not math.isfinite(price):
            raise ValidationError("Price per KG must be a number.")
        if price < 0:
            raise ValidationError("Price per KG must be >= 0.")

        cur = (currency or self.currency).strip().upper()
        if cur != self.currency:
            raise ValidationError(f"Currency must be {self.currency}.")

        return ctype, round(price, 2), cur

    def submit_new_price(
        self,
        actor: User,
        coffee_type: str,
        price_per_kg,
        currency: str | None = None,
        request_key: str | None = None,
    ) -> PriceChange:
        self.auth.require_action(actor, "manage_prices")
        ctype, price, cur = self.validate(coffee_type, price_per_kg, currency)

        with self.uow_factory() as uow:
            change = uow.apply_price_change(ctype, price, cur, actor.id, request_key=request_key)

        audit = {"coffee_type": ctype, "price_id": change.record.id, "actor_id": actor.id}
        if change.replayed:
            log.info("price_update_replayed coffee_type=%s key=%s", ctype, request_key, extra=audit)
        elif change.previous is None:
            log.info("price_created coffee_type=%s new=%.2f", ctype, price, extra=audit)
        else:
            log.info(
                "price_updated coffee_type=%s old=%.2f new=%.2f",
                ctype,
                change.previous.price_per_kg,
                price,
                extra={**audit, "old_price": change.previous.price_per_kg, "new_price": price},
            )
        return change
