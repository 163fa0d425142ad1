from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Callable, Optional, Protocol

from cpm.domain.errors import AppError, PriceConflictError, PriceWriteError
from cpm.domain.models import PRICE_UPDATE_REASON, PriceChange, PriceRecord
from cpm.repositories.contracts import PriceRepository

log = logging.getLogger(__name__)


def _now_iso(clock: Callable[[], datetime]) -> str:
    return clock().replace(microsecond=0).isoformat(sep=" ")


class UnitOfWork(Protocol):
    def __enter__(self) -> "UnitOfWork": ...
    def __exit__(self, exc_type, exc, tb) -> None: ...
    def apply_price_change(
        self,
        coffee_type: str,
        price_per_kg: float,
        currency: str,
        actor_user_id: int,
        request_key: Optional[str] = None,
    ) -> PriceChange: ...


@dataclass
class RepositoryUnitOfWork:
    """Unit of Work for stores that can wrap the whole price change in one transaction.

    The SQLite repository runs insert, deactivate and history append inside a single
    database transaction, so a failure leaves no partial state behind.
    """

    repo: object
    clock: Callable[[], datetime] = datetime.now

    def __enter__(self) -> "RepositoryUnitOfWork":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        return None

    def apply_price_change(
        self,
        coffee_type: str,
        price_per_kg: float,
        currency: str,
        actor_user_id: int,
        request_key: Optional[str] = None,
    ) -> PriceChange:
        try:
            return self.repo.apply_price_change(
                coffee_type=coffee_type,
                price_per_kg=price_per_kg,
                currency=currency,
                actor_user_id=actor_user_id,
                datetime_iso=_now_iso(self.clock),
                reason=PRICE_UPDATE_REASON,
                request_key=request_key,
            )
        except PriceWriteError:
            raise
        except sqlite3.Error as e:
            raise PriceWriteError(f"Price change rolled back: {e}", step="transaction") from e


def _replay_conflict(existing: PriceRecord) -> PriceConflictError:
    return PriceConflictError(
        f"Request key was already used for {existing.coffee_type} at {existing.price_per_kg:.2f}.",
        step="lookup",
    )


@dataclass
class StepwiseUnitOfWork:
    """Saga over single-row store calls: insert new, deactivate old, append history.

    With `compensate` on, a failure after the insert undoes the steps already applied.
    With it off, whatever committed before the failure stays in the store; a later
    replay of the same request key finishes the missing deactivate and history steps.
    """

    repo: PriceRepository
    compensate: bool = True
    clock: Callable[[], datetime] = datetime.now
    _undo: list[tuple[str, Callable[[], object]]] = field(default_factory=list, init=False, repr=False)

    def __enter__(self) -> "StepwiseUnitOfWork":
        self._undo = []
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is not None and self.compensate:
            self._rollback()
        self._undo = []
        return None

    def _rollback(self) -> None:
        for name, undo in reversed(self._undo):
            try:
                undo()
                log.warning("price_change_compensated step=%s", name)
            except Exception:
                log.exception("price_change_compensation_failed step=%s", name)

    def _step(self, name: str, fn: Callable[[], object]):
        try:
            return fn()
        except PriceWriteError:
            raise
        except (AppError, sqlite3.Error, OSError) as e:
            raise PriceWriteError(f"Price change failed at step '{name}': {e}", step=name) from e

    def _active_of_type(self, coffee_type: str) -> list[PriceRecord]:
        """Active records of one type, newest first."""
        rows = [p for p in self.repo.list_active_prices() if p.coffee_type == coffee_type]
        return sorted(rows, key=lambda p: p.id, reverse=True)

    def _track_orphan(self, request_key: str) -> None:
        # a failed insert call may still have landed in the store
        try:
            orphan = self.repo.find_price_by_request_key(request_key)
        except (AppError, sqlite3.Error, OSError) as e:
            log.warning("price_insert_unverified key=%s error=%s", request_key, e)
            return
        if orphan is not None:
            self._undo.append(("insert", lambda: self.repo.delete_price(orphan.id)))

    def _insert(self, coffee_type, price_per_kg, currency, actor_user_id, now_iso, request_key) -> PriceRecord:
        try:
            record = self._step(
                "insert",
                lambda: self.repo.insert_price(
                    coffee_type, price_per_kg, currency, actor_user_id, now_iso, request_key=request_key
                ),
            )
        except PriceWriteError:
            if request_key:
                self._track_orphan(request_key)
            raise
        self._undo.append(("insert", lambda: self.repo.delete_price(record.id)))
        return record

    def _retire(
        self,
        record: PriceRecord,
        previous: PriceRecord,
        strays: list[PriceRecord],
        actor_user_id: int,
        now_iso: str,
    ) -> PriceChange:
        retired = self._step("deactivate", lambda: self.repo.deactivate_price(previous.id))
        if not retired:
            raise PriceConflictError(
                f"Active {record.coffee_type} price {previous.id} was retired by another session.",
                step="deactivate",
            )
        self._undo.append(("deactivate", lambda: self.repo.reactivate_price(previous.id)))

        # leftovers of an earlier partial update
        for stray in strays:
            if self._step("deactivate", lambda: self.repo.deactivate_price(stray.id)):
                self._undo.append(("deactivate", lambda s=stray: self.repo.reactivate_price(s.id)))

        history = self._step(
            "history",
            lambda: self.repo.insert_history(
                record.id,
                record.coffee_type,
                previous.price_per_kg,
                record.price_per_kg,
                actor_user_id,
                now_iso,
                PRICE_UPDATE_REASON,
            ),
        )
        return PriceChange(record=record, previous=previous, history=history)

    def _replay(self, existing: PriceRecord, coffee_type: str, price_per_kg: float, actor_user_id: int) -> PriceChange:
        if not existing.matches(coffee_type, price_per_kg):
            raise _replay_conflict(existing)

        history = self._step("lookup", lambda: self.repo.find_history_for_price(existing.id))
        if history is None and existing.is_active:
            older = [p for p in self._step("read", lambda: self._active_of_type(coffee_type)) if p.id < existing.id]
            if older:
                log.warning("price_change_resumed price_id=%s", existing.id)
                change = self._retire(existing, older[0], older[1:], actor_user_id, _now_iso(self.clock))
                return replace(change, replayed=True)
        return PriceChange(record=existing, history=history, replayed=True)

    def apply_price_change(
        self,
        coffee_type: str,
        price_per_kg: float,
        currency: str,
        actor_user_id: int,
        request_key: Optional[str] = None,
    ) -> PriceChange:
        if request_key:
            existing = self._step("lookup", lambda: self.repo.find_price_by_request_key(request_key))
            if existing:
                return self._replay(existing, coffee_type, price_per_kg, actor_user_id)

        now_iso = _now_iso(self.clock)
        actives = self._step("read", lambda: self._active_of_type(coffee_type))

        record = self._insert(coffee_type, price_per_kg, currency, actor_user_id, now_iso, request_key)
        if not actives:
            return PriceChange(record=record)
        return self._retire(record, actives[0], actives[1:], actor_user_id, now_iso)
