from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Callable, Optional

from cpm.application.ports import Notifier
from cpm.config import DEFAULT_CURRENCY
from cpm.domain.errors import AppError, PriceReadError, ValidationError
from cpm.domain.models import (
    PriceForm,
    PriceHistoryEntry,
    PriceRecord,
    User,
    coffee_type_label,
)

log = logging.getLogger(__name__)


def _new_request_key() -> str:
    return uuid.uuid4().hex


def format_date(ts: str) -> str:
    try:
        return datetime.fromisoformat(ts.replace("Z", "+00:00")).date().isoformat()
    except ValueError:
        return ts[:10]


@dataclass
class PageState:
    user: Optional[User] = None
    current_prices: list[PriceRecord] = field(default_factory=list)
    price_history: list[PriceHistoryEntry] = field(default_factory=list)
    loading: bool = True
    form: PriceForm = field(default_factory=PriceForm)
    # one key per filled-in form, so resubmitting after a failure cannot apply twice
    request_key: str = field(default_factory=_new_request_key)


class PriceManagementPage:
    """State and actions behind the admin price management screen.

    The page owns a single `PageState`; views read it and call the actions below.
    Every failure is logged and turned into one notice, so actions never raise.
    """

    def __init__(
        self,
        gate,
        price_service,
        notifier: Notifier,
        export_service=None,
        currency: str = DEFAULT_CURRENCY,
        on_change: Callable[[PageState], None] | None = None,
    ):
        self.gate = gate
        self.prices = price_service
        self.notifier = notifier
        self.exporter = export_service
        self.currency = currency
        self.on_change = on_change
        self.state = PageState(form=self._default_form())

    def _default_form(self) -> PriceForm:
        return PriceForm(currency=self.currency)

    def _changed(self) -> None:
        if self.on_change is not None:
            self.on_change(self.state)

    # ---------- Lifecycle ----------
    def load(self) -> bool:
        user = self.gate.admit()
        if user is None:
            self.state.user = None
            self.state.loading = False
            self._changed()
            return False

        self.state.user = user
        self.refresh_prices()
        self.refresh_history()
        return True

    def refresh_prices(self) -> None:
        try:
            self.state.current_prices = self.prices.list_active_prices()
        except PriceReadError as e:
            log.exception("Error fetching prices: %s", e)
            self.notifier.notify_error("Failed to fetch current prices")
        self._changed()

    def refresh_history(self) -> None:
        try:
            self.state.price_history = self.prices.list_price_history()
        except PriceReadError as e:
            log.exception("Error fetching price history: %s", e)
            self.notifier.notify_error("Failed to fetch price history")
        finally:
            self.state.loading = False
        self._changed()

    # ---------- Form ----------
    def update_form(self, **fields) -> None:
        # currency is fixed for the whole app
        fields.pop("currency", None)
        form = replace(self.state.form, **fields)
        if form != self.state.form:
            # an edited form is a new request
            self.state.request_key = _new_request_key()
        self.state.form = form
        self._changed()

    def reset_form(self) -> None:
        self.state.form = self._default_form()
        self.state.request_key = _new_request_key()
        self._changed()

    def submit(self) -> bool:
        if self.state.loading:
            return False
        user = self.state.user
        if user is None:
            self.notifier.notify_error("Admin access required")
            return False

        self.state.loading = True
        self._changed()
        try:
            form = self.state.form
            self.prices.submit_new_price(
                user,
                form.coffee_type,
                form.price_per_kg,
                form.currency,
                request_key=self.state.request_key,
            )
        except ValidationError as e:
            log.warning("price_form_invalid error=%s", e)
            self.notifier.notify_error(str(e))
            self.state.loading = False
            self._changed()
            return False
        except Exception as e:
            log.exception("Error updating price: %s", e)
            self.notifier.notify_error("Failed to update price")
            self.state.loading = False
            self._changed()
            return False

        self.notifier.notify_success("Price updated successfully")
        self.reset_form()
        self.refresh_prices()
        self.refresh_history()
        return True

    def export_history(self, path: str) -> bool:
        if self.exporter is None or self.state.user is None:
            self.notifier.notify_error("Export is not available")
            return False
        try:
            self.exporter.export_prices_excel(self.state.user, path)
        except (AppError, OSError) as e:
            log.exception("Error exporting prices: %s", e)
            self.notifier.notify_error("Failed to export prices")
            return False
        self.notifier.notify_success("Prices exported")
        return True

    # ---------- Rendering ----------
    def price_rows(self) -> list[tuple[str, str, str, str, str]]:
        return [
            (
                coffee_type_label(p.coffee_type),
                f"{p.price_per_kg:.2f}",
                p.currency,
                p.creator_name,
                format_date(p.updated_at),
            )
            for p in self.state.current_prices
        ]

    def history_rows(self) -> list[tuple[str, str, str, str, str]]:
        return [
            (
                coffee_type_label(h.coffee_type),
                f"{h.old_price:.2f}",
                f"{h.new_price:.2f}",
                h.changer_name,
                format_date(h.change_date),
            )
            for h in self.state.price_history
        ]
