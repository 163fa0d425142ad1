from __future__ import annotations

import logging
from datetime import datetime

from openpyxl import Workbook
from openpyxl.styles import Font
from openpyxl.utils import get_column_letter
from openpyxl.worksheet.table import Table, TableStyleInfo

from cpm.domain.models import User, coffee_type_label

log = logging.getLogger(__name__)


class ExportService:
    def __init__(self, price_service, auth):
        self.prices = price_service
        self.auth = auth

    def export_prices_excel(self, actor: User, path: str) -> None:
        """Write current prices and the full change history to an .xlsx workbook."""
        self.auth.require_action(actor, "export_prices")

        current = self.prices.list_active_prices()
        history = self.prices.list_price_history()

        wb = Workbook()

        def money(cell):
            cell.number_format = "#,##0.00"

        def bold_row(ws, r):
            for c in ws[r]:
                c.font = Font(bold=True)

        def set_widths(ws, widths: dict[str, int]):
            for col, w in widths.items():
                ws.column_dimensions[col].width = w

        def add_table(ws, name: str, end_row: int, end_col: int):
            ref = f"A1:{get_column_letter(end_col)}{end_row}"
            tab = Table(displayName=name, ref=ref)
            tab.tableStyleInfo = TableStyleInfo(
                name="TableStyleMedium9",
                showRowStripes=True,
                showColumnStripes=False,
            )
            ws.add_table(tab)

        # -------- 1) Current prices --------
        ws = wb.active
        ws.title = "Current Prices"
        ws.append(["Coffee Type", "Price per KG", "Currency", "Created By", "Last Updated"])
        bold_row(ws, 1)
        for p in current:
            ws.append([coffee_type_label(p.coffee_type), float(p.price_per_kg), p.currency, p.creator_name, p.updated_at])
            money(ws[f"B{ws.max_row}"])
        ws.freeze_panes = "A2"
        set_widths(ws, {"A": 20, "B": 14, "C": 10, "D": 26, "E": 22})
        if ws.max_row >= 2:
            add_table(ws, "CurrentPrices", ws.max_row, 5)

        # -------- 2) History --------
        ws2 = wb.create_sheet("Price History")
        ws2.append(["Coffee Type", "Old Price", "New Price", "Changed By", "Change Date", "Reason"])
        bold_row(ws2, 1)
        for h in history:
            ws2.append([
                coffee_type_label(h.coffee_type),
                float(h.old_price),
                float(h.new_price),
                h.changer_name,
                h.change_date,
                h.reason,
            ])
            money(ws2[f"B{ws2.max_row}"])
            money(ws2[f"C{ws2.max_row}"])
        ws2.freeze_panes = "A2"
        set_widths(ws2, {"A": 20, "B": 14, "C": 14, "D": 26, "E": 22, "F": 18})
        if ws2.max_row >= 2:
            add_table(ws2, "PriceHistory", ws2.max_row, 6)

        ws3 = wb.create_sheet("Info")
        ws3["A1"] = "Exported by"
        ws3["B1"] = actor.display_name
        ws3["A2"] = "Exported at"
        ws3["B2"] = datetime.now().replace(microsecond=0).isoformat(sep=" ")

        wb.save(path)
        log.info("prices_exported path=%s rows=%s actor=%s", path, len(history), actor.id)
