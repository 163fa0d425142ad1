from __future__ import annotations

import tkinter as tk
from tkinter import ttk, filedialog
from datetime import date
import logging

from cpm.domain.models import COFFEE_TYPES, coffee_type_label

log = logging.getLogger(__name__)


class PriceManagementView:
    def __init__(self, notebook: ttk.Notebook, app):
        self.app = app
        self.frame = ttk.Frame(notebook)
        notebook.add(self.frame, text="Price Management")

        self.type_var = tk.StringVar()
        self.currency_var = tk.StringVar()
        self._label_to_type = {label: value for value, label in COFFEE_TYPES.items()}

        self.page = None
        self._build()

    def _build(self):
        tab = self.frame

        form = ttk.LabelFrame(tab, text="Set New Price")
        form.pack(fill="x", padx=10, pady=10)
        for col in (1, 3, 5):
            form.columnconfigure(col, weight=1)

        ttk.Label(form, text="Coffee Type").grid(row=0, column=0, padx=10, pady=8, sticky="w")
        self.type_combo = ttk.Combobox(
            form, textvariable=self.type_var, values=list(COFFEE_TYPES.values()), state="readonly", width=22
        )
        self.type_combo.grid(row=0, column=1, padx=10, pady=8, sticky="ew")

        ttk.Label(form, text="Price per KG").grid(row=0, column=2, padx=10, pady=8, sticky="w")
        self.price_e = ttk.Entry(form, width=14)
        self.price_e.grid(row=0, column=3, padx=10, pady=8, sticky="ew")
        self.price_e.bind("<Return>", self._on_enter)

        ttk.Label(form, text="Currency").grid(row=0, column=4, padx=10, pady=8, sticky="w")
        ttk.Entry(form, textvariable=self.currency_var, width=8, state="readonly")\
            .grid(row=0, column=5, padx=10, pady=8, sticky="ew")

        btns = ttk.Frame(form)
        btns.grid(row=1, column=0, columnspan=6, sticky="e", padx=10, pady=(0, 8))
        ttk.Button(btns, text="Export to Excel", command=self.export).pack(side="left", padx=(0, 10))
        self.submit_btn = ttk.Button(btns, text="Update Price", style="Big.TButton", command=self.submit)
        self.submit_btn.pack(side="left")

        current = ttk.LabelFrame(tab, text="Current Prices")
        current.pack(fill="both", expand=True, padx=10, pady=(0, 10))
        self.prices_tree = self._tree(
            current,
            {"type": "Coffee Type", "price": "Price per KG", "currency": "Currency", "by": "Created By", "date": "Last Updated"},
            {"type": 180, "price": 120, "currency": 90, "by": 220, "date": 140},
            height=6,
        )

        history = ttk.LabelFrame(tab, text="Price History")
        history.pack(fill="both", expand=True, padx=10, pady=(0, 10))
        self.history_tree = self._tree(
            history,
            {"type": "Coffee Type", "old": "Old Price", "new": "New Price", "by": "Changed By", "date": "Change Date"},
            {"type": 180, "old": 120, "new": 120, "by": 220, "date": 140},
            height=10,
        )
        self.history_tree.tag_configure("up", foreground="#15803d")
        self.history_tree.tag_configure("down", foreground="#b91c1c")

    def _tree(self, parent, heads: dict[str, str], widths: dict[str, int], height: int) -> ttk.Treeview:
        wrap = ttk.Frame(parent)
        wrap.pack(fill="both", expand=True, padx=6, pady=6)

        cols = tuple(heads)
        tree = ttk.Treeview(wrap, columns=cols, show="headings", height=height)
        for c in cols:
            tree.heading(c, text=heads[c])
            tree.column(c, width=widths[c], anchor="w")

        vsb = ttk.Scrollbar(wrap, orient="vertical", command=tree.yview)
        tree.configure(yscrollcommand=vsb.set)
        tree.grid(row=0, column=0, sticky="nsew")
        vsb.grid(row=0, column=1, sticky="ns")
        wrap.columnconfigure(0, weight=1)
        wrap.rowconfigure(0, weight=1)
        return tree

    def _on_enter(self, _event=None):
        self.submit()
        return "break"

    # ---------- Page wiring ----------
    def _ensure_page(self):
        if self.page is None:
            self.page = self.app.container.build_price_page(self.app, self.app, on_change=self.render)
        return self.page

    def reset_page(self):
        self.page = None
        for tree in (self.prices_tree, self.history_tree):
            tree.delete(*tree.get_children())

    def refresh(self):
        self._ensure_page().load()

    def submit(self):
        page = self._ensure_page()
        page.update_form(
            coffee_type=self._label_to_type.get(self.type_var.get(), page.state.form.coffee_type),
            price_per_kg=self.price_e.get(),
        )
        page.submit()

    def export(self):
        path = filedialog.asksaveasfilename(
            title="Save prices as",
            defaultextension=".xlsx",
            filetypes=[("Excel files", "*.xlsx")],
            initialfile=f"coffee_prices_{date.today().isoformat()}.xlsx",
        )
        if not path:
            return
        self._ensure_page().export_history(path)

    # ---------- Rendering ----------
    def render(self, state):
        form = state.form
        self.type_var.set(coffee_type_label(form.coffee_type))
        self.currency_var.set(form.currency)
        if self.price_e.get() != form.price_per_kg:
            self.price_e.delete(0, tk.END)
            self.price_e.insert(0, form.price_per_kg)

        if state.loading:
            self.submit_btn.configure(text="Updating...", state="disabled")
        else:
            self.submit_btn.configure(text="Update Price", state="normal")

        self.prices_tree.delete(*self.prices_tree.get_children())
        for row in self.page.price_rows():
            self.prices_tree.insert("", "end", values=row)

        self.history_tree.delete(*self.history_tree.get_children())
        for entry, row in zip(state.price_history, self.page.history_rows()):
            tag = "up" if entry.new_price > entry.old_price else "down" if entry.new_price < entry.old_price else ""
            self.history_tree.insert("", "end", values=row, tags=(tag,) if tag else ())
