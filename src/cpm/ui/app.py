from __future__ import annotations

import tkinter as tk
from tkinter import ttk, messagebox
import logging
from pathlib import Path

from cpm.config import DEFAULT_ROUTE, LOGIN_ROUTE, PRICES_ROUTE
from cpm.ui.views.dashboard_view import DashboardView
from cpm.ui.views.login_view import LoginView
from cpm.ui.views.price_management_view import PriceManagementView

log = logging.getLogger(__name__)


class App(tk.Tk):
    """Main window. Also serves as notification sink and navigation controller for the pages."""

    def __init__(self, container, logs_dir: str):
        super().__init__()
        self.title("Coffee Price Manager")
        self.geometry("1180x720")
        self.minsize(980, 600)

        self.container = container
        self.auth = container.auth
        self.identity = container.identity
        self.logs_dir = logs_dir

        self.status_var = tk.StringVar(value="")
        self.user_var = tk.StringVar(value="Not signed in")
        self._toast_after_id = None

        self._build_styles()
        self._build_topbar()

        main = ttk.Frame(self)
        main.pack(fill="both", expand=True, padx=12, pady=(0, 8))

        self.sidebar = ttk.Frame(main)
        self.sidebar.pack(side="left", fill="y", padx=(0, 10))

        self.content = ttk.Frame(main)
        self.content.pack(side="right", fill="both", expand=True)

        self.nb = ttk.Notebook(self.content, style="Side.TNotebook")
        self.nb.pack(fill="both", expand=True)

        # Views (tabs hidden)
        self.login_view = LoginView(self.nb, self)
        self.dashboard_view = DashboardView(self.nb, self)
        self.prices_view = PriceManagementView(self.nb, self)

        self._routes = {
            LOGIN_ROUTE: self.login_view,
            DEFAULT_ROUTE: self.dashboard_view,
            PRICES_ROUTE: self.prices_view,
        }

        self._build_sidebar()
        self._build_status_bar()

        start = DEFAULT_ROUTE if self.identity.get_current_principal() else LOGIN_ROUTE
        self.redirect(start)

    def _build_styles(self):
        style = ttk.Style(self)
        style.layout("Side.TNotebook.Tab", [])
        style.configure("Side.TNotebook", tabmargins=0)

        try:
            style.configure("Big.TButton", padding=(14, 10))
            style.configure("Title.TLabel", font=("Segoe UI", 14, "bold"))
            style.configure("Section.TLabel", font=("Segoe UI", 11, "bold"))
        except tk.TclError as e:
            log.exception("UI style setup failed: %s", e)

    def _build_topbar(self):
        top = ttk.Frame(self)
        top.pack(fill="x", padx=12, pady=10)
        ttk.Label(top, text="☕ Coffee Price Manager", style="Title.TLabel").pack(side="left")
        ttk.Label(top, textvariable=self.user_var).pack(side="right")

    def _build_sidebar(self):
        box = ttk.LabelFrame(self.sidebar, text="Navigation")
        box.pack(fill="x", pady=(0, 10))

        ttk.Button(
            box, text="🏠 Dashboard", style="Big.TButton",
            command=lambda: self.redirect(DEFAULT_ROUTE)
        ).pack(fill="x", padx=10, pady=(10, 6))

        ttk.Button(
            box, text="💲 Price Management", style="Big.TButton",
            command=lambda: self.redirect(PRICES_ROUTE)
        ).pack(fill="x", padx=10, pady=6)

        ttk.Button(
            box, text="🚪 Sign out", style="Big.TButton",
            command=self.sign_out
        ).pack(fill="x", padx=10, pady=(6, 10))

    def _build_status_bar(self):
        bar = ttk.Frame(self)
        bar.pack(fill="x", padx=12, pady=(0, 10))
        ttk.Label(bar, textvariable=self.status_var).pack(side="left")
        ttk.Label(bar, text=f"Logs: {self.logs_dir}").pack(side="right")

    def toast(self, msg: str, kind: str = "info", ms: int = 2500):
        prefix = {"info": "ℹ ", "success": "✅ ", "warn": "⚠ ", "error": "❌ "}.get(kind, "")
        self.status_var.set(prefix + msg)
        if self._toast_after_id is not None:
            try:
                self.after_cancel(self._toast_after_id)
            except tk.TclError:
                pass
        self._toast_after_id = self.after(ms, lambda: self.status_var.set(""))

    # ---------- Notification sink ----------
    def notify_success(self, message: str) -> None:
        self.toast(message, kind="success")

    def notify_error(self, message: str) -> None:
        self.toast(message, kind="error", ms=4000)

    def handle_error(self, title: str, err: Exception, toast_text: str):
        log.exception("%s: %s", title, err)
        messagebox.showerror(title, str(err), parent=self)
        self.toast(toast_text, kind="error")

    # ---------- Navigation ----------
    def redirect(self, route: str) -> None:
        view = self._routes.get(route)
        if view is None:
            log.warning("unknown_route route=%s", route)
            view = self.dashboard_view
        if view is not self.login_view and self.identity.get_current_principal() is None:
            view = self.login_view
        self.nb.select(view.frame)
        view.refresh()

    # ---------- Session ----------
    def on_signed_in(self, user) -> None:
        self.identity.sign_in(user)
        self.user_var.set(f"{user.display_name} ({user.role})")
        self.toast(f"Welcome, {user.display_name}.", kind="success")
        self.redirect(DEFAULT_ROUTE)

    def sign_out(self) -> None:
        self.identity.sign_out()
        self.user_var.set("Not signed in")
        self.prices_view.reset_page()
        self.redirect(LOGIN_ROUTE)
