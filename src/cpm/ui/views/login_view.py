from __future__ import annotations

import tkinter as tk
from tkinter import ttk
import logging
import sqlite3

from cpm.domain.errors import AppError, AuthorizationError

log = logging.getLogger(__name__)


class LoginView:
    def __init__(self, notebook: ttk.Notebook, app):
        self.app = app
        self.frame = ttk.Frame(notebook)
        notebook.add(self.frame, text="Sign in")

        box = ttk.LabelFrame(self.frame, text="Sign in")
        box.place(relx=0.5, rely=0.4, anchor="center")

        ttk.Label(box, text="Username").grid(row=0, column=0, sticky="w", padx=10, pady=(12, 4))
        self.username_e = ttk.Entry(box, width=28)
        self.username_e.grid(row=0, column=1, sticky="ew", padx=10, pady=(12, 4))

        ttk.Label(box, text="PIN").grid(row=1, column=0, sticky="w", padx=10, pady=4)
        self.pin_e = ttk.Entry(box, width=28, show="•")
        self.pin_e.grid(row=1, column=1, sticky="ew", padx=10, pady=4)

        ttk.Button(box, text="Sign in", style="Big.TButton", command=self.on_login)\
            .grid(row=2, column=0, columnspan=2, sticky="ew", padx=10, pady=(8, 12))

        for entry in (self.username_e, self.pin_e):
            entry.bind("<Return>", self._on_enter)

    def _on_enter(self, _event=None):
        self.on_login()
        return "break"

    def on_login(self):
        try:
            user = self.app.auth.login(self.username_e.get(), self.pin_e.get())
        except AuthorizationError as e:
            log.warning("login_rejected error=%s", e)
            self.app.notify_error(str(e))
            return
        except (AppError, sqlite3.Error) as e:
            self.app.handle_error("Sign in failed", e, "Sign in failed")
            return
        finally:
            self.pin_e.delete(0, tk.END)
        self.app.on_signed_in(user)

    def refresh(self):
        self.username_e.focus_set()
