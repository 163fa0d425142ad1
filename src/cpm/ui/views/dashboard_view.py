from __future__ import annotations

import tkinter as tk
from tkinter import ttk


class DashboardView:
    def __init__(self, notebook: ttk.Notebook, app):
        self.app = app
        self.frame = ttk.Frame(notebook)
        notebook.add(self.frame, text="Dashboard")

        self.welcome_var = tk.StringVar(value="")
        ttk.Label(self.frame, textvariable=self.welcome_var, style="Section.TLabel")\
            .pack(anchor="w", padx=16, pady=(16, 6))
        ttk.Label(
            self.frame,
            text="Use the navigation on the left. Price management is available to administrators.",
        ).pack(anchor="w", padx=16)

    def refresh(self):
        user = self.app.identity.get_current_principal()
        name = user.display_name if user else "guest"
        self.welcome_var.set(f"Welcome, {name}")
