from __future__ import annotations

from cpm.application.container import build_container
from cpm.config import load_settings
from cpm.logging_config import setup_logging
from cpm.ui.app import App


def main() -> None:
    settings = load_settings()
    setup_logging(settings.logs_dir, level=settings.log_level)

    container = build_container(settings)

    app = App(container, logs_dir=str(settings.logs_dir))
    app.mainloop()


if __name__ == "__main__":
    main()
