from __future__ import annotations

from typing import Optional, Protocol

from cpm.domain.models import User


class IdentityProvider(Protocol):
    def get_current_principal(self) -> Optional[User]: ...


class Notifier(Protocol):
    def notify_success(self, message: str) -> None: ...
    def notify_error(self, message: str) -> None: ...


class Navigator(Protocol):
    def redirect(self, route: str) -> None: ...
