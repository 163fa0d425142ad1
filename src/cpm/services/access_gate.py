from __future__ import annotations

import logging
import sqlite3
from typing import Optional

from cpm.application.ports import IdentityProvider, Navigator, Notifier
from cpm.config import DEFAULT_ROUTE, LOGIN_ROUTE
from cpm.domain.errors import AppError
from cpm.domain.models import User
from cpm.repositories.contracts import UserRepository

log = logging.getLogger(__name__)


class AccessGate:
    """Admits only signed-in admins; everyone else is notified and redirected."""

    def __init__(self, identity: IdentityProvider, repo: UserRepository, notifier: Notifier, navigator: Navigator):
        self.identity = identity
        self.repo = repo
        self.notifier = notifier
        self.navigator = navigator

    def admit(self) -> Optional[User]:
        try:
            principal = self.identity.get_current_principal()
            if principal is None:
                self.navigator.redirect(LOGIN_ROUTE)
                return None

            user = self.repo.get_user(principal.id)
            if user is None:
                log.warning("access_unknown_principal principal_id=%s", principal.id)
                self.navigator.redirect(LOGIN_ROUTE)
                return None

            if not user.is_admin:
                log.warning("access_denied user_id=%s role=%s", user.id, user.role)
                self.notifier.notify_error("Admin access required")
                self.navigator.redirect(DEFAULT_ROUTE)
                return None

            return user
        except (AppError, sqlite3.Error) as e:
            log.exception("Error checking user: %s", e)
            self.notifier.notify_error("Error checking user permissions")
            return None
