from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging

from cpm.domain.errors import AuthorizationError, NotAuthenticatedError
from cpm.domain.models import User

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class LoginPolicy:
    max_failed_attempts: int = 5
    lockout_seconds: int = 60


PERMISSIONS: dict[str, set[str]] = {
    "view_prices": {"admin"},
    "manage_prices": {"admin"},
    "export_prices": {"admin"},
}


class AuthService:
    def __init__(self, repo, policy: LoginPolicy | None = None):
        self.repo = repo
        self.policy = policy or LoginPolicy()

    def login(self, username: str, pin: str) -> User:
        username_clean = username.strip()
        if not username_clean:
            raise NotAuthenticatedError("Username is required.")

        if not hasattr(self.repo, "authenticate_user"):
            raise NotAuthenticatedError("PIN sign-in is not available for this store.")

        state = self.repo.get_user_security_state(username_clean)
        if state:
            _attempts, locked_until = state
            if locked_until:
                until = datetime.fromisoformat(locked_until)
                if datetime.utcnow() < until:
                    remaining = int((until - datetime.utcnow()).total_seconds())
                    raise NotAuthenticatedError(f"User is temporarily locked. Retry in {remaining}s.")

        user = self.repo.authenticate_user(username_clean, pin.strip())
        if not user:
            attempts, locked_until = self.repo.record_login_failure(
                username_clean,
                self.policy.max_failed_attempts,
                self.policy.lockout_seconds,
            )
            log.warning("login_failed username=%s attempts=%s", username_clean, attempts)
            if locked_until is not None:
                raise NotAuthenticatedError("Too many failed attempts. User is temporarily locked.")
            raise NotAuthenticatedError("Invalid username or PIN.")

        self.repo.clear_login_guard(user.id)
        log.info("login_ok user_id=%s role=%s", user.id, user.role)
        return user

    def can(self, user: User | None, action: str) -> bool:
        if user is None:
            return False
        allowed_roles = PERMISSIONS.get(action)
        if not allowed_roles:
            return False
        return user.role in allowed_roles

    def require_action(self, user: User | None, action: str) -> None:
        if user is None:
            raise NotAuthenticatedError("Sign in required.")
        if not self.can(user, action):
            raise AuthorizationError(f"Role '{user.role}' is not allowed to perform '{action}'.")


class SessionIdentity:
    """Holds the principal signed in to this app instance."""

    def __init__(self, principal: User | None = None):
        self._principal = principal

    def get_current_principal(self) -> User | None:
        return self._principal

    def sign_in(self, user: User) -> None:
        self._principal = user

    def sign_out(self) -> None:
        self._principal = None
