from __future__ import annotations

from dataclasses import dataclass

from cpm.config import Settings
from cpm.domain.models import User
from cpm.repositories.rest_repo import RestRepository
from cpm.repositories.sqlite_repo import SqliteRepository
from cpm.repositories.unit_of_work import StepwiseUnitOfWork
from cpm.services.access_gate import AccessGate
from cpm.services.auth_service import AuthService, SessionIdentity
from cpm.services.export_service import ExportService
from cpm.services.price_service import PriceService
from cpm.application.price_page import PriceManagementPage


@dataclass(frozen=True)
class AppContainer:
    settings: Settings
    repo: object
    auth: AuthService
    identity: SessionIdentity
    prices: PriceService
    exports: ExportService

    def build_price_page(self, notifier, navigator, on_change=None) -> PriceManagementPage:
        gate = AccessGate(self.identity, self.repo, notifier, navigator)
        return PriceManagementPage(
            gate,
            self.prices,
            notifier,
            export_service=self.exports,
            currency=self.settings.currency,
            on_change=on_change,
        )


def build_container(settings: Settings) -> AppContainer:
    if settings.store == "rest":
        repo = RestRepository(settings.rest_url, api_key=settings.rest_key)
        uow_factory = lambda: StepwiseUnitOfWork(repo)
    else:
        repo = SqliteRepository(settings.db_path, bootstrap_pin=settings.bootstrap_admin_pin)
        repo.init_db()
        uow_factory = None

    auth = AuthService(repo)
    identity = SessionIdentity()
    if settings.store == "rest" and settings.rest_user_id is not None:
        # the REST key already identifies the caller; the gate still checks the role
        identity.sign_in(User(id=settings.rest_user_id, username="", role=""))
    prices = PriceService(repo, auth, currency=settings.currency, uow_factory=uow_factory)
    exports = ExportService(prices, auth)

    return AppContainer(
        settings=settings,
        repo=repo,
        auth=auth,
        identity=identity,
        prices=prices,
        exports=exports,
    )
