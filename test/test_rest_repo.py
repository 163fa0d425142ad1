import json

import pytest
import requests

from conftest import RecordingNavigator, RecordingNotifier, StepClock

from cpm.application.price_page import PriceManagementPage
from cpm.domain.errors import NotAuthenticatedError, PriceConflictError, PriceWriteError, StoreError
from cpm.domain.models import User
from cpm.repositories.rest_repo import RestRepository
from cpm.repositories.unit_of_work import StepwiseUnitOfWork
from cpm.services.access_gate import AccessGate
from cpm.services.auth_service import AuthService, SessionIdentity
from cpm.services.price_service import PriceService


class FakeResponse:
    def __init__(self, status_code=200, body=None, raw: bytes | None = None):
        self.status_code = status_code
        if raw is not None:
            self.content = raw
        else:
            self.content = b"" if body is None else json.dumps(body).encode("utf-8")

    def json(self):
        return json.loads(self.content.decode("utf-8"))

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Client Error")


def _matches(row: dict, key: str, expr: str) -> bool:
    op, _, value = expr.partition(".")
    assert op == "eq", f"unsupported filter {expr}"
    current = row.get(key)
    if isinstance(current, bool):
        return str(current).lower() == value
    return str(current) == value


class FakePostgrest:
    """In-memory stand-in for a PostgREST server, reached through `session.request`."""

    KEYS = {"coffee_prices": "price_id", "coffee_price_history": "history_id", "users": "id"}
    JOINS = {
        "coffee_prices": ("creator", "created_by"),
        "coffee_price_history": ("user", "changed_by"),
    }

    def __init__(self):
        self.tables: dict[str, list[dict]] = {name: [] for name in self.KEYS}
        self.calls: list[dict] = []
        self.fail: set[tuple[str, str]] = set()
        # applied on the server, but the client only sees an error
        self.lose_reply: set[tuple[str, str]] = set()
        self._seq = 0

    def add_user(self, uid: int, role: str, first: str = "", last: str = ""):
        self.tables["users"].append(
            {"id": uid, "username": f"u{uid}", "role": role, "first_name": first, "last_name": last, "active": True}
        )

    def _select(self, table: str, rows: list[dict], select: str | None) -> list[dict]:
        out = [dict(r) for r in rows]
        join = self.JOINS.get(table)
        if select and join and f"{join[0]}:{join[1]}" in select:
            users = {u["id"]: u for u in self.tables["users"]}
            for r in out:
                u = users.get(r.get(join[1]))
                r[join[0]] = {"first_name": u["first_name"], "last_name": u["last_name"]} if u else None
        return out

    def _filter(self, table: str, params: dict) -> list[dict]:
        rows = self.tables[table]
        for key, expr in params.items():
            if key in {"select", "order", "limit"}:
                continue
            rows = [r for r in rows if _matches(r, key, expr)]
        for term in reversed((params.get("order") or "").split(",")):
            if term:
                col, _, direction = term.partition(".")
                rows = sorted(rows, key=lambda r: r[col], reverse=direction == "desc")
        if params.get("limit"):
            rows = rows[: int(params["limit"])]
        return rows

    def request(self, method, url, params=None, json=None, headers=None, timeout=None):
        table = url.rsplit("/", 1)[-1]
        params = dict(params or {})
        self.calls.append({"method": method, "table": table, "params": params, "json": json, "headers": headers})
        if (method, table) in self.fail:
            return FakeResponse(503, {"message": "unavailable"})

        reply = self._handle(method, table, params, json)
        if (method, table) in self.lose_reply:
            return FakeResponse(504, {"message": "gateway timeout"})
        return reply

    def _handle(self, method, table, params, json):
        if method == "GET":
            return FakeResponse(200, self._select(table, self._filter(table, params), params.get("select")))
        if method == "POST":
            created = []
            for rec in json:
                self._seq += 1
                row = dict(rec)
                row[self.KEYS[table]] = self._seq
                self.tables[table].append(row)
                created.append(row)
            return FakeResponse(201, self._select(table, created, params.get("select")))
        if method == "PATCH":
            hit = self._filter(table, params)
            for row in hit:
                row.update(json)
            return FakeResponse(200, self._select(table, hit, None))
        if method == "DELETE":
            hit = self._filter(table, params)
            self.tables[table] = [r for r in self.tables[table] if r not in hit]
            return FakeResponse(204)
        raise AssertionError(method)


@pytest.fixture
def server():
    fake = FakePostgrest()
    fake.add_user(7, "admin", "Maria", "Santos")
    fake.add_user(8, "staff", "Pedro", "Reyes")
    return fake


def _service(repo, compensate=True):
    return PriceService(
        repo,
        AuthService(repo),
        uow_factory=lambda: StepwiseUnitOfWork(repo, compensate=compensate, clock=StepClock()),
    )


ADMIN = User(id=7, username="u7", role="admin", first_name="Maria", last_name="Santos")


def test_requests_carry_key_headers_and_table_url(server):
    repo = RestRepository("https://store.example/", api_key="anon-key", session=server, timeout=3)

    repo.list_active_prices()

    call = server.calls[0]
    assert call["method"] == "GET"
    assert call["table"] == "coffee_prices"
    assert call["params"]["is_active"] == "eq.true"
    assert call["params"]["order"] == "coffee_type.asc,price_id.asc"
    assert "creator:created_by(first_name,last_name)" in call["params"]["select"]
    assert call["headers"]["apikey"] == "anon-key"
    assert call["headers"]["Authorization"] == "Bearer anon-key"


def test_get_user_maps_role_and_names(server):
    repo = RestRepository("https://store.example", session=server)

    user = repo.get_user(7)

    assert user == User(id=7, username="u7", role="admin", first_name="Maria", last_name="Santos", active=1)
    assert repo.get_user(99) is None


def test_insert_asks_for_representation_and_maps_joined_creator(server):
    repo = RestRepository("https://store.example", session=server)

    rec = repo.insert_price("raw", 150.0, "PHP", 7, "2024-03-01 08:00:00", request_key="k-1")

    post = server.calls[-1]
    assert post["method"] == "POST"
    assert post["headers"]["Prefer"] == "return=representation"
    assert post["json"][0]["request_key"] == "k-1"
    assert rec.coffee_type == "raw"
    assert rec.is_active is True
    assert rec.creator_name == "Maria Santos"
    assert rec.request_key == "k-1"


def test_deactivate_is_conditional_on_active_flag(server):
    repo = RestRepository("https://store.example", session=server)
    rec = repo.insert_price("raw", 150.0, "PHP", 7, "2024-03-01 08:00:00")

    assert repo.deactivate_price(rec.id) is True
    assert repo.deactivate_price(rec.id) is False

    patch = [c for c in server.calls if c["method"] == "PATCH"][0]
    assert patch["params"] == {"price_id": f"eq.{rec.id}", "is_active": "eq.true"}
    assert patch["json"] == {"is_active": False}


def test_stepwise_update_over_rest(server):
    repo = RestRepository("https://store.example", session=server)
    prices = _service(repo)

    prices.submit_new_price(ADMIN, "premium", 250)
    prices.submit_new_price(ADMIN, "premium", 260)

    active = prices.list_active_prices()
    assert [(p.coffee_type, p.price_per_kg) for p in active] == [("premium", 260.0)]
    history = prices.list_price_history()
    assert len(history) == 1
    assert (history[0].old_price, history[0].new_price) == (250.0, 260.0)
    assert history[0].changer_name == "Maria Santos"
    assert history[0].reason == "Price update"


def test_rest_deactivate_failure_without_compensation_leaves_two_active(server):
    repo = RestRepository("https://store.example", session=server)
    prices = _service(repo, compensate=False)
    prices.submit_new_price(ADMIN, "raw", 150)
    server.fail.add(("PATCH", "coffee_prices"))

    with pytest.raises(PriceWriteError) as exc_info:
        prices.submit_new_price(ADMIN, "raw", 160)

    assert exc_info.value.step == "deactivate"
    assert sorted(p.price_per_kg for p in repo.list_active_prices()) == [150.0, 160.0]


def test_rest_history_failure_is_compensated(server):
    repo = RestRepository("https://store.example", session=server)
    prices = _service(repo, compensate=True)
    prices.submit_new_price(ADMIN, "raw", 150)
    server.fail.add(("POST", "coffee_price_history"))

    with pytest.raises(PriceWriteError) as exc_info:
        prices.submit_new_price(ADMIN, "raw", 160)

    assert exc_info.value.step == "history"
    assert [p.price_per_kg for p in repo.list_active_prices()] == [150.0]
    assert len(server.tables["coffee_prices"]) == 1


def test_http_error_becomes_store_error(server):
    repo = RestRepository("https://store.example", session=server)
    server.fail.add(("GET", "coffee_price_history"))

    with pytest.raises(StoreError, match="GET coffee_price_history failed"):
        repo.list_price_history()


def test_connection_error_becomes_store_error():
    class DownSession:
        def request(self, *args, **kwargs):
            raise requests.ConnectionError("connection refused")

    repo = RestRepository("https://store.example", session=DownSession())

    with pytest.raises(StoreError, match="connection refused"):
        repo.list_active_prices()


def test_invalid_json_becomes_store_error():
    class GarbageSession:
        def request(self, *args, **kwargs):
            return FakeResponse(200, raw=b"<html>oops</html>")

    repo = RestRepository("https://store.example", session=GarbageSession())

    with pytest.raises(StoreError, match="invalid JSON"):
        repo.list_active_prices()


def test_missing_joined_user_reads_as_unknown(server):
    repo = RestRepository("https://store.example", session=server)
    server.tables["coffee_prices"].append(
        {"price_id": 50, "coffee_type": "fine", "price_per_kg": 300, "currency": "PHP",
         "is_active": True, "created_by": 404, "updated_at": "2024-03-01T08:00:00Z"}
    )

    [rec] = repo.list_active_prices()

    assert rec.creator_name == "Unknown"
    assert rec.price_per_kg == 300.0


def test_pin_login_is_refused_for_rest_store(server):
    auth = AuthService(RestRepository("https://store.example", session=server))

    with pytest.raises(NotAuthenticatedError, match="not available"):
        auth.login("admin", "whatever")

    assert server.calls == []


def test_malformed_row_becomes_store_error(server):
    repo = RestRepository("https://store.example", session=server)
    server.tables["coffee_prices"].append(
        {"price_id": 51, "coffee_type": "raw", "price_per_kg": None, "currency": "PHP",
         "is_active": True, "created_by": 7, "updated_at": "2024-03-01T08:00:00Z"}
    )
    server.tables["coffee_price_history"].append({"history_id": 1, "coffee_type": "raw", "change_date": "2024-03-01 08:00:00"})

    with pytest.raises(StoreError, match="coffee_prices returned a malformed row"):
        repo.list_active_prices()
    with pytest.raises(StoreError, match="coffee_prices returned a malformed row"):
        repo.get_active_price("raw")
    with pytest.raises(StoreError, match="coffee_price_history returned a malformed row"):
        repo.list_price_history()


def test_malformed_user_row_becomes_store_error(server):
    repo = RestRepository("https://store.example", session=server)
    server.tables["users"].append({"id": 9, "username": "u9", "active": True})

    with pytest.raises(StoreError, match="users returned a malformed row"):
        repo.get_user(9)


def test_page_load_reports_malformed_prices_and_stops_loading(server):
    repo = RestRepository("https://store.example", session=server)
    server.tables["coffee_prices"].append(
        {"price_id": 51, "coffee_type": "raw", "price_per_kg": None, "currency": "PHP",
         "is_active": True, "created_by": 7, "updated_at": "2024-03-01T08:00:00Z"}
    )
    notifier, navigator = RecordingNotifier(), RecordingNavigator()
    gate = AccessGate(SessionIdentity(ADMIN), repo, notifier, navigator)
    page = PriceManagementPage(gate, PriceService(repo, AuthService(repo)), notifier)

    assert page.load() is True

    assert notifier.errors == ["Failed to fetch current prices"]
    assert page.state.current_prices == []
    assert page.state.loading is False


def test_rest_insert_with_lost_reply_is_compensated(server):
    repo = RestRepository("https://store.example", session=server)
    prices = _service(repo, compensate=True)
    prices.submit_new_price(ADMIN, "raw", 150)
    server.lose_reply.add(("POST", "coffee_prices"))

    with pytest.raises(PriceWriteError) as exc_info:
        prices.submit_new_price(ADMIN, "raw", 160, request_key="k-1")

    assert exc_info.value.step == "insert"
    assert [r["price_per_kg"] for r in server.tables["coffee_prices"]] == [150.0]


def test_rest_resubmit_after_lost_reply_finishes_the_update(server):
    repo = RestRepository("https://store.example", session=server)
    prices = _service(repo, compensate=False)
    prices.submit_new_price(ADMIN, "raw", 100)
    server.lose_reply.add(("POST", "coffee_prices"))
    with pytest.raises(PriceWriteError):
        prices.submit_new_price(ADMIN, "raw", 150, request_key="k-1")
    server.lose_reply.clear()

    again = prices.submit_new_price(ADMIN, "raw", 150, request_key="k-1")

    assert again.replayed is True
    assert [p.price_per_kg for p in repo.list_active_prices()] == [150.0]
    history = repo.list_price_history()
    assert [(h.old_price, h.new_price) for h in history] == [(100.0, 150.0)]


def test_rest_edited_resubmit_after_lost_reply_keeps_one_active_price(server):
    repo = RestRepository("https://store.example", session=server)
    prices = _service(repo, compensate=False)
    prices.submit_new_price(ADMIN, "raw", 100)
    server.lose_reply.add(("POST", "coffee_prices"))
    with pytest.raises(PriceWriteError):
        prices.submit_new_price(ADMIN, "raw", 150, request_key="k-1")
    server.lose_reply.clear()

    with pytest.raises(PriceConflictError, match="already used"):
        prices.submit_new_price(ADMIN, "raw", 170, request_key="k-1")
    prices.submit_new_price(ADMIN, "raw", 170, request_key="k-2")

    assert [p.price_per_kg for p in repo.list_active_prices()] == [170.0]
    history = repo.list_price_history()
    assert [(h.old_price, h.new_price) for h in history] == [(150.0, 170.0)]
