import sys
from datetime import datetime, timedelta
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))


ADMIN_PIN = "Admin#1234"


def make_repo(db_path, pin: str = ADMIN_PIN):
    from cpm.repositories.sqlite_repo import SqliteRepository

    repo = SqliteRepository(db_path, bootstrap_pin=pin)
    repo.init_db()
    return repo


def list_users(repo):
    from cpm.domain.models import User

    conn = repo._conn()
    rows = conn.execute(
        "SELECT id, username, role, first_name, last_name, active FROM users WHERE active=1 ORDER BY username"
    ).fetchall()
    conn.close()
    return [User(id=r[0], username=r[1], role=r[2], first_name=r[3] or "", last_name=r[4] or "", active=r[5]) for r in rows]


def admin_user(repo):
    return next(u for u in list_users(repo) if u.username == "admin")


def add_staff(repo, username: str = "staff1", role: str = "staff"):
    conn = repo._conn()
    cur = conn.execute(
        "INSERT INTO users (username, pin, role, first_name, last_name, active) VALUES (?, ?, ?, ?, ?, 1)",
        (username, repo._hash_pin("Staff1234"), role, "Juan", "Dela Cruz"),
    )
    uid = cur.lastrowid
    conn.commit()
    conn.close()
    return repo.get_user(uid)


class StepClock:
    """Returns a strictly increasing datetime on every call."""

    def __init__(self, start: datetime = datetime(2024, 3, 1, 8, 0, 0), step: timedelta = timedelta(minutes=5)):
        self.current = start
        self.step = step

    def __call__(self) -> datetime:
        value = self.current
        self.current = self.current + self.step
        return value


class RecordingNotifier:
    def __init__(self):
        self.successes: list[str] = []
        self.errors: list[str] = []

    def notify_success(self, message: str) -> None:
        self.successes.append(message)

    def notify_error(self, message: str) -> None:
        self.errors.append(message)


class RecordingNavigator:
    def __init__(self):
        self.routes: list[str] = []

    def redirect(self, route: str) -> None:
        self.routes.append(route)
