from __future__ import annotations

import sqlite3
import hashlib
import hmac
import logging
import os
import secrets
import shutil
from datetime import datetime
from pathlib import Path
from typing import Optional

from cpm.domain.errors import PriceConflictError
from cpm.domain.models import (
    PriceChange,
    PriceHistoryEntry,
    PriceRecord,
    User,
    display_name,
)

log = logging.getLogger(__name__)

_PRICE_COLUMNS = """
    p.id, p.coffee_type, p.price_per_kg, p.currency, p.is_active,
    p.created_by, p.updated_at, u.first_name, u.last_name, p.request_key
"""

_HISTORY_COLUMNS = """
    h.id, h.price_id, h.coffee_type, h.old_price, h.new_price,
    h.changed_by, h.change_date, h.reason, u.first_name, u.last_name
"""


class SqliteRepository:
    def __init__(self, db_path: Path | str, bootstrap_pin: str | None = None):
        self.db_path = str(db_path)
        self.bootstrap_pin = bootstrap_pin

    def _conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.execute("PRAGMA foreign_keys = ON;")
        return conn

    def init_db(self) -> None:
        self.run_migrations()
        self._ensure_bootstrap_admin()

    def run_migrations(self) -> None:
        conn = self._conn()
        backup_path = self._create_pre_migration_backup()
        try:
            cur = conn.cursor()
            cur.execute("BEGIN")
            cur.execute("CREATE TABLE IF NOT EXISTS schema_migrations (version INTEGER PRIMARY KEY, applied_at TEXT NOT NULL)")
            cur.execute("SELECT COALESCE(MAX(version), 0) FROM schema_migrations")
            current_version = int(cur.fetchone()[0])

            migrations = [
                (1, self._migration_v1_users),
                (2, self._migration_v2_prices),
                (3, self._migration_v3_request_keys),
            ]

            for version, migration in migrations:
                if version <= current_version:
                    continue
                migration(cur)
                cur.execute(
                    "INSERT INTO schema_migrations (version, applied_at) VALUES (?, datetime('now'))",
                    (version,),
                )
            conn.commit()
        except Exception as exc:
            conn.rollback()
            self._restore_pre_migration_backup(backup_path)
            raise RuntimeError(
                "Database migration failed. Original database restored from automatic backup."
            ) from exc
        finally:
            conn.close()

    def _create_pre_migration_backup(self) -> Path | None:
        db_file = Path(self.db_path)
        if not db_file.exists() or db_file.stat().st_size == 0:
            return None
        backup_file = db_file.with_name(f"{db_file.stem}.pre_migration_{datetime.now().strftime('%Y%m%d%H%M%S')}.bak")
        shutil.copy2(db_file, backup_file)
        return backup_file

    def _restore_pre_migration_backup(self, backup_path: Path | None) -> None:
        if backup_path is None or not backup_path.exists():
            return
        shutil.copy2(backup_path, self.db_path)

    def _migration_v1_users(self, cur: sqlite3.Cursor) -> None:
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                username TEXT NOT NULL UNIQUE,
                pin TEXT NOT NULL,
                role TEXT NOT NULL CHECK(role IN ('admin','staff','viewer')),
                first_name TEXT NOT NULL DEFAULT '',
                last_name TEXT NOT NULL DEFAULT '',
                active INTEGER NOT NULL DEFAULT 1 CHECK(active IN (0,1)),
                failed_attempts INTEGER NOT NULL DEFAULT 0,
                locked_until TEXT,
                created_at TEXT NOT NULL DEFAULT (datetime('now'))
            )
            """
        )

    def _migration_v2_prices(self, cur: sqlite3.Cursor) -> None:
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS coffee_prices (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                coffee_type TEXT NOT NULL
                    CHECK(coffee_type IN ('raw','dried','premium','fine','commercial')),
                price_per_kg REAL NOT NULL CHECK(price_per_kg >= 0),
                currency TEXT NOT NULL,
                is_active INTEGER NOT NULL DEFAULT 1 CHECK(is_active IN (0,1)),
                created_by INTEGER,
                updated_at TEXT NOT NULL,
                FOREIGN KEY(created_by) REFERENCES users(id)
            )
            """
        )

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS coffee_price_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                price_id INTEGER NOT NULL,
                coffee_type TEXT NOT NULL,
                old_price REAL NOT NULL CHECK(old_price >= 0),
                new_price REAL NOT NULL CHECK(new_price >= 0),
                changed_by INTEGER,
                change_date TEXT NOT NULL,
                reason TEXT NOT NULL,
                FOREIGN KEY(price_id) REFERENCES coffee_prices(id),
                FOREIGN KEY(changed_by) REFERENCES users(id)
            )
            """
        )

        cur.execute("CREATE INDEX IF NOT EXISTS idx_coffee_prices_active ON coffee_prices (coffee_type, is_active)")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_price_history_date ON coffee_price_history (change_date)")

    def _migration_v3_request_keys(self, cur: sqlite3.Cursor) -> None:
        self._add_column_if_missing(cur, "coffee_prices", "request_key", "TEXT")
        cur.execute(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS idx_coffee_prices_request_key
            ON coffee_prices (request_key)
            WHERE request_key IS NOT NULL
            """
        )

    def _add_column_if_missing(self, cur: sqlite3.Cursor, table: str, column: str, definition: str) -> None:
        cur.execute(f"PRAGMA table_info({table})")
        cols = {str(r[1]) for r in cur.fetchall()}
        if column in cols:
            return
        cur.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")

    def _ensure_bootstrap_admin(self) -> None:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute("SELECT COUNT(*) FROM users WHERE active=1 AND role='admin'")
        active_admins = int(cur.fetchone()[0])
        if active_admins > 0:
            conn.close()
            return

        bootstrap_pin = (
            self.bootstrap_pin
            or os.environ.get("CPM_BOOTSTRAP_ADMIN_PIN", "").strip()
            or secrets.token_urlsafe(12)
        )
        cur.execute(
            """
            INSERT INTO users (username, pin, role, first_name, last_name, active)
            VALUES ('admin', ?, 'admin', 'System', 'Administrator', 1)
            ON CONFLICT(username) DO UPDATE SET
                pin=excluded.pin, role='admin', active=1, failed_attempts=0, locked_until=NULL
            """,
            (self._hash_pin(bootstrap_pin),),
        )
        conn.commit()
        conn.close()

        # One-time PIN is handed over through a file readable only by the owner.
        pin_file = Path(self.db_path).parent / ".admin_bootstrap_pin"
        pin_file.write_text(bootstrap_pin + "\n", encoding="utf-8")
        try:
            pin_file.chmod(0o600)
        except OSError:
            log.warning("bootstrap_pin_chmod_failed path=%s", pin_file)

    # ---------- Users ----------
    @staticmethod
    def _user_from_row(r) -> User:
        return User(
            id=int(r[0]),
            username=str(r[1]),
            role=str(r[2]),
            first_name=str(r[3] or ""),
            last_name=str(r[4] or ""),
            active=int(r[5]),
        )

    def get_user(self, user_id: int) -> Optional[User]:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute(
            "SELECT id, username, role, first_name, last_name, active FROM users WHERE id=? AND active=1",
            (int(user_id),),
        )
        r = cur.fetchone()
        conn.close()
        return self._user_from_row(r) if r else None

    def _get_user_auth_row(self, cur: sqlite3.Cursor, username: str):
        cur.execute(
            """
            SELECT id, username, role, first_name, last_name, active, pin,
                   COALESCE(failed_attempts, 0), locked_until
            FROM users
            WHERE active=1 AND username=?
            """,
            (username,),
        )
        return cur.fetchone()

    def get_user_security_state(self, username: str) -> tuple[int, Optional[str]] | None:
        conn = self._conn()
        cur = conn.cursor()
        row = self._get_user_auth_row(cur, username)
        conn.close()
        if not row:
            return None
        return int(row[7]), (str(row[8]) if row[8] is not None else None)

    def record_login_failure(self, username: str, max_attempts: int, lockout_seconds: int) -> tuple[int, Optional[str]]:
        conn = self._conn()
        cur = conn.cursor()
        row = self._get_user_auth_row(cur, username)
        if not row:
            conn.close()
            return 0, None

        attempts = int(row[7]) + 1
        locked_until = None
        if attempts >= int(max_attempts):
            attempts = 0
            cur.execute(
                "UPDATE users SET failed_attempts=?, locked_until=datetime('now', ?) WHERE id=?",
                (attempts, f"+{int(lockout_seconds)} seconds", int(row[0])),
            )
            cur.execute("SELECT locked_until FROM users WHERE id=?", (int(row[0]),))
            locked_until = str(cur.fetchone()[0])
        else:
            cur.execute("UPDATE users SET failed_attempts=? WHERE id=?", (attempts, int(row[0])))
        conn.commit()
        conn.close()
        return attempts, locked_until

    def clear_login_guard(self, user_id: int) -> None:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute("UPDATE users SET failed_attempts=0, locked_until=NULL WHERE id=?", (int(user_id),))
        conn.commit()
        conn.close()

    def authenticate_user(self, username: str, pin: str) -> Optional[User]:
        conn = self._conn()
        cur = conn.cursor()
        row = self._get_user_auth_row(cur, username)
        conn.close()
        if row and self._verify_pin(str(row[6]), pin):
            return self._user_from_row(row)
        return None

    # ---------- Prices ----------
    @staticmethod
    def _price_from_row(r) -> PriceRecord:
        return PriceRecord(
            id=int(r[0]),
            coffee_type=str(r[1]),
            price_per_kg=float(r[2]),
            currency=str(r[3]),
            is_active=bool(r[4]),
            created_by=(int(r[5]) if r[5] is not None else None),
            updated_at=str(r[6]),
            creator_name=display_name(r[7], r[8]),
            request_key=(str(r[9]) if r[9] is not None else None),
        )

    @staticmethod
    def _history_from_row(r) -> PriceHistoryEntry:
        return PriceHistoryEntry(
            id=int(r[0]),
            price_id=int(r[1]),
            coffee_type=str(r[2]),
            old_price=float(r[3]),
            new_price=float(r[4]),
            changed_by=(int(r[5]) if r[5] is not None else None),
            change_date=str(r[6]),
            reason=str(r[7]),
            changer_name=display_name(r[8], r[9]),
        )

    def _select_price(self, cur: sqlite3.Cursor, where: str, params: tuple) -> Optional[PriceRecord]:
        cur.execute(
            f"""
            SELECT {_PRICE_COLUMNS}
            FROM coffee_prices p
            LEFT JOIN users u ON u.id = p.created_by
            WHERE {where}
            ORDER BY p.id DESC
            LIMIT 1
            """,
            params,
        )
        r = cur.fetchone()
        return self._price_from_row(r) if r else None

    def _select_history_for_price(self, cur: sqlite3.Cursor, price_id: int) -> Optional[PriceHistoryEntry]:
        cur.execute(
            f"""
            SELECT {_HISTORY_COLUMNS}
            FROM coffee_price_history h
            LEFT JOIN users u ON u.id = h.changed_by
            WHERE h.price_id = ?
            ORDER BY h.id DESC
            LIMIT 1
            """,
            (int(price_id),),
        )
        r = cur.fetchone()
        return self._history_from_row(r) if r else None

    def list_active_prices(self) -> list[PriceRecord]:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute(
            f"""
            SELECT {_PRICE_COLUMNS}
            FROM coffee_prices p
            LEFT JOIN users u ON u.id = p.created_by
            WHERE p.is_active = 1
            ORDER BY p.coffee_type ASC, p.id ASC
            """
        )
        rows = cur.fetchall()
        conn.close()
        return [self._price_from_row(r) for r in rows]

    def list_price_history(self) -> list[PriceHistoryEntry]:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute(
            f"""
            SELECT {_HISTORY_COLUMNS}
            FROM coffee_price_history h
            LEFT JOIN users u ON u.id = h.changed_by
            ORDER BY h.change_date DESC, h.id DESC
            """
        )
        rows = cur.fetchall()
        conn.close()
        return [self._history_from_row(r) for r in rows]

    def get_active_price(self, coffee_type: str) -> Optional[PriceRecord]:
        conn = self._conn()
        cur = conn.cursor()
        rec = self._select_price(cur, "p.is_active = 1 AND p.coffee_type = ?", (coffee_type,))
        conn.close()
        return rec

    def get_price(self, price_id: int) -> Optional[PriceRecord]:
        conn = self._conn()
        cur = conn.cursor()
        rec = self._select_price(cur, "p.id = ?", (int(price_id),))
        conn.close()
        return rec

    def find_price_by_request_key(self, request_key: str) -> Optional[PriceRecord]:
        conn = self._conn()
        cur = conn.cursor()
        rec = self._select_price(cur, "p.request_key = ?", (request_key,))
        conn.close()
        return rec

    def find_history_for_price(self, price_id: int) -> Optional[PriceHistoryEntry]:
        conn = self._conn()
        cur = conn.cursor()
        entry = self._select_history_for_price(cur, price_id)
        conn.close()
        return entry

    def insert_price(
        self,
        coffee_type: str,
        price_per_kg: float,
        currency: str,
        created_by: int,
        updated_at: str,
        request_key: Optional[str] = None,
    ) -> PriceRecord:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute(
            """
            INSERT INTO coffee_prices (coffee_type, price_per_kg, currency, is_active, created_by, updated_at, request_key)
            VALUES (?, ?, ?, 1, ?, ?, ?)
            """,
            (coffee_type, float(price_per_kg), currency, int(created_by), updated_at, request_key),
        )
        price_id = int(cur.lastrowid)
        conn.commit()
        rec = self._select_price(cur, "p.id = ?", (price_id,))
        conn.close()
        return rec

    def deactivate_price(self, price_id: int) -> bool:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute("UPDATE coffee_prices SET is_active=0 WHERE id=? AND is_active=1", (int(price_id),))
        changed = cur.rowcount > 0
        conn.commit()
        conn.close()
        return bool(changed)

    def reactivate_price(self, price_id: int) -> bool:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute("UPDATE coffee_prices SET is_active=1 WHERE id=? AND is_active=0", (int(price_id),))
        changed = cur.rowcount > 0
        conn.commit()
        conn.close()
        return bool(changed)

    def delete_price(self, price_id: int) -> None:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute("DELETE FROM coffee_prices WHERE id=?", (int(price_id),))
        conn.commit()
        conn.close()

    def insert_history(
        self,
        price_id: int,
        coffee_type: str,
        old_price: float,
        new_price: float,
        changed_by: int,
        change_date: str,
        reason: str,
    ) -> PriceHistoryEntry:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute(
            """
            INSERT INTO coffee_price_history (price_id, coffee_type, old_price, new_price, changed_by, change_date, reason)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (int(price_id), coffee_type, float(old_price), float(new_price), int(changed_by), change_date, reason),
        )
        conn.commit()
        entry = self._select_history_for_price(cur, price_id)
        conn.close()
        return entry

    def apply_price_change(
        self,
        coffee_type: str,
        price_per_kg: float,
        currency: str,
        actor_user_id: int,
        datetime_iso: str,
        reason: str,
        request_key: Optional[str] = None,
    ) -> PriceChange:
        """Insert the new active price, retire the old one and append history in one transaction."""
        conn = self._conn()
        cur = conn.cursor()
        try:
            cur.execute("BEGIN IMMEDIATE")

            if request_key:
                existing = self._select_price(cur, "p.request_key = ?", (request_key,))
                if existing:
                    conn.rollback()
                    if not existing.matches(coffee_type, price_per_kg):
                        raise PriceConflictError(
                            f"Request key was already used for {existing.coffee_type} at {existing.price_per_kg:.2f}.",
                            step="lookup",
                        )
                    return PriceChange(
                        record=existing,
                        history=self._select_history_for_price(cur, existing.id),
                        replayed=True,
                    )

            previous = self._select_price(cur, "p.is_active = 1 AND p.coffee_type = ?", (coffee_type,))

            cur.execute(
                """
                INSERT INTO coffee_prices (coffee_type, price_per_kg, currency, is_active, created_by, updated_at, request_key)
                VALUES (?, ?, ?, 1, ?, ?, ?)
                """,
                (coffee_type, float(price_per_kg), currency, int(actor_user_id), datetime_iso, request_key),
            )
            price_id = int(cur.lastrowid)

            history = None
            if previous is not None:
                cur.execute(
                    "UPDATE coffee_prices SET is_active=0 WHERE id=? AND is_active=1",
                    (previous.id,),
                )
                if cur.rowcount == 0:
                    raise PriceConflictError(
                        f"Active {coffee_type} price changed during update.", step="deactivate"
                    )
                # leftovers of an earlier partial update
                cur.execute(
                    "UPDATE coffee_prices SET is_active=0 WHERE coffee_type=? AND is_active=1 AND id NOT IN (?, ?)",
                    (coffee_type, previous.id, price_id),
                )
                cur.execute(
                    """
                    INSERT INTO coffee_price_history (price_id, coffee_type, old_price, new_price, changed_by, change_date, reason)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (price_id, coffee_type, float(previous.price_per_kg), float(price_per_kg), int(actor_user_id), datetime_iso, reason),
                )

            conn.commit()
            record = self._select_price(cur, "p.id = ?", (price_id,))
            if previous is not None:
                history = self._select_history_for_price(cur, price_id)
            return PriceChange(record=record, previous=previous, history=history)
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @staticmethod
    def _hash_pin(pin: str, *, rounds: int = 200_000, salt: str | None = None) -> str:
        salt = salt or secrets.token_hex(16)
        digest = hashlib.pbkdf2_hmac("sha256", pin.encode("utf-8"), bytes.fromhex(salt), rounds).hex()
        return f"pbkdf2_sha256${rounds}${salt}${digest}"

    @staticmethod
    def _verify_pin(stored: str, provided: str) -> bool:
        if not stored.startswith("pbkdf2_sha256$"):
            return False
        try:
            _algo, rounds_s, salt, digest = stored.split("$", 3)
            candidate = hashlib.pbkdf2_hmac(
                "sha256",
                provided.encode("utf-8"),
                bytes.fromhex(salt),
                int(rounds_s),
            ).hex()
        except ValueError:
            return False
        return hmac.compare_digest(candidate, digest)
