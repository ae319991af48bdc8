"""In-memory stand-ins for PostgreSQL and Redis used by the flow tests.

FakeDatabase understands exactly the statements the services issue,
matched on whitespace-normalized SQL, and keeps the foreign-key cascades
of the migrations. Transactions snapshot the tables and roll back on
error.
"""

import copy
import time
from contextlib import ExitStack
from unittest.mock import MagicMock, patch
from uuid import uuid4

import pytest

from src.services.auth_service import AuthService

USER_PASSWORD = "correct-horse-battery"


def _norm(sql: str) -> str:
    return " ".join(sql.split())


class FakeDatabase:
    """Tables as lists of row dicts."""

    def __init__(self):
        self.tables = {
            "users": [],
            "device_registrations": [],
            "mobile_tokens": [],
            "mobile_token_registry": [],
            "security_events": [],
        }

    # -- helpers -----------------------------------------------------------

    def rows(self, table, **match):
        return [
            row for row in self.tables[table]
            if all(row.get(k) == v for k, v in match.items())
        ]

    def _one(self, table, **match):
        found = self.rows(table, **match)
        return found[0] if found else None

    def _delete(self, table, predicate) -> int:
        keep = [row for row in self.tables[table] if not predicate(row)]
        removed = len(self.tables[table]) - len(keep)
        self.tables[table] = keep
        return removed

    def _delete_tokens(self, predicate) -> int:
        doomed = {row["id"] for row in self.tables["mobile_tokens"] if predicate(row)}
        removed = self._delete("mobile_tokens", lambda row: row["id"] in doomed)
        # ON DELETE SET NULL
        for entry in self.tables["mobile_token_registry"]:
            for column in ("access_token_id", "refresh_token_id"):
                if entry[column] in doomed:
                    entry[column] = None
        return removed

    def _device_pair(self, row, user_id, device_id):
        return row["user_id"] == user_id and row["device_id"] == device_id

    # -- statements --------------------------------------------------------

    def run(self, kind: str, sql: str, args: tuple):
        q = _norm(sql)

        if q.startswith("SELECT pg_advisory_xact_lock"):
            return "SELECT 1"

        if "FROM users" in q:
            return self._users(q, args)
        if "device_registrations" in q:
            return self._devices(kind, q, args)
        if "mobile_token_registry" in q:
            return self._registry(q, args)
        if "mobile_tokens" in q:
            return self._tokens(kind, q, args)
        if "security_events" in q:
            return self._events(q, args)

        raise NotImplementedError(f"FakeDatabase cannot run: {q}")

    def _users(self, q, args):
        user = self._one("users", id=args[0])
        if q.startswith("SELECT password_hash"):
            return user["password_hash"] if user and user["is_active"] else None
        if user is None:
            return None
        return {k: user[k] for k in ("id", "username", "tenant_id", "is_active", "is_admin")}

    def _devices(self, kind, q, args):
        table = "device_registrations"

        if q.startswith("SELECT 1 FROM"):
            return 1 if self._one(table, user_id=args[0], device_id=args[1]) else None
        if q.startswith("SELECT COUNT(*)"):
            found = self.rows(table, user_id=args[0])
            if "registered_at >=" in q:
                found = [row for row in found if row["registered_at"] >= args[1]]
            return len(found)
        if q.startswith("INSERT INTO"):
            row = {
                "id": args[0],
                "user_id": args[1],
                "device_id": args[2],
                "device_info": copy.deepcopy(args[3]),
                "device_secret": args[4],
                "is_trusted": False,
                "registered_at": args[5],
                "trusted_at": None,
                "trusted_until": None,
                "last_used_at": args[5],
            }
            self.tables[table].append(row)
            return dict(row)
        if q.startswith("SELECT") and "LIMIT 2" in q:
            return [dict(row) for row in self.rows(table, device_id=args[0])[:2]]
        if q.startswith("SELECT") and "ORDER BY" in q:
            found = sorted(
                self.rows(table, user_id=args[0]),
                key=lambda row: row["last_used_at"] or row["registered_at"],
                reverse=True,
            )
            return [dict(row) for row in found]
        if q.startswith("SELECT"):
            row = self._one(table, user_id=args[0], device_id=args[1])
            return dict(row) if row else None
        if q.startswith("DELETE"):
            user_id, device_id = args
            removed = self._delete(table, lambda row: self._device_pair(row, user_id, device_id))
            if removed:
                self._delete("mobile_token_registry", lambda row: self._device_pair(row, user_id, device_id))
                self._delete_tokens(lambda row: self._device_pair(row, user_id, device_id))
            return f"DELETE {removed}"
        if "SET last_used_at" in q:
            row = self._one(table, user_id=args[0], device_id=args[1])
            if row:
                row["last_used_at"] = args[2]
            return f"UPDATE {1 if row else 0}"
        if "SET is_trusted = TRUE" in q:
            row = self._one(table, user_id=args[0], device_id=args[1])
            if row is None:
                return None
            row.update(is_trusted=True, trusted_at=args[2], trusted_until=args[3])
            return dict(row)
        if "SET is_trusted = FALSE" in q:
            if "trusted_until <= $1" in q:
                targets = [
                    row for row in self.tables[table]
                    if row["is_trusted"] and row["trusted_until"] <= args[0]
                ]
            else:
                targets = self.rows(table, user_id=args[0], device_id=args[1])
            for row in targets:
                row.update(is_trusted=False, trusted_at=None, trusted_until=None)
            return f"UPDATE {len(targets)}"

        raise NotImplementedError(f"FakeDatabase cannot run: {q}")

    def _registry(self, q, args):
        table = "mobile_token_registry"

        if q.startswith("INSERT INTO"):
            if self._one(table, user_id=args[0], device_id=args[1]) is None:
                self.tables[table].append({
                    "user_id": args[0],
                    "device_id": args[1],
                    "access_token_id": None,
                    "refresh_token_id": None,
                    "expires_at": args[2],
                    "created_at": args[2],
                })
                return "INSERT 0 1"
            return "INSERT 0 0"
        if q.startswith("SELECT"):
            entry = self._one(table, user_id=args[0], device_id=args[1])
            return dict(entry) if entry else None
        if q.startswith("UPDATE"):
            entry = self._one(table, user_id=args[0], device_id=args[1])
            if entry is None or ("refresh_token_id = $7" in q and entry["refresh_token_id"] != args[6]):
                return "UPDATE 0"
            entry.update(
                access_token_id=args[2],
                refresh_token_id=args[3],
                expires_at=args[4],
                created_at=args[5],
            )
            return "UPDATE 1"
        if q.startswith("DELETE"):
            if "expires_at <= $1" in q:
                removed = self._delete(table, lambda row: row["expires_at"] <= args[0])
            elif "device_id = $2" in q:
                removed = self._delete(table, lambda row: self._device_pair(row, args[0], args[1]))
            else:
                removed = self._delete(table, lambda row: row["user_id"] == args[0])
            return f"DELETE {removed}"

        raise NotImplementedError(f"FakeDatabase cannot run: {q}")

    def _tokens(self, kind, q, args):
        table = "mobile_tokens"

        if q.startswith("INSERT INTO"):
            if self._one(table, token_hash=args[4]):
                raise RuntimeError("duplicate token_hash")
            self.tables[table].append({
                "id": args[0],
                "user_id": args[1],
                "device_id": args[2],
                "token_type": args[3],
                "token_hash": args[4],
                "abilities": list(args[5]),
                "created_at": args[6],
                "expires_at": args[7],
                "last_used_at": None,
            })
            return "INSERT 0 1"
        if q.startswith("SELECT") and "token_hash = $1" in q:
            row = self._one(table, token_hash=args[0])
            return dict(row) if row else None
        if q.startswith("SELECT") and "ANY($1::uuid[])" in q:
            ids = set(args[0])
            return [dict(row) for row in self.tables[table] if row["id"] in ids]
        if q.startswith("UPDATE") and "SET last_used_at" in q:
            row = self._one(table, id=args[0])
            if row:
                row["last_used_at"] = args[1]
            return f"UPDATE {1 if row else 0}"
        if q.startswith("DELETE"):
            if "ANY($1::uuid[])" in q:
                ids = set(args[0])
                removed = self._delete_tokens(lambda row: row["id"] in ids)
            elif "token_hash = $1" in q:
                removed = self._delete_tokens(
                    lambda row: row["token_hash"] == args[0]
                    and self._device_pair(row, args[1], args[2])
                    and row["token_type"] == "access"
                )
            elif "expires_at <= $1" in q:
                removed = self._delete_tokens(
                    lambda row: row["expires_at"] is not None and row["expires_at"] <= args[0]
                )
            elif "device_id = $2" in q:
                removed = self._delete_tokens(lambda row: self._device_pair(row, args[0], args[1]))
            else:
                removed = self._delete_tokens(lambda row: row["user_id"] == args[0])
            return f"DELETE {removed}"

        raise NotImplementedError(f"FakeDatabase cannot run: {q}")

    def _events(self, q, args):
        columns = (
            "id", "event_type", "user_id", "tenant_id", "ip_address", "user_agent",
            "device_id", "session_id", "context", "risk_score", "occurred_at",
        )
        if q.startswith("INSERT INTO"):
            self.tables["security_events"].append(dict(zip(columns, args)))
            return "INSERT 0 1"
        if q.startswith("SELECT") and "WHERE user_id = $1" in q:
            found = sorted(
                self.rows("security_events", user_id=args[0]),
                key=lambda row: row["occurred_at"],
                reverse=True,
            )
            return [dict(row) for row in found[: args[1]]]

        raise NotImplementedError(f"FakeDatabase cannot run: {q}")


class FakeConnection:
    def __init__(self, db: FakeDatabase):
        self.db = db

    async def execute(self, sql, *args):
        return self.db.run("execute", sql, args)

    async def fetchrow(self, sql, *args):
        return self.db.run("fetchrow", sql, args)

    async def fetchval(self, sql, *args):
        return self.db.run("fetchval", sql, args)

    async def fetch(self, sql, *args):
        return self.db.run("fetch", sql, args)

    def transaction(self):
        return _FakeTransaction(self.db)


class _FakeTransaction:
    def __init__(self, db: FakeDatabase):
        self.db = db
        self._snapshot = None

    async def __aenter__(self):
        self._snapshot = copy.deepcopy(self.db.tables)
        return self

    async def __aexit__(self, exc_type, exc, tb):
        if exc_type is not None:
            self.db.tables = self._snapshot
        return False


class FakePool:
    def __init__(self, db: FakeDatabase):
        self.db = db

    def acquire(self):
        return _FakeAcquire(FakeConnection(self.db))


class _FakeAcquire:
    def __init__(self, conn):
        self._conn = conn

    async def __aenter__(self):
        return self._conn

    async def __aexit__(self, *args):
        pass


class FakeRedis:
    """The subset of redis.asyncio the services call, with TTLs."""

    def __init__(self, clock=time.monotonic):
        self._data: dict[str, str] = {}
        self._expires: dict[str, float] = {}
        self._clock = clock

    def _alive(self, key):
        expires_at = self._expires.get(key)
        if expires_at is not None and expires_at <= self._clock():
            self._data.pop(key, None)
            self._expires.pop(key, None)
        return key in self._data

    async def ping(self):
        return True

    async def get(self, key):
        return self._data[key] if self._alive(key) else None

    async def set(self, key, value, nx=False, ex=None):
        if nx and self._alive(key):
            return None
        self._data[key] = str(value)
        if ex is not None:
            self._expires[key] = self._clock() + ex
        return True

    async def setex(self, key, ttl, value):
        return await self.set(key, value, ex=ttl)

    async def getdel(self, key):
        value = await self.get(key)
        await self.delete(key)
        return value

    async def incr(self, key):
        value = int(self._data[key]) + 1 if self._alive(key) else 1
        self._data[key] = str(value)
        return value

    async def expire(self, key, ttl):
        if not self._alive(key):
            return False
        self._expires[key] = self._clock() + ttl
        return True

    async def ttl(self, key):
        if not self._alive(key):
            return -2
        if key not in self._expires:
            return -1
        return int(self._expires[key] - self._clock())

    async def delete(self, *keys):
        removed = 0
        for key in keys:
            if self._alive(key):
                removed += 1
            self._data.pop(key, None)
            self._expires.pop(key, None)
        return removed

    async def aclose(self):
        pass


@pytest.fixture
def db():
    return FakeDatabase()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def backends(db, fake_redis):
    """Point every service at the fake database and Redis."""
    pool = FakePool(db)
    with ExitStack() as stack:
        for module in (
            "src.services.device_service",
            "src.services.token_service",
            "src.services.security_event_service",
            "src.services.user_service",
        ):
            stack.enter_context(patch(f"{module}.get_pool", return_value=pool))
        for module in ("src.services.redis_service", "src.services.nonce_cache"):
            stack.enter_context(patch(f"{module}.get_redis", return_value=fake_redis))
        stack.enter_context(
            patch(
                "src.services.nonce_cache.get_settings",
                return_value=MagicMock(nonce_cache_backend="redis"),
            )
        )
        yield db, fake_redis


@pytest.fixture
def user(db):
    """An active user with a bcrypt password, owned by the external CRUD layer."""
    row = {
        "id": uuid4(),
        "username": "alice",
        "tenant_id": "tenant-1",
        "password_hash": AuthService().hash_password(USER_PASSWORD),
        "is_active": True,
        "is_admin": False,
    }
    db.tables["users"].append(row)
    return {**row, "password": USER_PASSWORD}
