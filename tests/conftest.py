import asyncio
import itertools
import os
import sys
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient
from supabase import AuthApiError

# Ensure we can import from the parent directory
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from main import app
from db import get_supabase

TABLE_DEFAULTS = {
    "profiles": {"subscription_plan": "NONE", "push_token": None, "full_name": None},
    "services": {"description": None, "image_url": None},
    "service_bookings": {
        "started_at": None,
        "ended_at": None,
        "feedback": None,
        "rating": None,
        "price_at_acceptance": None,
        "checkout_session_id": None,
    },
    "notifications": {"kind": "info", "content": None},
}

_clock = itertools.count()


def _timestamp() -> str:
    # Strictly increasing so newest-first ordering is deterministic.
    base = datetime(2024, 1, 1, tzinfo=timezone.utc)
    return (base + timedelta(seconds=next(_clock))).isoformat()


class FakeQuery:
    """In-memory stand-in for the PostgREST query builder (only what the app uses)."""

    def __init__(self, store: dict, table: str):
        self.store = store
        self.table = table
        self.op = "select"
        self.payload = None
        self.filters = []
        self.order_by = None
        self.window = None

    def select(self, *_columns):
        self.op = "select"
        return self

    def insert(self, payload):
        self.op = "insert"
        self.payload = payload
        return self

    def update(self, payload):
        self.op = "update"
        self.payload = payload
        return self

    def eq(self, column, value):
        self.filters.append(lambda row: str(row.get(column)) == str(value))
        return self

    def in_(self, column, values):
        allowed = {str(v) for v in values}
        self.filters.append(lambda row: str(row.get(column)) in allowed)
        return self

    def is_(self, column, value):
        assert value == "null"
        self.filters.append(lambda row: row.get(column) is None)
        return self

    def or_(self, expression):
        clauses = []
        for part in expression.split(","):
            column, op, pattern = part.split(".", 2)
            assert op == "ilike"
            clauses.append((column, pattern.strip("%").lower()))
        self.filters.append(
            lambda row: any(term in str(row.get(col) or "").lower() for col, term in clauses)
        )
        return self

    def order(self, column, desc=False):
        self.order_by = (column, desc)
        return self

    def range(self, start, end):
        self.window = (start, end)
        return self

    def _matches(self, row):
        return all(f(row) for f in self.filters)

    async def execute(self):
        # Yield once so concurrent callers interleave; the write itself stays atomic.
        await asyncio.sleep(0)
        rows = self.store.setdefault(self.table, [])

        if self.op == "insert":
            items = self.payload if isinstance(self.payload, list) else [self.payload]
            created = []
            for item in items:
                row = {**TABLE_DEFAULTS.get(self.table, {}), "created_at": _timestamp(), **item}
                if "id" not in row:
                    row["id"] = len(rows) + 1 if self.table == "notifications" else str(uuid4())
                rows.append(row)
                created.append(dict(row))
            return SimpleNamespace(data=created)

        if self.op == "update":
            updated = []
            for row in rows:
                if self._matches(row):
                    row.update(self.payload)
                    updated.append(dict(row))
            return SimpleNamespace(data=updated)

        result = [dict(row) for row in rows if self._matches(row)]
        if self.order_by:
            column, desc = self.order_by
            result.sort(key=lambda r: str(r.get(column) or ""), reverse=desc)
        if self.window:
            start, end = self.window
            result = result[start:end + 1]
        return SimpleNamespace(data=result)


class FakeAuth:
    def __init__(self):
        self.tokens = {}
        self.outage = None

    async def get_user(self, token):
        if self.outage is not None:
            raise self.outage
        user = self.tokens.get(token)
        if user is None:
            raise AuthApiError("invalid JWT", 401, "bad_jwt")
        return SimpleNamespace(user=user)


class FakeBucket:
    def __init__(self, storage, name):
        self.storage = storage
        self.name = name

    async def upload(self, path, content, options=None):
        if self.storage.fail_uploads:
            raise Exception("bucket unavailable")
        self.storage.objects[(self.name, path)] = content
        return SimpleNamespace(path=path)

    async def get_public_url(self, path):
        return f"https://storage.example.com/{self.name}/{path}"


class FakeStorage:
    def __init__(self):
        self.objects = {}
        self.fail_uploads = False

    def from_(self, name):
        return FakeBucket(self, name)


class FakeSupabase:
    def __init__(self):
        self.store = {}
        self.auth = FakeAuth()
        self.storage = FakeStorage()

    def table(self, name):
        return FakeQuery(self.store, name)

    def rows(self, table):
        return self.store.setdefault(table, [])

    def add_user(self, role=None, plan="NONE", email=None):
        """Registers an auth user (and a profile when a role is given)."""
        user_id = str(uuid4())
        token = f"token-{user_id}"
        email = email or f"{user_id[:8]}@example.com"
        self.auth.tokens[token] = SimpleNamespace(id=user_id, email=email)
        if role:
            self.rows("profiles").append({
                **TABLE_DEFAULTS["profiles"],
                "id": user_id,
                "email": email,
                "role": role,
                "subscription_plan": plan,
                "full_name": "Test User",
            })
        return SimpleNamespace(id=user_id, email=email, headers={"Authorization": f"Bearer {token}"})

    def add_service(self, provider_id, price="100.00", name="Deep Cleaning", description="Whole apartment"):
        row = {
            **TABLE_DEFAULTS["services"],
            "id": str(uuid4()),
            "created_at": _timestamp(),
            "name": name,
            "description": description,
            "price": price,
            "created_by": provider_id,
        }
        self.rows("services").append(row)
        return row

    def add_booking(self, customer_id, provider_id, service_id, status="PENDING", **extra):
        row = {
            **TABLE_DEFAULTS["service_bookings"],
            "id": str(uuid4()),
            "created_at": _timestamp(),
            "customer_id": customer_id,
            "provider_id": provider_id,
            "service_id": service_id,
            "status": status,
            **extra,
        }
        self.rows("service_bookings").append(row)
        return row

    def booking(self, booking_id):
        return next(r for r in self.rows("service_bookings") if r["id"] == str(booking_id))

    def profile(self, user_id):
        return next(r for r in self.rows("profiles") if r["id"] == str(user_id))


@pytest.fixture
def fake_supabase():
    return FakeSupabase()


@pytest.fixture
def client(fake_supabase):
    app.dependency_overrides[get_supabase] = lambda: fake_supabase
    yield TestClient(app)
    app.dependency_overrides = {}


@pytest.fixture
def provider(fake_supabase):
    return fake_supabase.add_user(role="service_provider", plan="PROVIDER")


@pytest.fixture
def customer(fake_supabase):
    return fake_supabase.add_user(role="customer")


@pytest.fixture
def service(fake_supabase, provider):
    return fake_supabase.add_service(provider.id)
