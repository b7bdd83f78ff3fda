"""
Test doubles for the Supabase client and Stripe objects.

FakeSupabase is an in-memory stand-in for the supabase-py query builder,
covering the chain methods the payment services use. Stripe calls are
patched per test with unittest.mock.
"""

import copy
import uuid
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import Any, Callable, Dict, List, Optional, Tuple

import stripe
from postgrest.exceptions import APIError
from supabase import AuthError

from marketplace_payments.database.models import AuthenticatedUser

BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


def stripe_object(**values) -> stripe.StripeObject:
    """Build a Stripe object that supports both attribute and key access."""
    return stripe.StripeObject.construct_from(values, "sk_test_123")


class FakeQuery:
    def __init__(self, db: "FakeSupabase", table: str):
        self.db = db
        self.table = table
        self.operation = "select"
        self.payload: Any = None
        self.on_conflict: Optional[str] = None
        self.filters: List[Tuple[Callable[[Dict[str, Any]], bool], bool]] = []
        self.ordering: Optional[Tuple[str, bool]] = None
        self.row_limit: Optional[int] = None
        self._negate = False

    # Operations

    def select(self, *columns, **kwargs):
        self.operation = "select"
        return self

    def insert(self, payload):
        self.operation, self.payload = "insert", payload
        return self

    def update(self, values):
        self.operation, self.payload = "update", values
        return self

    def upsert(self, payload, on_conflict: str = "id", **kwargs):
        self.operation, self.payload, self.on_conflict = "upsert", payload, on_conflict
        return self

    def delete(self):
        self.operation = "delete"
        return self

    # Filters

    def _filter(self, predicate):
        self.filters.append((predicate, self._negate))
        self._negate = False
        return self

    @property
    def not_(self):
        self._negate = True
        return self

    def eq(self, column, value):
        return self._filter(lambda row: row.get(column) == value)

    def neq(self, column, value):
        return self._filter(lambda row: row.get(column) != value)

    def in_(self, column, values):
        values = list(values)
        return self._filter(lambda row: row.get(column) in values)

    def is_(self, column, value):
        expected = {"null": None, "true": True, "false": False}[value]
        return self._filter(lambda row: self._column(row, column) is expected)

    def order(self, column, desc: bool = False, **kwargs):
        self.ordering = (column, desc)
        return self

    def limit(self, count):
        self.row_limit = count
        return self

    # Execution

    @staticmethod
    def _column(row, column):
        # JSON paths like "metadata->>key"
        if "->>" in column:
            name, key = column.split("->>", 1)
            return (row.get(name) or {}).get(key)
        return row.get(column)

    def _matches(self, row):
        return all(predicate(row) != negate for predicate, negate in self.filters)

    def execute(self):
        self.db.calls.append((self.table, self.operation))
        error = self.db.failures.get((self.table, self.operation))
        if error:
            raise APIError({"message": error, "code": "XX000", "details": "", "hint": ""})

        rows = self.db.tables.setdefault(self.table, [])
        if self.operation == "select":
            data = [copy.deepcopy(r) for r in rows if self._matches(r)]
            if self.ordering:
                column, desc = self.ordering
                data.sort(key=lambda r: (r.get(column) is None, r.get(column)), reverse=desc)
            if self.row_limit is not None:
                data = data[:self.row_limit]
        elif self.operation == "insert":
            data = [self.db.add_row(self.table, r) for r in self._payload_rows()]
        elif self.operation == "update":
            data = []
            for row in rows:
                if self._matches(row):
                    row.update(copy.deepcopy(self.payload))
                    data.append(copy.deepcopy(row))
        elif self.operation == "upsert":
            data = []
            for incoming in self._payload_rows():
                existing = next(
                    (r for r in rows if r.get(self.on_conflict) == incoming.get(self.on_conflict)), None
                )
                if existing is not None:
                    existing.update(copy.deepcopy(incoming))
                    data.append(copy.deepcopy(existing))
                else:
                    data.append(self.db.add_row(self.table, incoming))
        else:
            data = [copy.deepcopy(r) for r in rows if self._matches(r)]
            self.db.tables[self.table] = [r for r in rows if not self._matches(r)]

        return SimpleNamespace(data=data)

    def _payload_rows(self):
        return self.payload if isinstance(self.payload, list) else [self.payload]


class FakeAdminAuth:
    def __init__(self):
        self.updates: List[Tuple[str, Dict[str, Any]]] = []
        self.error: Optional[Exception] = None

    def update_user_by_id(self, user_id, attributes):
        if self.error:
            raise self.error
        self.updates.append((user_id, attributes))
        return SimpleNamespace(user=SimpleNamespace(id=user_id))


class FakeAuth:
    def __init__(self):
        self.tokens: Dict[str, AuthenticatedUser] = {}
        self.admin = FakeAdminAuth()

    def get_user(self, token):
        user = self.tokens.get(token)
        if user is None:
            raise AuthError("invalid JWT", None)
        return SimpleNamespace(user=SimpleNamespace(id=user.id, email=user.email, user_metadata=user.user_metadata))


class FakeSupabase:
    def __init__(self):
        self.tables: Dict[str, List[Dict[str, Any]]] = {}
        self.failures: Dict[Tuple[str, str], str] = {}
        self.calls: List[Tuple[str, str]] = []
        self.auth = FakeAuth()
        self._clock = 0

    def table(self, name):
        return FakeQuery(self, name)

    def add_row(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        self._clock += 1
        stored = {
            "id": str(uuid.uuid4()),
            "created_at": (BASE_TIME + timedelta(seconds=self._clock)).isoformat(),
            **copy.deepcopy(row),
        }
        self.tables.setdefault(table, []).append(stored)
        return copy.deepcopy(stored)

    def seed(self, table: str, *rows: Dict[str, Any]) -> List[Dict[str, Any]]:
        return [self.add_row(table, r) for r in rows]

    def fail(self, table: str, operation: str, message: str = "database unavailable"):
        self.failures[(table, operation)] = message

    def rows(self, table: str) -> List[Dict[str, Any]]:
        return self.tables.get(table, [])
