import sys
import os

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

import asyncio
import copy
import uuid

import pytest

from db import NotFoundError, StoreError
from identity import AuthError, AuthSession, AuthUser, validate_email


class InMemoryStore:
    """Stand-in for db.DocumentStore keeping tables as lists of dicts."""

    def __init__(self):
        self.tables = {}
        self.fail = False
        self.get_gate = None  # asyncio.Event that get() waits on when set
        self.read_count = 0
        self.write_count = 0

    def _rows(self, table):
        return self.tables.setdefault(table, [])

    def _check(self, table, operation):
        if self.fail:
            raise StoreError(f"{operation} on {table} failed: offline", table=table, operation=operation)

    def seed(self, table, row):
        self._rows(table).append(dict(row))

    async def get(self, table, doc_id, id_field="id"):
        if self.get_gate is not None:
            await self.get_gate.wait()
        self._check(table, "get")
        self.read_count += 1
        for row in self._rows(table):
            if str(row.get(id_field)) == str(doc_id):
                return copy.deepcopy(row)
        return None

    async def query(self, table, filters=None, order_by=None, descending=False):
        self._check(table, "select")
        self.read_count += 1
        rows = [
            copy.deepcopy(row) for row in self._rows(table)
            if all(row.get(k) == v for k, v in (filters or {}).items())
        ]
        if order_by:
            rows.sort(key=lambda r: (r.get(order_by) is None, r.get(order_by) or ""), reverse=descending)
        return rows

    async def create(self, table, data, id_field="id"):
        self._check(table, "insert")
        self.write_count += 1
        row = copy.deepcopy(data)
        if id_field not in row:
            row[id_field] = uuid.uuid4().hex[:20]
        self._rows(table).append(row)
        return str(row[id_field])

    async def update(self, table, doc_id, data, id_field="id"):
        self._check(table, "update")
        for row in self._rows(table):
            if str(row.get(id_field)) == str(doc_id):
                row.update(copy.deepcopy(data))
                self.write_count += 1
                return copy.deepcopy(row)
        raise NotFoundError(f"{table}/{doc_id} not found", table=table, operation="update")

    async def delete(self, table, doc_id, id_field="id"):
        self._check(table, "delete")
        rows = self._rows(table)
        for index, row in enumerate(rows):
            if str(row.get(id_field)) == str(doc_id):
                del rows[index]
                self.write_count += 1
                return
        raise NotFoundError(f"{table}/{doc_id} not found", table=table, operation="delete")

    def get_stats(self):
        return {"reads": self.read_count, "writes": self.write_count, "errors": 0, "last_error": None}

    def is_healthy(self):
        return not self.fail


class FakeIdentityProvider:
    """Stand-in for identity.SupabaseIdentityProvider."""

    def __init__(self, emit_initial=True):
        self.accounts = {}
        self.current = None
        self.callbacks = []
        self.emit_initial = emit_initial
        self.reset_requests = []
        self.fail_sign_out = False
        self.tokens = {}
        self.token_checks = 0
        self.verify_gate = None  # asyncio.Event that get_user() waits on when set

    def add_account(self, email, password, uid, display_name=None):
        self.accounts[email] = (password, AuthUser(id=uid, email=email, display_name=display_name))

    def _emit(self):
        for callback in list(self.callbacks):
            callback(self.current)

    async def sign_in_with_password(self, email, password):
        email = validate_email(email)
        account = self.accounts.get(email)
        if account is None or account[0] != password:
            raise AuthError("Invalid login credentials")
        self.current = account[1]
        access_token = f"token-{uuid.uuid4().hex[:12]}"
        self.tokens[access_token] = self.current
        self._emit()
        return AuthSession(user=self.current, access_token=access_token)

    async def get_user(self, access_token):
        self.token_checks += 1
        if self.verify_gate is not None:
            await self.verify_gate.wait()
        user = self.tokens.get(access_token)
        if user is None:
            raise AuthError("Invalid JWT")
        return user

    async def create_user(self, email, password, display_name):
        email = validate_email(email)
        if email in self.accounts:
            raise AuthError("User already registered")
        uid = f"uid-{uuid.uuid4().hex[:8]}"
        self.add_account(email, password, uid, display_name)
        return self.accounts[email][1]

    async def sign_out(self, access_token=None):
        if self.fail_sign_out:
            raise AuthError("Identity provider unavailable")
        if access_token is not None:
            self.tokens.pop(access_token, None)
            return
        self.current = None
        self._emit()

    async def send_reset(self, email):
        email = validate_email(email)
        if email not in self.accounts:
            raise AuthError("User not found")
        self.reset_requests.append(email)

    def subscribe_auth_changes(self, callback):
        self.callbacks.append(callback)
        if self.emit_initial:
            callback(self.current)
        return lambda: self.callbacks.remove(callback)


ADMIN = ("admin@example.com", "admin-pass", "uid-admin")
SUPER = ("chef@example.com", "super-pass", "uid-super")
STAFF = ("cook@example.com", "cook-pass", "uid-cook")


@pytest.fixture
def store():
    store = InMemoryStore()
    store.seed("admin_users", {
        "uid": ADMIN[2],
        "email": ADMIN[0],
        "display_name": "Ayu",
        "role": "admin",
        "created_at": "2024-05-01T08:00:00Z",
    })
    store.seed("admin_users", {
        "uid": SUPER[2],
        "email": SUPER[0],
        "display_name": "Budi",
        "role": "superadmin",
        "created_at": "2024-05-01T08:00:00Z",
    })
    return store


@pytest.fixture
def identity():
    provider = FakeIdentityProvider()
    for email, password, uid in (ADMIN, SUPER, STAFF):
        provider.add_account(email, password, uid)
    return provider


async def settle():
    """Let callbacks scheduled with call_soon_threadsafe and their tasks run."""
    for _ in range(5):
        await asyncio.sleep(0)
