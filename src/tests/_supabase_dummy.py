from __future__ import annotations

from dataclasses import dataclass, field
from types import SimpleNamespace
from typing import Any, Callable, Dict, List, Tuple


@dataclass
class _Record:
    op: str
    table: str
    payload: Any
    filters: List[Tuple[str, Any]] = field(default_factory=list)


class DummyError(Exception):
    """Raised by the double when a failure was injected."""


class DummySupabase:
    """Small in-memory Supabase double for the unit tests.

    Tables keep their rows so that selects see earlier upserts. ``fail_on``
    holds ``(target, op)`` pairs, e.g. ``("users", "upsert")`` or
    ``("storage", "upload")``, that raise ``DummyError`` when executed.
    """

    def __init__(self) -> None:
        self.records: list[_Record] = []
        self.rows: dict[str, list[dict[str, Any]]] = {}
        self.fail_on: set[tuple[str, str]] = set()
        self.storage = _DummyStorage(self)
        self.auth = _DummyAuth(self)

    def seed(self, table: str, rows: list[dict[str, Any]]) -> None:
        self.rows.setdefault(table, []).extend(dict(row) for row in rows)

    def check(self, target: str, op: str) -> None:
        if (target, op) in self.fail_on:
            raise DummyError(f"{target}.{op} failed")

    def table(self, name: str):
        return _DummyQuery(self, name)

    def ops(self, table: str, op: str) -> list[_Record]:
        return [rec for rec in self.records if rec.table == table and rec.op == op]


class _DummyQuery:
    def __init__(self, supabase: DummySupabase, name: str) -> None:
        self.supabase = supabase
        self.name = name
        self._op = "select"
        self._payload: Any = None
        self._on_conflict = ""
        self._filters: list[tuple[str, Any]] = []
        self._order: tuple[str, bool] | None = None

    # Method chain used by supabase-py
    def select(self, *args: Any, **kwargs: Any):
        self._op = "select"
        return self

    def upsert(self, payload: dict[str, Any], on_conflict: str = "", **kwargs: Any):
        self._op = "upsert"
        self._payload = payload
        self._on_conflict = on_conflict
        return self

    def update(self, payload: dict[str, Any]):
        self._op = "update"
        self._payload = payload
        return self

    def delete(self):
        self._op = "delete"
        return self

    def eq(self, column: str, value: Any):
        self._filters.append((column, value))
        return self

    def order(self, column: str, desc: bool = False):
        self._order = (column, desc)
        return self

    def _matches(self, row: dict[str, Any]) -> bool:
        return all(row.get(column) == value for column, value in self._filters)

    def execute(self):
        self.supabase.check(self.name, self._op)
        self.supabase.records.append(
            _Record(self._op, self.name, self._payload, list(self._filters))
        )
        rows = self.supabase.rows.setdefault(self.name, [])

        if self._op == "select":
            data = [dict(row) for row in rows if self._matches(row)]
            if self._order is not None:
                column, desc = self._order
                data.sort(key=lambda row: row.get(column) or "", reverse=desc)
            return SimpleNamespace(data=data)

        if self._op == "upsert":
            key = self._on_conflict or "id"
            for row in rows:
                if row.get(key) == self._payload.get(key):
                    row.update(self._payload)
                    return SimpleNamespace(data=[dict(row)])
            rows.append(dict(self._payload))
            return SimpleNamespace(data=[dict(self._payload)])

        if self._op == "update":
            updated = []
            for row in rows:
                if self._matches(row):
                    row.update(self._payload)
                    updated.append(dict(row))
            return SimpleNamespace(data=updated)

        kept = [row for row in rows if not self._matches(row)]
        removed = [row for row in rows if self._matches(row)]
        self.supabase.rows[self.name] = kept
        return SimpleNamespace(data=removed)


class _DummyStorage:
    def __init__(self, supabase: DummySupabase) -> None:
        self.supabase = supabase
        self.objects: dict[str, dict[str, bytes]] = {}
        self.uploads: list[dict[str, Any]] = []
        self.public_base = "https://project.supabase.co/storage/v1/object/public"

    def from_(self, bucket: str):
        return _DummyBucket(self, bucket)


class _DummyBucket:
    def __init__(self, storage: _DummyStorage, bucket: str) -> None:
        self.storage = storage
        self.bucket = bucket

    @property
    def _objects(self) -> dict[str, bytes]:
        return self.storage.objects.setdefault(self.bucket, {})

    def upload(self, path: str, file: bytes, file_options: dict[str, str] | None = None):
        self.storage.supabase.check("storage", "upload")
        self.storage.uploads.append(
            {"bucket": self.bucket, "path": path, "file_options": dict(file_options or {})}
        )
        self._objects[path] = file
        return SimpleNamespace(path=path)

    def get_public_url(self, path: str) -> str:
        self.storage.supabase.check("storage", "get_public_url")
        return f"{self.storage.public_base}/{self.bucket}/{path}"

    def download(self, path: str) -> bytes:
        self.storage.supabase.check("storage", "download")
        if path not in self._objects:
            raise DummyError(f"object not found: {path}")
        return self._objects[path]

    def remove(self, paths: list[str]):
        self.storage.supabase.check("storage", "remove")
        for path in paths:
            self._objects.pop(path, None)
        return [{"name": path} for path in paths]

    def create_signed_url(self, path: str, expires_in: int):
        self.storage.supabase.check("storage", "create_signed_url")
        return {"signedURL": f"https://signed.example/{path}?expires={expires_in}"}


def make_auth_user(user_id: str = "auth-user-1", **overrides: Any) -> SimpleNamespace:
    values: Dict[str, Any] = {
        "id": user_id,
        "email": "user@example.com",
        "email_confirmed_at": "2026-01-01T00:00:00+00:00",
        "user_metadata": {"name": "Ada", "full_name": "Ada Lovelace", "sub": "apple-123"},
    }
    values.update(overrides)
    return SimpleNamespace(**values)


class _DummyAuth:
    def __init__(self, supabase: DummySupabase) -> None:
        self.supabase = supabase
        self.session: SimpleNamespace | None = None
        self.credentials: list[dict[str, Any]] = []
        self.listeners: list[Callable[[str, Any], None]] = []
        self.next_user = make_auth_user()

    def sign_in_with_id_token(self, credentials: dict[str, Any]):
        self.supabase.check("auth", "sign_in")
        self.credentials.append(dict(credentials))
        self.session = SimpleNamespace(user=self.next_user)
        return SimpleNamespace(user=self.next_user, session=self.session)

    def sign_out(self) -> None:
        self.supabase.check("auth", "sign_out")
        self.session = None

    def get_session(self):
        self.supabase.check("auth", "get_session")
        return self.session

    def on_auth_state_change(self, callback: Callable[[str, Any], None]):
        self.listeners.append(callback)
        return SimpleNamespace(unsubscribe=lambda: self.listeners.remove(callback))

    def emit(self, event: str, session: Any = None) -> None:
        for callback in list(self.listeners):
            callback(event, session)
