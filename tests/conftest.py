import pytest
from fastapi.testclient import TestClient

from workbook_tracker.core import session_cache
from workbook_tracker.core.config import settings
from workbook_tracker.core.errors import PersistenceError
from workbook_tracker.core.security import get_store
from workbook_tracker.db.memory import MemoryStore
from workbook_tracker.db.store import CHAPTERS, GRADE_SHEETS, PROFILES, WORKBOOKS
from workbook_tracker.main import app

TEACHER = "11111111-1111-4111-8111-111111111111"
STUDENT_A = "22222222-2222-4222-8222-222222222222"
STUDENT_B = "33333333-3333-4333-8333-333333333333"
STUDENT_C = "44444444-4444-4444-8444-444444444444"
PENDING_STUDENT = "55555555-5555-4555-8555-555555555555"

PROFILE_ROWS = [
    {"id": TEACHER, "name": "Tanaka", "role": "teacher", "status": "active", "is_approved": True},
    {"id": STUDENT_A, "name": "Aiko", "role": "student", "status": "active", "is_approved": True},
    {"id": STUDENT_B, "name": "Ben", "role": "student", "status": "active", "is_approved": True},
    {"id": STUDENT_C, "name": "Chloe", "role": "student", "status": "active", "is_approved": True},
    {"id": PENDING_STUDENT, "name": "Dan", "role": "student", "status": "pending", "is_approved": False},
]


class FlakyStore(MemoryStore):
    """MemoryStore that raises PersistenceError on chosen writes."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.failures = []
        self.calls = []

    def fail(self, op, table, when=None):
        """Fail every ``op`` on ``table`` whose payload passes ``when``."""
        self.failures.append((op, table, when))

    def heal(self):
        self.failures.clear()

    def _check(self, op, table, payload):
        self.calls.append((op, table))
        for f_op, f_table, when in self.failures:
            if f_op == op and f_table == table and (when is None or when(payload)):
                raise PersistenceError(f"injected {op} failure on {table}")

    async def insert(self, table, rows):
        self._check("insert", table, rows)
        return await super().insert(table, rows)

    async def update(self, table, record_id, values):
        self._check("update", table, {"id": record_id, **values})
        return await super().update(table, record_id, values)

    async def upsert(self, table, rows, on_conflict):
        self._check("upsert", table, rows)
        return await super().upsert(table, rows, on_conflict)

    async def delete(self, table, **eq):
        self._check("delete", table, eq)
        return await super().delete(table, **eq)

    def writes(self, table):
        return [op for op, t in self.calls if t == table]


class Seeder:
    """Writes rows straight into a MemoryStore, bypassing the services."""

    def __init__(self, store):
        self.store = store

    def _add(self, table, row):
        row = MemoryStore._stamp(dict(row))
        self.store.tables.setdefault(table, []).append(row)
        return row

    def workbook(self, title, author_id=TEACHER, total=0):
        return self._add(WORKBOOKS, {"title": title, "author_id": author_id, "total_problem_count": total})

    def sheet(self, owner_id, problem_count, marks=None, labels=None, workbook_id=None, title="Drill", **extra):
        return self._add(GRADE_SHEETS, {
            "owner_id": owner_id,
            "workbook_id": workbook_id,
            "title": title,
            "problem_count": problem_count,
            "marks": marks if marks is not None else [""] * problem_count,
            "labels": labels if labels is not None else [str(i + 1) for i in range(problem_count)],
            **extra,
        })

    def chapter(self, grade_id, start_idx, end_idx, title=None, **extra):
        return self._add(CHAPTERS, {
            "grade_id": grade_id,
            "start_idx": start_idx,
            "end_idx": end_idx,
            "chapter_title": title,
            "chapter_note": "",
            "teacher_memo": "",
            "next_homework": "",
            **extra,
        })

    def row(self, table, record_id):
        return next(r for r in self.store.tables.get(table, []) if r["id"] == record_id)


@pytest.fixture(autouse=True)
def reset_sessions(monkeypatch):
    """Long autosave delay so pending writes only land on flush."""
    monkeypatch.setattr(settings, "AUTOSAVE_DELAY_MS", 60000)
    session_cache.clear()
    yield
    session_cache.clear()


@pytest.fixture()
def store():
    return FlakyStore({PROFILES: [dict(p) for p in PROFILE_ROWS]})


@pytest.fixture()
def seed(store):
    return Seeder(store)


@pytest.fixture()
def client(store):
    app.dependency_overrides[get_store] = lambda: store
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
