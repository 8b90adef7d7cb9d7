"""Pytest configuration and fixtures."""

import asyncio
import copy
import os
from datetime import datetime
from types import SimpleNamespace
from typing import Any, Dict, List

import pytest
from bson import ObjectId, Decimal128
from pymongo.errors import DuplicateKeyError

# Set test environment variables before importing app modules
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key")
os.environ.setdefault("DEFAULT_OFFICE_CHARGE_PERCENT", "10")

from audit_service import AuditService  # noqa: E402
from core.approval_workflow import ApprovalWorkflow  # noqa: E402
from core.cancellation_engine import CancellationEngine  # noqa: E402
from core.ledger_posting import LedgerPostingHook  # noqa: E402
from core.refund_scheduler import RefundScheduler  # noqa: E402


# =============================================================================
# IN-MEMORY MOTOR STAND-IN
# =============================================================================
# Covers the query/update subset the services use. Every call yields to the
# event loop once before touching data, then reads and writes without
# yielding, so each call is atomic the way a single MongoDB operation is
# while concurrent tasks still interleave between calls.

def _matches_condition(value: Any, condition: Any) -> bool:
    if isinstance(condition, dict) and condition and all(k.startswith("$") for k in condition):
        for op, operand in condition.items():
            if op == "$ne" and value == operand:
                return False
            if op == "$in" and value not in operand:
                return False
            if op == "$nin" and value in operand:
                return False
            if op == "$gte" and (value is None or value < operand):
                return False
            if op == "$lte" and (value is None or value > operand):
                return False
            if op == "$gt" and (value is None or value <= operand):
                return False
            if op == "$lt" and (value is None or value >= operand):
                return False
            if op == "$exists" and (value is not None) != bool(operand):
                return False
        return True
    return value == condition


def matches(doc: Dict[str, Any], query: Dict[str, Any]) -> bool:
    return all(_matches_condition(doc.get(key), cond) for key, cond in (query or {}).items())


def apply_update(doc: Dict[str, Any], update: Dict[str, Any], inserting: bool = False) -> None:
    for key, value in update.get("$set", {}).items():
        doc[key] = copy.deepcopy(value)
    for key, value in update.get("$inc", {}).items():
        doc[key] = doc.get(key, 0) + value
    for key, value in update.get("$push", {}).items():
        doc.setdefault(key, []).append(copy.deepcopy(value))
    for key in update.get("$unset", {}):
        doc.pop(key, None)
    if inserting:
        for key, value in update.get("$setOnInsert", {}).items():
            doc[key] = copy.deepcopy(value)


class FakeCursor:

    def __init__(self, docs: List[Dict[str, Any]]):
        self._docs = docs
        self._skip = 0
        self._limit = 0

    def sort(self, key_or_list, direction=None):
        keys = key_or_list if isinstance(key_or_list, list) else [(key_or_list, direction or 1)]
        for key, order in reversed(keys):
            self._docs.sort(
                key=lambda d: (d.get(key) is not None, d.get(key) if d.get(key) is not None else 0),
                reverse=order == -1
            )
        return self

    def skip(self, count: int):
        self._skip = count
        return self

    def limit(self, count: int):
        self._limit = count
        return self

    def _window(self) -> List[Dict[str, Any]]:
        docs = self._docs[self._skip:]
        return docs[:self._limit] if self._limit else docs

    async def to_list(self, length=None):
        await asyncio.sleep(0)
        docs = self._window()
        return docs[:length] if length else docs

    def __aiter__(self):
        self._iter = iter(self._window())
        return self

    async def __anext__(self):
        try:
            return next(self._iter)
        except StopIteration:
            raise StopAsyncIteration


class FakeCollection:

    def __init__(self, name: str):
        self.name = name
        self.docs: List[Dict[str, Any]] = []
        self.unique_indexes: List[Dict[str, Any]] = []

    def _find(self, query) -> List[Dict[str, Any]]:
        return [d for d in self.docs if matches(d, query)]

    def _check_unique(self, candidate: Dict[str, Any]) -> None:
        for index in self.unique_indexes:
            partial = index["partial"]
            if partial and not matches(candidate, partial):
                continue
            key = tuple(candidate.get(f) for f in index["fields"])
            for existing in self.docs:
                if existing["_id"] == candidate["_id"]:
                    continue
                if partial and not matches(existing, partial):
                    continue
                if tuple(existing.get(f) for f in index["fields"]) == key:
                    raise DuplicateKeyError(f"E11000 duplicate key error index: {index['name']}")

    async def create_index(self, keys, unique=False, partialFilterExpression=None, name=None, **kwargs):
        await asyncio.sleep(0)
        fields = [k for k, _ in keys] if isinstance(keys, list) else [keys]
        if unique:
            self.unique_indexes.append({
                "fields": fields, "partial": partialFilterExpression, "name": name
            })
        return name

    async def find_one(self, query=None, *args, **kwargs):
        await asyncio.sleep(0)
        found = self._find(query)
        return copy.deepcopy(found[0]) if found else None

    def find(self, query=None, *args, **kwargs) -> FakeCursor:
        return FakeCursor([copy.deepcopy(d) for d in self._find(query)])

    async def count_documents(self, query, **kwargs) -> int:
        await asyncio.sleep(0)
        return len(self._find(query))

    async def insert_one(self, doc, **kwargs):
        await asyncio.sleep(0)
        doc.setdefault("_id", ObjectId())
        stored = copy.deepcopy(doc)
        self._check_unique(stored)
        self.docs.append(stored)
        return SimpleNamespace(inserted_id=doc["_id"], acknowledged=True)

    async def insert_many(self, docs, **kwargs):
        await asyncio.sleep(0)
        inserted = []
        for doc in docs:
            doc.setdefault("_id", ObjectId())
            stored = copy.deepcopy(doc)
            self._check_unique(stored)
            self.docs.append(stored)
            inserted.append(doc["_id"])
        return SimpleNamespace(inserted_ids=inserted, acknowledged=True)

    def _update(self, query, update, upsert):
        found = self._find(query)
        if found:
            target = found[0]
            before = copy.deepcopy(target)
            candidate = copy.deepcopy(target)
            apply_update(candidate, update)
            self._check_unique(candidate)
            target.clear()
            target.update(candidate)
            return before, target
        if not upsert:
            return None, None
        target = {k: copy.deepcopy(v) for k, v in query.items() if not isinstance(v, dict)}
        target["_id"] = ObjectId()
        apply_update(target, update, inserting=True)
        self._check_unique(target)
        self.docs.append(target)
        return None, target

    async def find_one_and_update(self, query, update, upsert=False,
                                  return_document=False, **kwargs):
        await asyncio.sleep(0)
        before, after = self._update(query, update, upsert)
        if after is None:
            return None
        result = after if return_document else before
        return copy.deepcopy(result)

    async def delete_many(self, query, **kwargs):
        await asyncio.sleep(0)
        kept = [d for d in self.docs if not matches(d, query)]
        deleted = len(self.docs) - len(kept)
        self.docs[:] = kept
        return SimpleNamespace(deleted_count=deleted, acknowledged=True)

    async def update_one(self, query, update, upsert=False, **kwargs):
        await asyncio.sleep(0)
        before, after = self._update(query, update, upsert)
        matched = 1 if before is not None else 0
        return SimpleNamespace(
            matched_count=matched,
            modified_count=matched,
            upserted_id=after["_id"] if after is not None and before is None else None
        )


class FakeDatabase:
    """Collections on attribute or item access, like AsyncIOMotorDatabase."""

    def __init__(self):
        self._collections: Dict[str, FakeCollection] = {}

    def __getitem__(self, name: str) -> FakeCollection:
        if name not in self._collections:
            self._collections[name] = FakeCollection(name)
        return self._collections[name]

    def __getattr__(self, name: str) -> FakeCollection:
        if name.startswith("_"):
            raise AttributeError(name)
        return self[name]


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def db():
    return FakeDatabase()


def make_user(db: FakeDatabase, role: str, name: str, active: bool = True) -> Dict[str, Any]:
    user_id = ObjectId()
    db.users.docs.append({
        "_id": user_id,
        "name": name,
        "email": f"{name.lower().replace(' ', '.')}@example.com",
        "role": role,
        "active_status": active,
        "created_at": datetime.utcnow()
    })
    return {"user_id": str(user_id), "role": role, "name": name}


@pytest.fixture
def admin(db):
    return make_user(db, "Admin", "Ada Admin")


@pytest.fixture
def account_manager(db):
    return make_user(db, "AccountManager", "Amir Accounts")


@pytest.fixture
def hof(db):
    return make_user(db, "HOF", "Hana Finance")


def make_sale(db: FakeDatabase, paid_amount, total_price=500000, status="Active") -> str:
    sale_id = ObjectId()
    db.sales.docs.append({
        "_id": sale_id,
        "sale_number": f"SAL-{str(sale_id)[-5:]}",
        "total_price": Decimal128(str(total_price)),
        "paid_amount": Decimal128(str(paid_amount)),
        "status": status,
        "is_active": True,
        "created_at": datetime.utcnow()
    })
    return str(sale_id)


@pytest.fixture
def sale_id(db):
    return make_sale(db, paid_amount=100000)


@pytest.fixture
def audit_service(db):
    return AuditService(db)


@pytest.fixture
def cancellation_engine(db, audit_service):
    return CancellationEngine(db, audit_service)


@pytest.fixture
def refund_scheduler(db, cancellation_engine, audit_service):
    return RefundScheduler(db, cancellation_engine, audit_service)


@pytest.fixture
def ledger_hook(db):
    return LedgerPostingHook(db)


@pytest.fixture
def receipt_workflow(db, audit_service, ledger_hook):
    return ApprovalWorkflow(db, "receipt", audit_service, on_approved=ledger_hook)


@pytest.fixture
def expense_workflow(db, audit_service, ledger_hook):
    return ApprovalWorkflow(db, "expense", audit_service, on_approved=ledger_hook)


@pytest.fixture
def refund_workflow(db, audit_service, refund_scheduler):
    return ApprovalWorkflow(
        db, "refund", audit_service, on_rejected=refund_scheduler.cancel_rejected_refund
    )
