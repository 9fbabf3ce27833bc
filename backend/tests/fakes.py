"""
Test helpers: an in-memory stand-in for the Motor database handle, plus
ledger seeding and auth header shortcuts.

Covers the subset of the collection API the credit services call
(insert_one, find_one, find().sort().skip().limit().to_list(),
find_one_and_update, update_one, aggregate($match/$group $sum), create_index)
including unique / partial indexes. Every call yields to the event loop once
before touching data, so concurrent coroutines interleave between calls the
way they would against a real server.
"""
import asyncio
import copy
import itertools
import re
from types import SimpleNamespace

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from auth import create_access_token
from models.ledger import LedgerEntry, LedgerMetadata, LedgerStatus

ADMIN_UID = "internal-admin"
ADMIN_EMAIL = "ops@pdfapp.test"

_MISSING = object()
_object_ids = itertools.count(1)


def seed_credits(db, user_id: str, credits: int, reference: str = None) -> LedgerEntry:
    """Write a purchase entry straight into the fake ledger (no event loop needed)."""
    entry = LedgerEntry(
        user_id=user_id,
        action_key="credit_purchase",
        credits=credits,
        status=LedgerStatus.PURCHASED,
        metadata=LedgerMetadata(
            pack_id="pack_small",
            purchase_reference=reference or f"seed-{user_id}-{next(_object_ids)}",
        ),
    )
    db.credit_ledger.docs.append(entry.model_dump(exclude_none=True))
    return entry


def run_sync(coro):
    """Drive a coroutine that never suspends (index setup) without an event loop."""
    try:
        coro.send(None)
    except StopIteration as done:
        return done.value
    coro.close()
    raise RuntimeError("coroutine suspended; run it inside the event loop instead")


def auth_headers(user_id: str, email: str = None) -> dict:
    claims = {"sub": user_id}
    if email:
        claims["email"] = email
    return {"Authorization": f"Bearer {create_access_token(claims)}"}


def _get_path(doc, path):
    current = doc
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return _MISSING
        current = current[part]
    return current


def _set_path(doc, path, value):
    parts = path.split(".")
    current = doc
    for part in parts[:-1]:
        current = current.setdefault(part, {})
    current[parts[-1]] = copy.deepcopy(value)


def _type_matches(value, type_name):
    if type_name == "string":
        return isinstance(value, str)
    if type_name == "null":
        return value is None
    raise NotImplementedError(f"$type {type_name!r}")


def _compare(value, op, operand):
    if op == "$eq":
        return _equals(value, operand)
    if op == "$ne":
        return not _equals(value, operand)
    if op == "$in":
        return any(_equals(value, candidate) for candidate in operand)
    if op == "$nin":
        return not any(_equals(value, candidate) for candidate in operand)
    if op == "$exists":
        return (value is not _MISSING) == bool(operand)
    if op == "$type":
        return value is not _MISSING and _type_matches(value, operand)
    if value is _MISSING or value is None:
        return False
    if op == "$lt":
        return value < operand
    if op == "$lte":
        return value <= operand
    if op == "$gt":
        return value > operand
    if op == "$gte":
        return value >= operand
    raise NotImplementedError(f"query operator {op}")


def _equals(value, expected):
    if expected is None:
        return value is _MISSING or value is None
    return value is not _MISSING and value == expected


def matches(doc, query):
    for key, condition in query.items():
        if key == "$or":
            if not any(matches(doc, sub) for sub in condition):
                return False
            continue
        if key == "$and":
            if not all(matches(doc, sub) for sub in condition):
                return False
            continue
        value = _get_path(doc, key)
        if isinstance(condition, dict) and condition and all(k.startswith("$") for k in condition):
            if not all(_compare(value, op, operand) for op, operand in condition.items()):
                return False
        elif not _equals(value, condition):
            return False
    return True


def _project(doc, projection):
    doc = copy.deepcopy(doc)
    if not projection:
        return doc
    included = [k for k, v in projection.items() if v and k != "_id"]
    if included:
        projected = {k: doc[k] for k in included if k in doc}
        if projection.get("_id", 1) and "_id" in doc:
            projected["_id"] = doc["_id"]
        return projected
    for key, flag in projection.items():
        if not flag:
            doc.pop(key, None)
    return doc


def _sort_key(value):
    if value is _MISSING or value is None:
        return (0, 0)
    return (1, value)


class FakeCursor:
    def __init__(self, docs):
        self._docs = docs
        self._sort = []
        self._skip = 0
        self._limit = 0

    def sort(self, key_or_list, direction=1):
        if isinstance(key_or_list, str):
            self._sort = [(key_or_list, direction)]
        else:
            self._sort = list(key_or_list)
        return self

    def skip(self, count):
        self._skip = count
        return self

    def limit(self, count):
        self._limit = count
        return self

    async def to_list(self, length=None):
        await asyncio.sleep(0)
        docs = list(self._docs)
        for key, direction in reversed(self._sort):
            docs.sort(key=lambda d: _sort_key(_get_path(d, key)), reverse=direction < 0)
        docs = docs[self._skip:]
        if self._limit:
            docs = docs[:self._limit]
        if length:
            docs = docs[:length]
        return docs


class FakeCollection:
    def __init__(self, name):
        self.name = name
        self.docs = []
        self.indexes = []
        # Set to an exception instance to make the next writes fail
        self.fail_writes_with = None

    async def create_index(self, keys, unique=False, sparse=False, partialFilterExpression=None, **kwargs):
        fields = [keys] if isinstance(keys, str) else [k for k, _ in keys]
        self.indexes.append(SimpleNamespace(
            fields=fields,
            unique=unique,
            sparse=sparse,
            partial=partialFilterExpression,
        ))
        return "_".join(fields)

    def _check_unique(self, candidate, ignore=None):
        for index in self.indexes:
            if not index.unique:
                continue
            if index.partial and not matches(candidate, index.partial):
                continue
            values = [_get_path(candidate, f) for f in index.fields]
            if index.sparse and all(v is _MISSING for v in values):
                continue
            for existing in self.docs:
                if existing is ignore:
                    continue
                if index.partial and not matches(existing, index.partial):
                    continue
                existing_values = [_get_path(existing, f) for f in index.fields]
                if index.sparse and all(v is _MISSING for v in existing_values):
                    continue
                normalize = [None if v is _MISSING else v for v in values]
                if normalize == [None if v is _MISSING else v for v in existing_values]:
                    raise DuplicateKeyError(
                        f"E11000 duplicate key error collection: {self.name} index: {'_'.join(index.fields)}",
                        code=11000,
                    )

    def _raise_injected(self):
        if self.fail_writes_with is not None:
            raise self.fail_writes_with

    async def insert_one(self, document):
        await asyncio.sleep(0)
        self._raise_injected()
        stored = copy.deepcopy(document)
        stored.setdefault("_id", next(_object_ids))
        self._check_unique(stored)
        self.docs.append(stored)
        return SimpleNamespace(inserted_id=stored["_id"], acknowledged=True)

    async def find_one(self, query=None, projection=None):
        await asyncio.sleep(0)
        for doc in self.docs:
            if matches(doc, query or {}):
                return _project(doc, projection)
        return None

    def find(self, query=None, projection=None):
        return FakeCursor([_project(d, projection) for d in self.docs if matches(d, query or {})])

    async def count_documents(self, query):
        await asyncio.sleep(0)
        return sum(1 for d in self.docs if matches(d, query))

    def _apply_update(self, doc, update, inserting=False):
        for path, value in update.get("$set", {}).items():
            _set_path(doc, path, value)
        for path, amount in update.get("$inc", {}).items():
            current = _get_path(doc, path)
            _set_path(doc, path, (0 if current is _MISSING else current) + amount)
        if inserting:
            for path, value in update.get("$setOnInsert", {}).items():
                _set_path(doc, path, value)

    def _upsert(self, query, update):
        doc = {k: copy.deepcopy(v) for k, v in query.items()
               if not k.startswith("$") and not isinstance(v, dict)}
        self._apply_update(doc, update, inserting=True)
        doc.setdefault("_id", next(_object_ids))
        self._check_unique(doc)
        self.docs.append(doc)
        return doc

    async def update_one(self, query, update, upsert=False):
        await asyncio.sleep(0)
        self._raise_injected()
        for doc in self.docs:
            if matches(doc, query):
                before = copy.deepcopy(doc)
                self._apply_update(doc, update)
                return SimpleNamespace(matched_count=1, modified_count=int(before != doc), upserted_id=None)
        if upsert:
            doc = self._upsert(query, update)
            return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=doc["_id"])
        return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=None)

    async def find_one_and_update(self, query, update, projection=None,
                                  return_document=ReturnDocument.BEFORE, upsert=False):
        await asyncio.sleep(0)
        self._raise_injected()
        for doc in self.docs:
            if matches(doc, query):
                before = _project(doc, projection)
                self._apply_update(doc, update)
                return _project(doc, projection) if return_document == ReturnDocument.AFTER else before
        if upsert:
            doc = self._upsert(query, update)
            return _project(doc, projection) if return_document == ReturnDocument.AFTER else None
        return None

    def aggregate(self, pipeline):
        docs = [copy.deepcopy(d) for d in self.docs]
        for stage in pipeline:
            if "$match" in stage:
                docs = [d for d in docs if matches(d, stage["$match"])]
            elif "$group" in stage:
                docs = self._group(docs, stage["$group"])
            else:
                raise NotImplementedError(f"aggregate stage {list(stage)}")
        return FakeCursor(docs)

    @staticmethod
    def _group(docs, spec):
        if spec["_id"] is not None:
            raise NotImplementedError("$group only supports _id: None")
        if not docs:
            return []
        grouped = {"_id": None}
        for name, accumulator in spec.items():
            if name == "_id":
                continue
            field = re.sub(r"^\$", "", accumulator["$sum"])
            grouped[name] = sum(
                value for value in (_get_path(d, field) for d in docs)
                if value is not _MISSING and value is not None
            )
        return [grouped]


class FakeDatabase:
    """Attribute or item access returns a lazily created FakeCollection."""

    def __init__(self):
        self._collections = {}

    def __getattr__(self, name):
        if name.startswith("_"):
            raise AttributeError(name)
        return self[name]

    def __getitem__(self, name):
        if name not in self._collections:
            self._collections[name] = FakeCollection(name)
        return self._collections[name]

    async def command(self, name):
        return {"ok": 1.0}
