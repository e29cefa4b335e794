"""
In-memory stand-in for the parts of motor the finance engine uses.

Supports:
- client[db_name], db.collection / db["collection"]
- start_session() / start_transaction() with snapshot rollback
- find_one, find (sort / limit / to_list / async for), insert_one,
  insert_many, update_one (upsert), update_many, count_documents,
  create_index
- $set, $inc (Decimal128 aware), $push, $unset, $setOnInsert
- Filters: equality, dotted paths into embedded lists, $in, $nin, $ne,
  $exists, $gt, $gte, $lt, $lte
- Failure injection per collection operation and on commit
"""

from bson import ObjectId, Decimal128
from decimal import Decimal
from types import SimpleNamespace
import copy


_MISSING = object()


def _comparable(value):
    if isinstance(value, Decimal128):
        return value.to_decimal()
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return Decimal(str(value))
    return value


def _resolve(doc, path):
    """All values reachable at a dotted path, walking into lists"""
    values = [doc]
    for part in path.split("."):
        next_values = []
        for value in values:
            if isinstance(value, dict):
                if part in value:
                    next_values.append(value[part])
            elif isinstance(value, list):
                for item in value:
                    if isinstance(item, dict) and part in item:
                        next_values.append(item[part])
        values = next_values
    return values


def _equals(candidate, expected):
    if isinstance(candidate, list) and not isinstance(expected, list):
        return any(_equals(item, expected) for item in candidate)
    return _comparable(candidate) == _comparable(expected)


def _match_condition(doc, path, condition):
    candidates = _resolve(doc, path)

    if isinstance(condition, dict) and condition and all(k.startswith("$") for k in condition):
        for op, operand in condition.items():
            if op == "$in":
                if not candidates:
                    if None not in operand:
                        return False
                elif not any(_equals(c, o) for c in candidates for o in operand):
                    return False
            elif op == "$nin":
                if any(_equals(c, o) for c in candidates for o in operand):
                    return False
            elif op == "$ne":
                if any(_equals(c, operand) for c in candidates):
                    return False
                if not candidates and operand is None:
                    return False
            elif op == "$exists":
                if bool(candidates) != bool(operand):
                    return False
            elif op in ("$gt", "$gte", "$lt", "$lte"):
                target = _comparable(operand)
                checks = {
                    "$gt": lambda v: v > target,
                    "$gte": lambda v: v >= target,
                    "$lt": lambda v: v < target,
                    "$lte": lambda v: v <= target,
                }
                if not any(
                    c is not None and checks[op](_comparable(c)) for c in candidates
                ):
                    return False
            else:
                raise NotImplementedError(f"Unsupported query operator: {op}")
        return True

    if not candidates:
        return condition is None
    return any(_equals(c, condition) for c in candidates)


def matches(doc, query):
    return all(_match_condition(doc, path, condition) for path, condition in (query or {}).items())


def _set_path(doc, path, value):
    parts = path.split(".")
    target = doc
    for part in parts[:-1]:
        if not isinstance(target.get(part), dict):
            target[part] = {}
        target = target[part]
    target[parts[-1]] = copy.deepcopy(value)


def _get_path(doc, path):
    target = doc
    for part in path.split("."):
        if not isinstance(target, dict) or part not in target:
            return _MISSING
        target = target[part]
    return target


def _unset_path(doc, path):
    parts = path.split(".")
    target = doc
    for part in parts[:-1]:
        target = target.get(part)
        if not isinstance(target, dict):
            return
    target.pop(parts[-1], None)


def _increment(current, amount):
    if current is _MISSING or current is None:
        if current is None:
            raise TypeError("Cannot apply $inc to a null value")
        return amount
    if isinstance(current, Decimal128) or isinstance(amount, Decimal128):
        return Decimal128(_comparable(current) + _comparable(amount))
    return current + amount


def apply_update(doc, update, inserting=False):
    for op, fields in update.items():
        if op == "$set":
            for path, value in fields.items():
                _set_path(doc, path, value)
        elif op == "$setOnInsert":
            if inserting:
                for path, value in fields.items():
                    _set_path(doc, path, value)
        elif op == "$inc":
            for path, amount in fields.items():
                _set_path(doc, path, _increment(_get_path(doc, path), amount))
        elif op == "$push":
            for path, value in fields.items():
                current = _get_path(doc, path)
                if current is _MISSING or current is None:
                    current = []
                _set_path(doc, path, list(current) + [value])
        elif op == "$unset":
            for path in fields:
                _unset_path(doc, path)
        else:
            raise NotImplementedError(f"Unsupported update operator: {op}")


class FakeCursor:

    def __init__(self, docs):
        self._docs = docs
        self._limit = None

    def sort(self, key_or_list, direction=1):
        keys = key_or_list if isinstance(key_or_list, list) else [(key_or_list, direction)]
        for key, dirn in reversed(keys):
            self._docs.sort(
                key=lambda d: (_get_path(d, key) in (None, _MISSING), _comparable(_get_path(d, key))
                               if _get_path(d, key) is not _MISSING else None),
                reverse=dirn == -1
            )
        return self

    def limit(self, n):
        self._limit = n
        return self

    def _results(self):
        return self._docs if not self._limit else self._docs[:self._limit]

    async def to_list(self, length=None):
        results = self._results()
        return results if length is None else results[:length]

    def __aiter__(self):
        self._iter = iter(self._results())
        return self

    async def __anext__(self):
        try:
            return next(self._iter)
        except StopIteration:
            raise StopAsyncIteration


class FakeCollection:

    def __init__(self, name):
        self.name = name
        self.docs = []
        self._failures = {}

    def fail_next(self, operation, exc):
        """Make the next call to ``operation`` raise ``exc``"""
        self._failures.setdefault(operation, []).append(exc)

    def _maybe_fail(self, operation):
        pending = self._failures.get(operation)
        if pending:
            raise pending.pop(0)

    async def create_index(self, keys, **kwargs):
        return "fake_index"

    async def find_one(self, query=None, projection=None, session=None):
        self._maybe_fail("find_one")
        for doc in self.docs:
            if matches(doc, query):
                return copy.deepcopy(doc)
        return None

    def find(self, query=None, projection=None, session=None):
        return FakeCursor([copy.deepcopy(d) for d in self.docs if matches(d, query)])

    async def count_documents(self, query, session=None):
        return len([d for d in self.docs if matches(d, query)])

    async def insert_one(self, doc, session=None):
        self._maybe_fail("insert_one")
        if "_id" not in doc:
            doc["_id"] = ObjectId()
        self.docs.append(copy.deepcopy(doc))
        return SimpleNamespace(inserted_id=doc["_id"], acknowledged=True)

    async def insert_many(self, docs, session=None):
        self._maybe_fail("insert_many")
        ids = []
        for doc in docs:
            if "_id" not in doc:
                doc["_id"] = ObjectId()
            self.docs.append(copy.deepcopy(doc))
            ids.append(doc["_id"])
        return SimpleNamespace(inserted_ids=ids, acknowledged=True)

    async def update_one(self, query, update, upsert=False, session=None):
        self._maybe_fail("update_one")
        for doc in self.docs:
            if matches(doc, query):
                apply_update(doc, update)
                return SimpleNamespace(matched_count=1, modified_count=1, upserted_id=None)

        if upsert:
            new_doc = {k: copy.deepcopy(v) for k, v in query.items() if not isinstance(v, dict)}
            new_doc.setdefault("_id", ObjectId())
            apply_update(new_doc, update, inserting=True)
            self.docs.append(new_doc)
            return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=new_doc["_id"])

        return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=None)

    async def update_many(self, query, update, session=None):
        self._maybe_fail("update_many")
        count = 0
        for doc in self.docs:
            if matches(doc, query):
                apply_update(doc, update)
                count += 1
        return SimpleNamespace(matched_count=count, modified_count=count, upserted_id=None)


class FakeDatabase:

    def __init__(self, name):
        self.name = name
        self.collections = {}

    def __getitem__(self, name):
        if name not in self.collections:
            self.collections[name] = FakeCollection(name)
        return self.collections[name]

    def __getattr__(self, name):
        if name.startswith("_"):
            raise AttributeError(name)
        return self[name]


class _TransactionContext:

    def __init__(self, session):
        self.session = session

    async def __aenter__(self):
        self.session._begin()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        if exc_type is not None:
            self.session._abort()
            return False
        self.session._commit()
        return False


class FakeSession:

    def __init__(self, client):
        self.client = client
        self._snapshot = None
        self.in_transaction = False
        self.committed = 0
        self.aborted = 0

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        if self.in_transaction:
            self._abort()
        return False

    def start_transaction(self):
        return _TransactionContext(self)

    def _begin(self):
        self._snapshot = self.client._snapshot()
        self.in_transaction = True

    def _abort(self):
        self.client._restore(self._snapshot)
        self._snapshot = None
        self.in_transaction = False
        self.aborted += 1

    def _commit(self):
        failure = self.client._pop_commit_failure()
        if failure is not None:
            self._abort()
            raise failure
        self._snapshot = None
        self.in_transaction = False
        self.committed += 1

    async def end_session(self):
        pass


class FakeMotorClient:

    def __init__(self):
        self.databases = {}
        self.sessions = []
        self._commit_failures = []
        self.closed = False

    def __getitem__(self, name):
        if name not in self.databases:
            self.databases[name] = FakeDatabase(name)
        return self.databases[name]

    async def start_session(self):
        session = FakeSession(self)
        self.sessions.append(session)
        return session

    def fail_next_commit(self, exc):
        self._commit_failures.append(exc)

    def _pop_commit_failure(self):
        return self._commit_failures.pop(0) if self._commit_failures else None

    def _snapshot(self):
        return {
            db_name: {name: copy.deepcopy(coll.docs) for name, coll in db.collections.items()}
            for db_name, db in self.databases.items()
        }

    def _restore(self, snapshot):
        for db_name, db in self.databases.items():
            saved = snapshot.get(db_name, {})
            for name, coll in db.collections.items():
                coll.docs = copy.deepcopy(saved.get(name, []))

    def close(self):
        self.closed = True
