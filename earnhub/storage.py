"""
Persistence layer.

Two interchangeable backends expose the same primitives:

* ``MongoStorage`` - pymongo against a replica set (transactions need one).
* ``InMemoryStorage`` - dictionaries guarded by a re-entrant lock; used by the
  test-suite and ``STORAGE_BACKEND=memory``.

Every primitive that changes a balance or a status is a single conditional
write, and ``atomic(fn)`` groups several primitives into one unit that either
commits completely or leaves no trace.
"""

import copy
import threading
from contextvars import ContextVar
from datetime import timezone
from decimal import Decimal
from typing import Any, Callable, Optional, TypeVar

from bson.codec_options import CodecOptions, TypeCodec, TypeRegistry
from bson.decimal128 import Decimal128
from pymongo import ASCENDING, DESCENDING, MongoClient, ReturnDocument
from pymongo.errors import ConnectionFailure, DuplicateKeyError, PyMongoError
from pymongo.read_concern import ReadConcern
from pymongo.write_concern import WriteConcern

from .errors import ServiceUnavailableError
from .log import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

ZERO = Decimal("0.00")


class DuplicateRecordError(Exception):
    """A unique constraint rejected the insert."""


def is_unavailable(exc: PyMongoError) -> bool:
    """True for failures a client may retry: timeouts and lost connections."""
    return isinstance(exc, ConnectionFailure) or exc.timeout


class InMemoryStorage:
    def __init__(self):
        self._lock = threading.RLock()
        self.users: dict[str, dict] = {}
        self.tasks: dict[str, dict] = {}
        self.task_completions: dict[str, dict] = {}
        self.withdrawals: dict[str, dict] = {}
        self.referrals: dict[str, dict] = {}
        self.ledger_entries: dict[str, dict] = {}

    def connect(self) -> None:
        logger.info("storage_connected", backend="memory")

    def close(self) -> None:
        pass

    def ping(self) -> bool:
        return True

    def atomic(self, fn: Callable[[], T]) -> T:
        with self._lock:
            snapshot = self._snapshot()
            try:
                return fn()
            except BaseException:
                self._restore(snapshot)
                raise

    def _snapshot(self) -> dict:
        return {
            name: copy.deepcopy(getattr(self, name))
            for name in ("users", "tasks", "task_completions", "withdrawals", "referrals", "ledger_entries")
        }

    def _restore(self, snapshot: dict) -> None:
        for name, data in snapshot.items():
            setattr(self, name, data)

    # -- users --------------------------------------------------------------

    def insert_user(self, doc: dict) -> dict:
        with self._lock:
            for user in self.users.values():
                if user["email"] == doc["email"]:
                    raise DuplicateRecordError("email")
                if user["referral_code"] == doc["referral_code"]:
                    raise DuplicateRecordError("referral_code")
            self.users[doc["id"]] = copy.deepcopy(doc)
            return copy.deepcopy(doc)

    def get_user(self, user_id: str) -> Optional[dict]:
        with self._lock:
            return copy.deepcopy(self.users.get(user_id))

    def find_user_by_email(self, email: str) -> Optional[dict]:
        return self._find_one(self.users, email=email)

    def find_user_by_referral_code(self, code: str) -> Optional[dict]:
        return self._find_one(self.users, referral_code=code)

    def list_users(self, offset: int = 0, limit: int = 50) -> list[dict]:
        with self._lock:
            users = sorted(self.users.values(), key=lambda u: u["created_at"], reverse=True)
            return copy.deepcopy(users[offset:offset + limit])

    def count_users(self, is_suspended: Optional[bool] = None) -> int:
        with self._lock:
            if is_suspended is None:
                return len(self.users)
            return sum(1 for u in self.users.values() if u["is_suspended"] == is_suspended)

    def sum_balances(self) -> Decimal:
        with self._lock:
            return sum((u["balance"] for u in self.users.values()), ZERO)

    def update_user(self, user_id: str, fields: dict) -> Optional[dict]:
        with self._lock:
            user = self.users.get(user_id)
            if user is None:
                return None
            user.update(copy.deepcopy(fields))
            return copy.deepcopy(user)

    def adjust_balance(
        self,
        user_id: str,
        delta: Decimal,
        updated_at,
        earned: Decimal = ZERO,
        withdrawn: Decimal = ZERO,
    ) -> Optional[dict]:
        """Add ``delta`` to the balance unless the result would be negative.

        Returns the updated user, or None when the user does not exist or the
        balance is too low.
        """
        with self._lock:
            user = self.users.get(user_id)
            if user is None or user["balance"] + delta < 0:
                return None
            user["balance"] += delta
            user["total_earned"] += earned
            user["total_withdrawn"] += withdrawn
            user["updated_at"] = updated_at
            return copy.deepcopy(user)

    # -- tasks --------------------------------------------------------------

    def insert_task(self, doc: dict) -> dict:
        with self._lock:
            self.tasks[doc["id"]] = copy.deepcopy(doc)
            return copy.deepcopy(doc)

    def get_task(self, task_id: str) -> Optional[dict]:
        with self._lock:
            return copy.deepcopy(self.tasks.get(task_id))

    def list_tasks(self, active_only: bool = True) -> list[dict]:
        with self._lock:
            tasks = [t for t in self.tasks.values() if t["is_active"] or not active_only]
            tasks.sort(key=lambda t: t["created_at"], reverse=True)
            return copy.deepcopy(tasks)

    def count_tasks(self, active_only: bool = False) -> int:
        with self._lock:
            return sum(1 for t in self.tasks.values() if t["is_active"] or not active_only)

    def update_task(self, task_id: str, fields: dict) -> Optional[dict]:
        with self._lock:
            task = self.tasks.get(task_id)
            if task is None:
                return None
            task.update(copy.deepcopy(fields))
            return copy.deepcopy(task)

    def insert_completion(self, doc: dict) -> dict:
        with self._lock:
            for completion in self.task_completions.values():
                if completion["user_id"] == doc["user_id"] and completion["task_id"] == doc["task_id"]:
                    raise DuplicateRecordError("task_completion")
            self.task_completions[doc["id"]] = copy.deepcopy(doc)
            return copy.deepcopy(doc)

    def completed_task_ids(self, user_id: str) -> set[str]:
        with self._lock:
            return {c["task_id"] for c in self.task_completions.values() if c["user_id"] == user_id}

    def count_completions(self, user_id: str) -> int:
        return len(self.completed_task_ids(user_id))

    # -- withdrawals --------------------------------------------------------

    def insert_withdrawal(self, doc: dict) -> dict:
        with self._lock:
            self.withdrawals[doc["id"]] = copy.deepcopy(doc)
            return copy.deepcopy(doc)

    def get_withdrawal(self, withdrawal_id: str) -> Optional[dict]:
        with self._lock:
            return copy.deepcopy(self.withdrawals.get(withdrawal_id))

    def list_withdrawals(
        self,
        user_id: Optional[str] = None,
        status: Optional[str] = None,
        offset: int = 0,
        limit: int = 50,
    ) -> list[dict]:
        with self._lock:
            rows = [
                w for w in self.withdrawals.values()
                if (user_id is None or w["user_id"] == user_id)
                and (status is None or w["status"] == status)
            ]
            rows.sort(key=lambda w: w["created_at"], reverse=True)
            return copy.deepcopy(rows[offset:offset + limit])

    def withdrawal_totals(self, status: str) -> tuple[int, Decimal]:
        with self._lock:
            rows = [w for w in self.withdrawals.values() if w["status"] == status]
            return len(rows), sum((w["amount"] for w in rows), ZERO)

    def transition_withdrawal(self, withdrawal_id: str, from_status: str, fields: dict) -> Optional[dict]:
        """Apply ``fields`` only if the withdrawal is still in ``from_status``."""
        with self._lock:
            withdrawal = self.withdrawals.get(withdrawal_id)
            if withdrawal is None or withdrawal["status"] != from_status:
                return None
            withdrawal.update(copy.deepcopy(fields))
            return copy.deepcopy(withdrawal)

    # -- referrals ----------------------------------------------------------

    def insert_referral(self, doc: dict) -> dict:
        with self._lock:
            for referral in self.referrals.values():
                if referral["referred_id"] == doc["referred_id"]:
                    raise DuplicateRecordError("referral")
            self.referrals[doc["id"]] = copy.deepcopy(doc)
            return copy.deepcopy(doc)

    def find_referral(self, referrer_id: str, referred_id: str) -> Optional[dict]:
        return self._find_one(self.referrals, referrer_id=referrer_id, referred_id=referred_id)

    def find_referral_for(self, referred_id: str) -> Optional[dict]:
        return self._find_one(self.referrals, referred_id=referred_id)

    def list_referrals(self, referrer_id: str) -> list[dict]:
        with self._lock:
            rows = [r for r in self.referrals.values() if r["referrer_id"] == referrer_id]
            rows.sort(key=lambda r: r["created_at"], reverse=True)
            return copy.deepcopy(rows)

    def mark_referral_granted(self, referral_id: str, granted_at) -> Optional[dict]:
        with self._lock:
            referral = self.referrals.get(referral_id)
            if referral is None or referral["bonus_granted"]:
                return None
            referral["bonus_granted"] = True
            referral["granted_at"] = granted_at
            return copy.deepcopy(referral)

    # -- ledger entries -----------------------------------------------------

    def insert_ledger_entry(self, doc: dict) -> dict:
        with self._lock:
            for entry in self.ledger_entries.values():
                if entry["idempotency_key"] == doc["idempotency_key"]:
                    raise DuplicateRecordError("idempotency_key")
            self.ledger_entries[doc["id"]] = copy.deepcopy(doc)
            return copy.deepcopy(doc)

    def list_ledger_entries(self, user_id: str, offset: int = 0, limit: int = 50) -> list[dict]:
        with self._lock:
            rows = [e for e in self.ledger_entries.values() if e["user_id"] == user_id]
            rows.sort(key=lambda e: e["created_at"], reverse=True)
            return copy.deepcopy(rows[offset:offset + limit])

    def count_ledger_entries(self, user_id: str) -> int:
        with self._lock:
            return sum(1 for e in self.ledger_entries.values() if e["user_id"] == user_id)

    def _find_one(self, collection: dict, **criteria: Any) -> Optional[dict]:
        with self._lock:
            for doc in collection.values():
                if all(doc.get(key) == value for key, value in criteria.items()):
                    return copy.deepcopy(doc)
            return None


# ---------------------------------------------------------------------------
# MongoDB
# ---------------------------------------------------------------------------


class DecimalCodec(TypeCodec):
    python_type = Decimal
    bson_type = Decimal128

    def transform_python(self, value):
        return Decimal128(value)

    def transform_bson(self, value):
        return value.to_decimal()


_session: ContextVar = ContextVar("mongo_session", default=None)


def _out(doc: Optional[dict]) -> Optional[dict]:
    if doc is None:
        return None
    doc["id"] = doc.pop("_id")
    return doc


def _in(doc: dict) -> dict:
    doc = dict(doc)
    doc["_id"] = doc.pop("id")
    return doc


class MongoStorage:
    def __init__(self, uri: str, database: str, timeout_ms: int = 5000):
        self.uri = uri
        self.database_name = database
        self.timeout_ms = timeout_ms
        self.client: Optional[MongoClient] = None
        self.db = None

    def connect(self) -> None:
        self.client = MongoClient(
            self.uri,
            serverSelectionTimeoutMS=self.timeout_ms,
            connectTimeoutMS=self.timeout_ms,
            timeoutMS=self.timeout_ms,
        )
        codec_options = CodecOptions(
            type_registry=TypeRegistry([DecimalCodec()]),
            tz_aware=True,
            tzinfo=timezone.utc,
        )
        self.db = self.client.get_database(self.database_name, codec_options=codec_options)
        self.ping()
        self._ensure_indexes()
        logger.info("storage_connected", backend="mongo", database=self.database_name)

    def close(self) -> None:
        if self.client is not None:
            self.client.close()
            self.client = None
            logger.info("storage_closed", backend="mongo")

    def ping(self) -> bool:
        self.client.admin.command("ping")
        return True

    def _ensure_indexes(self) -> None:
        self.db.users.create_index("email", unique=True)
        self.db.users.create_index("referral_code", unique=True)
        self.db.tasks.create_index([("is_active", ASCENDING), ("created_at", DESCENDING)])
        self.db.task_completions.create_index(
            [("user_id", ASCENDING), ("task_id", ASCENDING)], unique=True
        )
        self.db.withdrawals.create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
        self.db.withdrawals.create_index("status")
        self.db.referrals.create_index("referred_id", unique=True)
        self.db.referrals.create_index("referrer_id")
        self.db.ledger_entries.create_index("idempotency_key", unique=True)
        self.db.ledger_entries.create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])

    def atomic(self, fn: Callable[[], T]) -> T:
        if _session.get() is not None:
            return fn()

        def callback(session):
            token = _session.set(session)
            try:
                return fn()
            finally:
                _session.reset(token)

        try:
            with self.client.start_session() as session:
                return session.with_transaction(
                    callback,
                    read_concern=ReadConcern("snapshot"),
                    write_concern=WriteConcern("majority"),
                )
        except PyMongoError as e:
            if is_unavailable(e):
                raise ServiceUnavailableError("Database temporarily unavailable, please retry") from e
            raise

    def _insert(self, collection, doc: dict, constraint: str) -> dict:
        try:
            collection.insert_one(_in(doc), session=_session.get())
        except DuplicateKeyError as e:
            raise DuplicateRecordError(constraint) from e
        return dict(doc)

    def _find_one(self, collection, query: dict) -> Optional[dict]:
        return _out(collection.find_one(query, session=_session.get()))

    def _find(self, collection, query: dict, offset: int = 0, limit: int = 0) -> list[dict]:
        cursor = collection.find(query, session=_session.get()).sort("created_at", DESCENDING)
        if offset:
            cursor = cursor.skip(offset)
        if limit:
            cursor = cursor.limit(limit)
        return [_out(doc) for doc in cursor]

    def _update(self, collection, query: dict, update: dict) -> Optional[dict]:
        return _out(collection.find_one_and_update(
            query, update, return_document=ReturnDocument.AFTER, session=_session.get()
        ))

    # -- users --------------------------------------------------------------

    def insert_user(self, doc: dict) -> dict:
        return self._insert(self.db.users, doc, "user")

    def get_user(self, user_id: str) -> Optional[dict]:
        return self._find_one(self.db.users, {"_id": user_id})

    def find_user_by_email(self, email: str) -> Optional[dict]:
        return self._find_one(self.db.users, {"email": email})

    def find_user_by_referral_code(self, code: str) -> Optional[dict]:
        return self._find_one(self.db.users, {"referral_code": code})

    def list_users(self, offset: int = 0, limit: int = 50) -> list[dict]:
        return self._find(self.db.users, {}, offset, limit)

    def count_users(self, is_suspended: Optional[bool] = None) -> int:
        query = {} if is_suspended is None else {"is_suspended": is_suspended}
        return self.db.users.count_documents(query, session=_session.get())

    def sum_balances(self) -> Decimal:
        rows = list(self.db.users.aggregate(
            [{"$group": {"_id": None, "total": {"$sum": "$balance"}}}], session=_session.get()
        ))
        return rows[0]["total"] if rows else ZERO

    def update_user(self, user_id: str, fields: dict) -> Optional[dict]:
        return self._update(self.db.users, {"_id": user_id}, {"$set": fields})

    def adjust_balance(
        self,
        user_id: str,
        delta: Decimal,
        updated_at,
        earned: Decimal = ZERO,
        withdrawn: Decimal = ZERO,
    ) -> Optional[dict]:
        query = {"_id": user_id}
        if delta < 0:
            query["balance"] = {"$gte": -delta}
        return self._update(self.db.users, query, {
            "$inc": {"balance": delta, "total_earned": earned, "total_withdrawn": withdrawn},
            "$set": {"updated_at": updated_at},
        })

    # -- tasks --------------------------------------------------------------

    def insert_task(self, doc: dict) -> dict:
        return self._insert(self.db.tasks, doc, "task")

    def get_task(self, task_id: str) -> Optional[dict]:
        return self._find_one(self.db.tasks, {"_id": task_id})

    def list_tasks(self, active_only: bool = True) -> list[dict]:
        return self._find(self.db.tasks, {"is_active": True} if active_only else {})

    def count_tasks(self, active_only: bool = False) -> int:
        query = {"is_active": True} if active_only else {}
        return self.db.tasks.count_documents(query, session=_session.get())

    def update_task(self, task_id: str, fields: dict) -> Optional[dict]:
        return self._update(self.db.tasks, {"_id": task_id}, {"$set": fields})

    def insert_completion(self, doc: dict) -> dict:
        return self._insert(self.db.task_completions, doc, "task_completion")

    def completed_task_ids(self, user_id: str) -> set[str]:
        cursor = self.db.task_completions.find(
            {"user_id": user_id}, {"task_id": 1}, session=_session.get()
        )
        return {doc["task_id"] for doc in cursor}

    def count_completions(self, user_id: str) -> int:
        return self.db.task_completions.count_documents({"user_id": user_id}, session=_session.get())

    # -- withdrawals --------------------------------------------------------

    def insert_withdrawal(self, doc: dict) -> dict:
        return self._insert(self.db.withdrawals, doc, "withdrawal")

    def get_withdrawal(self, withdrawal_id: str) -> Optional[dict]:
        return self._find_one(self.db.withdrawals, {"_id": withdrawal_id})

    def list_withdrawals(
        self,
        user_id: Optional[str] = None,
        status: Optional[str] = None,
        offset: int = 0,
        limit: int = 50,
    ) -> list[dict]:
        query = {}
        if user_id is not None:
            query["user_id"] = user_id
        if status is not None:
            query["status"] = status
        return self._find(self.db.withdrawals, query, offset, limit)

    def withdrawal_totals(self, status: str) -> tuple[int, Decimal]:
        rows = list(self.db.withdrawals.aggregate([
            {"$match": {"status": status}},
            {"$group": {"_id": None, "count": {"$sum": 1}, "total": {"$sum": "$amount"}}},
        ], session=_session.get()))
        if not rows:
            return 0, ZERO
        return rows[0]["count"], rows[0]["total"]

    def transition_withdrawal(self, withdrawal_id: str, from_status: str, fields: dict) -> Optional[dict]:
        return self._update(
            self.db.withdrawals,
            {"_id": withdrawal_id, "status": from_status},
            {"$set": fields},
        )

    # -- referrals ----------------------------------------------------------

    def insert_referral(self, doc: dict) -> dict:
        return self._insert(self.db.referrals, doc, "referral")

    def find_referral(self, referrer_id: str, referred_id: str) -> Optional[dict]:
        return self._find_one(self.db.referrals, {"referrer_id": referrer_id, "referred_id": referred_id})

    def find_referral_for(self, referred_id: str) -> Optional[dict]:
        return self._find_one(self.db.referrals, {"referred_id": referred_id})

    def list_referrals(self, referrer_id: str) -> list[dict]:
        return self._find(self.db.referrals, {"referrer_id": referrer_id})

    def mark_referral_granted(self, referral_id: str, granted_at) -> Optional[dict]:
        return self._update(
            self.db.referrals,
            {"_id": referral_id, "bonus_granted": False},
            {"$set": {"bonus_granted": True, "granted_at": granted_at}},
        )

    # -- ledger entries -----------------------------------------------------

    def insert_ledger_entry(self, doc: dict) -> dict:
        return self._insert(self.db.ledger_entries, doc, "idempotency_key")

    def list_ledger_entries(self, user_id: str, offset: int = 0, limit: int = 50) -> list[dict]:
        return self._find(self.db.ledger_entries, {"user_id": user_id}, offset, limit)

    def count_ledger_entries(self, user_id: str) -> int:
        return self.db.ledger_entries.count_documents({"user_id": user_id}, session=_session.get())


def create_storage(settings):
    if settings.STORAGE_BACKEND == "memory":
        return InMemoryStorage()
    return MongoStorage(settings.MONGODB_URI, settings.database_name, settings.MONGODB_TIMEOUT_MS)
