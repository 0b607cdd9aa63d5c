"""Transactional document storage for orderflow."""

import copy
import json
import logging
import os
import tempfile
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterator, TypeVar

from .errors import TransactionAbortError, TransactionConflictError

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1
DB_FILE = "orderflow.json"

# Collection names
ORDERS = "orders"
PRODUCTS = "products"
USERS = "users"
PREORDERS = "preorders"
DISCOUNTS = "discounts"
# Gateway payment id -> order id, guards against creating two orders for one payment
PAYMENTS = "payments"

Document = dict[str, Any]
T = TypeVar("T")


class Transaction:
    """
    A unit of work over the store.

    Reads record the version they observed; writes are staged until commit.
    Commit fails with TransactionConflictError if any document read or
    written here was changed by someone else in the meantime.
    """

    def __init__(self, store: "DocumentStore"):
        self._store = store
        self._reads: dict[tuple[str, str], int] = {}
        self._writes: dict[tuple[str, str], Document] = {}
        self.active = True

    def _check_active(self) -> None:
        if not self.active:
            raise RuntimeError("Transaction is no longer active")

    def get(self, collection: str, doc_id: str) -> Document | None:
        self._check_active()
        key = (collection, doc_id)
        if key in self._writes:
            return copy.deepcopy(self._writes[key])
        versioned = self._store.get_versioned(collection, doc_id)
        if versioned is None:
            self._reads.setdefault(key, 0)
            return None
        version, doc = versioned
        self._reads.setdefault(key, version)
        return doc

    def find(
        self, collection: str, predicate: Callable[[Document], bool] | None = None
    ) -> list[Document]:
        """Find documents, seeing this transaction's own staged writes."""
        self._check_active()
        results: dict[str, Document] = {}
        for doc_id, (version, doc) in self._store.snapshot(collection).items():
            self._reads.setdefault((collection, doc_id), version)
            results[doc_id] = doc
        for (coll, doc_id), doc in self._writes.items():
            if coll == collection:
                results[doc_id] = copy.deepcopy(doc)
        return [doc for doc in results.values() if predicate is None or predicate(doc)]

    def insert(self, collection: str, doc_id: str, doc: Document) -> None:
        """Stage a new document. The id must not exist yet."""
        if self.get(collection, doc_id) is not None:
            raise TransactionConflictError(collection, doc_id)
        self._writes[(collection, doc_id)] = copy.deepcopy(doc)

    def put(self, collection: str, doc_id: str, doc: Document) -> None:
        """Stage a replacement of a document."""
        self.get(collection, doc_id)  # records the version we overwrite
        self._writes[(collection, doc_id)] = copy.deepcopy(doc)

    def commit(self) -> None:
        self._check_active()
        try:
            self._store._commit(self._reads, self._writes)
        finally:
            self.active = False

    def abort(self) -> None:
        if self.active:
            logger.debug("Aborting transaction with %d staged writes", len(self._writes))
        self._writes.clear()
        self.active = False


class DocumentStore:
    """
    Versioned in-process document store with optional JSON persistence.

    Every document carries a version number incremented on each write.
    Conditional updates and transactions compare versions to guard against
    lost updates when requests race.
    """

    def __init__(self, data_dir: Path | None = None, transaction_retries: int = 3):
        """
        Initialize DocumentStore.

        Args:
            data_dir: Directory for the JSON database file. None keeps data in memory.
            transaction_retries: Attempts before a conflicting transaction is aborted.
        """
        self.data_dir = data_dir
        self.data_path = data_dir / DB_FILE if data_dir else None
        self.transaction_retries = transaction_retries
        self._lock = threading.RLock()
        self._collections: dict[str, dict[str, tuple[int, Document]]] = {}
        self._load()

    # --- Persistence ---

    def _load(self) -> None:
        if self.data_path is None or not self.data_path.exists():
            return
        with open(self.data_path, "r", encoding="utf-8") as f:
            data = json.load(f)
        for name, docs in data.get("collections", {}).items():
            self._collections[name] = {
                doc_id: (entry["version"], entry["doc"]) for doc_id, entry in docs.items()
            }
        logger.info("Loaded document store from %s", self.data_path)

    def _persist(self) -> None:
        """Save the database to disk atomically (write to temp, then rename)."""
        if self.data_dir is None or self.data_path is None:
            return
        self.data_dir.mkdir(parents=True, exist_ok=True)
        data = {
            "schema_version": SCHEMA_VERSION,
            "collections": {
                name: {
                    doc_id: {"version": version, "doc": doc}
                    for doc_id, (version, doc) in docs.items()
                }
                for name, docs in self._collections.items()
            },
        }
        fd, temp_path = tempfile.mkstemp(dir=self.data_dir, prefix=".orderflow_", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
                f.write("\n")
            os.replace(temp_path, self.data_path)
        except Exception:
            try:
                os.unlink(temp_path)
            except OSError:
                pass
            raise

    # --- Reads ---

    def get_versioned(self, collection: str, doc_id: str) -> tuple[int, Document] | None:
        with self._lock:
            entry = self._collections.get(collection, {}).get(doc_id)
            if entry is None:
                return None
            version, doc = entry
            return version, copy.deepcopy(doc)

    def get(self, collection: str, doc_id: str) -> Document | None:
        versioned = self.get_versioned(collection, doc_id)
        return versioned[1] if versioned else None

    def snapshot(self, collection: str) -> dict[str, tuple[int, Document]]:
        with self._lock:
            return copy.deepcopy(self._collections.get(collection, {}))

    def find(
        self, collection: str, predicate: Callable[[Document], bool] | None = None
    ) -> list[Document]:
        return [
            doc
            for _, doc in self.snapshot(collection).values()
            if predicate is None or predicate(doc)
        ]

    # --- Writes ---

    def put(self, collection: str, doc_id: str, doc: Document) -> None:
        """Unconditionally write a document (seeding and collaborator data)."""
        with self._lock:
            docs = self._collections.setdefault(collection, {})
            version = docs[doc_id][0] if doc_id in docs else 0
            docs[doc_id] = (version + 1, copy.deepcopy(doc))
            self._persist()

    def compare_and_set(
        self, collection: str, doc_id: str, expected_version: int, doc: Document
    ) -> bool:
        """Write the document only if its version is still expected_version."""
        with self._lock:
            docs = self._collections.setdefault(collection, {})
            current = docs[doc_id][0] if doc_id in docs else 0
            if current != expected_version:
                return False
            docs[doc_id] = (current + 1, copy.deepcopy(doc))
            self._persist()
            return True

    def modify(
        self,
        collection: str,
        doc_id: str,
        fn: Callable[[Document | None], Document],
    ) -> Document:
        """
        Conditionally update one document.

        fn receives the latest document (or None) and returns the new one;
        it must re-check the state it expects and raise if it no longer
        holds. The write applies only if nobody changed the document while
        fn ran; otherwise fn is called again on the fresh version.

        Raises:
            TransactionAbortError: If the document keeps changing underneath.
        """
        for attempt in range(1, self.transaction_retries + 1):
            versioned = self.get_versioned(collection, doc_id)
            version, doc = versioned if versioned else (0, None)
            new_doc = fn(doc)
            if self.compare_and_set(collection, doc_id, version, new_doc):
                return copy.deepcopy(new_doc)
            logger.info(
                "Conflicting update on %s/%s (attempt %d)", collection, doc_id, attempt
            )
        raise TransactionAbortError(
            self.transaction_retries, f"{collection}/{doc_id} kept changing"
        )

    # --- Transactions ---

    def _commit(
        self, reads: dict[tuple[str, str], int], writes: dict[tuple[str, str], Document]
    ) -> None:
        with self._lock:
            for (collection, doc_id), seen in reads.items():
                entry = self._collections.get(collection, {}).get(doc_id)
                current = entry[0] if entry else 0
                if current != seen:
                    raise TransactionConflictError(collection, doc_id)
            for (collection, doc_id), doc in writes.items():
                docs = self._collections.setdefault(collection, {})
                version = docs[doc_id][0] if doc_id in docs else 0
                docs[doc_id] = (version + 1, copy.deepcopy(doc))
            if writes:
                self._persist()

    @contextmanager
    def transaction(self) -> Iterator[Transaction]:
        """Commit on clean exit, abort on any exception."""
        txn = Transaction(self)
        try:
            yield txn
        except BaseException:
            txn.abort()
            raise
        else:
            txn.commit()

    def run_transaction(self, fn: Callable[[Transaction], T]) -> T:
        """
        Run fn inside a transaction, retrying on write conflicts.

        Domain errors raised by fn abort the transaction and propagate.

        Raises:
            TransactionAbortError: If every attempt conflicted.
        """
        last_conflict: TransactionConflictError | None = None
        for attempt in range(1, self.transaction_retries + 1):
            try:
                with self.transaction() as txn:
                    result = fn(txn)
                return result
            except TransactionConflictError as e:
                last_conflict = e
                logger.warning("Transaction conflict (attempt %d): %s", attempt, e)
        raise TransactionAbortError(self.transaction_retries, str(last_conflict))
