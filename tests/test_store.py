"""Tests for the transactional document store."""

import pytest

from orderflow.errors import TransactionAbortError, TransactionConflictError
from orderflow.store import DocumentStore, Transaction


class TestConditionalUpdates:
    def test_put_and_get(self):
        store = DocumentStore()
        store.put("things", "a", {"n": 1})
        assert store.get("things", "a") == {"n": 1}
        assert store.get("things", "missing") is None

    def test_reads_are_copies(self):
        store = DocumentStore()
        store.put("things", "a", {"items": [1]})
        doc = store.get("things", "a")
        doc["items"].append(2)
        assert store.get("things", "a") == {"items": [1]}

    def test_compare_and_set_rejects_stale_version(self):
        store = DocumentStore()
        store.put("things", "a", {"n": 1})
        version, _ = store.get_versioned("things", "a")

        assert store.compare_and_set("things", "a", version, {"n": 2}) is True
        assert store.compare_and_set("things", "a", version, {"n": 3}) is False
        assert store.get("things", "a") == {"n": 2}

    def test_modify_reapplies_on_conflict(self):
        """A concurrent write makes modify call fn again on the fresh document."""
        store = DocumentStore()
        store.put("counters", "c", {"n": 0})
        calls = []

        def increment(doc):
            calls.append(doc["n"])
            if len(calls) == 1:
                # Another writer sneaks in between read and write
                store.put("counters", "c", {"n": 10})
            return {"n": doc["n"] + 1}

        result = store.modify("counters", "c", increment)

        assert calls == [0, 10]
        assert result == {"n": 11}
        assert store.get("counters", "c") == {"n": 11}

    def test_modify_gives_up_after_retries(self):
        store = DocumentStore(transaction_retries=2)
        store.put("counters", "c", {"n": 0})

        def always_conflict(doc):
            store.put("counters", "c", {"n": doc["n"] + 100})
            return {"n": -1}

        with pytest.raises(TransactionAbortError):
            store.modify("counters", "c", always_conflict)

    def test_modify_propagates_domain_errors(self):
        store = DocumentStore()
        store.put("things", "a", {"n": 1})

        def refuse(doc):
            raise ValueError("not allowed")

        with pytest.raises(ValueError):
            store.modify("things", "a", refuse)
        assert store.get("things", "a") == {"n": 1}


class TestTransactions:
    def test_commit_applies_all_writes(self):
        store = DocumentStore()

        def work(txn):
            txn.insert("orders", "o1", {"total": 5})
            txn.put("discounts", "SAVE", {"used": 1})
            return "done"

        assert store.run_transaction(work) == "done"
        assert store.get("orders", "o1") == {"total": 5}
        assert store.get("discounts", "SAVE") == {"used": 1}

    def test_error_discards_all_writes(self):
        store = DocumentStore()
        store.put("preorders", "p1", {"status": "pending"})

        def work(txn):
            txn.put("preorders", "p1", {"status": "completed"})
            txn.insert("orders", "o1", {"total": 5})
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            store.run_transaction(work)
        assert store.get("preorders", "p1") == {"status": "pending"}
        assert store.get("orders", "o1") is None

    def test_transaction_sees_own_writes(self):
        store = DocumentStore()

        def work(txn):
            txn.insert("orders", "o1", {"user": "u"})
            return txn.get("orders", "o1"), txn.find("orders")

        seen, found = store.run_transaction(work)
        assert seen == {"user": "u"}
        assert found == [{"user": "u"}]

    def test_insert_existing_id_conflicts(self):
        store = DocumentStore()
        store.put("payments", "pay_1", {"order_id": "o1"})

        with store.transaction() as txn:
            with pytest.raises(TransactionConflictError):
                txn.insert("payments", "pay_1", {"order_id": "o2"})

    def test_concurrent_change_conflicts_at_commit(self):
        store = DocumentStore()
        store.put("discounts", "SAVE", {"used": 0})

        txn = Transaction(store)
        doc = txn.get("discounts", "SAVE")
        store.put("discounts", "SAVE", {"used": 1})
        txn.put("discounts", "SAVE", {"used": doc["used"] + 1})

        with pytest.raises(TransactionConflictError):
            txn.commit()
        assert store.get("discounts", "SAVE") == {"used": 1}

    def test_run_transaction_retries_conflicts(self):
        store = DocumentStore()
        store.put("discounts", "SAVE", {"used": 0})
        attempts = []

        def work(txn):
            doc = txn.get("discounts", "SAVE")
            attempts.append(doc["used"])
            if len(attempts) == 1:
                store.put("discounts", "SAVE", {"used": 5})
            txn.put("discounts", "SAVE", {"used": doc["used"] + 1})

        store.run_transaction(work)
        assert attempts == [0, 5]
        assert store.get("discounts", "SAVE") == {"used": 6}

    def test_run_transaction_aborts_after_retries(self):
        store = DocumentStore(transaction_retries=2)
        store.put("discounts", "SAVE", {"used": 0})

        def work(txn):
            txn.get("discounts", "SAVE")
            store.put("discounts", "SAVE", {"used": 99})
            txn.insert("orders", "o1", {})

        with pytest.raises(TransactionAbortError):
            store.run_transaction(work)
        assert store.get("orders", "o1") is None


class TestPersistence:
    def test_documents_survive_reload(self, temp_dir):
        store = DocumentStore(temp_dir)
        store.put("orders", "o1", {"total": "799.00"})
        store.run_transaction(lambda txn: txn.insert("orders", "o2", {"total": "1.00"}))

        reloaded = DocumentStore(temp_dir)
        assert reloaded.get("orders", "o1") == {"total": "799.00"}
        assert reloaded.get("orders", "o2") == {"total": "1.00"}

    def test_versions_survive_reload(self, temp_dir):
        store = DocumentStore(temp_dir)
        store.put("orders", "o1", {"n": 1})
        store.put("orders", "o1", {"n": 2})

        reloaded = DocumentStore(temp_dir)
        assert reloaded.get_versioned("orders", "o1") == (2, {"n": 2})

    def test_no_data_dir_writes_nothing(self, temp_dir):
        store = DocumentStore()
        store.put("orders", "o1", {"n": 1})
        assert list(temp_dir.iterdir()) == []
