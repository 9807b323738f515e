import tempfile
import threading
import unittest

from riahunter.core.errors import DuplicateIdempotencyKey, InsufficientCredits
from riahunter.models.credit_ledger import CreditSource
from riahunter.services.ledger_store import InMemoryLedgerStore, NewLedgerEntry, SqlLedgerStore

from support import file_database, memory_database


def _entry(amount, key, account="acct_1", source=CreditSource.PURCHASE, ref_type="test"):
    return NewLedgerEntry(
        account_id=account,
        amount=amount,
        source=source,
        ref_type=ref_type,
        ref_id=key,
        idempotency_key=key,
        metadata={"k": key},
    )


class LedgerStoreContract:
    def make_store(self):
        raise NotImplementedError

    def setUp(self):
        self.store = self.make_store()

    def test_append_returns_running_balance(self):
        first = self.store.append(_entry(10, "k1"))
        second = self.store.append(_entry(-3, "k2", source=CreditSource.USAGE))
        self.assertEqual(first.balance, 10)
        self.assertEqual(first.entry.balance_after, 10)
        self.assertEqual(second.balance, 7)
        self.assertEqual(second.entry.amount, -3)
        self.assertEqual(second.entry.source, CreditSource.USAGE)
        self.assertEqual(second.entry.metadata, {"k": "k2"})
        self.assertEqual(self.store.balance_of("acct_1"), 7)

    def test_unknown_account_has_zero_balance(self):
        self.assertEqual(self.store.balance_of("nobody"), 0)
        self.assertEqual(self.store.entries_of("nobody"), [])
        self.assertIsNone(self.store.find_by_idempotency_key("missing"))

    def test_duplicate_key_reports_original_outcome(self):
        first = self.store.append(_entry(10, "k1"))
        self.store.append(_entry(-3, "k2", source=CreditSource.USAGE))
        with self.assertRaises(DuplicateIdempotencyKey) as ctx:
            self.store.append(_entry(10, "k1"))
        self.assertEqual(ctx.exception.entry.id, first.entry.id)
        self.assertEqual(ctx.exception.balance, 10)
        self.assertEqual(self.store.balance_of("acct_1"), 7)
        self.assertEqual(len(self.store.entries_of("acct_1")), 2)

    def test_duplicate_key_wins_over_insufficient_balance(self):
        self.store.append(_entry(2, "k1"))
        self.store.append(_entry(-2, "k2", source=CreditSource.USAGE))
        with self.assertRaises(DuplicateIdempotencyKey):
            self.store.append(_entry(-2, "k2", source=CreditSource.USAGE))

    def test_rejects_negative_balance_without_writing(self):
        self.store.append(_entry(2, "k1"))
        with self.assertRaises(InsufficientCredits) as ctx:
            self.store.append(_entry(-3, "k2", source=CreditSource.USAGE))
        self.assertEqual(ctx.exception.balance, 2)
        self.assertEqual(ctx.exception.requested, 3)
        self.assertEqual(self.store.balance_of("acct_1"), 2)
        self.assertEqual(len(self.store.entries_of("acct_1")), 1)
        self.assertIsNone(self.store.find_by_idempotency_key("k2"))

    def test_balance_matches_sum_of_entries(self):
        for i, amount in enumerate([5, 7, -4, 20, -1, -27]):
            source = CreditSource.USAGE if amount < 0 else CreditSource.PURCHASE
            self.store.append(_entry(amount, f"k{i}", source=source))
        self.assertEqual(self.store.balance_of("acct_1"), 0)
        self.assertEqual(self.store.recalculate_balance("acct_1"), 0)
        self.assertEqual(sum(e.amount for e in self.store.entries_of("acct_1")), 0)

    def test_entries_are_most_recent_first(self):
        for i in range(4):
            self.store.append(_entry(1, f"k{i}"))
        self.store.append(_entry(1, "other", account="acct_2"))
        entries = self.store.entries_of("acct_1")
        self.assertEqual([e.idempotency_key for e in entries], ["k3", "k2", "k1", "k0"])
        self.assertEqual([e.balance_after for e in entries], [4, 3, 2, 1])
        self.assertEqual(len(self.store.entries_of("acct_1", limit=2)), 2)

    def test_entry_to_dict(self):
        result = self.store.append(_entry(10, "k1"))
        payload = result.entry.to_dict()
        self.assertEqual(payload["userId"], "acct_1")
        self.assertEqual(payload["delta"], 10)
        self.assertEqual(payload["source"], "purchase")
        self.assertEqual(payload["balanceAfter"], 10)
        self.assertIsNotNone(payload["createdAt"])


class InMemoryLedgerStoreTest(LedgerStoreContract, unittest.TestCase):
    def make_store(self):
        return InMemoryLedgerStore()


class SqlLedgerStoreTest(LedgerStoreContract, unittest.TestCase):
    def make_store(self):
        self.engine, session_factory = memory_database()
        return SqlLedgerStore(session_factory)

    def tearDown(self):
        self.engine.dispose()


class ConcurrencyContract:
    def make_store(self):
        raise NotImplementedError

    def setUp(self):
        self.store = self.make_store()

    def _run(self, entries):
        outcomes = []
        outcomes_lock = threading.Lock()
        barrier = threading.Barrier(len(entries))

        def worker(entry):
            barrier.wait()
            try:
                self.store.append(entry)
                outcome = "ok"
            except InsufficientCredits:
                outcome = "insufficient"
            except DuplicateIdempotencyKey:
                outcome = "duplicate"
            with outcomes_lock:
                outcomes.append(outcome)

        threads = [threading.Thread(target=worker, args=(e,)) for e in entries]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=60)
        return outcomes

    def test_concurrent_debits_never_overdraw(self):
        self.store.append(_entry(5, "seed"))
        entries = [_entry(-1, f"d{i}", source=CreditSource.USAGE) for i in range(12)]
        outcomes = self._run(entries)
        self.assertEqual(outcomes.count("ok"), 5)
        self.assertEqual(outcomes.count("insufficient"), 7)
        self.assertEqual(self.store.balance_of("acct_1"), 0)
        self.assertEqual(self.store.recalculate_balance("acct_1"), 0)

    def test_concurrent_replays_apply_once(self):
        self.store.append(_entry(5, "seed"))
        entries = [_entry(-2, "same", source=CreditSource.USAGE) for _ in range(8)]
        outcomes = self._run(entries)
        self.assertEqual(outcomes.count("ok"), 1)
        self.assertEqual(outcomes.count("duplicate"), 7)
        self.assertEqual(self.store.balance_of("acct_1"), 3)
        self.assertEqual(len(self.store.entries_of("acct_1")), 2)


class InMemoryConcurrencyTest(ConcurrencyContract, unittest.TestCase):
    def make_store(self):
        return InMemoryLedgerStore()


class SqlConcurrencyTest(ConcurrencyContract, unittest.TestCase):
    def make_store(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.engine, session_factory = file_database(self._tmp.name)
        return SqlLedgerStore(session_factory)

    def tearDown(self):
        self.engine.dispose()
        self._tmp.cleanup()


if __name__ == "__main__":
    unittest.main()
