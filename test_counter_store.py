import datetime as dt
import os
import sqlite3
import tempfile
import threading
import unittest

import pos_service as ps
import period_keys as pk
from pos_errors import StorageError

IST = dt.timedelta(hours=5, minutes=30)


def ist(year, month, day, hour=12, minute=0):
    return dt.datetime(year, month, day, hour, minute) - IST


class MemoryCounterStoreTest(unittest.TestCase):
    def setUp(self):
        self.store = ps.MemoryCounterStore()

    def test_numbers_are_gapless_within_a_period(self):
        got = [ps.next_number(self.store, "shop_1", pk.BILL, ist(2030, 1, 5)) for _ in range(5)]
        self.assertEqual(got, [1, 2, 3, 4, 5])

    def test_fiscal_year_rollover_restarts_numbering(self):
        for family in (pk.BILL, pk.RECEIPT, pk.EXPENSE):
            with self.subTest(family=family):
                self.assertEqual(ps.next_number(self.store, "shop_1", family, ist(2030, 3, 31, 22)), 1)
                self.assertEqual(ps.next_number(self.store, "shop_1", family, ist(2030, 3, 31, 23)), 2)
                self.assertEqual(ps.next_number(self.store, "shop_1", family, ist(2030, 4, 1, 0, 5)), 1)

    def test_kot_resets_daily(self):
        self.assertEqual(ps.next_number(self.store, "shop_1", pk.KOT, ist(2030, 3, 15, 9)), 1)
        self.assertEqual(ps.next_number(self.store, "shop_1", pk.KOT, ist(2030, 3, 15, 21)), 2)
        self.assertEqual(ps.next_number(self.store, "shop_1", pk.KOT, ist(2030, 3, 16, 9)), 1)

    def test_other_periods_and_scopes_do_not_interfere(self):
        seen = []
        for i in range(4):
            seen.append(ps.next_number(self.store, "shop_1", pk.BILL, ist(2030, 1, 5)))
            ps.next_number(self.store, "shop_1", pk.BILL, ist(2031, 1, 5))
            ps.next_number(self.store, "shop_2", pk.BILL, ist(2030, 1, 5))
            ps.next_number(self.store, "shop_1", pk.RECEIPT, ist(2030, 1, 5))
        self.assertEqual(seen, [1, 2, 3, 4])

    def test_concurrent_increments_are_distinct(self):
        key = ps.CounterKey("shop_1", "2030", pk.BILL)
        results = []
        results_lock = threading.Lock()

        def worker():
            for _ in range(50):
                value = self.store.increment(key)
                with results_lock:
                    results.append(value)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        self.assertEqual(sorted(results), list(range(1, 401)))
        self.assertEqual(self.store.current(key), 400)


class SqliteCounterStoreTest(unittest.TestCase):
    def setUp(self):
        self.conn = sqlite3.connect(":memory:")
        self.conn.row_factory = sqlite3.Row
        ps.init_db(self.conn, ps.SCHEMA_PATH)
        self.store = ps.SqliteCounterStore(self.conn)
        self.key = ps.CounterKey("shop_1", "2030", pk.BILL)

    def tearDown(self):
        self.conn.close()

    def test_increments_persist(self):
        self.assertEqual([self.store.increment(self.key) for _ in range(3)], [1, 2, 3])
        self.assertEqual(self.store.current(self.key), 3)
        row = self.conn.execute("SELECT value FROM counters WHERE name='bill'").fetchone()
        self.assertEqual(row[0], 3)

    def test_failed_write_does_not_advance(self):
        self.store.increment(self.key)
        self.store.increment(self.key)
        self.conn.execute("""
            CREATE TRIGGER fail_third BEFORE UPDATE ON counters WHEN NEW.value = 3
            BEGIN SELECT RAISE(ABORT, 'simulated disk failure'); END
        """)
        with self.assertRaises(StorageError) as ctx:
            self.store.increment(self.key)
        self.assertTrue(ctx.exception.retryable)
        self.assertEqual(ctx.exception.key, "shop_1|2030|bill")
        self.assertEqual(self.store.current(self.key), 2)

        self.conn.execute("DROP TRIGGER fail_third")
        self.assertEqual(self.store.increment(self.key), 3)

    def _pending_expense(self):
        # plain DML opens an implicit transaction on the connection
        self.conn.execute("""
            INSERT INTO expenses (expense_id, voucher_no, voucher_number, scope, period_key, amount, towards,
                                  mode, created_utc)
            VALUES ('e1', 1, 'E3031-000001', 'shop_1', '2030', '10', 'Milk', 'Cash', '2030-06-01T00:00:00Z')
        """)
        self.assertTrue(self.conn.in_transaction)

    def _expense_count(self):
        return self.conn.execute("SELECT COUNT(*) FROM expenses").fetchone()[0]

    def test_increment_joins_an_open_transaction(self):
        self._pending_expense()
        self.assertEqual(self.store.increment(self.key), 1)
        self.assertTrue(self.conn.in_transaction)
        self.conn.commit()
        self.assertEqual(self._expense_count(), 1)
        self.assertEqual(self.store.current(self.key), 1)

    def test_failed_increment_keeps_callers_pending_writes(self):
        self.store.increment(self.key)
        self.conn.execute("""
            CREATE TRIGGER fail_second BEFORE UPDATE ON counters WHEN NEW.value = 2
            BEGIN SELECT RAISE(ABORT, 'simulated disk failure'); END
        """)
        self._pending_expense()
        with self.assertRaises(StorageError):
            self.store.increment(self.key)
        self.assertTrue(self.conn.in_transaction)
        self.conn.commit()
        self.assertEqual(self._expense_count(), 1)
        self.assertEqual(self.store.current(self.key), 1)

    def test_missing_table_is_a_storage_error(self):
        bare = sqlite3.connect(":memory:")
        try:
            with self.assertRaises(StorageError):
                ps.SqliteCounterStore(bare).increment(self.key)
        finally:
            bare.close()

    def test_issue_number_formats_display(self):
        issued = ps.issue_number(self.conn, pk.KOT, scope="shop_9", instant=ist(2025, 3, 15, 10))
        self.assertEqual(issued["period_key"], "2025-03-15")
        self.assertEqual(issued["number"], 1)
        self.assertEqual(issued["scope"], "shop_9")
        self.assertEqual(issued["display"], "K250315-000001")


class FileCounterConcurrencyTest(unittest.TestCase):
    def test_separate_connections_never_share_a_number(self):
        with tempfile.TemporaryDirectory() as tmp:
            db_path = os.path.join(tmp, "pos.db")
            conn = ps.connect(db_path)
            ps.init_db(conn, ps.SCHEMA_PATH)
            conn.close()

            key = ps.CounterKey("shop_1", "2030", pk.RECEIPT)
            results = []
            errors = []
            results_lock = threading.Lock()

            def worker():
                local = ps.connect(db_path)
                try:
                    store = ps.SqliteCounterStore(local)
                    for _ in range(25):
                        value = store.increment(key)
                        with results_lock:
                            results.append(value)
                except StorageError as exc:
                    errors.append(exc)
                finally:
                    local.close()

            threads = [threading.Thread(target=worker) for _ in range(4)]
            for t in threads:
                t.start()
            for t in threads:
                t.join()

            self.assertEqual(errors, [])
            self.assertEqual(sorted(results), list(range(1, 101)))


class DocumentNumberTest(unittest.TestCase):
    def test_format_document_number(self):
        self.assertEqual(ps.format_document_number(pk.BILL, "2025", 42), "B2526-000042")
        self.assertEqual(ps.format_document_number(pk.RECEIPT, "2025", 1), "R2526-000001")
        self.assertEqual(ps.format_document_number(pk.KOT, "2025-03-15", 7), "K250315-000007")
        self.assertEqual(ps.format_document_number(pk.EXPENSE, "2025", 42, width=3), "E2526-042")

    def test_counter_key_composite(self):
        key = ps.counter_key("shop_1", pk.BILL, ist(2025, 6, 1))
        self.assertEqual(key.composite, "shop_1|2025|bill")
        self.assertEqual(ps.counter_key(None, pk.BILL, ist(2025, 6, 1)).scope, ps.SHOP_SCOPE)


if __name__ == "__main__":
    unittest.main()
