#!/usr/bin/env python3
# POS core: SQLite document counters + bill closing + advance ledger + NDJSON backups
import os, sys, json, uuid, sqlite3, argparse, logging, threading, datetime as dt
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterable, List, NamedTuple, Optional

import period_keys as pk
import split_payments as sp
from pos_errors import StorageError, ValidationError

log = logging.getLogger(__name__)

DB_PATH = os.environ.get("POS_DB_PATH", "pos.db")
SCHEMA_PATH = os.environ.get("POS_SCHEMA_PATH") or str(Path(__file__).resolve().parent / "schema.sql")
BACKUP_DIR = os.environ.get("POS_BACKUP_DIR", "pos_backup")
SHOP_SCOPE = os.environ.get("POS_SHOP_SCOPE", "shop_1")
UTC_OFFSET = pk.offset_from_minutes(os.environ.get("POS_UTC_OFFSET_MINUTES"))
try:
    NUMBER_WIDTH = int(os.environ.get("POS_NUMBER_WIDTH", "6"))
except ValueError:
    NUMBER_WIDTH = 6

DOCUMENT_PREFIXES = {pk.KOT: "K", pk.BILL: "B", pk.RECEIPT: "R", pk.EXPENSE: "E"}
EXPENSE_MODES = (sp.CASH, sp.UPI)


def utc_now() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc).replace(tzinfo=None)


def utc_iso(instant: Optional[dt.datetime] = None) -> str:
    instant = pk.to_utc_naive(instant) if instant is not None else utc_now()
    return instant.replace(microsecond=0).isoformat() + "Z"


def iso_now() -> str:
    return utc_iso()


def connect(db_path: str = DB_PATH) -> sqlite3.Connection:
    conn = sqlite3.connect(db_path, timeout=30)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA foreign_keys=ON;")
    return conn


def init_db(conn: sqlite3.Connection, schema_path: str = SCHEMA_PATH):
    with open(schema_path, "r", encoding="utf-8") as f:
        conn.executescript(f.read())
    conn.commit()


def ensure_schema(conn: sqlite3.Connection, schema_path: str = SCHEMA_PATH):
    row = conn.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name='counters'"
    ).fetchone()
    if not row:
        init_db(conn, schema_path)


def _amount(value: Any) -> Decimal:
    return Decimal(str(value)) if value not in (None, "") else sp.ZERO


# ---------- TRANSACTIONS ----------
def begin_txn(conn: sqlite3.Connection):
    # IMMEDIATE takes the write lock up front so two processes cannot
    # read the same counter value.
    conn.execute("BEGIN IMMEDIATE")

def commit_txn(conn: sqlite3.Connection):
    conn.commit()

def rollback_txn(conn: sqlite3.Connection):
    try:
        conn.rollback()
    except sqlite3.Error as exc:
        log.debug("Rollback failed: %s", exc)


# ---------- COUNTERS ----------
class CounterKey(NamedTuple):
    scope: str
    period_key: str
    name: str

    @property
    def composite(self) -> str:
        return f"{self.scope}|{self.period_key}|{self.name}"


def counter_key(scope: Optional[str], family: str, instant: Optional[dt.datetime] = None,
                utc_offset: Optional[dt.timedelta] = None) -> CounterKey:
    offset = UTC_OFFSET if utc_offset is None else utc_offset
    return CounterKey(scope or SHOP_SCOPE, pk.period_key(family, instant, offset), family)


class MemoryCounterStore:
    """Dict-backed counters for tools and tests; one lock per composite key."""

    def __init__(self, values: Optional[Dict[str, int]] = None):
        self._values: Dict[str, int] = dict(values or {})
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, composite: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(composite, threading.Lock())

    def increment(self, key: CounterKey) -> int:
        with self._lock_for(key.composite):
            value = self._values.get(key.composite, 0) + 1
            self._values[key.composite] = value
            return value

    def current(self, key: CounterKey) -> int:
        return self._values.get(key.composite, 0)


_COUNTER_UPSERT = """
INSERT INTO counters (scope, period_key, name, value, updated_utc) VALUES (?, ?, ?, 1, ?)
ON CONFLICT(scope, period_key, name) DO UPDATE SET
  value = counters.value + 1,
  updated_utc = excluded.updated_utc
"""


def bump_counter(conn: sqlite3.Connection, key: CounterKey) -> int:
    """Increment `key` inside the caller's open transaction and return the new value."""
    conn.execute(_COUNTER_UPSERT, (key.scope, key.period_key, key.name, iso_now()))
    row = conn.execute(
        "SELECT value FROM counters WHERE scope=? AND period_key=? AND name=?",
        (key.scope, key.period_key, key.name),
    ).fetchone()
    return int(row[0])


class SqliteCounterStore:
    """Counters persisted in the `counters` table.

    Each increment is its own IMMEDIATE transaction; the in-process lock keeps
    threads sharing this connection from interleaving BEGIN/COMMIT. When the
    connection already has a transaction open the bump joins it, and the
    caller commits or rolls back.
    """

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn
        self._lock = threading.Lock()

    def increment(self, key: CounterKey) -> int:
        with self._lock:
            owns_txn = not self.conn.in_transaction
            try:
                if owns_txn:
                    begin_txn(self.conn)
                value = bump_counter(self.conn, key)
                if owns_txn:
                    commit_txn(self.conn)
            except sqlite3.Error as exc:
                # only undo what this call opened; a failed statement inside
                # the caller's transaction leaves its earlier writes pending
                if owns_txn:
                    rollback_txn(self.conn)
                log.warning("Counter %s not advanced: %s", key.composite, exc)
                raise StorageError(f"Counter {key.composite} not advanced: {exc}", key=key.composite) from exc
        return value

    def current(self, key: CounterKey) -> int:
        row = self.conn.execute(
            "SELECT value FROM counters WHERE scope=? AND period_key=? AND name=?",
            (key.scope, key.period_key, key.name),
        ).fetchone()
        return int(row[0]) if row else 0


def next_number(store, scope: Optional[str], family: str, instant: Optional[dt.datetime] = None,
                utc_offset: Optional[dt.timedelta] = None) -> int:
    """Next gapless number for `family` in the reset window containing `instant`."""
    key = counter_key(scope, family, instant, utc_offset)
    value = store.increment(key)
    log.debug("Issued %s #%d", key.composite, value)
    return value


def format_document_number(family: str, period_key: str, seq: int, width: Optional[int] = None) -> str:
    """B2526-000042 for bill 42 of FY 2025-26; K250315-000007 for KOT 7 on 2025-03-15."""
    width = NUMBER_WIDTH if width is None else width
    return f"{DOCUMENT_PREFIXES[family]}{pk.period_digits(family, period_key)}-{seq:0{width}d}"


def issue_number(conn: sqlite3.Connection, family: str, scope: Optional[str] = None,
                 instant: Optional[dt.datetime] = None, utc_offset: Optional[dt.timedelta] = None) -> Dict[str, Any]:
    key = counter_key(scope, family, instant, utc_offset)
    number = SqliteCounterStore(conn).increment(key)
    return {
        "family": family,
        "scope": key.scope,
        "period_key": key.period_key,
        "number": number,
        "display": format_document_number(family, key.period_key, number),
    }


# ---------- ADVANCE LEDGER ----------
def advance_balance(conn: sqlite3.Connection, customer_id: str) -> Decimal:
    rows = conn.execute("SELECT amount FROM advance_ledger WHERE customer_id=?", (customer_id,))
    return sum((_amount(r[0]) for r in rows), sp.ZERO)


def _advance_entry(conn: sqlite3.Connection, customer_id: str, kind: str, amount: Decimal,
                   mode: Optional[str] = None, bill_id: Optional[str] = None, note: str = "",
                   entry_utc: Optional[str] = None) -> str:
    entry_id = str(uuid.uuid4())
    signed = amount if kind == "add" else -amount
    conn.execute("""
        INSERT INTO advance_ledger (entry_id, customer_id, entry_utc, kind, mode, amount, bill_id, note)
        VALUES (?,?,?,?,?,?,?,?)
    """, (entry_id, customer_id, entry_utc or iso_now(), kind, mode, str(signed), bill_id, note))
    return entry_id


def add_advance(conn: sqlite3.Connection, customer_id: str, amount: Any, mode: str = sp.CASH,
                note: str = "") -> Decimal:
    """Standalone top-up of a customer's prepaid balance; returns the new balance."""
    value = sp.to_amount(amount)
    if value <= 0:
        raise ValidationError("Advance amount must be greater than zero", field="amount")
    if mode not in EXPENSE_MODES:
        raise ValidationError(f"Unsupported advance mode {mode!r}", field="mode")
    try:
        begin_txn(conn)
        _advance_entry(conn, customer_id, "add", value, mode=mode, note=note or "Advance top-up")
        commit_txn(conn)
    except sqlite3.Error as exc:
        rollback_txn(conn)
        raise StorageError(f"Advance top-up failed: {exc}") from exc
    return advance_balance(conn, customer_id)


def refund_advance(conn: sqlite3.Connection, customer_id: str, amount: Any, mode: str = sp.CASH,
                   note: str = "") -> Decimal:
    """Pay part of the prepaid balance back to the customer; returns the new balance."""
    value = sp.to_amount(amount)
    if value <= 0:
        raise ValidationError("Refund amount must be greater than zero", field="amount")
    if mode not in EXPENSE_MODES:
        raise ValidationError(f"Unsupported refund mode {mode!r}", field="mode")
    try:
        begin_txn(conn)
        if value > advance_balance(conn, customer_id):
            raise ValidationError("Insufficient advance balance to refund", field="amount")
        _advance_entry(conn, customer_id, "refund", value, mode=mode, note=note or "Advance refund")
        commit_txn(conn)
    except ValidationError:
        rollback_txn(conn)
        raise
    except sqlite3.Error as exc:
        rollback_txn(conn)
        raise StorageError(f"Advance refund failed: {exc}") from exc
    log.info("Refunded %s of advance to %s", value, customer_id)
    return advance_balance(conn, customer_id)


def advance_ledger(conn: sqlite3.Connection, customer_id: str, limit: int = 100) -> List[Dict[str, Any]]:
    """Newest first. Amounts are signed: uses and refunds are negative."""
    rows = conn.execute("""
        SELECT entry_id, entry_utc, kind, mode, amount, bill_id, note
        FROM advance_ledger WHERE customer_id=?
        ORDER BY entry_utc DESC, rowid DESC
        LIMIT ?
    """, (customer_id, limit))
    return [dict(r) for r in rows]


# ---------- BILLS (transactional) ----------
def close_bill(conn: sqlite3.Connection, customer_id: str, bill_total: Any, lines: Iterable[Any],
               scope: Optional[str] = None, instant: Optional[dt.datetime] = None,
               remarks: Optional[str] = None, utc_offset: Optional[dt.timedelta] = None) -> Dict[str, Any]:
    """
    Persist a settled bill. The bill number, the receipt number (when any
    part was paid), the payment lines and advance movements are written in
    one transaction, so a failure leaves every counter where it was.

    lines = [ {'id': '...', 'type': 'Cash', 'amount': '80'}, {'type': 'Credit', 'amount': '120'} ]
    """
    customer_id = (customer_id or "").strip()
    if not customer_id:
        raise ValidationError("customer_id is required", field="customer_id")
    total = sp.to_amount(bill_total, field="bill_total")
    if total < 0:
        raise ValidationError("Bill total cannot be negative", field="bill_total")
    parsed = sp.lines_from_payload(list(lines))
    sp.check_split_total(parsed, total)

    parts = sp.merge_split_parts(parsed)
    summary = sp.settlement_summary(parts)
    instant = instant or utc_now()
    created = utc_iso(instant)
    bill_id = str(uuid.uuid4())
    bill_key = counter_key(scope, pk.BILL, instant, utc_offset)

    try:
        begin_txn(conn)
        if summary["advance_used"] > 0:
            # top-ups taken on this bill are credited before it is spent
            available = advance_balance(conn, customer_id) + summary["advance_added"]
            if available < summary["advance_used"]:
                raise ValidationError(
                    f"Advance balance {available} is less than {summary['advance_used']}",
                    field="AdvanceUse",
                )

        bill_no = bump_counter(conn, bill_key)
        bill_number = format_document_number(pk.BILL, bill_key.period_key, bill_no)
        conn.execute("""
            INSERT INTO bills (bill_id, bill_no, bill_number, scope, period_key, customer_id, total,
                               paid_amount, credit_amount, settlement, remarks, created_utc)
            VALUES (?,?,?,?,?,?,?,?,?,?,?,?)
        """, (bill_id, bill_no, bill_number, bill_key.scope, bill_key.period_key, customer_id, str(total),
              str(summary["paid"]), str(summary["credit"]), summary["settlement"], remarks, created))

        for seq, part in enumerate(parts, start=1):
            conn.execute(
                "INSERT INTO bill_payments (bill_id, seq, payment_type, amount) VALUES (?,?,?,?)",
                (bill_id, seq, part.type, str(part.amount)),
            )

        receipt = None
        if summary["paid"] > 0:
            receipt_key = counter_key(scope, pk.RECEIPT, instant, utc_offset)
            receipt_no = bump_counter(conn, receipt_key)
            receipt = {
                "receipt_id": str(uuid.uuid4()),
                "receipt_no": receipt_no,
                "receipt_number": format_document_number(pk.RECEIPT, receipt_key.period_key, receipt_no),
                "period_key": receipt_key.period_key,
            }
            conn.execute("""
                INSERT INTO receipts (receipt_id, receipt_no, receipt_number, scope, period_key, customer_id,
                                      bill_id, amount, created_utc)
                VALUES (?,?,?,?,?,?,?,?,?)
            """, (receipt["receipt_id"], receipt_no, receipt["receipt_number"], receipt_key.scope,
                  receipt_key.period_key, customer_id, bill_id, str(summary["paid"]), created))

        for part in parts:
            if part.type in sp.ADVANCE_TOP_UP_TYPES:
                mode = sp.CASH if part.type == sp.ADVANCE_ADD_CASH else sp.UPI
                _advance_entry(conn, customer_id, "add", part.amount, mode=mode, bill_id=bill_id,
                               note=f"Extra paid during bill {bill_number} ({mode})", entry_utc=created)
        for part in parts:
            if part.type == sp.ADVANCE_USE:
                _advance_entry(conn, customer_id, "use", part.amount, bill_id=bill_id,
                               note=f"Applied to bill {bill_number}", entry_utc=created)

        commit_txn(conn)
    except ValidationError:
        rollback_txn(conn)
        raise
    except sqlite3.Error as exc:
        rollback_txn(conn)
        log.warning("Bill close failed for customer %s: %s", customer_id, exc)
        raise StorageError(f"Bill could not be saved: {exc}", key=bill_key.composite) from exc

    log.info("Closed bill %s (%s) total=%s settlement=%s", bill_number, bill_id, total, summary["settlement"])
    return {
        "bill_id": bill_id,
        "bill_no": bill_no,
        "bill_number": bill_number,
        "period_key": bill_key.period_key,
        "created_utc": created,
        "receipt": receipt,
        "payments": sp.lines_to_payload(parts),
        "summary": {k: (str(v) if isinstance(v, Decimal) else v) for k, v in summary.items()},
    }


def fetch_bill(conn: sqlite3.Connection, bill_id: str) -> Optional[Dict[str, Any]]:
    row = conn.execute("SELECT * FROM bills WHERE bill_id=?", (bill_id,)).fetchone()
    if not row:
        return None
    bill = dict(row)
    bill["payments"] = [
        {"type": r["payment_type"], "amount": r["amount"]}
        for r in conn.execute(
            "SELECT payment_type, amount FROM bill_payments WHERE bill_id=? ORDER BY seq", (bill_id,)
        )
    ]
    return bill


# ---------- CREDIT CLEARANCE ----------
CLEARANCE_TYPES = frozenset({sp.CASH, sp.UPI, sp.ADVANCE_USE})


def credit_outstanding(conn: sqlite3.Connection, customer_id: str) -> Decimal:
    """Credit left on the customer's bills minus what clearances have paid off."""
    owed = sum((_amount(r[0]) for r in conn.execute(
        "SELECT credit_amount FROM bills WHERE customer_id=?", (customer_id,))), sp.ZERO)
    cleared = sum((_amount(r[0]) for r in conn.execute(
        "SELECT amount FROM receipts WHERE customer_id=? AND bill_id IS NULL", (customer_id,))), sp.ZERO)
    return owed - cleared


def clear_credit(conn: sqlite3.Connection, customer_id: str, lines: Iterable[Any],
                 scope: Optional[str] = None, instant: Optional[dt.datetime] = None,
                 remarks: Optional[str] = None, utc_offset: Optional[dt.timedelta] = None) -> Dict[str, Any]:
    """
    Settle earlier credit with a Cash / UPI / AdvanceUse split. Mints a receipt
    number with no bill attached, stores the parts and draws down the advance
    balance in one transaction.

    lines = [ {'type': 'Cash', 'amount': '300'}, {'type': 'AdvanceUse', 'amount': '50'} ]
    """
    customer_id = (customer_id or "").strip()
    if not customer_id:
        raise ValidationError("customer_id is required", field="customer_id")
    parsed = sp.lines_from_payload(list(lines))
    if any(line.type not in CLEARANCE_TYPES or line.amount <= 0 for line in parsed):
        raise ValidationError("Invalid clearance splits", field="lines")
    parts = sp.merge_split_parts(parsed)
    summary = sp.settlement_summary(parts)
    cleared = summary["paid"]
    if cleared <= 0:
        raise ValidationError("Clearance amount must be greater than zero", field="lines")

    instant = instant or utc_now()
    created = utc_iso(instant)
    key = counter_key(scope, pk.RECEIPT, instant, utc_offset)
    receipt_id = str(uuid.uuid4())
    mode = "Split" if len(parts) > 1 else parts[0].type
    remarks = remarks or "Credit Clearance"

    try:
        begin_txn(conn)
        if summary["advance_used"] > 0:
            available = advance_balance(conn, customer_id)
            if available < summary["advance_used"]:
                raise ValidationError(
                    f"Advance balance {available} is less than {summary['advance_used']}",
                    field="AdvanceUse",
                )
        receipt_no = bump_counter(conn, key)
        receipt_number = format_document_number(pk.RECEIPT, key.period_key, receipt_no)
        conn.execute("""
            INSERT INTO receipts (receipt_id, receipt_no, receipt_number, scope, period_key, customer_id,
                                  bill_id, amount, mode, remarks, created_utc)
            VALUES (?,?,?,?,?,?,NULL,?,?,?,?)
        """, (receipt_id, receipt_no, receipt_number, key.scope, key.period_key, customer_id,
              str(cleared), mode, remarks, created))
        for seq, part in enumerate(parts, start=1):
            conn.execute(
                "INSERT INTO receipt_payments (receipt_id, seq, payment_type, amount) VALUES (?,?,?,?)",
                (receipt_id, seq, part.type, str(part.amount)),
            )
            if part.type == sp.ADVANCE_USE:
                _advance_entry(conn, customer_id, "use", part.amount,
                               note=f"Applied to credit clearance {receipt_number}", entry_utc=created)
        commit_txn(conn)
    except ValidationError:
        rollback_txn(conn)
        raise
    except sqlite3.Error as exc:
        rollback_txn(conn)
        log.warning("Credit clearance failed for customer %s: %s", customer_id, exc)
        raise StorageError(f"Clearance could not be saved: {exc}", key=key.composite) from exc

    log.info("Cleared %s of credit for %s with receipt %s", cleared, customer_id, receipt_number)
    return {
        "receipt_id": receipt_id,
        "receipt_no": receipt_no,
        "receipt_number": receipt_number,
        "period_key": key.period_key,
        "created_utc": created,
        "amount": str(cleared),
        "mode": mode,
        "payments": sp.lines_to_payload(parts),
        "outstanding": str(credit_outstanding(conn, customer_id)),
    }


# ---------- EXPENSES ----------
def record_expense(conn: sqlite3.Connection, amount: Any, towards: str, mode: str = sp.CASH,
                   remarks: Optional[str] = None, scope: Optional[str] = None,
                   instant: Optional[dt.datetime] = None,
                   utc_offset: Optional[dt.timedelta] = None) -> Dict[str, Any]:
    value = sp.to_amount(amount)
    if value <= 0:
        raise ValidationError("Expense amount must be greater than zero", field="amount")
    towards = (towards or "").strip()
    if not towards:
        raise ValidationError("towards is required", field="towards")
    if mode not in EXPENSE_MODES:
        raise ValidationError(f"Unsupported expense mode {mode!r}", field="mode")

    instant = instant or utc_now()
    key = counter_key(scope, pk.EXPENSE, instant, utc_offset)
    expense_id = str(uuid.uuid4())
    try:
        begin_txn(conn)
        voucher_no = bump_counter(conn, key)
        voucher_number = format_document_number(pk.EXPENSE, key.period_key, voucher_no)
        conn.execute("""
            INSERT INTO expenses (expense_id, voucher_no, voucher_number, scope, period_key, amount, towards,
                                  mode, remarks, created_utc)
            VALUES (?,?,?,?,?,?,?,?,?,?)
        """, (expense_id, voucher_no, voucher_number, key.scope, key.period_key, str(value), towards, mode,
              remarks, utc_iso(instant)))
        commit_txn(conn)
    except sqlite3.Error as exc:
        rollback_txn(conn)
        raise StorageError(f"Expense could not be saved: {exc}", key=key.composite) from exc
    log.info("Recorded expense %s amount=%s towards=%s", voucher_number, value, towards)
    return {"expense_id": expense_id, "voucher_no": voucher_no, "voucher_number": voucher_number,
            "period_key": key.period_key}


# ---------- AUDIT ----------
_ISSUED_NUMBERS = (
    (pk.BILL, "SELECT scope, period_key, MAX(bill_no) AS top FROM bills GROUP BY scope, period_key"),
    (pk.RECEIPT, "SELECT scope, period_key, MAX(receipt_no) AS top FROM receipts GROUP BY scope, period_key"),
    (pk.EXPENSE, "SELECT scope, period_key, MAX(voucher_no) AS top FROM expenses GROUP BY scope, period_key"),
)


def run_integrity_audit(conn: sqlite3.Connection) -> Dict[str, List[Dict[str, Any]]]:
    """Bills whose payment lines do not reconcile, and counters behind issued numbers."""
    bill_issues = []
    for bill in conn.execute("SELECT bill_id, bill_number, total FROM bills ORDER BY created_utc"):
        lines = [
            sp.PaymentLine(str(r["seq"]), r["payment_type"], _amount(r["amount"]))
            for r in conn.execute("SELECT seq, payment_type, amount FROM bill_payments WHERE bill_id=?",
                                  (bill["bill_id"],))
        ]
        if not sp.validate_split_total(lines, bill["total"]):
            bill_issues.append({
                "bill_id": bill["bill_id"],
                "bill_number": bill["bill_number"],
                "stored": bill["total"],
                "recomputed": str(sp.reconciled_total(lines)),
            })

    counter_issues = []
    for family, query in _ISSUED_NUMBERS:
        for row in conn.execute(query):
            key = CounterKey(row["scope"], row["period_key"], family)
            current = SqliteCounterStore(conn).current(key)
            if current < row["top"]:
                counter_issues.append({"key": key.composite, "counter": current, "issued": row["top"]})
    return {"bill_issues": bill_issues, "counter_issues": counter_issues}


def seed_counters_from_documents(conn: sqlite3.Connection) -> int:
    """Raise counters to the highest number already stored; never lowers one."""
    updated = 0
    try:
        begin_txn(conn)
        for family, query in _ISSUED_NUMBERS:
            for row in conn.execute(query).fetchall():
                cur = conn.execute("""
                    INSERT INTO counters (scope, period_key, name, value, updated_utc) VALUES (?,?,?,?,?)
                    ON CONFLICT(scope, period_key, name) DO UPDATE SET
                      value = excluded.value, updated_utc = excluded.updated_utc
                    WHERE excluded.value > counters.value
                """, (row["scope"], row["period_key"], family, row["top"], iso_now()))
                updated += cur.rowcount
        commit_txn(conn)
    except sqlite3.Error as exc:
        rollback_txn(conn)
        raise StorageError(f"Counter seeding failed: {exc}") from exc
    return updated


# ---------- BACKUPS ----------
def ensure_dir(p: str):
    Path(p).mkdir(parents=True, exist_ok=True)

def backup_ndjson(conn: sqlite3.Connection, day: Optional[str] = None, backup_dir: Optional[str] = None,
                  utc_offset: Optional[dt.timedelta] = None) -> Path:
    """
    day: 'YYYY-MM-DD' local business day. Defaults to today.
    Writes one JSON object per bill (payment lines included) closed that day.
    """
    offset = UTC_OFFSET if utc_offset is None else utc_offset
    if day is None:
        day = pk.period_key(pk.KOT, None, offset)
    backup_dir = backup_dir or BACKUP_DIR
    ensure_dir(backup_dir)
    start_local = dt.datetime.strptime(day, "%Y-%m-%d")
    start = utc_iso(start_local - offset)
    end = utc_iso(start_local + dt.timedelta(days=1) - offset)

    path = Path(backup_dir) / f"bills_{day}.ndjson"
    rows = conn.execute(
        "SELECT bill_id FROM bills WHERE created_utc >= ? AND created_utc < ? ORDER BY created_utc",
        (start, end),
    ).fetchall()
    with open(path, "w", encoding="utf-8") as f:
        for row in rows:
            f.write(json.dumps(fetch_bill(conn, row["bill_id"]), separators=(",", ":")) + "\n")
    return path


# ---------- CLI ----------
def main():
    ap = argparse.ArgumentParser(description="POS numbering and bill store")
    ap.add_argument("--init", action="store_true", help="Initialize database schema")
    ap.add_argument("--schema", default=SCHEMA_PATH, help="Path to schema.sql")
    ap.add_argument("--db", default=DB_PATH, help="Path to SQLite DB")
    ap.add_argument("--scope", default=SHOP_SCOPE, help="Counter scope (shop id)")
    ap.add_argument("--next", choices=pk.COUNTER_FAMILIES, help="Issue the next number for a family")
    ap.add_argument("--audit", action="store_true", help="Check bills and counters for drift")
    ap.add_argument("--seed-counters", action="store_true", help="Raise counters to stored document numbers")
    ap.add_argument("--backup", action="store_true", help="Write NDJSON backup for a business day")
    ap.add_argument("--day", default=None, help="Business day for --backup (YYYY-MM-DD)")
    args = ap.parse_args()

    logging.basicConfig(level=os.environ.get("POS_LOG_LEVEL", "INFO").upper(),
                        format="%(asctime)s %(levelname)s %(name)s %(message)s")
    conn = connect(args.db)

    if args.init:
        init_db(conn, args.schema)
        print("Initialized schema from", args.schema)
    else:
        ensure_schema(conn, args.schema)

    if args.seed_counters:
        print(f"Raised {seed_counters_from_documents(conn)} counter(s)")

    if args.next:
        try:
            issued = issue_number(conn, args.next, scope=args.scope)
        except StorageError as exc:
            print(f"Could not issue number: {exc}", file=sys.stderr)
            sys.exit(1)
        print(f"{issued['display']} (period {issued['period_key']}, #{issued['number']})")

    if args.audit:
        report = run_integrity_audit(conn)
        print(json.dumps(report, indent=2))

    if args.backup:
        print("Backed up to", backup_ndjson(conn, args.day))

if __name__ == "__main__":
    main()
