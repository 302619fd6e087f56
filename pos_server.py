from flask import Flask, g, jsonify, request
from dotenv import load_dotenv
import os
import sqlite3
import threading
import logging
import datetime as dt
from typing import Any, Dict, Optional

# Load environment variables before the service modules read them
load_dotenv()

import period_keys as pk
import pos_service as ps
import split_payments as sp
from pos_errors import StorageError, ValidationError


def _env_string(name: str, default: Optional[str] = None) -> Optional[str]:
    """Return trimmed string-valued env vars, normalizing empty strings to None."""
    raw = os.getenv(name, default)
    if raw is None:
        return default
    if isinstance(raw, str):
        clean = raw.strip()
        return clean if clean else default
    return raw

app = Flask(__name__)

_LOG_LEVEL_NAME = (os.getenv('POS_LOG_LEVEL') or 'INFO').strip().upper()
app.logger.setLevel(getattr(logging, _LOG_LEVEL_NAME, logging.INFO))
logging.getLogger('werkzeug').setLevel(getattr(logging, _LOG_LEVEL_NAME, logging.INFO))
logging.getLogger('pos_service').setLevel(getattr(logging, _LOG_LEVEL_NAME, logging.INFO))

app.config['POS_DB_PATH'] = _env_string('POS_DB_PATH', 'pos.db')
app.config['POS_SCHEMA_PATH'] = _env_string('POS_SCHEMA_PATH', ps.SCHEMA_PATH)
app.config['POS_SHOP_SCOPE'] = _env_string('POS_SHOP_SCOPE', 'shop_1')
app.config['POS_UTC_OFFSET'] = pk.offset_from_minutes(_env_string('POS_UTC_OFFSET_MINUTES'))

_SCHEMA_LOCK = threading.Lock()
_SCHEMA_READY = set()


def _db_connect() -> sqlite3.Connection:
    """One connection per request, closed on teardown."""
    conn = g.get('pos_db')
    if conn is not None:
        return conn
    db_path = app.config['POS_DB_PATH']
    conn = ps.connect(db_path)
    if db_path not in _SCHEMA_READY:
        with _SCHEMA_LOCK:
            if db_path not in _SCHEMA_READY:
                ps.ensure_schema(conn, app.config['POS_SCHEMA_PATH'])
                _SCHEMA_READY.add(db_path)
                app.logger.info("POS schema ready at %s", db_path)
    g.pos_db = conn
    return conn


@app.teardown_appcontext
def _close_db(exc):
    conn = g.pop('pos_db', None)
    if conn is not None:
        conn.close()


@app.errorhandler(ValidationError)
def _validation_failed(exc: ValidationError):
    return jsonify({'status': 'error', 'message': str(exc), 'field': exc.field}), 400


@app.errorhandler(StorageError)
def _storage_failed(exc: StorageError):
    app.logger.warning("Storage failure (%s): %s", exc.key or 'n/a', exc)
    return jsonify({'status': 'error', 'message': str(exc), 'retryable': True}), 503


def _payload() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _offset() -> dt.timedelta:
    return app.config['POS_UTC_OFFSET']


def _scope(data: Optional[Dict[str, Any]] = None) -> str:
    raw = (data or {}).get('scope') or request.args.get('scope')
    return str(raw).strip() if raw else app.config['POS_SHOP_SCOPE']


def _parse_instant(raw: Any) -> Optional[dt.datetime]:
    """ISO-8601 timestamp from the client; naive values are UTC."""
    if raw in (None, ''):
        return None
    text = str(raw).strip()
    if text.endswith('Z'):
        text = text[:-1] + '+00:00'
    try:
        return pk.to_utc_naive(dt.datetime.fromisoformat(text))
    except ValueError:
        raise ValidationError(f"Invalid timestamp {raw!r}", field='at') from None


def _family(raw: Any) -> str:
    family = str(raw or '').strip().lower()
    if family not in pk.COUNTER_FAMILIES:
        raise ValidationError(f"Unknown counter family {raw!r}", field='family')
    return family


def _summary_payload(lines) -> Dict[str, Any]:
    summary = sp.settlement_summary(lines)
    return {k: (str(v) if not isinstance(v, str) else v) for k, v in summary.items()}


def _lines_payload(lines) -> Dict[str, Any]:
    return {
        'status': 'success',
        'lines': sp.lines_to_payload(lines),
        'credit_amount': str(sp.credit_amount(lines)),
        'summary': _summary_payload(lines),
    }


@app.route('/health')
def health():
    return jsonify({
        'status': 'success',
        'scope': app.config['POS_SHOP_SCOPE'],
        'utc_offset_minutes': int(_offset().total_seconds() // 60),
    })


@app.route('/api/period-key')
def api_period_key():
    """Reset window for a counter family at `at` (default now)."""
    family = _family(request.args.get('family'))
    instant = _parse_instant(request.args.get('at'))
    key = pk.period_key(family, instant, _offset())
    start, end = pk.period_window(family, instant, _offset())
    payload = {
        'status': 'success',
        'family': family,
        'period_key': key,
        'window': {'start_utc': ps.utc_iso(start), 'end_utc': ps.utc_iso(end)},
    }
    if family not in pk.DAILY_FAMILIES:
        payload['fiscal_year'] = pk.fiscal_year_label(int(key))
    return jsonify(payload)


@app.route('/api/numbers/<family>/next', methods=['POST'])
def api_next_number(family):
    """Mint the next document number for a family. Not idempotent: every call consumes a number."""
    data = _payload()
    family = _family(family)
    issued = ps.issue_number(
        _db_connect(), family, scope=_scope(data), instant=_parse_instant(data.get('at')), utc_offset=_offset()
    )
    app.logger.info("Issued %s number %s", family, issued['display'])
    return jsonify({'status': 'success', **issued})


@app.route('/api/split/init', methods=['POST'])
def api_split_init():
    data = _payload()
    return jsonify(_lines_payload(sp.initialize_split(data.get('bill_total'))))


@app.route('/api/split/add', methods=['POST'])
def api_split_add():
    """Add one split after checking the amount against what the type may still take."""
    data = _payload()
    lines = sp.lines_from_payload(data.get('lines'))
    split_type = data.get('type')
    if split_type not in sp.PAYMENT_TYPES:
        raise ValidationError(f"Unknown payment type {split_type!r}", field='type')
    advance_balance = data.get('advance_balance')
    if split_type == sp.ADVANCE_USE and advance_balance is None and data.get('customer_id'):
        advance_balance = ps.advance_balance(_db_connect(), str(data['customer_id']))
    cap = sp.max_amount_for(lines, split_type, advance_balance or 0)
    amount = sp.check_split_amount(data.get('amount'), cap)
    return jsonify(_lines_payload(sp.add_split_line(lines, split_type, amount)))


@app.route('/api/split/remove', methods=['POST'])
def api_split_remove():
    data = _payload()
    line_id = str(data.get('id') or '').strip()
    if not line_id:
        return jsonify({'status': 'error', 'message': 'Missing id'}), 400
    lines = sp.lines_from_payload(data.get('lines'))
    return jsonify(_lines_payload(sp.remove_split_line(lines, line_id)))


@app.route('/api/split/validate', methods=['POST'])
def api_split_validate():
    data = _payload()
    lines = sp.lines_from_payload(data.get('lines'))
    bill_total = data.get('bill_total')
    return jsonify({
        'status': 'success',
        'valid': sp.validate_split_total(lines, bill_total),
        'reconciled_total': str(sp.reconciled_total(lines)),
        'summary': _summary_payload(lines),
    })


@app.route('/api/bills/close', methods=['POST'])
def api_close_bill():
    """Validate the final split, mint the bill (and receipt) number and store everything."""
    data = _payload()
    result = ps.close_bill(
        _db_connect(),
        customer_id=str(data.get('customer_id') or ''),
        bill_total=data.get('bill_total'),
        lines=sp.lines_from_payload(data.get('lines')),
        scope=_scope(data),
        instant=_parse_instant(data.get('at')),
        remarks=data.get('remarks'),
        utc_offset=_offset(),
    )
    return jsonify({'status': 'success', **result})


@app.route('/api/bills/<bill_id>')
def api_get_bill(bill_id):
    bill = ps.fetch_bill(_db_connect(), bill_id)
    if not bill:
        return jsonify({'status': 'error', 'message': 'Bill not found'}), 404
    return jsonify({'status': 'success', 'bill': bill})


@app.route('/api/customers/<customer_id>/advance', methods=['GET', 'POST'])
def api_customer_advance(customer_id):
    conn = _db_connect()
    if request.method == 'POST':
        data = _payload()
        balance = ps.add_advance(conn, customer_id, data.get('amount'), mode=data.get('mode') or sp.CASH,
                                 note=str(data.get('note') or ''))
        app.logger.info("Advance top-up for %s; balance now %s", customer_id, balance)
    else:
        balance = ps.advance_balance(conn, customer_id)
    return jsonify({'status': 'success', 'customer_id': customer_id, 'balance': str(balance)})


@app.route('/api/customers/<customer_id>/advance/refund', methods=['POST'])
def api_refund_advance(customer_id):
    data = _payload()
    balance = ps.refund_advance(_db_connect(), customer_id, data.get('amount'), mode=data.get('mode') or sp.CASH,
                                note=str(data.get('note') or ''))
    app.logger.info("Advance refund for %s; balance now %s", customer_id, balance)
    return jsonify({'status': 'success', 'customer_id': customer_id, 'balance': str(balance)})


@app.route('/api/customers/<customer_id>/advance/ledger')
def api_advance_ledger(customer_id):
    try:
        limit = int(request.args.get('limit', 100))
    except ValueError:
        limit = 100
    entries = ps.advance_ledger(_db_connect(), customer_id, limit=max(1, min(limit, 1000)))
    return jsonify({'status': 'success', 'customer_id': customer_id, 'entries': entries})


@app.route('/api/customers/<customer_id>/credit/clear', methods=['POST'])
def api_clear_credit(customer_id):
    """Receipt against earlier credit; parts may be Cash, UPI or AdvanceUse."""
    data = _payload()
    result = ps.clear_credit(
        _db_connect(),
        customer_id,
        sp.lines_from_payload(data.get('lines')),
        scope=_scope(data),
        instant=_parse_instant(data.get('at')),
        remarks=data.get('remarks'),
        utc_offset=_offset(),
    )
    return jsonify({'status': 'success', **result})


@app.route('/api/expenses', methods=['POST'])
def api_record_expense():
    data = _payload()
    result = ps.record_expense(
        _db_connect(),
        amount=data.get('amount'),
        towards=str(data.get('towards') or ''),
        mode=data.get('mode') or sp.CASH,
        remarks=data.get('remarks'),
        scope=_scope(data),
        instant=_parse_instant(data.get('at')),
        utc_offset=_offset(),
    )
    return jsonify({'status': 'success', **result})


@app.route('/api/audit')
def api_audit():
    report = ps.run_integrity_audit(_db_connect())
    clean = not report['bill_issues'] and not report['counter_issues']
    if not clean:
        app.logger.warning("Integrity audit found %d bill and %d counter issue(s)",
                           len(report['bill_issues']), len(report['counter_issues']))
    return jsonify({'status': 'success', 'clean': clean, **report})
