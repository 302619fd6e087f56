"""
Split-payment allocation for a single bill-closing session.

A bill starts fully unpaid: one Credit line holding the whole total. Every
Cash / UPI / AdvanceUse line moves money out of that Credit remainder and
removing one moves it back, so the reconciling lines (Cash + UPI + Credit +
AdvanceUse) always add up to the bill total. AdvanceAddCash / AdvanceAddUPI
are top-ups to the customer's prepaid balance taken at the counter; they sit
beside the bill and never touch the remainder.

The remainder is held in its own field on SplitAllocation and rendered as
the single trailing Credit line, so a session can never carry two Credit
lines.

  lines = initialize_split(200)              # [Credit 200]
  lines = add_split_line(lines, "Cash", 80)  # [Cash 80, Credit 120]
  validate_split_total(lines, 200)           # True
"""
import re
import uuid
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Optional

from pos_errors import ValidationError

CASH = "Cash"
UPI = "UPI"
CREDIT = "Credit"
ADVANCE_USE = "AdvanceUse"
ADVANCE_ADD_CASH = "AdvanceAddCash"
ADVANCE_ADD_UPI = "AdvanceAddUPI"

PAYMENT_TYPES = (CASH, UPI, CREDIT, ADVANCE_USE, ADVANCE_ADD_CASH, ADVANCE_ADD_UPI)
RECONCILING_TYPES = frozenset({CASH, UPI, CREDIT, ADVANCE_USE})
PAID_TYPES = frozenset({CASH, UPI, ADVANCE_USE})
ADVANCE_TOP_UP_TYPES = frozenset({ADVANCE_ADD_CASH, ADVANCE_ADD_UPI})

TOTAL_TOLERANCE = Decimal("0.01")
MAX_PAYMENT_AMOUNT = Decimal("999999.99")
ZERO = Decimal("0")

CREDIT_INITIAL_ID = "credit-initial"
CREDIT_RESTORED_ID = "credit-restored"

FULLY_PAID = "Fully Paid"
PARTIALLY_PAID = "Partially Paid"
FULLY_CREDIT = "Fully Credit"

# Symbols and separators users type into amount fields
_AMOUNT_NOISE = re.compile(r"[₹,\s]")


def new_line_id() -> str:
    return str(uuid.uuid4())


def parse_amount(value: Any) -> Optional[Decimal]:
    """Best-effort decimal parse; None for blanks, junk, NaN and infinities."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        amount = value
    elif isinstance(value, (int, float)):
        amount = Decimal(str(value))
    else:
        cleaned = _AMOUNT_NOISE.sub("", str(value))
        if not cleaned:
            return None
        try:
            amount = Decimal(cleaned)
        except InvalidOperation:
            return None
    if not amount.is_finite():
        return None
    return amount


def to_amount(value: Any, field: str = "amount") -> Decimal:
    amount = parse_amount(value)
    if amount is None:
        raise ValidationError(f"Invalid {field}: {value!r}", field=field)
    return amount


@dataclass(frozen=True)
class PaymentLine:
    id: str
    type: str
    amount: Decimal

    def as_dict(self) -> Dict[str, str]:
        return {"id": self.id, "type": self.type, "amount": str(self.amount)}


def coerce_line(raw: Any) -> PaymentLine:
    """Accept a PaymentLine or a {'id','type','amount'} mapping."""
    if isinstance(raw, PaymentLine):
        return raw
    if not isinstance(raw, dict):
        raise ValidationError(f"Invalid payment line: {raw!r}", field="lines")
    split_type = raw.get("type")
    if split_type not in PAYMENT_TYPES:
        raise ValidationError(f"Unknown payment type {split_type!r}", field="type")
    amount = to_amount(raw.get("amount"))
    if amount < 0:
        raise ValidationError("Payment line amounts cannot be negative", field="amount")
    line_id = str(raw.get("id") or "").strip() or new_line_id()
    return PaymentLine(line_id, split_type, amount)


def lines_from_payload(raw_lines: Any) -> List[PaymentLine]:
    if raw_lines is None:
        return []
    if not isinstance(raw_lines, list):
        raise ValidationError("lines must be a list", field="lines")
    return [coerce_line(raw) for raw in raw_lines]


def lines_to_payload(lines: Iterable[PaymentLine]) -> List[Dict[str, str]]:
    return [line.as_dict() for line in lines]


class SplitAllocation:
    """Payment lines of one bill-closing session.

    `remainder` is the unpaid part of the bill (the Credit line); the other
    lines are kept in entry order in `_lines`.
    """

    def __init__(self, bill_total: Any):
        self.bill_total = to_amount(bill_total, field="bill_total")
        if self.bill_total < 0:
            raise ValidationError("Bill total cannot be negative", field="bill_total")
        self.remainder = self.bill_total
        self.remainder_id: Optional[str] = CREDIT_INITIAL_ID if self.bill_total > 0 else None
        self._lines: List[PaymentLine] = []

    @classmethod
    def from_lines(cls, lines: Iterable[Any], bill_total: Any = None) -> "SplitAllocation":
        """Rebuild a session from rendered lines.

        Duplicate Credit lines from older data collapse into one remainder.
        Without an explicit bill_total the reconciling sum is used.
        """
        parsed = [coerce_line(raw) for raw in lines]
        if bill_total is None:
            bill_total = reconciled_total(parsed)
        allocation = cls(bill_total)
        credits = [line for line in parsed if line.type == CREDIT]
        allocation.remainder = sum((line.amount for line in credits), ZERO)
        allocation.remainder_id = credits[0].id if credits and allocation.remainder > 0 else None
        allocation._lines = [line for line in parsed if line.type != CREDIT]
        return allocation

    @property
    def lines(self) -> List[PaymentLine]:
        rendered = list(self._lines)
        if self.remainder > 0:
            rendered.append(PaymentLine(self.remainder_id or CREDIT_RESTORED_ID, CREDIT, self.remainder))
        return rendered

    def find(self, line_id: str) -> Optional[PaymentLine]:
        for line in self.lines:
            if line.id == line_id:
                return line
        return None

    def add(self, split_type: str, amount: Any) -> PaymentLine:
        """Record `amount` against `split_type`; returns the line that changed."""
        if split_type not in PAYMENT_TYPES:
            raise ValidationError(f"Unknown payment type {split_type!r}", field="type")
        amount = to_amount(amount)
        if amount <= 0:
            raise ValidationError("Amount must be greater than zero", field="amount")
        if split_type == CREDIT:
            self._restore(amount, new_line_id())
            return self.lines[-1]
        line = self._merge(split_type, amount)
        if split_type not in ADVANCE_TOP_UP_TYPES:
            self._reduce(amount)
        return line

    def remove(self, line_id: str) -> Optional[PaymentLine]:
        """Drop a non-Credit line; returns it, or None when nothing changed."""
        for idx, line in enumerate(self._lines):
            if line.id == line_id:
                break
        else:
            return None
        del self._lines[idx]
        if line.type in RECONCILING_TYPES:
            self._restore(line.amount, CREDIT_RESTORED_ID)
        return line

    def _merge(self, split_type: str, amount: Decimal) -> PaymentLine:
        for idx, line in enumerate(self._lines):
            if line.type == split_type:
                merged = PaymentLine(line.id, split_type, line.amount + amount)
                self._lines[idx] = merged
                return merged
        line = PaymentLine(new_line_id(), split_type, amount)
        self._lines.append(line)
        return line

    def _reduce(self, amount: Decimal) -> None:
        self.remainder -= amount
        if self.remainder <= 0:
            self.remainder = ZERO
            self.remainder_id = None

    def _restore(self, amount: Decimal, line_id: str) -> None:
        if self.remainder_id is None or self.remainder <= 0:
            self.remainder_id = line_id
        self.remainder += amount

    def is_balanced(self) -> bool:
        return validate_split_total(self.lines, self.bill_total)


def initialize_split(bill_total: Any) -> List[PaymentLine]:
    return SplitAllocation(bill_total).lines


def add_split_line(lines: Iterable[Any], split_type: str, amount: Any) -> List[PaymentLine]:
    allocation = SplitAllocation.from_lines(lines)
    allocation.add(split_type, amount)
    return allocation.lines


def remove_split_line(lines: Iterable[Any], line_id: str) -> List[Any]:
    """Drop one line; the Credit line or an unknown id returns the input as given."""
    lines = list(lines)
    parsed = [coerce_line(raw) for raw in lines]
    target = next((line for line in parsed if line.id == line_id), None)
    if target is None or target.type == CREDIT:
        return lines
    allocation = SplitAllocation.from_lines(parsed)
    allocation.remove(line_id)
    return allocation.lines


def validate_split_amount(amount_text: Any, max_amount: Any) -> bool:
    amount = parse_amount(amount_text)
    cap = parse_amount(max_amount)
    if amount is None or cap is None:
        return False
    return ZERO < amount <= cap


def check_split_amount(amount_text: Any, max_amount: Any) -> Decimal:
    """Like validate_split_amount, but returns the amount or raises ValidationError."""
    amount = parse_amount(amount_text)
    if amount is None:
        raise ValidationError(f"Invalid amount: {amount_text!r}", field="amount")
    if amount <= 0:
        raise ValidationError("Amount must be greater than zero", field="amount")
    if not validate_split_amount(amount, max_amount):
        raise ValidationError(f"Amount {amount} exceeds the allowed {max_amount}", field="amount")
    return amount


def _sum_of(lines: Iterable[PaymentLine], types) -> Decimal:
    return sum((line.amount for line in lines if line.type in types), ZERO)


def reconciled_total(lines: Iterable[PaymentLine]) -> Decimal:
    return _sum_of(lines, RECONCILING_TYPES)


def credit_amount(lines: Iterable[PaymentLine]) -> Decimal:
    return _sum_of(lines, {CREDIT})


def validate_split_total(lines: Iterable[Any], bill_total: Any) -> bool:
    total = parse_amount(bill_total)
    if total is None:
        return False
    try:
        parsed = [coerce_line(raw) for raw in lines]
    except ValidationError:
        return False
    return abs(reconciled_total(parsed) - total) < TOTAL_TOLERANCE


def check_split_total(lines: Iterable[Any], bill_total: Any) -> None:
    parsed = [coerce_line(raw) for raw in lines]
    if not validate_split_total(parsed, bill_total):
        raise ValidationError(
            f"Split total {reconciled_total(parsed)} does not match bill total {bill_total}",
            field="lines",
        )


def max_amount_for(lines: Iterable[Any], split_type: str, advance_balance: Any = 0) -> Decimal:
    """Largest amount the add-split form may accept for `split_type`."""
    parsed = [coerce_line(raw) for raw in lines]
    remaining = credit_amount(parsed)
    if split_type in ADVANCE_TOP_UP_TYPES or split_type == CREDIT:
        return MAX_PAYMENT_AMOUNT
    if split_type == ADVANCE_USE:
        balance = parse_amount(advance_balance) or ZERO
        return max(ZERO, min(remaining, balance))
    return remaining


def merge_split_parts(lines: Iterable[Any]) -> List[PaymentLine]:
    """One line per payment type, ids replaced by the type name."""
    totals: Dict[str, Decimal] = {}
    for line in (coerce_line(raw) for raw in lines):
        totals[line.type] = totals.get(line.type, ZERO) + line.amount
    return [PaymentLine(split_type, split_type, amount) for split_type, amount in totals.items()]


def settlement_summary(lines: Iterable[Any]) -> Dict[str, Any]:
    parsed = [coerce_line(raw) for raw in lines]
    paid = _sum_of(parsed, PAID_TYPES)
    credit = credit_amount(parsed)
    if credit <= 0:
        settlement = FULLY_PAID
    elif paid <= 0:
        settlement = FULLY_CREDIT
    else:
        settlement = PARTIALLY_PAID
    return {
        "paid": paid,
        "credit": credit,
        "cash": _sum_of(parsed, {CASH}),
        "upi": _sum_of(parsed, {UPI}),
        "advance_used": _sum_of(parsed, {ADVANCE_USE}),
        "advance_added": _sum_of(parsed, ADVANCE_TOP_UP_TYPES),
        "settlement": settlement,
    }
