"""
Recurring transaction detection.

Two sources feed the same RecurringStream shape:

* provider streams from Plaid's /transactions/recurring/get payload
  (parse_provider_streams), and
* a custom detector that groups stored transactions by normalized merchant
  name + amount bucket and estimates the cadence from the median gap between
  consecutive dates (detect_custom_streams).
"""
import math
import re
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import ROUND_HALF_UP, Decimal
from statistics import median
from typing import Any, Iterable

from cash_snapshot.services.parsing import nested, parse_date, parse_float, parse_int, parse_str

INFLOW = "inflow"
OUTFLOW = "outflow"

SOURCE_PROVIDER = "provider"
SOURCE_CUSTOM = "custom"

MIN_OCCURRENCES = 3
AMOUNT_BUCKET = Decimal(5)


# ─── Frequency definitions ────────────────────────────────────────────────────

# Upper bound (inclusive) in days → frequency class; anything longer is quarterly
FREQUENCY_THRESHOLDS: list[tuple[int, str]] = [
    (10, "weekly"),
    (20, "biweekly"),
    (45, "monthly"),
]
DEFAULT_FREQUENCY = "monthly"

# Plaid reports frequency as an enum; translate it when no day count is given
PLAID_FREQUENCY_DAYS: dict[str, int] = {
    "WEEKLY":       7,
    "BIWEEKLY":    14,
    "SEMI_MONTHLY": 15,
    "MONTHLY":     30,
    "ANNUALLY":   365,
}


@dataclass(frozen=True)
class RecurringStream:
    stream_id: str | None
    description: str | None
    merchant_name: str | None
    avg_amount: float
    first_date: date | None
    last_date: date | None
    next_estimated_date: date | None
    occurrences: int
    frequency_days: int | None
    direction: str
    source: str


# ─── Helpers ─────────────────────────────────────────────────────────────────

def normalize_direction(value: str | None) -> str:
    """Only an explicit "inflow" (any case) is inflow."""
    if value is not None and value.strip().lower() == INFLOW:
        return INFLOW
    return OUTFLOW


def normalize_merchant(name: str) -> str:
    """Lowercase, trim, collapse whitespace, drop anything not a-z/0-9/space."""
    name = name.strip().lower()
    name = re.sub(r"\s+", " ", name)
    return re.sub(r"[^a-z0-9\s]", "", name)


def amount_bucket(amount: Decimal | float) -> Decimal:
    """Absolute amount rounded to the nearest multiple of 5 (halves round up)."""
    magnitude = abs(Decimal(str(amount)))
    return (magnitude / AMOUNT_BUCKET).quantize(Decimal(1), rounding=ROUND_HALF_UP) * AMOUNT_BUCKET


def classify_frequency(days: int | None) -> str:
    if days is None:
        return DEFAULT_FREQUENCY
    for upper, frequency in FREQUENCY_THRESHOLDS:
        if days <= upper:
            return frequency
    return "quarterly"


def _round2(value: Decimal) -> float:
    return float(value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def _matches_direction(amount: Decimal, direction: str) -> bool:
    # Plaid convention: positive = money out
    return amount > 0 if direction == OUTFLOW else amount < 0


# ─── Custom detector ─────────────────────────────────────────────────────────

def detect_custom_streams(transactions: Iterable[Any], direction: str) -> list[RecurringStream]:
    """
    Infer recurring streams from transaction rows (anything with amount,
    merchant_name and date attributes).

    Output does not depend on input order: groups are keyed and sorted, and
    each stream is labelled with the merchant spelling of its earliest row.
    """
    direction = normalize_direction(direction)
    groups: dict[tuple[str, Decimal], list[Any]] = defaultdict(list)

    for txn in transactions:
        if txn.amount is None:
            continue
        amount = Decimal(str(txn.amount))
        if not _matches_direction(amount, direction):
            continue
        merchant = txn.merchant_name
        if not merchant or not merchant.strip():
            continue
        groups[(normalize_merchant(merchant), amount_bucket(amount))].append(txn)

    streams: list[tuple[tuple[str, Decimal], RecurringStream]] = []

    for key, txns in groups.items():
        if len(txns) < MIN_OCCURRENCES:
            continue

        dates = sorted(t.date for t in txns if t.date is not None)
        if len(set(dates)) < MIN_OCCURRENCES:
            continue

        deltas = [(dates[i] - dates[i - 1]).days for i in range(1, len(dates))]
        frequency_days = math.floor(median(deltas) + 0.5)

        first_date, last_date = dates[0], dates[-1]

        avg_abs = sum(abs(Decimal(str(t.amount))) for t in txns) / len(txns)
        signed_avg = -avg_abs if direction == OUTFLOW else avg_abs

        label_row = min(
            txns,
            key=lambda t: (t.date is None, t.date or date.max, t.merchant_name.strip()),
        )
        merchant = label_row.merchant_name.strip()

        streams.append((key, RecurringStream(
            stream_id=None,
            description=merchant,
            merchant_name=merchant,
            avg_amount=_round2(signed_avg),
            first_date=first_date,
            last_date=last_date,
            next_estimated_date=last_date + timedelta(days=frequency_days),
            occurrences=len(txns),
            frequency_days=frequency_days,
            direction=direction,
            source=SOURCE_CUSTOM,
        )))

    streams.sort(key=lambda pair: (-pair[1].occurrences, pair[0]))
    return [s for _, s in streams]


# ─── Provider streams ────────────────────────────────────────────────────────

def _provider_merchant(raw: dict) -> str | None:
    merchant = raw.get("merchant_name")
    if isinstance(merchant, dict):
        merchant = merchant.get("name")
    return parse_str(merchant) or parse_str(raw.get("description"))


def _provider_amount(raw: dict) -> float:
    amount = parse_float(nested(raw, "average_amount", "value"))
    if amount is None:
        amount = parse_float(nested(raw, "average_amount", "amount"))
    if amount is None:
        amount = parse_float(raw.get("amount"))
    return amount if amount is not None else 0.0


def _provider_frequency_days(raw: dict) -> int | None:
    frequency = raw.get("frequency")
    if isinstance(frequency, dict):
        return parse_int(frequency.get("days"))
    if isinstance(frequency, str):
        return PLAID_FREQUENCY_DAYS.get(frequency.upper())
    return None


def _provider_occurrences(raw: dict) -> int:
    occurrences = parse_int(raw.get("occurrences"))
    if occurrences is not None:
        return occurrences
    transaction_ids = raw.get("transaction_ids")
    return len(transaction_ids) if isinstance(transaction_ids, list) else 0


def _next_date(last_date: date | None, frequency_days: int | None) -> date | None:
    if last_date is None or frequency_days is None:
        return None
    try:
        return last_date + timedelta(days=frequency_days)
    except OverflowError:
        # frequency far outside the calendar
        return None


def parse_provider_streams(payload: dict, direction: str) -> list[RecurringStream]:
    """Map the inflow or outflow half of a recurring/get payload to streams."""
    direction = normalize_direction(direction)
    raw_streams = payload.get("inflow_streams" if direction == INFLOW else "outflow_streams")
    if not isinstance(raw_streams, list):
        return []

    streams: list[RecurringStream] = []
    for raw in raw_streams:
        if not isinstance(raw, dict):
            continue

        merchant = _provider_merchant(raw)
        description = parse_str(raw.get("description")) or merchant

        avg_amount = _provider_amount(raw)
        if direction == OUTFLOW and avg_amount > 0:
            avg_amount = -avg_amount

        last_date = parse_date(raw.get("last_date"))
        frequency_days = _provider_frequency_days(raw)
        next_date = _next_date(last_date, frequency_days)

        streams.append(RecurringStream(
            stream_id=parse_str(raw.get("stream_id")),
            description=description,
            merchant_name=merchant,
            avg_amount=avg_amount,
            first_date=parse_date(raw.get("first_date")),
            last_date=last_date,
            next_estimated_date=next_date,
            occurrences=_provider_occurrences(raw),
            frequency_days=frequency_days,
            direction=direction,
            source=SOURCE_PROVIDER,
        ))
    return streams
