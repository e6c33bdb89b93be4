"""
Field Parser Module

Pulls transaction fields out of receipt, statement and SMS text using ordered,
named pattern rules. Parsing strategies are applied in sequence, later ones
only filling slots the earlier ones left empty.
"""

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date, time
from decimal import Decimal
from typing import Any, Callable

from .models import ParsedFields
from .qr_payment import find_qr_payload, parse_qr_payment

logger = logging.getLogger(__name__)

_NUMBER = r'(?P<amount>\d[\d,]*(?:\.\d{1,2})?)'
_CURRENCY = r'(?:rs\.?|inr|₹)'

UPI_APP_KEYWORDS = {
    "paytm": "Paytm",
    "phonepe": "PhonePe",
    "gpay": "Google Pay",
    "googlepay": "Google Pay",
    "amazonpay": "Amazon Pay",
    "bhim": "BHIM",
    "yono": "SBI Yono",
    "mobikwik": "MobiKwik",
    "freecharge": "FreeCharge",
    "airtelmoney": "Airtel Money",
    "jiomoney": "JioMoney",
}

# DLT sender codes (the part after the 'VM-' style prefix)
BANK_SENDERS = {
    "SBIINB": "State Bank of India",
    "HDFCBK": "HDFC Bank",
    "ICICIB": "ICICI Bank",
    "AXISBK": "Axis Bank",
    "KOTAKB": "Kotak Mahindra Bank",
    "PNBSMS": "Punjab National Bank",
    "BOBSMS": "Bank of Baroda",
    "CBSSMS": "Canara Bank",
    "UNINSM": "Union Bank",
    "IOBSMS": "Indian Overseas Bank",
    "SBICAR": "SBI Card",
    "HDFCCC": "HDFC Credit Card",
    "ICICIC": "ICICI Credit Card",
}

UPI_SENDERS = {
    "PAYTM": "Paytm",
    "PHONEPE": "PhonePe",
    "GPAY": "Google Pay",
    "AMAZONP": "Amazon Pay",
    "BHIMUPI": "BHIM",
    "MOBIKW": "MobiKwik",
    "AIRTEL": "Airtel Money",
    "JIOMON": "JioMoney",
}


@dataclass(frozen=True)
class FieldRule:
    """A named pattern that fills one ParsedFields slot."""

    name: str
    field: str
    pattern: re.Pattern
    convert: Callable[[re.Match], Any]

    def apply(self, text: str) -> Any:
        """Return the first converted match, or None."""
        for match in self.pattern.finditer(text):
            try:
                value = self.convert(match)
            except (ValueError, ArithmeticError):
                continue
            if value is not None:
                return value
        return None


def _to_amount(match: re.Match) -> Decimal | None:
    amount = Decimal(match.group("amount").strip(",").replace(",", ""))
    return amount if amount > 0 else None


def _to_date(match: re.Match) -> date:
    year = int(match.group("y"))
    if year < 100:
        year += 2000
    return date(year, int(match.group("m")), int(match.group("d")))


def _to_time(match: re.Match) -> time | None:
    hour = int(match.group("h"))
    minute = int(match.group("min"))
    second = int(match.group("s") or 0)
    meridiem = match.group("ampm")

    if meridiem:
        if not 1 <= hour <= 12:
            return None
        is_pm = meridiem[0].lower() == "p"
        if is_pm and hour != 12:
            hour += 12
        elif not is_pm and hour == 12:
            hour = 0

    return time(hour, minute, second)


def _to_merchant(match: re.Match) -> str | None:
    name = re.sub(r'\s+', ' ', match.group("merchant")).strip(" .,-'")
    return name if len(name) >= 3 else None


def _to_upi_app(match: re.Match) -> str | None:
    key = re.sub(r'\s+', '', match.group(1).lower())
    return UPI_APP_KEYWORDS.get(key)


def _to_balance(match: re.Match) -> Decimal:
    return Decimal(match.group("amount").strip(",").replace(",", ""))


def _to_masked_number(name: str) -> Callable[[re.Match], str]:
    return lambda match: match.group(name).upper()


def _group(name: str) -> Callable[[re.Match], str]:
    return lambda match: match.group(name).strip() or None


def _constant(value: str) -> Callable[[re.Match], str]:
    return lambda match: value


AMOUNT_RULES = [
    FieldRule(
        "currency_prefix", "amount",
        re.compile(
            rf'(?<![a-z])(?:{_CURRENCY}|amount\s*:)\s*{_CURRENCY}?\s*{_NUMBER}',
            re.IGNORECASE
        ),
        _to_amount,
    ),
    FieldRule(
        "currency_suffix", "amount",
        re.compile(rf'(?<![\d.,]){_NUMBER}\s*(?:rs\b\.?|inr\b|₹)', re.IGNORECASE),
        _to_amount,
    ),
]

DATE_RULES = [
    FieldRule(
        "year_first_date", "date",
        re.compile(r'(?<!\d)(?P<y>\d{4})[-/](?P<m>\d{1,2})[-/](?P<d>\d{1,2})(?!\d)'),
        _to_date,
    ),
    FieldRule(
        "day_first_date", "date",
        re.compile(r'(?<!\d)(?P<d>\d{1,2})[-/](?P<m>\d{1,2})[-/](?P<y>\d{4}|\d{2})(?!\d)'),
        _to_date,
    ),
]

TIME_RULES = [
    FieldRule(
        "clock_time", "time",
        re.compile(
            r'(?<![\d:])(?P<h>\d{1,2}):(?P<min>[0-5]\d)(?::(?P<s>[0-5]\d))?(?!\d)'
            r'(?:\s*(?P<ampm>[ap]\.?\s?m\.?)(?![a-z]))?',
            re.IGNORECASE
        ),
        _to_time,
    ),
]

HANDLE_RULES = [
    FieldRule(
        "upi_handle", "counterparty_handle",
        re.compile(r'(?<![\w.\-])(?P<handle>[\w.\-]{2,}@[a-z][\w\-]*)', re.IGNORECASE),
        _group("handle"),
    ),
]

REFERENCE_RULES = [
    FieldRule(
        "labelled_reference", "transaction_ref",
        re.compile(
            r'\b(?:txn|transaction|ref|reference|id)\b(?:\s*(?:id|no|number)\b)?\.?\s*[:#\-]?\s*'
            r'(?P<ref>(?=[a-z]*\d)[a-z0-9]{6,}|(?-i:[A-Z][A-Z0-9]{5,}))\b',
            re.IGNORECASE
        ),
        _group("ref"),
    ),
]

MERCHANT_RULES = [
    FieldRule(
        "labelled_merchant", "merchant_name",
        re.compile(
            r'(?:\bpaid\s+to\b|\breceived\s+from\b|\bmerchant\b|\bto\s*:)\s*:?[ \t]*'
            r"(?P<merchant>[\w&.'\-][\w &.'\-]{2,29})",
            re.IGNORECASE
        ),
        _to_merchant,
    ),
]

UPI_APP_RULES = [
    FieldRule(
        "upi_app_keyword", "upi_app",
        re.compile(
            r'\b(paytm|phone\s?pe|gpay|google\s?pay|amazon\s?pay|bhim|yono|mobikwik|'
            r'freecharge|airtel\s?money|jiomoney)\b',
            re.IGNORECASE
        ),
        _to_upi_app,
    ),
]

DIRECTION_RULES = [
    FieldRule(
        "debit_keyword", "direction",
        re.compile(r'\b(?:paid|debited|sent|spent|withdrawn)\b', re.IGNORECASE),
        _constant("debit"),
    ),
    FieldRule(
        "credit_keyword", "direction",
        re.compile(r'\b(?:received|credited|refunded)\b', re.IGNORECASE),
        _constant("credit"),
    ),
]

NOTE_RULES = [
    FieldRule(
        "labelled_note", "note",
        re.compile(r'\b(?:note|remarks?|message)\b\s*[:\-]\s*(?P<note>[^\n\r]{1,200})', re.IGNORECASE),
        _group("note"),
    ),
]

ACCOUNT_RULES = [
    FieldRule(
        "masked_account", "account_number",
        re.compile(
            r'(?<![a-z])(?:a/c|acct|account|ac)\.?\s*(?:no\.?|number)?\s*(?:ending(?:\s+with)?)?\s*'
            r'(?P<account>(?=[x*]*\d)[x*\d]{4,})(?![\w*])',
            re.IGNORECASE
        ),
        _to_masked_number("account"),
    ),
]

CARD_RULES = [
    FieldRule(
        "masked_card", "card_number",
        re.compile(
            r'(?<![a-z])(?:card|cc)\b\s*(?:no\.?|number)?\s*(?:ending(?:\s+with)?)?\s*'
            r'(?P<card>(?=[x*]*\d)[x*\d]{4,})(?![\w*])',
            re.IGNORECASE
        ),
        _to_masked_number("card"),
    ),
]

BALANCE_RULES = [
    FieldRule(
        "available_balance", "balance",
        re.compile(
            r'\b(?:avl\.?\s*|available\s+)?bal(?:ance)?\b\.?\s*(?:is\s*)?[:\-]?\s*'
            rf'{_CURRENCY}?\s*{_NUMBER}',
            re.IGNORECASE
        ),
        _to_balance,
    ),
]

GENERIC_AMOUNT_RULES = [
    FieldRule(
        "labelled_amount", "amount",
        re.compile(
            r'\b(?:grand\s+total|total(?:\s+amount)?|amount(?:\s+paid)?|amt|paid|'
            r'debited(?:\s+(?:by|for|with))?|credited(?:\s+(?:by|with))?|sent|received)\b'
            rf'\s*[:\-]?\s*{_CURRENCY}?\s*{_NUMBER}',
            re.IGNORECASE
        ),
        _to_amount,
    ),
]

UPI_RULES = (
    AMOUNT_RULES + DATE_RULES + TIME_RULES + HANDLE_RULES + REFERENCE_RULES
    + MERCHANT_RULES + UPI_APP_RULES + DIRECTION_RULES + NOTE_RULES
    + ACCOUNT_RULES + CARD_RULES + BALANCE_RULES
)


class ParsingStrategy(ABC):
    """One named way of turning text into fields."""

    name: str = "strategy"
    # Only consulted when no earlier strategy found an amount
    fallback_only: bool = False

    @abstractmethod
    def parse(self, text: str) -> ParsedFields:
        """Extract fields; never raises."""


class RuleBasedStrategy(ParsingStrategy):
    """Applies a rule table in order; the first match wins per field."""

    def __init__(self, name: str, rules: list[FieldRule], fallback_only: bool = False):
        self.name = name
        self.rules = rules
        self.fallback_only = fallback_only

    def parse(self, text: str) -> ParsedFields:
        fields = ParsedFields(raw_text=text)

        for rule in self.rules:
            if getattr(fields, rule.field) is not None:
                continue

            value = rule.apply(text)
            if value is not None:
                setattr(fields, rule.field, value)
                fields.matched_rules[rule.field] = f"{self.name}:{rule.name}"

        if fields.populated_fields():
            fields.strategies.append(self.name)
        return fields


class QrPaymentStrategy(ParsingStrategy):
    """Reads fields from a QR payment URI embedded in the text."""

    name = "qr_payment"

    def parse(self, text: str) -> ParsedFields:
        payment = parse_qr_payment(find_qr_payload(text))
        if payment is None:
            return ParsedFields(raw_text=text)

        fields = payment.to_parsed_fields()
        fields.raw_text = text
        return fields


def default_strategies() -> list[ParsingStrategy]:
    """QR payload first, then UPI-specific rules, then generic amount-only rules."""
    return [
        QrPaymentStrategy(),
        RuleBasedStrategy("upi", UPI_RULES),
        RuleBasedStrategy("generic_amount", GENERIC_AMOUNT_RULES, fallback_only=True),
    ]


def _sender_code(sender: str) -> str:
    # 'VM-HDFCBK' and 'AD-HDFCBK-S' both carry the code in the second part
    parts = [p for p in sender.upper().split("-") if p]
    if len(parts) > 1 and len(parts[0]) <= 2:
        return parts[1]
    return parts[0] if parts else ""


def identify_bank(sender: str | None) -> str | None:
    """Bank name for an SMS sender ID, e.g. ``VM-HDFCBK`` -> ``HDFC Bank``."""
    if not sender:
        return None

    code = _sender_code(sender)
    if code in BANK_SENDERS:
        return BANK_SENDERS[code]

    for key, name in BANK_SENDERS.items():
        if key in code:
            return name
    return None


def identify_service_provider(sender: str | None) -> str | None:
    """UPI app name for a wallet sender ID such as ``JM-PHONEPE``."""
    if not sender:
        return None

    code = _sender_code(sender)
    for key, name in UPI_SENDERS.items():
        if key in code:
            return name
    return None


class FieldParser:
    """Parses transaction fields from free text."""

    def __init__(self, strategies: list[ParsingStrategy] | None = None):
        """Initialize the parser.

        Args:
            strategies: Ordered strategies for ``parse_with_fallback``
        """
        self.strategies = strategies if strategies is not None else default_strategies()
        self._upi = RuleBasedStrategy("upi", UPI_RULES)

    def parse(self, text: str | None) -> ParsedFields:
        """Apply the UPI rule table to text.

        Args:
            text: Extracted text

        Returns:
            ParsedFields; unmatched fields stay None
        """
        return self._upi.parse(text or "")

    def parse_with_fallback(self, text: str | None, sender: str | None = None) -> ParsedFields:
        """Apply every strategy in order, filling only empty slots.

        Fallback-only strategies run just when no amount has been found yet.
        A known SMS ``sender`` fills the bank name and, failing a keyword in
        the text, the UPI app.
        """
        text = text or ""
        fields = ParsedFields(raw_text=text)

        for strategy in self.strategies:
            if strategy.fallback_only and fields.has_amount:
                continue

            fields = fields.merged_with(strategy.parse(text))

            if strategy.fallback_only and fields.has_amount:
                logger.debug(f"Amount recovered by fallback strategy '{strategy.name}'")

        if sender:
            self._apply_sender(fields, sender)

        return fields

    @staticmethod
    def _apply_sender(fields: ParsedFields, sender: str) -> None:
        bank = identify_bank(sender)
        if bank and fields.bank_name is None:
            fields.bank_name = bank
            fields.matched_rules["bank_name"] = "sender:bank_sender"

        provider = identify_service_provider(sender)
        if provider and fields.upi_app is None:
            fields.upi_app = provider
            fields.matched_rules["upi_app"] = "sender:upi_sender"

        if (bank or provider) and "sender" not in fields.strategies:
            fields.strategies.append("sender")
