"""
QR Payment Parser

Parses UPI-style QR payment strings (``upi://pay?pa=...&pn=...&am=...&tn=...``).
"""

import logging
import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from urllib.parse import parse_qsl

from .models import ParsedFields

logger = logging.getLogger(__name__)

QR_PAYLOAD_PATTERN = re.compile(
    r'(?P<scheme>[a-z][a-z0-9+.\-]*)://pay\?(?P<query>[^\s]*)',
    re.IGNORECASE
)

STRATEGY_NAME = "qr_payment"


@dataclass
class QrPayment:
    """Known keys of a QR payment payload."""

    scheme: str
    payee_handle: str | None = None  # pa
    payee_name: str | None = None  # pn
    amount: Decimal | None = None  # am
    note: str | None = None  # tn
    payload: str = ""

    def to_parsed_fields(self) -> ParsedFields:
        fields = ParsedFields(raw_text=self.payload)

        for slot, key, value in (
            ("counterparty_handle", "pa", self.payee_handle),
            ("merchant_name", "pn", self.payee_name),
            ("amount", "am", self.amount),
            ("note", "tn", self.note),
        ):
            if value is not None:
                setattr(fields, slot, value)
                fields.matched_rules[slot] = f"{STRATEGY_NAME}:{key}"

        if fields.populated_fields():
            fields.strategies.append(STRATEGY_NAME)
        return fields


def find_qr_payload(text: str | None) -> str | None:
    """Locate a QR payment URI inside free text (e.g. OCR of a QR sticker)."""
    if not text:
        return None

    match = QR_PAYLOAD_PATTERN.search(text)
    return match.group(0) if match else None


def parse_qr_payment(payload: str | None) -> QrPayment | None:
    """Parse a QR payment string.

    Unknown keys are ignored.

    Returns:
        QrPayment, or None when the payload is not a ``scheme://pay?`` URI
    """
    if not payload:
        return None

    payload = payload.strip()
    match = QR_PAYLOAD_PATTERN.fullmatch(payload)
    if not match:
        return None

    payment = QrPayment(scheme=match.group("scheme").lower(), payload=payload)

    for key, value in parse_qsl(match.group("query"), keep_blank_values=True):
        key = key.lower()
        value = value.strip()
        if not value:
            continue

        if key == "pa":
            payment.payee_handle = value
        elif key == "pn":
            payment.payee_name = value
        elif key == "am":
            payment.amount = _parse_amount(value)
        elif key == "tn":
            payment.note = value

    return payment


def _parse_amount(value: str) -> Decimal | None:
    try:
        amount = Decimal(value.replace(",", ""))
    except InvalidOperation:
        logger.warning(f"Ignoring invalid QR amount: {value}")
        return None

    if not amount.is_finite() or amount <= 0:
        return None
    return amount
