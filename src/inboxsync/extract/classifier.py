"""
Rule-based classifier for marketplace notification mails.

Turns a raw Gmail message (users.messages.get format=full) into a
ClassifiedRecord, or None when the mail is not something we track. No DB
access here; the sync engine handles persistence.

Rules, checked against the Subject header of mails whose From header
contains the configured sender domain:

  "Transferencia a tu saldo Vinted"   -> sale, status "completed"
  "Etiqueta de envío para <item>"     -> sale, status "pending" (label issued)
  "Tu factura" / "destacado" / "armario" -> expense (category armario|destacado)

Amounts use the European format: "12,50 €", "1.234,50 EUR".
The text searched is the decoded text/plain body, falling back to the
snippet.
"""
import base64
import binascii
import functools
import re
from datetime import datetime
from typing import Any, Dict, Optional

from inboxsync.config import Settings, get_settings
from inboxsync.source.protocol import ClassifiedRecord, Extractor

COMPLETED_SALE = "Transferencia a tu saldo Vinted"
PENDING_SALE = "Etiqueta de envío para"
INVOICE = "Tu factura"

CARRIERS = ("correos", "inpost", "seur", "vintedgo")

_AMOUNT_RE = re.compile(r"([\d.,]+)\s*(€|EUR)", re.IGNORECASE)
_TRACKING_RE = re.compile(r"(?:seguimiento|tracking)[^A-Z0-9]*([A-Z0-9]{8,})", re.IGNORECASE)


def parse_amount(text: str) -> Optional[float]:
    """Parse the first euro amount in `text`. "1.234,50 €" -> 1234.5."""
    match = _AMOUNT_RE.search(text or "")
    if not match:
        return None
    # Dots are thousands separators, the comma is the decimal mark
    normalized = match.group(1).replace(".", "").replace(",", ".")
    try:
        return float(normalized)
    except ValueError:
        return None


def header(raw: Dict[str, Any], name: str) -> str:
    for h in (raw.get("payload") or {}).get("headers") or []:
        if h.get("name", "").lower() == name.lower():
            return h.get("value") or ""
    return ""


def message_text(raw: Dict[str, Any]) -> str:
    """Decoded text/plain body, or the snippet when there is none."""
    payload = raw.get("payload") or {}
    data = (payload.get("body") or {}).get("data")
    if not data:
        for part in payload.get("parts") or []:
            if part.get("mimeType") == "text/plain" and (part.get("body") or {}).get("data"):
                data = part["body"]["data"]
                break
    if data:
        text = _decode_base64url(data)
        if text:
            return text
    return raw.get("snippet") or ""


def message_datetime(raw: Dict[str, Any]) -> Optional[datetime]:
    """internalDate (epoch millis, as a string) -> naive UTC datetime."""
    internal = raw.get("internalDate")
    if not internal:
        return None
    return datetime.utcfromtimestamp(int(internal) / 1000)


def classify_message(raw: Dict[str, Any], sender_domain: str = "vinted.es") -> Optional[ClassifiedRecord]:
    """
    Classify one raw message.

    Returns:
        ClassifiedRecord for sales and expenses, None for anything else
        (other senders, unrecognised subjects, sales without an amount).
    """
    if sender_domain not in header(raw, "From").lower():
        return None

    subject = header(raw, "Subject")
    lowered = subject.lower()
    text = message_text(raw)
    occurred_at = message_datetime(raw)
    snippet = raw.get("snippet") or text[:200]

    if COMPLETED_SALE in subject:
        amount = parse_amount(text)
        if amount is None:
            return None
        return ClassifiedRecord(
            record_type="sale",
            amount=amount,
            currency="EUR",
            title=_item_name(text),
            occurred_at=occurred_at,
            extra={"status": "completed", "snippet": snippet},
        )

    if PENDING_SALE in subject:
        item_name = subject.split(PENDING_SALE, 1)[1].strip().strip('"«»') or None
        extra: Dict[str, Any] = {
            "status": "pending",
            "shipping_carrier": _carrier(text),
            "snippet": snippet,
        }
        tracking = _TRACKING_RE.search(text)
        if tracking:
            extra["tracking_number"] = tracking.group(1)
        return ClassifiedRecord(
            record_type="sale",
            amount=parse_amount(text),
            currency="EUR",
            title=item_name,
            occurred_at=occurred_at,
            extra=extra,
        )

    if INVOICE in subject or "destacado" in lowered or "armario" in lowered:
        amount = parse_amount(text)
        if amount is None:
            return None
        category = "armario" if "armario" in (lowered + " " + text.lower()) else "destacado"
        return ClassifiedRecord(
            record_type="expense",
            amount=amount,
            currency="EUR",
            title=subject or None,
            occurred_at=occurred_at,
            extra={"category": category, "snippet": snippet},
        )

    return None


def build_extractor(settings: Optional[Settings] = None) -> Extractor:
    settings = settings or get_settings()
    return functools.partial(classify_message, sender_domain=settings.sender_domain)


# ─── Internal helpers ─────────────────────────────────────────────────────────

def _decode_base64url(data: str) -> str:
    try:
        padded = data + "=" * (-len(data) % 4)
        return base64.urlsafe_b64decode(padded).decode("utf-8", errors="replace")
    except (binascii.Error, ValueError):
        return ""


def _carrier(text: str) -> str:
    lowered = text.lower()
    for carrier in CARRIERS:
        if carrier in lowered:
            return carrier
    return "unknown"


def _item_name(text: str) -> Optional[str]:
    # "... por la venta de <item>." in completed-sale mails
    match = re.search(r"venta de (.+?)(?:\.|\n|$)", text)
    return match.group(1).strip() if match else None
