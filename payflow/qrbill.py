"""
Swiss QR-bill payload (Swiss Payment Standards, SPC version 0200).

The payload is the newline-separated text block that goes into the QR code;
it is handed around base64-encoded so it survives JSON and email transport.
"""
import base64
import re
from dataclasses import dataclass
from typing import Optional

from payflow.errors import ValidationError
from payflow.money import format_major


@dataclass
class Address:
    name: str
    street: str = ""
    postal_code: str = ""
    city: str = ""
    country: str = "CH"

    def lines(self) -> list[str]:
        # Structured address: type, name, street, building number, postcode, town, country.
        return ["S", self.name, self.street, "", self.postal_code, self.city, self.country]


EMPTY_PARTY = [""] * 7


def _char_value(char: str) -> str:
    return char if char.isdigit() else str(ord(char) - ord("A") + 10)


def creditor_reference(source: str) -> str:
    """ISO 11649 creditor reference (``RF`` + two check digits + reference)."""
    reference = re.sub(r"[^0-9A-Za-z]", "", source).upper()
    if not reference or len(reference) > 21:
        raise ValidationError(f"Cannot build a creditor reference from {source!r}")
    rearranged = "".join(_char_value(c) for c in reference + "RF00")
    check = 98 - int(rearranged) % 97
    return f"RF{check:02d}{reference}"


def is_valid_creditor_reference(value: str) -> bool:
    value = value.replace(" ", "").upper()
    if not re.fullmatch(r"RF\d{2}[0-9A-Z]{1,21}", value):
        return False
    rearranged = "".join(_char_value(c) for c in value[4:] + value[:4])
    return int(rearranged) % 97 == 1


def build_qr_bill(
    iban: str,
    creditor: Address,
    reference: str,
    amount_cents: int,
    currency: str,
    debtor: Optional[Address] = None,
    message: str = "",
) -> str:
    currency = currency.upper()
    if currency not in ("CHF", "EUR"):
        raise ValidationError(f"QR-bills support CHF and EUR, not {currency}")

    lines = [
        "SPC",
        "0200",
        "1",
        iban.replace(" ", ""),
        *creditor.lines(),
        *EMPTY_PARTY,  # ultimate creditor, reserved
        format_major(amount_cents),
        currency,
        *(debtor.lines() if debtor else EMPTY_PARTY),
        "SCOR",
        reference,
        message,
        "EPD",
    ]
    return "\n".join(lines)


def encode_payload(text: str) -> str:
    return base64.b64encode(text.encode("utf-8")).decode("ascii")


def decode_payload(payload: str) -> list[str]:
    return base64.b64decode(payload).decode("utf-8").split("\n")
