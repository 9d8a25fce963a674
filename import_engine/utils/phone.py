"""
Phone number normalization utilities for Brazilian phone numbers.

Imported spreadsheets carry phones in every shape: "(11) 99999-8888",
"11 99999 8888", "+55 11 99999-8888", "011999998888". Everything is reduced
to the national digits (DDD + number) so the same line always normalizes to
the same value.
"""

import re
from dataclasses import dataclass, field
from typing import Any, List, Optional

BRAZIL_COUNTRY_CODE = "55"

# Common invalid/fake phone patterns
INVALID_PATTERNS = [
    re.compile(r"^(\d)\1+$"),  # All same digits (e.g., 99999999999)
    re.compile(r"^123456789"),
    re.compile(r"^987654321"),
    re.compile(r"^000000"),
    re.compile(r"^111111"),
]

VALID_DDDS = {
    "11", "12", "13", "14", "15", "16", "17", "18", "19",  # São Paulo
    "21", "22", "24",  # Rio de Janeiro
    "27", "28",  # Espírito Santo
    "31", "32", "33", "34", "35", "37", "38",  # Minas Gerais
    "41", "42", "43", "44", "45", "46",  # Paraná
    "47", "48", "49",  # Santa Catarina
    "51", "53", "54", "55",  # Rio Grande do Sul
    "61",  # Distrito Federal
    "62", "64",  # Goiás
    "63",  # Tocantins
    "65", "66",  # Mato Grosso
    "67",  # Mato Grosso do Sul
    "68",  # Acre
    "69",  # Rondônia
    "71", "73", "74", "75", "77",  # Bahia
    "79",  # Sergipe
    "81", "87",  # Pernambuco
    "82",  # Alagoas
    "83",  # Paraíba
    "84",  # Rio Grande do Norte
    "85", "88",  # Ceará
    "86", "89",  # Piauí
    "91", "93", "94",  # Pará
    "92", "97",  # Amazonas
    "95",  # Roraima
    "96",  # Amapá
    "98", "99",  # Maranhão
}


def digits_only(value: Any) -> str:
    """Return only the digits of a value ("" for None)."""
    if value is None:
        return ""
    return re.sub(r"\D", "", str(value))


def normalize_phone(value: Any) -> Optional[str]:
    """
    Reduce a phone number to its national digits.

    Handles:
    - (11) 99999-8888 -> 11999998888
    - +55 11 99999-8888 -> 11999998888
    - 011 99999-8888 (trunk prefix) -> 11999998888

    Returns:
        The digit string, or None when the value has no digits at all.
    """
    digits = digits_only(value)
    if not digits:
        return None

    # Trunk prefix used when dialing long distance inside Brazil
    digits = digits.lstrip("0") or digits

    # Country code, only when what remains is a full national number
    if digits.startswith(BRAZIL_COUNTRY_CODE) and len(digits) in (12, 13):
        digits = digits[len(BRAZIL_COUNTRY_CODE):]

    return digits


def validate_phone(value: Any, *, min_digits: int = 10, max_digits: int = 11) -> bool:
    """
    Minimal structural phone check: DDD + 8 or 9 digit number after normalization.

    Args:
        value: Value to validate
        min_digits: Minimum number of digits required
        max_digits: Maximum number of digits allowed
    """
    digits = normalize_phone(value)
    if not digits:
        return False
    return min_digits <= len(digits) <= max_digits


@dataclass
class PhoneValidationResult:
    is_valid: bool
    kind: str  # "mobile", "landline" or "invalid"
    ddd: Optional[str]
    number: str
    formatted: str
    errors: List[str] = field(default_factory=list)


def validate_br_phone(value: Any) -> PhoneValidationResult:
    """
    Strict validation of a Brazilian phone number.

    Mobile numbers have 11 digits and start with 9 after the DDD; landlines
    have 10 digits and start with 2-5 after the DDD.
    """
    cleaned = normalize_phone(value) or ""
    invalid = PhoneValidationResult(
        is_valid=False, kind="invalid", ddd=None, number=cleaned, formatted=str(value or "")
    )

    if not cleaned:
        invalid.errors.append("Empty phone number")
        return invalid

    if len(cleaned) not in (10, 11):
        invalid.errors.append("Phone number must have 10 or 11 digits")
        return invalid

    ddd, number = cleaned[:2], cleaned[2:]
    invalid.ddd = ddd

    if ddd not in VALID_DDDS:
        invalid.errors.append(f"Invalid DDD: {ddd}")
        return invalid

    for pattern in INVALID_PATTERNS:
        if pattern.search(cleaned):
            invalid.errors.append("Phone number looks fake")
            return invalid

    if len(cleaned) == 11:
        if not number.startswith("9"):
            invalid.errors.append("Mobile numbers must start with 9")
            return invalid
        kind = "mobile"
        formatted = f"({ddd}) {number[:5]}-{number[5:]}"
    else:
        if number[0] not in "2345":
            invalid.errors.append("Landline numbers must start with 2, 3, 4 or 5")
            return invalid
        kind = "landline"
        formatted = f"({ddd}) {number[:4]}-{number[4:]}"

    return PhoneValidationResult(
        is_valid=True, kind=kind, ddd=ddd, number=cleaned, formatted=formatted
    )
