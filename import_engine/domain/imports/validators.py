"""
Preset regex validators for common Brazilian data patterns.

Module schemas reference these presets by name on individual fields; a value
that does not match is reported as a row rejection reason.
"""

import re
from typing import Any, Optional, Tuple


# Preset regex patterns for common validations
PRESET_PATTERNS = {
    # Contact & Communication
    "email": r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$",
    "phone_br": r"^\d{10,11}$",  # Normalized national digits (DDD + number)

    # Identifiers & Codes
    "cpf": r"^\d{11}$",
    "cnpj": r"^\d{14}$",
    "cep": r"^\d{5}-?\d{3}$",
    "uf": r"^(AC|AL|AP|AM|BA|CE|DF|ES|GO|MA|MT|MS|MG|PA|PB|PR|PE|PI|RJ|RN|RS|RO|RR|SC|SP|SE|TO)$",
    "benefit_number": r"^\d{10}$",
    "bank_code": r"^\d{1,3}$",

    # Data Formats
    "date_iso": r"^\d{4}-\d{2}-\d{2}$",
    "decimal": r"^-?\d+(\.\d+)?$",
}


# Human-readable descriptions for each preset
PRESET_DESCRIPTIONS = {
    "email": "Standard email format",
    "phone_br": "Brazilian phone (DDD + 8 or 9 digits)",
    "cpf": "CPF (11 digits)",
    "cnpj": "CNPJ (14 digits)",
    "cep": "CEP (#####-###)",
    "uf": "Brazilian state abbreviation",
    "benefit_number": "INSS benefit number (10 digits)",
    "bank_code": "Bank code (up to 3 digits)",
    "date_iso": "ISO 8601 date (YYYY-MM-DD)",
    "decimal": "Decimal number",
}


def get_preset_pattern(preset_name: str) -> Optional[str]:
    """Get the regex pattern for a preset validator."""
    return PRESET_PATTERNS.get(preset_name)


def get_preset_description(preset_name: str) -> Optional[str]:
    """Get the human-readable description for a preset validator."""
    return PRESET_DESCRIPTIONS.get(preset_name)


def validate_with_preset(
    value: Any,
    preset_name: str,
    allow_null: bool = True
) -> Tuple[bool, Optional[str]]:
    """
    Validate a value against a preset pattern.

    Args:
        value: Value to validate
        preset_name: Name of the preset validator
        allow_null: Whether to allow null/empty values

    Returns:
        Tuple of (is_valid, error_message)
    """
    if value is None or (isinstance(value, str) and not value.strip()):
        if allow_null:
            return True, None
        return False, "Value is required"

    pattern = get_preset_pattern(preset_name)
    if pattern is None:
        return False, f"Unknown preset validator: {preset_name}"

    str_val = str(value).strip()
    if not re.match(pattern, str_val):
        description = get_preset_description(preset_name)
        return False, f"Value '{str_val}' does not match {description or preset_name} format"
    return True, None


def is_valid_cpf(value: Any) -> bool:
    """Check CPF verifier digits. Expects the normalized 11-digit string."""
    digits = str(value or "")
    if not re.fullmatch(r"\d{11}", digits) or digits == digits[0] * 11:
        return False

    for position in (9, 10):
        total = sum(int(digits[i]) * (position + 1 - i) for i in range(position))
        check = (total * 10) % 11 % 10
        if check != int(digits[position]):
            return False
    return True
