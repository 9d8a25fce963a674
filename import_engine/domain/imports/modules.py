"""
Target module schemas: which semantic fields an import needs, how header
columns map onto them, how values are normalized, and which fields form the
dedup key.
"""
from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional, Sequence

from import_engine.domain.imports.errors import SchemaError, UnknownModuleError
from import_engine.domain.imports.validators import is_valid_cpf, validate_with_preset
from import_engine.utils.date import parse_flexible_date
from import_engine.utils.phone import digits_only, normalize_phone, validate_br_phone, validate_phone

# Row validators receive the normalized record and return an error message or None.
RowValidator = Callable[[Dict[str, Any]], Optional[str]]

FIELD_KINDS = {"text", "digits", "phone", "document", "number", "date"}
QUOTE_CHARS = "\"'“”‘’"


@dataclass(frozen=True)
class FieldSpec:
    name: str
    aliases: Sequence[str]
    required: bool = False
    kind: str = "text"
    preset: Optional[str] = None

    def __post_init__(self):
        if self.kind not in FIELD_KINDS:
            raise ValueError(f"Unknown field kind '{self.kind}' for field '{self.name}'")


@dataclass
class ModuleSchema:
    name: str
    fields: List[FieldSpec]
    key_fields: List[str]
    validators: List[RowValidator] = field(default_factory=list)

    @property
    def required_fields(self) -> List[str]:
        return [spec.name for spec in self.fields if spec.required]

    def field(self, name: str) -> FieldSpec:
        for spec in self.fields:
            if spec.name == name:
                return spec
        raise KeyError(name)


def normalize_header(value: Any) -> str:
    """Accent-fold, lower-case and underscore a header cell for alias matching."""
    text = strip_quotes(value).lower()
    text = unicodedata.normalize("NFKD", text)
    text = "".join(ch for ch in text if not unicodedata.combining(ch))
    return re.sub(r"[\s\-./]+", "_", text).strip("_")


def strip_quotes(value: Any) -> str:
    """Trim whitespace and any surrounding quote characters."""
    if value is None:
        return ""
    return str(value).strip().strip(QUOTE_CHARS).strip()


def resolve_columns(schema: ModuleSchema, headers: Sequence[Any]) -> Dict[str, int]:
    """
    Map each schema field to a header column index.

    A header matches a field when any alias is a substring of the normalized
    header. Fields are resolved in schema order and each column is claimed by
    at most one field, so "Nome" wins over a later "Nome da Mãe".

    Raises:
        SchemaError: if a required field has no matching column.
    """
    normalized = [normalize_header(h) for h in headers]
    taken: set = set()
    column_map: Dict[str, int] = {}

    for spec in schema.fields:
        aliases = [normalize_header(a) for a in spec.aliases]
        for index, header in enumerate(normalized):
            if index in taken or not header:
                continue
            if any(alias and alias in header for alias in aliases):
                column_map[spec.name] = index
                taken.add(index)
                break

    missing = [name for name in schema.required_fields if name not in column_map]
    if missing:
        raise SchemaError(missing, [strip_quotes(h) for h in headers])
    return column_map


def parse_decimal(value: Any) -> Optional[Decimal]:
    """Parse "1.234,56", "1234.56" or "R$ 1.234,00" into a Decimal."""
    text = re.sub(r"[^\d,.\-]", "", str(value or ""))
    if not text:
        return None
    if "," in text:
        # Brazilian notation: dots group thousands, comma marks decimals
        text = text.replace(".", "").replace(",", ".")
    elif text.count(".") > 1:
        text = text.replace(".", "")
    try:
        return Decimal(text)
    except InvalidOperation:
        return None


def normalize_value(spec: FieldSpec, raw: Any) -> Any:
    """Parse-time normalization of a single cell for a field."""
    if spec.kind == "date":
        if raw is None or strip_quotes(raw) == "":
            return None
        return parse_flexible_date(raw if not isinstance(raw, str) else strip_quotes(raw), log_context=spec.name)

    text = strip_quotes(raw)
    if text == "":
        return None
    if spec.kind == "phone":
        return normalize_phone(text)
    if spec.kind == "document":
        digits = digits_only(text)
        return digits.zfill(11) if digits and len(digits) < 11 else (digits or None)
    if spec.kind == "digits":
        # Punctuation is dropped; text without any digit is kept for the preset to reject
        return digits_only(text) or text
    if spec.kind == "number":
        return parse_decimal(text)
    return text


def build_record(schema: ModuleSchema, column_map: Dict[str, int], values: Sequence[Any]) -> Dict[str, Any]:
    """Build the normalized field record for one positional row."""
    record: Dict[str, Any] = {}
    for spec in schema.fields:
        index = column_map.get(spec.name)
        raw = values[index] if index is not None and index < len(values) else None
        record[spec.name] = normalize_value(spec, raw)
    return record


def validate_record(schema: ModuleSchema, record: Dict[str, Any], raw_values: Dict[str, Any]) -> Optional[str]:
    """
    Structural validation. Returns the first rejection reason, or None.

    `raw_values` holds the un-normalized cell per field so "not a number"
    can be told apart from "empty".
    """
    for spec in schema.fields:
        value = record.get(spec.name)
        raw_present = strip_quotes(raw_values.get(spec.name)) != ""

        if value is None:
            if spec.required:
                return f"Missing required field '{spec.name}'"
            if raw_present and spec.kind in ("number", "date"):
                return f"Invalid {spec.kind} for '{spec.name}': {strip_quotes(raw_values.get(spec.name))}"
            continue

        if spec.kind == "phone" and not validate_phone(value):
            return f"Malformed phone for '{spec.name}': {strip_quotes(raw_values.get(spec.name))}"

        if spec.preset:
            ok, message = validate_with_preset(value, spec.preset)
            if not ok:
                return f"{spec.name}: {message}"

    for validator in schema.validators:
        reason = validator(record)
        if reason:
            return reason
    return None


def _strict_phone(record: Dict[str, Any]) -> Optional[str]:
    phone = record.get("phone")
    if phone is None:
        return None
    result = validate_br_phone(phone)
    if not result.is_valid:
        return "; ".join(result.errors)
    return None


def _cpf_checksum(record: Dict[str, Any]) -> Optional[str]:
    document = record.get("document")
    if document is not None and not is_valid_cpf(document):
        return f"Invalid CPF: {document}"
    return None


_NAME_ALIASES = ("nome", "name", "cliente")
_PHONE_ALIASES = ("telefone", "phone", "celular", "fone", "whatsapp", "tel_cel")
_DOCUMENT_ALIASES = ("cpf", "documento", "document")

_LEAD_FIELDS = [
    FieldSpec("name", _NAME_ALIASES, required=True),
    FieldSpec("phone", _PHONE_ALIASES, required=True, kind="phone"),
    FieldSpec("document", _DOCUMENT_ALIASES, kind="document", preset="cpf"),
    FieldSpec("email", ("email", "e_mail"), preset="email"),
    FieldSpec("city", ("cidade", "municipio", "city")),
    FieldSpec("state", ("uf", "estado", "state")),
]

MODULES: Dict[str, ModuleSchema] = {
    "leads": ModuleSchema(
        name="leads",
        fields=list(_LEAD_FIELDS),
        key_fields=["phone"],
    ),
    "activate_leads": ModuleSchema(
        name="activate_leads",
        fields=list(_LEAD_FIELDS),
        key_fields=["name", "phone"],
        validators=[_strict_phone],
    ),
    "baseoff": ModuleSchema(
        name="baseoff",
        fields=[
            FieldSpec("document", _DOCUMENT_ALIASES, required=True, kind="document", preset="cpf"),
            FieldSpec("name", _NAME_ALIASES, required=True),
            FieldSpec("phone", _PHONE_ALIASES, kind="phone"),
            FieldSpec(
                "benefit_number", ("numero_beneficio", "nr_beneficio", "nb"), kind="digits", preset="benefit_number"
            ),
            FieldSpec("bank", ("banco", "cod_banco"), preset="bank_code"),
            FieldSpec("state", ("uf", "estado")),
            FieldSpec("city", ("municipio", "cidade")),
            FieldSpec("birth_date", ("nascimento", "data_nasc", "dt_nasc"), kind="date"),
        ],
        key_fields=["document"],
        validators=[_cpf_checksum],
    ),
    "contracts": ModuleSchema(
        name="contracts",
        fields=[
            FieldSpec("document", _DOCUMENT_ALIASES, required=True, kind="document", preset="cpf"),
            FieldSpec("contract_number", ("contrato", "nr_contrato", "numero_contrato"), required=True),
            FieldSpec("bank", ("banco", "cod_banco"), preset="bank_code"),
            FieldSpec("installment_value", ("valor_parcela", "vl_parcela"), kind="number"),
            FieldSpec("installments_remaining", ("parcelas", "prazo"), kind="number"),
            FieldSpec("outstanding_balance", ("saldo",), kind="number"),
            FieldSpec("rate", ("taxa", "tx_juros"), kind="number"),
        ],
        key_fields=["document", "contract_number"],
    ),
}


def get_module_schema(module: str) -> ModuleSchema:
    schema = MODULES.get((module or "").strip().lower())
    if schema is None:
        raise UnknownModuleError(module)
    return schema
