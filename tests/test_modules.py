"""
Tests for module schemas: header resolution, value normalization and
structural row validation.
"""

from decimal import Decimal

import pytest

from import_engine.domain.imports.errors import SchemaError, UnknownModuleError
from import_engine.domain.imports.modules import (
    build_record,
    get_module_schema,
    normalize_header,
    parse_decimal,
    resolve_columns,
    validate_record,
)
from import_engine.domain.imports.validators import is_valid_cpf, validate_with_preset


def _validate(module, headers, values):
    schema = get_module_schema(module)
    column_map = resolve_columns(schema, headers)
    record = build_record(schema, column_map, values)
    raw = {name: values[index] for name, index in column_map.items()}
    return record, validate_record(schema, record, raw)


class TestResolveColumns:
    def test_plain_headers(self):
        schema = get_module_schema("leads")
        assert resolve_columns(schema, ["Nome", "Telefone"]) == {"name": 0, "phone": 1}

    def test_headers_are_accent_and_case_insensitive(self):
        schema = get_module_schema("leads")
        column_map = resolve_columns(schema, ["  TELEFONE CELULAR ", '"Nome do Cliente"', "Município"])
        assert column_map == {"phone": 0, "name": 1, "city": 2}

    def test_each_column_is_claimed_once(self):
        """The first matching column wins; 'Nome da Mãe' stays unmapped."""
        schema = get_module_schema("leads")
        column_map = resolve_columns(schema, ["Nome", "Nome da Mãe", "Celular"])
        assert column_map["name"] == 0
        assert 1 not in column_map.values()

    def test_missing_required_column_raises(self):
        schema = get_module_schema("leads")
        with pytest.raises(SchemaError) as exc_info:
            resolve_columns(schema, ["Nome", "Email"])
        assert exc_info.value.missing_fields == ["phone"]
        assert "phone" in str(exc_info.value)
        assert exc_info.value.headers == ["Nome", "Email"]

    def test_contracts_need_document_and_contract(self):
        schema = get_module_schema("contracts")
        with pytest.raises(SchemaError) as exc_info:
            resolve_columns(schema, ["Banco", "Valor Parcela"])
        assert exc_info.value.missing_fields == ["document", "contract_number"]

    def test_normalize_header(self):
        assert normalize_header(" Data de Nascimento ") == "data_de_nascimento"
        assert normalize_header("Nº Benefício") == "no_beneficio"


class TestGetModuleSchema:
    def test_known_modules(self):
        for name in ("leads", "activate_leads", "baseoff", "contracts"):
            assert get_module_schema(name).name == name

    def test_lookup_is_case_insensitive(self):
        assert get_module_schema(" Leads ").name == "leads"

    def test_unknown_module(self):
        with pytest.raises(UnknownModuleError):
            get_module_schema("customers")

    def test_key_fields(self):
        assert get_module_schema("leads").key_fields == ["phone"]
        assert get_module_schema("activate_leads").key_fields == ["name", "phone"]
        assert get_module_schema("contracts").key_fields == ["document", "contract_number"]


class TestParseDecimal:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("1.234,56", Decimal("1234.56")),
            ("1234.56", Decimal("1234.56")),
            ("R$ 1.234,00", Decimal("1234")),
            ("1.234.567", Decimal("1234567")),
            ("-12,5", Decimal("-12.5")),
        ],
    )
    def test_formats(self, raw, expected):
        assert parse_decimal(raw) == expected

    def test_not_a_number(self):
        assert parse_decimal("abc") is None
        assert parse_decimal("") is None


class TestRecordValidation:
    def test_valid_lead_is_normalized(self):
        record, reason = _validate("leads", ["Nome", "Telefone", "CPF"], [" Ana ", "(11) 99999-8888", "529.982.247-25"])
        assert reason is None
        assert record["name"] == "Ana"
        assert record["phone"] == "11999998888"
        assert record["document"] == "52998224725"

    def test_missing_required_value(self):
        _, reason = _validate("leads", ["Nome", "Telefone"], ["", "11999998888"])
        assert reason == "Missing required field 'name'"

    def test_malformed_phone(self):
        _, reason = _validate("leads", ["Nome", "Telefone"], ["Ana", "1234"])
        assert reason.startswith("Malformed phone")

    def test_bad_email_preset(self):
        _, reason = _validate("leads", ["Nome", "Telefone", "Email"], ["Ana", "11999998888", "ana@"])
        assert reason.startswith("email:")

    def test_activate_leads_checks_phone_strictly(self):
        _, reason = _validate("activate_leads", ["Nome", "Telefone"], ["Ana", "20999998888"])
        assert reason == "Invalid DDD: 20"

    def test_baseoff_checks_cpf_digits(self):
        _, reason = _validate("baseoff", ["CPF", "Nome"], ["529.982.247-24", "Ana"])
        assert reason == "Invalid CPF: 52998224724"

    def test_baseoff_short_document_is_zero_padded(self):
        record, reason = _validate("baseoff", ["CPF", "Nome"], ["1144477735", "Ana"])
        assert record["document"] == "01144477735"
        assert reason == "Invalid CPF: 01144477735"

    def test_benefit_number_keeps_its_own_length(self):
        record, reason = _validate(
            "baseoff", ["CPF", "Nome", "NB"], ["111.444.777-35", "Ana", "123.456.789-0"]
        )
        assert reason is None
        assert record["benefit_number"] == "1234567890"

    @pytest.mark.parametrize("benefit", ["12345", "12345678901", "N/A"])
    def test_benefit_number_must_have_ten_digits(self, benefit):
        _, reason = _validate("baseoff", ["CPF", "Nome", "NB"], ["111.444.777-35", "Ana", benefit])
        assert reason.startswith("benefit_number: Value ")
        assert reason.endswith("does not match INSS benefit number (10 digits) format")

    def test_baseoff_birth_date_is_iso(self):
        record, reason = _validate(
            "baseoff", ["CPF", "Nome", "Data Nascimento"], ["111.444.777-35", "Ana", "20/10/1958"]
        )
        assert reason is None
        assert record["birth_date"] == "1958-10-20"

    def test_unparseable_date_is_rejected(self):
        _, reason = _validate("baseoff", ["CPF", "Nome", "Data Nascimento"], ["11144477735", "Ana", "soon"])
        assert reason == "Invalid date for 'birth_date': soon"

    def test_contract_values(self):
        record, reason = _validate(
            "contracts",
            ["CPF", "Contrato", "Valor Parcela", "Taxa"],
            ["390.533.447-05", "CT-001", "1.234,56", "1,8"],
        )
        assert reason is None
        assert record["installment_value"] == Decimal("1234.56")
        assert record["rate"] == Decimal("1.8")

    def test_non_numeric_number_is_rejected(self):
        _, reason = _validate("contracts", ["CPF", "Contrato", "Valor Parcela"], ["39053344705", "CT-1", "n/a"])
        assert reason == "Invalid number for 'installment_value': n/a"


class TestPresetValidators:
    def test_empty_values_pass(self):
        assert validate_with_preset(None, "cpf") == (True, None)
        assert validate_with_preset("  ", "email") == (True, None)

    def test_unknown_preset(self):
        ok, message = validate_with_preset("x", "passport")
        assert not ok
        assert "Unknown preset" in message

    def test_uf(self):
        assert validate_with_preset("SP", "uf")[0]
        assert not validate_with_preset("XX", "uf")[0]

    def test_cpf_checksum(self):
        assert is_valid_cpf("52998224725")
        assert is_valid_cpf("11144477735")
        assert not is_valid_cpf("52998224724")
        assert not is_valid_cpf("11111111111")
        assert not is_valid_cpf("123")
