"""
Tests for text formatting helpers.
"""
import pytest

from app.utils.formatting import (
    content_disposition,
    format_location,
    format_national_id,
    format_phone,
    mask_cpf,
    sanitize_filename,
    strip_accents,
    strip_pdf_extension,
    to_e164,
)


class TestFilenames:
    """Test filename sanitizing and headers."""

    def test_strip_accents(self):
        assert strip_accents("João Conceição") == "Joao Conceicao"

    def test_sanitize_filename(self):
        """Accents dropped, spaces and symbols replaced."""
        assert sanitize_filename("Relatório final (v2).pdf") == "Relatorio_final__v2_.pdf"

    def test_sanitize_filename_default(self):
        assert sanitize_filename(None) == "documento"
        assert sanitize_filename("") == "documento"
        assert sanitize_filename("", default="arquivo") == "arquivo"

    def test_strip_pdf_extension(self):
        assert strip_pdf_extension("Contrato.PDF") == "Contrato"
        assert strip_pdf_extension("Contrato.docx") == "Contrato.docx"

    def test_content_disposition_is_ascii(self):
        value = content_disposition("Contrato Social ç.pdf")

        assert value.startswith("attachment; ")
        assert 'filename="Contrato_Social_c.pdf"' in value
        assert "filename*=UTF-8''Contrato_Social_c.pdf" in value
        value.encode("latin-1")


class TestIdentifiers:
    """Test CPF/CNPJ formatting."""

    def test_cpf(self):
        assert format_national_id("12345678909") == "123.456.789-09"

    def test_cnpj(self):
        assert format_national_id("12345678000190") == "12.345.678/0001-90"

    def test_other_kept_raw(self):
        assert format_national_id(" AB123 ") == "AB123"
        assert format_national_id(None) == ""

    @pytest.mark.parametrize("value", ["12345678909", "123.456.789-09"])
    def test_mask_cpf(self, value):
        """Only the middle digits stay visible."""
        assert mask_cpf(value) == "***.456.789-**"

    def test_mask_cpf_missing(self):
        assert mask_cpf(None) == "-"


class TestPhones:
    """Test phone formatting."""

    def test_mobile(self):
        assert format_phone("11987654321") == "(11) 98765-4321"

    def test_with_country_code(self):
        assert format_phone("+55 11 98765-4321") == "(11) 98765-4321"

    def test_landline(self):
        assert format_phone("1133334444") == "(11) 3333-4444"

    def test_missing(self):
        assert format_phone(None) == "-"

    def test_e164_assumes_brazil(self):
        assert to_e164("(11) 98765-4321") == "+5511987654321"

    def test_e164_keeps_explicit_country(self):
        assert to_e164("+1 (555) 123-4567") == "+15551234567"

    def test_e164_already_prefixed_digits(self):
        assert to_e164("5511987654321") == "+5511987654321"

    def test_e164_invalid(self):
        assert to_e164("") is None
        assert to_e164("abc") is None


class TestLocation:

    def test_joins_present_parts(self):
        assert format_location("Recife", " PE ", None) == "Recife, PE"

    def test_empty(self):
        assert format_location(None, "", "  ") == "-"
