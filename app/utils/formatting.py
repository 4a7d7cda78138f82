"""
Text helpers for filenames, headers and Brazilian identifiers.
"""
import re
import unicodedata
from typing import Optional
from urllib.parse import quote

_UNSAFE_FILENAME_CHARS = re.compile(r"[^a-zA-Z0-9._-]")


def strip_accents(text: str) -> str:
    """Remove combining marks after NFD decomposition: 'João' -> 'Joao'."""
    decomposed = unicodedata.normalize("NFD", text)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def sanitize_filename(name: Optional[str], default: str = "documento") -> str:
    """
    Make a name safe for storage paths and Content-Disposition.

    Accents are stripped, anything outside [a-zA-Z0-9._-] becomes '_'.
    """
    if not name:
        return default
    cleaned = _UNSAFE_FILENAME_CHARS.sub("_", strip_accents(name))
    return cleaned or default


def strip_pdf_extension(name: str) -> str:
    if name.lower().endswith(".pdf"):
        return name[:-4]
    return name


def content_disposition(filename: str) -> str:
    """
    Build an attachment Content-Disposition header value.

    The plain filename must be ASCII (latin-1 is the header encoding and
    starlette rejects anything else); filename* carries the UTF-8 form.
    """
    ascii_name = sanitize_filename(filename)
    return f"attachment; filename=\"{ascii_name}\"; filename*=UTF-8''{quote(ascii_name)}"


def only_digits(value: Optional[str]) -> str:
    return re.sub(r"\D", "", value or "")


def format_national_id(value: Optional[str]) -> str:
    """CPF (11 digits) as 000.000.000-00, CNPJ (14) as 00.000.000/0000-00, raw otherwise."""
    digits = only_digits(value)
    if len(digits) == 11:
        return f"{digits[:3]}.{digits[3:6]}.{digits[6:9]}-{digits[9:]}"
    if len(digits) == 14:
        return f"{digits[:2]}.{digits[2:5]}.{digits[5:8]}/{digits[8:12]}-{digits[12:]}"
    return (value or "").strip()


def mask_cpf(value: Optional[str]) -> str:
    """Evidence-report CPF: ***.456.789-** keeps only the middle digits visible."""
    digits = only_digits(value)
    if len(digits) != 11:
        return format_national_id(value) or "-"
    return f"***.{digits[3:6]}.{digits[6:9]}-**"


def format_phone(value: Optional[str]) -> str:
    """Brazilian phone for display: (11) 98765-4321."""
    digits = only_digits(value)
    if len(digits) in (12, 13) and digits.startswith("55"):
        digits = digits[2:]
    if len(digits) == 11:
        return f"({digits[:2]}) {digits[2:7]}-{digits[7:]}"
    if len(digits) == 10:
        return f"({digits[:2]}) {digits[2:6]}-{digits[6:]}"
    return (value or "-").strip() or "-"


def to_e164(value: Optional[str], default_country: str = "55") -> Optional[str]:
    """Phone in E.164, assuming Brazil when no country code is present."""
    if not value:
        return None
    if value.strip().startswith("+"):
        digits = only_digits(value)
        return f"+{digits}" if digits else None
    digits = only_digits(value)
    if not digits:
        return None
    if len(digits) <= 11:
        digits = default_country + digits
    return f"+{digits}"


def format_location(
    city: Optional[str],
    state: Optional[str],
    country: Optional[str],
) -> str:
    parts = [p.strip() for p in (city, state, country) if p and p.strip()]
    return ", ".join(parts) if parts else "-"
