from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Sequence

from crm.errors import ValidationError

FIELDS = ("first_name", "last_name", "name", "email", "phone", "address", "assigned_to")
HEADER_KEYWORDS = ("name", "email", "phone", "address", "first", "last", "assigned")
HEADER_SCAN_ROWS = 10
POSITIONAL_FALLBACK = {"name": 0, "email": 1, "phone": 2, "address": 3}

FIELD_ALIASES = {
    "firstName": "first_name",
    "lastName": "last_name",
    "assignedTo": "assigned_to",
}

FIRST_NAME_HEADERS = {"firstname", "first", "fname", "givenname", "forename"}
LAST_NAME_HEADERS = {"lastname", "last", "lname", "surname", "familyname"}
NAME_HEADERS = {"name", "fullname", "customername", "contactname", "clientname", "leadname"}
PHONE_HEADERS = {"phone", "mobile", "contact", "telephone", "tel", "cell", "cellphone"}
ADDRESS_HEADERS = {"address", "street", "streetaddress", "mailingaddress"}
ASSIGNED_HEADERS = {"assigned", "assignedto", "owner", "agent", "assignee"}

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_RE = re.compile(r"^\+?[\d\s().-]{7,}$")
PERSON_NAME_RE = re.compile(r"^[A-Z][a-z]+(?:[-'][A-Za-z]+)?\s+[A-Z][a-z]+(?:[-'][A-Za-z]+)?$")


@dataclass
class HeaderMapping:
    indices: dict[str, int] = field(default_factory=lambda: {f: -1 for f in FIELDS})
    header_row: int | None = None

    @property
    def data_start(self) -> int:
        return 0 if self.header_row is None else self.header_row + 1

    def as_dict(self) -> dict[str, Any]:
        return {"headerRow": self.header_row, "columns": dict(self.indices)}


def normalize_header(value: Any) -> str:
    raw = str(value or "")
    # Split camelCase so "FirstName" reads like "First Name".
    raw = re.sub(r"([a-z])([A-Z])", r"\1 \2", raw)
    return re.sub(r"[^a-z0-9]+", " ", raw.lower()).strip()


def _has_keyword(normalized: str) -> bool:
    return any(keyword in normalized for keyword in HEADER_KEYWORDS)


def looks_like_email(value: str) -> bool:
    return bool(EMAIL_RE.match(value.strip()))


def looks_like_phone(value: str) -> bool:
    raw = value.strip()
    return bool(PHONE_RE.match(raw)) and sum(ch.isdigit() for ch in raw) >= 7


def looks_like_person_name(value: str) -> bool:
    raw = value.strip()
    return bool(PERSON_NAME_RE.match(raw)) and not _has_keyword(normalize_header(raw))


def is_header_candidate(row: Sequence[Any]) -> bool:
    cells = [str(v or "").strip() for v in row]
    non_empty = [cell for cell in cells if cell]
    if len(non_empty) < 2:
        return False
    if not any(_has_keyword(normalize_header(cell)) for cell in non_empty):
        return False
    for cell in non_empty:
        if looks_like_email(cell) or looks_like_phone(cell) or looks_like_person_name(cell):
            return False
    return True


def field_for_header(value: Any) -> str | None:
    normalized = normalize_header(value)
    if not normalized:
        return None
    compact = normalized.replace(" ", "")
    words = normalized.split()

    if compact in FIRST_NAME_HEADERS or ("first" in words and "name" in compact):
        return "first_name"
    if compact in LAST_NAME_HEADERS or ("last" in words and "name" in compact):
        return "last_name"
    if "email" in compact or compact == "mail":
        return "email"
    if compact in PHONE_HEADERS or "phone" in compact or "mobile" in compact:
        return "phone"
    if compact in ASSIGNED_HEADERS or compact.startswith("assigned"):
        return "assigned_to"
    if compact in ADDRESS_HEADERS or "address" in compact:
        return "address"
    if compact in NAME_HEADERS:
        return "name"
    return None


def map_header_row(row: Sequence[Any]) -> dict[str, int]:
    indices = {f: -1 for f in FIELDS}
    for idx, value in enumerate(row):
        field_name = field_for_header(value)
        if field_name is not None and indices[field_name] == -1:
            indices[field_name] = idx
    return indices


def parse_column_mapping(raw: dict[str, Any] | None) -> dict[str, int]:
    """Validate a caller-supplied ``field -> column index`` override."""
    if not raw:
        return {}
    overrides: dict[str, int] = {}
    for key, value in raw.items():
        field_name = FIELD_ALIASES.get(key, key)
        if field_name not in FIELDS:
            allowed = ", ".join(FIELDS)
            raise ValidationError(f"Unknown column_mapping field '{key}'. Allowed: {allowed}.")
        try:
            index = int(value)
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"column_mapping value for '{key}' must be an integer") from exc
        if index < -1:
            raise ValidationError(f"column_mapping value for '{key}' must be -1 or a column index")
        overrides[field_name] = index
    return overrides


def resolve_headers(
    preview_rows: Sequence[Sequence[Any]],
    overrides: dict[str, int] | None = None,
) -> HeaderMapping:
    mapping = HeaderMapping()
    for idx, row in enumerate(preview_rows[:HEADER_SCAN_ROWS]):
        if is_header_candidate(row):
            mapping.header_row = idx
            mapping.indices = map_header_row(row)
            break
    else:
        mapping.indices.update(POSITIONAL_FALLBACK)

    if overrides:
        mapping.indices.update(overrides)
    return mapping
