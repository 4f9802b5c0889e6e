from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from itertools import chain, islice
from typing import Any, Iterable, Iterator, Sequence

from sqlalchemy import insert, text
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session

from crm.errors import EmptyFileError, ValidationError
from crm.headers import HEADER_SCAN_ROWS, HeaderMapping, resolve_headers
from crm.models import CUSTOMER_STATUSES, customers_table
from crm.tabular import cell_text, detect_format, read_rows

logger = logging.getLogger(__name__)

ERROR_MESSAGE_LIMIT = 10
MAX_BATCH_SIZE = 5000
PREVIEW_SAMPLE_SIZE = 5
PROGRESS_LOG_EVERY = 10


@dataclass
class CustomerRecord:
    name: str
    first_name: str
    last_name: str
    email: str | None
    phone: str | None
    notes: str | None
    assigned_to: int | None
    status: str = "pending"
    archived: bool = False

    def as_insert_row(self, now: datetime) -> dict[str, Any]:
        return {
            "name": self.name or "Unknown",
            "email": self.email,
            "phone": self.phone,
            "status": self.status,
            "assigned_to": self.assigned_to,
            "notes": self.notes,
            "archived": self.archived,
            "created_at": now,
            "updated_at": now,
        }

    def as_preview(self) -> dict[str, Any]:
        return {
            "name": self.name or "Unknown",
            "firstName": self.first_name,
            "lastName": self.last_name,
            "email": self.email,
            "phone": self.phone,
            "notes": self.notes,
            "assignedTo": self.assigned_to,
            "status": self.status,
        }


def new_summary() -> dict[str, Any]:
    return {
        "totalRecords": 0,
        "importedCount": 0,
        "errorCount": 0,
        "errors": [],
        "errorsTruncated": 0,
    }


def _record_error(summary: dict[str, Any], message: str, count: int = 1) -> None:
    summary["errorCount"] += count
    if len(summary["errors"]) < ERROR_MESSAGE_LIMIT:
        summary["errors"].append(message)
    else:
        summary["errorsTruncated"] += 1


def clamp_batch_size(batch_size: int | None, default: int) -> int:
    size = batch_size or default
    return max(1, min(int(size), MAX_BATCH_SIZE))


def _cell(row: Sequence[Any], index: int) -> str:
    if index < 0 or index >= len(row):
        return ""
    return cell_text(row[index])


def _compose_name(name: str, first_name: str, last_name: str) -> tuple[str, str, str]:
    if not name and (first_name or last_name):
        name = f"{first_name} {last_name}".strip()
    elif name and not first_name and not last_name:
        parts = name.split()
        first_name = parts[0] if parts else ""
        last_name = " ".join(parts[1:])
    return name, first_name, last_name


def _resolve_assignee(raw: str, users: dict[str, int] | None) -> int | None:
    if not raw or users is None:
        return None
    return users.get(raw.lower())


def normalize_row(
    row: Sequence[Any],
    mapping: HeaderMapping,
    default_assigned_to: int | None = None,
    users: dict[str, int] | None = None,
) -> CustomerRecord | None:
    """Turn one raw table row into a customer record; blank rows yield ``None``."""
    indices = mapping.indices
    first_name = _cell(row, indices["first_name"])
    last_name = _cell(row, indices["last_name"])
    name = _cell(row, indices["name"])
    email = _cell(row, indices["email"])
    phone = _cell(row, indices["phone"])
    address = _cell(row, indices["address"])

    if not (first_name or last_name or name or email or phone):
        return None

    name, first_name, last_name = _compose_name(name, first_name, last_name)
    assigned_to = _resolve_assignee(_cell(row, indices["assigned_to"]), users)
    if assigned_to is None:
        assigned_to = default_assigned_to

    return CustomerRecord(
        name=name,
        first_name=first_name,
        last_name=last_name,
        email=email or None,
        phone=phone or None,
        notes=address or None,
        assigned_to=assigned_to,
    )


def normalize_payload(item: dict[str, Any]) -> CustomerRecord | None:
    """Apply the row rules to one pre-parsed bulk-upload item."""
    first_name = cell_text(item.get("first_name"))
    last_name = cell_text(item.get("last_name"))
    name = cell_text(item.get("name"))
    email = cell_text(item.get("email"))
    phone = cell_text(item.get("phone"))

    if not (first_name or last_name or name or email or phone):
        return None

    name, first_name, last_name = _compose_name(name, first_name, last_name)
    notes = cell_text(item.get("notes")) or cell_text(item.get("comments"))
    return CustomerRecord(
        name=name,
        first_name=first_name,
        last_name=last_name,
        email=email or None,
        phone=phone or None,
        notes=notes or None,
        assigned_to=item.get("assigned_to"),
        status=cell_text(item.get("status")).lower() or "pending",
    )


def _insert_batch(db: Session, summary: dict[str, Any], batch: list[CustomerRecord], batch_number: int) -> None:
    now = datetime.now(timezone.utc)
    try:
        with db.begin_nested():
            result = db.execute(insert(customers_table).values([r.as_insert_row(now) for r in batch]))
    except DBAPIError as exc:
        if exc.connection_invalidated:
            raise
        message = str(exc.orig).strip().splitlines()[0] if exc.orig is not None else str(exc)
        logger.warning("Customer import batch %s failed (%s rows): %s", batch_number, len(batch), message)
        _record_error(summary, f"Batch {batch_number}: {message}", count=len(batch))
        return
    summary["importedCount"] += result.rowcount if result.rowcount >= 0 else len(batch)


def write_batches(
    db: Session,
    records: Iterable[CustomerRecord],
    batch_size: int,
    summary: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Insert records in multi-row batches, one SAVEPOINT per batch.

    A failing batch is rolled back to its savepoint and counted as errors in
    full; later batches still run. Nothing is committed here: successful
    batches become durable when the caller commits the session.
    """
    summary = summary if summary is not None else new_summary()
    batch: list[CustomerRecord] = []
    batch_number = 0
    for record in records:
        summary["totalRecords"] += 1
        batch.append(record)
        if len(batch) >= batch_size:
            batch_number += 1
            _insert_batch(db, summary, batch, batch_number)
            if batch_number % PROGRESS_LOG_EVERY == 0:
                logger.info("Customer import progress: %s records processed", summary["totalRecords"])
            batch = []
    if batch:
        batch_number += 1
        _insert_batch(db, summary, batch, batch_number)

    logger.info(
        "Customer import finished: %s imported, %s errors in %s batches",
        summary["importedCount"],
        summary["errorCount"],
        batch_number,
    )
    return summary


def load_user_lookup(db: Session) -> dict[str, int]:
    """Map lowercased usernames and stringified ids to user ids."""
    lookup: dict[str, int] = {}
    for r in db.execute(text("SELECT id, username FROM users")).mappings():
        lookup[str(r["username"]).lower()] = int(r["id"])
        lookup[str(r["id"])] = int(r["id"])
    return lookup


def ensure_user_exists(db: Session, user_id: int | None) -> None:
    if user_id is None:
        return
    exists = db.execute(text("SELECT 1 FROM users WHERE id = :user_id"), {"user_id": user_id}).scalar()
    if not exists:
        raise ValidationError("Invalid assigned_to")


def _file_records(
    rows: Iterable[Sequence[Any]],
    mapping: HeaderMapping,
    default_assigned_to: int | None,
    users: dict[str, int],
) -> Iterator[CustomerRecord]:
    for row in rows:
        record = normalize_row(row, mapping, default_assigned_to, users)
        if record is not None:
            yield record


def import_customer_file(
    db: Session,
    content: bytes,
    filename: str,
    *,
    assigned_to: int | None = None,
    column_mapping: dict[str, int] | None = None,
    batch_size: int = 1000,
    dry_run: bool = False,
) -> dict[str, Any]:
    file_format = detect_format(filename)
    if not content:
        raise EmptyFileError("Uploaded file is empty")
    ensure_user_exists(db, assigned_to)

    rows = read_rows(content, file_format)
    preview_rows = list(islice(rows, HEADER_SCAN_ROWS))
    mapping = resolve_headers(preview_rows, column_mapping)
    data_rows = chain(preview_rows[mapping.data_start:], rows)
    records = _file_records(data_rows, mapping, assigned_to, load_user_lookup(db))

    logger.info(
        "Importing %s file %s (header row %s, columns %s)",
        file_format,
        filename,
        mapping.header_row,
        mapping.indices,
    )

    if dry_run:
        sample: list[dict[str, Any]] = []
        total = 0
        for record in records:
            total += 1
            if len(sample) < PREVIEW_SAMPLE_SIZE:
                sample.append(record.as_preview())
        return {
            "mode": "preview",
            "format": file_format,
            "headerMapping": mapping.as_dict(),
            "totalRecords": total,
            "sample": sample,
        }

    summary = write_batches(db, records, clamp_batch_size(batch_size, 1000))
    if summary["totalRecords"] == 0:
        raise ValidationError("No valid customer data found in file")
    summary["headerMapping"] = mapping.as_dict()
    summary["format"] = file_format
    summary["mode"] = "apply"
    return summary


def _payload_records(summary: dict[str, Any], items: Iterable[dict[str, Any]]) -> Iterator[CustomerRecord]:
    for position, item in enumerate(items, start=1):
        record = normalize_payload(item)
        if record is None:
            continue
        if record.status not in CUSTOMER_STATUSES:
            summary["totalRecords"] += 1
            _record_error(summary, f"Row {position}: invalid status '{record.status}'")
            continue
        yield record


def bulk_upload_customers(db: Session, items: list[dict[str, Any]], batch_size: int) -> dict[str, Any]:
    summary = new_summary()
    logger.info("Starting bulk upload: %s records in batches of %s", len(items), batch_size)
    return write_batches(db, _payload_records(summary, items), batch_size, summary)
