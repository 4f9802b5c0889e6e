import json
import logging
import math
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, File, Form, Query, Request, UploadFile
from fastapi.concurrency import run_in_threadpool
from sqlalchemy import bindparam, func, insert, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from crm.customer_import import bulk_upload_customers, clamp_batch_size, import_customer_file
from crm.customer_updates import update_customer
from crm.database import get_db
from crm.errors import NotFoundError, PayloadTooLargeError, ValidationError, translate_db_error
from crm.headers import parse_column_mapping
from crm.models import customers_table
from crm.schemas import BulkDeleteRequest, BulkUploadRequest, CustomerCreate, CustomerUpdate
from crm.security import CurrentUser, require_admin, require_staff

router = APIRouter()
logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 100
MAX_PAGE_SIZE = 1000
DELETE_BATCH_SIZE = 1000


def fetch_customer(db: Session, customer_id: int) -> dict:
    row = db.execute(
        select(customers_table).where(customers_table.c.id == customer_id)
    ).mappings().first()
    if row is None:
        raise NotFoundError("Customer not found")
    return dict(row)


def call_status(status: str | None) -> str:
    if not status or status == "pending":
        return "not_called"
    if status == "voice_mail":
        return "voice_mail"
    return "called"


@router.get("")
def list_customers(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    status: str = Query(default=""),
    assigned_to: int | None = Query(default=None),
    search: str = Query(default=""),
    include_archived: bool = Query(default=False),
    user: CurrentUser = Depends(require_staff),
    db: Session = Depends(get_db),
):
    table = customers_table
    conditions = []
    if not include_archived:
        conditions.append(table.c.archived.is_(False))
    if status.strip():
        conditions.append(table.c.status == status.strip())
    if not user.is_admin:
        conditions.append(table.c.assigned_to == user.id)
    elif assigned_to is not None:
        conditions.append(table.c.assigned_to == assigned_to)
    if search.strip():
        pattern = f"%{search.strip().lower()}%"
        conditions.append(
            func.lower(func.coalesce(table.c.name, "")).like(pattern)
            | func.lower(func.coalesce(table.c.email, "")).like(pattern)
            | func.lower(func.coalesce(table.c.phone, "")).like(pattern)
        )

    total_records = db.execute(select(func.count()).select_from(table).where(*conditions)).scalar_one()
    rows = db.execute(
        select(table)
        .where(*conditions)
        .order_by(table.c.created_at.desc(), table.c.id.desc())
        .limit(limit)
        .offset((page - 1) * limit)
    ).mappings().all()

    total_pages = math.ceil(total_records / limit) if total_records else 0
    return {
        "customers": [dict(r) for r in rows],
        "pagination": {
            "page": page,
            "limit": limit,
            "totalRecords": total_records,
            "totalPages": total_pages,
            "hasNextPage": page < total_pages,
            "hasPrevPage": page > 1,
        },
    }


@router.get("/stats")
def customer_stats(
    user: CurrentUser = Depends(require_staff),
    db: Session = Depends(get_db),
):
    rows = db.execute(
        text(
            """
            SELECT COALESCE(status, 'pending') AS status, archived, COUNT(*) AS total
            FROM customers
            GROUP BY COALESCE(status, 'pending'), archived
            """
        )
    ).mappings().all()

    status_counts: dict[str, int] = {}
    call_status_counts = {"called": 0, "not_called": 0, "voice_mail": 0}
    total_customers = 0
    archived_count = 0
    for row in rows:
        count = int(row["total"])
        if row["archived"]:
            archived_count += count
            continue
        total_customers += count
        status_counts[row["status"]] = status_counts.get(row["status"], 0) + count
        call_status_counts[call_status(row["status"])] += count

    return {
        "totalCustomers": total_customers,
        "archivedCount": archived_count,
        "statusCounts": status_counts,
        "callStatusCounts": call_status_counts,
        "w2Received": status_counts.get("w2_received", 0),
        "followUpCount": status_counts.get("follow_up", 0),
    }


@router.get("/{customer_id}")
def get_customer(
    customer_id: int,
    user: CurrentUser = Depends(require_staff),
    db: Session = Depends(get_db),
):
    return fetch_customer(db, customer_id)


@router.get("/{customer_id}/actions")
def list_customer_actions(
    customer_id: int,
    user: CurrentUser = Depends(require_staff),
    db: Session = Depends(get_db),
):
    fetch_customer(db, customer_id)
    rows = db.execute(
        text(
            """
            SELECT a.id, a.action_type, a.old_value, a.new_value, a.comment, a.created_at,
                   a.user_id, u.username
            FROM customer_actions a
            LEFT JOIN users u ON u.id = a.user_id
            WHERE a.customer_id = :customer_id
            ORDER BY a.created_at DESC, a.id DESC
            """
        ),
        {"customer_id": customer_id},
    ).mappings().all()
    return {"items": [dict(r) for r in rows]}


@router.post("", status_code=201)
def create_customer(
    payload: CustomerCreate,
    user: CurrentUser = Depends(require_staff),
    db: Session = Depends(get_db),
):
    now = datetime.now(timezone.utc)
    try:
        customer_id = db.execute(
            insert(customers_table)
            .values(
                name=payload.resolved_name() or "Unknown",
                email=(payload.email or "").strip() or None,
                phone=(payload.phone or "").strip() or None,
                status=payload.status,
                assigned_to=payload.assigned_to,
                notes=payload.notes,
                archived=False,
                created_at=now,
                updated_at=now,
            )
            .returning(customers_table.c.id)
        ).scalar_one()
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise translate_db_error(exc, "create customer") from exc

    logger.info("Customer %s created by user %s", customer_id, user.id)
    return fetch_customer(db, customer_id)


@router.put("/{customer_id}")
def put_customer(
    customer_id: int,
    payload: CustomerUpdate,
    user: CurrentUser = Depends(require_staff),
    db: Session = Depends(get_db),
):
    changes = payload.model_dump(
        exclude_unset=True,
        exclude={"first_name", "last_name", "updated_at", "name"},
    )
    name = payload.resolved_name()
    if name:
        changes["name"] = name
    for field in ("email", "phone"):
        if field in changes and changes[field] is not None:
            changes[field] = changes[field].strip() or None
    if "status" in changes and changes["status"] is None:
        del changes["status"]
    if "archived" in changes and changes["archived"] is None:
        del changes["archived"]

    return update_customer(db, customer_id, changes, user.id, client_updated_at=payload.updated_at)


@router.delete("/{customer_id}")
def delete_customer(
    customer_id: int,
    user: CurrentUser = Depends(require_admin),
    db: Session = Depends(get_db),
):
    fetch_customer(db, customer_id)
    try:
        db.execute(text("DELETE FROM customer_actions WHERE customer_id = :customer_id"), {"customer_id": customer_id})
        db.execute(text("DELETE FROM customers WHERE id = :customer_id"), {"customer_id": customer_id})
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise translate_db_error(exc, "delete customer") from exc

    logger.info("Customer %s deleted by user %s", customer_id, user.id)
    return {"message": "Customer deleted successfully"}


def _valid_ids(raw_ids: list) -> list[int]:
    ids: list[int] = []
    for raw in raw_ids:
        if raw is None or isinstance(raw, bool):
            continue
        if isinstance(raw, float) and not raw.is_integer():
            continue
        try:
            ids.append(int(raw))
        except (TypeError, ValueError):
            continue
    return ids


@router.post("/bulk-delete")
def bulk_delete_customers(
    payload: BulkDeleteRequest,
    user: CurrentUser = Depends(require_admin),
    db: Session = Depends(get_db),
):
    ids = _valid_ids(payload.customer_ids)
    if not ids:
        raise ValidationError("No valid customer IDs provided")

    delete_actions = text("DELETE FROM customer_actions WHERE customer_id IN :ids").bindparams(
        bindparam("ids", expanding=True)
    )
    delete_customers = text("DELETE FROM customers WHERE id IN :ids").bindparams(
        bindparam("ids", expanding=True)
    )
    deleted = 0
    logger.info("Starting bulk delete: %s customer IDs", len(ids))
    try:
        for start in range(0, len(ids), DELETE_BATCH_SIZE):
            batch = ids[start:start + DELETE_BATCH_SIZE]
            db.execute(delete_actions, {"ids": batch})
            result = db.execute(delete_customers, {"ids": batch})
            deleted += max(result.rowcount or 0, 0)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise translate_db_error(exc, "bulk delete customers") from exc

    logger.info("Bulk delete completed: %s customers deleted", deleted)
    return {
        "success": True,
        "deletedCount": deleted,
        "message": f"Successfully deleted {deleted} customer(s)",
    }


@router.post("/bulk-upload")
def bulk_upload(
    payload: BulkUploadRequest,
    request: Request,
    user: CurrentUser = Depends(require_admin),
    db: Session = Depends(get_db),
):
    settings = request.app.state.settings
    batch_size = clamp_batch_size(payload.batch_size, settings.bulk_upload_batch_size)
    items = [item.model_dump() for item in payload.customers]
    try:
        summary = bulk_upload_customers(db, items, batch_size)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Bulk upload failed")
        raise translate_db_error(exc, "bulk upload customers") from exc

    return {"success": True, **summary}


def _parse_optional_int(value: str, field_name: str) -> int | None:
    cleaned = (value or "").strip()
    if not cleaned:
        return None
    try:
        return int(cleaned)
    except ValueError as exc:
        raise ValidationError(f"Invalid {field_name}") from exc


def _parse_column_mapping(value: str) -> dict[str, int]:
    cleaned = (value or "").strip()
    if not cleaned:
        return {}
    try:
        raw = json.loads(cleaned)
    except ValueError as exc:
        raise ValidationError("column_mapping must be a JSON object") from exc
    if not isinstance(raw, dict):
        raise ValidationError("column_mapping must be a JSON object")
    return parse_column_mapping(raw)


def run_file_import(db: Session, content: bytes, filename: str, *, dry_run: bool, **options) -> dict:
    """Import on a worker thread and finish the transaction there as well."""
    try:
        result = import_customer_file(db, content, filename, dry_run=dry_run, **options)
        if dry_run:
            db.rollback()
        else:
            db.commit()
    except Exception:
        db.rollback()
        raise
    return result


@router.post("/upload-file")
async def upload_file(
    request: Request,
    file: UploadFile | None = File(default=None),
    assigned_to: str = Form(""),
    column_mapping: str = Form(""),
    import_mode: str = Form("apply"),
    batch_size: str = Form(""),
    user: CurrentUser = Depends(require_admin),
    db: Session = Depends(get_db),
):
    settings = request.app.state.settings
    if file is None or not file.filename:
        raise ValidationError("No file uploaded")

    mode = import_mode.strip().lower() or "apply"
    if mode not in {"preview", "apply"}:
        raise ValidationError("Invalid import mode. Use preview or apply.")
    assigned_to_value = _parse_optional_int(assigned_to, "assigned_to")
    batch_size_value = _parse_optional_int(batch_size, "batch_size")
    overrides = _parse_column_mapping(column_mapping)

    max_bytes = settings.max_upload_mb * 1024 * 1024
    content = await file.read(max_bytes + 1)
    if len(content) > max_bytes:
        raise PayloadTooLargeError(f"File exceeds the {settings.max_upload_mb} MB upload limit")

    try:
        result = await run_in_threadpool(
            run_file_import,
            db,
            content,
            file.filename,
            assigned_to=assigned_to_value,
            column_mapping=overrides,
            batch_size=batch_size_value or settings.import_batch_size,
            dry_run=(mode == "preview"),
        )
    except SQLAlchemyError as exc:
        logger.exception("Unexpected database error during file import")
        raise translate_db_error(exc, "import customers") from exc

    logger.info(
        "File %s imported by user %s: %s/%s records",
        file.filename,
        user.id,
        result.get("importedCount", 0),
        result["totalRecords"],
    )
    return {"success": True, **result}
