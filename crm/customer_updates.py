from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import insert, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from crm.errors import ConflictError, NotFoundError, translate_db_error
from crm.models import customer_actions_table, customers_table

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = ("name", "email", "phone", "status", "assigned_to", "notes", "archived")


def as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def lock_customer(db: Session, customer_id: int) -> dict[str, Any]:
    row = db.execute(
        select(customers_table).where(customers_table.c.id == customer_id).with_for_update()
    ).mappings().first()
    if row is None:
        raise NotFoundError("Customer not found")
    return dict(row)


def check_not_stale(current: dict[str, Any], client_updated_at: datetime | None) -> None:
    """Reject the write when the caller's copy predates the stored row."""
    if client_updated_at is None:
        return
    stored = as_utc(current.get("updated_at"))
    if stored is not None and as_utc(client_updated_at) < stored:
        raise ConflictError(
            "Conflict: Customer was modified by another user. Please refresh and try again."
        )


def _text(value: Any) -> str | None:
    return None if value is None else str(value)


def stage_changes(
    current: dict[str, Any],
    changes: dict[str, Any],
    acting_user_id: int | None,
) -> tuple[dict[str, Any], list[dict[str, Any]]]:
    """Merge ``changes`` over ``current`` and build one audit entry per tracked change."""
    final = {field: changes.get(field, current[field]) for field in UPDATABLE_FIELDS}
    if not final["name"]:
        final["name"] = current["name"] or "Unknown"

    archiving = bool(final["archived"]) and not bool(current["archived"])
    restoring = bool(current["archived"]) and not bool(final["archived"])
    if final["archived"]:
        final["assigned_to"] = None

    actions: list[dict[str, Any]] = []

    def stage(action_type: str, old: Any = None, new: Any = None, comment: str | None = None) -> None:
        actions.append(
            {
                "customer_id": current["id"],
                "user_id": acting_user_id,
                "action_type": action_type,
                "old_value": _text(old),
                "new_value": _text(new),
                "comment": comment,
            }
        )

    if final["status"] != current["status"]:
        stage("status_change", current["status"], final["status"])
    if final["assigned_to"] != current["assigned_to"]:
        stage("assignment", current["assigned_to"], final["assigned_to"])
    if "notes" in changes and final["notes"] != current["notes"]:
        stage("comment", current["notes"], final["notes"], comment=final["notes"])
    if archiving:
        stage("archive", False, True)
    elif restoring:
        stage("restore", True, False)
    return final, actions


def record_actions(db: Session, actions: list[dict[str, Any]]) -> None:
    if not actions:
        return
    now = datetime.now(timezone.utc)
    try:
        with db.begin_nested():
            db.execute(insert(customer_actions_table), [{**a, "created_at": now} for a in actions])
    except SQLAlchemyError:
        logger.exception("Could not record %s customer action(s); update continues", len(actions))


def update_customer(
    db: Session,
    customer_id: int,
    changes: dict[str, Any],
    acting_user_id: int | None,
    client_updated_at: datetime | None = None,
) -> dict[str, Any]:
    """Apply a partial update to one customer under a row lock.

    Steps: lock the row, reject stale writes, diff tracked fields, write the
    merged row, record audit actions (best effort), commit.
    """
    try:
        current = lock_customer(db, customer_id)
        check_not_stale(current, client_updated_at)
        final, actions = stage_changes(current, changes, acting_user_id)
        final["updated_at"] = datetime.now(timezone.utc)
        db.execute(update(customers_table).where(customers_table.c.id == customer_id).values(**final))
        record_actions(db, actions)
        row = db.execute(
            select(customers_table).where(customers_table.c.id == customer_id)
        ).mappings().one()
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise translate_db_error(exc, "update customer") from exc
    except Exception:
        db.rollback()
        raise

    if actions:
        logger.info(
            "Customer %s updated by user %s: %s",
            customer_id,
            acting_user_id,
            ", ".join(a["action_type"] for a in actions),
        )
    return dict(row)
