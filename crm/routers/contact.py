import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from sqlalchemy import func, insert, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from crm.database import get_db
from crm.errors import translate_db_error
from crm.models import customers_table
from crm.schemas import ContactRequest

router = APIRouter()
logger = logging.getLogger(__name__)

THANK_YOU = "Thank you for contacting us! We will get back to you soon."


def _find_by_email(db: Session, email: str, lock: bool = False):
    query = select(customers_table.c.id).where(func.lower(customers_table.c.email) == email).limit(1)
    if lock:
        query = query.with_for_update()
    return db.execute(query).scalar()


def record_contact(db: Session, payload: ContactRequest) -> tuple[int, bool]:
    """Create a pending lead for a contact-form submission unless one exists for the email.

    Returns ``(customer_id, created)``.
    """
    email = str(payload.email).strip().lower()

    existing = _find_by_email(db, email)
    if existing is not None:
        db.rollback()
        return int(existing), False

    if db.get_bind().dialect.name == "postgresql":
        # FOR UPDATE cannot lock a row that does not exist yet; serialize on the email instead.
        db.execute(text("SELECT pg_advisory_xact_lock(hashtext(:key))"), {"key": f"contact:{email}"})

    existing = _find_by_email(db, email, lock=True)
    if existing is not None:
        db.rollback()
        return int(existing), False

    now = datetime.now(timezone.utc)
    customer_id = db.execute(
        insert(customers_table)
        .values(
            name=payload.fullname.strip() or "Unknown",
            email=email,
            phone=payload.phone.strip() or None,
            status="pending",
            notes=(payload.description or "").strip() or None,
            archived=False,
            created_at=now,
            updated_at=now,
        )
        .returning(customers_table.c.id)
    ).scalar_one()
    db.commit()
    return int(customer_id), True


@router.post("")
def submit_contact(payload: ContactRequest, db: Session = Depends(get_db)):
    try:
        customer_id, created = record_contact(db, payload)
    except SQLAlchemyError as exc:
        db.rollback()
        raise translate_db_error(exc, "save contact request") from exc

    if created:
        logger.info("Contact form created lead %s", customer_id)
    else:
        logger.info("Contact form matched existing lead %s", customer_id)
    return {"success": True, "message": THANK_YOU, "customerId": customer_id, "created": created}
