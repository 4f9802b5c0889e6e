import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from crm.database import get_db
from crm.errors import DuplicateEntryError, NotFoundError, ValidationError, translate_db_error
from crm.schemas import UserCreate, UserUpdate
from crm.security import CurrentUser, hash_password, require_admin

router = APIRouter()
logger = logging.getLogger(__name__)


def _get_user(db: Session, user_id: int):
    user = db.execute(
        text("SELECT id, username, role, locked, temp_password, created_at FROM users WHERE id = :user_id"),
        {"user_id": user_id},
    ).mappings().first()
    if user is None:
        raise NotFoundError("User not found")
    return user


def _ensure_username_free(db: Session, username: str, exclude_id: int | None = None) -> None:
    existing = db.execute(
        text("SELECT id FROM users WHERE LOWER(username) = :username AND (:exclude_id IS NULL OR id != :exclude_id)"),
        {"username": username.lower(), "exclude_id": exclude_id},
    ).first()
    if existing is not None:
        raise DuplicateEntryError("Username already exists")


@router.get("")
def list_users(user: CurrentUser = Depends(require_admin), db: Session = Depends(get_db)):
    rows = db.execute(
        text("SELECT id, username, role, locked, temp_password, created_at FROM users ORDER BY created_at DESC, id DESC")
    ).mappings().all()
    return [dict(r) for r in rows]


@router.post("", status_code=201)
def create_user(
    payload: UserCreate,
    request: Request,
    admin: CurrentUser = Depends(require_admin),
    db: Session = Depends(get_db),
):
    username = payload.username.strip()
    if not username:
        raise ValidationError("username is required")
    _ensure_username_free(db, username)

    try:
        user_id = db.execute(
            text(
                """
                INSERT INTO users (username, password, role, locked, temp_password)
                VALUES (:username, :password, :role, FALSE, TRUE)
                RETURNING id
                """
            ),
            {"username": username, "password": hash_password(payload.password), "role": payload.role},
        ).scalar_one()
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise translate_db_error(exc, "create user") from exc

    request.app.state.password_cache.put(username, payload.password)
    logger.info("User %s (%s) created by admin %s", user_id, payload.role, admin.id)
    return dict(_get_user(db, user_id))


@router.put("/{user_id}")
def update_user(
    user_id: int,
    payload: UserUpdate,
    request: Request,
    admin: CurrentUser = Depends(require_admin),
    db: Session = Depends(get_db),
):
    current = _get_user(db, user_id)
    username = (payload.username or "").strip() or current["username"]
    if username.lower() != str(current["username"]).lower():
        _ensure_username_free(db, username, exclude_id=user_id)

    params = {
        "user_id": user_id,
        "username": username,
        "role": payload.role or current["role"],
        "locked": current["locked"] if payload.locked is None else payload.locked,
    }
    password_sql = ""
    if payload.password:
        password_sql = ", password = :password, temp_password = TRUE"
        params["password"] = hash_password(payload.password)

    try:
        db.execute(
            text(
                f"""
                UPDATE users
                SET username = :username, role = :role, locked = :locked,
                    updated_at = CURRENT_TIMESTAMP{password_sql}
                WHERE id = :user_id
                """
            ),
            params,
        )
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise translate_db_error(exc, "update user") from exc

    cache = request.app.state.password_cache
    if payload.password:
        cache.pop(current["username"])
        cache.put(username, payload.password)
    elif username != current["username"]:
        cached = cache.pop(current["username"])
        if cached is not None:
            cache.put(username, cached)
    return dict(_get_user(db, user_id))


@router.delete("/{user_id}")
def delete_user(
    user_id: int,
    request: Request,
    admin: CurrentUser = Depends(require_admin),
    db: Session = Depends(get_db),
):
    current = _get_user(db, user_id)
    if user_id == admin.id:
        raise ValidationError("You cannot delete your own account")
    try:
        db.execute(text("UPDATE customers SET assigned_to = NULL WHERE assigned_to = :user_id"), {"user_id": user_id})
        db.execute(text("UPDATE customer_actions SET user_id = NULL WHERE user_id = :user_id"), {"user_id": user_id})
        db.execute(text("DELETE FROM users WHERE id = :user_id"), {"user_id": user_id})
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise translate_db_error(exc, "delete user") from exc

    request.app.state.password_cache.pop(current["username"])
    return {"message": "User deleted successfully"}


@router.get("/{user_id}/temp-password")
def get_temp_password(
    user_id: int,
    request: Request,
    admin: CurrentUser = Depends(require_admin),
    db: Session = Depends(get_db),
):
    user = _get_user(db, user_id)
    password = request.app.state.password_cache.get(user["username"])
    if password is None:
        raise NotFoundError("No temporary password on record (expired or already changed)")
    return {"username": user["username"], "tempPassword": password}
