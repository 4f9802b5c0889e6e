import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from crm.database import get_db
from crm.errors import AuthError, NotFoundError, translate_db_error
from crm.schemas import ChangePasswordRequest, LoginRequest
from crm.security import (
    CurrentUser,
    create_access_token,
    get_current_user,
    hash_password,
    is_password_hash,
    verify_password,
)

router = APIRouter()
logger = logging.getLogger(__name__)

INVALID_LOGIN = "Invalid username/email or password"


@router.post("/login")
def login(payload: LoginRequest, request: Request, db: Session = Depends(get_db)):
    username = payload.username.strip().lower()
    user = db.execute(
        text(
            """
            SELECT id, username, password, role, temp_password
            FROM users
            WHERE LOWER(username) = :username AND locked = FALSE
            LIMIT 1
            """
        ),
        {"username": username},
    ).mappings().first()

    if user is None or not verify_password(payload.password, user["password"]):
        logger.info("Failed login for %s", username)
        raise AuthError(INVALID_LOGIN)

    if not is_password_hash(user["password"]):
        try:
            db.execute(
                text("UPDATE users SET password = :password WHERE id = :user_id"),
                {"password": hash_password(payload.password), "user_id": user["id"]},
            )
            db.commit()
            logger.info("Re-hashed legacy password for user %s", user["id"])
        except SQLAlchemyError as exc:
            db.rollback()
            raise translate_db_error(exc, "log in") from exc

    token = create_access_token(request.app.state.settings, user["id"], user["username"], user["role"])
    has_temp_password = bool(user["temp_password"])
    logger.info("User %s logged in (role %s)", user["id"], user["role"])
    return {
        "token": token,
        "user": {
            "id": user["id"],
            "username": user["username"],
            "role": user["role"],
            "tempPassword": has_temp_password,
        },
        "requiresPasswordChange": has_temp_password,
    }


@router.post("/change-password")
def change_password(
    payload: ChangePasswordRequest,
    request: Request,
    current: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    user = db.execute(
        text("SELECT id, username, password FROM users WHERE id = :user_id"),
        {"user_id": current.id},
    ).mappings().first()
    if user is None:
        raise NotFoundError("User not found")
    if not verify_password(payload.current_password, user["password"]):
        raise AuthError("Current password is incorrect")

    try:
        db.execute(
            text(
                """
                UPDATE users
                SET password = :password, temp_password = FALSE, updated_at = CURRENT_TIMESTAMP
                WHERE id = :user_id
                """
            ),
            {"password": hash_password(payload.new_password), "user_id": current.id},
        )
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise translate_db_error(exc, "change password") from exc

    request.app.state.password_cache.pop(user["username"])
    return {"message": "Password changed successfully"}
