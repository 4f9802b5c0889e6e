import logging

import bcrypt
from fastapi import Request
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from crm.config import Settings

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


def build_engine(settings: Settings) -> Engine:
    if settings.database_url.startswith("sqlite"):
        return create_engine(settings.database_url, connect_args={"check_same_thread": False})
    return create_engine(
        settings.database_url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_timeout=settings.db_pool_timeout,
        pool_pre_ping=True,
    )


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


def init_db(engine: Engine, settings: Settings) -> None:
    # Registers the mapped tables on Base.metadata.
    from crm import models  # noqa: F401

    Base.metadata.create_all(bind=engine)
    with engine.begin() as conn:
        conn.execute(
            text(
                "CREATE INDEX IF NOT EXISTS idx_customers_assigned_status "
                "ON customers (assigned_to, status, archived)"
            )
        )
        admin = conn.execute(
            text("SELECT id FROM users WHERE LOWER(username) = 'admin'")
        ).first()
        if admin is None:
            hashed = bcrypt.hashpw(settings.admin_password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")
            conn.execute(
                text(
                    """
                    INSERT INTO users (username, password, role, locked, temp_password)
                    VALUES ('admin', :password, 'admin', FALSE, FALSE)
                    """
                ),
                {"password": hashed},
            )
            logger.warning("Default admin user created; change its password after first login")


def get_db(request: Request):
    db: Session = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()
