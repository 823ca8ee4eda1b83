from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

from wallet_ledger.config import settings

Base = declarative_base()


def build_engine(db_url: str) -> Engine:
    connect_args = {"check_same_thread": False} if db_url.startswith("sqlite") else {}
    return create_engine(db_url, connect_args=connect_args)


def build_session_factory(bind: Engine) -> sessionmaker:
    # Rows handed back to callers are read after commit.
    return sessionmaker(bind=bind, autocommit=False, autoflush=False, expire_on_commit=False)


def init_db(bind: Engine) -> None:
    # Table classes must be registered on Base before create_all.
    from wallet_ledger import models  # noqa: F401

    Base.metadata.create_all(bind=bind)


engine = build_engine(settings.db_url)
SessionLocal = build_session_factory(engine)
