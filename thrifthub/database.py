from fastapi import Request
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

Base = declarative_base()


def build_engine(database_url: str):
    connect_args = {}
    if database_url.startswith("sqlite"):
        # Writers wait on the database lock instead of failing immediately
        connect_args = {"check_same_thread": False, "timeout": 30}
    return create_engine(database_url, connect_args=connect_args)


def build_session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


def get_db(request: Request):
    """One session per request, drawn from the factory built at startup."""
    db = request.app.state.session_factory()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
