import functools
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine

from errors import DatabaseError, SplitError

logger = logging.getLogger(__name__)


def make_engine(database_url: str, echo: bool = False):
    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, echo=echo, **kwargs)
    return create_engine(database_url, echo=echo)


def create_db_and_tables(engine):
    import models  # noqa: F401  registers the tables on SQLModel.metadata
    SQLModel.metadata.create_all(engine)


def transactional(method):
    """
    Run a service method as one unit of work on ``self.session``.
    Any rejection rolls back partial writes; storage failures become DatabaseError.
    """
    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        try:
            return method(self, *args, **kwargs)
        except SplitError:
            self.session.rollback()
            raise
        except SQLAlchemyError as exc:
            self.session.rollback()
            logger.error(f"{method.__qualname__} failed: {exc}")
            raise DatabaseError("Database operation failed", detail=str(exc)) from exc
    return wrapper
