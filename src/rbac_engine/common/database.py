"""Database manager for the SQL persistence back-end."""

from contextlib import contextmanager
from typing import Generator

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from rbac_engine.common.config import RBACSettings, get_settings
from rbac_engine.common.models import Base

# Import model modules so Base.metadata is complete for create_all().
import rbac_engine.store.persistence  # noqa: F401


def _is_memory_sqlite(url: str) -> bool:
    return url in ("sqlite://", "sqlite:///:memory:")


class DatabaseManager:
    """Manages a single synchronous database engine."""

    def __init__(self, settings: RBACSettings | None = None, db_url: str | None = None):
        self._settings = settings or get_settings()
        self._url = db_url or self._settings.db_url
        self.engine: Engine | None = None
        self._session_factory: sessionmaker[Session] | None = None

    def init(self) -> None:
        url = self._url
        if _is_memory_sqlite(url):
            # One shared connection, otherwise every checkout sees an empty DB
            self.engine = create_engine(
                url,
                echo=False,
                poolclass=StaticPool,
                connect_args={"check_same_thread": False},
            )
        else:
            self.engine = create_engine(url, echo=False)
        self._session_factory = sessionmaker(self.engine, expire_on_commit=False)

    @contextmanager
    def get_session(self) -> Generator[Session, None, None]:
        if self._session_factory is None:
            raise RuntimeError("DatabaseManager not initialized — call init() first")
        with self._session_factory() as session:
            try:
                yield session
                session.commit()
            except Exception:
                session.rollback()
                raise

    def create_all(self) -> None:
        if self.engine is None:
            raise RuntimeError("DatabaseManager not initialized — call init() first")
        Base.metadata.create_all(self.engine)

    def close(self) -> None:
        if self.engine:
            self.engine.dispose()
            self.engine = None
            self._session_factory = None
