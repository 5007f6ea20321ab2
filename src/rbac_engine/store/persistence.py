"""Persistence adapters — load and save whole collections.

Every adapter implements ``load(collection)`` and ``save(collection, records)``.
``save_many`` writes several collections as one unit: the default
implementation saves them in order and restores the ones already written
when a later save fails; the SQL back-end uses a single transaction.
"""

import copy
import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import TYPE_CHECKING, Any, Mapping

from sqlalchemy import JSON, String
from sqlalchemy.orm import Mapped, mapped_column

from rbac_engine.common.exceptions import PersistenceError
from rbac_engine.common.models import Base, TimestampMixin

if TYPE_CHECKING:
    from rbac_engine.common.config import RBACSettings
    from rbac_engine.common.database import DatabaseManager

logger = logging.getLogger(__name__)

USERS = "users"
ROLES = "roles"
PERMISSIONS = "permissions"
ROLE_PERMISSIONS = "role_permissions"
AUDIT_LOG = "audit_log"

COLLECTIONS = (USERS, ROLES, PERMISSIONS, ROLE_PERMISSIONS, AUDIT_LOG)

Records = list[dict[str, Any]]


class CollectionModel(Base, TimestampMixin):
    __tablename__ = "rbac_collections"

    name: Mapped[str] = mapped_column(String(64), primary_key=True)
    records: Mapped[list] = mapped_column(JSON, default=list)


class PersistenceAdapter(ABC):
    """Load/save whole collections of JSON-serializable records."""

    @abstractmethod
    def load(self, collection: str) -> Records:
        ...

    @abstractmethod
    def save(self, collection: str, records: Records) -> None:
        ...

    def save_many(self, collections: Mapping[str, Records]) -> None:
        """Save several collections; on failure restore the ones already written."""
        written: list[tuple[str, Records]] = []
        for name, records in collections.items():
            previous = self.load(name)
            try:
                self.save(name, records)
            except Exception as exc:
                for done_name, done_previous in reversed(written):
                    try:
                        self.save(done_name, done_previous)
                    except Exception:
                        logger.exception("Failed to restore collection %s", done_name)
                        raise PersistenceError(
                            f"Collection '{name}' failed and '{done_name}' could not be restored",
                            collection=name,
                        ) from exc
                raise PersistenceError(
                    f"Failed to save collection '{name}': {exc}", collection=name,
                ) from exc
            written.append((name, previous))


class MemoryPersistence(PersistenceAdapter):
    """Keeps collections in process memory (tests, development)."""

    def __init__(self, initial: Mapping[str, Records] | None = None):
        self._data: dict[str, Records] = {
            name: copy.deepcopy(list(records)) for name, records in (initial or {}).items()
        }

    def load(self, collection: str) -> Records:
        return copy.deepcopy(self._data.get(collection, []))

    def save(self, collection: str, records: Records) -> None:
        self._data[collection] = copy.deepcopy(list(records))


class JsonFilePersistence(PersistenceAdapter):
    """One ``<collection>.json`` file per collection under a directory."""

    def __init__(self, directory: str | Path):
        self.directory = Path(directory)

    def _path(self, collection: str) -> Path:
        return self.directory / f"{collection}.json"

    def load(self, collection: str) -> Records:
        path = self._path(collection)
        if not path.exists():
            return []
        try:
            with path.open("r", encoding="utf-8") as fh:
                data = json.load(fh)
        except (OSError, json.JSONDecodeError) as exc:
            raise PersistenceError(
                f"Cannot read collection '{collection}' from {path}: {exc}",
                collection=collection,
            ) from exc
        # Older exports wrap users as {"users": [...]}
        if isinstance(data, dict):
            data = data.get(collection, [])
        return list(data)

    def save(self, collection: str, records: Records) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self._path(collection)
        fd, tmp = tempfile.mkstemp(dir=self.directory, prefix=f".{collection}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(records, fh, indent=2, sort_keys=True)
            os.replace(tmp, path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise


class SqlPersistence(PersistenceAdapter):
    """Stores each collection as one JSON row of ``rbac_collections``."""

    def __init__(self, db: "DatabaseManager"):
        self.db = db

    def load(self, collection: str) -> Records:
        with self.db.get_session() as session:
            row = session.get(CollectionModel, collection)
            return list(row.records) if row is not None else []

    def save(self, collection: str, records: Records) -> None:
        self.save_many({collection: records})

    def save_many(self, collections: Mapping[str, Records]) -> None:
        try:
            with self.db.get_session() as session:
                for name, records in collections.items():
                    row = session.get(CollectionModel, name)
                    if row is None:
                        session.add(CollectionModel(name=name, records=list(records)))
                    else:
                        row.records = list(records)
        except Exception as exc:
            raise PersistenceError(
                f"Failed to save collections {', '.join(collections)}: {exc}",
                collection=next(iter(collections), ""),
            ) from exc


def build_persistence(settings: "RBACSettings") -> PersistenceAdapter:
    """Select a persistence back-end from configuration."""
    if settings.persistence == "memory":
        return MemoryPersistence()
    if settings.persistence == "json":
        return JsonFilePersistence(settings.data_dir)
    if settings.persistence == "sql":
        from rbac_engine.common.database import DatabaseManager

        db = DatabaseManager(settings)
        db.init()
        db.create_all()
        return SqlPersistence(db)
    raise ValueError(f"Unknown persistence back-end: {settings.persistence!r}")
