"""Persistence collaborator: a key -> JSON-document store plus a unit of work.

The core reads and writes whole collections keyed by entity type. Every
mutating operation runs inside ``store.transaction()``, which serializes
writers on the store lock, caches decoded collections for the duration of
the block, and writes every touched collection in one batch on clean exit.
An exception inside the block discards all staged changes.
"""
from __future__ import annotations

import os
import re
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Generator, Protocol

from pydantic import BaseModel, TypeAdapter
from sqlalchemy import Engine, create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from karma.models import (
    Agreement,
    AgentAction,
    App,
    AuditLogEntry,
    Base,
    Contributor,
    Document,
    Evaluation,
    QuestionnaireResponse,
)

DB_NAME_RE = re.compile(r"^[a-zA-Z0-9_-]+$")

DATA_DIR = Path(__file__).parent / "data"

CONTRIBUTORS = "contributors"
AGREEMENTS = "agreements"
EVALUATIONS = "evaluations"
QUESTIONNAIRES = "questionnaires"
APPS = "apps"
AGENT_ACTIONS = "agent_actions"
AUDIT_LOG = "audit_log"

COLLECTIONS: dict[str, type[BaseModel]] = {
    CONTRIBUTORS: Contributor,
    AGREEMENTS: Agreement,
    EVALUATIONS: Evaluation,
    QUESTIONNAIRES: QuestionnaireResponse,
    APPS: App,
    AGENT_ACTIONS: AgentAction,
    AUDIT_LOG: AuditLogEntry,
}

_ADAPTERS: dict[str, TypeAdapter] = {key: TypeAdapter(list[model]) for key, model in COLLECTIONS.items()}


def validate_db_name(name: str) -> str:
    """Strip and validate a database name. Raises ValueError if invalid."""
    name = name.strip()
    if not name or not DB_NAME_RE.match(name):
        raise ValueError("Invalid database name (letters, numbers, hyphens, underscores only)")
    return name


def database_path(name: str | None = None) -> Path:
    """Resolve the SQLite file to open.

    An explicit *name* maps to ``DATA_DIR/<name>.db``; otherwise
    ``KARMA_DB_PATH`` wins, then ``DATA_DIR/karma.db``.
    """
    if name is not None:
        return DATA_DIR / f"{validate_db_name(name)}.db"
    env = os.environ.get("KARMA_DB_PATH")
    if env:
        return Path(env)
    return DATA_DIR / "karma.db"


def encode_collection(key: str, items: list[Any]) -> bytes:
    return _ADAPTERS[key].dump_json(items)


def decode_collection(key: str, payload: bytes | None) -> list[Any]:
    if not payload:
        return []
    return _ADAPTERS[key].validate_json(payload)


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------


class DocumentStore(Protocol):
    def get(self, key: str) -> bytes | None: ...

    def put(self, key: str, value: bytes) -> None: ...


class Transaction:
    """Unit of work over one store. Collections are decoded once and written back together."""

    def __init__(self, store: BaseStore):
        self._store = store
        self._loaded: dict[str, list[Any]] = {}
        self._dirty: set[str] = set()

    def raw(self, key: str) -> bytes | None:
        return self._store.get(key)

    def load(self, key: str) -> list[Any]:
        if key not in self._loaded:
            self._loaded[key] = decode_collection(key, self._store.get(key))
        return self._loaded[key]

    def find(self, key: str, entity_id: str) -> Any | None:
        return next((item for item in self.load(key) if item.id == entity_id), None)

    def save(self, key: str, items: list[Any] | None = None) -> None:
        """Mark a collection for write-back, optionally replacing its contents."""
        if items is not None:
            self._loaded[key] = items
        else:
            self.load(key)
        self._dirty.add(key)

    def commit(self) -> None:
        if not self._dirty:
            return
        payloads = {key: encode_collection(key, self._loaded[key]) for key in sorted(self._dirty)}
        self._store.put_many(payloads)
        self._dirty.clear()


class BaseStore:
    """Shared transaction machinery; subclasses provide ``get`` and ``put_many``."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._active: Transaction | None = None

    def get(self, key: str) -> bytes | None:
        raise NotImplementedError

    def put_many(self, items: dict[str, bytes]) -> None:
        raise NotImplementedError

    def put(self, key: str, value: bytes) -> None:
        self.put_many({key: value})

    @contextmanager
    def transaction(self) -> Generator[Transaction, None, None]:
        with self._lock:
            # Re-entrant calls on the owning thread join the open unit of work.
            if self._active is not None:
                yield self._active
                return
            tx = Transaction(self)
            self._active = tx
            try:
                yield tx
                tx.commit()
            finally:
                self._active = None


class MemoryStore(BaseStore):
    def __init__(self, initial: dict[str, bytes] | None = None):
        super().__init__()
        self._data: dict[str, bytes] = dict(initial or {})

    def get(self, key: str) -> bytes | None:
        return self._data.get(key)

    def put_many(self, items: dict[str, bytes]) -> None:
        with self._lock:
            self._data.update(items)

    def snapshot(self) -> dict[str, bytes]:
        return dict(self._data)


class SqlStore(BaseStore):
    """Document store on SQLAlchemy; one ``documents`` row per collection."""

    def __init__(self, engine: Engine):
        super().__init__()
        self.engine = engine
        Base.metadata.create_all(engine)
        self._SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    @classmethod
    def open(cls, db_path: str | Path | None = None) -> SqlStore:
        path = Path(db_path) if db_path is not None else database_path()
        path.parent.mkdir(parents=True, exist_ok=True)
        engine = create_engine(f"sqlite:///{path}", connect_args={"check_same_thread": False})
        return cls(engine)

    @classmethod
    def in_memory(cls) -> SqlStore:
        engine = create_engine(
            "sqlite:///:memory:",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        return cls(engine)

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        session = self._SessionLocal()
        try:
            yield session
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def get(self, key: str) -> bytes | None:
        with self.session_scope() as session:
            doc = session.get(Document, key)
            return doc.payload if doc is not None else None

    def put_many(self, items: dict[str, bytes]) -> None:
        with self._lock, self.session_scope() as session:
            with session.begin():
                for key, payload in items.items():
                    session.merge(Document(key=key, payload=payload))

    def keys(self) -> list[str]:
        with self.session_scope() as session:
            return sorted(session.scalars(select(Document.key)))

    def dispose(self) -> None:
        self.engine.dispose()
