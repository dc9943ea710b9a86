"""Unit of work abstractions for assignment batches."""

import logging
from contextlib import AbstractContextManager
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from pymongo import MongoClient
from pymongo.collection import Collection
from pymongo.database import Database
from pymongo.errors import PyMongoError

from config import Settings

logger = logging.getLogger(__name__)


class UnitOfWorkError(RuntimeError):
    """Wraps unexpected transactional errors."""


class UnitOfWork(AbstractContextManager):
    """Abstract unit-of-work contract.

    Stores call the ``remember_*`` hooks before every write and pass
    ``session_options()`` to every pymongo call.
    """

    session = None

    def session_options(self) -> Dict[str, Any]:
        if self.session is None:
            return {}
        return {"session": self.session}

    def remember_update(self, collection: Collection, doc_id: Any, fields: Iterable[str]) -> None:
        pass

    def remember_insert(self, collection: Collection, doc_id: Any) -> None:
        pass

    def remember_delete(self, collection: Collection, document: Dict[str, Any]) -> None:
        pass

    def commit(self) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    def rollback(self) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    def close(self) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    def __exit__(self, exc_type, exc, tb) -> bool:
        try:
            if exc:
                logger.warning("Rolling back %s after %s: %s", type(self).__name__, exc_type.__name__, exc)
                self.rollback()
            elif not getattr(self, "_skip_commit", False):
                self.commit()
        finally:
            self.close()
        return False


class MongoUnitOfWork(UnitOfWork):
    """Multi-document transaction on a client session. Needs a replica set or mongos."""

    def __init__(self, client: MongoClient):
        self.session = client.start_session()
        self._skip_commit = False
        try:
            self.session.start_transaction()
        except PyMongoError:
            self.session.end_session()
            raise

    def commit(self) -> None:
        try:
            self.session.commit_transaction()
        except PyMongoError as exc:
            raise UnitOfWorkError("COMMIT_FAILED") from exc

    def rollback(self) -> None:
        self._skip_commit = True
        if self.session.in_transaction:
            self.session.abort_transaction()

    def close(self) -> None:
        self.session.end_session()


class CompensatingUnitOfWork(UnitOfWork):
    """Undo journal for deployments without transactions.

    The first write to a document snapshots the fields about to change;
    rollback replays the journal backwards, restoring snapshots, deleting
    inserted documents and re-inserting deleted ones.
    """

    def __init__(self):
        self._undo: List[Tuple[str, Callable[[], None]]] = []
        self._snapshotted: Set[Tuple[str, Any]] = set()
        self._skip_commit = False

    def remember_update(self, collection: Collection, doc_id: Any, fields: Iterable[str]) -> None:
        key = (collection.full_name, doc_id)
        if key in self._snapshotted:
            return
        fields = tuple(fields)
        original = collection.find_one({"_id": doc_id}, {f: 1 for f in fields})
        if original is None:
            return
        self._snapshotted.add(key)
        restore = {f: original[f] for f in fields if f in original}
        missing = {f: "" for f in fields if f not in original}

        def undo() -> None:
            update: Dict[str, Any] = {}
            if restore:
                update["$set"] = restore
            if missing:
                update["$unset"] = missing
            if update:
                collection.update_one({"_id": doc_id}, update)

        self._undo.append((f"restore {collection.name}/{doc_id}", undo))

    def remember_insert(self, collection: Collection, doc_id: Any) -> None:
        self._undo.append(
            (f"delete {collection.name}/{doc_id}", lambda: collection.delete_one({"_id": doc_id}))
        )

    def remember_delete(self, collection: Collection, document: Dict[str, Any]) -> None:
        snapshot = dict(document)
        self._undo.append(
            (f"reinsert {collection.name}/{snapshot.get('_id')}", lambda: collection.insert_one(snapshot))
        )

    def commit(self) -> None:
        self._undo.clear()
        self._snapshotted.clear()

    def rollback(self) -> None:
        self._skip_commit = True
        failed: Optional[str] = None
        while self._undo:
            label, undo = self._undo.pop()
            try:
                undo()
            except PyMongoError:
                logger.exception("Compensation step failed: %s", label)
                failed = failed or label
        self._snapshotted.clear()
        if failed is not None:
            raise UnitOfWorkError(f"ROLLBACK_FAILED: {failed}")

    def close(self) -> None:
        pass


def start_unit_of_work(database: Database, settings: Settings) -> UnitOfWork:
    """Return a ready-to-use unit of work for the configured deployment."""
    if settings.use_transactions:
        return MongoUnitOfWork(database.client)
    return CompensatingUnitOfWork()
