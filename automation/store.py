"""Hierarchical key-value state store.

Paths are ``/``-separated (``schedules-v2/mode``). Nested mappings are stored
as flattened leaves, so a value written at ``a`` as ``{"b": 1, "c": {"d": 2}}``
can be read back whole from ``a`` or piecewise from ``a/b`` and ``a/c/d``.
Writing ``None`` (or an empty mapping) removes the node, and ``update`` with a
``None`` child removes that child, as in the Firebase realtime database.
"""

from __future__ import annotations

import threading
from typing import Any, Dict, Iterator, Optional, Tuple

from sqlalchemy import delete, insert, select

from models import StateEntry, db


def normalize_path(path: str) -> str:
    return "/".join(part for part in str(path).split("/") if part)


def _ancestors(path: str) -> Iterator[str]:
    parts = path.split("/")
    for i in range(1, len(parts)):
        yield "/".join(parts[:i])


def _flatten(path: str, value: Any) -> Iterator[Tuple[str, Any]]:
    if isinstance(value, dict):
        for key, child in value.items():
            child_path = normalize_path(f"{path}/{key}")
            yield from _flatten(child_path, child)
    elif value is not None:
        yield path, value


def _unflatten(leaves: Dict[str, Any]) -> Dict[str, Any]:
    tree: Dict[str, Any] = {}
    for rel_path, value in leaves.items():
        node = tree
        parts = rel_path.split("/")
        for part in parts[:-1]:
            node = node.setdefault(part, {})
        node[parts[-1]] = value
    return tree


class BaseStateStore:
    """get/set/update/delete over a backend of flattened leaves.

    Subclasses implement the five leaf primitives.
    """

    def _read_leaf(self, path: str) -> Tuple[bool, Any]:
        raise NotImplementedError

    def _read_under(self, prefix: str) -> Dict[str, Any]:
        """Return {relative_path: value} for every leaf strictly below prefix."""
        raise NotImplementedError

    def _write_leaf(self, path: str, value: Any) -> None:
        raise NotImplementedError

    def _drop_leaf(self, path: str) -> None:
        raise NotImplementedError

    def _drop_under(self, prefix: str) -> None:
        raise NotImplementedError

    def _commit(self) -> None:
        pass

    def get(self, path: str, default: Any = None) -> Any:
        path = normalize_path(path)
        found, value = self._read_leaf(path)
        if found:
            return value
        leaves = self._read_under(path)
        if not leaves:
            return default
        return _unflatten(leaves)

    def set(self, path: str, value: Any) -> None:
        path = normalize_path(path)
        self._replace(path, value)
        self._commit()

    def update(self, path: str, values: Dict[str, Any]) -> None:
        path = normalize_path(path)
        for key, value in values.items():
            self._replace(normalize_path(f"{path}/{key}"), value)
        self._commit()

    def delete(self, path: str) -> None:
        self.set(path, None)

    def _replace(self, path: str, value: Any) -> None:
        # a scalar stored at an ancestor would shadow the new subtree
        for ancestor in _ancestors(path):
            self._drop_leaf(ancestor)
        self._drop_leaf(path)
        self._drop_under(path)
        for leaf_path, leaf_value in _flatten(path, value):
            self._write_leaf(leaf_path, leaf_value)


class MemoryStateStore(BaseStateStore):
    """In-process backend, used by the sandbox configuration and tests."""

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._leaves: Dict[str, Any] = {}
        self._lock = threading.RLock()
        if initial:
            for key, value in initial.items():
                self.set(key, value)

    def set(self, path, value):
        with self._lock:
            super().set(path, value)

    def update(self, path, values):
        with self._lock:
            super().update(path, values)

    def _read_leaf(self, path):
        with self._lock:
            if path in self._leaves:
                return True, self._leaves[path]
            return False, None

    def _read_under(self, prefix):
        with self._lock:
            if not prefix:
                return dict(self._leaves)
            start = prefix + "/"
            return {k[len(start):]: v for k, v in self._leaves.items() if k.startswith(start)}

    def _write_leaf(self, path, value):
        with self._lock:
            self._leaves[path] = value

    def _drop_leaf(self, path):
        with self._lock:
            self._leaves.pop(path, None)

    def _drop_under(self, prefix):
        with self._lock:
            if not prefix:
                self._leaves.clear()
                return
            start = prefix + "/"
            for key in [k for k in self._leaves if k.startswith(start)]:
                del self._leaves[key]


class SqlStateStore(BaseStateStore):
    """Flask-SQLAlchemy backend; one StateEntry row per leaf.

    Uses Core statements so bulk deletes never leave stale rows in the
    session identity map. Must be used inside an application context.
    """

    @staticmethod
    def _below(prefix):
        return StateEntry.path.startswith(prefix + "/", autoescape=True)

    def _read_leaf(self, path):
        row = db.session.execute(
            select(StateEntry.value).where(StateEntry.path == path)
        ).first()
        if row is None:
            return False, None
        return True, row.value

    def _read_under(self, prefix):
        stmt = select(StateEntry.path, StateEntry.value)
        if prefix:
            stmt = stmt.where(self._below(prefix))
        offset = len(prefix) + 1 if prefix else 0
        return {row.path[offset:]: row.value for row in db.session.execute(stmt)}

    def _write_leaf(self, path, value):
        db.session.execute(insert(StateEntry).values(path=path, value=value))

    def _drop_leaf(self, path):
        db.session.execute(delete(StateEntry).where(StateEntry.path == path))

    def _drop_under(self, prefix):
        stmt = delete(StateEntry)
        if prefix:
            stmt = stmt.where(self._below(prefix))
        db.session.execute(stmt)

    def _commit(self):
        try:
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
