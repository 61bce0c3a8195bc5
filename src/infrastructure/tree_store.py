"""
Path-addressable tree store on top of async SQLAlchemy.

Every booking, queue entry, driver and chat record lives in one JSON-like
tree addressed by ``/``-separated paths (``bookings/{id}/status``).  The
tree is persisted one row per leaf in ``tree_nodes``.

Operations
----------
* ``read(path)``                    -- value or nested dict; ``None`` if absent
* ``write(path, value)``            -- replace the subtree (``None`` deletes)
* ``update({path: value, ...})``    -- several writes in ONE DB transaction;
                                       readers never observe half of them
* ``compare_and_swap(p, old, new)`` -- single-leaf CAS, one SQL statement
* ``transact(path, fn)``            -- optimistic read / apply / CAS loop
* ``push(path)``                    -- chronological unique child key
* ``subscribe(path)``               -- ``Subscription`` handle (see
                                       ``subscriptions.py``)

The CAS is the only strong-consistency primitive; everything else is
last-write-wins.  Database failures surface as ``StoreError``.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, Mapping, Optional

from sqlalchemy import delete, exists, insert, literal, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .errors import InvalidPath, StoreError
from .models import TreeNodeModel
from .push_ids import PushIdGenerator
from .subscriptions import Subscription, SubscriptionManager

logger = logging.getLogger(__name__)

FORBIDDEN_KEY_CHARS = set(".#$[]")

nodes = TreeNodeModel.__table__

ChangeListener = Callable[[list[str]], Awaitable[None]]


class _Abort:
    def __repr__(self) -> str:
        return "ABORT"


ABORT = _Abort()
"""Returned by a ``transact`` function to give up without writing."""


@dataclass(frozen=True)
class TransactionResult:
    committed: bool
    value: Any


# ── Path & value helpers ──────────────────────────────────────────────


def normalize_path(path: str, allow_root: bool = False) -> str:
    segments = [s for s in path.strip().strip("/").split("/")] if path.strip("/ ") else []
    if not segments:
        if allow_root:
            return ""
        raise InvalidPath("Empty store path")
    for segment in segments:
        if not segment or FORBIDDEN_KEY_CHARS.intersection(segment):
            raise InvalidPath(f"Invalid path segment {segment!r} in {path!r}")
    return "/".join(segments)


def join(*parts: str) -> str:
    """Join single path segments; empty parts are skipped."""
    for part in parts:
        if "/" in part:
            raise InvalidPath(f"Path segment {part!r} must not contain '/'")
    return "/".join(p for p in parts if p)


def ancestors(path: str) -> list[str]:
    parts = path.split("/")
    return ["/".join(parts[:i]) for i in range(1, len(parts))]


def encode(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


def flatten(path: str, value: Any) -> list[tuple[str, str]]:
    """Leaf rows for *value* written at *path*; dicts recurse, ``None`` vanishes."""
    if value is None:
        return []
    if isinstance(value, Mapping):
        rows: list[tuple[str, str]] = []
        for key, child in value.items():
            key = str(key)
            if not key or "/" in key or FORBIDDEN_KEY_CHARS.intersection(key):
                raise InvalidPath(f"Invalid key {key!r} under {path!r}")
            rows.extend(flatten(f"{path}/{key}", child))
        return rows
    return [(path, encode(value))]


def _assemble(path: str, rows: Iterable[tuple[str, str]]) -> Any:
    exact: Any = None
    tree: dict[str, Any] = {}
    prefix = f"{path}/" if path else ""
    for row_path, text in rows:
        if row_path == path:
            exact = json.loads(text)
            continue
        if not row_path.startswith(prefix):
            continue  # case-insensitive LIKE false positive
        parts = row_path[len(prefix):].split("/")
        node = tree
        for part in parts[:-1]:
            child = node.setdefault(part, {})
            if not isinstance(child, dict):
                break
            node = child
        else:
            node[parts[-1]] = json.loads(text)
    if exact is not None:
        return exact
    return _sorted(tree) if tree else None


def _sorted(node: Any) -> Any:
    if isinstance(node, dict):
        return {k: _sorted(node[k]) for k in sorted(node)}
    return node


def _subtree_clause(path: str):
    column = nodes.c.path
    if not path:
        return None
    return or_(column == path, column.startswith(path + "/", autoescape=True))


# ── Store ─────────────────────────────────────────────────────────────


class TreeStore:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        write_retries: int = 3,
        id_generator: Optional[PushIdGenerator] = None,
    ):
        self._session_factory = session_factory
        self._write_retries = max(1, write_retries)
        self._ids = id_generator or PushIdGenerator()
        self._change_listeners: list[ChangeListener] = []
        self.subscriptions = SubscriptionManager(self.read)

    def add_change_listener(self, listener: ChangeListener) -> None:
        """Called with the changed paths after every committed write."""
        self._change_listeners.append(listener)

    # ── reads ────────────────────────────────────────────────────────

    async def read(self, path: str) -> Any:
        p = normalize_path(path, allow_root=True)
        stmt = select(nodes.c.path, nodes.c.value)
        clause = _subtree_clause(p)
        if clause is not None:
            stmt = stmt.where(clause)
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    rows = (await session.execute(stmt)).all()
        except SQLAlchemyError as exc:
            raise StoreError(f"read {p!r} failed: {exc}") from exc
        return _assemble(p, rows)

    async def exists(self, path: str) -> bool:
        return await self.read(path) is not None

    # ── writes ───────────────────────────────────────────────────────

    async def write(self, path: str, value: Any) -> None:
        await self.update({path: value})

    async def remove(self, path: str) -> None:
        await self.update({path: None})

    async def update(self, values: Mapping[str, Any]) -> None:
        """Atomic multi-path write: all paths commit together or none do."""
        normalized = {normalize_path(p): v for p, v in values.items()}
        if not normalized:
            return
        for p in normalized:
            overlap = next((a for a in ancestors(p) if a in normalized), None)
            if overlap is not None:
                raise InvalidPath(f"Overlapping paths in one update: {overlap!r}, {p!r}")

        rows: list[tuple[str, str]] = []
        for p, v in normalized.items():
            rows.extend(flatten(p, v))

        async def apply(session: AsyncSession) -> None:
            doomed: set[str] = set()
            for p in normalized:
                doomed.update(await self._existing_subtree(session, p))
                doomed.update(ancestors(p))
            if doomed:
                await session.execute(
                    delete(nodes).where(nodes.c.path.in_(sorted(doomed)))
                )
            if rows:
                await session.execute(
                    insert(nodes),
                    [{"path": rp, "value": rv} for rp, rv in rows],
                )

        await self._run_write(apply)
        await self._changed(list(normalized))

    async def push(self, path: str) -> str:
        """New child key under *path*; nothing is written."""
        normalize_path(path)
        return self._ids.next_id()

    async def push_value(self, path: str, value: Any) -> str:
        key = await self.push(path)
        await self.write(f"{normalize_path(path)}/{key}", value)
        return key

    # ── compare-and-swap ─────────────────────────────────────────────

    async def compare_and_swap(self, path: str, expected: Any, new: Any) -> bool:
        """
        Set the leaf at *path* to *new* only if it currently equals *expected*
        (``None`` meaning absent).  Returns ``True`` if this call won.
        """
        if isinstance(expected, Mapping) or isinstance(new, Mapping):
            raise ValueError("compare_and_swap only works on leaf values")
        p = normalize_path(path)
        column = nodes.c.path
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    if expected is None:
                        if await self._existing_subtree(session, p):
                            committed = False
                        elif new is None:
                            committed = True
                        else:
                            guard = select(
                                literal(p).label("path"), literal(encode(new)).label("value")
                            ).where(~exists().where(column == p))
                            result = await session.execute(
                                insert(nodes).from_select(["path", "value"], guard)
                            )
                            committed = result.rowcount == 1
                    elif new is None:
                        result = await session.execute(
                            delete(nodes).where(
                                column == p, nodes.c.value == encode(expected)
                            )
                        )
                        committed = result.rowcount == 1
                    else:
                        result = await session.execute(
                            update(nodes)
                            .where(column == p, nodes.c.value == encode(expected))
                            .values(value=encode(new))
                        )
                        committed = result.rowcount == 1
        except IntegrityError:
            # a concurrent insert of the same path won the race
            committed = False
        except SQLAlchemyError as exc:
            raise StoreError(f"compare_and_swap {p!r} failed: {exc}") from exc

        if committed and expected != new:
            await self._changed([p])
        return committed

    async def transact(
        self,
        path: str,
        fn: Callable[[Any], Any],
        max_retries: int = 5,
    ) -> TransactionResult:
        """
        Optimistic transaction on one leaf: read the current value, compute
        ``fn(current)`` and CAS it in.  ``fn`` may return ``ABORT``.  On a
        conflicting concurrent write the loop re-reads and retries.
        """
        for _ in range(max(1, max_retries)):
            current = await self.read(path)
            proposed = fn(current)
            if proposed is ABORT:
                return TransactionResult(False, current)
            if await self.compare_and_swap(path, current, proposed):
                return TransactionResult(True, proposed)
        return TransactionResult(False, await self.read(path))

    # ── subscriptions ────────────────────────────────────────────────

    async def subscribe(self, path: str) -> Subscription:
        return await self.subscriptions.subscribe(normalize_path(path, allow_root=True))

    async def notify_external(self, paths: Iterable[str]) -> None:
        """Deliver changes committed by another process to local subscribers."""
        await self.subscriptions.publish(paths)

    # ── internals ────────────────────────────────────────────────────

    async def _existing_subtree(self, session: AsyncSession, path: str) -> list[str]:
        rows = await session.execute(select(nodes.c.path).where(_subtree_clause(path)))
        prefix = path + "/"
        return [r for (r,) in rows if r == path or r.startswith(prefix)]

    async def _run_write(self, apply: Callable[[AsyncSession], Awaitable[None]]) -> None:
        for attempt in range(1, self._write_retries + 1):
            try:
                async with self._session_factory() as session:
                    async with session.begin():
                        await apply(session)
                return
            except IntegrityError as exc:
                # two writers replaced the same subtree at once; last one retries
                if attempt == self._write_retries:
                    raise StoreError(f"write conflict persisted: {exc}") from exc
                logger.debug("Write conflict, retrying (%d)", attempt)
            except SQLAlchemyError as exc:
                raise StoreError(f"write failed: {exc}") from exc

    async def _changed(self, paths: list[str]) -> None:
        await self.subscriptions.publish(paths)
        for listener in self._change_listeners:
            try:
                await listener(paths)
            except Exception:
                logger.exception("Change listener failed for %s", paths)
