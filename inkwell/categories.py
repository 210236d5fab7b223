"""
Nested categories.

* ``CategoryStore``   – query primitives over the ``category`` table
* ``CategoryService`` – the action dispatcher behind ``POST /api/categories``
* ``materialize``     – flat rows → nested forest for the templates

Every sibling group (same ``parent_id``, NULL included) keeps its ``ord``
values at exactly ``1..N``.  The store does not enforce that; the service
does, one transaction per action.
"""
from __future__ import annotations

import logging
import sqlite3
from collections import defaultdict
from contextlib import contextmanager
from typing import Any, Iterable, Iterator, Mapping

from inkwell.messages import EN, SUCCESS

logger = logging.getLogger(__name__)

DEFAULT_NAME = "Untitled"
# sqlite INTEGER is a signed 64-bit value
MAX_ID = 2**63 - 1


################################################################################
# Errors
################################################################################
class CategoryError(Exception):
    """Base class; ``status`` is the HTTP status the API answers with."""

    status = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidInput(CategoryError):
    status = 400


class NotFound(CategoryError):
    status = 404


class InvalidOperation(CategoryError):
    status = 400


class InternalError(CategoryError):
    status = 500


################################################################################
# Store
################################################################################
class CategoryStore:
    """
    Thin query layer over ``category``.  Rows come back as ``sqlite3.Row``
    with the position exposed as ``order``.
    """

    SELECT = 'SELECT id, name, parent_id, ord AS "order" FROM category'

    def __init__(self, db: sqlite3.Connection):
        self.db = db

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Run the block inside ``BEGIN IMMEDIATE`` … ``COMMIT``.

        The write lock is taken up front, so two requests touching the same
        sibling group cannot interleave their read-modify-write of ``ord``.
        Inside an already open transaction the block simply joins it.
        """
        if self.db.in_transaction:
            yield self.db
            return
        self.db.execute("BEGIN IMMEDIATE")
        try:
            yield self.db
        except BaseException:
            self.db.rollback()
            raise
        self.db.commit()

    # ── reads ────────────────────────────────────────────────────────────
    def get(self, cat_id: int) -> sqlite3.Row | None:
        return self.db.execute(f"{self.SELECT} WHERE id=?", (cat_id,)).fetchone()

    def all(self) -> list[sqlite3.Row]:
        return self.db.execute(
            f"{self.SELECT} ORDER BY parent_id IS NOT NULL, parent_id, ord, id"
        ).fetchall()

    def children(self, parent_id: int | None) -> list[sqlite3.Row]:
        return self.db.execute(
            f"{self.SELECT} WHERE parent_id IS ? ORDER BY ord, id", (parent_id,)
        ).fetchall()

    def at(self, parent_id: int | None, order: int) -> sqlite3.Row | None:
        """The sibling sitting at *order* inside *parent_id*'s group."""
        return self.db.execute(
            f"{self.SELECT} WHERE parent_id IS ? AND ord=? LIMIT 1",
            (parent_id, order),
        ).fetchone()

    def last(self, parent_id: int | None) -> sqlite3.Row | None:
        return self.db.execute(
            f"{self.SELECT} WHERE parent_id IS ? ORDER BY ord DESC LIMIT 1",
            (parent_id,),
        ).fetchone()

    def max_order(self, parent_id: int | None) -> int:
        row = self.last(parent_id)
        return row["order"] if row else 0

    def subtree(self, root_id: int) -> list[sqlite3.Row]:
        """
        ``(id, parent_id)`` for *root_id* and all its descendants, in one
        query.  ``UNION`` (not ``UNION ALL``) so a corrupt cycle terminates.
        """
        return self.db.execute(
            """
            WITH RECURSIVE sub(id, parent_id) AS (
                SELECT id, parent_id FROM category WHERE id = ?
                UNION
                SELECT c.id, c.parent_id
                  FROM category c
                  JOIN sub ON c.parent_id = sub.id
            )
            SELECT id, parent_id FROM sub
            """,
            (root_id,),
        ).fetchall()

    # ── writes ───────────────────────────────────────────────────────────
    def create(self, *, name: str, parent_id: int | None, order: int) -> int:
        cur = self.db.execute(
            "INSERT INTO category (name, parent_id, ord) VALUES (?,?,?)",
            (name, parent_id, order),
        )
        return cur.lastrowid

    def rename(self, cat_id: int, name: str) -> None:
        self.db.execute("UPDATE category SET name=? WHERE id=?", (name, cat_id))

    def set_order(self, cat_id: int, order: int) -> None:
        self.db.execute("UPDATE category SET ord=? WHERE id=?", (order, cat_id))

    def shift(self, parent_id: int | None, *, start: int, by: int) -> int:
        """Add *by* to every sibling whose ``ord >= start``; returns the count."""
        cur = self.db.execute(
            "UPDATE category SET ord = ord + ? WHERE parent_id IS ? AND ord >= ?",
            (by, parent_id, start),
        )
        return cur.rowcount

    def delete(self, cat_id: int) -> None:
        self.db.execute("DELETE FROM category WHERE id=?", (cat_id,))


################################################################################
# Service
################################################################################
class CategoryService:
    """
    Validates and applies the category editor's actions.

    ``messages`` is a locale dictionary (see ``inkwell.messages``); only the
    ``categories.*`` keys are used.
    """

    def __init__(self, store: CategoryStore, messages: Mapping[str, str] | None = None):
        self.store = store
        self.messages = messages or EN
        # wire name used by the editor, plus the long spelling
        self._handlers = {
            "input": self.rename,
            "rename": self.rename,
            "addFirst": self.add_first,
            "add": self.add_after,
            "addAfter": self.add_after,
            "addNested": self.add_nested,
            "delete": self.delete,
            "up": self.move_up,
            "moveUp": self.move_up,
            "down": self.move_down,
            "moveDown": self.move_down,
        }

    def _t(self, key: str) -> str:
        return self.messages.get(key) or EN.get(key, key)

    def apply_action(
        self, action: str | None, payload: Mapping[str, Any] | None = None
    ) -> tuple[dict, int]:
        """
        Run one action and return ``(body, status)``.

        Validation failures come back as ``({"message": …}, 400|404)``.
        A database failure is re-raised as ``InternalError``.
        """
        if payload is None:
            payload = {}
        if not action or not isinstance(payload, Mapping):
            return {"message": self._t("categories.invalidData")}, 400
        handler = self._handlers.get(action) if isinstance(action, str) else None
        if handler is None:
            return {"message": self._t("categories.unknownAction")}, 400

        try:
            with self.store.transaction():
                new_id = handler(payload)
        except (InvalidInput, NotFound, InvalidOperation) as exc:
            logger.info("category action %r rejected: %s", action, exc.message)
            return {"message": exc.message}, exc.status
        except sqlite3.Error as exc:
            logger.exception("category action %r failed", action)
            raise InternalError(self._t("messages.somethingWentWrong")) from exc

        body: dict[str, Any] = {"message": SUCCESS}
        if new_id is not None:
            body["newId"] = new_id
        return body, 200

    # ── helpers ──────────────────────────────────────────────────────────
    def _lookup(
        self,
        payload: Mapping[str, Any],
        field: str,
        *,
        missing: str,
        not_found: str = "categories.notFound",
    ) -> sqlite3.Row:
        raw = payload.get(field)
        if raw is None or raw == "" or isinstance(raw, bool):
            raise InvalidInput(self._t(missing))
        if not isinstance(raw, (int, str)):
            raise InvalidInput(self._t(missing))
        try:
            cat_id = int(raw)
        except ValueError:
            # ids are opaque; an unparsable one simply matches nothing
            raise NotFound(self._t(not_found)) from None
        if not -MAX_ID - 1 <= cat_id <= MAX_ID:
            raise NotFound(self._t(not_found))
        row = self.store.get(cat_id)
        if row is None:
            raise NotFound(self._t(not_found))
        return row

    def _swap(self, a: sqlite3.Row, b: sqlite3.Row) -> None:
        self.store.set_order(a["id"], b["order"])
        self.store.set_order(b["id"], a["order"])

    # ── actions ──────────────────────────────────────────────────────────
    def rename(self, payload: Mapping[str, Any]) -> None:
        value = payload.get("value")
        if not isinstance(value, str):
            raise InvalidInput(self._t("categories.invalidRenameData"))
        row = self._lookup(payload, "id", missing="categories.invalidRenameData")
        if row["name"] != value:
            self.store.rename(row["id"], value)

    def add_first(self, payload: Mapping[str, Any]) -> int:
        # appended at the tail of the root group, whatever the name suggests
        order = self.store.max_order(None) + 1
        return self.store.create(name=DEFAULT_NAME, parent_id=None, order=order)

    def add_after(self, payload: Mapping[str, Any]) -> int:
        ref = self._lookup(payload, "after", missing="categories.missingAfterId")
        parent_id, order = ref["parent_id"], ref["order"] + 1
        self.store.shift(parent_id, start=order, by=1)
        return self.store.create(name=DEFAULT_NAME, parent_id=parent_id, order=order)

    def add_nested(self, payload: Mapping[str, Any]) -> int:
        parent = self._lookup(
            payload,
            "nested",
            missing="categories.missingParentId",
            not_found="categories.parentNotFound",
        )
        order = self.store.max_order(parent["id"]) + 1
        return self.store.create(name=DEFAULT_NAME, parent_id=parent["id"], order=order)

    def delete(self, payload: Mapping[str, Any]) -> None:
        row = self._lookup(payload, "id", missing="categories.missingDeleteId")
        removed = self._delete_subtree(row["id"])
        self.store.shift(row["parent_id"], start=row["order"] + 1, by=-1)
        logger.debug("deleted category %s with %d descendant(s)", row["id"], removed - 1)

    def _delete_subtree(self, root_id: int) -> int:
        """Delete *root_id* and its descendants, leaves first."""
        children: defaultdict[int, list[int]] = defaultdict(list)
        for row in self.store.subtree(root_id):
            if row["id"] != root_id:
                children[row["parent_id"]].append(row["id"])

        doomed: list[int] = []
        seen: set[int] = set()
        stack = [(root_id, False)]
        while stack:
            cat_id, expanded = stack.pop()
            if expanded:
                doomed.append(cat_id)
                continue
            if cat_id in seen:
                continue
            seen.add(cat_id)
            stack.append((cat_id, True))
            stack.extend((child, False) for child in children.get(cat_id, ()))

        for cat_id in doomed:
            self.store.delete(cat_id)
        return len(doomed)

    def move_up(self, payload: Mapping[str, Any]) -> None:
        row = self._lookup(payload, "id", missing="categories.missingUpId")
        if row["order"] == 1:
            raise InvalidOperation(self._t("categories.alreadyAtTop"))
        prev = self.store.at(row["parent_id"], row["order"] - 1)
        if prev is None:
            raise NotFound(self._t("categories.previousNotFound"))
        self._swap(row, prev)

    def move_down(self, payload: Mapping[str, Any]) -> None:
        row = self._lookup(payload, "id", missing="categories.missingDownId")
        last = self.store.last(row["parent_id"])
        if last is None:
            raise InvalidOperation(self._t("categories.nothingToMove"))
        if row["order"] == last["order"]:
            raise InvalidOperation(self._t("categories.alreadyAtBottom"))
        nxt = self.store.at(row["parent_id"], row["order"] + 1)
        if nxt is None:
            raise NotFound(self._t("categories.nextNotFound"))
        self._swap(row, nxt)


################################################################################
# Materializer
################################################################################
def _key(value: Any) -> str | None:
    return None if value is None else str(value)


def materialize(categories: Iterable[Mapping[str, Any]]) -> list[dict]:
    """
    Turn flat category rows into a forest of
    ``{"id", "name", "order", "parent_id", "children"}`` dicts.

    Siblings are sorted by ``order``.  A row whose parent is not in the
    input becomes an extra root instead of raising.
    """
    rows = list(categories)
    known = {_key(row["id"]) for row in rows}
    groups: defaultdict[str | None, list] = defaultdict(list)
    for row in rows:
        parent = _key(row["parent_id"])
        groups[parent if parent in known else None].append(row)

    def build(parent: str | None) -> list[dict]:
        siblings = sorted(groups.get(parent, ()), key=lambda r: (r["order"], str(r["id"])))
        return [
            {
                "id": row["id"],
                "name": row["name"],
                "order": row["order"],
                "parent_id": row["parent_id"],
                "children": build(_key(row["id"])),
            }
            for row in siblings
        ]

    return build(None)


def flatten(tree: Iterable[dict], depth: int = 0) -> Iterator[tuple[dict, int]]:
    """Depth-first ``(node, depth)`` pairs, e.g. for an indented <select>."""
    for node in tree:
        yield node, depth
        yield from flatten(node["children"], depth + 1)
