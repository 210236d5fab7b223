"""
tests/test_categories.py
"""
from __future__ import annotations

import random
import sqlite3
from collections import defaultdict

import pytest

from inkwell.categories import CategoryService, InternalError
from inkwell.messages import SK


# ───────────────────────── helpers ────────────────────────────────────
def _add(service, action: str, **payload) -> int:
    body, status = service.apply_action(action, payload)
    assert status == 200, body
    assert body["message"] == "Success"
    return body["newId"]


def _ok(service, action: str, **payload) -> None:
    body, status = service.apply_action(action, payload)
    assert (body, status) == ({"message": "Success"}, 200)


def _named(service, action: str, name: str, **payload) -> int:
    cid = _add(service, action, **payload)
    _ok(service, "input", id=cid, value=name)
    return cid


def _names(store, parent_id=None) -> list[str]:
    return [r["name"] for r in store.children(parent_id)]


def _assert_contiguous(store) -> None:
    groups = defaultdict(list)
    for row in store.all():
        groups[row["parent_id"]].append(row["order"])
    for parent, orders in groups.items():
        assert sorted(orders) == list(range(1, len(orders) + 1)), parent


def _abc(service) -> tuple[int, int, int]:
    return tuple(_named(service, "addFirst", n) for n in "ABC")


# ───────────────────────── creation ───────────────────────────────────
def test_add_first_on_empty_store(service, store):
    cid = _add(service, "addFirst")
    row = store.get(cid)
    assert row["name"] == "Untitled"
    assert row["parent_id"] is None
    assert row["order"] == 1


def test_add_first_appends_to_the_tail(service, store):
    _abc(service)
    assert _names(store) == ["A", "B", "C"]
    assert [r["order"] for r in store.children(None)] == [1, 2, 3]


def test_add_after_shifts_the_tail(service, store):
    a, b, c = _abc(service)
    new = _add(service, "add", after=a)

    assert store.get(new)["order"] == 2
    assert [store.get(x)["order"] for x in (a, b, c)] == [1, 3, 4]
    assert _names(store) == ["A", "Untitled", "B", "C"]
    _assert_contiguous(store)


def test_add_after_last_item(service, store):
    a, b, c = _abc(service)
    new = _add(service, "add", after=c)
    assert store.get(new)["order"] == 4


def test_add_after_inside_a_nested_group(service, store):
    parent = _named(service, "addFirst", "P")
    x = _named(service, "addNested", "x", nested=parent)
    _named(service, "addNested", "y", nested=parent)
    new = _add(service, "add", after=x)

    assert store.get(new)["parent_id"] == parent
    assert _names(store, parent) == ["x", "Untitled", "y"]
    assert _names(store) == ["P"]


def test_add_nested_appends_children(service, store):
    parent = _add(service, "addFirst")
    first = _add(service, "addNested", nested=parent)
    second = _add(service, "addNested", nested=parent)

    assert store.get(first)["parent_id"] == parent
    assert [store.get(x)["order"] for x in (first, second)] == [1, 2]


def test_long_action_names_are_accepted(service, store):
    a = _add(service, "addFirst")
    b = _add(service, "addAfter", after=a)
    _ok(service, "moveUp", id=b)
    _ok(service, "moveDown", id=b)
    _ok(service, "rename", id=b, value="B")
    assert _names(store) == ["Untitled", "B"]


def test_string_ids_are_accepted(service, store):
    a = _add(service, "addFirst")
    child = _add(service, "addNested", nested=str(a))
    assert store.get(child)["parent_id"] == a


# ───────────────────────── rename ─────────────────────────────────────
def test_rename_is_idempotent(service, store):
    a, b, c = _abc(service)
    before = [tuple(r) for r in store.all()]
    _ok(service, "input", id=b, value="B")
    _ok(service, "input", id=b, value="B")
    assert [tuple(r) for r in store.all()] == before


def test_rename_to_empty_string(service, store):
    a = _add(service, "addFirst")
    _ok(service, "input", id=a, value="")
    assert store.get(a)["name"] == ""


@pytest.mark.parametrize("payload", [{}, {"value": "x"}, {"id": 1}, {"id": 1, "value": 5}])
def test_rename_rejects_incomplete_payload(service, payload):
    _add(service, "addFirst")
    body, status = service.apply_action("input", payload)
    assert status == 400
    assert body == {"message": "Invalid data for rename."}


# ───────────────────────── delete ─────────────────────────────────────
def test_delete_renumbers_following_siblings(service, store):
    a, b, c = _abc(service)
    d = _named(service, "addFirst", "D")
    _ok(service, "delete", id=b)

    assert store.get(b) is None
    assert _names(store) == ["A", "C", "D"]
    assert [store.get(x)["order"] for x in (a, c, d)] == [1, 2, 3]


def test_delete_removes_three_levels(service, store):
    root = _named(service, "addFirst", "root")
    keep = _named(service, "addFirst", "keep")
    mid1 = _add(service, "addNested", nested=root)
    mid2 = _add(service, "addNested", nested=root)
    leaf1 = _add(service, "addNested", nested=mid1)
    leaf2 = _add(service, "addNested", nested=mid1)
    leaf3 = _add(service, "addNested", nested=mid2)

    _ok(service, "delete", id=root)

    for gone in (root, mid1, mid2, leaf1, leaf2, leaf3):
        assert store.get(gone) is None
    assert [r["id"] for r in store.all()] == [keep]
    assert store.get(keep)["order"] == 1


def test_delete_of_a_leaf_keeps_its_parent(service, store):
    parent = _add(service, "addFirst")
    a = _add(service, "addNested", nested=parent)
    b = _add(service, "addNested", nested=parent)
    _ok(service, "delete", id=a)

    assert store.get(parent) is not None
    assert store.get(b)["order"] == 1


def test_delete_detaches_posts(service, store, db):
    cid = _add(service, "addFirst")
    db.execute(
        "INSERT INTO user (email, name, password_hash, created_at, updated_at) "
        "VALUES ('a@b.c', 'a', 'x', '', '')"
    )
    db.execute(
        "INSERT INTO post (author_id, title, body, slug, created_at, updated_at) "
        "VALUES (1, 't', 'b', 't', '', '')"
    )
    db.execute("INSERT INTO post_category VALUES (1, ?)", (cid,))
    db.commit()

    _ok(service, "delete", id=cid)
    assert db.execute("SELECT COUNT(*) FROM post_category").fetchone()[0] == 0
    assert db.execute("SELECT COUNT(*) FROM post").fetchone()[0] == 1


# ───────────────────────── move ───────────────────────────────────────
def test_move_up_swaps_with_previous(service, store):
    a, b, c = _abc(service)
    _ok(service, "up", id=c)
    assert _names(store) == ["A", "C", "B"]
    _assert_contiguous(store)


def test_move_down_swaps_with_next(service, store):
    a, b, c = _abc(service)
    _ok(service, "down", id=a)
    assert _names(store) == ["B", "A", "C"]


def test_move_down_then_up_restores_order(service, store):
    a, b, c = _abc(service)
    before = [tuple(r) for r in store.all()]
    _ok(service, "down", id=b)
    _ok(service, "up", id=b)
    assert [tuple(r) for r in store.all()] == before


def test_move_only_touches_its_group(service, store):
    p = _named(service, "addFirst", "P")
    q = _named(service, "addFirst", "Q")
    _named(service, "addNested", "x", nested=p)
    y = _named(service, "addNested", "y", nested=p)
    _ok(service, "up", id=y)

    assert _names(store, p) == ["y", "x"]
    assert [store.get(x)["order"] for x in (p, q)] == [1, 2]


def test_move_up_first_is_rejected(service, store):
    a, b, c = _abc(service)
    body, status = service.apply_action("up", {"id": a})
    assert status == 400
    assert body == {"message": "Category is already at the top of the list."}
    assert _names(store) == ["A", "B", "C"]


def test_move_down_last_is_rejected(service, store):
    a, b, c = _abc(service)
    body, status = service.apply_action("down", {"id": c})
    assert status == 400
    assert body == {"message": "Category is already at the bottom of the list."}


def test_single_child_cannot_move(service):
    a = _add(service, "addFirst")
    assert service.apply_action("up", {"id": a})[1] == 400
    assert service.apply_action("down", {"id": a})[1] == 400


def test_missing_neighbour_is_not_found(service, store, db):
    a, b, c = _abc(service)
    # corrupt the group: orders 1, 3 with nothing at 2
    db.execute("DELETE FROM category WHERE id=?", (b,))
    db.commit()

    body, status = service.apply_action("up", {"id": c})
    assert (body, status) == ({"message": "Previous category not found."}, 404)
    body, status = service.apply_action("down", {"id": a})
    assert (body, status) == ({"message": "Next category not found."}, 404)


# ───────────────────────── errors ─────────────────────────────────────
@pytest.mark.parametrize(
    "action, payload, message",
    [
        ("add", {}, "Missing id of the category to add after."),
        ("addNested", {}, "Missing id of the parent category."),
        ("delete", {}, "Missing id of the category to delete."),
        ("up", {}, "Missing id of the category to move up."),
        ("down", {}, "Missing id of the category to move down."),
        ("delete", {"id": ""}, "Missing id of the category to delete."),
        ("delete", {"id": True}, "Missing id of the category to delete."),
        ("delete", {"id": [1]}, "Missing id of the category to delete."),
    ],
)
def test_missing_ids_are_invalid_input(service, action, payload, message):
    assert service.apply_action(action, payload) == ({"message": message}, 400)


@pytest.mark.parametrize(
    "action, field, message",
    [
        ("add", "after", "Category not found."),
        ("addNested", "nested", "Parent category not found."),
        ("delete", "id", "Category not found."),
        ("up", "id", "Category not found."),
        ("down", "id", "Category not found."),
        ("input", "id", "Category not found."),
    ],
)
@pytest.mark.parametrize(
    "bad_id", [999, "999", "category-12345678", 10**20, str(10**20), -(10**20)]
)
def test_unknown_ids_are_not_found(service, action, field, message, bad_id):
    payload = {field: bad_id, "value": "x"}
    assert service.apply_action(action, payload) == ({"message": message}, 404)


def test_unknown_action(service):
    assert service.apply_action("explode", {}) == ({"message": "Unknown action."}, 400)


@pytest.mark.parametrize("action, payload", [(None, {}), ("", {}), ("add", ["x"])])
def test_malformed_envelope(service, action, payload):
    assert service.apply_action(action, payload) == ({"message": "Invalid data."}, 400)


def test_messages_come_from_the_injected_locale(store):
    service = CategoryService(store, SK)
    a = _add(service, "addFirst")
    assert service.apply_action("up", {"id": a}) == (
        {"message": "Kategória je už na vrchole zoznamu"},
        400,
    )


def test_storage_failure_raises_internal_error(service, db):
    db.execute("DROP TABLE post_category")
    db.execute("DROP TABLE category")
    with pytest.raises(InternalError) as exc:
        service.apply_action("addFirst", {})
    assert exc.value.status == 500
    assert exc.value.message == "Something went wrong."


def test_failed_action_rolls_back_renumbering(service, store, monkeypatch):
    a, b, c = _abc(service)

    def boom(**kwargs):
        raise sqlite3.IntegrityError("boom")

    monkeypatch.setattr(store, "create", boom)
    with pytest.raises(InternalError):
        service.apply_action("add", {"after": a})
    assert [store.get(x)["order"] for x in (a, b, c)] == [1, 2, 3]


# ───────────────────────── invariants ─────────────────────────────────
def test_random_action_sequences_keep_orders_contiguous(service, store):
    rnd = random.Random(20240601)
    for _ in range(400):
        ids = [r["id"] for r in store.all()]
        action = rnd.choice(["addFirst", "add", "addNested", "delete", "up", "down"])
        if action != "addFirst" and not ids:
            action = "addFirst"
        target = rnd.choice(ids) if ids else None
        payload = {
            "addFirst": {},
            "add": {"after": target},
            "addNested": {"nested": target},
        }.get(action, {"id": target})

        body, status = service.apply_action(action, payload)
        # only boundary moves may be rejected
        assert status in (200, 400), body
        if status == 400:
            assert action in ("up", "down")
        _assert_contiguous(store)
