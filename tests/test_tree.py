"""tests/test_tree.py"""
from __future__ import annotations

from inkwell.categories import flatten, materialize


def _cat(id, name, parent_id=None, order=1):
    return {"id": id, "name": name, "parent_id": parent_id, "order": order}


def _shape(forest):
    return [(n["name"], _shape(n["children"])) for n in forest]


def test_empty_input():
    assert materialize([]) == []


def test_nesting_and_sibling_order():
    rows = [
        _cat(3, "c", None, 2),
        _cat(1, "a", None, 1),
        _cat(4, "a2", 1, 2),
        _cat(5, "a1", 1, 1),
        _cat(6, "a1x", 5, 1),
    ]
    assert _shape(materialize(rows)) == [
        ("a", [("a1", [("a1x", [])]), ("a2", [])]),
        ("c", []),
    ]


def test_node_fields():
    [node] = materialize([_cat(7, "solo", None, 1)])
    assert node == {"id": 7, "name": "solo", "order": 1, "parent_id": None, "children": []}


def test_orphans_become_roots():
    rows = [_cat(1, "root", None, 1), _cat(2, "lost", 99, 1)]
    assert sorted(n["name"] for n in materialize(rows)) == ["lost", "root"]


def test_string_and_integer_ids_match():
    rows = [_cat("1", "parent", None, 1), _cat(2, "child", 1, 1)]
    assert _shape(materialize(rows)) == [("parent", [("child", [])])]


def test_input_order_does_not_matter():
    rows = [_cat(i, f"n{i}", None, 6 - i) for i in range(1, 6)]
    forward = materialize(rows)
    backward = materialize(list(reversed(rows)))
    assert forward == backward
    assert [n["order"] for n in forward] == [1, 2, 3, 4, 5]


def test_flatten_yields_depths():
    rows = [_cat(1, "a"), _cat(2, "b", 1), _cat(3, "c", 2), _cat(4, "d", None, 2)]
    assert [(n["name"], d) for n, d in flatten(materialize(rows))] == [
        ("a", 0),
        ("b", 1),
        ("c", 2),
        ("d", 0),
    ]


def test_materialize_store_rows(service, store):
    root = service.apply_action("addFirst")[0]["newId"]
    service.apply_action("addNested", {"nested": root})
    service.apply_action("addFirst")
    forest = materialize(store.all())
    assert [len(n["children"]) for n in forest] == [1, 0]
