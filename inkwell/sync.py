"""
Client side of the category editor.

``TreeContainer`` mirrors the rendered ``<ul>/<li>`` tree, ``TreeSynchronizer``
applies every user action to that mirror immediately and ships it to
``POST /api/categories`` through ``ActionTransport``.  Server ids replace the
temporary ones in place when the response arrives.  Nothing is rolled back
on failure; errors are logged.
"""
from __future__ import annotations

import logging
import random
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from functools import partial
from typing import Any, Callable, Iterable, Iterator, Mapping
from weakref import WeakKeyDictionary

import click
import requests

from inkwell.messages import EN

logger = logging.getLogger(__name__)

DEBOUNCE_SECONDS = 0.3
TEMP_PREFIX = "category-"


################################################################################
# Transport
################################################################################
class TransportError(Exception):
    """The token fetch or the action POST did not succeed."""


class ActionTransport:
    """
    POSTs ``{"data": …}`` envelopes, fetching a fresh CSRF token first.

    *session* defaults to a new ``requests.Session`` so the login cookie set
    by the caller is reused for both requests.
    """

    def __init__(
        self,
        base_url: str,
        session: requests.Session | None = None,
        timeout: float | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout

    def csrf_token(self) -> str:
        try:
            resp = self.session.get(f"{self.base_url}/csrf-token", timeout=self.timeout)
            resp.raise_for_status()
            token = resp.json().get("csrfToken")
        except (requests.RequestException, ValueError) as exc:
            raise TransportError(f"CSRF token request failed: {exc}") from exc
        if not token:
            raise TransportError("CSRF token not found in the response")
        return token

    def send(self, data: Mapping[str, Any], endpoint: str = "categories") -> dict:
        token = self.csrf_token()
        try:
            resp = self.session.post(
                f"{self.base_url}/{endpoint}",
                json={"data": dict(data)},
                headers={"X-CSRFToken": token},
                timeout=self.timeout,
            )
            resp.raise_for_status()
            return resp.json()
        except (requests.RequestException, ValueError) as exc:
            raise TransportError(f"{data.get('action')} failed: {exc}") from exc


################################################################################
# Mirror tree
################################################################################
class TreeList:
    """One ``<ul>``: an ordered list of items, owned by an item or the root."""

    def __init__(self, owner: TreeItem | None = None):
        self.owner = owner
        self.items: list[TreeItem] = []

    def __iter__(self) -> Iterator[TreeItem]:
        return iter(self.items)

    def __len__(self) -> int:
        return len(self.items)

    def __getitem__(self, index: int) -> TreeItem:
        return self.items[index]

    def index(self, item: TreeItem) -> int:
        return self.items.index(item)

    def insert(self, index: int, item: TreeItem) -> None:
        item.parent = self
        self.items.insert(index, item)

    def append(self, item: TreeItem) -> None:
        self.insert(len(self.items), item)

    def remove(self, item: TreeItem) -> None:
        self.items.remove(item)
        item.parent = None

    def move(self, item: TreeItem, index: int) -> None:
        self.items.remove(item)
        self.items.insert(index, item)


class TreeItem:
    """One ``<li>``: an id, the name in its text input and its button states."""

    def __init__(self, item_id: Any, name: str = ""):
        self.id = str(item_id)
        self.name = name
        self.parent: TreeList | None = None
        self.children = TreeList(owner=self)
        self.up_disabled = False
        self.down_disabled = False

    def __repr__(self) -> str:
        return f"<TreeItem {self.id} {self.name!r}>"

    @property
    def is_temporary(self) -> bool:
        return self.id.startswith(TEMP_PREFIX)

    def walk(self) -> Iterator[TreeItem]:
        yield self
        for child in self.children:
            yield from child.walk()


class TreeContainer:
    """
    The element the synchronizer attaches to.

    ``click`` and ``type`` play the part of browser events: they are
    delivered to whatever listeners are registered at that moment.
    """

    def __init__(self, roots: Iterable[TreeItem] = ()):
        self.roots = TreeList()
        for item in roots:
            self.roots.append(item)
        self.add_first_visible = not self.roots
        self._listeners: dict[str, list[Callable]] = {"click": [], "input": []}

    @classmethod
    def from_tree(cls, forest: Iterable[Mapping[str, Any]]) -> TreeContainer:
        """Build the mirror from ``materialize()`` output."""

        def build(node: Mapping[str, Any]) -> TreeItem:
            item = TreeItem(node["id"], node.get("name") or "")
            for child in node.get("children", ()):
                item.children.append(build(child))
            return item

        return cls(build(node) for node in forest)

    # ── listeners ────────────────────────────────────────────────────────
    def add_listener(self, event: str, handler: Callable) -> None:
        self._listeners[event].append(handler)

    def remove_listener(self, event: str, handler: Callable) -> None:
        if handler in self._listeners[event]:
            self._listeners[event].remove(handler)

    def listener_count(self, event: str) -> int:
        return len(self._listeners[event])

    # ── events ───────────────────────────────────────────────────────────
    def click(self, action: str, item_id: str | None = None) -> None:
        item = self.find(item_id) if item_id is not None else None
        for handler in list(self._listeners["click"]):
            handler(action, item)

    def type(self, item_id: str, value: str) -> None:
        item = self.find(item_id)
        if item is None:
            raise KeyError(item_id)
        item.name = value
        for handler in list(self._listeners["input"]):
            handler(item)

    # ── queries ──────────────────────────────────────────────────────────
    def walk(self) -> Iterator[TreeItem]:
        for root in self.roots:
            yield from root.walk()

    def lists(self) -> Iterator[TreeList]:
        yield self.roots
        for item in self.walk():
            if item.children:
                yield item.children

    def find(self, item_id: Any) -> TreeItem | None:
        wanted = str(item_id)
        return next((item for item in self.walk() if item.id == wanted), None)

    def to_tree(self) -> list[dict]:
        def dump(item: TreeItem) -> dict:
            return {
                "id": item.id,
                "name": item.name,
                "children": [dump(c) for c in item.children],
            }

        return [dump(item) for item in self.roots]


################################################################################
# Synchronizer
################################################################################
class TreeSynchronizer:
    """
    Keeps one ``TreeContainer`` and the server in step.

    * creations insert a placeholder with a ``category-NNNNNNNN`` id, which is
      swapped for ``newId`` once the server answers
    * name edits are debounced per item; an edit on an item whose creation is
      still in flight waits for the real id
    * up/down states and the "add first" affordance are recomputed over the
      whole tree after every structural change
    """

    def __init__(
        self,
        transport: ActionTransport,
        *,
        confirm: Callable[[str], bool] | None = None,
        debounce: float = DEBOUNCE_SECONDS,
        executor: Any = None,
        messages: Mapping[str, str] | None = None,
    ):
        self.transport = transport
        self.confirm = confirm or click.confirm
        self.debounce = debounce
        self._own_executor = executor is None
        self.executor = executor or ThreadPoolExecutor(
            max_workers=4, thread_name_prefix="category-sync"
        )
        self.messages = messages or EN
        self.container: TreeContainer | None = None
        self._lock = threading.RLock()
        self._timers: WeakKeyDictionary[TreeItem, threading.Timer] = WeakKeyDictionary()
        self._creations: WeakKeyDictionary[TreeItem, Future] = WeakKeyDictionary()
        self._pending: set[Future] = set()

    # ── lifecycle ────────────────────────────────────────────────────────
    def attach(self, container: TreeContainer) -> None:
        """Listen on *container*; a previous container is released first."""
        with self._lock:
            if container is not self.container:
                self.detach()
                container.add_listener("click", self._on_click)
                container.add_listener("input", self._on_input)
                self.container = container
                logger.debug("category synchronizer attached")
            self.refresh()

    def detach(self) -> None:
        with self._lock:
            if self.container is None:
                return
            self.container.remove_listener("click", self._on_click)
            self.container.remove_listener("input", self._on_input)
            self.container = None
            logger.debug("category synchronizer detached")

    def refresh(self) -> None:
        with self._lock:
            self._update_buttons()
            self._toggle_add_first()

    def close(self) -> None:
        """Send pending edits, detach, and stop an executor we created."""
        self.flush_edits()
        self.detach()
        if self._own_executor:
            self.wait_pending()
            self.executor.shutdown(wait=True)

    def wait_pending(self, timeout: float | None = None) -> None:
        """Block until every dispatched action has been answered."""
        while True:
            with self._lock:
                pending = list(self._pending)
            if not pending:
                return
            _, not_done = wait(pending, timeout=timeout)
            if not_done:
                logger.warning("%d category action(s) still unanswered", len(not_done))
                return

    # ── event handlers ───────────────────────────────────────────────────
    def _on_click(self, action: str, item: TreeItem | None) -> None:
        if action == "addFirst":
            self.add_first()
            return
        handler = {
            "add": self.add_after,
            "addNested": self.add_nested,
            "delete": self.delete,
            "up": self.move_up,
            "down": self.move_down,
        }.get(action)
        if handler is None or item is None:
            logger.debug("ignored click %r", action)
            return
        handler(item)

    def _on_input(self, item: TreeItem) -> None:
        self.edit(item)

    # ── actions ──────────────────────────────────────────────────────────
    def add_first(self) -> Future:
        item = self._placeholder()
        with self._lock:
            self._require_container().roots.append(item)
            self._structure_changed()
        return self._when_confirmed(None, lambda: {"action": "addFirst"}, placeholder=item)

    def add_after(self, item: TreeItem) -> Future:
        new = self._placeholder()
        with self._lock:
            siblings = item.parent
            siblings.insert(siblings.index(item) + 1, new)
            self._structure_changed()
        return self._when_confirmed(
            item, lambda: {"action": "add", "after": item.id}, placeholder=new
        )

    def add_nested(self, item: TreeItem) -> Future:
        new = self._placeholder()
        with self._lock:
            item.children.append(new)
            self._structure_changed()
        return self._when_confirmed(
            item, lambda: {"action": "addNested", "nested": item.id}, placeholder=new
        )

    def delete(self, item: TreeItem) -> Future | None:
        if not self.confirm(self._t("categories.confirmDelete")):
            return None
        with self._lock:
            for doomed in item.walk():
                timer = self._timers.pop(doomed, None)
                if timer is not None:
                    timer.cancel()
            item.parent.remove(item)
            self._structure_changed()
        return self._when_confirmed(item, lambda: {"action": "delete", "id": item.id})

    def move_up(self, item: TreeItem) -> Future | None:
        with self._lock:
            siblings = item.parent
            index = siblings.index(item)
            if index == 0:
                return None
            siblings.move(item, index - 1)
            self._structure_changed()
        return self._when_confirmed(item, lambda: {"action": "up", "id": item.id})

    def move_down(self, item: TreeItem) -> Future | None:
        with self._lock:
            siblings = item.parent
            index = siblings.index(item)
            if index == len(siblings) - 1:
                return None
            siblings.move(item, index + 1)
            self._structure_changed()
        return self._when_confirmed(item, lambda: {"action": "down", "id": item.id})

    def edit(self, item: TreeItem, value: str | None = None) -> None:
        """(Re)start *item*'s debounce timer; the rename goes out when it fires."""
        if value is not None:
            item.name = value
        with self._lock:
            previous = self._timers.get(item)
            if previous is not None:
                previous.cancel()
            timer = threading.Timer(self.debounce, self._flush_edit)
            timer.args = (item, timer)
            timer.daemon = True
            self._timers[item] = timer
            timer.start()

    def flush_edits(self) -> None:
        """Fire every pending edit now instead of waiting for its timer."""
        with self._lock:
            pending = list(self._timers.items())
        for item, timer in pending:
            timer.cancel()
            self._flush_edit(item, timer)

    def _flush_edit(self, item: TreeItem, timer: threading.Timer) -> None:
        with self._lock:
            if self._timers.get(item) is not timer:
                return  # superseded or cancelled
            del self._timers[item]
        self._when_confirmed(
            item, lambda: {"action": "input", "id": item.id, "value": item.name}
        )

    # ── plumbing ─────────────────────────────────────────────────────────
    def _t(self, key: str) -> str:
        return self.messages.get(key) or EN[key]

    def _require_container(self) -> TreeContainer:
        if self.container is None:
            raise RuntimeError("synchronizer is not attached to a container")
        return self.container

    @staticmethod
    def _placeholder() -> TreeItem:
        return TreeItem(f"{TEMP_PREFIX}{random.randint(10_000_000, 99_999_999)}")

    def _when_confirmed(
        self,
        item: TreeItem | None,
        build: Callable[[], dict],
        *,
        placeholder: TreeItem | None = None,
    ) -> Future:
        """
        Send ``build()`` now, or, while *item*'s own creation is still
        unanswered, right after its real id has been filled in.

        The returned future settles with the server's answer once any id
        swap has happened; for a creation it is also what later actions on
        *placeholder* wait for.
        """
        done: Future = Future()
        with self._lock:
            self._pending.add(done)
            if placeholder is not None:
                self._creations[placeholder] = done
            waiting = self._creations.get(item) if item is not None else None
        if waiting is None:
            self._dispatch(build(), placeholder, done)
        else:
            waiting.add_done_callback(partial(self._fire, build, placeholder, done))
        return done

    def _fire(
        self,
        build: Callable[[], dict],
        placeholder: TreeItem | None,
        done: Future,
        waiting: Future,
    ) -> None:
        exc = waiting.exception()
        if exc is None:
            self._dispatch(build(), placeholder, done)
            return
        # the item never got a real id; nothing to address the request to
        skipped: Future = Future()
        skipped.set_exception(exc)
        self._settle(build(), placeholder, done, skipped)

    def _dispatch(self, data: dict, placeholder: TreeItem | None, done: Future) -> None:
        logger.debug("dispatching %s", data)
        try:
            future = self.executor.submit(self.transport.send, data)
        except RuntimeError as exc:
            # executor already shut down
            future = Future()
            future.set_exception(exc)
        future.add_done_callback(partial(self._settle, data, placeholder, done))

    def _settle(
        self, data: dict, placeholder: TreeItem | None, done: Future, future: Future
    ) -> None:
        exc = future.exception()
        response = {} if exc is not None else (future.result() or {})
        new_id = response.get("newId")
        with self._lock:
            if placeholder is not None:
                if new_id is not None:
                    logger.debug("%s is now %s", placeholder.id, new_id)
                    placeholder.id = str(new_id)
                if self._creations.get(placeholder) is done:
                    del self._creations[placeholder]
            self._pending.discard(done)
        if exc is not None:
            logger.error("category action %s failed: %s", data.get("action"), exc)
            done.set_exception(exc)
        else:
            done.set_result(response)

    def _structure_changed(self) -> None:
        self._update_buttons()
        self._toggle_add_first()

    def _update_buttons(self) -> None:
        if self.container is None:
            return
        for siblings in self.container.lists():
            last = len(siblings) - 1
            for index, item in enumerate(siblings):
                item.up_disabled = index == 0
                item.down_disabled = index == last

    def _toggle_add_first(self) -> None:
        if self.container is not None:
            self.container.add_first_visible = not self.container.roots
