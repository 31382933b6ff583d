"""
suspend_inhibitor.py - inhibitor bookkeeping for the session manager

Tracks which suspend inhibitors this process owns on
org.gnome.SessionManager and derives a single "suspend is inhibited" state
from them.

The session manager's Inhibit call only returns a cookie; the inhibitor
object it creates is announced later through the InhibitorAdded signal,
which carries nothing but the object path.  The engine correlates the two by
remembering the app id it passed to Inhibit (one request in flight at a
time) and asking every known inhibitor for its app id when a new one
appears.

Nothing here talks to D-Bus or GLib directly: the bus client, the display
source and the timer functions are handed in by the caller, so the module
can be driven from the daemon's main loop or from tests.
"""

import logging
from typing import Callable, List, NamedTuple, Optional

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# App ids submitted to Inhibit.  They double as cause tags and must never
# match a real application id.
FORCE_ENABLE_APP_ID = "inhibit-suspend-force"
FULLSCREEN_APP_ID = "inhibit-suspend-fullscreen"

# GsmInhibitorFlag: SUSPEND (4) | IDLE (8)
INHIBIT_FLAGS = 12

INHIBIT_REASON = "Inhibit by Inhibit Suspend"

FULLSCREEN_CHECK_DELAY_SEC = 2

LOG = logging.getLogger("inhibit-suspend")


class InhibitorRecord(NamedTuple):
    cause: str
    cookie: int
    object_ref: str


class PendingRequest(NamedTuple):
    cause: str
    cookie: int


# ---------------------------------------------------------------------------
# Registry and pending slot
# ---------------------------------------------------------------------------


class InhibitorRegistry:
    """
    Inhibitors confirmed by the session manager, in the order they were
    confirmed.  Object paths are unique; causes normally are too, but two
    records may briefly share one.
    """

    def __init__(self) -> None:
        self._records: List[InhibitorRecord] = []

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self):
        return iter(list(self._records))

    def add(self, cause: str, cookie: int, object_ref: str) -> bool:
        if any(r.object_ref == object_ref for r in self._records):
            LOG.debug("Inhibitor %s already recorded, not adding", object_ref)
            return False
        self._records.append(InhibitorRecord(cause, cookie, object_ref))
        return True

    def remove(self, object_ref: str) -> bool:
        for i, record in enumerate(self._records):
            if record.object_ref == object_ref:
                del self._records[i]
                return True
        return False

    def find_by_cause(self, cause: str) -> Optional[int]:
        for i, record in enumerate(self._records):
            if record.cause == cause:
                return i
        return None

    def get(self, index: int) -> InhibitorRecord:
        return self._records[index]

    def has_cause(self, cause: str) -> bool:
        return self.find_by_cause(cause) is not None

    def count(self) -> int:
        return len(self._records)

    def causes(self) -> List[str]:
        return [r.cause for r in self._records]

    def for_each_cause(self, func: Callable[[str], None]) -> None:
        # Iterate a snapshot; callers may trigger removals.
        for cause in self.causes():
            func(cause)

    def clear(self) -> None:
        self._records = []


class PendingRequestTracker:
    """
    The one Inhibit request that has a cookie but no confirmed object yet.

    A single slot is deliberate: InhibitorAdded carries only an object path,
    and the app id lookup used to correlate it cannot tell two outstanding
    requests for the same cause apart.  A second request overwrites the first.
    """

    def __init__(self) -> None:
        self._pending: Optional[PendingRequest] = None

    def set_pending(self, cause: str, cookie: int) -> None:
        self._pending = PendingRequest(cause, cookie)

    def clear_pending(self) -> None:
        self._pending = None

    def peek(self) -> Optional[PendingRequest]:
        return self._pending


# ---------------------------------------------------------------------------
# Reconciliation engine
# ---------------------------------------------------------------------------


class InhibitorEngine:
    """
    Mirrors the session manager's view of our inhibitors and turns it into an
    active/inactive state with enable/disable callbacks.

    `bus` must provide:

        inhibit(app_id, reply_handler)        reply_handler(cookie)
        uninhibit(cookie)
        get_inhibitors(reply_handler)         reply_handler([object_ref, ...])
        get_app_id(object_ref, reply_handler) reply_handler(app_id)
        connect_inhibitor_added(func) -> handle
        connect_inhibitor_removed(func) -> handle
        disconnect(handle)

    Registry changes are only applied from InhibitorAdded/InhibitorRemoved,
    never from the requests themselves, so `active` always reflects what the
    session manager has confirmed.
    """

    def __init__(self, bus) -> None:
        self._bus = bus
        self._registry = InhibitorRegistry()
        self._pending = PendingRequestTracker()
        self._active = False
        self._destroyed = False
        self.checked = False

        self._on_enable: List[Callable[[], None]] = []
        self._on_disable: List[Callable[[], None]] = []

        self._signal_handles = [
            bus.connect_inhibitor_added(self.on_inhibitor_added),
            bus.connect_inhibitor_removed(self.on_inhibitor_removed),
        ]

    @property
    def active(self) -> bool:
        return self._active

    @property
    def registry(self) -> InhibitorRegistry:
        return self._registry

    @property
    def pending(self) -> Optional[PendingRequest]:
        return self._pending.peek()

    def has_cause(self, cause: str) -> bool:
        return self._registry.has_cause(cause)

    def is_pending(self, cause: str) -> bool:
        pending = self._pending.peek()
        return pending is not None and pending.cause == cause

    # -- observers ----------------------------------------------------------

    def connect_enable(self, func: Callable[[], None]) -> None:
        _connect(func, self._on_enable)

    def disconnect_enable(self, func: Callable[[], None]) -> None:
        _disconnect(func, self._on_enable)

    def connect_disable(self, func: Callable[[], None]) -> None:
        _connect(func, self._on_disable)

    def disconnect_disable(self, func: Callable[[], None]) -> None:
        _disconnect(func, self._on_disable)

    # -- requests -----------------------------------------------------------

    def toggle_clicked(self) -> None:
        """
        User toggle.  Releases everything we hold when active, otherwise asks
        for a user-forced inhibitor.  `checked` drops to False straight away
        and is only set again once the session manager confirms.
        """
        if self._destroyed:
            return
        self.checked = False
        if self._active:
            LOG.info("Toggle: releasing %d inhibitor(s)", self._registry.count())
            self._registry.for_each_cause(self.request_uninhibit)
        else:
            LOG.info("Toggle: requesting user inhibitor")
            self.request_inhibit(FORCE_ENABLE_APP_ID)

    def request_inhibit(self, cause: str) -> None:
        if self._destroyed:
            return
        LOG.debug("Requesting inhibitor for %s", cause)

        def on_reply(cookie):
            self._on_inhibit_reply(cause, cookie)

        self._bus.inhibit(cause, on_reply)

    def request_uninhibit(self, cause: str) -> None:
        if self._destroyed:
            return
        index = self._registry.find_by_cause(cause)
        if index is None:
            LOG.debug("No inhibitor recorded for %s, nothing to release", cause)
            return
        record = self._registry.get(index)
        LOG.debug("Releasing inhibitor %s (cookie %s)", cause, record.cookie)
        self._bus.uninhibit(record.cookie)

    def _on_inhibit_reply(self, cause: str, cookie: int) -> None:
        if self._destroyed:
            return
        previous = self._pending.peek()
        if previous is not None:
            LOG.warning(
                "Inhibit reply for %s while %s (cookie %s) is still unconfirmed; "
                "dropping the older request",
                cause,
                previous.cause,
                previous.cookie,
            )
        LOG.debug("Inhibit for %s acknowledged with cookie %s", cause, cookie)
        self._pending.set_pending(cause, cookie)

    # -- bus notifications --------------------------------------------------

    def on_inhibitor_added(self, object_ref: str) -> None:
        if self._destroyed:
            return
        LOG.debug("InhibitorAdded: %s", object_ref)

        def on_inhibitors(inhibitors):
            if self._destroyed:
                return
            for inhibitor in inhibitors:
                self._bus.get_app_id(
                    inhibitor,
                    lambda app_id: self._resolve_app_id(object_ref, app_id),
                )

        self._bus.get_inhibitors(on_inhibitors)

    def _resolve_app_id(self, object_ref: str, app_id: str) -> None:
        if self._destroyed:
            return
        pending = self._pending.peek()
        if not app_id or pending is None or app_id != pending.cause:
            return
        if not self._registry.add(pending.cause, pending.cookie, object_ref):
            return
        self._pending.clear_pending()
        LOG.info("Inhibitor %s confirmed as %s", pending.cause, object_ref)
        if not self._active:
            self._active = True
            self.checked = True
            _invoke(self._on_enable)

    def on_inhibitor_removed(self, object_ref: str) -> None:
        if self._destroyed:
            return
        if not self._registry.remove(object_ref):
            LOG.debug("InhibitorRemoved for foreign inhibitor %s", object_ref)
            return
        LOG.info("Inhibitor %s removed", object_ref)
        if self._registry.count() == 0 and self._active:
            self._active = False
            self.checked = False
            _invoke(self._on_disable)

    def destroy(self) -> None:
        if self._destroyed:
            return
        self._destroyed = True
        for handle in self._signal_handles:
            self._bus.disconnect(handle)
        self._signal_handles = []
        self._registry.clear()
        self._pending.clear_pending()
        self._active = False
        self.checked = False
        self._on_enable = []
        self._on_disable = []


def _connect(func, handlers: list) -> None:
    if func not in handlers:
        handlers.append(func)


def _disconnect(func, handlers: list) -> None:
    if func in handlers:
        handlers.remove(func)


def _invoke(handlers: list) -> None:
    for func in list(handlers):
        func()


# ---------------------------------------------------------------------------
# Fullscreen watch
# ---------------------------------------------------------------------------


class FullscreenWatch:
    """
    Holds a FULLSCREEN_APP_ID inhibitor while any output shows a fullscreen
    window.

    Entering fullscreen is only acted on after `delay` seconds, re-checking
    the display at that point, so short-lived fullscreen states during window
    animations do not inhibit.  Leaving fullscreen releases immediately.

    `display` must provide monitor_count(), is_monitor_fullscreen(index),
    connect_fullscreen_changed(func) -> handle and disconnect(handle).
    `timeout_add(seconds, func)` and `source_remove(source_id)` follow
    GLib.timeout_add_seconds / GLib.source_remove: `func` returning False
    stops the timer.
    """

    def __init__(
        self,
        engine: InhibitorEngine,
        display,
        timeout_add: Callable,
        source_remove: Callable,
        delay: int = FULLSCREEN_CHECK_DELAY_SEC,
    ) -> None:
        self._engine = engine
        self._display = display
        self._timeout_add = timeout_add
        self._source_remove = source_remove
        self._delay = delay
        self._check_source = None
        self._destroyed = False
        self._handle = display.connect_fullscreen_changed(self.handle_fullscreen)

    def is_fullscreen(self) -> bool:
        return any(
            self._display.is_monitor_fullscreen(i)
            for i in range(self._display.monitor_count())
        )

    def handle_fullscreen(self) -> None:
        if self._destroyed:
            return
        if self._check_source is None:
            self._check_source = self._timeout_add(self._delay, self._delayed_check)

        if not self.is_fullscreen() and self._engine.has_cause(FULLSCREEN_APP_ID):
            LOG.info("Fullscreen ended, releasing fullscreen inhibitor")
            self._engine.request_uninhibit(FULLSCREEN_APP_ID)

    def _delayed_check(self) -> bool:
        self._check_source = None
        if self._destroyed:
            return False
        if self.is_fullscreen() and not self._engine.has_cause(FULLSCREEN_APP_ID):
            LOG.info("Fullscreen window detected, requesting fullscreen inhibitor")
            self._engine.request_inhibit(FULLSCREEN_APP_ID)
        return False

    def destroy(self) -> None:
        if self._destroyed:
            return
        self._destroyed = True
        if self._check_source is not None:
            self._source_remove(self._check_source)
            self._check_source = None
        self._display.disconnect(self._handle)
