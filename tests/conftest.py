import pytest


class FakeSessionManager:
    """
    In-memory stand-in for SessionManagerClient.  Replies are queued and only
    delivered when a test calls one of the complete_* helpers, the same way
    dbus-python delivers them from a later main loop iteration.
    """

    def __init__(self):
        self.inhibit_calls = []
        self.uninhibit_calls = []
        self.inhibitors = {}
        self.added_handlers = []
        self.removed_handlers = []
        self.disconnected = []
        self._inhibit_replies = []
        self._next_cookie = 100

    # adapter interface

    def inhibit(self, app_id, reply_handler):
        self.inhibit_calls.append(app_id)
        self._inhibit_replies.append(reply_handler)

    def uninhibit(self, cookie):
        self.uninhibit_calls.append(cookie)

    def get_inhibitors(self, reply_handler):
        reply_handler(list(self.inhibitors))

    def get_app_id(self, object_ref, reply_handler):
        if object_ref in self.inhibitors:
            reply_handler(self.inhibitors[object_ref])

    def connect_inhibitor_added(self, func):
        self.added_handlers.append(func)
        return ("added", func)

    def connect_inhibitor_removed(self, func):
        self.removed_handlers.append(func)
        return ("removed", func)

    def disconnect(self, handle):
        self.disconnected.append(handle)
        kind, func = handle
        handlers = self.added_handlers if kind == "added" else self.removed_handlers
        handlers.remove(func)

    # test helpers

    def complete_inhibit(self, cookie=None):
        if cookie is None:
            cookie = self._next_cookie
            self._next_cookie += 1
        self._inhibit_replies.pop(0)(cookie)
        return cookie

    def add_object(self, object_ref, app_id):
        self.inhibitors[object_ref] = app_id
        for func in list(self.added_handlers):
            func(object_ref)

    def remove_object(self, object_ref):
        self.inhibitors.pop(object_ref, None)
        for func in list(self.removed_handlers):
            func(object_ref)


class FakeDisplay:
    def __init__(self, outputs=1):
        self.fullscreen = [False] * outputs
        self.handlers = {}
        self._next = 1

    def monitor_count(self):
        return len(self.fullscreen)

    def is_monitor_fullscreen(self, index):
        return self.fullscreen[index]

    def connect_fullscreen_changed(self, func):
        handle = self._next
        self._next += 1
        self.handlers[handle] = func
        return handle

    def disconnect(self, handle):
        del self.handlers[handle]

    def set_fullscreen(self, index, value):
        self.fullscreen[index] = value
        for func in list(self.handlers.values()):
            func()


class FakeTimers:
    """GLib.timeout_add_seconds / GLib.source_remove lookalike with manual time."""

    def __init__(self):
        self.now = 0
        self.sources = {}
        self._next = 1

    def timeout_add(self, seconds, func):
        source_id = self._next
        self._next += 1
        self.sources[source_id] = (self.now + seconds, func)
        return source_id

    def source_remove(self, source_id):
        del self.sources[source_id]

    def advance(self, seconds):
        self.now += seconds
        for source_id, (due, func) in sorted(self.sources.items()):
            if source_id in self.sources and due <= self.now:
                if not func():
                    self.sources.pop(source_id, None)


@pytest.fixture
def bus():
    return FakeSessionManager()


@pytest.fixture
def display():
    return FakeDisplay(outputs=2)


@pytest.fixture
def timers():
    return FakeTimers()
