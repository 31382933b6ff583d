#!/usr/bin/python3
"""
inhibit_suspend_daemon.py - suspend inhibit toggle for GNOME-style sessions

Keeps the session manager (org.gnome.SessionManager, as provided by
gnome-session, cinnamon-session and mate-session) from suspending the
machine while either of two causes holds:

  1. User toggle: SIGUSR1 flips a user-forced inhibitor on or off.
     Bind it to a shortcut or panel launcher with
         systemctl --user kill -s USR1 inhibit-suspend.service

  2. Fullscreen: while any monitor shows a fullscreen window, a second
     inhibitor is held.  Fullscreen state is read from the EWMH
     _NET_WM_STATE_FULLSCREEN hint of the windows in _NET_CLIENT_LIST on
     the X display named by DISPLAY.  That covers every window of an Xorg
     session (GNOME on Xorg, Cinnamon, MATE) and the XWayland windows of a
     GNOME Wayland session; native Wayland windows are not visible to it.
     Entering fullscreen is acted on after --fullscreen-delay seconds;
     leaving it releases the inhibitor straight away.

The inhibitors themselves are created with Inhibit(app_id, 0, reason, 12)
(suspend + idle).  The session manager only confirms which object it created
through InhibitorAdded, so state changes are logged (and reported to systemd
as STATUS=) only once it has done so.

Runtime dependencies:
    python3-dbus        (dbus-python)   - session bus client
    python3-gobject     (pygobject3)    - GLib main loop
    python3-xlib        (python-xlib)   - fullscreen detection

sd_notify is implemented inline; no python3-sdnotify dependency required.
"""

import logging
import os
import signal
import socket
import sys
import threading
import time
from argparse import ArgumentParser, RawDescriptionHelpFormatter

try:
    import dbus
    import dbus.mainloop.glib
except ImportError:
    print("Please install python3-dbus (dbus-python)", file=sys.stderr)
    raise

try:
    from gi.repository import GLib
except ImportError:
    print("Please install python3-gobject (pygobject3)", file=sys.stderr)
    raise

try:
    from Xlib import X, Xatom
    from Xlib import display as xdisplay
    from Xlib import error as xerror
except ImportError:
    print("Please install python3-xlib (python-xlib)", file=sys.stderr)
    raise

from suspend_inhibitor import (
    FORCE_ENABLE_APP_ID,
    FULLSCREEN_CHECK_DELAY_SEC,
    INHIBIT_FLAGS,
    INHIBIT_REASON,
    LOG,
    FullscreenWatch,
    InhibitorEngine,
)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

SM_BUS_NAME = "org.gnome.SessionManager"
SM_PATH = "/org/gnome/SessionManager"
SM_IFACE = "org.gnome.SessionManager"
SM_INHIBITOR_IFACE = "org.gnome.SessionManager.Inhibitor"

EWMH_ATOMS = ("_NET_CLIENT_LIST", "_NET_WM_STATE", "_NET_WM_STATE_FULLSCREEN")

# X connection reconnect delay on unexpected disconnect.
X_RECONNECT_DELAY_SEC = 5

# ---------------------------------------------------------------------------
# systemd sd_notify (inline; avoids python3-sdnotify dependency)
# ---------------------------------------------------------------------------


def sd_notify(msg: str) -> None:
    """
    Report to systemd over NOTIFY_SOCKET: READY=1 once the main loop is
    about to run, STATUS=Suspend inhibited / STATUS=Suspend allowed on every
    confirmed transition (shown by `systemctl --user status`), WATCHDOG=1
    pings and STOPPING=1 on the way out.

    Does nothing outside systemd.  Socket errors are dropped; the
    inhibitors do not depend on systemd hearing about them.
    """
    notify_socket = os.getenv("NOTIFY_SOCKET")
    if not notify_socket:
        return
    try:
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_DGRAM)
        with sock:
            sock.connect(notify_socket)
            sock.sendall(msg.encode())
    except OSError:
        pass


# ---------------------------------------------------------------------------
# Session manager client
# ---------------------------------------------------------------------------


class SessionManagerClient:
    """
    Asynchronous wrapper around org.gnome.SessionManager.

    Every call goes out with reply_handler/error_handler so the GLib main
    loop never blocks on the session manager.  Replies are converted from
    dbus types to plain int/str before being handed on.  A failed call is
    logged and its reply handler is simply never called.
    """

    def __init__(self, bus, reason: str = INHIBIT_REASON):
        self._bus = bus
        self._reason = reason
        self._manager = bus.get_object(SM_BUS_NAME, SM_PATH, introspect=False)

    def inhibit(self, app_id: str, reply_handler) -> None:
        self._manager.Inhibit(
            app_id,
            dbus.UInt32(0),
            self._reason,
            dbus.UInt32(INHIBIT_FLAGS),
            dbus_interface=SM_IFACE,
            reply_handler=lambda cookie: reply_handler(int(cookie)),
            error_handler=_call_failed(f"Inhibit({app_id})"),
        )

    def uninhibit(self, cookie: int) -> None:
        self._manager.Uninhibit(
            dbus.UInt32(cookie),
            dbus_interface=SM_IFACE,
            reply_handler=lambda: None,
            error_handler=_call_failed(f"Uninhibit({cookie})"),
        )

    def get_inhibitors(self, reply_handler) -> None:
        self._manager.GetInhibitors(
            dbus_interface=SM_IFACE,
            reply_handler=lambda paths: reply_handler([str(p) for p in paths]),
            error_handler=_call_failed("GetInhibitors()"),
        )

    def get_app_id(self, object_ref: str, reply_handler) -> None:
        inhibitor = self._bus.get_object(SM_BUS_NAME, object_ref, introspect=False)
        # The inhibitor may be gone again by the time we ask; not worth a warning.
        inhibitor.GetAppId(
            dbus_interface=SM_INHIBITOR_IFACE,
            reply_handler=lambda app_id: reply_handler(str(app_id)),
            error_handler=_call_failed(f"{object_ref}.GetAppId()", logging.DEBUG),
        )

    def connect_inhibitor_added(self, func):
        return self._connect("InhibitorAdded", func)

    def connect_inhibitor_removed(self, func):
        return self._connect("InhibitorRemoved", func)

    def disconnect(self, handle) -> None:
        handle.remove()

    def _connect(self, signal_name: str, func):
        def handler(object_path):
            func(str(object_path))

        match = self._bus.add_signal_receiver(
            handler,
            signal_name=signal_name,
            dbus_interface=SM_IFACE,
            bus_name=SM_BUS_NAME,
            path=SM_PATH,
        )
        LOG.debug("Subscribed to %s.%s", SM_IFACE, signal_name)
        return match


def _call_failed(label: str, level: int = logging.WARNING):
    def error_handler(exc):
        LOG.log(level, "Session manager call %s failed: %s", label, exc)

    return error_handler


# ---------------------------------------------------------------------------
# X11 fullscreen monitoring
# ---------------------------------------------------------------------------


def fullscreen_outputs(monitors: list, windows: list) -> list:
    """
    Return one bool per monitor: True if the centre of any fullscreen
    window lies on it.  Both lists hold (x, y, width, height) in root
    window coordinates.
    """
    result = []
    for mx, my, mw, mh in monitors:
        result.append(
            any(
                mx <= x + w // 2 < mx + mw and my <= y + h // 2 < my + mh
                for x, y, w, h in windows
            )
        )
    return result


def screen_monitors(display, root) -> list:
    """
    Monitor rectangles from RandR 1.5 GetMonitors, or the whole screen as a
    single monitor when the server cannot tell us.
    """
    if display.has_extension("RANDR"):
        try:
            reply = root.xrandr_get_monitors(is_active=True)
        except xerror.XError as exc:
            LOG.debug("RandR GetMonitors failed: %s", exc)
        else:
            monitors = [
                (m.x, m.y, m.width_in_pixels, m.height_in_pixels)
                for m in reply.monitors
            ]
            if monitors:
                return monitors
    screen = display.screen()
    return [(0, 0, screen.width_in_pixels, screen.height_in_pixels)]


def scan_fullscreen(display, root, atoms: dict, watched: set) -> list:
    """
    One pass over _NET_CLIENT_LIST: subscribe to property and configure
    events of windows not seen before, and return the per-monitor
    fullscreen snapshot.  `watched` is updated in place.
    """
    prop = root.get_full_property(atoms["_NET_CLIENT_LIST"], Xatom.WINDOW)
    clients = list(prop.value) if prop is not None else []

    windows = []
    for wid in clients:
        window = display.create_resource_object("window", wid)
        try:
            if wid not in watched:
                window.change_attributes(
                    event_mask=X.PropertyChangeMask | X.StructureNotifyMask
                )
                watched.add(wid)
            state = window.get_full_property(atoms["_NET_WM_STATE"], Xatom.ATOM)
            if state is None or atoms["_NET_WM_STATE_FULLSCREEN"] not in state.value:
                continue
            geometry = window.get_geometry()
            origin = root.translate_coords(window, 0, 0)
        except xerror.XError as exc:
            # Closed between listing and query.
            LOG.debug("Skipping window 0x%x: %s", wid, exc)
            continue
        windows.append((origin.x, origin.y, geometry.width, geometry.height))

    watched.intersection_update(clients)
    return fullscreen_outputs(screen_monitors(display, root), windows)


def _ignore_x_error(err, request):
    LOG.debug("X error for a window that went away: %s", err)


class X11FullscreenMonitor:
    """
    Per-monitor fullscreen state from EWMH window hints.

    The X connection runs in a daemon thread with a blocking next_event()
    loop next to the GLib main loop.  The thread only builds snapshots (one
    bool per monitor) and hands them to the main loop with GLib.idle_add;
    everything callers see is read and signalled from the main loop thread.
    """

    def __init__(self):
        self._fullscreen = []
        self._handlers = {}
        self._next_handle = 1

    def monitor_count(self) -> int:
        return len(self._fullscreen)

    def is_monitor_fullscreen(self, index: int) -> bool:
        return self._fullscreen[index]

    def connect_fullscreen_changed(self, func) -> int:
        handle = self._next_handle
        self._next_handle += 1
        self._handlers[handle] = func
        return handle

    def disconnect(self, handle: int) -> None:
        self._handlers.pop(handle, None)

    def publish(self, snapshot: list) -> bool:
        """Main loop side: store a snapshot and signal if it changed."""
        if snapshot != self._fullscreen:
            LOG.debug("Fullscreen monitors: %s", snapshot)
            self._fullscreen = snapshot
            for func in list(self._handlers.values()):
                func()
        return False

    def start(self) -> bool:
        """
        Start the X thread.  Returns False, after logging why, when
        fullscreen monitoring cannot run in this session.

        DISPLAY must be set in the environment.  systemd user services
        only see it once the session has imported it, e.g. with
            systemctl --user import-environment DISPLAY
        (GNOME does this itself) or an EnvironmentFile that sets it.
        """
        display_name = os.getenv("DISPLAY")
        if not display_name:
            LOG.warning(
                "DISPLAY is not set; fullscreen monitoring disabled. "
                "Run 'systemctl --user import-environment DISPLAY' or set it "
                "in the EnvironmentFile."
            )
            return False

        threading.Thread(
            target=self._run_loop,
            args=(display_name,),
            daemon=True,
            name="x11-fullscreen",
        ).start()
        return True

    def _run_loop(self, display_name: str) -> None:
        while True:
            try:
                display = xdisplay.Display(display_name)
            except xerror.DisplayError as exc:
                LOG.error(
                    "Cannot connect to X display %s: %s; retrying in %ds",
                    display_name,
                    exc,
                    X_RECONNECT_DELAY_SEC,
                )
                time.sleep(X_RECONNECT_DELAY_SEC)
                continue

            try:
                self._watch(display)
            except xerror.ConnectionClosedError as exc:
                LOG.warning(
                    "X connection to %s closed: %s; reconnecting in %ds",
                    display_name,
                    exc,
                    X_RECONNECT_DELAY_SEC,
                )
            finally:
                display.close()

            # Nothing is known about the monitors until we reconnect.
            GLib.idle_add(self.publish, [])
            time.sleep(X_RECONNECT_DELAY_SEC)

    def _watch(self, display) -> None:
        root = display.screen().root
        atoms = {name: display.intern_atom(name) for name in EWMH_ATOMS}
        rescan_atoms = (atoms["_NET_CLIENT_LIST"], atoms["_NET_WM_STATE"])
        watched = set()

        display.set_error_handler(_ignore_x_error)
        root.change_attributes(event_mask=X.PropertyChangeMask | X.StructureNotifyMask)
        LOG.info(
            "Watching _NET_WM_STATE_FULLSCREEN on X display %s",
            display.get_display_name(),
        )

        while True:
            GLib.idle_add(self.publish, scan_fullscreen(display, root, atoms, watched))
            # Block for the next relevant event, then drain the queue so a
            # burst of changes costs a single rescan.
            while not _needs_rescan(display.next_event(), rescan_atoms):
                pass
            while display.pending_events():
                display.next_event()


def _needs_rescan(event, rescan_atoms) -> bool:
    if event.type == X.PropertyNotify:
        return event.atom in rescan_atoms
    return event.type == X.ConfigureNotify


# ---------------------------------------------------------------------------
# Watchdog
# ---------------------------------------------------------------------------


def setup_watchdog() -> None:
    """
    Keep a WatchdogSec= unit alive: ping from a GLib timeout at half of
    WATCHDOG_USEC.  The pings come from the same main loop that delivers
    session manager signals, so a wedged loop gets the daemon restarted.
    """
    watchdog_usec = os.getenv("WATCHDOG_USEC")
    if not watchdog_usec:
        return

    interval_sec = int(watchdog_usec) / 2_000_000
    interval_ms = int(interval_sec * 1000)
    LOG.info("Systemd watchdog enabled (ping interval %.1fs)", interval_sec)

    def ping():
        sd_notify("WATCHDOG=1")
        return True

    GLib.timeout_add(interval_ms, ping)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def parse_args(argv=None):
    """
    Parse arguments, with environment variables as defaults.

    Config file format (shell-style key=value):

        # ~/.config/inhibit-suspend/inhibit-suspend.conf
        INHIBIT_SUSPEND_DEBUG=0
        INHIBIT_SUSPEND_FULLSCREEN_DELAY=2
        INHIBIT_SUSPEND_ON_START=0
        # INHIBIT_SUSPEND_NO_FULLSCREEN=0
        # INHIBIT_SUSPEND_REASON=Inhibit by Inhibit Suspend
    """

    def _bool_env(key: str) -> bool:
        v = os.getenv(key, "").strip().lower()
        return v in ("1", "true", "yes")

    parser = ArgumentParser(
        description=__doc__,
        formatter_class=RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        default=_bool_env("INHIBIT_SUSPEND_DEBUG"),
        help="Enable debug logging [env: INHIBIT_SUSPEND_DEBUG]",
    )
    parser.add_argument(
        "--reason",
        default=os.getenv("INHIBIT_SUSPEND_REASON", INHIBIT_REASON),
        metavar="TEXT",
        help=(
            "Reason passed to the session manager with each inhibitor "
            f"(default: {INHIBIT_REASON!r}) [env: INHIBIT_SUSPEND_REASON]"
        ),
    )
    parser.add_argument(
        "--fullscreen-delay",
        type=int,
        default=int(
            os.getenv("INHIBIT_SUSPEND_FULLSCREEN_DELAY", str(FULLSCREEN_CHECK_DELAY_SEC))
        ),
        metavar="SECONDS",
        help=(
            "Seconds a window must stay fullscreen before suspend is inhibited "
            f"(default: {FULLSCREEN_CHECK_DELAY_SEC}) [env: INHIBIT_SUSPEND_FULLSCREEN_DELAY]"
        ),
    )
    parser.add_argument(
        "--no-fullscreen",
        action="store_true",
        default=_bool_env("INHIBIT_SUSPEND_NO_FULLSCREEN"),
        help=(
            "Disable fullscreen monitoring; only the user toggle inhibits "
            "[env: INHIBIT_SUSPEND_NO_FULLSCREEN]"
        ),
    )
    parser.add_argument(
        "--inhibit-on-start",
        action="store_true",
        default=_bool_env("INHIBIT_SUSPEND_ON_START"),
        help="Request the user inhibitor right after startup [env: INHIBIT_SUSPEND_ON_START]",
    )
    return parser.parse_args(argv)


def main():
    args = parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
        stream=sys.stdout,
    )

    LOG.info(
        "Starting inhibit-suspend-daemon (fullscreen=%s, fullscreen-delay=%ds, "
        "inhibit-on-start=%s)",
        "disabled" if args.no_fullscreen else "enabled",
        args.fullscreen_delay,
        args.inhibit_on_start,
    )

    dbus.mainloop.glib.DBusGMainLoop(set_as_default=True)

    try:
        session_bus = dbus.SessionBus()
        client = SessionManagerClient(session_bus, args.reason)
    except dbus.DBusException as exc:
        LOG.error("Cannot connect to session bus: %s", exc)
        sd_notify("STOPPING=1")
        sys.exit(1)

    engine = InhibitorEngine(client)

    def on_enable():
        LOG.info("Suspend inhibited (%s)", ", ".join(engine.registry.causes()))
        sd_notify("STATUS=Suspend inhibited")

    def on_disable():
        LOG.info("Suspend allowed")
        sd_notify("STATUS=Suspend allowed")

    engine.connect_enable(on_enable)
    engine.connect_disable(on_disable)

    watch = None
    if not args.no_fullscreen:
        monitor = X11FullscreenMonitor()
        if monitor.start():
            watch = FullscreenWatch(
                engine,
                monitor,
                GLib.timeout_add_seconds,
                GLib.source_remove,
                args.fullscreen_delay,
            )

    loop = GLib.MainLoop()

    def on_sigterm(_signum, _frame):
        LOG.info("Received SIGTERM, shutting down")
        loop.quit()

    def on_toggle():
        engine.toggle_clicked()
        return False

    def on_sigusr1(_signum, _frame):
        LOG.debug("Received SIGUSR1, toggling")
        GLib.idle_add(on_toggle)

    signal.signal(signal.SIGTERM, on_sigterm)
    signal.signal(signal.SIGUSR1, on_sigusr1)

    setup_watchdog()
    sd_notify("READY=1")
    sd_notify("STATUS=Suspend allowed")

    if args.inhibit_on_start:
        LOG.info("Requesting initial user inhibitor (--inhibit-on-start)")

        def on_start():
            engine.request_inhibit(FORCE_ENABLE_APP_ID)
            return False

        GLib.idle_add(on_start)

    try:
        loop.run()
    except KeyboardInterrupt:
        LOG.info("Interrupted, exiting")
    finally:
        if watch is not None:
            watch.destroy()
        engine.destroy()
        sd_notify("STOPPING=1")


if __name__ == "__main__":
    main()
