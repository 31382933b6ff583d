import pytest

from suspend_inhibitor import FULLSCREEN_APP_ID, FullscreenWatch, InhibitorEngine


@pytest.fixture
def engine(bus):
    return InhibitorEngine(bus)


@pytest.fixture
def watch(engine, display, timers):
    return FullscreenWatch(engine, display, timers.timeout_add, timers.source_remove)


def hold_fullscreen_inhibitor(bus, object_ref="/inhibitor/fs"):
    bus.complete_inhibit()
    bus.add_object(object_ref, FULLSCREEN_APP_ID)


def test_signal_without_fullscreen_issues_nothing(watch, display, timers, bus):
    display.set_fullscreen(0, False)
    timers.advance(2)

    assert bus.inhibit_calls == []
    assert bus.uninhibit_calls == []


def test_fullscreen_inhibits_after_delay(watch, display, timers, bus):
    display.set_fullscreen(1, True)
    assert bus.inhibit_calls == []

    timers.advance(1)
    assert bus.inhibit_calls == []

    timers.advance(1)
    assert bus.inhibit_calls == [FULLSCREEN_APP_ID]


def test_repeated_signals_share_one_check(watch, display, timers, bus):
    display.set_fullscreen(0, True)
    timers.advance(1)
    display.set_fullscreen(1, True)
    assert len(timers.sources) == 1

    timers.advance(5)
    assert bus.inhibit_calls == [FULLSCREEN_APP_ID]


def test_unconfirmed_request_is_retried_next_time(watch, engine, display, timers, bus):
    display.set_fullscreen(0, True)
    timers.advance(2)
    # Acknowledged, but InhibitorAdded never resolves to our app id.
    bus.complete_inhibit()
    assert engine.is_pending(FULLSCREEN_APP_ID)

    display.set_fullscreen(0, False)
    timers.advance(2)
    display.set_fullscreen(0, True)
    timers.advance(2)
    assert bus.inhibit_calls == [FULLSCREEN_APP_ID, FULLSCREEN_APP_ID]

    hold_fullscreen_inhibitor(bus)
    assert engine.has_cause(FULLSCREEN_APP_ID)
    assert engine.active


def test_no_request_when_record_exists(watch, engine, display, timers, bus):
    display.set_fullscreen(0, True)
    timers.advance(2)
    hold_fullscreen_inhibitor(bus)
    assert engine.has_cause(FULLSCREEN_APP_ID)

    display.set_fullscreen(1, True)
    timers.advance(2)
    assert bus.inhibit_calls == [FULLSCREEN_APP_ID]


def test_check_reevaluates_at_fire_time(watch, display, timers, bus):
    display.set_fullscreen(0, True)
    display.fullscreen[0] = False
    timers.advance(2)
    assert bus.inhibit_calls == []


def test_leaving_fullscreen_releases_immediately(watch, engine, display, timers, bus):
    display.set_fullscreen(0, True)
    timers.advance(2)
    hold_fullscreen_inhibitor(bus)
    cookie = engine.registry.get(0).cookie

    display.set_fullscreen(0, False)
    assert bus.uninhibit_calls == [cookie]

    bus.remove_object("/inhibitor/fs")
    assert not engine.active


def test_other_output_still_fullscreen_keeps_inhibitor(watch, display, timers, bus):
    display.set_fullscreen(0, True)
    display.set_fullscreen(1, True)
    timers.advance(2)
    hold_fullscreen_inhibitor(bus)

    display.set_fullscreen(0, False)
    assert bus.uninhibit_calls == []


def test_destroy_cancels_check(watch, display, timers, bus):
    display.set_fullscreen(0, True)
    watch.destroy()

    assert timers.sources == {}
    assert display.handlers == {}
    timers.advance(2)
    assert bus.inhibit_calls == []
