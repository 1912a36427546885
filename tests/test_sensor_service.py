import math
import threading
import time

from rover_teleop.l0_core import EventBus, topics
from rover_teleop.l3_domain.sensors.sensor_service import (
    HumidityService, LightService, RangingService, ServiceState,
)


class FakeClock:
    def __init__(self, t=0):
        self.t = t

    def __call__(self):
        return self.t


class FakeChannel:
    """Scripted SensorChannel: reads pop from `values`; an Exception entry is raised."""

    def __init__(self, values=(), attached=True, open_failures=0):
        self.values = list(values)
        self.attached = attached
        self.open_failures = open_failures
        self.open_calls = 0
        self.close_calls = 0

    def open(self, timeout_ms):
        self.open_calls += 1
        if self.open_failures > 0:
            self.open_failures -= 1
            raise TimeoutError(f"no device within {timeout_ms} ms")

    def close(self):
        self.close_calls += 1

    def read(self):
        item = self.values.pop(0) if self.values else (math.nan,)
        if isinstance(item, Exception):
            raise item
        return item

    def is_attached(self):
        return self.attached


def _sonar(channel, clock=None, bus=None):
    bus = bus or EventBus()
    return RangingService("sonar", channel, bus, topics.SONAR, 250, clock=clock or FakeClock(0))


def test_open_then_poll_publishes_every_cycle():
    bus = EventBus()
    seen = []
    bus.subscribe(topics.SONAR, seen.append)
    channel = FakeChannel([(812.0,), (640.0,)])
    svc = _sonar(channel, bus=bus)

    snap = svc.run_cycle()
    assert svc.state() is ServiceState.POLLING
    assert snap.distance_mm == 812.0 and snap.attached and snap.last_error is None
    assert snap.source == "sonar"

    svc.run_cycle()
    assert [s.distance_mm for s in seen] == [812.0, 640.0]
    assert svc.latest() is seen[-1]


def test_invalid_reads_keep_sticky_value():
    channel = FakeChannel([(500.0,), (math.nan,), (0.0,), (-3.0,)])
    svc = _sonar(channel)
    for _ in range(4):
        snap = svc.run_cycle()
    assert snap.distance_mm == 500.0


def test_detached_channel_is_reported():
    channel = FakeChannel([(500.0,)], attached=False)
    snap = _sonar(channel).run_cycle()
    assert snap.attached is False
    assert not snap.is_valid()


def test_open_failure_backs_off():
    clock = FakeClock(0)
    channel = FakeChannel(open_failures=3)
    svc = _sonar(channel, clock)

    snap = svc.run_cycle()
    assert svc.state() is ServiceState.DISCONNECTED
    assert "open" in snap.last_error
    assert channel.close_calls == 1               # released after the failed open

    clock.t = 249
    svc.run_cycle()
    assert channel.open_calls == 1                # still inside the first window
    assert svc.run_cycle().last_error is not None

    clock.t = 250
    svc.run_cycle()
    assert channel.open_calls == 2                # second failure waits 500 ms

    clock.t = 749
    svc.run_cycle()
    assert channel.open_calls == 2
    clock.t = 750
    svc.run_cycle()
    assert channel.open_calls == 3

    clock.t = 10_000
    svc.run_cycle()
    assert svc.state() is ServiceState.POLLING


def test_read_fault_closes_once_and_reconnects():
    clock = FakeClock(0)
    channel = FakeChannel([(700.0,), OSError("hub reset"), (650.0,)])
    svc = _sonar(channel, clock)

    svc.run_cycle()
    snap = svc.run_cycle()
    assert svc.state() is ServiceState.DISCONNECTED
    assert snap.last_error == "sonar read: hub reset"
    assert snap.distance_mm == 700.0
    assert channel.close_calls == 1

    svc.stop()                                    # no thread: already closed
    assert channel.close_calls == 1

    clock.t += 250
    snap = svc.run_cycle()
    assert svc.state() is ServiceState.POLLING
    assert snap.distance_mm == 650.0


def test_stop_closes_exactly_once():
    channel = FakeChannel([(700.0,)])
    svc = _sonar(channel)
    svc.run_cycle()

    svc.stop()
    svc.stop()
    assert channel.close_calls == 1


def test_thread_lifecycle():
    channel = FakeChannel([(700.0,)] * 100)
    svc = RangingService("tof.left", channel, EventBus(), topics.TOF_LEFT, 5)
    svc.start()
    deadline = time.monotonic() + 2.0
    while svc.latest() is None and time.monotonic() < deadline:
        time.sleep(0.01)
    assert svc.is_running()

    svc.stop()
    assert not svc.is_running()
    assert svc.latest().source == "tof.left"
    assert channel.open_calls == 1
    assert channel.close_calls == 1


def test_humidity_values_are_sticky_independently():
    channel = FakeChannel([(45.0, 21.0), (math.nan, 22.5), (47.0, math.inf)])
    svc = HumidityService("humidity", channel, EventBus(), topics.HUMIDITY, clock=FakeClock(0))
    snaps = [svc.run_cycle() for _ in range(3)]
    assert (snaps[1].humidity_percent, snaps[1].temperature_celsius) == (45.0, 22.5)
    assert (snaps[2].humidity_percent, snaps[2].temperature_celsius) == (47.0, 22.5)


def test_light_accepts_zero_lux():
    channel = FakeChannel([(120.0,), (0.0,), (-1.0,)])
    svc = LightService("light", channel, EventBus(), topics.LIGHT, clock=FakeClock(0))
    values = [svc.run_cycle().illuminance_lux for _ in range(3)]
    assert values == [120.0, 0.0, 0.0]


class SlowChannel(FakeChannel):
    """read() blocks until released."""

    def __init__(self):
        super().__init__()
        self.entered = threading.Event()
        self.release = threading.Event()

    def read(self):
        self.entered.set()
        self.release.wait(5.0)
        return (600.0,)


def _wait_until(predicate, timeout_s=2.0):
    deadline = time.monotonic() + timeout_s
    while not predicate() and time.monotonic() < deadline:
        time.sleep(0.01)
    return predicate()


def test_stop_timeout_keeps_the_poller_until_it_exits():
    channel = SlowChannel()
    svc = RangingService("sonar", channel, EventBus(), topics.SONAR, 5)
    svc.start()
    assert channel.entered.wait(2.0)

    svc.stop(join_timeout_s=0.05)
    assert svc.is_running()                       # stuck inside read()
    svc.start()                                   # must not add a second poller
    assert channel.open_calls == 1

    channel.release.set()
    assert _wait_until(lambda: not svc.is_running())
    assert channel.open_calls == 1
    assert channel.close_calls == 1

    svc.start()
    assert _wait_until(lambda: channel.open_calls == 2)
    svc.stop()
    assert channel.close_calls == 2
