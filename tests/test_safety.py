import pytest

from rover_teleop.l0_core import EventBus, topics
from rover_teleop.l0_core.events import RangingSnapshot
from rover_teleop.l3_domain.safety import ObstacleHysteresis, SafetyCoordinator
from rover_teleop.l3_domain.sensors.sensor_service import RangingService


class FakeClock:
    def __init__(self, t=0):
        self.t = t

    def __call__(self):
        return self.t


class FakeLink:
    def __init__(self, connected=True, reconnects=True):
        self.connected = connected
        self.reconnects = reconnects
        self.connect_calls = 0

    def is_connected(self):
        return self.connected

    def connect(self):
        self.connect_calls += 1
        if not self.reconnects:
            raise ConnectionError("hub unreachable")
        self.connected = True


def _ranging(distance, source="sonar", attached=True):
    return RangingSnapshot(distance, attached, 0, source=source)


def test_hysteresis_activates_holds_and_releases():
    h = ObstacleHysteresis(250, 60)
    assert h.update(240) is True
    assert h.update(290) is True
    assert h.update(311) is False


def test_hysteresis_boundaries():
    h = ObstacleHysteresis(250, 60)
    assert h.update(251) is False
    assert h.update(250) is True
    assert h.update(310) is True
    assert h.update(310.5) is False


@pytest.mark.parametrize("bad", [None, float("nan"), 0.0, -5.0])
def test_hysteresis_invalid_input_deactivates(bad):
    h = ObstacleHysteresis()
    h.update(100)
    assert h.update(bad) is False


def test_obstacle_uses_closest_fresh_reading():
    clock = FakeClock(0)
    safety = SafetyCoordinator(clock=clock)
    safety.on_ranging(_ranging(900, "sonar"))
    safety.on_ranging(_ranging(200, "tof.left"))

    assert safety.closest_fresh_distance() == 200
    assert safety.evaluate_obstacle() is True
    assert safety.snapshot().obstacle_active is True


def test_stale_reading_forces_obstacle_off():
    clock = FakeClock(0)
    safety = SafetyCoordinator(stale_ms=1200, clock=clock)
    safety.on_ranging(_ranging(100))
    assert safety.evaluate_obstacle() is True

    clock.t = 1201
    assert safety.closest_fresh_distance() is None
    assert safety.evaluate_obstacle() is False


def test_invalid_readings_are_ignored():
    safety = SafetyCoordinator(clock=FakeClock(0))
    safety.on_ranging(_ranging(100, attached=False))
    safety.on_ranging(_ranging(float("nan")))
    assert safety.closest_fresh_distance() is None


def test_attach_feeds_from_bus():
    bus = EventBus()
    safety = SafetyCoordinator(clock=FakeClock(0))
    safety.attach(bus)
    bus.publish(topics.TOF_RIGHT, _ranging(150, "tof.right"))
    assert safety.closest_fresh_distance() == 150

    safety.detach(bus)
    assert bus.subscriber_count(topics.TOF_RIGHT) == 0


def test_emergency_toggle_and_reset():
    safety = SafetyCoordinator(clock=FakeClock(0))
    assert safety.on_emergency_press() is True
    assert safety.gate(0.8, 0.8) == (0.0, 0.0)
    assert safety.on_emergency_press() is False

    safety.trigger_emergency_stop()
    assert safety.snapshot().emergency_stop_active is True
    safety.reset_emergency_stop()
    assert safety.snapshot().emergency_stop_active is False


def test_obstacle_gate_keeps_reverse_and_turning():
    safety = SafetyCoordinator(clock=FakeClock(0))
    safety.on_ranging(_ranging(100))
    safety.evaluate_obstacle()

    assert safety.gate(0.6, 0.6) == (0.0, 0.0)
    assert safety.gate(-0.5, -0.5) == (-0.5, -0.5)
    assert safety.gate(-0.4, 0.4) == (-0.4, 0.4)
    left, right = safety.gate(0.8, 0.4)
    assert (left, right) == (pytest.approx(0.2), pytest.approx(-0.2))


def test_reconnect_at_most_once_per_window():
    clock = FakeClock(0)
    safety = SafetyCoordinator(clock=clock)
    link = FakeLink(connected=False, reconnects=False)

    for _ in range(500):          # 5 s of 10 ms checks
        assert safety.check_link(link) is False
        clock.t += 10

    assert link.connect_calls == 3          # t = 0, 2000, 4000
    assert safety.snapshot().link_lost is True


def test_reconnect_success_clears_link_lost():
    clock = FakeClock(0)
    safety = SafetyCoordinator(clock=clock)
    link = FakeLink(connected=False, reconnects=True)

    assert safety.check_link(link) is True
    assert link.connect_calls == 1
    assert safety.snapshot().link_lost is False


def test_healthy_link_is_not_reconnected():
    safety = SafetyCoordinator(clock=FakeClock(0))
    link = FakeLink(connected=True)
    for _ in range(10):
        safety.check_link(link)
    assert link.connect_calls == 0
    assert safety.reconnect_attempts() == 0


class EchoLossChannel:
    """One good sonar read, then nothing but NaN."""

    def __init__(self):
        self.reads = 0

    def open(self, timeout_ms):
        pass

    def close(self):
        pass

    def read(self):
        self.reads += 1
        return (200.0,) if self.reads == 1 else (float("nan"),)

    def is_attached(self):
        return True


def test_held_distance_goes_stale_after_echo_loss():
    clock = FakeClock(0)
    bus = EventBus()
    safety = SafetyCoordinator(clock=clock)
    safety.attach(bus)
    sonar = RangingService("sonar", EchoLossChannel(), bus, topics.SONAR, 250, clock=clock)

    sonar.run_cycle()
    assert safety.evaluate_obstacle() is True

    for _ in range(40):                    # 10 s of NaN reads
        clock.t += 250
        snap = sonar.run_cycle()
        safety.evaluate_obstacle()
    assert snap.distance_mm == 200.0        # still held for display
    assert snap.value_time_ms == 0
    assert safety.snapshot().obstacle_active is False
    assert safety.gate(1.0, 1.0) == (1.0, 1.0)


def test_held_distance_is_fresh_inside_the_window():
    clock = FakeClock(0)
    safety = SafetyCoordinator(stale_ms=1200, clock=clock)
    clock.t = 1000
    safety.on_ranging(RangingSnapshot(150.0, True, 1000, source="sonar", value_timestamp_millis=0))
    assert safety.closest_fresh_distance() == 150.0
    clock.t = 1201
    safety.on_ranging(RangingSnapshot(150.0, True, 1201, source="sonar", value_timestamp_millis=0))
    assert safety.closest_fresh_distance() is None


class BrokenCheckLink(FakeLink):
    def is_connected(self):
        raise ConnectionError("link check failed")


def test_failing_link_check_counts_as_lost():
    clock = FakeClock(0)
    safety = SafetyCoordinator(clock=clock)
    link = BrokenCheckLink(connected=True)

    assert safety.check_link(link) is False
    assert safety.snapshot().link_lost is True
    assert link.connect_calls == 1

    clock.t = 500
    assert safety.check_link(link) is False
    assert link.connect_calls == 1          # reconnect window still closed
