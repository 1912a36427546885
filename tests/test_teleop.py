import pytest

from rover_teleop.l0_core import EventBus, topics
from rover_teleop.l0_core.events import RangingSnapshot
from rover_teleop.l1_drivers.gamepad import PadStateTracker
from rover_teleop.l3_domain.odometry import OdometryEngine
from rover_teleop.l3_domain.safety import SafetyCoordinator
from rover_teleop.l3_domain.state_store import SensorStateStore
from rover_teleop.l3_domain.teleop import (
    LINK_LOST_PULSE, OBSTACLE_PULSE, TeleopControlLoop, shape_command,
)
from rover_teleop.l3_domain.vehicle import Actuator


class FakeClock:
    def __init__(self, t=0):
        self.t = t

    def __call__(self):
        return self.t


class RecordingHaptics:
    supported = True

    def __init__(self, calls):
        self.calls = calls
        self.pulses = []

    def pulse(self, left, right, duration_ms):
        self.pulses.append((left, right, duration_ms))

    def stop(self):
        self.calls.append("haptics.stop")


class FakePad:
    """Input device driven through a real PadStateTracker."""

    def __init__(self, calls=None):
        self.tracker = PadStateTracker()
        self.tracker.set_connected(True)
        self.haptics = RecordingHaptics(calls if calls is not None else [])

    def state(self):
        return self.tracker.state()

    def consume_emergency_stop_press(self):
        return self.tracker.consume_emergency_stop_press()


class FakeLink:
    def __init__(self, calls=None):
        self.calls = calls if calls is not None else []
        self.connected = True
        self.fail_writes = False
        self.wheels = (0.0, 0.0)

    def connect(self):
        self.calls.append("connect")
        self.connected = True

    def disconnect(self):
        self.calls.append("disconnect")

    def is_connected(self):
        return self.connected

    def set_wheel_speeds(self, left, right):
        if self.fail_writes:
            raise ConnectionError("write failed")
        self.wheels = (left, right)

    def stop(self):
        self.calls.append("link.stop")
        self.wheels = (0.0, 0.0)


class FakeService:
    def __init__(self, name, calls):
        self.name = name
        self.calls = calls

    def stop(self):
        self.calls.append(f"svc:{self.name}")


def _loop(clock=None, calls=None, services=()):
    clock = clock or FakeClock(0)
    bus = EventBus()
    safety = SafetyCoordinator(clock=clock)
    safety.attach(bus)
    link = FakeLink(calls)
    pad = FakePad(calls)
    odometry = OdometryEngine(clock=clock)
    loop = TeleopControlLoop(bus, pad, Actuator(link, safety), safety, odometry,
                             SensorStateStore(bus), services, clock=clock)
    drives = []
    bus.subscribe(topics.DRIVE, drives.append)
    return loop, bus, pad, link, safety, drives


def test_shape_command():
    assert shape_command(1.0, 0.0, 0.0) == (1.0, 1.0)
    assert shape_command(0.0, 1.0, 0.0) == (-1.0, -1.0)
    assert shape_command(0.0, 0.0, 0.05) == (0.0, 0.0)

    left, right = shape_command(0.0, 0.0, 1.0)
    assert left == pytest.approx(0.8) and right == pytest.approx(-0.8)

    # turn authority halves at full throttle
    left, right = shape_command(1.0, 0.0, 1.0)
    assert left == pytest.approx(1.0) and right == pytest.approx(0.6)


def test_tick_drives_the_wheels():
    loop, bus, pad, link, safety, drives = _loop()
    pad.tracker.apply("ABS_RZ", 255)

    loop.tick()
    assert link.wheels == (1.0, 1.0)
    assert (drives[-1].left, drives[-1].right) == (1.0, 1.0)


def test_slow_mode_from_lb():
    loop, bus, pad, link, safety, drives = _loop()
    pad.tracker.apply("ABS_RZ", 255)
    pad.tracker.apply("BTN_TL", 1)

    loop.tick()
    assert loop.ui_snapshot().slow_mode is True
    assert link.wheels == (pytest.approx(0.4), pytest.approx(0.4))


def test_emergency_stop_forces_zero_and_held_button_does_not_toggle_twice():
    loop, bus, pad, link, safety, drives = _loop()
    pad.tracker.apply("ABS_RZ", 255)
    pad.tracker.apply("BTN_EAST", 1)

    for _ in range(5):            # button held across ticks
        loop.tick()
        assert safety.snapshot().emergency_stop_active is True
        assert link.wheels == (0.0, 0.0)
        assert drives[-1].is_zero

    pad.tracker.apply("BTN_EAST", 0)
    loop.tick()
    assert safety.snapshot().emergency_stop_active is True

    pad.tracker.apply("BTN_EAST", 1)
    loop.tick()
    assert safety.snapshot().emergency_stop_active is False
    assert link.wheels == (1.0, 1.0)


def test_disconnected_pad_stops_rover():
    loop, bus, pad, link, safety, drives = _loop()
    pad.tracker.apply("ABS_RZ", 255)
    loop.tick()

    pad.tracker.set_connected(False)
    loop.tick()
    assert link.wheels == (0.0, 0.0)
    assert "link.stop" in link.calls
    assert drives[-1].is_zero


def test_obstacle_blocks_forward_and_rumbles_once():
    clock = FakeClock(0)
    loop, bus, pad, link, safety, drives = _loop(clock)
    bus.publish(topics.SONAR, RangingSnapshot(120.0, True, 0, source="sonar"))
    pad.tracker.apply("ABS_RZ", 255)

    loop.tick()
    loop.tick()
    assert link.wheels == (0.0, 0.0)
    assert pad.haptics.pulses == [OBSTACLE_PULSE]

    pad.tracker.apply("ABS_RZ", 0)
    pad.tracker.apply("ABS_Z", 255)        # reverse is still allowed
    loop.tick()
    assert link.wheels == (-1.0, -1.0)


def test_failed_write_marks_link_lost():
    loop, bus, pad, link, safety, drives = _loop()
    pad.tracker.apply("ABS_RZ", 255)
    link.fail_writes = True

    loop.tick()
    assert safety.snapshot().link_lost is True
    assert drives[-1].is_zero
    assert pad.haptics.pulses == [LINK_LOST_PULSE]


def test_lost_link_is_not_written_and_reconnect_is_throttled():
    clock = FakeClock(0)
    loop, bus, pad, link, safety, drives = _loop(clock)
    pad.tracker.apply("ABS_RZ", 255)
    link.connected = False
    link.connect = lambda: link.calls.append("connect")   # never comes back

    for _ in range(40):            # 2 s at 50 ms
        loop.tick()
        clock.t += 50

    assert link.calls.count("connect") == 1
    assert link.wheels == (0.0, 0.0)
    assert loop.ui_snapshot().rover_connected is False


def test_ui_snapshot_cadence():
    clock = FakeClock(0)
    loop, bus, pad, link, safety, drives = _loop(clock)
    snaps = []
    bus.subscribe(topics.UI, snaps.append)

    for _ in range(20):            # 1 s at 50 ms
        loop.tick()
        clock.t += 50

    assert [s.timestamp_millis for s in snaps] == [0, 200, 400, 600, 800]
    assert snaps[0].pad_connected is True


def test_drive_feeds_pose_in_snapshot():
    clock = FakeClock(0)
    loop, bus, pad, link, safety, drives = _loop(clock)
    odometry = loop._odometry
    bus.subscribe(topics.DRIVE, lambda cmd: odometry.update_from_commands(cmd.left, cmd.right))
    pad.tracker.apply("ABS_RZ", 255)

    for _ in range(5):
        loop.tick()
        clock.t += 50
    assert loop.ui_snapshot().pose.x > 0


def test_shutdown_order_and_idempotence():
    calls = []
    services = [FakeService("sonar", calls), FakeService("light", calls)]
    loop, bus, pad, link, safety, drives = _loop(calls=calls, services=services)

    loop.shutdown()
    loop.shutdown()

    assert calls == ["link.stop", "haptics.stop", "disconnect", "svc:sonar", "svc:light"]
    assert bus.subscriber_count(topics.DRIVE) == 0
    assert bus.subscriber_count(topics.SONAR) == 0


def test_shutdown_continues_after_a_failing_step():
    calls = []

    class BrokenService(FakeService):
        def stop(self):
            raise RuntimeError("stuck")

    services = [BrokenService("sonar", calls), FakeService("light", calls)]
    loop, bus, pad, link, safety, drives = _loop(calls=calls, services=services)

    loop.shutdown()
    assert calls[-1] == "svc:light"
    assert bus.subscriber_count(topics.UI) == 0


def _break_link_check(link):
    def broken():
        raise ConnectionError("link check failed")
    link.is_connected = broken


def test_failing_link_check_still_stops_on_pad_loss():
    loop, bus, pad, link, safety, drives = _loop()
    pad.tracker.apply("ABS_RZ", 255)
    loop.tick()
    assert link.wheels == (1.0, 1.0)

    _break_link_check(link)
    pad.tracker.set_connected(False)
    loop.tick()
    assert link.wheels == (0.0, 0.0)
    assert safety.snapshot().link_lost is True
    assert drives[-1].is_zero


def test_failing_link_check_with_pad_connected_stops_the_wheels():
    loop, bus, pad, link, safety, drives = _loop()
    pad.tracker.apply("ABS_RZ", 255)
    loop.tick()

    _break_link_check(link)
    loop.tick()
    assert link.wheels == (0.0, 0.0)
    assert drives[-1].is_zero
    assert pad.haptics.pulses == [LINK_LOST_PULSE]
