import threading

import pytest

from rover_teleop.l0_core import CommandBus, EventBus, topics
from rover_teleop.l0_core.events import (
    DriveCommand, FinalizeMissionCmd, RangingSnapshot, ResetEmergencyStopCmd,
)


def _sonar(distance=500.0):
    return RangingSnapshot(distance, True, 1)


def test_each_handler_receives_exactly_one_delivery():
    bus = EventBus()
    seen_a, seen_b = [], []
    bus.subscribe(topics.SONAR, seen_a.append)
    bus.subscribe(topics.SONAR, seen_b.append)

    snap = _sonar()
    assert bus.publish(topics.SONAR, snap) == 2

    assert seen_a == [snap]
    assert seen_b == [snap]


def test_throwing_handler_does_not_block_later_handlers():
    bus = EventBus()
    seen = []

    def boom(_):
        raise RuntimeError("handler failed")

    bus.subscribe(topics.SONAR, boom)
    bus.subscribe(topics.SONAR, seen.append)

    assert bus.publish(topics.SONAR, _sonar()) == 1
    assert len(seen) == 1

    assert bus.fault_count() == 1
    fault = bus.faults()[0]
    assert fault.code == "BUS_HANDLER_FAILED"
    assert fault.context["topic"] == "sonar.update"
    assert "RuntimeError" in fault.message


def test_handler_added_during_publish_waits_for_next_event():
    bus = EventBus()
    late = []

    def subscribe_late(_):
        bus.subscribe(topics.SONAR, late.append)

    bus.subscribe(topics.SONAR, subscribe_late)
    bus.publish(topics.SONAR, _sonar(1.0))
    assert late == []

    bus.publish(topics.SONAR, _sonar(2.0))
    assert [s.distance_mm for s in late] == [2.0]


def test_publish_rejects_wrong_payload_type():
    bus = EventBus()
    seen = []
    bus.subscribe(topics.SONAR, seen.append)

    with pytest.raises(TypeError):
        bus.publish(topics.SONAR, DriveCommand(0.1, 0.1))
    assert seen == []


def test_topics_are_isolated():
    bus = EventBus()
    sonar, tof = [], []
    bus.subscribe(topics.SONAR, sonar.append)
    bus.subscribe(topics.TOF_LEFT, tof.append)

    bus.publish(topics.TOF_LEFT, _sonar())
    assert sonar == [] and len(tof) == 1


def test_unsubscribe_removes_first_registration_only():
    bus = EventBus()
    seen = []
    bus.subscribe(topics.SONAR, seen.append)
    bus.subscribe(topics.SONAR, seen.append)

    bus.unsubscribe(topics.SONAR, seen.append)
    assert bus.subscriber_count(topics.SONAR) == 1
    bus.publish(topics.SONAR, _sonar())
    assert len(seen) == 1

    bus.unsubscribe(topics.SONAR, seen.append)
    bus.unsubscribe(topics.SONAR, seen.append)   # unknown: no-op
    assert bus.subscriber_count(topics.SONAR) == 0
    assert bus.publish(topics.SONAR, _sonar()) == 0


def test_unsubscribe_all():
    bus = EventBus()
    bus.subscribe(topics.SONAR, lambda e: None)
    bus.subscribe(topics.DRIVE, lambda e: None)
    bus.unsubscribe_all()
    assert bus.subscriber_count(topics.SONAR) == 0
    assert bus.subscriber_count(topics.DRIVE) == 0


def test_command_bus_routes_to_single_handler():
    commands = CommandBus()
    commands.register(FinalizeMissionCmd, lambda cmd: f"finalized:{cmd.reason}")

    assert commands.call(FinalizeMissionCmd(reason="cli")) == "finalized:cli"

    with pytest.raises(ValueError):
        commands.register(FinalizeMissionCmd, lambda cmd: None)


def test_command_bus_unknown_command():
    commands = CommandBus()
    with pytest.raises(LookupError):
        commands.call(ResetEmergencyStopCmd())

    commands.register(ResetEmergencyStopCmd, lambda cmd: True)
    commands.unregister(ResetEmergencyStopCmd)
    with pytest.raises(LookupError):
        commands.call(ResetEmergencyStopCmd())


def test_concurrent_publish_with_subscription_churn():
    bus = EventBus()
    publishers, per_thread = 4, 500
    stable = [[] for _ in range(3)]
    for seen in stable:
        bus.subscribe(topics.SONAR, seen.append)

    start = threading.Barrier(publishers + 2)
    done = threading.Event()

    def publish(offset):
        start.wait()
        for i in range(per_thread):
            bus.publish(topics.SONAR, _sonar(float(offset * per_thread + i + 1)))

    def churn():
        def transient(_):
            pass
        start.wait()
        while not done.is_set():
            bus.subscribe(topics.SONAR, transient)
            bus.unsubscribe(topics.SONAR, transient)

    churners = [threading.Thread(target=churn) for _ in range(2)]
    workers = [threading.Thread(target=publish, args=(n,)) for n in range(publishers)]
    for t in churners + workers:
        t.start()
    for t in workers:
        t.join(timeout=10)
    done.set()
    for t in churners:
        t.join(timeout=10)

    expected = [float(n) for n in range(1, publishers * per_thread + 1)]
    for seen in stable:
        assert sorted(s.distance_mm for s in seen) == expected
    assert bus.subscriber_count(topics.SONAR) == len(stable)
    assert bus.fault_count() == 0
