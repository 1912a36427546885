from rover_teleop.l0_core import EventBus, topics
from rover_teleop.l0_core.events import FinalizeMissionCmd
from rover_teleop.l1_drivers.gamepad import NullHaptics, PadStateTracker
from rover_teleop.l2_phidget.channels import ChannelKind
from rover_teleop.l2_phidget.net import PhidgetServer
from rover_teleop.l2_phidget.sensor_channel import PhidgetSensorChannel
from rover_teleop.l2_phidget.sim import SimPhidgetHub
from rover_teleop.l2_phidget.vehicle_link import PhidgetVehicleLink
from rover_teleop.l3_domain.mission.aggregator import MissionAggregator
from rover_teleop.l3_domain.mission.report import JsonReportWriter, MissionReporter
from rover_teleop.l3_domain.odometry import OdometryEngine
from rover_teleop.l3_domain.safety import SafetyCoordinator
from rover_teleop.l3_domain.sensors.sensor_service import RangingService
from rover_teleop.l3_domain.state_store import SensorStateStore
from rover_teleop.l3_domain.teleop import TeleopControlLoop
from rover_teleop.l3_domain.vehicle import Actuator


class FakeClock:
    def __init__(self, t=0):
        self.t = t

    def __call__(self):
        return self.t


class TrackerPad:
    def __init__(self):
        self.tracker = PadStateTracker()
        self.tracker.set_connected(True)
        self.haptics = NullHaptics()

    def state(self):
        return self.tracker.state()

    def consume_emergency_stop_press(self):
        return self.tracker.consume_emergency_stop_press()


def test_sonar_over_sim_hub_gates_the_motors(tmp_path):
    clock = FakeClock(0)
    distance = [900.0]
    hub = SimPhidgetHub("MaxRover")
    hub.add_motors(4)
    hub.add_device(3, ChannelKind.DISTANCE, lambda: (distance[0],))
    server = PhidgetServer("MaxRover", "sim", net=hub.net)

    bus = EventBus()
    sonar = RangingService("sonar", PhidgetSensorChannel(server, ChannelKind.DISTANCE, 3, factory=hub.factory),
                           bus, topics.SONAR, 250, clock=clock)
    odometry = OdometryEngine(clock=clock)
    mission = MissionAggregator(odometry, clock=clock)
    mission.attach(bus)
    safety = SafetyCoordinator(clock=clock)
    safety.attach(bus)
    link = PhidgetVehicleLink(server, 4, factory=hub.factory)
    link.connect()
    pad = TrackerPad()
    loop = TeleopControlLoop(bus, pad, Actuator(link, safety), safety, odometry,
                             SensorStateStore(bus), [sonar], clock=clock)

    pad.tracker.apply("ABS_RZ", 255)
    for _ in range(10):
        sonar.run_cycle()
        loop.tick()
        clock.t += 50
    assert hub.wheels == (1.0, 1.0)
    assert odometry.pose().x > 0

    distance[0] = 200.0
    sonar.run_cycle()
    loop.tick()
    assert safety.snapshot().obstacle_active
    assert hub.wheels == (0.0, 0.0)

    path = MissionReporter(mission, JsonReportWriter(tmp_path))(FinalizeMissionCmd())
    assert path.exists()

    loop.shutdown()
    assert not hub.is_channel_open(3, ChannelKind.DISTANCE)
    assert not hub.is_channel_open(4, ChannelKind.MOTOR, 0)
