#!/usr/bin/env python3
from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from dataclasses import dataclass, field
from typing import Callable, List

from Phidget22.PhidgetException import PhidgetException

from rover_teleop.l0_core import CommandBus, EventBus, topics
from rover_teleop.l0_core.events import FinalizeMissionCmd, ResetEmergencyStopCmd, UiSnapshot
from rover_teleop.l1_drivers.gamepad import InputsGamepad
from rover_teleop.l2_phidget.channels import ChannelFactory, ChannelKind, describe, phidget_factory
from rover_teleop.l2_phidget.net import PhidgetServer
from rover_teleop.l2_phidget.sensor_channel import PhidgetSensorChannel
from rover_teleop.l2_phidget.sim import bench_hub
from rover_teleop.l2_phidget.vehicle_link import PhidgetVehicleLink
from rover_teleop.l3_domain.config import ConfigError, RoverConfig, load_config
from rover_teleop.l3_domain.mission.aggregator import MissionAggregator
from rover_teleop.l3_domain.mission.report import JsonReportWriter, MissionReporter
from rover_teleop.l3_domain.odometry import OdometryEngine
from rover_teleop.l3_domain.safety import SafetyCoordinator
from rover_teleop.l3_domain.sensors.sensor_service import (
    HUMIDITY_PERIOD_MS, LIGHT_PERIOD_MS, SONAR_PERIOD_MS, TOF_PERIOD_MS,
    HumidityService, LightService, RangingService, SensorService,
)
from rover_teleop.l3_domain.sensors.sonar_risk import SonarRiskMonitor
from rover_teleop.l3_domain.state_store import SensorStateStore
from rover_teleop.l3_domain.teleop import TeleopControlLoop
from rover_teleop.l3_domain.vehicle import Actuator

STATUS_PERIOD_MS = 1000

log = logging.getLogger("teleop")


@dataclass
class Stack:
    bus: EventBus
    commands: CommandBus
    server: PhidgetServer
    pad: InputsGamepad
    loop: TeleopControlLoop
    services: List[SensorService] = field(default_factory=list)


def _status_printer() -> Callable[[UiSnapshot], None]:
    next_at = [0]

    def _cb(snap: UiSnapshot) -> None:
        if snap.timestamp_millis < next_at[0]:
            return
        next_at[0] = snap.timestamp_millis + STATUS_PERIOD_MS
        s = snap.safety
        sonar = f"{snap.sonar.distance_mm:.0f}mm" if snap.sonar else "?"
        print(f"[STATUS] rover={'ok' if snap.rover_connected else 'LOST'} "
              f"pad={'ok' if snap.pad_connected else '--'} "
              f"cmd=({snap.left_cmd:+.2f},{snap.right_cmd:+.2f}){' SLOW' if snap.slow_mode else ''} "
              f"estop={'ON' if s.emergency_stop_active else 'off'} "
              f"obstacle={'YES' if s.obstacle_active else 'no'} sonar={sonar} "
              f"dist={snap.total_distance_m:.2f}m")
    return _cb


def build_stack(cfg: RoverConfig, sim: bool = False) -> Stack:
    """
    Wire every component. Nothing touches hardware here except the
    best-effort first rover connect; the sensor services open their channels
    on their own threads once started.
    """
    cfg.validate()

    # 1) Messaging backbone ------------------------------------------------------
    bus = EventBus()
    commands = CommandBus()

    # 2) Phidget network server (one registration shared by motors and sensors)
    factory: ChannelFactory = phidget_factory
    if sim:
        hub = bench_hub(cfg.server_name, cfg.motor_hub_port, cfg.sonar_hub_port,
                        cfg.humidity_hub_port, cfg.light_hub_port,
                        cfg.tof_left_hub_port, cfg.tof_right_hub_port)
        server = PhidgetServer(cfg.server_name, "sim", cfg.port, net=hub.net)
        factory = hub.factory
        log.info("using simulated hub '%s'", cfg.server_name)
    else:
        server = PhidgetServer(cfg.server_name, cfg.host, cfg.port)

    # 3) Sensor services ---------------------------------------------------------
    def channel(hub_port: int, kind: ChannelKind) -> PhidgetSensorChannel:
        return PhidgetSensorChannel(server, kind, hub_port, factory=factory)

    services: List[SensorService] = [
        RangingService("sonar", channel(cfg.sonar_hub_port, ChannelKind.DISTANCE),
                       bus, topics.SONAR, SONAR_PERIOD_MS),
        RangingService("tof.left", channel(cfg.tof_left_hub_port, ChannelKind.DISTANCE),
                       bus, topics.TOF_LEFT, TOF_PERIOD_MS),
        RangingService("tof.right", channel(cfg.tof_right_hub_port, ChannelKind.DISTANCE),
                       bus, topics.TOF_RIGHT, TOF_PERIOD_MS),
        HumidityService("humidity", channel(cfg.humidity_hub_port, ChannelKind.HUMIDITY),
                        bus, topics.HUMIDITY, HUMIDITY_PERIOD_MS),
        LightService("light", channel(cfg.light_hub_port, ChannelKind.LIGHT),
                     bus, topics.LIGHT, LIGHT_PERIOD_MS),
    ]

    # 4) Domain ------------------------------------------------------------------
    store = SensorStateStore(bus)
    odometry = OdometryEngine()
    mission = MissionAggregator(odometry)
    mission.attach(bus)
    SonarRiskMonitor(bus).attach()

    safety = SafetyCoordinator()
    safety.attach(bus)

    link = PhidgetVehicleLink(server, cfg.motor_hub_port, cfg.invert_left, cfg.invert_right,
                              factory=factory)
    actuator = Actuator(link, safety)

    pad = InputsGamepad(player_index=cfg.player_index)
    loop = TeleopControlLoop(bus, pad, actuator, safety, odometry, store, services)

    # 5) Commands from the dashboard --------------------------------------------
    commands.register(FinalizeMissionCmd, MissionReporter(mission, JsonReportWriter(cfg.report_dir)))
    commands.register(ResetEmergencyStopCmd, lambda cmd: safety.reset_emergency_stop())

    try:
        link.connect()
    except PhidgetException as ex:
        log.warning("rover not reachable yet (%s); will retry", describe(ex))

    return Stack(bus, commands, server, pad, loop, services)


def print_help() -> None:
    print("""
Commands:
  report   - finalize the mission, write its report, start a new one
  reset    - release the emergency stop
  help     - show this help
  quit     - stop the rover and exit
""")


def main() -> int:
    parser = argparse.ArgumentParser(description="Rover teleoperation runner")
    parser.add_argument("--config", help="YAML/JSON config file")
    parser.add_argument("--host", help="Network hub address")
    parser.add_argument("--port", type=int, help="Phidget network server port")
    parser.add_argument("--server-name", help="Phidget network server name")
    parser.add_argument("--player", type=int, help="Gamepad index")
    parser.add_argument("--report-dir", help="Directory for mission reports")
    parser.add_argument("--sim", action="store_true", help="Run against an in-process simulated hub")
    parser.add_argument("--status", action="store_true", help="Print a status line every second")
    parser.add_argument("--log-level", default="INFO",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Logging level")
    args = parser.parse_args()

    logging.basicConfig(level=args.log_level,
                        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s")

    try:
        cfg = load_config(args.config) if args.config else RoverConfig()
        cfg = cfg.with_overrides(host=args.host, port=args.port, server_name=args.server_name,
                                 player_index=args.player, report_dir=args.report_dir).validate()
    except (ConfigError, FileNotFoundError) as ex:
        log.error("invalid configuration: %s", ex)
        return 2

    stack = build_stack(cfg, sim=args.sim)
    if args.status:
        stack.bus.subscribe(topics.UI, _status_printer())

    def _shutdown() -> None:
        stack.loop.shutdown()
        stack.pad.stop()
        stack.server.remove()

    def _on_sigterm(sig, frame):
        log.info("SIGTERM received, shutting down")
        _shutdown()
        sys.exit(0)

    signal.signal(signal.SIGTERM, _on_sigterm)

    stack.pad.start()
    for svc in stack.services:
        svc.start()
    stack.loop.start()
    log.info("teleop running (server=%s, %s)", cfg.server_name,
             "simulated hub" if args.sim else f"{cfg.host}:{cfg.port}")
    print("Type 'help' for commands.")

    try:
        while True:
            try:
                cmd = input("> ").strip().lower()
            except EOFError:
                # no console (service mode): idle until a signal arrives
                threading.Event().wait()
                break
            if cmd == "report":
                path = stack.commands.call(FinalizeMissionCmd(reason="console"))
                print(f"report: {path}" if path else "report failed (see log)")
            elif cmd == "reset":
                stack.commands.call(ResetEmergencyStopCmd(reason="console"))
            elif cmd == "help":
                print_help()
            elif cmd in ("quit", "exit"):
                break
            elif cmd:
                print(f"unknown command '{cmd}' (try 'help')")
    except KeyboardInterrupt:
        print()
    finally:
        log.info("shutting down")
        _shutdown()
    return 0


if __name__ == "__main__":
    sys.exit(main())
