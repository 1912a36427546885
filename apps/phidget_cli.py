#!/usr/bin/env python3
"""
Rover Phidget CLI
=================

Interactive console for the rover's Phidget network hub, one action per command.

Uses:
- PhidgetSensorChannel / PhidgetVehicleLink on Phidget22 channels, or an
  in-process SimPhidgetHub with --sim.

Handy on the bench to check which hub ports carry which board and that the
wheels answer, before starting the full teleop runner.
"""

import argparse
import logging
from typing import Dict

from Phidget22.PhidgetException import PhidgetException

from rover_teleop.l2_phidget.channels import ChannelError, ChannelKind, describe, phidget_factory
from rover_teleop.l2_phidget.net import PhidgetServer
from rover_teleop.l2_phidget.sensor_channel import PhidgetSensorChannel
from rover_teleop.l2_phidget.sim import bench_hub
from rover_teleop.l2_phidget.vehicle_link import PhidgetVehicleLink
from rover_teleop.l3_domain.config import RoverConfig

SENSOR_KINDS = {k.value: k for k in (ChannelKind.DISTANCE, ChannelKind.HUMIDITY, ChannelKind.LIGHT)}
OPEN_TIMEOUT_MS = 5000


def print_help() -> None:
    print("""
Available Commands:
  open <port> <kind>         - Open a sensor; kind = distance|humidity|light
  read <port>                - Read an open sensor once
  close <port>               - Close a sensor
  connect                    - Open both motor channels on the motor hub port
  wheels <left> <right>      - Set wheel speeds (-1.0 .. 1.0)
  stop                       - Both wheels to zero

  help                       - Show this help menu
  quit                       - Exit CLI
""")


class Bench:
    def __init__(self, server: PhidgetServer, link: PhidgetVehicleLink, factory) -> None:
        self.server = server
        self.link = link
        self.factory = factory
        self.sensors: Dict[int, PhidgetSensorChannel] = {}

    def close(self) -> None:
        for ch in self.sensors.values():
            ch.close()
        self.sensors.clear()
        self.link.disconnect()
        self.server.remove()


def run_command(bench: Bench, cmd: str) -> str:
    """Execute one console line and return the text to print."""
    parts = cmd.split()
    verb = parts[0]

    if verb == "open":
        if len(parts) != 3 or parts[2] not in SENSOR_KINDS:
            return "Usage: open <port> <distance|humidity|light>"
        port, kind = int(parts[1]), SENSOR_KINDS[parts[2]]
        if port in bench.sensors:
            bench.sensors.pop(port).close()
        ch = PhidgetSensorChannel(bench.server, kind, port, factory=bench.factory)
        ch.open(OPEN_TIMEOUT_MS)
        bench.sensors[port] = ch
        return f"[OK] {kind.value} open on port {port}"

    if verb == "read":
        if len(parts) != 2:
            return "Usage: read <port>"
        port = int(parts[1])
        ch = bench.sensors.get(port)
        if ch is None:
            return f"Nothing open on port {port}"
        values = ", ".join(f"{v:.2f}" for v in ch.read())
        state = "attached" if ch.is_attached() else "DETACHED"
        return f"[RX] port {port}: {state} ({values})"

    if verb == "close":
        if len(parts) != 2:
            return "Usage: close <port>"
        ch = bench.sensors.pop(int(parts[1]), None)
        if ch is None:
            return "Nothing to close"
        ch.close()
        return f"[OK] closed port {parts[1]}"

    if verb == "connect":
        bench.link.connect()
        return "[OK] motors open"

    if verb == "wheels":
        if len(parts) != 3:
            return "Usage: wheels <left> <right>"
        if not bench.link.is_connected():
            return "Motors not connected (use 'connect')"
        left, right = float(parts[1]), float(parts[2])
        bench.link.set_wheel_speeds(left, right)
        return f"[TX] wheels ({left:+.2f}, {right:+.2f})"

    if verb == "stop":
        bench.link.stop()
        return "[TX] stop"

    return "Unknown command. Type 'help' for options."


def main():
    defaults = RoverConfig()
    parser = argparse.ArgumentParser(description="Rover Phidget CLI")
    parser.add_argument("--host", default=defaults.host, help="Network hub address")
    parser.add_argument("--port", type=int, default=defaults.port, help="Phidget network server port")
    parser.add_argument("--server-name", default=defaults.server_name, help="Phidget network server name")
    parser.add_argument("--motor-port", type=int, default=defaults.motor_hub_port, help="Motor hub port")
    parser.add_argument("--sim", action="store_true", help="Talk to an in-process simulated hub")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.debug else logging.WARNING)

    factory = phidget_factory
    if args.sim:
        hub = bench_hub(args.server_name, args.motor_port, defaults.sonar_hub_port,
                        defaults.humidity_hub_port, defaults.light_hub_port,
                        defaults.tof_left_hub_port, defaults.tof_right_hub_port)
        server = PhidgetServer(args.server_name, "sim", args.port, net=hub.net)
        factory = hub.factory
    else:
        server = PhidgetServer(args.server_name, args.host, args.port)
    bench = Bench(server, PhidgetVehicleLink(server, args.motor_port, factory=factory), factory)

    print("Phidget CLI started. Type 'help' for commands.")

    while True:
        try:
            cmd = input("> ").strip().lower()
            if cmd == "":
                continue
            if cmd == "help":
                print_help()
            elif cmd in ("quit", "exit"):
                print("Exiting...")
                break
            else:
                print(run_command(bench, cmd))
        except ValueError:
            print("[WARN] numeric argument expected")
        except ChannelError as e:
            print(f"[WARN] {e}")
        except PhidgetException as e:
            print(f"[WARN] phidget error: {describe(e)}")
        except (KeyboardInterrupt, EOFError):
            print("\nExiting...")
            break

    bench.close()


if __name__ == "__main__":
    main()
