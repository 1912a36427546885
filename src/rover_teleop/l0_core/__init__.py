"""
rover_teleop.l0_core
Foundational Core layer (contracts & buses) for the rover teleop stack.

Public API:
- now_ms, wall_ms, Severity, Fault, Topic
- RangingSnapshot, HumiditySnapshot, LightSnapshot, SonarRisk
- DriveCommand, SafetyState, Pose, UiSnapshot
- FinalizeMissionCmd, ResetEmergencyStopCmd
- EventBus, CommandBus, ReconnectPolicy, BackoffConfig
"""

from .events import (  # noqa: F401
    now_ms, wall_ms, Severity, Fault, Topic,
    RangingSnapshot, HumiditySnapshot, LightSnapshot, SonarRisk,
    DriveCommand, SafetyState, Pose, UiSnapshot,
    FinalizeMissionCmd, ResetEmergencyStopCmd,
)
from .bus import EventBus, CommandBus  # noqa: F401
from .backoff import ReconnectPolicy, BackoffConfig  # noqa: F401
from . import topics  # noqa: F401

__all__ = [
    "now_ms", "wall_ms", "Severity", "Fault", "Topic",
    "RangingSnapshot", "HumiditySnapshot", "LightSnapshot", "SonarRisk",
    "DriveCommand", "SafetyState", "Pose", "UiSnapshot",
    "FinalizeMissionCmd", "ResetEmergencyStopCmd",
    "EventBus", "CommandBus", "ReconnectPolicy", "BackoffConfig",
    "topics",
]
