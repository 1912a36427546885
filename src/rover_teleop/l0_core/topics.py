"""
Well-known EventBus topics.

One typed Topic per stream; producers and consumers import the same constant
so a typo cannot silently split a stream in two.
"""
from __future__ import annotations

from .events import (
    DriveCommand, Fault, HumiditySnapshot, LightSnapshot,
    RangingSnapshot, SonarRisk, Topic, UiSnapshot,
)

SONAR = Topic("sonar.update", RangingSnapshot)
TOF_LEFT = Topic("tof.left.update", RangingSnapshot)
TOF_RIGHT = Topic("tof.right.update", RangingSnapshot)
HUMIDITY = Topic("humidity.update", HumiditySnapshot)
LIGHT = Topic("light.update", LightSnapshot)

SONAR_RISK = Topic("sonar.risk", SonarRisk)
DRIVE = Topic("drive.command", DriveCommand)
UI = Topic("ui.snapshot", UiSnapshot)
FAULTS = Topic("faults", Fault)

RANGING_TOPICS = (SONAR, TOF_LEFT, TOF_RIGHT)
