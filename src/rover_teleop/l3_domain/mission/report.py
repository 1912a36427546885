from __future__ import annotations

from dataclasses import asdict
from pathlib import Path
from typing import Any, Optional, Protocol
import json
import logging
import math

from rover_teleop.l0_core.events import FinalizeMissionCmd
from .aggregator import MissionAggregator
from .model import MissionSnapshot

log = logging.getLogger(__name__)


class ReportSink(Protocol):
    """Turns one MissionSnapshot into a document. Must not mutate the snapshot."""

    def write(self, snapshot: MissionSnapshot) -> Path: ...


def _json_safe(value: Any) -> Any:
    # NaN/inf are not valid JSON; "no data" becomes null
    if isinstance(value, float) and not math.isfinite(value):
        return None
    if isinstance(value, dict):
        return {k: _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(v) for v in value]
    return value


def snapshot_to_dict(snapshot: MissionSnapshot) -> dict:
    data = _json_safe(asdict(snapshot))
    for name in ("temperature", "humidity", "light", "sonar", "tof_left", "tof_right"):
        data[name]["has_data"] = getattr(snapshot, name).has_data
    return data


class JsonReportWriter:
    """Writes <output_dir>/<mission_id>.json (UTF-8, indented)."""

    def __init__(self, output_dir: str | Path) -> None:
        self._dir = Path(output_dir)

    def write(self, snapshot: MissionSnapshot) -> Path:
        self._dir.mkdir(parents=True, exist_ok=True)
        path = self._dir / f"{snapshot.mission_id}.json"
        path.write_text(json.dumps(snapshot_to_dict(snapshot), indent=2), encoding="utf-8")
        log.info("mission report written: %s", path)
        return path


class MissionReporter:
    """
    CommandBus handler for FinalizeMissionCmd: finalize, then hand the
    snapshot to the sink. A failing sink is logged and yields None; the new
    mission has already started either way.
    """

    def __init__(self, aggregator: MissionAggregator, sink: ReportSink) -> None:
        self._aggregator = aggregator
        self._sink = sink

    def __call__(self, cmd: FinalizeMissionCmd) -> Optional[Path]:
        log.info("finalize mission requested (%s)", cmd.reason)
        snapshot = self._aggregator.finalize()
        try:
            return self._sink.write(snapshot)
        except OSError:
            log.exception("mission report for %s failed", snapshot.mission_id)
            return None
