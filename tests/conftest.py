from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest

# pytest may run without installing the project; ensure repo root is importable.
REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from timerbench_common import SweepParameters  # noqa: E402
from timerbench_sweep import CompletedRun  # noqa: E402


class FakeReaper:
    def __init__(self, events: list | None = None):
        self.calls: list[str] = []
        self.events = events if events is not None else []

    def kill_all_named(self, name: str) -> int:
        self.calls.append(name)
        self.events.append(("reap", name))
        return 0


class FakeRunner:
    """Scripted MeasureSleep output, one entry per measurement."""

    def __init__(self, outputs=None, events: list | None = None, returncode: int = 0):
        self.outputs = list(outputs or [])
        self.events = events if events is not None else []
        self.returncode = returncode
        self.launched: list[tuple[Path, list[str]]] = []
        self.ran: list[tuple[Path, list[str]]] = []
        self.closed = 0

    def launch(self, path: Path, args: list[str]) -> None:
        self.launched.append((path, args))
        self.events.append(("launch", path.name))

    def run(self, path: Path, args: list[str]) -> CompletedRun:
        self.ran.append((path, args))
        self.events.append(("run", path.name))
        if self.outputs:
            stdout = self.outputs.pop(0)
        else:
            stdout = "Avg: 0.0100\nSTDEV: 0.0010\n"
        return CompletedRun(self.returncode, stdout)

    def close(self) -> None:
        self.closed += 1
        self.events.append(("close", None))


@pytest.fixture()
def params() -> SweepParameters:
    return SweepParameters(start_value=0.5, end_value=0.502,
                           increment_value=0.001, sample_value=10)


@pytest.fixture()
def write_settings(tmp_path: Path):
    def _write(section: dict | None = None, name: str = "appsettings.json", raw: str | None = None) -> Path:
        path = tmp_path / name
        if raw is not None:
            path.write_text(raw, encoding="utf-8")
        else:
            path.write_text(json.dumps({"BenchmarkingParameters": section}), encoding="utf-8")
        return path
    return _write


@pytest.fixture()
def tool_dir(tmp_path: Path) -> Path:
    for name in ("SetTimerResolution.exe", "MeasureSleep.exe"):
        (tmp_path / name).write_bytes(b"")
    return tmp_path


@pytest.fixture()
def events() -> list:
    return []


@pytest.fixture()
def reaper(events) -> FakeReaper:
    return FakeReaper(events)


@pytest.fixture()
def make_runner(events):
    def _make(outputs=None, returncode: int = 0) -> FakeRunner:
        return FakeRunner(outputs, events, returncode)
    return _make
