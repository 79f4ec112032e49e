"""
Timer resolution sweep orchestration.

For every requested resolution between StartValue and EndValue the
controller clears stale SetTimerResolution instances, launches
SetTimerResolution in the background, lets the new resolution settle,
runs MeasureSleep to completion and appends the parsed Avg/STDEV figures
to the results file. Each row is flushed to disk before the next point
starts, so an interrupted run keeps everything measured so far.
"""

import csv
import math
import os
import subprocess
import time
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from pathlib import Path

from timerbench_common import (
    ASSUMED_SAMPLE_MS, MEASURE_SLEEP_EXE, NATIVE_UNITS_PER_MS,
    RESULTS_HEADER, SET_RESOLUTION_EXE, SET_RESOLUTION_PROCESS, SETTLE_SECS,
    ConfigError, ProcessReaper, SweepError, SweepParameters,
    log, log_info, log_warn,
)


# VALUES

def round_half_away(value: float, places: int = 4) -> float:
    # beyond 1e15 floats carry no fractional digits worth rounding
    if not math.isfinite(value) or abs(value) >= 1e15:
        return value
    quantum = Decimal(1).scaleb(-places)
    return float(Decimal(repr(value)).quantize(quantum, rounding=ROUND_HALF_UP))


def to_native_units(value_ms: float) -> int:
    """Requested milliseconds -> 100ns units taken by SetTimerResolution."""
    rounded = Decimal(repr(round_half_away(value_ms)))
    return int(rounded * NATIVE_UNITS_PER_MS)


def format_value(value: float) -> str:
    """Shortest decimal text for value: 1.0 -> '1', 0.5000 -> '0.5'."""
    text = repr(float(value))
    if "e" in text or "E" in text:
        text = f"{value:.10f}".rstrip("0").rstrip(".")
    elif text.endswith(".0"):
        text = text[:-2]
    return text


def point_count(params: SweepParameters) -> int:
    """Number of points with start + i * increment <= end."""
    if params.increment_value <= 0:
        raise ConfigError(f"IncrementValue must be > 0 (got {params.increment_value})")
    span = (params.end_value - params.start_value) / params.increment_value
    # 1e-9 absorbs float error when the range is an exact multiple
    return max(0, math.floor(span + 1e-9) + 1)


def point_at(params: SweepParameters, index: int) -> float:
    return round_half_away(params.start_value + index * params.increment_value)


def sweep_points(params: SweepParameters) -> list[float]:
    return [point_at(params, i) for i in range(point_count(params))]


# ETA

def estimate(params: SweepParameters) -> timedelta:
    """Worst-case run time, assuming every sample costs ASSUMED_SAMPLE_MS.

    Heuristic upper bound only; the range is divided without rounding.
    """
    if params.increment_value <= 0:
        raise ConfigError(f"IncrementValue must be > 0 (got {params.increment_value})")
    iterations = (params.end_value - params.start_value) / params.increment_value
    try:
        return timedelta(
            milliseconds=iterations * params.sample_value * ASSUMED_SAMPLE_MS)
    except OverflowError:
        raise ConfigError(f"Sweep too long to estimate: {iterations:.0f} "
                          f"iterations x {params.sample_value} samples") from None


def eta_minutes(duration: timedelta) -> float:
    return round_half_away(duration.total_seconds() / 60, 2)


# MEASUREMENT OUTPUT

@dataclass(frozen=True)
class MeasurementSample:
    average_delay_ms: float = 0.0
    standard_deviation_ms: float = 0.0

    @property
    def is_empty(self) -> bool:
        return self.average_delay_ms == 0 and self.standard_deviation_ms == 0


AVG_PREFIX = "Avg: "
STDEV_PREFIX = "STDEV: "


def _parse_float(text: str) -> float | None:
    try:
        value = float(text)
    except ValueError:
        return None
    return value if math.isfinite(value) else None


def parse_measurement(text: str) -> MeasurementSample:
    """Pull Avg/STDEV out of MeasureSleep output.

    Unparsable or absent fields stay 0; the last matching line wins.
    """
    avg = 0.0
    stdev = 0.0
    for line in text.splitlines():
        if line.startswith(AVG_PREFIX):
            value = _parse_float(line[len(AVG_PREFIX):])
            if value is not None:
                avg = value
        elif line.startswith(STDEV_PREFIX):
            value = _parse_float(line[len(STDEV_PREFIX):])
            if value is not None:
                stdev = value
    return MeasurementSample(avg, stdev)


# RESULTS

@dataclass(frozen=True)
class ResultRow:
    resolution_ms: float
    average_delay_ms: float
    standard_deviation_ms: float

    def format(self) -> str:
        return (f"{format_value(self.resolution_ms)}, "
                f"{format_value(round_half_away(self.average_delay_ms))}, "
                f"{format_value(self.standard_deviation_ms)}")

    @property
    def sample(self) -> MeasurementSample:
        return MeasurementSample(self.average_delay_ms, self.standard_deviation_ms)

    @property
    def is_empty(self) -> bool:
        return self.sample.is_empty


class ResultsSink:
    """Header once per run, then one durable append per point."""

    def __init__(self, path: Path):
        self.path = path

    def initialize(self) -> None:
        with self.path.open("w", encoding="utf-8") as f:
            f.write(RESULTS_HEADER + "\n")

    def append(self, row: ResultRow) -> None:
        with self.path.open("a", encoding="utf-8") as f:
            f.write(row.format() + "\n")
            f.flush()
            os.fsync(f.fileno())


def read_results(path: Path) -> list[ResultRow]:
    """Parse a results file, skipping the header and malformed lines."""
    rows = []
    with path.open("r", encoding="utf-8", newline="") as f:
        for lineno, record in enumerate(csv.reader(f, skipinitialspace=True), 1):
            if lineno == 1 or len(record) < 3:
                continue
            try:
                resolution, delta, stdev = (float(v) for v in record[:3])
            except ValueError:
                log.debug(f"{path}:{lineno}: skipping {record!r}")
                continue
            rows.append(ResultRow(resolution, delta, stdev))
    return rows


def summarize_results(rows: list[ResultRow]) -> ResultRow | None:
    """Lowest delta wins, lower STDEV breaks ties. All-zero rows never win."""
    valid = [r for r in rows if not r.is_empty]
    if not valid:
        return None
    return min(valid, key=lambda r: (r.average_delay_ms, r.standard_deviation_ms))


# EXTERNAL TOOLS

@dataclass(frozen=True)
class CompletedRun:
    returncode: int
    stdout: str


class ToolRunner:
    """Launches the collaborator executables."""

    def __init__(self):
        self.background: list[subprocess.Popen] = []

    def launch(self, path: Path, args: list[str]) -> None:
        """Start without waiting; output is discarded."""
        self.background = [p for p in self.background if p.poll() is None]
        proc = subprocess.Popen(
            [str(path), *args],
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
        )
        self.background.append(proc)

    def close(self, timeout: float = 1.0) -> None:
        """Reap background processes that have exited or been killed."""
        for proc in self.background:
            try:
                proc.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                log.debug(f"pid {proc.pid} still running after sweep")
        self.background = [p for p in self.background if p.poll() is None]

    def run(self, path: Path, args: list[str]) -> CompletedRun:
        """Run to completion. stdout is read to EOF before the exit is reaped."""
        result = subprocess.run(
            [str(path), *args],
            stdin=subprocess.DEVNULL,
            capture_output=True,
            text=True,
            errors="replace",
        )
        return CompletedRun(result.returncode, result.stdout)


# CONTROLLER

class SweepState(Enum):
    IDLE = "idle"
    INITIALIZING = "initializing"
    ITERATING = "iterating"
    COMPLETED = "completed"


class SweepController:
    """Runs one measurement cycle per sweep point, strictly in order."""

    def __init__(self, params: SweepParameters, directory: Path,
                 sink: ResultsSink, runner: ToolRunner | None = None,
                 reaper: ProcessReaper | None = None, sleep=time.sleep):
        self.params = params
        self.directory = directory
        self.sink = sink
        self.runner = runner or ToolRunner()
        self.reaper = reaper or ProcessReaper()
        self.sleep = sleep
        self.state = SweepState.IDLE
        self.index: int | None = None

    @property
    def set_resolution_path(self) -> Path:
        return self.directory / SET_RESOLUTION_EXE

    @property
    def measure_sleep_path(self) -> Path:
        return self.directory / MEASURE_SLEEP_EXE

    def run(self) -> list[ResultRow]:
        self.state = SweepState.INITIALIZING
        total = point_count(self.params)
        self.reaper.kill_all_named(SET_RESOLUTION_PROCESS)
        try:
            self.sink.initialize()
        except OSError as e:
            raise SweepError(f"Cannot create {self.sink.path}: {e}") from e

        self.state = SweepState.ITERATING
        rows = []
        try:
            for index in range(total):
                self.index = index
                value = point_at(self.params, index)
                log_info(f"benchmarking {format_value(value)} "
                         f"({index + 1}/{total})")
                rows.append(self.measure_point(value))
        finally:
            self.runner.close()

        self.state = SweepState.COMPLETED
        return rows

    def measure_point(self, value: float) -> ResultRow:
        resolution = to_native_units(value)
        self.reaper.kill_all_named(SET_RESOLUTION_PROCESS)
        try:
            try:
                self.runner.launch(self.set_resolution_path,
                                   ["--resolution", str(resolution), "--no-console"])
            except OSError as e:
                raise SweepError(f"Failed to launch {SET_RESOLUTION_EXE}: {e}") from e

            # unreliable samples without a short settle after setting the resolution
            self.sleep(SETTLE_SECS)

            try:
                completed = self.runner.run(self.measure_sleep_path,
                                            ["--samples", str(self.params.sample_value)])
            except OSError as e:
                raise SweepError(f"Failed to launch {MEASURE_SLEEP_EXE}: {e}") from e

            if completed.returncode != 0:
                log_warn(f"{MEASURE_SLEEP_EXE} exited with code "
                         f"{completed.returncode} at {format_value(value)}ms")
            log.debug(f"{MEASURE_SLEEP_EXE} output:\n{completed.stdout.rstrip()}")

            sample = parse_measurement(completed.stdout)
            if sample.is_empty:
                log_warn(f"No Avg/STDEV in measurement output for "
                         f"{format_value(value)}ms, recording zeros")
            row = ResultRow(value, sample.average_delay_ms,
                            sample.standard_deviation_ms)
            try:
                self.sink.append(row)
            except OSError as e:
                raise SweepError(f"Cannot write {self.sink.path}: {e}") from e
            return row
        finally:
            self.reaper.kill_all_named(SET_RESOLUTION_PROCESS)
