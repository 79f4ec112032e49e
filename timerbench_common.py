"""
Shared infrastructure for the timer resolution benchmark.

Used by timerbench.py (command entry point) and timerbench_sweep.py
(sweep orchestration).
"""

import ctypes
import json
import logging
import math
import os
import platform
import subprocess
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, replace
from datetime import datetime
from functools import lru_cache
from importlib import metadata
from pathlib import Path

import psutil


# CONFIGURATION

SCRIPT_DIR = Path(__file__).parent.resolve()
LOG_DIR = Path.home() / ".cache" / "timerbench"
CONFIG_FILE = "appsettings.json"
CONFIG_SECTION = "BenchmarkingParameters"
RESULTS_FILE = "results.txt"
RESULTS_HEADER = "RequestedResolutionMs,DeltaMs,STDEV"

SET_RESOLUTION_EXE = "SetTimerResolution.exe"
MEASURE_SLEEP_EXE = "MeasureSleep.exe"
SET_RESOLUTION_PROCESS = "SetTimerResolution"
DEPENDENCIES = [SET_RESOLUTION_EXE, MEASURE_SLEEP_EXE]

# Sleep(1) costs ~2ms under a 1ms timer resolution
ASSUMED_SAMPLE_MS = 2
SETTLE_SECS = 0.001
NATIVE_UNITS_PER_MS = 10_000
# SetTimerResolution takes 100ns units, so requests are 4-decimal ms
MIN_INCREMENT_MS = 0.0001

HPET_GUIDE = "https://github.com/SwiftyPop/TimerResBenchmark?tab=readme-ov-file#troubleshooting"


class TimerBenchError(Exception):
    pass


class ConfigError(TimerBenchError):
    pass


class SweepError(TimerBenchError):
    pass


def get_version() -> str:
    """Read version from pyproject.toml, else from the installed metadata."""
    try:
        for line in (SCRIPT_DIR / "pyproject.toml").read_text().splitlines():
            if line.startswith("version"):
                return line.split('"')[1]
    except (FileNotFoundError, IndexError):
        pass
    try:
        return metadata.version("timerbench")
    except metadata.PackageNotFoundError:
        return "?.?.?"


# =============================================================================
# LOGGING
# =============================================================================

log: logging.Logger = logging.getLogger("timerbench")


class _ConsoleFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        level = {"WARNING": "WARN"}.get(record.levelname, record.levelname)
        stamp = datetime.fromtimestamp(record.created).strftime("[%H:%M:%S]")
        return f"{stamp} {'[' + level + ']':<8} {record.getMessage()}"


def setup_logging(log_dir: Path | None = LOG_DIR,
                  verbose: bool = False) -> Path | None:
    """Console handler plus a timestamped debug log file. Returns the file path."""
    log.setLevel(logging.DEBUG)
    for handler in list(log.handlers):
        log.removeHandler(handler)
        handler.close()

    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
    console_handler.setFormatter(_ConsoleFormatter())
    log.addHandler(console_handler)

    if log_dir is None:
        return None
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        log.warning(f"Cannot create log directory {log_dir}: {e}")
        return None
    timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")
    log_path = log_dir / f"timerbench-{timestamp}.log"
    file_handler = logging.FileHandler(log_path, encoding="utf-8")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(
        "%(asctime)s %(levelname)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    ))
    log.addHandler(file_handler)
    return log_path


def log_info(msg: str) -> None:
    log.info(msg)


def log_warn(msg: str) -> None:
    log.warning(msg)


def log_error(msg: str) -> None:
    log.error(msg)


def run_cmd_capture(cmd: list, cwd: Path | None = None) -> tuple[int, str, str]:
    """Run a command and capture output."""
    result = subprocess.run(cmd, capture_output=True, text=True, cwd=cwd)
    return result.returncode, result.stdout, result.stderr


# =============================================================================
# PARAMETERS
# =============================================================================

@dataclass(frozen=True)
class SweepParameters:
    """Sweep range in requested milliseconds plus samples per point."""

    start_value: float
    end_value: float
    increment_value: float
    sample_value: int

    def describe(self) -> str:
        return (f"Start: {self.start_value}, End: {self.end_value}, "
                f"Increment: {self.increment_value}, "
                f"Samples: {self.sample_value}")


_FIELDS = {
    "StartValue": "start_value",
    "EndValue": "end_value",
    "IncrementValue": "increment_value",
    "SampleValue": "sample_value",
}


def validate_parameters(params: SweepParameters) -> SweepParameters:
    """Raise ConfigError unless the sweep visits at least one point."""
    for name in ("start_value", "end_value", "increment_value"):
        value = getattr(params, name)
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ConfigError(f"{name} must be a number, got {value!r}")
        if not math.isfinite(value):
            raise ConfigError(f"{name} must be finite, got {value!r}")
    if isinstance(params.sample_value, bool) or not isinstance(params.sample_value, int):
        raise ConfigError(f"sample_value must be an integer, got {params.sample_value!r}")
    if params.increment_value < MIN_INCREMENT_MS:
        raise ConfigError(f"IncrementValue must be >= {MIN_INCREMENT_MS} "
                          f"(got {params.increment_value})")
    if params.end_value < params.start_value:
        raise ConfigError(f"EndValue ({params.end_value}) is below "
                          f"StartValue ({params.start_value})")
    if params.sample_value < 1:
        raise ConfigError(f"SampleValue must be >= 1 (got {params.sample_value})")
    return params


def load_parameters(path: Path, overrides: dict | None = None) -> SweepParameters:
    """Read BenchmarkingParameters from a JSON settings file.

    Values in overrides (keyed by SweepParameters field name, None = keep)
    replace the file's values before validation.
    """
    try:
        with path.open("r", encoding="utf-8-sig") as handle:
            config = json.load(handle)
    except FileNotFoundError:
        raise ConfigError(f"Config file not found: {path}") from None
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"Unable to read {path}: {e}") from e

    section = config.get(CONFIG_SECTION) if isinstance(config, dict) else None
    if not isinstance(section, dict):
        raise ConfigError(f"[{CONFIG_SECTION}] object required in {path}")

    values = {}
    for key, attr in _FIELDS.items():
        if key not in section:
            raise ConfigError(f"{CONFIG_SECTION}.{key} missing in {path}")
        values[attr] = section[key]

    # JSON integers are valid real values
    for attr in ("start_value", "end_value", "increment_value"):
        value = values[attr]
        if isinstance(value, int) and not isinstance(value, bool):
            values[attr] = float(value)

    params = SweepParameters(**values)
    if overrides:
        params = replace(params, **{k: v for k, v in overrides.items()
                                    if v is not None})
    return validate_parameters(params)


# =============================================================================
# PRE-FLIGHT
# =============================================================================

@lru_cache(maxsize=None)
def is_elevated() -> bool:
    """True when running as Administrator (Windows) or root (POSIX)."""
    try:
        if platform.system() == "Windows":
            return bool(ctypes.windll.shell32.IsUserAnAdmin())
        return os.geteuid() == 0
    except (AttributeError, OSError):
        return False


def _probe(directory: Path, name: str) -> str | None:
    return None if (directory / name).is_file() else name


def check_dependencies(directory: Path, names: list[str]) -> set[str]:
    """Return the set of names not present in directory (empty = all found)."""
    if not names:
        return set()
    missing = set()
    with ThreadPoolExecutor(max_workers=len(names)) as pool:
        futures = [pool.submit(_probe, directory, name) for name in names]
        for future in as_completed(futures):
            absent = future.result()
            if absent is not None:
                missing.add(absent)
    return missing


def parse_bcdedit(text: str) -> str:
    """HPET is only considered disabled with useplatformtick=no and
    disabledynamictick=yes."""
    settings = {}
    for line in text.splitlines():
        parts = line.split()
        if len(parts) >= 2 and parts[0] in ("useplatformtick", "disabledynamictick"):
            settings[parts[0]] = parts[1].lower()
    if (settings.get("useplatformtick") == "no"
            and settings.get("disabledynamictick") == "yes"):
        return "disabled"
    return "enabled"


def hpet_status() -> str:
    """Return 'enabled', 'disabled' or 'unknown' from the boot configuration."""
    if platform.system() != "Windows":
        return "unknown"
    try:
        ret, out, err = run_cmd_capture(["bcdedit", "/enum", "{current}"])
    except OSError:
        return "unknown"
    if ret != 0:
        log.debug(f"bcdedit failed (exit {ret}): {err.strip()[:200]}")
        return "unknown"
    return parse_bcdedit(out)


# =============================================================================
# PROCESS REAPER
# =============================================================================

def _base_name(name: str) -> str:
    name = name.lower()
    return name[:-4] if name.endswith(".exe") else name


class ProcessReaper:
    """Forcibly terminates every running process with a given executable name."""

    def kill_all_named(self, name: str) -> int:
        target = _base_name(name)
        killed = 0
        for proc in psutil.process_iter(["pid", "name"]):
            try:
                proc_name = proc.info.get("name") or ""
                if _base_name(proc_name) != target:
                    continue
                proc.kill()
                killed += 1
                log.debug(f"Killed {proc_name} (pid {proc.info['pid']})")
            except (psutil.NoSuchProcess, psutil.AccessDenied) as e:
                log.debug(f"Could not kill {name}: {e}")
        return killed


def kill_by_name(name: str) -> int:
    return ProcessReaper().kill_all_named(name)
