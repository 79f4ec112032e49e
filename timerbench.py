#!/usr/bin/env python3
"""
Timer resolution benchmark: sweep SetTimerResolution values and record
MeasureSleep statistics for each one.

Usage:
    ./timerbench.py run                      Full sweep (Administrator required)
    ./timerbench.py run --prometheus sweep.prom
    ./timerbench.py run --start 0.5 --end 0.51 --increment 0.001 --samples 50
    ./timerbench.py estimate                 Print the worst-case run time
    ./timerbench.py check                    Privilege, dependency and HPET checks
    ./timerbench.py summary                  Best resolution from results.txt
    ./timerbench.py plot --output sweep.png  Delta vs resolution plot
"""

import argparse
import sys
from pathlib import Path

from prometheus_client import CollectorRegistry, Gauge, write_to_textfile

from timerbench_common import (
    CONFIG_FILE, DEPENDENCIES, HPET_GUIDE, LOG_DIR, RESULTS_FILE,
    SET_RESOLUTION_PROCESS,
    ConfigError, ProcessReaper, SweepError, SweepParameters,
    check_dependencies, get_version, hpet_status, is_elevated,
    load_parameters, log_error, log_info, log_warn, setup_logging,
)
from timerbench_sweep import (
    ResultRow, ResultsSink, SweepController, SweepState, ToolRunner,
    estimate, eta_minutes, format_value, point_count, read_results,
    summarize_results,
)


# HELPERS

def _working_dir(args) -> Path:
    return Path(args.dir).expanduser().resolve()


def _results_path(args) -> Path:
    path = Path(args.results).expanduser()
    return path if path.is_absolute() else _working_dir(args) / path


def _load(args) -> SweepParameters | None:
    config = Path(args.config).expanduser()
    if not config.is_absolute():
        config = _working_dir(args) / config
    overrides = {
        "start_value": args.start,
        "end_value": args.end,
        "increment_value": args.increment,
        "sample_value": args.samples,
    }
    try:
        return load_parameters(config, overrides)
    except ConfigError as e:
        log_error(f"Unable to read configuration parameters: {e}")
        return None


def print_estimate(params: SweepParameters) -> bool:
    try:
        minutes = eta_minutes(estimate(params))
    except ConfigError as e:
        log_error(f"Unable to estimate run time: {e}")
        return False
    log_info(f"Approximate worst-case estimated time for completion: {minutes}mins")
    log_info("Worst-case is determined by assuming Sleep(1) = ~2ms "
             "with 1ms Timer Resolution")
    log_info(params.describe())
    log_info(f"Iterations: {point_count(params)}")
    return True


def report_hpet() -> None:
    status = hpet_status()
    log_info(f"HPET status: {status}")
    if status == "enabled":
        log_warn("HPET is enabled. For optimal results, it is recommended to disable HPET.")
        log_warn(f"See the troubleshooting guide: {HPET_GUIDE}")


def report_missing(directory: Path) -> bool:
    """Log every missing collaborator. Returns True if all are present."""
    missing = check_dependencies(directory, DEPENDENCIES)
    for name in sorted(missing):
        log_error(f"{name} does not exist in {directory}")
    return not missing


def report_best(rows: list[ResultRow]) -> ResultRow | None:
    best = summarize_results(rows)
    if best is None:
        return None
    log_info(f"Optimal timer resolution: {format_value(best.resolution_ms)}ms "
             f"(delta {format_value(best.average_delay_ms)}ms, "
             f"STDEV {format_value(best.standard_deviation_ms)})")
    return best


def export_prometheus(rows: list[ResultRow], path: Path) -> None:
    """Write sweep results as a node-exporter textfile."""
    registry = CollectorRegistry()
    delta = Gauge("timerbench_sleep_delta_ms",
                  "Mean sleep delta at the requested timer resolution",
                  ["resolution_ms"], registry=registry)
    stdev = Gauge("timerbench_sleep_stdev_ms",
                  "Sleep delta standard deviation at the requested timer resolution",
                  ["resolution_ms"], registry=registry)
    points = Gauge("timerbench_points_total",
                   "Resolution points recorded in the sweep",
                   registry=registry)
    for row in rows:
        label = format_value(row.resolution_ms)
        delta.labels(resolution_ms=label).set(row.average_delay_ms)
        stdev.labels(resolution_ms=label).set(row.standard_deviation_ms)
    points.set(len(rows))
    write_to_textfile(str(path), registry)


def plot_results(rows: list[ResultRow], output_file: Path) -> None:
    """Delta vs requested resolution with STDEV error bars."""
    import matplotlib
    matplotlib.use("Agg")
    import matplotlib.pyplot as plt

    valid = [r for r in rows if not r.is_empty]
    fig, ax = plt.subplots(figsize=(10, 6))
    ax.errorbar(
        [r.resolution_ms for r in valid],
        [r.average_delay_ms for r in valid],
        yerr=[r.standard_deviation_ms for r in valid],
        marker="o",
        color="#2196F3",
        capsize=4,
        linewidth=2,
        markersize=6,
    )
    best = summarize_results(valid)
    if best is not None:
        ax.axvline(best.resolution_ms, color="#F44336", linestyle="--",
                   label=f"best: {format_value(best.resolution_ms)}ms")
        ax.legend(fontsize=11)

    ax.set_xlabel("Requested resolution (ms)", fontsize=12)
    ax.set_ylabel("Sleep delta (ms)", fontsize=12)
    ax.set_title("Sleep(1) delta vs timer resolution", fontsize=14)
    ax.grid(True, alpha=0.3)

    plt.tight_layout()
    plt.savefig(output_file, dpi=150)
    plt.close(fig)


# COMMANDS

def cmd_run(args) -> int:
    """Full sweep. Fatal checks all happen before results are truncated."""
    params = _load(args)
    if params is None:
        return 1

    if not is_elevated():
        log_error("Administrator privileges required")
        log_error("Please run this program as Administrator.")
        return 1

    if not print_estimate(params):
        return 1
    if not args.no_hpet_check:
        report_hpet()

    directory = _working_dir(args)
    reaper = ProcessReaper()
    reaper.kill_all_named(SET_RESOLUTION_PROCESS)

    if not report_missing(directory):
        return 1

    results = _results_path(args)
    controller = SweepController(params, directory, ResultsSink(results),
                                 runner=ToolRunner(), reaper=reaper)
    try:
        rows = controller.run()
    except SweepError as e:
        if controller.state is SweepState.ITERATING:
            log_error(f"Sweep aborted at point {controller.index + 1}: {e}")
            log_error(f"Partial results kept in {results}")
        else:
            log_error(f"Sweep aborted: {e}")
        return 1

    if report_best(rows) is None:
        log_warn("No valid measurements recorded")

    if args.prometheus:
        try:
            export_prometheus(rows, Path(args.prometheus))
        except OSError as e:
            log_error(f"Cannot write {args.prometheus}: {e}")
            return 1
        log_info(f"Prometheus metrics written to {args.prometheus}")

    log_info(f"results saved in {results}")
    return 0


def cmd_estimate(args) -> int:
    params = _load(args)
    if params is None:
        return 1
    return 0 if print_estimate(params) else 1


def cmd_check(args) -> int:
    ok = True
    if is_elevated():
        log_info("Admin privileges: confirmed")
    else:
        log_error("Administrator privileges required")
        ok = False

    directory = _working_dir(args)
    if report_missing(directory):
        log_info(f"Dependencies found in {directory}")
    else:
        ok = False

    report_hpet()
    return 0 if ok else 1


def cmd_summary(args) -> int:
    results = _results_path(args)
    try:
        rows = read_results(results)
    except FileNotFoundError:
        log_error(f"{results} not found")
        return 1
    log_info(f"{len(rows)} row(s) in {results}")
    if report_best(rows) is None:
        log_error(f"No valid data found in {results}")
        return 1
    return 0


def cmd_plot(args) -> int:
    results = _results_path(args)
    try:
        rows = read_results(results)
    except FileNotFoundError:
        log_error(f"{results} not found")
        return 1
    if not rows:
        log_error(f"No data in {results}")
        return 1
    try:
        plot_results(rows, Path(args.output))
    except ImportError:
        log_error("matplotlib not available. Install with: pip install matplotlib")
        return 1
    log_info(f"Plot saved to {args.output}")
    return 0


# MAIN

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Timer resolution benchmark",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--dir", default=".",
                        help="Directory holding the tools and results (default: cwd)")
    parser.add_argument("--results", default=RESULTS_FILE,
                        help=f"Results file, relative to --dir (default: {RESULTS_FILE})")
    parser.add_argument("--verbose", action="store_true",
                        help="Show raw measurement output on the console")
    parser.add_argument("--no-log-file", action="store_true",
                        help=f"Do not write a log file under {LOG_DIR}")
    sub = parser.add_subparsers(dest="command")

    def add_params(p):
        p.add_argument("--config", default=CONFIG_FILE,
                       help=f"Settings file, relative to --dir (default: {CONFIG_FILE})")
        p.add_argument("--start", type=float, default=None,
                       help="Override StartValue (ms)")
        p.add_argument("--end", type=float, default=None,
                       help="Override EndValue (ms)")
        p.add_argument("--increment", type=float, default=None,
                       help="Override IncrementValue (ms)")
        p.add_argument("--samples", type=int, default=None,
                       help="Override SampleValue")

    run = sub.add_parser("run", help="Sweep resolutions and record results")
    add_params(run)
    run.add_argument("--prometheus", type=str, default=None,
                     help="Also write results as a Prometheus textfile")
    run.add_argument("--no-hpet-check", action="store_true",
                     help="Skip the bcdedit HPET status check")

    est = sub.add_parser("estimate", help="Print the worst-case run time")
    add_params(est)

    sub.add_parser("check", help="Privilege, dependency and HPET checks")
    sub.add_parser("summary", help="Report the best resolution in the results file")

    plot = sub.add_parser("plot", help="Plot delta vs resolution (needs matplotlib)")
    plot.add_argument("--output", default="timerbench.png",
                      help="Output image (default: timerbench.png)")
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    setup_logging(None if args.no_log_file else LOG_DIR, verbose=args.verbose)
    log_info(f"timerbench v{get_version()}: {args.command} SELECTED")

    if args.command == "run":
        return cmd_run(args)
    if args.command == "estimate":
        return cmd_estimate(args)
    if args.command == "check":
        return cmd_check(args)
    if args.command == "summary":
        return cmd_summary(args)
    if args.command == "plot":
        return cmd_plot(args)

    log_error(f"Unknown command: {args.command}")
    return 1


if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("\nInterrupted by user.")
        sys.exit(130)
