#!/usr/bin/env python

import argparse
import logging
import sys

from tqdm import tqdm

from conflictkeys.config import ConfigurationError, RunConfig, load_run_config
from conflictkeys.simulation import Simulation, Statistics

logger = logging.getLogger(__name__)


def print_configuration(config: RunConfig) -> None:
    wl = config.workload
    store = config.store
    print("[Workload]")
    print(f"  Duration: {wl.test_duration_ms:.0f} ms, actors: {wl.actors_per_client}")
    print(f"  Keyspace: prefix={wl.keyspace.prefix.decode('utf-8')!r} "
          f"key_bytes={wl.keyspace.key_bytes} node_count={wl.keyspace.node_count}")
    print(f"  Conflict ranges per tx: read={wl.read_conflict_range_count:g} "
          f"write={wl.write_conflict_range_count:g}")
    print(f"  Seed: {config.seed}")
    print("[Store]")
    print(f"  Transient error probability: {store.transient_error_probability}")
    print(f"  MVCC window: {store.mvcc_window_versions} versions")
    print(f"  Reporting fault: {store.reporting_fault.value}")
    print()


def print_metrics(stats: Statistics) -> None:
    print("[Metrics]")
    for name, value in stats.metrics().items():
        if isinstance(value, float):
            print(f"  {name}: {value:.2f}")
        else:
            print(f"  {name}: {value}")


def cli():
    """CLI entry point for the conflicting keys workload."""
    parser = argparse.ArgumentParser(
        description="Randomized workload that checks a store's conflicting keys reports"
    )
    parser.add_argument(
        "config",
        nargs="?",
        default="cfg.toml",
        help="Path to TOML configuration file (default: cfg.toml)"
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging"
    )
    parser.add_argument(
        "-q", "--quiet",
        action="store_true",
        help="Suppress all logging except errors"
    )
    parser.add_argument(
        "--seed",
        type=int,
        default=None,
        help="Override simulation.seed from the config file"
    )
    parser.add_argument(
        "-o", "--output",
        default=None,
        help="Write per-iteration records to this parquet file"
    )
    parser.add_argument(
        "--no-progress",
        action="store_true",
        help="Disable progress bar"
    )
    args = parser.parse_args()

    # Setup logging
    if args.quiet:
        logging.basicConfig(level=logging.ERROR, format='%(levelname)s: %(message)s')
    elif args.verbose:
        logging.basicConfig(level=logging.DEBUG, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    else:
        logging.basicConfig(level=logging.INFO, format='%(message)s')

    try:
        config = load_run_config(args.config, seed_override=args.seed)
    except ConfigurationError as e:
        print("Configuration validation failed:")
        for error in e.errors:
            print(f"  ✗ {error}")
        sys.exit(1)

    if not args.quiet:
        print_configuration(config)

    sim = Simulation(config.workload, config.make_database(), output_path=args.output)

    logger.info("Starting workload...")
    show_progress = not args.no_progress and not args.verbose and not args.quiet
    if show_progress:
        duration = config.workload.test_duration_ms
        with tqdm(total=duration, unit='ms', unit_scale=True,
                  desc="Running", bar_format='{l_bar}{bar}| {n_fmt}/{total_fmt} [{elapsed}<{remaining}]') as pbar:
            stats = sim.run(on_progress=pbar.update)
    else:
        stats = sim.run()

    if not args.quiet:
        print_metrics(stats)
    if args.output:
        logger.info(f"Iteration records written to {args.output}")

    if not stats.check():
        logger.error(f"Check failed: {stats.counters.invalid_reports} invalid conflicting keys reports")
        sys.exit(1)
    logger.info("Check passed")


if __name__ == "__main__":
    cli()
