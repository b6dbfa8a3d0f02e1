#!/usr/bin/env python3
# fleet-dispatch/main.py
"""
Command-Line Interface for the Fleet Dispatch engine.

Replays a CSV scenario through the engine in simulated time, once per
matcher, and prints a comparison table.

Usage:
    python main.py                                   # Bundled sample scenario
    python main.py --orders o.csv --drivers d.csv    # Custom scenario
    python main.py --matchers batch sequential       # Compare matchers
    python main.py --seed 7 --minutes 120 --verbose
    python main.py --road-distance                   # OSRM distances for ETA fallbacks

Exit Codes:
    0: Success
    1: Data loading error
    2: Simulation error
"""

from __future__ import annotations

import argparse
import copy
import logging
import os
import sys
from typing import Any, Dict, List, Optional

from fleetdispatch.config import DispatchConfig
from fleetdispatch.dispatch import MATCHERS
from fleetdispatch.errors import DispatchError
from fleetdispatch.simulation import Simulation
from fleetdispatch.utils import clear_osrm_cache

logger = logging.getLogger(__name__)

DATA_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "data")
DEFAULT_ORDERS = os.path.join(DATA_DIR, "sample_orders.csv")
DEFAULT_DRIVERS = os.path.join(DATA_DIR, "sample_drivers.csv")


def print_header() -> None:
    print("\n" + "=" * 60)
    print("  FLEET DISPATCH - Matching Engine Replay")
    print("  Matcher Comparison")
    print("=" * 60 + "\n")


def print_results_table(results: Dict[str, Dict[str, Any]]) -> None:
    """
    Print a formatted comparison table of results.

    Args:
        results: Dictionary mapping matcher name to KPI results
    """
    metrics = [
        "Orders Delivered",
        "Avg Delivery Time",
        "P90 Delivery Time",
        "Rejections",
        "Matching Rate",
        "Avg Time To Match",
        "Reroutes",
        "Drivers Used",
        "Total Fleet Distance",
    ]
    matchers = list(results.keys())

    print("\n" + "=" * 60)
    print("  FINAL RESULTS COMPARISON")
    print("=" * 60 + "\n")

    header = "| Metric                    |"
    for name in matchers:
        header += f" {name.title():^15} |"
    print(header)

    separator = "|" + "-" * 27 + "|"
    for _ in matchers:
        separator += "-" * 17 + "|"
    print(separator)

    for metric in metrics:
        row = f"| {metric:<25} |"
        for name in matchers:
            row += f" {str(results[name].get(metric, 'N/A')):^15} |"
        print(row)

    print("\n" + "=" * 60 + "\n")


def load_data_safe(order_file: str, driver_file: str) -> Optional[tuple]:
    """
    Load data with graceful error handling.

    Returns:
        Tuple of (drivers, orders) or None if error
    """
    try:
        drivers, orders = Simulation.load_data(order_file, driver_file)
    except (FileNotFoundError, ValueError) as e:
        print(f"ERROR: Failed to load data: {e}")
        return None
    print(f"Loaded {len(orders)} orders and {len(drivers)} drivers")
    return drivers, orders


def run_simulation_safe(
    drivers,
    orders,
    matcher: str,
    seed: Optional[int],
    minutes: int,
    verbose: bool = True,
    dispatch_config: Optional[DispatchConfig] = None,
) -> Optional[Dict[str, Any]]:
    """
    Run one replay with error handling.

    Returns:
        Results dictionary or None if error
    """
    try:
        sim = Simulation(
            copy.deepcopy(drivers), copy.deepcopy(orders),
            matcher=matcher, seed=seed, dispatch_config=dispatch_config,
        )
        return sim.run(minutes=minutes, verbose=verbose)
    except (DispatchError, ValueError) as e:
        logger.exception(f"Simulation failed for '{matcher}'")
        print(f"ERROR: Simulation failed for '{matcher}': {e}")
        return None


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main entry point for the CLI.

    Returns:
        Exit code (0 for success, non-zero for error)
    """
    parser = argparse.ArgumentParser(
        description="Fleet Dispatch matching engine replay",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py                                  # Sample scenario, all matchers
  python main.py --matchers batch                 # Only the batch matcher
  python main.py --orders o.csv --drivers d.csv   # Custom scenario
        """
    )
    parser.add_argument("--orders", "-o", default=DEFAULT_ORDERS, help="Orders CSV file")
    parser.add_argument("--drivers", "-d", default=DEFAULT_DRIVERS, help="Drivers CSV file")
    parser.add_argument(
        "--matchers", "-m",
        nargs="+",
        default=sorted(MATCHERS),
        help=f"Matchers to compare. Options: {', '.join(sorted(MATCHERS))}"
    )
    parser.add_argument("--seed", type=int, default=42, help="Random seed (default: 42)")
    parser.add_argument("--minutes", type=int, default=180, help="Simulated time limit in minutes")
    parser.add_argument("--verbose", "-v", action="store_true", help="Show detailed progress and engine logs")
    parser.add_argument(
        "--road-distance",
        action="store_true",
        help="Use OSRM road distance for straight-line ETA fallbacks (needs network access)"
    )

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    for name in args.matchers:
        if name not in MATCHERS:
            print(f"ERROR: Unknown matcher '{name}'")
            print(f"Available matchers: {', '.join(sorted(MATCHERS))}")
            return 1

    print_header()

    data = load_data_safe(args.orders, args.drivers)
    if data is None:
        return 1
    drivers, orders = data

    dispatch_config = DispatchConfig(use_road_distance=args.road_distance)

    print(f"\nRunning matchers: {', '.join(args.matchers)}")
    print("-" * 40)

    all_results: Dict[str, Dict[str, Any]] = {}
    for name in args.matchers:
        print(f"\n[{name.upper()}] Starting simulation...")
        if args.road_distance:
            # Each matcher starts from a cold road-distance cache
            clear_osrm_cache()
        results = run_simulation_safe(
            drivers, orders, name, args.seed, args.minutes,
            verbose=args.verbose, dispatch_config=dispatch_config,
        )
        if results is None:
            print(f"WARN: Skipping '{name}' due to error")
            continue
        all_results[name] = results

    if not all_results:
        print("ERROR: No simulations completed successfully")
        return 2

    print_results_table(all_results)
    return 0


if __name__ == "__main__":
    sys.exit(main())
