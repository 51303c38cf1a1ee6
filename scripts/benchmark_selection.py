#!/usr/bin/env python3
"""
Benchmarking script for unionfs upstream selection policies.

Builds a set of simulated upstreams, runs a policy many times against them and
reports how often each upstream won, so tie-break fairness and the effect of
reserved free space or unreportable metrics can be inspected.
"""

import argparse
import time
import random
import os
import logging
import csv
from collections import Counter

import sys
script_dir = os.path.dirname(os.path.abspath(__file__))
src_dir = os.path.abspath(os.path.join(script_dir, '..', 'src'))
sys.path.insert(0, src_dir)

try:
    from unionfs.errors import UnionError
    from unionfs.policy import PolicyRegistry, register_builtin_policies
    from unionfs.upstream import MemoryUpstream, background
except ImportError as e:
    print(f"Error importing unionfs modules: {e}")
    print(f"Ensure the script is run from the workspace root or add src to PYTHONPATH.")
    sys.exit(1)

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger("benchmark")

PATH = "bench/object.bin"


def setup_upstreams(args):
    """Creates simulated upstreams based on parsed arguments."""
    rng = random.Random(args.seed)
    upstreams = []
    for i in range(args.num_upstreams):
        if args.layout == 'tied':
            free, objects = args.free_space, args.objects
        else:
            free = rng.randint(args.free_space // 2, args.free_space * 2)
            objects = rng.randint(0, args.objects * 2)
        # The last --unsupported upstreams cannot report either metric
        if i >= args.num_upstreams - args.unsupported:
            free = objects = None
        upstreams.append(MemoryUpstream(
            f"up{i}", files=[PATH], free_space=free, num_objects=objects,
            min_free_space=args.min_free_space, cache_time=0,
        ))
    for u in upstreams:
        logger.info(f"{u.name}: free={u.reported_free_space} objects={u.reported_num_objects} min_free={u.min_free_space}")
    return upstreams


def run_benchmark(policy, upstreams, category, num_ops):
    """Runs the selections and collects win counts and latency."""
    logger.info(f"Starting benchmark run: {num_ops} {category} selections with {policy.name}...")
    ctx = background()
    wins = Counter()
    failures = Counter()
    start_time = time.time()
    for i in range(1, num_ops + 1):
        try:
            if category == 'search':
                winners = [policy.search(ctx, upstreams, PATH)]
            else:
                winners = getattr(policy, category)(ctx, upstreams, PATH)
        except UnionError as e:
            failures[type(e).__name__] += 1
            continue
        for u in winners:
            wins[u.name] += 1
        if i % max(1, num_ops // 10) == 0:
            logger.info(f"Progress: {i}/{num_ops} ({i/num_ops*100:.0f}%)")
    total_time = time.time() - start_time
    return {
        'total_time_s': total_time,
        'ops_per_sec': num_ops / total_time if total_time > 0 else 0,
        'avg_latency_us': total_time / num_ops * 1e6 if num_ops else 0,
        'wins': dict(wins),
        'failures': dict(failures),
    }


def print_results(results, args):
    """Prints a summary of the benchmark results."""
    print("\n--- Selection Benchmark Summary ---")
    print(f"Policy: {args.policy}, Category: {args.category}, Ops: {args.num_ops}, Upstreams: {args.num_upstreams} ({args.layout})")
    print(f"Operations/Sec: {results['ops_per_sec']:.2f}")
    print(f"Avg Selection Latency: {results['avg_latency_us']:.1f} us")
    for name, count in sorted(results['wins'].items()):
        print(f"  {name}: {count} ({count / args.num_ops * 100:.1f}%)")
    if results['failures']:
        print(f"Failures: {results['failures']}")
    print("-----------------------------------")


def save_results_csv(results, args, filename):
    """Appends results to a CSV file."""
    fieldnames = [
        'timestamp', 'policy', 'category', 'num_ops', 'num_upstreams', 'layout',
        'free_space', 'objects', 'min_free_space', 'unsupported', 'seed',
        'total_time_s', 'ops_per_sec', 'avg_latency_us', 'wins', 'failures',
    ]
    row = {
        'timestamp': time.strftime("%Y-%m-%d %H:%M:%S"),
        'policy': args.policy,
        'category': args.category,
        'num_ops': args.num_ops,
        'num_upstreams': args.num_upstreams,
        'layout': args.layout,
        'free_space': args.free_space,
        'objects': args.objects,
        'min_free_space': args.min_free_space,
        'unsupported': args.unsupported,
        'seed': args.seed,
        **results
    }
    file_exists = os.path.isfile(filename)
    try:
        with open(filename, 'a', newline='') as csvfile:
            writer = csv.DictWriter(csvfile, fieldnames=fieldnames)
            if not file_exists:
                writer.writeheader()
            writer.writerow(row)
        logger.info(f"Results appended to {filename}")
    except IOError as e:
        logger.error(f"Failed to write results to CSV {filename}: {e}")


def main():
    registry = register_builtin_policies(PolicyRegistry())
    parser = argparse.ArgumentParser(description="Benchmark unionfs upstream selection policies.")

    parser.add_argument("-p", "--policy", choices=registry.names(), default="eplfs", help="Policy to benchmark")
    parser.add_argument("-c", "--category", choices=['action', 'create', 'search'], default='create', help="Operation category")
    parser.add_argument("-n", "--num-ops", type=int, default=10000, help="Number of selections")

    parser.add_argument("-u", "--num-upstreams", type=int, default=4, help="Number of simulated upstreams")
    parser.add_argument("-l", "--layout", choices=['tied', 'random'], default='tied', help="Equal metrics everywhere, or random ones")
    parser.add_argument("--free-space", type=int, default=10 * 1024**3, help="Free bytes per upstream (tied) or the median (random)")
    parser.add_argument("--objects", type=int, default=1000, help="Objects per upstream (tied) or the median (random)")
    parser.add_argument("--min-free-space", type=int, default=1024**3, help="Reserved free bytes per upstream")
    parser.add_argument("--unsupported", type=int, default=0, help="How many upstreams cannot report metrics")
    parser.add_argument("--seed", type=int, default=None, help="Seed for upstream layout and tie-breaks")

    parser.add_argument("-o", "--output-csv", type=str, default="", help="CSV file to append results")
    parser.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Set logging level")

    args = parser.parse_args()
    logging.getLogger().setLevel(getattr(logging, args.log_level))

    if args.num_upstreams < 1:
        parser.error("At least one upstream is required")
    if not (0 <= args.unsupported <= args.num_upstreams):
        parser.error("--unsupported must be between 0 and --num-upstreams")

    upstreams = setup_upstreams(args)
    policy = registry.get(args.policy, rng=random.Random(args.seed))
    results = run_benchmark(policy, upstreams, args.category, args.num_ops)
    print_results(results, args)
    if args.output_csv:
        save_results_csv(results, args, args.output_csv)


if __name__ == "__main__":
    main()
