#!/usr/bin/env python3
"""
Benchmark script for the t-SNE solver - Reproducible Performance Testing
========================================================================

Embeds two well-separated Gaussian clusters with a deterministic seed and reports:
- similarity graph build time (KNN + graph)
- per-iteration time breakdown (hierarchy, field, total)
- final KL divergence and cluster separation
- configuration used

Usage:
    python scripts/bench.py [--points N] [--dims H] [--iterations N] [--dual | --single]

Example:
    python scripts/bench.py --points 20000 --dims 50 --iterations 1000
"""

import sys
import os
import time
import argparse
import numpy as np

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import taichi as ti

from config import Params, PERPLEXITY, SEED
from sne import SNE


def parse_args():
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description='Benchmark t-SNE solver performance')
    parser.add_argument('--points', type=int, default=20000,
                        help='Number of points (default: 20000)')
    parser.add_argument('--dims', type=int, default=50,
                        help='Input dimensionality (default: 50)')
    parser.add_argument('--low-dims', type=int, default=2, choices=(2, 3),
                        help='Embedding dimensionality (default: 2)')
    parser.add_argument('--iterations', type=int, default=1000,
                        help='Number of iterations (default: 1000)')
    parser.add_argument('--perplexity', type=float, default=PERPLEXITY,
                        help=f'Perplexity (default: {PERPLEXITY})')
    parser.add_argument('--seed', type=int, default=SEED,
                        help=f'Random seed for reproducibility (default: {SEED})')
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument('--dual', action='store_true', help='Force the dual hierarchy')
    mode.add_argument('--single', action='store_true', help='Force the single hierarchy')
    parser.add_argument('--cpu', action='store_true', help='Run on the CPU backend')
    return parser.parse_args()


def make_clusters(n_points, n_dims, seed):
    """
    Two Gaussian clusters (unit variance) whose centers are 20 apart.

    Returns:
        Tuple of (data, labels)
    """
    rng = np.random.RandomState(seed)
    half = n_points // 2
    data = rng.normal(size=(n_points, n_dims)).astype(np.float32)
    data[half:, 0] += 20.0
    labels = np.zeros(n_points, dtype=np.int32)
    labels[half:] = 1
    return data, labels


def cluster_separation(embedding, labels):
    """Distance between cluster centroids over the mean within-cluster spread."""
    a = embedding[labels == 0]
    b = embedding[labels == 1]
    gap = np.linalg.norm(a.mean(axis=0) - b.mean(axis=0))
    spread = 0.5 * (np.linalg.norm(a - a.mean(axis=0), axis=1).mean()
                    + np.linalg.norm(b - b.mean(axis=0), axis=1).mean())
    return gap / max(spread, 1e-12)


def run_benchmark(args):
    """
    Run benchmark and collect performance statistics.

    Returns:
        Dictionary with benchmark results
    """
    print(f"\n{'='*70}")
    print(f"T-SNE BENCHMARK")
    print(f"{'='*70}\n")

    dual = True if args.dual else (False if args.single else None)
    params = Params(n=args.points, n_high_dims=args.dims, n_low_dims=args.low_dims,
                    perplexity=args.perplexity, iterations=args.iterations,
                    seed=args.seed, dual_hierarchy=dual)

    print(f"Configuration:")
    print(f"  Points:        {params.n}")
    print(f"  Input dims:    {params.n_high_dims}")
    print(f"  Output dims:   {params.n_low_dims}")
    print(f"  Perplexity:    {params.perplexity} (k={params.k})")
    print(f"  Iterations:    {params.iterations}")
    print(f"  Hierarchy:     {'dual' if params.use_dual_hierarchy else 'single'} (theta={params.theta})")
    print(f"  Seed:          {params.seed}")
    print(f"\n")

    ti.init(arch=ti.cpu if args.cpu else ti.gpu)

    data, labels = make_clusters(args.points, args.dims, args.seed)
    sne = SNE(data, params, labels=labels)

    print("Building similarities...")
    sne.comp_similarities()
    timings = sne.similarities.timings
    print(f"  KNN:           {timings['knn']*1000:.1f}ms")
    print(f"  Graph:         {timings['graph']*1000:.1f}ms\n")

    minimization = sne.minimization
    times_hierarchy = []
    times_field = []
    times_total = []

    print(f"Running {params.iterations} iterations...\n")
    start_time_total = time.perf_counter()
    for it in range(params.iterations):
        sne.comp_minimization_step()
        times_hierarchy.append(minimization.field.time_hierarchy)
        times_field.append(minimization.field.time_field)
        times_total.append(minimization.time_iteration)
    ti.sync()
    total_time = time.perf_counter() - start_time_total

    kl = sne.kl_divergence()
    separation = cluster_separation(sne.embedding(), labels)

    avg_hierarchy = np.mean(times_hierarchy)
    avg_field = np.mean(times_field)
    avg_total = np.mean(times_total)

    print(f"\n{'='*70}")
    print(f"BENCHMARK RESULTS")
    print(f"{'='*70}\n")

    print(f"Overall Performance:")
    print(f"  Iterations/s:  {params.iterations / total_time:.2f}")
    print(f"  Total Time:    {total_time:.2f}s")
    print(f"  Avg Iteration: {avg_total*1000:.2f}ms")
    print(f"\n")

    print(f"Time Breakdown (averages):")
    print(f"  Hierarchy:     {avg_hierarchy*1000:6.2f}ms  ({100*avg_hierarchy/avg_total:5.1f}%)")
    print(f"  Field:         {avg_field*1000:6.2f}ms  ({100*avg_field/avg_total:5.1f}%)")
    print(f"\n")

    print(f"Quality:")
    print(f"  KL divergence: {kl:.4f}")
    print(f"  Separation:    {separation:.2f}")
    print(f"\n")

    sne.destroy()
    return {
        'total_time': total_time,
        'avg_iteration_ms': avg_total * 1000,
        'avg_hierarchy_ms': avg_hierarchy * 1000,
        'avg_field_ms': avg_field * 1000,
        'kl_divergence': kl,
        'separation': separation,
        'config': {
            'points': params.n,
            'dims': params.n_high_dims,
            'low_dims': params.n_low_dims,
            'iterations': params.iterations,
            'seed': params.seed,
            'dual_hierarchy': params.use_dual_hierarchy,
        }
    }


def main():
    """Main entry point."""
    args = parse_args()
    run_benchmark(args)

    print(f"Benchmark complete!")
    print(f"{'='*70}\n")

    return 0


if __name__ == '__main__':
    sys.exit(main())
