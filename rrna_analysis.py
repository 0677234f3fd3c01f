from __future__ import annotations

import argparse
import logging
from pathlib import Path

import matplotlib
import pandas as pd

from observed_divergence import (
    compare_to_summary,
    load_observed_files,
    observed_divergence,
)
from rrna_neutral_fast import run_rrna_simulations_fast
from rrna_parameters import (
    DEFAULT_INITIAL_DIVERGENCE,
    GENERATIONS,
    REFERENCE_OPERON,
    SAMPLE_INTERVAL,
    STRAIN_PRESETS,
)


matplotlib.use("Agg")
import matplotlib.pyplot as plt


def plot_divergence(
    summary: pd.DataFrame,
    observed: pd.DataFrame | None,
    out_path: Path,
    title: str,
) -> Path:
    """Neutral band (mean, q25/q75, dashed median) with observed strains overlaid."""
    fig, ax = plt.subplots(figsize=(10, 5))
    ax.plot(summary["generation"], summary["mean"], color="#2563eb", linewidth=2, label="Mean")
    ax.plot(summary["generation"], summary["q25"], color="#93c5fd", linewidth=1.5, label="25th percentile")
    ax.plot(summary["generation"], summary["q75"], color="#93c5fd", linewidth=1.5, label="75th percentile")
    ax.plot(
        summary["generation"], summary["median"],
        color="#1e40af", linewidth=1, linestyle="--", label="Median",
    )

    if observed is not None and not observed.empty:
        for i, (strain, data) in enumerate(observed.groupby("strain", sort=True)):
            if bool(data["mutator"].iloc[0]):
                style = {"color": "#ef4444", "linewidth": 2}
            else:
                style = {"color": matplotlib.colormaps["hsv"](((i * 137) % 360) / 360.0), "linewidth": 1.5}
            ax.plot(data["generation"], data["avg_divergence"], marker="o", markersize=4,
                    label=strain, **style)

    ax.set_xlabel("Generation")
    ax.set_ylabel(f"Avg divergence from {REFERENCE_OPERON}")
    ax.set_title(title)
    ax.grid(True, linestyle=":")
    ax.legend(fontsize="small")
    fig.tight_layout()
    fig.savefig(out_path, dpi=300)
    plt.close(fig)
    return out_path


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description="Simulate neutral rRNA operon divergence and compare it with observed data.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--strain", choices=sorted(STRAIN_PRESETS), default="normal",
                        help="Strain preset selecting the mutation rate.")
    parser.add_argument("--n-runs", type=int, default=100, help="Number of runs to simulate.")
    parser.add_argument("--initial-divergence", type=float, default=DEFAULT_INITIAL_DIVERGENCE,
                        help="Fraction of sites differing from the reference at generation 0.")
    parser.add_argument("--generations", type=int, default=GENERATIONS,
                        help="Last generation simulated.")
    parser.add_argument("--sample-interval", type=int, default=SAMPLE_INTERVAL,
                        help="Generations between trajectory points.")
    parser.add_argument("--seed", type=int, default=None, help="Random seed for reproducibility.")
    parser.add_argument("--n-workers", type=int, default=None,
                        help="Worker threads (default: all CPUs).")
    parser.add_argument("--timeout", type=float, default=None,
                        help="Wall-clock budget in seconds for the whole ensemble.")
    parser.add_argument("--observed", nargs="*", default=[],
                        help="Mutation-call CSVs named <Strain>_<Gen>gen_<FileID>.csv.")
    parser.add_argument("--out-prefix", default="rrna_neutral", help="Prefix for output files.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log progress details.")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )

    summary = run_rrna_simulations_fast(
        args.strain,
        args.n_runs,
        initial_divergence=args.initial_divergence,
        seed=args.seed,
        n_workers=args.n_workers,
        timeout=args.timeout,
        overrides={"generations": args.generations, "sample_interval": args.sample_interval},
    )

    out_prefix = Path(args.out_prefix)
    summary_path = out_prefix.with_name(out_prefix.name + ".summary.tsv")
    summary.to_csv(summary_path, sep="\t", index=False)
    print(f"Saved summary: {summary_path}")

    observed = None
    if args.observed:
        observed = observed_divergence(load_observed_files(args.observed))
        comparison = compare_to_summary(observed, summary)
        comparison_path = out_prefix.with_name(out_prefix.name + ".comparison.tsv")
        comparison.to_csv(comparison_path, sep="\t", index=False)
        print(f"Saved comparison: {comparison_path}")
        if not comparison.empty:
            print(f"Observed points within IQR: {int(comparison['within_iqr'].sum())}/{len(comparison)}")

    if summary.empty:
        print("No simulation runs completed; nothing to plot.")
        return 1

    plot_path = plot_divergence(
        summary,
        observed,
        out_prefix.with_name(out_prefix.name + ".png"),
        title=f"Neutral expectation: {STRAIN_PRESETS[args.strain]['label']}",
    )
    print(f"Saved plot: {plot_path}")
    last = summary.iloc[-1]
    print(
        f"Generation {int(last['generation'])}: mean={last['mean']:.4f}, "
        f"q25={last['q25']:.4f}, q75={last['q75']:.4f}"
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
