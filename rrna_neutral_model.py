from __future__ import annotations

import logging
import math

import numpy as np
import pandas as pd

from rrna_parameters import (
    DEFAULT_INITIAL_DIVERGENCE,
    build_parameters,
    sampled_generations,
    strain_parameters,
)


logger = logging.getLogger(__name__)

SUMMARY_COLUMNS = ["generation", "mean", "median", "q25", "q75", "min", "max"]


# -- Genome state ----------------------------------------------------------------


def initialize_genome(parameters: dict, rng: np.random.Generator) -> dict:
    """Build a fresh genome: {"rrs": (n_copies, Ls), "rrl": (n_copies, Ll)} int8 arrays.

    Row i holds operon parameters["operons"][i].  The reference row stays all-zero;
    every other row gets floor(total_sites * initial_divergence) differing sites,
    split between the loci in proportion to their lengths.  Positions are drawn
    with replacement, so collisions silently lower the realized divergence.
    """
    lengths = parameters["locus_lengths"]
    operons = parameters["operons"]
    genome = {
        locus: np.zeros((len(operons), length), dtype=np.int8)
        for locus, length in lengths.items()
    }

    total_sites = lengths["rrs"] + lengths["rrl"]
    n_diff = math.floor(total_sites * parameters["initial_divergence"])
    n_rrs = math.floor(n_diff * (lengths["rrs"] / total_sites))
    allotted = {"rrs": n_rrs, "rrl": n_diff - n_rrs}

    for idx, operon in enumerate(operons):
        if operon == parameters["reference_operon"]:
            continue
        for locus, seqs in genome.items():
            k = allotted[locus]
            if k == 0:
                continue
            positions = rng.integers(0, lengths[locus], size=k)
            seqs[idx, positions] = rng.integers(1, 4, size=k)
    return genome


# -- Mutation --------------------------------------------------------------------


def apply_mutations(genome: dict, mutation_rate: float, rng: np.random.Generator) -> None:
    """One generation of point mutation, in place.

    Each (copy, locus) mutates with probability mutation_rate * locus_length; a hit
    moves one random site to the next state mod 4, so repeated hits can revert it.
    """
    for seqs in genome.values():
        n_copies, length = seqs.shape
        hits = np.flatnonzero(rng.random(n_copies) < mutation_rate * length)
        if hits.size == 0:
            continue
        positions = rng.integers(0, length, size=hits.size)
        seqs[hits, positions] = (seqs[hits, positions] + 1) % 4


# -- Gene conversion -------------------------------------------------------------


def tract_bounds(length: int, tract_len: int, rng: np.random.Generator) -> tuple[int, int]:
    """Start/end of a conversion tract, clamped to [0, length)."""
    start = int(rng.integers(0, max(1, length - tract_len)))
    return start, min(start + tract_len, length)


def apply_gene_conversion(
    genome: dict,
    gene_conv_rate: float,
    rng: np.random.Generator,
    tract_min: int,
    tract_max: int,
) -> None:
    """One generation of gene conversion over all ordered (recipient, donor) pairs, in place.

    Pairs are visited recipient-major.  A successful event draws one tract length
    for both loci and an independent start per locus, then overwrites the
    recipient's tract with the donor's current sites.
    """
    n_copies = next(iter(genome.values())).shape[0]
    events = rng.random((n_copies, n_copies)) < gene_conv_rate
    np.fill_diagonal(events, False)
    for recipient, donor in np.argwhere(events):
        tract_len = int(rng.integers(tract_min, tract_max + 1))
        for seqs in genome.values():
            start, end = tract_bounds(seqs.shape[1], tract_len, rng)
            seqs[recipient, start:end] = seqs[donor, start:end]


# -- Sampling --------------------------------------------------------------------


def operon_divergence(genome: dict, ref_idx: int) -> np.ndarray:
    """Fraction of sites (both loci) where each copy differs from the reference copy."""
    diff_sites = sum(
        np.count_nonzero(seqs != seqs[ref_idx], axis=1) for seqs in genome.values()
    )
    total_sites = sum(seqs.shape[1] for seqs in genome.values())
    return np.asarray(diff_sites, dtype=float) / float(total_sites)


def mean_divergence(genome: dict, ref_idx: int) -> float:
    """Average divergence of the non-reference copies; 0 when there are none."""
    per_copy = operon_divergence(genome, ref_idx)
    others = np.delete(per_copy, ref_idx)
    if others.size == 0:
        return 0.0
    return float(np.mean(others))


# -- Single run ------------------------------------------------------------------


def simulate_run(
    input_parameters: dict | None = None,
    rng: np.random.Generator | None = None,
) -> dict:
    """Run one neutral-model simulation and return its divergence trajectory.

    Generation 0 is sampled before any event.  Every later generation applies
    mutation, then gene conversion, then samples when generation % sample_interval
    is zero.

    Returns {"parameters": dict, "generation": int64 array, "divergence": float array}.
    """
    rng = np.random.default_rng() if rng is None else rng
    parameters = build_parameters(input_parameters)

    ref_idx = parameters["operons"].index(parameters["reference_operon"])
    mutation_rate = parameters["mutation_rate"]
    gene_conv_rate = parameters["gene_conv_rate"]
    interval = parameters["sample_interval"]

    generations = sampled_generations(parameters)
    divergence = np.empty(generations.size, dtype=float)

    genome = initialize_genome(parameters, rng)
    divergence[0] = mean_divergence(genome, ref_idx)
    k = 1
    for gen in range(1, parameters["generations"] + 1):
        apply_mutations(genome, mutation_rate, rng)
        apply_gene_conversion(
            genome, gene_conv_rate, rng, parameters["tract_min"], parameters["tract_max"]
        )
        if gen % interval == 0:
            divergence[k] = mean_divergence(genome, ref_idx)
            k += 1

    return {"parameters": parameters, "generation": generations, "divergence": divergence}


# -- Ensemble statistics ---------------------------------------------------------


def summarize_trajectories(trajectories: list[dict]) -> pd.DataFrame:
    """Cross-run statistics at each sampled generation.

    Median and quartiles are nearest-rank picks from the sorted run values
    (indices floor(N/2), floor(N*0.25), floor(N*0.75)); for even N the median is
    the upper of the two middle values.  No runs gives an empty frame.
    """
    if not trajectories:
        return pd.DataFrame(columns=SUMMARY_COLUMNS)

    generations = np.asarray(trajectories[0]["generation"], dtype=np.int64)
    for trajectory in trajectories[1:]:
        if not np.array_equal(trajectory["generation"], generations):
            raise ValueError("Trajectories do not share the same sampled generations")

    values = np.sort(
        np.vstack([np.asarray(t["divergence"], dtype=float) for t in trajectories]), axis=0
    )
    n = values.shape[0]
    lo, hi = values[0], values[-1]
    # Summation rounding can push the mean of identical values just past them.
    mean = np.clip(values.mean(axis=0), lo, hi)

    return pd.DataFrame(
        {
            "generation": generations,
            "mean": mean,
            "median": values[n // 2],
            "q25": values[math.floor(n * 0.25)],
            "q75": values[math.floor(n * 0.75)],
            "min": lo,
            "max": hi,
        },
        columns=SUMMARY_COLUMNS,
    )


def run_rrna_simulations(
    strain: str,
    n_runs: int,
    initial_divergence: float = DEFAULT_INITIAL_DIVERGENCE,
    seed: int | None = None,
    overrides: dict | None = None,
) -> pd.DataFrame:
    """Serial reference ensemble: n_runs independent runs, summarized.

    Run i draws from its own generator seeded with (base_seed + i).
    """
    if n_runs <= 0:
        raise ValueError("n_runs must be positive")

    parameters = strain_parameters(strain)
    parameters["initial_divergence"] = initial_divergence
    if overrides:
        parameters.update(overrides)
    # Reject bad parameters before the first run.
    build_parameters(parameters)

    base_seed = int(seed) if seed is not None else int(np.random.SeedSequence().generate_state(1)[0])
    logger.info("Running %d reference simulations for strain %s", n_runs, strain)

    trajectories = []
    for i in range(n_runs):
        trajectories.append(simulate_run(parameters, np.random.default_rng(base_seed + i)))
        logger.debug("Run %d/%d done", i + 1, n_runs)
    return summarize_trajectories(trajectories)
