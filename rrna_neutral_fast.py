"""
rrna_neutral_fast.py
====================
Numba-accelerated neutral model of rRNA operon divergence.

WHAT IS SIMULATED
-----------------
An E. coli genome carries 7 rRNA operons (rrnA..rrnH).  Each copy holds a short
rrs locus (1541 sites) and a long rrl locus (2904 sites); every site is one of 4
discrete states.  Two forces act on the copies every generation, in this order:

  1. Point mutation  — each (copy, locus) mutates with probability
                       mutation_rate × locus_length; one random site moves to
                       (state + 1) mod 4.
  2. Gene conversion — each ordered (recipient, donor) pair converts with
                       probability gene_conv_rate; a 50–199 bp tract of the
                       donor overwrites the recipient in both loci (same tract
                       length, independent starts).

Divergence is the fraction of sites where a copy differs from the reference
copy rrnB, averaged over the 6 other copies.  It is sampled at generation 0
(before any event) and every `sample_interval` generations after that.

RELATIONSHIP TO rrna_neutral_model.py
-------------------------------------
`rrna_neutral_model.py` is the readable NumPy version driven by an explicit
np.random.Generator.  This file runs the same model with the per-generation loop
compiled by Numba, which is what makes 50 000 generations × hundreds of runs
practical.  The two files consume random numbers in different orders, so equal
seeds give statistically equivalent, not identical, trajectories.

GENOME LAYOUT
-------------
rrs[copy, site], rrl[copy, site]  — int8 arrays, one row per operon in
parameters["operons"] order.  Rows are contiguous, so the per-copy comparisons
and tract copies in the hot loop walk memory sequentially.

RANDOMNESS AND THREADS
----------------------
`_neutral_core` seeds Numba's generator with `np.random.seed(seed)` on entry.
Numba keeps that state per thread, and every run re-seeds it, so a run's
trajectory depends only on its seed and not on which worker thread executed it.
"""

from __future__ import annotations

import concurrent.futures
import logging
import math
import os

import numpy as np
import pandas as pd
from numba import njit

from rrna_neutral_model import summarize_trajectories
from rrna_parameters import (
    DEFAULT_INITIAL_DIVERGENCE,
    build_parameters,
    sampled_generations,
    strain_parameters,
)


logger = logging.getLogger(__name__)


# ══════════════════════════════════════════════════════════════════════════════
# _seed_initial_divergence
# ══════════════════════════════════════════════════════════════════════════════
@njit(cache=True, nogil=True)
def _seed_initial_divergence(
    rrs: np.ndarray,
    rrl: np.ndarray,
    ref_idx: int,
    initial_divergence: float,
) -> None:
    """
    Scatter initial differences into every non-reference copy.

    total = floor((Ls + Ll) × initial_divergence) sites per copy, of which
    floor(total × Ls / (Ls + Ll)) go to rrs and the rest to rrl.  Positions are
    drawn with replacement; a collision overwrites the same site, so the realized
    divergence can fall slightly short of the target.
    """
    n_copies = rrs.shape[0]
    rrs_length = rrs.shape[1]
    rrl_length = rrl.shape[1]
    total_sites = rrs_length + rrl_length
    n_diff = int(math.floor(total_sites * initial_divergence))
    n_rrs = int(math.floor(n_diff * (rrs_length / total_sites)))
    n_rrl = n_diff - n_rrs

    for c in range(n_copies):
        if c == ref_idx:
            continue
        for _ in range(n_rrs):
            pos = np.random.randint(0, rrs_length)
            rrs[c, pos] = np.int8(np.random.randint(1, 4))
        for _ in range(n_rrl):
            pos = np.random.randint(0, rrl_length)
            rrl[c, pos] = np.int8(np.random.randint(1, 4))


# ══════════════════════════════════════════════════════════════════════════════
# _mutate
# ══════════════════════════════════════════════════════════════════════════════
@njit(cache=True, nogil=True)
def _mutate(rrs: np.ndarray, rrl: np.ndarray, mutation_rate: float) -> None:
    """
    One generation of point mutation.

    mutation_rate × length is the per-locus probability of a mutation this
    generation (small-p Poisson approximation), so each (copy, locus) gets at
    most one event.  States cycle 0→1→2→3→0; nothing remembers which sites have
    already changed.
    """
    n_copies = rrs.shape[0]
    p_rrs = mutation_rate * rrs.shape[1]
    p_rrl = mutation_rate * rrl.shape[1]
    for c in range(n_copies):
        if np.random.random() < p_rrs:
            pos = np.random.randint(0, rrs.shape[1])
            rrs[c, pos] = np.int8((rrs[c, pos] + 1) % 4)
        if np.random.random() < p_rrl:
            pos = np.random.randint(0, rrl.shape[1])
            rrl[c, pos] = np.int8((rrl[c, pos] + 1) % 4)


# ══════════════════════════════════════════════════════════════════════════════
# _convert_tract / _gene_convert
# ══════════════════════════════════════════════════════════════════════════════
@njit(cache=True, nogil=True)
def _convert_tract(seqs: np.ndarray, recipient: int, donor: int, tract_len: int) -> None:
    """Overwrite one recipient tract with the donor's sites.

    start is uniform on [0, length - tract_len), widened to [0, 1) when the tract
    is at least as long as the locus; the end is clipped to the locus length.
    """
    length = seqs.shape[1]
    start = np.random.randint(0, max(1, length - tract_len))
    end = min(start + tract_len, length)
    for i in range(start, end):
        seqs[recipient, i] = seqs[donor, i]


@njit(cache=True, nogil=True)
def _gene_convert(
    rrs: np.ndarray,
    rrl: np.ndarray,
    gene_conv_rate: float,
    tract_min: int,
    tract_max: int,
) -> None:
    """
    One generation of gene conversion over all n×(n-1) ordered pairs.

    Recipient-major order; each event sees the state left by the mutations and
    earlier conversions of the same generation.  The donor is never modified.
    """
    n_copies = rrs.shape[0]
    for recipient in range(n_copies):
        for donor in range(n_copies):
            if donor == recipient:
                continue
            if np.random.random() < gene_conv_rate:
                tract_len = np.random.randint(tract_min, tract_max + 1)
                _convert_tract(rrs, recipient, donor, tract_len)
                _convert_tract(rrl, recipient, donor, tract_len)


# ══════════════════════════════════════════════════════════════════════════════
# _mean_divergence
# ══════════════════════════════════════════════════════════════════════════════
@njit(cache=True, nogil=True)
def _mean_divergence(rrs: np.ndarray, rrl: np.ndarray, ref_idx: int) -> float:
    """Average fraction of sites differing from the reference, over non-reference copies."""
    n_copies = rrs.shape[0]
    total_sites = rrs.shape[1] + rrl.shape[1]
    total = 0.0
    n_others = 0
    for c in range(n_copies):
        if c == ref_idx:
            continue
        diff_sites = 0
        for i in range(rrs.shape[1]):
            if rrs[c, i] != rrs[ref_idx, i]:
                diff_sites += 1
        for i in range(rrl.shape[1]):
            if rrl[c, i] != rrl[ref_idx, i]:
                diff_sites += 1
        total += diff_sites / total_sites
        n_others += 1
    if n_others == 0:
        return 0.0
    return total / n_others


# ══════════════════════════════════════════════════════════════════════════════
# _neutral_core
# ══════════════════════════════════════════════════════════════════════════════
@njit(cache=True, nogil=True)
def _neutral_core(
    seed: int,
    n_copies: int,
    ref_idx: int,
    rrs_length: int,
    rrl_length: int,
    mutation_rate: float,
    gene_conv_rate: float,
    initial_divergence: float,
    generations: int,
    sample_interval: int,
    tract_min: int,
    tract_max: int,
) -> np.ndarray:
    """
    Numba-compiled single run.

    Parameters (all scalars, passed explicitly for Numba type inference)
    --------------------------------------------------------------------
    seed               : RNG seed; the whole run is a function of it
    n_copies           : number of operon copies (rows)
    ref_idx            : row of the reference copy
    rrs_length         : sites in the short locus
    rrl_length         : sites in the long locus
    mutation_rate      : per-site, per-generation mutation probability
    gene_conv_rate     : per-recipient, per-donor, per-generation probability
    initial_divergence : fraction of sites differing at generation 0
    generations        : last generation simulated (inclusive)
    sample_interval    : generations between trajectory points
    tract_min          : shortest conversion tract (bp)
    tract_max          : longest conversion tract (bp, inclusive)

    Returns
    -------
    divergence : float64 array of length generations // sample_interval + 1;
                 entry k is the mean divergence at generation k × sample_interval.
    """
    np.random.seed(seed)

    rrs = np.zeros((n_copies, rrs_length), dtype=np.int8)
    rrl = np.zeros((n_copies, rrl_length), dtype=np.int8)
    _seed_initial_divergence(rrs, rrl, ref_idx, initial_divergence)

    n_samples = generations // sample_interval + 1
    divergence = np.empty(n_samples, dtype=np.float64)
    divergence[0] = _mean_divergence(rrs, rrl, ref_idx)

    k = 1
    for gen in range(1, generations + 1):
        # Order matters: conversion in generation g copies mutations made in g.
        _mutate(rrs, rrl, mutation_rate)
        _gene_convert(rrs, rrl, gene_conv_rate, tract_min, tract_max)
        if gen % sample_interval == 0:
            divergence[k] = _mean_divergence(rrs, rrl, ref_idx)
            k += 1

    return divergence


# ══════════════════════════════════════════════════════════════════════════════
# rrna_neutral_fast  — public API for a single simulation run
# ══════════════════════════════════════════════════════════════════════════════
def rrna_neutral_fast(input_parameters: dict | None = None, seed: int = 0) -> dict:
    """
    Run one fast neutral-model simulation and return its divergence trajectory.

    Parameters
    ----------
    input_parameters : dict, optional
        Overrides for any default parameter (see rrna_parameters._default_parameters).
        Only the keys you want to change need to be specified.  Invalid values
        raise ParameterError before anything is simulated.
    seed : int
        RNG seed.  The same seed and parameters always give the same trajectory.

    Returns
    -------
    dict with keys:
        "parameters" : complete, validated parameter dict
        "generation" : int64 array of sampled generations (0, k, 2k, ...)
        "divergence" : float64 array, mean divergence from the reference copy
    """
    parameters = build_parameters(input_parameters)
    lengths = parameters["locus_lengths"]

    divergence = _neutral_core(
        # Numba's np.random.seed takes a uint32.
        seed=int(seed) & 0xFFFFFFFF,
        n_copies=len(parameters["operons"]),
        ref_idx=parameters["operons"].index(parameters["reference_operon"]),
        rrs_length=lengths["rrs"],
        rrl_length=lengths["rrl"],
        mutation_rate=parameters["mutation_rate"],
        gene_conv_rate=parameters["gene_conv_rate"],
        initial_divergence=parameters["initial_divergence"],
        generations=parameters["generations"],
        sample_interval=parameters["sample_interval"],
        tract_min=parameters["tract_min"],
        tract_max=parameters["tract_max"],
    )
    return {
        "parameters": parameters,
        "generation": sampled_generations(parameters),
        "divergence": divergence,
    }


# ══════════════════════════════════════════════════════════════════════════════
# Worker function for parallel execution
# ══════════════════════════════════════════════════════════════════════════════
# With nogil=True on the Numba kernels, threads run simulations in parallel
# without process isolation or parameter pickling.  Runs share only the
# read-only parameter dict.

def _worker(args: tuple[dict, int]) -> dict:
    """Single-run worker: run one simulation and return its trajectory, tagged with its seed."""
    parameters, seed = args
    trajectory = rrna_neutral_fast(parameters, seed=seed)
    trajectory["seed"] = seed
    return trajectory


# ══════════════════════════════════════════════════════════════════════════════
# run_rrna_simulations_fast  — public API for the ensemble
# ══════════════════════════════════════════════════════════════════════════════
def run_rrna_simulations_fast(
    strain: str,
    n_runs: int,
    initial_divergence: float = DEFAULT_INITIAL_DIVERGENCE,
    seed: int | None = None,
    n_workers: int | None = None,
    timeout: float | None = None,
    overrides: dict | None = None,
) -> pd.DataFrame:
    """
    Run n_runs independent simulations and summarize them per sampled generation.

    Parameters
    ----------
    strain             : strain preset, "normal" or "mutator"
    n_runs             : number of independent replicates
    initial_divergence : fraction of sites differing from rrnB at generation 0
    seed               : base RNG seed; run i uses seed (base_seed + i).
                         If None, a random base seed is drawn.
    n_workers          : number of worker threads.
                         Defaults to os.cpu_count().  Set to 1 to run serially.
    timeout            : optional wall-clock budget (s) for the whole ensemble.
                         On expiry, unstarted runs are cancelled, running ones
                         are abandoned and only completed runs are summarized.
    overrides          : extra parameter overrides (e.g. generations)

    Returns
    -------
    pandas.DataFrame with columns generation, mean, median, q25, q75, min, max.
    """
    if n_runs <= 0:
        raise ValueError("n_runs must be positive")

    parameters = strain_parameters(strain)
    parameters["initial_divergence"] = initial_divergence
    if overrides:
        parameters.update(overrides)
    # Validate once up front so a bad value fails before any thread starts.
    parameters = build_parameters(parameters)

    base_seed = int(seed) if seed is not None else int(np.random.SeedSequence().generate_state(1)[0])
    seeds = [base_seed + i for i in range(n_runs)]

    if n_workers is None:
        n_workers = os.cpu_count() or 1
    n_workers = max(1, int(n_workers))

    logger.info(
        "Running %d simulations for strain %s (mu=%.2e, gc=%.2e) on %d worker(s)",
        n_runs, strain, parameters["mutation_rate"], parameters["gene_conv_rate"], n_workers,
    )

    if n_workers == 1 and timeout is None:
        trajectories = [_worker((parameters, s)) for s in seeds]
    else:
        trajectories = _run_parallel(parameters, seeds, n_workers, timeout)

    if len(trajectories) < n_runs:
        logger.warning(
            "Ensemble timed out after %s s: summarizing %d of %d runs",
            timeout, len(trajectories), n_runs,
        )
    # Completion order is arbitrary; restore seed order.
    trajectories.sort(key=lambda t: t["seed"])
    return summarize_trajectories(trajectories)


def _run_parallel(
    parameters: dict,
    seeds: list[int],
    n_workers: int,
    timeout: float | None,
) -> list[dict]:
    """Thread-pool ensemble; returns the trajectories finished within `timeout`."""
    executor = concurrent.futures.ThreadPoolExecutor(max_workers=n_workers)
    futures = [executor.submit(_worker, (parameters, s)) for s in seeds]
    trajectories = []
    try:
        for future in concurrent.futures.as_completed(futures, timeout=timeout):
            trajectories.append(future.result())
    except concurrent.futures.TimeoutError:
        pass
    finally:
        # Drops runs that have not started; running ones finish in the background.
        executor.shutdown(wait=False, cancel_futures=True)
    return trajectories
