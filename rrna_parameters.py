"""
rrna_parameters.py
==================
Constants, strain presets and parameter validation shared by the reference
(`rrna_neutral_model.py`) and Numba (`rrna_neutral_fast.py`) simulators.

Parameters travel as a plain dict.  `_default_parameters()` holds every key; callers
pass only the overrides they care about and `build_parameters` merges and validates
them before any run starts.  Nothing inside a run re-checks its inputs.
"""

from __future__ import annotations

import math

import numpy as np


# ── Genome layout ───────────────────────────────────────────────────────────
# Seven rRNA operons of E. coli.  Each copy carries a 16S-like (rrs) and a
# 23S-like (rrl) locus; lengths are those of rrsB / rrlB.
OPERONS = ("rrnA", "rrnB", "rrnC", "rrnD", "rrnE", "rrnG", "rrnH")
REFERENCE_OPERON = "rrnB"
LOCUS_LENGTHS = {"rrs": 1541, "rrl": 2904}

# Sequence ids used by the mutation-call tables for each locus kind.
OBSERVED_LOCI = {"rrsB": "rrs", "rrlB": "rrl"}

# ── Time axis ───────────────────────────────────────────────────────────────
GENERATIONS = 50000
SAMPLE_INTERVAL = 2500

# ── Gene conversion tracts ──────────────────────────────────────────────────
# Tract length is uniform on [TRACT_MIN, TRACT_MAX] bp, both inclusive.
TRACT_MIN = 50
TRACT_MAX = 199

# ── Rates ───────────────────────────────────────────────────────────────────
# Baseline point-mutation rate: 3e-6 genomic mutations per generation spread
# over ~30 kb gives 1e-10 per bp per generation.  Mutators run 50x faster.
BASE_MUTATION_RATE = 3e-6 / 30000
MUTATOR_FACTOR = 50
# Per recipient, per donor, per generation.
GENE_CONV_RATE = 8.6e-6

STRAIN_PRESETS = {
    "normal": {
        "mutation_rate": BASE_MUTATION_RATE,
        "gene_conv_rate": GENE_CONV_RATE,
        "label": "Normal (mu = 1e-10 per bp)",
    },
    "mutator": {
        "mutation_rate": BASE_MUTATION_RATE * MUTATOR_FACTOR,
        "gene_conv_rate": GENE_CONV_RATE,
        "label": "Mutator (mu = 5e-9 per bp)",
    },
}

DEFAULT_INITIAL_DIVERGENCE = 0.002


class ParameterError(ValueError):
    """Raised when simulation parameters are rejected before a run starts."""


def _default_parameters() -> dict:
    """Default simulation parameters (normal strain, no initial divergence)."""
    return {
        "mutation_rate": BASE_MUTATION_RATE,
        "gene_conv_rate": GENE_CONV_RATE,
        "initial_divergence": 0.0,
        "generations": GENERATIONS,
        "sample_interval": SAMPLE_INTERVAL,
        "locus_lengths": dict(LOCUS_LENGTHS),
        "operons": OPERONS,
        "reference_operon": REFERENCE_OPERON,
        "tract_min": TRACT_MIN,
        "tract_max": TRACT_MAX,
    }


def strain_parameters(strain: str) -> dict:
    """Return the rate pair for a strain preset ("normal" or "mutator")."""
    try:
        preset = STRAIN_PRESETS[strain]
    except KeyError:
        raise ParameterError(
            f"Unknown strain type {strain!r}; expected one of {sorted(STRAIN_PRESETS)}"
        ) from None
    return {
        "mutation_rate": preset["mutation_rate"],
        "gene_conv_rate": preset["gene_conv_rate"],
    }


def _check_probability(name: str, value) -> float:
    value = float(value)
    if not math.isfinite(value) or value < 0.0 or value > 1.0:
        raise ParameterError(f"{name} must be a probability in [0, 1], got {value}")
    return value


def validate_parameters(parameters: dict) -> dict:
    """
    Check a complete parameter dict and return it with normalized types.

    Rates are per-generation probabilities and may be zero (a conversion-only or
    mutation-only model is legitimate); negative values, values above one and
    non-finite values are rejected.  Nothing is clamped.
    """
    params = dict(parameters)

    params["mutation_rate"] = _check_probability("mutation_rate", params["mutation_rate"])
    params["gene_conv_rate"] = _check_probability("gene_conv_rate", params["gene_conv_rate"])
    params["initial_divergence"] = _check_probability(
        "initial_divergence", params["initial_divergence"]
    )

    lengths = {}
    for locus in LOCUS_LENGTHS:
        if locus not in params["locus_lengths"]:
            raise ParameterError(f"locus_lengths is missing {locus!r}")
        length = int(params["locus_lengths"][locus])
        if length <= 0:
            raise ParameterError(f"locus length for {locus!r} must be positive, got {length}")
        lengths[locus] = length
    params["locus_lengths"] = lengths

    operons = tuple(str(op) for op in params["operons"])
    if not operons:
        raise ParameterError("at least one operon copy is required")
    if len(set(operons)) != len(operons):
        raise ParameterError(f"operon labels must be unique, got {operons}")
    if params["reference_operon"] not in operons:
        raise ParameterError(
            f"reference operon {params['reference_operon']!r} is not one of {operons}"
        )
    params["operons"] = operons

    params["generations"] = int(params["generations"])
    if params["generations"] < 0:
        raise ParameterError(f"generations must be >= 0, got {params['generations']}")
    params["sample_interval"] = int(params["sample_interval"])
    if params["sample_interval"] <= 0:
        raise ParameterError(
            f"sample_interval must be positive, got {params['sample_interval']}"
        )

    params["tract_min"] = int(params["tract_min"])
    params["tract_max"] = int(params["tract_max"])
    if params["tract_min"] <= 0 or params["tract_max"] < params["tract_min"]:
        raise ParameterError(
            f"tract bounds must satisfy 0 < tract_min <= tract_max, "
            f"got [{params['tract_min']}, {params['tract_max']}]"
        )
    return params


def build_parameters(input_parameters: dict | None = None) -> dict:
    """Merge overrides into the defaults and validate the result."""
    parameters = _default_parameters()
    if input_parameters:
        unknown = set(input_parameters) - set(parameters)
        if unknown:
            raise ParameterError(f"Unknown simulation parameters: {sorted(unknown)}")
        parameters.update(input_parameters)
    return validate_parameters(parameters)


def sampled_generations(parameters: dict) -> np.ndarray:
    """Generations at which a trajectory point is recorded: 0, k, 2k, ... <= G."""
    return np.arange(
        0, parameters["generations"] + 1, parameters["sample_interval"], dtype=np.int64
    )
