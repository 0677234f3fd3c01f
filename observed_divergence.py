"""
observed_divergence.py
======================
Observed rRNA divergence from per-site mutation calls, and its comparison with
the neutral-model Summary Series.

INPUT FILES
-----------
One CSV per sequenced sample, named  <Strain>_<Generation>gen_<FileID>.csv,
e.g. Ara-1_500gen_762B.csv.  The first line is a header; columns are read by
position:

    seq_id, position, ref_base, new_base, new_cov, ref_cov, total_cov, frequency

seq_id is rrsB (16S) or rrlB (23S); frequency is the fraction of reads carrying
the new base.

DIVERGENCE
----------
All files of one (strain, generation) are pooled.  A polymorphism called in
several files counts once, with its highest frequency.  Frequencies are summed
per locus and divided by the locus length, which gives a frequency-weighted
fraction of differing sites comparable to the simulated divergence.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path

import numpy as np
import pandas as pd

from rrna_parameters import LOCUS_LENGTHS, OBSERVED_LOCI


logger = logging.getLogger(__name__)

MUTATION_COLUMNS = [
    "seq_id",
    "position",
    "ref_base",
    "new_base",
    "new_cov",
    "ref_cov",
    "total_cov",
    "frequency",
]

FILENAME_PATTERN = re.compile(r"(Ara[+-]\d+)_(\d+)gen_(\w+)", re.IGNORECASE)

# LTEE populations that evolved a mutator phenotype.
MUTATOR_STRAINS = frozenset({"Ara-1", "Ara-2", "Ara-3", "Ara-4", "Ara+3", "Ara+6"})

OBSERVED_COLUMNS = [
    "strain",
    "generation",
    "avg_divergence",
    "rrs_divergence",
    "rrl_divergence",
    "total_polymorphisms",
    "rrs_count",
    "rrl_count",
    "num_files",
    "mutator",
]

_SEQ_ID_FOR_LOCUS = {locus: seq_id for seq_id, locus in OBSERVED_LOCI.items()}


def parse_observed_filename(name: str) -> tuple[str, int, str] | None:
    """(strain, generation, file_id) from a file name, or None if it does not match."""
    match = FILENAME_PATTERN.search(Path(name).name)
    if match is None:
        return None
    return match.group(1), int(match.group(2)), match.group(3)


def read_mutation_calls(path: str | Path) -> pd.DataFrame:
    """Read one mutation-call table; rows without a seq_id or numeric position are dropped."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Missing {path}")

    calls = pd.read_csv(
        path,
        header=None,
        skiprows=1,
        names=MUTATION_COLUMNS,
        usecols=range(len(MUTATION_COLUMNS)),
        dtype=str,
        skip_blank_lines=True,
    )
    for col in MUTATION_COLUMNS:
        calls[col] = calls[col].fillna("").str.strip()
    for col in ("position", "new_cov", "ref_cov", "total_cov", "frequency"):
        calls[col] = pd.to_numeric(calls[col], errors="coerce")

    calls = calls[(calls["seq_id"] != "") & calls["position"].notna()].copy()
    calls["position"] = calls["position"].astype(np.int64)
    return calls.reset_index(drop=True)


def load_observed_files(paths) -> pd.DataFrame:
    """Read many mutation-call files and tag each row with strain, generation and file_id."""
    frames = []
    for path in paths:
        parsed = parse_observed_filename(str(path))
        if parsed is None:
            logger.warning("Could not parse filename: %s", Path(path).name)
            continue
        strain, generation, file_id = parsed
        calls = read_mutation_calls(path)
        calls.insert(0, "file_id", file_id)
        calls.insert(0, "generation", generation)
        calls.insert(0, "strain", strain)
        frames.append(calls)
        logger.debug("Loaded %d calls from %s", len(calls), Path(path).name)

    if not frames:
        return pd.DataFrame(columns=["strain", "generation", "file_id"] + MUTATION_COLUMNS)
    return pd.concat(frames, ignore_index=True)


def observed_divergence(calls: pd.DataFrame) -> pd.DataFrame:
    """Per (strain, generation) divergence series, sorted by strain then generation."""
    if calls.empty:
        return pd.DataFrame(columns=OBSERVED_COLUMNS)

    num_files = calls.groupby(["strain", "generation"])["file_id"].nunique()

    # Keep the highest-frequency observation of each polymorphism.
    unique = (
        calls.sort_values("frequency", ascending=False, kind="stable", na_position="last")
        .drop_duplicates(subset=["strain", "generation", "seq_id", "position"], keep="first")
    )

    rrs_length = LOCUS_LENGTHS["rrs"]
    rrl_length = LOCUS_LENGTHS["rrl"]
    rows = []
    for (strain, generation), group in unique.groupby(["strain", "generation"], sort=True):
        rrs = group[group["seq_id"] == _SEQ_ID_FOR_LOCUS["rrs"]]
        rrl = group[group["seq_id"] == _SEQ_ID_FOR_LOCUS["rrl"]]
        sum_rrs = float(rrs["frequency"].sum())
        sum_rrl = float(rrl["frequency"].sum())
        rows.append(
            {
                "strain": strain,
                "generation": int(generation),
                "avg_divergence": (sum_rrs + sum_rrl) / (rrs_length + rrl_length),
                "rrs_divergence": sum_rrs / rrs_length,
                "rrl_divergence": sum_rrl / rrl_length,
                "total_polymorphisms": len(group),
                "rrs_count": len(rrs),
                "rrl_count": len(rrl),
                "num_files": int(num_files.loc[(strain, generation)]),
                "mutator": strain in MUTATOR_STRAINS,
            }
        )
    return pd.DataFrame(rows, columns=OBSERVED_COLUMNS)


def compare_to_summary(observed: pd.DataFrame, summary: pd.DataFrame) -> pd.DataFrame:
    """
    Place each observed point against the simulated band at the nearest sampled generation.

    Adds the summary statistics of that generation (prefixed "sim_") plus
    within_iqr (q25 <= x <= q75) and within_range (min <= x <= max) flags.
    """
    if observed.empty or summary.empty:
        return pd.DataFrame(
            columns=list(observed.columns)
            + ["sim_generation", "sim_mean", "sim_median", "sim_q25", "sim_q75",
               "sim_min", "sim_max", "within_iqr", "within_range"]
        )

    band = summary.rename(columns={c: f"sim_{c}" for c in summary.columns})
    band["sim_generation"] = band["sim_generation"].astype(np.int64)
    band["generation"] = band["sim_generation"]

    points = observed.copy()
    points["generation"] = points["generation"].astype(np.int64)
    points["_order"] = np.arange(len(points))

    merged = pd.merge_asof(
        points.sort_values("generation"),
        band.sort_values("generation"),
        on="generation",
        direction="nearest",
    )
    merged = merged.sort_values("_order").drop(columns="_order").reset_index(drop=True)

    x = merged["avg_divergence"]
    merged["within_iqr"] = (x >= merged["sim_q25"]) & (x <= merged["sim_q75"])
    merged["within_range"] = (x >= merged["sim_min"]) & (x <= merged["sim_max"])
    return merged
