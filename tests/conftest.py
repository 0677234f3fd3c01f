"""
Pytest configuration and shared fixtures for the rRNA neutral-model tests.

Provides small parameter sets that run in milliseconds and a helper for
writing mutation-call CSVs.
"""

from __future__ import annotations

import sys
from pathlib import Path

import numpy as np
import pytest

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from rrna_parameters import build_parameters

# =============================================================================
# Parameter Fixtures
# =============================================================================


@pytest.fixture
def small_params() -> dict:
    """Short run on full-length loci with elevated rates."""
    return {
        "mutation_rate": 1e-4,
        "gene_conv_rate": 0.01,
        "initial_divergence": 0.05,
        "generations": 200,
        "sample_interval": 20,
    }


@pytest.fixture
def tiny_params() -> dict:
    """Validated parameters with short loci, for step-level tests."""
    return build_parameters(
        {
            "locus_lengths": {"rrs": 40, "rrl": 60},
            "initial_divergence": 0.2,
            "generations": 50,
            "sample_interval": 10,
        }
    )


@pytest.fixture
def rng() -> np.random.Generator:
    """Seeded generator."""
    return np.random.default_rng(12345)


# =============================================================================
# Observed Data Fixtures
# =============================================================================

CSV_HEADER = "seq_id,position,ref_base,new_base,new_cov,ref_cov,total_cov,frequency\n"


@pytest.fixture
def write_calls(tmp_path):
    """Factory writing a mutation-call CSV into tmp_path and returning its path."""

    def _write(name: str, rows: list[str]) -> Path:
        path = tmp_path / name
        path.write_text(CSV_HEADER + "".join(row + "\n" for row in rows))
        return path

    return _write
