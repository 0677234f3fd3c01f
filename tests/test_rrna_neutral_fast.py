"""
Tests for the Numba simulator and the parallel ensemble engine.

Tests for rrna_neutral_fast.py
"""

from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

from rrna_neutral_fast import rrna_neutral_fast, run_rrna_simulations_fast
from rrna_neutral_model import SUMMARY_COLUMNS
from rrna_parameters import ParameterError


class TestSingleRun:
    """Test rrna_neutral_fast."""

    def test_trajectory_shape(self, small_params):
        result = rrna_neutral_fast(small_params, seed=1)
        assert list(result["generation"]) == list(range(0, 201, 20))
        assert result["divergence"].shape == (11,)
        assert result["divergence"].dtype == np.float64
        assert np.all((result["divergence"] >= 0.0) & (result["divergence"] <= 1.0))

    def test_returns_validated_parameters(self, small_params):
        result = rrna_neutral_fast(small_params, seed=1)
        assert result["parameters"]["operons"][1] == "rrnB"
        assert result["parameters"]["mutation_rate"] == small_params["mutation_rate"]

    def test_deterministic(self, small_params):
        a = rrna_neutral_fast(small_params, seed=99)
        b = rrna_neutral_fast(small_params, seed=99)
        assert np.array_equal(a["divergence"], b["divergence"])

    def test_seeds_differ(self, small_params):
        a = rrna_neutral_fast(small_params, seed=1)
        b = rrna_neutral_fast(small_params, seed=2)
        assert not np.array_equal(a["divergence"], b["divergence"])

    def test_zero_initial_divergence(self):
        result = rrna_neutral_fast({"initial_divergence": 0.0, "generations": 0}, seed=3)
        assert list(result["divergence"]) == [0.0]

    def test_initial_divergence_close_to_target(self):
        result = rrna_neutral_fast({"initial_divergence": 0.02, "generations": 0}, seed=3)
        target = 88 / 4445  # floor(4445 * 0.02) sites
        assert result["divergence"][0] <= target
        assert result["divergence"][0] >= 0.9 * target

    def test_no_change_without_events(self):
        params = {
            "mutation_rate": 0.0,
            "gene_conv_rate": 0.0,
            "initial_divergence": 0.01,
            "generations": 100,
            "sample_interval": 10,
        }
        divergence = rrna_neutral_fast(params, seed=4)["divergence"]
        assert np.all(divergence == divergence[0])
        assert divergence[0] > 0.0

    def test_mutation_only_accumulates(self):
        params = {
            "mutation_rate": 1e-4,
            "gene_conv_rate": 0.0,
            "initial_divergence": 0.0,
            "generations": 500,
            "sample_interval": 100,
        }
        divergence = rrna_neutral_fast(params, seed=5)["divergence"]
        assert divergence[0] == 0.0
        assert divergence[-1] > 0.0

    def test_conversion_only_homogenizes(self):
        params = {
            "locus_lengths": {"rrs": 40, "rrl": 60},
            "mutation_rate": 0.0,
            "gene_conv_rate": 0.05,
            "initial_divergence": 0.3,
            "generations": 2000,
            "sample_interval": 500,
        }
        divergence = rrna_neutral_fast(params, seed=6)["divergence"]
        assert divergence[0] > 0.0
        assert divergence[-1] == 0.0

    def test_tracts_longer_than_loci(self):
        params = {
            "locus_lengths": {"rrs": 5, "rrl": 8},
            "mutation_rate": 0.01,
            "gene_conv_rate": 0.2,
            "initial_divergence": 0.5,
            "generations": 300,
            "sample_interval": 30,
        }
        divergence = rrna_neutral_fast(params, seed=7)["divergence"]
        assert np.all((divergence >= 0.0) & (divergence <= 1.0))

    def test_single_copy(self):
        params = {"operons": ("rrnB",), "initial_divergence": 0.5, "generations": 20, "sample_interval": 10}
        divergence = rrna_neutral_fast(params, seed=8)["divergence"]
        assert np.all(divergence == 0.0)

    def test_invalid_parameters(self):
        with pytest.raises(ParameterError):
            rrna_neutral_fast({"locus_lengths": {"rrs": 0, "rrl": 2904}})


class TestEnsemble:
    """Test run_rrna_simulations_fast."""

    OVERRIDES = {"generations": 400, "sample_interval": 50}

    def test_summary_shape(self):
        summary = run_rrna_simulations_fast("mutator", 6, seed=10, n_workers=1, overrides=self.OVERRIDES)
        assert list(summary.columns) == SUMMARY_COLUMNS
        assert list(summary["generation"]) == list(range(0, 401, 50))

    def test_serial_matches_threaded(self):
        serial = run_rrna_simulations_fast(
            "mutator", 8, initial_divergence=0.01, seed=21, n_workers=1,
            overrides={**self.OVERRIDES, "mutation_rate": 1e-5, "gene_conv_rate": 1e-3},
        )
        threaded = run_rrna_simulations_fast(
            "mutator", 8, initial_divergence=0.01, seed=21, n_workers=4,
            overrides={**self.OVERRIDES, "mutation_rate": 1e-5, "gene_conv_rate": 1e-3},
        )
        pd.testing.assert_frame_equal(serial, threaded)

    def test_initial_point(self):
        summary = run_rrna_simulations_fast("normal", 10, initial_divergence=0.002, seed=5,
                                            n_workers=2, overrides=self.OVERRIDES)
        first = summary.iloc[0]
        assert first["generation"] == 0
        assert 0.0 < first["mean"] <= 8 / 4445

    def test_timeout_returns_partial_or_empty(self):
        summary = run_rrna_simulations_fast("normal", 8, seed=1, n_workers=2, timeout=0.0,
                                            overrides=self.OVERRIDES)
        assert list(summary.columns) == SUMMARY_COLUMNS
        assert len(summary) in (0, 9)

    def test_non_positive_runs(self):
        with pytest.raises(ValueError, match="n_runs"):
            run_rrna_simulations_fast("normal", 0)

    def test_invalid_before_running(self):
        with pytest.raises(ParameterError):
            run_rrna_simulations_fast("normal", 5, initial_divergence=1.5)
        with pytest.raises(ParameterError):
            run_rrna_simulations_fast("unknown", 5)


class TestSampleScenario:
    """Full-length baseline scenario: 7 copies, 50 000 generations, 50 runs."""

    @pytest.fixture(scope="class")
    def summary(self):
        return run_rrna_simulations_fast(
            "normal",
            50,
            initial_divergence=0.0,
            seed=2024,
            overrides={"mutation_rate": 1e-10, "gene_conv_rate": 8.6e-6},
        )

    def test_twenty_one_points(self, summary):
        assert len(summary) == 21
        assert list(summary["generation"]) == list(range(0, 50001, 2500))

    def test_starts_identical(self, summary):
        assert summary.iloc[0]["mean"] == 0.0

    def test_late_generations_stable(self, summary):
        late = summary["mean"].to_numpy()[-4:]
        assert np.all(np.abs(np.diff(late)) < 0.01)

    def test_ordering_invariant(self, summary):
        assert (summary["min"] <= summary["q25"]).all()
        assert (summary["q25"] <= summary["median"]).all()
        assert (summary["median"] <= summary["q75"]).all()
        assert (summary["q75"] <= summary["max"]).all()
        assert (summary["min"] <= summary["mean"]).all()
        assert (summary["mean"] <= summary["max"]).all()
