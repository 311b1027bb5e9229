"""Tests for the REML variance-component estimator."""

import numpy as np
import pandas as pd
import pytest

from mlmeta.core.config import FitOptions
from mlmeta.core.errors import NonConvergenceError, NumericalWarning
from mlmeta.models.design import build_design
from mlmeta.models.multilevel import fit_multilevel
from mlmeta.models.reml import fit_variance_components, heuristic_start


class TestFixedEffectModel:
    """No random effects: GLS reduces to inverse-variance pooling."""

    def test_three_study_pooled_estimate(self, three_studies) -> None:
        result = fit_multilevel(three_studies)
        expected = (0.5 / 0.04 + 0.3 / 0.09 + 0.7 / 0.01) / (1 / 0.04 + 1 / 0.09 + 1 / 0.01)
        assert result.estimate == pytest.approx(expected)
        assert result.estimate_se == pytest.approx(np.sqrt(1 / (1 / 0.04 + 1 / 0.09 + 1 / 0.01)))
        # The most precise study dominates
        assert abs(result.estimate - 0.7) < abs(result.estimate - 0.5)
        assert abs(result.estimate - 0.7) < abs(result.estimate - 0.3)

    def test_no_iterations_needed(self, three_studies) -> None:
        result = fit_multilevel(three_studies)
        assert result.n_iter == 0
        assert result.converged
        assert len(result.sigma2) == 0

    def test_equals_random_effects_fit_with_zero_variance(self, smd_table) -> None:
        fixed_effect = fit_multilevel(smd_table)
        forced = fit_multilevel(smd_table, grouping=["es_id"], options=FitOptions(fixed=(0.0,)))
        assert forced.beta == pytest.approx(fixed_effect.beta)
        assert forced.vcov == pytest.approx(fixed_effect.vcov)
        assert forced.sigma2.tolist() == [0.0]
        assert forced.pinned == (True,)


class TestVarianceComponents:
    """Tests for estimated components."""

    def test_components_non_negative(self, smd_table) -> None:
        result = fit_multilevel(smd_table, grouping=["lab_id", "es_id"])
        assert result.converged
        assert result.level_names == ("lab_id", "es_id")
        assert np.all(result.sigma2 >= 0)

    def test_homogeneous_effects_give_zero_variance(self) -> None:
        table = pd.DataFrame({
            "lab_id": ["a", "a", "b", "b", "c", "c"],
            "yi": [0.3] * 6,
            "vi": [0.02, 0.04, 0.03, 0.05, 0.02, 0.06],
        })
        with pytest.warns(NumericalWarning, match="zero boundary"):
            result = fit_multilevel(table, grouping=["lab_id"])
        assert result.sigma2[0] == 0.0
        assert result.estimate == pytest.approx(0.3)
        assert any("zero boundary" in w for w in result.warnings)

    def test_boundary_warning_after_several_iterations(self, smd_table) -> None:
        with pytest.warns(NumericalWarning, match="zero boundary") as record:
            result = fit_multilevel(smd_table, grouping=["lab_id", "es_id"])
        assert result.sigma2[1] == 0.0
        assert result.n_iter > 1
        boundary = [str(w.message) for w in record if "zero boundary" in str(w.message)]
        assert "es_id" in boundary[0]
        assert "lab_id" not in boundary[0]
        assert any("zero boundary" in w for w in result.warnings)

    def test_single_top_cluster_is_pinned_at_zero(self, smd_table) -> None:
        table = smd_table.assign(lab_id="lab1")
        with pytest.warns(NumericalWarning, match="not identifiable"):
            result = fit_multilevel(table, grouping=["lab_id", "es_id"], strict=False)
        assert result.sigma2[0] == 0.0
        assert result.pinned == (True, False)
        assert any("not identifiable" in w for w in result.warnings)

    def test_estimate_maximizes_restricted_likelihood(self, smd_table) -> None:
        design = build_design(smd_table, grouping=["lab_id"])
        best = fit_variance_components(design.y, design.X, design.v, design.components())
        for factor in (0.5, 2.0):
            other = fit_variance_components(
                design.y, design.X, design.v, design.components(),
                FitOptions(fixed=(best.sigma2[0] * factor + 1e-4,)),
            )
            assert other.log_likelihood <= best.log_likelihood + 1e-10

    def test_same_estimate_from_different_starts(self, smd_table) -> None:
        design = build_design(smd_table, grouping=["lab_id", "es_id"])
        fits = [
            fit_variance_components(
                design.y, design.X, design.v, design.components(),
                FitOptions(start=start),
            )
            for start in [(0.01, 0.01), (0.5, 0.5), (2.0, 0.001)]
        ]
        for fit in fits[1:]:
            assert fit.sigma2 == pytest.approx(fits[0].sigma2, rel=1e-3, abs=1e-6)
            assert fit.beta == pytest.approx(fits[0].beta, rel=1e-6, abs=1e-8)

    def test_repeat_fits_are_identical(self, smd_table) -> None:
        first = fit_multilevel(smd_table, grouping=["lab_id", "es_id"])
        second = fit_multilevel(smd_table, grouping=["lab_id", "es_id"])
        assert np.array_equal(first.sigma2, second.sigma2)
        assert np.array_equal(first.beta, second.beta)
        assert first.n_iter == second.n_iter

    def test_zcor_model(self, zcor_studies) -> None:
        from mlmeta.effects.effect_sizes import compute_effect_sizes

        table = compute_effect_sizes(zcor_studies, measure="ZCOR")
        result = fit_multilevel(table, grouping=["sample_id", "es_id"])
        assert result.converged
        assert -1 < np.tanh(result.estimate) < 1


class TestWeights:
    """Tests for GLS weights."""

    def test_inverse_variance_without_random_effects(self, three_studies) -> None:
        result = fit_multilevel(three_studies)
        assert result.study_weights.tolist() == pytest.approx([25.0, 1 / 0.09, 100.0])
        assert result.weights_percent.sum() == pytest.approx(100.0)

    def test_weight_decreases_with_variance(self, smd_table) -> None:
        result = fit_multilevel(smd_table, grouping=["es_id"], options=FitOptions(fixed=(0.1,)))
        order = np.argsort(result.study_variances)
        assert np.all(np.diff(result.study_weights[order]) <= 0)
        assert result.study_weights == pytest.approx(1 / (result.study_variances + 0.1))


class TestEstimatorControl:
    """Tests for iteration control and failures."""

    def test_iteration_cap_raises(self, smd_table) -> None:
        design = build_design(smd_table, grouping=["lab_id", "es_id"])
        with pytest.raises(NonConvergenceError) as excinfo:
            fit_variance_components(
                design.y, design.X, design.v, design.components(),
                FitOptions(max_iter=1, max_restarts=0, start=(1.0, 1.0)),
            )
        assert excinfo.value.n_iter == 1
        assert len(excinfo.value.sigma2) == 2
        assert excinfo.value.log_likelihood is not None

    def test_wrong_start_length(self, smd_table) -> None:
        design = build_design(smd_table, grouping=["lab_id"])
        with pytest.raises(ValueError):
            fit_variance_components(
                design.y, design.X, design.v, design.components(),
                FitOptions(start=(0.1, 0.1)),
            )

    def test_heuristic_start_positive(self, smd_table) -> None:
        design = build_design(smd_table)
        assert heuristic_start(design.y, design.X, design.V) > 0

    def test_dimension_mismatch(self) -> None:
        with pytest.raises(ValueError):
            fit_variance_components(np.zeros(3), np.ones((4, 1)), np.ones(3), [])

    def test_singular_covariance_at_start_raises(self) -> None:
        y = np.array([0.1, 0.4, 0.2, 0.5])
        with pytest.raises(NonConvergenceError, match="not positive definite") as excinfo:
            fit_variance_components(
                y, np.ones((4, 1)), np.zeros(4), [("es_id", np.eye(4))],
                FitOptions(start=(0.0,)),
            )
        assert excinfo.value.n_iter == 0
        assert excinfo.value.log_likelihood is None

    def test_singular_gls_matrix_uses_pseudo_inverse(self, three_studies) -> None:
        X = np.column_stack([np.ones(3), np.zeros(3)])
        with pytest.warns(NumericalWarning, match="pseudo-inverse"):
            fit = fit_variance_components(
                three_studies["yi"].to_numpy(), X, three_studies["vi"].to_numpy(), []
            )
        assert any("XᵀΣ⁻¹X" in w for w in fit.warnings)
        assert fit.beta[1] == pytest.approx(0.0, abs=1e-12)
        assert np.all(np.isfinite(fit.beta))
