"""Tests for Wald inference and heterogeneity statistics."""

import numpy as np
import pytest
from scipy import stats

from mlmeta.core.config import FitOptions
from mlmeta.diagnostics.heterogeneity import (
    cochran_q,
    compute_h_squared,
    moderator_test,
    multilevel_i_squared,
    typical_sampling_variance,
)
from mlmeta.models.multilevel import MultilevelModel, fit_multilevel
from mlmeta.models.design import build_design
from mlmeta.utils import ci_from_se, format_estimate, format_p_value, p_value_from_z


class TestCochranQ:
    """Tests for residual heterogeneity."""

    def test_zero_for_equal_effects(self) -> None:
        result = cochran_q(np.full(5, 0.4), np.array([0.01, 0.02, 0.03, 0.04, 0.05]))
        assert result["Q"] == pytest.approx(0.0, abs=1e-12)
        assert result["df"] == 4
        assert result["p_value"] == pytest.approx(1.0)

    def test_known_value(self, three_studies) -> None:
        y = three_studies["yi"].to_numpy()
        v = three_studies["vi"].to_numpy()
        w = 1 / v
        pooled = np.sum(w * y) / np.sum(w)
        expected = np.sum(w * (y - pooled) ** 2)
        result = cochran_q(y, v)
        assert result["Q"] == pytest.approx(expected)
        assert result["p_value"] == pytest.approx(stats.chi2.sf(expected, 2))

    def test_non_negative_with_moderators(self, smd_table) -> None:
        design = build_design(smd_table, moderators=["female_proportion", "measure_type"])
        result = cochran_q(design.y, design.v, design.X)
        assert result["Q"] >= 0
        assert result["df"] == len(smd_table) - 3

    def test_model_reports_q(self, smd_table) -> None:
        result = fit_multilevel(smd_table, grouping=["lab_id", "es_id"])
        direct = cochran_q(smd_table["yi"], smd_table["vi"])
        assert result.q_statistic == pytest.approx(direct["Q"])
        assert result.q_df == len(smd_table) - 1


class TestISquared:
    """Tests for multilevel I²."""

    def test_typical_variance_intercept_only(self) -> None:
        v = np.array([0.01, 0.02, 0.05, 0.1])
        w = 1 / v
        k = len(v)
        expected = (k - 1) * w.sum() / (w.sum() ** 2 - (w ** 2).sum())
        assert typical_sampling_variance(v) == pytest.approx(expected)

    def test_levels_sum_to_total(self) -> None:
        result = multilevel_i_squared([0.05, 0.02], np.array([0.04, 0.03, 0.05]), level_names=["lab", "es"])
        assert result["I_squared_levels"]["lab"] + result["I_squared_levels"]["es"] == pytest.approx(
            result["I_squared"]
        )
        assert 0 <= result["I_squared"] <= 100

    def test_zero_without_heterogeneity(self) -> None:
        result = multilevel_i_squared([0.0], np.array([0.04, 0.03]))
        assert result["I_squared"] == 0.0
        assert list(result["I_squared_levels"]) == ["level1"]

    def test_model_i_squared_in_range(self, smd_table) -> None:
        result = fit_multilevel(smd_table, grouping=["lab_id", "es_id"])
        assert 0 <= result.i_squared <= 100
        assert sum(result.i_squared_levels.values()) == pytest.approx(result.i_squared)

    def test_h_squared(self) -> None:
        assert compute_h_squared(20.0, 10) == pytest.approx(2.0)
        assert compute_h_squared(5.0, 10) == 1.0
        assert compute_h_squared(5.0, 0) == 1.0

    def test_model_h_squared(self, smd_table) -> None:
        result = fit_multilevel(smd_table, grouping=["lab_id", "es_id"])
        assert result.h_squared == pytest.approx(max(1.0, result.q_statistic / result.q_df))
        assert result.to_dict()["h_squared"] == result.h_squared


class TestWaldInference:
    """Tests for coefficients, tests and intervals."""

    def test_ci_is_symmetric(self, smd_table) -> None:
        result = fit_multilevel(smd_table, grouping=["lab_id", "es_id"])
        lower, upper = result.estimate_ci
        assert lower < result.estimate < upper
        assert upper - lower == pytest.approx(2 * stats.norm.ppf(0.975) * result.estimate_se)

    def test_ci_level(self, smd_table) -> None:
        wide = fit_multilevel(smd_table, grouping=["lab_id"], options=FitOptions(ci_level=0.99))
        narrow = fit_multilevel(smd_table, grouping=["lab_id"], options=FitOptions(ci_level=0.90))
        assert np.diff(wide.estimate_ci)[0] > np.diff(narrow.estimate_ci)[0]

    def test_z_and_p_values(self, smd_table) -> None:
        result = fit_multilevel(smd_table, grouping=["lab_id"])
        assert result.beta_z == pytest.approx(result.beta / result.beta_se)
        assert result.beta_pvalue == pytest.approx(2 * stats.norm.sf(np.abs(result.beta_z)))

    def test_single_moderator_qm_is_squared_z(self, smd_table) -> None:
        result = fit_multilevel(smd_table, grouping=["lab_id", "es_id"], moderators=["female_proportion"])
        assert result.qm_df == 1
        assert result.qm_statistic == pytest.approx(result.beta_z[1] ** 2)
        assert result.qm_pvalue == pytest.approx(result.beta_pvalue[1])

    def test_categorical_moderator_qm(self, smd_table) -> None:
        result = fit_multilevel(smd_table, grouping=["lab_id", "es_id"], moderators=["measure_type"])
        assert result.term_names == ("intercept", "measure_type[verbal]")
        assert result.qm_statistic >= 0

    def test_no_qm_without_moderators(self, smd_table) -> None:
        result = fit_multilevel(smd_table, grouping=["lab_id"])
        assert result.qm_statistic is None
        assert result.qm_pvalue is None

    def test_moderator_test_direct(self) -> None:
        beta = np.array([0.2, 0.5, -0.3])
        vcov = np.diag([0.01, 0.04, 0.09])
        result = moderator_test(beta, vcov, ("intercept", "a", "b"))
        assert result["QM"] == pytest.approx(0.25 / 0.04 + 0.09 / 0.09)
        assert result["df"] == 2

    def test_coefficient_lookup(self, smd_table) -> None:
        result = fit_multilevel(smd_table, moderators=["female_proportion"])
        est, se, (lower, upper) = result.coefficient("female_proportion")
        assert est == pytest.approx(result.beta[1])
        assert se == pytest.approx(result.beta_se[1])
        assert lower < est < upper
        with pytest.raises(KeyError):
            result.coefficient("age")

    def test_prediction_interval_wider_than_ci(self, smd_table) -> None:
        result = fit_multilevel(smd_table, grouping=["lab_id", "es_id"])
        pi = result.prediction_interval
        ci = result.estimate_ci
        assert pi[0] <= ci[0] and pi[1] >= ci[1]

    def test_predict(self, smd_table) -> None:
        result = fit_multilevel(smd_table, moderators=["female_proportion"])
        pred, se, intervals = result.predict(np.array([[1.0, 0.5], [1.0, 0.7]]))
        assert pred == pytest.approx(result.beta[0] + result.beta[1] * np.array([0.5, 0.7]))
        assert np.all(se > 0)
        assert len(intervals) == 2


class TestFitStatistics:
    """Tests for information criteria and serialization."""

    def test_information_criteria(self, smd_table) -> None:
        result = fit_multilevel(smd_table, grouping=["lab_id", "es_id"])
        k, p, m = len(smd_table), 1, 2
        assert result.aic == pytest.approx(-2 * result.log_likelihood + 2 * (p + m))
        assert result.bic == pytest.approx(-2 * result.log_likelihood + (p + m) * np.log(k - p))
        assert result.aicc > result.aic

    def test_model_is_reusable(self, smd_table) -> None:
        design = build_design(smd_table, grouping=["lab_id"])
        model = MultilevelModel(FitOptions())
        first = model.fit(design)
        second = model.fit(design)
        assert first.beta == pytest.approx(second.beta)

    def test_summary_and_dict(self, smd_table) -> None:
        result = fit_multilevel(smd_table, grouping=["lab_id", "es_id"], moderators=["female_proportion"])
        text = result.summary_table()
        assert "Multilevel Meta-Analysis Results" in text
        assert "lab_id" in text
        assert "Test of Moderators" in text
        d = result.to_dict()
        assert d["term_names"] == ["intercept", "female_proportion"]
        assert d["n_studies"] == len(smd_table)
        assert len(d["sigma2"]) == 2

    def test_fixed_effect_summary(self, three_studies) -> None:
        text = fit_multilevel(three_studies).summary_table()
        assert "fixed-effect model" in text


class TestUtils:
    """Tests for statistical helpers."""

    def test_ci_from_se(self) -> None:
        lower, upper = ci_from_se(0.5, 0.1)
        assert lower == pytest.approx(0.5 - 1.959964 * 0.1, abs=1e-6)
        assert upper == pytest.approx(0.5 + 1.959964 * 0.1, abs=1e-6)

    def test_p_value_from_z(self) -> None:
        assert p_value_from_z(1.959964) == pytest.approx(0.05, abs=1e-6)

    def test_formatting(self) -> None:
        assert format_estimate(0.5, ci=(0.3, 0.7)) == "0.500 [0.300, 0.700]"
        assert format_p_value(0.0001) == "p < 0.001"
        assert format_p_value(0.0312) == "p = 0.031"
