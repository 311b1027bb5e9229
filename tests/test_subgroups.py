"""Tests for subgroup refits."""

from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pytest

from mlmeta.core.config import FitOptions
from mlmeta.core.errors import InvalidInputError
from mlmeta.models.multilevel import fit_multilevel
from mlmeta.models.subgroups import fit_subset, subgroup_analysis


class TestFitSubset:
    """Tests for mask-based refits."""

    def test_equals_fit_on_filtered_table(self, smd_table) -> None:
        mask = (smd_table["publication"] == "journal").to_numpy()
        sub = fit_subset(smd_table, mask, grouping=["lab_id", "es_id"], label="journal")
        direct = fit_multilevel(smd_table[mask], grouping=["lab_id", "es_id"])
        assert sub.label == "journal"
        assert sub.n_studies == int(mask.sum())
        assert sub.result.beta == pytest.approx(direct.beta)
        assert sub.result.sigma2 == pytest.approx(direct.sigma2)

    def test_does_not_touch_source_table(self, smd_table) -> None:
        before = smd_table.copy()
        fit_subset(smd_table, smd_table["lab_id"] != "lab1", grouping=["lab_id"])
        assert smd_table.equals(before)

    def test_empty_mask_raises(self, smd_table) -> None:
        with pytest.raises(InvalidInputError):
            fit_subset(smd_table, np.zeros(len(smd_table), dtype=bool))

    def test_wrong_mask_length_raises(self, smd_table) -> None:
        with pytest.raises(InvalidInputError):
            fit_subset(smd_table, [True, False])

    def test_per_subset_options(self, smd_table) -> None:
        mask = (smd_table["publication"] == "thesis").to_numpy()
        sub = fit_subset(smd_table, mask, grouping=["lab_id"], options=FitOptions(ci_level=0.9))
        assert sub.result.ci_level == 0.9


class TestSubgroupAnalysis:
    """Tests for per-category refits."""

    def test_one_fit_per_category_in_sorted_order(self, smd_table) -> None:
        results = subgroup_analysis(smd_table, by="publication", grouping=["lab_id", "es_id"])
        assert list(results) == ["journal", "thesis"]
        total = sum(r.n_studies for r in results.values())
        assert total == len(smd_table)

    def test_masks_partition_rows(self, smd_table) -> None:
        results = subgroup_analysis(smd_table, by="measure_type", grouping=["lab_id"])
        stacked = np.vstack([r.mask for r in results.values()])
        assert np.array_equal(stacked.sum(axis=0), np.ones(len(smd_table)))

    def test_executor_gives_same_results(self, smd_table) -> None:
        serial = subgroup_analysis(smd_table, by="publication", grouping=["lab_id", "es_id"])
        with ThreadPoolExecutor(max_workers=2) as executor:
            parallel = subgroup_analysis(
                smd_table, by="publication", grouping=["lab_id", "es_id"], executor=executor
            )
        assert list(serial) == list(parallel)
        for label in serial:
            assert np.array_equal(serial[label].result.beta, parallel[label].result.beta)
            assert np.array_equal(serial[label].result.sigma2, parallel[label].result.sigma2)

    def test_subgroup_options_override(self, smd_table) -> None:
        results = subgroup_analysis(
            smd_table,
            by="publication",
            grouping=["lab_id"],
            subgroup_options={"thesis": FitOptions(ci_level=0.8)},
        )
        assert results["journal"].result.ci_level == 0.95
        assert results["thesis"].result.ci_level == 0.8

    def test_explicit_levels(self, smd_table) -> None:
        results = subgroup_analysis(smd_table, by="publication", levels=["thesis"])
        assert list(results) == ["thesis"]

    def test_missing_category_raises(self, smd_table) -> None:
        table = smd_table.copy()
        table.loc[0, "publication"] = None
        with pytest.raises(InvalidInputError):
            subgroup_analysis(table, by="publication")

    def test_unknown_column_raises(self, smd_table) -> None:
        with pytest.raises(InvalidInputError):
            subgroup_analysis(smd_table, by="region")

    def test_to_dict(self, smd_table) -> None:
        results = subgroup_analysis(smd_table, by="publication")
        d = results["journal"].to_dict()
        assert d["label"] == "journal"
        assert d["n_studies"] == 12
