"""End-to-end tests for the analysis pipeline."""

from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pytest

from mlmeta import AnalysisConfig, run_analysis
from mlmeta.core.errors import InvalidInputError
from mlmeta.models.multilevel import fit_multilevel


class TestRunAnalysis:
    """Tests for run_analysis."""

    def test_smd_analysis(self, smd_studies) -> None:
        config = AnalysisConfig(
            measure="SMD",
            grouping_levels=["lab_id", "es_id"],
            moderators=["female_proportion", "measure_type"],
            subgroup_by="publication",
            label_column="study",
        )
        report = run_analysis(smd_studies, config)

        assert {"yi", "vi"}.issubset(report.effect_sizes.columns)
        assert "yi" not in smd_studies.columns
        assert report.overall.level_names == ("lab_id", "es_id")
        assert list(report.moderators) == ["female_proportion", "measure_type"]
        assert report.moderators["female_proportion"].qm_df == 1
        assert list(report.subgroups) == ["journal", "thesis"]
        assert report.egger.form == "mixed"
        assert not report.rank_test.reliable
        assert len(report.forest.subgroups) == 2
        assert report.forest.records[0].label.startswith("Author")
        assert len(report.funnel.points) == len(smd_studies)

    def test_overall_matches_direct_fit(self, smd_table) -> None:
        config = AnalysisConfig(grouping_levels=["lab_id", "es_id"])
        report = run_analysis(smd_table, config, bias_tests=False)
        direct = fit_multilevel(smd_table, grouping=["lab_id", "es_id"])
        assert report.overall.estimate == pytest.approx(direct.estimate)
        assert report.egger is None and report.rank_test is None

    def test_zcor_analysis(self, zcor_studies) -> None:
        config = AnalysisConfig.from_dict({
            "measure": "ZCOR",
            "groupingLevels": ["sample_id", "es_id"],
            "eggerForm": "weighted",
        })
        report = run_analysis(zcor_studies, config)
        assert report.egger.form == "weighted"
        for record in report.forest.records:
            assert -1 <= record.point_estimate <= 1
        assert "Back-transformed pooled correlation" in report.summary_table()

    def test_executor(self, smd_studies) -> None:
        config = AnalysisConfig(grouping_levels=["lab_id", "es_id"], subgroup_by="measure_type")
        serial = run_analysis(smd_studies, config, bias_tests=False)
        with ThreadPoolExecutor(max_workers=2) as executor:
            parallel = run_analysis(smd_studies, config, executor=executor, bias_tests=False)
        for label in serial.subgroups:
            assert np.array_equal(
                serial.subgroups[label].result.beta, parallel.subgroups[label].result.beta
            )

    def test_summary_and_dict(self, smd_studies) -> None:
        config = AnalysisConfig(grouping_levels=["lab_id", "es_id"], subgroup_by="publication")
        report = run_analysis(smd_studies, config)
        text = report.summary_table()
        assert "Egger test" in text
        assert "Rank correlation test" in text
        assert "Subgroup publication=journal" in text
        d = report.to_dict()
        assert d["config"]["grouping_levels"] == ["lab_id", "es_id"]
        assert set(d["subgroups"]) == {"journal", "thesis"}
        assert isinstance(d["warnings"], list)

    def test_unknown_label_column(self, smd_studies) -> None:
        config = AnalysisConfig(label_column="title")
        with pytest.raises(InvalidInputError):
            run_analysis(smd_studies, config, bias_tests=False)
