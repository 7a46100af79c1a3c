import numpy as np
import pandas as pd
import pytest

from trialmeta import (
    DEFAULT_WHICH_RUN,
    ModelFamily,
    ModelKind,
    get_model,
    model_estimates,
    pool_effects,
    run_meta_analysis,
)
from trialmeta.analysis import SUMMARY_COLUMNS, comparison_labels, format_interval


@pytest.fixture
def result(es_df, quiet):
    return run_meta_analysis(es_df, method_tau="DL")


class TestRunMetaAnalysis:
    def test_default_models(self, result):
        assert result["which_run"] == list(DEFAULT_WHICH_RUN)
        assert list(result["summary"]["model"]) == list(DEFAULT_WHICH_RUN)
        assert list(result["summary"].columns) == SUMMARY_COLUMNS

    def test_overall_matches_pooling(self, es_df, result):
        pooled = pool_effects(es_df["es"], es_df["se_es"] ** 2, method_tau="DL")
        overall = get_model(result, "overall")
        assert overall["fit"]["estimate"] == pytest.approx(pooled["estimate"])
        row = result["summary"].set_index("model").loc["overall"]
        assert row["k"] == 12
        assert row["n_studies"] == 8
        assert row["g"] == round(pooled["estimate"], 2)
        assert row["excluded"] == "none"

    def test_combined_has_one_row_per_study(self, result):
        combined = get_model(result, ModelKind.COMBINED)
        assert len(combined["data"]) == 8
        assert combined["data"]["n_comp"].sum() == 12

    def test_lowest_and_highest(self, result):
        lowest = get_model(result, "lowest")
        highest = get_model(result, "highest")
        assert len(lowest["data"]) == len(highest["data"]) == 8
        assert model_estimates(lowest)["estimate"] < model_estimates(highest)["estimate"]
        assert "S1 (cbt)" in lowest["excluded"]
        assert "S1 (bat)" in highest["excluded"]

    def test_duplicated_index_labels(self, es_df, result, quiet):
        half = len(es_df) // 2
        stacked = pd.concat([es_df.iloc[:half], es_df.iloc[half:]])
        stacked.index = list(range(half)) + list(range(len(es_df) - half))
        res = run_meta_analysis(stacked, which_run=["lowest", "highest"], method_tau="DL")
        for kind in ("lowest", "highest"):
            model = get_model(res, kind)
            assert len(model["data"]) == 8
            assert len(model["excluded"]) == 4
            assert model["excluded"] == get_model(result, kind)["excluded"]

    def test_outliers_removed(self, result):
        outliers = get_model(result, "outliers")
        assert outliers["excluded"] == ["S5"]
        assert list(result["outliers"]["study"]) == ["S5"]
        assert model_estimates(outliers)["k"] == 11

    def test_influence_table(self, result):
        table = result["influence"]
        assert len(table) == 12
        assert "S5" in get_model(result, "influence")["excluded"]

    def test_three_level(self, result):
        model = get_model(result, "threelevel")
        assert model["family"] == ModelFamily.MULTILEVEL
        vc = result["variance_components"]
        assert list(vc["level"]) == ["between studies", "within studies"]
        row = result["summary"].set_index("model").loc["threelevel"]
        assert row["i2_ci"] == "-"

    def test_dataset_input(self, es_df, quiet):
        from trialmeta import DataFormat, create_normalized_dataset

        ds = create_normalized_dataset(es_df, DataFormat.WIDE)
        res = run_meta_analysis(ds, which_run=["overall"])
        assert res["which_run"] == ["overall"]
        assert res["influence"] is None

    def test_missing_effect_sizes_are_dropped(self, es_df):
        es_df.loc[0, "es"] = np.nan
        with pytest.warns(UserWarning, match="without effect size"):
            res = run_meta_analysis(es_df, which_run=["overall"])
        assert model_estimates(get_model(res, "overall"))["k"] == 11
        assert res["warnings"]

    def test_rob_requires_filter(self, es_df):
        with pytest.raises(ValueError, match="low_rob_filter"):
            run_meta_analysis(es_df, which_run=["rob"])

    def test_rob_model(self, es_df):
        res = run_meta_analysis(es_df, which_run=["rob"], low_rob_filter="rob == 1")
        model = get_model(res, "rob")
        assert len(model["data"]) == 8
        assert len(model["excluded"]) == 4

    def test_influence_with_two_comparisons(self, es_df):
        with pytest.warns(UserWarning, match="at least 3"):
            res = run_meta_analysis(es_df.iloc[:2], which_run=["influence"])
        assert get_model(res, "influence")["excluded"] == []

    def test_fixed_and_hakn(self, es_df):
        fixed = run_meta_analysis(es_df, which_run=["overall"], fixed=True)
        w = 1 / es_df["se_es"] ** 2
        expected = np.sum(w * es_df["es"]) / np.sum(w)
        assert get_model(fixed, "overall")["fit"]["estimate"] == pytest.approx(expected)
        hk = run_meta_analysis(es_df, which_run=["overall"], hakn=True)
        assert get_model(hk, "overall")["fit"]["hakn"]

    def test_missing_columns(self, es_df):
        with pytest.raises(ValueError, match="calculate_effect_sizes"):
            run_meta_analysis(es_df.drop(columns="se_es"))

    def test_unknown_model(self, es_df):
        with pytest.raises(ValueError):
            run_meta_analysis(es_df, which_run=["bayesian"])

    def test_model_not_run(self, es_df):
        res = run_meta_analysis(es_df, which_run=["overall"])
        with pytest.raises(ValueError, match="was not run"):
            get_model(res, "combined")


class TestHelpers:
    def test_comparison_labels(self):
        df = pd.DataFrame({
            "study": ["A", "A", "B", "C", "C"],
            "cond_spec_trt1": ["cbt", "pst", "cbt", "cbt", "cbt"],
        })
        assert comparison_labels(df) == ["A (cbt)", "A (pst)", "B", "C (cbt) #1", "C (cbt) #2"]

    def test_format_interval(self):
        assert format_interval(0.1234, 0.5678) == "[0.12; 0.57]"
        assert format_interval(np.nan, 1.0) == "-"
