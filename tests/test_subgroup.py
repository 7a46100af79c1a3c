import numpy as np
import pytest
from scipy import stats

from trialmeta import ModelFamily, meta_regression, run_meta_analysis, subgroup_analysis


@pytest.fixture
def result(es_df, quiet):
    return run_meta_analysis(
        es_df, which_run=["overall", "combined", "threelevel"], method_tau="DL"
    )


class TestSubgroupAnalysis:
    def test_groups_and_test(self, result):
        sg = subgroup_analysis(result, "country")
        summary = sg["summary"]
        assert sg["model"] == "overall"
        assert set(summary["group"]) == {"uk", "us", "de"}
        assert summary["n_comp"].sum() == 12
        assert summary["p"].nunique() == 1
        test = sg["tests"].iloc[0]
        assert test["df"] == 2
        assert 0 <= test["p"] <= 1

    def test_variables_are_sorted(self, result):
        sg = subgroup_analysis(result, ["rob", "country"])
        assert list(sg["tests"]["variable"]) == ["country", "rob"]
        assert list(dict.fromkeys(sg["summary"]["variable"])) == ["country", "rob"]

    def test_group_estimate_matches_separate_pooling(self, es_df, result):
        from trialmeta import pool_effects

        sg = subgroup_analysis(result, "country", round_digits=4)
        uk = es_df[es_df["country"] == "uk"]
        pooled = pool_effects(uk["es"], uk["se_es"] ** 2, method_tau="DL")
        row = sg["summary"].set_index("group").loc["uk"]
        assert row["g"] == pytest.approx(pooled["estimate"], abs=1e-4)

    def test_common_tau2(self, result):
        sg = subgroup_analysis(result, "country", tau_common=True)
        tau2s = {fit["tau2"] for fit in sg["fits"]["country"].values()}
        assert len(tau2s) == 1
        assert sg["tau_common"]

    def test_single_group(self, es_df, quiet):
        es_df["arm"] = "psy"
        res = run_meta_analysis(es_df, which_run=["overall"])
        sg = subgroup_analysis(res, "arm")
        assert np.isnan(sg["tests"]["p"].iloc[0])
        assert sg["tests"]["df"].iloc[0] == 0

    def test_combined_model(self, result):
        sg = subgroup_analysis(result, "country", which_run="combined")
        assert sg["summary"]["n_comp"].sum() == 8

    def test_combined_rejects_varying_variables(self, result):
        with pytest.raises(ValueError, match="vary within studies"):
            subgroup_analysis(result, "cond_spec_trt1", which_run="combined")

    def test_three_level(self, result):
        sg = subgroup_analysis(result, "country", which_run="threelevel")
        assert sg["family"] == ModelFamily.MULTILEVEL
        fit = sg["fits"]["country"]
        assert list(fit["coefficients"]["term"]) == list(sg["summary"]["group"])
        assert sg["tests"]["df"].iloc[0] == 2

    def test_three_level_knapp_hartung(self, es_df, quiet):
        res = run_meta_analysis(es_df, which_run=["threelevel"], hakn=True)
        sg = subgroup_analysis(res, "country")
        test = sg["tests"].iloc[0]
        assert test["p"] == pytest.approx(stats.f.sf(test["statistic"] / 2, 2, 12 - 3))

    def test_missing_values_are_omitted(self, es_df, quiet):
        es_df["format"] = ["ind", "grp"] * 5 + [None, None]
        res = run_meta_analysis(es_df, which_run=["overall"])
        with pytest.warns(UserWarning, match="missing 'format'"):
            sg = subgroup_analysis(res, "format")
        assert sg["summary"]["n_comp"].sum() == 10

    def test_unknown_variable(self, result):
        with pytest.raises(ValueError, match="not found"):
            subgroup_analysis(result, "format")

    def test_requires_analysis_result(self, es_df):
        with pytest.raises(TypeError, match="run_meta_analysis"):
            subgroup_analysis(es_df, "country")

    def test_single_comparison(self, es_df, quiet):
        res = run_meta_analysis(es_df.iloc[:1], which_run=["overall"])
        with pytest.raises(ValueError, match="k = 1"):
            subgroup_analysis(res, "country")


class TestMetaRegression:
    def test_continuous_moderator(self, result):
        reg = meta_regression(result, "year")
        coef = reg["coefficients"]
        assert list(coef["term"]) == ["Intercept", "year"]
        assert reg["k"] == 12
        assert reg["qm_df"] == 1
        assert reg["qm"] == pytest.approx(coef["z_value"].iloc[1] ** 2)
        assert reg["qe_df"] == 10
        assert 0 <= reg["r2"] <= 100

    def test_categorical_moderator_explains_outlier(self, es_df, quiet):
        es_df["outlying"] = (es_df["study"] == "S5").astype(int)
        res = run_meta_analysis(es_df, which_run=["overall"], method_tau="DL")
        reg = meta_regression(res, "~ outlying")
        assert reg["r2"] > 50
        assert reg["coefficients"]["estimate"].iloc[1] > 1

    def test_knapp_hartung(self, es_df, quiet):
        res = run_meta_analysis(es_df, which_run=["overall"], hakn=True)
        reg = meta_regression(res, "C(country)")
        assert len(reg["coefficients"]) == 3
        assert reg["qm_df"] == 2

    def test_three_level(self, result):
        reg = meta_regression(result, "year", which_run="threelevel")
        assert list(reg["coefficients"]["term"]) == ["Intercept", "year"]
        assert reg["model"] == "threelevel"

    def test_combined(self, result):
        reg = meta_regression(result, "year", which_run="combined")
        assert reg["k"] == 8

    def test_missing_moderator_rows_are_dropped(self, es_df, quiet):
        es_df["year"] = es_df["year"].astype(float)
        es_df.loc[0, "year"] = np.nan
        res = run_meta_analysis(es_df, which_run=["overall"])
        with pytest.warns(UserWarning, match="missing moderators"):
            reg = meta_regression(res, "year")
        assert reg["k"] == 11

    def test_empty_formula(self, result):
        with pytest.raises(ValueError, match="moderator"):
            meta_regression(result, "~ ")
