import numpy as np
import pytest
from scipy import stats

from trialmeta import contrast_test, fit_three_level, pool_effects, wald_test


class TestFitThreeLevel:
    def test_coefficient_table(self, es_df):
        fit = fit_three_level(es_df["es"], es_df["se_es"] ** 2, es_df["study"])
        coef = fit["coefficients"]
        assert list(coef.columns) == [
            "term", "estimate", "std_error", "z_value", "p_value", "ci_lower", "ci_upper",
        ]
        assert coef["term"].iloc[0] == "intrcpt"
        assert fit["k"] == 12
        assert fit["n_studies"] == 8
        assert coef["ci_lower"].iloc[0] < coef["estimate"].iloc[0] < coef["ci_upper"].iloc[0]

    def test_variance_components(self, es_df):
        fit = fit_three_level(es_df["es"], es_df["se_es"] ** 2, es_df["study"])
        assert fit["sigma2_between"] >= 0
        assert fit["sigma2_within"] >= 0
        assert fit["i2_total"] == pytest.approx(fit["i2_between"] + fit["i2_within"])
        assert 0 <= fit["i2_total"] <= 100
        assert np.isnan(fit["qm"])

    def test_independent_studies_match_reml(self, es_df):
        one = es_df.drop_duplicates("study")
        fit = fit_three_level(one["es"], one["se_es"] ** 2, one["study"])
        pooled = pool_effects(one["es"], one["se_es"] ** 2, method_tau="REML")
        total = fit["sigma2_between"] + fit["sigma2_within"]
        assert total == pytest.approx(pooled["tau2"], rel=0.05)
        assert fit["coefficients"]["estimate"].iloc[0] == pytest.approx(pooled["estimate"], abs=1e-3)

    def test_moderator(self, es_df):
        x = (es_df["country"] == "de").astype(float).to_numpy()
        X = np.column_stack([np.ones(len(x)), x])
        fit = fit_three_level(
            es_df["es"], es_df["se_es"] ** 2, es_df["study"], X=X, term_names=["intrcpt", "de"],
        )
        assert list(fit["coefficients"]["term"]) == ["intrcpt", "de"]
        assert fit["qm_df"] == 1
        z = fit["coefficients"]["z_value"].iloc[1]
        assert fit["qm"] == pytest.approx(z ** 2)

    def test_moderator_t_test_uses_f(self, es_df):
        x = (es_df["country"] == "de").astype(float).to_numpy()
        X = np.column_stack([np.ones(len(x)), x])
        fit = fit_three_level(es_df["es"], es_df["se_es"] ** 2, es_df["study"], X=X, test="t")
        assert fit["qm_p"] == pytest.approx(stats.f.sf(fit["qm"], 1, len(x) - 2))
        # with one moderator F(1, df) matches the coefficient t test
        assert fit["qm_p"] == pytest.approx(fit["coefficients"]["p_value"].iloc[1])

    def test_t_test_is_wider(self, es_df):
        z = fit_three_level(es_df["es"], es_df["se_es"] ** 2, es_df["study"])
        t = fit_three_level(es_df["es"], es_df["se_es"] ** 2, es_df["study"], test="t")
        width_z = z["coefficients"]["ci_upper"].iloc[0] - z["coefficients"]["ci_lower"].iloc[0]
        width_t = t["coefficients"]["ci_upper"].iloc[0] - t["coefficients"]["ci_lower"].iloc[0]
        assert width_t > width_z

    def test_invalid_input(self, es_df):
        with pytest.raises(ValueError, match="equal length"):
            fit_three_level([0.1, 0.2], [0.01], ["a", "b"])
        with pytest.raises(ValueError, match="test must be"):
            fit_three_level(es_df["es"], es_df["se_es"] ** 2, es_df["study"], test="f")
        with pytest.raises(ValueError, match="more effect sizes"):
            fit_three_level([0.1], [0.01], ["a"])


class TestWaldTests:
    def test_wald_single_coefficient(self):
        beta = np.array([0.5, 0.2])
        cov = np.diag([0.01, 0.04])
        stat, df, p = wald_test(beta, cov, [1])
        assert stat == pytest.approx(1.0)
        assert df == 1
        assert 0 < p < 1

    def test_wald_with_residual_df(self):
        beta = np.array([0.5, 0.2, -0.1])
        cov = np.diag([0.01, 0.04, 0.02])
        stat, df, p = wald_test(beta, cov, [1, 2], df_resid=9)
        assert stat == pytest.approx(1.0 + 0.5)
        assert p == pytest.approx(stats.f.sf(stat / 2, 2, 9))
        assert p > wald_test(beta, cov, [1, 2])[2]

    def test_wald_nothing_to_test(self):
        stat, df, p = wald_test(np.array([0.5]), np.eye(1), [])
        assert np.isnan(stat) and df == 0 and np.isnan(p)

    def test_contrast_equals_difference_test(self):
        beta = np.array([0.3, 0.7])
        cov = np.diag([0.01, 0.03])
        stat, df, _ = contrast_test(beta, cov, np.array([1.0, -1.0]))
        assert stat == pytest.approx(0.16 / 0.04)
        assert df == 1
