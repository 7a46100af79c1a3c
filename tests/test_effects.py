import numpy as np
import pandas as pd
import pytest

from trialmeta import (
    DataFormat,
    EffectSizeSchema,
    calculate_effect_sizes,
    check_data_format,
    create_normalized_dataset,
    hedges_correction,
    log_odds_ratio,
    smd_from_binary,
    smd_from_means,
)


def _wide(**columns):
    return create_normalized_dataset(pd.DataFrame(columns), DataFormat.WIDE)


class TestFormulas:
    def test_hedges_correction(self):
        assert hedges_correction(98) == pytest.approx(1 - 3 / 391)
        assert np.isnan(hedges_correction(0))

    def test_smd_from_means(self):
        g, se = smd_from_means(10, 5, 50, 15, 5, 50)
        d = -1.0
        j = 1 - 3 / (4 * 98 - 1)
        assert g == pytest.approx(d * j, abs=1e-6)
        assert se == pytest.approx(j * np.sqrt(100 / 2500 + d ** 2 / 200), abs=1e-6)

    def test_unequal_groups(self):
        m1, sd1, n1, m2, sd2, n2 = 22.0, 6.0, 35, 18.5, 7.5, 41
        sp = np.sqrt(((n1 - 1) * sd1 ** 2 + (n2 - 1) * sd2 ** 2) / (n1 + n2 - 2))
        d = (m1 - m2) / sp
        g, _ = smd_from_means(m1, sd1, n1, m2, sd2, n2)
        assert g == pytest.approx(d * (1 - 3 / (4 * (n1 + n2 - 2) - 1)), abs=1e-6)

    def test_invalid_means_give_nan(self):
        g, se = smd_from_means([1.0, 1.0], [0.0, 1.0], [10, 1], [2.0, 2.0], [1.0, 1.0], [10, 1])
        assert np.isnan(g).all() and np.isnan(se).all()

    def test_log_odds_ratio(self):
        lor, se = log_odds_ratio(30, 50, 20, 50)
        assert lor == pytest.approx(np.log((30 * 30) / (20 * 20)))
        assert se == pytest.approx(np.sqrt(1 / 30 + 1 / 20 + 1 / 20 + 1 / 30))

    def test_zero_cell_correction(self):
        lor, se = log_odds_ratio(0, 20, 5, 20)
        assert lor == pytest.approx(np.log((0.5 * 15.5) / (20.5 * 5.5)))
        assert np.isfinite(se)

    def test_binary_conversion(self):
        g, se, lor, se_lor = smd_from_binary(30, 50, 20, 50)
        j = 1 - 3 / (4 * 98 - 1)
        assert g == pytest.approx(lor * np.sqrt(3) / np.pi * j)
        assert se == pytest.approx(j * se_lor * np.sqrt(3) / np.pi)

    def test_more_responders_than_randomized(self):
        g, *_ = smd_from_binary(60, 50, 20, 50)
        assert np.isnan(g)


class TestCalculateEffectSizes:
    def test_post_means(self):
        ds = _wide(
            study=["A"],
            post_m_trt1=[10.0], post_sd_trt1=[5.0], post_n_trt1=[50],
            post_m_trt2=[15.0], post_sd_trt2=[5.0], post_n_trt2=[50],
        )
        out = calculate_effect_sizes(ds)["data"]
        j = 1 - 3 / (4 * 98 - 1)
        assert out["es"].iloc[0] == pytest.approx(-1.0 * j, abs=1e-6)
        assert out["es_schema"].iloc[0] == "post_means"
        assert out["es_n_trt1"].iloc[0] == 50

    def test_lower_is_better(self):
        ds = _wide(
            study=["A"],
            post_m_trt1=[10.0], post_sd_trt1=[5.0], post_n_trt1=[50],
            post_m_trt2=[15.0], post_sd_trt2=[5.0], post_n_trt2=[50],
        )
        out = calculate_effect_sizes(ds, lower_is_better=True)["data"]
        assert out["es"].iloc[0] > 0

    def test_precomputed_wins(self):
        ds = _wide(
            study=["A"],
            precalc_es=[0.42], precalc_se=[0.1],
            post_m_trt1=[10.0], post_sd_trt1=[5.0], post_n_trt1=[50],
            post_m_trt2=[15.0], post_sd_trt2=[5.0], post_n_trt2=[50],
        )
        out = calculate_effect_sizes(ds)["data"]
        assert out["es"].iloc[0] == pytest.approx(0.42)
        assert out["se_es"].iloc[0] == pytest.approx(0.1)
        assert out["es_schema"].iloc[0] == "precomputed"

    def test_precomputed_variance(self):
        ds = _wide(study=["A"], precalc_es=[0.3], precalc_var=[0.04])
        out = calculate_effect_sizes(ds)["data"]
        assert out["se_es"].iloc[0] == pytest.approx(0.2)

    def test_custom_precedence(self):
        ds = _wide(
            study=["A"],
            precalc_es=[0.42], precalc_se=[0.1],
            post_m_trt1=[10.0], post_sd_trt1=[5.0], post_n_trt1=[50],
            post_m_trt2=[15.0], post_sd_trt2=[5.0], post_n_trt2=[50],
        )
        out = calculate_effect_sizes(
            ds, precedence=[EffectSizeSchema.POST_MEANS, EffectSizeSchema.PRECOMPUTED]
        )["data"]
        assert out["es_schema"].iloc[0] == "post_means"

    def test_mixed_schemas(self):
        ds = _wide(
            study=["A", "B", "C"],
            change_m_trt1=[-8.0, np.nan, np.nan], change_sd_trt1=[4.0, np.nan, np.nan],
            change_n_trt1=[30, np.nan, np.nan],
            change_m_trt2=[-5.0, np.nan, np.nan], change_sd_trt2=[4.0, np.nan, np.nan],
            change_n_trt2=[30, np.nan, np.nan],
            improved_n_trt1=[np.nan, 30, np.nan], rand_n_trt1=[np.nan, 50, np.nan],
            improved_n_trt2=[np.nan, 20, np.nan], rand_n_trt2=[np.nan, 50, np.nan],
        )
        with pytest.warns(UserWarning, match="lack the data"):
            res = calculate_effect_sizes(ds)
        out = res["data"]
        assert list(out["es_schema"].iloc[:2]) == ["change", "binary"]
        assert out["es_schema"].dtype == object
        assert pd.isna(out["es_schema"].iloc[2])
        assert np.isfinite(out["log_or"].iloc[1])
        assert np.isnan(out["log_or"].iloc[0])
        assert np.isnan(out["es"].iloc[2])
        assert list(out["es_id"]) == [1, 2, 3]
        assert sum(d["ok"] for d in res["diagnostics"]) == 2

    def test_invalid_row_gets_na(self):
        ds = _wide(
            study=["A", "B"],
            post_m_trt1=[10.0, 10.0], post_sd_trt1=[5.0, 0.0], post_n_trt1=[50, 50],
            post_m_trt2=[15.0, 15.0], post_sd_trt2=[5.0, 5.0], post_n_trt2=[50, 50],
        )
        with pytest.warns(UserWarning, match="invalid outcome data"):
            out = calculate_effect_sizes(ds)["data"]
        assert np.isfinite(out["es"].iloc[0])
        assert np.isnan(out["es"].iloc[1])

    def test_change_sign_column(self):
        ds = _wide(
            study=["A", "B"], flip=[True, False],
            precalc_es=[0.5, 0.5], precalc_se=[0.1, 0.1],
        )
        out = calculate_effect_sizes(ds, change_sign="flip")["data"]
        assert list(out["es"]) == [-0.5, 0.5]

    def test_no_effect_size_at_all(self):
        ds = _wide(study=["A"], post_m_trt1=[1.0])
        with pytest.raises(ValueError, match="No effect size"):
            calculate_effect_sizes(ds)

    def test_requires_wide(self, long_df):
        with pytest.raises(ValueError, match="wide"):
            calculate_effect_sizes(check_data_format(long_df, "long"))
