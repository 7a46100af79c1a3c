"""
End-to-end runs: raw arm data to pooled estimates.
"""
import numpy as np
import pytest

from trialmeta import (
    calculate_effect_sizes,
    check_data_format,
    expand_multiarm_trials,
    filter_pooling_data,
    filter_priority_rule,
    get_model,
    run_meta_analysis,
)


def _hedges(m1, m2, sd, n):
    j = 1 - 3 / (4 * (2 * n - 2) - 1)
    d = (m1 - m2) / sd
    return d * j, j * np.sqrt(2 / n + d ** 2 / (4 * n))


def _dl_mean(y, se):
    y, v = np.asarray(y), np.asarray(se) ** 2
    w = 1 / v
    mu = np.sum(w * y) / np.sum(w)
    q = np.sum(w * (y - mu) ** 2)
    tau2 = max(0.0, (q - (len(y) - 1)) / (np.sum(w) - np.sum(w ** 2) / np.sum(w)))
    w = 1 / (v + tau2)
    return np.sum(w * y) / np.sum(w)


class TestLongPipeline:
    def test_long_to_pooled(self, long_df, quiet):
        ds = check_data_format(long_df, "long")
        assert all(d["ok"] for d in ds["diagnostics"])

        wide = expand_multiarm_trials(ds)
        data = wide["data"]
        assert len(data) == 6
        a_vs_control = data[(data["study"] == "A") & (data["cond_spec_trt2"] == "control")]
        assert set(a_vs_control["cond_spec_trt1"]) == {"drug-high", "drug-low"}

        pool = filter_pooling_data(wide, "primary == 1", "condition_trt2 == 'cg'")
        assert len(pool["data"]) == 4

        pool = filter_priority_rule(pool, [("cond_spec_trt1", ["drug-high"])])
        assert len(pool["data"]) == 3
        assert list(pool["data"]["cond_spec_trt1"]) == ["drug-high"] * 3

        es = calculate_effect_sizes(pool, lower_is_better=True)
        expected = {
            "A": _hedges(15.0, 10.0, 5.0, 50),
            "B": _hedges(24.0, 20.0, 8.0, 40),
            "C": _hedges(33.0, 30.0, 10.0, 30),
        }
        for _, row in es["data"].iterrows():
            g, se = expected[row["study"]]
            assert row["es"] == pytest.approx(g, abs=1e-6)
            assert row["se_es"] == pytest.approx(se, abs=1e-6)

        res = run_meta_analysis(es, which_run=["overall"], method_tau="DL")
        gs, ses = zip(*expected.values())
        overall = get_model(res, "overall")["fit"]
        assert overall["estimate"] == pytest.approx(_dl_mean(gs, ses), abs=1e-6)
        assert overall["k"] == 3


class TestWidePipeline:
    def test_wide_with_multiarm_study(self, wide_df, quiet):
        ds = check_data_format(wide_df, "wide")
        wide = expand_multiarm_trials(ds)
        assert len(wide["data"]) == 4

        pool = filter_pooling_data(wide, "condition_trt2 == 'cg'")
        es = calculate_effect_sizes(pool, lower_is_better=True)
        assert (es["data"]["es"] > 0).all()

        res = run_meta_analysis(es, which_run=["overall", "combined", "lowest", "highest"])
        summary = res["summary"].set_index("model")
        assert summary.loc["overall", "k"] == 3
        assert summary.loc["combined", "k"] == 2
        assert summary.loc["lowest", "excluded"] == "A (drug-high)"
        assert summary.loc["highest", "excluded"] == "A (drug-low)"
