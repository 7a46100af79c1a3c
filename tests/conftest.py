"""
Pytest configuration and fixtures.
"""
import warnings

import numpy as np
import pandas as pd
import pytest

from trialmeta import reset_registry


@pytest.fixture(autouse=True)
def clean_registry():
    """Restore the default field registry after every test."""
    yield
    reset_registry()


def _arm(study, condition, cond_spec, multiple_arms, outcome, primary, m, sd, n, no_arms):
    return {
        "study": study,
        "condition": condition,
        "cond_spec": cond_spec,
        "is_multiarm": 1 if no_arms > 2 else 0,
        "no_arms": no_arms,
        "multiple_arms": multiple_arms,
        "outc_measure": outcome,
        "time": "post",
        "time_weeks": 8,
        "primary": primary,
        "sr_clinician": "sr",
        "post_m": m,
        "post_sd": sd,
        "post_n": n,
    }


@pytest.fixture
def long_df() -> pd.DataFrame:
    """
    Ten arm rows:
    - study A: three arms (drug-high, drug-low, control)
    - studies B and C: two arms
    - study B: a second, non-primary outcome
    - study D: a single arm
    """
    rows = [
        _arm("A", "ig", "drug-high", "high", "bdi", 1, 10.0, 5.0, 50, 3),
        _arm("A", "ig", "drug-low", "low", "bdi", 1, 12.0, 5.0, 50, 3),
        _arm("A", "cg", "control", np.nan, "bdi", 1, 15.0, 5.0, 50, 3),
        _arm("B", "ig", "drug-high", np.nan, "bdi", 1, 20.0, 8.0, 40, 2),
        _arm("B", "cg", "control", np.nan, "bdi", 1, 24.0, 8.0, 40, 2),
        _arm("C", "ig", "drug-high", np.nan, "bdi", 1, 30.0, 10.0, 30, 2),
        _arm("C", "cg", "control", np.nan, "bdi", 1, 33.0, 10.0, 30, 2),
        _arm("B", "ig", "drug-high", np.nan, "hamd", 0, 8.0, 3.0, 40, 2),
        _arm("B", "cg", "control", np.nan, "hamd", 0, 10.0, 3.0, 40, 2),
        _arm("D", "ig", "drug-high", np.nan, "bdi", 1, 5.0, 2.0, 20, 1),
    ]
    return pd.DataFrame(rows)


@pytest.fixture
def wide_df() -> pd.DataFrame:
    """
    Wide data: study A's two drug arms each compared with the shared
    control arm, and one comparison for study B.
    """
    return pd.DataFrame({
        "study": ["A", "A", "B"],
        "outc_measure": ["bdi", "bdi", "bdi"],
        "time": ["post", "post", "post"],
        "primary": [1, 1, 1],
        "condition_trt1": ["ig", "ig", "ig"],
        "condition_trt2": ["cg", "cg", "cg"],
        "cond_spec_trt1": ["drug-high", "drug-low", "drug-high"],
        "cond_spec_trt2": ["control", "control", "control"],
        "multiple_arms_trt1": ["high", "low", np.nan],
        "multiple_arms_trt2": [np.nan, np.nan, np.nan],
        "post_m_trt1": [10.0, 12.0, 20.0],
        "post_sd_trt1": [5.0, 5.0, 8.0],
        "post_n_trt1": [50, 50, 40],
        "post_m_trt2": [15.0, 15.0, 24.0],
        "post_sd_trt2": [5.0, 5.0, 8.0],
        "post_n_trt2": [50, 50, 40],
    })


@pytest.fixture
def es_df() -> pd.DataFrame:
    """
    Effect sizes of twelve comparisons from eight studies, with study
    characteristics for subgroup analyses and meta-regressions.
    """
    return pd.DataFrame({
        "study": ["S1", "S1", "S2", "S3", "S3", "S4", "S5", "S6", "S6", "S7", "S8", "S8"],
        "cond_spec_trt1": ["cbt", "bat", "cbt", "cbt", "pst", "cbt", "bat", "cbt", "pst", "bat", "cbt", "bat"],
        "es": [0.45, 0.30, 0.80, 0.20, 0.35, 0.60, 1.90, 0.55, 0.40, 0.25, 0.70, 0.50],
        "se_es": [0.15, 0.16, 0.20, 0.12, 0.13, 0.18, 0.22, 0.14, 0.15, 0.10, 0.21, 0.19],
        "country": ["uk", "uk", "us", "us", "us", "uk", "de", "uk", "uk", "us", "de", "de"],
        "year": [2005, 2005, 2010, 2012, 2012, 2015, 2016, 2018, 2018, 2019, 2020, 2020],
        "rob": [1, 1, 0, 1, 1, 1, 0, 1, 1, 1, 0, 0],
    })


@pytest.fixture
def quiet():
    """Silence pipeline warnings inside a test."""
    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        yield
