"""
Number Needed to Treat
======================

Converts standardized mean differences to numbers needed to treat (NNT).

Methods:
- "furukawa": Furukawa & Leucht (2011); needs the control event rate (CER)
    NNT = 1 / (Phi(g + Phi^-1(CER)) - CER)
- "kraemer": Kraemer & Kupfer (2006); area under the curve based
    NNT = 1 / (2 * Phi(g / sqrt(2)) - 1)

NNTs are signed: a negative NNT means the control arm did better.
Summary tables report the absolute value.
"""
from __future__ import annotations

from typing import Literal, Union

import numpy as np
from scipy import stats


ArrayLike = Union[float, np.ndarray]


def _check_cer(cer: float) -> None:
    if not 0 < cer < 1:
        raise ValueError(f"Control event rate must lie strictly between 0 and 1, got {cer}")


def metapsy_nnt(
    g: ArrayLike,
    cer: float = 0.2,
    method: Literal["furukawa", "kraemer"] = "furukawa",
) -> ArrayLike:
    """
    Convert Hedges' g to an NNT.

    :param g: Effect size(s)
    :param cer: Control event rate, used by the Furukawa-Leucht method
    :param method: "furukawa" or "kraemer"
    :returns: NNT (inf where g == 0)
    :raises ValueError: If cer is outside (0, 1) or the method is unknown

    Example:
        >>> round(metapsy_nnt(0.5, cer=0.2), 2)
        6.01
    """
    g_arr = np.asarray(g, dtype=float)

    if method == "furukawa":
        _check_cer(cer)
        diff = stats.norm.cdf(g_arr + stats.norm.ppf(cer)) - cer
    elif method == "kraemer":
        diff = 2 * stats.norm.cdf(g_arr / np.sqrt(2)) - 1
    else:
        raise ValueError(f"Unknown NNT method '{method}'. Use 'furukawa' or 'kraemer'.")

    with np.errstate(divide="ignore"):
        nnt = 1.0 / diff
    return float(nnt) if np.ndim(nnt) == 0 else nnt


def nnt_to_g(nnt: ArrayLike, cer: float = 0.2) -> ArrayLike:
    """
    Convert a Furukawa-Leucht NNT back to Hedges' g.

    g = Phi^-1(CER + 1 / NNT) - Phi^-1(CER)

    :param nnt: Signed NNT(s)
    :param cer: Control event rate
    :returns: g (NaN where CER + 1/NNT falls outside (0, 1))
    """
    _check_cer(cer)
    nnt_arr = np.asarray(nnt, dtype=float)
    eer = cer + 1.0 / nnt_arr
    with np.errstate(invalid="ignore"):
        g = np.where((eer > 0) & (eer < 1), stats.norm.ppf(eer) - stats.norm.ppf(cer), np.nan)
    return float(g) if np.ndim(g) == 0 else g
