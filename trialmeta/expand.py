"""
Multi-Arm Expansion Module
==========================

Turns trial arms into pairwise comparison rows. A trial with N arms
(within one outcome and timepoint) yields all C(N, 2) comparisons, with
the intervention arm placed first and the control arm second.

Architecture Note:
    Works on arm records collected by prepare.collect_arms(), so long
    input (one row per arm) and wide input (one row per comparison) are
    handled by the same code. The result is always a wide dataset.
"""
from __future__ import annotations

from itertools import combinations
from typing import Any, Dict, List, Sequence, Set, Tuple
import warnings

import pandas as pd

from .prepare import (
    NormalizedDataset,
    as_dataset,
    collect_arms,
    create_diagnostic,
    replace_data,
    strip_suffix,
)
from .registry import (
    DEFAULT_TRIAL_KEYS,
    DataFormat,
    get_arm_fields,
)


_HELPER_COLUMNS = ("_row", "_side", "_group", "_arm")


def _arm_fields(ds: NormalizedDataset, records: pd.DataFrame) -> List[str]:
    """Fields that differ between arms, in a stable order."""
    fields = [f for f in get_arm_fields() if f in records.columns]
    if ds["format"] == DataFormat.WIDE:
        suffixes = ds["schema"]["suffixes"]
        for column in ds["data"].columns:
            base, side = strip_suffix(column, suffixes)
            if side is not None and base not in fields:
                fields.append(base)
    return fields


def _existing_pairs(records: pd.DataFrame) -> Set[Tuple[Any, frozenset]]:
    """(group, {arm, arm}) of every comparison row of a wide input."""
    pairs = set()
    for _, row_df in records.groupby("_row", sort=False):
        arms = list(row_df["_arm"])
        pairs.add((row_df["_group"].iloc[0], frozenset(arms)))
    return pairs


def _is_control(record: pd.Series, control_conditions: Sequence[str]) -> bool:
    return "condition" in record.index and record["condition"] in control_conditions


def _build_row(
    first: pd.Series,
    second: pd.Series,
    shared: List[str],
    arm_fields: List[str],
    suffixes: Tuple[str, str],
) -> Dict[str, Any]:
    """One wide comparison row from two arm records."""
    row: Dict[str, Any] = {}
    for column in shared:
        value = first[column]
        row[column] = value if pd.notna(value) else second[column]
    for suffix, record in zip(suffixes, (first, second)):
        for field in arm_fields:
            row[f"{field}{suffix}"] = record[field] if field in record.index else pd.NA
    return row


def expand_multiarm_trials(
    ds: NormalizedDataset,
    trial_keys: Sequence[str] = DEFAULT_TRIAL_KEYS,
    control_conditions: Sequence[str] = ("cg",),
) -> NormalizedDataset:
    """
    Expand multi-arm trials into all pairwise comparisons.

    Arms are grouped by trial_keys (study, outcome and timepoint by
    default) and identified by condition, cond_spec and multiple_arms; the
    first occurrence of an arm supplies its data. For every group with at
    least two arms, each pair of arms becomes one comparison row. The
    intervention arm goes to the first-arm columns and the control arm to
    the second-arm columns; otherwise arms keep their order of appearance.
    Trial and comparison fields are taken from the first arm, falling back
    to the second arm where missing.

    For wide input, existing rows are kept unchanged and first; only the
    pairs they do not already cover (in either orientation) are added.

    :param ds: NormalizedDataset dictionary (long or wide)
    :param trial_keys: Columns identifying arms that may be compared
    :param control_conditions: Values of "condition" marking control arms
    :returns: Wide NormalizedDataset with a boolean "expanded" column
        (True for generated rows)

    Example:
        >>> wide = expand_multiarm_trials(check_data_format(df, "long"))
        >>> wide["data"][["study", "cond_spec_trt1", "cond_spec_trt2"]]
    """
    ds = as_dataset(ds, "expand_multiarm_trials")
    suffixes = ds["schema"]["suffixes"]
    records = collect_arms(ds, trial_keys)
    arm_fields = _arm_fields(ds, records)
    shared = [
        c for c in records.columns
        if c not in arm_fields and c not in _HELPER_COLUMNS
    ]

    if ds["format"] == DataFormat.WIDE:
        existing = ds["data"].copy()
        existing["expanded"] = False
        covered = _existing_pairs(records)
    else:
        existing = None
        covered = set()

    arms = records.drop_duplicates(subset=["_group", "_arm"], keep="first")

    new_rows = []
    single_arm = []
    for group, group_df in arms.groupby("_group", sort=False):
        if len(group_df) < 2:
            single_arm.append(" / ".join(v for v in group if v))
            continue
        for (_, a), (_, b) in combinations(group_df.iterrows(), 2):
            if _is_control(a, control_conditions) and not _is_control(b, control_conditions):
                a, b = b, a
            if (group, frozenset((a["_arm"], b["_arm"]))) in covered:
                continue
            new_rows.append(_build_row(a, b, shared, arm_fields, suffixes))

    if single_arm:
        warnings.warn(
            f"{len(single_arm)} trial group(s) have a single arm and produce no "
            f"comparison: {', '.join(single_arm)}"
        )

    columns = shared + [f"{f}{s}" for s in suffixes for f in arm_fields]
    generated = pd.DataFrame(new_rows, columns=columns)
    generated["expanded"] = True

    if existing is not None:
        # Keep the input column order; generated rows may add columns
        extra = [c for c in generated.columns if c not in existing.columns]
        out = pd.concat(
            [existing, generated.reindex(columns=list(existing.columns) + extra)],
            ignore_index=True,
        )
    else:
        out = generated.reset_index(drop=True)
    out["expanded"] = out["expanded"].astype(bool)

    n_input = len(ds["data"])
    diagnostics = [create_diagnostic(
        "expand_multiarm_trials",
        f"{len(out)} comparison(s) from {n_input} input row(s); "
        f"{len(generated)} generated.",
    )]
    if single_arm:
        diagnostics.append({
            "check": "expand_multiarm_trials",
            "column": None,
            "ok": False,
            "message": f"{len(single_arm)} single-arm trial group(s) skipped.",
        })
    return replace_data(ds, out, data_format=DataFormat.WIDE, diagnostics=diagnostics)
