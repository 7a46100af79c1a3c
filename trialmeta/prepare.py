"""
Data Preparation Module
=======================

Validates and reshapes trial datasets before effect sizes are computed:
- Format checks (required columns, allowed values, column types)
- Best-effort type conversion with an explicit outcome per column
- Conflict checks for multi-arm trials
- Pooling filters and the per-study priority rule
- Merging of arm-level information into comparison rows

Architecture Note:
    This module uses dictionaries instead of classes for data structures.

    NormalizedDataset is a TypedDict containing:
    - data: pandas DataFrame (one row per arm or per comparison)
    - format: DataFormat.LONG or DataFormat.WIDE
    - schema: ColumnSchema resolving logical fields to column names
    - diagnostics: messages produced by the stage that returned the dataset
    - conversions: outcome of each attempted type conversion
"""
from __future__ import annotations

import re
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, TypedDict, Union
import warnings

import numpy as np
import pandas as pd

from .registry import (
    ARM_KEY_FIELDS,
    DEFAULT_SUFFIXES,
    DEFAULT_TRIAL_KEYS,
    FIELD_REGISTRY,
    ConversionStatus,
    DataFormat,
    FieldRole,
    default_must_contain,
    default_variable_class,
    default_variable_contains,
    parse_data_format,
)


# =============================================================================
# Diagnostics and conversion outcomes
# =============================================================================

class Diagnostic(TypedDict):
    """
    A single message emitted by a pipeline stage.

    Keys:
        check: Name of the check (e.g., "must_contain", "variable_class")
        column: Column the message refers to (None for dataset-level checks)
        ok: Whether the check passed
        message: Human-readable message
    """
    check: str
    column: Optional[str]
    ok: bool
    message: str


def create_diagnostic(
    check: str,
    message: str,
    ok: bool = True,
    column: Optional[str] = None,
) -> Diagnostic:
    """
    Create a Diagnostic dictionary. Failed checks are also warned.

    :param check: Name of the check
    :param message: Human-readable message
    :param ok: Whether the check passed
    :param column: Column the message refers to
    :returns: Diagnostic dictionary
    """
    if not ok:
        warnings.warn(message, UserWarning, stacklevel=3)
    return {"check": check, "column": column, "ok": ok, "message": message}


class ConversionOutcome(TypedDict):
    """
    Outcome of a best-effort type conversion.

    Keys:
        column: Column name
        target: Required type name
        status: ALREADY_OK, CONVERTED or KEPT_ORIGINAL
        reason: Why the original column was kept (empty otherwise)
    """
    column: str
    target: str
    status: ConversionStatus
    reason: str


# =============================================================================
# Column schema descriptor
# =============================================================================

class FieldColumns(TypedDict):
    """
    Column names of one logical field.

    Keys:
        field: Logical field name
        role: Level at which the field varies
        long: Column name in long format
        wide: (first arm, second arm) column names in wide format; for
            trial and comparison fields both entries equal the long name
    """
    field: str
    role: FieldRole
    long: str
    wide: Tuple[str, str]


class ColumnSchema(TypedDict):
    """
    Logical field -> column names, resolved once per dataset.

    Keys:
        suffixes: Suffix pair distinguishing the two arms in wide format
        fields: FieldColumns per logical field
    """
    suffixes: Tuple[str, str]
    fields: Dict[str, FieldColumns]


def create_column_schema(
    suffixes: Sequence[str] = DEFAULT_SUFFIXES,
    fields: Optional[Sequence[str]] = None,
) -> ColumnSchema:
    """
    Build the column schema for a suffix pair.

    :param suffixes: Two suffixes used for arm columns in wide format
    :param fields: Logical fields to include (None = all registered fields)
    :returns: ColumnSchema dictionary
    """
    if len(suffixes) != 2 or suffixes[0] == suffixes[1]:
        raise ValueError(f"Expected two distinct suffixes, got {list(suffixes)}")

    names = list(fields) if fields is not None else list(FIELD_REGISTRY)
    resolved: Dict[str, FieldColumns] = {}
    for name in names:
        info = FIELD_REGISTRY.get(name)
        role = info["role"] if info is not None else FieldRole.COMPARISON
        if role == FieldRole.ARM:
            wide = (f"{name}{suffixes[0]}", f"{name}{suffixes[1]}")
        else:
            wide = (name, name)
        resolved[name] = {"field": name, "role": role, "long": name, "wide": wide}

    return {"suffixes": (suffixes[0], suffixes[1]), "fields": resolved}


def arm_column(schema: ColumnSchema, field: str, arm: int) -> str:
    """
    Wide-format column of an arm field.

    :param schema: ColumnSchema dictionary
    :param field: Logical field name
    :param arm: 1 or 2
    :returns: Column name (e.g., "post_m_trt1")
    """
    if arm not in (1, 2):
        raise ValueError(f"arm must be 1 or 2, got {arm}")
    if field in schema["fields"]:
        return schema["fields"][field]["wide"][arm - 1]
    return f"{field}{schema['suffixes'][arm - 1]}"


def strip_suffix(column: str, suffixes: Sequence[str]) -> Tuple[str, Optional[int]]:
    """
    Split a wide-format column into its base name and arm number.

    :returns: (base name, 1 or 2), or (column, None) if unsuffixed
    """
    for i, suffix in enumerate(suffixes):
        if suffix and column.endswith(suffix) and len(column) > len(suffix):
            return column[: -len(suffix)], i + 1
    return column, None


# =============================================================================
# NormalizedDataset TypedDict
# =============================================================================

class NormalizedDataset(TypedDict):
    """
    Container for a checked trial dataset.

    Keys:
        data: DataFrame (long: one row per arm; wide: one row per comparison)
        format: DataFormat.LONG or DataFormat.WIDE
        schema: ColumnSchema used to resolve column names
        diagnostics: Diagnostics of the stage that produced this dataset
        conversions: Type conversion outcomes from check_data_format
    """
    data: pd.DataFrame
    format: DataFormat
    schema: ColumnSchema
    diagnostics: List[Diagnostic]
    conversions: List[ConversionOutcome]


def create_normalized_dataset(
    data: pd.DataFrame,
    data_format: DataFormat,
    schema: Optional[ColumnSchema] = None,
    diagnostics: Optional[List[Diagnostic]] = None,
    conversions: Optional[List[ConversionOutcome]] = None,
) -> NormalizedDataset:
    """
    Create a NormalizedDataset dictionary.

    :param data: DataFrame
    :param data_format: Layout of the data
    :param schema: ColumnSchema (None = default suffixes)
    :param diagnostics: Diagnostics of the producing stage
    :param conversions: Type conversion outcomes
    :returns: NormalizedDataset dictionary
    """
    return {
        "data": data,
        "format": data_format,
        "schema": schema if schema is not None else create_column_schema(),
        "diagnostics": diagnostics if diagnostics is not None else [],
        "conversions": conversions if conversions is not None else [],
    }


def as_dataset(obj: Any, stage: str = "this function") -> NormalizedDataset:
    """
    Validate that obj is a NormalizedDataset.

    :raises TypeError: If obj is a DataFrame or any other object
    """
    if isinstance(obj, pd.DataFrame):
        raise TypeError(
            f"{stage} expects a dataset returned by check_data_format(), "
            f"got a DataFrame. Run check_data_format() first."
        )
    if not isinstance(obj, dict) or not {"data", "format", "schema"} <= set(obj):
        raise TypeError(
            f"{stage} expects a dataset returned by check_data_format(), "
            f"got {type(obj).__name__}."
        )
    return obj  # type: ignore[return-value]


def replace_data(
    ds: NormalizedDataset,
    data: pd.DataFrame,
    data_format: Optional[DataFormat] = None,
    diagnostics: Optional[List[Diagnostic]] = None,
) -> NormalizedDataset:
    """Return a new dataset with the same schema and new data."""
    return create_normalized_dataset(
        data=data,
        data_format=data_format if data_format is not None else ds["format"],
        schema=ds["schema"],
        diagnostics=diagnostics,
        conversions=list(ds.get("conversions", [])),
    )


def get_n_studies(ds: NormalizedDataset, study_var: str = "study") -> int:
    """Get number of unique studies in dataset."""
    return ds["data"][study_var].nunique()


def get_n_rows(ds: NormalizedDataset) -> int:
    """Get number of rows (arms or comparisons) in dataset."""
    return len(ds["data"])


def get_rows_per_study(ds: NormalizedDataset, study_var: str = "study") -> pd.Series:
    """Get number of rows per study."""
    return ds["data"].groupby(study_var, sort=False).size()


# =============================================================================
# Type checks and conversion
# =============================================================================

_BOOL_STRINGS = {
    "true": True, "false": False,
    "yes": True, "no": False,
    "1": True, "0": False,
}


def _has_type(series: pd.Series, dtype: str) -> bool:
    """Check whether a column already has the required type."""
    if dtype == "str":
        if not (pd.api.types.is_object_dtype(series) or pd.api.types.is_string_dtype(series)):
            return False
        return bool(series.dropna().map(lambda v: isinstance(v, str)).all())
    if dtype == "numeric":
        return pd.api.types.is_numeric_dtype(series) and not pd.api.types.is_bool_dtype(series)
    if dtype == "int":
        return pd.api.types.is_integer_dtype(series) and not pd.api.types.is_bool_dtype(series)
    if dtype == "bool":
        return pd.api.types.is_bool_dtype(series)
    if dtype == "category":
        return isinstance(series.dtype, pd.CategoricalDtype)
    raise ValueError(f"Unknown type '{dtype}'")


def _convert(series: pd.Series, dtype: str) -> pd.Series:
    """
    Convert a column to the required type.

    :raises ValueError: If values cannot be represented in the target type
    """
    if dtype == "str":
        return series.astype(str).where(series.notna(), np.nan).astype(object)

    if dtype == "numeric":
        return pd.to_numeric(series, errors="raise")

    if dtype == "int":
        numeric = pd.to_numeric(series, errors="raise")
        values = numeric.dropna()
        if (values % 1 != 0).any():
            raise ValueError("column contains non-integer values")
        return numeric.astype("Int64")

    if dtype == "bool":
        if pd.api.types.is_numeric_dtype(series):
            values = series.dropna()
            if not values.isin([0, 1]).all():
                raise ValueError("numeric values other than 0/1 cannot be read as bool")
            mapped = (series == 1).astype(object).where(series.notna(), np.nan)
        else:
            lowered = series.map(lambda v: str(v).strip().lower() if pd.notna(v) else v)
            unknown = set(lowered.dropna()) - set(_BOOL_STRINGS)
            if unknown:
                raise ValueError(f"values {sorted(unknown)} cannot be read as bool")
            mapped = lowered.map(_BOOL_STRINGS)
        if mapped.isna().any():
            return mapped.astype("boolean")
        return mapped.astype(bool)

    if dtype == "category":
        return series.astype("category")

    raise ValueError(f"Unknown type '{dtype}'")


def convert_column(
    data: pd.DataFrame,
    column: str,
    dtype: str,
) -> ConversionOutcome:
    """
    Convert a column in place if it does not have the required type.

    Conversion failures are reported, never raised.

    :param data: DataFrame (modified in place on successful conversion)
    :param column: Column name
    :param dtype: Required type name
    :returns: ConversionOutcome dictionary
    """
    if _has_type(data[column], dtype):
        return {"column": column, "target": dtype,
                "status": ConversionStatus.ALREADY_OK, "reason": ""}
    try:
        data[column] = _convert(data[column], dtype)
    except (ValueError, TypeError) as e:
        return {"column": column, "target": dtype,
                "status": ConversionStatus.KEPT_ORIGINAL, "reason": str(e)}
    return {"column": column, "target": dtype,
            "status": ConversionStatus.CONVERTED, "reason": ""}


# =============================================================================
# Format Normalizer
# =============================================================================

def check_data_format(
    data: Union[pd.DataFrame, NormalizedDataset],
    data_format: Union[str, DataFormat],
    must_contain: Optional[Sequence[str]] = None,
    variable_contains: Optional[Dict[str, Sequence[Any]]] = None,
    variable_class: Optional[Dict[str, str]] = None,
    suffixes: Sequence[str] = DEFAULT_SUFFIXES,
) -> NormalizedDataset:
    """
    Check the format of a trial dataset and tag it as long or wide.

    Checks whether the data contains all required variables, whether
    restricted variables only contain allowed values, and whether variables
    have the required type (converting them if not). Problems are reported
    as diagnostics and warnings; they never stop the pipeline.

    In wide format, give variable names *without* the arm suffix (e.g.,
    "cond_spec" for "cond_spec_trt1" and "cond_spec_trt2"); value and type
    checks then apply to both suffixed columns.

    :param data: DataFrame, or a dataset previously returned by this function
    :param data_format: "long" (one row per arm) or "wide" (one row per comparison)
    :param must_contain: Variables the dataset should contain (None = registry defaults)
    :param variable_contains: Variable -> allowed values (None = registry defaults)
    :param variable_class: Variable -> required type name (None = registry defaults)
    :param suffixes: Suffix pair distinguishing the two arms in wide format
    :returns: NormalizedDataset dictionary
    :raises ValueError: If data_format is not recognized
    :raises TypeError: If data is not a DataFrame or dataset

    Example:
        >>> ds = check_data_format(df, "long")
        >>> [d["message"] for d in ds["diagnostics"] if not d["ok"]]
    """
    fmt = parse_data_format(data_format)

    if isinstance(data, pd.DataFrame):
        df = data.copy()
    elif isinstance(data, dict) and "data" in data and isinstance(data["data"], pd.DataFrame):
        df = data["data"].copy()
    else:
        raise TypeError(
            f"data must be a pandas DataFrame, got {type(data).__name__}"
        )

    must_contain = list(must_contain) if must_contain is not None else default_must_contain()
    if variable_contains is None:
        variable_contains = default_variable_contains()
    if variable_class is None:
        variable_class = default_variable_class()

    schema = create_column_schema(suffixes)
    diagnostics: List[Diagnostic] = []
    conversions: List[ConversionOutcome] = []

    # 0. Column names without arm suffixes
    if fmt == DataFormat.WIDE:
        col_names = list(dict.fromkeys(strip_suffix(c, suffixes)[0] for c in df.columns))
    else:
        col_names = list(df.columns)

    # 1. Required variables
    if must_contain:
        missing = [v for v in must_contain if v not in col_names]
        if missing:
            diagnostics.append(create_diagnostic(
                "must_contain",
                f"data set does not contain variable(s) {', '.join(missing)}.",
                ok=False,
            ))
        else:
            diagnostics.append(create_diagnostic(
                "must_contain",
                "data set contains all variables in 'must_contain'.",
            ))

    # 2. Allowed values
    if variable_contains:
        offending = []
        for var, allowed in variable_contains.items():
            columns = _variants(var, df.columns, fmt, suffixes)
            if not columns:
                continue
            values = pd.unique(pd.concat([df[c] for c in columns], ignore_index=True).dropna())
            allowed_set = set(allowed)
            if any(v not in allowed_set for v in values):
                offending.append(var)
        if offending:
            diagnostics.append(create_diagnostic(
                "variable_contains",
                f"{', '.join(offending)} not (only) contains the values "
                f"specified in 'variable_contains'.",
                ok=False,
            ))
        else:
            diagnostics.append(create_diagnostic(
                "variable_contains",
                "variables contain only the values specified in 'variable_contains'.",
            ))

    # 3. Types (best-effort conversion)
    for var, dtype in variable_class.items():
        for column in _variants(var, df.columns, fmt, suffixes):
            outcome = convert_column(df, column, dtype)
            conversions.append(outcome)
            if outcome["status"] == ConversionStatus.ALREADY_OK:
                diagnostics.append(create_diagnostic(
                    "variable_class", f"'{column}' has desired class {dtype}.",
                    column=column,
                ))
            elif outcome["status"] == ConversionStatus.CONVERTED:
                diagnostics.append(create_diagnostic(
                    "variable_class", f"'{column}' has been converted to class {dtype}.",
                    column=column,
                ))
            else:
                diagnostics.append(create_diagnostic(
                    "variable_class",
                    f"'{column}' could not be converted to class {dtype} "
                    f"({outcome['reason']}); original values kept.",
                    ok=False,
                    column=column,
                ))

    return create_normalized_dataset(
        data=df,
        data_format=fmt,
        schema=schema,
        diagnostics=diagnostics,
        conversions=conversions,
    )


def _variants(
    var: str,
    columns: pd.Index,
    fmt: DataFormat,
    suffixes: Sequence[str],
) -> List[str]:
    """Columns holding a variable: the bare name plus suffixed variants in wide format."""
    candidates = [var]
    if fmt == DataFormat.WIDE:
        candidates += [f"{var}{s}" for s in suffixes]
    return [c for c in candidates if c in columns]


# =============================================================================
# Arm records
# =============================================================================

def _key_value(value: Any) -> str:
    """Hashable, NaN-safe representation of a key value."""
    if value is None or (isinstance(value, float) and np.isnan(value)):
        return ""
    try:
        if pd.isna(value):
            return ""
    except (TypeError, ValueError):
        pass
    return str(value)


def _present_keys(columns: Sequence[str], keys: Sequence[str]) -> List[str]:
    return [k for k in keys if k in columns]


def collect_arms(
    ds: NormalizedDataset,
    trial_keys: Sequence[str] = DEFAULT_TRIAL_KEYS,
) -> pd.DataFrame:
    """
    Collect one record per arm occurrence.

    Long rows are arm records already; wide rows contribute one record per
    arm, with the arm columns renamed to their unsuffixed names.

    Added columns:
    - _group: trial group key (tuple of the trial_keys values)
    - _arm: arm identity key (condition, cond_spec, multiple_arms)
    - _row: position of the source row
    - _side: 1 or 2 for wide input, 0 for long input

    :param ds: NormalizedDataset dictionary
    :param trial_keys: Columns identifying arms that may be compared
    :returns: DataFrame of arm records in input order
    """
    data = ds["data"].reset_index(drop=True)
    if "study" not in data.columns and (not trial_keys or trial_keys[0] not in data.columns):
        raise ValueError("Dataset has no study column; cannot identify trials")

    if ds["format"] == DataFormat.LONG:
        records = data.copy()
        records["_row"] = np.arange(len(data))
        records["_side"] = 0
    elif ds["format"] == DataFormat.WIDE:
        suffixes = ds["schema"]["suffixes"]
        shared = [c for c in data.columns if strip_suffix(c, suffixes)[1] is None]
        parts = []
        for side in (1, 2):
            arm_cols = {
                c: strip_suffix(c, suffixes)[0]
                for c in data.columns
                if strip_suffix(c, suffixes)[1] == side
            }
            part = data[shared + list(arm_cols)].rename(columns=arm_cols)
            part["_row"] = np.arange(len(data))
            part["_side"] = side
            parts.append(part)
        records = pd.concat(parts, ignore_index=True)
        records = records.sort_values(["_row", "_side"], kind="stable").reset_index(drop=True)
    else:
        raise ValueError(f"Unsupported data format {ds['format']}")

    keys = _present_keys(list(records.columns), trial_keys)
    arm_keys = _present_keys(list(records.columns), ARM_KEY_FIELDS)
    records["_group"] = [
        tuple(_key_value(v) for v in row) for row in records[keys].itertuples(index=False)
    ]
    records["_arm"] = [
        tuple(_key_value(v) for v in row) for row in records[arm_keys].itertuples(index=False)
    ]
    return records


# =============================================================================
# Conflict checks
# =============================================================================

def check_conflicts(
    ds: NormalizedDataset,
    trial_keys: Sequence[str] = DEFAULT_TRIAL_KEYS,
) -> pd.DataFrame:
    """
    Check multi-arm trials for ambiguous or inconsistent arm information.

    Flags:
    - the same arm listed twice in a trial group (long format)
    - an arm whose outcome data differs between comparisons (wide format)
    - more observed arms than the trial's "no_arms" value

    :param ds: NormalizedDataset dictionary
    :param trial_keys: Columns identifying arms that may be compared
    :returns: DataFrame with columns study, group, reason (empty if no conflicts)
    """
    ds = as_dataset(ds, "check_conflicts")
    records = collect_arms(ds, trial_keys)
    study_col = trial_keys[0] if trial_keys and trial_keys[0] in records.columns else "study"
    arm_data_fields = [
        f for f in FIELD_REGISTRY
        if FIELD_REGISTRY[f]["role"] == FieldRole.ARM
        and f not in ARM_KEY_FIELDS
        and f in records.columns
    ]

    rows = []
    for group, group_df in records.groupby("_group", sort=False):
        study = group_df[study_col].iloc[0]
        label = " / ".join(v for v in group if v)

        if ds["format"] == DataFormat.LONG:
            dup = group_df["_arm"][group_df["_arm"].duplicated()]
            for arm in dict.fromkeys(dup):
                rows.append({
                    "study": study, "group": label,
                    "reason": f"arm {_arm_label(arm)} appears more than once",
                })
        else:
            for arm, arm_df in group_df.groupby("_arm", sort=False):
                if len(arm_df) < 2:
                    continue
                inconsistent = [
                    f for f in arm_data_fields
                    if arm_df[f].map(_key_value).nunique() > 1
                ]
                if inconsistent:
                    rows.append({
                        "study": study, "group": label,
                        "reason": f"arm {_arm_label(arm)} has inconsistent "
                                  f"{', '.join(inconsistent)} across comparisons",
                    })

        n_arms = group_df["_arm"].nunique()
        if "no_arms" in group_df.columns:
            declared = pd.to_numeric(group_df["no_arms"], errors="coerce").dropna()
            if not declared.empty and n_arms > declared.max():
                rows.append({
                    "study": study, "group": label,
                    "reason": f"{n_arms} arms observed but no_arms is {int(declared.max())}",
                })

    conflicts = pd.DataFrame(rows, columns=["study", "group", "reason"])
    for _, row in conflicts.iterrows():
        warnings.warn(f"Conflict in study '{row['study']}' ({row['group']}): {row['reason']}")
    return conflicts


def _arm_label(arm: Tuple[str, ...]) -> str:
    return "'" + "/".join(v for v in arm if v) + "'"


# =============================================================================
# Pooling filters
# =============================================================================

Condition = Union[str, Callable[[pd.DataFrame], pd.Series], pd.Series]


def detect(column: str, pattern: str) -> Callable[[pd.DataFrame], pd.Series]:
    """
    Build a case-insensitive regex condition for filter_pooling_data.

    :param column: Column to search
    :param pattern: Regular expression
    :returns: Callable(DataFrame) -> boolean Series

    Example:
        >>> filter_pooling_data(ds, detect("cond_spec_trt2", "wl|waitlist"))
    """
    regex = re.compile(pattern, re.IGNORECASE)

    def _condition(df: pd.DataFrame) -> pd.Series:
        if column not in df.columns:
            raise ValueError(f"Column '{column}' not found in data")
        return df[column].map(lambda v: isinstance(v, str) and regex.search(v) is not None)

    return _condition


def condition_mask(df: pd.DataFrame, condition: Condition) -> pd.Series:
    """Evaluate a filter condition to a boolean mask aligned with df."""
    if isinstance(condition, str):
        mask = df.eval(condition, engine="python")
    elif callable(condition):
        mask = condition(df)
    elif isinstance(condition, pd.Series):
        mask = condition.reindex(df.index)
    else:
        raise TypeError(f"Unsupported filter condition of type {type(condition).__name__}")

    if not isinstance(mask, pd.Series):
        mask = pd.Series(mask, index=df.index)
    return mask.fillna(False).astype(bool)


def filter_pooling_data(
    ds: NormalizedDataset,
    *conditions: Condition,
) -> NormalizedDataset:
    """
    Keep the rows satisfying all conditions.

    Conditions can be pandas query strings (e.g., "primary == 1"),
    callables returning a boolean mask (see detect()), or boolean Series.

    :param ds: NormalizedDataset dictionary
    :param conditions: Filter conditions, combined with AND
    :returns: New NormalizedDataset with the filtered rows
    """
    ds = as_dataset(ds, "filter_pooling_data")
    df = ds["data"]
    mask = pd.Series(True, index=df.index)
    for condition in conditions:
        mask &= condition_mask(df, condition)

    filtered = df[mask].copy()
    diagnostics = [create_diagnostic(
        "filter_pooling_data",
        f"{len(filtered)} of {len(df)} rows retained.",
    )]
    if filtered.empty:
        warnings.warn("No rows satisfy the filter conditions")
    return replace_data(ds, filtered, diagnostics=diagnostics)


# =============================================================================
# Priority rule
# =============================================================================

PriorityRule = Union[Tuple[str, Sequence[Any]], Callable[[pd.DataFrame], pd.Series]]


def _rule_ranks(rule: PriorityRule, candidates: pd.DataFrame) -> pd.Series:
    """Rank candidates under a rule; lower is better, inf means not matched."""
    if callable(rule):
        result = rule(candidates)
        if not isinstance(result, pd.Series):
            result = pd.Series(result, index=candidates.index)
        if pd.api.types.is_bool_dtype(result):
            return pd.Series(np.where(result, 0.0, np.inf), index=candidates.index)
        return result.astype(float).fillna(np.inf)

    column, preferred = rule
    if column not in candidates.columns:
        raise ValueError(f"Priority rule column '{column}' not found in data")
    positions = {value: i for i, value in enumerate(preferred)}
    ranks = candidates[column].map(lambda v: positions.get(v, np.inf))
    return ranks.astype(float)


def filter_priority_rule(
    ds: NormalizedDataset,
    rules: Sequence[PriorityRule],
    study_var: str = "study",
) -> NormalizedDataset:
    """
    Keep one comparison per study, selected by an ordered list of rules.

    Each rule is either (column, [preferred values in order]) or a callable
    returning a boolean mask or a numeric rank (lower is better) for the
    candidate rows of one study. Rules are applied in order; a rule keeps
    the best-ranked candidates when at least one candidate matches it, and
    is skipped otherwise. Once a single candidate remains it is selected.
    Candidates still tied after the last rule are resolved by input order
    (first occurrence kept).

    :param ds: NormalizedDataset dictionary
    :param rules: Ordered priority rules
    :param study_var: Column identifying studies
    :returns: New NormalizedDataset with at most one row per study

    Example:
        >>> filter_priority_rule(ds, [
        ...     ("cond_spec_trt1", ["drug-high", "drug-low"]),
        ...     ("outc_measure", ["hamd", "bdi"]),
        ... ])
    """
    ds = as_dataset(ds, "filter_priority_rule")
    df = ds["data"]
    if study_var not in df.columns:
        raise ValueError(f"Study variable '{study_var}' not found in data")

    # Positional labels so duplicated index labels select a single row
    work = df.reset_index(drop=True)
    keep = []
    n_ties = 0
    for _, candidates in work.groupby(study_var, sort=False, dropna=False):
        for rule in rules:
            if len(candidates) == 1:
                break
            ranks = _rule_ranks(rule, candidates)
            if np.isfinite(ranks).any():
                candidates = candidates[ranks == ranks.min()]
        if len(candidates) > 1:
            n_ties += 1
        keep.append(candidates.index[0])

    filtered = df.iloc[sorted(keep)].copy()
    diagnostics = [create_diagnostic(
        "filter_priority_rule",
        f"{len(filtered)} of {len(df)} rows retained "
        f"({n_ties} studies resolved by input order).",
    )]
    return replace_data(ds, filtered, diagnostics=diagnostics)


# =============================================================================
# Arm-level information
# =============================================================================

def add_trial_arm_info(
    ds: NormalizedDataset,
    arm_data: NormalizedDataset,
    variables: Sequence[str],
    study_var: str = "study",
) -> NormalizedDataset:
    """
    Add arm-level variables from a long dataset to a wide dataset.

    Each variable is added twice, once per arm (e.g., "dose_trt1" and
    "dose_trt2"), matched on study and arm identity.

    :param ds: Wide NormalizedDataset
    :param arm_data: Long NormalizedDataset holding the arm-level variables
    :param variables: Arm-level variables to add
    :param study_var: Column identifying studies
    :returns: New wide NormalizedDataset
    """
    ds = as_dataset(ds, "add_trial_arm_info")
    arm_data = as_dataset(arm_data, "add_trial_arm_info")
    if ds["format"] != DataFormat.WIDE:
        raise ValueError("add_trial_arm_info expects a wide dataset as 'ds'")
    if arm_data["format"] != DataFormat.LONG:
        raise ValueError("add_trial_arm_info expects a long dataset as 'arm_data'")

    long_df = arm_data["data"]
    missing = [v for v in variables if v not in long_df.columns]
    if missing:
        raise ValueError(f"Variables not found in arm data: {missing}")

    schema = ds["schema"]
    wide_df = ds["data"].copy()
    keys = [study_var] + [
        f for f in ARM_KEY_FIELDS
        if f in long_df.columns and arm_column(schema, f, 1) in wide_df.columns
    ]
    lookup = long_df[keys + list(variables)].drop_duplicates(subset=keys, keep="first")

    index = wide_df.index
    for arm in (1, 2):
        renamed = {f: arm_column(schema, f, arm) for f in keys if f != study_var}
        renamed.update({v: f"{v}{schema['suffixes'][arm - 1]}" for v in variables})
        side = lookup.rename(columns=renamed)
        wide_df = wide_df.merge(side, on=[study_var] + [renamed[f] for f in keys[1:]], how="left")
    wide_df.index = index

    n_unmatched = wide_df[[f"{v}{schema['suffixes'][0]}" for v in variables]].isna().all(axis=1).sum()
    diagnostics = [create_diagnostic(
        "add_trial_arm_info",
        f"added {len(variables)} arm-level variable(s); "
        f"{n_unmatched} comparison(s) without a matching first arm.",
        ok=n_unmatched == 0,
    )]
    return replace_data(ds, wide_df, diagnostics=diagnostics)
