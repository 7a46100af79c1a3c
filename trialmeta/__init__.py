"""
trialmeta - Meta-Analysis Pipeline for Clinical Trial Data
==========================================================

Prepares clinical trial datasets for meta-analysis and runs the analyses:
format checks, multi-arm expansion, effect sizes (Hedges' g), pooling
models, subgroup analyses and meta-regression.

Architecture Note:
    This package uses dictionaries (TypedDicts) instead of classes for data
    structures. All data containers are plain Python dicts with documented
    keys; every stage returns a new container.

Architecture:
- registry: Field registry (roles, types, allowed values) and defaults
- prepare: Format checks, conflicts, pooling filters, priority rule
- expand: Multi-arm trials to pairwise comparisons
- effects: Hedges' g from means, change scores, counts or given values
- nnt: Numbers needed to treat
- pooling: Fixed/random-effects pooling, tau^2 estimators, diagnostics
- multilevel: Three-level REML model
- analysis: Runs the set of pooling models
- subgroup: Subgroup analyses and meta-regression
- describe: Dataset descriptions and study tables
- report: Text and HTML summaries

Usage:
    from trialmeta import (
        check_data_format,
        expand_multiarm_trials,
        filter_pooling_data,
        filter_priority_rule,
        calculate_effect_sizes,
        run_meta_analysis,
        subgroup_analysis,
    )

    ds = check_data_format(df, "long")
    wide = expand_multiarm_trials(ds)
    wide = filter_pooling_data(wide, "primary == 1")
    es = calculate_effect_sizes(wide)
    res = run_meta_analysis(es, which_run=["overall", "combined"])
    print(res["summary"])
"""
from __future__ import annotations

__version__ = "0.1.0"

# Registry - Enums and TypedDicts
from .registry import (
    DataFormat,
    FieldRole,
    EffectSizeSchema,
    ConversionStatus,
    ModelKind,
    ModelFamily,
    FieldInfo,
    create_field_info,
    FIELD_REGISTRY,
    DEFAULT_SUFFIXES,
    DEFAULT_TRIAL_KEYS,
    DEFAULT_PRECEDENCE,
    get_field_info,
    register_field,
    list_fields,
    get_arm_fields,
    reset_registry,
    default_must_contain,
    default_variable_contains,
    default_variable_class,
    parse_data_format,
    parse_model_kind,
)

# Data preparation
from .prepare import (
    Diagnostic,
    ConversionOutcome,
    ColumnSchema,
    NormalizedDataset,
    create_column_schema,
    create_normalized_dataset,
    check_data_format,
    check_conflicts,
    collect_arms,
    filter_pooling_data,
    detect,
    filter_priority_rule,
    add_trial_arm_info,
    get_n_studies,
    get_n_rows,
    get_rows_per_study,
)

# Multi-arm expansion
from .expand import expand_multiarm_trials

# Effect sizes
from .effects import (
    calculate_effect_sizes,
    hedges_correction,
    smd_from_means,
    smd_from_binary,
    log_odds_ratio,
)

# NNT
from .nnt import metapsy_nnt, nnt_to_g

# Pooling
from .pooling import (
    PooledEstimate,
    pool_effects,
    estimate_tau2,
    aggregate_effects,
    find_outliers,
    influence_diagnostics,
    i2_confint,
    summarize_pooled_estimate,
)

# Three-level model
from .multilevel import (
    ThreeLevelResult,
    fit_three_level,
    wald_test,
    contrast_test,
    summarize_three_level_result,
)

# Analysis runner
from .analysis import (
    PoolingModel,
    MetaAnalysisResult,
    run_meta_analysis,
    get_model,
    model_estimates,
    DEFAULT_WHICH_RUN,
)

# Subgroups and meta-regression
from .subgroup import (
    SubgroupResult,
    MetaRegressionResult,
    subgroup_analysis,
    meta_regression,
    summarize_meta_regression,
)

# Descriptives
from .describe import (
    describe_dataset,
    summarize_effect_sizes,
    missingness_report,
    print_missingness_summary,
    create_study_table,
)

# Reporting
from .report import (
    format_diagnostics,
    print_diagnostics,
    format_summary_table,
    summary_to_html,
    summarize_meta_analysis,
    summarize_subgroup_result,
)

__all__ = [
    # Version
    "__version__",
    # Registry
    "DataFormat",
    "FieldRole",
    "EffectSizeSchema",
    "ConversionStatus",
    "ModelKind",
    "ModelFamily",
    "FieldInfo",
    "create_field_info",
    "FIELD_REGISTRY",
    "DEFAULT_SUFFIXES",
    "DEFAULT_TRIAL_KEYS",
    "DEFAULT_PRECEDENCE",
    "get_field_info",
    "register_field",
    "list_fields",
    "get_arm_fields",
    "reset_registry",
    "default_must_contain",
    "default_variable_contains",
    "default_variable_class",
    "parse_data_format",
    "parse_model_kind",
    # Data preparation
    "Diagnostic",
    "ConversionOutcome",
    "ColumnSchema",
    "NormalizedDataset",
    "create_column_schema",
    "create_normalized_dataset",
    "check_data_format",
    "check_conflicts",
    "collect_arms",
    "filter_pooling_data",
    "detect",
    "filter_priority_rule",
    "add_trial_arm_info",
    "get_n_studies",
    "get_n_rows",
    "get_rows_per_study",
    # Expansion
    "expand_multiarm_trials",
    # Effect sizes
    "calculate_effect_sizes",
    "hedges_correction",
    "smd_from_means",
    "smd_from_binary",
    "log_odds_ratio",
    # NNT
    "metapsy_nnt",
    "nnt_to_g",
    # Pooling
    "PooledEstimate",
    "pool_effects",
    "estimate_tau2",
    "aggregate_effects",
    "find_outliers",
    "influence_diagnostics",
    "i2_confint",
    "summarize_pooled_estimate",
    # Three-level model
    "ThreeLevelResult",
    "fit_three_level",
    "wald_test",
    "contrast_test",
    "summarize_three_level_result",
    # Analysis
    "PoolingModel",
    "MetaAnalysisResult",
    "run_meta_analysis",
    "get_model",
    "model_estimates",
    "DEFAULT_WHICH_RUN",
    # Subgroups
    "SubgroupResult",
    "MetaRegressionResult",
    "subgroup_analysis",
    "meta_regression",
    "summarize_meta_regression",
    # Descriptives
    "describe_dataset",
    "summarize_effect_sizes",
    "missingness_report",
    "print_missingness_summary",
    "create_study_table",
    # Reporting
    "format_diagnostics",
    "print_diagnostics",
    "format_summary_table",
    "summary_to_html",
    "summarize_meta_analysis",
    "summarize_subgroup_result",
]
