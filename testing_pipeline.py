"""
Trialmeta Testing Script
========================

Demonstrates the full meta-analysis pipeline on a small trial dataset:
1. Format checks
2. Multi-arm expansion
3. Pooling filters & priority rule
4. Effect sizes
5. Pooling models
6. Subgroup analysis & meta-regression
7. Report generation

Run from the repository root:
    python testing_pipeline.py
"""
import warnings

import numpy as np
import pandas as pd

# Suppress some convergence warnings for cleaner output
warnings.filterwarnings("ignore", category=RuntimeWarning)

from trialmeta import (
    check_conflicts,
    check_data_format,
    expand_multiarm_trials,
    filter_pooling_data,
    filter_priority_rule,
    calculate_effect_sizes,
    run_meta_analysis,
    subgroup_analysis,
    meta_regression,
    metapsy_nnt,
    describe_dataset,
    print_missingness_summary,
    create_study_table,
    print_diagnostics,
    format_summary_table,
    summarize_meta_analysis,
    summarize_subgroup_result,
    summarize_meta_regression,
)

# =============================================================================
# SETUP: Arm-level trial data
# =============================================================================
print("=" * 70)
print("TRIALMETA PIPELINE DEMONSTRATION")
print("=" * 70)

rng = np.random.default_rng(42)


def make_arms(study, year, country, arms, n, control_mean=20.0):
    rows = []
    for condition, cond_spec, multiple_arms, shift in arms:
        rows.append({
            "study": study,
            "condition": condition,
            "cond_spec": cond_spec,
            "is_multiarm": 1 if len(arms) > 2 else 0,
            "no_arms": len(arms),
            "multiple_arms": multiple_arms,
            "outc_measure": "bdi",
            "time": "post",
            "time_weeks": 12,
            "primary": 1,
            "sr_clinician": "sr",
            "post_m": round(control_mean - shift + rng.normal(0, 0.5), 1),
            "post_sd": round(6 + rng.normal(0, 0.5), 1),
            "post_n": n,
            "year": year,
            "country": country,
            "rob": int(rng.integers(0, 2)),
        })
    return rows


arms = []
arms += make_arms("Smith, 2009", 2009, "uk", [("ig", "cbt", np.nan, 4), ("cg", "wl", np.nan, 0)], 40)
arms += make_arms("Lee, 2012", 2012, "us", [("ig", "cbt", "group", 3), ("ig", "cbt", "individual", 5),
                                            ("cg", "cau", np.nan, 0)], 35)
arms += make_arms("Costa, 2015", 2015, "pt", [("ig", "pst", np.nan, 2), ("cg", "wl", np.nan, 0)], 60)
arms += make_arms("Meyer, 2017", 2017, "de", [("ig", "cbt", np.nan, 6), ("cg", "wl", np.nan, 0)], 25)
arms += make_arms("Jones, 2019", 2019, "uk", [("ig", "bat", np.nan, 2.5), ("cg", "cau", np.nan, 0)], 80)
arms += make_arms("Silva, 2021", 2021, "pt", [("ig", "cbt", np.nan, 3.5), ("cg", "wl", np.nan, 0)], 50)
df = pd.DataFrame(arms)
print(f"\n[0] {len(df)} arms from {df['study'].nunique()} studies")

# =============================================================================
# STEP 1: Format checks
# =============================================================================
print("\n" + "=" * 70)
print("[1] FORMAT CHECKS")
print("=" * 70)

ds = check_data_format(df, "long")
print_diagnostics(ds)

conflicts = check_conflicts(ds)
print(f"\nConflicts: {len(conflicts)}")

print()
print_missingness_summary(ds)

# =============================================================================
# STEP 2: Multi-arm expansion
# =============================================================================
print("\n" + "=" * 70)
print("[2] MULTI-ARM EXPANSION")
print("=" * 70)

wide = expand_multiarm_trials(ds)
info = describe_dataset(wide)
print(f"Comparisons: {info['n_rows']} from {info['n_studies']} studies")
print(f"Studies with several comparisons: {info['n_studies_multiple_rows']}")

# =============================================================================
# STEP 3: Pooling filters
# =============================================================================
print("\n" + "=" * 70)
print("[3] POOLING FILTERS")
print("=" * 70)

pool = filter_pooling_data(wide, "primary == 1", "condition_trt2 != 'ig'")
print(f"After filters: {len(pool['data'])} comparisons")

one_per_study = filter_priority_rule(pool, [("multiple_arms_trt1", ["individual", "group"])])
print(f"After priority rule: {len(one_per_study['data'])} comparisons")

# =============================================================================
# STEP 4: Effect sizes
# =============================================================================
print("\n" + "=" * 70)
print("[4] EFFECT SIZES")
print("=" * 70)

es = calculate_effect_sizes(pool, lower_is_better=True)
print(create_study_table(es, variables=["country"]).to_string(index=False))

# =============================================================================
# STEP 5: Pooling models
# =============================================================================
print("\n" + "=" * 70)
print("[5] POOLING MODELS")
print("=" * 70)

res = run_meta_analysis(
    es,
    which_run=["overall", "combined", "lowest", "highest", "outliers", "influence", "rob", "threelevel"],
    low_rob_filter="rob == 1",
    nnt_cer=0.2,
)
print(format_summary_table(res["summary"], columns=["model", "k", "g", "g_ci", "i2", "nnt", "excluded"]))
print()
print(summarize_meta_analysis(res))

g = res["summary"].loc[0, "g"]
print(f"\nNNT for g = {g} at CER 0.2: {abs(metapsy_nnt(g, 0.2)):.1f}")

# =============================================================================
# STEP 6: Subgroups & meta-regression
# =============================================================================
print("\n" + "=" * 70)
print("[6] SUBGROUPS & META-REGRESSION")
print("=" * 70)

sg = subgroup_analysis(res, ["country", "cond_spec_trt1"])
print(summarize_subgroup_result(sg))

reg = meta_regression(res, "year")
print()
print(summarize_meta_regression(reg))

print("\n" + "=" * 70)
print("DONE")
print("=" * 70)
