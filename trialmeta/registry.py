"""
Field Registry
==============

Maps the logical fields of a trial dataset to their role (trial,
comparison or arm level), their required type, and a description. This is
the single place where default column names live, so the normalizer, the
multi-arm expander and the effect-size calculator all resolve names the
same way.

Roles:
- trial: constant within a study (e.g., "study", "no_arms")
- comparison: describes a comparison row (e.g., "outc_measure", "time")
- arm: differs between the arms of a trial; suffixed in wide format
  (e.g., "post_m_trt1", "post_m_trt2")

Architecture Note:
    This module uses dictionaries instead of classes for data structures.
    Enums are used for type constants only.

Usage:
    from trialmeta.registry import get_field_info, FieldRole

    info = get_field_info("post_m")
    if info["role"] == FieldRole.ARM:
        ...
"""
from __future__ import annotations

from enum import Enum, auto
from typing import Any, Dict, List, Optional, Tuple, TypedDict
import warnings


# =============================================================================
# Enums (Type constants)
# =============================================================================

class DataFormat(Enum):
    """Layout of a trial dataset."""
    LONG = "long"            # One row per trial arm
    WIDE = "wide"            # One row per comparison, arm columns suffixed


class FieldRole(Enum):
    """Level at which a field varies."""
    TRIAL = auto()           # Constant within a study
    COMPARISON = auto()      # Describes the comparison (outcome, timepoint)
    ARM = auto()             # Differs between arms; suffixed in wide format


class EffectSizeSchema(Enum):
    """Outcome-data schema used to derive an effect size."""
    PRECOMPUTED = auto()     # Effect size supplied with its SE or variance
    POST_MEANS = auto()      # Post-test means, SDs and Ns per arm
    CHANGE = auto()          # Change-score means, SDs and Ns per arm
    BINARY = auto()          # Responder counts and randomized Ns per arm


class ConversionStatus(Enum):
    """Outcome of a best-effort type conversion."""
    ALREADY_OK = auto()      # Column already had the required type
    CONVERTED = auto()       # Column was converted
    KEPT_ORIGINAL = auto()   # Conversion failed; original column kept


class ModelKind(Enum):
    """Pooling models run by run_meta_analysis."""
    OVERALL = "overall"          # All comparisons, treated as independent
    COMBINED = "combined"        # One aggregated effect per study
    LOWEST = "lowest"            # Lowest effect per study
    HIGHEST = "highest"          # Highest effect per study
    OUTLIERS = "outliers"        # Outlying comparisons removed
    INFLUENCE = "influence"      # Influential comparisons removed
    ROB = "rob"                  # Low risk-of-bias subset
    THREELEVEL = "threelevel"    # Comparisons nested in studies


class ModelFamily(Enum):
    """Estimation machinery behind a pooling model."""
    UNIVARIATE = auto()      # Fixed/random-effects pooling of independent effects
    MULTILEVEL = auto()      # Three-level model with study-level clustering


# Type names accepted by the type map of check_data_format
TYPE_NAMES: Tuple[str, ...] = ("str", "numeric", "int", "bool", "category")


# =============================================================================
# FieldInfo TypedDict
# =============================================================================

class FieldInfo(TypedDict):
    """
    Metadata for a single logical field.

    Keys:
        name: Logical field name (long-format column name)
        role: Level at which the field varies
        dtype: Required type name (one of TYPE_NAMES)
        description: Human-readable description
        allowed_values: Allowed values (None = unrestricted)
        required: Whether the field belongs to the default must-contain set
    """
    name: str
    role: FieldRole
    dtype: str
    description: str
    allowed_values: Optional[Tuple[Any, ...]]
    required: bool


def create_field_info(
    name: str,
    role: FieldRole = FieldRole.COMPARISON,
    dtype: str = "str",
    description: str = "",
    allowed_values: Optional[Tuple[Any, ...]] = None,
    required: bool = False,
) -> FieldInfo:
    """
    Create a FieldInfo dictionary.

    :param name: Logical field name (long-format column name)
    :param role: Level at which the field varies
    :param dtype: Required type name (one of TYPE_NAMES)
    :param description: Human-readable description
    :param allowed_values: Allowed values (None = unrestricted)
    :param required: Whether the field belongs to the default must-contain set
    :returns: FieldInfo dictionary
    """
    if dtype not in TYPE_NAMES:
        raise ValueError(f"Unknown type '{dtype}'. Expected one of {TYPE_NAMES}")
    return {
        "name": name,
        "role": role,
        "dtype": dtype,
        "description": description,
        "allowed_values": allowed_values,
        "required": required,
    }


# =============================================================================
# DEFAULT FIELD REGISTRY
# =============================================================================

_DEFAULT_FIELDS: Dict[str, FieldInfo] = {
    # --- Trial identification ---
    "study": create_field_info(
        name="study",
        role=FieldRole.TRIAL,
        dtype="str",
        description="Study label",
        required=True,
    ),
    "is_multiarm": create_field_info(
        name="is_multiarm",
        role=FieldRole.TRIAL,
        dtype="numeric",
        description="Whether the trial has more than two arms",
        allowed_values=(0, 1),
        required=True,
    ),
    "no_arms": create_field_info(
        name="no_arms",
        role=FieldRole.TRIAL,
        dtype="numeric",
        description="Number of arms in the trial",
        required=True,
    ),

    # --- Arm description ---
    "condition": create_field_info(
        name="condition",
        role=FieldRole.ARM,
        dtype="str",
        description="Arm type: intervention (ig) or control (cg)",
        allowed_values=("ig", "cg"),
        required=True,
    ),
    "cond_spec": create_field_info(
        name="cond_spec",
        role=FieldRole.ARM,
        dtype="str",
        description="Specification of the arm's condition",
        required=True,
    ),
    "multiple_arms": create_field_info(
        name="multiple_arms",
        role=FieldRole.ARM,
        dtype="str",
        description="Label distinguishing arms of the same condition",
        required=True,
    ),

    # --- Outcome measurement ---
    "outc_measure": create_field_info(
        name="outc_measure",
        role=FieldRole.COMPARISON,
        dtype="str",
        description="Outcome instrument",
        required=True,
    ),
    "time": create_field_info(
        name="time",
        role=FieldRole.COMPARISON,
        dtype="str",
        description="Assessment point (e.g., post, follow-up)",
        required=True,
    ),
    "time_weeks": create_field_info(
        name="time_weeks",
        role=FieldRole.COMPARISON,
        dtype="str",
        description="Assessment point in weeks since randomization",
        required=True,
    ),
    "primary": create_field_info(
        name="primary",
        role=FieldRole.COMPARISON,
        dtype="numeric",
        description="Primary outcome flag (0/1)",
        required=True,
    ),
    "sr_clinician": create_field_info(
        name="sr_clinician",
        role=FieldRole.COMPARISON,
        dtype="str",
        description="Self-report or clinician-rated outcome",
        required=True,
    ),

    # --- Continuous outcome data ---
    "post_m": create_field_info(
        name="post_m", role=FieldRole.ARM, dtype="numeric",
        description="Post-test mean",
    ),
    "post_sd": create_field_info(
        name="post_sd", role=FieldRole.ARM, dtype="numeric",
        description="Post-test standard deviation",
    ),
    "post_n": create_field_info(
        name="post_n", role=FieldRole.ARM, dtype="numeric",
        description="Post-test sample size",
    ),
    "change_m": create_field_info(
        name="change_m", role=FieldRole.ARM, dtype="numeric",
        description="Mean pre-post change",
    ),
    "change_sd": create_field_info(
        name="change_sd", role=FieldRole.ARM, dtype="numeric",
        description="Standard deviation of the pre-post change",
    ),
    "change_n": create_field_info(
        name="change_n", role=FieldRole.ARM, dtype="numeric",
        description="Sample size of the change scores",
    ),

    # --- Dichotomous outcome data ---
    "rand_n": create_field_info(
        name="rand_n", role=FieldRole.ARM, dtype="numeric",
        description="Number randomized",
    ),
    "improved_n": create_field_info(
        name="improved_n", role=FieldRole.ARM, dtype="numeric",
        description="Number of responders",
    ),

    # --- Pre-computed effect sizes ---
    "precalc_es": create_field_info(
        name="precalc_es", role=FieldRole.COMPARISON, dtype="numeric",
        description="Pre-computed Hedges' g",
    ),
    "precalc_se": create_field_info(
        name="precalc_se", role=FieldRole.COMPARISON, dtype="numeric",
        description="Standard error of the pre-computed effect size",
    ),
    "precalc_var": create_field_info(
        name="precalc_var", role=FieldRole.COMPARISON, dtype="numeric",
        description="Variance of the pre-computed effect size",
    ),
}


# Global mutable registry (populated from defaults)
FIELD_REGISTRY: Dict[str, FieldInfo] = dict(_DEFAULT_FIELDS)


# =============================================================================
# Default check configuration
# =============================================================================

DEFAULT_SUFFIXES: Tuple[str, str] = ("_trt1", "_trt2")

# Keys identifying the arms that may be compared with each other
DEFAULT_TRIAL_KEYS: Tuple[str, ...] = ("study", "outc_measure", "time")

# Fields identifying an arm within a trial
ARM_KEY_FIELDS: Tuple[str, ...] = ("condition", "cond_spec", "multiple_arms")

DEFAULT_PRECEDENCE: Tuple[EffectSizeSchema, ...] = (
    EffectSizeSchema.PRECOMPUTED,
    EffectSizeSchema.POST_MEANS,
    EffectSizeSchema.CHANGE,
    EffectSizeSchema.BINARY,
)

# Fields required per arm (or per row for PRECOMPUTED) by each schema
SCHEMA_FIELDS: Dict[EffectSizeSchema, Tuple[str, ...]] = {
    EffectSizeSchema.PRECOMPUTED: ("precalc_es",),
    EffectSizeSchema.POST_MEANS: ("post_m", "post_sd", "post_n"),
    EffectSizeSchema.CHANGE: ("change_m", "change_sd", "change_n"),
    EffectSizeSchema.BINARY: ("improved_n", "rand_n"),
}


def default_must_contain() -> List[str]:
    """Fields every dataset is expected to contain."""
    return [name for name, info in FIELD_REGISTRY.items() if info["required"]]


def default_variable_contains() -> Dict[str, Tuple[Any, ...]]:
    """Fields restricted to a set of allowed values."""
    return {
        name: info["allowed_values"]
        for name, info in FIELD_REGISTRY.items()
        if info["allowed_values"] is not None
    }


def default_variable_class() -> Dict[str, str]:
    """Required type of every registered field."""
    return {name: info["dtype"] for name, info in FIELD_REGISTRY.items()}


# =============================================================================
# Registry API
# =============================================================================

def get_field_info(name: str) -> FieldInfo:
    """
    Get field metadata from registry.

    Unregistered fields are treated as comparison-level strings, with a warning.

    :param name: Logical field name
    :returns: FieldInfo dict
    """
    if name in FIELD_REGISTRY:
        return FIELD_REGISTRY[name]

    warnings.warn(
        f"Field '{name}' not in registry. Treating it as a comparison-level field. "
        f"Consider registering it with register_field().",
        UserWarning,
    )
    return create_field_info(name=name, description=f"Unregistered field: {name}")


def register_field(
    name: str,
    role: FieldRole = FieldRole.COMPARISON,
    dtype: str = "str",
    description: str = "",
    allowed_values: Optional[Tuple[Any, ...]] = None,
    required: bool = False,
    overwrite: bool = False,
) -> FieldInfo:
    """
    Register a new field in the registry.

    :param name: Logical field name
    :param role: Level at which the field varies
    :param dtype: Required type name
    :param description: Human-readable description
    :param allowed_values: Allowed values (None = unrestricted)
    :param required: Whether the field belongs to the default must-contain set
    :param overwrite: Allow overwriting an existing entry
    :returns: The registered FieldInfo dict
    """
    if name in FIELD_REGISTRY and not overwrite:
        raise ValueError(
            f"Field '{name}' already registered. Use overwrite=True to replace."
        )

    info = create_field_info(
        name=name,
        role=role,
        dtype=dtype,
        description=description,
        allowed_values=allowed_values,
        required=required,
    )
    FIELD_REGISTRY[name] = info
    return info


def list_fields(
    role: Optional[FieldRole] = None,
    dtype: Optional[str] = None,
    required_only: bool = False,
) -> List[str]:
    """
    List registered fields, optionally filtered.

    :param role: Filter by role
    :param dtype: Filter by required type
    :param required_only: Only return must-contain fields
    :returns: List of field names in registration order
    """
    results = []
    for name, info in FIELD_REGISTRY.items():
        if role is not None and info["role"] != role:
            continue
        if dtype is not None and info["dtype"] != dtype:
            continue
        if required_only and not info["required"]:
            continue
        results.append(name)
    return results


def get_arm_fields() -> List[str]:
    """Get list of arm-level field names."""
    return list_fields(role=FieldRole.ARM)


def reset_registry() -> None:
    """Reset registry to the default fields."""
    FIELD_REGISTRY.clear()
    FIELD_REGISTRY.update(_DEFAULT_FIELDS)


def parse_data_format(data_format: Any) -> DataFormat:
    """
    Resolve a format tag to a DataFormat.

    :param data_format: "long", "wide" or a DataFormat member
    :returns: DataFormat
    :raises ValueError: If the tag is not recognized
    """
    if isinstance(data_format, DataFormat):
        return data_format
    if isinstance(data_format, str):
        tag = data_format.strip().lower()
        if tag in ("long", "l"):
            return DataFormat.LONG
        if tag in ("wide", "w"):
            return DataFormat.WIDE
    raise ValueError(
        f"Data format must either be 'long' or 'wide', got {data_format!r}."
    )


def parse_model_kind(kind: Any) -> ModelKind:
    """
    Resolve a model selector to a ModelKind.

    :param kind: Model name (e.g., "combined") or a ModelKind member
    :returns: ModelKind
    :raises ValueError: If the selector is not recognized
    """
    if isinstance(kind, ModelKind):
        return kind
    try:
        return ModelKind(str(kind).strip().lower())
    except ValueError:
        valid = [k.value for k in ModelKind]
        raise ValueError(f"Unknown model '{kind}'. Expected one of {valid}") from None
