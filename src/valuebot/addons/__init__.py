from .engine import (
    AddonRunResult,
    apply_universe_patch,
    build_base_scores,
    merge_meta,
    run_addon_engine,
    run_addons_for_job,
)
from .modules import MODULE_REGISTRY, HighDebtStressTest, ModuleContext, ModuleExecutor, ModuleResult
from .parsers import (
    build_meta_from_scores,
    derive_numeric_scores_from_meta,
    extract_json_block,
    map_quality_label,
    map_risk_label,
    map_timing_label,
    merge_flags,
    normalize_scores,
)
from .selector import parse_selection, select_addons

__all__ = [
    "AddonRunResult",
    "HighDebtStressTest",
    "MODULE_REGISTRY",
    "ModuleContext",
    "ModuleExecutor",
    "ModuleResult",
    "apply_universe_patch",
    "build_base_scores",
    "build_meta_from_scores",
    "derive_numeric_scores_from_meta",
    "extract_json_block",
    "map_quality_label",
    "map_risk_label",
    "map_timing_label",
    "merge_flags",
    "merge_meta",
    "normalize_scores",
    "parse_selection",
    "run_addon_engine",
    "run_addons_for_job",
    "select_addons",
]
