import json
import logging
from collections.abc import Mapping
from functools import lru_cache
from pathlib import Path
from types import MappingProxyType
from typing import Any

from pydantic import ValidationError

from reportflow.core.config import settings
from reportflow.core.exceptions import ConfigurationError
from reportflow.models.progress_models import StageProfile

logger = logging.getLogger(__name__)

DEFAULT_PROFILE = "custom"

# Progress checkpoints for each report type the generator knows about
BUILTIN_STAGES: dict[str, list[tuple[str, str, float]]] = {
    "jp_investment_4part": [
        ("initializing", "Initializing investment analysis...", 5),
        ("processing_files", "Processing uploaded files...", 15),
        ("extracting_data", "Extracting financial data...", 30),
        ("calculating_metrics", "Calculating investment metrics...", 50),
        ("generating_analysis", "Generating detailed analysis...", 70),
        ("formatting_report", "Formatting final report...", 90),
        ("completed", "Report generation completed!", 100),
    ],
    "jp_tax_strategy": [
        ("initializing", "Initializing tax strategy analysis...", 5),
        ("processing_files", "Processing tax documents...", 20),
        ("calculating_depreciation", "Calculating depreciation benefits...", 40),
        ("analyzing_tax_impact", "Analyzing tax impact scenarios...", 65),
        ("generating_strategy", "Generating tax optimization strategy...", 85),
        ("completed", "Tax strategy report completed!", 100),
    ],
    "jp_inheritance_strategy": [
        ("initializing", "Initializing inheritance strategy analysis...", 5),
        ("processing_assets", "Processing asset information...", 20),
        ("calculating_tax_reduction", "Calculating inheritance tax reduction...", 45),
        ("analyzing_strategies", "Analyzing inheritance strategies...", 70),
        ("generating_recommendations", "Generating strategic recommendations...", 90),
        ("completed", "Inheritance strategy report completed!", 100),
    ],
    "comparison_analysis": [
        ("initializing", "Initializing property comparison...", 5),
        ("processing_properties", "Processing property data...", 25),
        ("calculating_metrics", "Calculating comparative metrics...", 50),
        ("analyzing_differences", "Analyzing investment differences...", 75),
        ("generating_comparison", "Generating comparison report...", 95),
        ("completed", "Comparison analysis completed!", 100),
    ],
    DEFAULT_PROFILE: [
        ("initializing", "Initializing custom analysis...", 10),
        ("processing_requirements", "Processing custom requirements...", 30),
        ("analyzing_data", "Analyzing provided data...", 60),
        ("generating_report", "Generating custom report...", 90),
        ("completed", "Custom report completed!", 100),
    ],
}


def build_profile(name: str, stages: list[Any]) -> StageProfile:
    """Builds a validated profile from tuples or ``{"stage", "message", "progress"}`` dicts."""
    normalized = [
        dict(zip(("stage", "message", "progress"), item)) if isinstance(item, (list, tuple)) else item
        for item in stages
    ]
    try:
        return StageProfile.model_validate({"name": name, "stages": normalized})
    except ValidationError as e:
        raise ConfigurationError(f"Invalid stage profile '{name}': {e}") from e


def load_stage_profiles(path: Path | None = None) -> Mapping[str, StageProfile]:
    """Returns the built-in profiles, overlaid with the ones defined in ``path`` (JSON).

    The file maps a report type to its ordered stage list. Entries replace
    built-ins of the same name. The returned mapping is read-only.
    """
    raw: dict[str, list[Any]] = {name: list(stages) for name, stages in BUILTIN_STAGES.items()}

    if path is not None:
        try:
            extra = json.loads(Path(path).read_text(encoding="utf-8"))
        except FileNotFoundError as e:
            raise ConfigurationError(f"Stage profile file not found: {path}") from e
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Stage profile file {path} is not valid JSON: {e}") from e
        if not isinstance(extra, dict):
            raise ConfigurationError(f"Stage profile file {path} must contain a JSON object")
        logger.info("Loaded %d stage profile(s) from %s", len(extra), path)
        raw.update(extra)

    profiles = {name: build_profile(name, stages) for name, stages in raw.items()}
    return MappingProxyType(profiles)


@lru_cache(maxsize=1)
def get_stage_profiles() -> Mapping[str, StageProfile]:
    """Process-wide profile table, loaded once from settings."""
    return load_stage_profiles(settings.stage_profiles_path)
