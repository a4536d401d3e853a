# ════════════════════════════════════════════════════════════════════════════════
# Training Criteria - YAML Configuration Loader
# ════════════════════════════════════════════════════════════════════════════════
# CriterionConfig loading from YAML files or dictionaries.
#
# Design Principles:
# - The YAML file (or a section of a larger trainer config) is the single
#   source of truth for criterion settings
# - Pydantic validation ensures type safety at load time
# - Environment variable interpolation for per-run overrides
# ════════════════════════════════════════════════════════════════════════════════

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any, Dict, List, Union

import yaml

from training_criteria.core.errors import (
    ConfigurationError,
    SchemaValidationError,
    YAMLParseError,
)
from training_criteria.core.types import CriterionConfig


# ═════════════════════════════════════════════════════════════════════════════════
# Environment Variable Interpolation
# ═════════════════════════════════════════════════════════════════════════════════

ENV_VAR_PATTERN = re.compile(r"\$\{([^}]+)\}")


def interpolate_env_vars(value: Any) -> Any:
    """
    Recursively interpolate environment variables in configuration values.

    Supports ${VAR_NAME} syntax with optional default: ${VAR_NAME:-default}

    Example:
        "${CRITERION_DEVICE:-cpu}" -> "cpu" if CRITERION_DEVICE not set
    """
    if isinstance(value, str):
        def replace_env_var(match: re.Match) -> str:
            var_spec = match.group(1)

            if ":-" in var_spec:
                var_name, default = var_spec.split(":-", 1)
            else:
                var_name, default = var_spec, ""

            return os.environ.get(var_name.strip(), default)

        return ENV_VAR_PATTERN.sub(replace_env_var, value)

    elif isinstance(value, dict):
        return {k: interpolate_env_vars(v) for k, v in value.items()}

    elif isinstance(value, list):
        return [interpolate_env_vars(item) for item in value]

    return value


def _format_validation_errors(exc: Exception) -> List[str]:
    errors = []
    if hasattr(exc, "errors"):
        for err in exc.errors():
            loc = ".".join(str(x) for x in err.get("loc", []))
            msg = err.get("msg", "Unknown error")
            errors.append(f"{loc}: {msg}")
    return errors


# ═════════════════════════════════════════════════════════════════════════════════
# YAML Loading Functions
# ═════════════════════════════════════════════════════════════════════════════════

def load_criterion_config(
    yaml_path: Union[str, Path],
    *,
    config_key: str = "criterion",
    interpolate_env: bool = True,
) -> CriterionConfig:
    """
    Load CriterionConfig from a YAML file.

    The criterion settings can live in a dedicated file or as a section
    within a larger trainer config.

    Args:
        yaml_path: Path to YAML configuration file
        config_key: Top-level key holding the criterion section
        interpolate_env: Whether to substitute ${VAR} with environment variables

    Returns:
        Validated CriterionConfig instance

    Raises:
        YAMLParseError: If YAML syntax is invalid
        SchemaValidationError: If configuration doesn't match schema
        ConfigurationError: If the file is missing or empty
    """
    yaml_path = Path(yaml_path)

    if not yaml_path.exists():
        raise ConfigurationError(
            message=f"Configuration file not found: {yaml_path}",
            yaml_file=str(yaml_path),
            remediation="Ensure the YAML file exists at the specified path"
        )

    try:
        with open(yaml_path, "r", encoding="utf-8") as f:
            raw_config = yaml.safe_load(f)
    except yaml.YAMLError as e:
        line = getattr(e, "problem_mark", None)
        raise YAMLParseError(
            message=f"Failed to parse YAML: {e}",
            yaml_file=str(yaml_path),
            line=line.line + 1 if line else None,
            column=line.column + 1 if line else None,
            cause=e
        )

    if raw_config is None:
        raise ConfigurationError(
            message="Empty configuration file",
            yaml_file=str(yaml_path),
            remediation="Add a criterion section to the YAML file"
        )

    if config_key in raw_config:
        criterion_config = raw_config[config_key]
    else:
        # Assume entire file is the criterion config
        criterion_config = raw_config

    if interpolate_env:
        criterion_config = interpolate_env_vars(criterion_config)

    try:
        return CriterionConfig.model_validate(criterion_config)
    except Exception as e:
        raise SchemaValidationError(
            message="Criterion configuration validation failed",
            yaml_file=str(yaml_path),
            validation_errors=tuple(_format_validation_errors(e)),
            cause=e
        )


def load_criterion_config_from_dict(
    config_dict: Dict[str, Any],
    *,
    interpolate_env: bool = True,
) -> CriterionConfig:
    """
    Create CriterionConfig from a dictionary.

    Useful for programmatic configuration or testing.
    """
    if interpolate_env:
        config_dict = interpolate_env_vars(config_dict)

    try:
        return CriterionConfig.model_validate(config_dict)
    except Exception as e:
        raise SchemaValidationError(
            message="Criterion configuration validation failed",
            validation_errors=tuple(_format_validation_errors(e)),
            cause=e
        )


def merge_configs(
    base: CriterionConfig,
    overrides: Dict[str, Any],
) -> CriterionConfig:
    """
    Return a new CriterionConfig with override values applied.

    Example:
        ```python
        base = load_criterion_config("criterion.yaml")
        debug = merge_configs(base, {"nan_check": True, "precision": "fp64"})
        ```
    """
    base_dict = base.model_dump()
    base_dict.update(overrides)
    return load_criterion_config_from_dict(base_dict, interpolate_env=False)


# ═════════════════════════════════════════════════════════════════════════════════
# Export
# ═════════════════════════════════════════════════════════════════════════════════

__all__ = [
    "load_criterion_config",
    "load_criterion_config_from_dict",
    "merge_configs",
    "interpolate_env_vars",
]
