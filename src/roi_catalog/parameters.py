"""
Centralized parameter configuration for catalog ROI queries.

All default parameters are defined here and can be overridden via:
1. Custom config file: roi-catalog --config my_config.py
2. CLI arguments: roi-catalog --param workers=4 --param crs.strict=true
3. Environment variables: QUERY_WORKERS=4 roi-catalog ...

Parameters are turned into an explicit QueryConfig value that is passed to
roi_query(); nothing in this module is consulted implicitly at query time.
"""

import os
import importlib.util
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Any, Optional


# Default query parameters
QUERY_PARAMS = {
    'workers': 1,                 # Number of parallel workers (<= 1 means sequential)
    'pool': 'process',            # Worker pool kind: 'process' or 'thread'
    'progress': True,             # Show a per-ROI progress bar
    'verbose': True,              # Print run summaries and warnings
    'chunk_size': 1_000_000,      # Points read per chunk by the LAS reader
    'select': '',                 # Extra dimensions to load, comma separated ('*' = all)
}

# Default CRS codec parameters
CRS_PARAMS = {
    'strict': False,              # Fail on unknown EPSG codes / unparsable WKT
}

CATEGORIES = ['QUERY_PARAMS', 'CRS_PARAMS']
ENV_PREFIXES = {'QUERY_': 'QUERY_PARAMS', 'CRS_': 'CRS_PARAMS'}


def load_params_from_file(config_file: Path) -> Dict[str, Dict[str, Any]]:
    """
    Load parameters from a custom Python config file.

    The config file should define QUERY_PARAMS and/or CRS_PARAMS.

    Args:
        config_file: Path to Python config file

    Returns:
        Dictionary with 'QUERY_PARAMS' and/or 'CRS_PARAMS'
    """
    if not config_file.exists():
        raise FileNotFoundError(f"Config file not found: {config_file}")

    spec = importlib.util.spec_from_file_location("roi_catalog_config", config_file)
    config_module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(config_module)

    params = {}
    for category in CATEGORIES:
        if hasattr(config_module, category):
            params[category] = dict(getattr(config_module, category))

    return params


def load_params_from_env() -> Dict[str, Dict[str, Any]]:
    """
    Load parameter overrides from environment variables.

    Environment variables should be prefixed with QUERY_ or CRS_:
    - QUERY_WORKERS=4
    - QUERY_POOL=thread
    - CRS_STRICT=true

    Returns:
        Dictionary with parameter overrides
    """
    params = {category: {} for category in CATEGORIES}

    for key, value in os.environ.items():
        for prefix, category in ENV_PREFIXES.items():
            if key.startswith(prefix):
                param_name = key[len(prefix):].lower()
                params[category][param_name] = _parse_value(value)
                break

    return params


def parse_param_override(param_str: str) -> tuple[str, str, Any]:
    """
    Parse a parameter override string.

    Format: "category.param=value" or "param=value"
    Examples:
    - "workers=4"
    - "QUERY.workers=4"
    - "crs.strict=true"

    Args:
        param_str: Parameter override string

    Returns:
        Tuple of (category, param_name, value)
    """
    if '=' not in param_str:
        raise ValueError(f"Invalid parameter format: {param_str}. Expected format: param=value")

    key, value = param_str.split('=', 1)

    if '.' in key:
        category, param_name = key.split('.', 1)
        category = category.upper()
        if not category.endswith('_PARAMS'):
            category = f"{category}_PARAMS"
    else:
        param_name = key
        category = _infer_category(param_name)

    return category, param_name, _parse_value(value)


def _infer_category(param_name: str) -> str:
    """Infer parameter category from parameter name."""
    if param_name in CRS_PARAMS:
        return 'CRS_PARAMS'
    return 'QUERY_PARAMS'


def _parse_value(value_str: str) -> Any:
    """Parse string value to appropriate Python type."""
    # Numbers first so that QUERY_WORKERS=1 stays an int
    try:
        return int(value_str)
    except ValueError:
        pass

    try:
        return float(value_str)
    except ValueError:
        pass

    if value_str.lower() in ('true', 'yes', 'on'):
        return True
    if value_str.lower() in ('false', 'no', 'off'):
        return False

    return value_str


def load_params(
    config_file: Optional[Path] = None,
    param_overrides: Optional[list[str]] = None,
    use_env: bool = True
) -> Dict[str, Dict[str, Any]]:
    """
    Load parameters with priority: CLI overrides > config file > env vars > defaults.

    Args:
        config_file: Optional path to custom config file
        param_overrides: List of parameter override strings (e.g., ["workers=4"])
        use_env: Whether to load from environment variables

    Returns:
        Dictionary with QUERY_PARAMS and CRS_PARAMS
    """
    params = {
        'QUERY_PARAMS': QUERY_PARAMS.copy(),
        'CRS_PARAMS': CRS_PARAMS.copy(),
    }

    if use_env:
        env_params = load_params_from_env()
        for category in CATEGORIES:
            params[category].update(env_params[category])

    if config_file:
        file_params = load_params_from_file(config_file)
        for category, values in file_params.items():
            params[category].update(values)

    if param_overrides:
        for override in param_overrides:
            category, param_name, value = parse_param_override(override)
            if category not in params:
                raise ValueError(f"Unknown parameter category in override: {override}")
            params[category][param_name] = value

    return params


def print_params(params: Dict[str, Dict[str, Any]]):
    """Print current parameter configuration."""
    print("=" * 60)
    print("Current Parameters")
    print("=" * 60)

    for category in CATEGORIES:
        if category in params:
            print(f"\n{category}:")
            for key, value in sorted(params[category].items()):
                print(f"  {key}: {value}")

    print("=" * 60)


@dataclass(frozen=True)
class QueryConfig:
    """Explicit per-call configuration of roi_query()."""

    workers: int = 1
    pool: str = "process"
    progress: bool = True
    verbose: bool = True
    chunk_size: int = 1_000_000
    select: tuple = ()
    strict_crs: bool = False

    def __post_init__(self):
        if self.pool not in ("process", "thread"):
            raise ValueError(f"Unknown pool kind '{self.pool}', expected 'process' or 'thread'")
        if self.chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {self.chunk_size}")

    @classmethod
    def from_params(cls, params: Optional[Dict[str, Dict[str, Any]]] = None) -> "QueryConfig":
        """Build a config from a load_params() dictionary (defaults when None)."""
        if params is None:
            params = load_params(use_env=False)
        query = {**QUERY_PARAMS, **params.get('QUERY_PARAMS', {})}
        crs = {**CRS_PARAMS, **params.get('CRS_PARAMS', {})}

        select = query.get('select') or ()
        if isinstance(select, str):
            select = tuple(s.strip() for s in select.split(',') if s.strip())

        return cls(
            workers=int(query['workers']),
            pool=str(query['pool']),
            progress=bool(query['progress']),
            verbose=bool(query['verbose']),
            chunk_size=int(query['chunk_size']),
            select=tuple(select),
            strict_crs=bool(crs['strict']),
        )
