"""Configuration parsing helpers for Burrow.

Brief:
  This module contains the configuration-parsing utilities used by the CLI
  entrypoint. It centralizes:
    - reading YAML config files
    - merging variables from config/env/CLI
    - `${VAR}` expansion across the config tree
    - pydantic validation (see config_schema.validate_config)

Inputs:
  - YAML config paths and dicts

Outputs:
  - Validated BurrowConfig instances
"""

from __future__ import annotations

import copy
import json
import os
import re
from typing import Any, Dict, List, Optional

import yaml

from .config_schema import BurrowConfig, ConfigError, validate_config

_VAR_KEY = re.compile(r"[A-Z_][A-Z0-9_]*")
_VAR_PATTERN = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)\}")


def _is_var_key(key: str) -> bool:
    """Brief: True when ``key`` is ALL_UPPERCASE and matches [A-Z_][A-Z0-9_]*."""

    return bool(key) and bool(_VAR_KEY.fullmatch(key))


def _parse_yaml_value(text: str) -> Any:
    """Brief: Parse a CLI/environment variable value as YAML.

    Inputs:
      - text: String containing YAML scalar/list/dict.

    Outputs:
      - Any: Parsed value (falls back to original string on parse errors).
    """

    try:
        return yaml.safe_load(text)
    except yaml.YAMLError:
        return text


def parse_config_variables(
    cfg: Dict[str, Any],
    *,
    cli_vars: Optional[List[str]] = None,
    environ: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    """Brief: Merge config/environment/CLI variables into cfg['variables'].

    Inputs:
      - cfg: Parsed YAML configuration mapping (mutated in-place).
      - cli_vars: Optional list of CLI `KEY=YAML` assignments.
      - environ: Optional environment mapping (defaults to os.environ).

    Outputs:
      - dict: The merged variables mapping stored back onto cfg['variables'].

    Precedence:
      - CLI (-v/--var) overrides environment overrides config-file variables.
      - Environment variables only take part when their name is already
        declared in the config file's `variables` group or referenced as
        `${NAME}` somewhere in the config, so unrelated process environment
        never leaks into the tree.

    Example:
      >>> cfg = {'variables': {'PORT': 53}}
      >>> parse_config_variables(cfg, cli_vars=['PORT=5353'], environ={})['PORT']
      5353
    """

    base = cfg.get("variables")
    if base is None:
        merged: Dict[str, Any] = {}
    elif isinstance(base, dict):
        merged = dict(base)
    else:
        raise ConfigError("config.variables must be a mapping when present")

    for k in merged:
        if not isinstance(k, str) or not _is_var_key(k):
            raise ConfigError(
                f"config.variables key {k!r} must be ALL_UPPERCASE and match [A-Z_][A-Z0-9_]*"
            )

    referenced = set(_VAR_PATTERN.findall(json.dumps(cfg, default=str)))
    env = os.environ if environ is None else environ
    for k, v in env.items():
        if _is_var_key(k) and (k in merged or k in referenced):
            merged[k] = _parse_yaml_value(str(v))

    for assignment in cli_vars or []:
        if "=" not in assignment:
            raise ConfigError(
                "Invalid -v/--var value (expected KEY=YAML), got: %r" % assignment
            )
        k, raw = assignment.split("=", 1)
        k = k.strip()
        if not _is_var_key(k):
            raise ConfigError(
                "Invalid variable name %r (must be ALL_UPPERCASE and match [A-Z_][A-Z0-9_]*)"
                % k
            )
        merged[k] = _parse_yaml_value(raw)

    cfg["variables"] = merged
    return merged


def expand_variables(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Brief: Substitute `${KEY}` references using cfg['variables'].

    Inputs:
      - cfg: Configuration mapping with an optional `variables` group.

    Outputs:
      - dict: New mapping with values expanded and `variables` removed.

    Behavior:
      - A string that is exactly `${KEY}` is replaced with the variable's
        YAML value (list/dict/int/etc.).
      - `${KEY}` inside a longer string is replaced with its text form.
      - Unknown variables raise ConfigError. Keys are never substituted.

    Example:
      >>> expand_variables({'variables': {'P': 5353}, 'listen': {'port': '${P}'}})
      {'listen': {'port': 5353}}
    """

    variables = dict(cfg.get("variables") or {})

    def _lookup(name: str) -> Any:
        if name not in variables:
            raise ConfigError(f"undefined config variable ${{{name}}}")
        return variables[name]

    def _expand_string(text: str) -> Any:
        whole = _VAR_PATTERN.fullmatch(text)
        if whole:
            return copy.deepcopy(_lookup(whole.group(1)))

        def _repl(match: re.Match) -> str:
            v = _lookup(match.group(1))
            if isinstance(v, bool):
                return "true" if v else "false"
            if v is None:
                return "null"
            if isinstance(v, (int, float, str)):
                return str(v)
            return json.dumps(v)

        return _VAR_PATTERN.sub(_repl, text)

    def _expand(obj: Any) -> Any:
        if isinstance(obj, str):
            return _expand_string(obj)
        if isinstance(obj, list):
            return [_expand(item) for item in obj]
        if isinstance(obj, dict):
            return {k: _expand(v) for k, v in obj.items()}
        return obj

    return {k: _expand(v) for k, v in cfg.items() if k != "variables"}


def load_config(
    cfg: Optional[Dict[str, Any]],
    *,
    cli_vars: Optional[List[str]] = None,
    environ: Optional[Dict[str, str]] = None,
    config_path: Optional[str] = None,
) -> BurrowConfig:
    """Brief: Merge variables, expand them and validate an in-memory config."""

    if not isinstance(cfg or {}, dict):
        raise ConfigError("Configuration root must be a mapping")
    raw = dict(cfg or {})
    parse_config_variables(raw, cli_vars=cli_vars, environ=environ)
    return validate_config(expand_variables(raw), config_path=config_path)


def parse_config_file(
    config_path: str,
    *,
    cli_vars: Optional[List[str]] = None,
    environ: Optional[Dict[str, str]] = None,
) -> BurrowConfig:
    """Brief: Read, variable-merge, and validate a YAML config file.

    Inputs:
      - config_path: Path to the YAML configuration file.
      - cli_vars: Optional list of CLI `KEY=YAML` assignments (from -v/--var).
      - environ: Optional environment mapping (defaults to os.environ).

    Outputs:
      - BurrowConfig: validated configuration.

    Raises:
      - ConfigError: When the file is not a mapping, variables are invalid or
        validation fails.
      - OSError: When the file cannot be read.
    """

    with open(config_path, "r") as f:
        try:
            cfg = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"Cannot parse {config_path}: {exc}") from exc

    if not isinstance(cfg, dict):
        raise ConfigError("Configuration root must be a mapping")

    return load_config(
        cfg, cli_vars=cli_vars, environ=environ, config_path=config_path
    )
