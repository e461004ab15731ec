"""
Runner settings: defaults, then an optional YAML file, then environment
variables. CLI options are applied on top by the caller.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .backends import BACKENDS

CONFIG_FILE = "gradflow.yaml"
DEFAULT_WORKFLOWS_DIR = Path(".gradient/workflows")

ENV_VARS = {
    "GRADFLOW_STORE": "store_dir",
    "GRADFLOW_BACKEND": "backend",
    "GRADFLOW_WORKERS": "workers",
    "GRADFLOW_WORKFLOWS": "workflows_dir",
}


@dataclass
class Settings:
    store_dir: Path = Path(".gradflow")
    workflows_dir: Path = DEFAULT_WORKFLOWS_DIR
    backend: str = "docker"
    workers: Optional[int] = None
    fail_fast: bool = False
    create_datasets: bool = True
    keep_workspace: bool = False
    # instance type -> max concurrent jobs of that type
    tier_limits: Dict[str, int] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.store_dir = Path(self.store_dir)
        self.workflows_dir = Path(self.workflows_dir)
        if self.backend not in BACKENDS:
            raise ValueError(f"Unknown backend {self.backend!r}. Choose one of: {sorted(BACKENDS)}")
        if self.workers is not None:
            self.workers = int(self.workers)
            if self.workers < 1:
                raise ValueError("workers must be >= 1")
        limits = {}
        for tier, limit in (self.tier_limits or {}).items():
            if int(limit) < 1:
                raise ValueError(f"tier_limits[{tier!r}] must be >= 1")
            limits[str(tier)] = int(limit)
        self.tier_limits = limits

    @classmethod
    def _from_dict(cls, data: Dict[str, Any]) -> Settings:
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown settings: {unknown}")
        return cls(**data)

    @classmethod
    def from_yaml(cls, path: Path) -> Settings:
        """Load settings from a YAML file; a missing file gives defaults."""
        if not path.exists():
            return cls()
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"{path}: expected a mapping")
        return cls._from_dict(data)

    def with_env(self, environ: Optional[Dict[str, str]] = None) -> Settings:
        environ = os.environ if environ is None else environ
        overrides = {attr: environ[var] for var, attr in ENV_VARS.items() if environ.get(var)}
        return replace(self, **overrides) if overrides else self

    def with_overrides(self, **overrides: Any) -> Settings:
        """Apply CLI options; None means "not given"."""
        given = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **given) if given else self


def load_settings(path: Optional[str | Path] = None, environ: Optional[Dict[str, str]] = None) -> Settings:
    """
    Resolve settings from (lowest to highest precedence):
      defaults, YAML file (path, $GRADFLOW_CONFIG or ./gradflow.yaml), env vars.
    """
    environ = os.environ if environ is None else environ
    config_path = Path(path or environ.get("GRADFLOW_CONFIG") or CONFIG_FILE)
    if path is not None and not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")
    return Settings.from_yaml(config_path).with_env(environ)
