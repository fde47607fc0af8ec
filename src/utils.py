from __future__ import annotations

import logging
import os
import random
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import numpy as np
import yaml


@dataclass(frozen=True)
class ReproducibilityConfig:
    seed: int = 42


def setup_logging(level: int | str = "INFO") -> None:
    """Configure stdlib logging with a consistent, project-wide format."""
    root_logger = logging.getLogger()
    if root_logger.handlers:
        # Avoid duplicate handlers if called multiple times (e.g., notebooks + CLI).
        root_logger.setLevel(level)
        return

    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def set_global_seed(cfg: ReproducibilityConfig) -> None:
    """Seed the process-wide RNGs.

    The CF code itself never draws from these; it takes explicit generators
    (see `make_rng`). Seeding here only pins third-party code that does.
    """
    random.seed(cfg.seed)
    np.random.seed(cfg.seed)

    # Some libraries read this env var for hash randomization determinism.
    os.environ["PYTHONHASHSEED"] = str(cfg.seed)


def make_rng(seed: int | np.random.Generator | None = None) -> np.random.Generator:
    """Return a numpy Generator; an existing Generator is passed through untouched."""
    if isinstance(seed, np.random.Generator):
        return seed
    return np.random.default_rng(seed)


def load_yaml_config(config_path: Path) -> dict[str, Any]:
    """Read config.yaml and make sure it is a mapping."""
    config_path = Path(config_path).resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    config = yaml.safe_load(config_path.read_text())
    if not isinstance(config, dict):
        raise ValueError(f"Expected config YAML to be a mapping, got: {type(config)}")
    return config


def config_section(config: dict[str, Any], name: str) -> dict[str, Any]:
    """Return `config[name]` if it is a mapping, else an empty dict."""
    section = config.get(name, {})
    return section if isinstance(section, dict) else {}
