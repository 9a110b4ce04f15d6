"""YAML configuration for the class-normalized loss layer."""
from __future__ import annotations

import pathlib
from dataclasses import dataclass
from typing import Any, Dict, Optional

import yaml


@dataclass
class LossParameter:
    """Loss settings, mirroring a `loss_param` block of a layer definition."""

    num_classes: int = 2
    ignore_label: Optional[int] = None
    normalize: bool = True


def load_config(path: str | pathlib.Path) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def loss_param_from_config(cfg: Dict[str, Any]) -> LossParameter:
    """Reads the `loss_param` section, falling back to defaults for missing keys."""

    section = cfg.get("loss_param") or {}
    unknown = set(section) - {"num_classes", "ignore_label", "normalize"}
    if unknown:
        raise ValueError(f"Unknown loss_param keys: {sorted(unknown)}")
    return LossParameter(**section)
