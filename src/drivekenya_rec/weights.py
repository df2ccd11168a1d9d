"""
Blend weights for combining the four scorer outputs.

The defaults are fixed, hand-tuned values from config.BLEND_WEIGHTS. A JSON
file may override them per deployment; when the file is missing or invalid
the engine keeps the defaults.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

from .config import BLEND_WEIGHTS, BLEND_WEIGHTS_PATH

logger = logging.getLogger(__name__)

MIN_WEIGHT = 0.0
MAX_WEIGHT = 1.0


def _clamp_weight(value: float) -> float:
    return max(MIN_WEIGHT, min(MAX_WEIGHT, value))


@dataclass
class BlendWeights:
    """Per-scorer multipliers applied before summing."""

    content: float = BLEND_WEIGHTS['content']
    collaborative: float = BLEND_WEIGHTS['collaborative']
    popularity: float = BLEND_WEIGHTS['popularity']
    location: float = BLEND_WEIGHTS['location']

    def __post_init__(self) -> None:
        """Clamp values so a bad override cannot invert or explode scores."""
        for name, default in BLEND_WEIGHTS.items():
            try:
                value = _clamp_weight(float(getattr(self, name)))
            except (TypeError, ValueError):
                value = default
            setattr(self, name, value)

    def factor(self, component: str) -> float:
        return getattr(self, component)

    def to_dict(self) -> dict[str, float]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "BlendWeights":
        unknown = set(payload) - set(BLEND_WEIGHTS)
        if unknown:
            logger.warning("Ignoring unknown blend weight keys: %s", ", ".join(sorted(unknown)))
        return cls(**{k: v for k, v in payload.items() if k in BLEND_WEIGHTS})


def load_blend_weights(path: str | Path | None = None) -> BlendWeights | None:
    """Load weights from disk; return None if missing or invalid."""
    weight_path = Path(path) if path else BLEND_WEIGHTS_PATH
    if not weight_path.exists():
        logger.debug("Blend weights file not found at %s; using defaults", weight_path)
        return None

    try:
        payload = json.loads(weight_path.read_text())
        if not isinstance(payload, dict):
            raise ValueError("expected a JSON object")
        return BlendWeights.from_dict(payload)
    except (OSError, ValueError) as exc:
        logger.warning("Failed to load blend weights from %s: %s", weight_path, exc)
        return None
