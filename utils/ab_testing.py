# =============================================================================
# 🧪 utils/ab_testing.py
# -----------------------------------------------------------------------------
# A/B-Split: Gewichte prüfen (Summe 100 ± 0.01) und Variante pro Scan ziehen.
# =============================================================================

from __future__ import annotations

import math
import random
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Sequence, Tuple

from utils.errors import SmartQRConfigError

WEIGHT_TOTAL = 100.0
WEIGHT_TOLERANCE = 0.01


@dataclass(frozen=True)
class ABTestSplit:
    variants: Tuple[str, ...]
    traffic: Tuple[float, ...]

    def to_metadata(self) -> dict[str, Any]:
        return {
            "isABTest": True,
            "variants": list(self.variants),
            "traffic": list(self.traffic),
        }


def validate_traffic_split(urls: Sequence[str], weights: Sequence[float]) -> ABTestSplit:
    if len(urls) != len(weights):
        raise SmartQRConfigError("Variant URLs and traffic percentages must have the same length")
    if not urls:
        raise SmartQRConfigError("An A/B test needs at least one variant")

    clean_urls = []
    for url in urls:
        if not isinstance(url, str) or not url.strip():
            raise SmartQRConfigError("Variant URLs must be non-empty strings")
        clean_urls.append(url.strip())

    clean_weights = []
    for w in weights:
        if isinstance(w, bool) or not isinstance(w, (int, float)):
            raise SmartQRConfigError("Traffic percentages must be numbers")
        if not math.isfinite(w) or w < 0:
            raise SmartQRConfigError("Traffic percentages must not be negative")
        clean_weights.append(float(w))

    if abs(sum(clean_weights) - WEIGHT_TOTAL) > WEIGHT_TOLERANCE:
        raise SmartQRConfigError("Traffic percentages must sum to 100")

    return ABTestSplit(variants=tuple(clean_urls), traffic=tuple(clean_weights))


def split_from_metadata(metadata: Optional[Mapping[str, Any]]) -> Optional[ABTestSplit]:
    """Liest einen A/B-Split aus Action-Metadaten; None wenn keiner hinterlegt ist."""
    if not metadata or not metadata.get("isABTest"):
        return None
    variants = metadata.get("variants")
    traffic = metadata.get("traffic")
    if not isinstance(variants, (list, tuple)) or not isinstance(traffic, (list, tuple)):
        raise SmartQRConfigError("A/B metadata needs 'variants' and 'traffic' lists")
    return validate_traffic_split(list(variants), list(traffic))


def select_variant(
    urls: Sequence[str],
    weights: Sequence[float],
    rng: Optional[random.Random] = None,
) -> str:
    draw = (rng or random).random() * WEIGHT_TOTAL
    cumulative = 0.0
    for url, weight in zip(urls, weights):
        cumulative += weight
        if draw <= cumulative:
            return url
    # Float-Drift: nie ohne Ziel zurückkehren
    return urls[-1]
