"""
Domain validation for proof requests and subject input data.

Supported traits:
- BRCA1, BRCA2: mutation presence with a risk score and confidence in [0, 1]
- CYP2D6: metabolizer activity score in [0, 3]

Requests are checked before enqueue (``validate_request``); the subject's
input data is checked by the worker before the prover runs
(``extract_marker``).
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from ..errors import ValidationError

SUPPORTED_TRAITS = ("BRCA1", "BRCA2", "CYP2D6")

BRCA_TRAITS = ("BRCA1", "BRCA2")

MIN_ACTIVITY_SCORE = 0.0
MAX_ACTIVITY_SCORE = 3.0

# Marker keys carried by subject input data
BRCA_MARKER_KEYS = {
    "BRCA1": "BRCA1_185delAG",
    "BRCA2": "BRCA2_5266dupC",
}


@dataclass
class GeneticMarker:
    """Trait-specific value extracted from subject data."""

    trait_type: str
    value: Any
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.trait_type,
            "value": self.value,
            "metadata": self.metadata,
        }


def _is_number(value: Any) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(value)
    )


def validate_brca_risk_score(score: Any) -> bool:
    return _is_number(score) and 0.0 <= score <= 1.0


def validate_activity_score(score: Any) -> bool:
    return _is_number(score) and MIN_ACTIVITY_SCORE <= score <= MAX_ACTIVITY_SCORE


def normalize_trait(trait_type: str) -> str:
    """Canonicalize a trait name (trimmed, upper case)."""
    if not isinstance(trait_type, str) or not trait_type.strip():
        raise ValidationError("trait_type is required")
    return trait_type.strip().upper()


def validate_request(
    subject_id: str, trait_type: str, threshold: Optional[float] = None
) -> str:
    """Validate a proof request and return the canonical trait type.

    Raises:
        ValidationError: If subject, trait or threshold are malformed
    """
    if not isinstance(subject_id, str) or not subject_id.strip():
        raise ValidationError("subject_id is required")

    trait = normalize_trait(trait_type)
    if trait not in SUPPORTED_TRAITS:
        raise ValidationError(
            f"Unsupported trait type: {trait_type}. "
            f"Supported: {', '.join(SUPPORTED_TRAITS)}"
        )

    if threshold is not None:
        if not _is_number(threshold):
            raise ValidationError(f"threshold must be a finite number, got {threshold!r}")
        if trait in BRCA_TRAITS and not validate_brca_risk_score(threshold):
            raise ValidationError(f"threshold for {trait} must be within [0, 1]")
        if trait == "CYP2D6" and not validate_activity_score(threshold):
            raise ValidationError(
                f"threshold for CYP2D6 must be within "
                f"[{MIN_ACTIVITY_SCORE:g}, {MAX_ACTIVITY_SCORE:g}]"
            )

    return trait


def extract_marker(data: Dict[str, Any], trait_type: str) -> GeneticMarker:
    """Pull the trait marker out of subject input data and validate it.

    Input shape::

        {"markers": {...}, "traits": {"BRCA1": {...}}, "riskScore": 0.2}

    Raises:
        ValidationError: If the data does not satisfy domain constraints
    """
    if not isinstance(data, dict):
        raise ValidationError("subject input must be a JSON object")

    traits = data.get("traits") or {}
    markers = data.get("markers") or {}

    if trait_type in BRCA_TRAITS:
        trait_info = traits.get(trait_type) or {}
        risk_score = trait_info.get("risk_score", data.get("riskScore", 0.0))
        confidence = trait_info.get("confidence", data.get("confidence", 0.95))

        if not validate_brca_risk_score(risk_score):
            raise ValidationError(f"Invalid risk score for {trait_type}: {risk_score!r}")
        if not validate_brca_risk_score(confidence):
            raise ValidationError(f"Invalid confidence for {trait_type}: {confidence!r}")

        present = markers.get(BRCA_MARKER_KEYS[trait_type])
        if present is None:
            present = trait_info.get("mutation_present", False)

        return GeneticMarker(
            trait_type=trait_type,
            value=bool(present),
            metadata={"confidence": confidence, "risk_score": risk_score},
        )

    if trait_type == "CYP2D6":
        cyp = markers.get("CYP2D6") or traits.get("CYP2D6") or {}
        activity_score = cyp.get("activityScore", cyp.get("activity_score", 1.5))
        if not validate_activity_score(activity_score):
            raise ValidationError(f"Invalid activity score for CYP2D6: {activity_score!r}")

        return GeneticMarker(
            trait_type=trait_type,
            value=activity_score,
            metadata={
                "metabolizer": cyp.get("metabolizer", "normal"),
                "activity_score": activity_score,
            },
        )

    raise ValidationError(f"Unsupported trait type: {trait_type}")
