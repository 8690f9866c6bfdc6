"""Vector arithmetic used by the embedding generator and the consistency scorer.

Functions:
    cosine_similarity(a, b): Cosine similarity in [-1, 1]; raises ValidationError on dimension mismatch.
    normalize_vector(v): L2-normalised copy of ``v``; zero vectors are returned unchanged.
    mean_vector(vectors): Element-wise mean of equal-length vectors.
    combine_channels(visual, semantic, ...): Build the concatenated combined reference vector.
    split_channels(combined, ...): Recover the visual and semantic slots of a combined vector.
"""

from __future__ import annotations

from typing import Sequence

import numpy as np

from memory_engine.core.errors import ValidationError

_ZERO_TOLERANCE = 1e-12


def _as_array(vector: Sequence[float] | np.ndarray) -> np.ndarray:
    return np.asarray(vector, dtype=np.float64)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    left = _as_array(a)
    right = _as_array(b)
    if left.shape != right.shape:
        raise ValidationError(
            f"Vectors must have the same length ({left.size} != {right.size})",
            hint="Embedding dimensions do not match.",
        )
    left_norm = float(np.linalg.norm(left))
    right_norm = float(np.linalg.norm(right))
    if left_norm <= _ZERO_TOLERANCE or right_norm <= _ZERO_TOLERANCE:
        return 0.0
    value = float(np.dot(left, right) / (left_norm * right_norm))
    return max(-1.0, min(1.0, value))


def normalize_vector(vector: Sequence[float]) -> list[float]:
    arr = _as_array(vector)
    magnitude = float(np.linalg.norm(arr))
    if magnitude <= _ZERO_TOLERANCE:
        return list(vector)
    return (arr / magnitude).tolist()


def magnitude(vector: Sequence[float]) -> float:
    return float(np.linalg.norm(_as_array(vector)))


def mean_vector(vectors: Sequence[Sequence[float]]) -> list[float]:
    if not vectors:
        raise ValidationError("Cannot average an empty set of vectors")
    dims = {len(vector) for vector in vectors}
    if len(dims) != 1:
        raise ValidationError(
            "Vectors must have the same length",
            hint="Embedding dimensions do not match.",
        )
    return np.mean(np.asarray(vectors, dtype=np.float64), axis=0).tolist()


def combine_channels(
    visual: Sequence[float] | None,
    semantic: Sequence[float] | None,
    *,
    visual_dim: int,
    semantic_dim: int,
    visual_weight: float,
    semantic_weight: float,
) -> list[float]:
    """Concatenate weighted, normalised channels into one fixed-size vector.

    Layout is ``[visual slot (visual_dim) | semantic slot (semantic_dim)]``. A
    missing channel leaves its slot zeroed and the other channel gets weight 1.0.
    """

    if visual is None and semantic is None:
        raise ValidationError(
            "At least one of visual or semantic input is required",
            hint="No reference images or description found.",
        )
    if visual is not None and len(visual) != visual_dim:
        raise ValidationError(f"Visual vector has dimension {len(visual)}, expected {visual_dim}")
    if semantic is not None and len(semantic) != semantic_dim:
        raise ValidationError(f"Semantic vector has dimension {len(semantic)}, expected {semantic_dim}")

    if visual is None:
        visual_weight, semantic_weight = 0.0, 1.0
    elif semantic is None:
        visual_weight, semantic_weight = 1.0, 0.0

    combined = np.zeros(visual_dim + semantic_dim, dtype=np.float64)
    if visual is not None:
        combined[:visual_dim] = visual_weight * _as_array(normalize_vector(visual))
    if semantic is not None:
        combined[visual_dim:] = semantic_weight * _as_array(normalize_vector(semantic))
    return combined.tolist()


def split_channels(
    combined: Sequence[float],
    *,
    visual_dim: int,
    semantic_dim: int,
) -> tuple[list[float] | None, list[float] | None]:
    """Return ``(visual, semantic)`` slots; an all-zero slot comes back as ``None``."""

    arr = _as_array(combined)
    if arr.size != visual_dim + semantic_dim:
        raise ValidationError(
            f"Combined vector has dimension {arr.size}, expected {visual_dim + semantic_dim}",
            hint="Embedding dimensions do not match.",
        )
    visual = arr[:visual_dim]
    semantic = arr[visual_dim:]
    visual_out = visual.tolist() if float(np.linalg.norm(visual)) > _ZERO_TOLERANCE else None
    semantic_out = semantic.tolist() if float(np.linalg.norm(semantic)) > _ZERO_TOLERANCE else None
    return visual_out, semantic_out
