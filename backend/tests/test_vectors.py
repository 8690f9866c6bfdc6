"""Tests for vector arithmetic helpers."""

from __future__ import annotations

import math

import pytest

from memory_engine.core.errors import ValidationError
from memory_engine.utils.vectors import (
    combine_channels,
    cosine_similarity,
    magnitude,
    mean_vector,
    normalize_vector,
    split_channels,
)


def test_cosine_similarity_is_symmetric_and_bounded():
    a = [0.3, -1.2, 4.0]
    b = [2.0, 0.5, -0.1]
    assert cosine_similarity(a, b) == pytest.approx(cosine_similarity(b, a))
    assert -1.0 <= cosine_similarity(a, b) <= 1.0


def test_cosine_similarity_of_vector_with_itself_is_one():
    v = [0.1, 0.2, 0.3, 0.4]
    assert cosine_similarity(v, v) == pytest.approx(1.0)
    assert cosine_similarity(v, [-x for x in v]) == pytest.approx(-1.0)


def test_cosine_similarity_rejects_dimension_mismatch():
    with pytest.raises(ValidationError):
        cosine_similarity([1.0, 0.0], [1.0, 0.0, 0.0])


def test_cosine_similarity_with_zero_vector_is_zero():
    assert cosine_similarity([0.0, 0.0], [1.0, 2.0]) == 0.0


def test_normalize_vector():
    assert normalize_vector([3.0, 4.0]) == pytest.approx([0.6, 0.8])
    assert magnitude(normalize_vector([1.0, 2.0, 2.0])) == pytest.approx(1.0)
    assert normalize_vector([0.0, 0.0, 0.0]) == [0.0, 0.0, 0.0]


def test_mean_vector():
    assert mean_vector([[1.0, 3.0], [3.0, 5.0]]) == pytest.approx([2.0, 4.0])
    with pytest.raises(ValidationError):
        mean_vector([])
    with pytest.raises(ValidationError):
        mean_vector([[1.0], [1.0, 2.0]])


def test_combine_channels_weights_each_normalised_slot():
    combined = combine_channels(
        [3.0, 4.0],
        [0.0, 2.0],
        visual_dim=2,
        semantic_dim=2,
        visual_weight=0.6,
        semantic_weight=0.4,
    )
    assert combined == pytest.approx([0.36, 0.48, 0.0, 0.4])


def test_single_channel_gets_full_weight():
    combined = combine_channels(
        None,
        [0.0, 5.0],
        visual_dim=2,
        semantic_dim=2,
        visual_weight=0.6,
        semantic_weight=0.4,
    )
    assert combined == pytest.approx([0.0, 0.0, 0.0, 1.0])
    assert math.isclose(magnitude(combined), 1.0)


def test_combine_channels_requires_one_channel_and_matching_dims():
    with pytest.raises(ValidationError):
        combine_channels(None, None, visual_dim=2, semantic_dim=2, visual_weight=0.6, semantic_weight=0.4)
    with pytest.raises(ValidationError):
        combine_channels([1.0], None, visual_dim=2, semantic_dim=2, visual_weight=0.6, semantic_weight=0.4)


def test_split_channels_recovers_slots():
    combined = combine_channels(
        [1.0, 0.0],
        None,
        visual_dim=2,
        semantic_dim=3,
        visual_weight=0.6,
        semantic_weight=0.4,
    )
    visual, semantic = split_channels(combined, visual_dim=2, semantic_dim=3)
    assert visual == pytest.approx([1.0, 0.0])
    assert semantic is None

    with pytest.raises(ValidationError):
        split_channels([1.0, 2.0], visual_dim=2, semantic_dim=3)
