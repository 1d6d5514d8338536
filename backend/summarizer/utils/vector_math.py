"""Similarity and distance helpers shared by the embedding stores and the retriever."""
from typing import Sequence, Tuple

import numpy as np

from summarizer.models.document import DistanceMetric


def clamp_unit(value: float) -> float:
    """Clamp a score into [0, 1]."""
    return float(min(1.0, max(0.0, value)))


def cosine_similarity(vector_a: Sequence[float], vector_b: Sequence[float]) -> float:
    """
    Raw cosine similarity in [-1, 1]. Zero-magnitude vectors score 0.

    Raises:
        ValueError: If the vectors differ in length
    """
    a = np.asarray(vector_a, dtype=np.float64)
    b = np.asarray(vector_b, dtype=np.float64)
    if a.shape != b.shape:
        raise ValueError(f"Vectors must have the same length ({a.shape[0]} != {b.shape[0]})")

    magnitude = float(np.linalg.norm(a) * np.linalg.norm(b))
    if magnitude == 0.0:
        return 0.0
    return float(np.dot(a, b) / magnitude)


def score_vectors(
    query: Sequence[float], vector: Sequence[float], metric: DistanceMetric
) -> Tuple[float, float]:
    """
    Compute (similarity, distance) for one stored vector.

    Cosine and dot-product similarities are clamped into [0, 1]; euclidean
    similarity is 1 / (1 + distance).
    """
    if metric == DistanceMetric.EUCLIDEAN:
        distance = float(np.linalg.norm(np.asarray(query, dtype=np.float64) - np.asarray(vector, dtype=np.float64)))
        return 1.0 / (1.0 + distance), distance
    if metric == DistanceMetric.DOT_PRODUCT:
        dot = float(np.dot(np.asarray(query, dtype=np.float64), np.asarray(vector, dtype=np.float64)))
        return clamp_unit(dot), 1.0 - dot

    cosine = cosine_similarity(query, vector)
    return clamp_unit(cosine), 1.0 - cosine


def score_matrix(query: Sequence[float], matrix: np.ndarray, norms: np.ndarray, metric: DistanceMetric) -> Tuple[np.ndarray, np.ndarray]:
    """
    Vectorised variant of score_vectors against a stacked (n, dim) matrix.

    Args:
        query: Query vector
        matrix: Stored vectors, one per row
        norms: Precomputed row norms of matrix
        metric: Distance metric

    Returns:
        Tuple of (similarities, distances) arrays
    """
    q = np.asarray(query, dtype=np.float64)

    if metric == DistanceMetric.EUCLIDEAN:
        distances = np.linalg.norm(matrix - q, axis=1)
        return 1.0 / (1.0 + distances), distances

    dots = matrix @ q
    if metric == DistanceMetric.DOT_PRODUCT:
        return np.clip(dots, 0.0, 1.0), 1.0 - dots

    magnitudes = norms * float(np.linalg.norm(q))
    with np.errstate(divide="ignore", invalid="ignore"):
        cosines = np.where(magnitudes > 0, dots / magnitudes, 0.0)
    return np.clip(cosines, 0.0, 1.0), 1.0 - cosines
