"""
Vector math shared by the semantic chunker, the SQLite store and MMR.
"""

from __future__ import annotations

from typing import Sequence

import numpy as np


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity of two vectors; 0.0 when either has zero norm."""
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    norm_a = np.linalg.norm(va)
    norm_b = np.linalg.norm(vb)
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return float(np.dot(va, vb) / (norm_a * norm_b))


def cosine_similarity_batch(query: np.ndarray, matrix: np.ndarray) -> np.ndarray:
    """Compute cosine similarity between *query* (1-D) and each row of *matrix*."""
    query_norm = np.linalg.norm(query)
    if query_norm == 0:
        return np.zeros(matrix.shape[0])
    row_norms = np.linalg.norm(matrix, axis=1)
    row_norms[row_norms == 0] = 1.0
    return (matrix @ query) / (row_norms * query_norm)


def euclidean_distance_batch(query: np.ndarray, matrix: np.ndarray) -> np.ndarray:
    """L2 distance between *query* and each row of *matrix*."""
    return np.linalg.norm(matrix - query, axis=1)


def distance_to_score(distance: float) -> float:
    """Map a non-negative distance to (0, 1]; 0 maps to 1.0, strictly decreasing."""
    return 1.0 / (1.0 + max(0.0, float(distance)))
