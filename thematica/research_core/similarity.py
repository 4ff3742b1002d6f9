from __future__ import annotations

import numpy as np


def unit_rows(vectors: np.ndarray) -> np.ndarray:
    matrix = np.atleast_2d(np.asarray(vectors, dtype=np.float64))
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    norms[norms == 0.0] = 1.0
    return matrix / norms


def cosine(a: np.ndarray, b: np.ndarray) -> float:
    na = float(np.linalg.norm(a))
    nb = float(np.linalg.norm(b))
    if na == 0.0 or nb == 0.0:
        return 0.0
    return float(np.dot(a, b) / (na * nb))


def coherence(code_vectors: np.ndarray, centroid: np.ndarray) -> float:
    """Mean cosine of member vectors to their centroid, clipped to [0, 1]."""
    if len(code_vectors) == 0:
        return 0.0
    sims = unit_rows(code_vectors) @ unit_rows(centroid)[0]
    return float(np.clip(np.mean(sims), 0.0, 1.0))
