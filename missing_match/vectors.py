"""
Vector helpers: shape/finiteness checks and L2 normalization.

Embeddings are kept as float64 unit vectors in memory so a score computed
from a stored vector matches the exact threshold arithmetic; they are
rounded to float32 only when written to the FAISS index.
"""
from typing import Sequence, Type, Union

import numpy as np

from missing_match.config import NORM_TOLERANCE
from missing_match.errors import InvalidVectorKind, MatchingError

VectorLike = Union[Sequence[float], np.ndarray]


def as_vector(
    values: VectorLike,
    dimension: int,
    error: Type[MatchingError] = InvalidVectorKind
) -> np.ndarray:
    """
    Convert input to a 1-D float64 array and check its shape and values.

    Args:
        values: Sequence of numbers or numpy array
        dimension: Required number of components
        error: Exception class raised on invalid input

    Returns:
        float64 numpy array of shape (dimension,)
    """
    try:
        vector = np.asarray(values, dtype=np.float64)
    except (TypeError, ValueError) as e:
        raise error(f"Vector is not numeric: {e}")

    if vector.ndim != 1:
        raise error(f"Vector must be one-dimensional, got shape {vector.shape}")
    if vector.shape[0] != dimension:
        raise error(f"Expected dimension {dimension}, got {vector.shape[0]}")
    if not np.all(np.isfinite(vector)):
        raise error("Vector contains non-finite values")

    return vector


def l2_norm(vector: np.ndarray) -> float:
    return float(np.linalg.norm(np.asarray(vector, dtype=np.float64)))


def normalize(vector: np.ndarray, error: Type[MatchingError] = InvalidVectorKind) -> np.ndarray:
    """Divide by the L2 norm. Zero or non-finite magnitude cannot be normalized."""
    vector = np.asarray(vector, dtype=np.float64)
    norm = l2_norm(vector)
    if norm == 0.0 or not np.isfinite(norm):
        raise error(f"Vector magnitude {norm} cannot be normalized")
    return vector / norm


def to_unit_vector(values: VectorLike, dimension: int) -> np.ndarray:
    """Validate, normalize and freeze a vector in the stored float64 format."""
    unit = normalize(as_vector(values, dimension))
    unit.setflags(write=False)
    return unit


def is_unit(vector: np.ndarray, tolerance: float = NORM_TOLERANCE) -> bool:
    return abs(l2_norm(vector) - 1.0) <= tolerance
