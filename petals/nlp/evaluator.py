"""Prototype builder and tool-trigger evaluator (cosine similarity against a centroid)."""
import logging
from typing import Iterable, Optional

import numpy as np

from .embeddings import Vectorizer

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 0.75


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    """Cosine similarity between two vectors; 0.0 when either has zero magnitude."""
    norm_a = np.linalg.norm(a)
    norm_b = np.linalg.norm(b)
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return float(np.dot(a, b) / (norm_a * norm_b))


class ToolTriggerEvaluator:
    def __init__(self, vectorizer: Vectorizer, threshold: float = DEFAULT_THRESHOLD):
        self.vectorizer = vectorizer
        self.threshold = threshold

    def vector(self, text: str) -> Optional[np.ndarray]:
        return self.vectorizer.vector(text)

    def prototype(self, exemplars: Iterable[str]) -> Optional[np.ndarray]:
        """Centroid of the exemplars that vectorize; None if none do."""
        vectors = [v for v in (self.vectorizer.vector(e) for e in exemplars) if v is not None]
        if not vectors:
            return None
        return np.mean(np.stack(vectors), axis=0)

    def similarity(self, message: str, prototype: np.ndarray) -> Optional[float]:
        vec = self.vectorizer.vector(message)
        if vec is None:
            return None
        return cosine_similarity(vec, prototype)

    def should_trigger(self, message: str, prototype: np.ndarray, threshold: Optional[float] = None) -> bool:
        """True when the message is at least ``threshold`` similar to the prototype.

        A message that cannot be vectorized never triggers.
        """
        if threshold is None:
            threshold = self.threshold
        score = self.similarity(message, prototype)
        if score is None:
            logger.debug(f"Trigger miss: could not vectorize '{message[:60]}'")
            return False
        return score >= threshold
