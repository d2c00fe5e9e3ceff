"""Embedding sources (word-vector file or sentence encoder) and the text vectorizer built on them."""
import logging
import string
from collections import OrderedDict
from pathlib import Path
from typing import Dict, Iterable, Mapping, Optional, Tuple, Union

import numpy as np

from ..errors import VectorizationMiss

logger = logging.getLogger(__name__)


class EmbeddingTable:
    """Lower-cased word/phrase -> float32 vector, all of one dimension."""

    def __init__(self, vectors: Optional[Mapping[str, Iterable[float]]] = None):
        self._vectors: Dict[str, np.ndarray] = {}
        self.dim: Optional[int] = None
        for word, vec in (vectors or {}).items():
            self.add(word, vec)

    def add(self, word: str, vec: Iterable[float]) -> bool:
        arr = np.asarray(list(vec), dtype=np.float32)
        if self.dim is None:
            self.dim = arr.shape[0]
        elif arr.shape[0] != self.dim:
            logger.warning(f"Skipping embedding '{word}': dim {arr.shape[0]} != {self.dim}")
            return False
        self._vectors[word.lower()] = arr
        return True

    def get(self, word: str) -> Optional[np.ndarray]:
        return self._vectors.get(word.lower())

    def __contains__(self, word: str) -> bool:
        return word.lower() in self._vectors

    def __len__(self) -> int:
        return len(self._vectors)

    @classmethod
    def load(cls, path: Union[str, Path]) -> "EmbeddingTable":
        """Read a GloVe or fastText ``.vec`` text file.

        fastText files start with a ``<count> <dim>`` header which is skipped.
        A missing file yields an empty table; every lookup then misses and the
        trigger classifier never fires, so it is logged as an error.
        """
        table = cls()
        path = Path(path)
        if not path.exists():
            logger.error(f"Embeddings file not found: {path} (tool triggering disabled)")
            return table

        with open(path, encoding="utf-8") as f:
            for lineno, line in enumerate(f):
                parts = line.rstrip().split(" ")
                if lineno == 0 and len(parts) == 2 and all(p.isdigit() for p in parts):
                    continue
                if len(parts) < 2:
                    continue
                word, values = _split_row(parts)
                try:
                    table.add(word, (float(v) for v in values))
                except ValueError:
                    logger.warning(f"Skipping malformed embedding row {lineno + 1} in {path}")
        logger.info(f"Loaded {len(table)} embeddings (dim={table.dim}) from {path}")
        return table


def _split_row(parts) -> Tuple[str, list]:
    # Multi-word keys are stored with spaces; the vector is the numeric tail.
    idx = len(parts)
    while idx > 1 and _is_number(parts[idx - 1]):
        idx -= 1
    return " ".join(parts[:idx]), parts[idx:]


def _is_number(token: str) -> bool:
    try:
        float(token)
    except ValueError:
        return False
    return True


DEFAULT_ENCODER_MODEL = "all-MiniLM-L6-v2"


class SentenceEncoderTable:
    """Embedding source backed by a sentence-transformers model.

    Any non-empty phrase resolves, so the whole-phrase lookup in ``Vectorizer``
    always hits. The model is loaded on first use; recent phrases are cached.
    """

    def __init__(self, model_name: str = DEFAULT_ENCODER_MODEL, cache_size: int = 512):
        self.model_name = model_name
        self.cache_size = cache_size
        self.dim: Optional[int] = None
        self._model = None
        self._cache: "OrderedDict[str, np.ndarray]" = OrderedDict()

    def _load_model(self):
        from sentence_transformers import SentenceTransformer
        logger.info(f"Loading sentence encoder: {self.model_name}")
        return SentenceTransformer(self.model_name)

    @property
    def model(self):
        if self._model is None:
            self._model = self._load_model()
        return self._model

    def get(self, phrase: str) -> Optional[np.ndarray]:
        key = phrase.strip().lower()
        if not key:
            return None
        cached = self._cache.get(key)
        if cached is not None:
            self._cache.move_to_end(key)
            return cached

        vec = np.asarray(self.model.encode(key), dtype=np.float32)
        self.dim = vec.shape[0]
        self._cache[key] = vec
        while len(self._cache) > self.cache_size:
            self._cache.popitem(last=False)
        return vec

    def __contains__(self, phrase: str) -> bool:
        return bool(phrase.strip())

    def __len__(self) -> int:
        return len(self._cache)


EmbeddingSource = Union[EmbeddingTable, SentenceEncoderTable]


class Vectorizer:
    """Maps text to a vector: whole-phrase lookup first, then the mean of token vectors."""

    def __init__(self, table: EmbeddingSource):
        self.table = table

    def vector(self, text: str) -> Optional[np.ndarray]:
        try:
            return self.encode(text)
        except VectorizationMiss:
            return None

    def encode(self, text: str) -> np.ndarray:
        phrase = text.strip().lower()
        if not phrase:
            raise VectorizationMiss("empty text")

        direct = self.table.get(phrase)
        if direct is not None:
            return direct

        token_vectors = []
        for token in phrase.split():
            vec = self.table.get(token.strip(string.punctuation))
            if vec is not None:
                token_vectors.append(vec)
        if not token_vectors:
            raise VectorizationMiss(f"no known tokens in '{phrase[:60]}'")
        return np.mean(np.stack(token_vectors), axis=0)
