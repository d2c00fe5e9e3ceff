"""Semantic tool-trigger classifier: embeddings, prototypes and the threshold check."""
from .embeddings import DEFAULT_ENCODER_MODEL, EmbeddingTable, SentenceEncoderTable, Vectorizer
from .evaluator import ToolTriggerEvaluator, cosine_similarity, DEFAULT_THRESHOLD
from .exemplars import ExemplarProvider, TOOL_EXEMPLARS
