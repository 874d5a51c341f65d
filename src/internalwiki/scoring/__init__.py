"""Document trust scoring."""

from .service import SCORE_MODEL_VERSION, SCORE_WEIGHTS, compute_source_score, recency_decay

__all__ = ["SCORE_MODEL_VERSION", "SCORE_WEIGHTS", "compute_source_score", "recency_decay"]
