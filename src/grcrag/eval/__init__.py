"""Evaluation harness for retrieval and answering quality."""

from .cli import EvaluationResult, main, run_evaluation

__all__ = ["EvaluationResult", "main", "run_evaluation"]
