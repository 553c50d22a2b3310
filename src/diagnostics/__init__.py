"""Namespace best-practice diagnostics."""

from .scorer import DEFAULT_CHECKS, Check, DiagnosticReport, DiagnosticScorer

__all__ = ["Check", "DEFAULT_CHECKS", "DiagnosticReport", "DiagnosticScorer"]
