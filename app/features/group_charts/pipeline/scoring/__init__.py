"""
Scoring package for group charts.

Pure Vibe Score curve and chart-mode contribution functions.
"""

from .service import ChartScoringService, chart_scoring_service, score, vibe_score_for_rank

__all__ = ["ChartScoringService", "chart_scoring_service", "score", "vibe_score_for_rank"]
