"""
Pipeline package for group charts.

Scoring, weekly aggregation and records calculation.
"""
