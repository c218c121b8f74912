"""
Service layer for the group charts feature.
"""
