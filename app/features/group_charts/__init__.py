"""
Group charts feature package.

Weekly group charts built from members' Last.fm listening, plus the
derived all-time stats, trends, per-entry stats and group records.
"""
