"""
URL-facing record types and how each one is ranked.

Entry record types rank chart entries by a ChartEntryStats field; artist
record types rank artists by the counts the records engine computes.
"""

from .calculations import ARTIST_RECORDS

STATS_FIELD_BY_RECORD_TYPE = {
    "most-weeks-on-chart": "total_weeks_charting",
    "most-weeks-in-top-10": "weeks_in_top_10",
    "most-consecutive-weeks": "longest_streak",
    "most-plays": "total_plays",
    "most-total-vs": "total_vs",
    "most-weeks-at-one": "weeks_at_one",
}

ARTIST_RECORD_TYPES = {name.replace("_", "-"): name for name in ARTIST_RECORDS}

DISPLAY_NAMES = {
    "most-weeks-on-chart": "Most Weeks on Chart",
    "most-weeks-in-top-10": "Most Weeks in Top 10",
    "most-consecutive-weeks": "Most Consecutive Weeks",
    "most-plays": "Most Plays",
    "most-total-vs": "Most Total VS",
    "most-weeks-at-one": "Most Weeks at #1",
    "artist-most-number-one-songs": "Artist with Most #1 Songs",
    "artist-most-number-one-albums": "Artist with Most #1 Albums",
    "artist-most-songs-in-top-10": "Artist with Most Songs in Top 10",
    "artist-most-albums-in-top-10": "Artist with Most Albums in Top 10",
    "artist-most-songs-charted": "Artist with Most Songs Charted",
    "artist-most-albums-charted": "Artist with Most Albums Charted",
}


def get_record_type_field_mapping(record_type: str) -> str | None:
    return STATS_FIELD_BY_RECORD_TYPE.get(record_type)


def is_artist_specific_record_type(record_type: str) -> bool:
    return record_type in ARTIST_RECORD_TYPES


def is_record_type_supported(record_type: str) -> bool:
    return (
        get_record_type_field_mapping(record_type) is not None
        or is_artist_specific_record_type(record_type)
    )


def get_record_type_display_name(record_type: str) -> str:
    return DISPLAY_NAMES.get(record_type, record_type)
