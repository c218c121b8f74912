"""
Exceptions raised by the group charts feature.
"""


class GroupChartsError(Exception):
    """Base class for group chart failures."""


class GroupNotFoundError(GroupChartsError):
    def __init__(self, group_id: str):
        super().__init__(f"Group {group_id} not found")
        self.group_id = group_id


class GenerationInProgressError(GroupChartsError):
    """Another run holds the group's generation lock."""

    def __init__(self, group_id: str):
        super().__init__(f"Chart generation already in progress for group {group_id}")
        self.group_id = group_id


class GenerationAbortedError(GroupChartsError):
    """Too many members failed to fetch; the remaining backlog was abandoned."""

    def __init__(self, group_id: str, failed_users: list[str], weeks_committed: int):
        super().__init__(
            f"Chart generation aborted for group {group_id}: "
            f"{len(failed_users)} member(s) failed to fetch"
        )
        self.group_id = group_id
        self.failed_users = failed_users
        self.weeks_committed = weeks_committed


class ListeningHistoryError(GroupChartsError):
    """Listening history for one member could not be fetched."""

    def __init__(self, user_id: str, message: str):
        super().__init__(message)
        self.user_id = user_id


class RecordsCalculationSkipped(GroupChartsError):
    """The records guard refused a new calculation."""
