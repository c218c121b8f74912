"""
Persistence for groups, their members and the generation lock.

The lock fields on `groups` are the only shared mutable state between
concurrent runs, so every write to them is a conditional UPDATE whose
rowcount says whether this caller still owns the lock.
"""

from psycopg.types.json import Jsonb

from app.db.helpers import execute_query, fetch_all, fetch_one
from app.features.group_charts.domain import (
    ChartMode,
    ChartType,
    GenerationLock,
    GenerationProgress,
    Group,
    Member,
)
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class GroupRepository:
    """Raw SQL helpers for groups and the generation lock."""

    GROUP_SELECT_COLUMNS = """
        id, name, tracking_day_of_week, chart_size, chart_mode,
        generation_in_progress, generation_started_at, generation_progress,
        last_failed_users, last_aborted, dynamic_icon_enabled,
        dynamic_icon_source, image_url
    """

    @classmethod
    def _row_to_group(cls, row: dict | None) -> Group | None:
        if not row:
            return None

        return Group(
            id=str(row["id"]),
            name=row["name"],
            tracking_day_of_week=row["tracking_day_of_week"],
            chart_size=row["chart_size"],
            chart_mode=ChartMode(row["chart_mode"]),
            generation_in_progress=row["generation_in_progress"],
            generation_started_at=row.get("generation_started_at"),
            generation_progress=GenerationProgress.from_dict(row.get("generation_progress")),
            last_failed_users=list(row.get("last_failed_users") or []),
            last_aborted=bool(row.get("last_aborted")),
            dynamic_icon_enabled=bool(row.get("dynamic_icon_enabled")),
            dynamic_icon_source=ChartType(row.get("dynamic_icon_source") or ChartType.ARTISTS.value),
            image_url=row.get("image_url"),
        )

    @classmethod
    async def get_group(cls, group_id: str) -> Group | None:
        query = f"SELECT {cls.GROUP_SELECT_COLUMNS} FROM groups WHERE id = %s"
        row = await fetch_one(query, (group_id,))
        return cls._row_to_group(row)

    @classmethod
    async def list_members(cls, group_id: str) -> list[Member]:
        query = """
            SELECT gm.group_id, gm.user_id, u.lastfm_username, u.display_name
            FROM group_members gm
            JOIN users u ON u.id = gm.user_id
            WHERE gm.group_id = %s
            ORDER BY gm.joined_at ASC, gm.user_id ASC
        """

        rows = await fetch_all(query, (group_id,))
        return [
            Member(
                group_id=str(row["group_id"]),
                user_id=str(row["user_id"]),
                lastfm_username=row["lastfm_username"],
                display_name=row.get("display_name"),
            )
            for row in rows
        ]

    @classmethod
    async def reset_stale_lock(cls, group_id: str, timeout_minutes: int) -> bool:
        """Force-release a lock whose holder started more than timeout_minutes ago."""

        query = """
            UPDATE groups
            SET generation_in_progress = false,
                generation_started_at = NULL,
                generation_progress = NULL
            WHERE id = %s
              AND generation_in_progress = true
              AND (
                generation_started_at IS NULL
                OR generation_started_at < NOW() - make_interval(mins => %s)
              )
        """

        reset = await execute_query(query, (group_id, timeout_minutes)) > 0
        if reset:
            logger.warning(
                "Stale generation lock reset", group_id=group_id, timeout_minutes=timeout_minutes
            )
        return reset

    @classmethod
    async def try_acquire_lock(
        cls, group_id: str, progress: GenerationProgress
    ) -> GenerationLock | None:
        """Compare-and-swap generation_in_progress false -> true; None when another run holds it."""

        query = """
            UPDATE groups
            SET generation_in_progress = true,
                generation_started_at = NOW(),
                generation_progress = %s
            WHERE id = %s
              AND generation_in_progress = false
            RETURNING generation_started_at
        """

        row = await fetch_one(query, (Jsonb(progress.to_dict()), group_id))
        if not row:
            return None

        logger.info("Generation lock acquired", group_id=group_id)
        return GenerationLock(group_id=group_id, started_at=row["generation_started_at"])

    @classmethod
    async def update_progress(cls, lock: GenerationLock, progress: GenerationProgress) -> bool:
        query = """
            UPDATE groups
            SET generation_progress = %s
            WHERE id = %s
              AND generation_in_progress = true
              AND generation_started_at = %s
        """

        updated = await execute_query(
            query, (Jsonb(progress.to_dict()), lock.group_id, lock.started_at)
        )
        if not updated:
            logger.warning(
                "Progress update skipped, lock no longer held",
                group_id=lock.group_id,
                stage=progress.stage.value,
            )
        return updated > 0

    @classmethod
    async def release_lock(cls, lock: GenerationLock) -> bool:
        query = """
            UPDATE groups
            SET generation_in_progress = false,
                generation_started_at = NULL,
                generation_progress = NULL
            WHERE id = %s
              AND generation_in_progress = true
              AND generation_started_at = %s
        """

        released = await execute_query(query, (lock.group_id, lock.started_at)) > 0
        if released:
            logger.info("Generation lock released", group_id=lock.group_id)
        else:
            logger.warning("Generation lock was already released or taken over", group_id=lock.group_id)
        return released

    @classmethod
    async def record_run_diagnostics(
        cls, group_id: str, failed_users: list[str], aborted: bool
    ) -> None:
        query = """
            UPDATE groups
            SET last_failed_users = %s,
                last_aborted = %s,
                updated_at = NOW()
            WHERE id = %s
        """

        await execute_query(query, (failed_users, aborted, group_id))
        logger.info(
            "Generation diagnostics recorded",
            group_id=group_id,
            failed_users=len(failed_users),
            aborted=aborted,
        )

    @classmethod
    async def update_image_url(cls, group_id: str, image_url: str) -> None:
        query = """
            UPDATE groups
            SET image_url = %s,
                updated_at = NOW()
            WHERE id = %s
        """

        await execute_query(query, (image_url, group_id))
