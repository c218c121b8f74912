"""
Per-member weekly listening history.

Weekly top lists are cached in `user_weekly_stats` so regenerating a week
(or a second group sharing the member) does not hit Last.fm again.
"""

from psycopg.types.json import Jsonb

from app.db.helpers import DatabaseError, execute_query, fetch_one
from app.features.group_charts.domain import (
    ListeningHistoryError,
    ListeningItem,
    Member,
    WeeklyListening,
    WeekWindow,
)
from app.infrastructure.observability.logging import get_logger
from app.services.lastfm.client import LastfmError, lastfm_client

logger = get_logger(__name__)


def _items_from_json(payload) -> list[ListeningItem]:
    return [ListeningItem.from_dict(item) for item in payload or []]


class ListeningHistoryService:
    async def _load_cached(self, user_id: str, week: WeekWindow) -> WeeklyListening | None:
        query = """
            SELECT top_artists, top_tracks, top_albums
            FROM user_weekly_stats
            WHERE user_id = %s AND week_start = %s
        """
        row = await fetch_one(query, (user_id, week.start))
        if not row:
            return None

        return WeeklyListening(
            artists=_items_from_json(row["top_artists"]),
            tracks=_items_from_json(row["top_tracks"]),
            albums=_items_from_json(row["top_albums"]),
        )

    async def _store(self, user_id: str, week: WeekWindow, listening: WeeklyListening) -> None:
        query = """
            INSERT INTO user_weekly_stats (user_id, week_start, top_artists, top_tracks, top_albums)
            VALUES (%s, %s, %s, %s, %s)
            ON CONFLICT (user_id, week_start) DO UPDATE SET
                top_artists = EXCLUDED.top_artists,
                top_tracks = EXCLUDED.top_tracks,
                top_albums = EXCLUDED.top_albums,
                updated_at = NOW()
        """
        await execute_query(
            query,
            (
                user_id,
                week.start,
                Jsonb([item.to_dict() for item in listening.artists]),
                Jsonb([item.to_dict() for item in listening.tracks]),
                Jsonb([item.to_dict() for item in listening.albums]),
            ),
        )

    async def get_weekly_listening(self, member: Member, week: WeekWindow) -> WeeklyListening:
        """
        Return a member's top artists/tracks/albums for a week.

        Raises:
            ListeningHistoryError: the provider or the cache failed for this member
        """
        try:
            cached = await self._load_cached(member.user_id, week)
            if cached is not None:
                logger.debug(
                    "Listening history cache hit",
                    user_id=member.user_id,
                    week_start=week.start.isoformat(),
                )
                return cached

            listening = await lastfm_client.get_weekly_listening(member.lastfm_username, week)
            await self._store(member.user_id, week, listening)
            return listening

        except (LastfmError, DatabaseError) as e:
            raise ListeningHistoryError(
                member.user_id, f"Listening history unavailable for {member.label}: {e}"
            ) from e


listening_history_service = ListeningHistoryService()
