import uuid
from datetime import datetime, timezone
from typing import List, Optional

import sqlalchemy as sa
from databases import Database

from api.errors import PersistenceError

metadata = sa.MetaData()

# Video records. Locator columns hold a URL, a data URI, or a composite
# "bucket,key" reference that is presigned on the way out.
videos = sa.Table(
    "videos",
    metadata,
    sa.Column("id", sa.String(36), primary_key=True),
    sa.Column("user_id", sa.String(36), nullable=False),
    sa.Column("title", sa.String(255), nullable=False),
    sa.Column("description", sa.Text, default=""),
    sa.Column("thumbnail_url", sa.Text, nullable=True),
    sa.Column("video_url", sa.Text, nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)),
    sa.Column("updated_at", sa.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)),
    sa.Index("ix_videos_user_id", "user_id"),
    sa.Index("ix_videos_created_at", "created_at"),
)

# Columns the upload pipeline is allowed to change
LOCATOR_COLUMNS = frozenset(["thumbnail_url", "video_url"])


def _row_to_dict(row) -> dict:
    """Copy a fetched row into a plain dict keyed by column name."""
    return {column.name: row[column.name] for column in videos.columns}


def create_tables(database_url: str) -> None:
    """Create all tables using a synchronous engine (SQLite or PostgreSQL)."""
    engine = sa.create_engine(database_url)
    metadata.create_all(engine)
    engine.dispose()


class VideoStore:
    """
    Record store for videos, backed by the async `databases` library.

    Rows are returned as plain dicts so callers can copy and reshape them
    without touching persisted state.
    """

    def __init__(self, database: Database):
        self.database = database

    async def create(self, user_id: str, title: str, description: str = "") -> dict:
        now = datetime.now(timezone.utc)
        video_id = str(uuid.uuid4())
        try:
            await self.database.execute(
                videos.insert().values(
                    id=video_id,
                    user_id=user_id,
                    title=title,
                    description=description,
                    thumbnail_url=None,
                    video_url=None,
                    created_at=now,
                    updated_at=now,
                )
            )
            return await self.get(video_id)
        except Exception as e:
            raise PersistenceError("Couldn't create video", cause=e) from e

    async def get(self, video_id: str) -> Optional[dict]:
        row = await self.database.fetch_one(videos.select().where(videos.c.id == str(video_id)))
        return _row_to_dict(row) if row is not None else None

    async def list_for_user(self, user_id: str) -> List[dict]:
        try:
            rows = await self.database.fetch_all(
                videos.select().where(videos.c.user_id == user_id).order_by(videos.c.created_at.desc())
            )
        except Exception as e:
            raise PersistenceError("Couldn't list videos", cause=e) from e
        return [_row_to_dict(row) for row in rows]

    async def update_locators(self, video_id: str, updated_at: datetime, **locators: str) -> dict:
        """
        Overwrite locator columns and the updated timestamp of one record.

        Raises:
            PersistenceError: if an unknown column is named, the record vanished,
                or the database rejects the write
        """
        unknown = set(locators) - LOCATOR_COLUMNS
        if unknown or not locators:
            raise PersistenceError(cause=ValueError(f"Invalid locator columns: {sorted(unknown)}"))

        video_id = str(video_id)
        try:
            await self.database.execute(
                videos.update().where(videos.c.id == video_id).values(updated_at=updated_at, **locators)
            )
            row = await self.get(video_id)
        except Exception as e:
            raise PersistenceError(cause=e) from e

        if row is None:
            raise PersistenceError(cause=LookupError(f"video {video_id} disappeared during update"))
        return row

    async def delete(self, video_id: str) -> None:
        try:
            await self.database.execute(videos.delete().where(videos.c.id == str(video_id)))
        except Exception as e:
            raise PersistenceError("Couldn't delete video", cause=e) from e
