"""
SQLAlchemy models for the guildtrack database.

Guilds, members and trackers are owned by the wider league backend and
only read (or leased) here. Scheduled refreshes and scrape leases are
owned by this package.

All timestamps are stored as naive UTC datetimes.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, declarative_base, mapped_column, relationship

# Create base class for all models
Base = declarative_base()


def utcnow() -> datetime:
    """Current time as a naive UTC datetime, matching stored values."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Normalize a datetime to naive UTC. Naive input is taken as UTC."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _new_id() -> str:
    return str(uuid4())


class ScheduledRefreshStatus(str, Enum):
    """Lifecycle of a scheduled refresh. Only PENDING is non-terminal."""

    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self is not ScheduledRefreshStatus.PENDING


class TrackerScrapingStatus(str, Enum):
    """Scrape state of a tracker, maintained by the scraping worker."""

    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class Guild(Base):
    """A Discord guild (league server) known to the backend."""

    __tablename__ = "guilds"

    # Discord snowflake
    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )

    members: Mapped[List["GuildMember"]] = relationship(
        "GuildMember", back_populates="guild", cascade="all, delete-orphan"
    )


class GuildMember(Base):
    """Membership of a Discord user in a guild."""

    __tablename__ = "guild_members"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    guild_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("guilds.id"), nullable=False, index=True
    )
    user_id: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_banned: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    guild: Mapped[Guild] = relationship("Guild", back_populates="members")


class Tracker(Base):
    """
    A player stats tracker (one game profile of one user).

    The scraping worker moves scraping_status through
    PENDING -> IN_PROGRESS -> COMPLETED | FAILED and stamps last_scraped_at.
    """

    __tablename__ = "trackers"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    url: Mapped[str] = mapped_column(String, nullable=False, default="")

    scraping_status: Mapped[str] = mapped_column(
        String(16),
        default=TrackerScrapingStatus.PENDING.value,
        nullable=False,
        index=True,
    )
    last_scraped_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime, nullable=True, index=True
    )

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )


class ScheduledRefresh(Base):
    """
    A persisted intent to refresh one guild's trackers at a future instant.

    Rows are the durable side of the in-memory timer registry: every
    PENDING row gets re-registered when the process starts.
    """

    __tablename__ = "scheduled_refreshes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    guild_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("guilds.id"), nullable=False, index=True
    )
    scheduled_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    status: Mapped[str] = mapped_column(
        String(16),
        default=ScheduledRefreshStatus.PENDING.value,
        nullable=False,
        index=True,
    )
    created_by: Mapped[str] = mapped_column(String(32), nullable=False)
    executed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Named 'refresh_metadata' to avoid conflict with SQLAlchemy's reserved 'metadata' attribute
    refresh_metadata: Mapped[Optional[Dict[str, Any]]] = mapped_column(
        JSON, default=dict, name="metadata"
    )

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )

    @property
    def job_id(self) -> str:
        """Registry key of the timer that fires this schedule."""
        return scheduled_job_id(self.id)

    @property
    def status_enum(self) -> ScheduledRefreshStatus:
        return ScheduledRefreshStatus(self.status)

    def to_dict(self) -> Dict[str, Any]:
        """Convert scheduled refresh to dictionary representation."""
        return {
            "id": self.id,
            "guild_id": self.guild_id,
            "scheduled_at": self.scheduled_at.isoformat() if self.scheduled_at else None,
            "status": self.status,
            "created_by": self.created_by,
            "executed_at": self.executed_at.isoformat() if self.executed_at else None,
            "error_message": self.error_message,
            "metadata": self.refresh_metadata,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class ScrapeLease(Base):
    """
    In-flight processing lease for a tracker.

    Taken when a tracker is submitted to the scrape queue and released
    by the worker when it finishes; expired leases no longer count.
    """

    __tablename__ = "scrape_leases"

    tracker_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("trackers.id"), primary_key=True
    )
    holder: Mapped[str] = mapped_column(String, nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)


SCHEDULED_JOB_PREFIX = "scheduled-processing-"


def scheduled_job_id(schedule_id: str) -> str:
    """Derive the timer registry key for a scheduled refresh."""
    return f"{SCHEDULED_JOB_PREFIX}{schedule_id}"


# Additional indexes for common queries
Index("ix_scheduled_refreshes_guild_scheduled_at", ScheduledRefresh.guild_id, ScheduledRefresh.scheduled_at)
Index("ix_guild_members_guild_user", GuildMember.guild_id, GuildMember.user_id)
