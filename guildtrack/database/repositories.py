"""Database repositories for guildtrack.

Provides the data access patterns the scheduling subsystem needs:
guild lookup, the pending/stale tracker query, scheduled refresh CRUD
with guarded status transitions, and scrape lease bookkeeping.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from guildtrack.database.models import (
    Guild,
    GuildMember,
    ScheduledRefresh,
    ScheduledRefreshStatus,
    ScrapeLease,
    Tracker,
    TrackerScrapingStatus,
    utcnow,
)


class GuildRepository:
    """Repository for guild lookups."""

    def __init__(self, session: Session):
        self.session = session

    def get_by_id(self, guild_id: str) -> Optional[Guild]:
        """
        Get guild by ID.

        Args:
            guild_id: Discord guild ID

        Returns:
            Guild if found, None otherwise
        """
        return self.session.query(Guild).filter(Guild.id == guild_id).first()

    def exists(self, guild_id: str) -> bool:
        """Check whether a guild with the given ID exists."""
        return self.session.query(Guild.id).filter(Guild.id == guild_id).first() is not None

    def create(self, guild_id: str, name: str, **kwargs: Any) -> Guild:
        """Create a guild record."""
        guild = Guild(id=guild_id, name=name, **kwargs)
        self.session.add(guild)
        self.session.commit()
        self.session.refresh(guild)
        return guild

    def add_member(self, guild_id: str, user_id: str, **kwargs: Any) -> GuildMember:
        """Add a user to a guild."""
        member = GuildMember(guild_id=guild_id, user_id=user_id, **kwargs)
        self.session.add(member)
        self.session.commit()
        self.session.refresh(member)
        return member


class TrackerRepository:
    """Repository for tracker queries used by the refresh pipeline."""

    def __init__(self, session: Session):
        self.session = session

    def find_pending_and_stale(
        self,
        refresh_interval_hours: float,
        guild_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> List[str]:
        """
        Find IDs of trackers that need a scrape.

        A tracker qualifies when any of these holds:
        - scraping_status is PENDING
        - it has never been scraped
        - it was last scraped before now - refresh_interval_hours

        The three conditions form one flat OR; nesting them produced wrong
        results. Trackers IN_PROGRESS, inactive or deleted never qualify.

        Args:
            refresh_interval_hours: Staleness threshold in hours
            guild_id: Restrict to trackers of live members of this guild
            now: Reference time (defaults to the current UTC time)

        Returns:
            Tracker IDs ordered by creation time
        """
        cutoff = (now or utcnow()) - timedelta(hours=refresh_interval_hours)

        query = self.session.query(Tracker.id).filter(
            Tracker.is_active.is_(True),
            Tracker.is_deleted.is_(False),
            Tracker.scraping_status != TrackerScrapingStatus.IN_PROGRESS.value,
            or_(
                Tracker.scraping_status == TrackerScrapingStatus.PENDING.value,
                Tracker.last_scraped_at.is_(None),
                Tracker.last_scraped_at < cutoff,
            ),
        )

        if guild_id is not None:
            members = select(GuildMember.user_id).where(
                GuildMember.guild_id == guild_id,
                GuildMember.is_deleted.is_(False),
                GuildMember.is_banned.is_(False),
            )
            query = query.filter(Tracker.user_id.in_(members))

        rows = query.order_by(Tracker.created_at, Tracker.id).all()
        return [row.id for row in rows]

    def create(self, **kwargs: Any) -> Tracker:
        """Create a tracker record."""
        tracker = Tracker(**kwargs)
        self.session.add(tracker)
        self.session.commit()
        self.session.refresh(tracker)
        return tracker


class ScheduledRefreshRepository:
    """
    Repository for scheduled refresh records.

    Terminal status writes go through transition(), which only updates a
    row that is still in the expected status.
    """

    def __init__(self, session: Session):
        self.session = session

    def create(self, **kwargs: Any) -> ScheduledRefresh:
        """
        Create a scheduled refresh.

        Args:
            **kwargs: ScheduledRefresh attributes

        Returns:
            Created record
        """
        schedule = ScheduledRefresh(**kwargs)
        self.session.add(schedule)
        self.session.commit()
        self.session.refresh(schedule)
        return schedule

    def get_by_id(self, schedule_id: str) -> Optional[ScheduledRefresh]:
        """Get a scheduled refresh by ID."""
        return self.session.query(ScheduledRefresh).filter(
            ScheduledRefresh.id == schedule_id
        ).first()

    def find_many(
        self,
        guild_id: Optional[str] = None,
        status: Optional[ScheduledRefreshStatus] = None,
        exclude_status: Optional[ScheduledRefreshStatus] = None,
    ) -> List[ScheduledRefresh]:
        """
        Find scheduled refreshes ordered by scheduled_at ascending.

        Args:
            guild_id: Only schedules for this guild
            status: Only schedules in this status
            exclude_status: Skip schedules in this status

        Returns:
            Matching schedules (possibly empty)
        """
        query = self.session.query(ScheduledRefresh)

        if guild_id is not None:
            query = query.filter(ScheduledRefresh.guild_id == guild_id)
        if status is not None:
            query = query.filter(ScheduledRefresh.status == status.value)
        if exclude_status is not None:
            query = query.filter(ScheduledRefresh.status != exclude_status.value)

        return query.order_by(ScheduledRefresh.scheduled_at.asc()).all()

    def find_pending(self) -> List[ScheduledRefresh]:
        """Find all PENDING schedules across guilds."""
        return self.find_many(status=ScheduledRefreshStatus.PENDING)

    def find_pending_ids(self) -> Set[str]:
        """IDs of all PENDING schedules."""
        rows = self.session.query(ScheduledRefresh.id).filter(
            ScheduledRefresh.status == ScheduledRefreshStatus.PENDING.value
        ).all()
        return {row.id for row in rows}

    def update(self, schedule_id: str, **kwargs: Any) -> Optional[ScheduledRefresh]:
        """
        Update a scheduled refresh unconditionally.

        Args:
            schedule_id: ID of the schedule
            **kwargs: Attributes to update

        Returns:
            Updated record, or None if not found
        """
        schedule = self.get_by_id(schedule_id)
        if schedule is None:
            return None

        for key, value in kwargs.items():
            if isinstance(value, ScheduledRefreshStatus):
                value = value.value
            if hasattr(schedule, key):
                setattr(schedule, key, value)

        self.session.commit()
        self.session.refresh(schedule)
        return schedule

    def transition(
        self,
        schedule_id: str,
        to_status: ScheduledRefreshStatus,
        expected: ScheduledRefreshStatus = ScheduledRefreshStatus.PENDING,
        **values: Any,
    ) -> bool:
        """
        Move a schedule to a new status only if it is still in `expected`.

        Args:
            schedule_id: ID of the schedule
            to_status: Status to write
            expected: Status the row must currently have
            **values: Additional attributes written in the same statement

        Returns:
            True if the row was updated. A copy of the row already loaded
            in this session is brought up to date either way.
        """
        values["status"] = to_status.value
        values["updated_at"] = utcnow()

        updated = self.session.query(ScheduledRefresh).filter(
            ScheduledRefresh.id == schedule_id,
            ScheduledRefresh.status == expected.value,
        ).update(values, synchronize_session="fetch")
        self.session.commit()
        return updated == 1

    def delete(self, schedule_id: str) -> bool:
        """
        Delete a scheduled refresh.

        Returns:
            True if a row was deleted
        """
        deleted = self.session.query(ScheduledRefresh).filter(
            ScheduledRefresh.id == schedule_id
        ).delete(synchronize_session=False)
        self.session.commit()
        return deleted > 0

    def delete_finished_before(self, cutoff: datetime) -> int:
        """
        Delete terminal schedules last updated before `cutoff`.

        Returns:
            Number of rows deleted
        """
        deleted = self.session.query(ScheduledRefresh).filter(
            ScheduledRefresh.status != ScheduledRefreshStatus.PENDING.value,
            ScheduledRefresh.updated_at < cutoff,
        ).delete(synchronize_session=False)
        self.session.commit()
        return deleted


class ScrapeLeaseRepository:
    """Repository for in-flight scrape leases."""

    def __init__(self, session: Session):
        self.session = session

    def get_active_tracker_ids(
        self,
        tracker_ids: Sequence[str],
        now: Optional[datetime] = None,
    ) -> Set[str]:
        """
        Return the subset of tracker_ids that currently hold an unexpired lease.
        """
        if not tracker_ids:
            return set()

        now = now or utcnow()
        rows = self.session.query(ScrapeLease.tracker_id).filter(
            ScrapeLease.tracker_id.in_(list(tracker_ids)),
            ScrapeLease.expires_at > now,
        ).all()
        return {row.tracker_id for row in rows}

    def acquire(
        self,
        tracker_ids: Iterable[str],
        holder: str,
        ttl_seconds: int,
        now: Optional[datetime] = None,
    ) -> List[str]:
        """
        Take leases for trackers that are not already leased.

        Expired leases are replaced. Input order is preserved.

        Returns:
            Tracker IDs whose lease was acquired by this call
        """
        now = now or utcnow()
        expires_at = now + timedelta(seconds=ttl_seconds)
        ids = list(dict.fromkeys(tracker_ids))
        if not ids:
            return []

        existing: Dict[str, ScrapeLease] = {
            lease.tracker_id: lease
            for lease in self.session.query(ScrapeLease).filter(
                ScrapeLease.tracker_id.in_(ids)
            ).all()
        }

        acquired: List[str] = []
        for tracker_id in ids:
            lease = existing.get(tracker_id)
            if lease is None:
                self.session.add(ScrapeLease(
                    tracker_id=tracker_id,
                    holder=holder,
                    acquired_at=now,
                    expires_at=expires_at,
                ))
            elif lease.expires_at <= now:
                lease.holder = holder
                lease.acquired_at = now
                lease.expires_at = expires_at
            else:
                continue
            acquired.append(tracker_id)

        self.session.commit()
        return acquired

    def release(self, tracker_ids: Iterable[str]) -> int:
        """
        Drop leases for the given trackers.

        Returns:
            Number of leases removed
        """
        ids = list(tracker_ids)
        if not ids:
            return 0

        deleted = self.session.query(ScrapeLease).filter(
            ScrapeLease.tracker_id.in_(ids)
        ).delete(synchronize_session=False)
        self.session.commit()
        return deleted
