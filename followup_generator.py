#!/usr/bin/env python3
"""
Per-Contact Follow-up Generator

Computes, for a single contact, the follow-ups that must be added, removed
or recreated so that every day of the generation period holds exactly the
configured daily quota. Pure functions only; all storage access happens in
the run controller.
"""

import logging
from collections import OrderedDict
from datetime import date, timedelta
from typing import Dict, FrozenSet, List, Optional, Sequence

from scheduler import (
    Contact, FollowUp, FollowUpStatus, GenerationPeriod, GenerationResult,
    MonitoringStatus, MonitoringWindow, new_id
)
from team_assignment import RoundRobinCursor

logger = logging.getLogger(__name__)


def monitoring_window_overlaps(window: MonitoringWindow, start_date: date, end_date: date) -> bool:
    """
    True when a monitoring window shares at least one day with the period.

    Covers the window containing the period, starting inside it, ending
    inside it, and being contained by it.
    """
    if not window.is_set:
        return False
    return window.start_date <= end_date and window.end_date >= start_date


def is_eligible_for_generation(contact: Contact, start_date: date, end_date: date) -> bool:
    return (
        contact.follow_up.status == MonitoringStatus.UNDER_FOLLOW_UP.value
        and monitoring_window_overlaps(contact.follow_up, start_date, end_date)
    )


def parse_follow_up_interval(interval: Optional[str]) -> Optional[FrozenSet[int]]:
    """
    Parse an interval restriction such as "1, 3, 5" into day indexes.

    Returns None when no restriction applies.

    Raises:
        ValueError: when a value is not a positive integer
    """
    if not interval:
        return None
    values = [v.strip() for v in interval.split(',') if v.strip()]
    if not values:
        return None
    indexes = frozenset(int(v) for v in values)
    if any(i <= 0 for i in indexes):
        raise ValueError(f"Interval indexes must be positive: {interval!r}")
    return indexes


def days_since(start_date: date, day: date) -> int:
    return (day - start_date).days


def _followups_by_day(followups: Sequence[FollowUp]) -> Dict[date, List[FollowUp]]:
    by_day: Dict[date, List[FollowUp]] = OrderedDict()
    for followup in followups:
        by_day.setdefault(followup.date, []).append(followup)
    return by_day


def _create_followup_entry(contact: Contact, day: date, team_id: Optional[str], targeted: bool,
                           followup_id: Optional[str] = None) -> FollowUp:
    return FollowUp(
        id=followup_id or new_id(),
        outbreak_id=contact.outbreak_id,
        contact_id=contact.id,
        date=day,
        team_id=team_id,
        status=FollowUpStatus.NOT_PERFORMED.value,
        targeted=targeted,
        # day one of monitoring has index 1
        index=days_since(contact.follow_up.start_date, day) + 1,
        address=contact.current_address()
    )


def generate_followups_for_contact(
    contact: Contact,
    eligible_teams: Sequence[str],
    period: GenerationPeriod,
    frequency: int,
    per_day: int,
    targeted: bool,
    overwrite_existing: bool,
    today: date,
    interval: Optional[FrozenSet[int]] = None
) -> GenerationResult:
    """
    Diff desired against existing follow-ups for one contact.

    Args:
        contact: Contact with `followups` pre-loaded for the period, in stored order
        eligible_teams: Team pool for round-robin assignment; may be empty
        period: Requested generation period (clipped here to the monitoring window)
        frequency: Day step between generated dates
        per_day: Daily quota of follow-ups
        targeted: Flag set on every generated follow-up
        overwrite_existing: Recreate future follow-ups that were not performed
        today: Reference day; days strictly after it count as future
        interval: Optional allowed day indexes

    Returns:
        GenerationResult with follow-ups to add, ids to remove, and records to recreate
    """
    result = GenerationResult()

    clipped = period.clip_to(contact.follow_up)
    if clipped is None:
        return result

    existing_by_day = _followups_by_day(contact.followups)
    cursor = RoundRobinCursor(eligible_teams)

    day = clipped.start_date
    while day <= clipped.end_date:
        existing = existing_by_day.get(day, [])
        is_future = day > today
        allowed = interval is None or (days_since(contact.follow_up.start_date, day) + 1) in interval

        if is_future and len(existing) > per_day:
            excess = len(existing) - per_day
            result.to_remove.extend(f.id for f in existing[:excess])
            kept = existing[excess:]
            to_generate = 0
        else:
            kept = existing
            to_generate = max(0, per_day - len(existing))

        if allowed and overwrite_existing and is_future:
            for followup in kept:
                if followup.status == FollowUpStatus.NOT_PERFORMED.value:
                    result.to_recreate[followup.id] = _create_followup_entry(
                        contact, day, cursor.next_team(), targeted, followup_id=followup.id
                    )

        if allowed:
            for _ in range(to_generate):
                result.to_add.append(_create_followup_entry(contact, day, cursor.next_team(), targeted))

        day += timedelta(days=frequency)

    if not result.is_empty:
        logger.debug(
            f"Contact {contact.id}: {len(result.to_add)} to add, {len(result.to_remove)} to remove, "
            f"{len(result.to_recreate)} to recreate"
        )
    return result
