#!/usr/bin/env python3
"""
Team Assignment

Builds the per-run team/location index and decides which field teams may be
assigned to a contact's generated follow-ups. Assignment inside that pool is
done with an explicit round-robin cursor owned by the caller.
"""

import asyncio
import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import FrozenSet, Iterable, List, Mapping, Optional, Sequence, Tuple

from scheduler import Contact, DatabaseManager, TeamAssignmentAlgorithm

logger = logging.getLogger(__name__)

# ============================================================================
# TEAM / LOCATION INDEX
# ============================================================================

@dataclass(frozen=True)
class TeamCoverage:
    """Locations a team covers, with their depth below the team's own locations"""
    team_id: str
    depths: Mapping[str, int]

    @property
    def location_ids(self) -> FrozenSet[str]:
        return frozenset(self.depths)

    def covers(self, location_id: Optional[str]) -> bool:
        return location_id is not None and location_id in self.depths

    def depth_of(self, location_id: str) -> Optional[int]:
        return self.depths.get(location_id)


class TeamLocationIndex:
    """Immutable snapshot of team coverage, valid for one generation run"""

    def __init__(self, coverages: Iterable[TeamCoverage]):
        self._coverages: Tuple[TeamCoverage, ...] = tuple(coverages)

    def __len__(self) -> int:
        return len(self._coverages)

    @property
    def team_ids(self) -> List[str]:
        return [c.team_id for c in self._coverages]

    def covered_locations(self, team_id: str) -> FrozenSet[str]:
        for coverage in self._coverages:
            if coverage.team_id == team_id:
                return coverage.location_ids
        return frozenset()

    def teams_covering(self, location_id: Optional[str]) -> List[str]:
        """Every team whose covered set contains the location, in team order"""
        return [c.team_id for c in self._coverages if c.covers(location_id)]

    def nearest_fit_teams(self, location_id: Optional[str]) -> List[str]:
        """
        Teams reaching the location at the smallest hierarchy distance.

        A team assigned directly to the location (depth 0) beats a team that
        only reaches it through a parent region.
        """
        nearest: List[str] = []
        shortest: Optional[int] = None
        for coverage in self._coverages:
            if not coverage.covers(location_id):
                continue
            depth = coverage.depth_of(location_id)
            if shortest is None or depth < shortest:
                nearest = [coverage.team_id]
                shortest = depth
            elif depth == shortest:
                nearest.append(coverage.team_id)
        return nearest


async def build_team_location_index(db: DatabaseManager) -> TeamLocationIndex:
    """Resolve every team's configured locations to their descendant closure"""
    teams = await asyncio.to_thread(db.find_all_teams)
    depth_maps = await asyncio.gather(*(
        asyncio.to_thread(db.expand_to_descendants, team.location_ids) for team in teams
    ))

    index = TeamLocationIndex(
        TeamCoverage(team.id, MappingProxyType(dict(depths)))
        for team, depths in zip(teams, depth_maps)
    )
    logger.info(f"Resolved location coverage for {len(index)} teams")
    return index

# ============================================================================
# ELIGIBLE TEAMS
# ============================================================================

def eligible_teams_for_contact(
    contact: Contact,
    team_index: TeamLocationIndex,
    algorithm: str = TeamAssignmentAlgorithm.ROUND_ROBIN_ALL_TEAMS.value,
    keep_team_assignment: bool = False
) -> List[str]:
    """
    Get the teams eligible for a contact's generated follow-ups.

    Priority:
    1. the contact's own assigned team
    2. the team of the contact's latest existing follow-up, when
       `keep_team_assignment` is on
    3. teams matched by address: the usual place of residence first, then
       the remaining addresses in stored order, stopping at the first address
       some team reaches
    """
    if contact.follow_up_team_id:
        return [contact.follow_up_team_id]

    if keep_team_assignment:
        # followups are sorted ascending by date
        for followup in reversed(contact.followups):
            if followup.team_id:
                return [followup.team_id]

    if algorithm == TeamAssignmentAlgorithm.ROUND_ROBIN_NEAREST_FIT.value:
        match = team_index.nearest_fit_teams
    else:
        match = team_index.teams_covering

    residence = contact.usual_place_of_residence()
    if residence is not None and residence.location_id:
        teams = match(residence.location_id)
        if teams:
            return teams

    for address in contact.addresses:
        if address is residence or not address.location_id:
            continue
        teams = match(address.location_id)
        if teams:
            return teams

    return []

# ============================================================================
# ROUND-ROBIN CURSOR
# ============================================================================

class RoundRobinCursor:
    """Cycles through a fixed team list, one step per assignment"""

    def __init__(self, team_ids: Sequence[str]):
        self.team_ids = list(team_ids)
        self.position = 0

    def next_team(self) -> Optional[str]:
        if not self.team_ids:
            return None
        team_id = self.team_ids[self.position % len(self.team_ids)]
        self.position += 1
        return team_id
