#!/usr/bin/env python3
"""
Follow-up Generation Controller

This module wires the follow-up generation pipeline together:
select eligible contacts -> resolve the team/location index -> diff each
contact against its existing follow-ups -> stream the results into the
persistence queue -> drain -> report the number of follow-ups created.

It also drives bulk per-record updates of follow-ups through the same
batch runner.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable, Dict, FrozenSet, List, Mapping, Optional

from scheduler import (
    Contact, DatabaseManager, FollowUp, GenerationPeriod, OutbreakSettings,
    SchedulingConfig, TeamAssignmentAlgorithm, FOLLOW_UP_FILTER_COLUMNS,
    FOLLOW_UP_PATCH_COLUMNS, parse_date
)
from batch_runner import ProgressSink, handle_actions_in_batches, run_with_concurrency
from followup_generator import (
    generate_followups_for_contact, is_eligible_for_generation, parse_follow_up_interval
)
from persistence_queue import FollowUpPersistenceQueue
from team_assignment import TeamLocationIndex, build_team_location_index, eligible_teams_for_contact

logger = logging.getLogger(__name__)

# ============================================================================
# ERRORS AND REQUESTS
# ============================================================================

class InvalidParametersError(ValueError):
    """Request or outbreak configuration rejected before any work started"""

    def __init__(self, fields: List[str], details: str):
        super().__init__(details)
        self.fields = fields
        self.details = details


class GenerationFailedError(RuntimeError):
    """A generation run aborted part way; committed batches stay committed"""

    def __init__(self, message: str, inserted_count: int, run_id: str):
        super().__init__(message)
        self.inserted_count = inserted_count
        self.run_id = run_id


@dataclass
class GenerateFollowupsRequest:
    """Parameters of a generation run; None means use the outbreak default"""
    start_date: Any
    end_date: Any
    targeted: bool = True
    overwrite_existing_followups: Optional[bool] = None
    keep_team_assignment: Optional[bool] = None
    interval_of_follow_up: Optional[str] = None
    contact_ids: List[str] = field(default_factory=list)


@dataclass
class GenerationOptions:
    """Validated, fully resolved options of one generation run"""
    outbreak_id: str
    period: GenerationPeriod
    frequency: int
    per_day: int
    targeted: bool
    overwrite_existing: bool
    keep_team_assignment: bool
    team_assignment_algorithm: str
    interval: Optional[FrozenSet[int]]
    contact_ids: List[str]


def validate_generation_request(
    outbreak_id: str,
    outbreak: Optional[OutbreakSettings],
    request: GenerateFollowupsRequest
) -> GenerationOptions:
    """
    Check the request and the outbreak configuration together.

    Raises:
        InvalidParametersError: listing every offending field
    """
    invalid: List[str] = []
    problems: List[str] = []

    if outbreak is None:
        invalid.append('outbreakId')
        problems.append(f"Outbreak {outbreak_id} does not exist")
    else:
        invalid_outbreak_params = []
        if outbreak.frequency_of_follow_up <= 0:
            invalid_outbreak_params.append('frequencyOfFollowUp')
        if outbreak.frequency_of_follow_up_per_day <= 0:
            invalid_outbreak_params.append('frequencyOfFollowUpPerDay')
        if invalid_outbreak_params:
            invalid.extend(invalid_outbreak_params)
            problems.append(f"Outbreak params [{', '.join(invalid_outbreak_params)}] should be greater than 0")

    dates: Dict[str, Optional[date]] = {}
    invalid_dates = []
    for name, value in (('startDate', request.start_date), ('endDate', request.end_date)):
        try:
            dates[name] = parse_date(value)
        except ValueError:
            dates[name] = None
            invalid_dates.append(name)
    if not invalid_dates and dates['endDate'] < dates['startDate']:
        invalid_dates.append('endDate')
        problems.append("endDate must not be before startDate")
    elif invalid_dates:
        problems.append(f"Follow up [{', '.join(invalid_dates)}] are not valid dates")
    invalid.extend(invalid_dates)

    interval_value = request.interval_of_follow_up
    if interval_value is None and outbreak is not None:
        interval_value = outbreak.interval_of_follow_up
    interval = None
    try:
        interval = parse_follow_up_interval(interval_value)
    except ValueError:
        invalid.append('intervalOfFollowUp')
        problems.append(f"Interval of follow up {interval_value!r} is not a list of positive day indexes")

    if invalid:
        raise InvalidParametersError(invalid, '; '.join(problems))

    overwrite = request.overwrite_existing_followups
    if overwrite is None:
        overwrite = outbreak.overwrite_existing
    keep_team_assignment = request.keep_team_assignment
    if keep_team_assignment is None:
        keep_team_assignment = outbreak.keep_team_assignment

    return GenerationOptions(
        outbreak_id=outbreak_id,
        period=GenerationPeriod(dates['startDate'], dates['endDate']),
        frequency=outbreak.frequency_of_follow_up,
        per_day=outbreak.frequency_of_follow_up_per_day,
        targeted=request.targeted,
        overwrite_existing=overwrite,
        # existing assignments are discarded when follow-ups are recreated
        keep_team_assignment=keep_team_assignment and not overwrite,
        team_assignment_algorithm=outbreak.team_assignment_algorithm
            or TeamAssignmentAlgorithm.ROUND_ROBIN_ALL_TEAMS.value,
        interval=interval,
        contact_ids=list(request.contact_ids)
    )

# ============================================================================
# GENERATION CONTROLLER
# ============================================================================

class FollowupGenerationController:
    """Runs follow-up generation and bulk follow-up updates for an outbreak"""

    def __init__(
        self,
        db: DatabaseManager,
        config: Optional[SchedulingConfig] = None,
        clock: Callable[[], date] = date.today,
        progress: Optional[ProgressSink] = None
    ):
        self.db = db
        self.config = config or SchedulingConfig()
        self.clock = clock
        self.progress = progress

    async def generate_followups(self, outbreak_id: str, request: GenerateFollowupsRequest) -> Dict[str, int]:
        """
        Generate follow-ups for every eligible contact of an outbreak.

        Returns:
            {'count': number of follow-ups inserted}

        Raises:
            InvalidParametersError: before any work when the request or the
                outbreak configuration is invalid
            GenerationFailedError: when the run aborts; carries the number of
                follow-ups committed before the failure
        """
        outbreak = await asyncio.to_thread(self.db.get_outbreak, outbreak_id)
        options = validate_generation_request(outbreak_id, outbreak, request)

        run_id = str(uuid.uuid4())
        checkpoint_id = await asyncio.to_thread(
            self.db.create_generation_run, run_id, outbreak_id, options.period
        )
        today = self.clock()
        queue = FollowUpPersistenceQueue.for_database(self.db, self.config.persistence)

        logger.info(
            f"Starting follow-up generation {run_id} for outbreak {outbreak_id} "
            f"({options.period.start_date} - {options.period.end_date}, every {options.frequency} day(s), "
            f"{options.per_day} per day, overwrite={options.overwrite_existing})"
        )

        contacts_count = 0
        try:
            contacts_count = await self._count_eligible_contacts(options)
            if contacts_count:
                team_index = await build_team_location_index(self.db)
                await self._generate_in_batches(options, contacts_count, team_index, queue, today)
                await queue.drain_remaining()
        except Exception as e:
            await queue.wait_idle()
            inserted = queue.inserted_count
            await asyncio.to_thread(
                self.db.update_generation_run,
                checkpoint_id,
                'failed',
                contacts_eligible=contacts_count,
                followups_inserted=inserted,
                error_message=str(e)
            )
            logger.error(f"Follow-up generation {run_id} failed after inserting {inserted} follow-ups: {e}")
            raise GenerationFailedError(f"Follow-up generation failed: {e}", inserted, run_id) from e

        inserted = queue.inserted_count
        await asyncio.to_thread(
            self.db.update_generation_run,
            checkpoint_id,
            'completed',
            contacts_eligible=contacts_count,
            followups_inserted=inserted
        )
        logger.info(f"""
        Follow-up generation complete:
        - Eligible contacts: {contacts_count}
        - Follow-ups inserted: {inserted}
        - Follow-ups deleted: {queue.deleted_count}
        - Run ID: {run_id}
        """)
        return {'count': inserted}

    async def _count_eligible_contacts(self, options: GenerationOptions) -> int:
        return await asyncio.to_thread(
            self.db.count_eligible_contacts,
            options.period.start_date,
            options.period.end_date,
            options.outbreak_id,
            options.contact_ids
        )

    async def _generate_in_batches(
        self,
        options: GenerationOptions,
        contacts_count: int,
        team_index: TeamLocationIndex,
        queue: FollowUpPersistenceQueue,
        today: date
    ):
        job = self.config.generate_followups

        async def get_actions_count() -> int:
            return contacts_count

        async def get_batch_data(batch_no: int, batch_size: int) -> List[Contact]:
            return await asyncio.to_thread(
                self.db.find_eligible_contacts,
                options.period.start_date,
                options.period.end_date,
                options.outbreak_id,
                options.contact_ids,
                (batch_no - 1) * batch_size,
                batch_size
            )

        async def generate_for_batch(contacts: List[Contact]):
            await self._load_existing_followups(contacts, options)

            async def generate_for_contact(contact: Contact):
                self._generate_for_contact(contact, options, team_index, queue, today)

            await run_with_concurrency(contacts, generate_for_contact, job.concurrency)

        await handle_actions_in_batches(
            get_actions_count,
            get_batch_data,
            batch_items_action=generate_for_batch,
            batch_size=job.batch_size,
            progress=self.progress,
            log=logger
        )

    async def _load_existing_followups(self, contacts: List[Contact], options: GenerationOptions):
        followups_by_contact = await asyncio.to_thread(
            self.db.find_followups_by_contact_ids,
            [c.id for c in contacts],
            options.period.start_date,
            options.period.end_date
        )
        for contact in contacts:
            contact.followups = followups_by_contact.get(contact.id, [])

    def _generate_for_contact(
        self,
        contact: Contact,
        options: GenerationOptions,
        team_index: TeamLocationIndex,
        queue: FollowUpPersistenceQueue,
        today: date
    ):
        if not is_eligible_for_generation(contact, options.period.start_date, options.period.end_date):
            logger.warning(f"Contact {contact.id} is no longer eligible for follow-up generation, skipping")
            return

        eligible_teams = eligible_teams_for_contact(
            contact,
            team_index,
            algorithm=options.team_assignment_algorithm,
            keep_team_assignment=options.keep_team_assignment
        )
        if not eligible_teams:
            logger.debug(f"No eligible team for contact {contact.id}; follow-ups stay unassigned")

        result = generate_followups_for_contact(
            contact,
            eligible_teams,
            options.period,
            options.frequency,
            options.per_day,
            options.targeted,
            options.overwrite_existing,
            today,
            interval=options.interval
        )

        if result.to_add:
            queue.enqueue_insert(result.to_add)
        if result.to_remove:
            queue.enqueue_delete(result.to_remove)
        if result.to_recreate:
            queue.enqueue_recreate(result.to_recreate)

    # ------------------------------------------------------------------
    # Bulk modify
    # ------------------------------------------------------------------

    async def bulk_modify_followups(
        self,
        outbreak_id: str,
        where: Mapping[str, Any],
        patch: Mapping[str, Any]
    ) -> Dict[str, int]:
        """
        Apply `patch` to every matching follow-up, one record at a time.

        Matching ids are captured up front so that patching a filtered column
        does not shift later pages.

        Returns:
            {'count': number of matched follow-ups}
        """
        invalid = sorted(set(where) - FOLLOW_UP_FILTER_COLUMNS)
        invalid += sorted(set(patch) - FOLLOW_UP_PATCH_COLUMNS)
        if not patch:
            invalid.append('patch')
        if invalid:
            raise InvalidParametersError(invalid, f"Unsupported follow-up fields: {', '.join(invalid)}")

        job = self.config.bulk_modify_followups
        matched_ids: List[str] = []

        async def get_actions_count() -> int:
            matched_ids.extend(await asyncio.to_thread(self.db.find_followup_ids, outbreak_id, where))
            return len(matched_ids)

        async def get_batch_data(batch_no: int, batch_size: int) -> List[FollowUp]:
            batch_ids = matched_ids[(batch_no - 1) * batch_size:batch_no * batch_size]
            return await asyncio.to_thread(self.db.get_followups_by_ids, batch_ids)

        async def update_followup(followup: FollowUp):
            return await asyncio.to_thread(self.db.update_followup_attributes, followup.id, patch)

        count = await handle_actions_in_batches(
            get_actions_count,
            get_batch_data,
            item_action=update_followup,
            batch_size=job.batch_size,
            parallel_actions_no=job.concurrency,
            progress=self.progress,
            log=logger
        )
        logger.info(f"Bulk modified {count} follow-ups for outbreak {outbreak_id}")
        return {'count': count}
