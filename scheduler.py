#!/usr/bin/env python3
"""
Contact Follow-up Scheduling System - Domain Model and Storage

This module holds the shared building blocks of the follow-up scheduler:
the domain model for contacts, teams and follow-up visits, the YAML-backed
tuning configuration, and the SQLite database manager that implements every
read/write contract the generator relies on.
"""

import sqlite3
import json
import logging
import uuid
from datetime import datetime, date
from dataclasses import dataclass, field, asdict
from typing import Dict, List, Optional, Any, Iterable, Mapping
from enum import Enum
import yaml
from pathlib import Path

logger = logging.getLogger(__name__)

# SQLite refuses statements with more host parameters than its compile-time
# limit; id-set queries are chunked to stay well below it.
ID_CHUNK_SIZE = 900

# ============================================================================
# DOMAIN-SPECIFIC VALUES
# ============================================================================

class MonitoringStatus(Enum):
    """Follow-up status of a contact's monitoring window"""
    UNDER_FOLLOW_UP = "under_follow_up"
    FOLLOW_UP_COMPLETED = "follow_up_completed"
    LOST_TO_FOLLOW_UP = "lost_to_follow_up"

class FollowUpStatus(Enum):
    """Status values of a single follow-up visit"""
    NOT_PERFORMED = "not_performed"
    SEEN_OK = "seen_ok"
    SEEN_NOT_OK = "seen_not_ok"
    MISSED = "missed"

class AddressType(Enum):
    """Address type tags"""
    USUAL_PLACE_OF_RESIDENCE = "usual_place_of_residence"
    PREVIOUS = "previous"
    OTHER = "other"

class TeamAssignmentAlgorithm(Enum):
    """Pools of teams eligible for round-robin assignment"""
    ROUND_ROBIN_ALL_TEAMS = "round_robin_all_teams"
    ROUND_ROBIN_NEAREST_FIT = "round_robin_nearest_fit"


def parse_date(value: Any) -> date:
    """Parse a calendar date from a date, datetime or ISO string.

    Raises:
        ValueError: when the value cannot be read as a date
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and value.strip():
        # a full ISO date, optionally followed by an ISO time part
        text = value.strip()
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        if len(text) > 10 and text[10] not in 'T ':
            raise ValueError(f"Invalid date value: {value!r}")
        return datetime.fromisoformat(text).date()
    raise ValueError(f"Invalid date value: {value!r}")


def _optional_date(value: Any) -> Optional[date]:
    return parse_date(value) if value else None


def new_id() -> str:
    return str(uuid.uuid4())

# ============================================================================
# DOMAIN MODEL
# ============================================================================

@dataclass
class Address:
    """Contact address; only the type tag and location matter for scheduling"""
    type_id: str
    location_id: Optional[str] = None
    address_line: str = ""

    @property
    def is_usual_place_of_residence(self) -> bool:
        return self.type_id == AddressType.USUAL_PLACE_OF_RESIDENCE.value

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'Address':
        return cls(
            type_id=data.get('type_id', AddressType.OTHER.value),
            location_id=data.get('location_id'),
            address_line=data.get('address_line', '')
        )

@dataclass
class MonitoringWindow:
    """The period during which a contact is actively followed"""
    start_date: Optional[date]
    end_date: Optional[date]
    status: str = MonitoringStatus.UNDER_FOLLOW_UP.value

    @property
    def is_set(self) -> bool:
        return self.start_date is not None and self.end_date is not None

@dataclass
class FollowUp:
    """A single scheduled follow-up visit"""
    id: str
    outbreak_id: str
    contact_id: str
    date: date
    team_id: Optional[str] = None
    status: str = FollowUpStatus.NOT_PERFORMED.value
    targeted: bool = True
    index: int = 1
    address: Optional[Address] = None
    created_at: Optional[str] = None

    @property
    def usual_place_of_residence_location_id(self) -> Optional[str]:
        return self.address.location_id if self.address else None

    def to_db_row(self) -> tuple:
        """Row tuple in FOLLOW_UP_INSERT_COLUMNS order"""
        now = datetime.now().isoformat()
        return (
            self.id,
            self.outbreak_id,
            self.contact_id,
            self.date.isoformat(),
            self.team_id,
            self.status,
            int(bool(self.targeted)),
            self.index,
            json.dumps(self.address.to_dict()) if self.address else None,
            self.usual_place_of_residence_location_id,
            self.created_at or now,
            now
        )

    @classmethod
    def from_db_row(cls, row: Mapping[str, Any]) -> 'FollowUp':
        address = json.loads(row['address']) if row['address'] else None
        return cls(
            id=row['id'],
            outbreak_id=row['outbreak_id'],
            contact_id=row['contact_id'],
            date=parse_date(row['date']),
            team_id=row['team_id'],
            status=row['status'],
            targeted=bool(row['targeted']),
            index=row['follow_up_index'],
            address=Address.from_dict(address) if address else None,
            created_at=row['created_at']
        )

@dataclass
class Contact:
    """A person under monitoring; `followups` is pre-loaded per run"""
    id: str
    outbreak_id: str
    addresses: List[Address] = field(default_factory=list)
    follow_up: MonitoringWindow = field(default_factory=lambda: MonitoringWindow(None, None))
    follow_up_team_id: Optional[str] = None
    followups: List[FollowUp] = field(default_factory=list)

    def usual_place_of_residence(self) -> Optional[Address]:
        for address in self.addresses:
            if address.is_usual_place_of_residence:
                return address
        return None

    def current_address(self) -> Optional[Address]:
        """Snapshot of the address that generated visits should carry"""
        residence = self.usual_place_of_residence()
        return Address(**residence.to_dict()) if residence else None

    @classmethod
    def from_db_row(cls, row: Mapping[str, Any]) -> 'Contact':
        addresses = json.loads(row['addresses']) if row['addresses'] else []
        return cls(
            id=row['id'],
            outbreak_id=row['outbreak_id'],
            addresses=[Address.from_dict(a) for a in addresses],
            follow_up=MonitoringWindow(
                start_date=_optional_date(row['follow_up_start_date']),
                end_date=_optional_date(row['follow_up_end_date']),
                status=row['follow_up_status']
            ),
            follow_up_team_id=row['follow_up_team_id']
        )

@dataclass
class Team:
    """Field team and the locations it was configured for"""
    id: str
    name: str = ""
    location_ids: List[str] = field(default_factory=list)

@dataclass
class GenerationPeriod:
    """Requested [start_date, end_date] window, inclusive on both ends"""
    start_date: date
    end_date: date

    def clip_to(self, window: MonitoringWindow) -> Optional['GenerationPeriod']:
        """Intersect with a monitoring window; None when they do not overlap"""
        if not window.is_set:
            return None
        start = max(self.start_date, window.start_date)
        end = min(self.end_date, window.end_date)
        if start > end:
            return None
        return GenerationPeriod(start, end)

    def days(self) -> int:
        return (self.end_date - self.start_date).days + 1

@dataclass
class GenerationResult:
    """Add/remove instructions for one contact, or merged for a run"""
    to_add: List[FollowUp] = field(default_factory=list)
    to_remove: List[str] = field(default_factory=list)
    to_recreate: Dict[str, FollowUp] = field(default_factory=dict)

    def merge(self, other: 'GenerationResult') -> 'GenerationResult':
        self.to_add.extend(other.to_add)
        self.to_remove.extend(other.to_remove)
        self.to_recreate.update(other.to_recreate)
        return self

    @property
    def is_empty(self) -> bool:
        return not (self.to_add or self.to_remove or self.to_recreate)

@dataclass
class OutbreakSettings:
    """Per-outbreak follow-up configuration"""
    id: str
    name: str = ""
    frequency_of_follow_up: int = 1
    frequency_of_follow_up_per_day: int = 1
    team_assignment_algorithm: str = TeamAssignmentAlgorithm.ROUND_ROBIN_ALL_TEAMS.value
    overwrite_existing: bool = False
    keep_team_assignment: bool = False
    interval_of_follow_up: str = ""

    @classmethod
    def from_db_row(cls, row: Mapping[str, Any]) -> 'OutbreakSettings':
        return cls(
            id=row['id'],
            name=row['name'] or '',
            frequency_of_follow_up=row['frequency_of_follow_up'],
            frequency_of_follow_up_per_day=row['frequency_of_follow_up_per_day'],
            team_assignment_algorithm=row['team_assignment_algorithm']
                or TeamAssignmentAlgorithm.ROUND_ROBIN_ALL_TEAMS.value,
            overwrite_existing=bool(row['overwrite_existing']),
            keep_team_assignment=bool(row['keep_team_assignment']),
            interval_of_follow_up=row['interval_of_follow_up'] or ''
        )

# ============================================================================
# CONFIGURATION
# ============================================================================

@dataclass
class JobSettings:
    """Paging and concurrency knobs for one batch job"""
    batch_size: int = 1000
    concurrency: int = 10

@dataclass
class PersistenceConfig:
    """Flush thresholds and concurrency of the persistence queue"""
    insert_batch_size: int = 100000
    delete_batch_size: int = ID_CHUNK_SIZE
    concurrency: int = 10

@dataclass
class SchedulingConfig:
    """Tuning configuration for generation runs and bulk updates"""
    generate_followups: JobSettings = field(default_factory=lambda: JobSettings(batch_size=1000, concurrency=100))
    bulk_modify_followups: JobSettings = field(default_factory=lambda: JobSettings(batch_size=1000, concurrency=10))
    persistence: PersistenceConfig = field(default_factory=PersistenceConfig)

    @classmethod
    def from_yaml(cls, yaml_path: str) -> 'SchedulingConfig':
        """Load configuration from YAML file"""
        config = cls()
        if not Path(yaml_path).exists():
            logger.warning(f"Configuration file {yaml_path} not found, using defaults")
            return config

        with open(yaml_path, 'r') as f:
            data = yaml.safe_load(f) or {}

        jobs = data.get('job_settings', {})
        if 'generate_followups' in jobs:
            job = jobs['generate_followups']
            config.generate_followups = JobSettings(
                batch_size=job.get('batch_size', config.generate_followups.batch_size),
                concurrency=job.get('concurrency', config.generate_followups.concurrency)
            )
        if 'bulk_modify_followups' in jobs:
            job = jobs['bulk_modify_followups']
            config.bulk_modify_followups = JobSettings(
                batch_size=job.get('batch_size', config.bulk_modify_followups.batch_size),
                concurrency=job.get('concurrency', config.bulk_modify_followups.concurrency)
            )

        if 'persistence' in data:
            persistence = data['persistence']
            config.persistence = PersistenceConfig(
                insert_batch_size=persistence.get('insert_batch_size', config.persistence.insert_batch_size),
                delete_batch_size=persistence.get('delete_batch_size', config.persistence.delete_batch_size),
                concurrency=persistence.get('concurrency', config.persistence.concurrency)
            )

        return config

# ============================================================================
# DATABASE MANAGER - HANDLES ALL DATABASE OPERATIONS
# ============================================================================

FOLLOW_UP_INSERT_COLUMNS = (
    'id', 'outbreak_id', 'contact_id', 'date', 'team_id', 'status', 'targeted',
    'follow_up_index', 'address', 'usual_place_of_residence_location_id',
    'created_at', 'updated_at'
)

# Columns that bulk updates may filter on / patch
FOLLOW_UP_FILTER_COLUMNS = {'id', 'contact_id', 'date', 'team_id', 'status', 'targeted', 'follow_up_index'}
FOLLOW_UP_PATCH_COLUMNS = {'date', 'team_id', 'status', 'targeted'}


def _chunks(items: List[Any], size: int = ID_CHUNK_SIZE) -> Iterable[List[Any]]:
    for i in range(0, len(items), size):
        yield items[i:i + size]


class DatabaseManager:
    """Manages all database operations for the scheduler"""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._ensure_schema()

    def _connect(self) -> sqlite3.Connection:
        # Writers wait on the lock instead of failing
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        return conn

    def _ensure_schema(self):
        """Ensure all required tables and indexes exist"""
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode = WAL")

            conn.execute("""
                CREATE TABLE IF NOT EXISTS outbreaks (
                    id TEXT PRIMARY KEY,
                    name TEXT,
                    frequency_of_follow_up INTEGER DEFAULT 1,
                    frequency_of_follow_up_per_day INTEGER DEFAULT 1,
                    team_assignment_algorithm TEXT DEFAULT 'round_robin_all_teams',
                    overwrite_existing BOOLEAN DEFAULT FALSE,
                    keep_team_assignment BOOLEAN DEFAULT FALSE,
                    interval_of_follow_up TEXT
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS locations (
                    id TEXT PRIMARY KEY,
                    name TEXT,
                    parent_location_id TEXT
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS teams (
                    id TEXT PRIMARY KEY,
                    name TEXT,
                    location_ids TEXT
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS contacts (
                    id TEXT PRIMARY KEY,
                    outbreak_id TEXT NOT NULL,
                    addresses TEXT,
                    follow_up_start_date DATE,
                    follow_up_end_date DATE,
                    follow_up_status TEXT,
                    follow_up_team_id TEXT,
                    created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
                    FOREIGN KEY (outbreak_id) REFERENCES outbreaks(id)
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS follow_ups (
                    id TEXT PRIMARY KEY,
                    outbreak_id TEXT NOT NULL,
                    contact_id TEXT NOT NULL,
                    date DATE NOT NULL,
                    team_id TEXT,
                    status TEXT NOT NULL,
                    targeted BOOLEAN DEFAULT TRUE,
                    follow_up_index INTEGER,
                    address TEXT,
                    usual_place_of_residence_location_id TEXT,
                    created_at DATETIME,
                    updated_at DATETIME,
                    FOREIGN KEY (contact_id) REFERENCES contacts(id)
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS generation_runs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    run_id TEXT UNIQUE NOT NULL,
                    outbreak_id TEXT NOT NULL,
                    start_date DATE,
                    end_date DATE,
                    status TEXT NOT NULL,
                    contacts_eligible INTEGER DEFAULT 0,
                    followups_inserted INTEGER DEFAULT 0,
                    error_message TEXT,
                    started_at DATETIME NOT NULL,
                    completed_at DATETIME
                )
            """)

            self._create_performance_indexes(conn)

    def _create_performance_indexes(self, conn: sqlite3.Connection):
        """Create lookup indexes used by the generation queries"""
        indexes = [
            "CREATE INDEX IF NOT EXISTS idx_contacts_eligibility ON contacts(outbreak_id, follow_up_status, follow_up_start_date, follow_up_end_date)",
            "CREATE INDEX IF NOT EXISTS idx_contacts_created ON contacts(created_at)",
            "CREATE INDEX IF NOT EXISTS idx_follow_ups_contact_date ON follow_ups(contact_id, date)",
            "CREATE INDEX IF NOT EXISTS idx_follow_ups_outbreak ON follow_ups(outbreak_id, status)",
            "CREATE INDEX IF NOT EXISTS idx_locations_parent ON locations(parent_location_id)",
        ]

        for index_sql in indexes:
            conn.execute(index_sql)
            logger.debug(f"Created index: {index_sql.split('ON')[0].split('EXISTS')[1].strip()}")

    # ------------------------------------------------------------------
    # Outbreaks, locations, teams
    # ------------------------------------------------------------------

    def save_outbreak(self, outbreak: OutbreakSettings):
        with self._connect() as conn:
            conn.execute("""
                INSERT OR REPLACE INTO outbreaks (
                    id, name, frequency_of_follow_up, frequency_of_follow_up_per_day,
                    team_assignment_algorithm, overwrite_existing, keep_team_assignment,
                    interval_of_follow_up
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                outbreak.id, outbreak.name, outbreak.frequency_of_follow_up,
                outbreak.frequency_of_follow_up_per_day, outbreak.team_assignment_algorithm,
                outbreak.overwrite_existing, outbreak.keep_team_assignment,
                outbreak.interval_of_follow_up
            ))

    def get_outbreak(self, outbreak_id: str) -> Optional[OutbreakSettings]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM outbreaks WHERE id = ?", (outbreak_id,)).fetchone()
            return OutbreakSettings.from_db_row(row) if row else None

    def save_location(self, location_id: str, name: str = "", parent_location_id: Optional[str] = None):
        with self._connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO locations (id, name, parent_location_id) VALUES (?, ?, ?)",
                (location_id, name, parent_location_id)
            )

    def save_team(self, team: Team):
        with self._connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO teams (id, name, location_ids) VALUES (?, ?, ?)",
                (team.id, team.name, json.dumps(team.location_ids))
            )

    def find_all_teams(self) -> List[Team]:
        with self._connect() as conn:
            cursor = conn.execute("SELECT id, name, location_ids FROM teams ORDER BY rowid")
            return [
                Team(
                    id=row['id'],
                    name=row['name'] or '',
                    location_ids=json.loads(row['location_ids']) if row['location_ids'] else []
                )
                for row in cursor.fetchall()
            ]

    def get_sub_locations(self, parent_location_ids: List[str]) -> List[str]:
        """Direct children of the given locations"""
        children = []
        with self._connect() as conn:
            for chunk in _chunks(parent_location_ids):
                placeholders = ','.join('?' * len(chunk))
                cursor = conn.execute(f"""
                    SELECT id FROM locations
                    WHERE parent_location_id IN ({placeholders})
                    ORDER BY rowid
                """, chunk)
                children.extend(row['id'] for row in cursor.fetchall())
        return children

    def expand_to_descendants(self, location_ids: List[str]) -> Dict[str, int]:
        """
        Expand locations to their full descendant closure.

        Returns an insertion-ordered mapping of every location id reachable from
        `location_ids` (the roots included) to its distance in hierarchy levels
        from the nearest root.
        """
        depths: Dict[str, int] = {}
        for root_id in location_ids:
            seen = {root_id: 0}
            level = [root_id]
            depth = 0
            while level:
                depth += 1
                found = []
                for child_id in self.get_sub_locations(level):
                    # every location has one parent, so reaching one twice means a cycle
                    if child_id in seen:
                        logger.warning(
                            f"Detected loop in location hierarchy: location {child_id} is set as a child "
                            f"of a location lower in the hierarchy. Scanned locations: {', '.join(seen)}"
                        )
                        continue
                    seen[child_id] = depth
                    found.append(child_id)
                level = found

            for location_id, location_depth in seen.items():
                if location_depth < depths.get(location_id, location_depth + 1):
                    depths[location_id] = location_depth

        return depths

    # ------------------------------------------------------------------
    # Contacts
    # ------------------------------------------------------------------

    def save_contact(self, contact: Contact, created_at: Optional[str] = None):
        with self._connect() as conn:
            conn.execute("""
                INSERT OR REPLACE INTO contacts (
                    id, outbreak_id, addresses, follow_up_start_date, follow_up_end_date,
                    follow_up_status, follow_up_team_id, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                contact.id,
                contact.outbreak_id,
                json.dumps([a.to_dict() for a in contact.addresses]),
                contact.follow_up.start_date.isoformat() if contact.follow_up.start_date else None,
                contact.follow_up.end_date.isoformat() if contact.follow_up.end_date else None,
                contact.follow_up.status,
                contact.follow_up_team_id,
                created_at or datetime.now().isoformat()
            ))

    def _eligible_contacts_where(self, start_date: date, end_date: date, outbreak_id: str,
                                 contact_ids: Optional[List[str]]) -> tuple:
        # A single interval-overlap test covers every containment case
        clauses = [
            "outbreak_id = ?",
            "follow_up_status = ?",
            "follow_up_start_date IS NOT NULL",
            "follow_up_end_date IS NOT NULL",
            "follow_up_start_date <= ?",
            "follow_up_end_date >= ?",
        ]
        params: List[Any] = [
            outbreak_id,
            MonitoringStatus.UNDER_FOLLOW_UP.value,
            end_date.isoformat(),
            start_date.isoformat(),
        ]
        if contact_ids:
            # one JSON parameter keeps allow lists of any size under the host-parameter limit
            clauses.append("id IN (SELECT value FROM json_each(?))")
            params.append(json.dumps(list(contact_ids)))
        return " AND ".join(clauses), params

    def count_eligible_contacts(self, start_date: date, end_date: date, outbreak_id: str,
                                contact_ids: Optional[List[str]] = None) -> int:
        where, params = self._eligible_contacts_where(start_date, end_date, outbreak_id, contact_ids)
        with self._connect() as conn:
            return conn.execute(f"SELECT COUNT(*) FROM contacts WHERE {where}", params).fetchone()[0]

    def find_eligible_contacts(self, start_date: date, end_date: date, outbreak_id: str,
                               contact_ids: Optional[List[str]] = None,
                               offset: int = 0, limit: int = 1000) -> List[Contact]:
        """Contacts under follow-up whose monitoring window overlaps the period"""
        where, params = self._eligible_contacts_where(start_date, end_date, outbreak_id, contact_ids)
        with self._connect() as conn:
            cursor = conn.execute(f"""
                SELECT id, outbreak_id, addresses, follow_up_start_date, follow_up_end_date,
                       follow_up_status, follow_up_team_id
                FROM contacts
                WHERE {where}
                ORDER BY created_at, rowid
                LIMIT ? OFFSET ?
            """, [*params, limit, offset])
            return [Contact.from_db_row(row) for row in cursor.fetchall()]

    def get_contact(self, contact_id: str) -> Optional[Contact]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM contacts WHERE id = ?", (contact_id,)).fetchone()
            return Contact.from_db_row(row) if row else None

    # ------------------------------------------------------------------
    # Follow-ups
    # ------------------------------------------------------------------

    def find_followups_by_contact_ids(self, contact_ids: List[str], start_date: date,
                                      end_date: date) -> Dict[str, List[FollowUp]]:
        """Existing follow-ups per contact inside the window, in stored order"""
        followups_by_contact: Dict[str, List[FollowUp]] = {cid: [] for cid in contact_ids}
        with self._connect() as conn:
            for chunk in _chunks(contact_ids):
                placeholders = ','.join('?' * len(chunk))
                cursor = conn.execute(f"""
                    SELECT * FROM follow_ups
                    WHERE contact_id IN ({placeholders})
                    AND date BETWEEN ? AND ?
                    ORDER BY date, created_at, rowid
                """, [*chunk, start_date.isoformat(), end_date.isoformat()])
                for row in cursor.fetchall():
                    followups_by_contact[row['contact_id']].append(FollowUp.from_db_row(row))
        return followups_by_contact

    def bulk_insert_followups(self, followups: List[FollowUp]) -> int:
        """Insert follow-ups in one transaction, returning the inserted row count"""
        if not followups:
            return 0

        placeholders = ','.join('?' * len(FOLLOW_UP_INSERT_COLUMNS))
        with self._connect() as conn:
            cursor = conn.executemany(
                f"INSERT INTO follow_ups ({', '.join(FOLLOW_UP_INSERT_COLUMNS)}) VALUES ({placeholders})",
                [f.to_db_row() for f in followups]
            )
            inserted = cursor.rowcount
        logger.debug(f"Inserted {inserted} follow-ups")
        return inserted

    def bulk_delete_followups(self, followup_ids: List[str]) -> int:
        """Hard delete follow-ups by id, returning the deleted row count"""
        if not followup_ids:
            return 0

        deleted = 0
        with self._connect() as conn:
            for chunk in _chunks(followup_ids):
                placeholders = ','.join('?' * len(chunk))
                cursor = conn.execute(f"DELETE FROM follow_ups WHERE id IN ({placeholders})", chunk)
                deleted += cursor.rowcount
        logger.debug(f"Deleted {deleted} follow-ups")
        return deleted

    def _followup_filter(self, outbreak_id: str, where: Mapping[str, Any]) -> tuple:
        clauses = ["outbreak_id = ?"]
        params: List[Any] = [outbreak_id]
        for column, value in where.items():
            if column not in FOLLOW_UP_FILTER_COLUMNS:
                raise ValueError(f"Unsupported follow-up filter column: {column}")
            if isinstance(value, (list, tuple, set)):
                values = list(value)
                clauses.append(f"{column} IN ({','.join('?' * len(values))})")
                params.extend(values)
            elif value is None:
                clauses.append(f"{column} IS NULL")
            else:
                clauses.append(f"{column} = ?")
                params.append(value.isoformat() if isinstance(value, date) else value)
        return " AND ".join(clauses), params

    def find_followup_ids(self, outbreak_id: str, where: Mapping[str, Any]) -> List[str]:
        clause, params = self._followup_filter(outbreak_id, where)
        with self._connect() as conn:
            cursor = conn.execute(
                f"SELECT id FROM follow_ups WHERE {clause} ORDER BY created_at, rowid", params
            )
            return [row['id'] for row in cursor.fetchall()]

    def get_followups_by_ids(self, followup_ids: List[str]) -> List[FollowUp]:
        followups = []
        with self._connect() as conn:
            for chunk in _chunks(followup_ids):
                placeholders = ','.join('?' * len(chunk))
                cursor = conn.execute(f"""
                    SELECT * FROM follow_ups WHERE id IN ({placeholders})
                    ORDER BY created_at, rowid
                """, chunk)
                followups.extend(FollowUp.from_db_row(row) for row in cursor.fetchall())
        return followups

    def update_followup_attributes(self, followup_id: str, patch: Mapping[str, Any]) -> Optional[FollowUp]:
        """
        Patch a single follow-up, running the per-record save hook.

        The hook stamps `updated_at` and, when the date moves, recomputes the
        day index from the contact's monitoring start.
        """
        unknown = set(patch) - FOLLOW_UP_PATCH_COLUMNS
        if unknown:
            raise ValueError(f"Unsupported follow-up patch columns: {', '.join(sorted(unknown))}")

        with self._connect() as conn:
            row = conn.execute("SELECT * FROM follow_ups WHERE id = ?", (followup_id,)).fetchone()
            if not row:
                logger.warning(f"Follow-up {followup_id} not found, skipping update")
                return None

            values: Dict[str, Any] = {}
            for column, value in patch.items():
                if column == 'date':
                    value = parse_date(value).isoformat()
                elif column == 'targeted':
                    value = int(bool(value))
                values[column] = value

            if 'date' in values and values['date'] != row['date']:
                contact_row = conn.execute(
                    "SELECT follow_up_start_date FROM contacts WHERE id = ?", (row['contact_id'],)
                ).fetchone()
                if contact_row and contact_row['follow_up_start_date']:
                    start = parse_date(contact_row['follow_up_start_date'])
                    values['follow_up_index'] = (parse_date(values['date']) - start).days + 1

            values['updated_at'] = datetime.now().isoformat()

            set_clause = ', '.join(f"{column} = ?" for column in values)
            conn.execute(
                f"UPDATE follow_ups SET {set_clause} WHERE id = ?",
                [*values.values(), followup_id]
            )
            updated = conn.execute("SELECT * FROM follow_ups WHERE id = ?", (followup_id,)).fetchone()
            return FollowUp.from_db_row(updated)

    # ------------------------------------------------------------------
    # Generation run checkpoints
    # ------------------------------------------------------------------

    def create_generation_run(self, run_id: str, outbreak_id: str, period: GenerationPeriod) -> int:
        """Create a run checkpoint for audit and resume bookkeeping"""
        with self._connect() as conn:
            cursor = conn.execute("""
                INSERT INTO generation_runs
                (run_id, outbreak_id, start_date, end_date, status, started_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (
                run_id,
                outbreak_id,
                period.start_date.isoformat(),
                period.end_date.isoformat(),
                'started',
                datetime.now().isoformat()
            ))
            return cursor.lastrowid

    def update_generation_run(self, checkpoint_id: int, status: str, **kwargs):
        """Update run checkpoint with completion status and metrics"""
        set_clauses = ['status = ?']
        params: List[Any] = [status]

        for key, value in kwargs.items():
            set_clauses.append(f"{key} = ?")
            params.append(value)

        if status in ['completed', 'failed']:
            set_clauses.append('completed_at = ?')
            params.append(datetime.now().isoformat())

        params.append(checkpoint_id)

        with self._connect() as conn:
            conn.execute(f"UPDATE generation_runs SET {', '.join(set_clauses)} WHERE id = ?", params)

    def get_generation_run(self, run_id: str) -> Optional[Dict[str, Any]]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM generation_runs WHERE run_id = ?", (run_id,)).fetchone()
            return dict(row) if row else None

# ============================================================================
# COMMAND LINE INTERFACE
# ============================================================================

def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the follow-up scheduler"""
    import argparse
    import asyncio
    from tqdm import tqdm
    from followup_scheduler import (
        FollowupGenerationController, GenerateFollowupsRequest,
        InvalidParametersError, GenerationFailedError
    )

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument('--db', required=True, help='SQLite database path')
    common.add_argument('--config', help='Configuration YAML path')
    common.add_argument('--outbreak', required=True, help='Outbreak ID')
    common.add_argument('--quiet', '-q', action='store_true', help='Minimal logging with a progress bar')
    common.add_argument('--debug', action='store_true', help='Enable debug logging')

    parser = argparse.ArgumentParser(description='Contact Follow-up Scheduling System')
    commands = parser.add_subparsers(dest='command', required=True)

    generate = commands.add_parser('generate', parents=[common], help='Generate follow-ups for a date window')
    generate.add_argument('--start', required=True, help='Start date (YYYY-MM-DD)')
    generate.add_argument('--end', required=True, help='End date (YYYY-MM-DD)')
    generate.add_argument('--contact-id', action='append', default=[], help='Restrict to contact ID (repeatable)')
    generate.add_argument('--not-targeted', action='store_true', help='Mark generated follow-ups as not targeted')
    generate.add_argument('--overwrite', dest='overwrite', action='store_true', default=None,
                          help='Recreate future follow-ups that were not performed')
    generate.add_argument('--no-overwrite', dest='overwrite', action='store_false',
                          help='Never recreate existing follow-ups')
    generate.add_argument('--keep-team-assignment', dest='keep_team_assignment', action='store_true',
                          default=None, help="Reuse the team of the contact's latest follow-up")
    generate.add_argument('--no-keep-team-assignment', dest='keep_team_assignment', action='store_false',
                          help='Always assign teams by address')
    generate.add_argument('--interval', help='Comma separated day indexes to generate (e.g. "1, 3, 5")')

    bulk = commands.add_parser('bulk-modify', parents=[common], help='Patch follow-ups one by one')
    bulk.add_argument('--where', required=True, help='JSON filter, e.g. {"status": "not_performed"}')
    bulk.add_argument('--patch', required=True, help='JSON patch, e.g. {"team_id": "team-1"}')

    args = parser.parse_args(argv)

    if args.quiet:
        logging.basicConfig(level=logging.WARNING, format='%(levelname)s: %(message)s')
    elif args.debug:
        logging.basicConfig(level=logging.DEBUG, format='%(asctime)s - %(levelname)s - %(name)s - %(message)s')
    else:
        logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')

    if args.command == 'bulk-modify':
        try:
            where, patch = json.loads(args.where), json.loads(args.patch)
        except json.JSONDecodeError as e:
            logger.error(f"Invalid parameters ['where', 'patch']: not valid JSON ({e})")
            return 2
        if not isinstance(where, dict) or not isinstance(patch, dict):
            logger.error("Invalid parameters ['where', 'patch']: both must be JSON objects")
            return 2

    config = SchedulingConfig.from_yaml(args.config) if args.config else SchedulingConfig()
    db = DatabaseManager(args.db)

    progress_bar = tqdm(unit='batch', desc=args.command) if args.quiet else None

    def report_progress(batch_no: int, total_batches: int, items: int):
        progress_bar.total = total_batches
        progress_bar.update(1)

    controller = FollowupGenerationController(
        db, config, progress=report_progress if progress_bar is not None else None
    )

    try:
        if args.command == 'generate':
            request = GenerateFollowupsRequest(
                start_date=args.start,
                end_date=args.end,
                targeted=not args.not_targeted,
                overwrite_existing_followups=args.overwrite,
                keep_team_assignment=args.keep_team_assignment,
                interval_of_follow_up=args.interval,
                contact_ids=args.contact_id
            )
            result = asyncio.run(controller.generate_followups(args.outbreak, request))
        else:
            result = asyncio.run(controller.bulk_modify_followups(args.outbreak, where, patch))
    except InvalidParametersError as e:
        logger.error(f"Invalid parameters {e.fields}: {e}")
        return 2
    except GenerationFailedError as e:
        logger.error(f"Generation failed after inserting {e.inserted_count} follow-ups: {e}")
        print(json.dumps({'count': e.inserted_count, 'error': str(e)}))
        return 1
    finally:
        if progress_bar is not None:
            progress_bar.close()

    print(json.dumps(result))
    return 0

if __name__ == '__main__':
    raise SystemExit(main())
