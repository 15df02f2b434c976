#!/usr/bin/env python3
"""
Performance Test Suite for Follow-up Generation

Validates that generation stays batch-oriented at scale:
- Eligible contacts are selected by query, not by loading the whole table
- Existing follow-ups are loaded once per page, not once per contact
- Inserts reach the database in large batches
- Memory usage stays reasonable with a larger dataset
"""

import asyncio
import unittest
import sqlite3
import time
import psutil
import os
import shutil
import tempfile
from datetime import datetime, date, timedelta
from unittest.mock import patch
import sys
from pathlib import Path
from contextlib import contextmanager

# Add project root to path
sys.path.append(str(Path(__file__).parent))

from scheduler import (
    AddressType, DatabaseManager, JobSettings, MonitoringStatus, OutbreakSettings,
    PersistenceConfig, SchedulingConfig, Team
)
from followup_scheduler import FollowupGenerationController, GenerateFollowupsRequest

PERIOD_START = date(2024, 1, 1)
PERIOD_END = date(2024, 1, 21)


class PerformanceTestBase(unittest.TestCase):
    """Base class for performance tests"""

    def setUp(self):
        """Create test database"""
        self.temp_dir = tempfile.mkdtemp()
        self.test_db_path = os.path.join(self.temp_dir, "perf_test.db")
        self.db = DatabaseManager(self.test_db_path)
        self.db.save_outbreak(OutbreakSettings(id='outbreak-perf', name='Performance outbreak'))

        self.config = SchedulingConfig(
            generate_followups=JobSettings(batch_size=500, concurrency=100),
            persistence=PersistenceConfig(insert_batch_size=5000, delete_batch_size=900, concurrency=4)
        )

        # Performance tracking
        self.process = psutil.Process()

    def tearDown(self):
        """Cleanup"""
        shutil.rmtree(self.temp_dir)

    @contextmanager
    def measure_performance(self, operation_name):
        """Context manager to measure performance metrics"""
        start_time = time.time()
        start_memory = self.process.memory_info().rss / 1024 / 1024  # MB

        try:
            yield
        finally:
            end_time = time.time()
            end_memory = self.process.memory_info().rss / 1024 / 1024  # MB

            duration = end_time - start_time
            memory_delta = end_memory - start_memory

            print(f"\n📊 PERFORMANCE METRICS - {operation_name}")
            print(f"   Duration: {duration:.3f} seconds")
            print(f"   Memory delta: {memory_delta:+.2f} MB")
            print(f"   Peak memory: {end_memory:.2f} MB")

    def create_location_tree(self, districts=10, villages_per_district=10):
        """Create a two level location tree with one team per district"""
        conn = sqlite3.connect(self.test_db_path)
        locations = [('country', 'Country', None)]
        for d in range(districts):
            locations.append((f"district-{d}", f"District {d}", 'country'))
            for v in range(villages_per_district):
                locations.append((f"village-{d}-{v}", f"Village {d}.{v}", f"district-{d}"))
        conn.executemany("INSERT INTO locations (id, name, parent_location_id) VALUES (?, ?, ?)", locations)
        conn.commit()
        conn.close()

        for d in range(districts):
            self.db.save_team(Team(f"team-{d}", f"District team {d}", [f"district-{d}"]))

        return [loc[0] for loc in locations if loc[0].startswith('village')]

    def create_large_contact_dataset(self, count=2000, closed_ratio=0.2, villages=None):
        """Create contacts with staggered monitoring windows; a share of them closed"""
        villages = villages or ['village-0-0']
        closed_count = int(count * closed_ratio)
        created = datetime(2023, 12, 1)

        contacts = []
        for i in range(count):
            start = PERIOD_START + timedelta(days=i % 14)
            status = (
                MonitoringStatus.FOLLOW_UP_COMPLETED.value if i < closed_count
                else MonitoringStatus.UNDER_FOLLOW_UP.value
            )
            address = (
                f'[{{"type_id": "{AddressType.USUAL_PLACE_OF_RESIDENCE.value}", '
                f'"location_id": "{villages[i % len(villages)]}", "address_line": ""}}]'
            )
            contacts.append((
                f"perf-{i}", 'outbreak-perf', address,
                start.isoformat(), (start + timedelta(days=13)).isoformat(),
                status, None, (created + timedelta(seconds=i)).isoformat()
            ))

        # Batch insert for better performance
        conn = sqlite3.connect(self.test_db_path)
        conn.executemany("""
            INSERT INTO contacts (id, outbreak_id, addresses, follow_up_start_date, follow_up_end_date,
                                  follow_up_status, follow_up_team_id, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """, contacts)
        conn.commit()
        conn.close()

        print(f"✓ Created {count} test contacts ({closed_count} with closed monitoring)")
        return count - closed_count

    def expected_followups(self, active_contacts_start_index, count):
        """Days of each active contact's window that fall inside the period"""
        total = 0
        for i in range(active_contacts_start_index, count):
            start = PERIOD_START + timedelta(days=i % 14)
            end = min(start + timedelta(days=13), PERIOD_END)
            total += (end - start).days + 1
        return total

    def generate(self):
        controller = FollowupGenerationController(
            self.db, self.config, clock=lambda: date(2023, 12, 31)
        )
        request = GenerateFollowupsRequest(start_date=PERIOD_START, end_date=PERIOD_END)
        return asyncio.run(controller.generate_followups('outbreak-perf', request))


class TestGenerationPerformance(PerformanceTestBase):
    """Full generation runs on a larger dataset"""

    def test_generation_at_scale(self):
        count = 2000
        villages = self.create_location_tree()
        active = self.create_large_contact_dataset(count=count, villages=villages)

        with self.measure_performance("Follow-up Generation"):
            result = self.generate()

        expected = self.expected_followups(count - active, count)
        self.assertEqual(result['count'], expected)

        with sqlite3.connect(self.test_db_path) as conn:
            stored = conn.execute("SELECT COUNT(*) FROM follow_ups").fetchone()[0]
            unassigned = conn.execute("SELECT COUNT(*) FROM follow_ups WHERE team_id IS NULL").fetchone()[0]
        self.assertEqual(stored, expected)
        self.assertEqual(unassigned, 0)

        print(f"   Generated {result['count']} follow-ups for {active} active contacts")

    def test_rerun_is_fast_no_op(self):
        count = 1000
        self.create_large_contact_dataset(count=count)
        self.generate()

        with self.measure_performance("Idempotent Re-run"):
            result = self.generate()

        self.assertEqual(result['count'], 0)


class TestBatchOrientedAccess(PerformanceTestBase):
    """Database access patterns stay per page, never per contact"""

    def test_existing_followups_loaded_once_per_page(self):
        count = 1200
        self.create_large_contact_dataset(count=count, closed_ratio=0)
        real_lookup = self.db.find_followups_by_contact_ids

        with patch.object(self.db, 'find_followups_by_contact_ids', side_effect=real_lookup) as lookup:
            self.generate()

        # 1200 contacts in pages of 500
        self.assertEqual(lookup.call_count, 3)

    def test_inserts_are_batched(self):
        count = 1000
        self.create_large_contact_dataset(count=count, closed_ratio=0)
        real_insert = self.db.bulk_insert_followups

        with patch.object(self.db, 'bulk_insert_followups', side_effect=real_insert) as insert:
            with self.measure_performance("Batched Inserts"):
                result = self.generate()

        batch_sizes = [len(call.args[0]) for call in insert.call_args_list]
        self.assertEqual(sum(batch_sizes), result['count'])
        self.assertLessEqual(len(batch_sizes), result['count'] // self.config.persistence.insert_batch_size + 1)
        print(f"   {result['count']} follow-ups written in {len(batch_sizes)} insert batches")

    def test_memory_usage_stays_bounded(self):
        self.create_large_contact_dataset(count=3000)

        start_memory = self.process.memory_info().rss / 1024 / 1024
        self.generate()
        end_memory = self.process.memory_info().rss / 1024 / 1024

        self.assertLess(end_memory - start_memory, 200,
                        "Generation should not hold the whole dataset in memory")


if __name__ == '__main__':
    unittest.main(verbosity=2)
