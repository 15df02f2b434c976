#!/usr/bin/env python3
"""
Test Runner for the Contact Follow-up Scheduler

This script runs the complete test suite including:
- Functional correctness tests (generator, team assignment, persistence
  queue, batch runner, storage and controller suites)
- Performance and scalability tests (test_performance.py)

Usage:
    python run_all_tests.py [--functional-only] [--performance-only]
"""

import sys
import os
import subprocess
import time
import argparse

FUNCTIONAL_SUITES = [
    ('test_followup_generator.py', 'PER-CONTACT GENERATOR TESTS'),
    ('test_team_assignment.py', 'TEAM ASSIGNMENT TESTS'),
    ('test_persistence_queue.py', 'PERSISTENCE QUEUE TESTS'),
    ('test_batch_runner.py', 'BATCH RUNNER TESTS'),
    ('test_scheduler.py', 'STORAGE AND CONFIGURATION TESTS'),
    ('test_followup_scheduler.py', 'GENERATION CONTROLLER TESTS'),
]

PERFORMANCE_SUITES = [
    ('test_performance.py', 'PERFORMANCE & SCALABILITY TESTS'),
]


def check_dependencies():
    """Check that all required dependencies are available"""
    dependencies = [
        ('sqlite3', 'sqlite3'),
        ('yaml', 'PyYAML'),
        ('tqdm', 'tqdm'),
        ('psutil', 'psutil'),
    ]

    missing = []

    for module, package in dependencies:
        try:
            __import__(module)
        except ImportError:
            missing.append(package)

    if missing:
        print("❌ MISSING DEPENDENCIES:")
        for package in missing:
            print(f"   - {package}")
        print("\nInstall with: pip install " + " ".join(missing))
        return False

    return True


def check_files():
    """Check that all required files exist"""
    required_files = [
        'scheduler.py',
        'followup_scheduler.py',
        'scheduler_config.yaml',
        *[script for script, _ in FUNCTIONAL_SUITES + PERFORMANCE_SUITES],
    ]

    missing = [file for file in required_files if not os.path.exists(file)]

    if missing:
        print("❌ MISSING FILES:")
        for file in missing:
            print(f"   - {file}")
        return False

    return True


def run_test_script(script_name, description):
    """Run a test script and return success status"""
    print(f"\n{'='*80}")
    print(f"🧪 RUNNING {description}")
    print(f"{'='*80}")

    start_time = time.time()

    try:
        result = subprocess.run([
            sys.executable, script_name
        ], capture_output=False, text=True, timeout=600)  # 10 minute timeout
    except subprocess.TimeoutExpired:
        print(f"\n⏰ TIMEOUT: {description} took longer than 10 minutes")
        return False

    duration = time.time() - start_time
    success = result.returncode == 0

    print(f"\n📊 {description} Results:")
    print(f"   Duration: {duration:.2f} seconds")
    print(f"   Status: {'✅ PASSED' if success else '❌ FAILED'}")
    print(f"   Exit code: {result.returncode}")

    return success


def generate_test_report(results):
    """Generate a test report"""
    print(f"\n{'='*80}")
    print(f"📋 TEST REPORT")
    print(f"{'='*80}")

    total_tests = len(results)
    passed_tests = sum(1 for _, success in results if success)
    failed_tests = total_tests - passed_tests

    print(f"Overall Status: {'✅ ALL PASSED' if failed_tests == 0 else '❌ SOME FAILED'}")
    print(f"Total Test Suites: {total_tests}")
    print(f"Passed: {passed_tests}")
    print(f"Failed: {failed_tests}")

    print(f"\nDetailed Results:")
    for test_name, success in results:
        status = "✅ PASSED" if success else "❌ FAILED"
        print(f"   {test_name}: {status}")

    return failed_tests == 0


def main():
    """Main test runner function"""
    parser = argparse.ArgumentParser(description='Run the follow-up scheduler test suite')
    parser.add_argument('--functional-only', action='store_true',
                        help='Run only functional correctness tests')
    parser.add_argument('--performance-only', action='store_true',
                        help='Run only performance tests')

    args = parser.parse_args()

    print("🚀 CONTACT FOLLOW-UP SCHEDULER - TEST SUITE")
    print("=" * 80)

    print(f"\n🔍 CHECKING PREREQUISITES...")

    if not check_dependencies():
        sys.exit(1)

    if not check_files():
        sys.exit(1)

    print("✅ All prerequisites satisfied")

    if args.functional_only:
        suites = FUNCTIONAL_SUITES
    elif args.performance_only:
        suites = PERFORMANCE_SUITES
    else:
        suites = FUNCTIONAL_SUITES + PERFORMANCE_SUITES

    test_results = [(description, run_test_script(script, description)) for script, description in suites]

    overall_success = generate_test_report(test_results)

    sys.exit(0 if overall_success else 1)


if __name__ == "__main__":
    main()
