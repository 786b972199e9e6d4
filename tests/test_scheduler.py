"""Tests for the bounded-concurrency scheduler."""

import unittest

from pricewatch.models import CrawlStatus
from pricewatch.scheduler import BoundedScheduler


class FakeCycle:
    """Records scheduler calls without running anything."""

    def __init__(self, key, fail_start=False):
        self.key = key
        self.started = False
        self.fail_start = fail_start
        self.starts = 0
        self.grants = 0
        self.stops = 0
        self.joined = False

    def start(self):
        if self.fail_start:
            raise RuntimeError("thread limit")
        self.starts += 1
        self.started = True

    def grant(self):
        self.grants += 1

    def stop(self):
        self.stops += 1
        self.started = False

    def join(self, timeout=None):
        self.joined = True


def _scheduler(limit, n):
    scheduler = BoundedScheduler(limit)
    cycles = [FakeCycle(f"src-{i}") for i in range(n)]
    for cycle in cycles:
        scheduler.register(cycle)
    return scheduler, cycles


class TestAdmission(unittest.TestCase):
    """Verify the concurrency bound at start-up."""

    def test_admits_exactly_limit(self):
        """Only max_concurrent sources start; the rest queue in order."""
        scheduler, cycles = _scheduler(2, 5)
        scheduler.start_all()

        self.assertEqual([c.started for c in cycles], [True, True, False, False, False])
        self.assertEqual(scheduler.active_count, 2)
        self.assertEqual(scheduler.pending_count, 3)
        self.assertEqual(scheduler.active_keys(), ["src-0", "src-1"])

    def test_fewer_sources_than_slots(self):
        """Everything starts when the limit is larger than the source count."""
        scheduler, cycles = _scheduler(4, 2)
        scheduler.start_all()
        self.assertTrue(all(c.started for c in cycles))
        self.assertEqual(scheduler.pending_count, 0)

    def test_zero_sources_is_noop(self):
        """Starting with nothing registered does nothing."""
        scheduler = BoundedScheduler(2)
        scheduler.start_all()
        self.assertEqual(scheduler.active_count, 0)

    def test_limit_floor_is_one(self):
        """A non-positive limit still admits one source."""
        self.assertEqual(BoundedScheduler(0).limit, 1)

    def test_duplicate_registration_rejected(self):
        """Two cycles with the same key cannot be registered."""
        scheduler = BoundedScheduler(1)
        scheduler.register(FakeCycle("a"))
        with self.assertRaises(ValueError):
            scheduler.register(FakeCycle("a"))

    def test_start_all_twice_does_not_double_queue(self):
        """A second start_all() is ignored."""
        scheduler, _ = _scheduler(1, 3)
        scheduler.start_all()
        scheduler.start_all()
        self.assertEqual(scheduler.pending_count, 2)

    def test_failed_start_releases_slot(self):
        """A cycle that cannot start gives its slot to the next one."""
        scheduler = BoundedScheduler(1)
        broken = FakeCycle("broken", fail_start=True)
        healthy = FakeCycle("healthy")
        scheduler.register(broken)
        scheduler.register(healthy)

        scheduler.start_all()

        self.assertTrue(healthy.started)
        self.assertEqual(scheduler.active_keys(), ["healthy"])


class TestRelease(unittest.TestCase):
    """Verify slot release on status changes."""

    def test_sleeping_releases_one_slot(self):
        """A sleeping source frees exactly one slot for the next queued source."""
        scheduler, cycles = _scheduler(2, 4)
        scheduler.start_all()

        scheduler.notify_status("src-0", CrawlStatus.SLEEPING)

        self.assertEqual([c.started for c in cycles], [True, True, True, False])
        self.assertEqual(scheduler.active_count, 2)

    def test_error_releases_slot(self):
        """An error status frees the slot too."""
        scheduler, cycles = _scheduler(1, 2)
        scheduler.start_all()
        scheduler.notify_status("src-0", CrawlStatus.ERROR)
        self.assertTrue(cycles[1].started)

    def test_scraping_keeps_slot(self):
        """Status updates while working do not release the slot."""
        scheduler, cycles = _scheduler(1, 2)
        scheduler.start_all()
        scheduler.notify_status("src-0", CrawlStatus.SCRAPING)
        self.assertFalse(cycles[1].started)

    def test_double_release_is_noop(self):
        """Releasing an already released source admits nobody extra."""
        scheduler, cycles = _scheduler(2, 5)
        scheduler.start_all()

        scheduler.notify_status("src-0", CrawlStatus.SLEEPING)
        scheduler.notify_status("src-0", CrawlStatus.SLEEPING)
        scheduler.notify_status("src-0", CrawlStatus.IDLE)

        self.assertEqual(sum(c.started for c in cycles), 3)
        self.assertEqual(scheduler.active_count, 2)

    def test_requeued_source_waits_its_turn(self):
        """A source whose sleep ended joins the back of the queue and is granted, not restarted."""
        scheduler, cycles = _scheduler(1, 3)
        scheduler.start_all()

        scheduler.notify_status("src-0", CrawlStatus.SLEEPING)
        scheduler.request_slot(cycles[0])
        self.assertEqual(cycles[0].grants, 0)
        self.assertEqual(scheduler.active_keys(), ["src-1"])

        scheduler.notify_status("src-1", CrawlStatus.SLEEPING)
        self.assertEqual(scheduler.active_keys(), ["src-2"])

        scheduler.notify_status("src-2", CrawlStatus.SLEEPING)
        self.assertEqual(scheduler.active_keys(), ["src-0"])
        self.assertEqual(cycles[0].grants, 1)

    def test_request_slot_ignored_when_active(self):
        """A source already holding a slot is not queued again."""
        scheduler, cycles = _scheduler(1, 2)
        scheduler.start_all()
        scheduler.request_slot(cycles[0])
        self.assertEqual(scheduler.pending_count, 1)

    def test_wait_idle(self):
        """wait_idle() returns once every slot is released."""
        scheduler, _ = _scheduler(2, 2)
        scheduler.start_all()
        self.assertFalse(scheduler.wait_idle(timeout=0.01))
        scheduler.release("src-0")
        scheduler.release("src-1")
        self.assertTrue(scheduler.wait_idle(timeout=0.01))


class TestStop(unittest.TestCase):
    """Verify shutdown."""

    def test_stop_all_stops_everything_and_clears_queue(self):
        """Every cycle, running or queued, is told to stop."""
        scheduler, cycles = _scheduler(1, 3)
        scheduler.start_all()

        scheduler.stop_all()

        self.assertEqual([c.stops for c in cycles], [1, 1, 1])
        self.assertEqual(scheduler.pending_count, 0)
        self.assertEqual(scheduler.active_count, 0)

    def test_stop_all_is_idempotent(self):
        """A second stop_all() does nothing."""
        scheduler, cycles = _scheduler(1, 2)
        scheduler.start_all()
        scheduler.stop_all()
        scheduler.stop_all()
        self.assertEqual([c.stops for c in cycles], [1, 1])

    def test_no_admission_after_stop(self):
        """Releasing a slot after stop_all() starts nothing new."""
        scheduler, cycles = _scheduler(1, 2)
        scheduler.start_all()
        scheduler.stop_all()
        scheduler.notify_status("src-0", CrawlStatus.IDLE)
        self.assertFalse(cycles[1].started)

    def test_restart_after_stop_starts_cycles_again(self):
        """start_all() after stop_all() starts stopped cycles afresh instead of granting them."""
        scheduler, cycles = _scheduler(1, 2)
        scheduler.start_all()
        scheduler.stop_all()

        scheduler.start_all()

        self.assertEqual(cycles[0].starts, 2)
        self.assertEqual(cycles[0].grants, 0)
        self.assertEqual(scheduler.active_keys(), ["src-0"])
        self.assertEqual(scheduler.pending_count, 1)

    def test_join_visits_every_cycle(self):
        """join() waits on each registered cycle."""
        scheduler, cycles = _scheduler(1, 2)
        scheduler.join(timeout=0.1)
        self.assertTrue(all(c.joined for c in cycles))


if __name__ == "__main__":
    unittest.main()
