import threading
import time
import unittest

from expiring_invoice.scheduling import ThreadingScheduler, VirtualScheduler


class VirtualSchedulerTests(unittest.TestCase):
    def test_callbacks_run_in_due_order_with_clock_at_due_time(self) -> None:
        scheduler = VirtualScheduler(start_ms=1000)
        seen = []
        scheduler.call_later(50, lambda: seen.append(("b", scheduler.now_ms())))
        scheduler.call_later(10, lambda: seen.append(("a", scheduler.now_ms())))

        scheduler.advance(100)

        self.assertEqual(seen, [("a", 1010), ("b", 1050)])
        self.assertEqual(scheduler.now_ms(), 1100)

    def test_cancelled_handle_never_fires(self) -> None:
        scheduler = VirtualScheduler()
        seen = []
        handle = scheduler.call_later(10, lambda: seen.append(1))
        handle.cancel()

        scheduler.advance(20)

        self.assertEqual(seen, [])
        self.assertFalse(handle.active)
        self.assertEqual(scheduler.pending(), 0)

    def test_request_frame_uses_frame_interval(self) -> None:
        scheduler = VirtualScheduler(frame_ms=16)
        seen = []
        scheduler.request_frame(lambda: seen.append(scheduler.now_ms()))

        scheduler.advance(15)
        self.assertEqual(seen, [])
        scheduler.advance(1)
        self.assertEqual(seen, [16])

    def test_callbacks_scheduled_while_running_are_honoured(self) -> None:
        scheduler = VirtualScheduler()
        seen = []

        def first() -> None:
            seen.append("first")
            scheduler.call_later(0, lambda: seen.append("second"))

        scheduler.call_later(5, first)
        scheduler.run_until_idle()

        self.assertEqual(seen, ["first", "second"])


class ThreadingSchedulerTests(unittest.TestCase):
    def test_call_later_runs_on_a_timer_thread(self) -> None:
        scheduler = ThreadingScheduler()
        done = threading.Event()
        handle = scheduler.call_later(10, done.set)

        self.assertTrue(done.wait(2.0))
        self.assertTrue(handle.fired)
        self.assertFalse(handle.active)

    def test_cancel_before_due_prevents_callback(self) -> None:
        scheduler = ThreadingScheduler()
        done = threading.Event()
        handle = scheduler.call_later(200, done.set)
        handle.cancel()

        time.sleep(0.3)
        self.assertFalse(done.is_set())
        self.assertFalse(handle.fired)

    def test_failing_callback_is_logged(self) -> None:
        scheduler = ThreadingScheduler()
        done = threading.Event()

        def explode() -> None:
            done.set()
            raise RuntimeError("boom")

        with self.assertLogs("expiring_invoice.scheduling", level="ERROR"):
            scheduler.call_later(0, explode)
            self.assertTrue(done.wait(2.0))
            time.sleep(0.05)


if __name__ == "__main__":
    unittest.main()
