# Copyright (C) 2026 The parallelrunner Authors
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at http://mozilla.org/MPL/2.0/.
"""Tests for the ProcessPool and related classes."""
import copy
import gc
import os
import pickle
import random
import sys
import threading
import time
import typing
import unittest

from .impl import (
    InvalidCapacity,
    LaunchFailed,
    PopenHandle,
    ProcessHandle,
    ProcessPool,
    State,
)


class ScriptedHandle(ProcessHandle):
    """A ProcessHandle reporting running for some number of polls."""

    __slots__ = ("polls", "status", "started", "fail", "on_poll", "log")

    def __init__(
        self,
        polls: int = 0,
        status: int = 0,
        fail: bool = False,
        on_poll: typing.Optional[typing.Callable[[], None]] = None,
        log: typing.Optional[typing.List["ScriptedHandle"]] = None,
    ) -> None:
        self.polls = polls
        self.status = status
        self.started = False
        self.fail = fail
        self.on_poll = on_poll
        self.log = log

    def start(self) -> None:
        assert not self.started, "Already started"
        if self.fail:
            raise LaunchFailed() from FileNotFoundError("/nonexistent")
        self.started = True

    def is_running(self) -> bool:
        assert self.started, "Not yet started"
        if self.log is not None:
            self.log.append(self)
        if self.on_poll is not None:
            self.on_poll()
        if self.polls > 0:
            self.polls -= 1
            return True
        return False

    @property
    def returncode(self) -> typing.Optional[int]:
        return self.status if self.started and self.polls == 0 else None


class EventHandle(ProcessHandle):
    """A ProcessHandle running until some threading.Event is set."""

    __slots__ = ("event",)

    def __init__(self, event: threading.Event) -> None:
        self.event = event

    def start(self) -> None:
        pass

    def is_running(self) -> bool:
        return not self.event.is_set()

    @property
    def returncode(self) -> typing.Optional[int]:
        return 0 if self.event.is_set() else None


class ProcessPoolTest(unittest.TestCase):
    """Unit tests (doubling as examples) for ProcessPool."""

    def setUp(self) -> None:
        # Recording sleeps keeps tests fast and makes polling observable
        self.sleeps = []  # type: typing.List[float]

    def pool(self, capacity: int) -> ProcessPool:
        return ProcessPool(
            capacity=capacity, poll_interval=0.5, sleep_fn=self.sleeps.append
        )

    def test_defaults(self) -> None:
        """Default construction honors available CPUs and starts idle?"""
        pool = ProcessPool()
        self.assertEqual(len(os.sched_getaffinity(0)), pool.capacity)
        self.assertIs(State.IDLE, pool.state)
        self.assertFalse(pool.draining)
        self.assertEqual(0, len(pool))
        self.assertEqual((), pool.active())

    def test_invalid_capacity(self) -> None:
        """Non-positive or non-integer capacities rejected everywhere?"""
        for capacity in (0, -1, 1.5, "2", True):
            with self.subTest(capacity=capacity):
                with self.assertRaises(InvalidCapacity):
                    ProcessPool(capacity=capacity)  # type: ignore
                pool = self.pool(3)
                with self.assertRaises(InvalidCapacity):
                    pool.set_capacity(capacity)  # type: ignore
                self.assertEqual(3, pool.capacity, "Unchanged on rejection")
                self.assertIsInstance(InvalidCapacity(), ValueError)

    def test_below_capacity(self) -> None:
        """Submissions below capacity neither poll nor sleep?"""
        pool = self.pool(3)
        f, g = ScriptedHandle(polls=100), ScriptedHandle(polls=100)
        pool.submit(f)
        pool.submit(g)
        self.assertEqual((f, g), pool.active())
        self.assertEqual(100, f.polls)
        self.assertEqual(100, g.polls)
        self.assertEqual([], self.sleeps)

    def test_partial_drain(self) -> None:
        """Reaching capacity blocks only until headroom exists?"""
        pool = self.pool(2)
        f = ScriptedHandle(polls=3)
        g = ScriptedHandle(polls=1)
        h = ScriptedHandle(polls=5)

        # Below capacity so nothing waited upon
        pool.submit(f)
        self.assertEqual(1, len(pool))

        # At capacity so wait until g finishes while f keeps running
        pool.submit(g)
        self.assertEqual((f,), pool.active())
        self.assertEqual([0.5], self.sleeps)

        # Again at capacity so wait until f finishes while h keeps running
        pool.submit(h)
        self.assertEqual((h,), pool.active())
        self.assertLess(len(pool), pool.capacity)
        self.assertIs(State.IDLE, pool.state)

    def test_final_drain(self) -> None:
        """Final submissions return only after everything has finished?"""
        pool = self.pool(2)
        handles = [ScriptedHandle(polls=i) for i in (0, 2, 4)]
        pool.submit(handles[0])
        pool.submit(handles[1])
        pool.submit(handles[2], final=True)
        self.assertEqual(0, len(pool))
        self.assertEqual([0, 0, 0], [h.polls for h in handles])
        self.assertIs(State.IDLE, pool.state)

    def test_final_drain_below_capacity(self) -> None:
        """Final submissions drain even when capacity is not reached?"""
        pool = self.pool(10)
        pool.submit(ScriptedHandle(polls=1))
        pool.submit(ScriptedHandle(polls=2), final=True)
        self.assertEqual(0, len(pool))
        self.assertEqual([0.5, 0.5], self.sleeps)

    def test_polling_order(self) -> None:
        """Handles are polled in submission order?"""
        log = []  # type: typing.List[ScriptedHandle]
        pool = self.pool(3)
        handles = [ScriptedHandle(polls=1, log=log) for _ in range(3)]
        for handle in handles:
            pool.submit(handle)
        self.assertEqual(handles + handles, log)
        self.assertEqual(0, len(pool))

    def test_invariant_randomized(self) -> None:
        """Non-final submissions always leave fewer than capacity tracked?"""
        rng = random.Random(8675309)
        for capacity in range(1, 5):
            with self.subTest(capacity=capacity):
                pool = self.pool(capacity)
                for _ in range(50):
                    pool.submit(ScriptedHandle(polls=rng.randrange(6)))
                    self.assertLess(len(pool), capacity)
                pool.submit(ScriptedHandle(polls=rng.randrange(6)), final=True)
                self.assertEqual(0, len(pool))

    def test_track(self) -> None:
        """Tracking bypasses admission control but still counts?"""
        pool = self.pool(1)
        handles = [ScriptedHandle(polls=2) for _ in range(3)]
        for handle in handles:
            pool.track(handle)
        self.assertEqual(tuple(handles), pool.active())
        self.assertEqual([], self.sleeps)

        # Next submission sees all tracked handles against capacity
        pool.submit(ScriptedHandle(polls=0))
        self.assertEqual(0, len(pool))

    def test_wait_for(self) -> None:
        """Synchronous waits never touch tracked handles?"""
        pool = self.pool(1)
        f = ScriptedHandle(polls=100)
        pool.track(f)
        g = ScriptedHandle(polls=2, status=7)
        self.assertEqual(7, pool.wait_for(g))
        self.assertEqual((f,), pool.active())
        self.assertEqual(100, f.polls, "Tracked handle never polled")
        self.assertEqual([0.5, 0.5], self.sleeps)

    def test_launch_failed(self) -> None:
        """Handles failing to start are reported and never tracked?"""
        pool = self.pool(1)
        for method in (pool.submit, pool.track, pool.wait_for):
            with self.subTest(method=method.__name__):
                with self.assertRaises(LaunchFailed) as c:
                    method(ScriptedHandle(fail=True))  # type: ignore
                self.assertIsInstance(c.exception.__cause__, OSError)
                self.assertEqual(0, len(pool))
                self.assertIs(State.IDLE, pool.state)

    def test_set_capacity(self) -> None:
        """Capacity changes affect only future submissions?"""
        pool = self.pool(3)
        f, g = ScriptedHandle(polls=100), ScriptedHandle(polls=100)
        pool.submit(f)
        pool.submit(g)

        # Lowering capacity neither waits upon nor polls running handles
        pool.set_capacity(1)
        self.assertEqual(1, pool.capacity)
        self.assertEqual((f, g), pool.active())
        self.assertEqual(100, f.polls)
        self.assertEqual([], self.sleeps)

        # Raising capacity again admits more without waiting
        pool.set_capacity(5)
        pool.submit(ScriptedHandle(polls=100))
        self.assertEqual(3, len(pool))
        self.assertEqual([], self.sleeps)

    def helper_reenter(self, pool: ProcessPool, results: typing.List) -> None:
        """Helper recording nested drain(...) and close() attempts."""
        results.append(pool.state)
        results.append(pool.drain(wait_all=True))
        results.append(pool.drain(wait_all=False))
        pool.close()
        results.append(pool.state)

    def test_reentrant_drain(self) -> None:
        """Drains or closes nested within a drain are no-ops?"""
        pool = self.pool(1)
        results = []  # type: typing.List
        handle = ScriptedHandle(
            polls=0, on_poll=lambda: self.helper_reenter(pool, results)
        )
        pool.submit(handle)
        self.assertEqual(
            [State.DRAINING, False, False, State.DRAINING], results
        )
        self.assertIs(State.IDLE, pool.state)
        self.assertEqual(0, len(pool))

    def test_drain_raises(self) -> None:
        """Drain state is reset even when polling raises?"""
        pool = self.pool(1)
        raised = []  # type: typing.List[bool]

        def raise_once() -> None:
            if not raised:
                raised.append(True)
                raise RuntimeError("poll failed")

        handle = ScriptedHandle(polls=1, on_poll=raise_once)
        with self.assertRaises(RuntimeError):
            pool.submit(handle)
        self.assertIs(State.IDLE, pool.state)
        self.assertEqual((handle,), pool.active(), "Still tracked")
        pool.close()
        self.assertEqual(0, len(pool))

    def test_empty_drain(self) -> None:
        """Draining nothing returns immediately?"""
        pool = self.pool(1)
        self.assertTrue(pool.drain(wait_all=True))
        self.assertTrue(pool.drain(wait_all=False))
        self.assertEqual([], self.sleeps)

    def test_close(self) -> None:
        """Closing waits for everything and is idempotent?"""
        log = []  # type: typing.List[ScriptedHandle]
        pool = self.pool(5)
        for i in range(3):
            pool.track(ScriptedHandle(polls=i, log=log))
        pool.close()
        self.assertEqual(0, len(pool))
        polls, sleeps = len(log), len(self.sleeps)
        pool.close()
        self.assertEqual(polls, len(log), "Second close() polls nothing")
        self.assertEqual(sleeps, len(self.sleeps))

    def test_context_manager(self) -> None:
        """Leaving a with-block waits for everything?"""
        handles = [ScriptedHandle(polls=3) for _ in range(4)]
        with self.pool(10) as pool:
            for handle in handles:
                pool.submit(handle)
            self.assertEqual(4, len(pool))
        self.assertEqual(0, len(pool))
        self.assertEqual([0, 0, 0, 0], [h.polls for h in handles])

    def test_context_manager_raises(self) -> None:
        """Leaving a with-block by Exception still waits for everything?"""
        handle = ScriptedHandle(polls=3)
        with self.assertRaises(ArithmeticError):
            with self.pool(10) as pool:
                pool.submit(handle)
                raise ArithmeticError()
        self.assertEqual(0, handle.polls)
        self.assertEqual(0, len(pool))

    def test_del(self) -> None:
        """Garbage collecting an unclosed pool waits for everything?"""
        handle = ScriptedHandle(polls=3)
        pool = self.pool(10)
        pool.track(handle)
        del pool
        gc.collect()
        self.assertEqual(0, handle.polls)

    def test_close_awaits_other_thread(self) -> None:
        """Closing while another thread drains waits for that drain?"""
        event = threading.Event()
        pool = ProcessPool(capacity=1, poll_interval=0.005)
        pool.track(EventHandle(event))
        pool.track(EventHandle(event))
        owner = threading.Thread(
            target=pool.drain, kwargs=dict(wait_all=True)
        )
        owner.start()
        try:
            # Wait until the other thread owns the drain
            deadline = time.monotonic() + 10
            while not pool.draining and time.monotonic() < deadline:
                time.sleep(0.001)
            self.assertTrue(pool.draining)

            # Concurrent drains defer to the owner
            self.assertFalse(pool.drain(wait_all=True))

            # Release the handles shortly after close() begins waiting
            timer = threading.Timer(0.1, event.set)
            timer.start()
            pool.close()
            self.assertTrue(event.is_set())
            self.assertFalse(pool.draining)
            self.assertEqual(0, len(pool))
        finally:
            event.set()
            owner.join()

    def test_final_awaits_other_thread(self) -> None:
        """Final submissions while another thread drains wait for all?"""
        event = threading.Event()
        pool = ProcessPool(capacity=5, poll_interval=0.005)
        pool.track(EventHandle(event))
        owner = threading.Thread(
            target=pool.drain, kwargs=dict(wait_all=False)
        )
        pool.set_capacity(1)
        owner.start()
        try:
            deadline = time.monotonic() + 10
            while not pool.draining and time.monotonic() < deadline:
                time.sleep(0.001)
            self.assertTrue(pool.draining)

            # Owner drain is partial yet the final submission must not be
            timer = threading.Timer(0.1, event.set)
            timer.start()
            pool.submit(EventHandle(event), final=True)
            self.assertTrue(event.is_set())
            self.assertEqual(0, len(pool))
            self.assertFalse(pool.draining)
        finally:
            event.set()
            owner.join()

    def test_retired_logging(self) -> None:
        """Non-zero exit statuses are reported as warnings?"""
        pool = self.pool(1)
        with self.assertLogs("parallelrunner.impl", level="WARNING") as cm:
            pool.submit(ScriptedHandle(polls=1, status=3), final=True)
        self.assertEqual(1, len(cm.output))
        self.assertIn("Exit status 3", cm.output[0])

    def test_duplication_pool(self) -> None:
        """Copying of ProcessPools is explicitly allowed, but degenerate."""
        pool = self.pool(2)
        self.assertIs(pool, copy.copy(pool))
        self.assertIs(pool, copy.deepcopy(pool))


class PopenHandleTest(unittest.TestCase):
    """Unit tests for PopenHandle launching real processes."""

    @staticmethod
    def helper_args(*code: str) -> typing.List[str]:
        """Arguments running Python code with the current interpreter."""
        return [sys.executable, "-c", "; ".join(code)]

    def helper_wait(self, handle: PopenHandle) -> None:
        """Poll handle until it exits."""
        while handle.is_running():
            time.sleep(0.01)

    def test_lifecycle(self) -> None:
        """Exit status and pid observable after start() and completion?"""
        for status in (0, 1, 5):
            with self.subTest(status=status):
                args = self.helper_args(
                    "import sys", "sys.exit({})".format(status)
                )
                handle = PopenHandle(args)
                self.assertIsNone(handle.pid)
                self.assertIsNone(handle.returncode)
                self.assertEqual(tuple(args), handle.args)
                handle.start()
                self.assertIsNotNone(handle.pid)
                self.helper_wait(handle)
                self.assertEqual(status, handle.returncode)
                self.assertFalse(handle.is_running(), "Repeat polls OK")

    def test_running(self) -> None:
        """A sleeping process reports running until it exits?"""
        handle = PopenHandle(self.helper_args("import time", "time.sleep(1)"))
        handle.start()
        self.assertTrue(handle.is_running())
        self.assertIsNone(handle.returncode)
        self.helper_wait(handle)
        self.assertEqual(0, handle.returncode)

    def test_launch_failed(self) -> None:
        """Missing executables raise LaunchFailed caused by OSError?"""
        handle = PopenHandle(["/nonexistent/executable", "arg"])
        with self.assertRaises(LaunchFailed) as c:
            handle.start()
        self.assertIsInstance(c.exception.__cause__, FileNotFoundError)
        self.assertIsNone(handle.pid)

    def test_duplication(self) -> None:
        """Copying and pickling of PopenHandles is explicitly disallowed."""
        handle = PopenHandle(self.helper_args("pass"))
        with self.assertRaises(NotImplementedError):
            copy.copy(handle)
        with self.assertRaises(NotImplementedError):
            copy.deepcopy(handle)
        with self.assertRaises(NotImplementedError):
            pickle.dumps(handle)

    def test_misuse(self) -> None:
        """Polling before start() or starting twice is a programming error?"""
        handle = PopenHandle(self.helper_args("pass"))
        with self.assertRaises(AssertionError):
            handle.is_running()
        handle.start()
        with self.assertRaises(AssertionError):
            handle.start()
        self.helper_wait(handle)


if __name__ == "__main__":
    unittest.main()
