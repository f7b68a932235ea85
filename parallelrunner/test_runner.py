# Copyright (C) 2026 The parallelrunner Authors
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at http://mozilla.org/MPL/2.0/.
"""Tests for ParallelProcessRunner launching the demo console."""
import os
import sys
import tempfile
import time
import typing
import unittest

from .impl import InvalidCapacity, LaunchFailed, PopenHandle
from .invocation import Invocation
from .runner import (
    DEFAULT_POLL_INTERVAL_MICROS,
    ParallelProcessRunner,
    RunnerConfig,
)

# Directory containing console.py, the program launched by these tests
DEMO = os.path.join(os.path.dirname(os.path.abspath(__file__)), "demo")


class ParallelProcessRunnerTest(unittest.TestCase):
    """Unit tests (doubling as examples) for ParallelProcessRunner."""

    def setUp(self) -> None:
        self.tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmpdir.cleanup)

    def runner(self, capacity: int, **kwargs) -> ParallelProcessRunner:
        """Runner launching the demo console with the current interpreter."""
        kwargs.setdefault("binary_path", sys.executable)
        runner = ParallelProcessRunner(
            base_path=DEMO,
            environment="testing",
            capacity=capacity,
            poll_interval_micros=1000,
            console="console.py",
            **kwargs
        )
        self.addCleanup(runner.close)
        return runner

    def path(self, name: str) -> str:
        return os.path.join(self.tmpdir.name, name)

    def helper_read(self, name: str) -> str:
        with open(self.path(name)) as f:
            return f.read()

    def test_defaults(self) -> None:
        """Default construction honors available CPUs?"""
        runner = ParallelProcessRunner(DEMO, "testing")
        self.assertEqual(len(os.sched_getaffinity(0)), runner.capacity)
        self.assertEqual(0, len(runner))
        self.assertFalse(runner.draining)
        self.assertEqual(
            DEFAULT_POLL_INTERVAL_MICROS / 1e6, runner.pool.poll_interval
        )

    def test_over_capacity(self) -> None:
        """Submitting beyond capacity blocks until headroom exists?"""
        runner = self.runner(capacity=2)
        runner.submit("sleep", [0.3])
        runner.submit("sleep", [0.05])
        self.assertLess(len(runner), 2)
        runner.submit("sleep", [0.3])
        self.assertLess(len(runner), 2)
        runner.close()
        self.assertEqual(0, len(runner))

    def test_final(self) -> None:
        """Final submissions wait for every process launched so far?"""
        runner = self.runner(capacity=2)
        runner.submit("touch", [self.path("a")])
        runner.submit("touch", [self.path("b")])
        runner.submit("touch", [self.path("c")], final=True)
        self.assertEqual(0, len(runner))
        for name in "abc":
            with self.subTest(name=name):
                self.assertEqual("testing", self.helper_read(name))

    def test_arguments(self) -> None:
        """Arguments and the environment tag arrive intact?"""
        runner = self.runner(capacity=1)
        text = ["it's", "two words", "$HOME;echo", 42]
        runner.submit("touch", [self.path("a")] + text, final=True)
        self.assertEqual(
            "it's two words $HOME;echo 42 testing", self.helper_read("a")
        )

    def test_synchronous(self) -> None:
        """Synchronous single commands block and never touch tracking?"""
        runner = self.runner(capacity=1)
        runner.execute_single("sleep", [0.5])
        tracked = runner.active()
        self.assertEqual(1, len(tracked))
        self.assertEqual(0, runner.execute_single("noop", synchronous=True))
        self.assertEqual(
            5, runner.execute_single("exit", [5], synchronous=True)
        )
        path = self.path("a")
        self.assertEqual(
            0, runner.execute_single("touch", [path], synchronous=True)
        )
        self.assertEqual("testing", self.helper_read("a"), "Already exited")
        self.assertEqual(tracked, runner.active())

    def test_asynchronous(self) -> None:
        """Asynchronous single commands are tracked without blocking?"""
        runner = self.runner(capacity=1)
        start = time.monotonic()
        self.assertIsNone(runner.execute_single("sleep", [0.5]))
        self.assertIsNone(runner.execute_single("sleep", [0.5]))
        self.assertLess(time.monotonic() - start, 0.5, "Never blocked")
        self.assertEqual(2, len(runner), "Capacity bypassed")
        handles = runner.active()
        self.assertTrue(all(h.is_running() for h in handles))
        runner.close()
        self.assertEqual(0, len(runner))
        self.assertEqual([0, 0], [h.returncode for h in handles])

    def test_set_capacity(self) -> None:
        """Lowering capacity neither kills nor waits on running processes?"""
        runner = self.runner(capacity=3)
        runner.submit("sleep", [0.3])
        runner.submit("sleep", [0.3])
        runner.set_capacity(1)
        self.assertEqual(1, runner.capacity)
        self.assertEqual(2, len(runner))
        self.assertTrue(all(h.is_running() for h in runner.active()))
        with self.assertRaises(InvalidCapacity):
            runner.set_capacity(0)
        self.assertEqual(1, runner.capacity)

        # Next submission waits until capacity is satisfied again
        runner.submit("noop")
        self.assertEqual(0, len(runner))

    def test_launch_failed(self) -> None:
        """Failing launches raise and are never tracked?"""
        runner = self.runner(capacity=1, binary_path="/nonexistent/python")
        with self.assertRaises(LaunchFailed) as c:
            runner.submit("noop")
        self.assertIsInstance(c.exception.__cause__, OSError)
        with self.assertRaises(LaunchFailed):
            runner.execute_single("noop")
        with self.assertRaises(LaunchFailed):
            runner.execute_single("noop", synchronous=True)
        self.assertEqual(0, len(runner))

    def test_context_manager(self) -> None:
        """Leaving a with-block waits for every process?"""
        with self.runner(capacity=4) as runner:
            for name in "abc":
                runner.submit("touch", [self.path(name)])
            runner.execute_single("touch", [self.path("d")])
            handles = runner.active()
        self.assertEqual(0, len(runner))
        self.assertTrue(all(h.returncode == 0 for h in handles))
        for name in "abcd":
            with self.subTest(name=name):
                self.assertTrue(os.path.exists(self.path(name)))

    def test_double_close(self) -> None:
        """Calling close() twice does not raise nor wait?"""
        runner = self.runner(capacity=2)
        runner.submit("noop")
        runner.close()
        runner.close()
        self.assertEqual(0, len(runner))

    def test_exit_status_logged(self) -> None:
        """Non-zero exits are logged while zero exits are not?"""
        runner = self.runner(capacity=2)
        with self.assertLogs("parallelrunner.impl", level="WARNING") as cm:
            runner.submit("noop")
            runner.submit("exit", [3], final=True)
        self.assertEqual(1, len(cm.output))
        self.assertIn("Exit status 3", cm.output[0])

    def test_handle_fn(self) -> None:
        """Custom handle factories see each assembled Invocation?"""
        seen = []  # type: typing.List[Invocation]

        def handle_fn(invocation: Invocation) -> PopenHandle:
            seen.append(invocation)
            return PopenHandle(invocation.argv)

        runner = self.runner(capacity=1, handle_fn=handle_fn)
        runner.submit("exit", [0], final=True)
        self.assertEqual(1, len(seen))
        self.assertEqual(
            (sys.executable, os.path.join(DEMO, "console.py"), "exit", "0"),
            seen[0].argv[:4],
        )
        self.assertEqual(("-e", "testing"), seen[0].argv[-2:])

        # The runner's builder assembles exactly what the factory received
        self.assertEqual("testing", runner.builder.environment)
        self.assertEqual(seen[0], runner.builder.build("exit", [0]))


class RunnerConfigTest(unittest.TestCase):
    """Unit tests for RunnerConfig."""

    def test_defaults(self) -> None:
        """Only base_path and environment are required?"""
        config = RunnerConfig("/srv", "prod")
        self.assertIsNone(config.capacity)
        self.assertEqual(
            DEFAULT_POLL_INTERVAL_MICROS, config.poll_interval_micros
        )
        self.assertEqual("", config.binary_path)

    def test_from_environ(self) -> None:
        """Prefixed environment variables are parsed?"""
        config = RunnerConfig.from_environ(
            {
                "PARALLELRUNNER_BASE_PATH": DEMO,
                "PARALLELRUNNER_ENVIRONMENT": "staging",
                "PARALLELRUNNER_CAPACITY": "3",
                "PARALLELRUNNER_POLL_INTERVAL_MICROS": "500",
                "PARALLELRUNNER_BINARY_PATH": sys.executable,
                "PARALLELRUNNER_CONSOLE": "console.py",
                "UNRELATED": "ignored",
            }
        )
        self.assertEqual(
            RunnerConfig(
                DEMO, "staging", 3, 500, sys.executable, "console.py"
            ),
            config,
        )
        with ParallelProcessRunner.from_config(config) as runner:
            self.assertEqual(3, runner.capacity)
            self.assertEqual(500 / 1e6, runner.pool.poll_interval)
            self.assertEqual(
                0, runner.execute_single("noop", synchronous=True)
            )

    def test_from_environ_errors(self) -> None:
        """Missing or malformed variables are reported?"""
        required = {
            "PARALLELRUNNER_BASE_PATH": "/srv",
            "PARALLELRUNNER_ENVIRONMENT": "dev",
        }
        for key in required:
            with self.subTest(missing=key):
                environ = dict(required)
                del environ[key]
                with self.assertRaises(KeyError):
                    RunnerConfig.from_environ(environ)
        for value in ("0", "-2"):
            with self.subTest(capacity=value):
                environ = dict(required, PARALLELRUNNER_CAPACITY=value)
                with self.assertRaises(InvalidCapacity):
                    RunnerConfig.from_environ(environ)
        environ = dict(required, PARALLELRUNNER_CAPACITY="many")
        with self.assertRaises(ValueError):
            RunnerConfig.from_environ(environ)


if __name__ == "__main__":
    unittest.main()
