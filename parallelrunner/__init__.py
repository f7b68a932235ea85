# Copyright (C) 2026 The parallelrunner Authors
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at http://mozilla.org/MPL/2.0/.
"""
Launch console commands as OS processes with bounded concurrency.

A ParallelProcessRunner differs from multiprocessing.Pool or
subprocess-based thread pools in a few ways:

 * First, work is an external command line, not a Python callable.
 * Second, at most capacity processes run at once and submitting beyond
   that blocks the submitting thread until some process finishes.
 * Third, no background threads are spun up.  All waiting happens on the
   calling thread by polling processes at a fixed interval.
 * Fourth, a final submission, close(), or leaving a with-block waits
   until every launched process has exited.
 * Lastly, processes are never cancelled nor timed out, so a hung
   process stalls whichever call is waiting upon it.

Implementation passes both PEP 8 (per flake8) and type-hinting (per mypy).
"""
from .impl import (
    InvalidCapacity,
    LaunchFailed,
    PopenHandle,
    ProcessHandle,
    ProcessPool,
    State,
)
from .invocation import Invocation, InvocationBuilder
from .runner import ParallelProcessRunner, RunnerConfig

__all__ = [
    "InvalidCapacity",
    "Invocation",
    "InvocationBuilder",
    "LaunchFailed",
    "ParallelProcessRunner",
    "PopenHandle",
    "ProcessHandle",
    "ProcessPool",
    "RunnerConfig",
    "State",
]
