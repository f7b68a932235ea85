# Copyright (C) 2026 The parallelrunner Authors
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at http://mozilla.org/MPL/2.0/.
"""Demo: Single commands bypassing admission control."""
import os
import sys

from ..runner import ParallelProcessRunner

if __name__ == "__main__":
    # Leaving the with-block waits upon anything still running
    with ParallelProcessRunner(
        base_path=os.path.dirname(os.path.abspath(__file__)),
        environment="demo",
        capacity=1,
        binary_path=sys.executable,
        console="console.py",
    ) as runner:
        # Synchronous execution blocks and reports the exit status
        assert runner.execute_single("exit", [3], synchronous=True) == 3
        assert len(runner) == 0

        # Asynchronous execution is tracked but never blocks
        runner.execute_single("sleep", [0.2])
        runner.execute_single("sleep", [0.2])
        assert len(runner) == 2

    assert len(runner) == 0
    print("single: OK")
