# Copyright (C) 2026 The parallelrunner Authors
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at http://mozilla.org/MPL/2.0/.
"""Demo: Launch failures and capacity misconfiguration."""
import os
import sys

from ..impl import InvalidCapacity, LaunchFailed
from ..runner import ParallelProcessRunner

if __name__ == "__main__":
    here = os.path.dirname(os.path.abspath(__file__))

    # Capacity must be positive
    try:
        ParallelProcessRunner(here, "demo", capacity=0)
        assert False, "Should have raised InvalidCapacity"
    except InvalidCapacity:
        pass

    # A launcher which does not exist reports LaunchFailed
    runner = ParallelProcessRunner(
        here, "demo", capacity=2, binary_path="/nonexistent/python"
    )
    try:
        runner.submit("noop")
        assert False, "Should have raised LaunchFailed"
    except LaunchFailed as e:
        assert isinstance(e.__cause__, OSError)
    assert len(runner) == 0

    # Rejected capacity changes leave the runner untouched
    runner = ParallelProcessRunner(
        here, "demo", 2, binary_path=sys.executable, console="console.py"
    )
    try:
        runner.set_capacity(-1)
        assert False, "Should have raised InvalidCapacity"
    except InvalidCapacity:
        pass
    assert runner.capacity == 2
    runner.close()

    print("errors: OK")
