# Copyright (C) 2026 The parallelrunner Authors
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at http://mozilla.org/MPL/2.0/.
"""Demo: Basic ParallelProcessRunner usage."""
import logging
import os
import sys

from ..runner import ParallelProcessRunner

if __name__ == "__main__":
    logging.basicConfig(
        level=logging.DEBUG,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )

    # Launch the demo console with the current interpreter, 2 at a time
    runner = ParallelProcessRunner(
        base_path=os.path.dirname(os.path.abspath(__file__)),
        environment="demo",
        capacity=2,
        binary_path=sys.executable,
        console="console.py",
    )

    # The third submission blocks until one of the first two finishes
    runner.submit("sleep", [0.2])
    runner.submit("sleep", [0.1])
    runner.submit("sleep", [0.1])
    assert len(runner) < 2

    # A final submission waits for everything launched so far
    runner.submit("noop", final=True)
    assert len(runner) == 0

    print("basic: OK")
