# Copyright (C) 2026 The parallelrunner Authors
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at http://mozilla.org/MPL/2.0/.
"""Demo: A console program for ParallelProcessRunner to launch."""
import argparse
import sys
import time


def parse_args(argv):
    # Every command accepts the environment tag appended by the runner
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("-e", dest="environment", default="dev")

    parser = argparse.ArgumentParser(description=__doc__)
    commands = parser.add_subparsers(dest="command")
    commands.required = True
    commands.add_parser("noop", parents=[common])
    sleep = commands.add_parser("sleep", parents=[common])
    sleep.add_argument("seconds", type=float)
    touch = commands.add_parser("touch", parents=[common])
    touch.add_argument("path")
    touch.add_argument("text", nargs="*")
    exit_ = commands.add_parser("exit", parents=[common])
    exit_.add_argument("status", type=int)
    return parser.parse_args(argv)


def main(argv) -> int:
    args = parse_args(argv)
    if args.command == "sleep":
        time.sleep(args.seconds)
    elif args.command == "touch":
        # Records the environment so callers can observe the tag arrived
        with open(args.path, "w") as f:
            f.write(" ".join(args.text + [args.environment]))
    elif args.command == "exit":
        return args.status
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
