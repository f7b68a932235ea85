# Copyright (C) 2026 The parallelrunner Authors
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at http://mozilla.org/MPL/2.0/.
"""Assembly of console command lines ready for launching."""
import os
import shlex
import typing

# Location of the console relative to the base path
CONSOLE_PATH = os.path.join("bin", "console")

# Flag preceding the environment tag on every invocation
ENVIRONMENT_FLAG = "-e"


class Invocation(typing.NamedTuple):
    """A fully-assembled argument vector."""

    argv: typing.Tuple[str, ...]

    def command_line(self) -> str:
        """The argument vector as one shell-escaped line."""
        return " ".join(shlex.quote(arg) for arg in self.argv)

    def __str__(self) -> str:
        return self.command_line()


class InvocationBuilder:
    """Turns console command names plus arguments into Invocations."""

    __slots__ = ("_prefix", "_environment")

    def __init__(
        self,
        base_path: str,
        environment: str,
        binary_path: str = "",
        console: str = CONSOLE_PATH,
    ) -> None:
        """
        Launch console beneath base_path tagging each with environment.

        When binary_path is non-empty, e.g. some interpreter, the console
        is passed to it as the first argument.  Otherwise the console
        itself must be executable.
        """
        assert isinstance(base_path, str), type(base_path)
        assert isinstance(environment, str), type(environment)
        assert isinstance(binary_path, str), type(binary_path)
        assert isinstance(console, str), type(console)
        launcher = (binary_path,) if binary_path else ()
        self._prefix = launcher + (os.path.join(base_path, console),)
        self._environment = environment

    @property
    def environment(self) -> str:
        return self._environment

    def build(
        self, command: str, arguments: typing.Iterable[typing.Any] = ()
    ) -> Invocation:
        """Deterministically assemble the Invocation for one command."""
        assert isinstance(command, str) and command, repr(command)
        return Invocation(
            self._prefix
            + (command,)
            + tuple(str(argument) for argument in arguments)
            + (ENVIRONMENT_FLAG, self._environment)
        )
