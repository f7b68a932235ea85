# Copyright (C) 2026 The parallelrunner Authors
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at http://mozilla.org/MPL/2.0/.
"""A runner launching console commands through a ProcessPool."""
import logging
import os
import time
import typing

from .impl import (
    DEFAULT_POLL_INTERVAL,
    PopenHandle,
    ProcessHandle,
    ProcessPool,
    check_capacity,
)
from .invocation import CONSOLE_PATH, Invocation, InvocationBuilder

_LOGGER = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_MICROS = int(DEFAULT_POLL_INTERVAL * 1e6)

# Environment variables consulted by RunnerConfig.from_environ(...)
ENVIRON_PREFIX = "PARALLELRUNNER_"


class RunnerConfig(typing.NamedTuple):
    """Recognized options for constructing a ParallelProcessRunner."""

    base_path: str
    environment: str
    capacity: typing.Optional[int] = None
    poll_interval_micros: int = DEFAULT_POLL_INTERVAL_MICROS
    binary_path: str = ""
    console: str = CONSOLE_PATH

    @classmethod
    def from_environ(
        cls, environ: typing.Mapping[str, str] = os.environ
    ) -> "RunnerConfig":
        """
        Read PARALLELRUNNER_-prefixed variables, e.g. PARALLELRUNNER_CAPACITY.

        Both PARALLELRUNNER_BASE_PATH and PARALLELRUNNER_ENVIRONMENT are
        required.  Raises KeyError when either is missing.  Raises
        ValueError on malformed integers and InvalidCapacity whenever
        PARALLELRUNNER_CAPACITY is not positive.
        """
        kwargs = {}  # type: typing.Dict[str, typing.Any]
        for field in cls._fields:
            key = ENVIRON_PREFIX + field.upper()
            if key in environ:
                kwargs[field] = environ[key]
            elif field not in cls._field_defaults:
                raise KeyError(key)
        # Both int(...) conversions raise ValueError on malformed input
        if "capacity" in kwargs:
            kwargs["capacity"] = check_capacity(int(kwargs["capacity"]))
        if "poll_interval_micros" in kwargs:
            kwargs["poll_interval_micros"] = int(
                kwargs["poll_interval_micros"]
            )
        return cls(**kwargs)


def popen_handle(invocation: Invocation) -> ProcessHandle:
    """Default factory launching an Invocation via subprocess.Popen."""
    return PopenHandle(invocation.argv)


class ParallelProcessRunner:
    """
    Launches console commands with at most capacity running at once.

    Submitting beyond capacity blocks the caller until some process
    finishes.  Leaving a with-block, calling close(), or garbage
    collecting the runner waits upon every process it launched.
    """

    __slots__ = ("_builder", "_handle_fn", "_pool")

    def __init__(
        self,
        base_path: str,
        environment: str,
        capacity: typing.Optional[int] = None,
        poll_interval_micros: int = DEFAULT_POLL_INTERVAL_MICROS,
        binary_path: str = "",
        console: str = CONSOLE_PATH,
        *,
        handle_fn: typing.Callable[[Invocation], ProcessHandle] = popen_handle,
        sleep_fn: typing.Callable[[float], typing.Any] = time.sleep
    ) -> None:
        """
        Launch console beneath base_path tagging each with environment.

        When not provided, capacity defaults to the number of usable CPUs.
        Optional handle_fn permits launching Invocations differently,
        for example with output redirected or via some other platform.
        Raises InvalidCapacity when capacity is not a positive int.
        """
        assert isinstance(poll_interval_micros, int), poll_interval_micros
        assert poll_interval_micros >= 0, poll_interval_micros
        self._builder = InvocationBuilder(
            base_path=base_path,
            environment=environment,
            binary_path=binary_path,
            console=console,
        )
        assert handle_fn is not None
        self._handle_fn = handle_fn
        self._pool = ProcessPool(
            capacity=capacity,
            poll_interval=poll_interval_micros / 1e6,
            sleep_fn=sleep_fn,
        )

    @classmethod
    def from_config(
        cls, config: RunnerConfig, **kwargs
    ) -> "ParallelProcessRunner":
        """Construct from config with kwargs as for __init__(...)."""
        return cls(**config._asdict(), **kwargs)

    def __enter__(self) -> "ParallelProcessRunner":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def __len__(self) -> int:
        return len(self._pool)

    @property
    def builder(self) -> InvocationBuilder:
        return self._builder

    @property
    def pool(self) -> ProcessPool:
        return self._pool

    @property
    def capacity(self) -> int:
        return self._pool.capacity

    @property
    def draining(self) -> bool:
        return self._pool.draining

    def active(self) -> typing.Tuple[ProcessHandle, ...]:
        """Snapshot of running processes in submission order."""
        return self._pool.active()

    def set_capacity(self, capacity: int) -> None:
        """Change how many processes future submissions permit at once."""
        self._pool.set_capacity(capacity)

    def _launchable(
        self, command: str, args: typing.Iterable[typing.Any]
    ) -> ProcessHandle:
        invocation = self._builder.build(command, args)
        _LOGGER.debug("Prepared %s", invocation)
        return self._handle_fn(invocation)

    def submit(
        self,
        command: str,
        args: typing.Iterable[typing.Any] = (),
        *,
        final: bool = False
    ) -> None:
        """
        Launch command, blocking whenever capacity processes are running.

        When final is True, additionally waits for every running process.
        Raises LaunchFailed when the process cannot be started.
        """
        self._pool.submit(self._launchable(command, args), final=final)

    def execute_single(
        self,
        command: str,
        args: typing.Iterable[typing.Any] = (),
        *,
        synchronous: bool = False
    ) -> typing.Optional[int]:
        """
        Launch command bypassing any admission control.

        When synchronous is False, the process is tracked so that
        drain() and close() wait upon it, and None is returned.
        When synchronous is True, blocks until the process exits and
        returns its exit status without the process ever being tracked.
        Raises LaunchFailed when the process cannot be started.
        """
        assert isinstance(synchronous, bool), type(synchronous)
        handle = self._launchable(command, args)
        if synchronous:
            return self._pool.wait_for(handle)
        self._pool.track(handle)
        return None

    def drain(self, wait_all: bool = True) -> bool:
        """Wait on running processes per ProcessPool.drain(...)."""
        return self._pool.drain(wait_all=wait_all)

    def close(self) -> None:
        """Wait for every running process.  Repeated calls are harmless."""
        self._pool.close()
