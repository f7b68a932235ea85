# Copyright (C) 2026 The parallelrunner Authors
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at http://mozilla.org/MPL/2.0/.
"""Implementation of the ProcessPool and related classes."""
import abc
import enum
import logging
import os
import subprocess
import threading
import time
import typing

_LOGGER = logging.getLogger(__name__)

# Matches the resolution used when polling for completed work.
DEFAULT_POLL_INTERVAL = 1.0e-2


class LaunchFailed(Exception):
    """
    Reports that a ProcessHandle could not start its process.

    Instances of this type must have non-None __cause__ members (see PEP 3154).
    The __cause__ member will be the Exception raised while launching.
    A handle whose launch failed is never tracked by any ProcessPool.
    """

    pass


class InvalidCapacity(ValueError):
    """Reports a capacity which is not a positive integer."""

    pass


def check_capacity(capacity: typing.Any) -> int:
    """Return capacity when it is a positive int otherwise InvalidCapacity."""
    if isinstance(capacity, bool) or not isinstance(capacity, int):
        raise InvalidCapacity("Capacity must be an int: {!r}".format(capacity))
    if capacity < 1:
        raise InvalidCapacity("Capacity must be positive: {}".format(capacity))
    return capacity


class State(enum.Enum):
    """Whether some drain loop currently owns a ProcessPool's handles."""

    IDLE = "idle"
    DRAINING = "draining"


class ProcessHandle(abc.ABC):
    """
    An external process which is started once and then polled.

    Handles compare and hash by identity.  Once is_running() first reports
    False the process has exited and returncode reports its exit status.
    """

    __slots__ = ()

    @abc.abstractmethod
    def start(self) -> None:
        """Begin execution without blocking.  Raises LaunchFailed."""
        raise NotImplementedError()

    @abc.abstractmethod
    def is_running(self) -> bool:
        """Poll, never blocking, whether the started process is running."""
        raise NotImplementedError()

    @property
    @abc.abstractmethod
    def returncode(self) -> typing.Optional[int]:
        """Exit status once finished otherwise None."""
        raise NotImplementedError()


class PopenHandle(ProcessHandle):
    """A ProcessHandle launching an argument vector via subprocess.Popen."""

    __slots__ = ("_args", "_kwargs", "_popen")

    def __init__(self, args: typing.Sequence[str], **kwargs) -> None:
        """
        Prepare to launch args with any additional subprocess.Popen kwargs.

        Nothing is launched until start().  Output is not captured unless
        requested through kwargs, e.g. stdout=subprocess.DEVNULL.
        """
        assert args, "Empty argument vector"
        self._args = tuple(args)
        self._kwargs = kwargs

        # Becomes non-None after a successful start()
        self._popen = None  # type: typing.Optional[subprocess.Popen]

    def __copy__(self) -> typing.NoReturn:
        """Disallow copying as duplicates cannot sensibly share a process."""
        # In particular, which copy would reap the child?
        raise NotImplementedError("ProcessHandles cannot be copied.")

    def __reduce__(self) -> typing.NoReturn:
        """Disallow pickling as duplicates cannot sensibly share a process."""
        raise NotImplementedError("ProcessHandles cannot be pickled.")

    def __repr__(self) -> str:
        return "PopenHandle(args={!r}, pid={!r}, returncode={!r})".format(
            self._args, self.pid, self.returncode
        )

    @property
    def args(self) -> typing.Tuple[str, ...]:
        return self._args

    @property
    def pid(self) -> typing.Optional[int]:
        return None if self._popen is None else self._popen.pid

    @property
    def returncode(self) -> typing.Optional[int]:
        return None if self._popen is None else self._popen.returncode

    def start(self) -> None:
        assert self._popen is None, "Already started"
        try:
            self._popen = subprocess.Popen(self._args, **self._kwargs)
        except (OSError, ValueError) as e:
            raise LaunchFailed("Cannot launch {!r}".format(self._args)) from e
        _LOGGER.debug("Launched pid %d: %r", self._popen.pid, self._args)

    def is_running(self) -> bool:
        assert self._popen is not None, "Not yet started"
        return self._popen.poll() is None


class ProcessPool:
    """
    Bounds how many started ProcessHandles are tracked simultaneously.

    No background threads are used.  All waiting happens on the calling
    thread by polling handles every poll_interval seconds.  Tracked
    handles and the drain state are guarded by a lock so that other
    threads may submit work or close() while some drain is in progress.
    """

    __slots__ = (
        "_capacity",
        "_poll_interval",
        "_sleep_fn",
        "_lock",
        "_state",
        "_owner",
        "_active",
    )

    def __init__(
        self,
        capacity: typing.Optional[int] = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        sleep_fn: typing.Callable[[float], typing.Any] = time.sleep,
    ) -> None:
        """
        Permit capacity simultaneous handles polled every poll_interval.

        When not provided, capacity defaults to len(os.sched_getaffinity(0))
        which reports the number of usable CPUs for the current process.
        Raises InvalidCapacity when capacity is not a positive int.
        """
        if capacity is None:
            capacity = len(os.sched_getaffinity(0))
        self._capacity = check_capacity(capacity)
        assert poll_interval >= 0.0, poll_interval
        self._poll_interval = poll_interval
        assert sleep_fn is not None
        self._sleep_fn = sleep_fn

        # Insertion-ordered set of handles not yet observed finished
        self._lock = threading.Lock()
        self._state = State.IDLE
        self._owner = None  # type: typing.Optional[int]
        self._active = {}  # type: typing.Dict[ProcessHandle, None]

    def __copy__(self) -> "ProcessPool":
        """Shallow copies return the original ProcessPool unchanged."""
        # Because any "copy" should and can only mutate the same handles
        return self

    def __deepcopy__(self, _: typing.Any) -> "ProcessPool":
        """Deep copies return the original ProcessPool unchanged."""
        return self

    def __len__(self) -> int:
        with self._lock:
            return len(self._active)

    def __enter__(self) -> "ProcessPool":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def __del__(self) -> None:
        """Best-effort close() for pools never explicitly closed."""
        # Attribute may be absent when __init__ raised InvalidCapacity
        if not getattr(self, "_active", None):
            return
        try:
            self.close()
        except Exception:
            _LOGGER.exception("Abandoning %d process(es)", len(self._active))

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def poll_interval(self) -> float:
        return self._poll_interval

    @property
    def state(self) -> State:
        return self._state

    @property
    def draining(self) -> bool:
        return self._state is State.DRAINING

    def active(self) -> typing.Tuple[ProcessHandle, ...]:
        """Snapshot of tracked handles in submission order."""
        with self._lock:
            return tuple(self._active)

    def set_capacity(self, capacity: int) -> None:
        """
        Change capacity for future admission decisions only.

        Running processes are neither interrupted nor waited upon.
        Raises InvalidCapacity, leaving the pool unchanged, when not positive.
        """
        self._capacity = check_capacity(capacity)

    def submit(self, handle: ProcessHandle, final: bool = False) -> None:
        """
        Start handle and track it, draining whenever capacity is reached.

        When final is True, blocks until every tracked handle has finished
        even if another thread is draining, exactly as close() does.
        Otherwise blocks only until fewer than capacity handles remain.
        Raises LaunchFailed, tracking nothing, when handle cannot start.
        """
        assert isinstance(final, bool), type(final)
        handle.start()
        with self._lock:
            self._active[handle] = None
            saturated = len(self._active) >= self._capacity
        # Final submissions must not defer to some other thread's drain
        if final:
            self.close()
        elif saturated:
            self.drain(wait_all=False)

    def track(self, handle: ProcessHandle) -> None:
        """
        Start handle and track it without any admission control.

        The handle counts against capacity for subsequent submit(...) calls.
        Raises LaunchFailed, tracking nothing, when handle cannot start.
        """
        handle.start()
        with self._lock:
            self._active[handle] = None

    def wait_for(self, handle: ProcessHandle) -> typing.Optional[int]:
        """
        Start handle then poll it alone until it finishes.

        The handle is never tracked so capacity accounting is untouched.
        Returns the handle's exit status.  Raises LaunchFailed.
        """
        handle.start()
        while handle.is_running():
            self._sleep_fn(self._poll_interval)
        return handle.returncode

    def drain(self, wait_all: bool = True) -> bool:
        """
        Poll tracked handles, retiring finished ones, until satisfied.

        When wait_all is True, returns only after no handles remain.
        Otherwise returns as soon as fewer than capacity handles remain.
        Returns False immediately, doing nothing, whenever some other
        drain is already in progress.  Otherwise returns True.
        """
        # Checking and claiming the drain must be atomic
        with self._lock:
            if self._state is State.DRAINING:
                return False
            self._state = State.DRAINING
            self._owner = threading.get_ident()
        _LOGGER.debug("Draining (wait_all=%s)", wait_all)

        try:
            while True:
                # (1) Nothing tracked means nothing to do
                with self._lock:
                    if not self._active:
                        break
                    snapshot = tuple(self._active)

                # (2) Poll outside the lock then retire any finished handles
                finished = [h for h in snapshot if not h.is_running()]
                with self._lock:
                    for handle in finished:
                        del self._active[handle]
                    remaining = len(self._active)
                for handle in finished:
                    self._retired(handle)

                # (3) Stop when done or, for partial drains, with headroom
                if not remaining:
                    break
                if not wait_all and remaining < self._capacity:
                    break

                # (4) Otherwise, yield the processor before polling again
                self._sleep_fn(self._poll_interval)
        finally:
            with self._lock:
                self._owner = None
                self._state = State.IDLE
        _LOGGER.debug("Drained (wait_all=%s)", wait_all)
        return True

    @staticmethod
    def _retired(handle: ProcessHandle) -> None:
        returncode = handle.returncode
        if returncode:
            _LOGGER.warning("Exit status %s from %r", returncode, handle)
        else:
            _LOGGER.debug("Retired %r", handle)

    def close(self) -> None:
        """
        Block until every tracked handle has finished.

        First waits out any drain in progress on another thread and then
        drains whatever remains.  Repeated calls are harmless.  A call made
        from within this thread's own drain returns immediately because
        that drain is already responsible for the tracked handles.
        """
        while True:
            with self._lock:
                if self._owner == threading.get_ident():
                    return
                draining = self._state is State.DRAINING
                if not draining and not self._active:
                    return
            if draining:
                self._sleep_fn(self._poll_interval)
            else:
                self.drain(wait_all=True)
