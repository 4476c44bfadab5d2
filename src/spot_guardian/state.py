"""
Shared fleet state: instance registry, notification cooldowns and traffic latches.

Each structure owns its own reader/writer lock. No lock is ever held across
two structures, so a writer on one never blocks readers on another.
"""

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Callable, Iterable, Iterator, Optional

from .models import RegionGroup, TrackedInstance

logger = logging.getLogger(__name__)


class ReadWriteLock:
    """Many concurrent readers or one writer. Waiting writers block new readers."""

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            while self._writer or self._readers:
                self._cond.wait()
            self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


@dataclass
class RegistryDiff:
    added: list[TrackedInstance] = field(default_factory=list)
    removed: list[TrackedInstance] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.added or self.removed)


class InstanceRegistry:
    """Last known set of tracked instances, replaced wholesale on every discovery."""

    def __init__(self, instances: Iterable[TrackedInstance] = ()):
        self._lock = ReadWriteLock()
        self._instances: tuple[TrackedInstance, ...] = _unique(instances)

    def snapshot(self) -> tuple[TrackedInstance, ...]:
        with self._lock.read():
            return self._instances

    def find(self, instance_id: str) -> Optional[TrackedInstance]:
        for instance in self.snapshot():
            if instance.instance_id == instance_id:
                return instance
        return None

    def replace(self, instances: Iterable[TrackedInstance]) -> RegistryDiff:
        """Swap in a new snapshot and return what was added and removed by id."""
        fresh = _unique(instances)
        with self._lock.write():
            previous = self._instances
            self._instances = fresh

        old_ids = {inst.instance_id for inst in previous}
        new_ids = {inst.instance_id for inst in fresh}
        return RegistryDiff(
            added=[inst for inst in fresh if inst.instance_id not in old_ids],
            removed=[inst for inst in previous if inst.instance_id not in new_ids],
        )

    def __len__(self) -> int:
        return len(self.snapshot())


def _unique(instances: Iterable[TrackedInstance]) -> tuple[TrackedInstance, ...]:
    seen: set[str] = set()
    unique = []
    for inst in instances:
        if inst.instance_id in seen:
            logger.warning("Duplicate instance %s in discovery result, keeping first", inst.instance_id)
            continue
        seen.add(inst.instance_id)
        unique.append(inst)
    return tuple(unique)


class CooldownTracker:
    """Suppresses repeat alerts for the same key inside a cooldown window."""

    def __init__(self, cooldown_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._lock = ReadWriteLock()
        self._last_sent: dict[str, float] = {}

    def can_notify(self, key: str) -> bool:
        with self._lock.read():
            last = self._last_sent.get(key)
        return last is None or self._clock() - last > self.cooldown_seconds

    def touch(self, key: str) -> None:
        with self._lock.write():
            self._last_sent[key] = self._clock()

    def try_acquire(self, key: str) -> bool:
        """Atomically check the window for ``key`` and record now if it was open."""
        with self._lock.write():
            now = self._clock()
            last = self._last_sent.get(key)
            if last is not None and now - last <= self.cooldown_seconds:
                return False
            self._last_sent[key] = now
            return True


class TrafficLatch:
    """Per region group flag recording that the group was shut down for traffic."""

    def __init__(self):
        self._lock = ReadWriteLock()
        self._latched = {group: False for group in RegionGroup}

    def is_latched(self, group: RegionGroup) -> bool:
        with self._lock.read():
            return self._latched[group]

    def states(self) -> dict[RegionGroup, bool]:
        with self._lock.read():
            return dict(self._latched)

    def evaluate(self, group: RegionGroup, over_budget: bool) -> Optional[bool]:
        """Apply one observation.

        Returns True on the clear->set edge, False on the set->clear edge and
        None when the latch did not move.
        """
        with self._lock.write():
            latched = self._latched[group]
            if over_budget and not latched:
                self._latched[group] = True
                return True
            if not over_budget and latched:
                self._latched[group] = False
                return False
            return None
