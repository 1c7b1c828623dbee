"""
Per-project cross-page aggregation state for the analysis phase.

Each accumulator carries its own lock, so tasks touching different keys
never contend with each other. Locks are only held for in-memory updates,
never across I/O.
"""
from __future__ import annotations
import logging
import threading
from typing import Any, Dict, Hashable, List, Optional

logger = logging.getLogger(__name__)


class _Group:
    """Ordered, de-duplicated members collected under one key."""

    __slots__ = ("lock", "members")

    def __init__(self):
        self.lock = threading.Lock()
        # dict keys keep insertion order and give O(1) membership
        self.members: Dict[Hashable, None] = {}


class _Counter:
    __slots__ = ("lock", "value")

    def __init__(self):
        self.lock = threading.Lock()
        self.value = 0


class _Flag:
    __slots__ = ("lock", "claimed")

    def __init__(self):
        self.lock = threading.Lock()
        self.claimed = False


class ProjectArena:
    """Shared accumulators for one project, owned by an ``ArenaRegistry``."""

    def __init__(self, project_id: int):
        self.project_id = project_id
        self._groups: Dict[tuple, _Group] = {}
        self._group_keys: Dict[str, Dict[Hashable, None]] = {}
        self._counters: Dict[tuple, _Counter] = {}
        self._flags: Dict[tuple, _Flag] = {}
        self._values: Dict[tuple, Any] = {}
        self._values_lock = threading.Lock()

    def add_to_group(self, name: str, key: Hashable, member: Hashable) -> int:
        """Add ``member`` to the group ``(name, key)`` and return the group size.

        Adding a member that is already present does not grow the group, so a
        count of 2 marks exactly the first collision.
        """
        group = self._groups.get((name, key))
        if group is None:
            group = self._groups.setdefault((name, key), _Group())
            self._group_keys.setdefault(name, {})[key] = None
        with group.lock:
            group.members.setdefault(member, None)
            return len(group.members)

    def group_snapshot(self, name: str, key: Hashable) -> List[Hashable]:
        group = self._groups.get((name, key))
        if group is None:
            return []
        with group.lock:
            return list(group.members)

    def keys(self, name: str) -> List[Hashable]:
        """Every key that has a group under ``name``."""
        return list(self._group_keys.get(name, ()))

    def increment(self, name: str, key: Hashable = None, amount: int = 1) -> int:
        counter = self._counters.setdefault((name, key), _Counter())
        with counter.lock:
            counter.value += amount
            return counter.value

    def counter(self, name: str, key: Hashable = None) -> int:
        counter = self._counters.get((name, key))
        if counter is None:
            return 0
        with counter.lock:
            return counter.value

    def try_claim(self, name: str, key: Hashable = None) -> bool:
        """Compare-and-set a once-only flag. Only the first caller gets True."""
        flag = self._flags.setdefault((name, key), _Flag())
        with flag.lock:
            if flag.claimed:
                return False
            flag.claimed = True
            return True

    def set_value(self, name: str, key: Hashable, value: Any):
        with self._values_lock:
            self._values[(name, key)] = value

    def get_value(self, name: str, key: Hashable, default: Any = None) -> Any:
        with self._values_lock:
            return self._values.get((name, key), default)

    def clear(self):
        self._groups.clear()
        self._group_keys.clear()
        self._counters.clear()
        self._flags.clear()
        with self._values_lock:
            self._values.clear()


class ArenaRegistry:
    """Maps project ids to arenas with an explicit create / release lifecycle."""

    def __init__(self):
        self._arenas: Dict[int, ProjectArena] = {}
        self._lock = threading.Lock()

    def get(self, project_id: int) -> ProjectArena:
        with self._lock:
            arena = self._arenas.get(project_id)
            if arena is None:
                arena = ProjectArena(project_id)
                self._arenas[project_id] = arena
                logger.debug("Created aggregation arena for project %s", project_id)
            return arena

    def peek(self, project_id: int) -> Optional[ProjectArena]:
        with self._lock:
            return self._arenas.get(project_id)

    def release(self, project_id: int) -> bool:
        with self._lock:
            arena = self._arenas.pop(project_id, None)
        if arena is None:
            return False
        arena.clear()
        logger.debug("Released aggregation arena for project %s", project_id)
        return True

    def __contains__(self, project_id: int) -> bool:
        with self._lock:
            return project_id in self._arenas
