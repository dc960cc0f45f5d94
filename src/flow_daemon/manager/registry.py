"""Registry of running dashboard servers.

Maps each project root to its running entry. Only the supervisor mutates the
registry, and only from the daemon's event loop, so no locking is done here.

After every mutation the registry rewrites an advisory snapshot
(``state.json``) listing ``{projectRoot, port, pid}`` per entry. The snapshot
is never read back as truth: on daemon start it is only inspected to report
servers left over from a previous daemon.
"""

import json
import logging
import os
import tempfile
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from flow_daemon.manager.child_process import ChildProcess, is_pid_alive, server_url

logger = logging.getLogger(__name__)


@dataclass
class ProjectEntry:
    """One running server.

    Attributes:
        project_root: Absolute, normalized project path (registry key).
        port: Port the server listens on.
        pid: Server process ID.
        handle: The owned child process.

    """

    project_root: Path
    port: int
    pid: int
    handle: ChildProcess

    @classmethod
    def from_child(cls, child: ChildProcess) -> "ProjectEntry":
        return cls(project_root=child.project_root, port=child.port, pid=child.pid, handle=child)

    @property
    def url(self) -> str:
        return server_url(self.port)

    def is_alive(self) -> bool:
        return self.handle.is_alive()

    def to_snapshot(self) -> dict[str, Any]:
        return {"projectRoot": str(self.project_root), "port": self.port, "pid": self.pid}

    def to_summary(self) -> dict[str, Any]:
        """Wire representation used by the list command."""
        return {**self.to_snapshot(), "url": self.url}


class ProcessRegistry:
    """In-memory map from project root to its running server.

    Attributes:
        state_path: Location of the advisory snapshot.

    """

    def __init__(self, state_path: Path) -> None:
        self.state_path = state_path
        self._entries: dict[Path, ProjectEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, project_root: object) -> bool:
        return project_root in self._entries

    def __iter__(self) -> Iterator[ProjectEntry]:
        return iter(list(self._entries.values()))

    def entries(self) -> list[ProjectEntry]:
        return list(self._entries.values())

    def get(self, project_root: Path) -> ProjectEntry | None:
        return self._entries.get(project_root)

    def get_alive(self, project_root: Path) -> ProjectEntry | None:
        """Return the entry only if its process passes the liveness probe.

        A dead entry is evicted on the spot.
        """
        entry = self._entries.get(project_root)
        if entry is None:
            return None
        if entry.is_alive():
            return entry

        logger.info("Evicting dead server for %s (PID %d)", project_root, entry.pid)
        self.remove(project_root, entry.handle)
        return None

    def claimed_ports(self) -> set[int]:
        return {entry.port for entry in self._entries.values()}

    def add(self, entry: ProjectEntry) -> None:
        """Register a ready server.

        Raises:
            ValueError: If the root or the port is already registered.

        """
        if entry.project_root in self._entries:
            raise ValueError(f"Already registered: {entry.project_root}")
        if entry.port in self.claimed_ports():
            raise ValueError(f"Port {entry.port} already claimed")

        self._entries[entry.project_root] = entry
        self.save()
        logger.info(
            "Started server for %s on port %d (PID %d)",
            entry.project_root,
            entry.port,
            entry.pid,
        )

    def remove(self, project_root: Path, handle: ChildProcess | None = None) -> ProjectEntry | None:
        """Deregister a server.

        Args:
            project_root: Root to remove.
            handle: If given, only remove when the stored entry owns this
                handle. A late exit of an old process must not evict its
                replacement.

        Returns:
            The removed entry, or None if nothing was removed.

        """
        entry = self._entries.get(project_root)
        if entry is None:
            return None
        if handle is not None and entry.handle is not handle:
            return None

        del self._entries[project_root]
        self.save()
        return entry

    def prune_dead(self) -> list[ProjectEntry]:
        """Evict every entry whose process fails the liveness probe."""
        dead = [entry for entry in self._entries.values() if not entry.is_alive()]
        for entry in dead:
            logger.info("Evicting dead server for %s (PID %d)", entry.project_root, entry.pid)
            del self._entries[entry.project_root]
        if dead:
            self.save()
        return dead

    def save(self) -> None:
        """Rewrite the snapshot. Failures are logged, never raised."""
        data = [entry.to_snapshot() for entry in self._entries.values()]
        try:
            self.state_path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=self.state_path.parent, prefix=".state-", suffix=".json"
            )
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
                f.write("\n")
            os.replace(tmp_name, self.state_path)
            logger.debug("Saved %d entries to %s", len(data), self.state_path)
        except OSError:
            logger.exception("Failed to save snapshot to %s", self.state_path)

    def load_snapshot(self) -> list[dict[str, Any]]:
        """Read the advisory snapshot left by a previous daemon.

        Returns:
            Snapshot records; empty if the file is missing or unreadable.

        """
        if not self.state_path.exists():
            return []
        try:
            data = json.loads(self.state_path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            logger.warning("Ignoring unreadable snapshot %s", self.state_path)
            return []
        if not isinstance(data, list):
            return []
        return [item for item in data if isinstance(item, dict)]

    def reconcile(self) -> list[dict[str, Any]]:
        """Check the previous daemon's snapshot against the OS on boot.

        Live processes from the snapshot are reported, not adopted: their
        handles belong to a dead daemon. The snapshot is then rewritten from
        the (empty) in-memory state.

        Returns:
            Snapshot records whose PID is still alive.

        """
        orphans = []
        for record in self.load_snapshot():
            pid = record.get("pid")
            if isinstance(pid, int) and is_pid_alive(pid):
                logger.warning(
                    "Server for %s (PID %d, port %s) outlived the previous daemon",
                    record.get("projectRoot"),
                    pid,
                    record.get("port"),
                )
                orphans.append(record)
        self.save()
        return orphans
