"""Supervision of per-project dashboard servers.

Public API:
    ChildProcess: Handle for one spawned server
    PortAllocator: Finds a free local port
    ProcessRegistry: Running servers keyed by project root
    ProcessSupervisor: Command execution against the registry
    ProjectEntry: One registry record
"""

from .child_process import ChildProcess
from .ports import PortAllocator
from .process_supervisor import ProcessSupervisor
from .registry import ProcessRegistry, ProjectEntry

__all__ = [
    "ChildProcess",
    "PortAllocator",
    "ProcessRegistry",
    "ProcessSupervisor",
    "ProjectEntry",
]
