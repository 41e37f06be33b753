"""Process detection and detached worker launch."""

from shellkeep.processes.matcher import ProcessRecord, find_worker, list_processes
from shellkeep.processes.supervisor import WorkerSupervisor, is_alive, spawn_detached

__all__ = [
    "ProcessRecord",
    "WorkerSupervisor",
    "find_worker",
    "is_alive",
    "list_processes",
    "spawn_detached",
]
