"""
ShellGlance

Run a set of shell commands on independent intervals, keep the latest
result of each, and render a condensed one-line summary plus a detailed
breakdown.

Features:
- Per-command interval, timeout and enable flag
- Concurrent, timeout-bounded execution (hung commands are killed)
- Latest-result cache with change notification for any number of observers
- Live reconfiguration when the stored command list changes
- One-shot refresh of every enabled command
"""

from shellglance.config import CommandConfig, CommandSpec
from shellglance.coordinator import ScheduleCoordinator
from shellglance.executor import CommandExecutor, ExecutionResult, PENDING_RESULT
from shellglance.settings import JsonSettingsStore, MemorySettingsStore, SettingsStore
from shellglance.timers import CancellableTimer, SchedulerTimer

__version__ = "0.1.0"
__all__ = [
    "CancellableTimer",
    "CommandConfig",
    "CommandExecutor",
    "CommandSpec",
    "ExecutionResult",
    "JsonSettingsStore",
    "MemorySettingsStore",
    "PENDING_RESULT",
    "ScheduleCoordinator",
    "SchedulerTimer",
    "SettingsStore",
]
