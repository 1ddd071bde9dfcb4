"""
Schedule coordinator for periodically executed shell commands.

Owns the configured command list, one repeating timer per enabled command,
and a cache holding the latest result of each command. Observers are
notified (without arguments) after every result update and every
configuration reload, and pull whatever they need through get_result() and
get_enabled_commands().

Everything runs on a single asyncio event loop:
- timers are APScheduler interval jobs on an AsyncIOScheduler
- runs are asyncio tasks awaiting a subprocess
- observer callbacks are called synchronously from those tasks
so the cache and timer mapping need no locking.
"""

import asyncio
import logging
from functools import partial
from typing import Any, Callable, Dict, List, Optional, Set

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from shellglance.config import COMMANDS_KEY, CommandSpec, coerce_commands, parse_commands
from shellglance.executor import CommandExecutor, ExecutionResult, PENDING_RESULT
from shellglance.timers import CancellableTimer, SchedulerTimer, create_scheduler

logger = logging.getLogger(__name__)

Observer = Callable[[], None]
TimerFactory = Callable[[CommandSpec], CancellableTimer]


class ScheduleCoordinator:
    """
    Runs each enabled command on its own interval and caches the results.

    A tick, or the immediate run of a restarted timer, that arrives while the
    previous run of the same command is still in flight is skipped (not
    queued) unless ``allow_overlap`` is set. refresh_all() always runs.
    """

    def __init__(
        self,
        settings,
        executor: Optional[CommandExecutor] = None,
        timer_factory: Optional[TimerFactory] = None,
        allow_overlap: bool = False
    ):
        """
        Initialize schedule coordinator.

        Args:
            settings: SettingsStore providing the ``commands`` key
            executor: Executor used for every run (default: CommandExecutor())
            timer_factory: Creates a timer for a command (default: APScheduler jobs)
            allow_overlap: If True, ticks start a new run even while one is in flight
        """
        self.settings = settings
        self.executor = executor or CommandExecutor()
        self.allow_overlap = allow_overlap
        self._timer_factory = timer_factory
        self._scheduler: Optional[AsyncIOScheduler] = None

        self._commands: List[CommandSpec] = []
        self._command_ids: Set[str] = set()
        self._timers: Dict[str, CancellableTimer] = {}
        self._results: Dict[str, ExecutionResult] = {}
        self._observers: List[Observer] = []
        self._in_flight: Dict[str, Set[asyncio.Task]] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._destroyed = False

        self._load(None)
        self._settings_handler_id: Optional[int] = settings.connect(self._on_settings_changed)

        logger.info(f"Coordinator initialized with {len(self._commands)} command(s)")

    # Configuration

    def _on_settings_changed(self, key: str):
        if self._destroyed:
            return

        if key == COMMANDS_KEY:
            logger.info("Command list changed, reloading")
            self._load(None)
            self.restart_all()
        self._notify_change()

    def _load(self, specs: Any):
        if specs is None:
            specs = self.settings.get_string(COMMANDS_KEY)

        try:
            if isinstance(specs, (str, bytes)):
                commands = parse_commands(specs)
            else:
                commands = coerce_commands(specs)
        except (TypeError, ValueError) as e:
            logger.error(f"Failed to parse commands: {e}")
            commands = []

        # Replace wholesale; readers never see a half-updated list
        self._commands = commands
        self._command_ids = {spec.id for spec in commands}

        for command_id in list(self._results):
            if command_id not in self._command_ids:
                del self._results[command_id]

        enabled = sum(1 for spec in commands if spec.enabled)
        logger.info(f"Loaded {len(commands)} command(s), {enabled} enabled")

    def load_configuration(self, specs: Any = None):
        """
        Replace the command list.

        Args:
            specs: JSON text, a list of dicts or CommandSpec objects, or None
                   to read the ``commands`` key from the settings store.
                   Malformed input is logged and loads as an empty list.

        Running timers are not touched; call restart_all() to apply the new
        list to them.
        """
        self._load(specs)
        self._notify_change()

    # Timers

    def _create_timer(self, spec: CommandSpec) -> CancellableTimer:
        if self._timer_factory is not None:
            return self._timer_factory(spec)
        if self._scheduler is None:
            self._scheduler = create_scheduler()
        return SchedulerTimer(self._scheduler, name=f"command-{spec.id}")

    def _start_timer(self, spec: CommandSpec):
        """
        Run the command now, then every ``spec.interval`` seconds.

        The immediate run follows the same overlap rule as ticks.
        """
        self._stop_timer(spec.id)

        if not spec.enabled:
            return

        if self.allow_overlap or not self.is_running(spec.id):
            self._spawn_run(spec)
        else:
            logger.debug(f"Skipping immediate run of '{spec.label}', previous run still in flight")

        timer = self._create_timer(spec)
        timer.start(spec.interval, partial(self._on_tick, spec))
        self._timers[spec.id] = timer
        logger.debug(f"Started timer for '{spec.label}' (interval={spec.interval}s)")

    def _stop_timer(self, command_id: str):
        timer = self._timers.pop(command_id, None)
        if timer is not None:
            timer.cancel()
            logger.debug(f"Stopped timer for '{command_id}'")

    def _on_tick(self, spec: CommandSpec):
        if not self.allow_overlap and self.is_running(spec.id):
            logger.debug(f"Skipping tick for '{spec.label}', previous run still in flight")
            return
        self._spawn_run(spec)

    def start_all(self):
        """
        Start timers for every enabled command that does not have one.

        Must be called from the running event loop.
        """
        if self._destroyed:
            logger.warning("start_all() called on a destroyed coordinator")
            return

        started = 0
        for spec in self._commands:
            if spec.enabled and spec.id not in self._timers:
                self._start_timer(spec)
                started += 1
        if started:
            logger.info(f"Started {started} timer(s)")

    def stop_all(self):
        """Cancel every timer. Cached results are kept."""
        for command_id in list(self._timers):
            self._stop_timer(command_id)
        self._timers.clear()

    def restart_all(self):
        """Recreate every timer from the current command list."""
        self.stop_all()
        self.start_all()

    def has_timer(self, command_id: str) -> bool:
        return command_id in self._timers

    @property
    def timer_count(self) -> int:
        return len(self._timers)

    # Runs

    def _spawn_run(self, spec: CommandSpec) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(self._run_command(spec))
        self._tasks.add(task)
        self._in_flight.setdefault(spec.id, set()).add(task)
        task.add_done_callback(partial(self._run_finished, spec.id))
        return task

    def _run_finished(self, command_id: str, task: asyncio.Task):
        self._tasks.discard(task)
        running = self._in_flight.get(command_id)
        if running is not None:
            running.discard(task)
            if not running:
                del self._in_flight[command_id]

    async def _run_command(self, spec: CommandSpec) -> ExecutionResult:
        try:
            result = await self.executor.execute(spec.command, spec.timeout)
        except Exception as e:
            logger.exception(f"Executor failed for '{spec.label}'")
            result = ExecutionResult.failure(str(e) or e.__class__.__name__)

        if self._destroyed:
            logger.debug(f"Discarding result for '{spec.label}', coordinator destroyed")
            return result
        if spec.id not in self._command_ids:
            logger.debug(f"Discarding result for '{spec.label}', command was removed")
            return result

        self._results[spec.id] = result
        if not result.success:
            logger.info(f"Command '{spec.label}' failed: {result.error}")
        self._notify_change()
        return result

    async def refresh_all(self) -> List[ExecutionResult]:
        """
        Run every enabled command once, now, concurrently.

        Timers are not affected. Each result is cached (and observers are
        notified) as soon as that run completes.

        Returns:
            Results in command order, once every run has completed
        """
        enabled = self.get_enabled_commands()
        if not enabled:
            return []

        logger.info(f"Refreshing {len(enabled)} command(s)")
        tasks = [self._spawn_run(spec) for spec in enabled]
        return list(await asyncio.gather(*tasks))

    def is_running(self, command_id: str) -> bool:
        """Check if a run of the command is in flight."""
        return bool(self._in_flight.get(command_id))

    @property
    def running_count(self) -> int:
        return len(self._tasks)

    async def wait_idle(self):
        """Wait until no run is in flight."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def cancel_runs(self) -> int:
        """
        Cancel every in-flight run (the executor kills their processes).

        Returns:
            Number of runs cancelled
        """
        pending = [task for task in self._tasks if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            logger.info(f"Cancelled {len(pending)} in-flight run(s)")
        return len(pending)

    # Views

    def get_result(self, command_id: str) -> ExecutionResult:
        """Get the latest result of a command, or the pending default."""
        return self._results.get(command_id, PENDING_RESULT)

    def get_commands(self) -> List[CommandSpec]:
        return list(self._commands)

    def get_enabled_commands(self) -> List[CommandSpec]:
        """Get enabled commands in configured order."""
        return [spec for spec in self._commands if spec.enabled]

    def get_all_results(self) -> Dict[str, ExecutionResult]:
        return {spec.id: self.get_result(spec.id) for spec in self._commands}

    # Observers

    def subscribe(self, callback: Observer):
        """Register an observer called with no arguments after every change."""
        self._observers.append(callback)

    def unsubscribe(self, callback: Observer) -> bool:
        """
        Remove an observer.

        Returns:
            True if removed, False if it was not registered
        """
        try:
            self._observers.remove(callback)
            return True
        except ValueError:
            return False

    def _notify_change(self):
        for callback in list(self._observers):
            try:
                callback()
            except Exception:
                logger.exception("Observer callback failed")

    # Shutdown

    def destroy(self):
        """
        Stop all timers and release everything. Safe to call more than once.

        Runs still in flight finish in the background; their results are
        discarded. Await wait_idle() first to let them complete.
        """
        if self._destroyed:
            return
        self._destroyed = True

        if self._settings_handler_id is not None:
            self.settings.disconnect(self._settings_handler_id)
            self._settings_handler_id = None

        self.stop_all()

        if self._scheduler is not None and self._scheduler.running:
            try:
                self._scheduler.shutdown(wait=False)
            except RuntimeError as e:
                # Event loop already closed
                logger.debug(f"Timer scheduler shutdown skipped: {e}")
        self._scheduler = None

        self._observers.clear()
        self._results.clear()
        logger.info("Coordinator destroyed")

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    def __repr__(self):
        return (
            f"ScheduleCoordinator(commands={len(self._commands)}, "
            f"timers={len(self._timers)}, running={len(self._tasks)})"
        )
