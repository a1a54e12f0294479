"""Plan executor for provisioning runs.

Walks a Plan in order and, for each Action:
1. skips it if a dependency failed (or was itself blocked) this run
2. skips it if the state store says it already succeeded (unless force)
3. marks it succeeded without changes if the adapter probe says the host
   already satisfies it (unless force)
4. otherwise applies it through its adapter; an apply that reports the
   action still unsatisfied (e.g. package unavailable) is recorded as
   skipped and retried on the next run

Each record is saved to the store as soon as the Action is processed.
On failure the run halts unless continue_on_failure is set: Actions that
depend on the failure (directly or transitively) are still recorded as
skipped, every other remaining Action is reported as pending. A user
abort (SIGINT/SIGTERM) is only honored between Actions; it leaves the
rest of the plan pending.
"""

import logging
import signal
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Iterator, Optional

from backends import AdapterSet, BackendError, validate_backends
from provision.action import Action
from provision.lock import StateLock, lock_path_for
from provision.plan import Plan
from provision.report import RunReport
from provision.state import ExecutionRecord, RecordStatus, StateStore

logger = logging.getLogger(__name__)

BLOCKED_DEPENDENCY = 'blocked dependency'
ALREADY_SUCCEEDED = 'already succeeded'


@dataclass
class RunOptions:
    """Execution policy for one run.

    Attributes:
        continue_on_failure: Keep running independent actions after a failure
        dry_run: Probe only; never apply and never write the state store
        force: Ignore the state store and probes; apply every action
    """
    continue_on_failure: bool = False
    dry_run: bool = False
    force: bool = False


@dataclass
class Executor:
    """Applies a Plan through backend adapters, one action at a time.

    Attributes:
        adapters: Adapter instances, selected per action
        manifest_name: Recorded in last-run metadata
    """
    adapters: AdapterSet = field(default_factory=AdapterSet)
    manifest_name: Optional[str] = None
    _abort: threading.Event = field(default_factory=threading.Event, init=False, repr=False)

    def request_abort(self) -> None:
        """Stop before the next action starts."""
        self._abort.set()

    @property
    def abort_requested(self) -> bool:
        return self._abort.is_set()

    def run(self, plan: Plan, store: StateStore, options: Optional[RunOptions] = None,
            lock: Optional[StateLock] = None) -> RunReport:
        """Execute the plan and return a report.

        Except in a dry run, the store's StateLock is held for the whole
        run. A lock the caller already acquired is reused; otherwise one is
        acquired here and released before returning.

        Raises:
            UnknownBackend: An action maps to no adapter (before anything runs)
            StateLocked: Another live run holds the store
            StaleLock: A dead run left its lock behind
            StateError: State file is corrupt
        """
        options = options or RunOptions()
        validate_backends(plan)

        owned_lock = None
        if not options.dry_run:
            lock = lock or StateLock(lock_path_for(store.path))
            if not lock.held:
                lock.acquire()
                owned_lock = lock
        try:
            return self._execute(plan, store, options)
        finally:
            if owned_lock is not None:
                owned_lock.release()

    def _execute(self, plan: Plan, store: StateStore, options: RunOptions) -> RunReport:
        prior = store.load()
        report = RunReport(started_at=time.time(), dry_run=options.dry_run)
        blocked: set[str] = set()

        if not options.dry_run:
            store.begin_run(plan.ids, force=options.force,
                            continue_on_failure=options.continue_on_failure,
                            manifest=self.manifest_name)

        mode = ' (dry-run)' if options.dry_run else ' (force)' if options.force else ''
        logger.info(f"Executing plan with {len(plan)} actions{mode}")

        actions = list(plan.iterate())
        try:
            with self._interrupt_handler():
                for index, action in enumerate(actions):
                    if report.halted and not action.depends_on & blocked:
                        report.records.append(ExecutionRecord(action.id))
                        continue

                    if self.abort_requested and not report.halted:
                        logger.warning(f"Abort requested; {len(actions) - index} actions left pending")
                        report.aborted = True
                        self._leave_pending(report, actions[index:])
                        break

                    # Once halted, only blocked dependents get here; they are skipped
                    record = self._process(action, prior.get(action.id), blocked, options)
                    report.records.append(record)
                    if not options.dry_run:
                        store.save(action.id, record)

                    if record.status == RecordStatus.FAILED:
                        blocked.add(action.id)
                        if not options.continue_on_failure:
                            logger.error(f"Halting run after failure of {action.id}")
                            report.halted = True
                    elif record.status == RecordStatus.SKIPPED and record.error == BLOCKED_DEPENDENCY:
                        blocked.add(action.id)
        finally:
            report.finished_at = time.time()
            if not options.dry_run:
                store.finish_run(halted=report.halted, aborted=report.aborted)

        counts = report.counts
        logger.info(
            f"Run finished: {counts['succeeded']} succeeded, {counts['failed']} failed, "
            f"{counts['skipped']} skipped, {counts['pending']} pending"
        )
        return report

    def _process(self, action: Action, prior: Optional[ExecutionRecord],
                 blocked: set[str], options: RunOptions) -> ExecutionRecord:
        """Run one action through skip/probe/apply and return its record."""
        satisfied_at = prior.satisfied_at if prior else None

        failed_deps = sorted(action.depends_on & blocked)
        if failed_deps:
            logger.warning(f"[{action.id}] Skipped: blocked by {', '.join(failed_deps)}")
            return ExecutionRecord.skipped(action.id, BLOCKED_DEPENDENCY, satisfied_at=satisfied_at)

        if satisfied_at is not None and not options.force:
            logger.info(f"[{action.id}] Skipped: {ALREADY_SUCCEEDED}")
            return ExecutionRecord.skipped(action.id, ALREADY_SUCCEEDED, satisfied_at=satisfied_at)

        try:
            adapter = self.adapters.for_action(action)
            if not options.force and adapter.probe(action):
                logger.info(f"[{action.id}] Already satisfied")
                return ExecutionRecord.succeeded(action.id, detail='already satisfied')

            if options.dry_run:
                logger.info(f"[{action.id}] Would apply via {adapter.name}")
                return ExecutionRecord(action.id, detail='would apply')

            logger.info(f"[{action.id}] Applying via {adapter.name}")
            outcome = adapter.apply(action)
        except BackendError as e:
            logger.error(f"[{action.id}] Failed: {e}")
            return ExecutionRecord.failed(action.id, str(e))
        except Exception as e:
            logger.exception(f"[{action.id}] Adapter raised unexpected error")
            return ExecutionRecord.failed(action.id, f"{type(e).__name__}: {e}")

        if not outcome.satisfied:
            logger.warning(f"[{action.id}] Not satisfied: {outcome.detail}")
            return ExecutionRecord.skipped(action.id, outcome.detail or 'not satisfied')

        logger.info(f"[{action.id}] Succeeded{' (changed)' if outcome.changed else ''}: {outcome.detail}")
        return ExecutionRecord.succeeded(action.id, detail=outcome.detail, changed=outcome.changed)

    @staticmethod
    def _leave_pending(report: RunReport, actions: list[Action]) -> None:
        for action in actions:
            report.records.append(ExecutionRecord(action.id))

    @contextmanager
    def _interrupt_handler(self) -> Iterator[None]:
        """Turn the first SIGINT/SIGTERM into an abort at the next action boundary.

        A second SIGINT falls through to the default KeyboardInterrupt.
        Signal handlers can only be installed from the main thread.
        """
        if threading.current_thread() is not threading.main_thread():
            yield
            return

        previous = {sig: signal.getsignal(sig) for sig in (signal.SIGINT, signal.SIGTERM)}

        def _handler(signum, _frame):
            if self.abort_requested and signum == signal.SIGINT:
                signal.signal(signal.SIGINT, signal.default_int_handler)
                raise KeyboardInterrupt
            logger.warning("Interrupt received; stopping after the current action "
                           "(press Ctrl-C again to force)")
            self.request_abort()

        for sig in previous:
            signal.signal(sig, _handler)
        try:
            yield
        finally:
            for sig, handler in previous.items():
                signal.signal(sig, handler if handler is not None else signal.SIG_DFL)
