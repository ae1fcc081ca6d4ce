"""
Session state machine for a single VM

A VMSession drives one bundle through

    INITIALIZED -> STARTING -> RUNNING -> STOPPING -> STOPPED
                               RUNNING -> SUSPENDING -> STOPPED

and owns the bundle's lock record while it does. Every transition, engine
callback and observer notification runs on the session's own serial queue,
so engine threads never touch session state directly. STOPPED is terminal;
a stopped session is discarded, never restarted.

Stop signals escalate: the first asks the guest to shut down, the second
forces the VM off, anything after that is ignored. A stop signal while the
VM is being suspended forces it off as well.

A suspended session saved the VM's state to <bundle>/suspend.vmstate and
stopped; a failed suspend returns the session to RUNNING.
"""

import os
import time
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from enum import Enum
from typing import Callable, List, Optional

from .error_handling import VMBundleError, EngineError, ValidationError, as_engine_error
from .hypervisor import EngineObserver, HypervisorEngine, MachineSpec
from .ownership_lock import OwnershipLock, OwnerKind
from .vm_paths import get_vm_paths, display_name

logger = logging.getLogger(__name__)


class SessionState(Enum):
    INITIALIZED = "initialized"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    SUSPENDING = "suspending"
    STOPPED = "stopped"


class VMSession(EngineObserver):
    """
    One live VM instance.

    Args:
        bundle_dir: The bundle being run
        engine: Engine that executes the VM
        spec: Machine description handed to the engine
        owner_kind: Written into the lock record
        lock: Lock to use, mainly for tests; defaults to the bundle's lock
    """

    def __init__(self, bundle_dir: str, engine: HypervisorEngine, spec: MachineSpec,
                 owner_kind: OwnerKind = OwnerKind.CLI, lock: Optional[OwnershipLock] = None):
        self.bundle_dir = os.path.abspath(bundle_dir)
        self.name = display_name(self.bundle_dir)
        self.engine = engine
        self.spec = spec
        self.owner_kind = owner_kind
        self.lock = lock or OwnershipLock(self.bundle_dir)

        self._state = SessionState.INITIALIZED
        self._queue = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"vmsession-{self.name}")
        self._queue_lock = threading.RLock()
        self._closed = False

        self._owns_lock = False
        self._stop_pending = False
        self._force_issued = False
        self._terminated = False
        self._error: Optional[BaseException] = None
        self._start_future: Optional[Future] = None
        self._suspend_future: Optional[Future] = None
        self._suspended = False
        self._stopped = threading.Event()

        self._state_observers: List[Callable[[SessionState], None]] = []
        self._termination_handlers: List[Callable[[Optional[BaseException]], None]] = []
        self._suspend_handlers: List[Callable[[], None]] = []

    # --- Public surface ---

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def error(self) -> Optional[BaseException]:
        """The error the session terminated with, if any."""
        return self._error

    @property
    def suspended(self) -> bool:
        """True once the session stopped after saving the VM's state."""
        return self._suspended

    def add_state_observer(self, callback: Callable[[SessionState], None]) -> None:
        """callback(state) runs on the session queue after every transition."""
        self._state_observers.append(callback)

    def add_termination_handler(self, callback: Callable[[Optional[BaseException]], None]) -> None:
        """callback(error) runs once on the session queue when the session stops."""
        self._termination_handlers.append(callback)

    def add_suspend_handler(self, callback: Callable[[], None]) -> None:
        """callback() runs on the session queue after the state was saved, before the lock is released."""
        self._suspend_handlers.append(callback)

    def start(self) -> Future:
        """
        Start the VM.

        Returns a Future that resolves once the VM is RUNNING, or fails with
        AlreadyRunningError if another session owns the bundle (state stays
        INITIALIZED) or with EngineError if the engine could not boot it.
        """
        future = Future()
        if self._dispatch(self._start, future) is None:
            future.set_exception(ValidationError(f"Session for VM '{self.name}' is closed."))
        return future

    def request_stop(self) -> None:
        """Deliver one stop signal. Safe to call from any thread or signal handler."""
        self._dispatch(self._stop_signal)

    def request_suspend(self) -> Future:
        """
        Save the VM's state into the bundle and stop it.

        Only valid while RUNNING. The Future resolves once the session is
        STOPPED with its state saved. If the engine cannot save the state
        it fails with EngineError and the VM keeps running.
        """
        future = Future()
        if self._dispatch(self._suspend, future) is None:
            future.set_exception(ValidationError(f"Session for VM '{self.name}' is closed."))
        return future

    def request_close(self, timeout: Optional[float] = None) -> bool:
        """
        Ask whether the host window may close.

        While RUNNING this acts as the first stop signal; while STOPPING or
        SUSPENDING it does nothing. Must not be called from an observer callback.

        Returns:
            bool: True only when the session is already STOPPED
        """
        queued = self._dispatch(self._close_request)
        if queued is None:
            return self._state == SessionState.STOPPED
        return queued.result(timeout)

    def wait_until_stopped(self, timeout: Optional[float] = None) -> bool:
        """
        Block until the session is STOPPED.

        Waits in short slices so signal handlers keep running on the main
        thread. Returns False if timeout elapsed first.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while not self._stopped.is_set():
            remaining = 0.5
            if deadline is not None:
                remaining = min(remaining, deadline - time.monotonic())
                if remaining <= 0:
                    return False
            self._stopped.wait(remaining)
        return True

    def close(self) -> None:
        """Stop accepting work and release the queue thread."""
        with self._queue_lock:
            self._closed = True
        self._queue.shutdown(wait=False)

    # --- EngineObserver ---

    def on_guest_stopped(self) -> None:
        self._dispatch(self._terminate, None)

    def on_error(self, error: BaseException) -> None:
        self._dispatch(self._terminate, as_engine_error(error))

    # --- Queue plumbing ---

    def _dispatch(self, fn, *args) -> Optional[Future]:
        with self._queue_lock:
            if self._closed:
                logger.debug(f"Session for '{self.name}' is closed, dropping {fn.__name__}")
                return None
            return self._queue.submit(self._run, fn, *args)

    def _run(self, fn, *args):
        try:
            return fn(*args)
        except Exception:
            logger.exception(f"Unhandled error in session task {fn.__name__} for '{self.name}'")
            raise

    def _set_state(self, state: SessionState) -> None:
        if state == self._state:
            return
        logger.info(f"VM '{self.name}': {self._state.value} -> {state.value}")
        self._state = state
        for observer in list(self._state_observers):
            try:
                observer(state)
            except Exception:
                logger.exception(f"State observer failed for '{self.name}'")

    # --- Transitions (queue only) ---

    def _start(self, future: Future) -> None:
        if self._state != SessionState.INITIALIZED:
            future.set_exception(ValidationError(
                f"Cannot start VM '{self.name}' from state {self._state.value}."))
            return
        try:
            self.lock.acquire(self.owner_kind)
        except VMBundleError as e:
            future.set_exception(e)
            return
        self._owns_lock = True
        self._start_future = future
        self._set_state(SessionState.STARTING)
        try:
            self.engine.start(self.spec, self, lambda err: self._dispatch(self._did_start, err))
        except Exception as e:
            self._did_start(e)

    def _did_start(self, error: Optional[BaseException]) -> None:
        future = self._start_future
        if error is not None:
            error = as_engine_error(error)
            if future is not None and not future.done():
                future.set_exception(error)
            self._terminate(error)
            return
        if self._terminated:
            if future is not None and not future.done():
                future.set_exception(self._error or EngineError(f"VM '{self.name}' stopped while starting."))
            return
        if self._state == SessionState.STARTING:
            self._set_state(SessionState.RUNNING)
        if future is not None and not future.done():
            future.set_result(None)
        if self._stop_pending:
            self._stop_pending = False
            self._stop_signal()

    def _stop_signal(self) -> None:
        state = self._state
        if state == SessionState.STARTING:
            logger.info(f"Stop requested for '{self.name}' while starting; deferring until running")
            self._stop_pending = True
        elif state == SessionState.RUNNING:
            self._set_state(SessionState.STOPPING)
            try:
                self.engine.request_graceful_stop()
            except Exception as e:
                logger.warning(f"Graceful stop of '{self.name}' failed ({e}); forcing stop")
                self._force_stop()
        elif state in (SessionState.STOPPING, SessionState.SUSPENDING):
            self._force_stop()
        else:
            logger.debug(f"Ignoring stop signal for '{self.name}' in state {state.value}")

    def _force_stop(self) -> None:
        if self._force_issued:
            logger.debug(f"Force stop already issued for '{self.name}'")
            return
        self._force_issued = True
        logger.info(f"Forcing VM '{self.name}' to stop")
        try:
            self.engine.force_stop(lambda err: self._dispatch(self._did_force_stop, err))
        except Exception as e:
            self._terminate(as_engine_error(e))

    def _did_force_stop(self, error: Optional[BaseException]) -> None:
        self._terminate(as_engine_error(error) if error is not None else None)

    def _suspend(self, future: Future) -> None:
        if self._state != SessionState.RUNNING:
            future.set_exception(ValidationError(
                f"Cannot suspend VM '{self.name}' while it is {self._state.value}."))
            return
        self._suspend_future = future
        self._set_state(SessionState.SUSPENDING)
        state_path = get_vm_paths(self.bundle_dir)['suspend_state']
        try:
            self.engine.suspend(state_path, lambda err: self._dispatch(self._did_suspend, err))
        except Exception as e:
            self._did_suspend(e)

    def _did_suspend(self, error: Optional[BaseException]) -> None:
        future, self._suspend_future = self._suspend_future, None
        if self._terminated:
            if future is not None and not future.done():
                future.set_exception(self._error or EngineError(f"VM '{self.name}' stopped while suspending."))
            return
        if error is not None:
            error = as_engine_error(error)
            logger.error(f"Suspend of '{self.name}' failed, VM keeps running: {error}")
            if self._state == SessionState.SUSPENDING:
                self._set_state(SessionState.RUNNING)
            if future is not None and not future.done():
                future.set_exception(error)
            return
        for handler in list(self._suspend_handlers):
            try:
                handler()
            except Exception:
                logger.exception(f"Suspend handler failed for '{self.name}'")
        self._suspended = True
        logger.info(f"VM '{self.name}' suspended")
        self._terminate(None)
        if future is not None and not future.done():
            future.set_result(None)

    def _close_request(self) -> bool:
        if self._state == SessionState.RUNNING:
            self._stop_signal()
        return self._state == SessionState.STOPPED

    def _terminate(self, error: Optional[BaseException]) -> None:
        if self._terminated:
            logger.debug(f"Ignoring duplicate termination for '{self.name}'")
            return
        self._terminated = True
        self._error = error
        if error is not None:
            logger.error(f"VM '{self.name}' stopped with error: {error}")
        if self._owns_lock:
            self._owns_lock = False
            self.lock.release()
        self._set_state(SessionState.STOPPED)
        pending, self._suspend_future = self._suspend_future, None
        if pending is not None and not pending.done():
            pending.set_exception(error or EngineError(f"VM '{self.name}' stopped while suspending."))
        for handler in list(self._termination_handlers):
            try:
                handler(error)
            except Exception:
                logger.exception(f"Termination handler failed for '{self.name}'")
        self._stopped.set()
