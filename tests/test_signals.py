import os
import signal
import threading

from tests.conftest import wait_for
from vmbundle.signals import SignalListener, DEFAULT_SIGNALS


def test_default_signals():
    assert DEFAULT_SIGNALS == (signal.SIGINT, signal.SIGTERM, signal.SIGHUP)


def test_signal_reaches_callback_on_worker_thread():
    previous = signal.getsignal(signal.SIGUSR1)
    received = []
    listener = SignalListener(
        lambda signum: received.append((signum, threading.current_thread())),
        signals=(signal.SIGUSR1,))

    with listener:
        assert listener.installed
        assert signal.getsignal(signal.SIGUSR1) != previous
        os.kill(os.getpid(), signal.SIGUSR1)
        assert wait_for(lambda: len(received) == 1)

    assert received[0][0] == signal.SIGUSR1
    assert received[0][1] is not threading.main_thread()
    assert not listener.installed
    assert signal.getsignal(signal.SIGUSR1) == previous


def test_callback_may_take_lock_held_by_interrupted_code():
    guard = threading.Lock()
    received = []

    def callback(signum):
        with guard:
            received.append(signum)

    with SignalListener(callback, signals=(signal.SIGUSR1,)):
        with guard:
            os.kill(os.getpid(), signal.SIGUSR1)
            # The handler ran on this thread while guard is held
            assert not wait_for(lambda: received, timeout=0.2)
        assert wait_for(lambda: received == [signal.SIGUSR1])


def test_failing_callback_keeps_listening():
    calls = []

    def callback(signum):
        calls.append(signum)
        raise RuntimeError("callback broke")

    with SignalListener(callback, signals=(signal.SIGUSR1,)):
        os.kill(os.getpid(), signal.SIGUSR1)
        assert wait_for(lambda: len(calls) == 1)
        os.kill(os.getpid(), signal.SIGUSR1)
        assert wait_for(lambda: len(calls) == 2)


def test_install_outside_main_thread_is_ignored():
    previous = signal.getsignal(signal.SIGUSR1)
    listener = SignalListener(lambda signum: None, signals=(signal.SIGUSR1,))

    worker = threading.Thread(target=listener.install)
    worker.start()
    worker.join()

    assert not listener.installed
    assert signal.getsignal(signal.SIGUSR1) == previous
    listener.uninstall()
