"""Stop-signal handling shared by the long-running commands.

While a run is active SIGTERM and SIGINT raise :class:`Interrupted` in the
main thread. Cleanup code calls :func:`ignore_interrupts` first so a second
signal cannot cut teardown short, then :func:`restore_signal_handlers`.
"""
import signal
import threading
from typing import Dict, Optional

from hcibootstrap.errors import Interrupted

STOP_SIGNALS = (signal.SIGTERM, signal.SIGINT)


def _raise_interrupted(signum, frame):
    raise Interrupted(signum)


def install_interrupt_handlers() -> Optional[Dict[int, object]]:
    """Make stop signals raise Interrupted.

    Returns:
        The previous handlers, or None when not on the main thread
    """
    if threading.current_thread() is not threading.main_thread():
        return None
    previous = {}
    for signum in STOP_SIGNALS:
        previous[signum] = signal.signal(signum, _raise_interrupted)
    return previous


def ignore_interrupts(previous: Optional[Dict[int, object]]) -> None:
    """Ignore stop signals for the rest of teardown."""
    for signum in (previous or {}):
        signal.signal(signum, signal.SIG_IGN)


def restore_signal_handlers(previous: Optional[Dict[int, object]]) -> None:
    for signum, handler in (previous or {}).items():
        signal.signal(signum, handler)
