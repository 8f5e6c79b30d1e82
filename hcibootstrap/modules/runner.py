"""Start and stop ``hci-bootstrap init`` on behalf of the dashboard."""
import logging
import os
import subprocess
import sys
import threading
from functools import partial
from pathlib import Path
from typing import Callable, Dict, List, Optional

from hcibootstrap.config import ENV_VARS, BootstrapConfig
from hcibootstrap.modules.services import ServiceHandle

logger = logging.getLogger("hcibootstrap.runner")

# The child tears down its own PXE services before exiting
STOP_TIMEOUT = 30


class BootstrapRunner:
    """One supervised bootstrap run at a time.

    Args:
        config: Settings whose paths the child run inherits
        popen: Callable with the ``subprocess.Popen`` signature
    """

    def __init__(self, config: BootstrapConfig, popen: Callable = subprocess.Popen):
        self.config = config
        self._popen = popen
        self._lock = threading.Lock()
        self.handle: Optional[ServiceHandle] = None

    @property
    def running(self) -> bool:
        return self.handle is not None and self.handle.running

    def command(self) -> List[str]:
        return [sys.executable, "-m", "hcibootstrap.cli", "init", "--config", self.config.paths.cluster_config]

    def environment(self) -> Dict[str, str]:
        env = dict(os.environ)
        for var, (section, key) in ENV_VARS.items():
            if section == "paths":
                env[var] = str(getattr(self.config.paths, key))
        return env

    def start(self) -> int:
        """Clear the previous status document and launch a new run.

        Returns:
            The child's pid

        Raises:
            RuntimeError: If a run is already in progress
            ServiceStartError: If the child cannot be started
        """
        with self._lock:
            if self.running:
                raise RuntimeError("A bootstrap run is already in progress")
            status_file = Path(self.config.paths.status_file)
            try:
                status_file.unlink()
                logger.info(f"Cleared previous status {status_file}")
            except FileNotFoundError:
                pass
            handle = ServiceHandle("bootstrap", self.command(), popen=partial(self._popen, env=self.environment()))
            handle.start()
            self.handle = handle
            return handle.pid

    def stop(self) -> bool:
        """Stop the current run.

        Returns:
            False if nothing was running
        """
        with self._lock:
            if not self.running:
                return False
            self.handle.stop(timeout=STOP_TIMEOUT)
            return True
