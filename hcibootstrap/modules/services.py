"""Supervised PXE services: matchbox (boot profiles over HTTP) and dnsmasq (proxy DHCP + TFTP)."""
import logging
import subprocess
import time
from pathlib import Path
from typing import Callable, List, Optional

from hcibootstrap.config import BootstrapConfig
from hcibootstrap.errors import ServiceStartError
from hcibootstrap.modules.kube import run_command

logger = logging.getLogger("hcibootstrap.services")


class ServiceHandle:
    """One long-running child process."""

    def __init__(self, name: str, cmd: List[str], popen: Callable = subprocess.Popen):
        self.name = name
        self.cmd = cmd
        self._popen = popen
        self.process: Optional[subprocess.Popen] = None

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process else None

    @property
    def exited(self) -> bool:
        return self.process is not None and self.process.poll() is not None

    @property
    def running(self) -> bool:
        return self.process is not None and self.process.poll() is None

    def start(self, grace: float = 0.0, sleep: Callable[[float], None] = time.sleep) -> None:
        """Start the process and make sure it survives ``grace`` seconds.

        Raises:
            ServiceStartError: If the binary is missing or the process exits during the grace period
        """
        logger.info(f"🚀 Starting {self.name}: {' '.join(self.cmd)}")
        try:
            self.process = self._popen(self.cmd)
        except OSError as e:
            raise ServiceStartError(f"Could not start {self.name}: {e}") from e
        if grace > 0:
            sleep(grace)
        if self.exited:
            raise ServiceStartError(f"{self.name} exited during startup with code {self.process.returncode}")

    def stop(self, timeout: float = 10.0) -> None:
        """Terminate the process; stopping a stopped service is a no-op."""
        if not self.running:
            return
        logger.info(f"Stopping {self.name} (pid {self.pid})")
        self.process.terminate()
        try:
            self.process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            logger.warning(f"{self.name} did not exit after {timeout}s, killing")
            self.process.kill()
            self.process.wait()


class PXEServices:
    """matchbox and dnsmasq started together and supervised as a pair."""

    def __init__(
        self,
        config: BootstrapConfig,
        popen: Callable = subprocess.Popen,
        sleep: Callable[[float], None] = time.sleep,
    ):
        svc = config.services
        paths = config.paths
        self.config = config
        self.sleep = sleep
        self.handles = [
            ServiceHandle("matchbox", [
                svc.matchbox_bin,
                f"-address={svc.matchbox_address}",
                f"-assets-path={paths.assets_dir}",
                f"-data-path={paths.matchbox_dir}",
                f"-log-level={svc.log_level}",
            ], popen=popen),
            ServiceHandle("dnsmasq", [
                svc.dnsmasq_bin,
                f"--conf-file={Path(paths.matchbox_dir) / 'dnsmasq.conf'}",
                "--no-daemon",
            ], popen=popen),
        ]

    def start(self) -> None:
        """Start both services; if either fails the other is stopped again."""
        try:
            for handle in self.handles:
                handle.start()
            if self.config.services.start_grace > 0:
                self.sleep(self.config.services.start_grace)
            self.check()
        except ServiceStartError:
            self.stop()
            raise
        logger.info("✅ Bootstrap services running")

    def check(self) -> None:
        """Raise ServiceStartError if a started service has exited."""
        for handle in self.handles:
            if handle.exited:
                raise ServiceStartError(
                    f"{handle.name} exited unexpectedly with code {handle.process.returncode}"
                )

    def stop(self) -> None:
        """Stop every service; an error stopping one is raised after the rest are stopped."""
        pending: Optional[BaseException] = None
        for handle in reversed(self.handles):
            try:
                handle.stop(timeout=self.config.services.stop_timeout)
            except OSError as e:
                logger.warning(f"Could not stop {handle.name}: {e}")
            except BaseException as e:
                logger.warning(f"Stopping {handle.name} was interrupted: {e!r}")
                if pending is None:
                    pending = e
        if pending is not None:
            raise pending

    def wait(self) -> None:
        """Block until either service exits (``serve`` command)."""
        while True:
            self.check()
            self.sleep(1)


def teardown(names=("matchbox", "dnsmasq")) -> None:
    """Stop bootstrap services started by another process."""
    logger.info("Stopping bootstrap services...")
    for name in names:
        try:
            run_command(["pkill", name], check=False, capture_output=True)
        except FileNotFoundError:
            logger.warning("pkill not available, cannot stop %s", name)
    logger.info("✅ Bootstrap node torn down. Cluster is self-sufficient.")
