"""Cluster readiness polling for the waiting phase.

All three steps share one deadline measured from :meth:`HealthPoller.start`,
which the orchestrator calls on entering ``waiting``.
"""
import logging
import os
import re
import tempfile
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional

import paramiko
import requests
import urllib3

from hcibootstrap.config import BootstrapConfig
from hcibootstrap.errors import BootstrapError, WaitTimeout
from hcibootstrap.models import ClusterSpec, NodeState
from hcibootstrap.modules.kube import NodeInfo, NodeLister
from hcibootstrap.modules.ssh import fetch_admin_conf
from hcibootstrap.modules.status import StatusStore

logger = logging.getLogger("hcibootstrap.health")

SERVER_LINE = re.compile(r"server: https://[^\s]*:6443")

# The API server presents a cluster-CA certificate the bootstrap host does not trust yet.
urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)


def rewrite_server(kubeconfig: str, endpoint: str) -> str:
    """Point a kubeconfig at the control-plane VIP."""
    return SERVER_LINE.sub(f"server: {endpoint}", kubeconfig)


def write_private_file(path: Path, content: str) -> None:
    """Atomically write ``content`` with mode 0600."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        os.fchmod(fd, 0o600)
        with os.fdopen(fd, 'w') as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except BaseException:
        try:
            os.unlink(tmp)
        except OSError:
            pass
        raise


class HealthPoller:
    """Polls the new cluster until the control plane and every node are ready.

    Args:
        spec: Cluster description
        config: Runtime settings (timeouts, SSH, paths)
        status: Status store receiving node updates
        http_get: Callable with the ``requests.get`` signature
        fetch_conf: Callable ``(host, ssh_config) -> str`` returning admin.conf
        list_nodes: Callable returning the current nodes; defaults to the Kubernetes API
        clock: Monotonic time source
        sleep: Sleep function
        guard: Called on every iteration; raises to abort the wait
    """

    def __init__(
        self,
        spec: ClusterSpec,
        config: BootstrapConfig,
        status: StatusStore,
        http_get: Callable = requests.get,
        fetch_conf: Callable = fetch_admin_conf,
        list_nodes: Optional[Callable[[], List[NodeInfo]]] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        guard: Optional[Callable[[], None]] = None,
    ):
        self.spec = spec
        self.config = config
        self.status = status
        self.http_get = http_get
        self.fetch_conf = fetch_conf
        self.list_nodes = list_nodes or NodeLister(config.paths.kubeconfig)
        self.clock = clock
        self.sleep = sleep
        self.guard = guard
        self._started: Optional[float] = None
        self._node_states: Dict[str, NodeState] = {}

    def start(self) -> None:
        """Start the shared deadline."""
        self._started = self.clock()

    @property
    def elapsed(self) -> float:
        if self._started is None:
            self.start()
        return self.clock() - self._started

    @property
    def remaining(self) -> float:
        return self.config.wait.timeout - self.elapsed

    def _tick(self) -> None:
        if self.guard is not None:
            self.guard()

    def _pause(self) -> None:
        self.sleep(max(0.0, min(self.config.wait.poll_interval, self.remaining)))

    def wait_for_control_plane(self, endpoint: Optional[str] = None) -> None:
        """Poll ``/healthz`` on the API endpoint until it answers ``ok``.

        Raises:
            WaitTimeout: If the shared deadline passes first
        """
        url = f"{endpoint or self.spec.api_endpoint}/healthz"
        logger.info(f"⏳ Waiting for Kubernetes API at {url}")
        attempt = 0
        while True:
            self._tick()
            attempt += 1
            try:
                resp = self.http_get(url, verify=False, timeout=self.config.wait.request_timeout)
                if resp.status_code == 200 and "ok" in resp.text:
                    logger.info(f"✅ Kubernetes API is healthy after {int(self.elapsed)}s")
                    return
                detail = f"HTTP {resp.status_code}"
            except requests.RequestException as e:
                detail = type(e).__name__
            logger.info(f"Waiting for API server... attempt {attempt} ({detail}, {int(self.elapsed)}s elapsed)")
            if self.remaining <= 0:
                raise WaitTimeout(
                    f"Timed out after {int(self.config.wait.timeout)}s waiting for the API server at {url}"
                )
            self._pause()

    def fetch_credential(self) -> bool:
        """Copy admin.conf from the first controller into the output directory.

        Failure is not fatal: the kubeconfig can be copied in by hand while
        the node wait keeps polling.

        Returns:
            True if the kubeconfig was written
        """
        controller = self.spec.controllers[0]
        target = self.config.paths.kubeconfig
        attempts = self.config.wait.credential_attempts
        logger.info(f"Retrieving kubeconfig from {controller.name} ({controller.ip})")
        for attempt in range(1, attempts + 1):
            self._tick()
            try:
                conf = self.fetch_conf(controller.ip, self.config.ssh)
                if "apiVersion" in conf:
                    write_private_file(target, rewrite_server(conf, self.spec.api_endpoint))
                    logger.info(f"✅ kubeconfig saved to {target}")
                    return True
                logger.info(f"admin.conf on {controller.name} not readable yet (attempt {attempt}/{attempts})")
            except BootstrapError:
                raise
            except (paramiko.SSHException, OSError, RuntimeError) as e:
                logger.info(f"Could not fetch kubeconfig (attempt {attempt}/{attempts}): {e}")
            if attempt == attempts or self.remaining <= 0:
                break
            self._pause()
        logger.warning(f"Could not retrieve kubeconfig. Copy it manually from {controller.name}.")
        return False

    def wait_for_nodes_ready(self, expected: int) -> int:
        """Poll the node list until at least ``expected`` nodes are Ready.

        Args:
            expected: Nodes that must be Ready; zero or less returns at once

        Returns:
            The ready count observed on success

        Raises:
            WaitTimeout: If the shared deadline passes first
        """
        if expected <= 0:
            logger.info("No nodes to wait for")
            return 0
        logger.info(f"⏳ Waiting for {expected} node(s) to be Ready")
        ready = 0
        while True:
            self._tick()
            try:
                nodes = self.list_nodes()
                ready = sum(1 for n in nodes if n.ready)
                self._update_nodes(nodes)
                logger.info(f"Nodes ready: {ready}/{expected} ({int(self.elapsed)}s elapsed)")
                if ready >= expected:
                    logger.info(f"✅ All {expected} node(s) are Ready")
                    return ready
            except BootstrapError:
                raise
            except Exception as e:
                # API unreachable or kubeconfig missing; retried until the deadline
                logger.info(f"Could not list nodes yet: {e} ({int(self.elapsed)}s elapsed)")
            if self.remaining <= 0:
                raise WaitTimeout(
                    f"Timed out after {int(self.config.wait.timeout)}s waiting for nodes: {ready}/{expected} ready"
                )
            self._pause()

    def _update_nodes(self, nodes: List[NodeInfo]) -> None:
        by_name = {n.name: n for n in nodes}
        by_ip = {n.internal_ip: n for n in nodes if n.internal_ip}
        for _, spec_node in self.spec.iter_nodes():
            seen = by_name.get(spec_node.name) or by_ip.get(spec_node.ip)
            if seen is None:
                continue
            state = NodeState.READY if seen.ready else NodeState.INSTALLING
            if self._node_states.get(spec_node.name) == state:
                continue
            self._node_states[spec_node.name] = state
            message = "Ready" if seen.ready else "Registered, not ready"
            try:
                self.status.set_node(spec_node.name, state, message)
            except OSError as e:
                logger.warning(f"Could not record status for {spec_node.name}: {e}")
