"""Status record shared between the bootstrap run and the dashboard.

A single writer (this process) replaces ``status.json`` atomically on every
change, so readers polling the file always see a complete document.
"""
import json
import logging
import os
import tempfile
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, List, Optional, Union

from pydantic import ValidationError

from hcibootstrap.models import (
    AddonState, AddonStatus, BootstrapStatus, NodeRole, NodeState, NodeStatus, Phase,
)

logger = logging.getLogger("hcibootstrap.status")

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime(TIMESTAMP_FORMAT)


def read_status(path: Union[str, Path]) -> BootstrapStatus:
    """Read a status document, falling back to the idle default.

    A missing, partially written or otherwise unparsable file is reported as
    ``idle`` rather than raising, since the dashboard polls before a run starts.
    """
    try:
        with open(path, 'r') as f:
            return BootstrapStatus.model_validate(json.load(f))
    except FileNotFoundError:
        return BootstrapStatus()
    except (OSError, ValueError, ValidationError) as e:
        logger.debug(f"Unreadable status file {path}: {e}")
        return BootstrapStatus()


class StatusStore:
    """Atomic read-modify-write access to ``status.json``."""

    def __init__(
        self,
        path: Union[str, Path],
        kubeconfig_path: Optional[Union[str, Path]] = None,
        clock: Callable[[], str] = utc_now,
    ):
        self.path = Path(path)
        self.kubeconfig_path = Path(kubeconfig_path) if kubeconfig_path else self.path.parent / "kubeconfig"
        self._clock = clock
        self._lock = threading.Lock()

    def read(self) -> BootstrapStatus:
        return read_status(self.path)

    def init(self, nodes: List[NodeStatus], addons: List[str]) -> BootstrapStatus:
        """Write the initial document for a run.

        Args:
            nodes: Every node from the cluster description, in declaration order
            addons: Enabled add-on names in install order

        Returns:
            The document written
        """
        now = self._clock()
        status = BootstrapStatus(
            phase=Phase.GENERATING,
            message="Generating configurations...",
            started_at=now,
            updated_at=now,
            nodes=[NodeStatus(name=n.name, ip=n.ip, role=n.role) for n in nodes],
            addons=[AddonStatus(name=name) for name in addons],
            kubeconfig_ready=self.kubeconfig_path.is_file(),
        )
        with self._lock:
            self._write(status)
        logger.debug(f"Initialised status with {len(nodes)} node(s) and {len(addons)} add-on(s)")
        return status

    def set(self, phase: Phase, message: str) -> None:
        """Record a phase transition and its message."""
        with self._lock:
            status = self.read()
            now = self._clock()
            status.phase = Phase(phase)
            status.message = message
            status.updated_at = now
            if status.started_at is None:
                status.started_at = now
            if status.phase.terminal:
                status.completed_at = now
            status.kubeconfig_ready = self.kubeconfig_path.is_file()
            self._write(status)

    def set_node(self, name: str, state: NodeState, message: str = '') -> bool:
        """Update one node entry; unknown names are ignored.

        Returns:
            True if an entry was updated
        """
        with self._lock:
            status = self.read()
            node = status.node(name)
            if node is None:
                logger.warning(f"Ignoring status update for unknown node {name}")
                return False
            node.status = NodeState(state)
            node.message = message
            status.updated_at = self._clock()
            self._write(status)
            return True

    def set_addon(self, name: str, state: AddonState, message: str = '') -> bool:
        """Update one add-on entry; unknown names are ignored.

        Returns:
            True if an entry was updated
        """
        with self._lock:
            status = self.read()
            addon = status.addon(name)
            if addon is None:
                logger.warning(f"Ignoring status update for unknown add-on {name}")
                return False
            addon.status = AddonState(state)
            addon.message = message
            status.updated_at = self._clock()
            self._write(status)
            return True

    def _write(self, status: BootstrapStatus) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        data = json.dumps(status.model_dump(mode="json"), indent=2)
        fd, tmp = tempfile.mkstemp(dir=str(self.path.parent), prefix=".status.", suffix=".tmp")
        try:
            with os.fdopen(fd, 'w') as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp, 0o644)
            os.replace(tmp, self.path)
        except BaseException:
            try:
                os.unlink(tmp)
            except OSError:
                pass
            raise


def node_entries(spec) -> List[NodeStatus]:
    """Pending node entries for every node in a ClusterSpec."""
    return [NodeStatus(name=n.name, ip=n.ip, role=NodeRole(role)) for role, n in spec.iter_nodes()]
