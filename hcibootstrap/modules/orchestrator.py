"""Bootstrap run state machine.

idle -> generating -> serving -> waiting -> installing_addons -> complete,
with every non-terminal phase able to move to error. Phases never repeat
or go backwards, and the terminal status is always written before exit.
"""
import logging
from typing import Dict, Optional, Set

from hcibootstrap.config import BootstrapConfig
from hcibootstrap.errors import BootstrapError, ConfigValidationError
from hcibootstrap.models import ClusterSpec, Phase
from hcibootstrap.modules.addons import AddonInstaller
from hcibootstrap.modules.health import HealthPoller
from hcibootstrap.modules.interrupts import ignore_interrupts, install_interrupt_handlers, restore_signal_handlers
from hcibootstrap.modules.render import ConfigRenderer
from hcibootstrap.modules.services import PXEServices
from hcibootstrap.modules.status import StatusStore, node_entries
from hcibootstrap.modules.validate import validate_spec

logger = logging.getLogger("hcibootstrap.orchestrator")

TRANSITIONS: Dict[Phase, Set[Phase]] = {
    Phase.IDLE: {Phase.GENERATING, Phase.ERROR},
    Phase.GENERATING: {Phase.SERVING, Phase.ERROR},
    Phase.SERVING: {Phase.WAITING, Phase.ERROR},
    Phase.WAITING: {Phase.INSTALLING_ADDONS, Phase.ERROR},
    Phase.INSTALLING_ADDONS: {Phase.COMPLETE, Phase.ERROR},
    Phase.COMPLETE: set(),
    Phase.ERROR: set(),
}

BANNER = "━" * 40


class IllegalTransition(RuntimeError):
    """Raised when code tries to move the run to a phase the table does not allow."""


class Orchestrator:
    """Drives one bootstrap run from a validated ClusterSpec to a terminal phase.

    Collaborators are built from ``config`` unless passed in.
    """

    def __init__(
        self,
        spec: ClusterSpec,
        config: BootstrapConfig,
        status: Optional[StatusStore] = None,
        services: Optional[PXEServices] = None,
        renderer: Optional[ConfigRenderer] = None,
        poller: Optional[HealthPoller] = None,
        installer: Optional[AddonInstaller] = None,
        handle_signals: bool = True,
    ):
        self.spec = spec
        self.config = config
        self.status = status or StatusStore(config.paths.status_file, config.paths.kubeconfig)
        self.services = services or PXEServices(config)
        self.renderer = renderer or ConfigRenderer(spec, config)
        self.poller = poller or HealthPoller(spec, config, self.status, guard=self.services.check)
        self.installer = installer or AddonInstaller(spec, config, self.status, guard=self.services.check)
        self.handle_signals = handle_signals
        self.phase = Phase.IDLE

    def run(self) -> int:
        """Run every phase; returns the process exit code."""
        previous = install_interrupt_handlers() if self.handle_signals else None
        try:
            try:
                self.generate()
                self.serve()
                self.wait()
                self.install_addons()
                self.complete()
                return 0
            finally:
                # Stop signals are ignored until the handlers are restored below
                ignore_interrupts(previous)
        except BootstrapError as e:
            logger.error(f"❌ Bootstrap failed: {e}")
            self._fail(str(e))
            return 1
        except Exception as e:
            logger.exception(f"❌ Unexpected error during {self.phase.value}: {e}")
            self._fail(f"Bootstrap failed unexpectedly: {e}")
            return 1
        finally:
            try:
                self.services.stop()
            finally:
                restore_signal_handlers(previous)

    def generate(self) -> None:
        report = validate_spec(self.spec)
        if not report.valid:
            raise ConfigValidationError(report.errors, report.warnings)
        addons = [a.name for a in self.installer.enabled()]
        self._check(Phase.GENERATING)
        self.status.init(node_entries(self.spec), addons)
        self.phase = Phase.GENERATING
        logger.info(BANNER)
        logger.info(f" Initializing cluster: {self.spec.cluster.name}")
        logger.info(BANNER)
        self.renderer.render_all()

    def serve(self) -> None:
        self._enter(Phase.SERVING, "PXE boot services running. Power on your nodes.")
        self.services.start()
        c = self.spec.cluster
        logger.info(f"✅ Matchbox running at http://{self.spec.bootstrap.ip}:8080")
        logger.info(BANNER)
        logger.info(" ACTION REQUIRED: Power on your nodes now")
        logger.info(BANNER)
        logger.info(" 1. Power on control plane nodes (they will PXE boot automatically)")
        logger.info(f" 2. SSH into {self.spec.controllers[0].name} and run:")
        logger.info("      sudo /opt/bin/kubeadm init --config /home/core/kubeadm-init.yaml")
        logger.info(" 3. Copy the join commands from kubeadm output")
        logger.info(" 4. Power on worker nodes")
        logger.info(f" Cluster: {c.name} | VIP: {c.control_plane_vip} | K8s: {c.k8s_version}")

    def wait(self) -> None:
        self._enter(Phase.WAITING, "Waiting for nodes to PXE boot and join the cluster...")
        self.poller.start()
        self.poller.wait_for_control_plane()
        self.poller.fetch_credential()
        self.installer.install_network_plugin()
        self.poller.wait_for_nodes_ready(self.spec.expected_node_count)

    def install_addons(self) -> None:
        self._enter(Phase.INSTALLING_ADDONS, "Installing platform add-ons...")
        self.installer.run()

    def complete(self) -> None:
        kubeconfig = self.config.paths.kubeconfig
        self._enter(Phase.COMPLETE, f"✓ Cluster is healthy! kubeconfig saved to {kubeconfig}")
        self.services.stop()
        logger.info(BANNER)
        logger.info(" ✅ Cluster is healthy! Bootstrap complete.")
        logger.info(BANNER)
        logger.info(f" Kubeconfig saved to: {kubeconfig}")
        logger.info(f" Run: export KUBECONFIG={kubeconfig}")

    def _check(self, phase: Phase) -> None:
        if phase not in TRANSITIONS[self.phase]:
            raise IllegalTransition(f"Cannot move from {self.phase.value} to {phase.value}")

    def _enter(self, phase: Phase, message: str) -> None:
        self._check(phase)
        logger.info(f"▶ Phase {phase.value}: {message}")
        self.status.set(phase, message)
        self.phase = phase

    def _fail(self, message: str) -> None:
        if self.phase.terminal:
            return
        self.phase = Phase.ERROR
        try:
            self.status.set(Phase.ERROR, message)
        except OSError as e:
            logger.error(f"Could not write error status: {e}")
