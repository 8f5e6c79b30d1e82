"""Platform add-on installation.

The add-on set is compiled in: each :class:`AddonSpec` lists the manifests
to apply, the rollouts and conditions to wait for, an optional readiness
probe and the objects that can only be created once the add-on is up.
Enabled add-ons are installed one at a time in dependency order; the first
failure marks that add-on ``error`` and stops the sequence.
"""
import logging
import subprocess
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Tuple, Union

from hcibootstrap.config import BootstrapConfig
from hcibootstrap.errors import ConfigValidationError, CredentialError, ProbeFailure
from hcibootstrap.models import AddonState, ClusterSpec
from hcibootstrap.modules.kube import Kubectl
from hcibootstrap.modules.render import render_template
from hcibootstrap.modules.status import StatusStore

logger = logging.getLogger("hcibootstrap.addons")

DEFAULT_POD_SUBNET = "10.244.0.0/16"


@dataclass(frozen=True)
class Rollout:
    """``kubectl rollout status`` on one workload."""
    namespace: str
    resource: str


@dataclass(frozen=True)
class Condition:
    """``kubectl wait --for=condition=...``; ``timeout`` names an AddonTimeouts field."""
    resources: Tuple[str, ...]
    condition: str
    timeout: str
    namespace: Optional[str] = None


@dataclass(frozen=True)
class Settle:
    """Fixed pause, e.g. for a webhook to register."""
    reason: str


@dataclass(frozen=True)
class ExecProbe:
    """Run a command in a workload until its output contains ``expect``."""
    namespace: str
    target: str
    command: Tuple[str, ...]
    expect: str


Wait = Union[Rollout, Condition, Settle]


@dataclass(frozen=True)
class AddonSpec:
    name: str
    config_key: str
    depends_on: Tuple[str, ...] = ()
    manifests: Tuple[str, ...] = ()
    templates: Tuple[str, ...] = ()
    waits: Tuple[Wait, ...] = ()
    workload_templates: Tuple[str, ...] = ()
    probe: Optional[ExecProbe] = None
    post_ready: Tuple[str, ...] = ()
    ready_message: str = ""


ADDONS: Tuple[AddonSpec, ...] = (
    AddonSpec(
        name="cert-manager",
        config_key="cert_manager",
        manifests=("cert-manager.yaml",),
        waits=(
            Rollout("cert-manager", "deployment/cert-manager"),
            Rollout("cert-manager", "deployment/cert-manager-webhook"),
            Rollout("cert-manager", "deployment/cert-manager-cainjector"),
            Settle("cert-manager webhook registration"),
            Condition(("deployment/cert-manager-webhook",), "Available", "webhook", namespace="cert-manager"),
        ),
        post_ready=("cert-manager-issuer.yaml.tmpl",),
        ready_message="ClusterIssuer 'selfsigned' created",
    ),
    AddonSpec(
        name="metallb",
        config_key="metallb",
        manifests=("metallb-native.yaml",),
        waits=(
            Rollout("metallb-system", "deployment/controller"),
            Condition(
                ("crd/ipaddresspools.metallb.io", "crd/l2advertisements.metallb.io"),
                "established",
                "crd",
            ),
        ),
        post_ready=("metallb-config.yaml.tmpl",),
        ready_message="IP pool configured",
    ),
    AddonSpec(
        name="rook-ceph",
        config_key="rook_ceph",
        manifests=("rook-ceph-crds.yaml", "rook-ceph-common.yaml", "rook-ceph-operator.yaml"),
        waits=(Rollout("rook-ceph", "deployment/rook-ceph-operator"),),
        workload_templates=("rook-ceph-cluster.yaml.tmpl",),
        probe=ExecProbe("rook-ceph", "deploy/rook-ceph-tools", ("ceph", "status"), "HEALTH_OK"),
        post_ready=("rook-ceph-storageclass.yaml.tmpl",),
        ready_message="StorageClass 'rook-ceph-block' set as cluster default",
    ),
    AddonSpec(
        name="nebraska",
        config_key="nebraska",
        depends_on=("metallb",),
        templates=("nebraska.yaml.tmpl",),
        waits=(
            Rollout("nebraska", "deployment/postgres"),
            Rollout("nebraska", "deployment/nebraska"),
        ),
    ),
)


def resolve_order(specs: Iterable[AddonSpec], enabled: Iterable[str]) -> List[AddonSpec]:
    """Stable topological sort of the enabled add-ons.

    Ties are broken by declaration order, so an already valid declaration
    order is returned unchanged.

    Raises:
        ConfigValidationError: If an enabled add-on depends on one that is not
            enabled, or the dependencies form a cycle
    """
    enabled = set(enabled)
    selected = [s for s in specs if s.name in enabled]
    names = {s.name for s in selected}
    position = {s.name: i for i, s in enumerate(selected)}
    by_name: Dict[str, AddonSpec] = {s.name: s for s in selected}

    errors = [
        f"add-on {s.name} requires {dep} to be enabled"
        for s in selected for dep in s.depends_on if dep not in names
    ]
    if errors:
        raise ConfigValidationError(errors)

    indeg = {s.name: len(set(s.depends_on)) for s in selected}
    queue = deque(sorted((n for n, d in indeg.items() if d == 0), key=position.get))
    order: List[AddonSpec] = []
    while queue:
        n = queue.popleft()
        order.append(by_name[n])
        for s in selected:
            if n in s.depends_on:
                indeg[s.name] -= 1
                if indeg[s.name] == 0:
                    queue.append(s.name)
                    queue = deque(sorted(queue, key=position.get))

    if len(order) != len(selected):
        cyclic = sorted(n for n, d in indeg.items() if d > 0)
        raise ConfigValidationError([f"Cyclic dependency among add-ons: {', '.join(cyclic)}"])
    return order


def addon_variables(spec: ClusterSpec) -> Dict[str, str]:
    """Template variables for add-on manifests (``ADDON_<NAME>_<PARAM>`` plus cluster facts)."""
    variables = {
        "CLUSTER_NAME": spec.cluster.name,
        "CONTROL_PLANE_VIP": spec.cluster.control_plane_vip,
        "POD_SUBNET": spec.cluster.pod_subnet,
        "SERVICE_SUBNET": spec.cluster.service_subnet,
    }
    for name, cfg in spec.addons.items():
        prefix = "ADDON_" + name.upper().replace("-", "_")
        variables[f"{prefix}_ENABLED"] = str(cfg.enabled).lower()
        variables[f"{prefix}_VERSION"] = cfg.version
        for key, value in (cfg.model_extra or {}).items():
            variables[f"{prefix}_{key.upper()}"] = "" if value is None else str(value)
    rook = spec.addon("rook-ceph")
    variables["ADDON_ROOK_CEPH_REPLICA"] = str(rook.param("replica_count", 3))
    variables["ADDON_ROOK_CEPH_OSD_FILTER"] = str(rook.param("osd_device_filter", ""))
    return variables


class AddonInstaller:
    """Installs enabled add-ons against the new cluster.

    Args:
        spec: Cluster description
        config: Runtime settings (paths and per-step timeouts)
        status: Status store receiving add-on updates
        kubectl: kubectl wrapper; built from the output kubeconfig if None
        clock: Monotonic time source for the readiness probe
        sleep: Sleep function
        guard: Called between steps; raises to abort
    """

    def __init__(
        self,
        spec: ClusterSpec,
        config: BootstrapConfig,
        status: StatusStore,
        kubectl: Optional[Kubectl] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        guard: Optional[Callable[[], None]] = None,
        catalog: Tuple[AddonSpec, ...] = ADDONS,
    ):
        self.spec = spec
        self.config = config
        self.status = status
        self.kubectl = kubectl or Kubectl(config.paths.kubeconfig, apply_timeout=config.addons.apply)
        self.clock = clock
        self.sleep = sleep
        self.guard = guard
        self.catalog = catalog
        self.manifests_dir = Path(config.paths.addons_dir)
        self.templates_dir = Path(config.paths.templates_dir) / "addons"
        self._variables: Optional[Dict[str, str]] = None

    def enabled(self) -> List[AddonSpec]:
        """Enabled add-ons in install order."""
        return resolve_order(self.catalog, [a.name for a in self.catalog if self.spec.is_enabled(a.name)])

    def run(self) -> None:
        """Install every enabled add-on, stopping at the first failure."""
        addons = self.enabled()
        if not addons:
            logger.info("No add-ons enabled")
            return
        if not self.config.paths.kubeconfig.is_file():
            raise CredentialError(f"Kubeconfig not found: {self.config.paths.kubeconfig}")
        logger.info(f"Installing add-ons: {', '.join(a.name for a in addons)}")
        for addon in addons:
            self.install(addon)
        logger.info("✅ All enabled add-ons installed successfully")

    def install(self, addon: AddonSpec) -> None:
        version = self.spec.addon(addon.name).version
        logger.info(f"━━ Installing {addon.name} {version}...")
        self.status.set_addon(addon.name, AddonState.DEPLOYING, f"Installing {version}".strip())
        try:
            for manifest in addon.manifests:
                self._step()
                self.kubectl.apply_file(self.manifests_dir / manifest)
            for template in addon.templates:
                self._step()
                self._apply_template(template)
            for wait in addon.waits:
                self._step()
                self._wait(wait)
            for template in addon.workload_templates:
                self._step()
                self._apply_template(template)
            if addon.probe is not None:
                self._step()
                self._probe(addon.name, addon.probe)
            for template in addon.post_ready:
                self._step()
                self._apply_template(template)
        except Exception as e:
            self.status.set_addon(addon.name, AddonState.ERROR, str(e))
            logger.error(f"❌ {addon.name} failed: {e}")
            raise
        self.status.set_addon(addon.name, AddonState.READY, addon.ready_message or "Ready")
        logger.info(f"✅ {addon.name} ready")

    def install_network_plugin(self) -> bool:
        """Apply the flannel manifest with the configured pod subnet.

        Returns:
            True if the manifest was applied
        """
        if not self.spec.is_enabled("flannel"):
            logger.info("Flannel disabled, skipping CNI install")
            return False
        if not self.config.paths.kubeconfig.is_file():
            logger.warning("No kubeconfig available, skipping CNI install")
            return False
        manifest = self.manifests_dir / "flannel.yaml"
        if not manifest.is_file():
            logger.warning(f"⚠️  Flannel manifest not found at {manifest}, skipping CNI install")
            return False
        pod_subnet = self.spec.cluster.pod_subnet
        self.kubectl.apply_text(manifest.read_text().replace(DEFAULT_POD_SUBNET, pod_subnet), label="flannel")
        logger.info(f"✅ Flannel CNI installed (pod CIDR: {pod_subnet})")
        return True

    def _step(self) -> None:
        if self.guard is not None:
            self.guard()

    def _apply_template(self, name: str) -> None:
        if self._variables is None:
            self._variables = addon_variables(self.spec)
        self.kubectl.apply_text(render_template(self.templates_dir / name, self._variables), label=name)

    def _wait(self, wait: Wait) -> None:
        timeouts = self.config.addons
        if isinstance(wait, Rollout):
            self.kubectl.rollout_status(wait.resource, wait.namespace, timeouts.rollout)
        elif isinstance(wait, Condition):
            for resource in wait.resources:
                self.kubectl.wait(resource, wait.condition, getattr(timeouts, wait.timeout), wait.namespace)
        elif isinstance(wait, Settle):
            logger.info(f"Waiting {timeouts.settle}s for {wait.reason}")
            self.sleep(timeouts.settle)

    def _probe(self, name: str, probe: ExecProbe) -> None:
        timeout = self.config.addons.probe
        interval = self.config.addons.probe_interval
        deadline = self.clock() + timeout
        logger.info(f"⏳ Waiting for {name} to report {probe.expect} (up to {int(timeout)}s)")
        last = ""
        while True:
            self._step()
            try:
                last = self.kubectl.exec(probe.namespace, probe.target, list(probe.command))
                if probe.expect in last:
                    return
            except (subprocess.SubprocessError, OSError) as e:
                last = str(e)
            remaining = deadline - self.clock()
            if remaining <= 0:
                summary = last.strip().splitlines()[0] if last.strip() else "no output"
                raise ProbeFailure(f"{name} did not reach {probe.expect} within {int(timeout)}s ({summary})")
            logger.info(f"  {name} not yet healthy, retrying in {int(interval)}s...")
            self.sleep(min(interval, remaining))
