"""Render Matchbox profiles, groups, Ignition and dnsmasq configs from cluster.yaml."""
import logging
import secrets
import subprocess
import tempfile
from pathlib import Path
from string import Template
from typing import Callable, Dict, List, Mapping, Optional

from hcibootstrap.config import BootstrapConfig
from hcibootstrap.errors import RenderError
from hcibootstrap.models import ClusterSpec
from hcibootstrap.modules.kube import run_command

logger = logging.getLogger("hcibootstrap.render")

ROLES = ("bootstrap", "controller", "worker")


def generate_token() -> str:
    """Return a kubeadm bootstrap token (``[a-f0-9]{6}.[a-f0-9]{16}``)."""
    return f"{secrets.token_hex(3)}.{secrets.token_hex(8)}"


def render_template(path: Path, variables: Mapping[str, str]) -> str:
    """Substitute ``${VAR}`` placeholders in a template file.

    Unknown placeholders are left untouched, like envsubst with an unset variable list.

    Raises:
        RenderError: If the template cannot be read
    """
    try:
        text = Path(path).read_text()
    except OSError as e:
        raise RenderError(f"Cannot read template {path}: {e}") from e
    return Template(text).safe_substitute(variables)


def butane(source: Path, output: Path) -> None:
    """Transpile a Butane config to Ignition JSON."""
    try:
        run_command(["butane", "--strict", str(source), "-o", str(output)], capture_output=True)
    except FileNotFoundError as e:
        raise RenderError("butane not found in PATH") from e
    except subprocess.CalledProcessError as e:
        raise RenderError(f"butane failed for {source.name}: {(e.stderr or '').strip()}") from e


class ConfigRenderer:
    """Writes every artifact the PXE services need for one cluster."""

    def __init__(
        self,
        spec: ClusterSpec,
        config: BootstrapConfig,
        transpile: Callable[[Path, Path], None] = butane,
    ):
        self.spec = spec
        self.config = config
        self.transpile = transpile
        self.templates = Path(config.paths.templates_dir)
        self.matchbox = Path(config.paths.matchbox_dir)
        self.output = Path(config.paths.output_dir)
        self.token = spec.cluster.kubeadm_token or generate_token()

    def variables(self) -> Dict[str, str]:
        c = self.spec.cluster
        keys = c.ssh_authorized_keys
        return {
            "BOOTSTRAP_IP": self.spec.bootstrap.ip,
            "BOOTSTRAP_IFACE": self.spec.bootstrap.iface,
            "CLUSTER_NAME": c.name,
            "CONTROL_PLANE_VIP": c.control_plane_vip,
            "POD_SUBNET": c.pod_subnet,
            "SERVICE_SUBNET": c.service_subnet,
            "K8S_VERSION": c.k8s_version,
            "FLATCAR_VERSION": c.flatcar_version,
            "SSH_KEY": keys[0] if keys else "",
            "SSH_KEYS": "\n".join(keys),
            "KUBEADM_TOKEN": self.token,
        }

    def render_all(self) -> Dict[str, List[str]]:
        """Render profiles, groups, ignition, dnsmasq.conf and bootstrap-info.env.

        Returns:
            Written file names grouped by kind
        """
        variables = self.variables()
        written: Dict[str, List[str]] = {"profiles": [], "groups": [], "ignition": []}

        logger.info("Generating Matchbox profiles...")
        for role in ROLES:
            name = f"{role}.json"
            self._write(self.matchbox / "profiles" / name,
                        render_template(self.templates / "profiles" / f"{name}.tmpl", variables))
            written["profiles"].append(name)

        logger.info("Generating Matchbox groups...")
        group_tmpl = self.templates / "groups" / "node.json.tmpl"
        groups = [("bootstrap", "bootstrap", self.spec.bootstrap.mac, self.spec.bootstrap.ip)]
        groups += [(role.value, n.name, n.mac, n.ip) for role, n in self.spec.iter_nodes()]
        for role, name, mac, ip in groups:
            node_vars = dict(variables, NODE_ROLE=role, NODE_NAME=name, NODE_MAC=mac, NODE_IP=ip)
            self._write(self.matchbox / "groups" / f"{name}.json", render_template(group_tmpl, node_vars))
            written["groups"].append(f"{name}.json")
            logger.info(f"  ✓ groups/{name}.json (mac: {mac})")

        logger.info("Generating Ignition configs via Butane...")
        (self.matchbox / "ignition").mkdir(parents=True, exist_ok=True)
        with tempfile.TemporaryDirectory(prefix="hci-butane-") as tmp:
            for role in ROLES:
                source = Path(tmp) / f"{role}.bu"
                source.write_text(render_template(self.templates / "ignition" / f"{role}.yaml.tmpl", variables))
                self.transpile(source, self.matchbox / "ignition" / f"{role}.json")
                written["ignition"].append(f"{role}.json")

        logger.info("Generating dnsmasq config...")
        self._write(self.matchbox / "dnsmasq.conf",
                    render_template(self.templates / "dnsmasq.conf.tmpl", variables))

        self.write_bootstrap_info()
        logger.info(
            f"✅ All configs generated: {len(written['profiles'])} profiles, "
            f"{len(written['groups'])} groups, {len(written['ignition'])} ignition"
        )
        return written

    def write_bootstrap_info(self) -> Path:
        """Save the join token and cluster facts for the operator."""
        c = self.spec.cluster
        path = self.output / "bootstrap-info.env"
        self._write(path, "".join(f"{k}={v}\n" for k, v in (
            ("KUBEADM_TOKEN", self.token),
            ("CONTROL_PLANE_VIP", c.control_plane_vip),
            ("K8S_VERSION", c.k8s_version),
            ("FLATCAR_VERSION", c.flatcar_version),
            ("CLUSTER_NAME", c.name),
        )))
        logger.info(f"Bootstrap info saved to: {path}")
        return path

    @staticmethod
    def _write(path: Path, content: str) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content)
        except OSError as e:
            raise RenderError(f"Cannot write {path}: {e}") from e
