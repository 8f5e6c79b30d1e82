"""Cluster tooling: kubectl invocations and node listing through the Kubernetes API."""
import json
import subprocess
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from kubernetes import client, config

from hcibootstrap.errors import ApplyError, RolloutTimeout

logger = logging.getLogger("hcibootstrap.kube")


def run_command(
    cmd: List[str],
    *,
    check: bool = True,
    capture_output: bool = False,
    input: Optional[str] = None,
    timeout: Optional[float] = None,
    cwd: Optional[Path] = None,
) -> subprocess.CompletedProcess:
    cmd_str = ' '.join(cmd)
    logger.debug(f"💻 Running: {cmd_str}")
    try:
        result = subprocess.run(
            cmd,
            check=check,
            text=True,
            cwd=cwd,
            input=input,
            timeout=timeout,
            stdout=subprocess.PIPE if capture_output else None,
            stderr=subprocess.PIPE if capture_output else None,
        )
        if capture_output:
            logger.debug(f"🟢 Output:\n{result.stdout}")
        return result
    except subprocess.CalledProcessError as e:
        msg = f"❌ Command failed: {cmd_str} (exit code: {e.returncode})"
        if capture_output:
            msg += f"\nStdout:\n{e.stdout}\nStderr:\n{e.stderr}"
        logger.error(msg)
        raise


def _detail(e: Exception) -> str:
    if isinstance(e, subprocess.TimeoutExpired):
        return f"timed out after {e.timeout}s"
    stderr = (getattr(e, 'stderr', None) or '').strip()
    return stderr.splitlines()[-1] if stderr else f"exit code {getattr(e, 'returncode', '?')}"


class Kubectl:
    """Thin wrapper over the kubectl binary bound to one kubeconfig."""

    def __init__(self, kubeconfig: Union[str, Path], binary: str = "kubectl", apply_timeout: float = 300):
        self.kubeconfig = str(kubeconfig)
        self.binary = binary
        self.apply_timeout = apply_timeout

    def _base(self) -> List[str]:
        return [self.binary, f"--kubeconfig={self.kubeconfig}"]

    def apply_file(self, path: Union[str, Path]) -> str:
        """Apply a manifest file or directory and return kubectl's output.

        Raises:
            ApplyError: If kubectl fails or times out
        """
        logger.info(f"📦 Applying {path}")
        try:
            result = run_command(self._base() + ["apply", "-f", str(path)],
                                 capture_output=True, timeout=self.apply_timeout)
        except (subprocess.SubprocessError, OSError) as e:
            raise ApplyError(f"Failed to apply {Path(path).name}: {_detail(e)}") from e
        return result.stdout or ''

    def get_json(self, *args: str, timeout: float = 15) -> Dict[str, Any]:
        """``kubectl get <args> -o json``, parsed."""
        result = run_command(self._base() + ["get", *args, "-o", "json"],
                             capture_output=True, timeout=timeout)
        return json.loads(result.stdout or "{}")

    def apply_text(self, manifest: str, label: str = "manifest") -> None:
        """Apply a rendered manifest passed on stdin."""
        logger.info(f"📦 Applying {label}")
        try:
            run_command(self._base() + ["apply", "-f", "-"], input=manifest,
                        capture_output=True, timeout=self.apply_timeout)
        except (subprocess.SubprocessError, OSError) as e:
            raise ApplyError(f"Failed to apply {label}: {_detail(e)}") from e

    def rollout_status(self, resource: str, namespace: str, timeout: int) -> None:
        """Block until a workload has rolled out or raise RolloutTimeout."""
        logger.info(f"⏳ Waiting for rollout of {namespace}/{resource} (timeout {timeout}s)")
        try:
            run_command(self._base() + ["rollout", "status", resource, "-n", namespace, f"--timeout={timeout}s"],
                        capture_output=True, timeout=timeout + 30)
        except (subprocess.SubprocessError, OSError) as e:
            raise RolloutTimeout(f"{namespace}/{resource} did not roll out within {timeout}s") from e

    def wait(self, resource: str, condition: str, timeout: int, namespace: Optional[str] = None) -> None:
        """``kubectl wait --for=condition=...``; failures raise RolloutTimeout."""
        cmd = self._base() + ["wait", f"--for=condition={condition}", resource, f"--timeout={timeout}s"]
        if namespace:
            cmd += ["-n", namespace]
        where = f"{namespace}/{resource}" if namespace else resource
        logger.info(f"⏳ Waiting for {where} to be {condition} (timeout {timeout}s)")
        try:
            run_command(cmd, capture_output=True, timeout=timeout + 30)
        except (subprocess.SubprocessError, OSError) as e:
            raise RolloutTimeout(f"{where} not {condition} within {timeout}s") from e

    def exec(self, namespace: str, target: str, command: List[str], timeout: float = 60) -> str:
        """Run a command inside a workload and return its stdout.

        Raises:
            subprocess.SubprocessError: If the command fails or times out
        """
        result = run_command(self._base() + ["-n", namespace, "exec", target, "--"] + command,
                             capture_output=True, timeout=timeout)
        return result.stdout or ''


@dataclass
class NodeInfo:
    name: str
    internal_ip: Optional[str]
    ready: bool


class NodeLister:
    """Lists cluster nodes with the official Kubernetes client.

    A fresh API client is built from the kubeconfig on every call so a
    credential that appears mid-run is picked up.
    """

    def __init__(self, kubeconfig: Union[str, Path], request_timeout: float = 10):
        self.kubeconfig = Path(kubeconfig)
        self.request_timeout = request_timeout

    def __call__(self) -> List[NodeInfo]:
        if not self.kubeconfig.is_file():
            raise FileNotFoundError(f"Kubeconfig not found: {self.kubeconfig}")
        api_client = config.new_client_from_config(config_file=str(self.kubeconfig))
        try:
            v1 = client.CoreV1Api(api_client)
            nodes = v1.list_node(_request_timeout=self.request_timeout)
        finally:
            api_client.close()

        result = []
        for item in nodes.items:
            ready = any(c.type == "Ready" and c.status == "True" for c in (item.status.conditions or []))
            internal_ip = next(
                (a.address for a in (item.status.addresses or []) if a.type == "InternalIP"), None
            )
            result.append(NodeInfo(name=item.metadata.name, internal_ip=internal_ip, ready=ready))
        return result
