import subprocess
from types import SimpleNamespace

import pytest

from hcibootstrap.errors import ApplyError, RolloutTimeout
from hcibootstrap.modules import kube
from hcibootstrap.modules.kube import Kubectl, NodeLister


@pytest.fixture
def commands(monkeypatch):
    recorded = []

    def fake_run(cmd, **kwargs):
        recorded.append((cmd, kwargs))
        return subprocess.CompletedProcess(cmd, 0, stdout="HEALTH_OK\n", stderr="")

    monkeypatch.setattr(kube, "run_command", fake_run)
    return recorded


def _failing(monkeypatch, exc):
    def fake_run(cmd, **kwargs):
        raise exc

    monkeypatch.setattr(kube, "run_command", fake_run)


def test_apply_text_pipes_manifest(commands):
    Kubectl("/out/kubeconfig").apply_text("kind: IPAddressPool\n", label="metallb pool")
    cmd, kwargs = commands[0]
    assert cmd == ["kubectl", "--kubeconfig=/out/kubeconfig", "apply", "-f", "-"]
    assert kwargs["input"] == "kind: IPAddressPool\n"


def test_wait_and_rollout_commands(commands):
    kubectl = Kubectl("/out/kubeconfig")
    kubectl.rollout_status("deployment/controller", "metallb-system", 300)
    kubectl.wait("crd/cephclusters.ceph.rook.io", "Established", 60)
    assert commands[0][0][2:] == [
        "rollout", "status", "deployment/controller", "-n", "metallb-system", "--timeout=300s",
    ]
    assert commands[1][0][2:] == [
        "wait", "--for=condition=Established", "crd/cephclusters.ceph.rook.io", "--timeout=60s",
    ]


def test_exec_returns_stdout(commands):
    out = Kubectl("/out/kubeconfig").exec("rook-ceph", "deploy/rook-ceph-tools", ["ceph", "health"])
    assert out == "HEALTH_OK\n"
    assert commands[0][0][2:] == ["-n", "rook-ceph", "exec", "deploy/rook-ceph-tools", "--", "ceph", "health"]


def test_apply_failure_carries_stderr(monkeypatch):
    _failing(monkeypatch, subprocess.CalledProcessError(
        1, ["kubectl"], stderr="warning\nerror: no matches for kind IPAddressPool\n"))
    with pytest.raises(ApplyError, match="no matches for kind IPAddressPool"):
        Kubectl("/out/kubeconfig").apply_file("/addons/metallb/pool.yaml")


def test_rollout_failure_is_timeout(monkeypatch):
    _failing(monkeypatch, subprocess.TimeoutExpired(["kubectl"], 330))
    with pytest.raises(RolloutTimeout, match="cert-manager/deployment/cert-manager"):
        Kubectl("/out/kubeconfig").rollout_status("deployment/cert-manager", "cert-manager", 300)


def test_node_lister_requires_kubeconfig(tmp_path):
    with pytest.raises(FileNotFoundError):
        NodeLister(tmp_path / "kubeconfig")()


def test_node_lister_reads_conditions(monkeypatch, tmp_path):
    path = tmp_path / "kubeconfig"
    path.write_text("apiVersion: v1\n")

    def node(name, ip, ready):
        return SimpleNamespace(
            metadata=SimpleNamespace(name=name),
            status=SimpleNamespace(
                conditions=[SimpleNamespace(type="Ready", status="True" if ready else "False")],
                addresses=[SimpleNamespace(type="InternalIP", address=ip)],
            ),
        )

    class FakeCoreV1:
        def __init__(self, api_client):
            pass

        def list_node(self, _request_timeout=None):
            return SimpleNamespace(items=[node("cp-1", "10.0.0.11", True), node("w-1", "10.0.0.21", False)])

    api_client = SimpleNamespace(close=lambda: None)
    monkeypatch.setattr(kube.config, "new_client_from_config", lambda config_file: api_client)
    monkeypatch.setattr(kube.client, "CoreV1Api", FakeCoreV1)

    nodes = NodeLister(path)()
    assert [(n.name, n.internal_ip, n.ready) for n in nodes] == [
        ("cp-1", "10.0.0.11", True), ("w-1", "10.0.0.21", False),
    ]
