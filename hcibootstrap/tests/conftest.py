import copy

import pytest

from hcibootstrap.config import BootstrapConfig
from hcibootstrap.models import ClusterSpec
from hcibootstrap.modules.status import StatusStore

SSH_KEY = "ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAIExample operator@laptop"

CLUSTER = {
    "cluster": {
        "name": "lab",
        "control_plane_vip": "10.0.0.10",
        "ssh_authorized_keys": [SSH_KEY],
    },
    "bootstrap": {"ip": "10.0.0.2", "mac": "52:54:00:00:00:02"},
    "controllers": [
        {"name": "cp-1", "ip": "10.0.0.11", "mac": "52:54:00:00:00:11"},
    ],
    "workers": [],
    "addons": {"flannel": {"enabled": True}},
}


class FakeClock:
    """Monotonic clock advanced only by sleep()."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


class FakeKubectl:
    """Records kubectl calls; ``fail_on`` maps a call label to the exception it raises."""

    def __init__(self, exec_outputs=None, fail_on=None):
        self.calls = []
        self.exec_outputs = list(exec_outputs or [])
        self.fail_on = fail_on or {}

    def _record(self, label):
        self.calls.append(label)
        if label in self.fail_on:
            raise self.fail_on[label]

    def apply_file(self, path):
        self._record(f"apply {path.name}")

    def apply_text(self, manifest, label="manifest"):
        self.applied_text = manifest
        self._record(f"apply {label}")

    def rollout_status(self, resource, namespace, timeout):
        self._record(f"rollout {namespace}/{resource}")

    def wait(self, resource, condition, timeout, namespace=None):
        self._record(f"wait {resource} {condition}")

    def exec(self, namespace, target, command, timeout=60):
        self._record(f"exec {target} {' '.join(command)}")
        return self.exec_outputs.pop(0) if self.exec_outputs else ""


@pytest.fixture
def cluster_data():
    return copy.deepcopy(CLUSTER)


@pytest.fixture
def spec(cluster_data):
    return ClusterSpec.model_validate(cluster_data)


@pytest.fixture
def settings(tmp_path):
    return BootstrapConfig.load(
        tmp_path / "missing-settings.yaml",
        environ={},
        overrides={
            "paths": {
                "output_dir": str(tmp_path / "output"),
                "cluster_config": str(tmp_path / "cluster.yaml"),
                "templates_dir": str(tmp_path / "templates"),
                "addons_dir": str(tmp_path / "addons"),
                "matchbox_dir": str(tmp_path / "matchbox"),
                "assets_dir": str(tmp_path / "matchbox" / "assets"),
            },
            "wait": {"timeout": 60, "poll_interval": 15, "credential_attempts": 3},
            "services": {"start_grace": 0},
        },
    )


@pytest.fixture
def status(settings):
    return StatusStore(settings.paths.status_file, settings.paths.kubeconfig, clock=lambda: "2026-01-01T00:00:00Z")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def addon_files(settings):
    """Empty manifests and templates for every compiled-in add-on."""
    from pathlib import Path
    from hcibootstrap.modules.addons import ADDONS

    manifests = Path(settings.paths.addons_dir)
    templates = Path(settings.paths.templates_dir) / "addons"
    manifests.mkdir(parents=True)
    templates.mkdir(parents=True)
    for addon in ADDONS:
        for name in addon.manifests:
            (manifests / name).write_text(f"# {name}\n")
        for name in addon.templates + addon.workload_templates + addon.post_ready:
            (templates / name).write_text(f"# {name} ${{ADDON_METALLB_IP_POOL}}\n")
    (manifests / "flannel.yaml").write_text('net-conf.json: |\n  {"Network": "10.244.0.0/16"}\n')
    return manifests, templates


def stub_binary(directory, name, body="exec sleep 1000"):
    """Write an executable shell script standing in for a daemon."""
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / name
    path.write_text(f"#!/bin/sh\n{body}\n")
    path.chmod(0o755)
    return str(path)


@pytest.fixture
def stub_daemons(settings, tmp_path):
    """Point matchbox and dnsmasq at long-sleeping shell scripts."""
    settings.services.matchbox_bin = stub_binary(tmp_path / "bin", "matchbox")
    settings.services.dnsmasq_bin = stub_binary(tmp_path / "bin", "dnsmasq")
    settings.services.stop_timeout = 5
    return settings
