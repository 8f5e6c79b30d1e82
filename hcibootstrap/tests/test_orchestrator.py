import os
import signal
import time

import pytest
import requests

from hcibootstrap.errors import Interrupted, ServiceStartError
from hcibootstrap.models import AddonState, ClusterSpec, Phase
from hcibootstrap.modules.addons import AddonInstaller
from hcibootstrap.modules.health import HealthPoller
from hcibootstrap.modules.kube import NodeInfo
from hcibootstrap.modules.orchestrator import IllegalTransition, Orchestrator
from hcibootstrap.modules.services import PXEServices, ServiceHandle
from hcibootstrap.modules.status import StatusStore

from conftest import FakeKubectl

ADMIN_CONF = "apiVersion: v1\nclusters:\n- cluster:\n    server: https://10.0.0.11:6443\n"


class Response:
    status_code = 200
    text = "ok"


class RecordingStatus(StatusStore):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.phases = []

    def init(self, nodes, addons):
        self.phases.append(Phase.GENERATING)
        return super().init(nodes, addons)

    def set(self, phase, message):
        self.phases.append(Phase(phase))
        super().set(phase, message)


class FakeServices:
    def __init__(self, fail_check_after=None):
        self.started = False
        self.stops = 0
        self.checks = 0
        self.fail_check_after = fail_check_after

    def start(self):
        self.started = True

    def check(self):
        self.checks += 1
        if self.fail_check_after is not None and self.checks > self.fail_check_after:
            raise ServiceStartError("dnsmasq exited unexpectedly with code 2")

    def stop(self):
        self.stops += 1


class FakeRenderer:
    def __init__(self):
        self.rendered = False

    def render_all(self):
        self.rendered = True
        return {}


def _ready_nodes(spec):
    return lambda: [NodeInfo(name=n.name, internal_ip=n.ip, ready=True) for _, n in spec.iter_nodes()]


def _build(spec, settings, clock, services=None, kubectl=None, http_get=None, list_nodes=None,
           fetch_conf=None, guard=None):
    status = RecordingStatus(settings.paths.status_file, settings.paths.kubeconfig)
    services = services or FakeServices()
    guard = guard or services.check
    poller = HealthPoller(
        spec, settings, status,
        http_get=http_get or (lambda *a, **kw: Response()),
        fetch_conf=fetch_conf or (lambda host, ssh: ADMIN_CONF),
        list_nodes=list_nodes or _ready_nodes(spec),
        clock=clock, sleep=clock.sleep, guard=guard,
    )
    installer = AddonInstaller(
        spec, settings, status, kubectl=kubectl or FakeKubectl(),
        clock=clock, sleep=clock.sleep, guard=guard,
    )
    orchestrator = Orchestrator(
        spec, settings, status=status, services=services, renderer=FakeRenderer(),
        poller=poller, installer=installer, handle_signals=False,
    )
    return orchestrator, status, services


def test_single_controller_flannel_only_completes(spec, settings, clock, addon_files):
    kubectl = FakeKubectl()
    orchestrator, status, services = _build(spec, settings, clock, kubectl=kubectl)

    assert orchestrator.run() == 0

    doc = status.read()
    assert doc.phase == Phase.COMPLETE
    assert doc.addons == []
    assert doc.kubeconfig_ready is True
    assert doc.completed_at is not None
    assert doc.message == f"✓ Cluster is healthy! kubeconfig saved to {settings.paths.kubeconfig}"
    assert status.phases == [
        Phase.GENERATING, Phase.SERVING, Phase.WAITING, Phase.INSTALLING_ADDONS, Phase.COMPLETE,
    ]
    assert kubectl.calls == ["apply flannel"]
    assert orchestrator.renderer.rendered
    assert services.started and services.stops >= 1


def test_wait_timeout_ends_in_error_with_actual_kubeconfig_state(spec, settings, clock):
    def never_ready():
        return [NodeInfo(name="cp-1", internal_ip="10.0.0.11", ready=False)]

    orchestrator, status, services = _build(spec, settings, clock, list_nodes=never_ready)
    assert orchestrator.run() == 1

    doc = status.read()
    assert doc.phase == Phase.ERROR
    assert "0/1" in doc.message
    assert doc.kubeconfig_ready is True
    assert status.phases[-1] == Phase.ERROR
    assert Phase.INSTALLING_ADDONS not in status.phases
    assert services.stops >= 1


def test_control_plane_timeout_without_kubeconfig(spec, settings, clock):
    def down(url, **kwargs):
        raise requests.ConnectionError()

    orchestrator, status, _ = _build(spec, settings, clock, http_get=down)
    assert orchestrator.run() == 1
    doc = status.read()
    assert doc.phase == Phase.ERROR
    assert doc.kubeconfig_ready is False
    assert clock.now == settings.wait.timeout


def test_invalid_spec_never_reaches_generating(cluster_data, settings, clock):
    cluster_data["addons"] = {"nebraska": {"enabled": True, "ip": "10.0.0.200"}}
    spec = ClusterSpec.model_validate(cluster_data)
    orchestrator, status, services = _build(spec, settings, clock)

    assert orchestrator.run() == 1
    assert status.phases == [Phase.ERROR]
    assert "nebraska requires" in status.read().message
    assert not orchestrator.renderer.rendered
    assert not services.started


def test_probe_failure_stops_remaining_addons(cluster_data, settings, clock, addon_files):
    cluster_data["addons"] = {
        "metallb": {"enabled": True, "ip_pool": "10.0.0.200-10.0.0.220"},
        "rook_ceph": {"enabled": True},
        "nebraska": {"enabled": True, "ip": "10.0.0.200"},
    }
    spec = ClusterSpec.model_validate(cluster_data)
    kubectl = FakeKubectl(exec_outputs=["HEALTH_WARN"] * 100)
    orchestrator, status, _ = _build(spec, settings, clock, kubectl=kubectl)

    assert orchestrator.run() == 1

    doc = status.read()
    assert doc.phase == Phase.ERROR
    assert [a.name for a in doc.addons] == ["metallb", "rook-ceph", "nebraska"]
    assert [a.status for a in doc.addons] == [AddonState.READY, AddonState.ERROR, AddonState.PENDING]
    assert not any("nebraska" in call for call in kubectl.calls)


def test_service_exit_during_wait_is_an_error(spec, settings, clock):
    def down(url, **kwargs):
        raise requests.ConnectionError()

    services = FakeServices(fail_check_after=2)
    orchestrator, status, _ = _build(spec, settings, clock, services=services, http_get=down)
    assert orchestrator.run() == 1
    doc = status.read()
    assert doc.phase == Phase.ERROR
    assert "dnsmasq exited unexpectedly" in doc.message
    assert services.stops >= 1


def test_interrupt_writes_error_and_stops_services(spec, settings, clock):
    def guard():
        raise Interrupted(15)

    services = FakeServices()
    orchestrator, status, _ = _build(spec, settings, clock, services=services, guard=guard)
    assert orchestrator.run() == 1
    assert status.read().phase == Phase.ERROR
    assert status.read().message == "Bootstrap interrupted by signal 15"
    assert services.stops >= 1


def test_phases_cannot_repeat_or_go_backwards(spec, settings, clock):
    orchestrator, _, _ = _build(spec, settings, clock)
    orchestrator.generate()
    orchestrator.serve()
    with pytest.raises(IllegalTransition):
        orchestrator.serve()
    with pytest.raises(IllegalTransition):
        orchestrator.generate()


def test_unexpected_exception_becomes_error(spec, settings, clock):
    orchestrator, status, _ = _build(spec, settings, clock)

    def explode():
        raise KeyError("boom")

    orchestrator.renderer.render_all = explode
    assert orchestrator.run() == 1
    assert status.read().phase == Phase.ERROR
    assert "unexpectedly" in status.read().message


def _healthz_then_sigterm(url, **kwargs):
    os.kill(os.getpid(), signal.SIGTERM)
    time.sleep(1)
    raise requests.ConnectionError()


def _build_with_daemons(spec, settings, clock):
    services = PXEServices(settings)
    orchestrator, status, _ = _build(
        spec, settings, clock, services=services, http_get=_healthz_then_sigterm,
    )
    orchestrator.handle_signals = True
    return orchestrator, status, services


def test_sigterm_during_wait_reaps_daemons_and_restores_handlers(spec, stub_daemons, clock):
    before = (signal.getsignal(signal.SIGTERM), signal.getsignal(signal.SIGINT))
    orchestrator, status, services = _build_with_daemons(spec, stub_daemons, clock)

    assert orchestrator.run() == 1

    doc = status.read()
    assert doc.phase == Phase.ERROR
    assert doc.message == "Bootstrap interrupted by signal 15"
    assert Phase.WAITING in status.phases
    assert all(h.process is not None and h.process.poll() is not None for h in services.handles)
    assert (signal.getsignal(signal.SIGTERM), signal.getsignal(signal.SIGINT)) == before


def test_second_sigterm_during_teardown_is_ignored(spec, stub_daemons, clock, monkeypatch):
    original_stop = ServiceHandle.stop

    def stop_after_another_signal(self, timeout=10.0):
        if self.running:
            os.kill(os.getpid(), signal.SIGTERM)
            time.sleep(0.2)
        original_stop(self, timeout)

    monkeypatch.setattr(ServiceHandle, "stop", stop_after_another_signal)
    before = signal.getsignal(signal.SIGTERM)
    orchestrator, status, services = _build_with_daemons(spec, stub_daemons, clock)

    assert orchestrator.run() == 1

    assert status.read().phase == Phase.ERROR
    assert all(h.process.poll() is not None for h in services.handles)
    assert signal.getsignal(signal.SIGTERM) == before
