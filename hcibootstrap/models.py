"""Data models for the cluster description and the bootstrap status record."""

from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class Phase(str, Enum):
    """Phases of a bootstrap run."""
    IDLE = 'idle'
    GENERATING = 'generating'
    SERVING = 'serving'
    WAITING = 'waiting'
    INSTALLING_ADDONS = 'installing_addons'
    COMPLETE = 'complete'
    ERROR = 'error'

    @property
    def terminal(self) -> bool:
        return self in (Phase.COMPLETE, Phase.ERROR)


class NodeRole(str, Enum):
    """Node roles in the cluster."""
    CONTROLLER = 'controller'
    WORKER = 'worker'


class NodeState(str, Enum):
    """Provisioning state of a node as shown on the dashboard."""
    PENDING = 'pending'
    PXE_BOOTING = 'pxe-booting'
    INSTALLING = 'installing'
    READY = 'ready'
    ERROR = 'error'


class AddonState(str, Enum):
    """Installation state of an add-on."""
    PENDING = 'pending'
    DEPLOYING = 'deploying'
    READY = 'ready'
    ERROR = 'error'


# Defaults for the add-on section of cluster.yaml, keyed by canonical name.
DEFAULT_ADDONS: Dict[str, Dict[str, Any]] = {
    'flannel': {'enabled': True, 'version': 'v0.25.7'},
    'cert-manager': {'enabled': False, 'version': 'v1.16.2'},
    'metallb': {'enabled': False, 'version': 'v0.14.9', 'ip_pool': ''},
    'rook-ceph': {
        'enabled': False,
        'version': 'v1.15.6',
        'replica_count': 3,
        'osd_device_filter': '^sd[b-z]|^vd[b-z]|^nvme[0-9]n[0-9]',
    },
    'nebraska': {'enabled': False, 'version': 'v2.8.14', 'ip': ''},
}


def canonical_addon_name(key: str) -> str:
    """Map a cluster.yaml add-on key (``rook_ceph``) to its canonical name (``rook-ceph``)."""
    return key.strip().lower().replace('_', '-')


class NodeSpec(BaseModel):
    """A machine to be PXE booted into the cluster."""
    name: str
    ip: str
    mac: str


class ClusterInfo(BaseModel):
    """Cluster-wide settings from the ``cluster`` section."""
    name: str
    control_plane_vip: str
    k8s_version: str = 'v1.31.0'
    flatcar_version: str = '3975.2.2'
    pod_subnet: str = '10.244.0.0/16'
    service_subnet: str = '10.96.0.0/12'
    ssh_authorized_keys: List[str] = Field(default_factory=list)
    kubeadm_token: str = ''

    @model_validator(mode='before')
    @classmethod
    def _merge_singular_key(cls, data: Any) -> Any:
        # cluster.yaml accepts either a key list or a single ssh_authorized_key
        if isinstance(data, dict) and not data.get('ssh_authorized_keys'):
            single = data.get('ssh_authorized_key')
            if single:
                data = dict(data)
                data['ssh_authorized_keys'] = [single]
        return data

    @field_validator('kubeadm_token', mode='before')
    @classmethod
    def _none_token(cls, v: Any) -> Any:
        return v or ''


class BootstrapHost(BaseModel):
    """The temporary bootstrap machine that serves PXE."""
    ip: str
    mac: str = ''
    iface: str = ''


class AddonConfig(BaseModel):
    """Per add-on settings; add-on specific parameters are kept as extras."""
    model_config = ConfigDict(extra='allow')

    enabled: bool = False
    version: str = ''

    def param(self, key: str, default: Any = None) -> Any:
        return (self.model_extra or {}).get(key, default)


class ClusterSpec(BaseModel):
    """Validated description of the cluster to bootstrap."""
    cluster: ClusterInfo
    bootstrap: BootstrapHost
    controllers: List[NodeSpec] = Field(default_factory=list)
    workers: List[NodeSpec] = Field(default_factory=list)
    addons: Dict[str, AddonConfig] = Field(default_factory=dict, validate_default=True)

    @field_validator('controllers', 'workers', mode='before')
    @classmethod
    def _none_is_empty(cls, v: Any) -> Any:
        return v or []

    @field_validator('addons', mode='before')
    @classmethod
    def _apply_addon_defaults(cls, v: Any) -> Dict[str, Dict[str, Any]]:
        merged = {name: dict(values) for name, values in DEFAULT_ADDONS.items()}
        for key, values in (v or {}).items():
            name = canonical_addon_name(key)
            merged.setdefault(name, {}).update(values or {})
        return merged

    def addon(self, name: str) -> AddonConfig:
        return self.addons.get(canonical_addon_name(name)) or AddonConfig()

    def is_enabled(self, name: str) -> bool:
        return self.addon(name).enabled

    def iter_nodes(self) -> Iterator[Tuple[NodeRole, NodeSpec]]:
        """Yield every node with its role, controllers first."""
        for node in self.controllers:
            yield NodeRole.CONTROLLER, node
        for node in self.workers:
            yield NodeRole.WORKER, node

    @property
    def expected_node_count(self) -> int:
        return len(self.controllers) + len(self.workers)

    @property
    def api_endpoint(self) -> str:
        return f"https://{self.cluster.control_plane_vip}:6443"


class NodeStatus(BaseModel):
    name: str
    ip: str
    role: NodeRole
    status: NodeState = NodeState.PENDING
    message: str = ''


class AddonStatus(BaseModel):
    name: str
    status: AddonState = AddonState.PENDING
    message: str = ''


class BootstrapStatus(BaseModel):
    """The status document shared with the dashboard."""
    phase: Phase = Phase.IDLE
    message: str = ''
    started_at: Optional[str] = None
    updated_at: Optional[str] = None
    completed_at: Optional[str] = None
    nodes: List[NodeStatus] = Field(default_factory=list)
    addons: List[AddonStatus] = Field(default_factory=list)
    kubeconfig_ready: bool = False

    def node(self, name: str) -> Optional[NodeStatus]:
        return next((n for n in self.nodes if n.name == name), None)

    def addon(self, name: str) -> Optional[AddonStatus]:
        return next((a for a in self.addons if a.name == name), None)
