"""Load and validate cluster.yaml.

Validation runs a JSON schema for structure, then semantic rules, and
collects every problem before failing so the operator can fix them in one pass.
"""
import ipaddress
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Union

import yaml
from jsonschema import Draft7Validator
from pydantic import ValidationError

from hcibootstrap.errors import ConfigValidationError
from hcibootstrap.models import ClusterSpec, canonical_addon_name

logger = logging.getLogger("hcibootstrap.validate")

MAC_RE = re.compile(r"([0-9a-fA-F]{2}:){5}[0-9a-fA-F]{2}")
SSH_KEY_PREFIXES = ("ssh-rsa ", "ssh-ed25519 ", "ecdsa-sha2-", "sk-ssh-")

_NODE = {
    "type": "object",
    "properties": {
        "name": {"type": "string"},
        "ip": {"type": "string"},
        "mac": {"type": "string"},
    },
}

CLUSTER_SCHEMA: Dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "required": ["cluster", "bootstrap", "controllers"],
    "properties": {
        "cluster": {
            "type": "object",
            "properties": {
                "name": {"type": "string"},
                "control_plane_vip": {"type": "string"},
                "k8s_version": {"type": "string"},
                "flatcar_version": {"type": "string"},
                "pod_subnet": {"type": "string"},
                "service_subnet": {"type": "string"},
                "ssh_authorized_keys": {"type": "array", "items": {"type": "string"}},
                "ssh_authorized_key": {"type": ["string", "null"]},
                "kubeadm_token": {"type": ["string", "null"], "pattern": "^([a-z0-9]{6}\\.[a-z0-9]{16})?$"},
            },
        },
        "bootstrap": {
            "type": "object",
            "properties": {
                "ip": {"type": "string"},
                "mac": {"type": "string"},
                "iface": {"type": "string"},
            },
        },
        "controllers": {"type": ["array", "null"], "items": _NODE},
        "workers": {"type": ["array", "null"], "items": _NODE},
        "addons": {
            "type": ["object", "null"],
            "additionalProperties": {
                "type": ["object", "null"],
                "properties": {
                    "enabled": {"type": "boolean"},
                    "version": {"type": "string"},
                },
            },
        },
    },
}


@dataclass
class ValidationReport:
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors

    def fail(self, msg: str) -> None:
        self.errors.append(msg)

    def warn(self, msg: str) -> None:
        self.warnings.append(msg)


def _path(error) -> str:
    return ".".join(str(p) for p in error.absolute_path) or "<root>"


def _present(value: Any) -> bool:
    return value is not None and value != ""


def _check_ip(report: ValidationReport, label: str, value: Any) -> None:
    try:
        ipaddress.ip_address(str(value))
    except ValueError:
        report.fail(f"{label} is not a valid IP address: {value}")


def _check_nodes(report: ValidationReport, section: str, nodes: List[Any], seen: Dict[str, str]) -> None:
    for i, node in enumerate(nodes):
        if not isinstance(node, dict):
            continue
        name = node.get("name")
        if not _present(name):
            report.fail(f"{section}[{i}].name is required")
        if not _present(node.get("ip")):
            report.fail(f"{section}[{i}].ip is required (node: {name})")
        else:
            _check_ip(report, f"{section}[{i}].ip", node["ip"])
        mac = node.get("mac")
        if not _present(mac):
            report.fail(f"{section}[{i}].mac is required (node: {name})")
        elif not MAC_RE.fullmatch(str(mac)):
            report.fail(f"{section}[{i}].mac is not a valid MAC address: {mac}")
        if _present(name):
            if name in seen:
                report.fail(f"Duplicate node name {name} in {section}[{i}] (already used in {seen[name]})")
            else:
                seen[name] = f"{section}[{i}]"


def _addons(data: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
    raw = data.get("addons") or {}
    if not isinstance(raw, dict):
        return {}
    return {canonical_addon_name(k): (v if isinstance(v, dict) else {}) for k, v in raw.items()}


def validate_data(data: Any) -> ValidationReport:
    """Run schema and semantic checks on parsed cluster.yaml data."""
    report = ValidationReport()
    if not isinstance(data, dict):
        report.fail("cluster config must be a mapping")
        return report

    for error in sorted(Draft7Validator(CLUSTER_SCHEMA).iter_errors(data), key=lambda e: list(e.absolute_path)):
        report.fail(f"{_path(error)}: {error.message}")

    cluster = data.get("cluster") if isinstance(data.get("cluster"), dict) else {}
    bootstrap = data.get("bootstrap") if isinstance(data.get("bootstrap"), dict) else {}

    # Required fields
    if not _present(cluster.get("name")):
        report.fail("Missing required field: cluster.name")
    if not _present(cluster.get("control_plane_vip")):
        report.fail("Missing required field: cluster.control_plane_vip")
    else:
        _check_ip(report, "cluster.control_plane_vip", cluster["control_plane_vip"])

    keys = cluster.get("ssh_authorized_keys")
    if not isinstance(keys, list) or not keys:
        keys = [cluster["ssh_authorized_key"]] if _present(cluster.get("ssh_authorized_key")) else []
    if not keys:
        report.fail("Missing required field: cluster.ssh_authorized_keys (or cluster.ssh_authorized_key)")
    for key in keys:
        if isinstance(key, str) and key and not key.startswith(SSH_KEY_PREFIXES):
            report.fail(f"Not a valid SSH public key: {key[:40]}...")

    if not _present(bootstrap.get("ip")):
        report.fail("Missing required field: bootstrap.ip")
    else:
        _check_ip(report, "bootstrap.ip", bootstrap["ip"])
    bootstrap_mac = bootstrap.get("mac")
    if not _present(bootstrap_mac):
        report.fail("Missing required field: bootstrap.mac")
    elif not MAC_RE.fullmatch(str(bootstrap_mac)):
        report.fail(f"bootstrap.mac is not a valid MAC address: {bootstrap_mac}")

    # Nodes
    controllers = data.get("controllers") if isinstance(data.get("controllers"), list) else []
    workers = data.get("workers") if isinstance(data.get("workers"), list) else []
    seen: Dict[str, str] = {}
    if not controllers:
        report.fail("At least one controller node is required under 'controllers'")
    _check_nodes(report, "controllers", controllers, seen)
    _check_nodes(report, "workers", workers, seen)
    if len(controllers) == 2:
        report.warn("2 controllers has no quorum advantage over 1. Use 1 or 3.")

    # Add-on dependencies
    addons = _addons(data)
    nebraska_enabled = addons.get("nebraska", {}).get("enabled") is True
    metallb = addons.get("metallb", {})
    metallb_enabled = metallb.get("enabled") is True
    if nebraska_enabled and not metallb_enabled:
        report.fail("addons.nebraska requires addons.metallb.enabled: true (Nebraska needs a LoadBalancer IP)")
    if metallb_enabled and not _present(metallb.get("ip_pool")):
        report.fail("addons.metallb.ip_pool is required when MetalLB is enabled")

    return report


def validate_spec(spec: ClusterSpec) -> ValidationReport:
    """Re-run the checks on an already parsed ClusterSpec."""
    return validate_data(spec.model_dump(mode="json"))


def parse_cluster_yaml(text: str) -> Any:
    """Parse cluster.yaml text; syntax errors become ConfigValidationError."""
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigValidationError([f"Cannot parse YAML: {e}"]) from e


def build_spec(data: Any) -> ClusterSpec:
    """Validate parsed data and build a ClusterSpec.

    Raises:
        ConfigValidationError: With every error found
    """
    report = validate_data(data)
    if not report.valid:
        raise ConfigValidationError(report.errors, report.warnings)
    try:
        spec = ClusterSpec.model_validate(data)
    except ValidationError as e:
        raise ConfigValidationError(
            [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()],
            report.warnings,
        ) from e
    for warning in report.warnings:
        logger.warning(f"⚠️  {warning}")
    return spec


def load_cluster_spec(path: Union[str, Path]) -> ClusterSpec:
    """Read, validate and parse a cluster.yaml file."""
    path = Path(path)
    try:
        text = path.read_text()
    except FileNotFoundError as e:
        raise ConfigValidationError([f"File not found: {path}"]) from e
    except OSError as e:
        raise ConfigValidationError([f"Cannot read {path}: {e}"]) from e
    spec = build_spec(parse_cluster_yaml(text))
    logger.info(
        f"✅ Config valid: cluster={spec.cluster.name} vip={spec.cluster.control_plane_vip} "
        f"controllers={len(spec.controllers)} workers={len(spec.workers)}"
    )
    return spec
