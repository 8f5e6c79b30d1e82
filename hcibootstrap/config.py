"""Runtime configuration for hci-bootstrap.

Settings are resolved with the following precedence:
1. Explicitly passed parameters
2. Environment variables (a ``.env`` file is loaded first if present)
3. YAML settings file
4. Default values

The resulting :class:`BootstrapConfig` is passed explicitly to the
orchestrator and its components; nothing reads the environment afterwards.
"""
import os
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger("hcibootstrap.config")

DEFAULT_CONFIG_PATHS = [
    Path("/etc/hci-bootstrap/config.yaml"),
    Path("~/.config/hci-bootstrap/config.yaml").expanduser(),
    Path("hci-bootstrap.yaml").absolute(),
]


class PathsConfig(BaseModel):
    """Filesystem locations used during a run."""
    output_dir: str = Field(default="/output", description="Status, kubeconfig and log directory")
    cluster_config: str = Field(default="/config/cluster.yaml", description="Operator cluster.yaml")
    templates_dir: str = Field(default="/usr/local/share/templates", description="Matchbox/ignition templates")
    addons_dir: str = Field(default="/usr/local/share/addons", description="Add-on manifests and templates")
    matchbox_dir: str = Field(default="/var/lib/matchbox", description="Matchbox data path")
    assets_dir: str = Field(default="/var/lib/matchbox/assets", description="Matchbox assets path")
    cmp_dir: str = Field(default="/cmp", description="Manifests applied by the portal after bootstrap")

    @property
    def status_file(self) -> Path:
        return Path(self.output_dir) / "status.json"

    @property
    def kubeconfig(self) -> Path:
        return Path(self.output_dir) / "kubeconfig"

    @property
    def log_file(self) -> Path:
        return Path(self.output_dir) / "bootstrap.log"

    @property
    def pull_secret(self) -> Path:
        """Registry credentials, kept beside cluster.yaml."""
        return Path(self.cluster_config).parent / "pull-secret.json"


class WaitConfig(BaseModel):
    """Polling bounds for the waiting phase."""
    timeout: float = Field(default=1800, description="Overall deadline in seconds")
    poll_interval: float = Field(default=15, description="Seconds between poll attempts")
    request_timeout: float = Field(default=5, description="Health check HTTP timeout")
    credential_attempts: int = Field(default=10, description="Attempts to fetch admin.conf")

    @field_validator('timeout', 'poll_interval')
    @classmethod
    def positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be positive")
        return v


class AddonTimeouts(BaseModel):
    """Per-step bounds used by the add-on installer."""
    rollout: int = 300
    webhook: int = 120
    crd: int = 60
    settle: float = 15
    probe: float = 900
    probe_interval: float = 20
    apply: int = 300


class SSHConfig(BaseModel):
    """SSH connection used to fetch the cluster credential."""
    user: str = Field(default="core", description="Remote user on the controllers")
    key_path: Optional[str] = Field(default=None, description="Private key (agent/default keys if unset)")
    port: int = 22
    connect_timeout: int = 10

    @field_validator('key_path')
    @classmethod
    def expand_key_path(cls, v: Optional[str]) -> Optional[str]:
        return os.path.expanduser(v) if v else v


class ServicesConfig(BaseModel):
    """PXE child processes."""
    matchbox_bin: str = "matchbox"
    dnsmasq_bin: str = "dnsmasq"
    matchbox_address: str = "0.0.0.0:8080"
    log_level: str = "info"
    start_grace: float = Field(default=2.0, description="Seconds a service must survive after start")
    stop_timeout: float = 10.0


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = "INFO"
    file: bool = Field(default=True, description="Also log to <output>/bootstrap.log")
    max_size_mb: int = 10
    backup_count: int = 3


class PortalConfig(BaseModel):
    """Dashboard API settings."""
    host: str = "0.0.0.0"
    port: int = 3000
    api_key: Optional[str] = None
    log_lines: int = 300


class BootstrapConfig(BaseModel):
    """Top-level hci-bootstrap settings."""
    paths: PathsConfig = Field(default_factory=PathsConfig)
    wait: WaitConfig = Field(default_factory=WaitConfig)
    addons: AddonTimeouts = Field(default_factory=AddonTimeouts)
    ssh: SSHConfig = Field(default_factory=SSHConfig)
    services: ServicesConfig = Field(default_factory=ServicesConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    portal: PortalConfig = Field(default_factory=PortalConfig)

    @classmethod
    def load(
        cls,
        config_path: Optional[Union[str, Path]] = None,
        overrides: Optional[Dict[str, Any]] = None,
        environ: Optional[Dict[str, str]] = None,
    ) -> 'BootstrapConfig':
        """Load settings from file, environment and explicit overrides.

        Args:
            config_path: YAML settings file; default locations are searched if None
            overrides: Nested dict of explicit values, highest precedence
            environ: Environment mapping, defaults to ``os.environ`` after loading ``.env``

        Returns:
            The resolved configuration
        """
        config_data: Dict[str, Any] = {}

        if config_path:
            path = Path(config_path).expanduser().absolute()
            if path.exists():
                config_data = cls._load_config_file(path)
            else:
                logger.warning(f"Settings file {path} not found, using defaults")
        else:
            for path in DEFAULT_CONFIG_PATHS:
                path = path.expanduser().absolute()
                if path.exists():
                    config_data = cls._load_config_file(path)
                    break

        if environ is None:
            load_dotenv()
            environ = dict(os.environ)
        _merge(config_data, _env_overrides(environ))
        _merge(config_data, overrides or {})
        return cls(**config_data)

    @classmethod
    def _load_config_file(cls, path: Path) -> Dict[str, Any]:
        """Load configuration from a YAML file."""
        try:
            with open(path, 'r') as f:
                return yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.warning(f"Failed to load settings from {path}: {e}")
            return {}


# Environment variable -> (section, key)
ENV_VARS = {
    "OUTPUT_DIR": ("paths", "output_dir"),
    "CLUSTER_CONFIG": ("paths", "cluster_config"),
    "HCI_TEMPLATES_DIR": ("paths", "templates_dir"),
    "HCI_ADDONS_DIR": ("paths", "addons_dir"),
    "HCI_MATCHBOX_DIR": ("paths", "matchbox_dir"),
    "HCI_ASSETS_DIR": ("paths", "assets_dir"),
    "HCI_CMP_DIR": ("paths", "cmp_dir"),
    "HCI_WAIT_TIMEOUT": ("wait", "timeout"),
    "HCI_POLL_INTERVAL": ("wait", "poll_interval"),
    "HCI_CREDENTIAL_ATTEMPTS": ("wait", "credential_attempts"),
    "HCI_ROLLOUT_TIMEOUT": ("addons", "rollout"),
    "HCI_PROBE_TIMEOUT": ("addons", "probe"),
    "HCI_SSH_USER": ("ssh", "user"),
    "HCI_SSH_KEY_PATH": ("ssh", "key_path"),
    "HCI_SSH_PORT": ("ssh", "port"),
    "HCI_LOG_LEVEL": ("logging", "level"),
    "HCI_API_KEY": ("portal", "api_key"),
    "HCI_PORTAL_PORT": ("portal", "port"),
}


def _env_overrides(environ: Dict[str, str]) -> Dict[str, Any]:
    data: Dict[str, Dict[str, Any]] = {}
    for var, (section, key) in ENV_VARS.items():
        value = environ.get(var)
        if value:
            data.setdefault(section, {})[key] = value
    return data


def _merge(base: Dict[str, Any], extra: Dict[str, Any]) -> None:
    for key, value in extra.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _merge(base[key], value)
        elif value is not None:
            base[key] = value


_config: Optional[BootstrapConfig] = None


def get_config(config_path: Optional[Union[str, Path]] = None) -> BootstrapConfig:
    """Get or create the global configuration instance."""
    global _config
    if _config is None:
        _config = BootstrapConfig.load(config_path)
    return _config


def set_config(config: Optional[BootstrapConfig]) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config
