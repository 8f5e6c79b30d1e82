import pytest
import yaml
from pydantic import ValidationError

from hcibootstrap.config import BootstrapConfig


def test_defaults():
    config = BootstrapConfig.load("/nonexistent/hci-bootstrap.yaml", environ={})
    assert config.paths.output_dir == "/output"
    assert str(config.paths.status_file) == "/output/status.json"
    assert config.wait.timeout == 1800
    assert config.wait.poll_interval == 15
    assert config.wait.credential_attempts == 10
    assert config.addons.rollout == 300
    assert config.addons.probe == 900
    assert config.ssh.user == "core"
    assert config.portal.api_key is None


def test_precedence_file_env_overrides(tmp_path):
    settings = tmp_path / "settings.yaml"
    settings.write_text(yaml.safe_dump({
        "wait": {"timeout": 900, "poll_interval": 5},
        "ssh": {"user": "admin"},
    }))
    config = BootstrapConfig.load(
        settings,
        environ={"HCI_POLL_INTERVAL": "10", "OUTPUT_DIR": "/srv/out"},
        overrides={"wait": {"poll_interval": 2}},
    )
    assert config.wait.timeout == 900
    assert config.wait.poll_interval == 2
    assert config.ssh.user == "admin"
    assert config.paths.output_dir == "/srv/out"


def test_api_key_from_environment():
    config = BootstrapConfig.load("/nonexistent.yaml", environ={"HCI_API_KEY": "k"})
    assert config.portal.api_key == "k"


def test_invalid_timeout_rejected():
    with pytest.raises(ValidationError):
        BootstrapConfig.load("/nonexistent.yaml", environ={"HCI_WAIT_TIMEOUT": "0"})


def test_unreadable_settings_file_falls_back(tmp_path):
    settings = tmp_path / "settings.yaml"
    settings.write_text("wait: [broken")
    assert BootstrapConfig.load(settings, environ={}).wait.timeout == 1800


def test_portal_paths():
    config = BootstrapConfig.load(
        "/nonexistent.yaml", environ={"CLUSTER_CONFIG": "/srv/config/cluster.yaml", "HCI_CMP_DIR": "/srv/cmp"},
    )
    assert str(config.paths.pull_secret) == "/srv/config/pull-secret.json"
    assert config.paths.cmp_dir == "/srv/cmp"
