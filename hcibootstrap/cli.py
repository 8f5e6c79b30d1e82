import logging
from pathlib import Path
from typing import Optional

import typer

from hcibootstrap.config import BootstrapConfig, get_config, set_config
from hcibootstrap.errors import BootstrapError, ConfigValidationError, Interrupted
from hcibootstrap.logging import setup_logging
from hcibootstrap.models import ClusterSpec
from hcibootstrap.modules.addons import AddonInstaller
from hcibootstrap.modules.health import HealthPoller
from hcibootstrap.modules.interrupts import ignore_interrupts, install_interrupt_handlers, restore_signal_handlers
from hcibootstrap.modules.orchestrator import Orchestrator
from hcibootstrap.modules.render import ConfigRenderer
from hcibootstrap.modules.services import PXEServices, teardown as stop_services
from hcibootstrap.modules.status import StatusStore
from hcibootstrap.modules.validate import load_cluster_spec

app = typer.Typer(help="Bootstrap a bare-metal Kubernetes cluster over PXE.")
logger = logging.getLogger("hcibootstrap.cli")

CONFIG_OPTION = typer.Option(None, "--config", "-c", help="Path to cluster.yaml")


@app.callback()
def main(
    debug: bool = typer.Option(False, "--debug", "-d", help="Enable debug logging"),
    settings: Optional[Path] = typer.Option(None, "--settings", help="hci-bootstrap settings YAML"),
):
    """hci-bootstrap - temporary PXE bootstrap node."""
    config = BootstrapConfig.load(settings)
    set_config(config)
    setup_logging(
        debug,
        level=config.logging.level,
        log_file=config.paths.log_file if config.logging.file else None,
        max_size_mb=config.logging.max_size_mb,
        backup_count=config.logging.backup_count,
    )
    if debug:
        logger.debug("Debug mode enabled")


def _load_spec(config_path: Optional[Path]) -> ClusterSpec:
    path = config_path or Path(get_config().paths.cluster_config)
    logger.info(f"Loading config: {path}")
    try:
        return load_cluster_spec(path)
    except ConfigValidationError as e:
        for msg in e.errors:
            logger.error(f"❌ {msg}")
        logger.error(f"{len(e.errors)} error(s) found. Fix cluster.yaml before continuing")
        raise typer.Exit(code=1)


@app.command()
def validate(config_path: Optional[Path] = CONFIG_OPTION):
    """Validate cluster.yaml."""
    _load_spec(config_path)
    typer.echo("✅ Config is valid")


@app.command()
def init(config_path: Optional[Path] = CONFIG_OPTION):
    """Bootstrap a new cluster (full flow)."""
    spec = _load_spec(config_path)
    code = Orchestrator(spec, get_config()).run()
    raise typer.Exit(code=code)


@app.command()
def generate(config_path: Optional[Path] = CONFIG_OPTION):
    """Generate Ignition and Matchbox configs only."""
    spec = _load_spec(config_path)
    config = get_config()
    try:
        ConfigRenderer(spec, config).render_all()
    except BootstrapError as e:
        logger.error(f"❌ {e}")
        raise typer.Exit(code=1)
    typer.echo(f"✅ Configs generated in {config.paths.matchbox_dir}")


@app.command()
def serve(config_path: Optional[Path] = CONFIG_OPTION):
    """Start matchbox and dnsmasq (configs must already exist)."""
    spec = _load_spec(config_path)
    services = PXEServices(get_config())
    previous = install_interrupt_handlers()
    try:
        try:
            services.start()
            logger.info(f"Matchbox: http://{spec.bootstrap.ip}:8080")
            services.wait()
        finally:
            ignore_interrupts(previous)
    except (Interrupted, KeyboardInterrupt):
        logger.info("Shutting down...")
    except BootstrapError as e:
        logger.error(f"❌ {e}")
        raise typer.Exit(code=1)
    finally:
        try:
            services.stop()
        finally:
            restore_signal_handlers(previous)


@app.command()
def wait(config_path: Optional[Path] = CONFIG_OPTION):
    """Wait for the cluster to become ready and fetch the kubeconfig."""
    spec = _load_spec(config_path)
    config = get_config()
    status = StatusStore(config.paths.status_file, config.paths.kubeconfig)
    poller = HealthPoller(spec, config, status)
    try:
        poller.start()
        poller.wait_for_control_plane()
        poller.fetch_credential()
        AddonInstaller(spec, config, status).install_network_plugin()
        poller.wait_for_nodes_ready(spec.expected_node_count)
    except BootstrapError as e:
        logger.error(f"❌ {e}")
        raise typer.Exit(code=1)
    typer.echo(f"✅ All {spec.expected_node_count} node(s) are Ready")


@app.command()
def addons(config_path: Optional[Path] = CONFIG_OPTION):
    """Install platform add-ons (requires a running cluster and kubeconfig)."""
    spec = _load_spec(config_path)
    config = get_config()
    status = StatusStore(config.paths.status_file, config.paths.kubeconfig)
    try:
        AddonInstaller(spec, config, status).run()
    except BootstrapError as e:
        logger.error(f"❌ {e}")
        raise typer.Exit(code=1)


@app.command()
def teardown():
    """Stop all bootstrap services."""
    stop_services()


@app.command()
def portal(
    host: Optional[str] = typer.Option(None, help="Bind address"),
    port: Optional[int] = typer.Option(None, help="Bind port"),
):
    """Serve the dashboard API."""
    import uvicorn
    from hcibootstrap.api.main import create_app

    config = get_config()
    uvicorn.run(create_app(config), host=host or config.portal.host, port=port or config.portal.port)


if __name__ == "__main__":
    app()
