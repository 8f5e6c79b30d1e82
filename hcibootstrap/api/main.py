from typing import Optional

from fastapi import FastAPI

from hcibootstrap import __version__
from hcibootstrap.api.middleware import AuthMiddleware
from hcibootstrap.api.routes import bootstrap, cmp, config, logs, registry, status
from hcibootstrap.config import BootstrapConfig, get_config
from hcibootstrap.modules.runner import BootstrapRunner


def create_app(settings: Optional[BootstrapConfig] = None, runner: Optional[BootstrapRunner] = None) -> FastAPI:
    """Build the dashboard API bound to one output directory and cluster.yaml."""
    settings = settings or get_config()
    app = FastAPI(title="hci-bootstrap portal", version=__version__)
    app.state.settings = settings
    app.state.runner = runner or BootstrapRunner(settings)
    app.add_middleware(AuthMiddleware, token=settings.portal.api_key)

    app.include_router(status.router)
    app.include_router(logs.router)
    app.include_router(config.router)
    app.include_router(registry.router)
    app.include_router(bootstrap.router)
    app.include_router(cmp.router)
    return app
