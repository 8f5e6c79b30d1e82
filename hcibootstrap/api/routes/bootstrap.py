from pathlib import Path
from typing import Optional

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel

from hcibootstrap.errors import BootstrapError, ConfigValidationError
from hcibootstrap.modules.validate import parse_cluster_yaml

router = APIRouter()


class StartRequest(BaseModel):
    yaml: Optional[str] = None


@router.post("/api/bootstrap/start")
def start_bootstrap(request: Request, req: Optional[StartRequest] = None):
    """Start a bootstrap run, saving an inline cluster.yaml first if one is sent."""
    settings = request.app.state.settings
    runner = request.app.state.runner
    if runner.running:
        raise HTTPException(status_code=409, detail="A bootstrap run is already in progress")

    path = Path(settings.paths.cluster_config)
    if req is not None and req.yaml:
        try:
            parse_cluster_yaml(req.yaml)
        except ConfigValidationError as e:
            raise HTTPException(status_code=400, detail=e.errors[0])
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(req.yaml)
    if not path.is_file():
        raise HTTPException(
            status_code=400,
            detail="No cluster.yaml found. Save your configuration first.",
        )

    try:
        pid = runner.start()
    except BootstrapError as e:
        raise HTTPException(status_code=500, detail=str(e))
    except RuntimeError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"ok": True, "pid": pid}


@router.delete("/api/bootstrap")
def stop_bootstrap(request: Request):
    if not request.app.state.runner.stop():
        return {"ok": True, "message": "Nothing running"}
    return {"ok": True}
