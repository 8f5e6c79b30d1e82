from fastapi import APIRouter, Request

from hcibootstrap.modules.status import read_status

router = APIRouter()


@router.get("/api/status")
def get_status(request: Request):
    """Current status document plus whether a run started from the portal is alive."""
    doc = read_status(request.app.state.settings.paths.status_file)
    return {**doc.model_dump(mode="json"), "running": request.app.state.runner.running}
