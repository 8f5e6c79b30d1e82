from pathlib import Path

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import PlainTextResponse

from hcibootstrap.errors import ConfigValidationError
from hcibootstrap.modules.validate import parse_cluster_yaml, validate_data

router = APIRouter()


def _cluster_config(request: Request) -> Path:
    return Path(request.app.state.settings.paths.cluster_config)


async def _yaml_body(request: Request) -> str:
    return (await request.body()).decode("utf-8", errors="replace")


@router.get("/api/config", response_class=PlainTextResponse)
def get_config(request: Request):
    path = _cluster_config(request)
    if not path.is_file():
        raise HTTPException(status_code=404, detail=f"{path.name} not found")
    return path.read_text()


@router.post("/api/config")
async def save_config(request: Request):
    """Save cluster.yaml as sent by the config wizard, after a YAML syntax check."""
    text = await _yaml_body(request)
    try:
        parse_cluster_yaml(text)
    except ConfigValidationError as e:
        raise HTTPException(status_code=400, detail=e.errors[0])
    path = _cluster_config(request)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text)
    except OSError as e:
        raise HTTPException(status_code=500, detail=f"Could not save config: {e}")
    return {"saved": str(path)}


@router.post("/api/config/validate")
async def validate_config(request: Request):
    try:
        data = parse_cluster_yaml(await _yaml_body(request))
    except ConfigValidationError as e:
        return {"valid": False, "errors": e.errors, "warnings": []}
    report = validate_data(data)
    return {"valid": report.valid, "errors": report.errors, "warnings": report.warnings}
