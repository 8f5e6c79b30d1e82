import json
from pathlib import Path

from fastapi import APIRouter, HTTPException, Request

from hcibootstrap.modules.health import write_private_file

router = APIRouter()


def _pull_secret(request: Request) -> Path:
    return request.app.state.settings.paths.pull_secret


def check_auths(body) -> dict:
    """Accept ``{"auths": {...}}`` or a flat registry map and return the auths.

    Raises:
        ValueError: If there is no registry or an entry has no usable credentials
    """
    if not isinstance(body, dict):
        raise ValueError("Request body must be a JSON object")
    auths = body.get("auths", body)
    if not isinstance(auths, dict) or not auths:
        raise ValueError("Pull secret must contain at least one registry entry")
    for registry, entry in auths.items():
        entry = entry if isinstance(entry, dict) else {}
        if not entry.get("auth") and not (entry.get("username") and entry.get("password")):
            raise ValueError(
                f'Entry for "{registry}" must have "auth" (base64 user:token) or "username"+"password"'
            )
    return auths


@router.get("/api/registry/pullsecret")
def get_pull_secret(request: Request):
    try:
        data = json.loads(_pull_secret(request).read_text())
        auths = data.get("auths", data)
        return {"configured": True, "registries": list(auths)}
    except (OSError, ValueError, AttributeError):
        return {"configured": False, "registries": []}


@router.post("/api/registry/pullsecret")
async def save_pull_secret(request: Request):
    try:
        body = json.loads(await request.body())
    except ValueError:
        raise HTTPException(status_code=400, detail="Request body must be JSON")
    try:
        auths = check_auths(body)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    try:
        write_private_file(_pull_secret(request), json.dumps({"auths": auths}, indent=2))
    except OSError as e:
        raise HTTPException(status_code=500, detail=f"Could not save pull secret: {e}")
    return {"ok": True, "registries": list(auths)}


@router.delete("/api/registry/pullsecret")
def delete_pull_secret(request: Request):
    try:
        _pull_secret(request).unlink()
    except FileNotFoundError:
        pass
    return {"ok": True}
