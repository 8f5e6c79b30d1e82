import json
import logging
import subprocess
from pathlib import Path

from fastapi import APIRouter, HTTPException, Request

from hcibootstrap.errors import ApplyError
from hcibootstrap.modules.kube import Kubectl

router = APIRouter()
logger = logging.getLogger("hcibootstrap.api.cmp")

MANIFEST_SUFFIXES = (".yaml", ".yml")


def list_manifests(directory) -> list:
    path = Path(directory)
    if not path.is_dir():
        return []
    return sorted(p.name for p in path.iterdir() if p.suffix in MANIFEST_SUFFIXES)


def _kubectl(request: Request) -> Kubectl:
    return Kubectl(request.app.state.settings.paths.kubeconfig, apply_timeout=60)


@router.get("/api/cmp/manifests")
def get_manifests(request: Request):
    return {"files": list_manifests(request.app.state.settings.paths.cmp_dir)}


@router.post("/api/cmp/deploy")
def deploy(request: Request):
    """Apply every manifest in the CMP directory against the new cluster."""
    paths = request.app.state.settings.paths
    if not paths.kubeconfig.is_file():
        raise HTTPException(status_code=400, detail="Cluster not ready: kubeconfig not found")
    if not list_manifests(paths.cmp_dir):
        raise HTTPException(status_code=400, detail=f"No manifests found in {paths.cmp_dir}")
    try:
        output = _kubectl(request).apply_file(f"{paths.cmp_dir.rstrip('/')}/")
    except ApplyError as e:
        raise HTTPException(status_code=500, detail=str(e))
    logger.info(f"✅ Deployed manifests from {paths.cmp_dir}")
    return {"ok": True, "output": output}


@router.get("/api/cmp/status")
def get_cmp_status(request: Request):
    kubeconfig = request.app.state.settings.paths.kubeconfig
    if not kubeconfig.is_file():
        return {"ready": False, "message": "Cluster not ready"}
    try:
        data = _kubectl(request).get_json("all", "-A")
    except (subprocess.SubprocessError, OSError, json.JSONDecodeError) as e:
        return {"ready": False, "message": str(e)}
    return {"ready": True, "item_count": len(data.get("items", []))}
