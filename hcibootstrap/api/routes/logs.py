import re
from collections import deque

from fastapi import APIRouter, Request

router = APIRouter()

ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;]*[A-Za-z]")


def tail(path, lines: int):
    """Last ``lines`` lines of a text file, ANSI colour codes removed."""
    try:
        with open(path, 'r', errors='replace') as f:
            last = deque(f, maxlen=lines)
    except FileNotFoundError:
        return []
    return [ANSI_ESCAPE.sub("", line.rstrip("\n")) for line in last]


@router.get("/api/logs")
def get_logs(request: Request):
    settings = request.app.state.settings
    return {"lines": tail(settings.paths.log_file, settings.portal.log_lines)}
