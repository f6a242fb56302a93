"""
Result audio hosting.

Serves the files the pipeline leaves under the upload root, at the relative
paths it writes into `ToAudioUrl`:
    GET /download/{fromUser}/{toUser}/{ts}_{id}_result.amr
"""

from __future__ import annotations

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import FileResponse

from src.relay.config.settings import settings

router = APIRouter()


@router.get("/" + settings.download_prefix.strip("/") + "/{rel_path:path}")
def get_download(rel_path: str, request: Request):
    staging = request.app.state.pipeline.staging
    path = staging.resolve_download(rel_path)
    if path is None:
        raise HTTPException(status_code=400, detail="Invalid path")
    if not path.exists() or not path.is_file():
        raise HTTPException(status_code=404, detail="Not found")
    return FileResponse(path, media_type="audio/amr")
