import time
from fastapi import FastAPI, Depends, HTTPException, Header
from fastapi.responses import PlainTextResponse
from typing import Optional
from .config import settings
from .models import PollOutcome

app = FastAPI(title="Signage Ad Sync")
service = None  # SignageService, set by main at startup

def get_token(x_token: Optional[str] = Header(None, alias="X-Token")):
    if settings.HTTP_SERVER_TOKEN and x_token != settings.HTTP_SERVER_TOKEN:
        raise HTTPException(status_code=401, detail="Invalid token")

@app.get("/healthz")
def healthz():
    if not service:
        return {"status": "starting"}

    last_ok = service.poller.last_success_at
    # Lenient threshold: a few missed polls before reporting lag
    if time.time() - last_ok > (settings.POLL_INTERVAL_SECONDS * 3 + 60):
        return {"status": "lagging", "last_poll_age": time.time() - last_ok if last_ok else None}

    return {"status": "ok"}

@app.get("/status", dependencies=[Depends(get_token)])
def status():
    if not service:
        return {"status": "not_ready"}

    poller = service.poller
    snapshot = service.catalog.snapshot()
    marker = poller.marker
    progress = service.events.latest.get("ProgressEvent")
    device = service.get_device()
    return {
        "state": poller.state.value,
        "last_outcome": poller.last_outcome.value if poller.last_outcome else None,
        "last_poll": poller.last_poll_at,
        "marker": marker.model_dump() if marker else None,
        "playlists": len(snapshot.playlists),
        "videos": len(snapshot.videos),
        "downloaded": sum(1 for v in snapshot.videos if v.downloaded),
        "progress": progress.model_dump() if progress else None,
        "device": device.model_dump() if device else None,
        "config": {
            "poll_interval": settings.POLL_INTERVAL_SECONDS,
            "download_concurrency": settings.DOWNLOAD_CONCURRENCY,
        }
    }

@app.get("/playback")
def playback():
    if not service:
        raise HTTPException(status_code=503, detail="Service not ready")

    playlist, paths = service.scheduler.current()
    return {
        "playlist_id": playlist.id if playlist else None,
        "paths": paths or [],
    }

@app.post("/sync", dependencies=[Depends(get_token)])
async def sync():
    if not service:
        raise HTTPException(status_code=503, detail="Service not ready")

    outcome = await service.sync_now()
    if outcome == PollOutcome.BUSY:
        raise HTTPException(status_code=409, detail="Sync already in progress")
    return {"outcome": outcome.value}

@app.get("/metrics", response_class=PlainTextResponse)
def metrics():
    # Simple prometheus-style text format
    if not service:
        return ""

    snapshot = service.catalog.snapshot()
    poller = service.poller
    lines = [
        f'adsync_playlists {len(snapshot.playlists)}',
        f'adsync_videos {len(snapshot.videos)}',
        f'adsync_videos_downloaded {sum(1 for v in snapshot.videos if v.downloaded)}',
        f'adsync_syncs_total {poller.sync_count}',
        f'adsync_last_poll_timestamp {poller.last_poll_at}',
        f'adsync_last_success_timestamp {poller.last_success_at}',
    ]
    return "\n".join(lines)
