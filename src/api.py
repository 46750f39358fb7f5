from fastapi import FastAPI, HTTPException, Query, Request, Depends, Header, BackgroundTasks
from fastapi.responses import HTMLResponse, FileResponse, PlainTextResponse
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from contextlib import asynccontextmanager
import logging
import os
import sys
import json
import subprocess
from urllib.parse import parse_qs
from typing import Optional
from pydantic import BaseModel
from datetime import datetime, timezone

import uvicorn

from config import settings, VERSION
from models import DonePublish, EventType, build_ingest_event
from stream_layout import StreamLayout, InvalidStreamKeyError, stream_key_from_path
from encoder_manager import EncoderProcessManager
from lifecycle import StreamLifecycleOrchestrator
from stream_registry import StreamRegistryQuery

# Set up logging
logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
logger = logging.getLogger(__name__)


def get_ffmpeg_version(ffmpeg_path: Optional[str] = None) -> Optional[str]:
    """Get the ffmpeg version string"""
    try:
        result = subprocess.run(
            [ffmpeg_path or settings.FFMPEG_PATH, '-version'],
            capture_output=True,
            text=True,
            timeout=5
        )
        if result.returncode == 0:
            # Extract the version from first line (e.g., "ffmpeg version 6.1.1")
            first_line = result.stdout.split('\n')[0]
            return first_line.strip()
        return None
    except (subprocess.TimeoutExpired, OSError) as e:
        logger.warning(f"Failed to get ffmpeg version: {e}")
        return None


def get_content_type(filename: str) -> str:
    """Determine content type of an HLS file based on its extension"""
    name = filename.lower()
    if name.endswith('.m3u8'):
        return 'application/vnd.apple.mpegurl'
    elif name.endswith('.ts'):
        return 'video/MP2T'
    return 'application/octet-stream'


def get_root_path(request: Request) -> str:
    """Mount prefix of the app behind a reverse proxy, without trailing slash"""
    return request.scope.get("root_path", "").rstrip("/")


# Services. The orchestrator owns the session registry.
layout = StreamLayout()
encoder_manager = EncoderProcessManager(layout)
orchestrator = StreamLifecycleOrchestrator(layout, encoder_manager)
stream_registry = StreamRegistryQuery(layout)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events"""
    # Startup
    logger.info("⚡️ live-relay starting up...")
    layout.prepare_media_root(reset=settings.RESET_MEDIA_ON_STARTUP)

    version = get_ffmpeg_version()
    if version:
        logger.info(f"✅ FFmpeg verified: {version}")
    else:
        logger.error(
            f"❌ FFmpeg not usable at '{settings.FFMPEG_PATH}', streams will not be transcoded")

    logger.info(
        f"👉 RTMP ingest: rtmp://{settings.RTMP_HOST}:{settings.RTMP_PORT}/{settings.INGEST_APP}")

    yield

    # Shutdown
    logger.info("live-relay shutting down...")
    await orchestrator.shutdown()


app = FastAPI(
    title="live-relay",
    version=VERSION,
    description="RTMP ingest to HLS relay with stream listing and embeddable player",
    lifespan=lifespan,
    root_path=settings.ROOT_PATH,
    docs_url=settings.DOCS_URL,
    openapi_url=settings.OPENAPI_URL,
)

# Configure CORS to allow all origins so players can be embedded anywhere
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-API-Token"],
)

HLS_HEADERS = {
    "Cache-Control": "no-cache",
    "Access-Control-Allow-Origin": "*"
}


async def verify_token(
    x_api_token: Optional[str] = Header(None, alias="X-API-Token"),
    api_token: Optional[str] = Query(
        None, description="API token (alternative to X-API-Token header)")
):
    """
    Verify API token if API_TOKEN is configured.

    Guards the control endpoints (ingest hooks, session listing). The ingest
    server can pass the token as a query parameter in its callback URL.
    If API_TOKEN is not set in environment, authentication is disabled.
    """
    if not settings.API_TOKEN:
        return True

    provided_token = x_api_token or api_token

    if not provided_token:
        raise HTTPException(
            status_code=401,
            detail="API token required. Provide token via X-API-Token header or api_token query parameter.",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if provided_token != settings.API_TOKEN:
        raise HTTPException(
            status_code=403,
            detail="Invalid API token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return True


# ============================================================================
# Ingest lifecycle hooks
# ============================================================================


class IngestEventRequest(BaseModel):
    """Lifecycle event reported by the ingest server."""
    event: str
    id: str
    stream_path: str = ""


async def read_form(request: Request) -> dict:
    """Decode an application/x-www-form-urlencoded callback body."""
    body = (await request.body()).decode("utf-8", errors="ignore")
    return {k: v[0] for k, v in parse_qs(body).items()}


@app.post("/api/ingest/events", dependencies=[Depends(verify_token)])
async def ingest_event(request: IngestEventRequest) -> dict:
    """
    Apply one ingest lifecycle event (prePublish, postPublish, donePublish).

    prePublish and postPublish require a valid "/live/<key>" stream path;
    donePublish only needs the connection id.
    """
    try:
        if request.event == EventType.DONE_PUBLISH.value:
            event = DonePublish(request.id)
        else:
            stream_key = stream_key_from_path(request.stream_path)
            event = build_ingest_event(request.event, request.id, stream_key)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    try:
        session = await orchestrator.dispatch(event)
    except Exception as e:
        logger.error(f"Error handling {request.event} for {request.id}: {e}")
        raise HTTPException(status_code=500, detail=str(e))

    return {
        "event": request.event,
        "id": request.id,
        "state": orchestrator.get_state(request.id).value,
        "encoder_pid": session.encoder.pid if session else None
    }


@app.post("/api/ingest/on_publish", dependencies=[Depends(verify_token)])
async def on_publish(request: Request, background_tasks: BackgroundTasks):
    """
    nginx-rtmp on_publish callback.

    Resets the stream directory before answering, then starts FFmpeg once the
    response has been sent and the ingest server has accepted the publisher.
    A 400 makes the ingest server refuse the publish.
    """
    form = await read_form(request)
    connection_id = form.get("clientid")
    if not connection_id:
        raise HTTPException(status_code=400, detail="Missing clientid")

    try:
        stream_key = stream_key_from_path(
            f"/{form.get('app', '')}/{form.get('name', '')}")
        await orchestrator.on_pre_publish(connection_id, stream_key)
    except InvalidStreamKeyError as e:
        logger.warning(f"Rejecting publish from {form.get('addr')}: {e}")
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Error handling on_publish for {connection_id}: {e}")
        raise HTTPException(status_code=500, detail=str(e))

    background_tasks.add_task(
        orchestrator.on_post_publish, connection_id, stream_key)
    return PlainTextResponse("OK")


@app.post("/api/ingest/on_publish_done", dependencies=[Depends(verify_token)])
async def on_publish_done(request: Request):
    """nginx-rtmp on_publish_done callback."""
    form = await read_form(request)
    connection_id = form.get("clientid")
    if not connection_id:
        raise HTTPException(status_code=400, detail="Missing clientid")

    try:
        await orchestrator.on_done_publish(connection_id)
    except Exception as e:
        logger.error(f"Error handling on_publish_done for {connection_id}: {e}")
        raise HTTPException(status_code=500, detail=str(e))
    return PlainTextResponse("OK")


@app.get("/api/sessions", dependencies=[Depends(verify_token)])
async def list_sessions() -> dict:
    """List sessions with a running encoder."""
    sessions = orchestrator.registry.all()
    return {
        "sessions": [session.to_dict() for session in sessions],
        "count": len(sessions)
    }


# ============================================================================
# Stream listing and playback
# ============================================================================


@app.get("/api/streams")
async def list_streams(request: Request) -> list:
    """Streams with a manifest on disk, with their delivery URLs."""
    base_url = str(request.base_url)
    return [
        description.to_dict()
        for description in stream_registry.list_active_streams(
            base_url, request.url.hostname, root_path=get_root_path(request))
    ]


@app.get("/api/streams/{stream_key}")
async def get_stream(stream_key: str, request: Request) -> dict:
    """Delivery URLs and manifest details of one stream."""
    try:
        if not stream_registry.is_deliverable(stream_key):
            raise HTTPException(status_code=404, detail="Stream not found")
        description = stream_registry.describe_stream(
            stream_key, str(request.base_url), request.url.hostname,
            root_path=get_root_path(request))
    except InvalidStreamKeyError:
        raise HTTPException(status_code=404, detail="Stream not found")

    return {
        **description.to_dict(),
        "manifest": stream_registry.manifest_summary(stream_key)
    }


EMBED_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <meta name="viewport" content="width=device-width, initial-scale=1">
  <title>{title} - Live Stream</title>
  <script src="{player_script}"></script>
  <style>
    body, html {{ margin: 0; padding: 0; background: #000; }}
    #videoPlayer {{ width: 100%; height: 100vh; }}
  </style>
</head>
<body>
  <video id="videoPlayer" controls autoplay></video>
  <script>
    const video = document.getElementById('videoPlayer');
    const streamUrl = {stream_url};

    if (video.canPlayType('application/vnd.apple.mpegurl')) {{
      video.src = streamUrl;
    }} else if (Hls.isSupported()) {{
      const hls = new Hls();
      hls.loadSource(streamUrl);
      hls.attachMedia(video);
    }}
  </script>
</body>
</html>
"""


@app.get("/embed/{stream_key}", response_class=HTMLResponse)
async def embed_stream(stream_key: str, request: Request) -> HTMLResponse:
    """Player page bound to the stream's manifest. 404 if there is no manifest."""
    if not stream_registry.is_deliverable(stream_key):
        raise HTTPException(status_code=404, detail="Stream not found")

    root_path = get_root_path(request)
    return HTMLResponse(EMBED_TEMPLATE.format(
        title=stream_key,
        player_script=settings.PLAYER_SCRIPT_URL,
        stream_url=json.dumps(f"{root_path}/live/{stream_key}/index.m3u8"),
    ))


@app.get("/live/{stream_key}/{filename}")
async def get_live_file(stream_key: str, filename: str) -> FileResponse:
    """
    Serve the manifest or a segment of a live stream.

    Both are served with no-cache since the manifest keeps growing while
    FFmpeg runs.
    """
    try:
        path = layout.segment_path(stream_key, filename)
    except InvalidStreamKeyError:
        path = None
    if path is None or not os.path.isfile(path):
        raise HTTPException(status_code=404, detail="File not found")

    return FileResponse(
        path,
        media_type=get_content_type(filename),
        headers=HLS_HEADERS
    )


@app.get("/api/health")
async def health_check() -> dict:
    """Liveness payload with the FFmpeg binary in use"""
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": VERSION,
        "ffmpeg": settings.FFMPEG_PATH,
        "platform": sys.platform,
        "active_sessions": len(orchestrator.registry)
    }


# Optional web interface. Mounted last so it never shadows the routes above.
if os.path.isdir(settings.PUBLIC_ROOT):
    app.mount("/", StaticFiles(directory=settings.PUBLIC_ROOT, html=True), name="public")
    logger.info(f"🌐 Public root: {os.path.abspath(settings.PUBLIC_ROOT)}")


def main():
    uvicorn.run(
        app,
        host=settings.HOST,
        port=settings.PORT,
        log_level=settings.LOG_LEVEL.lower()
    )


if __name__ == "__main__":
    main()
