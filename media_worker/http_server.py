import logging
from dataclasses import asdict
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from .errors import MediaWorkerError
from .service import MediaService

logger = logging.getLogger("media_worker")


class LimitUpdate(BaseModel):
    max_concurrent: int


class ProbeRequest(BaseModel):
    path: str


class SessionRequest(BaseModel):
    anime_id: str
    content_filter: Optional[str] = None


class ScanRequest(BaseModel):
    path: str


class MatchUpdate(BaseModel):
    donor_path: str
    episode_id: Optional[str] = None


class AnalyzeRequest(BaseModel):
    donor_path: str


class TrackChoice(BaseModel):
    donor_path: str
    kind: str
    stream_index: int = -1
    episode_id: Optional[str] = None
    sync_offset_ms: int = 0


class ProcessRequest(BaseModel):
    tracks: List[TrackChoice]


def _match_to_dict(match) -> Dict[str, Any]:
    return {
        "donor_path": match.donor.path,
        "name": match.donor.name,
        "episode_number": match.donor.episode_number,
        "file_type": match.donor.file_type,
        "content_type": match.donor.content_type,
        "dub_group": match.donor.dub_group,
        "episode_id": match.episode.id if match.episode else None,
        "confidence": match.confidence,
        "reason": match.reason,
    }


def create_app(service: MediaService) -> FastAPI:
    """Build the control API around a media service"""
    app = FastAPI(title="Media Worker Control API")
    
    @app.get("/healthz")
    async def health_check():
        """Health check endpoint"""
        try:
            if service.store is not None:
                await service.store.ping()
            return {"ok": True, "status": "healthy"}
        except Exception as e:
            logger.error(f"Health check failed: {str(e)}")
            raise HTTPException(status_code=503, detail=f"Library store unavailable: {str(e)}")
    
    @app.get("/limits")
    async def get_limits():
        return service.get_concurrency_limits()
    
    @app.put("/limits/video")
    async def set_video_limit(update: LimitUpdate):
        return {"max_concurrent": service.set_video_max_concurrent(update.max_concurrent)}
    
    @app.put("/limits/audio")
    async def set_audio_limit(update: LimitUpdate):
        return {"max_concurrent": service.set_audio_max_concurrent(update.max_concurrent)}
    
    @app.put("/limits/tracks")
    async def set_track_limit(update: LimitUpdate):
        return {"max_concurrent": service.set_track_max_concurrent(update.max_concurrent)}
    
    @app.post("/probe")
    async def probe_file(request: ProbeRequest):
        result = await service.probe(request.path)
        if not result.success:
            raise HTTPException(status_code=422, detail=result.error)
        info = result.data
        return {
            "format": info.format_name,
            "duration": info.duration,
            "size": info.size,
            "streams": [
                {
                    "index": s.index,
                    "type": s.codec_type,
                    "codec": s.codec_name,
                    "language": s.language,
                    "bit_rate": s.bit_rate,
                }
                for s in info.streams
            ],
            "chapters": len(info.chapters),
        }
    
    @app.post("/add-tracks")
    async def open_session(request: SessionRequest):
        try:
            session_id = await service.open_add_tracks(anime_id=request.anime_id,
                                                       content_filter=request.content_filter)
        except RuntimeError as e:
            raise HTTPException(status_code=503, detail=str(e))
        return {"session_id": session_id}
    
    def _session(session_id: str):
        try:
            return service.get_session(session_id)
        except KeyError as e:
            raise HTTPException(status_code=404, detail=str(e))
    
    @app.post("/add-tracks/{session_id}/scan")
    async def scan(session_id: str, request: ScanRequest):
        donors = _session(session_id).scan_donor(request.path)
        return {"files": len(donors)}
    
    @app.post("/add-tracks/{session_id}/match")
    async def match(session_id: str):
        session = _session(session_id)
        matches = session.match()
        return {"stats": session.stats(), "matches": [_match_to_dict(m) for m in matches]}
    
    @app.put("/add-tracks/{session_id}/match")
    async def override_match(session_id: str, update: MatchUpdate):
        session = _session(session_id)
        episode = None
        if update.episode_id:
            episode = next((e for e in session.episodes if e.id == update.episode_id), None)
            if episode is None:
                raise HTTPException(status_code=404, detail=f"Unknown episode: {update.episode_id}")
        matches = session.update_match(update.donor_path, episode)
        return {"stats": session.stats(), "matches": [_match_to_dict(m) for m in matches]}

    @app.post("/add-tracks/{session_id}/analyze")
    async def analyze(session_id: str, request: AnalyzeRequest):
        session = _session(session_id)
        try:
            tracks = await session.analyze(session.find_donor(request.donor_path))
        except KeyError as e:
            raise HTTPException(status_code=404, detail=str(e))
        except MediaWorkerError as e:
            raise HTTPException(status_code=422, detail=str(e))
        return {"tracks": [asdict(t) for t in tracks]}

    @app.post("/add-tracks/{session_id}/process")
    async def process(session_id: str, request: ProcessRequest):
        """Add the chosen tracks; returns once every track has finished or was cancelled"""
        session = _session(session_id)
        if session.processing:
            raise HTTPException(status_code=409, detail="Session is already processing")
        try:
            selection = [
                await session.select_track(c.donor_path, c.kind, c.stream_index,
                                           c.episode_id, c.sync_offset_ms)
                for c in request.tracks
            ]
        except KeyError as e:
            raise HTTPException(status_code=404, detail=str(e))
        except MediaWorkerError as e:
            raise HTTPException(status_code=422, detail=str(e))
        try:
            summary = await session.process(selection)
        except RuntimeError as e:
            raise HTTPException(status_code=409, detail=str(e))
        return asdict(summary)

    @app.get("/add-tracks/{session_id}")
    async def session_status(session_id: str):
        session = _session(session_id)
        return {
            "processing": session.processing,
            "cancelled": session.cancelled,
            "tracks": [asdict(p) for p in session.progress.values()],
            "summary": asdict(session.summary) if session.summary else None,
        }

    @app.post("/add-tracks/{session_id}/cancel")
    async def cancel(session_id: str):
        report = await _session(session_id).cancel()
        service.close_session(session_id)
        return {"removed": report.removed, "failures": report.failures}
    
    return app


class ControlServer:
    """Serves the control API on the service's own event loop"""
    
    def __init__(self, service: MediaService, port: int = 8000):
        self.service = service
        self.port = port
        self.app = create_app(service)
        self.server: Optional[uvicorn.Server] = None
    
    async def serve(self) -> None:
        config = uvicorn.Config(
            self.app,
            host="0.0.0.0",
            port=self.port,
            log_level="warning",  # Reduce uvicorn logging
            access_log=False
        )
        self.server = uvicorn.Server(config)
        logger.info(f"Control server starting on port {self.port}")
        await self.server.serve()
    
    def stop(self) -> None:
        if self.server:
            self.server.should_exit = True
        logger.info("Control server stopped")
