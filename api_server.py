"""
FastAPI server for the Video Merge API
Accepts an intro clip and a main clip and returns them joined as one MP4
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

import uvicorn
from dotenv import load_dotenv
from fastapi import Depends, FastAPI, File, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel

from video_merge import __version__
from video_merge.config import MergeConfig, setup_logging
from video_merge.errors import DeliveryError, InputError, MergeError
from video_merge.file_utils import get_media_type, safe_suffix, save_upload
from video_merge.orchestrator import MergeOrchestrator, MergeRequest

# Load environment variables from .env file
load_dotenv()

logger = logging.getLogger(__name__)

MISSING_FILES_MESSAGE = 'Missing files. Send form fields "intro" and "main".'


class HealthStatus(BaseModel):
    status: str


class ErrorResponse(BaseModel):
    error: str


ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Missing or invalid upload"},
    500: {"model": ErrorResponse, "description": "Probe or transcode failure"},
}


class CleanupFileResponse(FileResponse):
    """FileResponse that closes its merge request once sending has ended."""

    def __init__(self, path, merge_request: MergeRequest,
                 orchestrator: MergeOrchestrator, **kwargs):
        super().__init__(path, **kwargs)
        self.merge_request = merge_request
        self.orchestrator = orchestrator

    async def __call__(self, scope, receive, send):
        delivered = False
        error = None
        try:
            await super().__call__(scope, receive, send)
            delivered = True
        except Exception as e:
            # The merge itself succeeded; a broken connection only ends delivery.
            error = DeliveryError(f"Delivery failed: {e}")
            logger.warning(f"[{self.merge_request.request_id}] {error.message}")
        finally:
            self.orchestrator.finish(self.merge_request, delivered=delivered, error=error)


async def reject_repeated_fields(request: Request, fields=("intro", "main")):
    """Each upload field may carry at most one file."""
    form = await request.form()
    repeated = [name for name in fields if len(form.getlist(name)) > 1]
    if repeated:
        raise InputError(f"Only one file allowed per field: {', '.join(repeated)}")


def get_orchestrator(request: Request) -> MergeOrchestrator:
    return request.app.state.orchestrator


def get_config(request: Request) -> MergeConfig:
    return request.app.state.config


def create_app(config: Optional[MergeConfig] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        config: Settings to use; read from the environment when omitted

    Returns:
        Configured FastAPI app with its orchestrator on `app.state`
    """
    config = config or MergeConfig.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        orchestrator = app.state.orchestrator
        logger.info(f"Server running on port {config.port}")
        logger.info(f"temp dir: {orchestrator.temp_dir}")
        if not orchestrator.invoker.is_available():
            logger.warning(f"FFmpeg not found at '{config.ffmpeg_path}'; merges will fail")
        if not orchestrator.inspector.is_available():
            logger.warning(f"FFprobe not found at '{config.ffprobe_path}'; merges will fail")
        yield

    app = FastAPI(
        title="Video Merge API",
        description="API for joining an intro clip and a main clip into one video",
        version=__version__,
        lifespan=lifespan
    )
    app.state.config = config
    app.state.orchestrator = MergeOrchestrator(config)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

    @app.exception_handler(MergeError)
    async def merge_error_handler(request: Request, exc: MergeError):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message})

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"error": MISSING_FILES_MESSAGE})

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.error(f"error: {exc}")
        return JSONResponse(status_code=500, content={"error": str(exc)})

    @app.get("/")
    async def root() -> Dict[str, Any]:
        """Root endpoint with API information"""
        return {
            "message": "Video Merge API",
            "version": __version__,
            "endpoints": {
                "merge_videos": "/api/merge-videos",
                "health": "/api/health"
            }
        }

    @app.get("/api/health", response_model=HealthStatus)
    async def health_check() -> HealthStatus:
        """Liveness check"""
        return HealthStatus(status="ok")

    @app.post(
        "/api/merge-videos",
        response_class=FileResponse,
        responses={200: {"content": {"video/mp4": {}}}, **ERROR_RESPONSES}
    )
    async def merge_videos(
        request: Request,
        intro: Optional[UploadFile] = File(None),
        main: Optional[UploadFile] = File(None),
        orchestrator: MergeOrchestrator = Depends(get_orchestrator),
        settings: MergeConfig = Depends(get_config)
    ):
        """Merge the uploaded intro and main clips into one MP4"""
        await reject_repeated_fields(request)
        if intro is None or main is None or not intro.filename or not main.filename:
            raise InputError(MISSING_FILES_MESSAGE)

        merge_request = orchestrator.new_request(
            intro_suffix=safe_suffix(intro.filename, ".mp4"),
            main_suffix=safe_suffix(main.filename, ".mp4")
        )
        logger.info(f"[{merge_request.request_id}] received intro={intro.filename} main={main.filename}")

        try:
            await save_upload(intro, merge_request.intro_path, settings.max_upload_size)
            await save_upload(main, merge_request.main_path, settings.max_upload_size)
        except MergeError as e:
            orchestrator.fail(merge_request, e)
            raise
        except OSError as e:
            orchestrator.fail(merge_request, MergeError(f"Could not store upload: {e}"))
            raise

        output_path = await orchestrator.process(merge_request)

        return CleanupFileResponse(
            output_path,
            merge_request=merge_request,
            orchestrator=orchestrator,
            media_type=get_media_type(output_path),
            filename="merged.mp4"
        )

    return app


app = create_app()
setup_logging(app.state.config.log_level)


def main():
    """Run the API server with uvicorn."""
    config = app.state.config
    uvicorn.run(
        app,
        host=config.host,
        port=config.port,
        log_level=config.log_level.lower()
    )


if __name__ == "__main__":
    main()
