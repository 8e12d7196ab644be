import os
import logging
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel
from typing import Optional
from dotenv import load_dotenv

from job_service import JobNotFound, JobService, sse_stream
from wilma.errors import InvalidInput, ScrapeError
from wilma.pipeline import normalize_mode, run_scrape

# Set up logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class ScrapeRequest(BaseModel):
    username: str = ""
    password: str = ""
    mode: Optional[str] = "all"


class ScrapeStartResponse(BaseModel):
    success: bool = True
    jobId: str


load_dotenv()

app = FastAPI(title="Wilma Wrapped API", version="1.0.0")
app.state.job_service = JobService()

logger.info("FastAPI app initialized")

CORS_ORIGIN = os.getenv("CORS_ORIGIN", "http://localhost:3000")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[origin.strip() for origin in CORS_ORIGIN.split(",")],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _error_response(status_code: int, error: str, details: Optional[str] = None) -> JSONResponse:
    content = {"success": False, "error": error}
    if details:
        content["details"] = details
    return JSONResponse(status_code=status_code, content=content)


def _validate_credentials(req: ScrapeRequest):
    if not req.username or not req.password:
        raise InvalidInput("Missing credentials")


@app.exception_handler(RequestValidationError)
async def invalid_body_handler(request: Request, exc: RequestValidationError):
    logger.warning(f"{request.method} {request.url.path} - Invalid request body")
    return _error_response(400, "Invalid request body")


@app.exception_handler(ScrapeError)
async def scrape_error_handler(request: Request, exc: ScrapeError):
    logger.warning(f"{request.method} {request.url.path} - {exc.kind}: {exc.message}")
    details = exc.details if exc.details and exc.details != exc.message else None
    return _error_response(exc.status, exc.message, details)


@app.get("/ping")
def ping():
    return {"status": "ok", "message": "Backend is connected!"}


# ============== SCRAPE ROUTES ==============

@app.post("/scrape/start", response_model=ScrapeStartResponse)
def start_scrape(req: ScrapeRequest):
    """Start a new Wilma scrape.

    Returns immediately with a jobId; open /scrape/stream/{jobId} to follow it.
    """
    _validate_credentials(req)
    mode = normalize_mode(req.mode)
    job_id = app.state.job_service.start_job(req.username, req.password, mode)
    logger.info(f"POST /scrape/start - Created {mode} job: {job_id}")
    return ScrapeStartResponse(jobId=job_id)


@app.get("/scrape/stream/{job_id}")
def stream_scrape(job_id: str):
    """Server-sent events for a scrape job.

    Each event: data: {"type": "progress" | "done" | "error", ...}\n\n
    The latest event is replayed first; the stream closes after done/error.
    """
    service: JobService = app.state.job_service
    try:
        subscription = service.attach(job_id)
    except JobNotFound:
        logger.warning(f"GET /scrape/stream/{job_id} - Job not found")
        return _error_response(404, "Progress job not found")

    return StreamingResponse(
        sse_stream(service, subscription),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache, no-transform",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@app.get("/scrape/status/{job_id}")
def get_scrape_status(job_id: str):
    """Get the latest state of a scrape job without subscribing."""
    status = app.state.job_service.get_status(job_id)
    if not status:
        raise HTTPException(status_code=404, detail="Job not found")
    return status


@app.post("/scrape/run")
def run_scrape_and_wait(req: ScrapeRequest):
    """Run a scrape synchronously and return the result.

    Blocks until the scrape finishes (typically 10-30s).
    """
    _validate_credentials(req)
    mode = normalize_mode(req.mode)
    logger.info(f"POST /scrape/run - Running {mode} scrape")
    try:
        result = run_scrape(req.username, req.password, mode)
    except ScrapeError:
        raise
    except Exception as e:
        logger.error(f"POST /scrape/run failed: {e}")
        return _error_response(500, "Failed to connect to Wilma", str(e))
    return result.to_wire()


@app.on_event("startup")
def startup_event():
    """Log registered routes on startup for debugging."""
    logger.info("=" * 50)
    logger.info("REGISTERED ROUTES:")
    for route in app.routes:
        if hasattr(route, 'methods') and hasattr(route, 'path'):
            logger.info(f"  {list(route.methods)} {route.path}")
    logger.info("=" * 50)


@app.on_event("shutdown")
def shutdown_event():
    app.state.job_service.shutdown()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
