"""
FastAPI application for the idea ballot service.

Participants submit one idea each and cast one vote each before the
deadline; standings stay readable after voting closes.
"""
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from fastapi.staticfiles import StaticFiles
from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded

from services.shared import PROPOSAL_ATTRIBUTES, format_timestamp

from .config import settings
from .errors import LedgerError
from .ledger import Ledger
from .models import (
    IdeaRequest,
    IdeaSummary,
    IdeaView,
    IdeasResponse,
    SubmitResponse,
    VoteRequest,
    VoteResponse,
    ResultsResponse,
    HealthResponse,
    ErrorResponse,
)
from .storage import build_backend

# Configure logging
logging.basicConfig(
    level=logging.INFO if not settings.DEBUG else logging.DEBUG,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# Prometheus metrics
proposals_submitted = Counter(
    "proposals_submitted_total",
    "Total number of ideas accepted"
)
votes_cast = Counter(
    "votes_cast_total",
    "Total number of ballots accepted"
)
ledger_rejections = Counter(
    "ledger_rejections_total",
    "Total number of rejected ledger calls",
    ["error_type"]
)
request_duration = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint", "status"]
)

# Ledger bound to the configured backend during startup
ledger: Ledger = None

# Rate limiter
limiter = Limiter(key_func=get_remote_address)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    global ledger
    logger.info(f"Starting {settings.SERVICE_NAME} service...")

    backend = build_backend(settings)
    try:
        await backend.initialize()
        ledger = Ledger(backend, settings.DEADLINE, timeout=settings.STORAGE_TIMEOUT)
        logger.info(f"{settings.SERVICE_NAME} started on port {settings.PORT}")
        logger.info(f"Deadline: {format_timestamp(ledger.deadline)}")

    except Exception as e:
        logger.error(f"Failed to start {settings.SERVICE_NAME}: {e}")
        raise

    yield

    logger.info(f"Shutting down {settings.SERVICE_NAME} service...")
    await backend.close()


# Create FastAPI app
app = FastAPI(
    title="Idea Ballot API",
    description="Submit ideas, vote once, and follow the standings",
    version=settings.API_VERSION,
    lifespan=lifespan
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=settings.CORS_ALLOW_CREDENTIALS,
    allow_methods=settings.CORS_ALLOW_METHODS,
    allow_headers=settings.CORS_ALLOW_HEADERS,
)

# Add rate limiter
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError):
    """Translate ledger rejections into JSON error responses."""
    ledger_rejections.labels(error_type=exc.error_type).inc()
    headers = {"Retry-After": "1"} if exc.retryable else None
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=exc.message, type=exc.error_type).model_dump(),
        headers=headers
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    """Answer malformed request bodies with 400, as for missing fields."""
    ledger_rejections.labels(error_type="validation_error").inc()
    details = [
        f"{'.'.join(str(part) for part in err['loc'] if part != 'body')}: {err['msg']}"
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=ErrorResponse(
            error="Missing or invalid fields",
            type="validation_error",
            details=details
        ).model_dump()
    )


@app.middleware("http")
async def prometheus_middleware(request: Request, call_next):
    """Middleware to track request duration."""
    started = time.perf_counter()
    response = await call_next(request)

    request_duration.labels(
        method=request.method,
        endpoint=request.url.path,
        status=response.status_code
    ).observe(time.perf_counter() - started)

    return response


@app.post(
    "/api/ideas",
    response_model=SubmitResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Missing required fields"},
        403: {"model": ErrorResponse, "description": "Deadline passed"},
        409: {"model": ErrorResponse, "description": "Email already submitted an idea"},
        503: {"model": ErrorResponse, "description": "Storage unavailable, retry"}
    }
)
@limiter.limit(settings.RATE_LIMIT)
async def submit_idea(request: Request, idea: IdeaRequest) -> SubmitResponse:
    """
    Submit an idea.

    - **name**, **email**, **title**, **description**: required
    - **functionalities**, **agentRole**, **tools**: optional free text

    One idea per email address.
    """
    attrs = {
        key: getattr(idea, key)
        for key in PROPOSAL_ATTRIBUTES
        if getattr(idea, key) is not None
    }
    try:
        proposal = await ledger.submit_proposal(
            idea.email, idea.title, idea.description, name=idea.name, attrs=attrs
        )
    except LedgerError:
        raise
    except Exception as e:
        logger.error(f"Error submitting idea: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Internal server error"
        )

    proposals_submitted.inc()
    return SubmitResponse(
        idea=IdeaSummary(id=proposal.id, name=proposal.name, title=proposal.title)
    )


@app.get(
    "/api/ideas",
    response_model=IdeasResponse,
    responses={
        500: {"model": ErrorResponse, "description": "Internal server error"}
    }
)
async def get_ideas() -> IdeasResponse:
    """List all ideas, most voted first."""
    try:
        proposals = await ledger.list_proposals()
    except LedgerError:
        raise
    except Exception as e:
        logger.error(f"Error listing ideas: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Internal server error"
        )

    return IdeasResponse(
        ideas=[IdeaView(**p.to_public_dict()) for p in proposals],
        deadline=format_timestamp(ledger.deadline),
        isPastDeadline=ledger.is_past_deadline()
    )


@app.post(
    "/api/vote",
    response_model=VoteResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Missing data"},
        403: {"model": ErrorResponse, "description": "Deadline passed"},
        404: {"model": ErrorResponse, "description": "Idea not found"},
        409: {"model": ErrorResponse, "description": "Email already voted"},
        503: {"model": ErrorResponse, "description": "Storage unavailable, retry"}
    }
)
@limiter.limit(settings.RATE_LIMIT)
async def submit_vote(request: Request, vote: VoteRequest) -> VoteResponse:
    """
    Vote for an idea.

    - **ideaId**: idea identifier
    - **email**: voter email; one vote per email, final

    Returns the idea's new vote count.
    """
    try:
        votes = await ledger.cast_vote(vote.email, vote.ideaId)
    except LedgerError:
        raise
    except Exception as e:
        logger.error(f"Error submitting vote: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Internal server error"
        )

    votes_cast.inc()
    return VoteResponse(votes=votes)


@app.get(
    "/api/results",
    response_model=ResultsResponse,
    responses={
        500: {"model": ErrorResponse, "description": "Internal server error"}
    }
)
async def get_results() -> ResultsResponse:
    """Standings, winner and total number of votes."""
    try:
        standings = await ledger.results()
    except LedgerError:
        raise
    except Exception as e:
        logger.error(f"Error getting results: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Internal server error"
        )

    winner = standings.winner
    return ResultsResponse(
        ideas=[IdeaView(**p.to_public_dict()) for p in standings.ranking],
        winner=IdeaView(**winner.to_public_dict()) if winner else None,
        isPastDeadline=standings.is_past_deadline,
        totalVotes=standings.total_ballots
    )


@app.get(
    "/api/health",
    response_model=HealthResponse,
    responses={
        503: {"model": HealthResponse, "description": "Service unhealthy"}
    }
)
async def health_check() -> HealthResponse:
    """Check health of the service and its storage backend."""
    backend = ledger.backend
    try:
        healthy = await backend.check_health()
    except Exception as e:
        logger.error(f"Storage health check error: {e}")
        healthy = False

    response = HealthResponse(
        status="healthy" if healthy else "unhealthy",
        services={backend.name: "connected" if healthy else "disconnected"},
        timestamp=datetime.now(timezone.utc)
    )

    return JSONResponse(
        status_code=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content=response.model_dump(mode="json")
    )


@app.get("/metrics")
async def metrics():
    """Prometheus metrics endpoint."""
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST
    )


@app.get("/api")
async def root():
    """API information."""
    return {
        "service": settings.SERVICE_NAME,
        "version": settings.API_VERSION,
        "status": "running",
        "endpoints": {
            "ideas": "/api/ideas",
            "vote": "/api/vote",
            "results": "/api/results",
            "health": "/api/health",
            "metrics": "/metrics"
        }
    }


# Static front-end, mounted last so the API routes take precedence
if settings.STATIC_DIR:
    app.mount("/", StaticFiles(directory=settings.STATIC_DIR, html=True), name="static")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "services.ballot_api.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level="info"
    )
