"""
FastAPI application for the order pipeline.

This application provides:
1. Order intake (POST /orders), which only validates and queues
2. Queue inspection (/queue/stats) for operators
3. Dead-letter inspection and redrive (/dead-letters)

Run with:
    uv run uvicorn api.main:app --reload

Then visit http://localhost:8000/docs for interactive API documentation.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(name)-24s | %(levelname)-5s | %(message)s",
    datefmt="%H:%M:%S",
)

from pipeline.runtime import OrderPipeline, get_pipeline
from shared.exceptions import CapacityExceeded, JobNotFound, OrderValidationError
from shared.models import OrderAccepted, OrderJob, OrderRequest, QueueStats

logger = logging.getLogger("api")


# Application lifespan
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the pipeline workers with the app and stop them on shutdown."""
    pipeline = get_pipeline()
    run_workers = pipeline.settings.run_workers
    if run_workers:
        pipeline.start()
    logger.info(f"Starting order pipeline API (workers={'on' if run_workers else 'off'})")
    yield
    if run_workers:
        pipeline.stop()
    logger.info("Shutting down")


# Create the FastAPI app
app = FastAPI(
    title="Order Pipeline",
    description="""
    Reliable, ordered, single-flight processing of order requests.

    ## Endpoints

    - `/orders` - Submit an order; it is processed asynchronously
    - `/queue/stats` - Pending, in-flight and dead-lettered counts
    - `/dead-letters` - Jobs that exhausted their deliveries, and their redrive
    """,
    version="1.0.0",
    lifespan=lifespan,
)


# =============================================================================
# Error Mapping
# =============================================================================

@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": "Malformed order request", "errors": jsonable_errors(exc)},
    )


@app.exception_handler(OrderValidationError)
async def order_validation_handler(request: Request, exc: OrderValidationError):
    code = status.HTTP_413_REQUEST_ENTITY_TOO_LARGE if exc.oversized else status.HTTP_400_BAD_REQUEST
    return JSONResponse(status_code=code, content={"detail": str(exc)})


@app.exception_handler(CapacityExceeded)
async def capacity_handler(request: Request, exc: CapacityExceeded):
    return JSONResponse(status_code=status.HTTP_429_TOO_MANY_REQUESTS, content={"detail": str(exc)})


@app.exception_handler(JobNotFound)
async def job_not_found_handler(request: Request, exc: JobNotFound):
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})


def jsonable_errors(exc: RequestValidationError) -> list[dict]:
    return [
        {
            "field": ".".join(str(part) for part in error.get("loc", ())),
            "message": error.get("msg", ""),
        }
        for error in exc.errors()
    ]


# =============================================================================
# Health Check
# =============================================================================

@app.get("/health", tags=["Health"])
def health_check(pipeline: OrderPipeline = Depends(get_pipeline)):
    """Health check endpoint."""
    return {
        "status": "healthy",
        "service": "orders-queue",
        "workers": pipeline.settings.run_workers,
    }


# =============================================================================
# Order Intake
# =============================================================================

@app.post(
    "/orders",
    response_model=OrderAccepted,
    status_code=status.HTTP_202_ACCEPTED,
    tags=["Orders"],
)
def request_order(request: OrderRequest, pipeline: OrderPipeline = Depends(get_pipeline)):
    """
    Queue an order for processing.

    Returns as soon as the order is durably queued. A repeated dedupe token
    within the dedupe window returns the original job with duplicate=true.
    """
    return pipeline.intake.request_order(request)


# =============================================================================
# Operations
# =============================================================================

@app.get("/queue/stats", response_model=QueueStats, tags=["Operations"])
def queue_stats(pipeline: OrderPipeline = Depends(get_pipeline)):
    """Counts of pending, in-flight and dead-lettered jobs."""
    return pipeline.store.stats()


@app.get("/dead-letters", response_model=list[OrderJob], tags=["Operations"])
def list_dead_letters(pipeline: OrderPipeline = Depends(get_pipeline)):
    """Jobs that exceeded their delivery limit."""
    return pipeline.store.list_dead_letters()


@app.post("/dead-letters/{job_id}/redrive", response_model=OrderJob, tags=["Operations"])
def redrive_dead_letter(job_id: str, pipeline: OrderPipeline = Depends(get_pipeline)):
    """
    Put a dead-lettered job back at the tail of its group.

    The job's delivery count starts over.
    """
    job = pipeline.store.redrive(job_id)
    logger.info(f"Operator redrove job {job_id} (order {job.order_id})")
    return job
