"""
Status API for the Cohort coordinator.

Provides REST endpoints for:
- Health checks
- Phase, queue and iteration status
- Requesting a cooperative stop
"""

import logging
from typing import Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field
import uvicorn

from coordinator.acceptor import Acceptor
from coordinator.driver import IterationDriver
from coordinator.phase_state import PhaseState


logger = logging.getLogger(__name__)


class StopResponse(BaseModel):
    """Stop request acknowledgement."""
    message: str = Field(..., description="Outcome of the stop request")
    phase: str = Field(..., description="Phase at the time of the request")


# Global state, attached by the coordinator service
state: Optional[PhaseState] = None
driver: Optional[IterationDriver] = None
acceptor: Optional[Acceptor] = None


def attach(
    phase_state: PhaseState,
    iteration_driver: Optional[IterationDriver] = None,
    listener: Optional[Acceptor] = None
):
    """
    Point the API at a running coordinator.

    Args:
        phase_state: Shared phase state
        iteration_driver: Iteration driver
        listener: Acceptor serving worker connections
    """
    global state, driver, acceptor
    state = phase_state
    driver = iteration_driver
    acceptor = listener


def _require_state() -> PhaseState:
    if state is None:
        raise HTTPException(status_code=503, detail="Coordinator not running")
    return state


app = FastAPI(
    title="Cohort Coordinator",
    description="Status of a distributed clustering run",
    version="0.1.0",
)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "service": "Cohort Coordinator",
        "version": "0.1.0",
        "status": "running" if state is not None and not state.stopped else "idle"
    }


@app.get("/health")
async def health():
    """Health check endpoint."""
    phase_state = _require_state()
    return {
        "status": "stopping" if phase_state.stopped else "healthy",
        "phase": phase_state.phase.value,
        "sessions": acceptor.active_sessions if acceptor else 0
    }


@app.get("/status")
async def status():
    """
    Full coordinator status.

    Includes phase, queue, checkpoint and the latest iteration summary.
    """
    phase_state = _require_state()
    result = phase_state.snapshot()
    result["driver"] = driver.status() if driver else None
    result["listener"] = {
        "port": acceptor.port,
        "active_sessions": acceptor.active_sessions,
        "connections_accepted": acceptor.connections_accepted,
    } if acceptor else None
    return result


@app.post("/stop", response_model=StopResponse)
async def stop():
    """
    Request a cooperative stop.

    In-flight exchanges finish; the driver abandons the current phase.
    """
    phase_state = _require_state()
    already = phase_state.stopped
    phase_state.request_stop()
    logger.info("Stop requested through the status API")
    return StopResponse(
        message="Already stopping" if already else "Stop requested",
        phase=phase_state.phase.value
    )


def create_status_server(host: str = "0.0.0.0", port: int = 8000) -> uvicorn.Server:
    """
    Create a uvicorn server for the status API.

    The caller runs it on its own event loop with `await server.serve()`.

    Args:
        host: Host to bind to
        port: Port to bind to
    """
    config = uvicorn.Config(app, host=host, port=port, log_level="warning")
    return uvicorn.Server(config)
