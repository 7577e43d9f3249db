"""
HTTP service exposing the scheduling operations to the voice agent.

Every operation is a JSON POST whose organization_id is baked into the
agent's webhook configuration. Domain failures come back as HTTP 200 with
`success: false` and a sentence to speak; only infrastructure failures use
non-2xx statuses with an `{"error": ...}` body.
"""

from __future__ import annotations

import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from config import logger, Settings
from models.requests import (
    BookAppointmentArgs,
    CancelAppointmentArgs,
    CheckAvailabilityArgs,
    LookupContactArgs,
    RescheduleAppointmentArgs,
    SaveContactArgs,
)
from services import ServiceContainer, ServiceError, build_services
from services.scheduling_service import _unavailable

BOOKING_ROUTES = {
    "/agent-book-appointment",
    "/agent-cancel-appointment",
    "/agent-reschedule-appointment",
}

_services: Optional[ServiceContainer] = None


def get_services() -> ServiceContainer:
    """Build the service graph from the environment on first request."""
    global _services
    if _services is None:
        _services = build_services(Settings.from_env())
    return _services


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    if _services is not None and _services.side_effects.pending:
        logger.info(f"[HTTP] Draining {_services.side_effects.pending} side effect(s) before shutdown")
        await _services.side_effects.drain()


async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    logger.warning(f"[HTTP] {request.url.path} -> {exc.status_code}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Bodies that are not a JSON object still get the operation's spoken-failure shape."""
    path = request.url.path
    logger.warning(f"[HTTP] {path} -> unreadable body: {exc.errors()}")
    if path == "/calendar-availability":
        return JSONResponse(
            status_code=200,
            content=_unavailable("Invalid request", "Unable to check calendar - please ask for a preferred time"),
        )
    if path in BOOKING_ROUTES:
        return JSONResponse(
            status_code=200,
            content={
                "success": False,
                "message": "I didn't catch all of those details. Could you repeat them for me?",
            },
        )
    return JSONResponse(status_code=400, content={"error": "Invalid request body"})


def create_app() -> FastAPI:
    # No docs endpoint (reduces attack surface)
    app = FastAPI(docs_url=None, redoc_url=None, lifespan=lifespan)
    app.add_exception_handler(ServiceError, service_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)

    @app.get("/healthz")
    def health_check():
        return {"status": "ok"}

    @app.post("/calendar-availability")
    async def calendar_availability(
        args: CheckAvailabilityArgs,
        services: ServiceContainer = Depends(get_services),
    ):
        return await services.availability.check_availability(args)

    @app.post("/agent-book-appointment")
    async def book_appointment(
        args: BookAppointmentArgs,
        services: ServiceContainer = Depends(get_services),
    ):
        return await services.appointments.book_appointment(args)

    @app.post("/agent-cancel-appointment")
    async def cancel_appointment(
        args: CancelAppointmentArgs,
        services: ServiceContainer = Depends(get_services),
    ):
        return await services.appointments.cancel_appointment(args)

    @app.post("/agent-reschedule-appointment")
    async def reschedule_appointment(
        args: RescheduleAppointmentArgs,
        services: ServiceContainer = Depends(get_services),
    ):
        return await services.appointments.reschedule_appointment(args)

    @app.post("/agent-lookup-contact")
    async def lookup_contact(
        args: LookupContactArgs,
        services: ServiceContainer = Depends(get_services),
    ):
        return await services.contacts.lookup_contact(args)

    @app.post("/agent-save-contact")
    async def save_contact(
        args: SaveContactArgs,
        services: ServiceContainer = Depends(get_services),
    ):
        return await services.contacts.save_contact(args)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", 8080))
    uvicorn.run(app, host="0.0.0.0", port=port)
