"""FastAPI dependency wiring for the calsync API."""

from __future__ import annotations

from fastapi import FastAPI

from calsync.service import CalendarService


def get_calendar_service() -> CalendarService:
    """Dependency stub; overridden by ``create_app`` or in tests."""
    raise RuntimeError("CalendarService not initialized")


def wire_service(app: FastAPI, service: CalendarService) -> None:
    app.state.calendar_service = service
    app.dependency_overrides[get_calendar_service] = lambda: service
