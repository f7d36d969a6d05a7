# api/deps.py
from fastapi import Request

from core.container import TrackingContainer
from services.tracking_service import TrackingService


def get_container(request: Request) -> TrackingContainer:
    return request.app.state.container


def get_tracking(request: Request) -> TrackingService:
    return request.app.state.container.tracking
