# core/container.py
"""
Explicitly constructed service graph for one process.

Built in the application lifespan (or by tests) and torn down at shutdown;
there are no module-level service instances.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from config.settings import Settings, TrackingPolicy
from services.connection_registry import ConnectionRegistry
from services.dispatcher import FanOutDispatcher
from services.event_classifier import EventClassifier
from services.fleet_service import FleetService
from services.tracking_service import TrackingService


@dataclass
class TrackingContainer:
    policy: TrackingPolicy
    fleet: FleetService
    registry: ConnectionRegistry
    dispatcher: FanOutDispatcher
    classifier: EventClassifier
    tracking: TrackingService

    async def shutdown(self):
        await self.tracking.shutdown()
        await self.registry.shutdown()


def build_container(
    settings: Settings,
    fleet: Optional[FleetService] = None,
    policy: Optional[TrackingPolicy] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> TrackingContainer:
    policy = policy or TrackingPolicy.from_settings(settings)
    fleet = fleet or FleetService.from_file(settings.FLEET_DATA_PATH, timezone=settings.SERVICE_TIMEZONE)
    registry = ConnectionRegistry(authorizer=fleet.can_view)
    dispatcher = FanOutDispatcher(registry)
    classifier = EventClassifier(policy)
    extra = {"clock": clock} if clock is not None else {}
    tracking = TrackingService(fleet, registry, dispatcher, classifier, policy, **extra)
    return TrackingContainer(
        policy=policy,
        fleet=fleet,
        registry=registry,
        dispatcher=dispatcher,
        classifier=classifier,
        tracking=tracking,
    )
