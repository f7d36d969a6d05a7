"""
Inbound payloads for driver commands and subscription frames.

Field names follow the client wire format (busId, routeId); snake_case is
accepted as well. Coordinates reject NaN/inf and out-of-range values so a
malformed position never reaches the classifier.
"""
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class _Inbound(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    bus_id: str = Field(..., min_length=1, alias="busId")
    # Device fix time; server receipt time when absent. Naive values are read as UTC.
    timestamp: Optional[datetime] = None

    @field_validator("timestamp")
    @classmethod
    def timestamp_as_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class LocationUpdate(_Inbound):
    lat: float = Field(..., ge=-90, le=90, allow_inf_nan=False)
    lng: float = Field(..., ge=-180, le=180, allow_inf_nan=False)
    speed: float = Field(0.0, ge=0, allow_inf_nan=False, description="km/h")
    heading: float = Field(0.0, ge=0, le=360, allow_inf_nan=False)


class EmergencyReport(_Inbound):
    detail: str = Field("Emergency reported", max_length=500)
    lat: Optional[float] = Field(None, ge=-90, le=90, allow_inf_nan=False)
    lng: Optional[float] = Field(None, ge=-180, le=180, allow_inf_nan=False)


class TrackingStart(_Inbound):
    route_id: str = Field(..., min_length=1, alias="routeId")
    lat: Optional[float] = Field(None, ge=-90, le=90, allow_inf_nan=False)
    lng: Optional[float] = Field(None, ge=-180, le=180, allow_inf_nan=False)


class TrackingEnd(_Inbound):
    pass


class ConnectionInfoUpdate(_Inbound):
    signal_strength: Optional[str] = Field(None, alias="signalStrength", pattern="^(weak|moderate|strong)$")
    connection_type: Optional[str] = Field(None, alias="connectionType", max_length=20)
    battery_level: Optional[int] = Field(None, alias="batteryLevel", ge=0, le=100)
    device_info: Optional[str] = Field(None, alias="deviceInfo", max_length=200)


class SocketFrame(BaseModel):
    """Envelope of every inbound WebSocket message."""
    event: str = Field(..., min_length=1)
    data: Any = None
