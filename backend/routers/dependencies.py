"""Shared request dependencies for the front-desk routers."""

from __future__ import annotations

from datetime import datetime
from typing import Optional
from zoneinfo import ZoneInfo

from fastapi import Header

from backend.services.events import ClinicScope
from backend.utils.config import get_settings


def get_clinic_scope(
    x_clinic_id: str = Header(..., min_length=1),
    x_actor: Optional[str] = Header(default=None),
) -> ClinicScope:
    """Tenant context set by the gateway after authorization."""

    return ClinicScope(clinic_id=x_clinic_id, actor=x_actor)


def to_clinic_time(value: Optional[datetime]) -> Optional[datetime]:
    """Convert aware timestamps to naive clinic wall-clock time."""

    if value is None or value.tzinfo is None:
        return value
    zone = ZoneInfo(get_settings().clinic_timezone)
    return value.astimezone(zone).replace(tzinfo=None)
