"""Pydantic models for the resolved unified metrics read."""

from __future__ import annotations

from datetime import date
from typing import Any

from src.models.base import PulseBridgeBase


class ResolvedMetricRead(PulseBridgeBase):
    metric_name: str
    category: str
    measurement_date: date
    value: float
    unit: str
    source: str
    provider: str
    priority: int
    confidence_score: int
    source_data: dict[str, Any] | None = None
