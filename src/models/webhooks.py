"""Pydantic models for inbound provider webhook bodies."""

from __future__ import annotations

from typing import Any

from pydantic import ConfigDict, Field

from src.models.base import PulseBridgeBase

WHOOP_TEST_TRACE_ID = "test-trace-id"


# ---------- Whoop ----------

class WhoopWebhookPayload(PulseBridgeBase):
    """Whoop notification. Carries ids only; the record itself is fetched."""

    # Whoop sends numeric user ids and numeric cycle ids
    model_config = ConfigDict(str_strip_whitespace=True, coerce_numbers_to_str=True)

    user_id: str
    id: str
    type: str = Field(min_length=1)
    trace_id: str | None = None

    @property
    def is_test(self) -> bool:
        return self.trace_id == WHOOP_TEST_TRACE_ID


# ---------- Terra ----------

class TerraUser(PulseBridgeBase):
    model_config = ConfigDict(str_strip_whitespace=True, coerce_numbers_to_str=True)

    user_id: str
    provider: str | None = None
    reference_id: str | None = None


class TerraWebhookPayload(PulseBridgeBase):
    """Terra push. Data events carry full records in ``data``."""

    type: str
    user: TerraUser | None = None
    data: list[dict[str, Any]] = Field(default_factory=list)
