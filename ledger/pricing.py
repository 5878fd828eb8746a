"""Credit prices for every billable action.

Prices are resolved once from ``Settings`` into a :class:`PricingTable`; cost
functions are pure.
"""

from __future__ import annotations

import enum
import logging
import math
import re
from dataclasses import dataclass
from typing import Any, Mapping, Union

from core.config import Settings
from core.errors import ValidationError

logger = logging.getLogger(__name__)


class ActionKind(str, enum.Enum):
    SCRIPT_GENERATE = "script_generate"
    TTS_GENERATE = "tts_generate"
    IMAGE_SEARCH = "image_search"
    VIDEO_SEARCH = "video_search"


class ModelTier(str, enum.Enum):
    ECONOMY = "economy"
    STANDARD = "standard"
    PREMIUM = "premium"


MODEL_TIERS: dict[str, ModelTier] = {
    "gemini-2.5-flash-lite": ModelTier.ECONOMY,
    "gemini-2.5-flash": ModelTier.STANDARD,
    "gemini-3-flash-preview": ModelTier.STANDARD,
    "gemini-1.5-flash": ModelTier.STANDARD,
    "gemini-2.5-pro": ModelTier.PREMIUM,
    "gemini-3-pro-preview": ModelTier.PREMIUM,
    "gemini-1.5-pro": ModelTier.PREMIUM,
}

DEFAULT_MODEL = "gemini-2.5-flash"
DEFAULT_DURATION_MINUTES = 3.0

_DURATION_RE = re.compile(r"^(\d+(?:\.\d+)?)\s*(s|sec|seconds?|m|min|minutes?)?$")


def tier_for_model(model: str) -> ModelTier:
    # Unknown models are billed as standard, never as free.
    return MODEL_TIERS.get(model, ModelTier.STANDARD)


def parse_duration_minutes(duration: Union[str, int, float]) -> float:
    """Accepts ``"30s"``, ``"3m"``, ``"10 minutes"`` or a plain number of minutes."""
    if isinstance(duration, bool):
        raise ValidationError("duration must be a number or a duration string")
    if isinstance(duration, (int, float)):
        if not math.isfinite(duration):
            raise ValidationError("duration must be a finite number")
        if duration < 0:
            raise ValidationError("duration must not be negative")
        return float(duration)
    match = _DURATION_RE.match(str(duration).strip().lower())
    if not match:
        logger.warning("invalid duration %r, defaulting to %s minutes", duration, DEFAULT_DURATION_MINUTES)
        return DEFAULT_DURATION_MINUTES
    value = float(match.group(1))
    if not math.isfinite(value):
        raise ValidationError("duration must be a finite number")
    unit = match.group(2) or "m"
    if unit.startswith("s"):
        return value / 60.0
    return value


@dataclass(frozen=True)
class PricingTable:
    tier_base: Mapping[ModelTier, int]
    per_minute: int
    tts_per_section: int
    image_batch_size: int
    image_batch_price: int
    video_price: int

    @classmethod
    def from_settings(cls, settings: Settings) -> "PricingTable":
        return cls(
            tier_base={
                ModelTier.ECONOMY: settings.script_tier_economy,
                ModelTier.STANDARD: settings.script_tier_standard,
                ModelTier.PREMIUM: settings.script_tier_premium,
            },
            per_minute=settings.script_per_minute,
            tts_per_section=settings.tts_per_section,
            image_batch_size=settings.image_batch_size,
            image_batch_price=settings.image_batch_price,
            video_price=settings.video_price,
        )

    def script_cost(self, model: str, duration_minutes: float) -> int:
        base = self.tier_base[tier_for_model(model)]
        return base + math.ceil(duration_minutes) * self.per_minute

    def tts_cost(self, sections: int) -> int:
        return self.tts_per_section * sections

    def image_search_cost(self, count: int) -> int:
        return math.ceil(count / self.image_batch_size) * self.image_batch_price

    def video_search_cost(self, count: int) -> int:
        return count * self.video_price

    def cost(self, action: Union[ActionKind, str], params: Mapping[str, Any]) -> int:
        try:
            action = ActionKind(action)
        except ValueError:
            raise ValidationError(f"unknown action {action!r}") from None
        if action is ActionKind.SCRIPT_GENERATE:
            minutes = parse_duration_minutes(params.get("duration", DEFAULT_DURATION_MINUTES))
            return self.script_cost(str(params.get("model") or DEFAULT_MODEL), minutes)
        if action is ActionKind.TTS_GENERATE:
            return self.tts_cost(_positive_count(params, "sections"))
        if action is ActionKind.IMAGE_SEARCH:
            return self.image_search_cost(_positive_count(params, "count"))
        if action is ActionKind.VIDEO_SEARCH:
            return self.video_search_cost(_positive_count(params, "count"))
        raise ValidationError(f"unknown action {action!r}")


def _positive_count(params: Mapping[str, Any], name: str) -> int:
    value = params.get(name)
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError(f"{name} must be a positive integer")
    return value
