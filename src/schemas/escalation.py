"""Escalation configuration schemas."""

from pydantic import BaseModel, Field, model_validator

from src.models.enums import EscalationTargetType


class EscalationTarget(BaseModel):
    """Who to notify at an escalation level."""

    type: EscalationTargetType = EscalationTargetType.USER
    user_id: str | None = Field(None, max_length=64)
    fallback_user_id: str | None = Field(None, max_length=64)


class EscalationLevel(BaseModel):
    """One step of the escalation chain."""

    level: int = Field(..., ge=1)
    delay_minutes: int = Field(..., ge=0)  # measured from the original delivery
    targets: list[EscalationTarget] = Field(default_factory=list)
    requires_confirmation: bool = False
    message: str | None = Field(None, max_length=2000)


class EscalationConfig(BaseModel):
    """Escalation settings embedded in a reminder.

    Accepts a shorthand for the common single-level case::

        {"enabled": true, "delay_minutes": 15, "targets": ["U2"]}
    """

    enabled: bool = False
    levels: list[EscalationLevel] = Field(default_factory=list)
    max_level: int | None = Field(None, ge=1)
    stop_on_acknowledgment: bool = True
    message: str | None = Field(None, max_length=2000)

    @model_validator(mode="before")
    @classmethod
    def expand_shorthand(cls, data):
        """Turn ``delay_minutes`` + ``targets`` into a level-1 entry."""
        if not isinstance(data, dict) or data.get("levels"):
            return data
        if "delay_minutes" not in data and "targets" not in data:
            return data

        data = dict(data)
        targets = [
            {"type": EscalationTargetType.USER.value, "user_id": t} if isinstance(t, str) else t
            for t in data.pop("targets", [])
        ]
        data["levels"] = [
            {
                "level": 1,
                "delay_minutes": data.pop("delay_minutes", 15),
                "targets": targets,
            }
        ]
        data.setdefault("max_level", 1)
        return data

    @model_validator(mode="after")
    def validate_levels(self) -> "EscalationConfig":
        """Levels must be unique and sorted; max_level defaults to the highest level."""
        numbers = [lvl.level for lvl in self.levels]
        if len(numbers) != len(set(numbers)):
            raise ValueError("Escalation levels must be unique")
        self.levels = sorted(self.levels, key=lambda lvl: lvl.level)
        if self.max_level is None and self.levels:
            self.max_level = self.levels[-1].level
        return self

    def with_defaults(self, default_levels: list[dict], default_max_level: int) -> "EscalationConfig":
        """Fill an empty level table from the configured defaults."""
        if self.levels or not self.enabled:
            return self
        return self.model_copy(
            update={
                "levels": [EscalationLevel.model_validate(lvl) for lvl in default_levels],
                "max_level": self.max_level or default_max_level,
            }
        )

    def get_level(self, level: int) -> EscalationLevel | None:
        """Find the configuration for a level number."""
        return next((lvl for lvl in self.levels if lvl.level == level), None)

    @property
    def effective_max_level(self) -> int:
        """Highest level that may ever run."""
        if self.max_level is not None:
            return self.max_level
        return self.levels[-1].level if self.levels else 0
