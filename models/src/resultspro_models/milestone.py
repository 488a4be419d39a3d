"""Patient progress and milestone models."""

from datetime import datetime, timezone
from enum import Enum
from pydantic import BaseModel, Field, computed_field
import uuid


class MilestoneType(str, Enum):
    """Kinds of milestone a patient can reach."""

    WEIGHT_LOSS = "weight_loss"
    WEEK_COMPLETION = "week_completion"
    GOAL_ACHIEVEMENT = "goal_achievement"


class ProgressObservation(BaseModel):
    """A patient's weight and program week at one point in time."""

    starting_weight: float = Field(..., gt=0, description="Weight at enrolment (lb)")
    goal_weight: float = Field(..., gt=0, description="Target weight (lb)")
    current_weight: float = Field(..., gt=0, description="Latest logged weight (lb)")
    current_week: int = Field(..., ge=0, description="Program week")

    @computed_field
    @property
    def weight_loss(self) -> float:
        return self.starting_weight - self.current_weight

    @computed_field
    @property
    def goal_percent(self) -> float:
        """Share of the planned loss achieved so far, as a percentage.

        Zero when the goal is not below the starting weight.
        """
        planned = self.starting_weight - self.goal_weight
        if planned <= 0:
            return 0.0
        return self.weight_loss / planned * 100


class Milestone(BaseModel):
    """A one-time celebratory event for a patient."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), description="Milestone ID")
    patient_id: str = Field(..., description="Patient who reached it")
    milestone_type: MilestoneType = Field(..., description="Ladder the threshold belongs to")
    threshold: int = Field(..., description="Threshold crossed on that ladder")
    message: str = Field("", description="Celebration text")
    achieved_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When it was recorded",
    )

    @property
    def key(self) -> tuple[MilestoneType, int]:
        return (self.milestone_type, self.threshold)
