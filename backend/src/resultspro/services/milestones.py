"""Milestone rules: turn a progress observation into one-time celebrations.

Three threshold ladders are checked against each observation:

- pounds lost since enrolment
- program weeks completed
- percentage of the planned weight loss achieved

A threshold fires once per patient. ``evaluate_milestones`` is pure and only
needs the set of already-recorded (type, threshold) pairs; ``MilestoneService``
persists the results, relying on the database's unique index so two writers
observing the same crossing cannot both record it.
"""

import logging
from typing import Iterable

from resultspro_models import Milestone, MilestoneType, ProgressObservation
from resultspro.db import db as default_db
from resultspro.errors import ValidationError
from resultspro.sse import EventBus, event_bus, notify_milestone_reached

logger = logging.getLogger(__name__)

WEIGHT_LOSS_THRESHOLDS = (5, 10, 15, 20, 25, 30)
WEEK_COMPLETION_THRESHOLDS = (4, 8, 12, 16, 20, 24)
GOAL_PERCENT_THRESHOLDS = (25, 50, 75, 100)


def milestone_message(
    milestone_type: MilestoneType, threshold: int, observation: ProgressObservation
) -> str:
    """Celebration copy for a milestone."""
    if milestone_type == MilestoneType.WEIGHT_LOSS:
        return (
            f"Congratulations! You've lost {threshold} pounds! That's incredible "
            "progress on your health journey. Keep up the amazing work!"
        )
    if milestone_type == MilestoneType.WEEK_COMPLETION:
        return (
            f"Amazing! You've completed {threshold} weeks of your program! Your "
            "dedication and consistency are truly inspiring. You're "
            f"{round(observation.goal_percent)}% of the way to your goal!"
        )
    if threshold >= 100:
        return (
            "GOAL ACHIEVED! You've reached 100% of your weight loss target! This is "
            "a monumental achievement that shows your incredible dedication and "
            "perseverance!"
        )
    message = f"You've reached {threshold}% of your weight loss goal! "
    if threshold >= 75:
        return message + "You're in the final stretch - amazing work!"
    if threshold >= 50:
        return message + "You're halfway there - fantastic progress!"
    return message + "You're off to a great start!"


def evaluate_milestones(
    patient_id: str,
    observation: ProgressObservation,
    recorded: Iterable[tuple[MilestoneType, int]] = (),
) -> list[Milestone]:
    """Milestones crossed by this observation that are not yet recorded.

    A threshold is crossed when the observed value is at or above it.
    Output order: weight loss, then weeks, then goal percentage, each ascending.
    """
    already = set(recorded)
    ladders = (
        (MilestoneType.WEIGHT_LOSS, WEIGHT_LOSS_THRESHOLDS, observation.weight_loss),
        (
            MilestoneType.WEEK_COMPLETION,
            WEEK_COMPLETION_THRESHOLDS,
            observation.current_week,
        ),
        (MilestoneType.GOAL_ACHIEVEMENT, GOAL_PERCENT_THRESHOLDS, observation.goal_percent),
    )

    reached = []
    for milestone_type, thresholds, value in ladders:
        for threshold in thresholds:
            if value < threshold or (milestone_type, threshold) in already:
                continue
            reached.append(
                Milestone(
                    patient_id=patient_id,
                    milestone_type=milestone_type,
                    threshold=threshold,
                    message=milestone_message(milestone_type, threshold, observation),
                )
            )
    return reached


class MilestoneService:
    """Record milestones as patients log progress."""

    def __init__(self, database=None, bus: EventBus | None = None):
        self.db = database if database is not None else default_db
        self.bus = bus if bus is not None else event_bus

    async def list_milestones(self, patient_id: str) -> list[Milestone]:
        return await self.db.list_milestones(patient_id)

    async def record_progress(
        self, patient_id: str, observation: ProgressObservation
    ) -> list[Milestone]:
        """Evaluate an observation and persist new milestones.

        Returns only the milestones this call actually inserted.
        """
        if not patient_id:
            raise ValidationError("patient_id is required")

        existing = await self.db.list_milestones(patient_id)
        candidates = evaluate_milestones(
            patient_id, observation, recorded=(m.key for m in existing)
        )

        new: list[Milestone] = []
        for milestone in candidates:
            if await self.db.record_milestone(milestone):
                new.append(milestone)
                logger.info(
                    f"Patient {patient_id} reached {milestone.milestone_type.value} "
                    f"milestone {milestone.threshold}"
                )
                await notify_milestone_reached(self.bus, milestone)
        return new
