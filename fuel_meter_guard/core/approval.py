"""
Manager approval of estimated calculations.

States:
- NOT_APPLICABLE: the calculation is measured, nothing to approve
- PENDING: estimated and not yet decided
- DECIDED: a manager approved or rejected it

Approval records a trust decision about an estimate. It does not turn the
estimate into a measured figure, so is_estimated stays True either way.
"""

import logging
from dataclasses import replace
from datetime import date
from enum import Enum
from typing import List, Optional

from .clock import Clock
from .errors import NotFoundError, StateError, ValidationError
from .permissions import Actor, require_manager, require_station_access
from fuel_meter_guard.storage.db import write_transaction
from fuel_meter_guard.storage.models import ApprovalDecision, DailyCalculation
from fuel_meter_guard.storage.repository import MeterRepository

logger = logging.getLogger(__name__)


class ApprovalState(Enum):
    """Approval lifecycle of a daily calculation."""
    NOT_APPLICABLE = "not_applicable"
    PENDING = "pending"
    DECIDED = "decided"


def approval_state(calc: DailyCalculation) -> ApprovalState:
    if not calc.is_estimated:
        return ApprovalState.NOT_APPLICABLE
    if calc.approved_by is None:
        return ApprovalState.PENDING
    return ApprovalState.DECIDED


class ApprovalWorkflow:
    """Moves estimated calculations from PENDING to DECIDED."""

    def __init__(self, repository: MeterRepository, clock: Clock):
        self.repository = repository
        self.clock = clock

    def decide(
        self,
        calculation_id: int,
        approved: Optional[bool],
        manager: Optional[Actor],
        notes: Optional[str] = None,
    ) -> DailyCalculation:
        """Approve or reject an estimated calculation.

        Args:
            calculation_id: Calculation to decide
            approved: True to approve, False to reject
            manager: Caller; must be a manager
            notes: Optional reasoning stored with the decision

        Returns:
            The decided calculation

        Raises:
            AuthorizationError: If the caller is not a manager of the station
            ValidationError: If approved is missing
            NotFoundError: If the calculation does not exist
            StateError: If the calculation is not estimated or already decided
        """
        manager = require_manager(manager, "approve or reject estimated calculations")
        if approved is None or not isinstance(approved, bool):
            raise ValidationError("approved is required and must be true or false")
        now = self.clock.now()

        with write_transaction(self.repository.db_path) as conn:
            calc = self.repository.get_calculation(calculation_id, conn=conn)
            if calc is None:
                raise NotFoundError(f"Calculation {calculation_id} not found")
            pump = self.repository.get_pump(calc.pump_id, conn=conn)
            require_station_access(manager, pump.station_id)

            state = approval_state(calc)
            if state == ApprovalState.NOT_APPLICABLE:
                raise StateError("Only estimated calculations can be approved")
            if state == ApprovalState.DECIDED:
                raise StateError(
                    f"Calculation {calculation_id} was already "
                    f"{calc.approval_decision.value if calc.approval_decision else 'decided'} "
                    f"by {calc.approved_by}"
                )

            decision = ApprovalDecision.APPROVED if approved else ApprovalDecision.REJECTED
            decided = self.repository.upsert_calculation(
                replace(
                    calc,
                    approved_by=manager.user_id,
                    approved_at=now,
                    approval_decision=decision,
                    approval_notes=notes,
                ),
                conn=conn,
            )

        logger.info(
            "Calculation %s %s by %s", calculation_id, decision.value, manager.user_id
        )
        return decided

    def pending(
        self,
        station_id: str,
        start_date: date = date.min,
        end_date: date = date.max,
    ) -> List[DailyCalculation]:
        """Estimated calculations still waiting for a decision."""
        return [
            calc
            for calc in self.repository.list_calculations(
                station_id, start_date, end_date, estimated_only=True
            )
            if approval_state(calc) == ApprovalState.PENDING
        ]
