"""
Saga orchestration for multi-service workflows.

Implements the Saga pattern with compensating actions. Order creation runs
as: record reservation intent -> reserve inventory -> persist order. A step
that fails part-way (e.g. reserved two of three items) is compensated along
with every step that completed before it.
"""
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog

logger = structlog.get_logger(__name__)

StepAction = Callable[[Dict[str, Any]], Awaitable[Any]]


class SagaState(Enum):
    """Saga execution states."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    COMPENSATING = "compensating"
    COMPENSATED = "compensated"


class StepStatus(Enum):
    """Step execution status."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    COMPENSATED = "compensated"


class SagaStep:
    """
    A single step in a saga.

    Each step has:
    - Forward action (the main operation)
    - Compensating action (undo operation), receiving the shared context

    When ``compensate_on_failure`` is set, the step's own compensation also
    runs if its forward action raised, for steps that may have done part of
    their work before failing.
    """

    def __init__(
        self,
        name: str,
        forward_action: StepAction,
        compensating_action: Optional[StepAction] = None,
        compensate_on_failure: bool = False,
    ):
        self.name = name
        self.forward_action = forward_action
        self.compensating_action = compensating_action
        self.compensate_on_failure = compensate_on_failure
        self.status = StepStatus.PENDING
        self.result: Optional[Any] = None
        self.error: Optional[str] = None

    @property
    def needs_compensation(self) -> bool:
        if self.compensating_action is None:
            return False
        if self.status == StepStatus.COMPLETED:
            return True
        return self.status == StepStatus.FAILED and self.compensate_on_failure

    async def execute(self, context: Dict[str, Any]) -> Any:
        """
        Execute the forward action.

        Raises:
            Exception: If step execution fails
        """
        logger.debug("saga_step_executing", step=self.name)

        try:
            self.result = await self.forward_action(context)
            self.status = StepStatus.COMPLETED
            logger.debug("saga_step_completed", step=self.name)
            return self.result
        except Exception as e:
            self.status = StepStatus.FAILED
            self.error = str(e)
            logger.warning("saga_step_failed", step=self.name, error=str(e))
            raise

    async def compensate(self, context: Dict[str, Any]) -> None:
        """Execute the compensating action. Failures are logged, never raised."""
        if not self.needs_compensation:
            return

        logger.info("saga_step_compensating", step=self.name, status=self.status.value)

        try:
            await self.compensating_action(context)
            self.status = StepStatus.COMPENSATED
            logger.info("saga_step_compensated", step=self.name)
        except Exception as e:
            # Left for the reservation reconciler
            logger.error(
                "saga_step_compensation_failed",
                step=self.name,
                error=str(e),
                error_type=type(e).__name__,
            )


class Saga:
    """
    A saga (distributed transaction without a shared commit).

    ``execute`` either runs every step or compensates whatever ran and
    re-raises the error of the failing step.
    """

    def __init__(self, name: str, saga_id: Optional[str] = None):
        self.saga_id = saga_id or str(uuid.uuid4())
        self.name = name
        self.steps: List[SagaStep] = []
        self.state = SagaState.PENDING
        self.context: Dict[str, Any] = {}
        self.created_at = datetime.now(timezone.utc)
        self.completed_at: Optional[datetime] = None

    def add_step(
        self,
        name: str,
        forward_action: StepAction,
        compensating_action: Optional[StepAction] = None,
        compensate_on_failure: bool = False,
    ) -> "Saga":
        """
        Add a step to the saga.

        Returns:
            Saga: Self for method chaining
        """
        self.steps.append(
            SagaStep(
                name=name,
                forward_action=forward_action,
                compensating_action=compensating_action,
                compensate_on_failure=compensate_on_failure,
            )
        )
        return self

    async def execute(self) -> Dict[str, Any]:
        """
        Execute all steps in order.

        Returns:
            Dict[str, Any]: Shared context, with each step's result stored
            under ``<step>_result``

        Raises:
            Exception: The failing step's error, after compensation
        """
        logger.info("saga_execution_started", saga_id=self.saga_id, name=self.name)
        self.state = SagaState.IN_PROGRESS
        attempted: List[SagaStep] = []

        try:
            for step in self.steps:
                attempted.append(step)
                result = await step.execute(self.context)
                self.context[f"{step.name}_result"] = result
        except Exception as e:
            logger.warning(
                "saga_execution_failed",
                saga_id=self.saga_id,
                name=self.name,
                failed_step=attempted[-1].name,
                error=str(e),
            )
            self.state = SagaState.COMPENSATING
            await self._compensate(attempted)
            self.state = SagaState.COMPENSATED
            self.completed_at = datetime.now(timezone.utc)
            raise

        self.state = SagaState.COMPLETED
        self.completed_at = datetime.now(timezone.utc)
        logger.info(
            "saga_completed_successfully",
            saga_id=self.saga_id,
            name=self.name,
            steps_completed=len(attempted),
        )
        return self.context

    async def _compensate(self, attempted: List[SagaStep]) -> None:
        """Compensate attempted steps in reverse order."""
        logger.info(
            "saga_compensation_started",
            saga_id=self.saga_id,
            steps_attempted=len(attempted),
        )
        for step in reversed(attempted):
            await step.compensate(self.context)
        logger.info("saga_compensation_completed", saga_id=self.saga_id)
