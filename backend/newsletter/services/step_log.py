from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any, TypeVar

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from newsletter.db.models import (
    WorkflowRun,
    WorkflowRunStatus,
    WorkflowStep,
    WorkflowStepStatus,
)
from newsletter.services.errors import ServiceError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class StepLog:
    """Durable memo of workflow step outcomes keyed by ``(run_id, step_name)``.

    A completed step is never executed again for the same run; its stored
    result is returned instead. Failed steps run again on replay. Step results
    must be JSON serialisable. Every write is committed before ``do`` returns.
    """

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self.session_factory = session_factory

    def start_run(self, *, run_id: str, workflow: str, params: dict[str, Any]) -> bool:
        """Register a run. Returns ``True`` when the run already existed (replay).

        A replay must ask for the same workflow with the same params, otherwise
        memoized steps would answer for a different request.
        """
        now = datetime.now(UTC)
        with self.session_factory() as session:
            run = session.get(WorkflowRun, run_id)
            if run is not None:
                if run.workflow != workflow or run.params != params:
                    logger.warning(
                        "workflow_run_params_mismatch",
                        extra={"run_id": run_id, "workflow": workflow},
                    )
                    raise ServiceError.conflict(
                        f"Run {run_id} was started for {run.workflow} with {run.params}",
                        code="RUN_PARAMS_MISMATCH",
                    )
                run.status = WorkflowRunStatus.running.value
                run.error = None
                run.updated_at = now
                session.add(run)
                session.commit()
                return True

            session.add(
                WorkflowRun(
                    run_id=run_id,
                    workflow=workflow,
                    params=params,
                    status=WorkflowRunStatus.running.value,
                    created_at=now,
                    updated_at=now,
                )
            )
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
            else:
                return False
        # Lost a concurrent insert of the same run id; check it as a replay.
        return self.start_run(run_id=run_id, workflow=workflow, params=params)

    def finish_run(self, run_id: str, *, result: dict[str, Any]) -> None:
        self._close_run(
            run_id, status=WorkflowRunStatus.completed, result=result, error=None
        )

    def fail_run(self, run_id: str, *, error: str) -> None:
        self._close_run(run_id, status=WorkflowRunStatus.failed, result=None, error=error)

    def get_run(self, run_id: str) -> WorkflowRun | None:
        with self.session_factory() as session:
            return session.get(WorkflowRun, run_id)

    def completed_result(self, run_id: str, step_name: str) -> tuple[bool, Any]:
        with self.session_factory() as session:
            step = self._get_step(session, run_id, step_name)
            if step is not None and step.status == WorkflowStepStatus.completed.value:
                return True, step.result
        return False, None

    def do(self, run_id: str, step_name: str, fn: Callable[[], T]) -> T:
        done, result = self.completed_result(run_id, step_name)
        if done:
            logger.debug(
                "workflow_step_replayed",
                extra={"run_id": run_id, "step_name": step_name},
            )
            return result

        try:
            value = fn()
        except Exception as exc:
            self._record(
                run_id,
                step_name,
                status=WorkflowStepStatus.failed,
                result=None,
                error=str(exc) or exc.__class__.__name__,
            )
            raise

        self._record(
            run_id,
            step_name,
            status=WorkflowStepStatus.completed,
            result=value,
            error=None,
        )
        return value

    def _record(
        self,
        run_id: str,
        step_name: str,
        *,
        status: WorkflowStepStatus,
        result: Any,
        error: str | None,
    ) -> None:
        now = datetime.now(UTC)
        with self.session_factory() as session:
            step = self._get_step(session, run_id, step_name)
            if step is None:
                step = WorkflowStep(
                    run_id=run_id,
                    step_name=step_name,
                    attempt_count=0,
                    created_at=now,
                )
            step.status = status.value
            step.result = result
            step.error = (error or "")[:500] or None
            step.attempt_count += 1
            step.updated_at = now
            session.add(step)
            session.commit()

    def _close_run(
        self,
        run_id: str,
        *,
        status: WorkflowRunStatus,
        result: dict[str, Any] | None,
        error: str | None,
    ) -> None:
        now = datetime.now(UTC)
        with self.session_factory() as session:
            run = session.get(WorkflowRun, run_id)
            if run is None:
                return
            run.status = status.value
            run.result = result
            run.error = error
            run.updated_at = now
            run.completed_at = now
            session.add(run)
            session.commit()

    def _get_step(
        self, session: Session, run_id: str, step_name: str
    ) -> WorkflowStep | None:
        return session.scalar(
            select(WorkflowStep).where(
                WorkflowStep.run_id == run_id,
                WorkflowStep.step_name == step_name,
            )
        )
