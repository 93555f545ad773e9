# backend/studybuddy/tasks/payment_tasks.py
"""
Celery tasks for settlement and payouts.

Periodic jobs:
- process_pending_transfers: execute settled transfers for onboarded tutors
- auto_confirm_sessions: complete sessions nobody confirmed in time
- retry_deferred_settlements: settle completed sessions whose payment landed later
"""

from contextlib import contextmanager
from datetime import datetime, timezone
import logging
from typing import (
    Any,
    Callable,
    Dict,
    Iterator,
    List,
    ParamSpec,
    Protocol,
    TypedDict,
    TypeVar,
    cast,
)

from celery.result import AsyncResult
from sqlalchemy.orm import Session

from ..core.exceptions import DomainException
from ..database import SessionLocal
from ..repositories.factory import RepositoryFactory
from ..services.confirmation_service import ConfirmationService
from ..services.settlement_service import SettlementService
from .celery_app import celery_app

P = ParamSpec("P")
R = TypeVar("R", covariant=True)


class TaskWrapper(Protocol[P, R]):
    def __call__(self, *args: P.args, **kwargs: P.kwargs) -> R:
        ...

    delay: Callable[..., AsyncResult]
    apply_async: Callable[..., AsyncResult]


def typed_task(
    *task_args: Any, **task_kwargs: Any
) -> Callable[[Callable[P, R]], TaskWrapper[P, R]]:
    """Return a typed Celery task decorator for mypy."""

    return cast(
        Callable[[Callable[P, R]], TaskWrapper[P, R]],
        celery_app.task(*task_args, **task_kwargs),
    )


class TransferJobResults(TypedDict):
    tutors: int
    completed: int
    failed: int
    retry_pending: int
    skipped: List[Dict[str, str]]
    processed_at: str


logger = logging.getLogger(__name__)


@contextmanager
def _session_scope() -> Iterator[Session]:
    """Provide transactional scope for use in tasks."""
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@typed_task(bind=True, max_retries=3, name="studybuddy.tasks.payment_tasks.process_pending_transfers")
def process_pending_transfers(self: Any) -> TransferJobResults:
    """Execute settled pending transfers for every tutor that has some."""
    results: TransferJobResults = {
        "tutors": 0,
        "completed": 0,
        "failed": 0,
        "retry_pending": 0,
        "skipped": [],
        "processed_at": datetime.now(timezone.utc).isoformat(),
    }
    with _session_scope() as db:
        transfer_repo = RepositoryFactory.create_transfer_repository(db)
        service = SettlementService(db)
        for tutor_id in transfer_repo.find_tutors_with_executable_transfers():
            results["tutors"] += 1
            try:
                batch = service.execute_transfers(tutor_id, processed_by="celery")
            except DomainException as e:
                # Not onboarded yet; the account.updated webhook picks these up
                results["skipped"].append({"tutor_id": tutor_id, "reason": e.message})
                continue
            results["completed"] += len(batch.completed)
            results["failed"] += len(batch.failed)
            results["retry_pending"] += len(batch.retry_pending)

    logger.info(
        f"Transfer run: {results['completed']} completed, {results['failed']} failed, "
        f"{results['retry_pending']} pending retry across {results['tutors']} tutors"
    )
    return results


@typed_task(bind=True, max_retries=3, name="studybuddy.tasks.payment_tasks.execute_tutor_transfers")
def execute_tutor_transfers(self: Any, tutor_id: str, retry_failed: bool = False) -> Dict[str, Any]:
    """Execute one tutor's transfers (e.g. after an operator fixed their account)."""
    with _session_scope() as db:
        try:
            batch = SettlementService(db).execute_transfers(
                tutor_id, retry_failed=retry_failed, processed_by="celery"
            )
        except DomainException as e:
            logger.warning(f"Transfers for tutor {tutor_id} not executed: {e.message}")
            return {"tutor_id": tutor_id, "error": e.code}
        return batch.to_dict()


@typed_task(bind=True, max_retries=3, name="studybuddy.tasks.payment_tasks.auto_confirm_sessions")
def auto_confirm_sessions(self: Any, limit: int = 100) -> Dict[str, Any]:
    """Complete sessions whose confirmation window has passed."""
    with _session_scope() as db:
        completed = ConfirmationService(db).auto_confirm_due(limit)
    logger.info(f"Auto-confirmed {len(completed)} sessions")
    return {"completed": completed, "processed_at": datetime.now(timezone.utc).isoformat()}


@typed_task(
    bind=True, max_retries=3, name="studybuddy.tasks.payment_tasks.retry_deferred_settlements"
)
def retry_deferred_settlements(self: Any, limit: int = 100) -> Dict[str, int]:
    """Settle completed sessions that were deferred waiting on payment."""
    with _session_scope() as db:
        counts = SettlementService(db).retry_deferred(limit)
    logger.info(f"Deferred settlement run: {counts}")
    return counts
