import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import models
from app.core.exceptions import (
    ConflictError,
    NotFoundError,
    StoreConnectionError,
    ValidationError,
)
from app.core.notifications import NotificationHub, RequestEvent, hub
from app.core.query.classifier import classify
from app.core.query.connection import Connector, open_connection
from app.core.query.executor import ExecutionOutcome, execute
from app.core.query.parser import ParsedOperation, parse_query
from app.core.query.states import (
    RESUBMITTABLE_STATES,
    RequestStatus,
    ensure_transition,
)


# -----------------------------------------------------------------------------
# REQUEST LIFECYCLE
# Purpose: create, approve, reject and resubmit access requests.
# This is the only writer of status / execution_result / execution_error.
# Every status change from pending is a conditional UPDATE on the stored
# status, so two reviewers racing on one request cannot both win.
# -----------------------------------------------------------------------------

logger = logging.getLogger(__name__)

REVIEWER_ROLES = ("team_lead", "admin")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _outcome_values(outcome: ExecutionOutcome) -> Dict[str, Any]:
    """Column values recording an execution outcome; result and error never both set."""
    if outcome.succeeded:
        return {
            "status": RequestStatus.EXECUTED.value,
            "execution_result": outcome.result,
            "execution_error": None,
            "result_truncated": outcome.truncated,
            "executed_at": _now(),
        }
    return {
        "status": RequestStatus.FAILED.value,
        "execution_result": None,
        "execution_error": outcome.error.message,
        "result_truncated": False,
        "executed_at": _now(),
    }


class RequestLifecycle:
    """
    State machine for AccessRequest records.

    Callers are expected to have checked who is acting: the web layer
    ensures only the owner resubmits and only the assigned team lead or an
    admin approves or rejects.
    """

    def __init__(
        self,
        db: AsyncSession,
        connector: Connector = open_connection,
        notifier: NotificationHub = hub,
    ):
        self.db = db
        self.connector = connector
        self.notifier = notifier

    # -------------------------------------------------------------------------
    # Lookups
    # -------------------------------------------------------------------------

    async def get(self, request_id: int) -> models.AccessRequest:
        request = await self.db.get(models.AccessRequest, request_id)
        if request is None:
            raise NotFoundError(f"Request {request_id} not found")
        return request

    async def _get_instance(self, db_instance_id: Optional[int]) -> models.DBInstance:
        instance = None
        if db_instance_id is not None:
            instance = await self.db.get(models.DBInstance, db_instance_id)
        if instance is None:
            raise NotFoundError(f"Database instance {db_instance_id} not found")
        return instance

    async def _check_reviewer(self, team_lead_id: Optional[int]):
        if team_lead_id is None:
            raise ValidationError("A team lead must be assigned to review the request")
        query = select(models.User).where(models.User.id == team_lead_id)
        result = await self.db.execute(query)
        reviewer = result.scalars().first()
        if reviewer is None or reviewer.role not in REVIEWER_ROLES:
            raise ValidationError(f"User {team_lead_id} cannot review requests")

    async def _current_status(self, request_id: int) -> Optional[str]:
        query = select(models.AccessRequest.status).where(
            models.AccessRequest.id == request_id
        )
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    # -------------------------------------------------------------------------
    # Side channel
    # -------------------------------------------------------------------------

    def _notify(self, request: models.AccessRequest, user_id: Optional[int]):
        if user_id is None:
            return
        try:
            self.notifier.publish(
                RequestEvent(request_id=request.id, status=request.status, user_id=user_id)
            )
        except Exception as error:
            # Best effort: the transition is already committed
            logger.error(f"Failed to publish event for request {request.id}: {error}")

    async def _commit(self):
        try:
            await self.db.commit()
        except SQLAlchemyError:
            await self.db.rollback()
            raise

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    async def create(
        self,
        developer: models.User,
        db_instance_id: int,
        query: str,
        reason: str,
        team_lead_id: Optional[int],
        resubmitted_from_id: Optional[int] = None,
    ) -> models.AccessRequest:
        """
        Parse, classify and store a new request.

        Reads run immediately and are stored already executed or failed.
        Writes are stored pending for the team lead. A ParseError leaves
        nothing behind.
        """
        operation = parse_query(query)

        if not reason or not reason.strip():
            raise ValidationError("A reason is required")
        instance = await self._get_instance(db_instance_id)
        if not instance.is_active:
            raise ValidationError(f"Database instance '{instance.name}' is inactive")
        await self._check_reviewer(team_lead_id)

        classification = classify(operation.operation_kind)
        request = models.AccessRequest(
            developer_id=developer.id,
            team_lead_id=team_lead_id,
            db_instance_id=instance.id,
            db_instance_name=instance.name,
            collection_name=operation.collection_name,
            query_type=operation.operation_kind.value,
            query=query,
            reason=reason.strip(),
            status=RequestStatus.PENDING.value,
            resubmitted_from_id=resubmitted_from_id,
        )

        if classification.auto_execute_eligible:
            outcome = await self._auto_execute(instance, operation)
            values = _outcome_values(outcome)
            ensure_transition(RequestStatus.PENDING, RequestStatus(values["status"]))
            for key, value in values.items():
                setattr(request, key, value)
            request.auto_executed = True
            request.decided_at = request.executed_at

        self.db.add(request)
        await self._commit()
        await self.db.refresh(request)

        logger.info(
            f"Request {request.id} created by user {developer.id}: "
            f"{request.query_type} on '{request.collection_name}' -> {request.status}"
        )
        if request.status == RequestStatus.PENDING.value:
            self._notify(request, request.team_lead_id)
        else:
            self._notify(request, request.developer_id)
        return request

    async def _auto_execute(
        self, instance: models.DBInstance, operation: ParsedOperation
    ) -> ExecutionOutcome:
        try:
            async with self.connector(instance) as database:
                return await execute(operation, database)
        except StoreConnectionError as error:
            logger.warning(f"Auto-execute on '{instance.name}' could not connect: {error}")
            return ExecutionOutcome.failure(error.message)
        except Exception as error:
            logger.exception(f"Unexpected failure auto-executing on '{instance.name}'")
            return ExecutionOutcome.failure(f"Execution failed: {error}")

    async def approve(
        self,
        request_id: int,
        reviewer: models.User,
        comment: Optional[str] = None,
    ) -> models.AccessRequest:
        """
        Claim a pending request, run it and record the outcome.

        Raises:
            NotFoundError: no such request.
            ConflictError: the request is not pending, or another reviewer
                claimed it first.
            StoreConnectionError: the database could not be reached; the
                request is left pending so the approval can be retried.
        """
        request = await self.get(request_id)
        ensure_transition(request.status, RequestStatus.APPROVED)

        operation = parse_query(request.query)
        if operation.operation_kind.value != request.query_type:
            raise ConflictError(
                f"Stored query of request {request_id} no longer matches its operation",
                current_status=request.status,
            )
        classification = classify(operation.operation_kind)
        logger.info(
            f"Approving request {request_id} ({classification.category.value} "
            f"{request.query_type}) by user {reviewer.id}"
        )

        instance = None
        if request.db_instance_id is not None:
            instance = await self.db.get(models.DBInstance, request.db_instance_id)

        async with self.connector(instance) as database:
            await self._claim(request_id, reviewer, comment)
            outcome = await self._run(request_id, operation, database)
            await self._record_outcome(request_id, outcome)

        await self.db.refresh(request)
        logger.info(f"Request {request_id} approved -> {request.status}")
        self._notify(request, request.developer_id)
        return request

    async def _run(
        self, request_id: int, operation: ParsedOperation, database
    ) -> ExecutionOutcome:
        # Once claimed the request must leave APPROVED, so nothing may escape here
        try:
            return await execute(operation, database)
        except Exception as error:
            logger.exception(f"Unexpected failure executing request {request_id}")
            return ExecutionOutcome.failure(f"Execution failed: {error}")

    async def _claim(
        self, request_id: int, reviewer: models.User, comment: Optional[str]
    ):
        stmt = (
            update(models.AccessRequest)
            .where(
                models.AccessRequest.id == request_id,
                models.AccessRequest.status == RequestStatus.PENDING.value,
            )
            .values(
                status=RequestStatus.APPROVED.value,
                reviewed_by_id=reviewer.id,
                review_comment=(comment or "").strip() or None,
                decided_at=_now(),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        await self._commit()
        if result.rowcount != 1:
            current = await self._current_status(request_id)
            raise ConflictError(
                f"Request {request_id} was already decided", current_status=current
            )

    async def _record_outcome(self, request_id: int, outcome: ExecutionOutcome):
        values = _outcome_values(outcome)
        ensure_transition(RequestStatus.APPROVED, RequestStatus(values["status"]))
        stmt = (
            update(models.AccessRequest)
            .where(
                models.AccessRequest.id == request_id,
                models.AccessRequest.status == RequestStatus.APPROVED.value,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self.db.execute(stmt)
        await self._commit()

    async def reject(
        self, request_id: int, reviewer: models.User, comment: str
    ) -> models.AccessRequest:
        if not comment or not comment.strip():
            raise ValidationError("A comment is required to reject a request")

        request = await self.get(request_id)
        ensure_transition(request.status, RequestStatus.REJECTED)

        stmt = (
            update(models.AccessRequest)
            .where(
                models.AccessRequest.id == request_id,
                models.AccessRequest.status == RequestStatus.PENDING.value,
            )
            .values(
                status=RequestStatus.REJECTED.value,
                reviewed_by_id=reviewer.id,
                review_comment=comment.strip(),
                decided_at=_now(),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        await self._commit()
        if result.rowcount != 1:
            current = await self._current_status(request_id)
            raise ConflictError(
                f"Request {request_id} was already decided", current_status=current
            )

        await self.db.refresh(request)
        logger.info(f"Request {request_id} rejected by user {reviewer.id}")
        self._notify(request, request.developer_id)
        return request

    async def resubmit(
        self, request_id: int, developer: models.User
    ) -> models.AccessRequest:
        """Start a fresh request from a rejected or failed one; the source is untouched."""
        source = await self.get(request_id)
        if RequestStatus(source.status) not in RESUBMITTABLE_STATES:
            raise ConflictError(
                f"Only rejected or failed requests can be resubmitted, request {request_id} is {source.status}",
                current_status=source.status,
            )
        if source.db_instance_id is None:
            raise NotFoundError(
                f"Database instance '{source.db_instance_name}' no longer exists"
            )

        logger.info(f"Resubmitting request {request_id} for user {developer.id}")
        return await self.create(
            developer=developer,
            db_instance_id=source.db_instance_id,
            query=source.query,
            reason=source.reason,
            team_lead_id=source.team_lead_id,
            resubmitted_from_id=source.id,
        )
