"""Declarative stage pipeline for Parley services.

A pipeline is an ordered list of typed stage descriptors interpreted against
a shared ``Context``:

- Contract: validate raw params into a pydantic model
- Policy: boolean gate over the context
- Model: fetch or compute a named value (optional models may be None)
- Step: side-effecting action, optionally deferred until after commit
- Transaction: nested stages run atomically on one database transaction

Stages run in declaration order and the first failure stops the run. The
result carries every named value produced plus the failing stage, if any.
"""

from __future__ import annotations

import inspect
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from parley.errors import (
    ConflictError,
    NotFoundError,
    PipelineError,
    PolicyRejection,
    TransientInfrastructureError,
    ValidationError,
)
from parley.logging import get_logger

log = get_logger("pipeline")


# =============================================================================
# Context
# =============================================================================


@dataclass
class Context:
    """Named values accumulated while a pipeline runs.

    Attributes:
        params: Raw caller input, before contract validation.
        conn: Database connection shared by every stage of the run.
        values: Results keyed by stage name, seeded with caller dependencies.
    """

    params: dict[str, Any]
    conn: Connection
    values: dict[str, Any] = field(default_factory=dict)

    def __getitem__(self, key: str) -> Any:
        return self.values[key]

    def __setitem__(self, key: str, value: Any) -> None:
        self.values[key] = value

    def __contains__(self, key: str) -> bool:
        return key in self.values

    def get(self, key: str, default: Any = None) -> Any:
        return self.values.get(key, default)


Handler = Callable[[Context], Any | Awaitable[Any]]


# =============================================================================
# Stage Descriptors
# =============================================================================


class StageKind(str, Enum):
    """Kinds of pipeline stages."""

    CONTRACT = "contract"
    POLICY = "policy"
    MODEL = "model"
    STEP = "step"
    TRANSACTION = "transaction"


@dataclass(frozen=True)
class Contract:
    """Validate ``ctx.params`` into ``schema``; stored under ``name``.

    Context values are passed to pydantic as validation context so that
    validators can read configuration.
    """

    schema: type[BaseModel]
    name: str = "contract"
    kind = StageKind.CONTRACT


@dataclass(frozen=True)
class Policy:
    """Gate that fails the run when ``predicate`` returns a falsy value."""

    name: str
    predicate: Handler
    kind = StageKind.POLICY


@dataclass(frozen=True)
class Model:
    """Fetch a value and store it under ``name``.

    A None result fails the run unless ``optional`` is set.
    """

    name: str
    fetch: Handler
    optional: bool = False
    kind = StageKind.MODEL


@dataclass(frozen=True)
class Step:
    """Side-effecting action. A non-None return value is stored under ``name``.

    Deferred steps run after the transaction committed: their failures are
    recorded on the result but do not fail it.
    """

    name: str
    action: Handler
    deferred: bool = False
    kind = StageKind.STEP


@dataclass(frozen=True)
class Transaction:
    """Run nested stages inside one database transaction."""

    stages: tuple[Contract | Policy | Model | Step, ...]
    name: str = "transaction"
    kind = StageKind.TRANSACTION


Stage = Contract | Policy | Model | Step | Transaction


# =============================================================================
# Results
# =============================================================================


@dataclass
class Failure:
    """Which stage failed and why."""

    stage: str
    kind: str
    message: str
    detail: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_error(cls, stage: str, error: PipelineError) -> "Failure":
        return cls(stage=stage, kind=error.kind, message=error.message, detail=dict(error.detail))


@dataclass
class PipelineResult:
    """Outcome of a pipeline run.

    Attributes:
        success: True when every non-deferred stage completed.
        values: Named results of completed stages.
        failure: First failing stage, when not successful.
        deferred_failures: Failures of deferred steps after commit.
        completed: Names of stages that completed, in order.
    """

    success: bool
    values: dict[str, Any] = field(default_factory=dict)
    failure: Failure | None = None
    deferred_failures: list[Failure] = field(default_factory=list)
    completed: list[str] = field(default_factory=list)

    @property
    def failed(self) -> bool:
        return not self.success

    def __getitem__(self, key: str) -> Any:
        return self.values[key]

    def get(self, key: str, default: Any = None) -> Any:
        return self.values.get(key, default)


class _Abort(Exception):
    """Internal: unwinds a transaction block carrying the failure."""

    def __init__(self, failure: Failure) -> None:
        super().__init__(failure.message)
        self.failure = failure


# =============================================================================
# Pipeline
# =============================================================================


class Pipeline:
    """Interprets a list of stages against a database engine.

    Attributes:
        name: Pipeline name used in logs.
        stages: Ordered stage descriptors.
        engine: SQLAlchemy engine the run's connection comes from.
    """

    def __init__(self, name: str, stages: Sequence[Stage], engine: Engine) -> None:
        self.name = name
        self.stages = tuple(stages)
        self.engine = engine

    def describe(self) -> list[tuple[str, str]]:
        """List (kind, name) for every stage, flattening transactions."""
        described: list[tuple[str, str]] = []
        for stage in self.stages:
            described.append((stage.kind.value, stage.name))
            if isinstance(stage, Transaction):
                described.extend((s.kind.value, s.name) for s in stage.stages)
        return described

    async def run(self, params: dict[str, Any], **values: Any) -> PipelineResult:
        """Run every stage in order, stopping at the first failure.

        Args:
            params: Raw caller input for the contract stage.
            **values: Dependencies made available to stages by name.

        Returns:
            PipelineResult describing success or the failing stage.
        """
        result = PipelineResult(success=True)

        with self.engine.connect() as conn:
            ctx = Context(params=dict(params), conn=conn, values=dict(values))

            for stage in self.stages:
                failure = await self._run_stage(stage, ctx, result)
                if failure is not None:
                    result.success = False
                    result.failure = failure
                    log.info(
                        "pipeline_failed",
                        pipeline=self.name,
                        stage=failure.stage,
                        kind=failure.kind,
                        error=failure.message,
                    )
                    break

            if conn.in_transaction():
                if result.success:
                    conn.commit()
                else:
                    conn.rollback()

        result.values = ctx.values
        return result

    async def _run_stage(
        self, stage: Stage, ctx: Context, result: PipelineResult
    ) -> Failure | None:
        if isinstance(stage, Transaction):
            return await self._run_transaction(stage, ctx, result)

        try:
            await self._execute(stage, ctx)
        except PipelineError as e:
            failure = Failure.from_error(stage.name, e)
        except IntegrityError as e:
            failure = Failure(stage.name, ConflictError.kind, str(e.orig))
        except SQLAlchemyError as e:
            failure = Failure(stage.name, TransientInfrastructureError.kind, str(e))
        except Exception as e:
            # Collaborator faults (transport, IO) are reported, never raised
            log.exception("stage_raised", pipeline=self.name, stage=stage.name)
            failure = Failure(
                stage.name, TransientInfrastructureError.kind, str(e) or type(e).__name__
            )
        else:
            result.completed.append(stage.name)
            log.debug("stage_completed", pipeline=self.name, stage=stage.name, kind=stage.kind.value)
            return None

        if isinstance(stage, Step) and stage.deferred:
            log.warning(
                "deferred_stage_failed",
                pipeline=self.name,
                stage=stage.name,
                kind=failure.kind,
                error=failure.message,
            )
            result.deferred_failures.append(failure)
            return None

        log.debug("stage_failed", pipeline=self.name, stage=stage.name, kind=failure.kind)
        return failure

    async def _run_transaction(
        self, stage: Transaction, ctx: Context, result: PipelineResult
    ) -> Failure | None:
        conn = ctx.conn
        # Reads before the group ran in an implicit transaction; end it
        if conn.in_transaction():
            conn.commit()

        snapshot = _snapshot(ctx.values)
        completed_before = len(result.completed)
        try:
            with conn.begin():
                for nested in stage.stages:
                    failure = await self._run_stage(nested, ctx, result)
                    if failure is not None:
                        raise _Abort(failure)
        except _Abort as abort:
            ctx.values.clear()
            ctx.values.update(snapshot)
            del result.completed[completed_before:]
            log.warning(
                "transaction_rolled_back",
                pipeline=self.name,
                transaction=stage.name,
                stage=abort.failure.stage,
                kind=abort.failure.kind,
            )
            return abort.failure
        except IntegrityError as e:
            # Deferred constraint violations surface at commit
            ctx.values.clear()
            ctx.values.update(snapshot)
            del result.completed[completed_before:]
            return Failure(stage.name, ConflictError.kind, str(e.orig))
        except SQLAlchemyError as e:
            ctx.values.clear()
            ctx.values.update(snapshot)
            del result.completed[completed_before:]
            log.warning(
                "transaction_commit_failed", pipeline=self.name, transaction=stage.name, error=str(e)
            )
            return Failure(stage.name, TransientInfrastructureError.kind, str(e))

        result.completed.append(stage.name)
        log.debug("transaction_committed", pipeline=self.name, transaction=stage.name)
        return None

    async def _execute(self, stage: Contract | Policy | Model | Step, ctx: Context) -> None:
        if isinstance(stage, Contract):
            try:
                ctx[stage.name] = stage.schema.model_validate(ctx.params, context=ctx.values)
            except PydanticValidationError as e:
                raise ValidationError(
                    f"Invalid {stage.name}",
                    errors=e.errors(include_url=False, include_context=False),
                ) from e

        elif isinstance(stage, Policy):
            if not await _call(stage.predicate, ctx):
                raise PolicyRejection(stage.name)

        elif isinstance(stage, Model):
            value = await _call(stage.fetch, ctx)
            if value is None and not stage.optional:
                raise NotFoundError(stage.name)
            ctx[stage.name] = value

        elif isinstance(stage, Step):
            value = await _call(stage.action, ctx)
            if value is not None:
                ctx[stage.name] = value


def _snapshot(values: dict[str, Any]) -> dict[str, Any]:
    """Copy context values so in-place edits to models can be undone."""
    return {
        key: value.model_copy(deep=True) if isinstance(value, BaseModel) else value
        for key, value in values.items()
    }


async def _call(handler: Handler, ctx: Context) -> Any:
    """Invoke a sync or async handler."""
    value = handler(ctx)
    if inspect.isawaitable(value):
        value = await value
    return value
