"""Tests for the stage pipeline engine.

Covers ordering, short-circuiting for each stage kind, transactional
rollback, deferred steps, and error mapping.
"""

import pytest
from pydantic import BaseModel, field_validator
from sqlalchemy import event, select
from sqlalchemy.exc import OperationalError

from parley.database import users
from parley.errors import ConflictError, TransientInfrastructureError
from parley.models import User, model_to_dict
from parley.pipeline import (
    Contract,
    Model,
    Pipeline,
    Policy,
    Step,
    Transaction,
)


class GreetingContract(BaseModel):
    name: str
    times: int = 1

    @field_validator("name")
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("name is required")
        return v


def insert_user(username: str):
    def _insert(ctx):
        user = User(username=username)
        ctx.conn.execute(users.insert().values(**model_to_dict(user)))
        return user

    return _insert


def usernames(engine) -> list[str]:
    with engine.connect() as conn:
        return list(conn.execute(select(users.c.username)).scalars())


# =============================================================================
# Ordering & Values
# =============================================================================


@pytest.mark.asyncio
async def test_runs_stages_in_order_and_accumulates_values(engine) -> None:
    """Each stage sees values produced by earlier stages."""
    calls: list[str] = []

    def record(name, value=None):
        def _handler(ctx):
            calls.append(name)
            return value

        return _handler

    async def greeting(ctx):
        calls.append("greeting")
        return f"hello {ctx['contract'].name}" * ctx["contract"].times

    pipeline = Pipeline(
        "greet",
        [
            Contract(GreetingContract),
            Policy("always", record("always", True)),
            Model("greeting", greeting),
            Step("shout", lambda ctx: ctx["greeting"].upper()),
        ],
        engine,
    )

    result = await pipeline.run({"name": "ada"})

    assert result.success
    assert result.failure is None
    assert calls == ["always", "greeting"]
    assert result["greeting"] == "hello ada"
    assert result["shout"] == "HELLO ADA"
    assert result.completed == ["contract", "always", "greeting", "shout"]


@pytest.mark.asyncio
async def test_seeded_values_are_available(engine) -> None:
    """Keyword values passed to run() are visible to stages."""
    pipeline = Pipeline("seeded", [Model("doubled", lambda ctx: ctx["base"] * 2)], engine)

    result = await pipeline.run({}, base=21)

    assert result["doubled"] == 42


@pytest.mark.asyncio
async def test_step_returning_none_stores_nothing(engine) -> None:
    pipeline = Pipeline("quiet", [Step("noop", lambda ctx: None)], engine)

    result = await pipeline.run({})

    assert result.success
    assert "noop" not in result.values


def test_describe_flattens_transactions(engine) -> None:
    pipeline = Pipeline(
        "described",
        [
            Contract(GreetingContract),
            Transaction((Step("a", lambda ctx: None), Model("b", lambda ctx: 1))),
            Step("c", lambda ctx: None, deferred=True),
        ],
        engine,
    )

    assert pipeline.describe() == [
        ("contract", "contract"),
        ("transaction", "transaction"),
        ("step", "a"),
        ("model", "b"),
        ("step", "c"),
    ]


# =============================================================================
# Short-circuit Failures
# =============================================================================


@pytest.mark.asyncio
async def test_contract_failure_lists_offending_fields(engine) -> None:
    reached = []
    pipeline = Pipeline(
        "greet",
        [Contract(GreetingContract), Step("after", lambda ctx: reached.append(True))],
        engine,
    )

    result = await pipeline.run({"name": "  ", "times": "many"})

    assert result.failed
    assert result.failure.stage == "contract"
    assert result.failure.kind == "validation"
    fields = {e["loc"][0] for e in result.failure.detail["errors"]}
    assert fields == {"name", "times"}
    assert reached == []


@pytest.mark.asyncio
async def test_policy_failure_names_the_policy(engine) -> None:
    reached = []
    pipeline = Pipeline(
        "gated",
        [
            Policy("is_open", lambda ctx: False),
            Step("after", lambda ctx: reached.append(True)),
        ],
        engine,
    )

    result = await pipeline.run({})

    assert result.failure.stage == "is_open"
    assert result.failure.kind == "policy"
    assert result.failure.detail["policy"] == "is_open"
    assert reached == []


@pytest.mark.asyncio
async def test_missing_model_fails(engine) -> None:
    pipeline = Pipeline("fetch", [Model("channel", lambda ctx: None)], engine)

    result = await pipeline.run({})

    assert result.failure.stage == "channel"
    assert result.failure.kind == "not_found"
    assert result.failure.detail["model"] == "channel"


@pytest.mark.asyncio
async def test_optional_model_may_be_missing(engine) -> None:
    pipeline = Pipeline(
        "fetch",
        [Model("reply_to", lambda ctx: None, optional=True), Step("after", lambda ctx: "ran")],
        engine,
    )

    result = await pipeline.run({})

    assert result.success
    assert result["reply_to"] is None
    assert result["after"] == "ran"


@pytest.mark.asyncio
async def test_step_can_fail_explicitly(engine) -> None:
    def fail(ctx):
        raise ConflictError("stale reply target", in_reply_to_id="m1")

    pipeline = Pipeline("explicit", [Step("create", fail)], engine)

    result = await pipeline.run({})

    assert result.failure.stage == "create"
    assert result.failure.kind == "conflict"
    assert result.failure.message == "stale reply target"
    assert result.failure.detail == {"in_reply_to_id": "m1"}


# =============================================================================
# Transactions
# =============================================================================


@pytest.mark.asyncio
async def test_transaction_commits_all_nested_effects(engine) -> None:
    pipeline = Pipeline(
        "tx",
        [Transaction((Step("first", insert_user("ann")), Step("second", insert_user("bob"))))],
        engine,
    )

    result = await pipeline.run({})

    assert result.success
    assert sorted(usernames(engine)) == ["ann", "bob"]
    assert result.completed == ["first", "second", "transaction"]


@pytest.mark.asyncio
async def test_transaction_rolls_back_on_nested_failure(engine) -> None:
    """A failing nested stage undoes every effect of the group."""

    def explode(ctx):
        raise TransientInfrastructureError("draft store unavailable")

    pipeline = Pipeline(
        "tx",
        [
            Model("before", lambda ctx: "kept"),
            Transaction((Step("first", insert_user("ann")), Step("explode", explode))),
            Step("after", lambda ctx: "unreached"),
        ],
        engine,
    )

    result = await pipeline.run({})

    assert result.failed
    assert result.failure.stage == "explode"
    assert result.failure.kind == "transient"
    assert usernames(engine) == []
    assert result["before"] == "kept"
    assert "first" not in result.values
    assert "after" not in result.values
    assert result.completed == ["before"]


@pytest.mark.asyncio
async def test_integrity_error_inside_transaction_is_a_conflict(engine, make_user) -> None:
    make_user("ann")
    pipeline = Pipeline("tx", [Transaction((Step("duplicate", insert_user("ann")),))], engine)

    result = await pipeline.run({})

    assert result.failure.stage == "duplicate"
    assert result.failure.kind == "conflict"
    assert usernames(engine) == ["ann"]


@pytest.mark.asyncio
async def test_collaborator_exception_is_a_transient_failure(engine) -> None:
    """Plain exceptions from collaborators roll back and come back as a result."""

    async def unreachable(ctx):
        raise ConnectionError("draft service unreachable")

    pipeline = Pipeline(
        "tx",
        [Transaction((Step("first", insert_user("ann")), Step("drafts", unreachable)))],
        engine,
    )

    result = await pipeline.run({})

    assert result.failed
    assert result.failure.stage == "drafts"
    assert result.failure.kind == "transient"
    assert "draft service unreachable" in result.failure.message
    assert usernames(engine) == []


@pytest.mark.asyncio
async def test_exception_outside_transaction_is_a_transient_failure(engine) -> None:
    def broken(ctx):
        raise OSError()

    pipeline = Pipeline("plain", [Model("lookup", broken), Step("after", lambda ctx: "x")], engine)

    result = await pipeline.run({})

    assert result.failure.stage == "lookup"
    assert result.failure.kind == "transient"
    assert result.failure.message == "OSError"
    assert "after" not in result.values


@pytest.mark.asyncio
async def test_commit_failure_is_a_transient_failure(engine) -> None:
    def fail_on_commit(ctx):
        def _commit(conn):
            raise OperationalError("COMMIT", None, Exception("disk I/O error"))

        event.listen(ctx.conn, "commit", _commit)

    pipeline = Pipeline(
        "tx",
        [Transaction((Step("first", insert_user("ann")), Step("arm", fail_on_commit)), name="save")],
        engine,
    )

    result = await pipeline.run({})

    assert result.failure.stage == "save"
    assert result.failure.kind == "transient"
    assert "first" not in result.values
    assert usernames(engine) == []


@pytest.mark.asyncio
async def test_rollback_reverts_models_edited_in_place(engine) -> None:
    def attach(ctx):
        ctx["user"].is_staff = True

    def explode(ctx):
        raise TransientInfrastructureError("down")

    pipeline = Pipeline(
        "tx",
        [
            Model("user", lambda ctx: User(username="ann")),
            Transaction((Step("attach", attach), Step("explode", explode))),
        ],
        engine,
    )

    result = await pipeline.run({})

    assert result.failed
    assert result["user"].is_staff is False


@pytest.mark.asyncio
async def test_stages_after_transaction_read_its_values(engine) -> None:
    pipeline = Pipeline(
        "tx",
        [
            Transaction((Step("user", insert_user("ann")),)),
            Step("greeting", lambda ctx: f"welcome {ctx['user'].username}"),
        ],
        engine,
    )

    result = await pipeline.run({})

    assert result["greeting"] == "welcome ann"


# =============================================================================
# Deferred Steps
# =============================================================================


@pytest.mark.asyncio
async def test_deferred_failure_is_reported_without_failing(engine) -> None:
    sent = []

    async def flaky(ctx):
        raise ConnectionError("transport down")

    pipeline = Pipeline(
        "notify",
        [
            Transaction((Step("user", insert_user("ann")),)),
            Step("notify", flaky, deferred=True),
            Step("audit", lambda ctx: sent.append("audit"), deferred=True),
        ],
        engine,
    )

    result = await pipeline.run({})

    assert result.success
    assert usernames(engine) == ["ann"]
    assert [f.stage for f in result.deferred_failures] == ["notify"]
    assert result.deferred_failures[0].kind == "transient"
    assert sent == ["audit"]
