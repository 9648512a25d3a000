import anyio
import pytest

from pipeline_orchestrator.config import ErrorPolicy, RetryPolicy
from pipeline_orchestrator.models import HttpCommand, JobDescriptor, JobStatus, OutcomeKind, RunStatus

from conftest import ScriptedExecutor

pytestmark = pytest.mark.anyio


async def test_fan_out_after_root(make_job, make_orchestrator):
    executor = ScriptedExecutor(delay=0.02)
    orch = make_orchestrator(executor, max_concurrency=2)
    result = await orch.run([make_job("A"), make_job("B", needs=["A"]), make_job("C", needs=["A"])])

    assert result.status is RunStatus.SUCCEEDED
    assert {jid: s.status for jid, s in result.states.items()} == {
        "A": JobStatus.SUCCEEDED,
        "B": JobStatus.SUCCEEDED,
        "C": JobStatus.SUCCEEDED,
    }
    assert result.dispatch_order == ["A", "B", "C"]
    assert executor.max_running == 2


async def test_exhausted_retries_fail_and_skip_dependents(make_job, make_orchestrator):
    executor = ScriptedExecutor({"A": ["fail"]})
    orch = make_orchestrator(executor)
    result = await orch.run([make_job("A", max_retries=2), make_job("B", needs=["A"])])

    assert result.status is RunStatus.FAILED
    assert result.states["A"].status is JobStatus.FAILED
    assert result.states["A"].attempts == 3
    assert executor.attempts_of("A") == 3
    assert result.states["B"].status is JobStatus.SKIPPED
    assert result.states["B"].reason == "dependency 'A' failed"
    assert executor.attempts_of("B") == 0


async def test_cancel_running_job(make_job, make_orchestrator, wait_until):
    executor = ScriptedExecutor({"A": ["hang"]})
    orch = make_orchestrator(executor)
    ctx = orch.prepare([make_job("A")])
    results = []

    async with anyio.create_task_group() as tg:
        async def run():
            results.append(await orch.execute(ctx))

        tg.start_soon(run)
        await wait_until(lambda: ctx.tracker.status("A") is JobStatus.RUNNING)
        orch.cancel(ctx.run_id, "user requested")

    result = results[0]
    assert result.status is RunStatus.CANCELLED
    assert result.cancel_reason == "user requested"
    assert result.states["A"].status is JobStatus.CANCELLED
    assert result.states["A"].reason == "user requested"
    assert result.states["A"].attempts == 1
    attempt = result.states["A"].history[0]
    assert attempt.finished_at is not None
    assert attempt.outcome.kind is OutcomeKind.FAILURE
    assert attempt.outcome.reason == "cancelled: user requested"


async def test_failed_attempt_is_retried_until_success(make_job, make_orchestrator):
    executor = ScriptedExecutor({"A": ["fail", "fail", "ok"]})
    orch = make_orchestrator(executor)
    result = await orch.run([make_job("A", max_retries=3), make_job("B", needs=["A"])])

    assert result.success
    state = result.states["A"]
    assert state.attempts == 3
    assert [a.outcome.kind for a in state.history] == [
        OutcomeKind.FAILURE,
        OutcomeKind.FAILURE,
        OutcomeKind.SUCCESS,
    ]
    assert result.states["B"].status is JobStatus.SUCCEEDED


async def test_retry_limit_overrides_job_retries(make_job, make_orchestrator):
    executor = ScriptedExecutor({"A": ["fail"]})
    orch = make_orchestrator(executor, retry=RetryPolicy(base_delay_s=0.0, jitter=0.0, retry_limit=0))
    result = await orch.run([make_job("A", max_retries=5)])
    assert result.states["A"].attempts == 1


async def test_failure_contained_to_subtree(make_job, make_orchestrator):
    executor = ScriptedExecutor({"a": ["fail"]})
    orch = make_orchestrator(executor)
    result = await orch.run([
        make_job("a"),
        make_job("b", needs=["a"]),
        make_job("c", needs=["b"]),
        make_job("d"),
        make_job("e", needs=["d"]),
    ])
    assert result.status is RunStatus.FAILED
    assert result.jobs_in(JobStatus.SKIPPED) == ["b", "c"]
    assert result.jobs_in(JobStatus.SUCCEEDED) == ["d", "e"]


async def test_job_waits_for_all_dependencies(make_job, make_orchestrator):
    executor = ScriptedExecutor({"slow": ["ok"]}, delay=0.01)
    orch = make_orchestrator(executor)
    result = await orch.run([
        make_job("fast"),
        make_job("slow"),
        make_job("join", needs=["fast", "slow"]),
    ])
    assert result.success
    assert result.dispatch_order[-1] == "join"


async def test_dispatch_order_is_deterministic_with_single_slot(make_job, make_orchestrator):
    jobs = [
        make_job("c"),
        make_job("a"),
        make_job("d", needs=["a"]),
        make_job("b"),
    ]
    orders = []
    for _ in range(3):
        executor = ScriptedExecutor()
        result = await make_orchestrator(executor, max_concurrency=1).run(jobs)
        assert executor.max_running == 1
        orders.append(result.dispatch_order)
    assert orders[0] == ["a", "b", "c", "d"]
    assert orders[0] == orders[1] == orders[2]


async def test_heavy_job_blocks_lighter_ones_until_capacity_frees(make_job, make_orchestrator):
    executor = ScriptedExecutor(delay=0.02)
    orch = make_orchestrator(executor, max_concurrency=2)
    result = await orch.run([make_job("a", weight=2), make_job("b"), make_job("c")])
    assert result.success
    assert result.dispatch_order == ["a", "b", "c"]
    # b and c share the slots a held alone
    assert executor.max_running == 2


async def test_weight_above_limit_is_clamped(make_job, make_orchestrator):
    executor = ScriptedExecutor()
    result = await make_orchestrator(executor, max_concurrency=2).run([make_job("big", weight=10)])
    assert result.success


async def test_per_label_limit(make_job, make_orchestrator):
    executor = ScriptedExecutor(delay=0.02)
    orch = make_orchestrator(executor, max_concurrency=4, per_label_limits={"deploy": 1})
    jobs = [make_job(f"d{i}", concurrency_label="deploy") for i in range(3)] + [make_job("unit")]
    result = await orch.run(jobs)
    assert result.success
    assert executor.max_per_label["deploy"] == 1
    assert executor.max_running == 2


async def test_fail_fast_cancels_remaining_jobs(make_job, make_orchestrator):
    executor = ScriptedExecutor({"a": ["fail"], "b": ["hang"]})
    orch = make_orchestrator(executor, max_concurrency=2, error_policy=ErrorPolicy.FAIL_FAST)
    result = await orch.run([make_job("a"), make_job("b"), make_job("c", needs=["b"])])

    assert result.status is RunStatus.FAILED
    assert result.cancel_reason == "fail-fast: job 'a' failed"
    assert result.states["a"].status is JobStatus.FAILED
    assert result.states["b"].status is JobStatus.CANCELLED
    assert result.states["c"].status is JobStatus.CANCELLED


async def test_timeout_reported_as_timed_out(make_job, make_orchestrator):
    executor = ScriptedExecutor({"A": ["hang"]})
    orch = make_orchestrator(executor)
    result = await orch.run([make_job("A", timeout_s=0.05)])

    state = result.states["A"]
    assert state.status is JobStatus.FAILED
    assert state.history[0].outcome.kind is OutcomeKind.TIMED_OUT
    assert state.last_error == "timed out after 0.05s"


async def test_default_timeout_applies(make_job, make_orchestrator):
    executor = ScriptedExecutor({"A": ["hang"]})
    orch = make_orchestrator(executor, default_timeout_s=0.05)
    result = await orch.run([make_job("A")])
    assert result.states["A"].history[0].outcome.kind is OutcomeKind.TIMED_OUT


async def test_executor_exception_becomes_failure(make_job, make_orchestrator):
    executor = ScriptedExecutor({"A": ["raise"]})
    result = await make_orchestrator(executor).run([make_job("A")])
    assert result.states["A"].last_error == "RuntimeError: boom"


async def test_unregistered_command_kind_fails(make_orchestrator):
    executor = ScriptedExecutor()
    job = JobDescriptor(id="hook", command=HttpCommand(url="http://example.invalid/hook"))
    result = await make_orchestrator(executor).run([job])
    assert result.states["hook"].status is JobStatus.FAILED
    assert "no executor registered" in result.states["hook"].last_error


async def test_empty_pipeline_succeeds(make_orchestrator):
    result = await make_orchestrator(ScriptedExecutor()).run([])
    assert result.success
    assert result.states == {}


async def test_snapshot_covers_every_job(make_job, make_orchestrator):
    executor = ScriptedExecutor({"b": ["fail"]})
    jobs = [make_job("a"), make_job("b"), make_job("c", needs=["b"]), make_job("d", needs=["a"])]
    result = await make_orchestrator(executor).run(jobs)
    assert sorted(result.states) == ["a", "b", "c", "d"]
    assert all(s.is_terminal for s in result.states.values())
    for state in result.states.values():
        assert state.attempts <= 1


async def test_transitions_are_observable(make_job, make_orchestrator):
    orch = make_orchestrator(ScriptedExecutor())
    ctx = orch.prepare([make_job("A")])
    seen = []
    ctx.tracker.subscribe(lambda jid, old, new: seen.append(new))
    await orch.execute(ctx)
    assert seen == [JobStatus.READY, JobStatus.RUNNING, JobStatus.SUCCEEDED]


async def test_concurrent_runs_are_isolated(make_job, make_orchestrator):
    executor = ScriptedExecutor({"x": ["fail"]}, delay=0.01)
    orch = make_orchestrator(executor)
    results = {}

    async def run(name, jobs):
        results[name] = await orch.run(jobs)

    async with anyio.create_task_group() as tg:
        tg.start_soon(run, "good", [make_job("a"), make_job("b", needs=["a"])])
        tg.start_soon(run, "bad", [make_job("x"), make_job("y", needs=["x"])])

    assert results["good"].status is RunStatus.SUCCEEDED
    assert results["bad"].status is RunStatus.FAILED
    assert results["good"].run_id != results["bad"].run_id
    assert sorted(results["good"].states) == ["a", "b"]
    assert orch.active_runs == []
