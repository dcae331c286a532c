"""Tests for the workflow executor: run loop, failure policy, persistence and output."""

from unittest.mock import AsyncMock

import pytest

from conftest import ORG_ID, enqueue, make_workflow
from models.workflow import ExecutionStatus, JobStatus, WorkflowExecution, WorkflowJob
from services.execution import (
    HandlerMetadata, WorkflowExecutor, execute_workflow_job,
    failure_result, select_output, success_result,
)
from services.usage import UsageTracker


def register(registry, node_type, handler):
    registry.register(HandlerMetadata(type=node_type, name=node_type), handler)


def recording_handler(calls, output=None):
    """Handler that records the context it saw and returns ``output`` (or its inputs)."""
    async def handler(context):
        calls.append(context)
        return success_result(output if output is not None else {"inputs": context.inputs})
    return handler


# =============================================================================
# End to end
# =============================================================================

class TestEndToEnd:
    async def test_manual_trigger_into_conditional(self, store, executor):
        workflow = make_workflow(
            nodes=[
                {"id": "A", "type": "manual-trigger"},
                {"id": "B", "type": "conditional", "config": {"conditions": [
                    {"field": "data.age", "operator": "gte", "value": 18}]}},
            ],
            edges=[{"source": "A", "target": "B"}],
        )
        job = await enqueue(store, workflow, payload={"data": {"age": 21}})

        assert await executor.execute_job(job) is True

        execution = await store.get_execution_by_id(job.execution_id)
        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.completed_nodes == ["A", "B"]
        assert execution.failed_nodes == []
        output = execution.context.node_outputs["B"]
        assert output["result"] is True
        assert output["branch"] == "true"
        assert execution.result.success is True
        assert execution.result.output == output
        assert execution.result.output_source == "terminal"
        assert execution.started_at is not None
        assert execution.completed_at is not None

        stored_job = await store.get_job(job.id)
        assert stored_job.status == JobStatus.COMPLETED
        assert stored_job.result == output

    async def test_templates_resolve_against_prior_outputs(self, store, executor, registry):
        calls = []
        register(registry, "recorder", recording_handler(calls))
        workflow = make_workflow(
            nodes=[
                {"id": "start", "type": "manual-trigger"},
                {"id": "shape", "type": "transform", "config": {"template": {
                    "greeting": "Hello {{nodes.start.name}}",
                    "limit": "{{variables.limit}}",
                }}},
                {"id": "recorder", "type": "recorder", "config": {
                    "msg": "{{nodes.shape.greeting}}", "email": "{{trigger.email}}"}},
            ],
            edges=[{"source": "start", "target": "shape"},
                   {"source": "shape", "target": "recorder"}],
            variables=[{"name": "limit", "defaultValue": 10}],
        )
        job = await enqueue(store, workflow, payload={"name": "Ada", "email": "ada@example.com"})

        assert await executor.execute_job(job)
        execution = await store.get_execution_by_id(job.execution_id)
        assert execution.context.node_outputs["shape"] == {"greeting": "Hello Ada", "limit": 10}
        assert calls[0].resolved_config == {"msg": "Hello Ada", "email": "ada@example.com"}
        assert calls[0].config == {"msg": "{{nodes.shape.greeting}}", "email": "{{trigger.email}}"}
        assert execution.context.variables == {"limit": 10}


# =============================================================================
# Failure policy
# =============================================================================

class TestFailurePolicy:
    def failing_workflow(self, error_handling):
        return make_workflow(
            nodes=[
                {"id": "t", "type": "manual-trigger"},
                {"id": "bad", "type": "fail"},
                {"id": "after", "type": "recorder"},
                {"id": "side", "type": "recorder"},
            ],
            edges=[{"source": "t", "target": "bad"}, {"source": "bad", "target": "after"},
                   {"source": "t", "target": "side"}],
            error_handling=error_handling,
        )

    async def test_stop_mode_short_circuits(self, store, executor, registry):
        calls = []
        register(registry, "recorder", recording_handler(calls))
        register(registry, "fail", AsyncMock(return_value=failure_result(
            "OPERATION_FAILED", "boom", retryable=True)))
        job = await enqueue(store, self.failing_workflow("stop"))

        assert await executor.execute_job(job) is False

        execution = await store.get_execution_by_id(job.execution_id)
        assert execution.status == ExecutionStatus.FAILED
        assert execution.completed_nodes == ["t"]
        assert execution.failed_nodes == ["bad"]
        assert calls == []
        assert execution.result.error.node_id == "bad"
        assert execution.result.error.code == "OPERATION_FAILED"
        assert execution.result.error.message == "boom"
        assert [e.node_id for e in execution.context.errors] == ["bad"]

        stored_job = await store.get_job(job.id)
        assert stored_job.status == JobStatus.PENDING
        assert stored_job.last_error == "boom"

    async def test_stop_mode_non_retryable_fails_job(self, store, executor, registry):
        register(registry, "recorder", recording_handler([]))
        register(registry, "fail", AsyncMock(return_value=failure_result("INVALID_CONFIG", "bad")))
        job = await enqueue(store, self.failing_workflow("stop"))

        await executor.execute_job(job)
        assert (await store.get_job(job.id)).status == JobStatus.FAILED

    async def test_continue_mode_runs_everything_else(self, store, executor, registry):
        calls = []
        register(registry, "recorder", recording_handler(calls))
        register(registry, "fail", AsyncMock(return_value=failure_result(
            "OPERATION_FAILED", "boom", retryable=True)))
        job = await enqueue(store, self.failing_workflow("continue"))

        assert await executor.execute_job(job) is False

        execution = await store.get_execution_by_id(job.execution_id)
        assert execution.status == ExecutionStatus.FAILED
        assert execution.completed_nodes == ["t", "side", "after"]
        assert execution.failed_nodes == ["bad"]
        # Downstream of the failed node runs without its input
        after = next(c for c in calls if c.node_id == "after")
        assert after.inputs == {}
        assert execution.result.error.node_id == "bad"
        # Continue-mode failures are not retried
        assert (await store.get_job(job.id)).status == JobStatus.FAILED

    async def test_handler_exception_is_contained(self, store, executor, registry):
        async def explode(context):
            raise RuntimeError("kaput")

        register(registry, "explode", explode)
        workflow = make_workflow(nodes=[{"id": "x", "type": "explode"}])
        job = await enqueue(store, workflow)

        assert await executor.execute_job(job) is False
        execution = await store.get_execution_by_id(job.execution_id)
        assert execution.result.error.code == "HANDLER_EXCEPTION"
        assert execution.result.error.message == "kaput"
        assert "x" in execution.metrics.node_metrics

        logs = await store.get_execution_logs(job.execution_id, node_id="x")
        assert logs[-1].event == "node_error"
        assert logs[-1].message == "Handler threw exception: kaput"

    async def test_unknown_node_type(self, store, executor):
        workflow = make_workflow(nodes=[{"id": "x", "type": "does-not-exist"}])
        job = await enqueue(store, workflow)

        assert await executor.execute_job(job) is False
        execution = await store.get_execution_by_id(job.execution_id)
        assert execution.result.error.code == "HANDLER_NOT_FOUND"
        assert execution.metrics.node_metrics == {}
        assert (await store.get_job(job.id)).status == JobStatus.FAILED

    async def test_dangling_edge_fails_in_stop_mode(self, store, executor):
        workflow = make_workflow(nodes=[{"id": "t", "type": "manual-trigger"}],
                                 edges=[{"source": "t", "target": "ghost"}])
        job = await enqueue(store, workflow)

        assert await executor.execute_job(job) is False
        execution = await store.get_execution_by_id(job.execution_id)
        assert execution.result.error.code == "INVALID_CONFIG"
        assert execution.result.error.node_id == "ghost"
        assert execution.completed_nodes == []

    async def test_dangling_edge_ignored_in_continue_mode(self, store, executor):
        workflow = make_workflow(nodes=[{"id": "t", "type": "manual-trigger"}],
                                 edges=[{"source": "ghost", "target": "t"}],
                                 error_handling="continue")
        job = await enqueue(store, workflow)
        assert await executor.execute_job(job) is True

    async def test_timed_out_code_does_not_leak_into_later_nodes(self, store, executor):
        workflow = make_workflow(
            nodes=[
                {"id": "a", "type": "code", "config": {"timeout": 50, "code": (
                    "end = datetime.now() + timedelta(seconds=1)\n"
                    "while datetime.now() < end:\n"
                    "    variables['counter'] += 1")}},
                {"id": "b", "type": "code",
                 "config": {"code": "output = {'seen': variables['counter']}"}},
            ],
            edges=[{"source": "a", "target": "b"}],
            error_handling="continue",
            variables=[{"name": "counter", "defaultValue": 0}],
        )
        job = await enqueue(store, workflow)

        await executor.execute_job(job)

        execution = await store.get_execution_by_id(job.execution_id)
        assert execution.failed_nodes == ["a"]
        assert execution.context.node_outputs["b"]["seen"] == 0
        assert execution.context.variables["counter"] == 0

    async def test_bad_switch_range_is_not_retried(self, store, executor):
        workflow = make_workflow(nodes=[
            {"id": "s", "type": "switch", "config": {
                "field": "amount", "matchMode": "range", "cases": [{"min": "abc"}]}},
        ])
        job = await enqueue(store, workflow, payload={"amount": 3})

        assert await executor.execute_job(job) is False
        execution = await store.get_execution_by_id(job.execution_id)
        assert execution.result.error.code == "INVALID_CONFIG"
        assert (await store.get_job(job.id)).status == JobStatus.FAILED


# =============================================================================
# Graph handling
# =============================================================================

class TestGraphHandling:
    async def test_disabled_node_is_skipped(self, store, executor, registry):
        calls = []
        register(registry, "recorder", recording_handler(calls))
        workflow = make_workflow(
            nodes=[
                {"id": "t", "type": "manual-trigger"},
                {"id": "off", "type": "recorder", "enabled": False},
                {"id": "on", "type": "recorder"},
            ],
            edges=[{"source": "t", "target": "off"}, {"source": "off", "target": "on"}],
        )
        job = await enqueue(store, workflow, payload={"v": 1})

        assert await executor.execute_job(job)
        execution = await store.get_execution_by_id(job.execution_id)
        assert [c.node_id for c in calls] == ["on"]
        assert calls[0].inputs == {}
        assert "off" not in execution.completed_nodes
        assert "off" not in execution.failed_nodes
        assert await store.get_execution_logs(job.execution_id, node_id="off") == []

    async def test_edge_mapping_copies_only_mapped_fields(self, store, executor, registry):
        calls = []
        register(registry, "recorder", recording_handler(calls))
        workflow = make_workflow(
            nodes=[{"id": "t", "type": "manual-trigger"}, {"id": "p", "type": "recorder"}],
            edges=[{"source": "t", "target": "p", "mapping": [
                {"sourceField": "user.email", "targetField": "contact.email"}]}],
        )
        job = await enqueue(store, workflow, payload={"user": {"email": "a@b.c", "ssn": "x"}})

        await executor.execute_job(job)
        assert calls[0].inputs == {"contact": {"email": "a@b.c"}}

    async def test_cycle_does_not_block_other_nodes(self, store, executor, registry):
        calls = []
        register(registry, "recorder", recording_handler(calls))
        workflow = make_workflow(
            nodes=[
                {"id": "t", "type": "manual-trigger"},
                {"id": "free", "type": "recorder"},
                {"id": "c1", "type": "recorder"},
                {"id": "c2", "type": "recorder"},
            ],
            edges=[{"source": "t", "target": "free"},
                   {"source": "c1", "target": "c2"}, {"source": "c2", "target": "c1"}],
        )
        job = await enqueue(store, workflow)

        assert await executor.execute_job(job) is True
        assert [c.node_id for c in calls] == ["free"]

    async def test_handlers_see_only_completed_outputs(self, store, executor, registry):
        calls = []
        register(registry, "recorder", recording_handler(calls))
        workflow = make_workflow(
            nodes=[{"id": "t", "type": "manual-trigger"}, {"id": "p1", "type": "recorder"},
                   {"id": "p2", "type": "recorder"}],
            edges=[{"source": "t", "target": "p1"}, {"source": "p1", "target": "p2"}],
        )
        job = await enqueue(store, workflow)

        await executor.execute_job(job)
        assert set(calls[0].node_outputs) == {"t"}
        assert set(calls[1].node_outputs) == {"t", "p1"}

    async def test_variables_shared_and_never_removed(self, store, executor, registry):
        async def writer(context):
            context.variables["seen"] = context.variables.get("seen", 0) + 1
            with pytest.raises(TypeError):
                del context.variables["seen"]
            return success_result({})

        register(registry, "writer", writer)
        workflow = make_workflow(nodes=[{"id": "w1", "type": "writer"},
                                        {"id": "w2", "type": "writer"}],
                                 variables=[{"name": "seen", "defaultValue": 0}])
        job = await enqueue(store, workflow)

        assert await executor.execute_job(job)
        execution = await store.get_execution_by_id(job.execution_id)
        assert execution.context.variables == {"seen": 2}


# =============================================================================
# Telemetry and persistence
# =============================================================================

class TestTelemetry:
    async def test_logs_metrics_and_stats(self, store, executor, usage_tracker):
        workflow = make_workflow(nodes=[
            {"id": "t", "type": "manual-trigger"},
            {"id": "code", "type": "code", "config": {"code": "print('hi')\n{'ok': True}"}},
        ], edges=[{"source": "t", "target": "code"}])
        job = await enqueue(store, workflow)

        assert await executor.execute_job(job)

        logs = await store.get_execution_logs(job.execution_id, node_id="code")
        assert [(log.event, log.level) for log in logs] == [
            ("node_start", "info"), ("custom", "info"), ("node_complete", "info")]
        assert logs[0].message == "Starting node: code"
        assert logs[1].message == "hi"
        assert logs[2].data["output"]["ok"] is True

        execution = await store.get_execution_by_id(job.execution_id)
        metric = execution.metrics.node_metrics["code"]
        assert metric.retries == 0
        assert metric.data_size > 0
        assert set(execution.metrics.node_metrics) == {"t", "code"}

        stats = (await store.get_workflow_by_id(ORG_ID, workflow.id)).stats
        assert stats.total_executions == 1
        assert stats.successful_executions == 1
        assert stats.last_executed_at is not None

        await usage_tracker.drain()
        assert usage_tracker.totals(ORG_ID) == {"successful": 1, "failed": 0, "total": 1}

    async def test_handler_log_levels_normalized(self, store, executor, registry):
        async def chatty(context):
            await context.log("warning", "careful", {"n": 1})
            await context.log("trace", "unknown level")
            return success_result({})

        register(registry, "chatty", chatty)
        job = await enqueue(store, make_workflow(nodes=[{"id": "c", "type": "chatty"}]))

        await executor.execute_job(job)
        logs = await store.get_execution_logs(job.execution_id, node_id="c")
        custom = [log for log in logs if log.event == "custom"]
        assert [(log.level, log.message) for log in custom] == [
            ("warn", "careful"), ("info", "unknown level")]

    async def test_usage_failure_does_not_affect_run(self, store, registry):
        class BrokenTracker(UsageTracker):
            async def record_execution(self, org_id, workflow_id, success):
                raise RuntimeError("billing down")

        tracker = BrokenTracker()
        executor = WorkflowExecutor(store, registry, usage_tracker=tracker)
        job = await enqueue(store, make_workflow(nodes=[{"id": "t", "type": "manual-trigger"}]))

        assert await executor.execute_job(job)
        await tracker.drain()
        assert (await store.get_job(job.id)).status == JobStatus.COMPLETED


# =============================================================================
# Fatal errors
# =============================================================================

class TestFatalErrors:
    async def test_workflow_not_found(self, store, executor):
        execution = await store.create_execution(WorkflowExecution(workflow_id="gone",
                                                                   org_id=ORG_ID))
        job = await store.enqueue_job(WorkflowJob(workflow_id="gone", org_id=ORG_ID,
                                                  execution_id=execution.id))

        assert await executor.execute_job(job) is False

        stored = await store.get_execution_by_id(execution.id)
        assert stored.status == ExecutionStatus.FAILED
        assert stored.result.error.code == "WORKFLOW_NOT_FOUND"
        assert stored.result.error.node_id == "executor"
        stored_job = await store.get_job(job.id)
        assert stored_job.status == JobStatus.PENDING
        assert "Workflow not found" in stored_job.last_error

    async def test_workflow_from_other_org_is_not_found(self, store, executor):
        job = await enqueue(store, make_workflow(nodes=[]))
        job = job.model_copy(update={"org_id": "intruder"})
        assert await executor.execute_job(job) is False

    async def test_execution_missing(self, store, executor):
        await store.save_workflow(make_workflow(nodes=[]))
        job = await store.enqueue_job(WorkflowJob(workflow_id="wf-1", org_id=ORG_ID,
                                                  execution_id="missing"))

        assert await executor.execute_job(job) is False
        assert (await store.get_job(job.id)).last_error == "Execution record not found: missing"

    async def test_store_failure_is_fatal_and_retryable(self, store, registry):
        job = await enqueue(store, make_workflow(nodes=[{"id": "t", "type": "manual-trigger"}]))
        store.update_workflow_stats = AsyncMock(side_effect=RuntimeError("db down"))
        executor = WorkflowExecutor(store, registry)

        assert await execute_workflow_job(job, executor) is False
        execution = await store.get_execution_by_id(job.execution_id)
        assert execution.result.error.code == "FATAL_ERROR"
        assert execution.result.error.message == "db down"
        assert (await store.get_job(job.id)).status == JobStatus.PENDING

    async def test_store_errors_while_failing_are_swallowed(self, registry):
        store = AsyncMock()
        store.get_workflow_by_id.side_effect = RuntimeError("db down")
        store.fail_job.side_effect = RuntimeError("still down")
        executor = WorkflowExecutor(store, registry)
        job = WorkflowJob(workflow_id="wf", execution_id="e", org_id=ORG_ID)

        assert await executor.execute_job(job) is False
        store.fail_job.assert_awaited_once_with(job.id, "db down", True)


# =============================================================================
# Output selection
# =============================================================================

class TestSelectOutput:
    workflow_nodes = [{"id": "a", "type": "x"}, {"id": "b", "type": "x"}, {"id": "c", "type": "x"}]

    def test_designated_output_node(self):
        workflow = make_workflow(nodes=self.workflow_nodes,
                                 edges=[{"source": "a", "target": "b"}], output_node_id="a")
        assert select_output(workflow, ["a", "b"], {"a": 1, "b": 2}) == (1, "designated")

    def test_last_terminal_node(self):
        workflow = make_workflow(nodes=self.workflow_nodes,
                                 edges=[{"source": "a", "target": "b"}])
        assert select_output(workflow, ["a", "b", "c"], {"a": 1, "b": 2, "c": 3}) == (3, "terminal")

    def test_last_completed_when_no_terminal_has_output(self):
        workflow = make_workflow(nodes=self.workflow_nodes[:2],
                                 edges=[{"source": "a", "target": "b"}])
        assert select_output(workflow, ["a"], {"a": 1}) == (1, "last_completed")

    def test_empty_terminal_output_is_skipped(self):
        workflow = make_workflow(nodes=self.workflow_nodes,
                                 edges=[{"source": "a", "target": "b"}])
        assert select_output(workflow, ["a", "b", "c"], {"a": 1, "b": 2, "c": None}) == \
            (2, "terminal")
        assert select_output(workflow, ["a", "b", "c"], {"a": 1, "b": {}, "c": None}) == \
            ({}, "last_completed")

    def test_nothing_completed(self):
        workflow = make_workflow(nodes=self.workflow_nodes)
        assert select_output(workflow, [], {}) == ({}, "none")

    async def test_run_returns_state_snapshot(self, store, executor):
        workflow = make_workflow(nodes=[{"id": "t", "type": "manual-trigger"}])
        execution = WorkflowExecution(workflow_id=workflow.id, org_id=ORG_ID)
        outcome = await executor.execute_workflow(workflow, execution)

        assert outcome.success
        assert outcome.output == {}
        assert outcome.state.node_outputs == {"t": {}}
        assert isinstance(outcome.state.variables, dict)
