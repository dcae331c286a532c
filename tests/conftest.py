"""
Pytest configuration and shared fixtures.

``server/`` is on the path (see ``[tool.pytest.ini_options]``), so modules
import the same way the application does.
"""

import os
from typing import Any, Dict, List, Optional

import pytest

os.environ.setdefault("LOG_FORMAT", "console")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from models.workflow import (
    WorkflowDocument, WorkflowExecution, WorkflowJob, WorkflowTrigger,
)
from services.execution import HandlerRegistry, NodeExecutionContext, RunVariables, WorkflowExecutor
from services.handlers import register_builtin_handlers
from services.handlers.http import set_client_factory
from services.handlers.mail import set_smtp_factory
from services.store import InMemoryWorkflowStore
from services.usage import UsageTracker
from services.vault import StaticConnectionVault


ORG_ID = "org-1"


# =============================================================================
# Builders
# =============================================================================

def make_workflow(nodes: List[Dict[str, Any]], edges: Optional[List[Dict[str, Any]]] = None,
                  workflow_id: str = "wf-1", error_handling: str = "stop",
                  variables: Optional[List[Dict[str, Any]]] = None,
                  output_node_id: Optional[str] = None) -> WorkflowDocument:
    return WorkflowDocument.model_validate({
        "id": workflow_id,
        "orgId": ORG_ID,
        "name": "Test workflow",
        "canvas": {"nodes": nodes, "edges": edges or []},
        "variables": variables or [],
        "settings": {"errorHandling": error_handling, "outputNodeId": output_node_id},
    })


class LogRecorder:
    """Collects ``context.log`` calls."""

    def __init__(self):
        self.entries: List[Dict[str, Any]] = []

    async def __call__(self, level: str, message: str, data: Optional[Dict[str, Any]] = None):
        self.entries.append({"level": level, "message": message, "data": data})

    def messages(self, level: Optional[str] = None) -> List[str]:
        return [e["message"] for e in self.entries if level is None or e["level"] == level]


def make_context(config: Optional[Dict[str, Any]] = None, inputs: Optional[Dict[str, Any]] = None,
                 trigger: Optional[Dict[str, Any]] = None,
                 node_outputs: Optional[Dict[str, Any]] = None,
                 variables: Optional[Dict[str, Any]] = None,
                 node_type: str = "", connections: Optional[Dict[str, Any]] = None,
                 log: Optional[LogRecorder] = None) -> NodeExecutionContext:
    """Context for calling a handler directly. ``config`` is taken as already resolved."""
    connections = connections or {}

    async def get_connection(vault_id: str):
        return connections.get(vault_id)

    return NodeExecutionContext(
        workflow_id="wf-1",
        execution_id="exec-1",
        node_id="node-1",
        org_id=ORG_ID,
        node_type=node_type,
        inputs=inputs or {},
        config=config or {},
        resolved_config=config or {},
        variables=RunVariables(variables or {}),
        node_outputs=node_outputs or {},
        trigger=trigger or {"type": "manual", "payload": {}},
        log_callback=log or LogRecorder(),
        connection_callback=get_connection,
    )


async def enqueue(store: InMemoryWorkflowStore, workflow: WorkflowDocument,
                  payload: Optional[Dict[str, Any]] = None,
                  trigger_type: str = "manual") -> WorkflowJob:
    """Save a workflow and queue one run of it, returning the job."""
    await store.save_workflow(workflow)
    trigger = WorkflowTrigger(type=trigger_type, payload=payload or {})
    execution = await store.create_execution(WorkflowExecution(
        workflow_id=workflow.id, org_id=workflow.org_id, trigger=trigger))
    return await store.enqueue_job(WorkflowJob(
        workflow_id=workflow.id, execution_id=execution.id,
        org_id=workflow.org_id, trigger=trigger))


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def store() -> InMemoryWorkflowStore:
    return InMemoryWorkflowStore()


@pytest.fixture
def registry() -> HandlerRegistry:
    return register_builtin_handlers()


@pytest.fixture
def usage_tracker() -> UsageTracker:
    return UsageTracker()


@pytest.fixture
def vault() -> StaticConnectionVault:
    return StaticConnectionVault()


@pytest.fixture
def executor(store, registry, vault, usage_tracker) -> WorkflowExecutor:
    return WorkflowExecutor(store, registry, vault=vault, usage_tracker=usage_tracker)


@pytest.fixture(autouse=True)
def reset_handler_overrides():
    """Handlers read module-level factories; put them back after each test."""
    yield
    set_client_factory(None)
    set_smtp_factory(None)
