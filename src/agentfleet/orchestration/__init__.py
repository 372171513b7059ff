"""Batch dispatch and result integration."""

from agentfleet.orchestration.integrator import ResultIntegrator
from agentfleet.orchestration.orchestrator import Orchestrator, build_orchestrator, order_tasks, request_cancel

__all__ = ["Orchestrator", "ResultIntegrator", "build_orchestrator", "order_tasks", "request_cancel"]
