"""
Workflow Engine - Runs workflow graphs.

The engine:
1. Takes a GraphSpec and initial variables
2. Creates a fresh ExecutionContext and registers it as an active run
3. Executes nodes as their inputs become ready, one at a time
4. Publishes lifecycle events to its EventBus
5. Returns a RunResult, whether the run completed, failed or was stopped

Scheduling is single-threaded and cooperative: one node runs at a time and
the loop only yields to the event loop while a node awaits something.
"""

import asyncio
import logging
import time
import uuid
from collections.abc import AsyncIterator, Mapping
from contextlib import aclosing
from contextvars import Token
from typing import Any

from nodeflow.config import EngineConfig
from nodeflow.graph.connection_index import ConnectionIndex
from nodeflow.graph.context import CancelReason, ExecutionContext
from nodeflow.graph.edge import ConnectionSpec, GraphSpec
from nodeflow.graph.errors import GraphStructureError, NodeExecutionError, NodeTimeoutError
from nodeflow.graph.node import FINAL_OUTPUT_PORT, NodeSpec, NodeTypeRegistry, RunContext
from nodeflow.graph.scheduler import ReadyQueue
from nodeflow.graph.validator import (
    END_NODE_TYPE,
    START_NODE_TYPE,
    GraphValidator,
    ValidationResult,
)
from nodeflow.observability import reset_trace_context, set_trace_context
from nodeflow.runtime.event_bus import EventBus
from nodeflow.runtime.run_registry import ActiveRunRegistry
from nodeflow.schemas.checkpoint import CheckpointType, StepCheckpoint
from nodeflow.schemas.run import RunResult, RunStatus


class WorkflowEngine:
    """
    Executes workflow graphs.

    Example:
        registry = NodeTypeRegistry.with_builtins()
        registry.register_function("double", double)

        engine = WorkflowEngine(
            node_registry=registry,
            config=EngineConfig(node_timeout_seconds=30),
        )

        result = await engine.execute(graph, {"x": 1})
        if not result.success:
            print(result.failed_node, result.error)
    """

    def __init__(
        self,
        node_registry: NodeTypeRegistry | None = None,
        event_bus: EventBus | None = None,
        config: EngineConfig | None = None,
        run_registry: ActiveRunRegistry | None = None,
    ):
        """
        Initialize the engine.

        Args:
            node_registry: Node types this engine can execute
                (defaults to the built-in control types)
            event_bus: Bus receiving lifecycle events (a private one by default)
            config: Timeouts and limits (defaults read from configuration)
            run_registry: Registry of in-flight runs (a private one by default)
        """
        self.node_registry = (
            node_registry if node_registry is not None else NodeTypeRegistry.with_builtins()
        )
        self.config = config or EngineConfig()
        self.event_bus = event_bus or EventBus(max_history=self.config.event_history_size)
        self._active_runs = run_registry if run_registry is not None else ActiveRunRegistry()
        self.validator = GraphValidator(self.node_registry)
        self.logger = logging.getLogger(__name__)

    # === RUN DRIVERS ===

    async def execute(
        self,
        graph: GraphSpec,
        initial_variables: dict[str, Any] | None = None,
    ) -> RunResult:
        """
        Run a graph to completion.

        Args:
            graph: The graph definition (not modified)
            initial_variables: Seed for the run's shared variables

        Returns:
            RunResult; failures are reported in it, never raised
        """
        ctx = self._create_context(graph, initial_variables, prefix="run")
        self._active_runs.register(ctx)
        trace_token = set_trace_context(run_id=ctx.run_id, workflow_id=graph.id, node_id=None)
        try:
            result = await self._run(graph, ctx)
            self._emit_outcome(result)
        finally:
            reset_trace_context(trace_token)
        return result

    async def _run(self, graph: GraphSpec, ctx: ExecutionContext) -> RunResult:
        """Drive a registered run under the global time budget."""
        loop = asyncio.get_running_loop()
        timer = loop.call_later(self.config.max_execution_seconds, self._on_run_timeout, ctx)

        self.logger.info(f"▶ Starting workflow '{graph.name or graph.id}' ({ctx.run_id})")
        self.event_bus.emit_run_started(ctx.run_id, graph.id, graph.name)

        queue: ReadyQueue | None = None
        try:
            index, queue = self._prepare(graph)
            async with aclosing(self._drive(graph, ctx, index, queue)) as steps:
                async for _ in steps:
                    pass
            return self._build_result(graph, ctx, queue)
        except NodeExecutionError as e:
            return self._failed_result(ctx, queue, str(e), failed_node=e.node_id)
        except GraphStructureError as e:
            self.logger.error(f"✗ Refusing to run workflow '{graph.id}': {e}")
            return self._failed_result(ctx, queue, str(e))
        finally:
            timer.cancel()
            self._active_runs.unregister(ctx.run_id)

    async def execute_step(
        self,
        graph: GraphSpec,
        initial_variables: dict[str, Any] | None = None,
    ) -> AsyncIterator[StepCheckpoint]:
        """
        Run a graph one checkpoint at a time, for interactive debugging.

        Yields BEFORE_EXECUTE and AFTER_EXECUTE for each executed node, then
        a single COMPLETE checkpoint. Nothing runs until the caller asks for
        the next checkpoint. Not subject to the global time budget.

        Raises:
            GraphStructureError: the graph has no unique start node
            NodeExecutionError: a node failed and the run ended there. Its
                ``result`` holds the failed RunResult with the partial outputs
                and states.
        """
        ctx = self._create_context(graph, initial_variables, prefix="run_step")
        self._active_runs.register(ctx)
        trace_token = set_trace_context(run_id=ctx.run_id, workflow_id=graph.id, node_id=None)

        queue: ReadyQueue | None = None
        try:
            index, queue = self._prepare(graph)
            self.logger.info(
                f"⏯ Step-debugging workflow '{graph.name or graph.id}' ({ctx.run_id})"
            )
            self.event_bus.emit_run_started(ctx.run_id, graph.id, graph.name)

            async with aclosing(self._drive(graph, ctx, index, queue)) as steps:
                async for phase, node in steps:
                    outputs, states = ctx.snapshot()
                    after = phase == CheckpointType.AFTER_EXECUTE
                    yield StepCheckpoint(
                        type=phase,
                        run_id=ctx.run_id,
                        node_id=node.id,
                        node=node,
                        output=outputs.get(node.id) if after else None,
                        node_outputs=outputs,
                        node_states=states,
                    )

            result = self._build_result(graph, ctx, queue)
            self._emit_outcome(result)
            yield StepCheckpoint(
                type=CheckpointType.COMPLETE,
                run_id=ctx.run_id,
                node_outputs=result.node_outputs,
                node_states=result.node_states,
                result=result,
            )
        except NodeExecutionError as e:
            e.result = self._failed_result(ctx, queue, str(e), failed_node=e.node_id)
            self._emit_outcome(e.result)
            raise
        finally:
            self._active_runs.unregister(ctx.run_id)
            self._restore_trace_context(trace_token)

    async def _drive(
        self,
        graph: GraphSpec,
        ctx: ExecutionContext,
        index: ConnectionIndex,
        queue: ReadyQueue,
    ) -> AsyncIterator[tuple[CheckpointType, NodeSpec]]:
        """The run loop shared by execute() and execute_step()."""
        nodes = {node.id: node for node in graph.nodes}

        while not ctx.cancel_token.is_cancelled:
            node_id = queue.pop()
            if node_id is None:
                break
            node = nodes[node_id]

            yield CheckpointType.BEFORE_EXECUTE, node
            # The caller may have aborted while paused at the checkpoint
            if ctx.cancel_token.is_cancelled:
                break

            await self._execute_node(node, ctx, index)
            yield CheckpointType.AFTER_EXECUTE, node

            queue.complete(node_id, self._taken_connections(node, ctx, index))

    def _prepare(self, graph: GraphSpec) -> tuple[ConnectionIndex, ReadyQueue]:
        """Check run preconditions and build the scheduling structures."""
        start_nodes = graph.get_nodes_by_type(START_NODE_TYPE)
        if not start_nodes:
            raise GraphStructureError("Workflow has no start node")
        if len(start_nodes) > 1:
            ids = ", ".join(n.id for n in start_nodes)
            raise GraphStructureError(
                f"Workflow has {len(start_nodes)} start nodes ({ids}); exactly one is required"
            )

        index = ConnectionIndex.build(graph)
        for conn in index.dangling:
            self.logger.warning(
                f"⚠ Skipping connection {conn.describe()}: references a missing node"
            )

        queue = ReadyQueue(graph, index)
        queue.seed(start_nodes[0].id)
        return index, queue

    # === NODE EXECUTION ===

    async def _execute_node(
        self,
        node: NodeSpec,
        ctx: ExecutionContext,
        index: ConnectionIndex,
    ) -> None:
        """Gather inputs, run the node type against its timeout, record the output."""
        set_trace_context(node_id=node.id)

        node_type = self.node_registry.get(node.type)
        if node_type is None:
            error = NodeExecutionError(node.id, f"Unknown node type '{node.type}'")
            self._record_node_failure(ctx, node, error)
            raise error

        ctx.mark_running(node.id)
        self.event_bus.emit_node_started(ctx.run_id, node.id, node.type)
        self.logger.info(
            f"   ▶ {node.id} ({node.type})",
            extra={"node_id": node.id, "node_type": node.type},
        )

        inputs = self._gather_inputs(node.id, ctx, index)
        properties = {**node_type.default_properties(), **node.properties}
        timeout = self._node_timeout(properties)
        run_ctx = RunContext(
            run_id=ctx.run_id,
            workflow_id=ctx.workflow_id,
            node_id=node.id,
            variables=ctx.variables,
            cancel_token=ctx.cancel_token,
        )

        started = time.monotonic()
        deadline = asyncio.timeout(timeout)
        try:
            async with deadline:
                raw = await node_type.run(inputs, properties, run_ctx)
        except Exception as e:
            error = self._as_node_error(node, e, timeout, deadline.expired())
            self._record_node_failure(ctx, node, error)
            if error is e:
                raise
            raise error from e

        latency_ms = int((time.monotonic() - started) * 1000)
        output = self._normalize_output(raw)
        ctx.mark_completed(node.id, output)
        self.event_bus.emit_node_completed(ctx.run_id, node.id, dict(output), latency_ms)
        self.logger.info(
            f"   ✓ {node.id} completed in {latency_ms}ms",
            extra={"node_id": node.id, "latency_ms": latency_ms},
        )

    def _gather_inputs(
        self,
        node_id: str,
        ctx: ExecutionContext,
        index: ConnectionIndex,
    ) -> dict[str, Any]:
        """inputs[target_port] = node_outputs[source][source_port] per incoming connection."""
        inputs: dict[str, Any] = {}
        for conn in index.incoming_for(node_id):
            source_output = ctx.node_outputs.get(conn.source_node_id)
            if source_output is not None and conn.source_port in source_output:
                inputs[conn.target_port] = source_output[conn.source_port]
        return inputs

    def _node_timeout(self, properties: dict[str, Any]) -> float:
        override = properties.get("timeout")
        if isinstance(override, int | float) and not isinstance(override, bool) and override > 0:
            return float(override)
        return self.config.node_timeout_seconds

    @staticmethod
    def _normalize_output(raw: Any) -> dict[str, Any]:
        if raw is None:
            return {}
        if isinstance(raw, Mapping):
            return dict(raw)
        return {"output": raw}

    @staticmethod
    def _as_node_error(
        node: NodeSpec,
        exc: Exception,
        timeout: float,
        expired: bool,
    ) -> NodeExecutionError:
        if isinstance(exc, NodeExecutionError):
            return exc
        # A TimeoutError raised by the node itself is an ordinary failure
        if isinstance(exc, TimeoutError) and expired:
            return NodeTimeoutError(node.id, timeout)
        return NodeExecutionError(node.id, str(exc) or type(exc).__name__)

    def _record_node_failure(
        self,
        ctx: ExecutionContext,
        node: NodeSpec,
        error: NodeExecutionError,
    ) -> None:
        ctx.mark_failed(node.id, error.message)
        self.event_bus.emit_node_failed(ctx.run_id, node.id, error.message)
        self.logger.error(f"   ✗ {error}", extra={"node_id": node.id})

    def _taken_connections(
        self,
        node: NodeSpec,
        ctx: ExecutionContext,
        index: ConnectionIndex,
    ) -> list[ConnectionSpec]:
        """Outgoing connections to follow after a node completes."""
        outgoing = index.outgoing_for(node.id)
        node_type = self.node_registry.get(node.type)
        if node_type is None or not node_type.branching:
            return outgoing

        produced = ctx.node_outputs.get(node.id, {})
        taken = [conn for conn in outgoing if conn.source_port in produced]
        self.logger.info(f"   ⑂ {node.id} took branch {sorted(produced)}")
        return taken

    # === RESULTS & EVENTS ===

    def _create_context(
        self,
        graph: GraphSpec,
        initial_variables: dict[str, Any] | None,
        prefix: str,
    ) -> ExecutionContext:
        return ExecutionContext.create(
            run_id=f"{prefix}_{uuid.uuid4().hex}",
            workflow_id=graph.id,
            node_ids=[node.id for node in graph.nodes],
            variables=initial_variables,
        )

    def _build_result(
        self,
        graph: GraphSpec,
        ctx: ExecutionContext,
        queue: ReadyQueue,
    ) -> RunResult:
        """Result for a run whose loop ended without a node error."""
        token = ctx.cancel_token
        if token.is_cancelled:
            if token.reason == CancelReason.TIMEOUT:
                message = self._timeout_message()
            else:
                message = "Workflow execution aborted"
            return self._failed_result(ctx, queue, message)

        blocked = queue.blocked()
        if blocked:
            self.logger.warning(f"⚠ Nodes never became ready: {blocked}")

        outputs, states = ctx.snapshot()
        return RunResult(
            run_id=ctx.run_id,
            workflow_id=ctx.workflow_id,
            status=RunStatus.COMPLETED,
            success=True,
            result=self._final_result(graph, ctx),
            node_outputs=outputs,
            node_states=states,
            node_errors=dict(ctx.node_errors),
            blocked_nodes=blocked,
            variables=ctx.variables_snapshot(),
            duration_ms=ctx.elapsed_ms(),
        )

    def _failed_result(
        self,
        ctx: ExecutionContext,
        queue: ReadyQueue | None,
        error: str,
        failed_node: str | None = None,
    ) -> RunResult:
        """Result for a failed or stopped run; keeps the partial state."""
        status = RunStatus.FAILED
        if ctx.cancel_token.reason == CancelReason.ABORTED:
            status = RunStatus.ABORTED
        elif ctx.cancel_token.reason == CancelReason.TIMEOUT:
            status = RunStatus.TIMED_OUT

        outputs, states = ctx.snapshot()
        return RunResult(
            run_id=ctx.run_id,
            workflow_id=ctx.workflow_id,
            status=status,
            success=False,
            error=error,
            failed_node=failed_node,
            node_outputs=outputs,
            node_states=states,
            node_errors=dict(ctx.node_errors),
            blocked_nodes=queue.blocked() if queue is not None else [],
            variables=ctx.variables_snapshot(),
            duration_ms=ctx.elapsed_ms(),
        )

    @staticmethod
    def _final_result(graph: GraphSpec, ctx: ExecutionContext) -> Any:
        end_nodes = graph.get_nodes_by_type(END_NODE_TYPE)
        if not end_nodes:
            return None
        return ctx.node_outputs.get(end_nodes[0].id, {}).get(FINAL_OUTPUT_PORT)

    def _emit_outcome(self, result: RunResult) -> None:
        """Terminal event for the run, carrying its summary (outputs, duration)."""
        summary = result.summary()
        if result.status == RunStatus.COMPLETED:
            self.logger.info(
                f"✓ Workflow run {result.run_id} completed in {result.duration_ms}ms"
            )
            self.event_bus.emit_run_completed(result.run_id, summary)
        elif result.status == RunStatus.ABORTED:
            self.logger.info(
                f"⏹ Workflow run {result.run_id} aborted after {result.duration_ms}ms"
            )
            self.event_bus.emit_run_aborted(result.run_id, summary)
        else:
            self.logger.error(f"✗ Workflow run {result.run_id} failed: {result.error}")
            self.event_bus.emit_run_failed(
                result.run_id,
                result.error or "",
                result=summary,
                node_id=result.failed_node,
            )

    def _restore_trace_context(self, token: Token) -> None:
        try:
            reset_trace_context(token)
        except ValueError:
            # Checkpoints were consumed from more than one task
            self.logger.debug("Trace context not restored: step run resumed in another context")

    def _timeout_message(self) -> str:
        return f"Workflow execution timed out after {self.config.max_execution_seconds:g}s"

    def _on_run_timeout(self, ctx: ExecutionContext) -> None:
        if ctx.cancel_token.cancel(CancelReason.TIMEOUT):
            message = self._timeout_message()
            self.logger.error(f"⏱ {message} ({ctx.run_id})")
            self.event_bus.emit_run_failed(ctx.run_id, message)

    # === RUN CONTROL ===

    def abort(self, run_id: str) -> bool:
        """
        Request that one run stop before its next node. The abort event is
        published once the run has actually stopped.

        Returns:
            True if the run was active
        """
        ctx = self._active_runs.get(run_id)
        if ctx is None:
            return False
        if ctx.cancel_token.cancel(CancelReason.ABORTED):
            self.logger.info(f"⏹ Abort requested for run {run_id}")
        return True

    def abort_all(self) -> int:
        """Abort every active run. Returns how many were active."""
        contexts = self._active_runs.contexts()
        for ctx in contexts:
            ctx.cancel_token.cancel(CancelReason.ABORTED)
        self.logger.info(f"⏹ Abort requested for all runs ({len(contexts)})")
        return len(contexts)

    def get_active_runs(self) -> list[str]:
        """IDs of runs that have started and not yet finished."""
        return self._active_runs.run_ids()

    def validate(self, graph: GraphSpec) -> ValidationResult:
        """Static structural checks; see GraphValidator."""
        return self.validator.validate(graph)
