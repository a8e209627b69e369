"""
Graph Executor - Runs a workflow graph to completion.

One GraphExecutor serves many runs; each call to ``execute`` builds a
private run (resource pools, circuit breaker, egress guard) and drives it:

1. Validate structure and parse every node config (rejects the run on error)
2. Queue every node whose upstream nodes are all terminal and whose
   incoming edges are all satisfied; skip the ones whose edges are not
3. Each queued node runs in its own task: acquire a slot for its resource
   class, invoke the behaviour, release; retry transient failures after a
   backoff taken without holding a slot
4. Apply the node's failure policy once it has failed for good
5. Finish when every node is terminal, or on cancel / run timeout

Node tasks never touch NodeState. They post messages to the run's queue
and the scheduler loop, the only writer, applies them in order. The
circuit breaker is the exception: a task counts its own terminal failure
so every other task sees an opened breaker before it retries.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import httpx
from flowengine.config import EngineConfig
from flowengine.errors import GraphValidationError, NodeTimeoutError, SecurityError
from flowengine.graph.edge import EdgeGating, GraphSpec
from flowengine.graph.node import FailurePolicy, NodeSpec, RunMode
from flowengine.graph.policy import get_edge_gating, get_failure_policy, get_fallback_value
from flowengine.graph.validator import GraphValidationResult, validate_graph
from flowengine.graph.version import compute_version_hash
from flowengine.llm.openai import OpenAIClient, identity_for, resolve_api_key
from flowengine.llm.tokens import TokenBudget
from flowengine.nodes.contracts import NodeConfig, effective_timeout_ms
from flowengine.nodes.handlers import HANDLERS, NodeContext, NodeHandler, passthrough_node
from flowengine.observability.logging import set_trace_context
from flowengine.runtime.event_bus import EventBus, EventType, RunEvent
from flowengine.runtime.rate_limiter import ProviderRateLimiter
from flowengine.runtime.resource_pool import ResourcePoolManager
from flowengine.runtime.retry import RunCircuitBreaker, should_retry
from flowengine.schemas.run import NodeState, NodeStatus, RunOptions, RunResult, RunStatus
from flowengine.security.egress import EgressGuard, EgressPolicy
from flowengine.security.secrets import redact_secrets

logger = logging.getLogger(__name__)

_LOG_LEVELS = {"info": logging.INFO, "warn": logging.WARNING, "error": logging.ERROR}


# Messages from node tasks to the scheduler loop


@dataclass
class _Started:
    node_id: str
    attempt: int


@dataclass
class _Retrying:
    node_id: str
    attempt: int
    delay_ms: float
    error: BaseException


@dataclass
class _Finished:
    node_id: str
    attempt: int
    output: Any = None
    error: BaseException | None = None
    reason: str = ""
    opened_breaker: bool = False


class _RunInterrupted(Exception):
    """The run was canceled or ran out of time."""

    def __init__(self, status: RunStatus, reason: str):
        super().__init__(reason)
        self.status = status
        self.reason = reason


class GraphExecutor:
    """
    Executes workflow graphs.

    Example:
        executor = GraphExecutor(rate_limiter=shared_limiter)

        result = await executor.execute(
            graph=GraphSpec.from_payload(payload),
            options=RunOptions(mode="marketplace", user_id="u1"),
        )
        print(result.status, result.final_outputs)
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        rate_limiter: ProviderRateLimiter | None = None,
        http_client: httpx.AsyncClient | None = None,
        openai_client: OpenAIClient | None = None,
        node_registry: dict[str, NodeHandler] | None = None,
        event_bus: EventBus | None = None,
    ):
        """
        Initialize the executor.

        Args:
            config: Engine configuration (defaults loaded from file/env)
            rate_limiter: Process-wide provider rate limiter
            http_client: Client used for all outbound HTTP (tests inject a
                MockTransport-backed one)
            openai_client: Provider client for openai-* nodes
            node_registry: Custom behaviours by node id, overriding the
                spec id's handler
            event_bus: Optional bus that receives every run event
        """
        self.config = config or EngineConfig()
        self.rate_limiter = rate_limiter or ProviderRateLimiter(self.config.provider_limits)
        self.http_client = http_client
        self.openai = openai_client or OpenAIClient(
            self.config.openai_base_url, rate_limiter=self.rate_limiter, client=http_client
        )
        self.node_registry = node_registry or {}
        self.event_bus = event_bus

    def register_node(self, node_id: str, handler: NodeHandler) -> None:
        """Register a custom behaviour for one node."""
        self.node_registry[node_id] = handler

    async def execute(
        self,
        graph: GraphSpec | dict[str, Any],
        options: RunOptions | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> RunResult:
        """
        Run a graph to completion.

        Args:
            graph: GraphSpec or raw builder payload
            options: Mode, identity, inputs and per-run overrides
            cancel_event: Setting it cancels the run

        Returns:
            RunResult; always terminal (succeeded, failed, canceled or
            timed_out)
        """
        options = options or RunOptions()
        if not isinstance(graph, GraphSpec):
            try:
                graph = GraphSpec.from_payload(graph)
            except GraphValidationError as e:
                logger.error("Rejected graph payload: %s", e)
                return RunResult(
                    run_id=options.run_id or uuid.uuid4().hex,
                    mode=options.mode.value,
                    status=RunStatus.FAILED,
                    errors=e.errors,
                    completed_at=datetime.now(),
                )

        run = _GraphRun(self, graph, options, cancel_event)
        # Separate task so the run's trace context does not leak to the caller
        return await asyncio.create_task(run.run(), name=f"run:{run.result.run_id}")


class _GraphRun:
    """State and scheduler loop for one run."""

    def __init__(
        self,
        executor: GraphExecutor,
        graph: GraphSpec,
        options: RunOptions,
        cancel_event: asyncio.Event | None,
    ):
        self.executor = executor
        self.graph = graph
        self.options = options
        self.mode = options.mode
        self.cancel_event = cancel_event
        config = executor.config

        self.result = RunResult(
            run_id=options.run_id or uuid.uuid4().hex,
            mode=self.mode.value,
            version_hash=compute_version_hash(graph),
        )
        self.nodes: dict[str, NodeSpec] = {}
        for node in graph.nodes:
            self.nodes.setdefault(node.id, node)
            self.result.nodes.setdefault(
                node.id,
                NodeState(
                    node_id=node.id,
                    spec_id=node.spec_id,
                    resource_class=node.resource_class.value,
                ),
            )

        self.pools = ResourcePoolManager({**config.pool_limits, **options.pool_limits})
        self.breaker = RunCircuitBreaker(
            options.circuit_breaker_threshold or config.circuit_breaker_threshold
        )
        self.max_retries = (
            options.max_retries if options.max_retries is not None else config.max_retries
        )
        self.tokens = TokenBudget(
            max_per_node=options.max_tokens_per_node or config.max_tokens_per_node,
            max_per_run=options.max_tokens_per_run or config.max_tokens_per_run,
        )
        self.egress = EgressGuard(
            EgressPolicy.for_mode(
                self.mode,
                allow_hosts=list(config.allow_hosts),
                deny_hosts=list(config.deny_hosts),
                workflow_allowlist=list(graph.allowed_hosts),
            ),
            client=executor.http_client,
        )

        self.configs: dict[str, NodeConfig] = {}
        self.queue: asyncio.Queue = asyncio.Queue()
        self.tasks: dict[str, asyncio.Task] = {}
        self.halted = False  # fail_fast: no new dispatches, run fails
        self.stopped = False  # canceled or timed out
        self._deadline: float | None = None
        self._cancel_waiter: asyncio.Future | None = None

    # ------------------------------------------------------------------
    # Scheduler loop
    # ------------------------------------------------------------------

    async def run(self) -> RunResult:
        set_trace_context(
            run_id=self.result.run_id,
            mode=self.mode.value,
            version_hash=self.result.version_hash,
        )
        validation = validate_graph(self.graph, self.mode)
        self.result.warnings.extend(validation.warnings)
        if not validation.valid:
            await self._reject(validation)
            return self.result
        self.configs = validation.configs

        await self._emit(
            EventType.RUN_STARTED,
            f"Run started: {len(self.nodes)} nodes in {self.mode} mode",
            nodes=len(self.nodes),
        )

        loop = asyncio.get_running_loop()
        if self.options.timeout_seconds:
            self._deadline = loop.time() + self.options.timeout_seconds
        if self.cancel_event is not None:
            self._cancel_waiter = asyncio.ensure_future(self.cancel_event.wait())

        try:
            for node_id in self.graph.entry_nodes():
                await self._evaluate(node_id)
            while not self._all_terminal():
                message = await self._next_message()
                await self._apply(message)
        except _RunInterrupted as stop:
            await self._shutdown(stop.status, stop.reason)
        except asyncio.CancelledError:
            await self._shutdown(RunStatus.CANCELED, "Run canceled")
            raise
        finally:
            if self._cancel_waiter is not None:
                self._cancel_waiter.cancel()

        # Tasks skipped by a fail_fast halt may still be unwinding
        await asyncio.gather(*self.tasks.values(), return_exceptions=True)
        await self._finish()
        return self.result

    def _all_terminal(self) -> bool:
        return all(state.status.is_terminal for state in self.result.nodes.values())

    async def _next_message(self) -> _Started | _Retrying | _Finished:
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise _RunInterrupted(RunStatus.CANCELED, "Run canceled")
        if self._cancel_waiter is None and self._deadline is None:
            return await self.queue.get()

        getter = asyncio.ensure_future(self.queue.get())
        waiters = {getter}
        if self._cancel_waiter is not None:
            waiters.add(self._cancel_waiter)
        timeout = None
        if self._deadline is not None:
            timeout = max(0.0, self._deadline - asyncio.get_running_loop().time())

        try:
            done, _ = await asyncio.wait(
                waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            getter.cancel()
            raise
        if getter in done:
            return getter.result()
        getter.cancel()
        if self._cancel_waiter is not None and self._cancel_waiter in done:
            raise _RunInterrupted(RunStatus.CANCELED, "Run canceled")
        raise _RunInterrupted(
            RunStatus.TIMED_OUT, f"Run exceeded its {self.options.timeout_seconds:g}s timeout"
        )

    async def _apply(self, message: _Started | _Retrying | _Finished) -> None:
        state = self.result.nodes[message.node_id]
        node = self.nodes[message.node_id]

        if isinstance(message, _Started):
            if state.status == NodeStatus.QUEUED:
                state.transition(NodeStatus.RUNNING)
                await self._emit(EventType.NODE_STARTED, f"{node.label} started", node)
            if state.status == NodeStatus.RUNNING:
                state.attempts = message.attempt
            return

        if isinstance(message, _Finished) and message.opened_breaker:
            self.result.circuit_open = True
            await self._emit(
                EventType.CIRCUIT_OPENED,
                f"Circuit breaker opened after {self.breaker.threshold} failures; "
                "no further retries in this run",
            )

        # Anything else only matters while the node is running; a node
        # skipped by a halt may still report in before its task unwinds
        if state.status != NodeStatus.RUNNING:
            return

        if isinstance(message, _Retrying):
            await self._emit(
                EventType.NODE_RETRYING,
                f"{node.label} attempt {message.attempt} failed: "
                f"{redact_secrets(str(message.error))}; retrying in {message.delay_ms:.0f}ms",
                node,
                attempt=message.attempt,
                delay_ms=message.delay_ms,
            )
            return

        state.attempts = message.attempt
        if message.error is None:
            state.output = message.output
            state.transition(NodeStatus.SUCCEEDED)
            await self._emit(
                EventType.NODE_SUCCEEDED,
                f"{node.label} succeeded",
                node,
                attempts=message.attempt,
                duration_ms=state.duration_ms,
            )
        else:
            await self._fail(node, state, message.error, message.reason)
        await self._propagate(node.id)

    # ------------------------------------------------------------------
    # Readiness and failure policy
    # ------------------------------------------------------------------

    async def _evaluate(self, node_id: str) -> None:
        """Queue or skip a pending node once all of its upstream nodes are terminal."""
        state = self.result.nodes[node_id]
        if state.status != NodeStatus.PENDING:
            return
        incoming = self.graph.get_incoming_edges(node_id)
        sources = [(edge, self.result.nodes[edge.source]) for edge in incoming]
        if not all(source.status.is_terminal for _, source in sources):
            return

        if self.halted or self.stopped:
            await self._skip(node_id, "run stopped before this node was dispatched")
            return

        blocked = [
            edge for edge, source in sources if not edge.is_satisfied_by(source.output, source.status)
        ]
        if blocked:
            edge = blocked[0]
            await self._skip(
                node_id,
                f"edge {edge.key} ({get_edge_gating(edge)}) not satisfied by "
                f"'{edge.source}' ({self.result.nodes[edge.source].status})",
            )
            await self._propagate(node_id)
            return

        inbound = [
            source.output if source.status == NodeStatus.SUCCEEDED else None
            for _, source in sources
        ]
        node = self.nodes[node_id]
        state.transition(NodeStatus.QUEUED)
        await self._emit(
            EventType.NODE_QUEUED,
            f"{node.label} queued for a {node.resource_class} slot",
            node,
            resource_class=node.resource_class.value,
        )
        self.tasks[node_id] = asyncio.create_task(
            self._run_node(node, inbound), name=f"node:{node_id}"
        )

    async def _propagate(self, node_id: str) -> None:
        for target in dict.fromkeys(e.target for e in self.graph.get_outgoing_edges(node_id)):
            await self._evaluate(target)

    async def _skip(self, node_id: str, reason: str) -> None:
        state = self.result.nodes[node_id]
        state.transition(NodeStatus.SKIPPED)
        state.error = reason
        task = self.tasks.get(node_id)
        if task is not None and not task.done():
            task.cancel()
        await self._emit(
            EventType.NODE_SKIPPED, f"{self.nodes[node_id].label} skipped: {reason}", self.nodes[node_id]
        )

    def _propagates_failure(self, node_id: str) -> bool:
        """fail_fast stops the run unless every outgoing edge tolerates failure."""
        outgoing = self.graph.get_outgoing_edges(node_id)
        return not outgoing or any(
            get_edge_gating(e) != EdgeGating.ALLOW_ON_FAILURE for e in outgoing
        )

    async def _fail(self, node: NodeSpec, state: NodeState, error: BaseException, reason: str) -> None:
        message = redact_secrets(str(error)) or type(error).__name__
        state.error = message
        state.error_kind = getattr(error, "kind", "execution")

        policy = get_failure_policy(node)
        if policy == FailurePolicy.USE_FALLBACK_VALUE and not isinstance(error, SecurityError):
            state.output = get_fallback_value(node)
            state.used_fallback = True
            state.transition(NodeStatus.SUCCEEDED)
            await self._emit(
                EventType.NODE_FALLBACK_USED,
                f"{node.label} failed ({message}); using fallback value",
                node,
                attempts=state.attempts,
            )
            return

        state.transition(NodeStatus.FAILED)
        detail = f" ({reason})" if reason else ""
        await self._emit(
            EventType.NODE_FAILED,
            f"{node.label} failed after {state.attempts} attempt(s): {message}{detail}",
            node,
            attempts=state.attempts,
            error_kind=state.error_kind,
        )

        if policy == FailurePolicy.SKIP_DOWNSTREAM:
            await self._skip_descendants(node.id)
        elif policy != FailurePolicy.CONTINUE and self._propagates_failure(node.id):
            await self._halt(f"Node '{node.id}' failed: {message}")

    async def _skip_descendants(self, node_id: str) -> None:
        frontier = [node_id]
        seen = {node_id}
        while frontier:
            current = frontier.pop(0)
            for edge in self.graph.get_outgoing_edges(current):
                if edge.target in seen:
                    continue
                seen.add(edge.target)
                frontier.append(edge.target)
                if self.result.nodes[edge.target].status == NodeStatus.PENDING:
                    await self._skip(edge.target, f"upstream node '{node_id}' failed")

    async def _halt(self, reason: str) -> None:
        if self.halted:
            return
        self.halted = True
        self.result.errors.append(reason)
        logger.warning("Halting run: %s", reason, extra={"event": "run_halted"})
        for node_id, state in self.result.nodes.items():
            if state.status in (NodeStatus.PENDING, NodeStatus.QUEUED):
                await self._skip(node_id, f"run halted ({reason})")

    # ------------------------------------------------------------------
    # Node tasks
    # ------------------------------------------------------------------

    def _post(self, message: _Started | _Retrying | _Finished) -> None:
        self.queue.put_nowait(message)

    def _post_failure(self, node_id: str, attempt: int, error: BaseException, reason: str) -> None:
        # Counted by the task, not the scheduler, so sibling tasks see an
        # opened breaker before their next retry decision
        opened = self.breaker.record_failure()
        self._post(_Finished(node_id, attempt, error=error, reason=reason, opened_breaker=opened))

    async def _run_node(self, node: NodeSpec, inbound: list[Any]) -> None:
        set_trace_context(node_id=node.id, spec_id=node.spec_id)
        config = self.configs[node.id]
        max_retries = config.retries if config.retries is not None else self.max_retries

        attempt = 0
        while True:
            attempt += 1
            try:
                async with self.pools.slot(node.resource_class):
                    self._post(_Started(node.id, attempt))
                    output = await self._invoke(node, config, inbound)
            except Exception as e:
                error = e
            else:
                self._post(_Finished(node.id, attempt, output=output))
                return

            if self.breaker.is_open:
                self._post_failure(node.id, attempt, error, "circuit breaker open")
                return
            decision = should_retry(error, attempt, max_retries)
            if not decision.retry:
                self._post_failure(node.id, attempt, error, decision.reason)
                return

            self._post(_Retrying(node.id, attempt, decision.delay_ms, error))
            # Backoff holds no slot
            await asyncio.sleep(decision.delay_ms / 1000.0)
            if self.breaker.is_open:
                self._post_failure(node.id, attempt, error, "circuit breaker open")
                return

    async def _invoke(self, node: NodeSpec, config: NodeConfig, inbound: list[Any]) -> Any:
        handler = (
            self.executor.node_registry.get(node.id)
            or HANDLERS.get(node.spec_id)
            or passthrough_node
        )
        api_key, user_supplied = resolve_api_key(
            node.id,
            self.options.api_keys,
            self.options.inputs,
            self.executor.config.platform_api_key,
        )
        timeout_ms = effective_timeout_ms(node, config)
        ctx = NodeContext(
            node=node,
            config=config,
            inbound=list(inbound),
            inputs=self.options.inputs,
            mode=RunMode(self.mode),
            api_key=api_key,
            identity=identity_for(api_key, user_supplied, self.options.user_id),
            egress=self.egress,
            openai=self.executor.openai,
            tokens=self.tokens,
            timeout_ms=timeout_ms,
        )

        if timeout_ms is None:
            return await handler(ctx)
        try:
            async with asyncio.timeout(timeout_ms / 1000.0):
                return await handler(ctx)
        except TimeoutError as e:
            raise NodeTimeoutError(f"Node '{node.id}' timed out after {timeout_ms:.0f}ms") from e

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    async def _reject(self, validation: GraphValidationResult) -> None:
        self.result.errors.extend(validation.errors)
        for node_id, state in self.result.nodes.items():
            if node_id in validation.node_errors:
                state.error = validation.node_errors[node_id]
                state.error_kind = "config"
                state.transition(NodeStatus.FAILED)
            else:
                state.transition(NodeStatus.SKIPPED)
        self.result.status = RunStatus.FAILED
        await self._emit(
            EventType.RUN_REJECTED,
            f"Graph rejected: {validation.error}",
            errors=list(validation.errors),
        )
        await self._finish()

    async def _shutdown(self, status: RunStatus, reason: str) -> None:
        """Cancel in-flight nodes and settle every node into a terminal state."""
        self.stopped = True
        self.result.status = status
        self.result.errors.append(reason)

        pending = [t for t in self.tasks.values() if not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        # Completions that landed before the cancel took effect still count
        while not self.queue.empty():
            await self._apply(self.queue.get_nowait())

        for node_id, state in self.result.nodes.items():
            if state.status in (NodeStatus.PENDING, NodeStatus.QUEUED):
                await self._skip(node_id, reason)
            elif state.status == NodeStatus.RUNNING:
                state.error = reason
                state.error_kind = "canceled"
                state.transition(NodeStatus.FAILED)
                await self._emit(
                    EventType.NODE_FAILED,
                    f"{self.nodes[node_id].label} interrupted: {reason}",
                    self.nodes[node_id],
                )

    def _final_outputs(self) -> list[dict[str, Any]]:
        sinks = set(self.graph.sink_nodes())
        return [
            {"nodeId": node_id, "specId": state.spec_id, "value": state.output}
            for node_id, state in self.result.nodes.items()
            if state.status == NodeStatus.SUCCEEDED
            and (state.spec_id == "output" or node_id in sinks)
        ]

    async def _finish(self) -> None:
        if self.result.status == RunStatus.RUNNING:
            self.result.status = RunStatus.FAILED if self.halted else RunStatus.SUCCEEDED
        self.result.final_outputs = self._final_outputs()
        self.result.completed_at = datetime.now()
        await self._emit(
            EventType.RUN_COMPLETED,
            f"Run {self.result.status}",
            status=self.result.status.value,
            duration_ms=self.result.duration_ms,
        )

    async def _emit(
        self,
        event_type: EventType,
        message: str,
        node: NodeSpec | None = None,
        **data: Any,
    ) -> None:
        event = RunEvent(
            type=event_type,
            run_id=self.result.run_id,
            message=message,
            node_id=node.id if node else None,
            spec_id=node.spec_id if node else None,
            data=data,
        )
        self.result.events.append(event)
        extra: dict[str, Any] = {"event": event_type.value}
        for key in ("attempt", "delay_ms", "resource_class"):
            if key in data:
                extra[key] = data[key]
        logger.log(_LOG_LEVELS[event.level], message, extra=extra)
        if self.executor.event_bus is not None:
            await self.executor.event_bus.publish(event)
