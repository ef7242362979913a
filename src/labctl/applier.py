"""Execute a plan against the providers.

Operations form a DAG through their ``waits_for`` keys. The applier runs it
level by level: every operation of a level is dispatched (concurrently, up to
``max_concurrency``) and the next level starts only once the whole level has
finished. Every backend call is bounded by ``call_timeout`` and retried with
bounded exponential backoff when the error is retryable. After each mutating
call the applier polls the object's status until it is stable or failed, or
until the poll budget runs out.

A failed operation never takes unrelated work down with it: everything that
waits on it, directly or transitively, is reported ``blocked`` and the rest
of the DAG keeps going. The state store is written right after every
success, so whatever completed stays recorded even when the run is
cancelled or partially fails.
"""
from __future__ import annotations

import concurrent.futures
import threading
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypeVar

from .backends.base import (
    DELETED_STATUS,
    FAILED_STATUS,
    STABLE_STATUSES,
    BackendError,
    BackendNotFoundError,
    BackendResource,
    BackendTimeoutError,
)
from .config import BackendConfig
from .graph import ResourceGraph, resolve_value
from .planner import Action, Plan, PlanOperation
from .providers import ProviderRegistry
from .providers.base import Provider
from .resources import LifecycleStatus, Resource
from .sensitive import SensitiveValue, is_sensitive_marker
from .state.store import StateRecord, StateStore, StateStoreError, utc_now

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff for backend calls and status polls."""

    max_attempts: int = 5
    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 30.0
    call_timeout: float = 60.0
    max_polls: int = 30

    @classmethod
    def from_config(cls, backend: BackendConfig) -> RetryPolicy:
        """Build the policy from the backend section of the configuration."""
        return cls(
            max_attempts=backend.max_attempts,
            base_delay=backend.base_delay,
            multiplier=backend.multiplier,
            max_delay=backend.max_delay,
            call_timeout=backend.call_timeout,
            max_polls=backend.max_polls,
        )

    def delay(self, attempt: int) -> float:
        """Return the pause after *attempt* (1-based)."""
        return min(self.max_delay, self.base_delay * self.multiplier ** max(attempt - 1, 0))


class CancelToken:
    """Cooperative cancellation flag checked between operations."""

    def __init__(self) -> None:
        """Start un-cancelled."""
        self._event = threading.Event()

    def cancel(self) -> None:
        """Request cancellation."""
        self._event.set()

    @property
    def cancelled(self) -> bool:
        """Return ``True`` once :meth:`cancel` was called."""
        return self._event.is_set()


class OperationStatus(str, Enum):
    """Terminal status of one plan operation."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    BLOCKED = "blocked"
    CANCELLED = "cancelled"


class BlockedError(RuntimeError):
    """Explains why an operation did not run."""

    def __init__(self, key: str, upstream: str) -> None:
        """Name the blocked operation and the failed upstream."""
        self.key = key
        self.upstream = upstream
        super().__init__(f"{key} was not attempted: upstream operation {upstream} failed.")


class _OperationFailed(RuntimeError):
    def __init__(self, message: str, attempts: int) -> None:
        super().__init__(message)
        self.attempts = attempts


@dataclass(frozen=True)
class OperationResult:
    """Outcome of one operation."""

    key: str
    action: Action
    name: str
    resource_type: str
    status: OperationStatus
    attempts: int = 0
    error: str | None = None
    duration_ms: int = 0
    resource_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON form."""
        return {
            "key": self.key,
            "action": self.action.value,
            "name": self.name,
            "type": self.resource_type,
            "status": self.status.value,
            "attempts": self.attempts,
            "error": self.error,
            "duration_ms": self.duration_ms,
            "resource_id": self.resource_id,
        }


@dataclass(frozen=True)
class ApplyReport:
    """Aggregated outcome of an apply (or destroy) run."""

    results: tuple[OperationResult, ...]
    statuses: Mapping[str, LifecycleStatus] = field(default_factory=dict)

    def _count(self, status: OperationStatus, action: Action | None = None) -> int:
        return sum(
            1
            for result in self.results
            if result.status is status and (action is None or result.action is action)
        )

    @property
    def created(self) -> int:
        """Return the number of successful creates."""
        return self._count(OperationStatus.SUCCEEDED, Action.CREATE)

    @property
    def updated(self) -> int:
        """Return the number of successful updates."""
        return self._count(OperationStatus.SUCCEEDED, Action.UPDATE)

    @property
    def destroyed(self) -> int:
        """Return the number of successful deletes."""
        return self._count(OperationStatus.SUCCEEDED, Action.DELETE)

    @property
    def failed(self) -> int:
        """Return the number of failed operations."""
        return self._count(OperationStatus.FAILED)

    @property
    def blocked(self) -> int:
        """Return the number of blocked operations."""
        return self._count(OperationStatus.BLOCKED)

    @property
    def cancelled(self) -> int:
        """Return the number of cancelled operations."""
        return self._count(OperationStatus.CANCELLED)

    @property
    def succeeded(self) -> int:
        """Return the number of successful operations."""
        return self._count(OperationStatus.SUCCEEDED)

    @property
    def outcome(self) -> str:
        """Return ``success``, ``partial``, ``failed`` or ``cancelled``."""
        if self.cancelled:
            return "cancelled"
        if not self.failed and not self.blocked:
            return "success"
        return "partial" if self.succeeded else "failed"

    def result(self, key: str) -> OperationResult | None:
        """Return the result for operation *key*."""
        for result in self.results:
            if result.key == key:
                return result
        return None

    def counts(self) -> dict[str, int]:
        """Return the summary counts."""
        return {
            "created": self.created,
            "updated": self.updated,
            "destroyed": self.destroyed,
            "failed": self.failed,
            "blocked": self.blocked,
            "cancelled": self.cancelled,
        }

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON form."""
        return {
            "outcome": self.outcome,
            "summary": self.counts(),
            "statuses": {name: status.value for name, status in sorted(self.statuses.items())},
            "operations": [result.to_dict() for result in self.results],
        }


def operation_levels(operations: Sequence[PlanOperation]) -> list[list[PlanOperation]]:
    """Group *operations* into levels; each waits only on earlier levels."""
    present = {op.key for op in operations}
    depth: dict[str, int] = {}
    for op in operations:
        waits = [depth[key] for key in op.waits_for if key in present]
        depth[op.key] = max(waits) + 1 if waits else 0
    levels: list[list[PlanOperation]] = []
    for op in operations:
        while len(levels) <= depth[op.key]:
            levels.append([])
        levels[depth[op.key]].append(op)
    return levels


class Applier:
    """Run plans through a :class:`ProviderRegistry` and record the results."""

    def __init__(
        self,
        store: StateStore,
        providers: ProviderRegistry,
        *,
        policy: RetryPolicy | None = None,
        max_concurrency: int = 4,
        sleep: Callable[[float], None] = time.sleep,
        cancel: CancelToken | None = None,
        on_event: Callable[[OperationResult], None] | None = None,
    ) -> None:
        """Bind the applier to the store and providers."""
        self.store = store
        self.providers = providers
        self.policy = policy or RetryPolicy()
        self.max_concurrency = max(1, max_concurrency)
        self.cancel = cancel or CancelToken()
        self._sleep = sleep
        self._on_event = on_event
        self._lock = threading.Lock()
        self._session_outputs: dict[str, Mapping[str, Any]] = {}
        self._statuses: dict[str, LifecycleStatus] = {}

    def apply(self, plan: Plan, graph: ResourceGraph | None = None) -> ApplyReport:
        """Execute *plan*; *graph* is required unless the plan only deletes."""
        if graph is None and any(op.action is not Action.DELETE for op in plan.operations):
            raise ValueError("A resource graph is required to create or update resources.")

        self._statuses = {op.name: LifecycleStatus.PLANNED for op in plan.operations}
        results: dict[str, OperationResult] = {}
        root_cause: dict[str, str] = {}

        for level in operation_levels(plan.operations):
            runnable: list[PlanOperation] = []
            for op in level:
                if self.cancel.cancelled:
                    results[op.key] = self._finish(op, OperationStatus.CANCELLED, 0.0)
                    continue
                upstream = next(
                    (root_cause[key] for key in op.waits_for if key in root_cause),
                    None,
                )
                if upstream is not None:
                    root_cause[op.key] = upstream
                    error = str(BlockedError(op.key, upstream))
                    results[op.key] = self._finish(op, OperationStatus.BLOCKED, 0.0, error=error)
                    continue
                runnable.append(op)

            for result in self._run_level(runnable, graph):
                results[result.key] = result
                if result.status is OperationStatus.FAILED:
                    root_cause[result.key] = result.key

        ordered = tuple(results[op.key] for op in plan.operations)
        return ApplyReport(results=ordered, statuses=dict(self._statuses))

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------
    def _run_level(
        self, operations: Sequence[PlanOperation], graph: ResourceGraph | None
    ) -> list[OperationResult]:
        if not operations:
            return []
        workers = min(self.max_concurrency, len(operations))
        if workers == 1:
            return [self._execute(op, graph) for op in operations]

        results: list[OperationResult | None] = [None] * len(operations)
        with concurrent.futures.ThreadPoolExecutor(max_workers=workers) as executor:
            future_to_index: dict[concurrent.futures.Future[OperationResult], int] = {}
            for index, op in enumerate(operations):
                future = executor.submit(self._execute, op, graph)
                future_to_index[future] = index
            for future in concurrent.futures.as_completed(future_to_index):
                results[future_to_index[future]] = future.result()
        return [result for result in results if result is not None]

    def _execute(self, op: PlanOperation, graph: ResourceGraph | None) -> OperationResult:
        if self.cancel.cancelled:
            return self._finish(op, OperationStatus.CANCELLED, 0.0)
        start = time.perf_counter()
        self._set_status(
            op.name,
            {
                Action.CREATE: LifecycleStatus.CREATING,
                Action.UPDATE: LifecycleStatus.UPDATING,
                Action.DELETE: LifecycleStatus.DESTROYING,
            }[op.action],
        )
        try:
            if op.action is Action.DELETE:
                attempts, resource_id = self._delete(op)
            elif graph is None:
                raise _OperationFailed(f"{op.key}: no resource graph to {op.action.value} from.", 0)
            elif op.action is Action.CREATE:
                attempts, resource_id = self._create(op, graph.get(op.name))
            else:
                attempts, resource_id = self._update(op, graph.get(op.name))
        except _OperationFailed as exc:
            return self._finish(
                op, OperationStatus.FAILED, start, attempts=exc.attempts, error=str(exc)
            )
        return self._finish(
            op, OperationStatus.SUCCEEDED, start, attempts=attempts, resource_id=resource_id
        )

    def _finish(
        self,
        op: PlanOperation,
        status: OperationStatus,
        start: float,
        *,
        attempts: int = 0,
        error: str | None = None,
        resource_id: str | None = None,
    ) -> OperationResult:
        if status is OperationStatus.SUCCEEDED:
            lifecycle = (
                LifecycleStatus.DESTROYED if op.action is Action.DELETE else LifecycleStatus.ACTIVE
            )
            self._set_status(op.name, lifecycle)
        elif status is OperationStatus.FAILED:
            self._set_status(op.name, LifecycleStatus.FAILED)
        duration_ms = int((time.perf_counter() - start) * 1000) if start else 0
        result = OperationResult(
            key=op.key,
            action=op.action,
            name=op.name,
            resource_type=op.resource_type,
            status=status,
            attempts=attempts,
            error=error,
            duration_ms=duration_ms,
            resource_id=resource_id,
        )
        if self._on_event is not None:
            with self._lock:
                self._on_event(result)
        return result

    def _set_status(self, name: str, status: LifecycleStatus) -> None:
        with self._lock:
            self._statuses[name] = status

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------
    def _create(self, op: PlanOperation, resource: Resource) -> tuple[int, str]:
        provider = self.providers.for_type(resource.type)
        attributes = self._resolve(op, resource)
        snapshot, attempts = self._call(
            lambda: provider.create(op.name, attributes, timeout=self.policy.call_timeout),
            f"create {op.name} ({resource.type})",
            attempts_so_far=0,
        )
        try:
            attempts = self._wait_stable(op, provider, snapshot, attempts)
            final, attempts = self._call(
                lambda: provider.read(snapshot.id),
                f"read {op.name} ({snapshot.id})",
                attempts_so_far=attempts,
            )
        except _OperationFailed as exc:
            self._rollback(op, resource, provider, snapshot.id, exc)
            raise

        outputs = {**snapshot.outputs, **final.outputs}
        record = StateRecord(
            name=op.name,
            type=resource.type,
            attributes=dict(resource.attributes),
            resource_id=final.id,
            outputs=outputs,
            checksum=final.checksum,
            depends_on=tuple(sorted(resource.depends_on)),
            index=resource.index,
            status=LifecycleStatus.ACTIVE.value,
            applied_at=utc_now(),
        )
        try:
            self.store.put(op.name, record)
        except StateStoreError as exc:
            failure = _OperationFailed(
                f"create {op.name} ({final.id}): recording state failed: {exc}", attempts
            )
            self._rollback(op, resource, provider, final.id, failure)
            raise failure from exc
        with self._lock:
            self._session_outputs[op.name] = outputs
        return attempts, final.id

    def _update(self, op: PlanOperation, resource: Resource) -> tuple[int, str]:
        record = self.store.get(op.name)
        if record is None or not record.resource_id:
            raise _OperationFailed(f"update {op.name}: no recorded object to update.", 0)
        resource_id = record.resource_id
        provider = self.providers.for_type(resource.type)
        attributes = self._resolve(op, resource)
        snapshot, attempts = self._call(
            lambda: provider.update(
                op.name, resource_id, attributes, timeout=self.policy.call_timeout
            ),
            f"update {op.name} ({resource_id})",
            attempts_so_far=0,
        )
        attempts = self._wait_stable(op, provider, snapshot, attempts)
        final, attempts = self._call(
            lambda: provider.read(snapshot.id),
            f"read {op.name} ({snapshot.id})",
            attempts_so_far=attempts,
        )
        kept = {
            key: value for key, value in record.outputs.items() if not is_sensitive_marker(value)
        }
        outputs = {**kept, **snapshot.outputs, **final.outputs}
        updated = record.with_changes(
            attributes=dict(resource.attributes),
            resource_id=final.id,
            outputs=outputs,
            checksum=final.checksum,
            depends_on=tuple(sorted(resource.depends_on)),
            index=resource.index,
            status=LifecycleStatus.ACTIVE.value,
            applied_at=utc_now(),
        )
        try:
            self.store.put(op.name, updated)
        except StateStoreError as exc:
            raise _OperationFailed(
                f"update {op.name} ({final.id}): applied, but recording state failed: {exc}",
                attempts,
            ) from exc
        with self._lock:
            self._session_outputs[op.name] = outputs
        return attempts, final.id

    def _delete(self, op: PlanOperation) -> tuple[int, str | None]:
        record = self.store.get(op.name)
        if record is None:
            return 0, None
        if not record.resource_id:
            self._forget(op, 0)
            return 0, None
        resource_id = record.resource_id
        provider = self.providers.for_type(record.type)

        def remove() -> None:
            try:
                provider.delete(op.name, resource_id, timeout=self.policy.call_timeout)
            except BackendNotFoundError:
                pass  # already gone

        _, attempts = self._call(remove, f"delete {op.name} ({resource_id})", attempts_so_far=0)
        attempts = self._wait_deleted(op, provider, resource_id, attempts)
        self._forget(op, attempts)
        with self._lock:
            self._session_outputs.pop(op.name, None)
        return attempts, resource_id

    def _forget(self, op: PlanOperation, attempts: int) -> None:
        try:
            self.store.delete(op.name)
        except StateStoreError as exc:
            raise _OperationFailed(
                f"delete {op.name}: removed from the backend, but recording state failed: {exc}",
                attempts,
            ) from exc

    def _rollback(
        self,
        op: PlanOperation,
        resource: Resource,
        provider: Provider,
        resource_id: str,
        cause: _OperationFailed,
    ) -> None:
        try:
            self._bounded(
                lambda: provider.delete(op.name, resource_id, timeout=self.policy.call_timeout),
                f"rollback {op.name} ({resource_id})",
            )
        except BackendNotFoundError:
            return
        except BackendError as exc:
            message = f"{cause}; rollback of {resource_id} also failed: {exc.message}"
            try:
                self.store.put(
                    op.name,
                    StateRecord(
                        name=op.name,
                        type=resource.type,
                        attributes=dict(resource.attributes),
                        resource_id=resource_id,
                        depends_on=tuple(sorted(resource.depends_on)),
                        index=resource.index,
                        status=LifecycleStatus.FAILED.value,
                        applied_at=utc_now(),
                    ),
                )
            except StateStoreError as store_exc:
                message += f"; recording it as failed also failed: {store_exc}"
            raise _OperationFailed(message, cause.attempts) from exc

    # ------------------------------------------------------------------
    # Retry and polling
    # ------------------------------------------------------------------
    def _call(
        self, fn: Callable[[], T], description: str, *, attempts_so_far: int
    ) -> tuple[T, int]:
        attempt = 0
        while True:
            attempt += 1
            try:
                return self._bounded(fn, description), attempts_so_far + attempt
            except BackendError as exc:
                if not exc.retryable or attempt >= self.policy.max_attempts:
                    suffix = " (retries exhausted)" if exc.retryable else ""
                    raise _OperationFailed(
                        f"{description} failed after {attempt} attempt(s){suffix}: {exc.message}",
                        attempts_so_far + attempt,
                    ) from exc
                self._sleep(self.policy.delay(attempt))

    def _bounded(self, fn: Callable[[], T], description: str) -> T:
        """Run one backend call, giving up after ``call_timeout`` seconds.

        The call runs on a throwaway worker thread; a call that overruns is
        abandoned (it cannot be interrupted) and reported as a retryable
        :class:`BackendTimeoutError`.
        """
        executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="labctl-call"
        )
        future = executor.submit(fn)
        try:
            return future.result(timeout=self.policy.call_timeout)
        except concurrent.futures.TimeoutError as exc:
            future.cancel()
            raise BackendTimeoutError(
                f"{description} timed out after {self.policy.call_timeout:g}s."
            ) from exc
        finally:
            executor.shutdown(wait=False)

    def _wait_stable(
        self,
        op: PlanOperation,
        provider: Provider,
        snapshot: BackendResource,
        attempts: int,
    ) -> int:
        if snapshot.status in STABLE_STATUSES:
            return attempts
        for poll in range(1, self.policy.max_polls + 1):
            status, attempts = self._call(
                lambda: provider.status(snapshot.id),
                f"status of {op.name} ({snapshot.id})",
                attempts_so_far=attempts,
            )
            if status in STABLE_STATUSES:
                return attempts
            if status in (FAILED_STATUS, DELETED_STATUS):
                raise _OperationFailed(
                    f"{op.action.value} {op.name} ({snapshot.id}): backend reported status "
                    f"'{status}'.",
                    attempts,
                )
            self._sleep(self.policy.delay(poll))
        raise _OperationFailed(
            f"{op.action.value} {op.name} ({snapshot.id}): timed out waiting for a stable "
            f"status after {self.policy.max_polls} poll(s).",
            attempts,
        )

    def _wait_deleted(
        self, op: PlanOperation, provider: Provider, resource_id: str, attempts: int
    ) -> int:
        for poll in range(1, self.policy.max_polls + 1):
            status, attempts = self._call(
                lambda: provider.status(resource_id),
                f"status of {op.name} ({resource_id})",
                attempts_so_far=attempts,
            )
            if status == DELETED_STATUS:
                return attempts
            if status == FAILED_STATUS:
                raise _OperationFailed(
                    f"delete {op.name} ({resource_id}): backend reported status 'failed'.",
                    attempts,
                )
            self._sleep(self.policy.delay(poll))
        raise _OperationFailed(
            f"delete {op.name} ({resource_id}): timed out waiting for deletion after "
            f"{self.policy.max_polls} poll(s).",
            attempts,
        )

    # ------------------------------------------------------------------
    # Reference resolution
    # ------------------------------------------------------------------
    def _resolve(self, op: PlanOperation, resource: Resource) -> dict[str, Any]:
        def lookup(target: str, output: str) -> Any:
            with self._lock:
                session = self._session_outputs.get(target)
            if session is not None and output in session:
                value = session[output]
            else:
                record = self.store.get(target)
                if record is None:
                    raise _OperationFailed(
                        f"{op.action.value} {op.name}: {target} has not been created.", 0
                    )
                value = record.resource_id if output == "id" else record.outputs.get(output)
                if is_sensitive_marker(value):
                    raise _OperationFailed(
                        f"{op.action.value} {op.name}: {target}.{output} is sensitive and was "
                        "not regenerated in this run.",
                        0,
                    )
            if value is None:
                raise _OperationFailed(
                    f"{op.action.value} {op.name}: output {target}.{output} is not available.", 0
                )
            return value.reveal() if isinstance(value, SensitiveValue) else value

        return dict(resolve_value(dict(resource.attributes), lookup))


__all__ = [
    "ApplyReport",
    "Applier",
    "BlockedError",
    "CancelToken",
    "OperationResult",
    "OperationStatus",
    "RetryPolicy",
    "operation_levels",
]
