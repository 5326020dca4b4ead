"""Instance registry and lifecycle manager.

The manager owns no authoritative state. Every call re-reads the container
runtime: slots come from container names (``nexus-node-<slot>``), node ids
from each container's ``NODE_ID`` environment variable and status from the
runtime's own view of the container. Instances removed by another tool are
therefore never stale here.
"""
from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from pathlib import Path

from .config import RestartConfig, WorkerConfig
from .logsink import LogSink, LogSinkError
from .providers.base import (
    ContainerDetails,
    ContainerNotFound,
    ContainerRuntime,
    ContainerRuntimeError,
    ContainerSpec,
    RuntimeUnavailable,
)
from .slots import SlotAllocator, handle_name

LOGGER = logging.getLogger(__name__)

NODE_ID_ENV = "NODE_ID"
MAX_THREADS_ENV = "MAX_THREADS"
# Exit codes produced by ``docker stop`` (SIGTERM / SIGKILL).
_STOP_EXIT_CODES = {0, 137, 143}


class InstanceError(RuntimeError):
    """Base class for lifecycle failures."""


class InstanceNotFound(InstanceError):
    """Raised when no container exists for a slot."""


class CreationFailed(InstanceError):
    """Raised when the runtime rejects a create request."""


class ConflictDetected(InstanceError):
    """Raised when a node id or slot is already taken and the policy says skip."""

    def __init__(self, message: str, *, conflict: Conflict) -> None:
        """Keep the conflicting instance details alongside the message."""
        super().__init__(message)
        self.conflict = conflict


class RestartTimeout(InstanceError):
    """Raised (or reported) when restart and the stop/start escalation both fail."""


class InstanceStatus(str, Enum):
    """Instance states, always derived from runtime observation."""

    REQUESTED = "requested"
    RUNNING = "running"
    RESTARTING = "restarting"
    STOPPED = "stopped"
    FAILED = "failed"
    UNKNOWN = "unknown"

    @classmethod
    def from_details(cls, details: ContainerDetails) -> InstanceStatus:
        """Map a runtime container state onto an instance status."""
        state = details.state
        if state == "running" or (not state and details.running):
            return cls.RUNNING
        if state == "restarting":
            return cls.RESTARTING
        if state == "created":
            return cls.FAILED if details.error else cls.REQUESTED
        if state == "exited":
            if details.error or details.exit_code not in _STOP_EXIT_CODES:
                return cls.FAILED
            return cls.STOPPED
        if state in {"paused", "removing"}:
            return cls.STOPPED
        if state == "dead":
            return cls.FAILED
        return cls.UNKNOWN


class ConflictPolicy(str, Enum):
    """What to do when a node id or slot is already held by a container."""

    SKIP = "skip"
    REPLACE = "replace"


@dataclass(frozen=True)
class Conflict:
    """An existing container standing in the way of a create request."""

    slot: int
    handle: str
    node_id: int | None
    reason: str  # "node-id" or "slot"


@dataclass(frozen=True)
class Instance:
    """One managed worker container plus its identity and log sink."""

    slot: int
    handle: str
    node_id: int | None
    log_path: Path | None
    status: InstanceStatus
    started_at: datetime | None = None
    restart_count: int = 0
    detail: str = ""

    def uptime(self, now: datetime | None = None) -> timedelta | None:
        """Return how long the current run has lasted, if running."""
        if self.started_at is None or self.status is not InstanceStatus.RUNNING:
            return None
        current = now or datetime.now(UTC)
        return max(current - self.started_at, timedelta(0))


@dataclass(frozen=True)
class CreateResult:
    """Outcome of one entry in a batch create."""

    node_id: int
    outcome: str  # created | replaced | skipped | failed
    instance: Instance | None = None
    error: str = ""

    @property
    def ok(self) -> bool:
        """Return ``True`` when a container now runs for this node id."""
        return self.outcome in {"created", "replaced"}


@dataclass(frozen=True)
class RestartResult:
    """Outcome of restarting one instance."""

    slot: int
    handle: str
    ok: bool
    escalated: bool = False
    status: InstanceStatus = InstanceStatus.UNKNOWN
    error: InstanceError | None = None


def format_uptime(delta: timedelta | None) -> str:
    """Render *delta* as ``HHh MMm`` (``-`` when unknown)."""
    if delta is None:
        return "-"
    total_minutes = int(delta.total_seconds()) // 60
    hours, minutes = divmod(total_minutes, 60)
    return f"{hours:02d}h {minutes:02d}m"


@dataclass(slots=True)
class InstanceManager:
    """Create, list, restart and tear down worker instances."""

    runtime: ContainerRuntime
    sink: LogSink
    worker: WorkerConfig = field(default_factory=WorkerConfig)
    restart_config: RestartConfig = field(default_factory=RestartConfig)

    @property
    def allocator(self) -> SlotAllocator:
        """Return a slot allocator bound to the live runtime."""
        return SlotAllocator(self.runtime, self.worker.container_prefix)

    def handle_for(self, slot: int) -> str:
        """Return the container name for *slot*."""
        return handle_name(self.worker.container_prefix, slot)

    def allocate_slot(self) -> int:
        """Return the next slot, recomputed from the runtime on every call."""
        return self.allocator.next_slot()

    # ------------------------------------------------------------------
    # Conflicts
    # ------------------------------------------------------------------
    def check_conflict(self, node_id: int) -> Conflict | None:
        """Return the instance already bound to *node_id*, if any."""
        for slot, name in sorted(self.allocator.live_slots().items()):
            try:
                details = self.runtime.inspect(name)
            except ContainerNotFound:
                continue
            except RuntimeUnavailable:
                raise
            except ContainerRuntimeError as exc:
                raise CreationFailed(f"Cannot verify node id {node_id}: {exc}") from exc
            if _node_id_from(details) == node_id:
                return Conflict(slot=slot, handle=name, node_id=node_id, reason="node-id")
        return None

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------
    def create_instance(
        self,
        node_id: int,
        *,
        policy: ConflictPolicy | Callable[[Conflict], ConflictPolicy],
        slot: int | None = None,
    ) -> Instance:
        """Create one instance for *node_id*.

        ``policy`` decides what happens when the node id (or the explicitly
        requested ``slot``) is already in use: ``SKIP`` raises
        :class:`ConflictDetected` and leaves the existing container alone,
        ``REPLACE`` removes it first. A callable receives the
        :class:`Conflict` and returns the policy to apply.
        """
        instance, _ = self._create_instance(node_id, policy=policy, slot=slot)
        return instance

    def start_instances(
        self,
        node_ids: Sequence[int],
        *,
        policy: ConflictPolicy | Callable[[Conflict], ConflictPolicy],
    ) -> list[CreateResult]:
        """Create instances one at a time, in order, reporting each outcome.

        Per-instance conflicts and runtime rejections are recorded and the
        batch continues; :class:`RuntimeUnavailable` aborts the batch.
        """
        results: list[CreateResult] = []
        for node_id in node_ids:
            try:
                instance, replaced = self._create_instance(node_id, policy=policy)
            except ConflictDetected as exc:
                results.append(CreateResult(node_id=node_id, outcome="skipped", error=str(exc)))
            except CreationFailed as exc:
                results.append(CreateResult(node_id=node_id, outcome="failed", error=str(exc)))
            else:
                outcome = "replaced" if replaced else "created"
                results.append(CreateResult(node_id=node_id, outcome=outcome, instance=instance))
        return results

    def _create_instance(
        self,
        node_id: int,
        *,
        policy: ConflictPolicy | Callable[[Conflict], ConflictPolicy],
        slot: int | None = None,
    ) -> tuple[Instance, bool]:
        if node_id < 0:
            raise ValueError(f"Node id must be non-negative, got {node_id}.")

        replaced = False
        conflict = self.check_conflict(node_id)
        if conflict is not None:
            replaced = self._resolve_conflict(conflict, policy)

        if slot is None:
            slot = self.allocate_slot()
        else:
            existing = self._details_or_none(self.handle_for(slot))
            if existing is not None:
                slot_conflict = Conflict(
                    slot=slot,
                    handle=self.handle_for(slot),
                    node_id=_node_id_from(existing),
                    reason="slot",
                )
                replaced = self._resolve_conflict(slot_conflict, policy) or replaced
        name = self.handle_for(slot)

        log_path = self.sink.path_for(node_id)
        try:
            self.sink.ensure(log_path)
        except LogSinkError as exc:
            raise CreationFailed(f"Instance {name} (node-id {node_id}): {exc}") from exc

        try:
            self.runtime.create(name, self._container_spec(node_id))
        except RuntimeUnavailable:
            raise
        except ContainerRuntimeError as exc:
            self._discard_partial(name)
            raise CreationFailed(
                f"Instance {name} (node-id {node_id}) failed to start: {exc}"
            ) from exc

        LOGGER.info("Created %s for node-id %s", name, node_id)
        self._note(
            log_path,
            f"instance {name} created (node-id {node_id}, threads {self.worker.max_threads})",
        )
        return self._observe(slot, name), replaced

    def _resolve_conflict(
        self,
        conflict: Conflict,
        policy: ConflictPolicy | Callable[[Conflict], ConflictPolicy],
    ) -> bool:
        choice = policy if isinstance(policy, ConflictPolicy) else policy(conflict)
        if choice is not ConflictPolicy.REPLACE:
            if conflict.reason == "slot":
                message = f"Slot {conflict.slot} is already held by {conflict.handle}."
            else:
                message = (
                    f"Node id {conflict.node_id} is already running as {conflict.handle} "
                    f"(slot {conflict.slot})."
                )
            raise ConflictDetected(message, conflict=conflict)

        LOGGER.info("Replacing %s (%s conflict)", conflict.handle, conflict.reason)
        try:
            self.runtime.remove(conflict.handle)
        except ContainerNotFound:
            return True
        except RuntimeUnavailable:
            raise
        except ContainerRuntimeError as exc:
            raise CreationFailed(f"Could not remove {conflict.handle}: {exc}") from exc
        return True

    def _container_spec(self, node_id: int) -> ContainerSpec:
        threads = str(self.worker.max_threads)
        return ContainerSpec(
            image=self.worker.image,
            env={NODE_ID_ENV: str(node_id), MAX_THREADS_ENV: threads},
            volumes={str(self.sink.root): self.worker.data_mount},
            command=("start", "--node-id", str(node_id), "--max-threads", threads, "--headless"),
        )

    def _discard_partial(self, name: str) -> None:
        try:
            self.runtime.remove(name)
        except ContainerNotFound:
            return
        except ContainerRuntimeError as exc:
            LOGGER.warning("Could not clean up partially created %s: %s", name, exc)

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------
    def list_instances(self) -> list[Instance]:
        """Return every instance sorted by slot; unreadable entries are ``unknown``."""
        return [
            self._observe(slot, name)
            for slot, name in sorted(self.allocator.live_slots().items())
        ]

    def get_instance(self, slot: int) -> Instance:
        """Return the instance in *slot* or raise :class:`InstanceNotFound`."""
        name = self.handle_for(slot)
        try:
            details = self.runtime.inspect(name)
        except ContainerNotFound as exc:
            raise InstanceNotFound(f"No instance in slot {slot} ({name}).") from exc
        return self._instance_from(slot, name, details)

    def count_completed_tasks(self, instance: Instance) -> int:
        """Count task-completion markers in the instance's log file."""
        if instance.log_path is None:
            return 0
        return self.sink.count_matches(instance.log_path, self.worker.task_marker)

    def _observe(self, slot: int, name: str) -> Instance:
        try:
            details = self.runtime.inspect(name)
        except RuntimeUnavailable:
            raise
        except ContainerRuntimeError as exc:
            return Instance(
                slot=slot,
                handle=name,
                node_id=None,
                log_path=None,
                status=InstanceStatus.UNKNOWN,
                detail=str(exc),
            )
        return self._instance_from(slot, name, details)

    def _instance_from(self, slot: int, name: str, details: ContainerDetails) -> Instance:
        node_id = _node_id_from(details)
        return Instance(
            slot=slot,
            handle=name,
            node_id=node_id,
            log_path=self.sink.path_for(node_id) if node_id is not None else None,
            status=InstanceStatus.from_details(details),
            started_at=details.started_at,
            restart_count=details.restart_count,
            detail=details.error,
        )

    def _details_or_none(self, name: str) -> ContainerDetails | None:
        try:
            return self.runtime.inspect(name)
        except ContainerNotFound:
            return None
        except RuntimeUnavailable:
            raise
        except ContainerRuntimeError as exc:
            raise CreationFailed(f"Cannot inspect {name}: {exc}") from exc

    # ------------------------------------------------------------------
    # Restart
    # ------------------------------------------------------------------
    def restart(self, slot: int, timeout: float | None = None) -> RestartResult:
        """Restart the instance in *slot*, escalating to stop+start on failure."""
        instance = self.get_instance(slot)
        return self._restart_handle(slot, instance.handle, timeout)

    def restart_all(self, timeout: float | None = None) -> list[RestartResult]:
        """Restart every instance independently; one result per instance."""
        return [
            self._restart_handle(slot, name, timeout)
            for slot, name in sorted(self.allocator.live_slots().items())
        ]

    def _restart_handle(self, slot: int, name: str, timeout: float | None) -> RestartResult:
        bound = self.restart_config.timeout if timeout is None else timeout
        escalated = False
        try:
            try:
                self.runtime.restart(name, bound)
            except RuntimeUnavailable:
                raise
            except ContainerRuntimeError as exc:
                LOGGER.warning("Restart of %s did not complete (%s); forcing stop+start.", name, exc)
                escalated = True
                try:
                    self.runtime.stop(name, self.restart_config.stop_grace)
                    self.runtime.start(name)
                except RuntimeUnavailable:
                    raise
                except ContainerRuntimeError as escalation_exc:
                    error = RestartTimeout(
                        f"{name}: restart failed ({exc}); "
                        f"stop/start escalation failed: {escalation_exc}"
                    )
                    return RestartResult(
                        slot=slot,
                        handle=name,
                        ok=False,
                        escalated=True,
                        status=self._status_of(name),
                        error=error,
                    )
        except KeyboardInterrupt:
            self._settle_interrupted(name)
            raise

        status = self._status_of(name)
        if status is not InstanceStatus.RUNNING:
            return RestartResult(
                slot=slot,
                handle=name,
                ok=False,
                escalated=escalated,
                status=status,
                error=InstanceError(f"{name} is {status.value} after restart."),
            )
        instance = self._observe(slot, name)
        if instance.log_path is not None:
            how = "stop+start" if escalated else "restart"
            self._note(instance.log_path, f"instance {name} restarted ({how})")
        return RestartResult(slot=slot, handle=name, ok=True, escalated=escalated, status=status)

    def _settle_interrupted(self, name: str) -> None:
        LOGGER.warning("Restart of %s interrupted; stopping it so it can be started again.", name)
        try:
            self.runtime.stop(name, self.restart_config.stop_grace)
        except ContainerRuntimeError as exc:
            LOGGER.warning("Could not stop %s after interrupt: %s", name, exc)

    def _status_of(self, name: str) -> InstanceStatus:
        try:
            return InstanceStatus.from_details(self.runtime.inspect(name))
        except RuntimeUnavailable:
            raise
        except ContainerRuntimeError:
            return InstanceStatus.UNKNOWN

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------
    def remove(self, slot: int) -> str:
        """Force-remove the instance in *slot* and return its container name."""
        name = self.handle_for(slot)
        try:
            self.runtime.remove(name)
        except ContainerNotFound as exc:
            raise InstanceNotFound(f"No instance in slot {slot} ({name}).") from exc
        LOGGER.info("Removed %s", name)
        return name

    def stop_all(self, *, graceful: bool = False) -> int:
        """Remove every instance and return how many were removed.

        Removal is forceful. With ``graceful`` each container is first given
        the configured stop grace period.
        """
        removed = 0
        for _slot, name in sorted(self.allocator.live_slots().items()):
            if graceful:
                try:
                    self.runtime.stop(name, self.restart_config.stop_grace)
                except ContainerNotFound:
                    continue
                except RuntimeUnavailable:
                    raise
                except ContainerRuntimeError as exc:
                    LOGGER.warning("Graceful stop of %s failed, forcing removal: %s", name, exc)
            try:
                self.runtime.remove(name)
            except ContainerNotFound:
                continue
            except RuntimeUnavailable:
                raise
            except ContainerRuntimeError as exc:
                LOGGER.error("Could not remove %s: %s", name, exc)
                continue
            removed += 1
        return removed

    # ------------------------------------------------------------------
    def _note(self, path: Path, line: str) -> None:
        try:
            self.sink.append(path, line)
        except LogSinkError as exc:
            LOGGER.warning("%s", exc)


def _node_id_from(details: ContainerDetails) -> int | None:
    raw = details.env.get(NODE_ID_ENV, "").strip()
    if raw.isascii() and raw.isdigit():
        return int(raw)
    return None


__all__ = [
    "Conflict",
    "ConflictDetected",
    "ConflictPolicy",
    "CreateResult",
    "CreationFailed",
    "Instance",
    "InstanceError",
    "InstanceManager",
    "InstanceNotFound",
    "InstanceStatus",
    "RestartResult",
    "RestartTimeout",
    "format_uptime",
]
