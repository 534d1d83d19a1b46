"""
FanOutOrchestrator - one replication leg per remote cluster.

Execution flow for a started record:
1. Enumerate the snapshot's remote clusters (the local cluster is never a target)
2. For each target, concurrently:
   a. Create a RUNNING detail
   b. Resolve the cluster; an unknown cluster fails the leg without transfer
   c. If connectivity validation is on and the cluster is unreachable,
      fail the leg without transfer
   d. Otherwise run the transport, relaying its progress to the detail
   e. Complete the detail with the transport's result
3. Aggregate the details into the record's status and complete the record

Transport, registry and connectivity failures become FAILED details and
never escape a leg. Persistence failures propagate: details left RUNNING
are failed, the record is completed FAILED (when the store allows it) and
the error is re-raised.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Optional

from replicore.cluster import ClusterRegistry
from replicore.context import ReplicationJobContext
from replicore.errors import (
    ConflictError,
    IllegalTransitionError,
    NotFoundError,
    StoreError,
    TransportError,
)
from replicore.record_service import NO_TARGETS_REASON, ReplicaRecordService
from replicore.schemas import (
    ExecutionResult,
    ExecutionStatus,
    RecordDetailInitialRequest,
    ReplicaProgress,
    ReplicaRecord,
    ReplicaRecordDetail,
)
from replicore.transport import ReplicationFilters, Transport

# Raised by the record service / store; these are never turned into leg failures
PERSISTENCE_ERRORS = (StoreError, NotFoundError, ConflictError, IllegalTransitionError)


class LegAborted(Exception):
    """A leg stopped on a persistence error after failing its detail."""

    def __init__(self, remote_cluster: str, cause: Exception):
        self.remote_cluster = remote_cluster
        self.cause = cause
        super().__init__(f"replication to [{remote_cluster}] aborted: {cause}")


class FanOutOrchestrator:
    """
    Drives the legs of one record and finalizes it.

    Usage:
        orchestrator = FanOutOrchestrator(record_service, registry, transport)
        status, reason = orchestrator.execute(context, record)
    """

    def __init__(
        self,
        record_service: ReplicaRecordService,
        cluster_registry: ClusterRegistry,
        transport: Transport,
        max_workers: Optional[int] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self._record_service = record_service
        self._cluster_registry = cluster_registry
        self._transport = transport
        self._max_workers = max_workers
        self._logger = logger or logging.getLogger(__name__)

    def targets(self, context: ReplicationJobContext) -> list[str]:
        """Remote cluster names for this run, excluding the local cluster."""
        local = context.local_cluster.name
        targets = [name for name in context.snapshot.remote_clusters if name != local]
        if len(targets) != len(context.snapshot.remote_clusters):
            self._logger.warning(
                f"task [{context.task_key}] lists the local cluster [{local}] as a target; skipped",
                extra=context.log_extra(),
            )
        return targets

    def execute(
        self,
        context: ReplicationJobContext,
        record: ReplicaRecord,
    ) -> tuple[ExecutionStatus, Optional[str]]:
        """
        Run every leg, then complete the record with the aggregated status.

        Returns:
            (status, error_reason) the record was completed with

        Raises:
            Persistence errors from the record service (after completing the
            record FAILED when possible)
        """
        targets = self.targets(context)
        if not targets:
            self._logger.error(
                f"record [{record.id}] has no replication targets",
                extra=context.log_extra(record_id=record.id),
            )
            self._record_service.complete_record(record.id, ExecutionStatus.FAILED, NO_TARGETS_REASON)
            return ExecutionStatus.FAILED, NO_TARGETS_REASON

        aborted: dict[str, Exception] = {}
        max_workers = min(len(targets), self._max_workers or len(targets))
        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="replica-leg") as pool:
            futures = {
                pool.submit(self._run_leg, context, record, name): name
                for name in targets
            }
            for future in as_completed(futures):
                name = futures[future]
                try:
                    future.result()
                except Exception as e:
                    self._logger.error(
                        f"leg [{name}] of record [{record.id}] aborted: {e}",
                        extra=context.log_extra(record_id=record.id, remote_cluster=name),
                    )
                    aborted[name] = e

        if aborted:
            name = next(n for n in targets if n in aborted)
            error = aborted[name]
            cause = error.cause if isinstance(error, LegAborted) else error
            try:
                self._record_service.abort_record(record.id, f"replication to [{name}] aborted: {cause}")
            except Exception:
                self._logger.exception(
                    f"could not finalize record [{record.id}]",
                    extra=context.log_extra(record_id=record.id),
                )
            raise cause

        status, reason = self._record_service.aggregate_record_status(record.id)
        self._record_service.complete_record(record.id, status, reason)
        total = context.progress.snapshot()
        self._logger.info(
            f"record [{record.id}] finished {status.value}: "
            f"success={total.success} skip={total.skip} failed={total.failed} bytes={total.total_size}",
            extra=context.log_extra(record_id=record.id, event="record.finish"),
        )
        return status, reason

    def _run_leg(
        self,
        context: ReplicationJobContext,
        record: ReplicaRecord,
        remote_name: str,
    ) -> ReplicaRecordDetail:
        snapshot = context.snapshot
        detail = self._record_service.initial_record_detail(RecordDetailInitialRequest(
            record_id=record.id,
            local_cluster=context.local_cluster.name,
            remote_cluster=remote_name,
            local_repo_name=snapshot.local_repo_name,
            repo_type=snapshot.repo_type.value,
            package_constraints=snapshot.package_constraints,
            path_constraints=snapshot.path_constraints,
        ))
        extra = context.log_extra(record_id=record.id, detail_id=detail.id, remote_cluster=remote_name)

        try:
            result = self._leg_result(context, detail, remote_name, extra)
        except LegAborted:
            raise
        except Exception as e:
            self._logger.exception(f"leg [{remote_name}] crashed", extra=extra)
            result = ExecutionResult.fail(f"{type(e).__name__}: {e}")

        try:
            finished = self._record_service.complete_record_detail(detail.id, result)
        except Exception as e:
            raise LegAborted(remote_name, e) from e
        context.progress.add(finished.progress)
        self._logger.info(
            f"leg [{remote_name}] finished {finished.status.value}"
            + (f": {finished.error_reason}" if finished.error_reason else ""),
            extra=extra,
        )
        return finished

    def _leg_result(self, context, detail, remote_name, extra) -> ExecutionResult:
        try:
            remote = self._cluster_registry.get(remote_name)
        except NotFoundError as e:
            self._logger.warning(f"remote cluster [{remote_name}] is not registered", extra=extra)
            return ExecutionResult.fail(str(e))
        if context.snapshot.validate_connectivity and not self._reachable(remote, extra):
            self._logger.warning(f"remote cluster [{remote_name}] is unreachable", extra=extra)
            return ExecutionResult.fail(f"remote cluster [{remote_name}] is unreachable")
        return self._transfer(context, detail, remote, extra)

    def _reachable(self, remote, extra) -> bool:
        try:
            return self._transport.check_connectivity(remote)
        except Exception as e:
            self._logger.warning(
                f"connectivity check of [{remote.name}] failed: {type(e).__name__}: {e}", extra=extra
            )
            return False

    def _transfer(self, context, detail, remote, extra) -> ExecutionResult:
        snapshot = context.snapshot
        filters = ReplicationFilters(
            package_constraints=snapshot.package_constraints,
            path_constraints=snapshot.path_constraints,
        )

        last_progress = [ReplicaProgress()]

        def on_progress(progress: ReplicaProgress) -> None:
            self._record_service.update_record_detail_progress(detail.id, progress)
            last_progress[0] = progress

        try:
            return self._transport.replicate(context, remote, filters, on_progress)
        except PERSISTENCE_ERRORS as e:
            try:
                self._record_service.complete_record_detail(
                    detail.id, ExecutionResult.fail(f"progress update failed: {e}", last_progress[0])
                )
            except Exception:
                self._logger.exception(f"could not fail detail [{detail.id}]", extra=extra)
            raise LegAborted(remote.name, e) from e
        except TransportError as e:
            self._logger.warning(f"transfer to [{remote.name}] failed: {e}", extra=extra)
            return ExecutionResult.fail(str(e), last_progress[0])
        except Exception as e:
            self._logger.exception(f"transfer to [{remote.name}] crashed", extra=extra)
            return ExecutionResult.fail(f"{type(e).__name__}: {e}", last_progress[0])
