"""
Transport contract and discovery.

A transport moves artifacts for one leg (local cluster -> one remote
cluster). The core never touches bytes: it hands the transport the run
context, the target cluster and the filters, relays the progress the
transport reports, and records the terminal ExecutionResult.

Transports are discovered via the "replicore.transports" entry point group:

    [project.entry-points."replicore.transports"]
    noop = "replicore.transport:NoOpTransport"
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from importlib.metadata import entry_points
from typing import TYPE_CHECKING, Callable, Optional

from replicore.cluster import ClusterNodeInfo
from replicore.schemas import ExecutionResult, PackageConstraint, ReplicaProgress

if TYPE_CHECKING:
    from replicore.context import ReplicationJobContext

logger = logging.getLogger(__name__)

TRANSPORT_ENTRY_POINT_GROUP = "replicore.transports"

ProgressCallback = Callable[[ReplicaProgress], None]


@dataclass(frozen=True)
class ReplicationFilters:
    """Which artifacts a leg replicates (None means no constraint)."""
    package_constraints: Optional[tuple[PackageConstraint, ...]] = None
    path_constraints: Optional[tuple[str, ...]] = None


class Transport(ABC):
    """
    Abstract base class for artifact transports.

    Implementations must be safe to call from several threads at once:
    the orchestrator runs one leg per remote cluster concurrently.
    """

    def check_connectivity(self, cluster: ClusterNodeInfo) -> bool:
        """Return True if the remote cluster is reachable. Default: assume reachable."""
        return True

    @abstractmethod
    def replicate(
        self,
        context: "ReplicationJobContext",
        remote_cluster: ClusterNodeInfo,
        filters: ReplicationFilters,
        on_progress: ProgressCallback,
    ) -> ExecutionResult:
        """
        Replicate the task's artifacts to one remote cluster.

        Args:
            context: Run context (task snapshot, correlation key, local cluster)
            remote_cluster: Target cluster
            filters: Package/path constraints to apply
            on_progress: Called with cumulative progress, in stream order

        Returns:
            Terminal ExecutionResult with final progress

        Raises:
            TransportError: On transfer failure (recorded as a FAILED leg)
        """
        pass


class NoOpTransport(Transport):
    """
    No-op transport for testing and dry runs.

    Transfers nothing and reports success with empty progress.
    """

    def replicate(
        self,
        context: "ReplicationJobContext",
        remote_cluster: ClusterNodeInfo,
        filters: ReplicationFilters,
        on_progress: ProgressCallback,
    ) -> ExecutionResult:
        progress = ReplicaProgress()
        on_progress(progress)
        return ExecutionResult.success(progress)


def discover_transports() -> dict[str, Callable[[], Transport]]:
    """Discover transport factories from the replicore.transports entry points."""
    transports: dict[str, Callable[[], Transport]] = {"noop": NoOpTransport}
    for ep in entry_points().select(group=TRANSPORT_ENTRY_POINT_GROUP):
        transports[ep.name] = ep.load()
    return transports


def load_transport(name: str) -> Transport:
    """
    Instantiate a transport by entry point name.

    Raises:
        ValueError: If no transport is registered under this name
    """
    transports = discover_transports()
    if name not in transports:
        raise ValueError(f"Unknown transport: {name} (available: {', '.join(sorted(transports))})")
    logger.debug(f"Loading transport: {name}")
    return transports[name]()
