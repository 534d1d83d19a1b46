"""
Cluster registry - resolves cluster names to identity/connection info.

The registry is a collaborator: the core only needs to resolve the local
(source) cluster when a run starts and each remote target when a leg
starts. InMemoryClusterRegistry is fed from configuration.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Optional

from replicore.errors import NotFoundError


class ClusterNodeType(str, Enum):
    CENTER = "CENTER"
    EDGE = "EDGE"
    STANDALONE = "STANDALONE"


@dataclass(frozen=True)
class ClusterNodeInfo:
    """
    Identity of a cluster.

    Attributes:
        name: Unique cluster name (used in task remote_cluster_set)
        url: Base URL of the cluster's replication endpoint
        type: CENTER, EDGE or STANDALONE
    """
    name: str
    url: str
    type: ClusterNodeType = ClusterNodeType.STANDALONE

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "url": self.url, "type": self.type.value}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ClusterNodeInfo":
        return cls(
            name=data["name"],
            url=data.get("url", ""),
            type=ClusterNodeType(data.get("type", "STANDALONE")),
        )


class ClusterRegistry(ABC):
    """Abstract cluster registry."""

    @abstractmethod
    def get(self, name: str) -> ClusterNodeInfo:
        """
        Resolve a cluster by name.

        Raises:
            NotFoundError: If the cluster is unknown
        """
        pass

    @abstractmethod
    def get_local(self) -> ClusterNodeInfo:
        """The cluster this process replicates from."""
        pass

    @abstractmethod
    def list_all(self) -> list[ClusterNodeInfo]:
        pass

    def exists(self, name: str) -> bool:
        try:
            self.get(name)
        except NotFoundError:
            return False
        return True


class InMemoryClusterRegistry(ClusterRegistry):
    """Registry holding a fixed set of clusters."""

    def __init__(self, local: ClusterNodeInfo, remotes: Iterable[ClusterNodeInfo] = ()):
        self._local = local
        self._clusters: dict[str, ClusterNodeInfo] = {local.name: local}
        for cluster in remotes:
            self._clusters[cluster.name] = cluster

    def get(self, name: str) -> ClusterNodeInfo:
        cluster = self._clusters.get(name)
        if cluster is None:
            raise NotFoundError("cluster", name)
        return cluster

    def get_local(self) -> ClusterNodeInfo:
        return self._local

    def list_all(self) -> list[ClusterNodeInfo]:
        return sorted(self._clusters.values(), key=lambda c: c.name)

    @classmethod
    def from_config(
        cls,
        local_name: str,
        clusters: list[dict[str, Any]],
        local_url: Optional[str] = None,
    ) -> "InMemoryClusterRegistry":
        """
        Build from config mappings ({"name", "url", "type"}).

        The local cluster is looked up by name among `clusters`; if absent it
        is created as a CENTER node at `local_url`.
        """
        nodes = [ClusterNodeInfo.from_dict(c) for c in clusters]
        local = next((n for n in nodes if n.name == local_name), None)
        if local is None:
            local = ClusterNodeInfo(local_name, local_url or "", ClusterNodeType.CENTER)
        return cls(local, [n for n in nodes if n.name != local_name])
