#!/usr/bin/env python3
# src/cluster_selector.py
"""
Enforcement of NamespaceOffloading cluster selectors.

A reconciliation pass:
- Lists every VirtualNode and every local NamespaceMap
- Refuses to act when the two collections disagree in size
- Matches each VirtualNode against the cluster selector
- Adds the desired mapping for matching clusters and removes it for the others

Mapping writes are idempotent, so a pass can always be retried as a whole.
"""

import logging
from typing import Dict, List, Optional, Protocol, Tuple

from resources import NamespaceMap, NamespaceOffloading, VirtualNode
from selection import SelectorError
from virtualnode import Selector

logger = logging.getLogger("offloading-manager.reconciler")

INVALID_SELECTOR_REASON = "Invalid"


# -----------------------------
# Collaborators
# -----------------------------


class ClusterRegistry(Protocol):
    def list_virtual_nodes(self) -> List[VirtualNode]: ...

    def list_namespace_maps(self) -> List[NamespaceMap]: ...


class MappingStore(Protocol):
    def add_desired_mapping(
        self, namespace_map: NamespaceMap, local_namespace: str, remote_namespace: str
    ) -> None: ...

    def remove_desired_mapping(self, namespace_map: NamespaceMap, local_namespace: str) -> None: ...


class EventRecorder(Protocol):
    def warning(self, subject: NamespaceOffloading, reason: str, message: str) -> None: ...


# -----------------------------
# Errors
# -----------------------------


class ReconcileError(Exception):
    """Base class for failures that abort or degrade a reconciliation pass."""

    retryable = True
    result = "error"


class RegistryError(ReconcileError):
    """VirtualNodes or NamespaceMaps could not be listed."""

    result = "registry_error"


class InconsistentRegistryError(ReconcileError):
    result = "inconsistent_registry"

    def __init__(self, virtual_nodes: int, namespace_maps: int):
        self.virtual_nodes = virtual_nodes
        self.namespace_maps = namespace_maps
        super().__init__(
            f"number of VirtualNodes ({virtual_nodes}) does not match "
            f"that of NamespaceMaps ({namespace_maps})"
        )


class InvalidClusterSelectorError(ReconcileError):
    """The cluster selector cannot be evaluated; retrying without edits won't help."""

    retryable = False
    result = "invalid_selector"

    def __init__(self, cause: SelectorError):
        self.cause = cause
        super().__init__(f"invalid ClusterSelector: {cause}")


class MappingConvergenceError(ReconcileError):
    result = "partial_failure"

    def __init__(self, failures: List[Tuple[str, Exception]]):
        self.failures = failures
        super().__init__("failed to configure all desired mappings")


# -----------------------------
# Reconciler
# -----------------------------


class ClusterSelectorReconciler:
    """Converges NamespaceMap desired mappings to a NamespaceOffloading cluster selector."""

    def __init__(
        self,
        registry: ClusterRegistry,
        store: MappingStore,
        recorder: EventRecorder,
        local_cluster_name: str,
    ):
        self.registry = registry
        self.store = store
        self.recorder = recorder
        self.local_cluster_name = local_cluster_name

    def get_cluster_id_map(self) -> Dict[str, NamespaceMap]:
        """Index local NamespaceMaps by remote cluster id."""
        namespace_maps = self.registry.list_namespace_maps()
        if not namespace_maps:
            logger.info("No NamespaceMaps are present at the moment in the cluster")
        return {nm.cluster_id: nm for nm in namespace_maps}

    def enforce_cluster_selector(self, nsoff: NamespaceOffloading) -> List[str]:
        """Run one reconciliation pass and return the ids of the selected clusters.

        Raises:
            RegistryError: listing VirtualNodes or NamespaceMaps failed
            InconsistentRegistryError: the two collections differ in size
            InvalidClusterSelectorError: the selector cannot be evaluated
            MappingConvergenceError: some desired mappings could not be written
        """
        virtual_nodes = self.registry.list_virtual_nodes()
        cluster_id_map = self.get_cluster_id_map()

        # If the number of virtual nodes does not match that of namespacemaps, there is something wrong in the cluster.
        if len(virtual_nodes) != len(cluster_id_map):
            raise InconsistentRegistryError(len(virtual_nodes), len(cluster_id_map))

        selector = Selector(nsoff.cluster_selector)
        remote_namespace = nsoff.remote_namespace_name(self.local_cluster_name)

        matched: List[str] = []
        failures: List[Tuple[str, Exception]] = []
        for virtual_node in virtual_nodes:
            match, err = selector.match(virtual_node)
            if err is not None:
                self.recorder.warning(
                    nsoff, INVALID_SELECTOR_REASON, f"Invalid ClusterSelector: {err}"
                )
                # The same error would be raised for every virtual node
                raise InvalidClusterSelectorError(err)

            cluster_id = virtual_node.cluster_id
            failure = self._converge(
                cluster_id_map.get(cluster_id), nsoff.namespace, remote_namespace, match
            )
            if failure is not None:
                logger.warning(
                    f"Failed to {'add' if match else 'remove'} desired mapping for "
                    f"{nsoff.namespace} on cluster {cluster_id}: {failure}"
                )
                failures.append((cluster_id, failure))
            elif match:
                matched.append(cluster_id)

        if failures:
            raise MappingConvergenceError(failures)

        logger.info(
            f"ClusterSelector enforced for namespace {nsoff.namespace}: "
            f"{len(matched)}/{len(virtual_nodes)} clusters selected"
        )
        return matched

    reconcile = enforce_cluster_selector

    def _converge(
        self,
        namespace_map: Optional[NamespaceMap],
        local_namespace: str,
        remote_namespace: str,
        match: bool,
    ) -> Optional[Exception]:
        if namespace_map is None:
            return LookupError("no NamespaceMap for the cluster")
        try:
            if match:
                self.store.add_desired_mapping(namespace_map, local_namespace, remote_namespace)
            else:
                # Ensure old mappings are removed in case the cluster selector is updated.
                self.store.remove_desired_mapping(namespace_map, local_namespace)
        except Exception as e:
            return e
        return None
