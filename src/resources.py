#!/usr/bin/env python3
# src/resources.py
"""
Typed views over the custom resources read by the offloading manager.

The kubernetes CustomObjectsApi returns plain dicts; the records below pick out
the fields the cluster selector logic relies on and ignore everything else.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from selection import LabelRequirement, LabelSelector, NodeSelectorOperator

# CRD configuration
VIRTUALKUBELET_GROUP = "virtualkubelet.liqo.io"
VIRTUALKUBELET_VERSION = "v1alpha1"
VIRTUAL_NODE_PLURAL = "virtualnodes"
NAMESPACE_MAP_PLURAL = "namespacemaps"

OFFLOADING_GROUP = "offloading.liqo.io"
OFFLOADING_VERSION = "v1alpha1"
NAMESPACE_OFFLOADING_PLURAL = "namespaceoffloadings"
NAMESPACE_OFFLOADING_KIND = "NamespaceOffloading"

# Labels
REMOTE_CLUSTER_ID_LABEL = "liqo.io/remote-cluster-id"
REPLICATION_REQUESTED_LABEL = "liqo.io/replication"

# Namespace mapping strategies
DEFAULT_NAME_MAPPING_STRATEGY = "DefaultName"
ENFORCE_SAME_NAME_MAPPING_STRATEGY = "EnforceSameName"


def local_resources_label_selector() -> LabelSelector:
    """Selector for resources owned by the local cluster (i.e. not replicated from a peer)."""
    return LabelSelector(
        [
            LabelRequirement(
                REPLICATION_REQUESTED_LABEL, NodeSelectorOperator.DOES_NOT_EXIST, []
            )
        ]
    )


def _metadata(obj: Dict[str, Any]) -> Dict[str, Any]:
    return obj.get("metadata") or {}


@dataclass
class NodeSelectorRequirement:
    key: str
    operator: str
    values: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "NodeSelectorRequirement":
        data = data or {}
        return cls(
            key=data.get("key", ""),
            operator=data.get("operator", ""),
            values=[str(v) for v in (data.get("values") or [])],
        )


@dataclass
class NodeSelectorTerm:
    match_expressions: List[NodeSelectorRequirement] = field(default_factory=list)
    match_fields: List[NodeSelectorRequirement] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "NodeSelectorTerm":
        data = data or {}
        return cls(
            match_expressions=[
                NodeSelectorRequirement.from_dict(e)
                for e in (data.get("matchExpressions") or [])
            ],
            match_fields=[
                NodeSelectorRequirement.from_dict(e) for e in (data.get("matchFields") or [])
            ],
        )

    def is_empty(self) -> bool:
        return not self.match_expressions and not self.match_fields


@dataclass
class NodeSelector:
    """Disjunction of node selector terms, as found in spec.clusterSelector."""

    node_selector_terms: List[NodeSelectorTerm] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "NodeSelector":
        data = data or {}
        return cls(
            node_selector_terms=[
                NodeSelectorTerm.from_dict(t) for t in (data.get("nodeSelectorTerms") or [])
            ]
        )


@dataclass
class VirtualNode:
    """Local representation of a peered remote cluster."""

    name: str
    cluster_id: str
    namespace: str = ""
    labels: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, obj: Dict[str, Any]) -> "VirtualNode":
        metadata = _metadata(obj)
        identity = (obj.get("spec") or {}).get("clusterIdentity") or {}
        return cls(
            name=metadata.get("name", ""),
            namespace=metadata.get("namespace", ""),
            cluster_id=identity.get("clusterID", ""),
            labels=dict(metadata.get("labels") or {}),
        )


@dataclass
class NamespaceMap:
    """Per remote cluster record of the namespaces to be projected onto it."""

    name: str
    namespace: str
    cluster_id: str
    desired_mapping: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, obj: Dict[str, Any]) -> "NamespaceMap":
        metadata = _metadata(obj)
        labels = metadata.get("labels") or {}
        return cls(
            name=metadata.get("name", ""),
            namespace=metadata.get("namespace", ""),
            cluster_id=labels.get(REMOTE_CLUSTER_ID_LABEL, ""),
            desired_mapping=dict((obj.get("spec") or {}).get("desiredMapping") or {}),
        )


@dataclass
class NamespaceOffloading:
    """Offloading request attached to a namespace."""

    name: str
    namespace: str
    uid: str = ""
    cluster_selector: NodeSelector = field(default_factory=NodeSelector)
    namespace_mapping_strategy: str = DEFAULT_NAME_MAPPING_STRATEGY
    resource_version: str = ""

    @classmethod
    def from_dict(cls, obj: Dict[str, Any]) -> "NamespaceOffloading":
        metadata = _metadata(obj)
        spec = obj.get("spec") or {}
        return cls(
            name=metadata.get("name", ""),
            namespace=metadata.get("namespace", ""),
            uid=metadata.get("uid", ""),
            resource_version=metadata.get("resourceVersion", ""),
            cluster_selector=NodeSelector.from_dict(spec.get("clusterSelector")),
            namespace_mapping_strategy=spec.get(
                "namespaceMappingStrategy", DEFAULT_NAME_MAPPING_STRATEGY
            ),
        )

    def remote_namespace_name(self, local_cluster_name: str) -> str:
        """Name the offloaded namespace receives in remote clusters."""
        if self.namespace_mapping_strategy == ENFORCE_SAME_NAME_MAPPING_STRATEGY:
            return self.namespace
        return f"{self.namespace}-{local_cluster_name}"
