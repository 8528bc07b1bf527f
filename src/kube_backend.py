#!/usr/bin/env python3
# src/kube_backend.py
"""
Kubernetes implementations of the cluster selector collaborators.

This module provides functionality for:
- Listing VirtualNodes and local NamespaceMaps (cluster registry)
- Adding and removing NamespaceMap desired mappings (mapping store)
- Recording Warning events on NamespaceOffloadings (event recorder)
- Watching the resources whose changes require a new reconciliation
"""

import logging
import os
import random
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from kubernetes import client, watch
from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError

from cluster_selector import RegistryError
from resources import (
    NAMESPACE_MAP_PLURAL,
    NAMESPACE_OFFLOADING_KIND,
    NAMESPACE_OFFLOADING_PLURAL,
    OFFLOADING_GROUP,
    OFFLOADING_VERSION,
    VIRTUAL_NODE_PLURAL,
    VIRTUALKUBELET_GROUP,
    VIRTUALKUBELET_VERSION,
    NamespaceMap,
    NamespaceOffloading,
    VirtualNode,
    local_resources_label_selector,
)
from selection import FieldSelector

logger = logging.getLogger("offloading-manager.backend")

EVENT_COMPONENT = os.environ.get("EVENT_COMPONENT", "offloading-manager")
WATCH_TIMEOUT_SECONDS = int(os.environ.get("WATCH_TIMEOUT_SECONDS", "30"))
WATCH_ERROR_BACKOFF = int(os.environ.get("WATCH_ERROR_BACKOFF", "5"))


def calculate_exponential_backoff(attempt: int, base_delay: float = 0.5, max_delay: float = 30.0) -> float:
    """Calculate exponential backoff delay for retry attempts.

    Args:
        attempt: Retry attempt number (0-based)
        base_delay: Base delay in seconds
        max_delay: Maximum delay in seconds

    Returns:
        Backoff delay with jitter
    """
    delay = min(base_delay * (2 ** attempt), max_delay)
    jitter = random.uniform(0.1, 0.3) * delay
    return delay + jitter


def _registry_error(kind: str, e: Exception) -> RegistryError:
    # Transport failures (connection refused, timeouts) carry no API reason
    reason = e.reason if isinstance(e, ApiException) else e
    return RegistryError(f"failed to retrieve {kind}: {reason}")


class KubernetesClusterRegistry:
    """Reads VirtualNodes and local NamespaceMaps across all namespaces."""

    def __init__(self, custom_objects_api: client.CustomObjectsApi):
        self.api = custom_objects_api

    def list_virtual_nodes(self) -> List[VirtualNode]:
        try:
            response = self.api.list_cluster_custom_object(
                group=VIRTUALKUBELET_GROUP,
                version=VIRTUALKUBELET_VERSION,
                plural=VIRTUAL_NODE_PLURAL,
            )
        except (ApiException, HTTPError) as e:
            logger.error(f"Failed to list VirtualNodes: {e}")
            raise _registry_error("VirtualNodes", e) from e
        return [VirtualNode.from_dict(item) for item in response.get("items", [])]

    def list_namespace_maps(self) -> List[NamespaceMap]:
        # Only NamespaceMaps owned by this cluster, not the ones replicated from peers
        selector = str(local_resources_label_selector())
        try:
            response = self.api.list_cluster_custom_object(
                group=VIRTUALKUBELET_GROUP,
                version=VIRTUALKUBELET_VERSION,
                plural=NAMESPACE_MAP_PLURAL,
                label_selector=selector,
            )
        except (ApiException, HTTPError) as e:
            logger.error(f"Failed to list NamespaceMaps ({selector}): {e}")
            raise _registry_error("NamespaceMaps", e) from e
        return [NamespaceMap.from_dict(item) for item in response.get("items", [])]

    def list_namespace_offloadings(self, namespace: str = "") -> List[NamespaceOffloading]:
        try:
            if namespace:
                response = self.api.list_namespaced_custom_object(
                    group=OFFLOADING_GROUP,
                    version=OFFLOADING_VERSION,
                    namespace=namespace,
                    plural=NAMESPACE_OFFLOADING_PLURAL,
                )
            else:
                response = self.api.list_cluster_custom_object(
                    group=OFFLOADING_GROUP,
                    version=OFFLOADING_VERSION,
                    plural=NAMESPACE_OFFLOADING_PLURAL,
                )
        except (ApiException, HTTPError) as e:
            logger.error(f"Failed to list NamespaceOffloadings: {e}")
            raise _registry_error("NamespaceOffloadings", e) from e
        return [NamespaceOffloading.from_dict(item) for item in response.get("items", [])]


class KubernetesMappingStore:
    """Edits spec.desiredMapping of NamespaceMaps with JSON merge patches."""

    def __init__(self, custom_objects_api: client.CustomObjectsApi):
        self.api = custom_objects_api

    def add_desired_mapping(
        self, namespace_map: NamespaceMap, local_namespace: str, remote_namespace: str
    ) -> None:
        if namespace_map.desired_mapping.get(local_namespace) == remote_namespace:
            logger.debug(
                f"Desired mapping {local_namespace} -> {remote_namespace} already present "
                f"in NamespaceMap {namespace_map.namespace}/{namespace_map.name}"
            )
            return

        self._patch_desired_mapping(namespace_map, {local_namespace: remote_namespace})
        namespace_map.desired_mapping[local_namespace] = remote_namespace
        logger.info(
            f"Added desired mapping {local_namespace} -> {remote_namespace} "
            f"for cluster {namespace_map.cluster_id}"
        )

    def remove_desired_mapping(self, namespace_map: NamespaceMap, local_namespace: str) -> None:
        if local_namespace not in namespace_map.desired_mapping:
            return

        try:
            # A null value removes the key under merge patch semantics
            self._patch_desired_mapping(namespace_map, {local_namespace: None})
        except ApiException as e:
            if e.status != 404:
                raise
            logger.debug(f"NamespaceMap {namespace_map.name} already gone")
        namespace_map.desired_mapping.pop(local_namespace, None)
        logger.info(
            f"Removed desired mapping for {local_namespace} from cluster {namespace_map.cluster_id}"
        )

    def _patch_desired_mapping(self, namespace_map: NamespaceMap, mapping: Dict[str, Any]):
        self.api.patch_namespaced_custom_object(
            group=VIRTUALKUBELET_GROUP,
            version=VIRTUALKUBELET_VERSION,
            namespace=namespace_map.namespace,
            plural=NAMESPACE_MAP_PLURAL,
            name=namespace_map.name,
            body={"spec": {"desiredMapping": mapping}},
        )


def involved_object_field_selector(subject: NamespaceOffloading, reason: str) -> FieldSelector:
    return FieldSelector.from_set(
        {
            "involvedObject.kind": NAMESPACE_OFFLOADING_KIND,
            "involvedObject.name": subject.name,
            "involvedObject.namespace": subject.namespace,
            "reason": reason,
        }
    )


class KubernetesEventRecorder:
    """Records Warning events, bumping the count of an existing one instead of duplicating it."""

    def __init__(self, core_api: client.CoreV1Api, component: str = ""):
        self.api = core_api
        self.component = component or EVENT_COMPONENT

    def warning(self, subject: NamespaceOffloading, reason: str, message: str) -> None:
        try:
            self._record(subject, "Warning", reason, message)
        except ApiException as e:
            logger.warning(f"Failed to record {reason} event for {subject.namespace}/{subject.name}: {e}")
        except Exception as e:
            logger.error(f"Unexpected error recording event: {e}")

    def _record(self, subject: NamespaceOffloading, event_type: str, reason: str, message: str):
        now = datetime.now(timezone.utc)
        existing = self.api.list_namespaced_event(
            namespace=subject.namespace,
            field_selector=str(involved_object_field_selector(subject, reason)),
        )
        for event in existing.items or []:
            if event.message == message and event.type == event_type:
                self.api.patch_namespaced_event(
                    name=event.metadata.name,
                    namespace=subject.namespace,
                    body={"count": (event.count or 1) + 1, "lastTimestamp": now.isoformat()},
                )
                logger.debug(f"Bumped {reason} event {event.metadata.name}")
                return

        event = client.CoreV1Event(
            metadata=client.V1ObjectMeta(
                generate_name=f"{subject.name}.", namespace=subject.namespace
            ),
            involved_object=client.V1ObjectReference(
                api_version=f"{OFFLOADING_GROUP}/{OFFLOADING_VERSION}",
                kind=NAMESPACE_OFFLOADING_KIND,
                name=subject.name,
                namespace=subject.namespace,
                uid=subject.uid or None,
                resource_version=subject.resource_version or None,
            ),
            reason=reason,
            message=message,
            type=event_type,
            count=1,
            first_timestamp=now,
            last_timestamp=now,
            source=client.V1EventSource(component=self.component),
        )
        self.api.create_namespaced_event(namespace=subject.namespace, body=event)
        logger.info(f"Recorded {event_type} event {reason} on {subject.namespace}/{subject.name}: {message}")


class ResourceWatcher:
    """Watches a cluster-scoped list of custom objects and signals on every change."""

    def __init__(
        self,
        custom_objects_api: client.CustomObjectsApi,
        group: str,
        version: str,
        plural: str,
        on_change: Callable[[str, Dict[str, Any]], None],
        shutdown_event: Optional[threading.Event] = None,
    ):
        self.api = custom_objects_api
        self.group = group
        self.version = version
        self.plural = plural
        self.on_change = on_change
        self._shutdown_event = shutdown_event or threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self):
        self._thread = threading.Thread(target=self._watch, daemon=True)
        self._thread.start()
        logger.info(f"Started {self.plural} watch thread")

    def stop(self):
        self._shutdown_event.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=5)

    def _watch(self):
        logger.info(f"Starting {self.plural}.{self.group} watch")
        attempt = 0

        while not self._shutdown_event.is_set():
            try:
                w = watch.Watch()
                for event in w.stream(
                    self.api.list_cluster_custom_object,
                    group=self.group,
                    version=self.version,
                    plural=self.plural,
                    timeout_seconds=WATCH_TIMEOUT_SECONDS,
                ):
                    if self._shutdown_event.is_set():
                        break

                    event_type = event["type"]
                    obj = event["object"]
                    obj_name = obj.get("metadata", {}).get("name", "")
                    logger.debug(f"Received {self.plural} event: {event_type} for {obj_name}")
                    self.on_change(event_type, obj)
                    attempt = 0

                w.stop()

            except ApiException as e:
                if e.status == 410:  # Resource version too old
                    logger.info(f"{self.plural} watch resource version expired, restarting")
                    continue
                logger.error(f"{self.plural} watch error: {e}")
                self._shutdown_event.wait(calculate_exponential_backoff(attempt, base_delay=WATCH_ERROR_BACKOFF))
                attempt += 1

            except Exception as e:
                logger.error(f"Unexpected {self.plural} watch error: {e}")
                self._shutdown_event.wait(calculate_exponential_backoff(attempt, base_delay=WATCH_ERROR_BACKOFF))
                attempt += 1

        logger.info(f"{self.plural} watch stopped")
