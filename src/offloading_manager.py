#!/usr/bin/env python3
# src/offloading_manager.py
"""
Offloading Manager - Kubernetes controller for NamespaceOffloading cluster selectors

This controller keeps the NamespaceMap desired mappings of every peered cluster in
line with the cluster selector of each NamespaceOffloading, re-evaluating them
whenever VirtualNodes or NamespaceOffloadings change.
"""

import logging
import os
import random
import signal
import socket
import sys
import threading
import time
from datetime import datetime, timezone
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Dict, List, Optional, Set, Tuple
from urllib.parse import urlparse

from kubernetes import client, config
from prometheus_client import Counter, Gauge, Info, generate_latest

from cluster_selector import (
    ClusterSelectorReconciler,
    InvalidClusterSelectorError,
    ReconcileError,
)
from kube_backend import (
    KubernetesClusterRegistry,
    KubernetesEventRecorder,
    KubernetesMappingStore,
    ResourceWatcher,
)
from resources import (
    NAMESPACE_MAP_PLURAL,
    NAMESPACE_OFFLOADING_PLURAL,
    OFFLOADING_GROUP,
    OFFLOADING_VERSION,
    VIRTUAL_NODE_PLURAL,
    VIRTUALKUBELET_GROUP,
    VIRTUALKUBELET_VERSION,
    NamespaceOffloading,
    VirtualNode,
)

# -----------------------------
# Environment variables
# -----------------------------
LOCAL_CLUSTER_NAME = os.environ.get("LOCAL_CLUSTER_NAME", socket.gethostname())
WATCH_NAMESPACE = os.environ.get("WATCH_NAMESPACE", "")
RESYNC_INTERVAL = int(os.environ.get("RESYNC_INTERVAL", 30))
METRICS_PORT = int(os.environ.get("METRICS_PORT", 8000))
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
ENABLE_WATCH = os.environ.get("ENABLE_WATCH", "true").lower() in ("true", "1", "yes")

# -----------------------------
# Logging Setup
# -----------------------------
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - [%(funcName)s:%(lineno)d] - %(message)s",
)
logger = logging.getLogger("offloading-manager")

# -----------------------------
# Prometheus Metrics
# -----------------------------
reconciliations_total = Counter(
    "offloading_reconciliations_total",
    "Total number of cluster selector reconciliation passes",
    ["result"],
)
matched_clusters = Gauge(
    "offloading_matched_clusters",
    "Number of clusters selected by the NamespaceOffloading of a namespace",
    ["namespace"],
)
invalid_selector_events_total = Counter(
    "offloading_invalid_selector_events_total",
    "Total number of passes aborted because of an invalid cluster selector",
)
info_metric = Info(
    "offloading_manager_info", "Information about the offloading manager instance"
)

info_metric.info(
    {
        "local_cluster": LOCAL_CLUSTER_NAME,
        "watch_namespace": WATCH_NAMESPACE or "all",
        "version": "1.0.0",
    }
)

# -----------------------------
# Kubernetes Client Setup
# -----------------------------
try:
    config.load_incluster_config()
    logger.info("Loaded in-cluster Kubernetes configuration")
except Exception:
    config.load_kube_config()
    logger.info("Loaded local Kubernetes configuration")

custom_objects = client.CustomObjectsApi()
core_api = client.CoreV1Api()

registry = KubernetesClusterRegistry(custom_objects)
reconciler = ClusterSelectorReconciler(
    registry=registry,
    store=KubernetesMappingStore(custom_objects),
    recorder=KubernetesEventRecorder(core_api),
    local_cluster_name=LOCAL_CLUSTER_NAME,
)

# -----------------------------
# Global State
# -----------------------------
resync_requested = threading.Event()
shutdown_event = threading.Event()
initial_sync_done = False
last_sync_time = None
# NamespaceOffloadings whose last pass failed for good, keyed by namespace/name
held_back: Dict[str, Tuple[str, Tuple]] = {}
reported_namespaces: Set[str] = set()


def calculate_jittered_sleep(base_interval: int, max_jitter_percent: float = 0.2) -> float:
    """Calculate sleep interval with jitter to prevent synchronized wake-ups.

    Args:
        base_interval: Base sleep interval in seconds
        max_jitter_percent: Maximum jitter as percentage of base interval (0.0-1.0)

    Returns:
        Sleep interval with random jitter applied
    """
    jitter_range = base_interval * max_jitter_percent
    jitter = random.uniform(-jitter_range, jitter_range)
    return max(1.0, base_interval + jitter)  # Ensure minimum 1 second


# -----------------------------
# Reconciliation
# -----------------------------


def virtual_nodes_version(virtual_nodes: List[VirtualNode]) -> Tuple:
    """Summarize the VirtualNode attributes a cluster selector can observe."""
    return tuple(
        sorted((vn.name, vn.cluster_id, tuple(sorted(vn.labels.items()))) for vn in virtual_nodes)
    )


def forget_matched_clusters(namespace: str):
    try:
        matched_clusters.remove(namespace)
    except KeyError:
        pass
    reported_namespaces.discard(namespace)


def reconcile_namespace_offloading(nsoff: NamespaceOffloading, vn_version: Optional[Tuple] = None) -> bool:
    """Enforce the cluster selector of one NamespaceOffloading, recording the outcome.

    A pass that failed with a non-retryable error is not repeated while both the
    NamespaceOffloading and the VirtualNodes stay unchanged.
    """
    key = f"{nsoff.namespace}/{nsoff.name}"
    if vn_version is not None and held_back.get(key) == (nsoff.resource_version, vn_version):
        reconciliations_total.labels(result="skipped").inc()
        logger.debug(f"Skipping namespace {nsoff.namespace}: selector still invalid")
        return False

    try:
        matched = reconciler.enforce_cluster_selector(nsoff)
    except ReconcileError as e:
        reconciliations_total.labels(result=e.result).inc()
        forget_matched_clusters(nsoff.namespace)
        if isinstance(e, InvalidClusterSelectorError):
            invalid_selector_events_total.inc()
        if e.retryable or vn_version is None:
            held_back.pop(key, None)
            logger.error(f"Failed to enforce ClusterSelector for namespace {nsoff.namespace}: {e}")
        else:
            held_back[key] = (nsoff.resource_version, vn_version)
            logger.warning(
                f"Holding back namespace {nsoff.namespace} until its NamespaceOffloading "
                f"or the VirtualNodes change: {e}"
            )
        return False

    held_back.pop(key, None)
    reconciliations_total.labels(result="success").inc()
    matched_clusters.labels(namespace=nsoff.namespace).set(len(matched))
    reported_namespaces.add(nsoff.namespace)
    logger.debug(f"Namespace {nsoff.namespace} offloaded to clusters {matched}")
    return True


def resync_all() -> bool:
    """Reconcile every NamespaceOffloading in scope, one at a time."""
    global initial_sync_done, last_sync_time

    try:
        offloadings = registry.list_namespace_offloadings(WATCH_NAMESPACE)
        vn_version = virtual_nodes_version(registry.list_virtual_nodes())
    except ReconcileError as e:
        reconciliations_total.labels(result=e.result).inc()
        logger.error(f"Cannot list NamespaceOffloadings or VirtualNodes: {e}")
        return False

    listed = {f"{nsoff.namespace}/{nsoff.name}" for nsoff in offloadings}
    for key in [k for k in held_back if k not in listed]:
        del held_back[key]
    for namespace in reported_namespaces - {nsoff.namespace for nsoff in offloadings}:
        forget_matched_clusters(namespace)

    success = True
    for nsoff in offloadings:
        if not reconcile_namespace_offloading(nsoff, vn_version):
            success = False

    initial_sync_done = True
    last_sync_time = datetime.now(timezone.utc)
    logger.info(f"Resync complete: {len(offloadings)} NamespaceOffloadings, success={success}")
    return success


def request_resync(event_type: str, obj: dict):
    """Watch callback: schedule a new pass on the resync loop."""
    logger.debug(f"Resync requested by {event_type} on {obj.get('metadata', {}).get('name', '')}")
    resync_requested.set()


def start_watchers():
    watchers = [
        ResourceWatcher(
            custom_objects,
            VIRTUALKUBELET_GROUP,
            VIRTUALKUBELET_VERSION,
            VIRTUAL_NODE_PLURAL,
            request_resync,
            shutdown_event,
        ),
        # A new peer shows up as a VirtualNode and a NamespaceMap, not necessarily at once
        ResourceWatcher(
            custom_objects,
            VIRTUALKUBELET_GROUP,
            VIRTUALKUBELET_VERSION,
            NAMESPACE_MAP_PLURAL,
            request_resync,
            shutdown_event,
        ),
        ResourceWatcher(
            custom_objects,
            OFFLOADING_GROUP,
            OFFLOADING_VERSION,
            NAMESPACE_OFFLOADING_PLURAL,
            request_resync,
            shutdown_event,
        ),
    ]
    for watcher in watchers:
        watcher.start()
    return watchers


# -----------------------------
# HTTP Server for Metrics and Health
# -----------------------------


class OffloadingManagerHTTPHandler(BaseHTTPRequestHandler):
    """Serves Prometheus metrics, liveness and readiness."""

    def do_GET(self):
        path = urlparse(self.path).path

        if path == "/metrics":
            try:
                metrics_data = generate_latest()
                self.send_response(200)
                self.send_header("Content-Type", "text/plain; version=0.0.4; charset=utf-8")
                self.end_headers()
                self.wfile.write(metrics_data)
            except Exception as e:
                logger.error(f"Error generating metrics: {e}")
                self._plain(500, b"Error generating metrics")

        elif path == "/health":
            self._plain(200, b"OK")

        elif path == "/ready":
            if initial_sync_done and last_sync_time is not None:
                self._plain(200, f"OK (last sync: {last_sync_time.isoformat()})".encode())
            else:
                self._plain(503, b"Initial resync pending")

        else:
            self._plain(404, b"Not Found")

    def _plain(self, status: int, body: bytes):
        self.send_response(status)
        self.send_header("Content-Type", "text/plain")
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format, *args):
        """Override to use our logger instead of stderr."""
        logger.debug(f"HTTP: {format % args}")


def start_metrics_server():
    """Start HTTP server for metrics and probes."""

    def run_server():
        try:
            server = HTTPServer(("0.0.0.0", METRICS_PORT), OffloadingManagerHTTPHandler)
            logger.info(f"HTTP server started on port {METRICS_PORT} (metrics: /metrics, probes: /health /ready)")
            server.serve_forever()
        except Exception as e:
            logger.error(f"HTTP server error: {e}")

    server_thread = threading.Thread(target=run_server, daemon=True)
    server_thread.start()


# -----------------------------
# Main Loop
# -----------------------------


def main():
    """Main application loop."""
    logger.info(
        f"Starting Offloading Manager for cluster {LOCAL_CLUSTER_NAME} "
        f"(namespace scope: {WATCH_NAMESPACE or 'all'})"
    )

    start_metrics_server()

    watchers = start_watchers() if ENABLE_WATCH else []

    logger.info(f"Starting resync loop (interval: {RESYNC_INTERVAL}s)")

    try:
        while not shutdown_event.is_set():
            try:
                # Clear first so changes observed during the pass trigger another one
                resync_requested.clear()
                resync_all()

                timeout = calculate_jittered_sleep(RESYNC_INTERVAL)
                if resync_requested.wait(timeout):
                    logger.debug("Change notification received, resyncing")

            except KeyboardInterrupt:
                logger.info("Received interrupt signal, shutting down gracefully")
                break
            except Exception as e:
                logger.error(f"Error in resync loop iteration: {e}")
                time.sleep(min(RESYNC_INTERVAL * 2, 30))

    except KeyboardInterrupt:
        logger.info("Shutting down gracefully...")
    finally:
        shutdown_event.set()
        for watcher in watchers:
            watcher.stop()
        logger.info("Offloading Manager shutdown complete")


def signal_handler(signum, frame):
    """Handle termination signals gracefully."""
    logger.info(f"Received signal {signum}, initiating graceful shutdown")
    # The main loop will handle cleanup via KeyboardInterrupt
    raise KeyboardInterrupt


def run():
    """Console entry point: install signal handlers, validate configuration and run."""
    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    if not LOCAL_CLUSTER_NAME:
        logger.error("LOCAL_CLUSTER_NAME environment variable is required")
        sys.exit(1)

    main()


if __name__ == "__main__":
    run()
