#!/usr/bin/env python3
# tests/test_kube_backend.py
"""
Test suite for the Kubernetes-backed registry, mapping store, event recorder and watcher.
"""

import os
import sys
import threading
import unittest
from unittest.mock import Mock, patch

# Add src directory to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

import kube_backend
from cluster_selector import RegistryError
from kubernetes.client.rest import ApiException
from resources import NamespaceMap, NamespaceOffloading
from urllib3.exceptions import MaxRetryError


def virtual_node_obj(name, cluster_id, labels=None):
    return {
        "apiVersion": "virtualkubelet.liqo.io/v1alpha1",
        "kind": "VirtualNode",
        "metadata": {"name": name, "namespace": f"liqo-tenant-{cluster_id}", "labels": labels or {}},
        "spec": {"clusterIdentity": {"clusterID": cluster_id, "clusterName": name}},
    }


class TestKubernetesClusterRegistry(unittest.TestCase):
    """Test listing of VirtualNodes, NamespaceMaps and NamespaceOffloadings."""

    def setUp(self):
        self.mock_api = Mock()
        self.registry = kube_backend.KubernetesClusterRegistry(self.mock_api)

    def test_list_virtual_nodes(self):
        self.mock_api.list_cluster_custom_object.return_value = {
            "items": [virtual_node_obj("liqo-a", "cluster-a", {"liqo.io/provider": "aws"})]
        }

        nodes = self.registry.list_virtual_nodes()

        self.assertEqual(len(nodes), 1)
        self.assertEqual(nodes[0].name, "liqo-a")
        self.assertEqual(nodes[0].cluster_id, "cluster-a")
        self.assertEqual(nodes[0].labels, {"liqo.io/provider": "aws"})
        call_kwargs = self.mock_api.list_cluster_custom_object.call_args[1]
        self.assertEqual(call_kwargs["plural"], "virtualnodes")

    def test_list_virtual_nodes_api_error(self):
        self.mock_api.list_cluster_custom_object.side_effect = ApiException(status=500, reason="Internal")

        with self.assertRaises(RegistryError) as ctx:
            self.registry.list_virtual_nodes()
        self.assertIn("failed to retrieve VirtualNodes", str(ctx.exception))

    def test_transport_errors_become_registry_errors(self):
        unreachable = MaxRetryError(pool=None, url="/apis/virtualkubelet.liqo.io/v1alpha1/virtualnodes")
        self.mock_api.list_cluster_custom_object.side_effect = unreachable
        self.mock_api.list_namespaced_custom_object.side_effect = unreachable

        for list_call in (
            self.registry.list_virtual_nodes,
            self.registry.list_namespace_maps,
            lambda: self.registry.list_namespace_offloadings("demo"),
        ):
            with self.assertRaises(RegistryError) as ctx:
                list_call()
            self.assertIs(ctx.exception.__cause__, unreachable)
            self.assertEqual(ctx.exception.result, "registry_error")

    def test_list_namespace_maps_local_only(self):
        self.mock_api.list_cluster_custom_object.return_value = {
            "items": [
                {
                    "metadata": {
                        "name": "cluster-a-map",
                        "namespace": "liqo-tenant-cluster-a",
                        "labels": {"liqo.io/remote-cluster-id": "cluster-a"},
                    },
                    "spec": {"desiredMapping": {"demo": "demo-local"}},
                }
            ]
        }

        maps = self.registry.list_namespace_maps()

        self.assertEqual(maps[0].cluster_id, "cluster-a")
        self.assertEqual(maps[0].desired_mapping, {"demo": "demo-local"})
        call_kwargs = self.mock_api.list_cluster_custom_object.call_args[1]
        self.assertEqual(call_kwargs["plural"], "namespacemaps")
        self.assertEqual(call_kwargs["label_selector"], "!liqo.io/replication")

    def test_list_namespace_offloadings_scoped(self):
        self.mock_api.list_namespaced_custom_object.return_value = {
            "items": [
                {
                    "metadata": {"name": "offloading", "namespace": "demo", "uid": "1234"},
                    "spec": {
                        "namespaceMappingStrategy": "EnforceSameName",
                        "clusterSelector": {
                            "nodeSelectorTerms": [
                                {"matchExpressions": [{"key": "env", "operator": "Exists"}]}
                            ]
                        },
                    },
                }
            ]
        }

        offloadings = self.registry.list_namespace_offloadings("demo")

        self.assertEqual(len(offloadings), 1)
        nsoff = offloadings[0]
        self.assertEqual(nsoff.uid, "1234")
        self.assertEqual(nsoff.remote_namespace_name("local"), "demo")
        self.assertEqual(nsoff.cluster_selector.node_selector_terms[0].match_expressions[0].values, [])
        self.mock_api.list_cluster_custom_object.assert_not_called()


class TestKubernetesMappingStore(unittest.TestCase):
    """Test idempotent desired mapping edits."""

    def setUp(self):
        self.mock_api = Mock()
        self.store = kube_backend.KubernetesMappingStore(self.mock_api)
        self.namespace_map = NamespaceMap(
            name="cluster-a-map", namespace="liqo-tenant-cluster-a", cluster_id="cluster-a"
        )

    def test_add_patches_when_absent(self):
        self.store.add_desired_mapping(self.namespace_map, "demo", "demo-local")

        self.mock_api.patch_namespaced_custom_object.assert_called_once()
        call_kwargs = self.mock_api.patch_namespaced_custom_object.call_args[1]
        self.assertEqual(call_kwargs["name"], "cluster-a-map")
        self.assertEqual(call_kwargs["namespace"], "liqo-tenant-cluster-a")
        self.assertEqual(call_kwargs["body"], {"spec": {"desiredMapping": {"demo": "demo-local"}}})
        self.assertEqual(self.namespace_map.desired_mapping, {"demo": "demo-local"})

    def test_add_is_noop_when_present(self):
        self.namespace_map.desired_mapping["demo"] = "demo-local"
        self.store.add_desired_mapping(self.namespace_map, "demo", "demo-local")
        self.mock_api.patch_namespaced_custom_object.assert_not_called()

    def test_remove_is_noop_when_absent(self):
        self.store.remove_desired_mapping(self.namespace_map, "demo")
        self.mock_api.patch_namespaced_custom_object.assert_not_called()

    def test_remove_patches_null(self):
        self.namespace_map.desired_mapping["demo"] = "demo-local"

        self.store.remove_desired_mapping(self.namespace_map, "demo")

        call_kwargs = self.mock_api.patch_namespaced_custom_object.call_args[1]
        self.assertEqual(call_kwargs["body"], {"spec": {"desiredMapping": {"demo": None}}})
        self.assertEqual(self.namespace_map.desired_mapping, {})

    def test_remove_tolerates_missing_namespace_map(self):
        self.namespace_map.desired_mapping["demo"] = "demo-local"
        self.mock_api.patch_namespaced_custom_object.side_effect = ApiException(status=404)

        self.store.remove_desired_mapping(self.namespace_map, "demo")
        self.assertEqual(self.namespace_map.desired_mapping, {})

    def test_remove_propagates_other_errors(self):
        self.namespace_map.desired_mapping["demo"] = "demo-local"
        self.mock_api.patch_namespaced_custom_object.side_effect = ApiException(status=500)

        with self.assertRaises(ApiException):
            self.store.remove_desired_mapping(self.namespace_map, "demo")
        self.assertEqual(self.namespace_map.desired_mapping, {"demo": "demo-local"})


class TestKubernetesEventRecorder(unittest.TestCase):
    """Test Warning event recording."""

    def setUp(self):
        self.mock_api = Mock()
        self.recorder = kube_backend.KubernetesEventRecorder(self.mock_api, component="test")
        self.nsoff = NamespaceOffloading(name="offloading", namespace="demo", uid="1234")

    def test_field_selector(self):
        selector = kube_backend.involved_object_field_selector(self.nsoff, "Invalid")
        self.assertEqual(
            str(selector),
            "involvedObject.kind=NamespaceOffloading,involvedObject.name=offloading,"
            "involvedObject.namespace=demo,reason=Invalid",
        )

    def test_creates_new_event(self):
        self.mock_api.list_namespaced_event.return_value = Mock(items=[])

        self.recorder.warning(self.nsoff, "Invalid", "Invalid ClusterSelector: boom")

        self.mock_api.create_namespaced_event.assert_called_once()
        call_kwargs = self.mock_api.create_namespaced_event.call_args[1]
        self.assertEqual(call_kwargs["namespace"], "demo")
        body = call_kwargs["body"]
        self.assertEqual(body.reason, "Invalid")
        self.assertEqual(body.type, "Warning")
        self.assertEqual(body.message, "Invalid ClusterSelector: boom")
        self.assertEqual(body.involved_object.uid, "1234")
        self.assertEqual(body.source.component, "test")

    def test_bumps_existing_event(self):
        existing = Mock(message="Invalid ClusterSelector: boom", type="Warning", count=3)
        existing.metadata.name = "offloading.abc"
        self.mock_api.list_namespaced_event.return_value = Mock(items=[existing])

        self.recorder.warning(self.nsoff, "Invalid", "Invalid ClusterSelector: boom")

        self.mock_api.create_namespaced_event.assert_not_called()
        call_kwargs = self.mock_api.patch_namespaced_event.call_args[1]
        self.assertEqual(call_kwargs["name"], "offloading.abc")
        self.assertEqual(call_kwargs["body"]["count"], 4)

    def test_api_errors_are_not_raised(self):
        self.mock_api.list_namespaced_event.side_effect = ApiException(status=403)
        self.recorder.warning(self.nsoff, "Invalid", "Invalid ClusterSelector: boom")
        self.mock_api.create_namespaced_event.assert_not_called()


class TestResourceWatcher(unittest.TestCase):
    """Test the change watcher."""

    @patch("kube_backend.watch.Watch")
    def test_events_trigger_callback(self, mock_watch_cls):
        shutdown = threading.Event()
        received = []

        def on_change(event_type, obj):
            received.append((event_type, obj["metadata"]["name"]))
            shutdown.set()

        mock_watch_cls.return_value.stream.return_value = iter(
            [{"type": "MODIFIED", "object": virtual_node_obj("liqo-a", "cluster-a")}]
        )
        watcher = kube_backend.ResourceWatcher(
            Mock(), "virtualkubelet.liqo.io", "v1alpha1", "virtualnodes", on_change, shutdown
        )

        watcher._watch()

        self.assertEqual(received, [("MODIFIED", "liqo-a")])

    @patch("kube_backend.watch.Watch")
    def test_expired_resource_version_restarts(self, mock_watch_cls):
        shutdown = threading.Event()
        received = []

        def on_change(event_type, obj):
            received.append(event_type)
            shutdown.set()

        mock_watch_cls.return_value.stream.side_effect = [
            ApiException(status=410),
            iter([{"type": "ADDED", "object": virtual_node_obj("liqo-a", "cluster-a")}]),
        ]
        watcher = kube_backend.ResourceWatcher(
            Mock(), "virtualkubelet.liqo.io", "v1alpha1", "virtualnodes", on_change, shutdown
        )

        watcher._watch()

        self.assertEqual(received, ["ADDED"])
        self.assertEqual(mock_watch_cls.return_value.stream.call_count, 2)


class TestBackoff(unittest.TestCase):
    def test_exponential_backoff_bounds(self):
        for attempt in range(10):
            delay = kube_backend.calculate_exponential_backoff(attempt, base_delay=1.0, max_delay=8.0)
            self.assertGreaterEqual(delay, min(2 ** attempt, 8.0) * 1.1)
            self.assertLessEqual(delay, min(2 ** attempt, 8.0) * 1.3)


if __name__ == "__main__":
    unittest.main()
