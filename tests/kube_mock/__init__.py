"""In-memory Kubernetes mock for controller tests.

Provides a ``Cluster`` implementation holding DHCPTemplates and generic
objects in memory, so the controller can be exercised end to end without
an API server, plus fakes of the client library classes so that
``KubernetesCluster`` itself can be tested.

Key Features:
- Kind registry with cluster and namespace scope
- Metadata-only reads, server-side apply and delete of generic objects
- DHCPTemplate status replace guarded by resourceVersion
- Watch events fed by the test
- Error injection for apply, delete and status writes
- Patched DynamicClient, CustomObjectsApi and Watch recording call arguments

Usage:
    from kube_mock import MockCluster

    cluster = MockCluster()
    cluster.add_template("dns", TEMPLATE)

    controller = Controller(cluster, registry, config)
    await controller.reconcile_name("dns")

    assert cluster.get_object("v1", "ConfigMap", "dns-node-a", "default")

    from kube_mock import mock_kube_context

    with mock_kube_context(objects={"dns": CONFIG_MAP}) as ctx:
        cluster = KubernetesCluster(api_client=object())
        ...
        assert ctx.dynamic.calls[0][0] == "get"
"""

from .client import (
    FakeCustomObjectsApi,
    FakeDynamicClient,
    FakeResource,
    FakeWatch,
    MockKubeContext,
    mock_kube_context,
)
from .cluster import MockApiError, MockCluster, MockConflictError

__all__ = [
    "FakeCustomObjectsApi",
    "FakeDynamicClient",
    "FakeResource",
    "FakeWatch",
    "MockApiError",
    "MockCluster",
    "MockConflictError",
    "MockKubeContext",
    "mock_kube_context",
]
