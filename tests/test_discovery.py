"""Tests for resource discovery."""

import pytest
from kube_mock import MockCluster

from dhcp_template.discovery import (
    ClusterScopeWithNamespaceError,
    InvalidApiVersionError,
    NamespaceScopeWithoutNamespaceError,
    UnknownKindError,
    discover,
)
from dhcp_template.models import ObjectRef


@pytest.fixture
def cluster() -> MockCluster:
    return MockCluster()


class TestDiscover:
    """Tests for discover."""

    @pytest.mark.asyncio
    async def test_namespaced_kind(self, cluster: MockCluster) -> None:
        ref = ObjectRef(api_version="v1", kind="ConfigMap", namespace="default", name="a")

        api = await discover(cluster, ref)

        assert api.kind.namespaced
        assert api.namespace == "default"

    @pytest.mark.asyncio
    async def test_cluster_scoped_kind(self, cluster: MockCluster) -> None:
        ref = ObjectRef(api_version="v1", kind="Namespace", name="a")

        api = await discover(cluster, ref)

        assert not api.kind.namespaced
        assert api.namespace is None

    @pytest.mark.asyncio
    async def test_grouped_api_version(self, cluster: MockCluster) -> None:
        ref = ObjectRef(api_version="rbac.authorization.k8s.io/v1", kind="ClusterRole", name="a")

        api = await discover(cluster, ref)

        assert api.kind.kind == "ClusterRole"

    @pytest.mark.asyncio
    async def test_cluster_scoped_with_namespace(self, cluster: MockCluster) -> None:
        ref = ObjectRef(api_version="v1", kind="Namespace", namespace="default", name="a")

        with pytest.raises(ClusterScopeWithNamespaceError):
            await discover(cluster, ref)

    @pytest.mark.asyncio
    async def test_namespaced_without_namespace(self, cluster: MockCluster) -> None:
        ref = ObjectRef(api_version="v1", kind="ConfigMap", name="a")

        with pytest.raises(NamespaceScopeWithoutNamespaceError):
            await discover(cluster, ref)

    @pytest.mark.asyncio
    async def test_unknown_kind(self, cluster: MockCluster) -> None:
        ref = ObjectRef(api_version="example.com/v1", kind="Widget", namespace="a", name="a")

        with pytest.raises(UnknownKindError):
            await discover(cluster, ref)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("api_version", ["", "apps/", "/v1", "apps/v1/extra", "Apps/V1"])
    async def test_invalid_api_version(self, cluster: MockCluster, api_version: str) -> None:
        ref = ObjectRef(api_version=api_version, kind="ConfigMap", namespace="a", name="a")

        with pytest.raises(InvalidApiVersionError):
            await discover(cluster, ref)

    @pytest.mark.asyncio
    async def test_scoped_api_delete_reports_absence(self, cluster: MockCluster) -> None:
        ref = ObjectRef(api_version="v1", kind="ConfigMap", namespace="default", name="a")
        api = await discover(cluster, ref)

        assert await api.delete("a") is False
