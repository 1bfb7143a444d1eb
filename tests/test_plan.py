"""Tests for plan building and execution."""

import pytest
from kube_mock import MockCluster

from dhcp_template.guard import MANAGED_BY_KEY, MANAGED_BY_VALUE, ForeignObjectError
from dhcp_template.models import DHCPTemplate, MissingNameError, MissingTypesError, ObjectRef
from dhcp_template.plan import Plan, PlanExecutionError


def manifest(name: str, kind: str = "ConfigMap", namespace: str | None = "default") -> dict:
    metadata: dict = {"name": name}
    if namespace is not None:
        metadata["namespace"] = namespace
    return {"apiVersion": "v1", "kind": kind, "metadata": metadata}


def ref(name: str, kind: str = "ConfigMap", namespace: str | None = "default") -> ObjectRef:
    return ObjectRef(api_version="v1", kind=kind, namespace=namespace, name=name)


def managed(name: str, kind: str = "ConfigMap", namespace: str | None = "default") -> dict:
    obj = manifest(name, kind, namespace)
    obj["metadata"]["labels"] = {MANAGED_BY_KEY: MANAGED_BY_VALUE}
    return obj


@pytest.fixture
def cluster() -> MockCluster:
    return MockCluster()


@pytest.fixture
def owner(cluster: MockCluster) -> DHCPTemplate:
    return DHCPTemplate.model_validate(cluster.add_template("dns", ""))


class TestPlanDiff:
    """Tests for Plan.diff."""

    def test_first_pass_applies_everything(self) -> None:
        plan = Plan.diff(None, [manifest("a"), manifest("b")])

        assert plan.apply == {ref("a"), ref("b")}
        assert plan.delete == set()

    def test_stale_objects_are_deleted(self) -> None:
        plan = Plan.diff({ref("a"), ref("b")}, [manifest("b"), manifest("c")])

        assert plan.apply == {ref("b"), ref("c")}
        assert plan.delete == {ref("a")}
        assert plan.all() == {ref("a"), ref("b"), ref("c")}

    def test_apply_and_delete_are_disjoint(self) -> None:
        plan = Plan.diff({ref("a"), ref("b"), ref("c")}, [manifest("a"), manifest("d")])

        assert plan.apply.isdisjoint(plan.delete)
        assert plan.all() == plan.apply | plan.delete

    def test_namespace_is_part_of_identity(self) -> None:
        plan = Plan.diff({ref("a", namespace="old")}, [manifest("a", namespace="new")])

        assert plan.delete == {ref("a", namespace="old")}

    def test_manifest_without_types(self) -> None:
        with pytest.raises(MissingTypesError):
            Plan.diff(None, [{"metadata": {"name": "a"}}])

    def test_manifest_without_name(self) -> None:
        with pytest.raises(MissingNameError):
            Plan.diff(None, [{"apiVersion": "v1", "kind": "ConfigMap", "metadata": {}}])


class TestPlanExecute:
    """Tests for Plan.execute."""

    @pytest.mark.asyncio
    async def test_deletes_before_applies(
        self, cluster: MockCluster, owner: DHCPTemplate
    ) -> None:
        cluster.put_object(managed("a"))
        cluster.put_object(managed("b"))
        plan = Plan.diff({ref("a"), ref("b")}, [manifest("b"), manifest("c")])

        await plan.execute(owner, cluster)

        assert cluster.calls == [
            ("delete", "ConfigMap", "default", "a"),
            ("apply", "ConfigMap", "default", "b"),
            ("apply", "ConfigMap", "default", "c"),
        ]
        assert cluster.get_object("v1", "ConfigMap", "a", "default") is None
        assert cluster.get_object("v1", "ConfigMap", "c", "default") is not None

    @pytest.mark.asyncio
    async def test_applies_in_render_order(
        self, cluster: MockCluster, owner: DHCPTemplate
    ) -> None:
        plan = Plan.diff(None, [manifest("z"), manifest("a"), manifest("m")])

        await plan.execute(owner, cluster)

        assert [call[3] for call in cluster.calls] == ["z", "a", "m"]

    @pytest.mark.asyncio
    async def test_applied_objects_are_owned(
        self, cluster: MockCluster, owner: DHCPTemplate
    ) -> None:
        plan = Plan.diff(None, [manifest("a")])

        await plan.execute(owner, cluster)

        stored = cluster.get_object("v1", "ConfigMap", "a", "default")
        assert stored["metadata"]["ownerReferences"][0]["uid"] == owner.metadata.uid
        assert stored["metadata"]["labels"][MANAGED_BY_KEY] == MANAGED_BY_VALUE

    @pytest.mark.asyncio
    async def test_failures_are_collected(
        self, cluster: MockCluster, owner: DHCPTemplate
    ) -> None:
        cluster.put_object(managed("old"))
        cluster.fail_delete.add("old")
        cluster.fail_apply.add("b")
        plan = Plan.diff({ref("old")}, [manifest("a"), manifest("b"), manifest("c")])

        with pytest.raises(PlanExecutionError) as exc_info:
            await plan.execute(owner, cluster)

        assert [failed for failed, _ in exc_info.value.failures] == [ref("old"), ref("b")]
        assert cluster.get_object("v1", "ConfigMap", "a", "default") is not None
        assert cluster.get_object("v1", "ConfigMap", "c", "default") is not None

    @pytest.mark.asyncio
    async def test_foreign_object_fails_but_others_apply(
        self, cluster: MockCluster, owner: DHCPTemplate
    ) -> None:
        foreign = manifest("a")
        foreign["data"] = {"owner": "someone else"}
        cluster.put_object(foreign)
        plan = Plan.diff(None, [manifest("a"), manifest("b")])

        with pytest.raises(PlanExecutionError) as exc_info:
            await plan.execute(owner, cluster)

        [(failed, error)] = exc_info.value.failures
        assert failed == ref("a")
        assert isinstance(error, ForeignObjectError)
        assert cluster.get_object("v1", "ConfigMap", "a", "default")["data"] == {
            "owner": "someone else"
        }
        assert cluster.get_object("v1", "ConfigMap", "b", "default") is not None

    @pytest.mark.asyncio
    async def test_scope_mismatch_is_a_failure(
        self, cluster: MockCluster, owner: DHCPTemplate
    ) -> None:
        plan = Plan.diff(
            None,
            [manifest("a", namespace=None), manifest("ns", kind="Namespace", namespace=None)],
        )

        with pytest.raises(PlanExecutionError) as exc_info:
            await plan.execute(owner, cluster)

        assert [failed for failed, _ in exc_info.value.failures] == [ref("a", namespace=None)]
        assert cluster.get_object("v1", "Namespace", "ns") is not None
