"""Fakes for the Kubernetes client classes used by ``KubernetesCluster``.

Unlike ``MockCluster``, these sit below the ``Cluster`` protocol: the real
``KubernetesCluster`` runs against them, so the arguments it passes to the
client library can be asserted.
"""

from __future__ import annotations

import threading
from collections.abc import Generator, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any
from unittest import mock

from kubernetes.client.exceptions import ApiException
from kubernetes.dynamic.exceptions import NotFoundError, ResourceNotFoundError

# How long an exhausted fake watch stream idles before it "times out".
STREAM_IDLE_SECONDS = 0.01


@dataclass(frozen=True)
class FakeResource:
    """Stands in for a discovered dynamic ``Resource``."""

    api_version: str
    kind: str
    namespaced: bool


class FakeResult:
    """Stands in for a ``ResourceInstance``."""

    def __init__(self, data: dict[str, Any]) -> None:
        self._data = data

    def to_dict(self) -> dict[str, Any]:
        return dict(self._data)


class FakeResources:
    def __init__(self, kinds: dict[tuple[str, str], bool]) -> None:
        self._kinds = kinds

    def get(self, *, api_version: str, kind: str) -> FakeResource:
        if (api_version, kind) not in self._kinds:
            raise ResourceNotFoundError(f"No matches found for {api_version}/{kind}")
        return FakeResource(api_version, kind, self._kinds[(api_version, kind)])


def not_found() -> NotFoundError:
    return NotFoundError(ApiException(status=404, reason="Not Found"))


class FakeDynamicClient:
    """Records every call as ``(method, args, kwargs)``."""

    def __init__(self, kinds: dict[tuple[str, str], bool], objects: dict[str, dict[str, Any]]) -> None:
        self.resources = FakeResources(kinds)
        self.objects = objects
        self.calls: list[tuple[str, tuple[Any, ...], dict[str, Any]]] = []

    def get(self, resource: FakeResource, **kwargs: Any) -> FakeResult:
        self.calls.append(("get", (resource,), kwargs))
        if kwargs["name"] not in self.objects:
            raise not_found()
        return FakeResult({"metadata": self.objects[kwargs["name"]]["metadata"]})

    def server_side_apply(self, resource: FakeResource, **kwargs: Any) -> FakeResult:
        self.calls.append(("server_side_apply", (resource,), kwargs))
        body = kwargs["body"]
        self.objects[body["metadata"]["name"]] = body
        return FakeResult(body)

    def delete(self, resource: FakeResource, **kwargs: Any) -> FakeResult:
        self.calls.append(("delete", (resource,), kwargs))
        if self.objects.pop(kwargs["name"], None) is None:
            raise not_found()
        return FakeResult({"status": "Success"})


class FakeCustomObjectsApi:
    """DHCPTemplate access through the custom objects API."""

    def __init__(self, templates: dict[str, dict[str, Any]]) -> None:
        self.templates = templates
        self.calls: list[tuple[str, tuple[Any, ...]]] = []
        self.list_count = 0
        self.resource_version = "100"
        self.fail_reads_with: int | None = None

    def get_cluster_custom_object(self, group: str, version: str, plural: str, name: str):
        self.calls.append(("get", (group, version, plural, name)))
        if self.fail_reads_with is not None:
            raise ApiException(status=self.fail_reads_with, reason="Injected")
        if name not in self.templates:
            raise ApiException(status=404, reason="Not Found")
        return self.templates[name]

    def replace_cluster_custom_object_status(
        self, group: str, version: str, plural: str, name: str, body: dict[str, Any]
    ):
        self.calls.append(("replace_status", (group, version, plural, name)))
        self.templates[name] = body
        return body

    def list_cluster_custom_object(self, group: str, version: str, plural: str, **kwargs: Any):
        self.list_count += 1
        return {
            "items": list(self.templates.values()),
            "metadata": {"resourceVersion": self.resource_version},
        }


class FakeWatch:
    """Replays scripted streams, one per ``stream`` call.

    Once the script is used up, each stream idles briefly and ends, like a
    server-side watch timeout.
    """

    def __init__(self, scripts: list[list[dict[str, Any]]]) -> None:
        self._scripts = scripts
        self._lock = threading.Lock()
        self.stream_kwargs: list[dict[str, Any]] = []

    def __call__(self) -> FakeWatch:
        return self

    def stream(self, func: Any, *args: Any, **kwargs: Any) -> Iterator[dict[str, Any]]:
        with self._lock:
            self.stream_kwargs.append(kwargs)
            events = self._scripts.pop(0) if self._scripts else []
        yield from events
        if not events:
            threading.Event().wait(STREAM_IDLE_SECONDS)

    def stop(self) -> None:
        pass


class MockKubeContext:
    """Context manager patching the Kubernetes client classes in ``dhcp_template.kube``.

    Patches:
    - kubernetes.dynamic.DynamicClient → FakeDynamicClient
    - kubernetes.client.CustomObjectsApi → FakeCustomObjectsApi
    - kubernetes.watch.Watch → FakeWatch

    Usage:
        with MockKubeContext(templates={"dns": TEMPLATE}) as ctx:
            cluster = KubernetesCluster(api_client=object())
            assert await cluster.get_template("dns") == TEMPLATE
            assert ctx.custom.calls[0][0] == "get"
    """

    def __init__(
        self,
        *,
        kinds: dict[tuple[str, str], bool] | None = None,
        objects: dict[str, dict[str, Any]] | None = None,
        templates: dict[str, dict[str, Any]] | None = None,
        watch_scripts: list[list[dict[str, Any]]] | None = None,
    ) -> None:
        self.dynamic = FakeDynamicClient(
            kinds if kinds is not None else {("v1", "ConfigMap"): True},
            dict(objects or {}),
        )
        self.custom = FakeCustomObjectsApi(dict(templates or {}))
        self.watch = FakeWatch(list(watch_scripts or []))
        self.dynamic_constructions = 0
        self._patches: list[Any] = []

    def __enter__(self) -> MockKubeContext:
        def create_dynamic(api_client: Any) -> FakeDynamicClient:
            self.dynamic_constructions += 1
            return self.dynamic

        self._patches = [
            mock.patch("dhcp_template.kube.dynamic.DynamicClient", side_effect=create_dynamic),
            mock.patch("dhcp_template.kube.client.CustomObjectsApi", return_value=self.custom),
            mock.patch("dhcp_template.kube.watch.Watch", side_effect=self.watch),
        ]
        for patch in self._patches:
            patch.start()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        for patch in reversed(self._patches):
            patch.stop()
        self._patches.clear()


@contextmanager
def mock_kube_context(**kwargs: Any) -> Generator[MockKubeContext, None, None]:
    """Convenience wrapper around ``MockKubeContext``."""
    with MockKubeContext(**kwargs) as ctx:
        yield ctx
