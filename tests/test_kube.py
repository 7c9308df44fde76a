from types import SimpleNamespace

import pytest
from kubernetes import client
from urllib3.exceptions import MaxRetryError

from kubeassay.core.errors import KubeAssayError, TransportError
from kubeassay.driver.kube import MERGE_PATCH, STRATEGIC_MERGE_PATCH, KubeClient

from conftest import CONFIGMAPS, descriptor

REFUSED = MaxRetryError(None, "/api/v1/namespaces/default/configmaps",
                        ConnectionRefusedError(111, "Connection refused"))


class FakeDynamic:
    """The slice of DynamicClient the KubeClient calls, failing every request."""

    def __init__(self, error, discovery_error=None):
        self.error = error
        self.discovery_error = discovery_error
        self.resources = SimpleNamespace(get=self._get)

    def _get(self, api_version, kind):
        if self.discovery_error is not None:
            raise self.discovery_error
        return SimpleNamespace(group="", api_version="v1", name="configmaps",
                               kind="ConfigMap", namespaced=True)

    def create(self, resource, **kwargs):
        raise self.error

    def delete(self, resource, **kwargs):
        raise self.error


def kube_client(error, discovery_error=None):
    return KubeClient(client.ApiClient(), dynamic=FakeDynamic(error, discovery_error))


def test_refused_connections_become_transport_errors():
    kube = kube_client(REFUSED)

    with pytest.raises(TransportError) as info:
        kube.create(CONFIGMAPS, {"metadata": {"name": "settings"}}, namespace="default")

    assert isinstance(info.value, KubeAssayError)
    assert "create configmaps failed" in str(info.value)


def test_socket_errors_become_transport_errors():
    kube = kube_client(ConnectionResetError(104, "Connection reset by peer"))

    with pytest.raises(TransportError):
        kube.delete(CONFIGMAPS, "settings", namespace="default")


def test_discovery_failures_become_transport_errors():
    kube = kube_client(REFUSED, discovery_error=REFUSED)

    with pytest.raises(TransportError):
        kube.resolve("v1", "ConfigMap")


def test_namespace_lookup_failures_become_transport_errors():
    def read_namespace(name):
        raise REFUSED

    kube = kube_client(REFUSED)
    kube.core = SimpleNamespace(read_namespace=read_namespace)

    with pytest.raises(TransportError):
        kube.namespace_exists("demo")


def test_patch_types():
    assert CONFIGMAPS.patch_type == STRATEGIC_MERGE_PATCH
    assert descriptor("example.com", "v1", "widgets", "Widget").patch_type == MERGE_PATCH
