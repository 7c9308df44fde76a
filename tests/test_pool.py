import itertools
import threading

import pytest

from kubeassay.core.unstructured import Unstructured
from kubeassay.driver.pool import AdoptionPool, key_for

from conftest import CONFIGMAPS, NAMESPACES


def configmap(name="settings", namespace="default", generation=None):
    meta = {"name": name, "namespace": namespace}
    if generation is not None:
        meta["generation"] = generation
    return Unstructured({"apiVersion": "v1", "kind": "ConfigMap", "metadata": meta})


def test_new_identity_is_always_inserted():
    pool = AdoptionPool()
    obj = configmap()

    assert pool.update(key_for(CONFIGMAPS, obj), obj) is True
    assert len(pool) == 1


def test_same_generation_is_rejected():
    pool = AdoptionPool()
    key = key_for(CONFIGMAPS, configmap())

    pool.update(key, configmap(generation=2))
    assert pool.update(key, configmap(generation=2)) is False


@pytest.mark.parametrize("order", list(itertools.permutations([1, 2, 3, 4])))
def test_pool_never_regresses(order):
    """MONOTONICITY TEST: Out-of-order updates never lower the generation."""
    pool = AdoptionPool()
    key = key_for(CONFIGMAPS, configmap())

    for generation in order:
        pool.update(key, configmap(generation=generation))

    assert pool.get(key).generation == 4


def test_missing_generation_counts_as_zero():
    pool = AdoptionPool()
    key = key_for(CONFIGMAPS, configmap())

    pool.update(key, configmap())
    assert pool.update(key, configmap()) is False
    assert pool.update(key, configmap(generation=1)) is True


def test_cluster_scoped_keys_ignore_namespace():
    a = Unstructured({"kind": "Namespace", "metadata": {"name": "demo"}})
    b = Unstructured({"kind": "Namespace", "metadata": {"name": "demo", "namespace": "stray"}})
    assert key_for(NAMESPACES, a) == key_for(NAMESPACES, b)


def test_items_keep_adoption_order():
    pool = AdoptionPool()
    for name in ["a", "b", "c"]:
        obj = configmap(name=name)
        pool.update(key_for(CONFIGMAPS, obj), obj)

    pool.remove(key_for(CONFIGMAPS, configmap(name="b")))
    assert [k.name for k, _ in pool.items()] == ["a", "c"]


def test_concurrent_updates_keep_highest_generation():
    pool = AdoptionPool()
    key = key_for(CONFIGMAPS, configmap())

    def feed(generations):
        for g in generations:
            pool.update(key, configmap(generation=g))

    threads = [threading.Thread(target=feed, args=(range(i, 200, 4),)) for i in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert pool.get(key).generation == 199
