"""Test fixtures for cluster-detector."""

import base64
import copy
from unittest.mock import MagicMock

import pytest
from kubernetes.client.rest import ApiException

from clusterdetector import db

FLEET_KUBECONFIG = """\
apiVersion: v1
kind: Config
clusters:
- cluster:
    insecure-skip-tls-verify: true
    server: https://10.0.0.1:6443
  name: cluster-a
- cluster:
    insecure-skip-tls-verify: true
    server: https://10.0.0.2:6443
  name: cluster-b
contexts:
- context:
    cluster: cluster-a
    user: admin-a
  name: ctx-a
- context:
    cluster: cluster-b
    user: admin-b
  name: ctx-b
current-context: ctx-a
users:
- name: admin-a
  user:
    token: token-a
- name: admin-b
  user:
    token: token-b
"""


@pytest.fixture
def fleet_kubeconfig():
    return FLEET_KUBECONFIG


def make_secret(raw: str, key: str = "config"):
    secret = MagicMock()
    secret.data = {key: base64.b64encode(raw.encode()).decode()}
    return secret


@pytest.fixture
def core_v1(fleet_kubeconfig):
    api = MagicMock()
    api.read_namespaced_secret.return_value = make_secret(fleet_kubeconfig)
    return api


class FakeCustomObjectsApi:
    """In-memory stand-in for CustomObjectsApi with resourceVersion checks."""

    def __init__(self):
        self.objects: dict[str, dict] = {}
        self.writes: list[tuple[str, str]] = []
        self.failures: dict[tuple[str, str], Exception] = {}
        self._rv = 0

    def _next_rv(self) -> str:
        self._rv += 1
        return str(self._rv)

    def _fail(self, verb: str, name: str):
        err = self.failures.get((verb, name))
        if err is not None:
            raise err

    def _check_rv(self, name: str, body: dict):
        stored = self.objects.get(name)
        if stored is None:
            raise ApiException(status=404, reason="Not Found")
        if body.get("metadata", {}).get("resourceVersion") != stored["metadata"]["resourceVersion"]:
            raise ApiException(status=409, reason="Conflict")
        return stored

    def get_namespaced_custom_object(self, group, version, namespace, plural, name):
        self._fail("get", name)
        if name not in self.objects:
            raise ApiException(status=404, reason="Not Found")
        return copy.deepcopy(self.objects[name])

    def create_namespaced_custom_object(self, group, version, namespace, plural, body):
        name = body["metadata"]["name"]
        self._fail("create", name)
        if name in self.objects:
            raise ApiException(status=409, reason="AlreadyExists")
        obj = copy.deepcopy(body)
        obj["metadata"]["resourceVersion"] = self._next_rv()
        self.objects[name] = obj
        self.writes.append(("create", name))
        return copy.deepcopy(obj)

    def replace_namespaced_custom_object(self, group, version, namespace, plural, name, body):
        self._fail("replace", name)
        stored = self._check_rv(name, body)
        obj = copy.deepcopy(body)
        obj["status"] = stored.get("status")
        obj["metadata"]["resourceVersion"] = self._next_rv()
        self.objects[name] = obj
        self.writes.append(("replace", name))
        return copy.deepcopy(obj)

    def replace_namespaced_custom_object_status(self, group, version, namespace, plural, name, body):
        self._fail("status", name)
        stored = self._check_rv(name, body)
        stored["status"] = copy.deepcopy(body["status"])
        stored["metadata"]["resourceVersion"] = self._next_rv()
        self.writes.append(("status", name))
        return copy.deepcopy(stored)

    def list_namespaced_custom_object(self, group, version, namespace, plural, label_selector=""):
        self._fail("list", "*")
        key, _, value = label_selector.partition("=")
        items = [
            copy.deepcopy(o) for o in self.objects.values()
            if not key or (o["metadata"].get("labels") or {}).get(key) == value
        ]
        return {"items": items}

    def delete_namespaced_custom_object(self, group, version, namespace, plural, name):
        self._fail("delete", name)
        if name not in self.objects:
            raise ApiException(status=404, reason="Not Found")
        del self.objects[name]
        self.writes.append(("delete", name))

    def status_of(self, name: str):
        return (self.objects[name].get("status") or {}).get("clusterstatus")


@pytest.fixture
def custom_api():
    return FakeCustomObjectsApi()


@pytest.fixture
def history_db(tmp_path):
    db.init_db(f"sqlite:///{tmp_path}/history.db")
    assert db.db_enabled
    yield db
    db.db_enabled = False
    db._SessionLocal = None
    db._engine.dispose()
