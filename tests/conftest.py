import os
import sys

import pytest
import requests

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from gce_metadata_query import BASE_URL, MetadataClient  # noqa: E402


def make_response(url, status, body):
    response = requests.Response()
    response.url = url
    response.status_code = status
    response._content = body.encode("utf-8")
    response.encoding = "utf-8"
    return response


class FakeSession:
    """Stand-in for requests.Session serving canned metadata by sub-path."""

    def __init__(self, routes=None, reachable=True):
        self.headers = {}
        self.routes = dict(routes or {})
        self.reachable = reachable
        self.calls = []

    def get(self, url, timeout=None):
        self.calls.append((url, timeout))
        if not self.reachable:
            raise requests.ConnectionError(f"Connection refused: {url}")
        path = url[len(BASE_URL):] if url.startswith(BASE_URL) else url
        if path == "":
            return make_response(url, 200, "instance/\nproject/\n")
        route = self.routes.get(path)
        if route is None:
            return make_response(url, 404, "Not Found")
        if isinstance(route, Exception):
            raise route
        if isinstance(route, tuple):
            return make_response(url, *route)
        return make_response(url, 200, route)


INTERFACES = (
    '[{"accessConfigs": [{"externalIp": "34.1.2.3", "type": "ONE_TO_ONE_NAT"}],'
    ' "ip": "10.128.0.2", "mac": "42:01:0a:80:00:02", "network": "projects/123/networks/default"}]'
)

GCE_METADATA = {
    "project/project-id": "my-project",
    "instance/image": "projects/debian-cloud/global/images/debian-12-bookworm-v20240110",
    "instance/hostname": "my-instance.c.my-project.internal",
    "instance/id": "4520031799277581759",
    "instance/machine-type": "projects/123/machineTypes/e2-medium",
    "instance/network-interfaces/?recursive=true&alt=json": INTERFACES,
    "instance/zone": "projects/123/zones/us-central1-a",
    "instance/description": "web frontend",
    "instance/disks/": "0/\n1/\n",
    "instance/disks/0/index": "0",
    "instance/disks/0/device-name": "persistent-disk-0",
    "instance/disks/0/type": "PERSISTENT",
    "instance/disks/1/index": "1",
    "instance/disks/1/device-name": "scratch",
    "instance/disks/1/type": "SCRATCH",
    "instance/service-accounts/": "123-compute@developer.gserviceaccount.com/\ndefault/\n",
    "instance/attributes/instance-template": "projects/123/global/instanceTemplates/web-template",
    "instance/attributes/created-by": "projects/123/zones/us-central1-a/instanceGroupManagers/web-mig",
    "instance/tags?alt=json": '["http-server", "https-server"]',
    "instance/attributes/user-data": "#cloud-config",
}


@pytest.fixture
def session():
    return FakeSession(GCE_METADATA)


@pytest.fixture
def client(session):
    return MetadataClient(session=session)


@pytest.fixture
def hostname():
    return lambda: "my-instance"
