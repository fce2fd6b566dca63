# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Unit tests for network bookkeeping of the process driver.
"""
import socket

import pytest

from stackorch.MANAGERS.network_manager import NetworkManager, get_free_port, is_port_free
from stackorch.MODELS.service_definition import PortBinding, ServiceDefinition


class TestNetworkManager:
    """Tests for NetworkManager."""

    def test_create_and_remove_network(self):
        """Test network creation and removal."""
        mgr = NetworkManager()
        mgr.create_network("demo_default")
        assert "demo_default" in mgr.networks
        mgr.remove_network("demo_default")
        assert "demo_default" not in mgr.networks

    def test_remove_network_with_members(self):
        """Test that a network in use cannot be removed."""
        mgr = NetworkManager()
        mgr.create_network("demo_default")
        mgr.connect("demo_default", "demo-db-0", "db")
        with pytest.raises(RuntimeError):
            mgr.remove_network("demo_default")
        mgr.disconnect("demo-db-0")
        mgr.remove_network("demo_default")

    def test_connect_unknown_network(self):
        """Test connecting to a network that was never created."""
        mgr = NetworkManager()
        with pytest.raises(RuntimeError):
            mgr.connect("nope", "demo-db-0", "db")

    def test_service_discovery_is_scoped_by_network(self):
        """Test service discovery environment generation."""
        mgr = NetworkManager()
        mgr.create_network("backend")
        mgr.create_network("frontend")
        db = ServiceDefinition(name="db", image_name="postgres", ports=[PortBinding(target=5432)])
        ports = mgr.allocate_ports("demo-db-0", db)
        mgr.connect("backend", "demo-db-0", "db")
        mgr.connect("frontend", "demo-web-0", "web")

        env = mgr.get_service_discovery_env(["backend"])
        assert env == {"DB_HOST": "127.0.0.1", "DB_PORT": str(ports[5432])}
        assert mgr.get_service_discovery_env(["frontend"]) == {"WEB_HOST": "127.0.0.1"}
        assert mgr.get_host_port("demo-db-0", 5432) == ports[5432]

    def test_allocate_taken_port(self):
        """Test that a published port held by another instance is refused."""
        mgr = NetworkManager()
        port = get_free_port()
        web = ServiceDefinition(name="web", image_name="web", ports=[PortBinding(target=80, published=port)])
        assert mgr.allocate_ports("demo-web-0", web) == {80: port}
        with pytest.raises(RuntimeError):
            mgr.allocate_ports("demo-web-1", web)
        mgr.disconnect("demo-web-0")
        assert mgr.allocate_ports("demo-web-1", web) == {80: port}


def test_is_port_free():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(('', 0))
        s.listen(1)
        port = s.getsockname()[1]
        assert not is_port_free(port)
