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
Unit tests for the directory-backed volume manager.
"""
import os

from stackorch.MANAGERS.volume_manager import VolumeManager
from stackorch.MODELS.service_definition import VolumeMount


class TestVolumeManager:
    """Tests for VolumeManager."""

    def test_create_volume(self, tmp_path):
        """Test volume creation under the state directory."""
        vm = VolumeManager(base_dir=str(tmp_path))
        path = vm.create_volume("demo_data")
        assert path == str(tmp_path / ".stackorch" / "volumes" / "demo_data")
        assert os.path.isdir(path)

    def test_create_volume_keeps_data(self, tmp_path):
        """Test that creating an existing volume keeps its contents."""
        vm = VolumeManager(base_dir=str(tmp_path))
        path = vm.create_volume("demo_data")
        with open(os.path.join(path, "keep.txt"), "w") as f:
            f.write("x")
        vm.create_volume("demo_data")
        assert os.path.exists(os.path.join(path, "keep.txt"))

    def test_list_and_remove(self, tmp_path):
        """Test listing and removal."""
        vm = VolumeManager(base_dir=str(tmp_path))
        assert vm.list_volumes() == []
        vm.create_volume("vol2")
        vm.create_volume("vol1")
        assert vm.list_volumes() == ["vol1", "vol2"]
        vm.remove_volume("vol1")
        vm.remove_volume("missing")
        assert vm.list_volumes() == ["vol2"]

    def test_resolve_source(self, tmp_path):
        """Test named volumes map to driver names and bind mounts to paths."""
        vm = VolumeManager(base_dir=str(tmp_path))
        named = VolumeMount(source="data", target="/data")
        assert vm.resolve_source(named, {"data": "demo_data"}) == vm.path("demo_data")
        bind = VolumeMount(source="./html", target="/usr/share/nginx/html")
        assert vm.resolve_source(bind, {}) == str(tmp_path / "html")

    def test_resolve_target(self, tmp_path):
        """Test absolute targets are rooted at base_dir and relative ones at the working dir."""
        vm = VolumeManager(base_dir=str(tmp_path))
        assert vm.resolve_target("/app/data") == str(tmp_path / "app" / "data")
        assert vm.resolve_target("cache", str(tmp_path / "srv")) == str(tmp_path / "srv" / "cache")

    def test_prepare_mounts(self, tmp_path):
        """Test targets become symlinks to their sources."""
        vm = VolumeManager(base_dir=str(tmp_path))
        mounts = [VolumeMount(source="data", target="/var/lib/data")]
        resolved = vm.prepare_mounts(mounts, {"data": "demo_data"})
        target = tmp_path / "var" / "lib" / "data"
        assert resolved == {"/var/lib/data": vm.path("demo_data")}
        assert os.path.islink(target)
        assert os.path.realpath(target) == os.path.realpath(vm.path("demo_data"))

        # A second replica mounting the same volume reuses the link
        assert vm.prepare_mounts(mounts, {"data": "demo_data"}) == resolved
