"""
Unit tests for image reference parsing and the local image provider.
"""
import pytest

from stackorch.DRIVERS.local_images import ImageReference, LocalImageProvider
from stackorch.errors import BuildError
from stackorch.MODELS.service_definition import ServiceDefinition


class TestImageReference:
    """Tests for ImageReference."""

    @pytest.mark.parametrize("reference, full_name", [
        ("nginx", "docker.io/library/nginx:latest"),
        ("nginx:1.25", "docker.io/library/nginx:1.25"),
        ("myuser/myimage:v1", "docker.io/myuser/myimage:v1"),
        ("ghcr.io/org/app", "ghcr.io/org/app:latest"),
        ("localhost:5000/team/api:dev", "localhost:5000/team/api:dev"),
        ("alpine@sha256:abc123", "docker.io/library/alpine@sha256:abc123"),
    ])
    def test_parse(self, reference, full_name):
        assert ImageReference.parse(reference).full_name == full_name

    def test_parse_parts(self):
        ref = ImageReference.parse("localhost:5000/team/api:dev")
        assert ref.registry == "localhost:5000"
        assert ref.repository == "team/api"
        assert ref.tag == "dev"
        assert ref.digest is None

    def test_parse_empty(self):
        with pytest.raises(ValueError):
            ImageReference.parse("  ")


class TestLocalImageProvider:
    """Tests for LocalImageProvider."""

    def test_named_image_is_stable(self, tmp_path):
        provider = LocalImageProvider(str(tmp_path))
        first = provider.resolve(ServiceDefinition(name="web", image_name="nginx"))
        second = LocalImageProvider(str(tmp_path)).resolve(
            ServiceDefinition(name="proxy", image_name="docker.io/library/nginx:latest")
        )
        assert first.name == "docker.io/library/nginx:latest"
        assert first.digest.startswith("sha256:")
        assert first == second

    def test_pinned_digest_is_kept(self, tmp_path):
        image = LocalImageProvider(str(tmp_path)).resolve(
            ServiceDefinition(name="db", image_name="postgres@sha256:feed")
        )
        assert image.digest == "sha256:feed"
        assert str(image) == "docker.io/library/postgres@sha256:feed"

    def test_build_context_hash_follows_content(self, tmp_path):
        context = tmp_path / "app"
        context.mkdir()
        (context / "Dockerfile").write_text("FROM python:3.12\n")
        (context / "main.py").write_text("print('v1')\n")
        (context / "__pycache__").mkdir()
        (context / "__pycache__" / "main.pyc").write_bytes(b"\x00")
        service = ServiceDefinition(name="app", build_context="app")

        first = LocalImageProvider(str(tmp_path)).resolve(service)
        assert first.name == "app:latest"

        (context / "__pycache__" / "main.pyc").write_bytes(b"\x01")
        assert LocalImageProvider(str(tmp_path)).resolve(service) == first

        (context / "main.py").write_text("print('v2')\n")
        assert LocalImageProvider(str(tmp_path)).resolve(service) != first

    def test_results_are_cached(self, tmp_path):
        context = tmp_path / "app"
        context.mkdir()
        (context / "main.py").write_text("v1")
        provider = LocalImageProvider(str(tmp_path))
        service = ServiceDefinition(name="app", build_context="app")
        first = provider.resolve(service)
        (context / "main.py").write_text("v2")
        assert provider.resolve(service) is first

    def test_missing_context(self, tmp_path):
        provider = LocalImageProvider(str(tmp_path))
        with pytest.raises(BuildError) as exc_info:
            provider.resolve(ServiceDefinition(name="app", build_context="nope"))
        assert exc_info.value.service == "app"

    def test_missing_dockerfile(self, tmp_path):
        (tmp_path / "app").mkdir()
        provider = LocalImageProvider(str(tmp_path))
        with pytest.raises(BuildError):
            provider.resolve(
                ServiceDefinition(name="app", build_context="app", dockerfile_path="Dockerfile.prod")
            )
