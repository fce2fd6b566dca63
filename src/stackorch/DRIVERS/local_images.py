"""
Image provider for the local process driver.

Named images are normalized Docker references; build contexts are hashed file
by file so that an unchanged context always yields the same digest.
"""
import hashlib
import logging
import os
import threading
from dataclasses import dataclass
from typing import Dict, Optional

from ..errors import BuildError
from ..MODELS.service_definition import ServiceDefinition
from .base import ImageRef

logger = logging.getLogger(__name__)

# Directories never considered part of a build context
_IGNORED_DIRS = {".git", "__pycache__", ".stackorch", ".venv", "node_modules"}


@dataclass(frozen=True)
class ImageReference:
    """
    Parsed Docker image reference.

    Examples:
        - nginx -> docker.io/library/nginx:latest
        - myuser/myimage:v1 -> docker.io/myuser/myimage:v1
        - localhost:5000/team/api@sha256:ab12 -> localhost:5000/team/api@sha256:ab12
    """

    registry: str
    repository: str
    tag: Optional[str] = None
    digest: Optional[str] = None

    DEFAULT_REGISTRY = "docker.io"
    DEFAULT_TAG = "latest"

    @classmethod
    def parse(cls, reference: str) -> "ImageReference":
        """
        :raises ValueError: If the reference is empty.
        """
        if not reference or not reference.strip():
            raise ValueError("Empty image reference")
        remainder = reference.strip()

        digest = None
        if "@" in remainder:
            remainder, digest = remainder.rsplit("@", 1)

        # A colon after the last slash separates the tag; earlier colons belong to a registry port
        tag = None
        name_start = remainder.rfind("/") + 1
        colon = remainder.find(":", name_start)
        if colon != -1:
            remainder, tag = remainder[:colon], remainder[colon + 1:]

        first, _, rest = remainder.partition("/")
        if rest and ("." in first or ":" in first or first == "localhost"):
            registry, repository = first, rest
        else:
            registry = cls.DEFAULT_REGISTRY
            repository = remainder if rest else f"library/{remainder}"

        if tag is None and digest is None:
            tag = cls.DEFAULT_TAG
        return cls(registry=registry, repository=repository, tag=tag, digest=digest)

    @property
    def name(self) -> str:
        """Registry, repository and tag, without the digest."""
        name = f"{self.registry}/{self.repository}"
        return f"{name}:{self.tag}" if self.tag else name

    @property
    def full_name(self) -> str:
        if self.digest:
            return f"{self.name}@{self.digest}"
        return self.name


class LocalImageProvider:
    """
    Resolves services to content-addressable image references without a
    registry. Results are cached per service name.
    """

    def __init__(self, base_dir: str = "."):
        """
        :param base_dir: Directory that build contexts are relative to.
        """
        self.base_dir = os.path.abspath(base_dir)
        self._cache: Dict[str, ImageRef] = {}
        self._lock = threading.Lock()

    def resolve(self, service: ServiceDefinition) -> ImageRef:
        with self._lock:
            cached = self._cache.get(service.name)
        if cached is not None:
            return cached

        if service.build_context:
            image = self._from_context(service)
        else:
            try:
                ref = ImageReference.parse(service.image_name)
            except ValueError as e:
                raise BuildError(str(e), service=service.name) from e
            digest = ref.digest or "sha256:" + hashlib.sha256(ref.full_name.encode()).hexdigest()
            image = ImageRef(name=ref.name, digest=digest)

        with self._lock:
            self._cache[service.name] = image
        logger.debug("Resolved image for %s: %s", service.name, image)
        return image

    def _from_context(self, service: ServiceDefinition) -> ImageRef:
        context = os.path.join(self.base_dir, service.build_context)
        if not os.path.isdir(context):
            raise BuildError(f"Build context {context} does not exist", service=service.name)
        dockerfile = os.path.join(context, service.dockerfile_path or "Dockerfile")
        if service.dockerfile_path and not os.path.isfile(dockerfile):
            raise BuildError(f"Dockerfile {dockerfile} does not exist", service=service.name)

        digest = hashlib.sha256()
        for root, dirs, files in os.walk(context):
            dirs[:] = sorted(d for d in dirs if d not in _IGNORED_DIRS)
            for filename in sorted(files):
                path = os.path.join(root, filename)
                digest.update(os.path.relpath(path, context).encode())
                with open(path, "rb") as f:
                    for chunk in iter(lambda: f.read(65536), b""):
                        digest.update(chunk)

        name = service.image_name or f"{service.name}:latest"
        return ImageRef(name=name, digest="sha256:" + digest.hexdigest())
