"""
Volume storage for the local process driver: named volumes are directories
under the state directory and mounts are symlinks to them.
"""
import logging
import os
import shutil
from typing import Dict, List, Optional

from ..MODELS.service_definition import VolumeMount

logger = logging.getLogger(__name__)


class VolumeManager:
    """
    Creates, removes and mounts volume directories.
    """
    def __init__(self, base_dir: str = ".", volumes_root: str = ".stackorch/volumes"):
        """
        :param base_dir: The base directory for resolving relative paths.
        :param volumes_root: Directory holding named volumes, relative to base_dir.
        """
        self.base_dir = os.path.abspath(base_dir)
        self.volumes_root = os.path.abspath(os.path.join(base_dir, volumes_root))

    def path(self, name: str) -> str:
        return os.path.join(self.volumes_root, name)

    def create_volume(self, name: str) -> str:
        """
        Creates the directory backing a named volume. Existing data is kept.

        :return: The volume path.
        """
        path = self.path(name)
        os.makedirs(path, exist_ok=True)
        logger.debug("Volume %s at %s", name, path)
        return path

    def remove_volume(self, name: str) -> None:
        path = self.path(name)
        if os.path.exists(path):
            shutil.rmtree(path)

    def list_volumes(self) -> List[str]:
        if not os.path.isdir(self.volumes_root):
            return []
        return sorted(os.listdir(self.volumes_root))

    def resolve_source(self, mount: VolumeMount, named: Dict[str, str]) -> str:
        """
        Resolves a mount source to a host path.

        :param mount: The mount.
        :param named: Declared volume name -> driver-level volume name.
        """
        if mount.is_named:
            return self.path(named.get(mount.source, mount.source))
        return os.path.abspath(os.path.join(self.base_dir, os.path.expanduser(mount.source)))

    def resolve_target(self, target: str, working_dir: Optional[str] = None) -> str:
        """
        Maps a container path onto the host. Absolute targets are rooted at
        base_dir, relative ones at the working directory.
        """
        if target.startswith('/') or target.startswith('\\'):
            return os.path.abspath(os.path.join(self.base_dir, target.lstrip('/\\')))
        root = working_dir if working_dir else self.base_dir
        return os.path.abspath(os.path.join(root, target))

    def prepare_mounts(self,
                       mounts: List[VolumeMount],
                       named: Dict[str, str],
                       working_dir: Optional[str] = None) -> Dict[str, str]:
        """
        Links every mount target to its source.

        :return: Target path (as declared) -> host source path.
        :raises OSError: If a target cannot be linked.
        """
        resolved = {}
        for mount in mounts:
            source_path = self.resolve_source(mount, named)
            target_path = self.resolve_target(mount.target, working_dir)
            os.makedirs(source_path, exist_ok=True)
            resolved[mount.target] = source_path

            if os.path.islink(target_path):
                if os.path.realpath(target_path) == os.path.realpath(source_path):
                    continue
                os.unlink(target_path)
            elif os.path.isdir(target_path):
                shutil.rmtree(target_path)
            elif os.path.exists(target_path):
                os.remove(target_path)

            parent = os.path.dirname(target_path)
            if parent:
                os.makedirs(parent, exist_ok=True)
            logger.debug("Mapping volume: %s -> %s", source_path, target_path)
            os.symlink(source_path, target_path, target_is_directory=True)
        return resolved
