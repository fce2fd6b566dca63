"""
Resolution of a service's process environment from the host, env files and explicit values.
"""
import logging
import os
from typing import Dict, List, Mapping, Optional

from dotenv import dotenv_values

logger = logging.getLogger(__name__)


class EnvironmentManager:
    """
    Merges environment variables from multiple sources. Later sources win:
    host environment, then env files in order, then the service's explicit
    environment, then orchestrator-provided variables.
    """
    def __init__(self, base_dir: str = ".", inherit: bool = True):
        """
        :param base_dir: Directory that relative env file paths are resolved against.
        :param inherit: Start from the current process environment.
        """
        self.base_dir = base_dir
        self.inherit = inherit

    def load_env_file(self, env_file: str) -> Dict[str, str]:
        """
        Reads one env file.

        :raises FileNotFoundError: If the file does not exist.
        """
        path = env_file if os.path.isabs(env_file) else os.path.join(self.base_dir, env_file)
        if not os.path.exists(path):
            raise FileNotFoundError(f"env file {path} not found")
        # Keys without a value ("FOO" on its own line) are left unset
        return {k: v for k, v in dotenv_values(path).items() if v is not None}

    def get_merged_environment(self,
                               explicit_env: Mapping[str, str],
                               env_files: List[str],
                               extra_env: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
        """
        :param explicit_env: The service's environment mapping.
        :param env_files: Paths of .env files, applied in order.
        :param extra_env: Variables injected by the orchestrator or driver.
        :return: The merged environment.
        """
        merged = os.environ.copy() if self.inherit else {}
        for env_file in env_files:
            merged.update(self.load_env_file(env_file))
        merged.update({k: str(v) for k, v in explicit_env.items()})
        if extra_env:
            merged.update(extra_env)
        return merged
