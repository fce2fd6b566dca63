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
Execution of system processes with log redirection and lifecycle management.
"""
import logging
import os
import subprocess
from typing import IO, Dict, List, Optional

import psutil

logger = logging.getLogger(__name__)


def kill_process_tree(process: subprocess.Popen, timeout: float = 5) -> None:
    """
    Kills a process and every descendant it spawned. The caller still reaps
    the process itself.

    Args:
        process (subprocess.Popen): The root of the tree.
        timeout (float): Seconds to wait for the descendants to exit.
    """
    try:
        children = psutil.Process(process.pid).children(recursive=True)
    except psutil.NoSuchProcess:
        children = []
    process.kill()
    for child in children:
        try:
            child.kill()
        except psutil.NoSuchProcess:
            pass
    psutil.wait_procs(children, timeout=timeout)


class ProcessRunner:
    """
    Manages the execution of a single system process.
    """
    def __init__(self, name: str, log_file: Optional[str] = None):
        """
        Initializes the process runner.

        Args:
            name (str): Identifier for the process.
            log_file (Optional[str]): Path to a file where stdout/stderr will be redirected.
        """
        self.name = name
        self.log_file = log_file
        self.process: Optional[subprocess.Popen] = None
        self._log_handle: Optional[IO[str]] = None

    def start(self,
              command: List[str],
              env: Dict[str, str],
              working_dir: Optional[str] = None):
        """
        Starts the process.

        Args:
            command (List[str]): Command and arguments to execute.
            env (Dict[str, str]): Environment variables for the process.
            working_dir (Optional[str]): Directory to start the process in.

        Raises:
            OSError: If the executable cannot be launched.
        """
        if working_dir:
            os.makedirs(working_dir, exist_ok=True)

        stdout = subprocess.DEVNULL
        if self.log_file:
            log_dir = os.path.dirname(self.log_file)
            if log_dir:
                os.makedirs(log_dir, exist_ok=True)
            self._log_handle = open(self.log_file, 'a')
            stdout = self._log_handle

        logger.info("[%s] Starting command: %s", self.name, ' '.join(command))

        try:
            # shell=False: arguments are never interpreted by a shell
            self.process = subprocess.Popen(
                command,
                env=env,
                cwd=working_dir,
                stdout=stdout,
                stderr=subprocess.STDOUT,
                text=True,
                shell=False,
            )
        except OSError:
            self._close_log()
            raise

    def stop(self, timeout: float = 10):
        """
        Stops the process and its children with SIGTERM, followed by SIGKILL
        for anything still alive after the timeout.

        Args:
            timeout (float): Seconds to wait for termination before killing.
        """
        if self.process is None:
            return
        if self.process.poll() is None:
            logger.info("[%s] Stopping process %d", self.name, self.process.pid)
            try:
                children = psutil.Process(self.process.pid).children(recursive=True)
            except psutil.NoSuchProcess:
                children = []

            self.process.terminate()
            for child in children:
                try:
                    child.terminate()
                except psutil.NoSuchProcess:
                    pass
            try:
                self.process.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                logger.warning("[%s] Process did not terminate, killing", self.name)
                self.process.kill()
                self.process.wait()

            _, alive = psutil.wait_procs(children, timeout=timeout)
            for child in alive:
                try:
                    child.kill()
                except psutil.NoSuchProcess:
                    pass
        self._close_log()

    def _close_log(self):
        if self._log_handle is not None:
            self._log_handle.close()
            self._log_handle = None

    def is_running(self) -> bool:
        """
        Checks if the process is currently running.

        Returns:
            bool: True if running, False otherwise.
        """
        return self.process is not None and self.process.poll() is None

    def get_exit_code(self) -> Optional[int]:
        """
        Gets the exit code of the process.

        Returns:
            Optional[int]: Exit code if process finished, None otherwise.
        """
        if self.process:
            return self.process.poll()
        return None

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process else None
