"""
Quiesce/resume handlers bracketing the archive window.

A quiescer stops stateful services before archiving and returns opaque
tokens identifying what it stopped; resume(tokens) restarts them.
"""

import json
import logging
import os
import shutil
import subprocess
import threading
from typing import List, Optional

from .errors import QuiesceError

logger = logging.getLogger(__name__)


class NoopQuiescer:
    """Quiescer that stops nothing."""

    def quiesce(self) -> List[str]:
        return []

    def resume(self, tokens: List[str]):
        pass

    def recover(self) -> List[str]:
        return []


class DockerQuiescer:
    """
    Stops running Docker containers for the duration of a backup.

    Tokens are container ids. The ids are also written to a state file so
    containers stopped by a crashed run can be found again by recover().

    One instance is shared by concurrent runs. Every quiesce() call, failed
    or not, must be paired with one resume(): the first quiesce stops the
    containers and the last resume starts them again.
    """

    def __init__(self, state_file: Optional[str] = None, docker_binary: str = 'docker',
                 timeout: int = 120):
        """
        Initialize Docker quiescer.

        Args:
            state_file: Optional JSON file recording stopped container ids
            docker_binary: Docker CLI executable
            timeout: Seconds allowed per docker command
        """
        self.state_file = state_file
        self.docker_binary = docker_binary
        self.timeout = timeout

        self._lock = threading.Lock()
        self._active = 0
        self._quiesced = False
        self._stopped: List[str] = []

    def is_available(self) -> bool:
        return shutil.which(self.docker_binary) is not None

    def quiesce(self) -> List[str]:
        """
        Stop all running containers unless another run already did.

        Returns:
            Ids of the containers stopped by this call

        Raises:
            QuiesceError: If a container cannot be stopped
        """
        with self._lock:
            self._active += 1
            if self._quiesced:
                logger.info("Docker containers already stopped by a concurrent backup")
                return []

            if not self.is_available():
                logger.warning("Docker is not available, skipping container shutdown")
                return []

            running = self._docker('ps', '-q').split()
            stopped = []

            for container_id in running:
                try:
                    self._docker('stop', container_id)
                except QuiesceError:
                    # Bring back what was already stopped before giving up
                    self._start(stopped)
                    raise
                stopped.append(container_id)
                self._record_stopped(container_id)

            self._quiesced = True
            logger.info(f"Stopped {len(stopped)} Docker containers")
            return stopped

    def resume(self, tokens: List[str]):
        """
        Release one quiesce() and start the stopped containers once no run
        needs them down any more.

        Raises:
            QuiesceError: If any container fails to start
        """
        with self._lock:
            for container_id in tokens:
                self._record_stopped(container_id)
            self._active = max(self._active - 1, 0)
            if self._active > 0:
                logger.info(f"Keeping containers stopped, {self._active} backups still running")
                return

            self._quiesced = False
            self._start(list(self._stopped))

    def recover(self) -> List[str]:
        """
        Start containers a crashed run left stopped, as recorded in the state file.

        Returns:
            Ids of the containers started
        """
        with self._lock:
            if self._active > 0:
                return []
            pending = self.pending_containers()
            if not pending:
                return []
            logger.warning(f"Restarting {len(pending)} containers left stopped by an earlier run")
            self._stopped = list(pending)
            self._start(pending)
            return pending

    def pending_containers(self) -> List[str]:
        """Container ids recorded as stopped but not yet restarted."""
        if not self.state_file or not os.path.exists(self.state_file):
            return []
        try:
            with open(self.state_file, 'r') as f:
                return list(json.load(f).get('stopped_containers', []))
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to read Docker state file {self.state_file}: {e}")
            return []

    def _start(self, container_ids: List[str]):
        """Start containers; the ones that fail stay recorded in the state file."""
        failed = []
        for container_id in container_ids:
            try:
                self._docker('start', container_id)
            except QuiesceError as e:
                logger.warning(str(e))
                failed.append(container_id)

        self._stopped = [c for c in self._stopped if c not in container_ids or c in failed]
        self._save_state()

        if failed:
            raise QuiesceError(f"Failed to restart containers: {', '.join(failed)}")
        if container_ids:
            logger.info(f"Restarted {len(container_ids)} Docker containers")

    def _record_stopped(self, container_id: str):
        if container_id not in self._stopped:
            self._stopped.append(container_id)
            self._save_state()

    def _docker(self, *args) -> str:
        command = [self.docker_binary, *args]
        try:
            completed = subprocess.run(
                command,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=False
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            raise QuiesceError(f"Failed to run {' '.join(command)}: {e}") from e

        if completed.returncode != 0:
            raise QuiesceError(
                f"{' '.join(command)} exited with {completed.returncode}: {completed.stderr.strip()}"
            )
        return completed.stdout

    def _save_state(self):
        if not self.state_file:
            return
        if not self._stopped:
            if os.path.exists(self.state_file):
                os.remove(self.state_file)
            return
        os.makedirs(os.path.dirname(os.path.abspath(self.state_file)), exist_ok=True)
        with open(self.state_file, 'w') as f:
            json.dump({'stopped_containers': self._stopped}, f)


def create_quiescer(backend: str, state_file: Optional[str] = None):
    """
    Create a quiescer for a configured backend.

    Args:
        backend: 'none' or 'docker'

    Raises:
        ValueError: If the backend is unknown
    """
    if backend in (None, '', 'none'):
        return NoopQuiescer()
    if backend == 'docker':
        return DockerQuiescer(state_file=state_file)
    raise ValueError(f"Invalid quiesce backend: {backend}. Valid options: ['none', 'docker']")
