"""
Process spawning for export tools.

spawn_process() starts a command and returns a SpawnedProcess whose stdout
is read in chunks by the caller while stderr is drained on a background
thread, so neither pipe can fill up and block the child.
"""

import logging
import os
import subprocess
import threading
from typing import Dict, Iterator, List, Optional


logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024


class SpawnedProcess:
    """
    A running external process.

    Args:
        popen: The underlying subprocess.Popen with stdout and stderr pipes
        chunk_size: Size of stdout reads
    """

    def __init__(self, popen: subprocess.Popen, chunk_size: int = CHUNK_SIZE):
        self._popen = popen
        self._chunk_size = chunk_size
        self._stderr_chunks: List[bytes] = []
        self._stderr_thread = threading.Thread(target=self._drain_stderr, daemon=True)
        self._stderr_thread.start()

    def _drain_stderr(self):
        for chunk in iter(lambda: self._popen.stderr.read(self._chunk_size), b''):
            self._stderr_chunks.append(chunk)

    def iter_stdout(self) -> Iterator[bytes]:
        """Yield stdout in chunks until the process closes it."""
        for chunk in iter(lambda: self._popen.stdout.read(self._chunk_size), b''):
            yield chunk

    def wait(self) -> int:
        """Wait for exit and return the exit code."""
        exit_code = self._popen.wait()
        self._stderr_thread.join()
        self._popen.stdout.close()
        self._popen.stderr.close()
        return exit_code

    def kill(self):
        """Terminate the process, used when the caller stops reading early."""
        if self._popen.poll() is None:
            self._popen.kill()

    @property
    def stderr_text(self) -> str:
        return b''.join(self._stderr_chunks).decode('utf-8', errors='replace').strip()


def spawn_process(command: str, args: List[str], env: Optional[Dict[str, str]] = None) -> SpawnedProcess:
    """
    Start ``command`` with ``args``.

    Args:
        command: Executable name or path
        args: Command line arguments
        env: Extra environment variables merged over the current environment

    Returns:
        SpawnedProcess with piped stdout and stderr

    Raises:
        FileNotFoundError: If the executable cannot be found
    """
    full_env = dict(os.environ)
    if env:
        full_env.update(env)

    logger.debug(f"Spawning {command} {' '.join(args)}")
    popen = subprocess.Popen(
        [command] + list(args),
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        env=full_env
    )
    return SpawnedProcess(popen)
