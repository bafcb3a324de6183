"""
Worker Module

Drives the GitHub Actions runner agent installed in an instance's directory:
the one-shot ``config.sh`` handshake, the long-running ``run.sh`` listener,
and signalling of the listener process.
"""

import logging
import os
import signal
import subprocess
import threading
import time
from pathlib import Path
from typing import List, Optional

import psutil

from .errors import CancelledError, StartTimeoutError, WorkerError


HANDSHAKE_MARKERS = ('Listening for Jobs', 'Connected to GitHub')

# Files written by config.sh that hold the local registration
LOCAL_CONFIG_FILES = [
    '.runner',
    '.runner_migrated',
    '.credentials',
    '.credentials_migrated',
    '.credentials_rsaparams',
    '.service',
    '.credential_store',
    '.options',
    '.setup_info',
]

EXIT_CODE_MEANINGS = {
    0: "normal exit",
    1: "terminated with error",
    2: "retryable error",
    3: "runner update requested",
    4: "ephemeral runner update requested",
    5: "session conflict (another listener uses this registration)",
}


def describe_exit_code(code: Optional[int]) -> str:
    if code is None:
        return "still running"
    if code < 0:
        return f"killed by signal {-code}"
    return EXIT_CODE_MEANINGS.get(code, f"unknown exit code {code}")


def mask_command(cmd: List[str]) -> str:
    """Render a command for logging with the --token value hidden"""
    masked = list(cmd)
    for i, arg in enumerate(masked[:-1]):
        if arg == '--token':
            masked[i + 1] = '***'
    return ' '.join(masked)


class WorkerHandle:
    """
    Handle on a running listener process

    Wraps either a child spawned by this process (subprocess.Popen) or a
    process re-attached by pid after a restart (psutil.Process).
    """

    # create_time() is derived from clock ticks since boot
    CREATE_TIME_TOLERANCE = 0.05

    def __init__(self, pid: int, popen: Optional[subprocess.Popen] = None,
                 process: Optional[psutil.Process] = None, create_time: Optional[float] = None):
        self.pid = pid
        self.popen = popen
        self.process = process
        self.create_time = create_time

    @classmethod
    def spawned(cls, popen: subprocess.Popen) -> 'WorkerHandle':
        try:
            create_time = psutil.Process(popen.pid).create_time()
        except psutil.Error:
            create_time = None
        return cls(popen.pid, popen=popen, create_time=create_time)

    @classmethod
    def attach(cls, pid: int, create_time: Optional[float],
               install_dir: Optional[Path] = None) -> Optional['WorkerHandle']:
        """
        Re-attach to a recorded listener

        The pid alone is not trusted: the live process must have the recorded
        start time and, when install_dir is given, run from that directory.

        Returns:
            WorkerHandle, or None if the pid is gone or belongs to another process
        """
        if create_time is None:
            return None
        try:
            process = psutil.Process(pid)
            if not process.is_running() or process.status() == psutil.STATUS_ZOMBIE:
                return None
            if abs(process.create_time() - create_time) > cls.CREATE_TIME_TOLERANCE:
                return None
            if install_dir is not None and \
                    Path(process.cwd()).resolve() != Path(install_dir).resolve():
                return None
        except psutil.Error:
            return None
        return cls(pid, process=process, create_time=create_time)

    def is_alive(self) -> bool:
        if self.popen is not None:
            return self.popen.poll() is None
        try:
            return self.process.is_running() and self.process.status() != psutil.STATUS_ZOMBIE
        except psutil.Error:
            return False

    def exit_code(self) -> Optional[int]:
        if self.popen is not None:
            return self.popen.poll()
        return None

    def _signal(self, sig: int):
        # run.sh starts the listener as a child; signal the whole session
        try:
            if os.getpgid(self.pid) == self.pid:
                os.killpg(self.pid, sig)
            else:
                os.kill(self.pid, sig)
        except ProcessLookupError:
            pass

    def terminate(self):
        self._signal(signal.SIGTERM)

    def kill(self):
        self._signal(signal.SIGKILL)

    def reap(self, timeout: float) -> bool:
        """Wait up to timeout for the process to exit; True if it did"""
        try:
            if self.popen is not None:
                self.popen.wait(timeout=timeout)
            else:
                self.process.wait(timeout=timeout)
            return True
        except (subprocess.TimeoutExpired, psutil.TimeoutExpired):
            return False
        except psutil.NoSuchProcess:
            return True


class WorkerAgent:
    """Runner agent installed in one instance's directory"""

    def __init__(self, install_dir: Path, log_path: Path, logger: Optional[logging.Logger] = None):
        """
        Initialize the worker agent

        Args:
            install_dir: Directory containing config.sh and run.sh
            log_path: File receiving the listener's output
            logger: Logger instance
        """
        self.install_dir = Path(install_dir)
        self.log_path = Path(log_path)
        self.logger = logger or logging.getLogger(__name__)

    @property
    def config_script(self) -> Path:
        return self.install_dir / 'config.sh'

    @property
    def run_script(self) -> Path:
        return self.install_dir / 'run.sh'

    def configure(self, url: str, token: str, name: str, labels: List[str], work_dir: str,
                  ephemeral: bool = False, replace: bool = False, disable_update: bool = False,
                  group: Optional[str] = None, timeout: float = 120):
        """
        Run the one-shot configuration handshake

        Raises:
            WorkerError: If config.sh is missing, fails or times out
        """
        if not self.config_script.exists():
            raise WorkerError(f"config.sh not found at {self.config_script}", subject=name,
                              remediation="install the runner agent into the instance directory")

        cmd = [
            str(self.config_script),
            '--unattended',
            '--url', url,
            '--token', token,
            '--name', name,
            '--labels', ','.join(labels),
            '--work', work_dir,
        ]
        if group:
            cmd.extend(['--runnergroup', group])
        if replace:
            cmd.append('--replace')
        if ephemeral:
            cmd.append('--ephemeral')
        if disable_update:
            cmd.append('--disableupdate')

        self.logger.debug(f"Running: {mask_command(cmd)}")

        try:
            result = subprocess.run(cmd, cwd=self.install_dir, capture_output=True, text=True,
                                    timeout=timeout)
        except subprocess.TimeoutExpired:
            raise WorkerError(f"config.sh did not finish within {timeout:.0f}s", subject=name)
        except OSError as e:
            raise WorkerError(f"cannot execute config.sh: {e}", subject=name)

        if result.returncode != 0:
            diagnostic = (result.stderr or result.stdout or '').strip().splitlines()
            detail = diagnostic[-1] if diagnostic else 'no output'
            raise WorkerError(f"config.sh failed with code {result.returncode}: {detail}",
                              subject=name)

        self.logger.info(f"Runner {name} configured")

    def spawn(self) -> WorkerHandle:
        """
        Start run.sh detached from the caller's session

        Output goes to the worker log so the listener keeps running after
        the controlling process exits.
        """
        if not self.run_script.exists():
            raise WorkerError(f"run.sh not found at {self.run_script}",
                              remediation="install the runner agent into the instance directory")

        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.log_path, 'ab') as log:
            try:
                popen = subprocess.Popen(
                    [str(self.run_script)],
                    cwd=self.install_dir,
                    stdin=subprocess.DEVNULL,
                    stdout=log,
                    stderr=subprocess.STDOUT,
                    start_new_session=True,
                )
            except OSError as e:
                raise WorkerError(f"cannot execute run.sh: {e}")
        return WorkerHandle.spawned(popen)

    def log_offset(self) -> int:
        try:
            return self.log_path.stat().st_size
        except FileNotFoundError:
            return 0

    def wait_for_handshake(self, handle: WorkerHandle, timeout: float, offset: int = 0,
                           cancel: Optional[threading.Event] = None, poll_interval: float = 0.1,
                           name: Optional[str] = None) -> str:
        """
        Block until the listener logs a connected/listening line

        Args:
            handle: Listener process handle
            timeout: Seconds to wait for the handshake
            offset: Log position to start reading from
            cancel: Cancellation event checked between polls
            poll_interval: Seconds between log polls
            name: Instance name for error messages

        Returns:
            The handshake line

        Raises:
            StartTimeoutError: No handshake within the timeout
            WorkerError: The listener exited first
            CancelledError: Cancellation requested while waiting
        """
        deadline = time.monotonic() + timeout
        pending = ''

        while True:
            chunk = self._read_log(offset)
            offset += len(chunk)
            pending += chunk.decode('utf-8', errors='replace')
            lines = pending.split('\n')
            pending = lines.pop()
            for line in lines:
                self.logger.debug(f"[{name}] {line.rstrip()}")
                if any(marker in line for marker in HANDSHAKE_MARKERS):
                    return line.strip()

            if not handle.is_alive():
                code = handle.exit_code()
                raise WorkerError(f"listener exited before connecting ({describe_exit_code(code)})",
                                  subject=name)

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise StartTimeoutError(f"no handshake from listener within {timeout:g}s",
                                        subject=name)

            wait = min(poll_interval, remaining)
            if cancel is not None:
                if cancel.wait(wait):
                    raise CancelledError("start cancelled while waiting for handshake", subject=name)
            else:
                time.sleep(wait)

    def _read_log(self, offset: int) -> bytes:
        try:
            with open(self.log_path, 'rb') as f:
                f.seek(offset)
                return f.read()
        except FileNotFoundError:
            return b''

    def remove_local_configuration(self) -> List[str]:
        """
        Delete the agent's local registration files

        Returns:
            Names of the files removed
        """
        removed = []
        for filename in LOCAL_CONFIG_FILES:
            path = self.install_dir / filename
            if path.is_file() or path.is_symlink():
                path.unlink()
                removed.append(filename)
        if removed:
            self.logger.info(f"Removed local runner configuration: {', '.join(removed)}")
        return removed



def process_memory_percent(pid: int) -> Optional[float]:
    """Memory share of a process and its children, or None if it is gone"""
    try:
        process = psutil.Process(pid)
        total = process.memory_percent()
        for child in process.children(recursive=True):
            try:
                total += child.memory_percent()
            except psutil.Error:
                continue
        return total
    except psutil.Error:
        return None
