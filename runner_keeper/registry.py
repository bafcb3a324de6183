"""
Runner Registry Module

Tracks the locally configured runner instances and their lifecycle state.
The registry is the single source of truth for which instances exist locally.
"""

import logging
import re
import threading
from contextlib import contextmanager
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional

import yaml

from .errors import ConflictError, CorruptRecordError, InvalidStateError, NotFoundError
from .vault import DIR_MODE, atomic_write_text


RUNNER_NAME_PATTERN = re.compile(r'^[a-zA-Z0-9]([a-zA-Z0-9_-]*[a-zA-Z0-9])?$')
REPOSITORY_PATTERN = re.compile(r'^[A-Za-z0-9_.-]+/[A-Za-z0-9_.-]+$')


class RegistrationState(str, Enum):
    """Registration state of a runner with the dispatch system"""

    UNREGISTERED = "unregistered"
    REGISTERING = "registering"
    REGISTERED = "registered"
    REMOVING = "removing"


class HealthStatus(str, Enum):
    """Overall verdict of the most recent health check"""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


TRANSITIONAL_STATES = (RegistrationState.REGISTERING, RegistrationState.REMOVING)


def validate_runner_name(name: str) -> str:
    if not name or not RUNNER_NAME_PATTERN.match(name):
        raise ValueError(
            f"Invalid runner name: {name!r} (letters, numbers, hyphens and underscores; "
            f"must start and end with a letter or number)")
    return name


def validate_repository(repository: str) -> str:
    if not repository or not REPOSITORY_PATTERN.match(repository):
        raise ValueError(f"Invalid repository: {repository!r} (expected owner/repo)")
    return repository


class RunnerInstance:
    """One locally configured runner bound to one repository"""

    def __init__(self, name: str, repository: str, labels: Iterable[str] = (),
                 install_dir: Optional[Path] = None):
        self.name = validate_runner_name(name)
        self.repository = validate_repository(repository)
        self.labels = sorted(set(l for l in labels if l))
        self.install_dir = Path(install_dir) if install_dir else None
        self.registration_state = RegistrationState.UNREGISTERED
        self.remote_id: Optional[int] = None
        self.pid: Optional[int] = None
        self.process_started: Optional[float] = None  # psutil create_time of pid
        self.started_at: Optional[datetime] = None
        self.last_health = HealthStatus.UNKNOWN
        self.last_findings: List[str] = []
        self.last_checked: Optional[datetime] = None
        self.warnings: List[str] = []

        # Worker handle, owned by the LifecycleController; never persisted
        self.process = None

    @property
    def key(self):
        return (self.repository, self.name)

    def add_warning(self, message: str):
        if message not in self.warnings:
            self.warnings.append(message)

    def to_dict(self) -> Dict:
        return {
            'name': self.name,
            'repository': self.repository,
            'labels': list(self.labels),
            'install_dir': str(self.install_dir) if self.install_dir else None,
            'registration_state': self.registration_state.value,
            'remote_id': self.remote_id,
            'pid': self.pid,
            'process_started': self.process_started,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'last_health': self.last_health.value,
            'last_findings': list(self.last_findings),
            'last_checked': self.last_checked.isoformat() if self.last_checked else None,
            'warnings': list(self.warnings),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'RunnerInstance':
        instance = cls(data['name'], data['repository'], data.get('labels') or [],
                       data.get('install_dir'))
        instance.registration_state = RegistrationState(data.get('registration_state', 'unregistered'))
        instance.remote_id = data.get('remote_id')
        instance.pid = data.get('pid')
        instance.process_started = data.get('process_started')
        if data.get('started_at'):
            instance.started_at = datetime.fromisoformat(data['started_at'])
        instance.last_health = HealthStatus(data.get('last_health', 'unknown'))
        instance.last_findings = list(data.get('last_findings') or [])
        if data.get('last_checked'):
            instance.last_checked = datetime.fromisoformat(data['last_checked'])
        instance.warnings = list(data.get('warnings') or [])
        return instance

    def __repr__(self):
        return f"RunnerInstance({self.name}, {self.repository}, {self.registration_state.value})"


class RunnerRegistry:
    """Registry of runner instances, optionally persisted to a YAML file"""

    def __init__(self, path: Optional[Path] = None, logger: Optional[logging.Logger] = None):
        """
        Initialize the registry

        Args:
            path: YAML file to persist to (None keeps the registry in memory)
            logger: Logger instance
        """
        self.path = Path(path) if path else None
        self.logger = logger or logging.getLogger(__name__)
        self._instances: Dict[str, RunnerInstance] = {}
        self._lock = threading.RLock()
        self._instance_locks: Dict[str, threading.RLock] = {}
        if self.path:
            self.load()

    def load(self):
        """Load instances from the registry file if it exists"""
        if not self.path or not self.path.exists():
            return
        try:
            with open(self.path) as f:
                data = yaml.safe_load(f) or {}
            entries = data.get('runners', [])
            instances = [RunnerInstance.from_dict(entry) for entry in entries]
        except (yaml.YAMLError, AttributeError, KeyError, TypeError, ValueError) as e:
            raise CorruptRecordError(f"cannot read runner registry {self.path}: {e}",
                                     remediation="fix or delete the registry file")
        with self._lock:
            self._instances = {i.name: i for i in instances}

    def save(self):
        """Persist all instances (no-op for in-memory registries)"""
        if not self.path:
            return
        with self._lock:
            document = {'runners': [self._instances[n].to_dict() for n in sorted(self._instances)]}
            self.path.parent.mkdir(mode=DIR_MODE, parents=True, exist_ok=True)
            atomic_write_text(self.path, yaml.safe_dump(document, sort_keys=False))

    def lock_for(self, name: str) -> threading.RLock:
        """Return the lock serializing operations on one instance name"""
        with self._lock:
            lock = self._instance_locks.get(name)
            if lock is None:
                lock = self._instance_locks[name] = threading.RLock()
            return lock

    @contextmanager
    def locked(self, name: str) -> Iterator[RunnerInstance]:
        """
        Hold an instance's lock for the duration of a block

        Changes made to the instance are persisted when the block exits,
        whether or not it raised.
        """
        with self.lock_for(name):
            instance = self.get(name)
            try:
                yield instance
            finally:
                self.save()

    def register(self, instance: RunnerInstance) -> RunnerInstance:
        """
        Add a new instance

        Raises:
            ConflictError: If an instance with the same name exists
        """
        with self._lock:
            if instance.name in self._instances:
                raise ConflictError("runner instance already exists", subject=instance.name)
            self._instances[instance.name] = instance
            self.save()
        self.logger.info(f"Added runner instance {instance.name} for {instance.repository}")
        return instance

    def get(self, name: str) -> RunnerInstance:
        with self._lock:
            instance = self._instances.get(name)
        if instance is None:
            raise NotFoundError("no such runner instance", subject=name,
                                remediation="list instances with 'runner list'")
        return instance

    def list(self) -> List[RunnerInstance]:
        with self._lock:
            return [self._instances[n] for n in sorted(self._instances)]

    def remove(self, name: str) -> RunnerInstance:
        """
        Drop an instance from the registry

        Raises:
            InvalidStateError: Unless the instance is unregistered
        """
        with self.lock_for(name):
            instance = self.get(name)
            if instance.registration_state != RegistrationState.UNREGISTERED:
                raise InvalidStateError(
                    f"cannot remove while {instance.registration_state.value}", subject=name,
                    remediation="remove the runner registration first")
            with self._lock:
                del self._instances[name]
                self._instance_locks.pop(name, None)
                self.save()
        self.logger.info(f"Removed runner instance {name} from registry")
        return instance

    def transition(self, instance: RunnerInstance, target: RegistrationState):
        """
        Move an instance to a new registration state

        Entering a transitional state fails while another instance with the
        same repository and name is already in one.
        """
        with self._lock:
            if target in TRANSITIONAL_STATES:
                for other in self._instances.values():
                    if other.key == instance.key and other.registration_state in TRANSITIONAL_STATES:
                        raise ConflictError(
                            f"a {other.registration_state.value} operation is already in progress",
                            subject=instance.name,
                            remediation="wait for it to finish or run 'runner reconcile'")
            previous = instance.registration_state
            instance.registration_state = target
        self.logger.debug(f"{instance.name}: {previous.value} -> {target.value}")
