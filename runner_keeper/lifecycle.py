"""
Lifecycle Module

Orchestrates register -> start -> stop -> remove for runner instances.

State machine per instance:

    Unregistered --register()--> Registering --(API ack)--> Registered
    Registered   --start()-----> Registered (process attached)
    Registered   --stop()------> Registered (process cleared, registration intact)
    Registered   --remove()----> Removing --(API ack)--> Unregistered
    Registering  --(failure)---> Unregistered

Operations on one instance are serialized by the registry's per-name lock;
operations on different instances may run concurrently. The controller is
the only component that signals a worker process.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional

from .errors import (CancelledError, InvalidStateError, RemoteAPIError, RunnerKeeperError,
                     StartTimeoutError, StopTimeoutError)
from .registry import RegistrationState, RunnerInstance, RunnerRegistry
from .worker import WorkerAgent, WorkerHandle, describe_exit_code


KILL_WAIT_SECONDS = 5


def _check_cancelled(cancel: Optional[threading.Event], what: str, subject: str):
    if cancel is not None and cancel.is_set():
        raise CancelledError(f"{what} cancelled", subject=subject)


class LifecycleController:
    """Drive runner instances through their registration and process lifecycle"""

    def __init__(self, config, registry: RunnerRegistry, github_api,
                 logger: Optional[logging.Logger] = None,
                 worker_factory: Optional[Callable[[RunnerInstance], WorkerAgent]] = None):
        """
        Initialize the lifecycle controller

        Args:
            config: RunnerConfig instance
            registry: RunnerRegistry holding the instances
            github_api: GitHubAPI instance
            logger: Logger instance
            worker_factory: Builds the WorkerAgent for an instance
        """
        self.config = config
        self.registry = registry
        self.github = github_api
        self.logger = logger or logging.getLogger(__name__)
        self.worker_factory = worker_factory or self._default_worker

    def _default_worker(self, instance: RunnerInstance) -> WorkerAgent:
        install_dir = instance.install_dir or self.config.instance_install_dir(instance.name)
        log_path = self.config.worker_log_path(instance.name)
        return WorkerAgent(install_dir, log_path, self.logger)

    def create_instance(self, name: str, repository: str, labels: Optional[Iterable[str]] = None,
                        install_dir=None) -> RunnerInstance:
        """
        Add a new, unregistered instance to the registry

        Raises:
            ConflictError: If the name is taken
            ValueError: On an invalid name or repository
        """
        instance = RunnerInstance(name, repository,
                                  self.config.labels if labels is None else labels, install_dir)
        return self.registry.register(instance)

    def _handle(self, instance: RunnerInstance) -> Optional[WorkerHandle]:
        """The live process handle of an instance, re-attaching by pid if needed"""
        if instance.process is None and instance.pid:
            install_dir = instance.install_dir or self.config.instance_install_dir(instance.name)
            instance.process = WorkerHandle.attach(instance.pid, instance.process_started, install_dir)
            if instance.process is None:
                self.logger.warning(
                    f"Runner {instance.name} listener (PID: {instance.pid}) is no longer running; "
                    f"forgetting the recorded PID")
                self._clear_process(instance)
                return None
            self.logger.info(f"Re-attached to runner {instance.name} (PID: {instance.pid})")
        if instance.process is not None and not instance.process.is_alive():
            code = instance.process.exit_code()
            self.logger.warning(
                f"Runner {instance.name} listener has exited ({describe_exit_code(code)})")
            self._clear_process(instance)
        return instance.process

    @staticmethod
    def _clear_process(instance: RunnerInstance):
        instance.process = None
        instance.pid = None
        instance.started_at = None
        instance.process_started = None

    def is_running(self, name: str) -> bool:
        with self.registry.locked(name) as instance:
            return self._handle(instance) is not None

    def register(self, name: str, token: str,
                 cancel: Optional[threading.Event] = None) -> RunnerInstance:
        """
        Register an instance with GitHub

        Fetches a registration token and hands it to the worker's configure
        handshake. Registering an already registered instance is a no-op.
        On failure the instance rolls back to Unregistered.

        Args:
            name: Instance name
            token: GitHub token with admin rights on the repository
            cancel: Cancellation event, honored before each blocking step

        Returns:
            The instance
        """
        with self.registry.locked(name) as instance:
            if instance.registration_state == RegistrationState.REGISTERED:
                self.logger.info(f"Runner {name} is already registered")
                return instance

            self.registry.transition(instance, RegistrationState.REGISTERING)
            self.registry.save()
            self.logger.info(f"Registering runner: {name} ({instance.repository})")

            remote_attempted = False
            try:
                _check_cancelled(cancel, "registration", name)
                reg_token = self.github.get_registration_token(instance.repository, token,
                                                               cancel=cancel)
                _check_cancelled(cancel, "registration", name)

                worker = self.worker_factory(instance)
                remote_attempted = True
                worker.configure(
                    url=f"{self.config.github_url}/{instance.repository}",
                    token=reg_token,
                    name=instance.name,
                    labels=instance.labels,
                    work_dir=self.config.work_dir,
                    ephemeral=self.config.ephemeral,
                    replace=self.config.replace_existing,
                    disable_update=self.config.disable_auto_update,
                    group=self.config.group,
                    timeout=self.config.configure_timeout,
                )
            except BaseException as e:
                self.registry.transition(instance, RegistrationState.UNREGISTERED)
                if remote_attempted:
                    warning = ("registration failed after contacting GitHub; "
                               "a partial remote registration may exist")
                    instance.add_warning(warning)
                    self.logger.warning(f"Runner {name}: {warning}")
                self.logger.error(f"Registration of {name} failed: {e}")
                raise

            self.registry.transition(instance, RegistrationState.REGISTERED)
            instance.warnings = []
            instance.remote_id = self._lookup_remote_id(instance, token)
            self.logger.info(f"Runner {name} registered successfully")
            return instance

    def _lookup_remote_id(self, instance: RunnerInstance, token: str) -> Optional[int]:
        try:
            remote = self.github.get_runner_by_name(instance.repository, token, instance.name)
        except RemoteAPIError as e:
            self.logger.warning(f"Could not look up remote id of {instance.name}: {e}")
            return None
        return remote.get('id') if remote else None

    def start(self, name: str, cancel: Optional[threading.Event] = None) -> RunnerInstance:
        """
        Start the instance's listener and wait for its handshake

        Returns once the listener reports it is connected; the process keeps
        running afterwards. Starting a running instance is a no-op.

        Raises:
            InvalidStateError: Unless the instance is registered
            StartTimeoutError: No handshake within the start timeout
        """
        with self.registry.locked(name) as instance:
            if instance.registration_state != RegistrationState.REGISTERED:
                raise InvalidStateError(
                    f"cannot start while {instance.registration_state.value}", subject=name,
                    remediation="register the runner first")

            if self._handle(instance) is not None:
                self.logger.info(f"Runner {name} is already running (PID: {instance.pid})")
                return instance

            _check_cancelled(cancel, "start", name)
            worker = self.worker_factory(instance)
            offset = worker.log_offset()
            self.logger.info(f"Starting runner: {name}")
            handle = worker.spawn()

            try:
                line = worker.wait_for_handshake(handle, self.config.start_timeout, offset=offset,
                                                 cancel=cancel, name=name)
            except BaseException as e:
                if isinstance(e, StartTimeoutError):
                    self.logger.error(f"Runner {name} did not connect within "
                                      f"{self.config.start_timeout:g}s, killing it")
                self._terminate(handle, name, graceful=False)
                raise

            instance.process = handle
            instance.pid = handle.pid
            instance.process_started = handle.create_time
            instance.started_at = datetime.now()
            self.logger.info(f"Runner {name} started (PID: {handle.pid}): {line}")
            return instance

    def stop(self, name: str, graceful: bool = True,
             cancel: Optional[threading.Event] = None) -> RunnerInstance:
        """
        Stop the instance's listener, leaving the registration intact

        Graceful stops send SIGTERM and wait up to the grace period before
        escalating to SIGKILL. Setting the cancellation event during the
        grace period escalates at once. Stopping a stopped instance is a no-op.

        Raises:
            StopTimeoutError: The process survived SIGKILL
        """
        with self.registry.locked(name) as instance:
            handle = self._handle(instance)
            if handle is None:
                self.logger.debug(f"Runner {name} is not running")
                return instance

            self.logger.info(f"Stopping runner: {name} (PID: {handle.pid})")
            self._terminate(handle, name, graceful, cancel)
            self._clear_process(instance)
            self.logger.info(f"Runner {name} stopped")
            return instance

    def _terminate(self, handle: WorkerHandle, name: str, graceful: bool,
                   cancel: Optional[threading.Event] = None):
        if graceful:
            handle.terminate()
            deadline = time.monotonic() + self.config.stop_grace_period
            while True:
                remaining = deadline - time.monotonic()
                if handle.reap(max(0.0, min(self.config.stop_poll_interval, remaining))):
                    return
                if cancel is not None and cancel.is_set():
                    self.logger.warning(f"Stop of runner {name} interrupted, killing...")
                    break
                if remaining <= 0:
                    self.logger.warning(f"Runner {name} did not stop within "
                                        f"{self.config.stop_grace_period:g}s, killing...")
                    break

        handle.kill()
        if not handle.reap(KILL_WAIT_SECONDS):
            raise StopTimeoutError(f"process {handle.pid} survived SIGKILL", subject=name)

    def remove(self, name: str, token: Optional[str], force: bool = False,
               cancel: Optional[threading.Event] = None) -> bool:
        """
        Unregister an instance from GitHub and drop it from the registry

        The listener must be stopped first. If the remote call fails the
        instance stays Registered with a warning, unless force is set, in
        which case it is removed locally and the leftover remote registration
        is logged.

        Returns:
            True if the remote registration is known to be gone
        """
        with self.registry.locked(name) as instance:
            if self._handle(instance) is not None:
                raise InvalidStateError("runner is still running", subject=name,
                                        remediation="stop the runner before removing it")

            if instance.registration_state == RegistrationState.UNREGISTERED:
                self.registry.remove(name)
                return True

            if instance.registration_state != RegistrationState.REGISTERED:
                raise InvalidStateError(
                    f"cannot remove while {instance.registration_state.value}", subject=name,
                    remediation="run 'runner reconcile' to resolve the interrupted operation")

            self.registry.transition(instance, RegistrationState.REMOVING)
            self.registry.save()
            try:
                if not token:
                    raise RemoteAPIError("no token available for remote removal", subject=name,
                                         status=401, remediation="save a token for the repository")
                _check_cancelled(cancel, "removal", name)
                self._delete_remote(instance, token, cancel)
            except (RemoteAPIError, CancelledError) as e:
                self.registry.transition(instance, RegistrationState.REGISTERED)
                warning = f"remote removal did not complete: {e}"
                instance.add_warning(warning)
                if not force:
                    self.logger.error(f"Runner {name}: {warning}")
                    raise
                self.logger.warning(f"Runner {name}: forcing local removal; the registration may "
                                    f"remain on GitHub and must be deleted manually")
                self.registry.transition(instance, RegistrationState.UNREGISTERED)
                self.registry.remove(name)
                return False

            try:
                self.worker_factory(instance).remove_local_configuration()
            except OSError as e:
                warning = f"local runner configuration was not cleaned up: {e}"
                instance.add_warning(warning)
                self.logger.warning(f"Runner {name}: {warning}")
            self.registry.transition(instance, RegistrationState.UNREGISTERED)
            self.registry.remove(name)
            self.logger.info(f"Runner {name} removed")
            return True

    def _delete_remote(self, instance: RunnerInstance, token: str,
                       cancel: Optional[threading.Event]):
        remote = self.github.get_runner_by_name(instance.repository, token, instance.name,
                                                cancel=cancel)
        if remote is None:
            self.logger.info(f"Runner {instance.name} is already absent from GitHub")
            return
        _check_cancelled(cancel, "removal", instance.name)
        self.github.delete_runner(instance.repository, token, remote['id'])

    def stop_all(self, graceful: bool = True,
                 cancel: Optional[threading.Event] = None) -> Dict[str, Optional[RunnerKeeperError]]:
        """
        Stop every instance concurrently

        Returns:
            Mapping of instance name to the error it raised, or None
        """
        instances = self.registry.list()
        results: Dict[str, Optional[RunnerKeeperError]] = {}
        if not instances:
            return results

        with ThreadPoolExecutor(max_workers=len(instances)) as pool:
            futures = {i.name: pool.submit(self.stop, i.name, graceful, cancel) for i in instances}
            for name, future in futures.items():
                try:
                    future.result()
                    results[name] = None
                except RunnerKeeperError as e:
                    self.logger.error(f"Failed to stop {name}: {e}")
                    results[name] = e
        return results

    def reconcile(self, tokens: Dict[str, str]) -> List[str]:
        """
        Align local state with the processes and GitHub's runner list

        GitHub's list is trusted for registration state. Processes are only
        re-attached or forgotten, never started or stopped.

        Args:
            tokens: Token per repository; repositories without one are skipped

        Returns:
            Human-readable descriptions of the changes made
        """
        changes: List[str] = []
        remote_by_repo: Dict[str, Dict[str, Dict]] = {}

        for instance in self.registry.list():
            with self.registry.locked(instance.name):
                if instance.pid and self._handle(instance) is None:
                    note = f"{instance.name}: recorded process is gone"
                    instance.add_warning("listener process was not running at reconcile")
                    changes.append(note)

                token = tokens.get(instance.repository)
                if not token:
                    self.logger.warning(f"No token for {instance.repository}; "
                                        f"skipping remote reconcile of {instance.name}")
                    continue

                if instance.repository not in remote_by_repo:
                    try:
                        runners = self.github.list_runners(instance.repository, token)
                    except RemoteAPIError as e:
                        self.logger.warning(f"Cannot list runners for {instance.repository}: {e}")
                        continue
                    remote_by_repo[instance.repository] = {r.get('name'): r for r in runners}

                remote = remote_by_repo[instance.repository].get(instance.name)
                change = self._reconcile_registration(instance, remote)
                if change:
                    changes.append(change)

        for change in changes:
            self.logger.info(f"Reconciled {change}")
        return changes

    def _reconcile_registration(self, instance: RunnerInstance, remote: Optional[Dict]) -> Optional[str]:
        state = instance.registration_state
        if remote is not None:
            instance.remote_id = remote.get('id')
            if state != RegistrationState.REGISTERED:
                instance.registration_state = RegistrationState.REGISTERED
                if state == RegistrationState.UNREGISTERED:
                    instance.add_warning("adopted an existing GitHub registration")
                return f"{instance.name}: {state.value} -> registered (present on GitHub)"
            return None

        if state != RegistrationState.UNREGISTERED:
            instance.registration_state = RegistrationState.UNREGISTERED
            instance.remote_id = None
            if state == RegistrationState.REGISTERED:
                instance.add_warning("registration missing on GitHub; register again")
            return f"{instance.name}: {state.value} -> unregistered (absent on GitHub)"
        return None
