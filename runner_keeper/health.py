"""
Health Monitor Module

Evaluates runner instances with independent checks and aggregates the
findings into a healthy / degraded / unhealthy verdict. The monitor only
annotates instances; it never changes their registration state.
"""

import logging
import re
import threading
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from enum import IntEnum
from pathlib import Path
from typing import Callable, Dict, List, Optional

import psutil

from .errors import NotFoundError, RemoteAPIError
from .registry import HealthStatus, RegistrationState, RunnerInstance, RunnerRegistry
from .worker import WorkerHandle, process_memory_percent


LOG_ERROR_PATTERN = re.compile(r'\b(error|failed|exception|fatal)\b', re.IGNORECASE)
LOG_JOB_MARKER = 'Running job:'


class Severity(IntEnum):
    INFO = 0
    WARNING = 1
    ERROR = 2


class Finding:
    """Result of one health check"""

    def __init__(self, severity: Severity, kind: str, message: str):
        self.severity = severity
        self.kind = kind  # process, network, auth, registration, log, resource
        self.message = message

    def __str__(self):
        return f"[{self.severity.name}] {self.message}"

    def __repr__(self):
        return f"Finding({self.severity.name}, {self.kind}, {self.message!r})"


class HealthReport:
    """Aggregated verdict for one instance"""

    def __init__(self, name: str, findings: List[Finding]):
        self.name = name
        self.findings = findings
        self.status = aggregate(findings)
        self.checked_at = datetime.now()

    @property
    def problems(self) -> List[Finding]:
        return [f for f in self.findings if f.severity > Severity.INFO]

    def to_dict(self) -> Dict:
        return {
            'name': self.name,
            'status': self.status.value,
            'checked_at': self.checked_at.isoformat(),
            'findings': [
                {'severity': f.severity.name.lower(), 'kind': f.kind, 'message': f.message}
                for f in self.findings
            ],
        }


def aggregate(findings: List[Finding]) -> HealthStatus:
    """Overall status is the worst severity among the findings"""
    worst = max((f.severity for f in findings), default=Severity.INFO)
    if worst == Severity.ERROR:
        return HealthStatus.UNHEALTHY
    if worst == Severity.WARNING:
        return HealthStatus.DEGRADED
    return HealthStatus.HEALTHY


class HealthMonitor:
    """Check runner processes, GitHub connectivity and host resources"""

    def __init__(self, config, registry: RunnerRegistry, github_api,
                 logger: Optional[logging.Logger] = None, probe=psutil):
        """
        Initialize the health monitor

        Args:
            config: RunnerConfig instance (thresholds)
            registry: RunnerRegistry holding the instances
            github_api: GitHubAPI instance
            logger: Logger instance
            probe: Source of resource figures (psutil-compatible)
        """
        self.config = config
        self.registry = registry
        self.github = github_api
        self.logger = logger or logging.getLogger(__name__)
        self.probe = probe

    def check(self, name: str, token: Optional[str] = None,
              reachable: Optional[bool] = None,
              remote_runners: Optional[List[Dict]] = None,
              remote_error: Optional[RemoteAPIError] = None) -> HealthReport:
        """
        Run all checks for one instance and annotate it with the verdict

        Args:
            name: Instance name
            token: Token for the authenticated checks (skipped if None)
            reachable: Result of a reachability probe shared across a sweep
            remote_runners: GitHub's runner list for the repository, shared across a sweep
            remote_error: Error raised while fetching that list

        Returns:
            HealthReport
        """
        instance = self.registry.get(name)
        if reachable is None:
            reachable = self.probe_reachability()

        findings: List[Finding] = []
        handle = self._listener(instance)
        findings.extend(self.check_process(instance, handle))
        findings.append(self.check_reachability(reachable))
        findings.append(self.check_authenticated(instance, token))
        findings.append(self.check_registration(instance, token, reachable, handle is not None,
                                                remote_runners, remote_error))
        findings.append(self.check_logs(instance))
        findings.extend(self.check_resources(instance))

        report = HealthReport(name, findings)
        self._annotate(report)

        log = self.logger.info if report.status == HealthStatus.HEALTHY else self.logger.warning
        log(f"Health of {name}: {report.status.value}"
            + (f" ({'; '.join(f.message for f in report.problems)})" if report.problems else ''))
        return report

    def _annotate(self, report: HealthReport):
        try:
            with self.registry.locked(report.name) as instance:
                instance.last_health = report.status
                instance.last_findings = [str(f) for f in report.findings]
                instance.last_checked = report.checked_at
        except NotFoundError:
            self.logger.debug(f"{report.name} was removed during its health check")

    def _listener(self, instance: RunnerInstance) -> Optional[WorkerHandle]:
        """Live listener handle, re-attached only if the recorded process is still ours"""
        handle = instance.process
        if handle is None and instance.pid:
            handle = WorkerHandle.attach(
                instance.pid, instance.process_started,
                instance.install_dir or self.config.instance_install_dir(instance.name))
        if handle is None or not handle.is_alive():
            return None
        return handle

    def check_process(self, instance: RunnerInstance,
                      handle: Optional[WorkerHandle]) -> List[Finding]:
        """Listener liveness and posture, judged against the registration state"""
        registered = instance.registration_state == RegistrationState.REGISTERED
        if handle is None:
            if registered:
                return [Finding(Severity.ERROR, 'process',
                                "listener is not running while the runner is registered")]
            return [Finding(Severity.INFO, 'process', "listener is not running")]

        findings = []
        try:
            status = psutil.Process(handle.pid).status()
        except psutil.Error:
            status = None
        if status == psutil.STATUS_STOPPED:
            findings.append(Finding(Severity.ERROR, 'process',
                                    f"listener (PID {handle.pid}) is stopped and not responsive"))
        else:
            findings.append(Finding(Severity.INFO, 'process', f"listener running (PID {handle.pid})"))

        if not registered:
            findings.append(Finding(Severity.WARNING, 'process',
                                    f"listener is running but the runner is "
                                    f"{instance.registration_state.value}"))

        memory = process_memory_percent(handle.pid)
        if memory is not None and memory > self.config.process_memory_soft_threshold:
            findings.append(Finding(Severity.WARNING, 'resource',
                                    f"listener memory usage {memory:.1f}% "
                                    f"(threshold: {self.config.process_memory_soft_threshold:g}%)"))
        return findings

    def check_reachability(self, reachable: Optional[bool] = None) -> Finding:
        if reachable is None:
            reachable = self.probe_reachability()
        if reachable:
            return Finding(Severity.INFO, 'network', "GitHub API is reachable")
        return Finding(Severity.ERROR, 'network', "cannot reach the GitHub API (network or DNS issue)")

    def probe_reachability(self) -> bool:
        try:
            return self.github.check_reachability()
        except Exception as e:
            self.logger.debug(f"Reachability probe failed: {e}")
            return False

    def check_authenticated(self, instance: RunnerInstance, token: Optional[str]) -> Finding:
        """Authenticated access to the instance's repository; failures only degrade"""
        if not token:
            return Finding(Severity.INFO, 'auth', "no token available; authenticated check skipped")
        try:
            self.github.check_repository_access(instance.repository, token)
        except RemoteAPIError as e:
            return Finding(Severity.WARNING, 'auth', f"authenticated API check failed: {e}")
        return Finding(Severity.INFO, 'auth', f"token can access {instance.repository}")

    def check_registration(self, instance: RunnerInstance, token: Optional[str],
                           reachable: bool, listener_alive: bool,
                           remote_runners: Optional[List[Dict]] = None,
                           remote_error: Optional[RemoteAPIError] = None) -> Finding:
        """
        Whether GitHub still knows a registered runner, and how it sees it

        A runner missing from the repository's list is an error. GitHub
        reporting it offline while the listener is alive only degrades.
        """
        if instance.registration_state != RegistrationState.REGISTERED:
            return Finding(Severity.INFO, 'registration',
                           f"runner is {instance.registration_state.value}; registration not checked")
        if not token:
            return Finding(Severity.INFO, 'registration',
                           "no token available; registration check skipped")
        if not reachable:
            return Finding(Severity.WARNING, 'registration',
                           "cannot verify the registration while GitHub is unreachable")

        if remote_runners is None and remote_error is None:
            try:
                remote_runners = self.github.list_runners(instance.repository, token)
            except RemoteAPIError as e:
                remote_error = e
        if remote_error is not None:
            return Finding(Severity.WARNING, 'registration',
                           f"cannot list runners for {instance.repository}: {remote_error}")

        remote = next((r for r in remote_runners if r.get('name') == instance.name), None)
        if remote is None:
            return Finding(Severity.ERROR, 'registration',
                           f"runner is not registered on GitHub ({instance.repository})")

        status = remote.get('status', 'unknown')
        if status == 'offline' and listener_alive:
            return Finding(Severity.WARNING, 'registration',
                           "GitHub reports the runner offline while its listener is running")
        busy = ', busy' if remote.get('busy') else ''
        return Finding(Severity.INFO, 'registration', f"GitHub reports the runner {status}{busy}")

    def check_logs(self, instance: RunnerInstance) -> Finding:
        """Scan the tail of the listener log for errors and job activity"""
        path = self.config.worker_log_path(instance.name)
        try:
            with open(path, 'r', encoding='utf-8', errors='replace') as f:
                lines = deque(f, maxlen=self.config.log_tail_lines)
        except FileNotFoundError:
            return Finding(Severity.INFO, 'log', "no listener log yet")
        except OSError as e:
            return Finding(Severity.WARNING, 'log', f"cannot read listener log: {e}")

        errors = [line.strip() for line in lines if LOG_ERROR_PATTERN.search(line)]
        jobs = sum(1 for line in lines if LOG_JOB_MARKER in line)
        if errors:
            return Finding(Severity.WARNING, 'log',
                           f"{len(errors)} error line(s) in the last {len(lines)} log lines, "
                           f"latest: {errors[-1]}")
        return Finding(Severity.INFO, 'log',
                       f"no errors in the last {len(lines)} log lines ({jobs} job(s) started)")

    def _disk_path(self, instance: RunnerInstance) -> Path:
        path = instance.install_dir or self.config.instance_install_dir(instance.name)
        path = Path(path)
        while not path.exists() and path != path.parent:
            path = path.parent
        return path

    def check_resources(self, instance: RunnerInstance) -> List[Finding]:
        """Free disk, memory and CPU against the configured thresholds"""
        findings = []

        try:
            disk = self.probe.disk_usage(str(self._disk_path(instance))).percent
            findings.append(self._threshold_finding(
                'disk usage', disk, self.config.disk_soft_threshold, self.config.disk_hard_threshold))
        except OSError as e:
            findings.append(Finding(Severity.WARNING, 'resource', f"cannot read disk usage: {e}"))

        try:
            memory = self.probe.virtual_memory().percent
            findings.append(self._threshold_finding(
                'memory usage', memory, self.config.memory_soft_threshold,
                self.config.memory_hard_threshold))
        except OSError as e:
            findings.append(Finding(Severity.WARNING, 'resource', f"cannot read memory usage: {e}"))

        cpu = self.probe.cpu_percent(interval=None)
        if cpu > self.config.cpu_soft_threshold:
            findings.append(Finding(Severity.WARNING, 'resource',
                                    f"CPU usage {cpu:.1f}% (threshold: {self.config.cpu_soft_threshold:g}%)"))
        return findings

    @staticmethod
    def _threshold_finding(label: str, value: float, soft: float, hard: float) -> Finding:
        if value >= hard:
            return Finding(Severity.ERROR, 'resource', f"{label} {value:.1f}% (hard limit: {hard:g}%)")
        if value >= soft:
            return Finding(Severity.WARNING, 'resource', f"{label} {value:.1f}% (soft limit: {soft:g}%)")
        return Finding(Severity.INFO, 'resource', f"{label} {value:.1f}%")

    def check_all(self, tokens: Optional[Dict[str, str]] = None) -> Dict[str, HealthReport]:
        """
        Check every instance concurrently

        The unauthenticated reachability probe runs once per sweep, and
        GitHub's runner list is fetched once per repository.

        Args:
            tokens: Token per repository for the authenticated checks

        Returns:
            Mapping of instance name to report
        """
        tokens = tokens or {}
        instances = self.registry.list()
        if not instances:
            return {}

        reachable = self.probe_reachability()
        remote: Dict[str, List[Dict]] = {}
        remote_errors: Dict[str, RemoteAPIError] = {}
        if reachable:
            for repository in sorted({i.repository for i in instances
                                      if i.registration_state == RegistrationState.REGISTERED}):
                token = tokens.get(repository)
                if not token:
                    continue
                try:
                    remote[repository] = self.github.list_runners(repository, token)
                except RemoteAPIError as e:
                    remote_errors[repository] = e

        reports: Dict[str, HealthReport] = {}
        with ThreadPoolExecutor(max_workers=min(8, len(instances))) as pool:
            futures = {
                i.name: pool.submit(self.check, i.name, tokens.get(i.repository), reachable,
                                    remote.get(i.repository),
                                    remote_errors.get(i.repository))
                for i in instances
            }
            for name, future in futures.items():
                try:
                    reports[name] = future.result()
                except NotFoundError:
                    continue
        return reports

    def run(self, cancel: threading.Event, tokens: Optional[Dict[str, str]] = None,
            interval: Optional[float] = None,
            on_sweep: Optional[Callable[[Dict[str, HealthReport]], None]] = None):
        """
        Sweep all instances every interval until cancelled

        Args:
            cancel: Event ending the loop
            tokens: Token per repository
            interval: Seconds between sweeps (default: config.check_interval)
            on_sweep: Callback receiving each sweep's reports
        """
        interval = interval or self.config.check_interval
        self.logger.info(f"Starting health monitoring (interval: {interval:g}s)")

        while not cancel.is_set():
            reports = self.check_all(tokens)
            if on_sweep:
                on_sweep(reports)
            if cancel.wait(interval):
                break

        self.logger.info("Health monitoring stopped")
