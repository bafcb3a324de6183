"""Unit tests for runner_keeper.health module."""

import threading
from types import SimpleNamespace

import pytest

from runner_keeper.errors import RemoteAPIError
from runner_keeper.health import Finding, HealthMonitor, Severity, aggregate
from runner_keeper.lifecycle import LifecycleController
from runner_keeper.registry import HealthStatus, RegistrationState, RunnerInstance


class FakeProbe:
    """psutil stand-in returning fixed resource figures"""

    def __init__(self, disk=10.0, memory=20.0, cpu=5.0):
        self.disk = disk
        self.memory = memory
        self.cpu = cpu
        self.disk_paths = []

    def disk_usage(self, path):
        self.disk_paths.append(path)
        return SimpleNamespace(percent=self.disk)

    def virtual_memory(self):
        return SimpleNamespace(percent=self.memory)

    def cpu_percent(self, interval=None):
        return self.cpu


@pytest.fixture
def probe():
    return FakeProbe()


@pytest.fixture
def monitor(config, registry, github, probe):
    return HealthMonitor(config, registry, github, probe=probe)


def add(registry, name='r1', state=RegistrationState.UNREGISTERED):
    instance = registry.register(RunnerInstance(name, 'org/repo'))
    instance.registration_state = state
    return instance


def kinds(report, severity):
    return [f.kind for f in report.findings if f.severity == severity]


class TestAggregate:
    """Tests for severity aggregation."""

    def test_no_findings_is_healthy(self):
        assert aggregate([]) == HealthStatus.HEALTHY

    def test_info_only_is_healthy(self):
        assert aggregate([Finding(Severity.INFO, 'process', 'ok')]) == HealthStatus.HEALTHY

    def test_warning_degrades(self):
        findings = [Finding(Severity.INFO, 'process', 'ok'), Finding(Severity.WARNING, 'auth', 'x')]
        assert aggregate(findings) == HealthStatus.DEGRADED

    def test_error_wins(self):
        findings = [Finding(Severity.WARNING, 'auth', 'x'), Finding(Severity.ERROR, 'network', 'y')]
        assert aggregate(findings) == HealthStatus.UNHEALTHY


class TestCheck:
    """Tests for single-instance health checks."""

    def test_unregistered_idle_instance_is_healthy(self, monitor, registry):
        add(registry)
        report = monitor.check('r1')
        assert report.status == HealthStatus.HEALTHY
        assert report.problems == []

    def test_registered_without_process_is_unhealthy(self, monitor, registry):
        add(registry, state=RegistrationState.REGISTERED)

        report = monitor.check('r1')

        assert report.status == HealthStatus.UNHEALTHY
        assert kinds(report, Severity.ERROR) == ['process']

    def test_annotates_without_changing_state(self, monitor, registry):
        instance = add(registry, state=RegistrationState.REGISTERED)

        monitor.check('r1')

        assert instance.last_health == HealthStatus.UNHEALTHY
        assert instance.last_checked is not None
        assert instance.last_findings
        assert instance.registration_state == RegistrationState.REGISTERED

    def test_unreachable_is_error(self, monitor, registry, github):
        add(registry)
        github.check_reachability.return_value = False
        report = monitor.check('r1')
        assert report.status == HealthStatus.UNHEALTHY
        assert kinds(report, Severity.ERROR) == ['network']

    def test_network_exception_becomes_finding(self, monitor, registry, github):
        add(registry)
        github.check_reachability.side_effect = RemoteAPIError("network error: timed out")
        report = monitor.check('r1')
        assert kinds(report, Severity.ERROR) == ['network']

    def test_auth_failure_degrades(self, monitor, registry, github):
        add(registry)
        github.check_repository_access.side_effect = RemoteAPIError("unauthorized", status=401)
        report = monitor.check('r1', token='ghp_bad')
        assert report.status == HealthStatus.DEGRADED
        assert kinds(report, Severity.WARNING) == ['auth']

    def test_auth_check_skipped_without_token(self, monitor, registry, github):
        add(registry)
        monitor.check('r1')
        github.check_repository_access.assert_not_called()


class TestRegistration:
    """Tests for checking the registration against GitHub's runner list."""

    def test_missing_on_github_is_unhealthy(self, monitor, registry, github):
        instance = add(registry, state=RegistrationState.REGISTERED)
        github.list_runners.return_value = [{'id': 7, 'name': 'someone-else', 'status': 'online'}]

        finding = monitor.check_registration(instance, 'ghp_token', True, listener_alive=False)

        assert finding.severity == Severity.ERROR
        assert 'not registered on GitHub' in finding.message

    def test_missing_on_github_fails_the_check(self, monitor, registry):
        add(registry, state=RegistrationState.REGISTERED)
        report = monitor.check('r1', token='ghp_token')
        assert report.status == HealthStatus.UNHEALTHY
        assert 'registration' in kinds(report, Severity.ERROR)

    def test_online_and_busy(self, monitor, registry, github):
        instance = add(registry, state=RegistrationState.REGISTERED)
        github.list_runners.return_value = [{'id': 42, 'name': 'r1', 'status': 'online', 'busy': True}]

        finding = monitor.check_registration(instance, 'ghp_token', True, listener_alive=True)

        assert finding.severity == Severity.INFO
        assert finding.message == "GitHub reports the runner online, busy"

    def test_offline_without_listener_is_not_flagged_again(self, monitor, registry, github):
        instance = add(registry, state=RegistrationState.REGISTERED)
        github.list_runners.return_value = [{'id': 42, 'name': 'r1', 'status': 'offline'}]
        finding = monitor.check_registration(instance, 'ghp_token', True, listener_alive=False)
        assert finding.severity == Severity.INFO

    def test_network_failure_degrades(self, monitor, registry, github):
        instance = add(registry, state=RegistrationState.REGISTERED)
        github.list_runners.side_effect = RemoteAPIError("network error: timed out")

        finding = monitor.check_registration(instance, 'ghp_token', True, listener_alive=False)

        assert finding.severity == Severity.WARNING
        assert 'cannot list runners' in finding.message

    def test_unreachable_skips_api_call(self, monitor, registry, github):
        instance = add(registry, state=RegistrationState.REGISTERED)
        finding = monitor.check_registration(instance, 'ghp_token', False, listener_alive=False)
        assert finding.severity == Severity.WARNING
        github.list_runners.assert_not_called()

    @pytest.mark.parametrize('state,token', [
        (RegistrationState.UNREGISTERED, 'ghp_token'),
        (RegistrationState.REGISTERED, None),
    ])
    def test_skipped(self, monitor, registry, github, state, token):
        instance = add(registry, state=state)
        finding = monitor.check_registration(instance, token, True, listener_alive=False)
        assert finding.severity == Severity.INFO
        github.list_runners.assert_not_called()


class TestLogs:
    """Tests for listener log analysis."""

    def write_log(self, config, name, lines):
        path = config.worker_log_path(name)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(''.join(f"{line}\n" for line in lines))

    def test_no_log_yet(self, monitor, registry):
        finding = monitor.check_logs(add(registry))
        assert finding.severity == Severity.INFO
        assert finding.kind == 'log'

    def test_clean_log_counts_jobs(self, monitor, registry, config):
        instance = add(registry)
        self.write_log(config, 'r1', [
            '2024-01-01 10:00:00Z: Listening for Jobs',
            '2024-01-01 10:05:00Z: Running job: build',
            '2024-01-01 10:07:00Z: Job build completed with result: Succeeded',
            '2024-01-01 10:09:00Z: Running job: test',
        ])

        finding = monitor.check_logs(instance)

        assert finding.severity == Severity.INFO
        assert '2 job(s) started' in finding.message

    def test_errors_degrade(self, monitor, registry, config):
        add(registry)
        self.write_log(config, 'r1', [
            'Listening for Jobs',
            'Runner connect error: connection refused',
            'Running job: build',
            'FATAL: session lost',
        ])

        report = monitor.check('r1')

        assert report.status == HealthStatus.DEGRADED
        assert kinds(report, Severity.WARNING) == ['log']
        log_finding = [f for f in report.findings if f.kind == 'log'][0]
        assert '2 error line(s)' in log_finding.message
        assert log_finding.message.endswith('FATAL: session lost')

    def test_only_tail_is_scanned(self, monitor, registry, config):
        instance = add(registry)
        config.log_tail_lines = 3
        self.write_log(config, 'r1', ['Job failed'] + ['Listening for Jobs'] * 3)

        finding = monitor.check_logs(instance)

        assert finding.severity == Severity.INFO
        assert 'last 3 log lines' in finding.message

    def test_words_inside_other_words_are_ignored(self, monitor, registry, config):
        instance = add(registry)
        self.write_log(config, 'r1', ['Errorless run of job-failedover-check'])
        assert monitor.check_logs(instance).severity == Severity.INFO


class TestResources:
    """Tests for resource thresholds."""

    @pytest.mark.parametrize('disk,memory,cpu,expected', [
        (50, 50, 10, HealthStatus.HEALTHY),
        (85, 50, 10, HealthStatus.DEGRADED),
        (95, 50, 10, HealthStatus.UNHEALTHY),
        (50, 85, 10, HealthStatus.DEGRADED),
        (50, 97, 10, HealthStatus.UNHEALTHY),
        (50, 50, 99, HealthStatus.DEGRADED),
    ])
    def test_thresholds(self, config, registry, github, disk, memory, cpu, expected):
        add(registry)
        monitor = HealthMonitor(config, registry, github, probe=FakeProbe(disk, memory, cpu))
        report = monitor.check('r1')
        assert report.status == expected
        if expected != HealthStatus.HEALTHY:
            assert 'resource' in kinds(report, Severity.WARNING) + kinds(report, Severity.ERROR)

    def test_disk_checked_on_existing_ancestor(self, monitor, registry, probe, tmp_path):
        add(registry)
        monitor.check('r1')
        assert probe.disk_paths == [str(tmp_path)]


class TestLiveProcess:
    """Health checks against a real listener process."""

    @pytest.fixture
    def controller(self, config, registry, github, agent_dir):
        agent_dir('r1')
        controller = LifecycleController(config, registry, github)
        controller.create_instance('r1', 'org/repo')
        controller.register('r1', 'ghp_token')
        controller.start('r1')
        yield controller
        controller.stop_all(graceful=False)

    def test_running_registered_instance_is_healthy(self, controller, monitor, github):
        github.list_runners.return_value = [{'id': 42, 'name': 'r1', 'status': 'online', 'busy': False}]
        report = monitor.check('r1', token='ghp_token')
        assert report.status == HealthStatus.HEALTHY

    def test_offline_on_github_while_listener_runs_degrades(self, controller, monitor, github):
        github.list_runners.return_value = [{'id': 42, 'name': 'r1', 'status': 'offline'}]

        report = monitor.check('r1', token='ghp_token')

        assert report.status == HealthStatus.DEGRADED
        assert kinds(report, Severity.WARNING) == ['registration']

    def test_recorded_pid_of_foreign_process_is_not_trusted(self, controller, monitor, registry):
        instance = registry.get('r1')
        handle, started = instance.process, instance.process_started
        instance.process = None
        instance.process_started = started - 3600
        try:
            report = monitor.check('r1')
        finally:
            instance.process, instance.process_started = handle, started

        assert report.status == HealthStatus.UNHEALTHY
        assert kinds(report, Severity.ERROR) == ['process']

    def test_process_death_turns_unhealthy(self, controller, monitor, registry):
        assert monitor.check('r1').status == HealthStatus.HEALTHY

        handle = registry.get('r1').process
        handle.kill()
        handle.reap(5)

        assert monitor.check('r1').status == HealthStatus.UNHEALTHY


class TestSweep:
    """Tests for sweeping all instances."""

    def test_check_all_probes_reachability_once(self, monitor, registry, github):
        for name in ('a', 'b', 'c'):
            add(registry, name)
        reports = monitor.check_all({'org/repo': 'ghp_token'})
        assert sorted(reports) == ['a', 'b', 'c']
        assert github.check_reachability.call_count == 1
        assert github.check_repository_access.call_count == 3

    def test_check_all_lists_runners_once_per_repository(self, monitor, registry, github):
        for name in ('a', 'b'):
            add(registry, name, state=RegistrationState.REGISTERED)
        other = registry.register(RunnerInstance('c', 'org/other'))
        other.registration_state = RegistrationState.REGISTERED
        github.list_runners.side_effect = lambda repo, token, cancel=None: (
            [{'id': 1, 'name': 'a', 'status': 'online'}] if repo == 'org/repo' else [])

        reports = monitor.check_all({'org/repo': 'ghp_token', 'org/other': 'ghp_other'})

        assert github.list_runners.call_count == 2
        assert 'registration' not in kinds(reports['a'], Severity.ERROR)
        assert 'registration' in kinds(reports['b'], Severity.ERROR)
        assert 'registration' in kinds(reports['c'], Severity.ERROR)

    def test_check_all_list_failure_is_shared_warning(self, monitor, registry, github):
        for name in ('a', 'b'):
            add(registry, name, state=RegistrationState.REGISTERED)
        github.list_runners.side_effect = RemoteAPIError("HTTP 502 Bad Gateway", status=502)

        reports = monitor.check_all({'org/repo': 'ghp_token'})

        assert github.list_runners.call_count == 1
        for report in reports.values():
            assert 'registration' in kinds(report, Severity.WARNING)

    def test_check_all_empty(self, monitor, github):
        assert monitor.check_all() == {}
        github.check_reachability.assert_not_called()

    def test_run_until_cancelled(self, monitor, registry):
        add(registry)
        cancel = threading.Event()
        sweeps = []

        def on_sweep(reports):
            sweeps.append(reports)
            if len(sweeps) == 2:
                cancel.set()

        monitor.run(cancel, interval=0.01, on_sweep=on_sweep)

        assert len(sweeps) == 2
