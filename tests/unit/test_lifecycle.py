"""Unit tests for runner_keeper.lifecycle module."""

import subprocess
import sys
import threading
import time
from unittest.mock import patch

import psutil
import pytest

from runner_keeper.errors import (CancelledError, InvalidStateError, NotFoundError, RemoteAPIError,
                                  StartTimeoutError, WorkerError)
from runner_keeper.lifecycle import LifecycleController
from runner_keeper.registry import RegistrationState, RunnerRegistry
from tests.conftest import CONFIGURE_FAIL, RUN_EXITS, RUN_IGNORES_SIGTERM, RUN_SILENT


@pytest.fixture
def controller(config, registry, github):
    controller = LifecycleController(config, registry, github)
    yield controller
    controller.stop_all(graceful=False)


@pytest.fixture
def registered(controller, agent_dir):
    """Factory: add, install and register an instance"""

    def make(name='r1', repository='org/repo', **scripts):
        agent_dir(name, **scripts)
        controller.create_instance(name, repository)
        return controller.register(name, 'ghp_token')

    return make


class TestRegister:
    """Tests for registration."""

    def test_register(self, controller, agent_dir, github, config):
        agent_dir('r1')
        controller.create_instance('r1', 'org/repo', ['self-hosted', 'gpu'])

        instance = controller.register('r1', 'ghp_token')

        assert instance.registration_state == RegistrationState.REGISTERED
        assert instance.remote_id == 42
        assert (config.instance_install_dir('r1') / '.runner').exists()
        github.get_registration_token.assert_called_once()
        assert github.get_registration_token.call_args[0][:2] == ('org/repo', 'ghp_token')

    def test_register_twice_is_noop(self, registered, controller, github):
        registered('r1')
        again = controller.register('r1', 'ghp_token')
        assert again.registration_state == RegistrationState.REGISTERED
        assert github.get_registration_token.call_count == 1

    def test_concurrent_register_single_remote_registration(self, controller, agent_dir, github):
        agent_dir('r1')
        controller.create_instance('r1', 'org/repo')
        results, errors = [], []

        def register():
            try:
                results.append(controller.register('r1', 'ghp_token').registration_state)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=register) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(30)

        assert errors == []
        assert results == [RegistrationState.REGISTERED] * 4
        assert github.get_registration_token.call_count == 1

    def test_configure_failure_rolls_back(self, controller, agent_dir, registry):
        agent_dir('r1', configure=CONFIGURE_FAIL)
        controller.create_instance('r1', 'org/repo')

        with pytest.raises(WorkerError) as exc:
            controller.register('r1', 'ghp_token')

        assert 'NotFound' in str(exc.value)
        instance = registry.get('r1')
        assert instance.registration_state == RegistrationState.UNREGISTERED
        assert any('partial remote registration' in w for w in instance.warnings)

    def test_api_failure_rolls_back(self, controller, agent_dir, registry, github):
        agent_dir('r1')
        controller.create_instance('r1', 'org/repo')
        github.get_registration_token.side_effect = RemoteAPIError("forbidden", status=403)

        with pytest.raises(RemoteAPIError):
            controller.register('r1', 'ghp_token')

        instance = registry.get('r1')
        assert instance.registration_state == RegistrationState.UNREGISTERED
        assert instance.warnings == []

    def test_cancelled_before_api_call(self, controller, agent_dir, registry, github):
        agent_dir('r1')
        controller.create_instance('r1', 'org/repo')
        cancel = threading.Event()
        cancel.set()

        with pytest.raises(CancelledError):
            controller.register('r1', 'ghp_token', cancel=cancel)
        github.get_registration_token.assert_not_called()
        assert registry.get('r1').registration_state == RegistrationState.UNREGISTERED

    def test_unknown_instance(self, controller):
        with pytest.raises(NotFoundError):
            controller.register('ghost', 'ghp_token')


class TestStartStop:
    """Tests for starting and stopping listeners."""

    def test_start_waits_for_handshake(self, registered, controller, config):
        registered('r1')
        instance = controller.start('r1')

        assert instance.pid is not None
        assert instance.started_at is not None
        assert controller.is_running('r1')
        assert 'Listening for Jobs' in (config.state_dir / 'logs' / 'r1.log').read_text()

    def test_start_requires_registration(self, controller, agent_dir):
        agent_dir('r1')
        controller.create_instance('r1', 'org/repo')
        with pytest.raises(InvalidStateError):
            controller.start('r1')

    def test_start_twice_is_noop(self, registered, controller):
        registered('r1')
        first = controller.start('r1').pid
        assert controller.start('r1').pid == first

    def test_start_timeout(self, registered, controller, config):
        registered('r1', run=RUN_SILENT)
        config.start_timeout = 1

        began = time.monotonic()
        with pytest.raises(StartTimeoutError) as exc:
            controller.start('r1')
        elapsed = time.monotonic() - began

        assert elapsed < 10
        assert exc.value.exit_code == 8
        assert not controller.is_running('r1')

    def test_listener_exits_before_handshake(self, registered, controller):
        registered('r1', run=RUN_EXITS)
        with pytest.raises(WorkerError, match='session conflict'):
            controller.start('r1')

    def test_stop_is_idempotent(self, registered, controller, registry):
        registered('r1')
        controller.start('r1')

        controller.stop('r1')
        controller.stop('r1')

        instance = registry.get('r1')
        assert instance.pid is None
        assert instance.registration_state == RegistrationState.REGISTERED
        assert not controller.is_running('r1')

    def test_stop_escalates_to_kill(self, registered, controller, config):
        registered('r1', run=RUN_IGNORES_SIGTERM)
        handle = controller.start('r1').process
        config.stop_grace_period = 0.3

        controller.stop('r1')

        assert not handle.is_alive()

    def test_reattach_after_restart(self, registered, controller, config, github):
        registered('r1')
        pid = controller.start('r1').pid

        restarted = LifecycleController(config, RunnerRegistry(config.state_dir / 'registry.yaml'), github)
        assert restarted.is_running('r1')
        assert restarted.registry.get('r1').pid == pid

        restarted.stop('r1')
        assert not restarted.is_running('r1')

    def test_cancel_during_grace_period_kills(self, registered, controller, config):
        registered('r1', run=RUN_IGNORES_SIGTERM)
        handle = controller.start('r1').process
        config.stop_grace_period = 30
        cancel = threading.Event()
        timer = threading.Timer(0.3, cancel.set)
        timer.start()

        began = time.monotonic()
        try:
            controller.stop('r1', cancel=cancel)
        finally:
            timer.cancel()

        assert time.monotonic() - began < 10
        assert not handle.is_alive()
        assert not controller.is_running('r1')

    def test_stop_all(self, registered, controller):
        registered('r1')
        registered('r2')
        controller.start('r1')
        controller.start('r2')

        results = controller.stop_all()

        assert results == {'r1': None, 'r2': None}
        assert not controller.is_running('r1')
        assert not controller.is_running('r2')


class TestProcessOwnership:
    """A recorded pid is only trusted while it still names the listener."""

    @pytest.fixture
    def bystander(self, tmp_path):
        process = subprocess.Popen([sys.executable, '-c', 'import time; time.sleep(60)'],
                                   cwd=tmp_path, start_new_session=True)
        yield process
        process.kill()
        process.wait()

    def test_pid_without_start_time_is_not_adopted(self, registered, controller, registry,
                                                   bystander):
        registered('r1')
        registry.get('r1').pid = bystander.pid

        assert not controller.is_running('r1')
        controller.stop('r1')

        assert bystander.poll() is None
        assert registry.get('r1').pid is None

    def test_reused_pid_outside_install_dir_is_not_signalled(self, registered, controller,
                                                             registry, bystander):
        registered('r1')
        instance = registry.get('r1')
        instance.pid = bystander.pid
        instance.process_started = psutil.Process(bystander.pid).create_time()

        controller.stop('r1')
        assert not controller.is_running('r1')

        assert bystander.poll() is None
        assert instance.process_started is None

    def test_reused_pid_with_other_start_time_is_not_signalled(self, registered, controller,
                                                               registry, config):
        registered('r1')
        # Same directory as the listener, only the start time differs
        bystander = subprocess.Popen([sys.executable, '-c', 'import time; time.sleep(60)'],
                                     cwd=config.instance_install_dir('r1'), start_new_session=True)
        try:
            instance = registry.get('r1')
            instance.pid = bystander.pid
            instance.process_started = psutil.Process(bystander.pid).create_time() - 3600

            controller.stop('r1', graceful=False)

            assert bystander.poll() is None
        finally:
            bystander.kill()
            bystander.wait()


class TestRemove:
    """Tests for removal."""

    def test_remove(self, registered, controller, registry, github, config):
        registered('r1')

        assert controller.remove('r1', 'ghp_token') is True

        github.delete_runner.assert_called_once_with('org/repo', 'ghp_token', 42)
        with pytest.raises(NotFoundError):
            registry.get('r1')
        assert not (config.instance_install_dir('r1') / '.runner').exists()

    def test_remove_requires_stop(self, registered, controller, registry):
        registered('r1')
        controller.start('r1')
        with pytest.raises(InvalidStateError):
            controller.remove('r1', 'ghp_token')
        assert registry.get('r1').registration_state == RegistrationState.REGISTERED

    def test_remote_failure_keeps_registration(self, registered, controller, registry, github):
        registered('r1')
        github.delete_runner.side_effect = RemoteAPIError("connection reset")

        with pytest.raises(RemoteAPIError):
            controller.remove('r1', 'ghp_token')

        instance = registry.get('r1')
        assert instance.registration_state == RegistrationState.REGISTERED
        assert any('remote removal did not complete' in w for w in instance.warnings)
        github.delete_runner.assert_called_once()

    def test_forced_removal(self, registered, controller, registry, github):
        registered('r1')
        github.delete_runner.side_effect = RemoteAPIError("forbidden", status=403)

        assert controller.remove('r1', 'ghp_token', force=True) is False
        with pytest.raises(NotFoundError):
            registry.get('r1')

    def test_remove_without_token(self, registered, controller, registry):
        registered('r1')
        with pytest.raises(RemoteAPIError):
            controller.remove('r1', None)
        assert registry.get('r1').registration_state == RegistrationState.REGISTERED

    def test_already_absent_remotely(self, registered, controller, github):
        registered('r1')
        github.get_runner_by_name.side_effect = None
        github.get_runner_by_name.return_value = None

        assert controller.remove('r1', 'ghp_token') is True
        github.delete_runner.assert_not_called()

    def test_local_cleanup_failure_still_unregisters(self, registered, controller, registry):
        registered('r1')

        with patch('runner_keeper.worker.WorkerAgent.remove_local_configuration',
                   side_effect=PermissionError('read-only file system')):
            assert controller.remove('r1', 'ghp_token') is True

        with pytest.raises(NotFoundError):
            registry.get('r1')

    def test_remove_unregistered(self, controller, registry, github):
        controller.create_instance('r1', 'org/repo')
        assert controller.remove('r1', None) is True
        github.delete_runner.assert_not_called()
        assert registry.list() == []


class TestReconcile:
    """Tests for reconciliation against GitHub."""

    def test_remote_list_is_ground_truth(self, controller, registry, github):
        for name in ('r1', 'r2', 'r3'):
            controller.create_instance(name, 'org/repo')
        registry.get('r1').registration_state = RegistrationState.REGISTERED
        registry.get('r3').registration_state = RegistrationState.REGISTERING
        github.list_runners.return_value = [{'id': 5, 'name': 'r2'}, {'id': 6, 'name': 'r3'}]

        changes = controller.reconcile({'org/repo': 'ghp_token'})

        assert len(changes) == 3
        assert registry.get('r1').registration_state == RegistrationState.UNREGISTERED
        assert registry.get('r2').registration_state == RegistrationState.REGISTERED
        assert registry.get('r2').remote_id == 5
        assert registry.get('r3').registration_state == RegistrationState.REGISTERED
        github.list_runners.assert_called_once()

    def test_skips_repositories_without_token(self, controller, registry, github):
        controller.create_instance('r1', 'org/repo')
        registry.get('r1').registration_state = RegistrationState.REGISTERED

        assert controller.reconcile({}) == []
        assert registry.get('r1').registration_state == RegistrationState.REGISTERED
        github.list_runners.assert_not_called()

    def test_clears_dead_process(self, controller, registry):
        controller.create_instance('r1', 'org/repo')
        child = subprocess.Popen([sys.executable, '-c', 'pass'])
        child.wait()
        registry.get('r1').pid = child.pid

        changes = controller.reconcile({})

        assert changes == ['r1: recorded process is gone']
        assert registry.get('r1').pid is None
