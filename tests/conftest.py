"""Shared fixtures for runner_keeper tests."""

import os
import stat
import sys
import textwrap
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from argon2 import PasswordHasher

from runner_keeper.config import RunnerConfig
from runner_keeper.registry import RunnerRegistry


CONFIGURE_OK = """
import pathlib, sys
args = sys.argv[1:]
if '--token' not in args or '--name' not in args:
    print('missing required arguments', file=sys.stderr)
    sys.exit(2)
pathlib.Path('.runner').write_text('{}')
pathlib.Path('.credentials').write_text('{}')
print('Settings Saved.')
"""

CONFIGURE_FAIL = """
import sys
print('Http response code: NotFound from POST', file=sys.stderr)
sys.exit(1)
"""

RUN_OK = """
import time
print('Connecting to GitHub', flush=True)
print('Listening for Jobs', flush=True)
while True:
    time.sleep(0.1)
"""

RUN_SILENT = """
import time
while True:
    time.sleep(0.1)
"""

RUN_IGNORES_SIGTERM = """
import signal, time
signal.signal(signal.SIGTERM, signal.SIG_IGN)
print('Listening for Jobs', flush=True)
while True:
    time.sleep(0.1)
"""

RUN_EXITS = """
import sys
print('Session conflict', flush=True)
sys.exit(5)
"""


def write_script(path: Path, body: str):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(f"#!{sys.executable}\n" + textwrap.dedent(body))
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)


@pytest.fixture
def config(tmp_path, monkeypatch):
    """RunnerConfig pointing every location into tmp_path, with short timeouts"""
    monkeypatch.chdir(tmp_path)
    for name in list(os.environ):
        if name.startswith(('RUNNER_', 'HEALTH_', 'GITHUB_')) or name in ('LOG_LEVEL', 'LOG_FILE'):
            monkeypatch.delenv(name, raising=False)

    monkeypatch.setenv('RUNNER_VAULT_DIR', str(tmp_path / 'vault'))
    monkeypatch.setenv('RUNNER_STATE_DIR', str(tmp_path / 'state'))
    monkeypatch.setenv('RUNNER_INSTALL_ROOT', str(tmp_path / 'runners'))
    monkeypatch.setenv('RUNNER_CONFIGURE_TIMEOUT', '20')
    monkeypatch.setenv('RUNNER_START_TIMEOUT', '10')
    monkeypatch.setenv('RUNNER_STOP_GRACE_PERIOD', '5')
    monkeypatch.setenv('RUNNER_STOP_POLL_INTERVAL', '0.05')
    monkeypatch.setenv('GITHUB_API_BACKOFF', '1')
    return RunnerConfig()


@pytest.fixture
def hasher():
    """Argon2 hasher with minimal cost so vault tests stay fast"""
    return PasswordHasher(time_cost=1, memory_cost=8, parallelism=1)


@pytest.fixture
def registry(config):
    return RunnerRegistry(config.state_dir / 'registry.yaml')


@pytest.fixture
def github():
    """GitHubAPI stand-in that knows one registered runner per name it was asked about"""
    api = MagicMock()
    api.get_registration_token.return_value = 'AREGTOKEN'
    api.get_runner_by_name.side_effect = lambda repo, token, name, cancel=None: {
        'id': 42, 'name': name, 'status': 'online'}
    api.list_runners.return_value = []
    api.check_reachability.return_value = True
    api.check_repository_access.return_value = {'full_name': 'org/repo'}
    return api


@pytest.fixture
def agent_dir(config):
    """Factory installing fake config.sh/run.sh for an instance name"""

    def install(name: str, run: str = RUN_OK, configure: str = CONFIGURE_OK) -> Path:
        path = config.instance_install_dir(name)
        write_script(path / 'config.sh', configure)
        write_script(path / 'run.sh', run)
        return path

    return install
