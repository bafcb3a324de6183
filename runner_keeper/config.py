"""
Runner Configuration Module

Handles configuration loading from environment variables, .env files and an
optional YAML settings file.
"""

import os
from pathlib import Path
from typing import Dict, List, Optional

import yaml


def _as_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ('1', 'true', 'yes', 'on')


class RunnerConfig:
    """Configuration manager for runner-keeper settings"""

    def __init__(self, env_file: Optional[Path] = None, config_file: Optional[Path] = None):
        """
        Initialize configuration from environment, .env and YAML files

        Precedence: environment > YAML file > defaults. Values from the .env
        file only fill variables missing from the environment.

        Args:
            env_file: Path of the .env file (default: ./.env)
            config_file: YAML settings file (default: $RUNNER_KEEPER_CONFIG)
        """
        self.errors: List[str] = []
        self.load_env_file(env_file or Path('.env'))

        config_file = config_file or os.getenv('RUNNER_KEEPER_CONFIG')
        self.file_settings = self.load_config_file(Path(config_file)) if config_file else {}

        # GitHub configuration
        self.github_url = self._get('GITHUB_URL', 'https://github.com').rstrip('/')
        self.api_url = self._get('GITHUB_API_URL', 'https://api.github.com').rstrip('/')

        # Locations
        self.vault_dir = Path(self._get('RUNNER_VAULT_DIR', '~/.github-runner/config')).expanduser()
        self.state_dir = Path(self._get('RUNNER_STATE_DIR', '~/.github-runner/state')).expanduser()
        self.install_root = Path(self._get('RUNNER_INSTALL_ROOT', '~/.github-runner/runners')).expanduser()

        # Runner defaults
        self.labels = [l.strip() for l in self._get('RUNNER_LABELS', 'self-hosted,linux').split(',') if l.strip()]
        self.group = self._get('RUNNER_GROUP', 'Default')
        self.work_dir = self._get('RUNNER_WORK_DIR', '_work')
        self.ephemeral = _as_bool(self._get('RUNNER_EPHEMERAL', 'false'))
        self.replace_existing = _as_bool(self._get('RUNNER_REPLACE_EXISTING', 'false'))
        self.disable_auto_update = _as_bool(self._get('RUNNER_DISABLE_AUTO_UPDATE', 'false'))

        # Timeouts (seconds)
        self.api_timeout = self._get_number('GITHUB_API_TIMEOUT', 10)
        self.api_retries = int(self._get_number('GITHUB_API_RETRIES', 2))
        self.api_backoff = self._get_number('GITHUB_API_BACKOFF', 1.5)
        self.configure_timeout = self._get_number('RUNNER_CONFIGURE_TIMEOUT', 120)
        self.start_timeout = self._get_number('RUNNER_START_TIMEOUT', 60)
        self.stop_grace_period = self._get_number('RUNNER_STOP_GRACE_PERIOD', 30)
        self.stop_poll_interval = self._get_number('RUNNER_STOP_POLL_INTERVAL', 1)
        self.check_interval = self._get_number('RUNNER_CHECK_INTERVAL', 30)

        # Health thresholds (percent used)
        self.disk_soft_threshold = self._get_number('HEALTH_DISK_SOFT', 80)
        self.disk_hard_threshold = self._get_number('HEALTH_DISK_HARD', 90)
        self.memory_soft_threshold = self._get_number('HEALTH_MEMORY_SOFT', 80)
        self.memory_hard_threshold = self._get_number('HEALTH_MEMORY_HARD', 95)
        self.cpu_soft_threshold = self._get_number('HEALTH_CPU_SOFT', 80)
        self.process_memory_soft_threshold = self._get_number('HEALTH_PROCESS_MEMORY_SOFT', 50)
        self.log_tail_lines = int(self._get_number('HEALTH_LOG_LINES', 100))

        # Logging
        self.log_level = self._get('LOG_LEVEL', 'INFO').upper()
        log_file = self._get('LOG_FILE', '')
        self.log_file = Path(log_file).expanduser() if log_file else None

    def load_env_file(self, env_file: Path):
        """Load environment variables from .env file if it exists"""
        if env_file.exists():
            with open(env_file) as f:
                for line in f:
                    line = line.strip()
                    if line and not line.startswith('#') and '=' in line:
                        key, value = line.split('=', 1)
                        key = key.strip()
                        value = value.strip().strip('"').strip("'")
                        if key and value:
                            # Environment variables take precedence
                            if key not in os.environ:
                                os.environ[key] = value

    def load_config_file(self, config_file: Path) -> Dict:
        """
        Load settings from a YAML file

        Keys are the lower-case forms of the environment variable names,
        e.g. ``runner_start_timeout: 90``.

        Returns:
            Dictionary of settings keyed by upper-case variable name
        """
        if not config_file.exists():
            self.errors.append(f"Config file not found: {config_file}")
            return {}
        try:
            with open(config_file) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            self.errors.append(f"Invalid YAML in {config_file}: {e}")
            return {}
        if not isinstance(data, dict):
            self.errors.append(f"Config file {config_file} must contain a mapping")
            return {}
        return {str(k).upper(): v for k, v in data.items()}

    def _get(self, name: str, default: str) -> str:
        value = os.getenv(name)
        if value is None:
            value = self.file_settings.get(name)
        if value is None:
            return default
        if isinstance(value, list):
            return ','.join(str(v) for v in value)
        return str(value)

    def _get_number(self, name: str, default: float) -> float:
        raw = self._get(name, str(default))
        try:
            return float(raw)
        except ValueError:
            self.errors.append(f"Invalid {name}: {raw!r} (must be a number)")
            return float(default)

    def instance_install_dir(self, name: str) -> Path:
        return self.install_root / name

    def worker_log_path(self, name: str) -> Path:
        return self.state_dir / 'logs' / f'{name}.log'

    def validate(self) -> List[str]:
        """Validate configuration and return list of errors"""
        errors = list(self.errors)

        for name in ('api_timeout', 'configure_timeout', 'start_timeout',
                     'stop_poll_interval', 'check_interval'):
            if getattr(self, name) <= 0:
                errors.append(f"Invalid {name}: {getattr(self, name)} (must be > 0)")

        if self.stop_grace_period < 0:
            errors.append(f"Invalid stop_grace_period: {self.stop_grace_period} (must be >= 0)")

        if self.api_retries < 0:
            errors.append(f"Invalid api_retries: {self.api_retries} (must be >= 0)")

        if self.log_tail_lines <= 0:
            errors.append(f"Invalid HEALTH_LOG_LINES: {self.log_tail_lines} (must be > 0)")

        if self.disk_soft_threshold >= self.disk_hard_threshold:
            errors.append("HEALTH_DISK_SOFT must be lower than HEALTH_DISK_HARD")

        if self.memory_soft_threshold >= self.memory_hard_threshold:
            errors.append("HEALTH_MEMORY_SOFT must be lower than HEALTH_MEMORY_HARD")

        if self.log_level not in ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'):
            errors.append(f"Invalid LOG_LEVEL: {self.log_level}")

        return errors

    def thresholds(self) -> Dict[str, float]:
        return {
            'disk_soft': self.disk_soft_threshold,
            'disk_hard': self.disk_hard_threshold,
            'memory_soft': self.memory_soft_threshold,
            'memory_hard': self.memory_hard_threshold,
            'cpu_soft': self.cpu_soft_threshold,
            'process_memory_soft': self.process_memory_soft_threshold,
        }
