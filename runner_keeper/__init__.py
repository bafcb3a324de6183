"""
Runner Keeper Package

Encrypted GitHub token vault and lifecycle management for GitHub Actions
self-hosted runners.
"""

__version__ = '1.0.0'

from .config import RunnerConfig
from .errors import RunnerKeeperError
from .github_api import GitHubAPI
from .health import Finding, HealthMonitor, HealthReport, Severity
from .lifecycle import LifecycleController
from .registry import HealthStatus, RegistrationState, RunnerInstance, RunnerRegistry
from .vault import CredentialRecord, CredentialStore, PasswordVerifier
from .worker import WorkerAgent, WorkerHandle

__all__ = [
    'RunnerConfig',
    'RunnerKeeperError',
    'GitHubAPI',
    'Finding',
    'HealthMonitor',
    'HealthReport',
    'Severity',
    'LifecycleController',
    'HealthStatus',
    'RegistrationState',
    'RunnerInstance',
    'RunnerRegistry',
    'CredentialRecord',
    'CredentialStore',
    'PasswordVerifier',
    'WorkerAgent',
    'WorkerHandle',
]
