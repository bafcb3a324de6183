#!/usr/bin/env python3
"""
CLI Module

Command-line interface for the credential vault and runner lifecycle.
"""

import argparse
import getpass
import json
import os
import signal
import sys
import threading
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from .config import RunnerConfig
from .errors import (EXIT_CANCELLED, EXIT_FAILURE, EXIT_OK, EXIT_USAGE, AuthError, CancelledError,
                     NotFoundError, RemoteAPIError, RunnerKeeperError)
from .github_api import GitHubAPI
from .health import HealthMonitor, HealthReport
from .lifecycle import LifecycleController
from .log import setup_logging
from .registry import HealthStatus, RunnerRegistry, validate_repository
from .vault import CredentialStore


PASSWORD_ENV = 'RUNNER_VAULT_PASSWORD'
TOKEN_ENV = 'GITHUB_TOKEN'


class Context:
    """Components shared by the CLI commands"""

    def __init__(self, config: RunnerConfig):
        self.config = config
        self.logger = setup_logging(config)
        self.store = CredentialStore(config.vault_dir, self.logger)
        self.registry = RunnerRegistry(config.state_dir / 'registry.yaml', self.logger)
        self.github = GitHubAPI(config, self.logger)
        self.controller = LifecycleController(config, self.registry, self.github, self.logger)
        self.monitor = HealthMonitor(config, self.registry, self.github, self.logger)
        self.cancel = threading.Event()
        self._password: Optional[str] = None

    def password(self, confirm: bool = False) -> str:
        """Vault password from the environment or a prompt (asked once per run)"""
        if self._password is not None:
            return self._password
        password = os.getenv(PASSWORD_ENV)
        if not password:
            password = getpass.getpass("Vault password: ")
            if confirm:
                again = getpass.getpass("Confirm vault password: ")
                if password != again:
                    raise AuthError("passwords do not match", remediation="enter the same password twice")
        if not password:
            raise AuthError("an empty password is not allowed")
        self._password = password
        return password

    def token_for(self, repository: str) -> str:
        """GitHub token: $GITHUB_TOKEN first, then the vault"""
        token = os.getenv(TOKEN_ENV)
        if token:
            return token
        return self.store.load(repository, self.password())

    def tokens_for(self, repositories: Iterable[str]) -> Dict[str, str]:
        """Tokens for several repositories; repositories without one are left out"""
        repositories = sorted(set(repositories))
        env_token = os.getenv(TOKEN_ENV)
        if env_token:
            return {repo: env_token for repo in repositories}

        saved = set(self.store.repositories())
        tokens = {}
        for repo in repositories:
            if repo in saved:
                tokens[repo] = self.store.load(repo, self.password())
        return tokens

    def optional_token(self, repository: str) -> Optional[str]:
        try:
            return self.token_for(repository)
        except NotFoundError:
            self.logger.warning(f"No saved token for {repository}")
            return None


class _ShutdownSignals:
    """Translate SIGINT/SIGTERM into the cancellation event while active"""

    def __init__(self, ctx: Context):
        self.ctx = ctx
        self._original = {}

    def _handle(self, signum, frame):
        self.ctx.logger.info(f"Received {signal.Signals(signum).name}, initiating shutdown...")
        self.ctx.cancel.set()

    def __enter__(self):
        for sig in (signal.SIGINT, signal.SIGTERM):
            self._original[sig] = signal.signal(sig, self._handle)
        return self

    def __exit__(self, exc_type, exc, tb):
        for sig, handler in self._original.items():
            signal.signal(sig, handler)
        return False


# Token commands

def cmd_token_save(ctx: Context, args) -> int:
    repository = validate_repository(args.repository)
    if args.token_stdin:
        token = sys.stdin.readline().strip()
    else:
        token = os.getenv(TOKEN_ENV) or getpass.getpass(f"GitHub token for {repository}: ").strip()
    if not token:
        raise ValueError("token must not be empty")
    ctx.store.save(repository, token, ctx.password(confirm=True))
    print(f"Token saved for {repository}")
    return EXIT_OK


def cmd_token_load(ctx: Context, args) -> int:
    # Token only on stdout so command substitution stays clean
    print(ctx.store.load(args.repository, ctx.password()))
    return EXIT_OK


def cmd_token_list(ctx: Context, args) -> int:
    if not ctx.store.vault_dir.exists():
        print("No token directory found")
        return EXIT_OK
    repositories = ctx.store.list(ctx.password()) if ctx.store.repositories() else []
    if not repositories:
        print("No saved tokens found")
        return EXIT_OK
    for repository in repositories:
        print(repository)
    return EXIT_OK


def cmd_token_clear(ctx: Context, args) -> int:
    if args.all:
        ctx.store.clear_all()
        print("All saved tokens cleared")
        return EXIT_OK
    if not args.repository:
        raise ValueError("Repository required (or use --all)")
    if ctx.store.clear_one(args.repository):
        print(f"Token cleared for {args.repository}")
        return EXIT_OK
    raise NotFoundError("no saved token", subject=args.repository)


def cmd_token_test(ctx: Context, args) -> int:
    repository = validate_repository(args.repository)
    token = ctx.token_for(repository)
    try:
        repo = ctx.github.check_repository_access(repository, token)
    except RemoteAPIError as e:
        print(f"Token check failed for {repository}: {e}")
        raise
    permissions = repo.get('permissions') or {}
    admin = permissions.get('admin')
    print(f"Token can access {repo.get('full_name', repository)}")
    if admin is False:
        print("Warning: token lacks admin permission; runner registration will fail")
    return EXIT_OK


# Runner commands

def cmd_runner_add(ctx: Context, args) -> int:
    labels = args.labels.split(',') if args.labels else None
    instance = ctx.controller.create_instance(args.name, args.repo, labels, args.install_dir)
    print(f"Added runner {instance.name} for {instance.repository}")
    return EXIT_OK


def cmd_runner_list(ctx: Context, args) -> int:
    instances = ctx.registry.list()
    if not instances:
        print("No runner instances")
    for instance in instances:
        print(f"{instance.name}\t{instance.repository}\t{instance.registration_state.value}")
    return EXIT_OK


def cmd_runner_register(ctx: Context, args) -> int:
    instance = ctx.registry.get(args.name)
    ctx.controller.register(args.name, ctx.token_for(instance.repository), cancel=ctx.cancel)
    print(f"Runner {args.name} registered")
    return EXIT_OK


def cmd_runner_start(ctx: Context, args) -> int:
    for name in args.names:
        instance = ctx.controller.start(name, cancel=ctx.cancel)
        print(f"Runner {name} running (PID: {instance.pid})")
    return EXIT_OK


def cmd_runner_stop(ctx: Context, args) -> int:
    names = args.names or [i.name for i in ctx.registry.list()]
    with _ShutdownSignals(ctx):
        for name in names:
            ctx.controller.stop(name, graceful=not args.force, cancel=ctx.cancel)
            print(f"Runner {name} stopped")
    return EXIT_OK


def cmd_runner_remove(ctx: Context, args) -> int:
    instance = ctx.registry.get(args.name)
    try:
        token = ctx.token_for(instance.repository)
    except NotFoundError:
        if not args.force:
            raise
        token = None
    if ctx.controller.remove(args.name, token, force=args.force, cancel=ctx.cancel):
        print(f"Runner {args.name} removed")
    else:
        print(f"Runner {args.name} removed locally; delete it from the repository settings on GitHub")
    return EXIT_OK


def cmd_runner_reconcile(ctx: Context, args) -> int:
    tokens = ctx.tokens_for(i.repository for i in ctx.registry.list())
    changes = ctx.controller.reconcile(tokens)
    if not changes:
        print("Local state matches GitHub")
    for change in changes:
        print(change)
    return EXIT_OK


def _remote_runners(ctx: Context, repositories: Iterable[str]) -> Dict[str, Optional[Dict[str, Dict]]]:
    """GitHub's runners per repository by name; None where the list is unavailable"""
    repositories = sorted(set(repositories))
    tokens = ctx.tokens_for(repositories)
    remote: Dict[str, Optional[Dict[str, Dict]]] = {}
    for repository in repositories:
        token = tokens.get(repository)
        if not token:
            ctx.logger.warning(f"No token for {repository}; remote status unavailable")
            remote[repository] = None
            continue
        try:
            runners = ctx.github.list_runners(repository, token, cancel=ctx.cancel)
        except RemoteAPIError as e:
            ctx.logger.warning(f"Cannot list runners for {repository}: {e}")
            remote[repository] = None
            continue
        remote[repository] = {r.get('name'): r for r in runners}
    return remote


def _status_document(ctx: Context, include_remote: bool = False) -> List[Dict]:
    instances = ctx.registry.list()
    remote = _remote_runners(ctx, (i.repository for i in instances)) if include_remote else {}

    runners = []
    for instance in instances:
        entry = instance.to_dict()
        entry['running'] = ctx.controller.is_running(instance.name)
        if instance.started_at and entry['running']:
            entry['uptime'] = str(datetime.now() - instance.started_at).split('.')[0]
        if include_remote:
            known = remote.get(instance.repository)
            if known is None:
                entry['remote_status'] = 'unavailable'
                entry['remote_busy'] = None
            else:
                runner = known.get(instance.name)
                entry['remote_status'] = runner.get('status', 'unknown') if runner else 'absent'
                entry['remote_busy'] = bool(runner.get('busy')) if runner else None
        runners.append(entry)
    return runners


def cmd_runner_status(ctx: Context, args) -> int:
    runners = _status_document(ctx, include_remote=args.remote)
    if args.json:
        print(json.dumps({'runners': runners}, indent=2))
        return EXIT_OK

    print("\n" + "=" * 70)
    print("GitHub Actions Runner Keeper - Status")
    print("=" * 70)
    print(f"\nRunner Count: {len(runners)}")
    print("\nRunners:")
    print("-" * 70)
    for runner in runners:
        print(f"\n  Name: {runner['name']}")
        print(f"  Repository: {runner['repository']}")
        print(f"  Registration: {runner['registration_state']}")
        print(f"  Running: {runner['running']}")
        print(f"  PID: {runner.get('pid') or 'N/A'}")
        print(f"  Remote ID: {runner.get('remote_id') or 'N/A'}")
        if 'remote_status' in runner:
            busy = ' (busy)' if runner['remote_busy'] else ''
            print(f"  Remote Status: {runner['remote_status']}{busy}")
        print(f"  Uptime: {runner.get('uptime', 'N/A')}")
        print(f"  Health: {runner['last_health']} (checked: {runner.get('last_checked') or 'never'})")
        for warning in runner['warnings']:
            print(f"  Warning: {warning}")
    print("\n" + "=" * 70 + "\n")
    return EXIT_OK


def _print_reports(reports: Dict[str, HealthReport], as_json: bool):
    if as_json:
        print(json.dumps({'reports': [r.to_dict() for r in reports.values()]}, indent=2))
        return
    for report in reports.values():
        print(f"{report.name}: {report.status.value.upper()}")
        for finding in report.findings:
            print(f"  {finding}")


def cmd_runner_health(ctx: Context, args) -> int:
    if args.thresholds:
        print("Health Check Thresholds:")
        for key, value in ctx.config.thresholds().items():
            print(f"  {key}: {value:g}%")
        print(f"  api_timeout: {ctx.config.api_timeout:g}s")
        print(f"  log_analysis: last {ctx.config.log_tail_lines} lines")
        return EXIT_OK

    if args.name:
        instance = ctx.registry.get(args.name)
        report = ctx.monitor.check(args.name, ctx.optional_token(instance.repository))
        reports = {args.name: report}
    else:
        tokens = ctx.tokens_for(i.repository for i in ctx.registry.list())
        reports = ctx.monitor.check_all(tokens)

    _print_reports(reports, args.json)
    unhealthy = any(r.status == HealthStatus.UNHEALTHY for r in reports.values())
    return EXIT_FAILURE if unhealthy else EXIT_OK


def cmd_runner_monitor(ctx: Context, args) -> int:
    if not ctx.registry.list():
        print("Error: No runners found. Add and register runners first.", file=sys.stderr)
        return EXIT_FAILURE
    tokens = ctx.tokens_for(i.repository for i in ctx.registry.list())
    with _ShutdownSignals(ctx):
        ctx.monitor.run(ctx.cancel, tokens, interval=args.interval,
                        on_sweep=lambda reports: _print_reports(reports, args.json))
    return EXIT_OK


def cmd_runner_run(ctx: Context, args) -> int:
    """All-in-one: register, start, monitor until signalled, then stop"""
    names = args.names
    tokens = {}
    for name in names:
        repository = ctx.registry.get(name).repository
        if repository not in tokens:
            tokens[repository] = ctx.token_for(repository)

    with _ShutdownSignals(ctx):
        try:
            for name in names:
                ctx.controller.register(name, tokens[ctx.registry.get(name).repository],
                                        cancel=ctx.cancel)
                ctx.controller.start(name, cancel=ctx.cancel)
            ctx.monitor.run(ctx.cancel, tokens, interval=args.interval)
        except CancelledError:
            ctx.logger.info("Startup interrupted by shutdown request")
        finally:
            ctx.controller.stop_all(graceful=True)

    if args.remove_on_exit:
        for name in names:
            ctx.controller.remove(name, tokens[ctx.registry.get(name).repository])
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='runner-keeper',
        description='GitHub Actions self-hosted runner keeper: token vault and runner lifecycle',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Token management
  runner-keeper token save org/repo
  runner-keeper token list
  runner-keeper token test org/repo

  # Runner lifecycle
  runner-keeper runner add r1 --repo org/repo --labels self-hosted,linux,x64
  runner-keeper runner register r1
  runner-keeper runner start r1
  runner-keeper runner status --remote
  runner-keeper runner health
  runner-keeper runner stop r1
  runner-keeper runner remove r1

  # Register, start and monitor until Ctrl-C
  runner-keeper runner run r1 r2

Exit codes: 0 success, 1 failure, 2 usage, 3 wrong password, 4 not found,
5 GitHub API/network, 6 conflict, 7 corrupt vault, 8 timeout, 9 worker failure.
        """
    )
    subparsers = parser.add_subparsers(dest='group', help='Command group')

    # Token commands
    token_parser = subparsers.add_parser('token', help='Manage saved GitHub tokens')
    token_sub = token_parser.add_subparsers(dest='command')

    p = token_sub.add_parser('save', help='Encrypt and save a token for a repository')
    p.add_argument('repository', help='Repository (owner/repo)')
    p.add_argument('--token-stdin', action='store_true', help='Read the token from stdin')
    p.set_defaults(func=cmd_token_save)

    p = token_sub.add_parser('load', help='Print the saved token for a repository')
    p.add_argument('repository')
    p.set_defaults(func=cmd_token_load)

    p = token_sub.add_parser('list', help='List repositories with saved tokens')
    p.set_defaults(func=cmd_token_list)

    p = token_sub.add_parser('clear', help='Delete saved tokens')
    p.add_argument('repository', nargs='?')
    p.add_argument('--all', action='store_true', help='Delete all tokens and the password verifier')
    p.set_defaults(func=cmd_token_clear)

    p = token_sub.add_parser('test', help='Check a token against the GitHub API')
    p.add_argument('repository')
    p.set_defaults(func=cmd_token_test)

    # Runner commands
    runner_parser = subparsers.add_parser('runner', help='Manage runner instances')
    runner_sub = runner_parser.add_subparsers(dest='command')

    p = runner_sub.add_parser('add', help='Add a runner instance')
    p.add_argument('name')
    p.add_argument('--repo', required=True, help='Repository (owner/repo)')
    p.add_argument('--labels', help='Runner labels (comma-separated)')
    p.add_argument('--install-dir', help='Runner agent directory (default: <install root>/<name>)')
    p.set_defaults(func=cmd_runner_add)

    p = runner_sub.add_parser('list', help='List runner instances')
    p.set_defaults(func=cmd_runner_list)

    p = runner_sub.add_parser('register', help='Register a runner with GitHub')
    p.add_argument('name')
    p.set_defaults(func=cmd_runner_register)

    p = runner_sub.add_parser('start', help='Start runner listener(s)')
    p.add_argument('names', nargs='+')
    p.set_defaults(func=cmd_runner_start)

    p = runner_sub.add_parser('stop', help='Stop runner listener(s) (default: all)')
    p.add_argument('names', nargs='*')
    p.add_argument('--force', action='store_true', help='Kill immediately without a grace period')
    p.set_defaults(func=cmd_runner_stop)

    p = runner_sub.add_parser('remove', help='Unregister a runner and forget it')
    p.add_argument('name')
    p.add_argument('--force', action='store_true',
                   help='Remove locally even if GitHub cannot be updated')
    p.set_defaults(func=cmd_runner_remove)

    p = runner_sub.add_parser('status', help='Show runner status')
    p.add_argument('--json', action='store_true')
    p.add_argument('--remote', action='store_true', help="Include GitHub's view of each runner")
    p.set_defaults(func=cmd_runner_status)

    p = runner_sub.add_parser('health', help='Run health checks')
    p.add_argument('name', nargs='?')
    p.add_argument('--json', action='store_true')
    p.add_argument('--thresholds', action='store_true', help='Show health check thresholds')
    p.set_defaults(func=cmd_runner_health)

    p = runner_sub.add_parser('reconcile', help='Align local state with GitHub')
    p.set_defaults(func=cmd_runner_reconcile)

    p = runner_sub.add_parser('monitor', help='Run health checks until interrupted')
    p.add_argument('--interval', type=float, help='Seconds between sweeps')
    p.add_argument('--json', action='store_true')
    p.set_defaults(func=cmd_runner_monitor)

    p = runner_sub.add_parser('run', help='Register, start and monitor runners until interrupted')
    p.add_argument('names', nargs='+')
    p.add_argument('--interval', type=float, help='Seconds between health sweeps')
    p.add_argument('--remove-on-exit', action='store_true', help='Unregister runners on shutdown')
    p.set_defaults(func=cmd_runner_run)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for CLI"""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not getattr(args, 'func', None):
        parser.print_help()
        return EXIT_USAGE

    config = RunnerConfig()
    errors = config.validate()
    if errors:
        print("Configuration errors:", file=sys.stderr)
        for error in errors:
            print(f"  - {error}", file=sys.stderr)
        return EXIT_USAGE

    ctx = None
    try:
        ctx = Context(config)
        return args.func(ctx, args)
    except RunnerKeeperError as e:
        print(f"error: {e}", file=sys.stderr)
        if e.remediation:
            print(f"hint: {e.remediation}", file=sys.stderr)
        return e.exit_code
    except ValueError as e:
        print(f"error: {e}", file=sys.stderr)
        return EXIT_USAGE
    except KeyboardInterrupt:
        print("\nInterrupted by user", file=sys.stderr)
        return EXIT_CANCELLED
    except Exception as e:
        if ctx is not None:
            ctx.logger.error(f"Fatal error: {e}", exc_info=True)
        else:
            print(f"error: {e}", file=sys.stderr)
        return EXIT_FAILURE


if __name__ == '__main__':
    sys.exit(main())
