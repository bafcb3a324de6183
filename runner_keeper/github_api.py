"""
GitHub API Module

Handles communication with the GitHub API for runner registration,
listing and removal.
"""

import json
import logging
import threading
import time
import urllib.error
import urllib.request
from typing import Dict, List, Optional

from .errors import CancelledError, RemoteAPIError


class GitHubAPI:
    """GitHub API client for runner management"""

    USER_AGENT = 'runner-keeper'

    def __init__(self, config, logger: Optional[logging.Logger] = None):
        """
        Initialize GitHub API client

        Args:
            config: RunnerConfig instance
            logger: Logger instance
        """
        self.config = config
        self.logger = logger or logging.getLogger(__name__)

    def _make_request(self, path: str, token: Optional[str] = None, method: str = 'GET',
                      subject: Optional[str] = None) -> Dict:
        """
        Make a single request to the GitHub API

        Args:
            path: Path below the API root (e.g., '/repos/org/repo/actions/runners')
            token: Bearer token; omitted for unauthenticated calls
            method: HTTP method (GET, POST, DELETE)
            subject: Repository the call concerns, for error messages

        Returns:
            Decoded JSON response (empty dict for empty bodies)

        Raises:
            RemoteAPIError: On HTTP errors (status set) or network failures (status None)
        """
        url = f"{self.config.api_url}{path}"

        headers = {
            'Accept': 'application/vnd.github+json',
            'X-GitHub-Api-Version': '2022-11-28',
            'User-Agent': self.USER_AGENT,
        }
        if token:
            headers['Authorization'] = f'Bearer {token}'

        req = urllib.request.Request(url, headers=headers, method=method)

        try:
            with urllib.request.urlopen(req, timeout=self.config.api_timeout) as response:
                raw = response.read().decode('utf-8')
        except urllib.error.HTTPError as e:
            raise RemoteAPIError(self._describe_http_error(e, method, path), subject=subject,
                                 status=e.code)
        except (urllib.error.URLError, TimeoutError, ConnectionError) as e:
            reason = getattr(e, 'reason', e)
            raise RemoteAPIError(f"{method} {path} failed: network error: {reason}", subject=subject)

        if not raw.strip():
            return {}
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            raise RemoteAPIError(f"{method} {path} returned invalid JSON: {e}", subject=subject,
                                 status=502)

    @staticmethod
    def _describe_http_error(error: urllib.error.HTTPError, method: str, path: str) -> str:
        detail = ''
        try:
            payload = json.loads(error.read().decode('utf-8') or '{}')
            detail = payload.get('message', '') if isinstance(payload, dict) else ''
        except (ValueError, OSError, AttributeError):
            pass

        if error.code == 401:
            summary = "unauthorized (invalid or expired token)"
        elif error.code == 403:
            summary = "forbidden (insufficient permission)"
        elif error.code == 404:
            summary = "not found (or not visible to this token)"
        else:
            summary = f"HTTP {error.code} {error.reason}"
        message = f"{method} {path} failed: {summary}"
        return f"{message}: {detail}" if detail else message

    def _request_with_retry(self, path: str, token: Optional[str] = None, method: str = 'GET',
                            retries: Optional[int] = None, subject: Optional[str] = None,
                            cancel: Optional[threading.Event] = None) -> Dict:
        """
        Make a request, retrying network and 5xx failures with backoff

        4xx responses are never retried. The cancellation event is checked
        before every attempt and while backing off; an attempt in flight is
        allowed to complete.
        """
        if retries is None:
            retries = self.config.api_retries
        delay = 1.0

        for attempt in range(retries + 1):
            if cancel is not None and cancel.is_set():
                raise CancelledError(f"{method} {path} cancelled", subject=subject)
            try:
                return self._make_request(path, token=token, method=method, subject=subject)
            except RemoteAPIError as e:
                if not e.retryable or attempt >= retries:
                    raise
                self.logger.warning(f"{e} (attempt {attempt + 1}/{retries + 1}), retrying in {delay:.1f}s")
                if cancel is not None:
                    if cancel.wait(delay):
                        raise CancelledError(f"{method} {path} cancelled", subject=subject)
                else:
                    time.sleep(delay)
                delay *= self.config.api_backoff

        raise AssertionError("unreachable")

    def get_registration_token(self, repository: str, token: str,
                               cancel: Optional[threading.Event] = None) -> str:
        """
        Get a short-lived registration token from GitHub

        Ambiguous failures are retried at most once.

        Returns:
            Registration token string
        """
        self.logger.info(f"Obtaining registration token for {repository}...")
        response = self._request_with_retry(
            f'/repos/{repository}/actions/runners/registration-token',
            token=token, method='POST', retries=min(1, self.config.api_retries),
            subject=repository, cancel=cancel)
        reg_token = response.get('token')
        if not reg_token:
            raise RemoteAPIError("registration token missing from response", subject=repository,
                                 status=502)
        self.logger.info(f"Registration token obtained (expires: {response.get('expires_at')})")
        return reg_token

    def list_runners(self, repository: str, token: str,
                     cancel: Optional[threading.Event] = None) -> List[Dict]:
        """
        List all runners registered for the repository

        Returns:
            List of runner dictionaries ({id, name, status, busy, labels})
        """
        runners: List[Dict] = []
        page = 1
        while True:
            response = self._request_with_retry(
                f'/repos/{repository}/actions/runners?per_page=100&page={page}',
                token=token, subject=repository, cancel=cancel)
            batch = response.get('runners', [])
            runners.extend(batch)
            if len(batch) < 100 or len(runners) >= response.get('total_count', 0):
                return runners
            page += 1

    def get_runner_by_name(self, repository: str, token: str, name: str,
                           cancel: Optional[threading.Event] = None) -> Optional[Dict]:
        """
        Find a runner by name

        Returns:
            Runner dictionary if found, None otherwise
        """
        for runner in self.list_runners(repository, token, cancel=cancel):
            if runner.get('name') == name:
                return runner
        return None

    def delete_runner(self, repository: str, token: str, runner_id: int):
        """
        Remove a runner registration by id

        Destructive: never retried, so an ambiguous failure is surfaced.
        """
        self.logger.info(f"Deleting runner {runner_id} from {repository}...")
        self._request_with_retry(
            f'/repos/{repository}/actions/runners/{runner_id}',
            token=token, method='DELETE', retries=0, subject=repository)

    def check_reachability(self) -> bool:
        """
        Probe the unauthenticated API root

        Returns:
            True if GitHub answered, False on network failure or 5xx
        """
        try:
            self._make_request('/')
            return True
        except RemoteAPIError as e:
            self.logger.debug(f"GitHub reachability probe failed: {e}")
            return e.status is not None and e.status < 500

    def check_repository_access(self, repository: str, token: str) -> Dict:
        """
        Verify a token can see a repository

        Returns:
            Repository dictionary from the API

        Raises:
            RemoteAPIError: 401/403/404 or network failure
        """
        return self._make_request(f'/repos/{repository}', token=token, subject=repository)
