"""Executor that drives the wrangler CLI and probes deployed workers over HTTP."""

from __future__ import annotations

import json
import logging
import os
import re
import shlex
import subprocess
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import requests

from ..config import ExecutorConfig
from .base import DeploymentExecutor, ExecutorOperation, ExecutorResult
from .classifier import classify_error, is_retryable

logger = logging.getLogger(__name__)

_DATABASE_ID_PATTERNS = (
    re.compile(r'database_id\s*=\s*"([^"]+)"'),
    re.compile(r'"database_id"\s*:\s*"([^"]+)"'),
)
_URL_PATTERN = re.compile(r"https://[^\s]+")


@dataclass
class CommandResult:
    """Result of executing one wrangler command."""
    command: str
    stdout: str
    stderr: str
    exit_status: int
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_status == 0


class WranglerExecutor(DeploymentExecutor):
    """
    Deployment executor backed by ``npx wrangler``.

    Every command runs in ``service_path`` with the caller-supplied timeout.
    A timeout is reported as a retryable failure; other failures are
    classified from stderr.
    """

    def __init__(self, config: ExecutorConfig) -> None:
        self.config = config
        self.base_command = shlex.split(config.wrangler_command)
        self._handlers: Dict[ExecutorOperation, Callable[..., ExecutorResult]] = {
            ExecutorOperation.CHECK_DATABASE_EXISTS: self._check_database_exists,
            ExecutorOperation.CREATE_DATABASE: self._create_database,
            ExecutorOperation.APPLY_MIGRATIONS: self._apply_migrations,
            ExecutorOperation.SET_SECRET: self._set_secret,
            ExecutorOperation.DEPLOY_ARTIFACT: self._deploy_artifact,
            ExecutorOperation.HEALTH_CHECK: self._health_check,
            ExecutorOperation.DELETE_DATABASE: self._delete_database,
            ExecutorOperation.DELETE_SECRET: self._delete_secret,
            ExecutorOperation.ROLLBACK_DEPLOYMENT: self._rollback_deployment,
        }

    def execute(
        self,
        operation: ExecutorOperation,
        domain: str,
        environment: str,
        params: Dict[str, Any],
        timeout: Optional[float] = None,
    ) -> ExecutorResult:
        handler = self._handlers.get(operation)
        if handler is None:
            return ExecutorResult.fail(f"Unsupported operation: {operation}")
        logger.debug(f"{operation.value} for {domain} ({environment})")
        return handler(domain, environment, params, timeout)

    # ------------------------------------------------------------------
    # Database operations
    # ------------------------------------------------------------------

    def _check_database_exists(self, domain, environment, params, timeout) -> ExecutorResult:
        name = params["database_name"]
        result = self._run(["d1", "list", "--json"], timeout)
        if not result.ok:
            return self._failure(result)

        try:
            databases = json.loads(result.stdout or "[]")
        except json.JSONDecodeError:
            # 旧版本 wrangler 只输出表格
            exists = listing_has_database(result.stdout, name)
            return ExecutorResult.ok(result.stdout, exists=exists, database_id=None)

        if not isinstance(databases, list):
            return ExecutorResult.fail(
                f"Unexpected d1 list output: expected a JSON array, got {type(databases).__name__}",
                output=result.stdout,
            )
        for entry in databases:
            if isinstance(entry, dict) and entry.get("name") == name:
                return ExecutorResult.ok(
                    result.stdout, exists=True, database_id=entry.get("uuid") or entry.get("id")
                )
        return ExecutorResult.ok(result.stdout, exists=False, database_id=None)

    def _create_database(self, domain, environment, params, timeout) -> ExecutorResult:
        name = params["database_name"]
        result = self._run(["d1", "create", name], timeout)
        if not result.ok:
            return self._failure(result)

        database_id = parse_database_id(result.stdout)
        if not database_id:
            return ExecutorResult.fail(
                "Could not extract database ID from creation output", output=result.stdout
            )
        return ExecutorResult.ok(result.stdout, database_id=database_id)

    def _apply_migrations(self, domain, environment, params, timeout) -> ExecutorResult:
        name = params["database_name"]
        result = self._run(
            ["d1", "migrations", "apply", name, "--env", environment, "--remote"],
            timeout,
            stdin="y\n",
        )
        if not result.ok:
            return self._failure(result)
        return ExecutorResult.ok(result.stdout)

    def _delete_database(self, domain, environment, params, timeout) -> ExecutorResult:
        name = params["database_name"]
        result = self._run(["d1", "delete", name, "--skip-confirmation"], timeout)
        if not result.ok:
            return self._failure(result)
        return ExecutorResult.ok(result.stdout)

    # ------------------------------------------------------------------
    # Secret operations
    # ------------------------------------------------------------------

    def _set_secret(self, domain, environment, params, timeout) -> ExecutorResult:
        # 密钥值通过 stdin 传入，不出现在命令行里
        result = self._run(
            ["secret", "put", params["name"], "--env", environment] + _worker_args(params),
            timeout,
            stdin=params["value"],
        )
        if not result.ok:
            return self._failure(result)
        return ExecutorResult.ok(result.stdout)

    def _delete_secret(self, domain, environment, params, timeout) -> ExecutorResult:
        result = self._run(
            ["secret", "delete", params["name"], "--env", environment] + _worker_args(params),
            timeout,
            stdin="y\n",
        )
        if not result.ok:
            return self._failure(result)
        return ExecutorResult.ok(result.stdout)

    # ------------------------------------------------------------------
    # Deployment operations
    # ------------------------------------------------------------------

    def _deploy_artifact(self, domain, environment, params, timeout) -> ExecutorResult:
        result = self._run(["deploy", "--env", environment] + _worker_args(params), timeout)
        if not result.ok:
            return self._failure(result)

        url = parse_worker_url(result.stdout)
        return ExecutorResult.ok(result.stdout, url=url)

    def _rollback_deployment(self, domain, environment, params, timeout) -> ExecutorResult:
        message = params.get("message") or f"edge-deployer rollback for {domain}"
        result = self._run(
            ["rollback", "--env", environment, "--message", message] + _worker_args(params),
            timeout,
            stdin="y\n",
        )
        if not result.ok:
            return self._failure(result)
        return ExecutorResult.ok(result.stdout)

    def _health_check(self, domain, environment, params, timeout) -> ExecutorResult:
        url = params.get("url") or f"https://{domain}"
        health_url = f"{url.rstrip('/')}/health"
        try:
            response = requests.get(health_url, timeout=timeout or self.config.health_check_timeout)
        except requests.Timeout:
            return ExecutorResult.fail(f"Health check timed out: {health_url}", retryable=True)
        except requests.RequestException as exc:
            return ExecutorResult.fail(f"Health check request failed: {exc}", retryable=True)

        if response.status_code < 400:
            return ExecutorResult.ok(response.text[:500], status_code=response.status_code, url=health_url)

        retryable = response.status_code == 429 or response.status_code >= 500
        return ExecutorResult.fail(
            f"Health check returned HTTP {response.status_code}",
            retryable=retryable,
            output=response.text[:500],
        )

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _run(self, args: List[str], timeout: Optional[float], stdin: Optional[str] = None) -> CommandResult:
        """Run one wrangler command and wait for completion."""
        argv = self.base_command + args
        command = " ".join(argv)
        try:
            result = subprocess.run(
                argv,
                input=stdin,
                capture_output=True,
                text=True,
                timeout=timeout,
                cwd=self.config.service_path,
                env=self._get_env(),
            )
            return CommandResult(
                command=command,
                stdout=result.stdout.strip(),
                stderr=result.stderr.strip(),
                exit_status=result.returncode,
            )
        except subprocess.TimeoutExpired:
            return CommandResult(
                command=command,
                stdout="",
                stderr=f"Command timed out after {timeout} seconds",
                exit_status=-1,
                timed_out=True,
            )
        except OSError as exc:
            return CommandResult(command=command, stdout="", stderr=str(exc), exit_status=-1)

    def _get_env(self) -> Dict[str, str]:
        env = os.environ.copy()
        if self.config.api_token:
            env["CLOUDFLARE_API_TOKEN"] = self.config.api_token
        if self.config.account_id:
            env["CLOUDFLARE_ACCOUNT_ID"] = self.config.account_id
        return env

    @staticmethod
    def _failure(result: CommandResult) -> ExecutorResult:
        detail = result.stderr or result.stdout or f"exit status {result.exit_status}"
        if result.timed_out:
            return ExecutorResult.fail(detail, retryable=True, output=result.stdout)
        category = classify_error(detail)
        logger.debug(f"Command failed ({category.value}): {result.command}")
        return ExecutorResult.fail(detail, retryable=is_retryable(detail), output=result.stdout)


def parse_database_id(output: str) -> Optional[str]:
    for pattern in _DATABASE_ID_PATTERNS:
        match = pattern.search(output or "")
        if match:
            return match.group(1)
    return None


def parse_worker_url(output: str) -> Optional[str]:
    match = _URL_PATTERN.search(output or "")
    return match.group(0) if match else None


def _worker_args(params: Dict[str, Any]) -> List[str]:
    """``--name <worker>`` so each domain's command targets its own worker."""
    worker_name = params.get("worker_name")
    return ["--name", worker_name] if worker_name else []


def listing_has_database(output: str, name: str) -> bool:
    """Whether a plain-text ``d1 list`` table contains ``name`` as a whole cell."""
    for line in (output or "").splitlines():
        cells = [cell.strip() for cell in re.split(r"[│|\s]+", line)]
        if name in cells:
            return True
    return False
