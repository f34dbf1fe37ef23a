"""Secret lifecycle manager: generation, reuse, distribution files and push."""

from __future__ import annotations

import base64
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Dict, Optional, Tuple, Union

from ..config import SecretsConfig
from ..errors import FatalExecutorError, RetryExhaustedError, SecretDistributionError
from ..executor.base import DeploymentExecutor, ExecutorOperation, ExecutorResult
from ..orchestrator.models import AuditEventType, OrchestrationOptions, SecretBundle, utc_now
from ..retry import RetryPolicy

if TYPE_CHECKING:
    from ..orchestrator.state_store import StateStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SecretDefinition:
    name: str
    length: int
    description: str
    scope: str = "standard"   # "critical" | "standard"

    def generate(self) -> str:
        # length 是十六进制字符数
        return os.urandom(max(1, self.length // 2)).hex()


SECRET_DEFINITIONS: Dict[str, SecretDefinition] = {
    d.name: d
    for d in (
        SecretDefinition("AUTH_JWT_SECRET", 64, "JWT token signing secret", "critical"),
        SecretDefinition("X_SERVICE_KEY", 64, "Service authentication key", "critical"),
        SecretDefinition("AUTH_SERVICE_API_KEY", 48, "Auth service API key"),
        SecretDefinition("LOGGER_SERVICE_API_KEY", 48, "Logger service API key"),
        SecretDefinition("CONTENT_SKIMMER_API_KEY", 48, "Content skimmer API key"),
        SecretDefinition("CROSS_DOMAIN_AUTH_KEY", 64, "Cross-domain authentication key", "critical"),
        SecretDefinition("WEBHOOK_SIGNATURE_KEY", 32, "Webhook signature verification"),
        SecretDefinition("FILE_ENCRYPTION_KEY", 64, "File encryption key", "critical"),
        SecretDefinition("SESSION_ENCRYPTION_KEY", 48, "Session encryption key"),
        SecretDefinition("API_RATE_LIMIT_KEY", 32, "Rate limiting key"),
    )
}


def _name_flag(worker_name: Optional[str]) -> str:
    return f" --name {worker_name}" if worker_name else ""


def _render_env(
    values: Dict[str, str], domain: str, environment: str, worker_name: Optional[str] = None
) -> str:
    lines = [f"# Secrets for {domain} ({environment})"]
    lines += [f"{name}={value}" for name, value in sorted(values.items())]
    return "\n".join(lines) + "\n"


def _render_json(
    values: Dict[str, str], domain: str, environment: str, worker_name: Optional[str] = None
) -> str:
    return json.dumps(dict(sorted(values.items())), indent=2) + "\n"


def _render_wrangler(
    values: Dict[str, str], domain: str, environment: str, worker_name: Optional[str] = None
) -> str:
    lines = ["#!/bin/bash", f"# Wrangler secret commands for {domain} ({environment})"]
    lines += [
        f'echo "{value}" | npx wrangler secret put {name} --env {environment}{_name_flag(worker_name)}'
        for name, value in sorted(values.items())
    ]
    return "\n".join(lines) + "\n"


def _render_powershell(
    values: Dict[str, str], domain: str, environment: str, worker_name: Optional[str] = None
) -> str:
    lines = [f"# Wrangler secret commands for {domain} ({environment})"]
    lines += [
        f'"{value}" | npx wrangler secret put {name} --env {environment}{_name_flag(worker_name)}'
        for name, value in sorted(values.items())
    ]
    return "\r\n".join(lines) + "\r\n"


def _render_docker(
    values: Dict[str, str], domain: str, environment: str, worker_name: Optional[str] = None
) -> str:
    lines = [f"# Docker environment file for {domain} ({environment})"]
    lines += [f"{name}={value}" for name, value in sorted(values.items())]
    return "\n".join(lines) + "\n"


def _render_kubernetes(
    values: Dict[str, str], domain: str, environment: str, worker_name: Optional[str] = None
) -> str:
    lines = [
        "apiVersion: v1",
        "kind: Secret",
        "metadata:",
        f"  name: {domain.replace('.', '-')}-secrets-{environment}",
        f"  namespace: {environment}",
        "type: Opaque",
        "data:",
    ]
    lines += [
        f"  {name}: {base64.b64encode(value.encode('utf-8')).decode('ascii')}"
        for name, value in sorted(values.items())
    ]
    return "\n".join(lines) + "\n"


Renderer = Callable[[Dict[str, str], str, str, Optional[str]], str]

# format -> (文件后缀, 渲染函数)
DISTRIBUTION_FORMATS: Dict[str, Tuple[str, Renderer]] = {
    "env": (".env", _render_env),
    "json": (".json", _render_json),
    "wrangler": (".sh", _render_wrangler),
    "powershell": (".ps1", _render_powershell),
    "docker": (".docker.env", _render_docker),
    "kubernetes": (".yaml", _render_kubernetes),
}


class SecretManager:
    """
    密钥生命周期管理

    - reuse_existing: 读取已保存的密钥包，只生成缺失项
    - rotate_all: 全部重新生成
    - 密钥包和分发文件写入失败是致命错误
    - 推送到后端后，只有本次新生成的密钥会登记 REVOKE_SECRET 回滚动作
    """

    def __init__(
        self,
        executor: DeploymentExecutor,
        store: "StateStore",
        retry_policy: RetryPolicy,
        config: Optional[SecretsConfig] = None,
    ) -> None:
        self.executor = executor
        self.store = store
        self.retry_policy = retry_policy
        self.config = config or SecretsConfig()
        self.secrets_dir = Path(self.config.secrets_dir)
        self.definitions = dict(SECRET_DEFINITIONS)
        for name, definition in self.config.extra_definitions.items():
            self.definitions[name] = SecretDefinition(
                name=name,
                length=int(definition.get("length", 32)),
                description=definition.get("description", ""),
                scope=definition.get("scope", "standard"),
            )
        unknown = [f for f in self.config.formats if f not in DISTRIBUTION_FORMATS]
        if unknown:
            raise ValueError(f"Unknown secret distribution formats: {', '.join(unknown)}")

    def bundle_path(self, domain: str, environment: str) -> Path:
        return self.secrets_dir / f"{domain}-{environment}-secrets.json"

    def distribution_dir(self, domain: str, environment: str) -> Path:
        return self.secrets_dir / "distribution" / domain / environment

    def ensure(
        self,
        domain: str,
        environment: str,
        options: OrchestrationOptions,
        worker_name: Optional[str] = None,
    ) -> SecretBundle:
        """Generate or reuse the secret bundle for ``domain``/``environment``.

        Pushed secrets land on ``worker_name``, the domain's own worker.

        Raises:
            SecretDistributionError: the bundle or a distribution file could not be written.
            FatalExecutorError / RetryExhaustedError: pushing a secret failed.
        """
        reuse = options.reuse_existing and not options.rotate_all
        existing = self.load_existing(domain, environment) if reuse else {}

        bundle = SecretBundle(domain=domain, environment=environment, worker_name=worker_name)
        for name, definition in self.definitions.items():
            if name in existing:
                bundle.values[name] = existing[name]
                bundle.reused += 1
            else:
                bundle.values[name] = definition.generate()
                bundle.generated += 1
                bundle.generated_names.append(name)

        logger.info(
            f"🔐 Secrets for {domain} ({environment}): "
            f"{bundle.generated} generated, {bundle.reused} reused"
        )
        if bundle.reused:
            self.store.append_audit(
                AuditEventType.RESOURCE_REUSED, domain, {"resource": "secrets", "count": bundle.reused}
            )
        if bundle.generated:
            self.store.append_audit(
                AuditEventType.RESOURCE_CREATED,
                domain,
                {"resource": "secrets", "count": bundle.generated, "names": list(bundle.generated_names)},
            )

        if options.dry_run:
            bundle.distribution_formats = set(self.config.formats)
            return bundle

        self._persist(bundle)
        self._distribute(bundle)
        if self.config.push_secrets:
            self._push(bundle)
        return bundle

    def load_existing(self, domain: str, environment: str) -> Dict[str, str]:
        path = self.bundle_path(domain, environment)
        if not path.is_file():
            return {}
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning(f"⚠️ Could not load existing secrets from {path}: {exc}")
            return {}
        values = data.get("secrets", {})
        return {k: v for k, v in values.items() if isinstance(v, str) and v}

    def _persist(self, bundle: SecretBundle) -> None:
        path = self.bundle_path(bundle.domain, bundle.environment)
        document = {
            "domain": bundle.domain,
            "environment": bundle.environment,
            "updated_at": utc_now().isoformat(),
            "secrets": bundle.values,
        }
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            _write_private(path, json.dumps(document, indent=2))
        except OSError as exc:
            raise SecretDistributionError(
                f"Failed to save secret bundle {path}: {exc}", {"path": str(path)}
            ) from exc
        bundle.bundle_path = str(path)

    def _distribute(self, bundle: SecretBundle) -> None:
        target_dir = self.distribution_dir(bundle.domain, bundle.environment)
        for fmt in self.config.formats:
            extension, render = DISTRIBUTION_FORMATS[fmt]
            path = target_dir / f"secrets-{bundle.environment}{extension}"
            try:
                target_dir.mkdir(parents=True, exist_ok=True)
                content = render(bundle.values, bundle.domain, bundle.environment, bundle.worker_name)
                _write_private(path, content)
            except OSError as exc:
                raise SecretDistributionError(
                    f"Failed to write {fmt} distribution file {path}: {exc}",
                    {"format": fmt, "path": str(path)},
                ) from exc
            bundle.distribution_formats.add(fmt)
            bundle.distribution_files[fmt] = str(path)
        logger.info(f"📦 Distribution files: {', '.join(sorted(bundle.distribution_formats))}")

    def _push(self, bundle: SecretBundle) -> None:
        domain, environment = bundle.domain, bundle.environment

        def on_retry(attempt: int, result: ExecutorResult, delay: float) -> None:
            self.store.append_audit(
                AuditEventType.RESOURCE_RETRY,
                domain,
                {
                    "operation": ExecutorOperation.SET_SECRET.value,
                    "attempt": attempt,
                    "max_attempts": self.retry_policy.max_attempts,
                    "error": result.error_detail,
                    "delay": round(delay, 3),
                },
            )

        for name in sorted(bundle.values):
            try:
                self.retry_policy.call(
                    self.executor,
                    ExecutorOperation.SET_SECRET,
                    domain,
                    environment,
                    {"name": name, "value": bundle.values[name], "worker_name": bundle.worker_name},
                    self.config.push_timeout,
                    on_retry,
                )
            except (FatalExecutorError, RetryExhaustedError):
                self._revoke_partial(bundle)
                raise
            bundle.pushed.append(name)

    def _revoke_partial(self, bundle: SecretBundle) -> None:
        """Remove secrets this call created before the push failed."""
        for name in [n for n in bundle.pushed if n in bundle.generated_names]:
            try:
                self.retry_policy.call(
                    self.executor,
                    ExecutorOperation.DELETE_SECRET,
                    bundle.domain,
                    bundle.environment,
                    {"name": name, "worker_name": bundle.worker_name},
                    self.config.push_timeout,
                )
            except (FatalExecutorError, RetryExhaustedError) as exc:
                logger.error(f"❌ Could not revoke {name} for {bundle.domain}: {exc.error_detail}")


def _write_private(path: Union[str, Path], content: str) -> None:
    with open(path, "w", encoding="utf-8") as f:
        f.write(content)
    try:
        os.chmod(path, 0o600)
    except OSError:
        logger.debug(f"chmod not supported for {path}")
