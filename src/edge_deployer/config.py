"""Configuration loading utilities for Edge Deployer."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

from .paths import DOMAIN_CONFIG_DIR, SECRETS_DIR, STATE_DIR

# Load .env file if it exists
load_dotenv()

_DEFAULT_CONFIG_PATH = Path("config/default_config.json")

_TRUE_VALUES = ("true", "1", "yes", "on")


@dataclass
class OrchestrationConfig:
    """Portfolio-level scheduling settings."""

    concurrency_limit: int = 3
    default_environment: str = "production"
    environments: List[str] = field(
        default_factory=lambda: ["development", "staging", "production"]
    )
    auto_rollback: bool = True
    run_timeout: Optional[float] = None     # 整个运行的超时（秒），None 表示不限制
    service_name: str = "data-service"      # 用于生成自定义域名 URL


@dataclass
class RetryConfig:
    """Retry policy for executor calls (exponential backoff with jitter)."""

    max_attempts: int = 3
    base_delay: float = 1.0
    backoff_factor: float = 2.0
    max_delay: float = 30.0
    jitter: bool = True


@dataclass
class DatabaseConfig:
    """Settings for the database lifecycle manager."""

    name_template: str = "{clean_name}-{environment}-db"   # 数据库名模板
    binding: str = "DB"
    migration_max_attempts: int = 6
    migration_base_delay: float = 2.0
    apply_migrations_on_existing: bool = False
    check_timeout: float = 30.0
    create_timeout: float = 60.0
    migration_timeout: float = 120.0


@dataclass
class SecretsConfig:
    """Settings for the secret lifecycle manager."""

    secrets_dir: str = str(SECRETS_DIR)
    formats: List[str] = field(default_factory=lambda: ["env", "wrangler"])
    reuse_existing: bool = True
    rotate_all: bool = False
    push_secrets: bool = True
    push_timeout: float = 30.0
    # 额外的密钥定义: {"NAME": {"length": 32, "description": "...", "scope": "standard"}}
    extra_definitions: Dict[str, Dict[str, Any]] = field(default_factory=dict)


@dataclass
class ExecutorConfig:
    """Settings for the wrangler-backed executor."""

    wrangler_command: str = "npx wrangler"
    service_path: str = "."
    config_dir: str = str(DOMAIN_CONFIG_DIR)
    deploy_timeout: float = 120.0
    rollback_timeout: float = 60.0
    health_check_timeout: float = 15.0
    health_check_attempts: int = 3
    health_check_delay: float = 5.0
    api_token: Optional[str] = None
    account_id: Optional[str] = None


@dataclass
class StateConfig:
    """Settings for the state & audit store."""

    persist: bool = True
    state_dir: str = str(STATE_DIR)


@dataclass
class InteractionConfig:
    """Configuration for user interaction."""

    mode: str = "auto"  # "auto" | "cli"


@dataclass
class AppConfig:
    """Top-level configuration."""

    orchestration: OrchestrationConfig = field(default_factory=OrchestrationConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    secrets: SecretsConfig = field(default_factory=SecretsConfig)
    executor: ExecutorConfig = field(default_factory=ExecutorConfig)
    state: StateConfig = field(default_factory=StateConfig)
    interaction: InteractionConfig = field(default_factory=InteractionConfig)

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "AppConfig":
        def section(name: str) -> Dict[str, Any]:
            data = payload.get(name, {}) or {}
            # 过滤掉以下划线开头的注释字段
            return {k: v for k, v in data.items() if not k.startswith("_")}

        return cls(
            orchestration=OrchestrationConfig(
                **{**OrchestrationConfig().__dict__, **section("orchestration")}
            ),
            retry=RetryConfig(**{**RetryConfig().__dict__, **section("retry")}),
            database=DatabaseConfig(**{**DatabaseConfig().__dict__, **section("database")}),
            secrets=SecretsConfig(**{**SecretsConfig().__dict__, **section("secrets")}),
            executor=ExecutorConfig(**{**ExecutorConfig().__dict__, **section("executor")}),
            state=StateConfig(**{**StateConfig().__dict__, **section("state")}),
            interaction=InteractionConfig(
                **{**InteractionConfig().__dict__, **section("interaction")}
            ),
        )


def _apply_env_overrides(config: AppConfig) -> None:
    env_concurrency = os.getenv("EDGE_DEPLOYER_CONCURRENCY")
    if env_concurrency:
        config.orchestration.concurrency_limit = int(env_concurrency)

    env_environment = os.getenv("EDGE_DEPLOYER_ENVIRONMENT")
    if env_environment:
        config.orchestration.default_environment = env_environment

    env_state_dir = os.getenv("EDGE_DEPLOYER_STATE_DIR")
    if env_state_dir:
        config.state.state_dir = env_state_dir

    env_secrets_dir = os.getenv("EDGE_DEPLOYER_SECRETS_DIR")
    if env_secrets_dir:
        config.secrets.secrets_dir = env_secrets_dir

    env_service_path = os.getenv("EDGE_DEPLOYER_SERVICE_PATH")
    if env_service_path:
        config.executor.service_path = env_service_path

    # Cloudflare 凭据（优先于配置文件）
    config.executor.api_token = os.getenv("CLOUDFLARE_API_TOKEN") or config.executor.api_token
    config.executor.account_id = os.getenv("CLOUDFLARE_ACCOUNT_ID") or config.executor.account_id


def env_dry_run() -> bool:
    """Whether EDGE_DEPLOYER_DRY_RUN asks for a simulated run."""
    return os.getenv("EDGE_DEPLOYER_DRY_RUN", "").strip().lower() in _TRUE_VALUES


def load_config(path: Optional[str] = None) -> AppConfig:
    """Load configuration from `path` or the default location.

    Environment variables (higher priority than config file):
    - EDGE_DEPLOYER_CONCURRENCY: default concurrency limit
    - EDGE_DEPLOYER_ENVIRONMENT: default target environment
    - EDGE_DEPLOYER_STATE_DIR: where audit logs are persisted
    - EDGE_DEPLOYER_SECRETS_DIR: where secret bundles are stored
    - EDGE_DEPLOYER_SERVICE_PATH: working directory for wrangler
    - CLOUDFLARE_API_TOKEN / CLOUDFLARE_ACCOUNT_ID: backend credentials
    """

    candidate_paths = []
    if path:
        candidate_paths.append(Path(path))
    candidate_paths.append(_DEFAULT_CONFIG_PATH)

    for candidate in candidate_paths:
        if candidate.is_file():
            with candidate.open("r", encoding="utf-8") as handle:
                data = json.load(handle)
            config = AppConfig.from_dict(data)
            _apply_env_overrides(config)
            return config

    raise FileNotFoundError(
        f"Could not find configuration file. Looked in: {', '.join(str(p) for p in candidate_paths)}"
    )
