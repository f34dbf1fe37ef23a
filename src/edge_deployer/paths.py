"""Unified path constants for Edge Deployer.

All local data is stored under the .edge-deployer directory:
- .edge-deployer/deployments/   # Persisted portfolio state + audit logs
- .edge-deployer/secrets/       # Secret bundles and distribution files
- .edge-deployer/config/        # Per-domain configuration artifacts
"""

from pathlib import Path

# 基础目录（在当前工作目录下）
BASE_DIR = Path(".edge-deployer")

STATE_DIR = BASE_DIR / "deployments"      # 审计日志与组合状态
SECRETS_DIR = BASE_DIR / "secrets"        # 密钥包
DOMAIN_CONFIG_DIR = BASE_DIR / "config"   # 每个域名的配置文件
