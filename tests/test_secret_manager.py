"""Tests for the secret lifecycle manager."""

import base64
import json
import os

import pytest

from edge_deployer.errors import FatalExecutorError, SecretDistributionError
from edge_deployer.executor import ExecutorOperation
from edge_deployer.orchestrator import AuditEventType, OrchestrationOptions
from edge_deployer.resources import SECRET_DEFINITIONS, SecretManager


@pytest.fixture
def store(store):
    store.initialize_domains(["a.com"])
    return store


@pytest.fixture
def manager(executor, store, policy, app_config):
    return SecretManager(executor, store, policy, config=app_config.secrets)


class TestGeneration:
    def test_first_run_generates_everything(self, manager, executor):
        bundle = manager.ensure("a.com", "production", OrchestrationOptions())

        assert bundle.generated == len(SECRET_DEFINITIONS)
        assert bundle.reused == 0
        assert len(bundle.values["AUTH_JWT_SECRET"]) == 64
        assert len(bundle.values["WEBHOOK_SIGNATURE_KEY"]) == 32
        assert sorted(bundle.pushed) == sorted(SECRET_DEFINITIONS)
        assert executor.count(ExecutorOperation.SET_SECRET) == len(SECRET_DEFINITIONS)

    def test_reuse_is_idempotent(self, manager):
        first = manager.ensure("a.com", "production", OrchestrationOptions())
        second = manager.ensure("a.com", "production", OrchestrationOptions())

        assert second.values == first.values
        assert second.reused == len(SECRET_DEFINITIONS)
        assert second.generated == 0
        assert second.generated_names == []

    def test_partial_bundle_fills_missing(self, manager):
        first = manager.ensure("a.com", "production", OrchestrationOptions())
        path = manager.bundle_path("a.com", "production")
        document = json.loads(path.read_text(encoding="utf-8"))
        del document["secrets"]["API_RATE_LIMIT_KEY"]
        path.write_text(json.dumps(document), encoding="utf-8")

        second = manager.ensure("a.com", "production", OrchestrationOptions())

        assert second.generated_names == ["API_RATE_LIMIT_KEY"]
        assert second.values["AUTH_JWT_SECRET"] == first.values["AUTH_JWT_SECRET"]

    def test_rotate_all_regenerates(self, manager):
        first = manager.ensure("a.com", "production", OrchestrationOptions())
        rotated = manager.ensure("a.com", "production", OrchestrationOptions(rotate_all=True))

        assert rotated.generated == len(SECRET_DEFINITIONS)
        assert rotated.values["AUTH_JWT_SECRET"] != first.values["AUTH_JWT_SECRET"]

    def test_bundles_are_scoped_per_environment(self, manager, store):
        prod = manager.ensure("a.com", "production", OrchestrationOptions())
        staging = manager.ensure("a.com", "staging", OrchestrationOptions())
        assert staging.reused == 0
        assert staging.values["AUTH_JWT_SECRET"] != prod.values["AUTH_JWT_SECRET"]

    def test_corrupt_bundle_is_regenerated(self, manager):
        path = manager.bundle_path("a.com", "production")
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("{not json", encoding="utf-8")

        bundle = manager.ensure("a.com", "production", OrchestrationOptions())
        assert bundle.generated == len(SECRET_DEFINITIONS)

    def test_extra_definitions(self, executor, store, policy, app_config):
        app_config.secrets.extra_definitions = {"STRIPE_WEBHOOK_KEY": {"length": 40}}
        manager = SecretManager(executor, store, policy, config=app_config.secrets)
        bundle = manager.ensure("a.com", "production", OrchestrationOptions())
        assert len(bundle.values["STRIPE_WEBHOOK_KEY"]) == 40


class TestDistribution:
    def test_writes_every_configured_format(self, executor, store, policy, app_config):
        app_config.secrets.formats = ["env", "json", "wrangler", "powershell", "docker", "kubernetes"]
        manager = SecretManager(executor, store, policy, config=app_config.secrets)

        bundle = manager.ensure("a.com", "staging", OrchestrationOptions())

        assert bundle.distribution_formats == set(app_config.secrets.formats)
        assert len(set(bundle.distribution_files.values())) == 6
        env_file = bundle.distribution_files["env"]
        assert f"AUTH_JWT_SECRET={bundle.values['AUTH_JWT_SECRET']}" in open(env_file).read()
        wrangler = open(bundle.distribution_files["wrangler"]).read()
        assert "npx wrangler secret put X_SERVICE_KEY --env staging" in wrangler
        kube = open(bundle.distribution_files["kubernetes"]).read()
        encoded = base64.b64encode(bundle.values["FILE_ENCRYPTION_KEY"].encode()).decode()
        assert f"FILE_ENCRYPTION_KEY: {encoded}" in kube
        assert "name: a-com-secrets-staging" in kube
        if os.name == "posix":
            assert oct(os.stat(env_file).st_mode & 0o777) == "0o600"

    def test_unknown_format_rejected(self, executor, store, policy, app_config):
        app_config.secrets.formats = ["env", "toml"]
        with pytest.raises(ValueError):
            SecretManager(executor, store, policy, config=app_config.secrets)

    def test_unwritable_secrets_dir(self, executor, store, policy, app_config, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        app_config.secrets.secrets_dir = str(blocker / "secrets")
        manager = SecretManager(executor, store, policy, config=app_config.secrets)

        with pytest.raises(SecretDistributionError):
            manager.ensure("a.com", "production", OrchestrationOptions())


class TestPush:
    def test_push_failure_revokes_only_new_secrets(self, executor, store, policy, app_config):
        manager = SecretManager(executor, store, policy, config=app_config.secrets)
        manager.ensure("a.com", "production", OrchestrationOptions())
        path = manager.bundle_path("a.com", "production")
        document = json.loads(path.read_text(encoding="utf-8"))
        del document["secrets"]["AUTH_JWT_SECRET"]
        path.write_text(json.dumps(document), encoding="utf-8")
        executor.calls.clear()
        # sorted 顺序: API_RATE_LIMIT_KEY, AUTH_JWT_SECRET, AUTH_SERVICE_API_KEY, ...
        executor.rejected_secrets.add("AUTH_SERVICE_API_KEY")

        with pytest.raises(FatalExecutorError):
            manager.ensure("a.com", "production", OrchestrationOptions(), worker_name="a-com-data-service")

        revoked = [p for op, _, p in executor.calls if op == ExecutorOperation.DELETE_SECRET]
        assert [p["name"] for p in revoked] == ["AUTH_JWT_SECRET"]
        assert revoked[0]["worker_name"] == "a-com-data-service"

    def test_push_can_be_disabled(self, executor, store, policy, app_config):
        app_config.secrets.push_secrets = False
        manager = SecretManager(executor, store, policy, config=app_config.secrets)
        bundle = manager.ensure("a.com", "production", OrchestrationOptions())
        assert bundle.pushed == []
        assert executor.count(ExecutorOperation.SET_SECRET) == 0


def test_dry_run_has_no_side_effects(manager, executor, app_config, store):
    bundle = manager.ensure("a.com", "production", OrchestrationOptions(dry_run=True))

    assert bundle.generated == len(SECRET_DEFINITIONS)
    assert bundle.bundle_path is None
    assert not os.path.exists(app_config.secrets.secrets_dir)
    assert executor.calls == []
    assert store.get_audit_log(AuditEventType.RESOURCE_CREATED)
