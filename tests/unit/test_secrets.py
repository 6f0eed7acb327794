"""Unit tests for SecretResolver and config sealing."""

import pytest
from pydantic import ValidationError

from backend.services.secrets import SEALED_PREFIX, SecretResolutionError, SecretResolver
from models.configs import (
    NfsConfig,
    S3RepositoryConfig,
    SmbConfig,
    parse_notification_config,
    parse_repository_config,
    parse_volume_config,
    seal_config,
)


@pytest.fixture
def resolver(tmp_path):
    return SecretResolver(lambda: "test-encryption-key", secrets_dir=str(tmp_path))


class TestSecretResolver:
    def test_plain_value_passes_through(self, resolver):
        assert resolver.resolve_secret("hunter2") == "hunter2"
        assert resolver.resolve_secret("") == ""
        assert resolver.resolve_secret(None) == ""

    def test_seal_then_resolve(self, resolver):
        sealed = resolver.seal_secret("hunter2")

        assert sealed.startswith(SEALED_PREFIX)
        assert "hunter2" not in sealed
        assert resolver.resolve_secret(sealed) == "hunter2"

    def test_seal_is_idempotent(self, resolver):
        sealed = resolver.seal_secret("hunter2")

        assert resolver.seal_secret(sealed) == sealed

    def test_references_are_not_sealed(self, resolver):
        assert resolver.seal_secret("env://SMB_PASSWORD") == "env://SMB_PASSWORD"
        assert resolver.seal_secret("file://smb_password") == "file://smb_password"

    def test_env_reference(self, resolver, monkeypatch):
        monkeypatch.setenv("SMB_PASSWORD", "from-env")

        assert resolver.resolve_secret("env://SMB_PASSWORD") == "from-env"

    def test_missing_env_reference(self, resolver, monkeypatch):
        monkeypatch.delenv("SMB_PASSWORD", raising=False)

        with pytest.raises(SecretResolutionError):
            resolver.resolve_secret("env://SMB_PASSWORD")

    def test_file_reference(self, resolver, tmp_path):
        (tmp_path / "smb_password").write_text("from-file\n")

        assert resolver.resolve_secret("file://smb_password") == "from-file"

    @pytest.mark.parametrize("reference", ["file://../etc/passwd", "file://a/b", "file://", "file://.."])
    def test_file_reference_must_be_single_name(self, resolver, reference):
        with pytest.raises(SecretResolutionError):
            resolver.resolve_secret(reference)

    def test_wrong_key_fails(self, resolver, tmp_path):
        sealed = resolver.seal_secret("hunter2")
        other = SecretResolver(lambda: "another-key", secrets_dir=str(tmp_path))

        with pytest.raises(SecretResolutionError):
            other.resolve_secret(sealed)

    def test_missing_key_fails(self, tmp_path):
        resolver = SecretResolver(lambda: "", secrets_dir=str(tmp_path))

        with pytest.raises(SecretResolutionError):
            resolver.seal_secret("hunter2")


class TestConfigs:
    def test_volume_discriminator(self):
        config = parse_volume_config({"backend": "nfs", "server": "nas", "export_path": "/export"})

        assert isinstance(config, NfsConfig)
        assert config.version == "4"
        assert config.port == 2049

    def test_unknown_volume_backend(self):
        with pytest.raises(ValidationError):
            parse_volume_config({"backend": "floppy"})

    def test_repository_discriminator(self):
        config = parse_repository_config(
            {
                "backend": "s3",
                "endpoint": "https://s3.example.com",
                "bucket": "backups",
                "access_key_id": "AKIA",
                "secret_access_key": "secret",
            }
        )

        assert isinstance(config, S3RepositoryConfig)
        assert config.is_existing_repository is False

    def test_notification_discriminator(self):
        config = parse_notification_config({"type": "telegram", "bot_token": "123:abc", "chat_id": "42"})

        assert config.type == "telegram"

    def test_seal_config_only_touches_secret_fields(self, resolver):
        config = SmbConfig(server="nas", share="data", username="bob", password="hunter2")

        sealed = seal_config(config, resolver.seal_secret)

        assert sealed.username == "bob"
        assert sealed.password.startswith(SEALED_PREFIX)
        assert config.password == "hunter2"

    def test_seal_config_includes_custom_password(self, resolver):
        config = parse_repository_config({"backend": "local", "custom_password": "repo-pass"})

        sealed = seal_config(config, resolver.seal_secret)

        assert resolver.is_sealed(sealed.custom_password)
