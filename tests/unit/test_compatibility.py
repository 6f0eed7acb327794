"""Unit tests for mirror compatibility checks."""

import pytest

from backend.services.backups.compatibility import (
    check_mirror_compatibility,
    get_backend_conflict_group,
    incompatible_mirror_message,
)
from backend.services.secrets import SecretResolver


@pytest.fixture
def secrets(tmp_path):
    return SecretResolver(lambda: "test-encryption-key", secrets_dir=str(tmp_path))


def s3(key="AKIA", secret="secret", backend="s3"):
    return {
        "backend": backend,
        "endpoint": "https://s3.example.com",
        "bucket": "bucket",
        "access_key_id": key,
        "secret_access_key": secret,
    }


class TestCompatibility:
    def test_conflict_groups(self):
        assert get_backend_conflict_group("r2") == "s3"
        assert get_backend_conflict_group("local") is None
        assert get_backend_conflict_group("rclone") is None

    def test_different_groups_are_compatible(self, secrets):
        result = check_mirror_compatibility(s3(), {"backend": "local", "name": "x"}, "mirror", secrets)

        assert result.compatible is True

    def test_same_credentials_are_compatible(self, secrets):
        assert check_mirror_compatibility(s3(), s3(), "mirror", secrets).compatible is True

    def test_r2_and_s3_with_different_keys_conflict(self, secrets):
        result = check_mirror_compatibility(s3(), s3(key="OTHER", backend="r2"), "mirror", secrets)

        assert result.compatible is False
        assert "S3" in result.reason

    def test_credentials_compared_after_resolution(self, secrets, monkeypatch):
        monkeypatch.setenv("MIRROR_KEY", "AKIA")
        sealed = s3(secret=secrets.seal_secret("secret"))
        referenced = s3(key="env://MIRROR_KEY")

        assert check_mirror_compatibility(sealed, referenced, "mirror", secrets).compatible is True

    def test_credential_change_is_seen_immediately(self, secrets, monkeypatch):
        referenced = s3(key="env://MIRROR_KEY")

        monkeypatch.setenv("MIRROR_KEY", "AKIA")
        assert check_mirror_compatibility(s3(), referenced, "mirror", secrets).compatible is True

        monkeypatch.setenv("MIRROR_KEY", "ROTATED")
        assert check_mirror_compatibility(s3(), referenced, "mirror", secrets).compatible is False

    def test_two_sftp_repositories_never_mix(self, secrets):
        config = {"backend": "sftp", "host": "h", "user": "u", "path": "/p", "private_key": "KEY"}

        assert check_mirror_compatibility(config, dict(config), "mirror", secrets).compatible is False

    def test_rest_without_credentials(self, secrets):
        a = {"backend": "rest", "url": "http://a"}
        b = {"backend": "rest", "url": "http://b"}

        assert check_mirror_compatibility(a, b, "mirror", secrets).compatible is True

    def test_message(self):
        message = incompatible_mirror_message("offsite", "s3", "r2")

        assert message.startswith("Cannot mirror to offsite")
        assert "(s3/r2)" in message
