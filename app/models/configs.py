"""Backend configuration models for volumes and repositories.

Both configs are closed tagged unions discriminated by the `backend` field.
They are stored as JSON on the SQL rows (`Volume.config`, `Repository.config`)
with credential fields sealed by the secret resolver.
"""

from __future__ import annotations

from typing import Annotated, Any, ClassVar, Dict, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


VolumeBackendType = Literal["directory", "nfs", "smb", "webdav", "rclone", "sftp"]
RepositoryBackendType = Literal["local", "s3", "r2", "gcs", "azure", "rest", "sftp", "rclone"]
CompressionMode = Literal["auto", "off", "max"]


class _BackendConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    SECRET_FIELDS: ClassVar[Tuple[str, ...]] = ()

    def secret_values(self) -> Dict[str, Optional[str]]:
        return {name: getattr(self, name) for name in self.SECRET_FIELDS}


# ---------------------------------------------------------------------------
# Volumes
# ---------------------------------------------------------------------------


class DirectoryConfig(_BackendConfig):
    backend: Literal["directory"] = "directory"
    path: str = Field(..., description="Absolute path of an existing host directory")
    read_only: bool = False


class NfsConfig(_BackendConfig):
    backend: Literal["nfs"] = "nfs"
    server: str
    export_path: str
    port: int = 2049
    version: Literal["3", "4", "4.1"] = "4"
    read_only: bool = False


class SmbConfig(_BackendConfig):
    SECRET_FIELDS: ClassVar[Tuple[str, ...]] = ("password",)

    backend: Literal["smb"] = "smb"
    server: str
    share: str
    username: str = "guest"
    password: Optional[str] = None
    vers: Literal["1.0", "2.0", "2.1", "3.0", "auto"] = "3.0"
    domain: Optional[str] = None
    port: int = 445
    read_only: bool = False


class WebdavConfig(_BackendConfig):
    SECRET_FIELDS: ClassVar[Tuple[str, ...]] = ("password",)

    backend: Literal["webdav"] = "webdav"
    server: str
    path: str = "/"
    username: Optional[str] = None
    password: Optional[str] = None
    port: int = 80
    ssl: bool = False
    read_only: bool = False


class RcloneVolumeConfig(_BackendConfig):
    backend: Literal["rclone"] = "rclone"
    remote: str
    path: str = ""
    read_only: bool = False


class SftpVolumeConfig(_BackendConfig):
    SECRET_FIELDS: ClassVar[Tuple[str, ...]] = ("password", "private_key")

    backend: Literal["sftp"] = "sftp"
    host: str
    port: int = 22
    username: str
    password: Optional[str] = None
    private_key: Optional[str] = None
    path: str = ""
    read_only: bool = False
    skip_host_key_check: bool = True
    known_hosts: Optional[str] = None


VolumeConfig = Annotated[
    Union[DirectoryConfig, NfsConfig, SmbConfig, WebdavConfig, RcloneVolumeConfig, SftpVolumeConfig],
    Field(discriminator="backend"),
]

_volume_config_adapter: TypeAdapter = TypeAdapter(VolumeConfig)


def parse_volume_config(data: Any) -> "VolumeConfig":
    """Validate a raw dict (or model) into the matching volume config model."""

    if isinstance(data, _BackendConfig):
        return data
    return _volume_config_adapter.validate_python(data)


# ---------------------------------------------------------------------------
# Repositories
# ---------------------------------------------------------------------------


class _RepositoryConfig(_BackendConfig):
    is_existing_repository: bool = False
    custom_password: Optional[str] = None

    def secret_values(self) -> Dict[str, Optional[str]]:
        values = super().secret_values()
        values["custom_password"] = self.custom_password
        return values


class LocalRepositoryConfig(_RepositoryConfig):
    backend: Literal["local"] = "local"
    name: str = ""
    path: Optional[str] = None


class S3RepositoryConfig(_RepositoryConfig):
    SECRET_FIELDS: ClassVar[Tuple[str, ...]] = ("access_key_id", "secret_access_key")

    backend: Literal["s3"] = "s3"
    endpoint: str
    bucket: str
    access_key_id: str
    secret_access_key: str


class R2RepositoryConfig(_RepositoryConfig):
    SECRET_FIELDS: ClassVar[Tuple[str, ...]] = ("access_key_id", "secret_access_key")

    backend: Literal["r2"] = "r2"
    endpoint: str
    bucket: str
    access_key_id: str
    secret_access_key: str


class GcsRepositoryConfig(_RepositoryConfig):
    SECRET_FIELDS: ClassVar[Tuple[str, ...]] = ("credentials_json",)

    backend: Literal["gcs"] = "gcs"
    bucket: str
    project_id: str
    credentials_json: str


class AzureRepositoryConfig(_RepositoryConfig):
    SECRET_FIELDS: ClassVar[Tuple[str, ...]] = ("account_key",)

    backend: Literal["azure"] = "azure"
    container: str
    account_name: str
    account_key: str
    endpoint_suffix: Optional[str] = None


class RestRepositoryConfig(_RepositoryConfig):
    SECRET_FIELDS: ClassVar[Tuple[str, ...]] = ("username", "password")

    backend: Literal["rest"] = "rest"
    url: str
    path: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None


class SftpRepositoryConfig(_RepositoryConfig):
    SECRET_FIELDS: ClassVar[Tuple[str, ...]] = ("private_key",)

    backend: Literal["sftp"] = "sftp"
    host: str
    port: int = 22
    user: str
    path: str
    private_key: str


class RcloneRepositoryConfig(_RepositoryConfig):
    backend: Literal["rclone"] = "rclone"
    remote: str
    path: str = ""


RepositoryConfig = Annotated[
    Union[
        LocalRepositoryConfig,
        S3RepositoryConfig,
        R2RepositoryConfig,
        GcsRepositoryConfig,
        AzureRepositoryConfig,
        RestRepositoryConfig,
        SftpRepositoryConfig,
        RcloneRepositoryConfig,
    ],
    Field(discriminator="backend"),
]

_repository_config_adapter: TypeAdapter = TypeAdapter(RepositoryConfig)


def parse_repository_config(data: Any) -> "RepositoryConfig":
    """Validate a raw dict (or model) into the matching repository config model."""

    if isinstance(data, _BackendConfig):
        return data
    return _repository_config_adapter.validate_python(data)


def seal_config(config: _BackendConfig, seal) -> _BackendConfig:
    """Return a copy of `config` with every secret field passed through `seal`."""

    updates = {name: seal(value) for name, value in config.secret_values().items() if value}
    return config.model_copy(update=updates)


# ---------------------------------------------------------------------------
# Notification destinations
# ---------------------------------------------------------------------------


class WebhookNotificationConfig(_BackendConfig):
    SECRET_FIELDS: ClassVar[Tuple[str, ...]] = ("url",)

    type: Literal["webhook"] = "webhook"
    url: str
    method: Literal["POST", "PUT"] = "POST"
    headers: Dict[str, str] = Field(default_factory=dict)


class TelegramNotificationConfig(_BackendConfig):
    SECRET_FIELDS: ClassVar[Tuple[str, ...]] = ("bot_token",)

    type: Literal["telegram"] = "telegram"
    bot_token: str
    chat_id: str


NotificationConfig = Annotated[
    Union[WebhookNotificationConfig, TelegramNotificationConfig],
    Field(discriminator="type"),
]

_notification_config_adapter: TypeAdapter = TypeAdapter(NotificationConfig)


def parse_notification_config(data: Any) -> "NotificationConfig":
    if isinstance(data, _BackendConfig):
        return data
    return _notification_config_adapter.validate_python(data)
