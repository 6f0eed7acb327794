"""restic command layer.

Builds repository URLs, environments and argument lists for the `restic`
binary, runs it through `backend.utils.spawn` and parses its JSON output.

Every invocation writes transient credential files (custom repository
passwords, GCS credentials, SFTP keys) with mode 0600 and removes them in a
`finally` block once the command has finished.
"""

from __future__ import annotations

import json
import logging
import os
import secrets as pysecrets
import tempfile
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence

from backend.core.errors import EXIT_CODE_STOPPED, BackupEngineError, ResticError, sanitize_sensitive_data
from backend.services.restic.retention import RetentionPolicy
from backend.services.secrets import SecretResolver
from backend.utils.spawn import CancelToken, ProcessHandle, SpawnResult, spawn
from models.configs import (
    AzureRepositoryConfig,
    GcsRepositoryConfig,
    LocalRepositoryConfig,
    R2RepositoryConfig,
    RcloneRepositoryConfig,
    RestRepositoryConfig,
    S3RepositoryConfig,
    SftpRepositoryConfig,
    parse_repository_config,
)


logger = logging.getLogger(__name__)

RESTIC_BINARY = "restic"
BACKUP_OUTPUT_TAIL = 200

SpawnFunction = Callable[..., Awaitable[ProcessHandle]]
ProgressCallback = Callable[[Dict[str, Any]], None]


@dataclass
class ResticEnvironment:
    """Environment for one restic invocation plus the temp files backing it."""

    env: Dict[str, str]
    temp_files: List[str] = field(default_factory=list)
    ssh_args: Optional[str] = None

    @property
    def password_file(self) -> str:
        return self.env["RESTIC_PASSWORD_FILE"]

    def common_args(self) -> List[str]:
        args = ["--json"]
        if self.ssh_args:
            args.extend(["-o", f"sftp.args={self.ssh_args}"])
        return args

    def cleanup(self) -> None:
        for path in self.temp_files:
            try:
                os.unlink(path)
            except FileNotFoundError:
                continue
            except OSError as exc:
                logger.warning("Failed to remove temporary restic file %s: %s", path, exc)
        self.temp_files.clear()


@dataclass(frozen=True)
class BackupResult:
    exit_code: int
    summary: Optional[Dict[str, Any]]
    stderr: str = ""

    @property
    def snapshot_id(self) -> Optional[str]:
        return (self.summary or {}).get("snapshot_id")


@dataclass(frozen=True)
class CheckResult:
    success: bool
    has_errors: bool
    output: str
    error: Optional[str] = None


def build_repo_url(config: Any, repository_base: str = "/var/lib/volume-backup/repositories") -> str:
    """Return the restic `--repo` value for a repository config.

    Raises:
        ValueError: For unsupported backends.
    """

    config = parse_repository_config(config)

    if isinstance(config, LocalRepositoryConfig):
        base = config.path or repository_base
        return f"{base.rstrip('/')}/{config.name}"
    if isinstance(config, R2RepositoryConfig):
        endpoint = config.endpoint
        for scheme in ("https://", "http://"):
            if endpoint.startswith(scheme):
                endpoint = endpoint[len(scheme):]
        return f"s3:{endpoint}/{config.bucket}"
    if isinstance(config, S3RepositoryConfig):
        return f"s3:{config.endpoint}/{config.bucket}"
    if isinstance(config, GcsRepositoryConfig):
        return f"gs:{config.bucket}:/"
    if isinstance(config, AzureRepositoryConfig):
        return f"azure:{config.container}:/"
    if isinstance(config, RcloneRepositoryConfig):
        return f"rclone:{config.remote}:{config.path}"
    if isinstance(config, RestRepositoryConfig):
        path = f"/{config.path.lstrip('/')}" if config.path else ""
        return f"rest:{config.url}{path}"
    if isinstance(config, SftpRepositoryConfig):
        return f"sftp:{config.user}@{config.host}:{config.path}"

    raise ValueError(f"Unsupported repository backend: {getattr(config, 'backend', config)!r}")


def _parse_json_lines(output: str) -> List[Dict[str, Any]]:
    records = []
    for line in output.splitlines():
        line = line.strip()
        if not line.startswith("{"):
            continue
        try:
            records.append(json.loads(line))
        except json.JSONDecodeError:
            continue
    return records


class ResticService:
    """Runs restic against repository configs.

    Args:
        secrets: Resolver for credential fields.
        pass_file: Default repository password file.
        cache_dir: `RESTIC_CACHE_DIR`.
        repository_base: Parent directory of local repositories.
        hostname: Host name recorded in snapshots.
        spawn_fn: `backend.utils.spawn.spawn` compatible coroutine.
        path_env: `PATH` handed to restic.
    """

    def __init__(
        self,
        secrets: SecretResolver,
        *,
        pass_file: str,
        cache_dir: str,
        repository_base: str,
        hostname: Optional[str] = None,
        spawn_fn: SpawnFunction = spawn,
        path_env: Optional[str] = None,
    ):
        self.secrets = secrets
        self.pass_file = pass_file
        self.cache_dir = cache_dir
        self.repository_base = repository_base
        self.hostname = hostname
        self._spawn = spawn_fn
        self.path_env = path_env or os.environ.get("PATH", "/usr/local/bin:/usr/bin:/bin")

    # -- setup ---------------------------------------------------------------

    def ensure_passfile(self) -> None:
        """Create the default password file (random 32 bytes, hex) when missing."""

        os.makedirs(os.path.dirname(self.pass_file) or ".", exist_ok=True)
        if os.path.exists(self.pass_file):
            return
        logger.info("Restic passfile not found, creating a new one...")
        fd = os.open(self.pass_file, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(pysecrets.token_hex(32))

    def repo_url(self, config: Any) -> str:
        return build_repo_url(config, self.repository_base)

    @staticmethod
    def _write_temp(prefix: str, content: str, suffix: str = "") -> str:
        fd, path = tempfile.mkstemp(prefix=prefix, suffix=suffix)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
        os.chmod(path, 0o600)
        return path

    def build_env(self, config: Any) -> ResticEnvironment:
        """Build the environment for running restic against `config`.

        Raises:
            BackupEngineError: For passphrase protected SFTP keys.
            SecretResolutionError: When a credential cannot be resolved.
        """

        config = parse_repository_config(config)
        environment = ResticEnvironment(env={"RESTIC_CACHE_DIR": self.cache_dir, "PATH": self.path_env})
        env = environment.env

        try:
            if config.is_existing_repository and config.custom_password:
                password = self.secrets.resolve_secret(config.custom_password)
                path = self._write_temp("volume-backup-pass-", password, ".txt")
                environment.temp_files.append(path)
                env["RESTIC_PASSWORD_FILE"] = path
            else:
                env["RESTIC_PASSWORD_FILE"] = self.pass_file

            if isinstance(config, (S3RepositoryConfig, R2RepositoryConfig)):
                env["AWS_ACCESS_KEY_ID"] = self.secrets.resolve_secret(config.access_key_id)
                env["AWS_SECRET_ACCESS_KEY"] = self.secrets.resolve_secret(config.secret_access_key)
                if isinstance(config, R2RepositoryConfig):
                    env["AWS_REGION"] = "auto"
                    env["AWS_S3_FORCE_PATH_STYLE"] = "true"

            elif isinstance(config, GcsRepositoryConfig):
                credentials = self.secrets.resolve_secret(config.credentials_json)
                path = self._write_temp("volume-backup-gcs-", credentials, ".json")
                environment.temp_files.append(path)
                env["GOOGLE_PROJECT_ID"] = config.project_id
                env["GOOGLE_APPLICATION_CREDENTIALS"] = path

            elif isinstance(config, AzureRepositoryConfig):
                env["AZURE_ACCOUNT_NAME"] = config.account_name
                env["AZURE_ACCOUNT_KEY"] = self.secrets.resolve_secret(config.account_key)
                if config.endpoint_suffix:
                    env["AZURE_ENDPOINT_SUFFIX"] = config.endpoint_suffix

            elif isinstance(config, RestRepositoryConfig):
                if config.username:
                    env["RESTIC_REST_USERNAME"] = self.secrets.resolve_secret(config.username)
                if config.password:
                    env["RESTIC_REST_PASSWORD"] = self.secrets.resolve_secret(config.password)

            elif isinstance(config, SftpRepositoryConfig):
                key = self.secrets.resolve_secret(config.private_key).replace("\r\n", "\n")
                if not key.endswith("\n"):
                    key += "\n"
                if "ENCRYPTED" in key:
                    logger.error("SFTP: Private key appears to be passphrase-protected.")
                    raise BackupEngineError(
                        "Passphrase-protected SSH keys are not supported. Please provide an unencrypted private key."
                    )
                key_path = self._write_temp("volume-backup-ssh-", key)
                environment.temp_files.append(key_path)

                ssh_args = [
                    "-o",
                    "StrictHostKeyChecking=no",
                    "-o",
                    "UserKnownHostsFile=/dev/null",
                    "-o",
                    "LogLevel=VERBOSE",
                    "-i",
                    key_path,
                ]
                if config.port and config.port != 22:
                    ssh_args.extend(["-p", str(config.port)])
                environment.ssh_args = " ".join(ssh_args)
        except Exception:
            environment.cleanup()
            raise

        return environment

    # -- execution -----------------------------------------------------------

    async def _execute(
        self,
        args: Sequence[str],
        environment: ResticEnvironment,
        *,
        cancel: Optional[CancelToken] = None,
        on_line: Optional[Callable[[str], None]] = None,
        max_stdout_lines: Optional[int] = None,
    ) -> SpawnResult:
        logger.debug("Executing: restic %s", sanitize_sensitive_data(" ".join(args)))
        handle = await self._spawn(
            RESTIC_BINARY,
            list(args),
            env=environment.env,
            cancel=cancel,
            max_stdout_lines=max_stdout_lines,
        )
        if on_line is not None:
            async for line in handle.lines():
                on_line(line)
        return await handle.wait()

    async def _run(
        self,
        config: Any,
        command: Sequence[str],
        *,
        operation: str,
        check: bool = True,
    ) -> SpawnResult:
        environment = self.build_env(config)
        try:
            args = ["--repo", self.repo_url(config), *command, *environment.common_args()]
            result = await self._execute(args, environment)
        finally:
            environment.cleanup()

        if check and result.exit_code != 0:
            logger.error("Restic %s failed: %s", operation, result.stderr.strip())
            raise ResticError(result.exit_code, result.stderr)
        return result

    # -- operations ----------------------------------------------------------

    async def init(self, config: Any) -> None:
        self.ensure_passfile()
        logger.info("Initializing restic repository at %s...", self.repo_url(config))
        await self._run(config, ["init"], operation="init")
        logger.info("Restic repository initialized: %s", self.repo_url(config))

    async def backup(
        self,
        config: Any,
        source: str,
        *,
        tags: Iterable[str] = (),
        compression_mode: str = "auto",
        one_file_system: bool = False,
        include: Sequence[str] = (),
        exclude: Sequence[str] = (),
        exclude_if_present: Sequence[str] = (),
        cancel: Optional[CancelToken] = None,
        on_progress: Optional[ProgressCallback] = None,
        progress_interval: float = 1.0,
    ) -> BackupResult:
        """Run `restic backup`.

        Progress records (`message_type == "status"`) are forwarded to
        `on_progress` at most once per `progress_interval` seconds. The last
        `summary` record is returned.

        Returns:
            BackupResult: For exit codes 0 and 3 (some files unreadable).

        Raises:
            ResticError: For any other exit code; code 999 when `cancel` fired.
        """

        args: List[str] = ["--repo", self.repo_url(config), "backup", "--compression", compression_mode]
        if one_file_system:
            args.append("--one-file-system")
        if self.hostname:
            args.extend(["--host", self.hostname])
        for tag in tags:
            args.extend(["--tag", tag])

        environment = self.build_env(config)
        include_file: Optional[str] = None
        last_emit = 0.0

        def handle_line(line: str) -> None:
            nonlocal last_emit
            if on_progress is None or not line.startswith("{"):
                return
            now = time.monotonic()
            if last_emit and now - last_emit < progress_interval:
                return
            try:
                record = json.loads(line)
            except json.JSONDecodeError:
                return
            if record.get("message_type") != "status":
                return
            last_emit = now
            on_progress(record)

        try:
            if include:
                paths = [os.path.join(source, p.lstrip("/")) for p in include]
                include_file = self._write_temp("volume-backup-include-", "\n".join(paths), ".txt")
                args.extend(["--files-from", include_file])
            else:
                args.append(source)

            for pattern in exclude:
                args.extend(["--exclude", pattern])
            for filename in exclude_if_present:
                args.extend(["--exclude-if-present", filename])
            args.extend(environment.common_args())

            result = await self._execute(
                args,
                environment,
                cancel=cancel,
                on_line=handle_line,
                max_stdout_lines=BACKUP_OUTPUT_TAIL,
            )
        finally:
            if include_file:
                try:
                    os.unlink(include_file)
                except OSError as exc:
                    logger.debug("Could not remove include file %s: %s", include_file, exc)
            environment.cleanup()

        if cancel is not None and cancel.cancelled:
            raise ResticError(EXIT_CODE_STOPPED, result.stderr)

        if result.exit_code == 3:
            logger.error("Restic backup encountered read errors: %s", result.stderr.strip())
        elif result.exit_code != 0:
            logger.error("Restic backup failed: %s", result.stderr.strip())
            raise ResticError(result.exit_code, result.stderr)

        summary = None
        for record in reversed(_parse_json_lines(result.stdout)):
            if record.get("message_type") == "summary":
                summary = record
                break
        if summary is None:
            logger.warning("Failed to parse restic backup output JSON summary.")

        return BackupResult(exit_code=result.exit_code, summary=summary, stderr=result.stderr)

    async def snapshots(self, config: Any, *, tags: Iterable[str] = ()) -> List[Dict[str, Any]]:
        command = ["snapshots"]
        for tag in tags:
            command.extend(["--tag", tag])
        result = await self._run(config, command, operation="snapshots")
        try:
            data = json.loads(result.stdout or "[]")
        except json.JSONDecodeError as exc:
            raise BackupEngineError(f"Restic snapshots output could not be parsed: {exc}") from exc
        if not isinstance(data, list):
            raise BackupEngineError("Restic snapshots output is not a list")
        return data

    async def forget(self, config: Any, policy: RetentionPolicy, *, tag: str) -> None:
        command = ["forget", "--group-by", "tags", "--tag", tag, *policy.to_restic_args(), "--prune"]
        await self._run(config, command, operation="forget")

    async def delete_snapshot(self, config: Any, snapshot_id: str) -> None:
        await self._run(config, ["forget", snapshot_id, "--prune"], operation="snapshot deletion")

    async def unlock(self, config: Any) -> Dict[str, Any]:
        await self._run(config, ["unlock", "--remove-all"], operation="unlock")
        logger.info("Restic unlock succeeded for repository: %s", self.repo_url(config))
        return {"success": True, "message": "Repository unlocked successfully"}

    async def check(self, config: Any, *, read_data: bool = False) -> CheckResult:
        command = ["check"]
        if read_data:
            command.append("--read-data")
        result = await self._run(config, command, operation="check", check=False)

        if result.exit_code != 0:
            logger.error("Restic check failed: %s", result.stderr.strip())
            return CheckResult(success=False, has_errors=True, output=result.stdout, error=result.stderr.strip())

        has_errors = "Fatal" in result.stdout
        logger.info("Restic check completed for repository: %s", self.repo_url(config))
        return CheckResult(
            success=not has_errors,
            has_errors=has_errors,
            output=result.stdout,
            error="Repository contains errors" if has_errors else None,
        )

    async def repair_index(self, config: Any) -> Dict[str, Any]:
        result = await self._run(config, ["repair", "index"], operation="repair index")
        logger.info("Restic repair index completed for repository: %s", self.repo_url(config))
        return {"success": True, "output": result.stdout, "message": "Index repaired successfully"}

    async def copy(
        self,
        source_config: Any,
        dest_config: Any,
        *,
        tag: Optional[str] = None,
        snapshot_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Copy snapshots from `source_config` into `dest_config`."""

        source_url = self.repo_url(source_config)
        dest_url = self.repo_url(dest_config)
        source_env = self.build_env(source_config)
        try:
            dest_env = self.build_env(dest_config)
        except Exception:
            source_env.cleanup()
            raise

        merged = ResticEnvironment(
            env={**source_env.env, **dest_env.env, "RESTIC_FROM_PASSWORD_FILE": source_env.password_file},
            ssh_args=dest_env.ssh_args,
        )

        args = ["--repo", dest_url, "copy", "--from-repo", source_url]
        if tag:
            args.extend(["--tag", tag])
        args.append(snapshot_id or "latest")
        args.extend(merged.common_args())
        if source_env.ssh_args and source_env.ssh_args != dest_env.ssh_args:
            args.extend(["-o", f"sftp.args={source_env.ssh_args}"])

        logger.info("Copying snapshots from %s to %s...", source_url, dest_url)
        try:
            result = await self._execute(args, merged)
        finally:
            source_env.cleanup()
            dest_env.cleanup()

        if result.exit_code != 0:
            logger.error("Restic copy failed: %s", result.stderr.strip())
            raise ResticError(result.exit_code, result.stderr)

        logger.info("Restic copy completed from %s to %s", source_url, dest_url)
        return {"success": True, "output": result.stdout}

    async def ls(self, config: Any, snapshot_id: str, path: Optional[str] = None) -> Dict[str, Any]:
        """List a snapshot's tree. The first JSON record describes the snapshot."""

        command = ["ls", snapshot_id, "--long"]
        if path:
            command.append(path)
        result = await self._run(config, command, operation="ls")

        records = _parse_json_lines(result.stdout)
        if not records:
            return {"snapshot": None, "nodes": []}

        snapshot, rest = records[0], records[1:]
        nodes = [r for r in rest if r.get("struct_type") == "node" or r.get("message_type") == "node"]
        return {"snapshot": snapshot, "nodes": nodes}

    async def restore(
        self,
        config: Any,
        snapshot_id: str,
        target: str,
        *,
        include: Sequence[str] = (),
        exclude: Sequence[str] = (),
        exclude_xattr: Sequence[str] = (),
        delete: bool = False,
        overwrite: Optional[str] = None,
    ) -> Dict[str, Any]:
        command = ["restore", snapshot_id, "--target", target]
        if overwrite:
            command.extend(["--overwrite", overwrite])
        if delete:
            command.append("--delete")
        for pattern in include:
            command.extend(["--include", pattern])
        for pattern in exclude:
            command.extend(["--exclude", pattern])
        for xattr in exclude_xattr:
            command.extend(["--exclude-xattr", xattr])

        result = await self._run(config, command, operation="restore")

        summary = {
            "message_type": "summary",
            "total_files": 0,
            "files_restored": 0,
            "files_skipped": 0,
            "bytes_skipped": 0,
        }
        for record in reversed(_parse_json_lines(result.stdout)):
            if record.get("message_type") == "summary":
                summary = record
                break

        logger.info(
            "Restic restore completed for snapshot %s to target %s: %s restored, %s skipped",
            snapshot_id,
            target,
            summary.get("files_restored", 0),
            summary.get("files_skipped", 0),
        )
        return summary
