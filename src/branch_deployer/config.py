"""Runtime configuration for the deploy dispatcher and its HTTP surface."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass(slots=True)
class DeploySettings:
    """Deployment target settings."""

    app_repository: str = ""
    deploy_command: str = ""
    repo_dir: Path = Path("repo")
    logs_root: Path = Path("file")
    shell: str = "bash"


@dataclass(slots=True)
class DispatcherSettings:
    """Background dispatcher settings."""

    wake_timeout_seconds: float = 30.0
    recover_interrupted: bool = True
    sqlite_busy_timeout_ms: int = 5_000


@dataclass(slots=True)
class HttpSettings:
    """REST server bind settings."""

    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8080


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".branch_deployer.db")
    deploy: DeploySettings = field(default_factory=DeploySettings)
    dispatcher: DispatcherSettings = field(default_factory=DispatcherSettings)
    http: HttpSettings = field(default_factory=HttpSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path
            or Path(os.getenv("BRANCH_DEPLOYER_DB_PATH", ".branch_deployer.db")),
            deploy=DeploySettings(
                app_repository=os.getenv("BRANCH_DEPLOYER_APP_REPOSITORY", "").strip(),
                deploy_command=os.getenv("BRANCH_DEPLOYER_DEPLOY_COMMAND", "").strip(),
                repo_dir=Path(os.getenv("BRANCH_DEPLOYER_REPO_DIR", "repo")),
                logs_root=Path(os.getenv("BRANCH_DEPLOYER_LOGS_ROOT", "file")),
                shell=os.getenv("BRANCH_DEPLOYER_SHELL", "bash").strip() or "bash",
            ),
            dispatcher=DispatcherSettings(
                wake_timeout_seconds=float(
                    os.getenv("BRANCH_DEPLOYER_WAKE_TIMEOUT_SECONDS", "30"),
                ),
                recover_interrupted=_env_bool(
                    "BRANCH_DEPLOYER_RECOVER_INTERRUPTED",
                    default=True,
                ),
                sqlite_busy_timeout_ms=int(
                    os.getenv("BRANCH_DEPLOYER_SQLITE_BUSY_TIMEOUT_MS", "5000"),
                ),
            ),
            http=HttpSettings(
                host=os.getenv("BRANCH_DEPLOYER_HOST", "0.0.0.0"),  # noqa: S104
                port=int(os.getenv("BRANCH_DEPLOYER_PORT", "8080")),
            ),
        )

    def validate_for_dispatcher(self) -> None:
        """Raise configuration error if the dispatcher cannot run a deployment."""

        if not self.deploy.deploy_command:
            raise ValueError("BRANCH_DEPLOYER_DEPLOY_COMMAND must be set.")
        if self.dispatcher.wake_timeout_seconds <= 0:
            raise ValueError("BRANCH_DEPLOYER_WAKE_TIMEOUT_SECONDS must be > 0.")
        if self.dispatcher.sqlite_busy_timeout_ms <= 0:
            raise ValueError("BRANCH_DEPLOYER_SQLITE_BUSY_TIMEOUT_MS must be > 0.")

    def validate_for_init(self) -> None:
        """Raise configuration error if the working copy cannot be recreated."""

        if not self.deploy.app_repository:
            raise ValueError("BRANCH_DEPLOYER_APP_REPOSITORY must be set.")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
