"""Runtime configuration for admission, workers and the resolution pipeline."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

_LOCK_BACKENDS = {"local", "sqlite"}
_FALLBACK_POLICIES = {"prefer_ours", "prefer_theirs", "manual_only"}


@dataclass(slots=True)
class AdmissionSettings:
    """Per-window admission limits; 0 leaves a scope unlimited."""

    window_seconds: int = 60
    global_limit: int = 0
    organization_limit: int = 0
    user_limit: int = 0
    operation_limits: dict[str, int] = field(default_factory=dict)
    warning_threshold: float = 0.8


@dataclass(slots=True)
class WorkerSettings:
    """Worker pool, repository lease and retry backoff settings."""

    worker_count: int = 2
    worker_id_prefix: str = "worker"
    poll_interval_seconds: float = 1.0
    lease_ttl_seconds: float = 60.0
    lease_renew_seconds: float = 20.0
    lock_backend: str = "sqlite"
    retry_base_seconds: float = 30.0
    retry_max_seconds: float = 900.0
    default_max_retries: int = 3
    max_rebase_rounds: int = 100


@dataclass(slots=True)
class PipelineSettings:
    """Conflict resolution pipeline settings."""

    context_lines: int = 10
    max_context_chars: int = 8000
    generation_timeout_seconds: float = 120.0
    test_timeout_seconds: float = 300.0
    test_command: str = ""
    max_consecutive_timeouts: int = 3
    fallback_policy: str = "prefer_ours"
    max_parallel_files: int = 4


@dataclass(slots=True)
class GeneratorSettings:
    """CLI agent used as candidate generator; empty command means fallback only."""

    command_template: str = ""
    workdir_root: Path = Path(".rebase_pilot/prompts")


@dataclass(slots=True)
class GitSettings:
    workdir_root: Path = Path(".rebase_pilot/workdirs")
    remote_name: str = "origin"
    timeout_seconds: float = 600.0
    push_enabled: bool = True


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".rebase_pilot.db")
    sqlite_busy_timeout_ms: int = 5000
    admission: AdmissionSettings = field(default_factory=AdmissionSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    pipeline: PipelineSettings = field(default_factory=PipelineSettings)
    generator: GeneratorSettings = field(default_factory=GeneratorSettings)
    git: GitSettings = field(default_factory=GitSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("REBASE_PILOT_DB_PATH", ".rebase_pilot.db")),
            sqlite_busy_timeout_ms=int(os.getenv("REBASE_PILOT_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            admission=AdmissionSettings(
                window_seconds=int(os.getenv("REBASE_PILOT_ADMISSION_WINDOW_SECONDS", "60")),
                global_limit=int(os.getenv("REBASE_PILOT_ADMISSION_GLOBAL_LIMIT", "0")),
                organization_limit=int(os.getenv("REBASE_PILOT_ADMISSION_ORG_LIMIT", "0")),
                user_limit=int(os.getenv("REBASE_PILOT_ADMISSION_USER_LIMIT", "0")),
                operation_limits=_collect_operation_limits(),
                warning_threshold=float(
                    os.getenv("REBASE_PILOT_ADMISSION_WARNING_THRESHOLD", "0.8"),
                ),
            ),
            worker=WorkerSettings(
                worker_count=int(os.getenv("REBASE_PILOT_WORKER_COUNT", "2")),
                worker_id_prefix=os.getenv("REBASE_PILOT_WORKER_ID_PREFIX", "worker"),
                poll_interval_seconds=float(os.getenv("REBASE_PILOT_WORKER_POLL_SECONDS", "1.0")),
                lease_ttl_seconds=float(os.getenv("REBASE_PILOT_LEASE_TTL_SECONDS", "60")),
                lease_renew_seconds=float(os.getenv("REBASE_PILOT_LEASE_RENEW_SECONDS", "20")),
                lock_backend=os.getenv("REBASE_PILOT_LOCK_BACKEND", "sqlite").strip().lower(),
                retry_base_seconds=float(os.getenv("REBASE_PILOT_RETRY_BASE_SECONDS", "30")),
                retry_max_seconds=float(os.getenv("REBASE_PILOT_RETRY_MAX_SECONDS", "900")),
                default_max_retries=int(os.getenv("REBASE_PILOT_DEFAULT_MAX_RETRIES", "3")),
                max_rebase_rounds=int(os.getenv("REBASE_PILOT_MAX_REBASE_ROUNDS", "100")),
            ),
            pipeline=PipelineSettings(
                context_lines=int(os.getenv("REBASE_PILOT_CONTEXT_LINES", "10")),
                max_context_chars=int(os.getenv("REBASE_PILOT_MAX_CONTEXT_CHARS", "8000")),
                generation_timeout_seconds=float(
                    os.getenv("REBASE_PILOT_GENERATION_TIMEOUT_SECONDS", "120"),
                ),
                test_timeout_seconds=float(os.getenv("REBASE_PILOT_TEST_TIMEOUT_SECONDS", "300")),
                test_command=os.getenv("REBASE_PILOT_TEST_COMMAND", "").strip(),
                max_consecutive_timeouts=int(
                    os.getenv("REBASE_PILOT_MAX_CONSECUTIVE_TIMEOUTS", "3"),
                ),
                fallback_policy=os.getenv("REBASE_PILOT_FALLBACK_POLICY", "prefer_ours")
                .strip()
                .lower(),
                max_parallel_files=int(os.getenv("REBASE_PILOT_MAX_PARALLEL_FILES", "4")),
            ),
            generator=GeneratorSettings(
                command_template=os.getenv("REBASE_PILOT_GENERATOR_COMMAND", "").strip(),
                workdir_root=Path(
                    os.getenv("REBASE_PILOT_GENERATOR_WORKDIR", ".rebase_pilot/prompts"),
                ),
            ),
            git=GitSettings(
                workdir_root=Path(os.getenv("REBASE_PILOT_GIT_WORKDIR", ".rebase_pilot/workdirs")),
                remote_name=os.getenv("REBASE_PILOT_GIT_REMOTE", "origin"),
                timeout_seconds=float(os.getenv("REBASE_PILOT_GIT_TIMEOUT_SECONDS", "600")),
                push_enabled=_env_bool("REBASE_PILOT_GIT_PUSH", default=True),
            ),
        )

    def validate(self) -> None:  # noqa: C901
        """Raise configuration error naming the offending variable."""

        if self.admission.window_seconds <= 0:
            raise ValueError("REBASE_PILOT_ADMISSION_WINDOW_SECONDS must be > 0.")
        for name, value in (
            ("REBASE_PILOT_ADMISSION_GLOBAL_LIMIT", self.admission.global_limit),
            ("REBASE_PILOT_ADMISSION_ORG_LIMIT", self.admission.organization_limit),
            ("REBASE_PILOT_ADMISSION_USER_LIMIT", self.admission.user_limit),
        ):
            if value < 0:
                raise ValueError(f"{name} must be >= 0.")
        if not 0 < self.admission.warning_threshold <= 1:
            raise ValueError("REBASE_PILOT_ADMISSION_WARNING_THRESHOLD must be in (0, 1].")
        if self.worker.worker_count <= 0:
            raise ValueError("REBASE_PILOT_WORKER_COUNT must be > 0.")
        if self.worker.lease_ttl_seconds <= 0:
            raise ValueError("REBASE_PILOT_LEASE_TTL_SECONDS must be > 0.")
        if not 0 < self.worker.lease_renew_seconds < self.worker.lease_ttl_seconds:
            raise ValueError(
                "REBASE_PILOT_LEASE_RENEW_SECONDS must be > 0 and below "
                "REBASE_PILOT_LEASE_TTL_SECONDS.",
            )
        if self.worker.lock_backend not in _LOCK_BACKENDS:
            raise ValueError(
                f"REBASE_PILOT_LOCK_BACKEND must be one of {sorted(_LOCK_BACKENDS)}, "
                f"got {self.worker.lock_backend!r}.",
            )
        if self.worker.retry_base_seconds < 0 or self.worker.retry_max_seconds < 0:
            raise ValueError("REBASE_PILOT_RETRY_BASE_SECONDS/MAX_SECONDS must be >= 0.")
        if self.worker.default_max_retries < 0:
            raise ValueError("REBASE_PILOT_DEFAULT_MAX_RETRIES must be >= 0.")
        if self.pipeline.context_lines < 0:
            raise ValueError("REBASE_PILOT_CONTEXT_LINES must be >= 0.")
        if self.pipeline.max_context_chars <= 0:
            raise ValueError("REBASE_PILOT_MAX_CONTEXT_CHARS must be > 0.")
        if self.pipeline.generation_timeout_seconds <= 0:
            raise ValueError("REBASE_PILOT_GENERATION_TIMEOUT_SECONDS must be > 0.")
        if self.pipeline.test_timeout_seconds <= 0:
            raise ValueError("REBASE_PILOT_TEST_TIMEOUT_SECONDS must be > 0.")
        if self.pipeline.test_command and "{test_path}" not in self.pipeline.test_command:
            raise ValueError("REBASE_PILOT_TEST_COMMAND must include {test_path}.")
        if self.pipeline.max_consecutive_timeouts <= 0:
            raise ValueError("REBASE_PILOT_MAX_CONSECUTIVE_TIMEOUTS must be > 0.")
        if self.pipeline.max_parallel_files <= 0:
            raise ValueError("REBASE_PILOT_MAX_PARALLEL_FILES must be > 0.")
        if self.pipeline.fallback_policy not in _FALLBACK_POLICIES:
            raise ValueError(
                f"REBASE_PILOT_FALLBACK_POLICY must be one of {sorted(_FALLBACK_POLICIES)}, "
                f"got {self.pipeline.fallback_policy!r}.",
            )


def _collect_operation_limits() -> dict[str, int]:
    raw = os.getenv("REBASE_PILOT_ADMISSION_OPERATION_LIMITS", "").strip()
    if not raw:
        return {}

    limits: dict[str, int] = {}
    for part in raw.split(","):
        token = part.strip()
        if not token:
            continue
        if ":" not in token:
            raise ValueError(
                "Invalid REBASE_PILOT_ADMISSION_OPERATION_LIMITS entry: "
                f"{token!r}. Expected format '<operation>:<limit>'.",
            )
        operation, limit_raw = token.rsplit(":", 1)
        operation = operation.strip()
        try:
            limit = int(limit_raw.strip())
        except ValueError as error:
            raise ValueError(
                f"Invalid REBASE_PILOT_ADMISSION_OPERATION_LIMITS value for {operation!r}: "
                f"{limit_raw.strip()!r}",
            ) from error
        if not operation or limit < 0:
            raise ValueError(
                f"Invalid REBASE_PILOT_ADMISSION_OPERATION_LIMITS entry: {token!r} "
                "(operation must be non-empty and limit >= 0)",
            )
        limits[operation] = limit
    return limits


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
