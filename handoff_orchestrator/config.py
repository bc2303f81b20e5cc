"""환경 변수 기반 런타임 설정.

현재 디렉토리의 `.env`와 다음 환경 변수를 읽는다 (환경 변수가 우선):

    HANDOFF_CONFIG          파이프라인 YAML 경로 (기본값: orchestration.yaml)
    HANDOFF_ARTIFACTS_DIR   태스크 산출물 저장 디렉토리 (기본값: .handoff/tasks)
    HANDOFF_MAX_REVISIONS   파이프라인 설정의 수정 한도를 덮어쓸 값 (0 이상)
    HANDOFF_LOG_LEVEL       로그 레벨 (기본값: WARNING)
"""

from __future__ import annotations

import logging
from pathlib import Path

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from handoff_orchestrator.errors import ConfigurationError

ENV_PREFIX = "HANDOFF_"

DEFAULT_CONFIG_PATH = Path("orchestration.yaml")
DEFAULT_ARTIFACTS_DIR = Path(".handoff") / "tasks"
DEFAULT_LOG_LEVEL = "WARNING"

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


class OrchestrationConfig(BaseSettings):
    """CLI와 라이브러리 호출자가 공유하는 런타임 설정."""

    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        env_file=".env",
        env_file_encoding="utf-8",
        env_ignore_empty=True,
        extra="ignore",
        frozen=True,
    )

    config: Path = Field(default=DEFAULT_CONFIG_PATH, description="파이프라인 YAML 경로")
    artifacts_dir: Path = Field(default=DEFAULT_ARTIFACTS_DIR, description="태스크 산출물 디렉토리")
    max_revisions: int | None = Field(default=None, ge=0, description="수정 한도 덮어쓰기")
    log_level: str = Field(default=DEFAULT_LOG_LEVEL, description="로그 레벨")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.strip().upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"알 수 없는 로그 레벨: {v}")
        return level

    @property
    def config_path(self) -> Path:
        return self.config

    @classmethod
    def from_env(cls, *, dotenv: bool = True) -> OrchestrationConfig:
        """환경 변수(와 `.env`)에서 설정을 읽는다.

        Args:
            dotenv: False이면 `.env` 파일을 읽지 않는다.

        Raises:
            ConfigurationError: 값의 형식이 잘못된 경우. 메시지에 변수 이름이 포함된다.
        """
        try:
            if dotenv:
                return cls()
            return cls(_env_file=None)
        except ValidationError as e:
            problems = []
            for error in e.errors():
                name = ENV_PREFIX + "_".join(str(part) for part in error["loc"]).upper()
                problems.append(f"{name}: {error['msg']}")
            raise ConfigurationError("; ".join(problems)) from e

    def with_overrides(self, **overrides: object) -> OrchestrationConfig:
        """None이 아닌 값만 덮어쓴 새 설정을 반환한다."""
        return self.model_copy(update={k: v for k, v in overrides.items() if v is not None})


def configure_logging(level: str) -> None:
    logging.basicConfig(level=level, format=LOG_FORMAT)
