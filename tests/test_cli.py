"""`handoff` CLI 단위 테스트.

모든 테스트는 임시 디렉토리의 파이프라인 설정과 스크립트 실행기를 사용한다.
"""

import sys
from dataclasses import replace
from pathlib import Path
from types import ModuleType

import click
import pytest
import yaml
from click.testing import CliRunner
from rich.console import Console

from handoff_orchestrator import __version__
from handoff_orchestrator.cli import make_cli
from handoff_orchestrator.handoff.artifact import Stage
from handoff_orchestrator.handoff.store import ArtifactStore


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    for name in (
        "HANDOFF_CONFIG",
        "HANDOFF_ARTIFACTS_DIR",
        "HANDOFF_MAX_REVISIONS",
        "HANDOFF_LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr("handoff_orchestrator.cli.console", Console(width=200))
    monkeypatch.setattr("handoff_orchestrator.cli.error_console", Console(width=200, stderr=True))


@pytest.fixture
def artifacts_dir(tmp_path: Path) -> Path:
    return tmp_path / "tasks"


@pytest.fixture
def executor(executor_factory):
    return executor_factory()


@pytest.fixture
def cli(executor) -> click.Group:
    return make_cli(lambda pipeline: executor)


@pytest.fixture
def invoke(cli: click.Group, pipeline_file: Path, artifacts_dir: Path):
    runner = CliRunner()

    def _invoke(*args: str, group: click.Group | None = None, **kwargs):
        return runner.invoke(
            group or cli,
            ["--config", str(pipeline_file), "--artifacts-dir", str(artifacts_dir), *args],
            obj={},
            **kwargs,
        )

    return _invoke


class TestRun:
    def test_completes_task(self, invoke, executor, artifacts_dir: Path):
        result = invoke("run", "TASK-1", "-d", "Add pagination to the users API")

        assert result.exit_code == 0, result.output
        assert "DONE" in result.output
        assert [i.stage for i in executor.invocations] == [
            Stage.SPEC,
            Stage.IMPLEMENTATION,
            Stage.REVIEW,
            Stage.TEST_REPORT,
        ]
        assert len(ArtifactStore(artifacts_dir).records("TASK-1")) == 4

    def test_blocked_task_exits_1(self, invoke, executor):
        result = invoke("run", "TASK-1", "-d", "")

        assert result.exit_code == 1
        assert "BLOCKED" in result.output
        assert "task-described" in result.output
        assert executor.invocations == []

    def test_description_file(self, invoke, executor, tmp_path: Path):
        path = tmp_path / "task.md"
        path.write_text("Add pagination to the users API\n", encoding="utf-8")

        result = invoke("run", "TASK-1", "--description-file", str(path))

        assert result.exit_code == 0, result.output
        assert executor.invocations[0].context.description.startswith("Add pagination")

    def test_description_sources_are_exclusive(self, invoke, tmp_path: Path):
        path = tmp_path / "task.md"
        path.write_text("x", encoding="utf-8")

        result = invoke("run", "TASK-1", "-d", "y", "--description-file", str(path))

        assert result.exit_code == 2

    def test_values_are_passed_to_context(self, invoke, executor):
        result = invoke("run", "TASK-1", "-d", "Paginate", "--set", "ticket=42", "--set", "team=api")

        assert result.exit_code == 0, result.output
        assert executor.invocations[0].context.values == {"ticket": 42, "team": "api"}

    def test_malformed_value(self, invoke):
        result = invoke("run", "TASK-1", "-d", "Paginate", "--set", "no-equals-sign")

        assert result.exit_code == 2
        assert "KEY=VALUE" in result.output

    def test_unparseable_value(self, invoke, executor):
        result = invoke("run", "TASK-1", "-d", "Paginate", "--set", "tags=[unclosed")

        assert result.exit_code == 2
        assert "tags" in result.output
        assert executor.invocations == []

    def test_async_path(self, invoke):
        result = invoke("run", "TASK-1", "-d", "Paginate", "--async")

        assert result.exit_code == 0, result.output
        assert "DONE" in result.output

    def test_max_revisions_override(self, invoke, executor, artifact_factory):
        executor.script[Stage.IMPLEMENTATION] = [
            lambda invocation: replace(artifact_factory(invocation), pattern_references=())
        ]

        result = invoke("run", "TASK-1", "-d", "Paginate", "--max-revisions", "0")

        assert result.exit_code == 1
        assert "MAX_REVISIONS_EXCEEDED" in result.output
        assert "cite-patterns" in result.output

    def test_negative_max_revisions_rejected(self, invoke):
        result = invoke("run", "TASK-1", "-d", "Paginate", "--max-revisions", "-1")

        assert result.exit_code == 2


class TestExecutorResolution:
    @pytest.fixture
    def executor_module(self, monkeypatch: pytest.MonkeyPatch, executor_factory) -> ModuleType:
        module = ModuleType("fake_executors")
        module.build = lambda pipeline: executor_factory()
        module.instance = executor_factory()
        module.not_an_executor = lambda pipeline: object()
        monkeypatch.setitem(sys.modules, "fake_executors", module)
        return module

    def test_without_executor_is_config_failure(self, invoke):
        result = invoke("run", "TASK-1", "-d", "Paginate", group=make_cli())

        assert result.exit_code == 2
        assert "--executor" in result.output

    @pytest.mark.parametrize("target", ["fake_executors:build", "fake_executors:instance"])
    def test_executor_option(self, invoke, executor_module: ModuleType, target: str):
        result = invoke("run", "TASK-1", "-d", "Paginate", "--executor", target, group=make_cli())

        assert result.exit_code == 0, result.output

    @pytest.mark.parametrize(
        "target",
        [
            "fake_executors",
            "fake_executors:missing",
            "fake_executors:not_an_executor",
            "no_such_module_for_handoff:build",
        ],
    )
    def test_invalid_executor_target(self, invoke, executor_module: ModuleType, target: str):
        result = invoke("run", "TASK-1", "-d", "Paginate", "--executor", target, group=make_cli())

        assert result.exit_code == 2


class TestConfigurationFailures:
    def test_missing_pipeline_file(self, executor, artifacts_dir: Path, tmp_path: Path):
        result = CliRunner().invoke(
            make_cli(lambda pipeline: executor),
            ["--config", str(tmp_path / "missing.yaml"), "--artifacts-dir", str(artifacts_dir),
             "run", "TASK-1", "-d", "Paginate"],
            obj={},
        )

        assert result.exit_code == 2
        assert executor.invocations == []

    def test_profile_with_unknown_skill(self, invoke, pipeline_file: Path, executor):
        data = yaml.safe_load(pipeline_file.read_text(encoding="utf-8"))
        data["agents"][0]["preloaded_skills"].append("security-audit")
        pipeline_file.write_text(yaml.safe_dump(data), encoding="utf-8")

        result = invoke("run", "TASK-1", "-d", "Paginate")

        assert result.exit_code == 2
        assert "security-audit" in result.output
        assert executor.invocations == []

    def test_invalid_environment(self, invoke):
        result = invoke("validate", env={"HANDOFF_MAX_REVISIONS": "many"})

        assert result.exit_code == 2
        assert "HANDOFF_MAX_REVISIONS" in result.output

    def test_environment_max_revisions(self, invoke):
        result = invoke("validate", env={"HANDOFF_MAX_REVISIONS": "5"})

        assert result.exit_code == 0, result.output
        assert "수정 한도 5회" in result.output

    def test_unknown_log_level(self, invoke):
        result = invoke("--log-level", "chatty", "validate")

        assert result.exit_code == 2


class TestStatus:
    def test_after_run(self, invoke):
        invoke("run", "TASK-1", "-d", "Paginate")

        result = invoke("status", "TASK-1")

        assert result.exit_code == 0, result.output
        assert "DONE" in result.output
        assert "레코드:   4" in result.output

    def test_blocked_task_lists_failures(self, invoke):
        invoke("run", "TASK-1", "-d", " ")

        result = invoke("status", "TASK-1")

        assert "BLOCKED" in result.output
        assert "담당:     pm" in result.output
        assert "task-described" in result.output

    def test_unknown_task(self, invoke):
        result = invoke("status", "TASK-9")

        assert result.exit_code == 1
        assert "TASK-9" in result.output

    def test_unsafe_task_id(self, invoke):
        result = invoke("status", "../outside")

        assert result.exit_code == 1


class TestHistory:
    def test_lists_records_in_order(self, invoke, executor, artifact_factory):
        executor.script[Stage.IMPLEMENTATION] = [
            lambda invocation: replace(artifact_factory(invocation), pattern_references=())
        ]
        invoke("run", "TASK-1", "-d", "Paginate")

        result = invoke("history", "TASK-1")

        assert result.exit_code == 0, result.output
        assert "TASK-1 이력" in result.output
        assert "NEEDS_REVISION" in result.output
        assert "cite-patterns" in result.output
        assert result.output.index("Spec") < result.output.index("TestReport")

    def test_full_prints_artifacts(self, invoke):
        invoke("run", "TASK-1", "-d", "Paginate")

        result = invoke("history", "TASK-1", "--full")

        assert "stage: Spec" in result.output
        assert "produced_by: tester" in result.output

    def test_empty_history(self, invoke):
        result = invoke("history", "TASK-9")

        assert result.exit_code == 0
        assert "이력이 없습니다" in result.output


class TestValidate:
    def test_summary(self, invoke):
        result = invoke("validate")

        assert result.exit_code == 0, result.output
        assert "스킬 10개" in result.output
        assert "프로필 5개" in result.output
        assert "backend-developer" in result.output
        assert "수정 한도 2회" in result.output


class TestSkills:
    def test_lists_all_skills(self, invoke):
        result = invoke("skills")

        assert result.exit_code == 0, result.output
        assert "spec-writing" in result.output
        assert "tailwind-css" in result.output

    def test_agent_filter(self, invoke):
        result = invoke("skills", "--agent", "pm")

        assert "spec-writing" in result.output
        assert "backend-patterns" not in result.output

    def test_match(self, invoke):
        result = invoke("skills", "--agent", "backend-developer", "--match", "Add a prisma migration")

        assert result.exit_code == 0, result.output
        assert "사전 로드: backend-patterns" in result.output
        assert "동적:      prisma" in result.output

    def test_match_requires_agent(self, invoke):
        result = invoke("skills", "--match", "prisma")

        assert result.exit_code == 2

    def test_unknown_agent(self, invoke):
        result = invoke("skills", "--agent", "designer")

        assert result.exit_code == 1
        assert "designer" in result.output


def test_version(cli: click.Group):
    result = CliRunner().invoke(cli, ["--version"])

    assert result.exit_code == 0
    assert __version__ in result.output
