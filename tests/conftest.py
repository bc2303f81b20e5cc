import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest
import yaml

_REPO_ROOT = Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

from handoff_orchestrator.handoff.artifact import (  # noqa: E402
    Criterion,
    CriterionStatus,
    HandoffArtifact,
    PatternReference,
    ScopeBoundaries,
    Stage,
    Verification,
)
from handoff_orchestrator.handoff.store import ArtifactStore  # noqa: E402
from handoff_orchestrator.orchestration.executor import AgentInvocation  # noqa: E402
from handoff_orchestrator.profiles.loader import PipelineDefinition, load_pipeline  # noqa: E402
from handoff_orchestrator.skills.registry import SkillRegistry  # noqa: E402

SKILLS: dict[str, dict[str, Any]] = {
    "spec-writing": {
        "description": "How to write a measurable specification",
    },
    "backend-patterns": {
        "description": "Layered service and repository patterns",
    },
    "code-review": {
        "description": "Review checklist for pull requests",
        "aliases": ["review"],
    },
    "security": {
        "description": "OWASP-oriented security review",
    },
    "prisma": {
        "description": "Prisma ORM schema and query patterns",
        "triggers": ["prisma", "schema.prisma", "database migration"],
    },
    "drizzle": {
        "description": "Drizzle ORM patterns",
        "triggers": ["drizzle"],
        "conflicts-with": ["prisma"],
    },
    "websockets": {
        "description": "Real-time messaging with WebSockets",
        "triggers": ["socket.io"],
        "requires": ["backend-patterns"],
    },
    "tailwind": {
        "description": "Tailwind CSS utility patterns",
        "triggers": ["tailwind"],
        "invocation-name": "tailwind-css",
    },
    "testing": {
        "description": "Test pyramid and fixture patterns",
    },
    "internal-notes": {
        "description": "Maintainer notes that are never attached automatically",
        "triggers": ["notes"],
        "disable-model-invocation": True,
    },
}


def write_skill(root: Path, name: str, frontmatter: dict[str, Any], body: str = "") -> Path:
    skill_dir = root / name
    skill_dir.mkdir(parents=True, exist_ok=True)
    header = yaml.safe_dump({"name": name, **frontmatter}, sort_keys=False)
    path = skill_dir / "SKILL.md"
    path.write_text(f"---\n{header}---\n\n{body or f'# {name}'}\n", encoding="utf-8")
    return path


def profile_definitions() -> list[dict[str, Any]]:
    return [
        {
            "id": "pm",
            "display_name": "Product Manager",
            "allowed_tools": ["Read", "Write"],
            "preloaded_skills": ["spec-writing"],
            "critical_requirements": [
                {
                    "id": "task-described",
                    "statement": "MUST understand the request before writing a spec",
                    "phase": "pre",
                    "check": "description_present",
                },
                {
                    "id": "declare-criteria",
                    "statement": "Every spec declares measurable success criteria",
                    "phase": "post",
                    "check": "success_criteria_declared",
                },
                {
                    "id": "declare-scope",
                    "statement": "Every spec states what is in and out of scope",
                    "phase": "post",
                    "check": "scope_declared",
                },
            ],
            "domain_scope": {"handles": ["requirements"]},
        },
        {
            "id": "backend-developer",
            "display_name": "Backend Developer",
            "allowed_tools": ["Read", "Write", "Edit", "Bash"],
            "preloaded_skills": ["backend-patterns"],
            "dynamic_skills": {"prisma": "prisma", "websocket": "websockets"},
            "critical_requirements": [
                {
                    "id": "spec-first",
                    "statement": "MUST read the active spec before any work",
                    "phase": "pre",
                    "check": "requires_stage",
                    "params": {"stage": "Spec"},
                },
                {
                    "id": "cite-patterns",
                    "statement": "MUST follow existing code patterns",
                    "phase": "post",
                    "check": "pattern_references_exist",
                },
                {
                    "id": "real-files",
                    "statement": "Every modified-file claim references a real path",
                    "phase": "post",
                    "check": "modified_files_exist",
                },
            ],
            "domain_scope": {"handles": ["rest-api", "prisma-schema"]},
        },
        {
            "id": "backend-reviewer",
            "display_name": "Backend Reviewer",
            "allowed_tools": ["Read", "Grep", "Glob"],
            "preloaded_skills": ["review", "security"],
            "critical_requirements": [
                {
                    "id": "verify-every-criterion",
                    "statement": "Never report success without verification",
                    "phase": "post",
                    "check": "criteria_verified",
                },
            ],
            "domain_scope": {
                "handles": ["rest-api", "prisma-schema"],
                "defers_to": {"react-component": "frontend-reviewer"},
            },
        },
        {
            "id": "frontend-reviewer",
            "display_name": "Frontend Reviewer",
            "allowed_tools": ["Read", "Grep"],
            "preloaded_skills": ["code-review"],
            "dynamic_skills": {"tailwind": "tailwind"},
            "critical_requirements": [
                {
                    "id": "verify-every-criterion",
                    "statement": "Never report success without verification",
                    "phase": "post",
                    "check": "criteria_verified",
                },
            ],
            "domain_scope": {"handles": ["react-component", "styling"]},
        },
        {
            "id": "tester",
            "display_name": "Tester",
            "allowed_tools": ["Read", "Bash"],
            "preloaded_skills": ["testing"],
            "critical_requirements": [
                {
                    "id": "reviewed-first",
                    "statement": "Only test code that passed review",
                    "phase": "pre",
                    "check": "requires_stage",
                },
                {
                    "id": "verify-every-criterion",
                    "statement": "Never report success without verification",
                    "phase": "post",
                    "check": "criteria_verified",
                },
            ],
            "domain_scope": {"handles": ["testing"]},
        },
    ]


@pytest.fixture
def skills_dir(tmp_path: Path) -> Path:
    root = tmp_path / "skills"
    for name, frontmatter in SKILLS.items():
        write_skill(root, name, frontmatter, body=f"# {name}\n\nUse the {name} patterns.")
    return root


@pytest.fixture
def skill_registry(skills_dir: Path) -> SkillRegistry:
    return SkillRegistry.from_directories([skills_dir])


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    root = tmp_path / "workspace"
    (root / "src" / "api").mkdir(parents=True)
    (root / "src" / "web").mkdir(parents=True)
    (root / "src" / "api" / "users.ts").write_text(
        "\n".join(f"// line {i}" for i in range(1, 31)) + "\n", encoding="utf-8"
    )
    (root / "src" / "web" / "UserCard.tsx").write_text(
        "export const UserCard = () => null;\n", encoding="utf-8"
    )
    return root


@pytest.fixture
def pipeline_file(tmp_path: Path, skills_dir: Path, workspace: Path) -> Path:
    path = tmp_path / "orchestration.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "skills_dirs": ["skills"],
                "agents": profile_definitions(),
                "pipeline": {
                    "Spec": "pm",
                    "Implementation": "backend-developer",
                    "Review": "backend-reviewer",
                    "TestReport": "tester",
                },
                "reviewers": ["backend-reviewer", "frontend-reviewer"],
                "max_revisions": 2,
                "workspace_root": "workspace",
            },
            sort_keys=False,
        ),
        encoding="utf-8",
    )
    return path


def _verification_for(invocation: AgentInvocation) -> tuple[Verification, ...]:
    spec = invocation.context.latest_of_stage(Stage.SPEC)
    criteria = spec.success_criteria if spec else ()
    return tuple(
        Verification(criterion=c.id, status=CriterionStatus.MET, evidence=f"{c.id} checked")
        for c in criteria
    )


def good_artifact(invocation: AgentInvocation) -> HandoffArtifact:
    """각 단계의 사후 조건을 모두 통과하는 산출물."""
    common = {
        "task_id": invocation.task_id,
        "stage": invocation.stage,
        "produced_by": invocation.profile.id,
        "summary": f"{invocation.stage.value} for {invocation.task_id}",
    }
    if invocation.stage == Stage.SPEC:
        return HandoffArtifact(
            **common,
            topics=("requirements",),
            scope_boundaries=ScopeBoundaries(("src/api/users.ts",), ("src/web/",)),
            success_criteria=tuple(
                Criterion(f"AC-{i}", f"criterion {i}") for i in range(1, 4)
            ),
        )
    if invocation.stage == Stage.IMPLEMENTATION:
        return HandoffArtifact(
            **common,
            topics=("rest-api",),
            pattern_references=(PatternReference("src/api/users.ts", (1, 10)),),
            modified_files=("src/api/users.ts",),
        )
    return HandoffArtifact(
        **common,
        topics=("rest-api",),
        verification=_verification_for(invocation),
    )


class ScriptedExecutor:
    """단계별로 준비된 응답을 순서대로 돌려주는 테스트용 실행기.

    응답이 소진된 단계는 `good_artifact`로 응답한다.
    """

    def __init__(
        self,
        script: dict[Stage, list[Callable[[AgentInvocation], HandoffArtifact]]] | None = None,
    ) -> None:
        self.script = {stage: list(steps) for stage, steps in (script or {}).items()}
        self.invocations: list[AgentInvocation] = []
        self.on_execute: Callable[[AgentInvocation], None] | None = None

    def execute(self, invocation: AgentInvocation) -> HandoffArtifact:
        self.invocations.append(invocation)
        if self.on_execute is not None:
            self.on_execute(invocation)
        steps = self.script.get(invocation.stage)
        if steps:
            return steps.pop(0)(invocation)
        return good_artifact(invocation)

    async def aexecute(self, invocation: AgentInvocation) -> HandoffArtifact:
        return self.execute(invocation)


@pytest.fixture
def executor_factory() -> type[ScriptedExecutor]:
    return ScriptedExecutor


@pytest.fixture
def artifact_factory() -> Callable[[AgentInvocation], HandoffArtifact]:
    return good_artifact


@pytest.fixture
def make_skill() -> Callable[..., Path]:
    return write_skill


@pytest.fixture
def profile_data() -> list[dict[str, Any]]:
    return profile_definitions()


@pytest.fixture
def pipeline(pipeline_file: Path) -> PipelineDefinition:
    return load_pipeline(pipeline_file)


@pytest.fixture
def store(tmp_path: Path) -> ArtifactStore:
    return ArtifactStore(tmp_path / "tasks")
