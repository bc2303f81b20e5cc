import hashlib
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from types import MappingProxyType

import pytest

from handoff_orchestrator.errors import DuplicateSkillId, SkillNotFound
from handoff_orchestrator.profiles.definitions import (
    AgentProfile,
    RequirementPhase,
    RequirementStatement,
)
from handoff_orchestrator.skills.registry import ResolvedSkills, Skill, SkillRegistry, hash_content


def _profile(
    profile_id: str,
    preloaded: tuple[str, ...] = (),
    dynamic: dict[str, str] | None = None,
) -> AgentProfile:
    return AgentProfile(
        id=profile_id,
        display_name=profile_id,
        allowed_tools=frozenset({"Read"}),
        critical_requirements=(
            RequirementStatement(
                "describe", "Task is described", RequirementPhase.PRE, "description_present"
            ),
        ),
        preloaded_skill_ids=preloaded,
        dynamic_skill_triggers=MappingProxyType(dynamic or {}),
    )


class TestSkillLoading:
    def test_loads_every_skill_in_directory(self, skill_registry: SkillRegistry):
        assert len(skill_registry) == 10
        assert "prisma" in skill_registry.list_ids()
        assert skill_registry.list_ids() == sorted(skill_registry.list_ids())

    def test_skill_fields_from_frontmatter(self, skill_registry: SkillRegistry):
        skill = skill_registry.resolve("prisma")

        assert skill.description == "Prisma ORM schema and query patterns"
        assert skill.trigger_patterns == frozenset({"prisma", "schema.prisma", "database migration"})
        assert skill.dynamic_invocation_name == "prisma"
        assert skill.content.startswith("# prisma")
        assert skill.path.endswith("SKILL.md")

    def test_invocation_name_override(self, skill_registry: SkillRegistry):
        assert skill_registry.resolve("tailwind").dynamic_invocation_name == "tailwind-css"

    def test_disabled_model_invocation(self, skill_registry: SkillRegistry):
        skill = skill_registry.resolve("internal-notes")

        assert skill.is_model_invocable is False
        assert skill.dynamic_invocation_name is None

    def test_content_hash_is_sha256_prefix(self, skill_registry: SkillRegistry):
        skill = skill_registry.resolve("security")
        expected = hashlib.sha256(skill.content.encode("utf-8")).hexdigest()[:7]

        assert skill.content_hash == expected
        assert hash_content(skill.content) == expected

    def test_nested_category_directories(self, tmp_path: Path, make_skill):
        make_skill(tmp_path / "skills" / "backend", "prisma", {"description": "ORM"})
        make_skill(tmp_path / "skills" / "frontend", "tailwind", {"description": "CSS"})

        registry = SkillRegistry.from_directories([tmp_path / "skills"])

        assert registry.list_ids() == ["prisma", "tailwind"]

    def test_skips_file_without_frontmatter(self, tmp_path: Path, make_skill):
        make_skill(tmp_path / "skills", "valid", {"description": "ok"})
        broken = tmp_path / "skills" / "broken"
        broken.mkdir()
        (broken / "SKILL.md").write_text("# no frontmatter\n", encoding="utf-8")

        registry = SkillRegistry.from_directories([tmp_path / "skills"])

        assert registry.list_ids() == ["valid"]

    def test_missing_directory_yields_empty_registry(self, tmp_path: Path):
        registry = SkillRegistry.from_directories([tmp_path / "missing"])

        assert len(registry) == 0


class TestDuplicateSkillIds:
    def test_same_id_in_two_roots(self, tmp_path: Path, make_skill):
        make_skill(tmp_path / "a", "security", {"description": "first"})
        make_skill(tmp_path / "b", "security", {"description": "second"})

        with pytest.raises(DuplicateSkillId) as exc_info:
            SkillRegistry.from_directories([tmp_path / "a", tmp_path / "b"])

        assert exc_info.value.skill_id == "security"
        assert str(tmp_path / "b") in exc_info.value.second

    def test_alias_clashing_with_existing_id(self):
        first = Skill(id="review", description="d", content="c", path="a/SKILL.md")
        second = Skill(
            id="code-review", description="d", content="c", path="b/SKILL.md", aliases=("review",)
        )

        with pytest.raises(DuplicateSkillId) as exc_info:
            SkillRegistry([first, second])

        assert exc_info.value.skill_id == "review"


class TestResolve:
    def test_resolve_by_id(self, skill_registry: SkillRegistry):
        assert skill_registry.resolve("security").id == "security"

    def test_resolve_by_alias(self, skill_registry: SkillRegistry):
        assert skill_registry.resolve("review").id == "code-review"
        assert "review" in skill_registry

    def test_unknown_skill_raises(self, skill_registry: SkillRegistry):
        with pytest.raises(SkillNotFound) as exc_info:
            skill_registry.resolve("kubernetes")

        assert exc_info.value.skill_id == "kubernetes"
        assert isinstance(exc_info.value, KeyError)

    def test_get_returns_none_for_unknown(self, skill_registry: SkillRegistry):
        assert skill_registry.get("kubernetes") is None


class TestMatch:
    @pytest.fixture
    def registry(self, skill_registry: SkillRegistry) -> SkillRegistry:
        return skill_registry.bind_profiles(
            [
                _profile(
                    "backend-developer",
                    preloaded=("backend-patterns",),
                    dynamic={"prisma": "prisma", "websocket": "websockets"},
                ),
                _profile("frontend-reviewer", dynamic={"tailwind": "tailwind"}),
            ]
        )

    def test_trigger_in_text(self, registry: SkillRegistry):
        assert registry.match("Add a Prisma migration for users", "backend-developer") == {
            "prisma"
        }

    def test_frontmatter_trigger_phrase(self, registry: SkillRegistry):
        matched = registry.match("Needs a DATABASE   migration", "backend-developer")

        assert matched == {"prisma"}

    def test_profile_trigger_name(self, registry: SkillRegistry):
        assert registry.match("stream updates over a websocket", "backend-developer") == {
            "websockets"
        }

    def test_multiple_matches(self, registry: SkillRegistry):
        matched = registry.match("prisma schema plus socket.io events", "backend-developer")

        assert matched == {"prisma", "websockets"}

    def test_word_boundaries(self, registry: SkillRegistry):
        assert registry.match("prismatic colours", "backend-developer") == frozenset()

    def test_no_match_returns_empty(self, registry: SkillRegistry):
        assert registry.match("Refactor the logging setup", "backend-developer") == frozenset()

    def test_limited_to_agent_invocable_skills(self, registry: SkillRegistry):
        assert registry.match("prisma and tailwind", "frontend-reviewer") == {"tailwind"}

    def test_unknown_agent_returns_empty(self, registry: SkillRegistry):
        assert registry.match("prisma", "nobody") == frozenset()

    def test_is_idempotent(self, registry: SkillRegistry):
        text = "prisma migration over socket.io"

        results = {registry.match(text, "backend-developer") for _ in range(5)}

        assert len(results) == 1

    def test_non_invocable_skill_never_matches(self, skill_registry: SkillRegistry):
        registry = SkillRegistry(
            list(skill_registry),
            invocable={"maintainer": {"internal-notes": frozenset({"notes"})}},
        )

        assert registry.match("see the notes", "maintainer") == frozenset()

    def test_concurrent_tasks_get_independent_results(self, registry: SkillRegistry):
        texts = {
            "task-a": "prisma migration",
            "task-b": "socket.io broadcast",
            "task-c": "prisma schema with websocket notifications",
            "task-d": "rename a variable",
        }
        expected = {
            "task-a": frozenset({"prisma"}),
            "task-b": frozenset({"websockets"}),
            "task-c": frozenset({"prisma", "websockets"}),
            "task-d": frozenset(),
        }
        jobs = [task for task in texts for _ in range(50)]

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(
                pool.map(lambda task: (task, registry.match(texts[task], "backend-developer")), jobs)
            )

        assert all(matched == expected[task] for task, matched in results)


class TestResolveFor:
    def test_preloaded_then_dynamic(self, skill_registry: SkillRegistry):
        profile = _profile(
            "backend-developer", preloaded=("backend-patterns",), dynamic={"prisma": "prisma"}
        )

        resolved = skill_registry.resolve_for(profile, "prisma migration")

        assert isinstance(resolved, ResolvedSkills)
        assert [s.id for s in resolved.preloaded] == ["backend-patterns"]
        assert [s.id for s in resolved.dynamic] == ["prisma"]
        assert resolved.ids == ("backend-patterns", "prisma")
        assert len(resolved) == 2

    def test_preloaded_always_attached(self, skill_registry: SkillRegistry):
        profile = _profile("backend-reviewer", preloaded=("code-review", "security"))

        resolved = skill_registry.resolve_for(profile, "")

        assert resolved.ids == ("code-review", "security")
        assert resolved.dynamic == ()

    def test_dynamic_skill_already_preloaded_is_not_duplicated(
        self, skill_registry: SkillRegistry
    ):
        profile = _profile("dba", preloaded=("prisma",), dynamic={"prisma": "prisma"})

        resolved = skill_registry.resolve_for(profile, "prisma")

        assert resolved.ids == ("prisma",)


class TestBindProfiles:
    def test_populates_preloaded_by(self, skill_registry: SkillRegistry):
        bound = skill_registry.bind_profiles(
            [
                _profile("backend-reviewer", preloaded=("review", "security")),
                _profile("frontend-reviewer", preloaded=("code-review",)),
            ]
        )

        assert bound.resolve("code-review").preloaded_by == {
            "backend-reviewer",
            "frontend-reviewer",
        }
        assert bound.resolve("security").preloaded_by == {"backend-reviewer"}
        assert bound.resolve("testing").preloaded_by == frozenset()

    def test_does_not_mutate_original(self, skill_registry: SkillRegistry):
        bound = skill_registry.bind_profiles([_profile("qa", dynamic={"prisma": "prisma"})])

        assert skill_registry.resolve("prisma").preloaded_by == frozenset()
        assert skill_registry.invocable_by("qa") == frozenset()
        assert bound.invocable_by("qa") == {"prisma"}
