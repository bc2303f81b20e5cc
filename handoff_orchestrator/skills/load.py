"""스킬 루트를 스캔하여 SKILL.md 문서를 읽어 들이는 로더.

스킬 하나는 SKILL.md를 가진 디렉토리이다. 파일 앞부분의 YAML 블록이
메타데이터(`name`, `description` 필수)이고 나머지 마크다운이 에이전트에게
주입될 본문이다. 같은 디렉토리의 다른 파일은 로더가 보지 않는다.

```markdown
---
name: prisma
description: Prisma ORM 스키마와 쿼리 패턴
triggers: [prisma, schema.prisma, migration]
aliases: [orm]
requires: [typescript]
conflicts-with: [drizzle]
allowed-tools: Read, Grep, Glob
---

# Prisma 패턴
...
```

스킬 루트 아래는 재귀적으로 탐색하므로 `skills/backend/prisma/SKILL.md`처럼
카테고리 디렉토리를 둘 수 있다.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from pathlib import Path
from typing import Any, NotRequired, TypedDict

import yaml

logger = logging.getLogger(__name__)

SKILL_FILE_NAME = "SKILL.md"

# 이보다 큰 SKILL.md는 읽지 않는다
MAX_SKILL_FILE_BYTES = 10 * 1024 * 1024

MAX_SKILL_ID_LENGTH = 64
MAX_SKILL_DESCRIPTION_LENGTH = 1024

FRONTMATTER_PATTERN = re.compile(r"^---\s*\n(.*?)\n---\s*(?:\n|$)", re.DOTALL)
SKILL_ID_PATTERN = re.compile(r"[a-z0-9]+(?:-[a-z0-9]+)*")


class SkillMetadata(TypedDict):
    """SKILL.md 한 개를 파싱한 결과."""

    name: str
    description: str
    path: str
    source: str
    """이 파일을 찾은 스킬 루트."""

    content: str
    """프론트매터 뒤의 마크다운 본문."""

    triggers: list[str]
    aliases: list[str]
    requires: list[str]
    conflicts_with: list[str]
    model_invocable: bool
    """`disable-model-invocation: true`이면 False."""

    invocation_name: NotRequired[str | None]
    allowed_tools: NotRequired[list[str]]


def _inside_root(candidate: Path, root: Path) -> bool:
    """심볼릭 링크를 따라간 실제 경로가 스킬 루트 안에 있는지 확인한다."""
    try:
        return candidate.resolve().is_relative_to(root)
    except (OSError, RuntimeError):
        # 순환 링크
        return False


def _skill_id_problem(skill_id: str, directory_name: str) -> str | None:
    """스킬 ID 형식 위반 내용을 돌려준다. 문제가 없으면 None."""
    if len(skill_id) > MAX_SKILL_ID_LENGTH:
        return f"ID는 {MAX_SKILL_ID_LENGTH}자 이하여야 함"
    if SKILL_ID_PATTERN.fullmatch(skill_id) is None:
        return "ID는 소문자, 숫자, 단일 하이픈으로만 구성되어야 함"
    if skill_id != directory_name:
        return f"디렉토리 이름 '{directory_name}'과 다름"
    return None


def _as_str_list(value: Any) -> list[str]:
    """프론트매터 값을 문자열 목록으로 정규화한다.

    YAML 리스트와 쉼표로 구분된 문자열("Read, Grep")을 모두 허용한다.
    """
    if value is None:
        return []
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    if isinstance(value, (list, tuple, set)):
        return [str(item).strip() for item in value if str(item).strip()]
    return [str(value).strip()]


def _split_frontmatter(path: Path) -> tuple[dict[str, Any], str] | None:
    """SKILL.md를 (프론트매터 매핑, 본문)으로 나눈다. 읽을 수 없으면 None."""
    try:
        size = path.stat().st_size
        if size > MAX_SKILL_FILE_BYTES:
            logger.warning("%s 건너뜀: %d 바이트로 크기 제한 초과", path, size)
            return None
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        logger.warning("%s을(를) 읽을 수 없음: %s", path, e)
        return None

    block = FRONTMATTER_PATTERN.match(text)
    if block is None:
        logger.warning("%s 건너뜀: 프론트매터 블록 없음", path)
        return None
    try:
        header = yaml.safe_load(block.group(1))
    except yaml.YAMLError as e:
        logger.warning("%s 건너뜀: 프론트매터 YAML 오류: %s", path, e)
        return None
    if not isinstance(header, dict):
        logger.warning("%s 건너뜀: 프론트매터가 매핑이 아님", path)
        return None
    return header, text[block.end() :].strip()


def parse_skill_file(skill_md_path: Path, source: str) -> SkillMetadata | None:
    """SKILL.md 하나를 SkillMetadata로 읽는다.

    필수 필드가 없거나 파일을 파싱할 수 없으면 경고를 남기고 None을 돌려준다.
    ID 형식 위반과 너무 긴 설명은 경고만 하고 로드한다.
    """
    parsed = _split_frontmatter(skill_md_path)
    if parsed is None:
        return None
    header, body = parsed

    skill_id = str(header.get("name") or "").strip()
    description = str(header.get("description") or "").strip()
    if not skill_id or not description:
        logger.warning("%s 건너뜀: 'name'과 'description'은 필수", skill_md_path)
        return None

    problem = _skill_id_problem(skill_id, skill_md_path.parent.name)
    if problem is not None:
        logger.warning("스킬 '%s' (%s): %s", skill_id, skill_md_path, problem)

    if len(description) > MAX_SKILL_DESCRIPTION_LENGTH:
        logger.warning(
            "스킬 '%s' 설명을 %d자로 자름", skill_id, MAX_SKILL_DESCRIPTION_LENGTH
        )
        description = description[:MAX_SKILL_DESCRIPTION_LENGTH]

    invocation_name = header.get("invocation-name")
    return SkillMetadata(
        name=skill_id,
        description=description,
        path=str(skill_md_path),
        source=source,
        content=body,
        triggers=_as_str_list(header.get("triggers")),
        aliases=_as_str_list(header.get("aliases")),
        requires=_as_str_list(header.get("requires")),
        conflicts_with=_as_str_list(header.get("conflicts-with")),
        model_invocable=not bool(header.get("disable-model-invocation", False)),
        invocation_name=str(invocation_name) if invocation_name else None,
        allowed_tools=_as_str_list(header.get("allowed-tools")),
    )


def list_skills_from_dir(skills_dir: Path) -> list[SkillMetadata]:
    """스킬 루트 하나의 SKILL.md를 경로 순으로 모두 읽는다.

    루트 밖을 가리키는 심볼릭 링크는 건너뛴다. 루트가 없으면 빈 목록.
    """
    root = skills_dir.expanduser()
    if not root.is_dir():
        logger.warning("스킬 디렉토리가 존재하지 않음: %s", root)
        return []
    try:
        resolved_root = root.resolve()
    except (OSError, RuntimeError):
        return []

    found: list[SkillMetadata] = []
    for skill_file in sorted(root.rglob(SKILL_FILE_NAME)):
        if not _inside_root(skill_file, resolved_root):
            logger.warning("%s 건너뜀: 스킬 루트 밖을 가리킴", skill_file)
            continue
        if not skill_file.is_file():
            continue
        metadata = parse_skill_file(skill_file, source=str(root))
        if metadata is not None:
            found.append(metadata)
    return found


def list_skills(skills_dirs: Iterable[str | Path]) -> list[SkillMetadata]:
    """여러 스킬 루트의 스킬을 선언 순서대로 이어 붙인다.

    같은 ID가 여러 루트에 있어도 여기서는 모두 돌려준다.
    중복은 SkillRegistry가 DuplicateSkillId로 거부한다.
    """
    skills: list[SkillMetadata] = []
    for skills_dir in skills_dirs:
        skills.extend(list_skills_from_dir(Path(skills_dir)))
    return skills
