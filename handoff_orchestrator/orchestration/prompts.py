"""에이전트 실행기가 사용하는 프롬프트 템플릿 모듈."""

AGENT_SYSTEM_PROMPT = """# Role: {display_name}

{description}

You are one stage of a multi-agent pipeline (Spec → Implementation → Review → TestReport).
You receive the artifacts accepted so far and produce exactly one handoff artifact for your stage.

## Allowed Tools

{allowed_tools}

## CRITICAL Requirements

Your artifact is checked against these requirements before it is handed to the next role.
An artifact that fails any of them is returned to you for revision.

{critical_requirements}

## Domain Scope

{domain_scope}
"""

ARTIFACT_FORMAT_INSTRUCTIONS = """## Handoff Artifact Format

End your reply with exactly one fenced YAML block describing your artifact:

```yaml
stage: {stage}
summary: <one paragraph>
topics: [<topic>, ...]
scope_boundaries:
  in: [<what is in scope>]
  out: [<what is explicitly out of scope>]
success_criteria:            # Spec stage: declare them; other stages: omit
  - id: AC-1
    description: <measurable criterion>
pattern_references:          # existing code you followed
  - file: <path relative to the workspace>
    line_range: <start>-<end>
verification:                # Review/TestReport: one entry per Spec criterion
  - criterion: AC-1
    status: Met              # Met | NotMet
    evidence: <command output, test name, file:line>
modified_files: [<path>, ...]
```

Never report a criterion as Met without evidence.
"""

TASK_PROMPT = """# Task {task_id}

{description}

## Current Stage

{stage}

## Accepted Artifacts

{history}
"""

REVISION_PROMPT = """## Revision Required

Your previous artifact for this stage did not pass review. Fix every item below and
produce a complete new artifact (do not reply with a diff):

{failures}

### Previous Artifact

```yaml
{previous}
```
"""
