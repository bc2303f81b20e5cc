"""CRITICAL 요구사항 게이트.

프로필의 요구사항을 검사 카탈로그의 술어로 평가하여 에이전트 실행 전
(BLOCKED)과 산출물 생성 후(NEEDS_REVISION)에 진행을 막는다.
"""

from handoff_orchestrator.gates.checks import (
    CheckInput,
    CheckOutcome,
    Unevaluable,
    available_checks,
    get_check,
    register_check,
    unregister_check,
)
from handoff_orchestrator.gates.context import TaskContext
from handoff_orchestrator.gates.gate import (
    GateReport,
    GateVerdict,
    RequirementCheckResult,
    RequirementGate,
)

__all__ = [
    "CheckInput",
    "CheckOutcome",
    "GateReport",
    "GateVerdict",
    "RequirementCheckResult",
    "RequirementGate",
    "TaskContext",
    "Unevaluable",
    "available_checks",
    "get_check",
    "register_check",
    "unregister_check",
]
