"""태스크를 Spec → Implementation → Review → TestReport 단계로 진행시키는 오케스트레이션."""

from handoff_orchestrator.orchestration.executor import (
    AgentExecutor,
    AgentInvocation,
    ChatModelAgentExecutor,
    build_messages,
    parse_artifact_reply,
)
from handoff_orchestrator.orchestration.sequencer import (
    OrchestrationSequencer,
    RunResult,
    TaskStatus,
)

__all__ = [
    "AgentExecutor",
    "AgentInvocation",
    "ChatModelAgentExecutor",
    "OrchestrationSequencer",
    "RunResult",
    "TaskStatus",
    "build_messages",
    "parse_artifact_reply",
]
