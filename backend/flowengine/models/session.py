# /flowengine/models/session.py

from typing import Optional, List, Dict, Any
from datetime import datetime, timezone
from enum import Enum
from pydantic import BaseModel, Field, ConfigDict

from flowengine.models.flow import QuestionOption

# Values exchanged with the caller around a Driver invocation. The session is
# an immutable value: run() receives one and returns a new one.


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ExecutionSession(BaseModel):
    """Execution position and variable bindings of one conversation."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    current_node_id: Optional[str] = Field(default=None, alias="currentNodeId")
    variables: Dict[str, Any] = Field(default_factory=dict)
    waiting_for_input: bool = Field(default=False, alias="waitingForInput")

    def to_document(self) -> Dict[str, Any]:
        """The `{currentNodeId, variables, waitingForInput}` shape stored by callers."""
        return self.model_dump(by_alias=True, mode="json")


class OutputType(str, Enum):
    BOT = "bot"
    SYSTEM = "system"
    TYPING = "typing"
    HANDOFF = "handoff"


class Output(BaseModel):
    type: OutputType
    content: str = ""
    node_id: Optional[str] = None
    options: List[QuestionOption] = Field(default_factory=list)
    delay_seconds: Optional[float] = None


class RunStatus(str, Enum):
    WAITING = "waiting"
    COMPLETED = "completed"
    TRANSFERRED = "transferred"
    EXHAUSTED = "exhausted"
    FAILED = "failed"


ABNORMAL_STATUSES = frozenset({RunStatus.EXHAUSTED, RunStatus.FAILED})


class StepStatus(str, Enum):
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class StepRecord(BaseModel):
    node_id: str
    node_type: str
    outcome: str
    status: StepStatus = StepStatus.SUCCESS
    output: Optional[str] = None
    duration_ms: float = 0.0
    timestamp: datetime = Field(default_factory=_utcnow)


class ExecutionResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    responses: List[Output] = Field(default_factory=list)
    session_state: ExecutionSession = Field(alias="sessionState")
    completed: bool = False
    status: RunStatus = RunStatus.COMPLETED
    steps: List[StepRecord] = Field(default_factory=list)
    final_node_id: Optional[str] = None
    error: Optional[str] = None

    @property
    def abnormal(self) -> bool:
        """True when the run ended stuck or broken rather than at a normal end/transfer."""
        return self.status in ABNORMAL_STATUSES
