"""Data models for the action pipeline."""

from dataclasses import dataclass, field
from datetime import datetime


@dataclass
class Repository:
    id: str
    user_id: str
    owner: str
    name: str
    default_branch: str = "main"
    base_path: str | None = None
    created_at: datetime | None = None

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"


@dataclass
class Session:
    id: str
    repo_id: str
    mode: str = "action"
    state: str = "IDLE"
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Task:
    id: str
    session_id: str
    intent_type: str
    compiled_prompt_hash: str | None = None
    allowed_files: list[str] = field(default_factory=list)
    base_path: str = "/"
    steps: list[dict] = field(default_factory=list)
    status: str = "pending"
    retry_count: int = 0
    result: dict | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class ActivityLogEntry:
    id: int | None = None
    session_id: str | None = None
    action: str = ""
    duration_ms: int | None = None
    retry_count: int | None = None
    error_type: str | None = None
    created_at: datetime | None = None


@dataclass
class AutonomousSpec:
    id: str
    session_id: str
    spec_json: dict = field(default_factory=dict)
    locked_at: datetime | None = None
    created_at: datetime | None = None

    @property
    def locked(self) -> bool:
        return self.locked_at is not None


@dataclass
class ChatMessage:
    id: int | None = None
    session_id: str = ""
    role: str = "user"
    content: str = ""
    file_context: dict | None = None
    created_at: datetime | None = None


@dataclass
class DiffValidationResult:
    valid: bool
    errors: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class IntentResult:
    intent_type: str
    confidence: float
    risk_level: str


def parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
