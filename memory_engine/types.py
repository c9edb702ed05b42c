from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

MEMORY_SCOPES = ("convention", "decision", "context")


class MemoryEngineError(Exception):
    pass


class MemoryNotFoundError(MemoryEngineError):
    def __init__(self, memory_id: int):
        super().__init__(f"Memory {memory_id} not found")
        self.memory_id = memory_id


@dataclass
class Memory:
    id: int
    project_id: str
    scope: str
    content: str
    file_path: Optional[str] = None
    access_count: int = 0
    last_accessed_at: Optional[int] = None
    created_at: int = 0
    updated_at: int = 0

    @classmethod
    def from_row(cls, row: Any) -> "Memory":
        return cls(
            id=int(row["id"]),
            project_id=row["project_id"],
            scope=row["scope"],
            content=row["content"],
            file_path=row["file_path"],
            access_count=int(row["access_count"] or 0),
            last_accessed_at=row["last_accessed_at"],
            created_at=int(row["created_at"]),
            updated_at=int(row["updated_at"]),
        )

    def to_dict(self) -> Dict[str, Any]:
        """camelCase view used by the export format."""
        return {
            "id": self.id,
            "projectId": self.project_id,
            "scope": self.scope,
            "content": self.content,
            "filePath": self.file_path,
            "accessCount": self.access_count,
            "lastAccessedAt": self.last_accessed_at,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


@dataclass
class CreateMemoryInput:
    project_id: str
    scope: str
    content: str
    file_path: Optional[str] = None


@dataclass
class CreateResult:
    id: int
    deduplicated: bool


@dataclass
class MemorySearchResult:
    memory: Memory
    distance: float


@dataclass
class MemoryStats:
    project_id: str
    total: int
    by_scope: Dict[str, int] = field(default_factory=dict)


@dataclass
class ReindexResult:
    total: int = 0
    success: int = 0
    failed: int = 0


@dataclass(frozen=True)
class ModelIdentity:
    model: str
    dimensions: int


@dataclass
class Phase:
    title: str
    status: str = "pending"
    notes: Optional[str] = None


@dataclass
class PlanningState:
    objective: Optional[str] = None
    current: Optional[str] = None
    next: Optional[str] = None
    phases: List[Phase] = field(default_factory=list)
    findings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    active: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PlanningState":
        phases = []
        for p in data.get("phases") or []:
            if isinstance(p, dict) and p.get("title"):
                phases.append(
                    Phase(title=str(p["title"]), status=str(p.get("status") or "pending"), notes=p.get("notes"))
                )
        return cls(
            objective=data.get("objective"),
            current=data.get("current"),
            next=data.get("next"),
            phases=phases,
            findings=[str(x) for x in data.get("findings") or []],
            errors=[str(x) for x in data.get("errors") or []],
            active=bool(data.get("active", False)),
        )

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for key in ("objective", "current", "next"):
            value = getattr(self, key)
            if value is not None:
                out[key] = value
        if self.phases:
            out["phases"] = [{k: v for k, v in asdict(p).items() if v is not None} for p in self.phases]
        if self.findings:
            out["findings"] = list(self.findings)
        if self.errors:
            out["errors"] = list(self.errors)
        out["active"] = self.active
        return out


@dataclass
class PreCompactionSnapshot:
    timestamp: str
    session_id: str
    planning_state: Optional[PlanningState] = None
    branch: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PreCompactionSnapshot":
        ps = data.get("planningState")
        return cls(
            timestamp=str(data.get("timestamp") or ""),
            session_id=str(data.get("sessionId") or ""),
            planning_state=PlanningState.from_dict(ps) if isinstance(ps, dict) else None,
            branch=data.get("branch"),
        )

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"timestamp": self.timestamp, "sessionId": self.session_id}
        if self.planning_state is not None:
            out["planningState"] = self.planning_state.to_dict()
        if self.branch:
            out["branch"] = self.branch
        return out


@dataclass
class SessionState:
    key: str
    project_id: str
    data: Any
    expires_at: Optional[int]
    created_at: int
    updated_at: int
