from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union
from uuid import uuid4

from pydantic import Field

from .base import BaseSchema, FrozenSchema

FILE_RESOLUTION_PREFIX = "file_resolution_"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ProviderStatus(str, Enum):
    active = "active"
    degraded = "degraded"
    disabled = "disabled"


class SelectionAlgorithm(str, Enum):
    weighted_performance = "weighted_performance"
    round_robin = "round_robin"
    highest_scored = "highest_scored"


class ResolutionType(str, Enum):
    capability = "capability"
    file_path = "file_path"


class MonitoringLevel(str, Enum):
    none = "none"
    basic = "basic"
    standard = "standard"
    detailed = "detailed"


class BindingMode(str, Enum):
    eager = "eager"
    lazy = "lazy"
    interface_stub = "interface_stub"


class CycleStrategy(str, Enum):
    lazy_initialization = "lazy_initialization"
    interface_injection = "interface_injection"
    provider_reorganization = "provider_reorganization"
    capability_splitting = "capability_splitting"


class ErrorKind(str, Enum):
    no_providers_available = "no_providers_available"
    circular_dependency = "circular_dependency"
    resolution_timeout = "resolution_timeout"
    resolution_error = "resolution_error"
    invalid_request = "invalid_request"
    file_not_found = "file_not_found"


STORE_PERSISTENCE_WARNING = "store_persistence_warning"


class CapabilityRequirements(BaseSchema):
    min_performance: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    interface_spec: Optional[Dict[str, Any]] = None
    algorithm: Optional[SelectionAlgorithm] = None
    resolution_type: Optional[ResolutionType] = None
    load_balancing: bool = True

    # Capabilities already being resolved above this request, outermost first
    capability_chain: List[str] = Field(default_factory=list)

    file_id: Optional[str] = None
    client_id: Optional[str] = None


class CapabilityRequest(BaseSchema):
    """A consumer asking for a capability. Created per call."""

    capability: str
    consumer: str
    requirements: CapabilityRequirements = Field(default_factory=CapabilityRequirements)

    @property
    def is_file_resolution(self) -> bool:
        return (
            self.capability.startswith(FILE_RESOLUTION_PREFIX)
            or self.requirements.resolution_type == ResolutionType.file_path
        )

    @property
    def file_id(self) -> str:
        if self.requirements.file_id:
            return self.requirements.file_id
        if self.capability.startswith(FILE_RESOLUTION_PREFIX):
            return self.capability[len(FILE_RESOLUTION_PREFIX):]
        return self.capability


class ProviderRecord(BaseSchema):
    id: str = Field(default_factory=lambda: str(uuid4()))
    capability_name: str

    provider_files: List[str] = Field(min_length=1)
    interface_spec: Dict[str, Any] = Field(default_factory=dict)

    stability_rating: float = Field(default=1.0, ge=0.0, le=1.0)
    performance_score: float = Field(default=0.5, ge=0.0, le=1.0)
    status: ProviderStatus = ProviderStatus.active

    compatible_with: List[str] = Field(default_factory=list)
    depends_on: List[str] = Field(default_factory=list)
    lazy_init: bool = False
    max_capacity: Optional[int] = Field(default=None, gt=0)
    category: Optional[str] = None

    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)

    @property
    def primary_file(self) -> str:
        return self.provider_files[0]


class CapabilityDefinition(BaseSchema):
    name: str
    description: Optional[str] = None
    category: Optional[str] = None
    alternatives: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_utc_now)


class ProviderFilters(BaseSchema):
    statuses: List[ProviderStatus] = Field(default_factory=lambda: [ProviderStatus.active])
    min_performance: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    compatible_with: Optional[str] = None

    def matches(self, record: ProviderRecord) -> bool:
        """Check a record against the filters (used by in-process stores)."""
        if record.status not in self.statuses:
            return False
        if self.min_performance is not None and record.performance_score < self.min_performance:
            return False
        if self.compatible_with and record.compatible_with:
            allowed = set(record.compatible_with)
            if "*" not in allowed and self.compatible_with not in allowed:
                return False
        return True


class ProviderStats(BaseSchema):
    """Rolling-window aggregates of reported invocation outcomes."""

    sample_count: int = 0
    avg_response_time_ms: float = 0.0
    success_rate: float = Field(default=1.0, ge=0.0, le=1.0)
    throughput_per_minute: float = 0.0
    uptime: float = Field(default=1.0, ge=0.0, le=1.0)
    consecutive_failures: int = 0


class ScoredCandidate(FrozenSchema):
    provider: ProviderRecord
    performance_score: float = Field(ge=0.0, le=1.0)
    compatibility_score: float = Field(ge=0.0, le=1.0)
    stability_score: float = Field(ge=0.0, le=1.0)
    load_score: float = Field(ge=0.0, le=1.0)
    composite_score: float = Field(ge=0.0, le=1.0)

    @property
    def rank_key(self) -> tuple:
        """Sort key: composite desc, stability desc, primary file asc."""
        return (-self.composite_score, -self.stability_score, self.provider.primary_file)


class BindingMonitoring(FrozenSchema):
    enabled: bool = False
    level: MonitoringLevel = MonitoringLevel.none


class Binding(FrozenSchema):
    """Resolved pairing of consumer, capability and provider. Immutable."""

    id: str
    consumer: str
    provider: str
    provider_id: str
    capability: str
    interface: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utc_now)
    monitoring: BindingMonitoring = Field(default_factory=BindingMonitoring)
    mode: BindingMode = BindingMode.eager
    persisted: bool = True


class FileRecord(BaseSchema):
    id: str = Field(default_factory=lambda: str(uuid4()))
    file_id: str
    file_path: str
    client_id: Optional[str] = None
    status: str = "active"
    updated_at: datetime = Field(default_factory=_utc_now)


class FileResolution(BaseSchema):
    path: Optional[str] = None
    cached: bool = False
    fallback_used: bool = False
    method: str = "metadata"
    alternatives: List[str] = Field(default_factory=list)


class CycleReport(BaseSchema):
    found: bool = False
    cycles: List[List[str]] = Field(default_factory=list)
    depth_exceeded: bool = False


class ResolutionSuccess(BaseSchema):
    ok: Literal[True] = True
    capability: str
    provider: str
    interface: Dict[str, Any] = Field(default_factory=dict)
    binding_id: Optional[str] = None
    binding: Optional[Binding] = None
    cached: bool = False
    resolution_type: ResolutionType = ResolutionType.capability
    resolved_path: Optional[str] = None
    composite_score: Optional[float] = None
    fallback_used: bool = False
    degraded: bool = False
    warnings: List[str] = Field(default_factory=list)
    resolution_time_ms: float = 0.0


class ResolutionFailure(BaseSchema):
    ok: Literal[False] = False
    capability: str
    error: ErrorKind
    fallback_required: bool
    message: str = ""
    retry_after_seconds: Optional[float] = None
    cycles: List[List[str]] = Field(default_factory=list)
    suggestions: List[str] = Field(default_factory=list)
    generation_requested: bool = False
    escalated: bool = False
    stale_binding: Optional[Binding] = None
    resolution_time_ms: float = 0.0


ResolutionResult = Union[ResolutionSuccess, ResolutionFailure]


class RegistrationResult(BaseSchema):
    registered: bool
    capability: str
    provider_id: Optional[str] = None
    message: Optional[str] = None
