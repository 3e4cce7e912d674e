"""
Contract models for the record flag orchestration engine.

Descriptors and flags are pydantic models so that catalog rows, unit results and
API payloads are validated at the same seam. Per-run values (payload, outcomes)
are frozen dataclasses: they are created once and only read afterwards.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class FlagSeverity(str, Enum):
    """Visual severity of a flag"""
    NORMAL = "NORMAL"
    SUCCESS = "SUCCESS"
    WARNING = "WARNING"
    ERROR = "ERROR"


class UnitKind(str, Enum):
    """Kind of a configured computation unit"""
    SHARED_DATA_PROVIDER = "shared_data_provider"
    FLAG_COMPUTATION = "flag_computation"


class OrchestrationState(str, Enum):
    """States of one orchestration run"""
    IDLE = "idle"
    RESOLVING = "resolving"
    FETCHING_SHARED_DATA = "fetching_shared_data"
    DISPATCHING = "dispatching"
    SETTLED = "settled"


_KIND_ALIASES = {
    "shareddataprovider": UnitKind.SHARED_DATA_PROVIDER,
    "shared_data_provider": UnitKind.SHARED_DATA_PROVIDER,
    "provider": UnitKind.SHARED_DATA_PROVIDER,
    "flagcomputation": UnitKind.FLAG_COMPUTATION,
    "flag_computation": UnitKind.FLAG_COMPUTATION,
    "fetcher": UnitKind.FLAG_COMPUTATION,
}


class FlagAction(BaseModel):
    model_config = ConfigDict(frozen=True)

    label: str = Field(..., min_length=1)
    target: str = Field(..., description="URL or page reference opened by the action")


class FlagDescriptor(BaseModel):
    """One rendered flag. `variant` and `buttons` are accepted as input aliases."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    severity: FlagSeverity = Field(
        default=FlagSeverity.NORMAL,
        validation_alias=AliasChoices("severity", "variant"),
    )
    header: str = Field(..., min_length=1)
    body: Optional[str] = None
    actions: List[FlagAction] = Field(
        default_factory=list,
        validation_alias=AliasChoices("actions", "buttons"),
    )

    @field_validator("severity", mode="before")
    @classmethod
    def normalize_severity(cls, v):
        if isinstance(v, str):
            return v.strip().upper()
        return v

    @field_validator("header")
    @classmethod
    def header_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("header must not be blank")
        return v

    @field_validator("actions", mode="before")
    @classmethod
    def none_actions(cls, v):
        return [] if v is None else v


class ComputationUnitDescriptor(BaseModel):
    """Identifies one configured computation unit for an object type"""

    model_config = ConfigDict(frozen=True)

    object_type: str = Field(..., min_length=1)
    unit_id: str = Field(..., min_length=1)
    required_permission: Optional[str] = None
    is_active: bool = True
    order: int = 0
    kind: UnitKind = UnitKind.FLAG_COMPUTATION

    @field_validator("kind", mode="before")
    @classmethod
    def normalize_kind(cls, v):
        if isinstance(v, str):
            return _KIND_ALIASES.get(v.strip().lower().replace("-", "_"), v)
        return v

    @field_validator("required_permission", mode="before")
    @classmethod
    def blank_permission(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @property
    def sort_key(self) -> Tuple[int, str]:
        return (self.order, self.unit_id)

    @property
    def is_provider(self) -> bool:
        return self.kind == UnitKind.SHARED_DATA_PROVIDER


@dataclass(frozen=True)
class SharedPayload:
    """
    The single record snapshot handed to every unit of a run.

    Mapping data is copied into a read-only view; other data is passed as-is
    and treated as opaque.
    """
    record_id: str
    data: Any = None
    is_fallback: bool = False

    def __post_init__(self):
        if isinstance(self.data, Mapping) and not isinstance(self.data, MappingProxyType):
            object.__setattr__(self, "data", MappingProxyType(dict(self.data)))

    @classmethod
    def fallback(cls, record_id: str) -> "SharedPayload":
        return cls(record_id=record_id, data=MappingProxyType({"record_id": record_id}), is_fallback=True)

    def get(self, key: str, default: Any = None) -> Any:
        if isinstance(self.data, Mapping):
            return self.data.get(key, default)
        return default


@dataclass(frozen=True)
class UnitOutcome:
    """Result of one unit invocation: either flags (possibly none) or a failure reason"""
    unit_id: str
    flags: Tuple[FlagDescriptor, ...] = ()
    failure_reason: Optional[str] = None
    failure_category: Optional[str] = None
    run_id: Optional[str] = None
    slot: Optional[int] = None

    @classmethod
    def of_flags(cls, unit_id: str, flags) -> "UnitOutcome":
        return cls(unit_id=unit_id, flags=tuple(flags or ()))

    @classmethod
    def of_failure(cls, unit_id: str, reason: str, category: Optional[str] = None) -> "UnitOutcome":
        return cls(unit_id=unit_id, failure_reason=reason, failure_category=category)

    @property
    def is_failure(self) -> bool:
        return self.failure_reason is not None

    def tagged(self, run_id: str, slot: int) -> "UnitOutcome":
        return replace(self, run_id=run_id, slot=slot)


@dataclass(frozen=True)
class FailureNotice:
    """Per-unit failure delivered on the failure channel"""
    run_id: str
    unit_id: str
    reason: str
    category: Optional[str] = None


class TopLevelNotice(BaseModel):
    """Standalone notice raised when a run fails as a whole"""

    model_config = ConfigDict(frozen=True)

    title: str = "Error"
    message: str
    variant: str = "error"


@dataclass(frozen=True)
class ResolvedUnits:
    """Catalog filter result: the optional provider plus computations in dispatch order"""
    provider: Optional[ComputationUnitDescriptor]
    computations: Tuple[ComputationUnitDescriptor, ...] = field(default_factory=tuple)


class AggregateState(BaseModel):
    """Externally observable result of an orchestration run"""

    model_config = ConfigDict(frozen=True)

    run_id: Optional[str] = None
    state: OrchestrationState = OrchestrationState.IDLE
    flags: List[FlagDescriptor] = Field(default_factory=list)
    has_failures: bool = False
    is_loading: bool = True
    notice: Optional[TopLevelNotice] = None

    def to_payload(self) -> Dict[str, Any]:
        """Serialize with render keys for the presentation layer"""
        flags = []
        for index, flag in enumerate(self.flags):
            item = flag.model_dump(mode="json")
            item["key"] = f"key_{index}"
            item["has_actions"] = bool(flag.actions)
            for button_index, action in enumerate(item["actions"]):
                action["key"] = f"button_{button_index}"
            flags.append(item)
        return {
            "run_id": self.run_id,
            "state": self.state.value,
            "flags": flags,
            "has_flags": bool(flags),
            "has_failures": self.has_failures,
            "is_loading": self.is_loading,
            "notice": self.notice.model_dump() if self.notice else None,
        }
