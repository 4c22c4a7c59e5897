"""
Core Data Models for the daily planner.
Defines anchors, execution chains, time blocks and daily plans.
"""
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from planner.exceptions import ForbiddenMetadataFieldError


class AnchorType(str, Enum):
    CLASS = "class"
    SEMINAR = "seminar"
    WORKSHOP = "workshop"
    APPOINTMENT = "appointment"
    OTHER = "other"


class EnergyState(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class StepStatus(str, Enum):
    PENDING = "pending"          # 待执行
    IN_PROGRESS = "in-progress"  # 进行中
    COMPLETED = "completed"      # 已完成
    SKIPPED = "skipped"          # 已跳过


class StepRole(str, Enum):
    CHAIN_STEP = "chain-step"
    EXIT_GATE = "exit-gate"      # 出门前检查 (钥匙/手机/...)
    ANCHOR = "anchor"
    RECOVERY = "recovery"
    PLAIN = "plain"              # 与执行链无关的普通时间块


class ChainStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    FAILED = "failed"


class ChainIntegrity(str, Enum):
    INTACT = "intact"
    BROKEN = "broken"


class LocationState(str, Enum):
    AT_HOME = "at_home"
    NOT_HOME = "not_home"


class ActivityType(str, Enum):
    COMMITMENT = "commitment"
    CHAIN_STEP = "chain_step"
    EXIT_GATE = "exit_gate"
    TRAVEL = "travel"
    RECOVERY = "recovery"
    WAKE_RAMP = "wake_ramp"
    MEAL = "meal"


# 元数据补丁不允许改写的身份字段
IDENTITY_FIELDS = frozenset({"id", "user_id", "plan_id"})


# --- time helpers ---

def minutes_between(start: datetime, end: datetime) -> int:
    return int(round((end - start).total_seconds() / 60))


def add_minutes(value: datetime, minutes: float) -> datetime:
    return value + timedelta(minutes=minutes)


def round_up_to(value: datetime, minutes: int) -> datetime:
    """Round up to the next multiple of `minutes` past the hour (08:31 -> 08:35)."""
    step = timedelta(minutes=max(1, minutes))
    base = value.replace(minute=0, second=0, microsecond=0)
    remainder = (value - base) % step
    if not remainder:
        return value
    return value + (step - remainder)


def parse_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"Invalid datetime: {value!r}")
    raw = value.strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    return datetime.fromisoformat(raw)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class Location:
    name: str
    address: Optional[str] = None
    coordinates: Optional[Tuple[float, float]] = None

    def label(self) -> str:
        return self.address or self.name

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "address": self.address,
            "coordinates": list(self.coordinates) if self.coordinates else None,
        }

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "Location":
        data = data or {}
        coords = data.get("coordinates")
        return cls(
            name=str(data.get("name") or "Home"),
            address=data.get("address"),
            coordinates=tuple(coords) if coords else None,
        )


@dataclass(frozen=True)
class Anchor:
    """固定承诺 (课程 / 预约)。调度器从不修改它。"""
    id: str
    title: str
    start: datetime
    end: datetime
    type: AnchorType = AnchorType.OTHER
    location: Optional[str] = None
    must_attend: bool = True
    calendar_event_id: Optional[str] = None

    @property
    def duration_minutes(self) -> int:
        return minutes_between(self.start, self.end)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "type": self.type.value,
            "location": self.location,
            "must_attend": self.must_attend,
            "calendar_event_id": self.calendar_event_id,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Anchor":
        return cls(
            id=str(data["id"]),
            title=str(data.get("title") or ""),
            start=parse_datetime(data["start"]),
            end=parse_datetime(data["end"]),
            type=AnchorType(data.get("type") or AnchorType.OTHER.value),
            location=data.get("location"),
            must_attend=bool(data.get("must_attend", True)),
            calendar_event_id=data.get("calendar_event_id"),
        )


@dataclass
class ChainStepInstance:
    """执行链中的一个步骤 (实例化到具体时间)"""
    step_id: str
    chain_id: str
    name: str
    start_time: datetime
    end_time: datetime
    duration_minutes: int
    is_required: bool = True
    can_skip_when_late: bool = False
    status: StepStatus = StepStatus.PENDING
    role: StepRole = StepRole.CHAIN_STEP
    skip_reason: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "step_id": self.step_id,
            "chain_id": self.chain_id,
            "name": self.name,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat(),
            "duration_minutes": self.duration_minutes,
            "is_required": self.is_required,
            "can_skip_when_late": self.can_skip_when_late,
            "status": self.status.value,
            "role": self.role.value,
            "skip_reason": self.skip_reason,
            "metadata": dict(self.metadata),
        }


@dataclass
class CommitmentEnvelope:
    """围绕锚点的五段信封：准备 -> 去程 -> 锚点 -> 返程 -> 恢复"""
    envelope_id: str
    prep: ChainStepInstance
    travel_there: ChainStepInstance
    anchor: ChainStepInstance
    travel_back: ChainStepInstance
    recovery: ChainStepInstance
    metadata: Dict[str, Any] = field(default_factory=dict)

    def segments(self) -> List[ChainStepInstance]:
        return [self.prep, self.travel_there, self.anchor, self.travel_back, self.recovery]

    def to_dict(self) -> dict:
        return {
            "envelope_id": self.envelope_id,
            "prep": self.prep.to_dict(),
            "travel_there": self.travel_there.to_dict(),
            "anchor": self.anchor.to_dict(),
            "travel_back": self.travel_back.to_dict(),
            "recovery": self.recovery.to_dict(),
            "metadata": dict(self.metadata),
        }


@dataclass
class ExecutionChain:
    """
    一个锚点的执行链。

    steps 是锚点之前必须完成的部分 (准备子步骤 + 出门检查 + 去程)，
    最后一步结束于 chain_completion_deadline。
    """
    chain_id: str
    anchor_id: str
    anchor: Anchor
    chain_completion_deadline: datetime
    steps: List[ChainStepInstance]
    commitment_envelope: CommitmentEnvelope
    status: ChainStatus = ChainStatus.PENDING
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def chain_start(self) -> datetime:
        if not self.steps:
            return self.commitment_envelope.prep.start_time
        return min(step.start_time for step in self.steps)

    def to_dict(self) -> dict:
        return {
            "chain_id": self.chain_id,
            "anchor_id": self.anchor_id,
            "anchor": self.anchor.to_dict(),
            "chain_start": self.chain_start.isoformat(),
            "chain_completion_deadline": self.chain_completion_deadline.isoformat(),
            "steps": [step.to_dict() for step in self.steps],
            "commitment_envelope": self.commitment_envelope.to_dict(),
            "status": self.status.value,
            "metadata": dict(self.metadata),
        }


@dataclass
class BlockRole:
    """时间块在执行链中的角色 (tagged variant)"""
    kind: StepRole = StepRole.PLAIN
    chain_id: Optional[str] = None
    required: bool = True
    can_skip_when_late: bool = False

    def to_dict(self) -> dict:
        data = {
            "type": self.kind.value,
            "required": self.required,
            "can_skip_when_late": self.can_skip_when_late,
        }
        if self.chain_id:
            data["chain_id"] = self.chain_id
        return data

    @classmethod
    def from_dict(cls, data: Any) -> "BlockRole":
        if not isinstance(data, dict):
            return cls()
        try:
            kind = StepRole(data.get("type") or StepRole.PLAIN.value)
        except ValueError:
            kind = StepRole.PLAIN
        return cls(
            kind=kind,
            chain_id=data.get("chain_id") or None,
            required=bool(data.get("required", True)),
            can_skip_when_late=bool(data.get("can_skip_when_late", False)),
        )


_NAMED_METADATA_FIELDS = ("chain_id", "step_id", "anchor_id", "chain_view_only", "gate_conditions", "role")


@dataclass
class BlockMetadata:
    """
    时间块元数据。

    已知字段显式建模，未知字段保存在 extra 中原样往返。
    merge() 是字段级合并：gate_conditions / role / 嵌套 dict 逐键合并，
    不会删除补丁中未出现的兄弟字段。
    """
    role: BlockRole = field(default_factory=BlockRole)
    chain_id: Optional[str] = None
    step_id: Optional[str] = None
    anchor_id: Optional[str] = None
    chain_view_only: bool = False
    gate_conditions: Dict[str, bool] = field(default_factory=dict)
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def resolved_chain_id(self) -> Optional[str]:
        return self.chain_id or self.role.chain_id

    def to_dict(self) -> dict:
        data = dict(self.extra)
        data["role"] = self.role.to_dict()
        if self.chain_id:
            data["chain_id"] = self.chain_id
        if self.step_id:
            data["step_id"] = self.step_id
        if self.anchor_id:
            data["anchor_id"] = self.anchor_id
        if self.chain_view_only:
            data["chain_view_only"] = True
        if self.gate_conditions:
            data["gate_conditions"] = dict(self.gate_conditions)
        return data

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "BlockMetadata":
        data = data or {}
        gates = data.get("gate_conditions")
        return cls(
            role=BlockRole.from_dict(data.get("role")),
            chain_id=data.get("chain_id") or None,
            step_id=data.get("step_id") or None,
            anchor_id=data.get("anchor_id") or None,
            chain_view_only=bool(data.get("chain_view_only", False)),
            gate_conditions=dict(gates) if isinstance(gates, dict) else {},
            extra={k: v for k, v in data.items() if k not in _NAMED_METADATA_FIELDS},
        )

    def merge(self, patch: Dict[str, Any]) -> "BlockMetadata":
        forbidden = IDENTITY_FIELDS.intersection(patch or {})
        if forbidden:
            raise ForbiddenMetadataFieldError(forbidden)

        merged = self.to_dict()
        for key, value in (patch or {}).items():
            current = merged.get(key)
            if isinstance(current, dict) and isinstance(value, dict):
                merged[key] = {**current, **value}
            else:
                merged[key] = value
        return BlockMetadata.from_dict(merged)


@dataclass
class TimeBlock:
    """计划中持久化的一行时间块"""
    id: str
    plan_id: str
    activity_type: str
    activity_name: str
    start_time: datetime
    end_time: datetime
    sequence_order: int = 0
    activity_id: Optional[str] = None
    status: StepStatus = StepStatus.PENDING
    skip_reason: Optional[str] = None
    metadata: BlockMetadata = field(default_factory=BlockMetadata)

    @property
    def duration_minutes(self) -> int:
        return minutes_between(self.start_time, self.end_time)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "plan_id": self.plan_id,
            "activity_type": str(getattr(self.activity_type, "value", self.activity_type)),
            "activity_id": self.activity_id,
            "activity_name": self.activity_name,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat(),
            "duration_minutes": self.duration_minutes,
            "sequence_order": self.sequence_order,
            "status": self.status.value,
            "skip_reason": self.skip_reason,
            "metadata": self.metadata.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "TimeBlock":
        try:
            status = StepStatus(data.get("status") or StepStatus.PENDING.value)
        except ValueError:
            status = StepStatus.PENDING
        return cls(
            id=str(data["id"]),
            plan_id=str(data["plan_id"]),
            activity_type=str(data.get("activity_type") or ""),
            activity_id=data.get("activity_id"),
            activity_name=str(data.get("activity_name") or ""),
            start_time=parse_datetime(data["start_time"]),
            end_time=parse_datetime(data["end_time"]),
            sequence_order=int(data.get("sequence_order") or 0),
            status=status,
            skip_reason=data.get("skip_reason"),
            metadata=BlockMetadata.from_dict(data.get("metadata")),
        )

    def copy_with(self, **changes) -> "TimeBlock":
        return replace(self, **changes)


@dataclass
class ExitTime:
    """每个锚点的出门时间 (去程开始)"""
    id: str
    plan_id: str
    anchor_id: str
    exit_time: datetime
    travel_minutes: int
    prep_minutes: int
    time_block_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "plan_id": self.plan_id,
            "anchor_id": self.anchor_id,
            "exit_time": self.exit_time.isoformat(),
            "travel_minutes": self.travel_minutes,
            "prep_minutes": self.prep_minutes,
            "time_block_id": self.time_block_id,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ExitTime":
        return cls(
            id=str(data["id"]),
            plan_id=str(data["plan_id"]),
            anchor_id=str(data["anchor_id"]),
            exit_time=parse_datetime(data["exit_time"]),
            travel_minutes=int(data.get("travel_minutes") or 0),
            prep_minutes=int(data.get("prep_minutes") or 0),
            time_block_id=data.get("time_block_id"),
        )


@dataclass
class WakeRampStep:
    name: str
    start_time: datetime
    end_time: datetime
    duration_minutes: int

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat(),
            "duration_minutes": self.duration_minutes,
        }


@dataclass
class WakeRamp:
    start: datetime
    end: datetime
    energy_state: EnergyState
    steps: List[WakeRampStep] = field(default_factory=list)
    skipped: bool = False
    skip_reason: Optional[str] = None

    @property
    def duration_minutes(self) -> int:
        return minutes_between(self.start, self.end)

    def to_dict(self) -> dict:
        return {
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "energy_state": self.energy_state.value,
            "duration_minutes": self.duration_minutes,
            "steps": [step.to_dict() for step in self.steps],
            "skipped": self.skipped,
            "skip_reason": self.skip_reason,
        }


@dataclass
class MealPlacement:
    meal: str
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    target_time: Optional[datetime] = None
    placement_reason: Optional[str] = None
    skipped: bool = False
    skip_reason: Optional[str] = None

    @property
    def duration_minutes(self) -> int:
        if self.start_time is None or self.end_time is None:
            return 0
        return minutes_between(self.start_time, self.end_time)

    def to_dict(self) -> dict:
        return {
            "meal": self.meal,
            "start_time": _iso(self.start_time),
            "end_time": _iso(self.end_time),
            "duration_minutes": self.duration_minutes,
            "target_time": _iso(self.target_time),
            "placement_reason": self.placement_reason,
            "skipped": self.skipped,
            "skip_reason": self.skip_reason,
        }


@dataclass
class HomeInterval:
    start: datetime
    end: datetime

    @property
    def duration_minutes(self) -> int:
        return minutes_between(self.start, self.end)

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment < self.end

    def to_dict(self) -> dict:
        return {
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "duration_minutes": self.duration_minutes,
        }


@dataclass
class LocationPeriod:
    start: datetime
    end: datetime
    state: LocationState

    def to_dict(self) -> dict:
        return {"start": self.start.isoformat(), "end": self.end.isoformat(), "state": self.state.value}


@dataclass
class ManualAnchorInput:
    """用户手动补充的锚点 (当天日历为空时必填)"""
    title: str
    start_time: datetime
    end_time: datetime
    anchor_type: AnchorType = AnchorType.OTHER
    must_attend: bool = True
    location: Optional[str] = None
    notes: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "title": self.title,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat(),
            "anchor_type": self.anchor_type.value,
            "must_attend": self.must_attend,
            "location": self.location,
            "notes": self.notes,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ManualAnchorInput":
        return cls(
            title=str(data["title"]),
            start_time=parse_datetime(data["start_time"]),
            end_time=parse_datetime(data["end_time"]),
            anchor_type=AnchorType(data.get("anchor_type") or AnchorType.OTHER.value),
            must_attend=bool(data.get("must_attend", True)),
            location=data.get("location"),
            notes=data.get("notes"),
        )


@dataclass
class PlanInput:
    user_id: str
    plan_date: date
    wake_time: datetime
    sleep_time: datetime
    energy_state: EnergyState


@dataclass
class GenerationConfig:
    user_id: str
    plan_date: date
    current_location: Location
    user_energy: int = 3                     # 1-5
    earliest_start: Optional[datetime] = None  # 链最早可开始时间 (用于压缩)


@dataclass
class DailyPlan:
    """每日计划。chains / wake_ramp / home_intervals 为派生字段，不持久化。"""
    id: str
    user_id: str
    plan_date: date
    wake_time: datetime
    sleep_time: datetime
    energy_state: EnergyState
    plan_start: Optional[datetime] = None
    generated_after_now: bool = False
    status: str = "active"
    created_at: Optional[datetime] = None
    time_blocks: List[TimeBlock] = field(default_factory=list)
    exit_times: List[ExitTime] = field(default_factory=list)
    chains: List[ExecutionChain] = field(default_factory=list)
    wake_ramp: Optional[WakeRamp] = None
    home_intervals: List[HomeInterval] = field(default_factory=list)

    def to_record(self) -> dict:
        """持久化的计划行 (不含时间块与派生字段)"""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "plan_date": self.plan_date.isoformat(),
            "wake_time": self.wake_time.isoformat(),
            "sleep_time": self.sleep_time.isoformat(),
            "energy_state": self.energy_state.value,
            "plan_start": _iso(self.plan_start),
            "generated_after_now": self.generated_after_now,
            "status": self.status,
            "created_at": _iso(self.created_at),
        }

    @classmethod
    def from_record(cls, data: dict) -> "DailyPlan":
        return cls(
            id=str(data["id"]),
            user_id=str(data["user_id"]),
            plan_date=date.fromisoformat(data["plan_date"]),
            wake_time=parse_datetime(data["wake_time"]),
            sleep_time=parse_datetime(data["sleep_time"]),
            energy_state=EnergyState(data.get("energy_state") or EnergyState.MEDIUM.value),
            plan_start=parse_datetime(data["plan_start"]) if data.get("plan_start") else None,
            generated_after_now=bool(data.get("generated_after_now", False)),
            status=str(data.get("status") or "active"),
            created_at=parse_datetime(data["created_at"]) if data.get("created_at") else None,
        )

    def to_dict(self) -> dict:
        data = self.to_record()
        data["time_blocks"] = [block.to_dict() for block in self.time_blocks]
        data["exit_times"] = [item.to_dict() for item in self.exit_times]
        data["chains"] = [chain.to_dict() for chain in self.chains]
        data["wake_ramp"] = self.wake_ramp.to_dict() if self.wake_ramp else None
        data["home_intervals"] = [interval.to_dict() for interval in self.home_intervals]
        return data
