"""
PlanStore: persistence contract for daily plans, time blocks and exit times.

- InMemoryPlanStore: thread-safe reference store, enforces one plan per (user_id, plan_date)
- JsonPlanStore: same semantics, persisted to data/daily_plans.json after every mutation

Rows are kept serialized so callers never share mutable objects with the store.
"""
import json
import threading
from abc import ABC, abstractmethod
from datetime import date
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from planner.exceptions import DuplicatePlanError, PlanNotFoundError, StaleTimeBlockReferenceError
from planner.logger import get_logger
from planner.models import BlockMetadata, DailyPlan, ExitTime, ManualAnchorInput, TimeBlock
from planner.paths import PLAN_STORE_PATH

logger = get_logger("plan_store")

UPDATABLE_BLOCK_FIELDS = frozenset({
    "activity_name", "start_time", "end_time", "sequence_order", "status", "skip_reason", "metadata",
})

BlockUpdate = Tuple[str, dict]


class PlanStore(ABC):
    @abstractmethod
    def create_daily_plan(self, plan: DailyPlan) -> DailyPlan:
        """Insert the plan row. Raises DuplicatePlanError if (user_id, plan_date) exists."""

    @abstractmethod
    def replace_daily_plan(
        self,
        plan: DailyPlan,
        blocks: List[TimeBlock],
        exit_times: List[ExitTime],
        expected_previous_id: Optional[str] = None
    ) -> DailyPlan:
        """
        Swap the (user_id, plan_date) plan for `plan` together with its rows in one step.

        The current plan id must equal `expected_previous_id` (None when no plan
        existed); otherwise another writer got there first and DuplicatePlanError
        is raised without touching anything.
        """

    @abstractmethod
    def commit_plan_edit(
        self,
        plan_id: Optional[str],
        updates: List[BlockUpdate],
        exit_times: Optional[List[ExitTime]] = None,
        status: Optional[str] = None
    ) -> List[TimeBlock]:
        """
        Apply block updates, exit-time rewrites and a plan status change together,
        or none of them. Exit times replace the row for the same (plan_id, anchor_id).
        """

    @abstractmethod
    def get_daily_plan(self, plan_id: str) -> Optional[DailyPlan]:
        ...

    @abstractmethod
    def get_daily_plan_by_date_with_blocks(self, user_id: str, plan_date: date) -> Optional[DailyPlan]:
        ...

    @abstractmethod
    def delete_daily_plan(self, plan_id: str) -> None:
        ...

    @abstractmethod
    def delete_time_blocks_by_plan(self, plan_id: str) -> None:
        ...

    @abstractmethod
    def delete_exit_times_by_plan(self, plan_id: str) -> None:
        ...

    @abstractmethod
    def create_time_blocks(self, blocks: List[TimeBlock]) -> List[TimeBlock]:
        ...

    @abstractmethod
    def get_time_block(self, block_id: str) -> Optional[TimeBlock]:
        ...

    @abstractmethod
    def update_time_block(self, block_id: str, changes: dict) -> TimeBlock:
        ...

    @abstractmethod
    def update_time_blocks(self, updates: List[BlockUpdate]) -> List[TimeBlock]:
        """Apply every update or none of them."""

    @abstractmethod
    def create_exit_times(self, exit_times: List[ExitTime]) -> List[ExitTime]:
        ...

    @abstractmethod
    def save_manual_anchor(self, user_id: str, plan_date: date, manual: ManualAnchorInput) -> None:
        ...

    @abstractmethod
    def get_manual_anchors(self, user_id: str, plan_date: date) -> List[ManualAnchorInput]:
        ...


def _apply_block_changes(record: dict, changes: dict) -> dict:
    unknown = set(changes) - UPDATABLE_BLOCK_FIELDS
    if unknown:
        raise ValueError(f"Cannot update time block fields: {', '.join(sorted(unknown))}")
    changes = dict(changes)
    if isinstance(changes.get("metadata"), dict):
        changes["metadata"] = BlockMetadata.from_dict(changes["metadata"])
    return TimeBlock.from_dict(record).copy_with(**changes).to_dict()


class InMemoryPlanStore(PlanStore):
    def __init__(self):
        self._lock = threading.RLock()
        self._plans: Dict[str, dict] = {}
        self._blocks: Dict[str, dict] = {}
        self._exit_times: Dict[str, dict] = {}
        self._manual_anchors: List[dict] = []

    def _commit(self) -> None:
        """Hook for persistent subclasses; called after every mutation while holding the lock."""

    def _blocks_for(self, plan_id: str) -> List[TimeBlock]:
        blocks = [TimeBlock.from_dict(r) for r in self._blocks.values() if r["plan_id"] == plan_id]
        return sorted(blocks, key=lambda b: (b.sequence_order, b.start_time))

    def _hydrate(self, record: dict) -> DailyPlan:
        plan = DailyPlan.from_record(record)
        plan.time_blocks = self._blocks_for(plan.id)
        plan.exit_times = sorted(
            (ExitTime.from_dict(r) for r in self._exit_times.values() if r["plan_id"] == plan.id),
            key=lambda e: e.exit_time,
        )
        return plan

    def _record_for(self, user_id: str, plan_date: date) -> Optional[dict]:
        for record in self._plans.values():
            if record["user_id"] == user_id and record["plan_date"] == plan_date.isoformat():
                return record
        return None

    def create_daily_plan(self, plan: DailyPlan) -> DailyPlan:
        with self._lock:
            if self._record_for(plan.user_id, plan.plan_date) is not None:
                raise DuplicatePlanError(plan.user_id, plan.plan_date.isoformat())
            self._plans[plan.id] = plan.to_record()
            self._commit()
            return self._hydrate(self._plans[plan.id])

    def replace_daily_plan(
        self,
        plan: DailyPlan,
        blocks: List[TimeBlock],
        exit_times: List[ExitTime],
        expected_previous_id: Optional[str] = None
    ) -> DailyPlan:
        with self._lock:
            current = self._record_for(plan.user_id, plan.plan_date)
            current_id = current["id"] if current else None
            if current_id != expected_previous_id:
                raise DuplicatePlanError(plan.user_id, plan.plan_date.isoformat())
            if current_id is not None:
                self._plans.pop(current_id, None)
                self._blocks = {k: r for k, r in self._blocks.items() if r["plan_id"] != current_id}
                self._exit_times = {k: r for k, r in self._exit_times.items() if r["plan_id"] != current_id}
            self._plans[plan.id] = plan.to_record()
            for block in blocks:
                self._blocks[block.id] = block.to_dict()
            for item in exit_times:
                self._exit_times[item.id] = item.to_dict()
            self._commit()
            return self._hydrate(self._plans[plan.id])

    def get_daily_plan(self, plan_id: str) -> Optional[DailyPlan]:
        with self._lock:
            record = self._plans.get(plan_id)
            return self._hydrate(record) if record else None

    def get_daily_plan_by_date_with_blocks(self, user_id: str, plan_date: date) -> Optional[DailyPlan]:
        with self._lock:
            record = self._record_for(user_id, plan_date)
            return self._hydrate(record) if record else None

    def delete_daily_plan(self, plan_id: str) -> None:
        with self._lock:
            self._plans.pop(plan_id, None)
            self._commit()

    def delete_time_blocks_by_plan(self, plan_id: str) -> None:
        with self._lock:
            self._blocks = {k: r for k, r in self._blocks.items() if r["plan_id"] != plan_id}
            self._commit()

    def delete_exit_times_by_plan(self, plan_id: str) -> None:
        with self._lock:
            self._exit_times = {k: r for k, r in self._exit_times.items() if r["plan_id"] != plan_id}
            self._commit()

    def create_time_blocks(self, blocks: List[TimeBlock]) -> List[TimeBlock]:
        with self._lock:
            for block in blocks:
                self._blocks[block.id] = block.to_dict()
            self._commit()
            return [TimeBlock.from_dict(self._blocks[b.id]) for b in blocks]

    def get_time_block(self, block_id: str) -> Optional[TimeBlock]:
        with self._lock:
            record = self._blocks.get(block_id)
            return TimeBlock.from_dict(record) if record else None

    def update_time_block(self, block_id: str, changes: dict) -> TimeBlock:
        return self.update_time_blocks([(block_id, changes)])[0]

    def update_time_blocks(self, updates: List[BlockUpdate]) -> List[TimeBlock]:
        return self.commit_plan_edit(None, updates)

    def commit_plan_edit(
        self,
        plan_id: Optional[str],
        updates: List[BlockUpdate],
        exit_times: Optional[List[ExitTime]] = None,
        status: Optional[str] = None
    ) -> List[TimeBlock]:
        with self._lock:
            if plan_id is not None and plan_id not in self._plans:
                raise PlanNotFoundError(f"Plan {plan_id} no longer exists", hint="Reload the plan")
            staged = {}
            for block_id, changes in updates:
                record = staged.get(block_id) or self._blocks.get(block_id)
                if record is None:
                    raise StaleTimeBlockReferenceError(block_id, plan_id)
                staged[block_id] = _apply_block_changes(record, changes)

            self._blocks.update(staged)
            for item in exit_times or []:
                self._exit_times = {
                    k: r for k, r in self._exit_times.items()
                    if not (r["plan_id"] == item.plan_id and r["anchor_id"] == item.anchor_id)
                }
                self._exit_times[item.id] = item.to_dict()
            if status is not None and plan_id is not None:
                self._plans[plan_id] = {**self._plans[plan_id], "status": status}
            self._commit()
            return [TimeBlock.from_dict(self._blocks[block_id]) for block_id, _ in updates]

    def create_exit_times(self, exit_times: List[ExitTime]) -> List[ExitTime]:
        with self._lock:
            for item in exit_times:
                self._exit_times[item.id] = item.to_dict()
            self._commit()
            return [ExitTime.from_dict(self._exit_times[e.id]) for e in exit_times]

    def save_manual_anchor(self, user_id: str, plan_date: date, manual: ManualAnchorInput) -> None:
        with self._lock:
            record = {"user_id": user_id, "plan_date": plan_date.isoformat(), **manual.to_dict()}
            if record not in self._manual_anchors:
                self._manual_anchors.append(record)
            self._commit()

    def get_manual_anchors(self, user_id: str, plan_date: date) -> List[ManualAnchorInput]:
        with self._lock:
            return [
                ManualAnchorInput.from_dict(r)
                for r in self._manual_anchors
                if r["user_id"] == user_id and r["plan_date"] == plan_date.isoformat()
            ]


class JsonPlanStore(InMemoryPlanStore):
    def __init__(self, path: Optional[Path] = None):
        super().__init__()
        self._path = Path(path) if path else PLAN_STORE_PATH
        self._load()

    def _load(self) -> None:
        if not self._path.exists():
            return
        try:
            with open(self._path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            logger.error("Cannot load plan store %s: %s", self._path, e)
            return
        self._plans = {r["id"]: r for r in data.get("plans", [])}
        self._blocks = {r["id"]: r for r in data.get("time_blocks", [])}
        self._exit_times = {r["id"]: r for r in data.get("exit_times", [])}
        self._manual_anchors = list(data.get("manual_anchors", []))

    def save(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "plans": list(self._plans.values()),
            "time_blocks": list(self._blocks.values()),
            "exit_times": list(self._exit_times.values()),
            "manual_anchors": self._manual_anchors,
        }
        tmp_path = self._path.with_suffix(".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(payload, f, ensure_ascii=False, indent=2)
        tmp_path.replace(self._path)

    def _commit(self) -> None:
        self.save()

