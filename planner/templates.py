"""
Preparation step templates per anchor type.

A template is the ordered list of things to do before leaving the house.
The chain generator fits a template into the prep window it has been given,
so the base minutes here act as weights rather than fixed durations.
"""
from dataclasses import dataclass, field
from typing import Dict, List, Tuple

from planner.models import AnchorType, StepRole

EXIT_GATE_TAGS = ["keys", "phone", "wallet", "water", "meds", "bag-packed"]


@dataclass(frozen=True)
class PrepStepTemplate:
    id: str
    name: str
    base_minutes: int
    is_required: bool = True
    can_skip_when_late: bool = False
    role: StepRole = StepRole.CHAIN_STEP
    gate_tags: Tuple[str, ...] = field(default_factory=tuple)


_BATHROOM = PrepStepTemplate("bathroom", "Bathroom", 10)
_HYGIENE = PrepStepTemplate("hygiene", "Brush teeth and wash", 5)
_SHOWER = PrepStepTemplate("shower", "Shower", 15, is_required=False, can_skip_when_late=True)
_DRESS = PrepStepTemplate("dress", "Get dressed", 10)
_REVIEW = PrepStepTemplate(
    "review-materials", "Review materials", 15, is_required=False, can_skip_when_late=True
)
_PACK = PrepStepTemplate("pack-bag", "Pack bag", 10)
_EXIT_GATE = PrepStepTemplate(
    "exit-gate", "Exit readiness check", 2, role=StepRole.EXIT_GATE, gate_tags=tuple(EXIT_GATE_TAGS)
)

PREP_TEMPLATES: Dict[AnchorType, List[PrepStepTemplate]] = {
    AnchorType.CLASS: [_BATHROOM, _HYGIENE, _SHOWER, _DRESS, _PACK, _EXIT_GATE],
    AnchorType.SEMINAR: [_BATHROOM, _HYGIENE, _SHOWER, _DRESS, _REVIEW, _PACK, _EXIT_GATE],
    AnchorType.WORKSHOP: [_BATHROOM, _HYGIENE, _SHOWER, _DRESS, _REVIEW, _PACK, _EXIT_GATE],
    AnchorType.APPOINTMENT: [_BATHROOM, _HYGIENE, _DRESS, _PACK, _EXIT_GATE],
    AnchorType.OTHER: [_BATHROOM, _HYGIENE, _SHOWER, _DRESS, _PACK, _EXIT_GATE],
}


def get_template(anchor_type: AnchorType) -> List[PrepStepTemplate]:
    return list(PREP_TEMPLATES.get(anchor_type, PREP_TEMPLATES[AnchorType.OTHER]))


def calculate_template_duration(template: List[PrepStepTemplate]) -> int:
    return sum(step.base_minutes for step in template)


def minimum_duration(template: List[PrepStepTemplate]) -> int:
    return sum(step.base_minutes for step in template if step.is_required)


def required_steps(template: List[PrepStepTemplate]) -> List[PrepStepTemplate]:
    return [step for step in template if step.is_required]


def optional_steps(template: List[PrepStepTemplate]) -> List[PrepStepTemplate]:
    return [step for step in template if not step.is_required]


def skippable_steps(template: List[PrepStepTemplate]) -> List[PrepStepTemplate]:
    return [step for step in template if step.can_skip_when_late]


def fit_template(
    template: List[PrepStepTemplate],
    total_minutes: int,
    min_step_minutes: int = 1,
) -> List[Tuple[PrepStepTemplate, int]]:
    """
    Fit template steps into exactly `total_minutes`.

    Skippable steps are dropped when the window is shorter than the full
    template. Remaining non-gate steps are dropped from the front while there
    is less than `min_step_minutes` per step. The exit gate is always kept.
    Minutes are split in proportion to base_minutes (largest remainder).
    """
    steps = list(template)
    if total_minutes < calculate_template_duration(steps):
        steps = [step for step in steps if not step.can_skip_when_late]

    while len(steps) > 1 and len(steps) * min_step_minutes > total_minutes:
        droppable = next(i for i, step in enumerate(steps) if step.role != StepRole.EXIT_GATE)
        steps.pop(droppable)

    if len(steps) == 1:
        return [(steps[0], max(total_minutes, min_step_minutes))]

    spare = total_minutes - len(steps) * min_step_minutes
    weight_total = sum(max(step.base_minutes, 1) for step in steps)
    shares = [spare * max(step.base_minutes, 1) / weight_total for step in steps]
    allotted = [min_step_minutes + int(share) for share in shares]

    leftover = total_minutes - sum(allotted)
    by_remainder = sorted(
        range(len(steps)), key=lambda i: (-(shares[i] - int(shares[i])), i)
    )
    for i in by_remainder[:leftover]:
        allotted[i] += 1

    return list(zip(steps, allotted))
