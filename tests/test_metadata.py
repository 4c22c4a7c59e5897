import pytest

from planner.exceptions import ForbiddenMetadataFieldError
from planner.models import BlockMetadata, BlockRole, StepRole


def _gate_metadata() -> BlockMetadata:
    return BlockMetadata(
        role=BlockRole(kind=StepRole.EXIT_GATE, chain_id="chain-a1"),
        chain_id="chain-a1",
        step_id="chain-a1-exit-gate",
        anchor_id="a1",
        chain_view_only=True,
        gate_conditions={"keys": False, "phone": False},
        extra={"template_step_id": "exit-gate"},
    )


def test_merge_keeps_unpatched_siblings():
    merged = _gate_metadata().merge({"gate_conditions": {"keys": True}})

    assert merged.gate_conditions == {"keys": True, "phone": False}
    assert merged.chain_view_only is True
    assert merged.role.kind == StepRole.EXIT_GATE
    assert merged.extra["template_step_id"] == "exit-gate"


def test_merge_role_is_field_level():
    merged = _gate_metadata().merge({"role": {"can_skip_when_late": True}})

    assert merged.role.kind == StepRole.EXIT_GATE
    assert merged.role.chain_id == "chain-a1"
    assert merged.role.can_skip_when_late is True


def test_merge_rejects_identity_fields():
    with pytest.raises(ForbiddenMetadataFieldError) as exc:
        _gate_metadata().merge({"plan_id": "p2", "note": "x"})

    assert exc.value.fields == ["plan_id"]


def test_unknown_keys_round_trip():
    data = _gate_metadata().merge({"note": "bring umbrella", "custom": {"a": 1}}).to_dict()
    restored = BlockMetadata.from_dict(data)

    assert restored.extra["note"] == "bring umbrella"
    assert restored.extra["custom"] == {"a": 1}
    assert data["role"]["type"] == "exit-gate"


def test_chain_id_falls_back_to_role():
    meta = BlockMetadata.from_dict({"role": {"type": "chain-step", "chain_id": "chain-x"}})

    assert meta.chain_id is None
    assert meta.resolved_chain_id == "chain-x"


def test_unknown_role_type_becomes_plain():
    meta = BlockMetadata.from_dict({"role": {"type": "mystery"}})

    assert meta.role.kind == StepRole.PLAIN
