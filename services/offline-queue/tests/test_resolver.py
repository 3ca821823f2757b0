from __future__ import annotations

from datetime import timedelta

import pytest

from offline_queue.detector import detect_conflict
from offline_queue.errors import PreconditionFailed
from offline_queue.models import ResolutionStrategy
from offline_queue.resolver import (
    auto_resolve,
    candidate_strategies,
    choose_strategy,
    resolve_conflict,
)
from tests.conftest import T0, make_entity

EARLIER = T0
LATER = T0 + timedelta(minutes=5)


def conflict_of(local, remote):
    conflict = detect_conflict(local, remote)
    assert conflict is not None
    return conflict


class TestDecisionTable:
    def test_critical_name_requires_manual(self) -> None:
        conflict = conflict_of(make_entity(name="Milk"), make_entity(name="Whole Milk", updated_at=LATER))
        assert choose_strategy(conflict) is ResolutionStrategy.MANUAL
        assert auto_resolve(conflict) is None

    def test_critical_field_dominates_gotten(self) -> None:
        conflict = conflict_of(
            make_entity(category="Dairy", gotten=True),
            make_entity(category="Drinks", gotten=False, updated_at=LATER),
        )
        assert auto_resolve(conflict) is None

    def test_gotten_and_quantity_example(self) -> None:
        local = make_entity(gotten=False, quantity=2, updated_at=EARLIER)
        remote = make_entity(gotten=True, quantity=5, updated_at=LATER)
        resolved = auto_resolve(conflict_of(local, remote))

        assert resolved.gotten is True
        # Remote is newer, so its quantity wins.
        assert resolved.quantity == 5

    def test_prefer_gotten_takes_newer_quantity_from_local(self) -> None:
        local = make_entity(gotten=True, quantity=2, updated_at=LATER)
        remote = make_entity(gotten=False, quantity=5, updated_at=EARLIER)
        resolved = auto_resolve(conflict_of(local, remote))

        assert resolved.gotten is True
        assert resolved.quantity == 2

    @pytest.mark.parametrize("local_gotten,remote_gotten", [(True, False), (False, True)])
    def test_gotten_is_never_reverted(self, local_gotten, remote_gotten) -> None:
        for local_at, remote_at in [(EARLIER, LATER), (LATER, EARLIER)]:
            conflict = conflict_of(
                make_entity(gotten=local_gotten, notes="a", updated_at=local_at),
                make_entity(gotten=remote_gotten, notes="b", updated_at=remote_at),
            )
            assert auto_resolve(conflict).gotten is True

    def test_field_level_merge_for_several_fields(self) -> None:
        local = make_entity(quantity=2, notes="skim", updated_at=LATER)
        remote = make_entity(quantity=5, notes="whole", updated_at=EARLIER)
        conflict = conflict_of(local, remote)

        assert choose_strategy(conflict) is ResolutionStrategy.FIELD_LEVEL_MERGE
        resolved = auto_resolve(conflict)
        assert (resolved.quantity, resolved.notes) == (2, "skim")
        assert resolved.updated_at == LATER

    def test_single_field_last_write_wins(self) -> None:
        local = make_entity(quantity=2, updated_at=EARLIER)
        remote = make_entity(quantity=5, updated_at=LATER)
        conflict = conflict_of(local, remote)

        assert choose_strategy(conflict) is ResolutionStrategy.LAST_WRITE_WINS
        assert auto_resolve(conflict).quantity == 5

    def test_last_write_wins_tie_goes_to_remote(self) -> None:
        conflict = conflict_of(make_entity(quantity=2), make_entity(quantity=5))
        assert auto_resolve(conflict).quantity == 5


class TestNamedStrategies:
    def test_prefer_local(self) -> None:
        conflict = conflict_of(make_entity(name="Milk"), make_entity(name="Whole Milk", updated_at=LATER))
        resolved = resolve_conflict(conflict, ResolutionStrategy.PREFER_LOCAL)
        assert resolved.name == "Milk"
        assert resolved.updated_at == LATER

    def test_prefer_remote(self) -> None:
        conflict = conflict_of(make_entity(name="Milk"), make_entity(name="Whole Milk", updated_at=LATER))
        assert resolve_conflict(conflict, "prefer-remote").name == "Whole Milk"

    def test_manual_returns_chosen_entity(self) -> None:
        conflict = conflict_of(make_entity(name="Milk"), make_entity(name="Whole Milk", updated_at=LATER))
        chosen = make_entity(name="Oat Milk", updated_at=LATER)
        assert resolve_conflict(conflict, ResolutionStrategy.MANUAL, chosen).name == "Oat Milk"

    def test_manual_without_choice_is_a_precondition_failure(self) -> None:
        conflict = conflict_of(make_entity(name="Milk"), make_entity(name="Whole Milk"))
        with pytest.raises(PreconditionFailed):
            resolve_conflict(conflict, ResolutionStrategy.MANUAL)

    def test_manual_choice_must_match_entity(self) -> None:
        conflict = conflict_of(make_entity(name="Milk"), make_entity(name="Whole Milk"))
        with pytest.raises(PreconditionFailed):
            resolve_conflict(conflict, ResolutionStrategy.MANUAL, make_entity("other"))

    def test_unknown_strategy(self) -> None:
        conflict = conflict_of(make_entity(quantity=1), make_entity(quantity=2))
        with pytest.raises(PreconditionFailed):
            resolve_conflict(conflict, "coin-flip")


def test_candidate_strategies() -> None:
    single = conflict_of(make_entity(name="Milk"), make_entity(name="Whole Milk"))
    assert candidate_strategies(single) == [
        ResolutionStrategy.PREFER_LOCAL,
        ResolutionStrategy.PREFER_REMOTE,
        ResolutionStrategy.MANUAL,
    ]
    several = conflict_of(make_entity(name="Milk", quantity=1), make_entity(name="Whole Milk", quantity=3))
    assert ResolutionStrategy.FIELD_LEVEL_MERGE in candidate_strategies(several)
