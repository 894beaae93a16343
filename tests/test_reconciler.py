"""
Tests for OutcomeReconciler.
"""
import logging
import threading

import pytest
from hypothesis import given, settings, strategies as st

from wager_resolver.exceptions import (
    AmbiguousParticipantError, DuplicateReconciliationError, ParticipantMismatchError, ResultMismatchError,
    UnresolvedOutcomeError
)
from wager_resolver.models import ResultCode, ZERO_ADDRESS
from wager_resolver.reconciler import OutcomeReconciler, assign_colors, determine_winner
from test_helpers.factories import CREATOR, GAME_ID, OPPONENT, make_attestation, make_instance, make_raw


@pytest.fixture
def reconciler():
    return OutcomeReconciler()


def _reconcile(reconciler, instance=None, raw=None, attestation=None):
    return reconciler.reconcile(
        "base-sepolia",
        instance or make_instance(),
        raw or make_raw(),
        attestation or make_attestation(),
    )


class TestScenarios:
    """Resolution scenarios for a wager between alice (creator) and bob (opponent)."""

    def test_creator_wins_as_white(self, reconciler):
        outcome = _reconcile(reconciler)

        assert outcome.winner_address == CREATOR
        assert outcome.result_code == ResultCode.WHITE_WIN
        assert outcome.white_address == CREATOR
        assert outcome.black_address == OPPONENT
        assert outcome.external_game_id == GAME_ID

    def test_draw_has_no_winner(self, reconciler):
        outcome = _reconcile(reconciler, raw=make_raw(notation="1/2-1/2"),
                             attestation=make_attestation(notation="1/2-1/2"))

        assert outcome.winner_address is None
        assert outcome.winner_or_sentinel == ZERO_ADDRESS

    def test_result_mismatch_is_rejected(self, reconciler):
        with pytest.raises(ResultMismatchError):
            _reconcile(reconciler, raw=make_raw(notation="1-0"), attestation=make_attestation(notation="0-1"))

    def test_creator_plays_black(self, reconciler):
        outcome = _reconcile(
            reconciler,
            raw=make_raw(white="bob", black="alice", notation="0-1"),
            attestation=make_attestation(white="bob", black="alice", notation="0-1"),
        )
        assert outcome.winner_address == CREATOR
        assert outcome.white_address == OPPONENT

    def test_handles_match_case_insensitively(self, reconciler):
        outcome = _reconcile(
            reconciler,
            instance=make_instance(creator_handle="Alice ", opponent_handle="BOB"),
            raw=make_raw(white="alice", black="bob", notation="0-1"),
            attestation=make_attestation(white="ALICE", black="Bob", notation="0-1"),
        )
        assert outcome.winner_address == OPPONENT

    def test_unknown_players_rejected(self, reconciler):
        with pytest.raises(ParticipantMismatchError):
            _reconcile(
                reconciler,
                raw=make_raw(white="alice", black="mallory"),
                attestation=make_attestation(white="alice", black="mallory"),
            )

    def test_raw_and_attested_players_disagree(self, reconciler):
        with pytest.raises(ParticipantMismatchError):
            _reconcile(reconciler, raw=make_raw(white="bob", black="alice"), attestation=make_attestation())

    def test_identical_participant_handles_are_ambiguous(self, reconciler):
        with pytest.raises(AmbiguousParticipantError):
            _reconcile(
                reconciler,
                instance=make_instance(creator_handle="alice", opponent_handle="ALICE"),
                raw=make_raw(white="alice", black="bob"),
                attestation=make_attestation(white="alice", black="bob"),
            )

    def test_unknown_result_is_deferred(self, reconciler):
        with pytest.raises(UnresolvedOutcomeError) as exc_info:
            _reconcile(reconciler, raw=make_raw(notation="*"), attestation=make_attestation(notation="*"))
        assert exc_info.value.escrow_address == make_instance().address

    def test_game_id_disagreement(self, reconciler):
        with pytest.raises(ResultMismatchError):
            _reconcile(reconciler, attestation=make_attestation(game_id="555"), raw=make_raw(game_id="555"))

    def test_wager_game_url_is_normalized(self, reconciler):
        instance = make_instance(game_id=f"https://www.chess.com/game/live/{GAME_ID}")
        assert _reconcile(reconciler, instance=instance).external_game_id == GAME_ID

    def test_mismatch_goes_to_audit_log(self, reconciler, caplog):
        with caplog.at_level(logging.ERROR, logger="wager_resolver.audit"):
            with pytest.raises(ResultMismatchError):
                _reconcile(reconciler, attestation=make_attestation(notation="0-1"))

        assert any(r.name == "wager_resolver.audit" for r in caplog.records)


class TestLedger:
    """Test single issuance per sweep."""

    def test_second_reconcile_in_same_sweep_is_rejected(self, reconciler):
        ledger = reconciler.begin_sweep("base-sepolia")
        instance = make_instance()

        first = ledger.reconcile(instance, make_raw(), make_attestation())
        assert instance.address in ledger

        with pytest.raises(DuplicateReconciliationError):
            ledger.reconcile(instance, make_raw(), make_attestation())
        assert first.winner_address == CREATOR

    def test_new_sweep_starts_clean(self, reconciler):
        instance = make_instance()
        reconciler.begin_sweep("base-sepolia").reconcile(instance, make_raw(), make_attestation())

        outcome = reconciler.begin_sweep("base-sepolia").reconcile(instance, make_raw(), make_attestation())
        assert outcome.chain_key == "base-sepolia"

    def test_concurrent_reconciles_issue_once(self, reconciler):
        ledger = reconciler.begin_sweep("base-sepolia")
        instance = make_instance()
        results, errors = [], []
        barrier = threading.Barrier(8)

        def worker():
            barrier.wait()
            try:
                results.append(ledger.reconcile(instance, make_raw(), make_attestation()))
            except DuplicateReconciliationError as e:
                errors.append(e)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(results) == 1
        assert len(errors) == 7


class TestDetermineWinner:

    def test_unknown_raises(self):
        with pytest.raises(UnresolvedOutcomeError):
            determine_winner(ResultCode.UNKNOWN, CREATOR, OPPONENT)

    def test_assign_colors_missing_handle(self):
        with pytest.raises(ParticipantMismatchError):
            assign_colors(make_instance(opponent_handle=""), "alice", "bob")


handle = st.text(alphabet="abcdefghijklmnopqrstuvwxyz0123456789_", min_size=1, max_size=12)


@settings(max_examples=100, deadline=None)
@given(
    notation=st.sampled_from(["1-0", "0-1", "1/2-1/2"]),
    creator_is_white=st.booleans(),
    creator=handle,
    opponent=handle,
    repeats=st.integers(min_value=1, max_value=3),
)
def test_winner_mapping_is_pure(notation, creator_is_white, creator, opponent, repeats):
    if creator == opponent:
        return
    white, black = (creator, opponent) if creator_is_white else (opponent, creator)
    instance = make_instance(creator_handle=creator, opponent_handle=opponent)
    reconciler = OutcomeReconciler()

    winners = {
        _reconcile(
            reconciler,
            instance=instance,
            raw=make_raw(white=white, black=black, notation=notation),
            attestation=make_attestation(white=white.upper(), black=black, notation=notation),
        ).winner_address
        for _ in range(repeats)
    }

    white_address, black_address = (CREATOR, OPPONENT) if creator_is_white else (OPPONENT, CREATOR)
    expected = {"1-0": white_address, "0-1": black_address, "1/2-1/2": None}[notation]
    assert winners == {expected}
    assert determine_winner(ResultCode.from_notation(notation), white_address, black_address) == expected
