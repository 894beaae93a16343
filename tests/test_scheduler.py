"""
Tests for ChainSweeper and Scheduler.
"""
import threading
import time

import pytest
from unittest.mock import MagicMock

from wager_resolver.attestation import ProofAttestor
from wager_resolver.chain import EscrowScanner, SettlementSubmitter
from wager_resolver.config import Settings
from wager_resolver.exceptions import ConfigurationError, GameNotFoundError, TransientError
from wager_resolver.models import EscrowState, SweepReport
from wager_resolver.reconciler import OutcomeReconciler
from wager_resolver.scheduler import ChainSweeper, Scheduler, build_scheduler
from test_helpers.factories import (
    CHAIN_ENV, OPERATOR_KEY, PROVIDER_ID, WAGER, WITNESS_ADDRESS, make_payload, make_raw, make_receipt, wager_tuple
)

SECOND_WAGER = "0x" + "7" * 40


@pytest.fixture
def game_api():
    api = MagicMock()
    api.fetch_outcome.side_effect = lambda game_id: make_raw(game_id=game_id)
    return api


@pytest.fixture
def attestation_client():
    client = MagicMock()
    client.fetch_payload.side_effect = lambda game_id: make_payload(game_id=game_id)
    return client


@pytest.fixture
def sweeper(registry, fake_chain, game_api, attestation_client):
    fake_chain.wagers[WAGER] = wager_tuple()
    return ChainSweeper(
        "base-sepolia",
        EscrowScanner(registry, "base-sepolia"),
        game_api,
        attestation_client,
        ProofAttestor([WITNESS_ADDRESS], provider_id=PROVIDER_ID),
        OutcomeReconciler(),
        SettlementSubmitter(registry, max_retries=1, backoff_base=0.01),
        fetch_concurrency=2,
    )


def _stub_sweeper(report=None, side_effect=None):
    stub = MagicMock()
    stub.sweep.return_value = report or SweepReport(chain_key="base-sepolia", started_at=time.time())
    if side_effect is not None:
        stub.sweep.side_effect = side_effect
    return stub


class TestChainSweeper:
    """End-to-end sweeps against a fake chain."""

    def test_settles_candidate(self, sweeper, fake_chain):
        fake_chain.wagers["0x" + "1" * 40] = wager_tuple(state=EscrowState.FUNDED)

        report = sweeper.sweep()

        assert report.scanned == 2
        assert report.candidates == 1
        assert report.settled == 1
        assert not report.aborted
        fake_chain.w3.eth.send_raw_transaction.assert_called_once()

    def test_settles_in_scan_order(self, sweeper, fake_chain):
        fake_chain.wagers[SECOND_WAGER] = wager_tuple(game_id="555")

        report = sweeper.sweep()

        assert report.settled == 2
        calls = fake_chain.verifier.functions.verifyChessGameProof.call_args_list
        assert [c.args[1] for c in calls] == [WAGER, SECOND_WAGER]

    def test_result_mismatch_is_not_settled(self, sweeper, fake_chain, attestation_client):
        attestation_client.fetch_payload.side_effect = lambda game_id: make_payload(game_id=game_id, result="0-1")

        report = sweeper.sweep()

        assert report.rejected == 1
        assert report.settled == 0
        fake_chain.w3.eth.send_raw_transaction.assert_not_called()

    def test_missing_game_is_deferred(self, sweeper, fake_chain, game_api):
        game_api.fetch_outcome.side_effect = GameNotFoundError("game 123456789 not found")

        report = sweeper.sweep()

        assert report.deferred == 1
        fake_chain.w3.eth.send_raw_transaction.assert_not_called()

    def test_failure_is_contained_to_one_wager(self, sweeper, fake_chain, game_api):
        fake_chain.wagers[SECOND_WAGER] = wager_tuple(game_id="555")

        def fetch(game_id):
            if game_id == "555":
                raise TransientError("timeout")
            return make_raw(game_id=game_id)

        game_api.fetch_outcome.side_effect = fetch

        report = sweeper.sweep()

        assert report.settled == 1
        assert report.deferred == 1

    def test_signer_failure_aborts_chain(self, sweeper, fake_chain, caplog):
        fake_chain.wagers[SECOND_WAGER] = wager_tuple()
        fake_chain.verify_fn.estimate_gas.side_effect = ValueError("insufficient funds for gas * price + value")

        report = sweeper.sweep()

        assert report.aborted
        assert "insufficient funds" in report.abort_reason
        assert fake_chain.verify_fn.estimate_gas.call_count == 1
        fake_chain.w3.eth.send_raw_transaction.assert_not_called()
        assert any(r.levelname == "CRITICAL" for r in caplog.records)

    def test_wager_resolved_meanwhile_is_skipped(self, sweeper, fake_chain):
        sweeper.scanner.is_still_pending = MagicMock(return_value=False)

        report = sweeper.sweep()

        assert report.skipped == 1
        fake_chain.w3.eth.send_raw_transaction.assert_not_called()

    def test_attestation_aged_out_during_sweep_is_deferred(self, sweeper, fake_chain, attestation_client,
                                                          monkeypatch):
        clock = {"now": 1700000000.0}
        monkeypatch.setattr(time, "time", lambda: clock["now"])
        fake_chain.wagers[SECOND_WAGER] = wager_tuple(game_id="555")
        attestation_client.fetch_payload.side_effect = lambda game_id: make_payload(
            game_id=game_id, timestamp=int(clock["now"]) - 3500
        )

        def slow_confirmation(tx_hash, timeout, poll_latency):
            clock["now"] += 200
            return make_receipt()

        fake_chain.w3.eth.wait_for_transaction_receipt.side_effect = slow_confirmation

        report = sweeper.sweep()

        assert report.settled == 1
        assert report.deferred == 1
        fake_chain.w3.eth.send_raw_transaction.assert_called_once()

    def test_enumeration_failure_aborts_sweep(self, sweeper, fake_chain):
        fake_chain.factory.functions.getTotalWagers.return_value.call.side_effect = ConnectionError("rpc down")

        report = sweeper.sweep()

        assert report.aborted
        assert report.candidates == 0

    def test_no_candidates(self, sweeper, fake_chain, game_api):
        fake_chain.wagers[WAGER] = wager_tuple(state=EscrowState.SETTLED)

        report = sweeper.sweep()

        assert report.candidates == 0
        game_api.fetch_outcome.assert_not_called()


class TestScheduler:
    """Test lifecycle and skip-if-busy."""

    def test_skip_if_busy(self):
        started = threading.Event()
        release = threading.Event()

        def slow_sweep():
            started.set()
            release.wait(5)
            return SweepReport(chain_key="base-sepolia", started_at=time.time())

        stub = _stub_sweeper(side_effect=slow_sweep)
        scheduler = Scheduler({"base-sepolia": stub}, interval=60)

        worker = threading.Thread(target=scheduler.sweep_chain, args=("base-sepolia",))
        worker.start()
        assert started.wait(5)

        assert scheduler.sweep_chain("base-sepolia") is None
        assert scheduler.status()["chains"]["base-sepolia"]["busy"] is True

        release.set()
        worker.join(5)

        assert stub.sweep.call_count == 1
        assert scheduler.status()["chains"]["base-sepolia"]["skippedTicks"] == 1

    def test_run_once_sweeps_every_chain(self):
        base = _stub_sweeper()
        arbitrum = _stub_sweeper(SweepReport(chain_key="arbitrum-sepolia", started_at=time.time()))
        scheduler = Scheduler({"base-sepolia": base, "arbitrum-sepolia": arbitrum})

        reports = scheduler.run_once()

        assert set(reports) == {"base-sepolia", "arbitrum-sepolia"}
        assert reports["arbitrum-sepolia"].chain_key == "arbitrum-sepolia"
        base.sweep.assert_called_once()
        arbitrum.sweep.assert_called_once()

    def test_chains_sweep_concurrently(self):
        barrier = threading.Barrier(2, timeout=5)

        def sweep(chain_key):
            def run():
                barrier.wait()
                return SweepReport(chain_key=chain_key, started_at=time.time())
            return run

        scheduler = Scheduler({
            "base-sepolia": _stub_sweeper(side_effect=sweep("base-sepolia")),
            "arbitrum-sepolia": _stub_sweeper(side_effect=sweep("arbitrum-sepolia")),
        })

        reports = scheduler.run_once()

        assert all(report is not None for report in reports.values())

    def test_crashed_sweep_is_recorded(self, caplog):
        scheduler = Scheduler({"base-sepolia": _stub_sweeper(side_effect=RuntimeError("boom"))})

        assert scheduler.sweep_chain("base-sepolia") is None
        assert scheduler.status()["chains"]["base-sepolia"]["lastError"] == "boom"
        assert "crashed" in caplog.text

        # The busy lock was released
        assert scheduler.status()["chains"]["base-sepolia"]["busy"] is False

    def test_start_and_stop(self):
        swept = threading.Event()
        resource = MagicMock()

        def sweep():
            swept.set()
            return SweepReport(chain_key="base-sepolia", started_at=time.time())

        scheduler = Scheduler({"base-sepolia": _stub_sweeper(side_effect=sweep)}, interval=0.05,
                              resources=[resource])

        scheduler.start()
        assert scheduler.is_running
        assert swept.wait(5)

        scheduler.stop(timeout=5)

        assert not scheduler.is_running
        resource.close.assert_called_once()
        assert scheduler.status()["chains"]["base-sepolia"]["lastReport"]["chain_key"] == "base-sepolia"

    def test_stop_waits_for_in_flight_sweep(self):
        started = threading.Event()
        finished = threading.Event()

        def slow_sweep():
            started.set()
            time_to_finish = threading.Event()
            time_to_finish.wait(0.2)
            finished.set()
            return SweepReport(chain_key="base-sepolia", started_at=time.time())

        scheduler = Scheduler({"base-sepolia": _stub_sweeper(side_effect=slow_sweep)}, interval=60)
        scheduler.start()
        assert started.wait(5)

        scheduler.stop()

        assert finished.is_set()

    def test_start_twice(self, caplog):
        scheduler = Scheduler({"base-sepolia": _stub_sweeper()}, interval=60)
        scheduler.start()
        try:
            scheduler.start()
            assert "already running" in caplog.text
        finally:
            scheduler.stop(timeout=5)


class TestBuildScheduler:

    def test_build_from_environment(self):
        env = {**CHAIN_ENV, "VERIFIER_PRIVATE_KEY": OPERATOR_KEY, "WAGER_SWEEP_INTERVAL": "30",
               "WAGER_TRUSTED_WITNESSES": WITNESS_ADDRESS}

        scheduler = build_scheduler(environ=env)

        assert scheduler.chain_keys == ("base-sepolia",)
        assert scheduler.interval == 30
        assert not scheduler.is_running

    def test_build_with_settings(self):
        settings = Settings(operator_private_key=OPERATOR_KEY, sweep_interval=5)
        scheduler = build_scheduler(settings=settings, environ=CHAIN_ENV)
        assert scheduler.interval == 5

    def test_build_without_chains(self):
        with pytest.raises(ConfigurationError):
            build_scheduler(environ={"VERIFIER_PRIVATE_KEY": OPERATOR_KEY})
