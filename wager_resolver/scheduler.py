"""
Scheduler - drives periodic sweeps of every configured chain.

Each chain is swept by a ChainSweeper: scan, fetch the raw result and the
attestation for every candidate in parallel, then reconcile and settle the
candidates one at a time in scan order. Chains sweep concurrently; a chain
whose previous sweep is still running is skipped for that tick.
"""
import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

from ._rate_limited_log import rate_limited_log
from .attestation import AttestationClient, ProofAttestor
from .chain import EscrowScanner, SettlementSubmitter
from .config import ChainRegistry, Settings
from .exceptions import ErrorCategory, ResolverError, SignerError, TransientError
from .models import Attestation, EscrowInstance, RawOutcome, SettlementStatus, SweepReport
from .reconciler import OutcomeReconciler
from .sources import GameApiClient, extract_game_id

logger = logging.getLogger(__name__)


class ChainSweeper:
    """One chain's scan, fetch, reconcile and settle pipeline"""

    def __init__(
        self,
        chain_key: str,
        scanner: EscrowScanner,
        game_api: GameApiClient,
        attestation_client: AttestationClient,
        attestor: ProofAttestor,
        reconciler: OutcomeReconciler,
        submitter: SettlementSubmitter,
        fetch_concurrency: int = 4
    ):
        self.chain_key = chain_key
        self.scanner = scanner
        self.game_api = game_api
        self.attestation_client = attestation_client
        self.attestor = attestor
        self.reconciler = reconciler
        self.submitter = submitter
        self.fetch_concurrency = fetch_concurrency

    def sweep(self) -> SweepReport:
        """
        Run one sweep of this chain.

        Per-wager failures are logged and counted; a SignerError stops the
        remaining settlements of this sweep.

        Returns:
            SweepReport
        """
        report = SweepReport(chain_key=self.chain_key, started_at=time.time())

        try:
            candidates = self.scanner.scan()
        except TransientError as e:
            logger.warning(f"Sweep of {self.chain_key} aborted: could not enumerate wagers: {e}")
            return self._finish(report, abort_reason=str(e))

        report.scanned = self.scanner.last_scanned
        report.candidates = len(candidates)
        if not candidates:
            return self._finish(report)

        fetched = self._fetch_all(candidates)
        ledger = self.reconciler.begin_sweep(self.chain_key)

        for instance in candidates:
            try:
                raw, attestation = self._result_of(fetched[instance.address])
                outcome = ledger.reconcile(instance, raw, attestation)

                if not self.scanner.is_still_pending(instance.address):
                    logger.info(f"Wager {instance.address} is no longer GameLinked; skipping")
                    report.skipped += 1
                    continue

                # Earlier sends in this sweep may have aged the attestation out
                self.attestor.check_fresh(outcome.attested_at)
                attempt = self.submitter.submit(outcome)
                if attempt.status == SettlementStatus.CONFIRMED:
                    report.settled += 1
                else:
                    report.skipped += 1
            except SignerError as e:
                logger.critical(
                    f"Halting settlements on {self.chain_key} for this sweep: operator credential "
                    f"cannot transact ({e}). Fund or fix the operator before the next sweep."
                )
                return self._finish(report, abort_reason=str(e))
            except ResolverError as e:
                self._record_failure(report, instance, e)
            except Exception as e:
                logger.exception(f"Unexpected error handling {self.chain_key} wager {instance.address}: {e}")
                report.deferred += 1

        return self._finish(report)

    def _fetch_all(self, candidates: Iterable[EscrowInstance]) -> Dict[str, Tuple[Future, Future]]:
        pool = ThreadPoolExecutor(max_workers=self.fetch_concurrency, thread_name_prefix=f"fetch-{self.chain_key}")
        with pool:
            futures = {}
            for instance in candidates:
                game_id = extract_game_id(instance.external_game_id)
                futures[instance.address] = (
                    pool.submit(self.game_api.fetch_outcome, game_id),
                    pool.submit(self._fetch_attestation, game_id),
                )
        return futures

    def _fetch_attestation(self, game_id: str) -> Attestation:
        payload = self.attestation_client.fetch_payload(game_id)
        return self.attestor.verify(payload, game_id)

    @staticmethod
    def _result_of(futures: Tuple[Future, Future]) -> Tuple[RawOutcome, Attestation]:
        raw_future, attestation_future = futures
        return raw_future.result(), attestation_future.result()

    def _record_failure(self, report: SweepReport, instance: EscrowInstance, error: ResolverError) -> None:
        category = error.category
        context = f"{self.chain_key} wager {instance.address} (game {instance.external_game_id})"

        if category == ErrorCategory.IDEMPOTENT:
            logger.info(f"{context} already resolved")
            report.skipped += 1
        elif category == ErrorCategory.TRANSIENT:
            logger.warning(f"[{category.value}] {context} deferred to next sweep: {error}")
            report.deferred += 1
        elif category == ErrorCategory.DATA_QUALITY:
            rate_limited_log(
                f"[{category.value}] {context} left for a later sweep: {error}",
                level="warning",
                logger_instance=logger,
                key=f"{self.chain_key}:{instance.address}:{type(error).__name__}"
            )
            report.deferred += 1
        elif category == ErrorCategory.VALIDATION_MISMATCH:
            logger.error(f"[{category.value}] {context} will not be settled automatically: {error}")
            report.rejected += 1
        else:
            logger.error(f"[{category.value}] {context} not settled this sweep: {error}")
            report.rejected += 1

    def _finish(self, report: SweepReport, abort_reason: Optional[str] = None) -> SweepReport:
        report.finished_at = time.time()
        if abort_reason is not None:
            report.aborted = True
            report.abort_reason = abort_reason
        logger.info(
            f"Sweep of {self.chain_key} finished in {report.finished_at - report.started_at:.1f}s: "
            f"{report.candidates}/{report.scanned} candidates, {report.settled} settled, "
            f"{report.skipped} skipped, {report.deferred} deferred, {report.rejected} rejected"
            + (" (aborted)" if report.aborted else "")
        )
        return report


class Scheduler:
    """
    Fixed-cadence driver for the chain sweepers.

    A per-chain busy lock, taken without blocking, guarantees a chain never
    has two sweeps in flight.
    """

    def __init__(
        self,
        sweepers: Mapping[str, ChainSweeper],
        interval: float = 60.0,
        resources: Iterable[Any] = ()
    ):
        """
        Initialize the scheduler.

        Args:
            sweepers: One sweeper per chain key, in chain order
            interval: Seconds between sweep ticks
            resources: Objects with a close() method, closed on stop()
        """
        self._sweepers: Dict[str, ChainSweeper] = dict(sweepers)
        self.interval = interval
        self._resources = list(resources)

        self._busy: Dict[str, threading.Lock] = {key: threading.Lock() for key in self._sweepers}
        self._stop_event = threading.Event()
        self._lifecycle_lock = threading.Lock()
        self._executor: Optional[ThreadPoolExecutor] = None
        self._driver: Optional[threading.Thread] = None

        self._status_lock = threading.Lock()
        self._last_reports: Dict[str, SweepReport] = {}
        self._last_errors: Dict[str, str] = {}
        self._skipped_ticks: Dict[str, int] = {key: 0 for key in self._sweepers}

    @property
    def chain_keys(self) -> Tuple[str, ...]:
        return tuple(self._sweepers)

    @property
    def is_running(self) -> bool:
        return self._driver is not None and self._driver.is_alive()

    def start(self) -> None:
        """Start sweeping every interval in a background thread."""
        with self._lifecycle_lock:
            if self.is_running:
                logger.warning("Scheduler already running")
                return
            self._stop_event.clear()
            self._executor = ThreadPoolExecutor(
                max_workers=max(1, len(self._sweepers)), thread_name_prefix="sweep"
            )
            self._driver = threading.Thread(target=self._run, name="wager-resolver-scheduler", daemon=True)
            self._driver.start()
        logger.info(f"Scheduler started: {len(self._sweepers)} chain(s), every {self.interval}s")

    def stop(self, timeout: Optional[float] = None) -> None:
        """
        Stop scheduling new sweeps and wait for in-flight sweeps to finish.

        Args:
            timeout: Seconds to wait for the driver thread; in-flight sweeps
                are always allowed to complete
        """
        with self._lifecycle_lock:
            self._stop_event.set()
            driver, executor = self._driver, self._executor
            if driver is not None:
                driver.join(timeout)
                if driver.is_alive():
                    logger.warning("Scheduler driver did not stop within the timeout")
            if executor is not None:
                executor.shutdown(wait=True)
            self._executor = None
            self._driver = None

        for resource in self._resources:
            resource.close()
        logger.info("Scheduler stopped")

    def _run(self) -> None:
        while not self._stop_event.is_set():
            self._dispatch()
            self._stop_event.wait(self.interval)

    def _dispatch(self) -> None:
        executor = self._executor
        for chain_key in self._sweepers:
            if self._stop_event.is_set() or executor is None:
                return
            try:
                executor.submit(self.sweep_chain, chain_key)
            except RuntimeError:
                # Executor shut down between the check and the submit
                return

    def sweep_chain(self, chain_key: str) -> Optional[SweepReport]:
        """
        Sweep one chain unless its previous sweep is still running.

        Args:
            chain_key: Configured chain key

        Returns:
            The sweep report, or None if the sweep was skipped or crashed
        """
        busy = self._busy[chain_key]
        if not busy.acquire(blocking=False):
            with self._status_lock:
                self._skipped_ticks[chain_key] += 1
            logger.warning(f"Previous sweep of {chain_key} is still running; skipping this tick")
            return None

        try:
            report = self._sweepers[chain_key].sweep()
        except Exception as e:
            logger.exception(f"Sweep of {chain_key} crashed: {e}")
            with self._status_lock:
                self._last_errors[chain_key] = str(e)
            return None
        finally:
            busy.release()

        with self._status_lock:
            self._last_reports[chain_key] = report
            if report.aborted:
                self._last_errors[chain_key] = report.abort_reason or "aborted"
            else:
                self._last_errors.pop(chain_key, None)
        return report

    def run_once(self) -> Dict[str, Optional[SweepReport]]:
        """
        Sweep every chain once, concurrently, and wait for all of them.

        Returns:
            Report per chain key (None for chains skipped as busy)
        """
        with ThreadPoolExecutor(max_workers=max(1, len(self._sweepers)), thread_name_prefix="sweep-once") as pool:
            futures = {key: pool.submit(self.sweep_chain, key) for key in self._sweepers}
        return {key: future.result() for key, future in futures.items()}

    def status(self) -> Dict[str, Any]:
        with self._status_lock:
            return {
                "running": self.is_running,
                "interval": self.interval,
                "chains": {
                    key: {
                        "busy": self._busy[key].locked(),
                        "skippedTicks": self._skipped_ticks[key],
                        "lastReport": self._last_reports[key].model_dump() if key in self._last_reports else None,
                        "lastError": self._last_errors.get(key),
                    }
                    for key in self._sweepers
                },
            }


def build_scheduler(
    settings: Optional[Settings] = None,
    environ: Optional[Mapping[str, str]] = None,
    registry: Optional[ChainRegistry] = None
) -> Scheduler:
    """
    Wire every component from the environment.

    Args:
        settings: Service settings (defaults to Settings.from_env(environ))
        environ: Mapping to read configuration from (defaults to os.environ)
        registry: Pre-built chain registry

    Returns:
        A Scheduler ready to start()

    Raises:
        ConfigurationError: If settings or chain configuration are unusable
    """
    settings = settings or Settings.from_env(environ)
    if registry is None:
        private_key = settings.operator_private_key.get_secret_value() if settings.operator_private_key else None
        registry = ChainRegistry(environ=environ, private_key=private_key, http_timeout=settings.http_timeout)

    game_api = GameApiClient(
        base_url=settings.game_api_url,
        timeout=settings.http_timeout,
        retry_count=settings.http_retries,
        backoff_base=settings.backoff_base,
    )
    attestation_client = AttestationClient(
        base_url=settings.attestor_url,
        provider_id=settings.attestor_provider_id,
        timeout=settings.http_timeout,
        retry_count=settings.http_retries,
        backoff_base=settings.backoff_base,
    )
    attestor = ProofAttestor(
        trusted_witnesses=settings.trusted_witnesses,
        freshness_window=settings.attestation_freshness,
        max_clock_skew=settings.attestation_max_skew,
        min_witnesses=settings.min_witnesses,
        provider_id=settings.attestor_provider_id,
    )
    reconciler = OutcomeReconciler()
    submitter = SettlementSubmitter(
        registry,
        max_retries=settings.send_retries,
        backoff_base=settings.backoff_base,
        gas_limit=settings.gas_limit,
        receipt_timeout=settings.receipt_timeout,
        preflight=settings.preflight,
    )

    sweepers = {
        chain_key: ChainSweeper(
            chain_key,
            EscrowScanner(registry, chain_key),
            game_api,
            attestation_client,
            attestor,
            reconciler,
            submitter,
            fetch_concurrency=settings.fetch_concurrency,
        )
        for chain_key in registry.chain_keys
    }
    return Scheduler(sweepers, interval=settings.sweep_interval, resources=(game_api, attestation_client))
