"""
Reconciliation Orchestrator

One cycle:

1. snapshot nginx.conf -> nginx.conf.bak
2. GET the app's item from Apollo
3. decode the item
4. refuse an empty value
5. write the value to nginx.conf
6. compare digests of nginx.conf and nginx.conf.bak; equal means no change
7. ``nginx -t`` + ``nginx -s reload``; on failure restore the backup

Every step failure ends the cycle with a logged outcome and the loop carries
on at the next interval.  Nothing in a cycle terminates the process.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from . import backup, local_writer
from .config import AgentConfig
from .digest import file_digest
from .process_control import NginxController
from .remote_config import (
    ApolloOpenApiClient,
    RemoteConfigDecodeError,
    RemoteConfigError,
    RemoteConfigHTTPError,
    decode_record,
)
from .scheduler import IntervalTicker

logger = logging.getLogger(__name__)


class CycleOutcome(str, Enum):
    APPLIED = "applied"
    NO_CHANGE = "no_change"
    BACKUP_FAILED = "backup_failed"
    FETCH_FAILED = "fetch_failed"
    DECODE_FAILED = "decode_failed"
    EMPTY_VALUE = "empty_value"
    WRITE_FAILED = "write_failed"
    DIGEST_FAILED = "digest_failed"
    ROLLED_BACK = "rolled_back"
    ROLLBACK_FAILED = "rollback_failed"
    ERROR = "error"

    @property
    def is_failure(self) -> bool:
        return self not in (CycleOutcome.APPLIED, CycleOutcome.NO_CHANGE)


@dataclass(frozen=True)
class CycleResult:
    outcome: CycleOutcome
    detail: str = ""


class Reconciler:
    """Keeps the managed nginx.conf converged on the Apollo item value."""

    def __init__(
        self,
        config: AgentConfig,
        client: ApolloOpenApiClient,
        controller: NginxController,
        *,
        ticker: Optional[IntervalTicker] = None,
    ) -> None:
        self._config = config
        self._client = client
        self._controller = controller
        self._ticker = ticker if ticker is not None else IntervalTicker()
        self._managed = config.managed_path
        self._backup = config.backup_path
        self._cycle_count = 0

    @property
    def cycle_count(self) -> int:
        return self._cycle_count

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def run(self, stop_event: threading.Event) -> None:
        """Run cycles at the ticker's interval until *stop_event* is set."""
        logger.info(
            "Reconciliation loop started: file=%s item=%s interval=%.0fs",
            self._managed,
            self._config.app_id,
            self._ticker.interval_s,
        )
        while self._ticker.wait(stop_event):
            self.run_cycle()
        logger.info("Reconciliation loop stopped after %d cycles", self._cycle_count)

    def run_cycle(self) -> CycleResult:
        self._cycle_count += 1
        try:
            result = self._reconcile()
        except Exception as exc:
            logger.exception("Unexpected error in reconciliation cycle %d", self._cycle_count)
            result = CycleResult(CycleOutcome.ERROR, str(exc))
        logger.debug("Cycle %d finished: %s", self._cycle_count, result.outcome.value)
        return result

    # ------------------------------------------------------------------
    # One cycle
    # ------------------------------------------------------------------

    def _reconcile(self) -> CycleResult:
        try:
            backup.snapshot(self._managed, self._backup)
        except backup.BackupError as exc:
            logger.error("Backup failed: %s", exc)
            return CycleResult(CycleOutcome.BACKUP_FAILED, str(exc))

        try:
            body = self._client.fetch_item(self._config.app_id)
        except RemoteConfigHTTPError as exc:
            logger.error(
                "Fetching config failed with HTTP %d: %s", exc.status_code, exc.body
            )
            return CycleResult(CycleOutcome.FETCH_FAILED, str(exc))
        except RemoteConfigError as exc:
            logger.error("Fetching config failed: %s", exc)
            return CycleResult(CycleOutcome.FETCH_FAILED, str(exc))

        try:
            record = decode_record(body)
        except RemoteConfigDecodeError as exc:
            logger.error("Decoding config failed: %s\nraw body: %s", exc, exc.body)
            return CycleResult(CycleOutcome.DECODE_FAILED, str(exc))

        if not record.value:
            logger.warning("Fetched config for item %s is empty; skipping", self._config.app_id)
            return CycleResult(CycleOutcome.EMPTY_VALUE)

        try:
            local_writer.save(record.value, self._managed)
        except OSError as exc:
            logger.error("Saving config to %s failed: %s", self._managed, exc)
            return CycleResult(CycleOutcome.WRITE_FAILED, str(exc))

        try:
            current = file_digest(self._managed)
            previous = file_digest(self._backup)
        except OSError as exc:
            logger.error("Computing config digest failed: %s", exc)
            return CycleResult(CycleOutcome.DIGEST_FAILED, str(exc))

        if current == previous:
            logger.info("No change detected in config file")
            return CycleResult(CycleOutcome.NO_CHANGE)

        return self._apply()

    def _apply(self) -> CycleResult:
        try:
            result = self._controller.apply()
        except Exception as exc:
            logger.exception("nginx apply raised; restoring from backup")
            failure = f"nginx apply raised {type(exc).__name__}: {exc}"
        else:
            if result.ok:
                logger.info("Config file updated and nginx reloaded")
                return CycleResult(CycleOutcome.APPLIED)
            failure = result.describe()
            logger.error("nginx reload failed (%s); restoring from backup", failure)

        try:
            backup.restore(self._backup, self._managed)
        except backup.BackupError as exc:
            logger.error("Restoring from backup failed: %s", exc)
            return CycleResult(CycleOutcome.ROLLBACK_FAILED, str(exc))
        logger.info("Restored %s from %s", self._managed, self._backup)
        return CycleResult(CycleOutcome.ROLLED_BACK, failure)
