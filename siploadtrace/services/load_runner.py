from __future__ import annotations

import concurrent.futures
import importlib
import logging
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from siploadtrace.config_loader import AppConfig
from siploadtrace.logging_setup import correlation_context
from siploadtrace.services.call_tracker import CallContext
from siploadtrace.services.recorder import CallIpRecorder

LOGGER = logging.getLogger(__name__)

# Places one call through the external SIP engine and hangs it up; True when the call was established.
CallPlacer = Callable[[CallContext], bool]


@dataclass
class RunSummary:
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    csv_path: Optional[Path] = None


def load_placer(spec: str) -> CallPlacer:
    """Import a placer given as "package.module:attribute"."""
    module_name, sep, attr = (spec or "").partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Placer must look like 'module:callable', got {spec!r}")
    module = importlib.import_module(module_name)
    placer = getattr(module, attr, None)
    if placer is None or not callable(placer):
        raise ValueError(f"Placer {spec!r} is not a callable")
    return placer


class LoadRunner:
    def __init__(
        self,
        recorder: CallIpRecorder,
        placer: CallPlacer,
        config: AppConfig,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._recorder = recorder
        self._placer = placer
        self._config = config
        self._sleep = sleep

    def run(self, call_count: Optional[int] = None) -> RunSummary:
        sip = self._config.sip
        total = sip.call_count if call_count is None else call_count
        if total < 1:
            raise ValueError(f"call_count must be at least 1, got {total}")
        summary = RunSummary(csv_path=self._recorder.csv_path)
        LOGGER.info(
            "Load run start calls=%s destination=%s from=%s",
            total,
            sip.destination_uri,
            sip.from_uri,
            extra={"category": "CALLS"},
        )
        for idx in range(total):
            LOGGER.info("Starting call %s of %s", idx + 1, total, extra={"category": "CALLS"})
            summary.attempted += 1
            if self._run_one(sip.external_domain):
                summary.succeeded += 1
            else:
                summary.failed += 1
            if sip.call_delay_ms and idx + 1 < total:
                self._sleep(sip.call_delay_ms / 1000.0)

        LOGGER.info(
            "Load run completed attempted=%s succeeded=%s failed=%s csv=%s",
            summary.attempted,
            summary.succeeded,
            summary.failed,
            summary.csv_path,
            extra={"category": "CALLS"},
        )
        return summary

    def _run_one(self, destination: str) -> bool:
        tracking_id = uuid.uuid4().hex
        with correlation_context(tracking_id):
            resolved = self._recorder.resolve_address(destination)
            context = self._recorder.start_call(tracking_id, destination, resolved)
            try:
                return self._place(context)
            finally:
                self._recorder.finish_call(tracking_id)

    def _place(self, context: CallContext) -> bool:
        timeout = self._config.runner.call_timeout_seconds
        executor = concurrent.futures.ThreadPoolExecutor(max_workers=1, thread_name_prefix="call")
        try:
            ok = bool(executor.submit(self._placer, context).result(timeout=timeout))
        except concurrent.futures.TimeoutError:
            LOGGER.error("Call timed out after %ss destination=%s", timeout, context.destination_domain, extra={"category": "ERRORS"})
            return False
        except Exception as exc:
            LOGGER.error(
                "Exception during call to destination=%s error=%s",
                context.destination_domain,
                exc,
                exc_info=True,
                extra={"category": "ERRORS"},
            )
            return False
        finally:
            executor.shutdown(wait=False)

        if ok:
            LOGGER.info("Call to %s completed", context.destination_domain, extra={"category": "CALLS"})
        else:
            LOGGER.warning("Call to %s failed to initiate", context.destination_domain, extra={"category": "CALLS"})
        return ok
