"""preview_env.steps — Uniform execution of critical and non-critical backend steps.

Every backend call the controller makes goes through run_step so failures
are logged and reported one way. A critical failure raises StepFailedError;
a non-critical failure is logged and returned as a StepResult with ok=False.
"""
from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from .config import logger
from .serialization import _classify_client_error, _client_error_code, _emit_structured_observability
from .models import StepFailedError

__all__ = ["StepResult", "run_step"]


@dataclass
class StepResult:
    name: str
    critical: bool
    ok: bool
    value: Any = None
    error: Optional[BaseException] = None
    error_code: str = ""
    latency_ms: int = 0

    @property
    def error_message(self) -> str:
        return str(self.error) if self.error is not None else ""


def run_step(
    name: str,
    fn: Callable[[], Any],
    *,
    critical: bool,
    environment_id: str = "",
    service_id: str = "",
) -> StepResult:
    started = time.monotonic()
    try:
        value = fn()
    except Exception as exc:
        latency_ms = int((time.monotonic() - started) * 1000)
        error_code = getattr(exc, "error_code", "") or _client_error_code(exc) or type(exc).__name__
        _emit_structured_observability(
            component="environment_controller",
            event="step_failed",
            environment_id=environment_id,
            service_id=service_id,
            step=name,
            critical=critical,
            latency_ms=latency_ms,
            error_code=error_code,
            extra={"error_class": _classify_client_error(exc)},
        )
        if critical:
            logger.error("[ERROR] %s failed for %s/%s: %s", name, environment_id, service_id, exc)
            raise StepFailedError(name, exc, error_code=error_code) from exc
        logger.warning("[WARNING] %s failed for %s/%s (non-critical): %s", name, environment_id, service_id, exc)
        return StepResult(name, critical, False, error=exc, error_code=error_code, latency_ms=latency_ms)

    latency_ms = int((time.monotonic() - started) * 1000)
    _emit_structured_observability(
        component="environment_controller",
        event="step_succeeded",
        environment_id=environment_id,
        service_id=service_id,
        step=name,
        critical=critical,
        latency_ms=latency_ms,
    )
    return StepResult(name, critical, True, value=value, latency_ms=latency_ms)
