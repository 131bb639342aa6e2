"""
Structured JSON trace for automation dispatch.

One flat record per top-level dispatch run, written to the dedicated
"funnel.trace" logger so it can be shipped separately from operational logs.
"""
from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Optional

from app.engine.models import RuleOutcome

_trace_logger: Optional[logging.Logger] = None


def _get_trace_logger() -> logging.Logger:
    global _trace_logger
    if _trace_logger is not None:
        return _trace_logger

    _trace_logger = logging.getLogger("funnel.trace")
    _trace_logger.setLevel(logging.INFO)
    _trace_logger.propagate = False

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(logging.INFO)

    class JsonFormatter(logging.Formatter):
        def format(self, record: logging.LogRecord) -> str:
            if isinstance(record.msg, dict):
                return json.dumps(record.msg, default=str, ensure_ascii=False)
            return super().format(record)

    handler.setFormatter(JsonFormatter())
    _trace_logger.addHandler(handler)
    return _trace_logger


def build_dispatch_record(
    *,
    source: str,
    deal_id: str,
    trigger_kinds: list[str],
    results: list[RuleOutcome],
    funnel_id: Optional[str] = None,
    event: Optional[dict[str, Any]] = None,
    error: Optional[str] = None,
) -> dict[str, Any]:
    record: dict[str, Any] = {
        "type": "automation_dispatch",
        "ts": datetime.now(timezone.utc).isoformat(),
        "source": source,
        "deal_id": deal_id,
        "funnel_id": funnel_id,
        "trigger_kinds": sorted(set(trigger_kinds)),
        "executed": len(results),
        "failed": sum(1 for r in results if not r.success),
        "max_depth": max((r.depth for r in results), default=0),
        "rules": [
            {"rule_id": r.rule_id, "action_type": r.action_type, "success": r.success, "depth": r.depth}
            for r in results
        ],
    }
    if event is not None:
        record["event"] = event
    if error is not None:
        record["error"] = error
    return record


def log_dispatch_run(**kwargs: Any) -> None:
    """
    Log one record for a dispatch run.

    Keyword arguments are those of build_dispatch_record(): source
    ("process_event", "move_deal", "run_existing"), deal_id, trigger_kinds,
    results, and optionally funnel_id, the inbound event and a fatal error.
    """
    _get_trace_logger().info(build_dispatch_record(**kwargs))
