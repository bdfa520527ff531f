"""
MCP server for the depreciation engine: schedule diagnostics, manual runs,
run history and per-asset depreciation, for LLM clients.
"""
import inspect
import json
import logging
import os
import time
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from functools import wraps
from typing import Any, Callable, Dict, Optional
from mcp.server.fastmcp import FastMCP
from pydantic import BaseModel, Field, field_validator

from fixedassets.database import init_db
from services.depreciation_service import DepreciationService, RunMode
from services.schedule_service import ScheduleService

# Configure logging
LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO').upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

MCP_HOST = os.environ.get('MCP_HOST', '0.0.0.0')
MCP_PORT = int(os.environ.get('MCP_PORT', '8000'))
MCP_TRANSPORT = os.environ.get('MCP_TRANSPORT', 'sse')  # 'sse' for network, 'stdio' for local
MCP_TOOL_ALLOWLIST = {
    name.strip() for name in os.environ.get("MCP_TOOL_ALLOWLIST", "").split(",") if name.strip()
}

mcp = FastMCP("mcp-fixed-assets", host=MCP_HOST, port=MCP_PORT)

# Answers "what can you do?" without the client listing every tool.
DEPRECIATION_CAPABILITIES = [
    {
        "category": "schedule",
        "description": "Automatic depreciation schedule: configuration, due-ness diagnostics and on/off switch.",
        "methods": ["get_depreciation_schedule", "explain_depreciation_schedule", "toggle_depreciation_schedule"],
        "examples": [
            "When does automatic depreciation run next?",
            "Why did depreciation not run last night?",
        ],
    },
    {
        "category": "runs",
        "description": "Manual depreciation runs and run history with per-asset outcomes.",
        "methods": ["trigger_depreciation_run", "get_depreciation_runs"],
        "examples": [
            "Run depreciation now and catch up any missed months.",
            "Show the last 5 depreciation runs.",
        ],
    },
    {
        "category": "assets",
        "description": "Per-asset depreciation status, history, pending months and projected schedule.",
        "methods": ["get_asset_depreciation", "preview_asset_depreciation", "get_depreciation_overview"],
        "examples": [
            "What is the book value of asset 12?",
            "How many months of depreciation are pending across all assets?",
        ],
    },
    {
        "category": "server",
        "description": "Tool discovery, health and call metrics.",
        "methods": ["describe_tool", "get_server_health", "get_server_metrics", "get_depreciation_capabilities"],
        "examples": [
            "Describe the parameters of trigger_depreciation_run.",
            "How many tool calls failed since startup?",
        ],
    },
]


# ============================================================================
# Tool input validation
# ============================================================================

class RunInput(BaseModel):
    mode: str = RunMode.CATCH_UP.value

    @field_validator("mode")
    @classmethod
    def _known_mode(cls, value: str) -> str:
        allowed = [m.value for m in RunMode]
        if value not in allowed:
            raise ValueError(f"Invalid mode '{value}'. Allowed: {allowed}")
        return value


class RunHistoryInput(BaseModel):
    limit: int = Field(10, ge=1, le=200)


TOOL_INPUT_MODELS: Dict[str, type[BaseModel]] = {
    "trigger_depreciation_run": RunInput,
    "get_depreciation_runs": RunHistoryInput,
}


# ============================================================================
# Call metrics
# ============================================================================

@dataclass
class CallStats:
    calls: int = 0
    failures: int = 0
    latency_ms: float = 0.0

    def add(self, success: bool, latency_ms: float) -> None:
        self.calls += 1
        self.latency_ms += latency_ms
        if not success:
            self.failures += 1


class ToolMetrics:
    """In-process counters per tool and per source (scheduler, ledger, system)."""

    def __init__(self):
        self.started_at = time.time()
        self.by_tool: Dict[str, CallStats] = {}
        self.by_source: Dict[str, CallStats] = {}

    def record(self, tool_name: str, source: str, success: bool, latency_ms: float) -> None:
        self.by_tool.setdefault(tool_name, CallStats()).add(success, latency_ms)
        self.by_source.setdefault(source, CallStats()).add(success, latency_ms)

    def snapshot(self) -> Dict[str, Any]:
        calls = sum(s.calls for s in self.by_tool.values())
        failures = sum(s.failures for s in self.by_tool.values())
        latency = sum(s.latency_ms for s in self.by_tool.values())
        return {
            "uptime_seconds": round(time.time() - self.started_at, 1),
            "calls_total": calls,
            "failures_total": failures,
            "latency_avg_ms": round(latency / calls, 3) if calls else 0.0,
            "by_tool": {name: asdict(s) for name, s in sorted(self.by_tool.items())},
            "by_source": {name: asdict(s) for name, s in sorted(self.by_source.items())},
        }

    def prometheus(self) -> str:
        lines = [
            "# HELP depreciation_mcp_tool_calls_total Tool calls by tool",
            "# TYPE depreciation_mcp_tool_calls_total counter",
        ]
        lines += [f'depreciation_mcp_tool_calls_total{{tool="{n}"}} {s.calls}' for n, s in sorted(self.by_tool.items())]
        lines += [
            "# HELP depreciation_mcp_tool_failures_total Failed tool calls by tool",
            "# TYPE depreciation_mcp_tool_failures_total counter",
        ]
        lines += [f'depreciation_mcp_tool_failures_total{{tool="{n}"}} {s.failures}' for n, s in sorted(self.by_tool.items())]
        lines += [
            "# HELP depreciation_mcp_tool_latency_ms_sum Summed tool latency in ms",
            "# TYPE depreciation_mcp_tool_latency_ms_sum counter",
        ]
        lines += [f'depreciation_mcp_tool_latency_ms_sum{{tool="{n}"}} {s.latency_ms:.3f}' for n, s in sorted(self.by_tool.items())]
        return "\n".join(lines) + "\n"


METRICS = ToolMetrics()
TOOL_REGISTRY: Dict[str, Callable[..., Any]] = {}


# ============================================================================
# Response envelope
# ============================================================================

NO_ERROR = {"code": None, "message": None, "details": None}


def _error(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return {"code": code, "message": message, "details": details}


def _failure(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return {"success": False, "data": None, "error": _error(code, message, details), "meta": {}}


def _envelope(result: Any) -> Dict[str, Any]:
    """
    Shape a service result as {success, data, error, meta}.

    Services answer with {"success": bool, "data": ..., "error": str}. Extra
    top-level keys (count, asset_id, message...) are passed through.
    """
    if not isinstance(result, dict):
        return {"success": True, "data": result, "error": dict(NO_ERROR), "meta": {}}

    success = bool(result.get("success", True))
    error = result.get("error")
    if not error:
        error = dict(NO_ERROR)
    elif isinstance(error, str):
        error = _error("service_error", error)

    envelope = {k: v for k, v in result.items() if k not in {"success", "data", "error", "meta"}}
    if "data" in result:
        data = result["data"]
    else:
        # toggle-style results carry their payload at the top level
        data = dict(envelope) if success else None
    envelope.update(success=success, data=data, error=error, meta=dict(result.get("meta") or {}))
    return envelope


def tool_endpoint(source: str):
    """Envelope, allowlist, metrics and one JSON log line per tool call."""
    def decorator(func: Callable[..., Any]):
        tool_name = func.__name__

        @wraps(func)
        async def wrapper(*args, **kwargs):
            request_id = uuid.uuid4().hex
            started = time.perf_counter()

            if MCP_TOOL_ALLOWLIST and tool_name not in MCP_TOOL_ALLOWLIST:
                response = _failure(
                    "tool_not_allowed",
                    f"Tool '{tool_name}' is not allowed by MCP_TOOL_ALLOWLIST.",
                    {"allowlist": sorted(MCP_TOOL_ALLOWLIST)},
                )
            else:
                try:
                    response = _envelope(await func(*args, **kwargs))
                except ValueError as exc:
                    response = _failure("validation_error", str(exc))
                except Exception as exc:
                    logger.exception("[TOOL_ERROR] %s failed", tool_name)
                    response = _failure("internal_error", str(exc), {"exception_type": type(exc).__name__})

            latency_ms = round((time.perf_counter() - started) * 1000.0, 3)
            response["meta"] = {
                "source": source,
                "asof": datetime.now(timezone.utc).isoformat(),
                **response["meta"],
                "request_id": request_id,
                "transport": MCP_TRANSPORT,
                "latency_ms": latency_ms,
            }
            METRICS.record(tool_name, source, response["success"], latency_ms)
            logger.info(json.dumps({
                "event": "tool_call",
                "tool": tool_name,
                "source": source,
                "success": response["success"],
                "error_code": response["error"]["code"],
                "request_id": request_id,
                "latency_ms": latency_ms,
            }))
            return response

        wrapper.__tool_source__ = source
        TOOL_REGISTRY[tool_name] = wrapper
        return wrapper

    return decorator


def _type_name(annotation: Any) -> str:
    if annotation is inspect.Signature.empty:
        return "Any"
    return annotation.__name__ if isinstance(annotation, type) else str(annotation).replace("typing.", "")


# ============================================================================
# Server Tools
# ============================================================================

@mcp.tool()
@tool_endpoint(source="system")
async def get_depreciation_capabilities() -> Dict[str, Any]:
    """
    List what this server can do, by category, with method names and example questions.

    Use when the user asks "what can you do?" or "which depreciation tools exist?".
    """
    return {
        "data": {
            "categories": DEPRECIATION_CAPABILITIES,
            "usage_hint": "Start with explain_depreciation_schedule for schedule questions and get_asset_depreciation for a single asset.",
        }
    }


@mcp.tool()
@tool_endpoint(source="system")
async def describe_tool(tool_name: str) -> Dict[str, Any]:
    """Parameters, defaults, validation schema and example questions for one tool."""
    fn = TOOL_REGISTRY.get(tool_name)
    if fn is None:
        return {
            "success": False,
            "error": _error("tool_not_found", f"Tool '{tool_name}' not found.", {"available": sorted(TOOL_REGISTRY)}),
        }

    parameters = [
        {
            "name": name,
            "type": _type_name(param.annotation),
            "required": param.default is inspect.Signature.empty,
            "default": None if param.default is inspect.Signature.empty else param.default,
        }
        for name, param in inspect.signature(fn).parameters.items()
    ]
    capability = next((c for c in DEPRECIATION_CAPABILITIES if tool_name in c["methods"]), None)
    model_cls = TOOL_INPUT_MODELS.get(tool_name)

    return {
        "data": {
            "name": tool_name,
            "category": capability["category"] if capability else None,
            "source": fn.__tool_source__,
            "doc": inspect.cleandoc(fn.__doc__ or ""),
            "parameters": parameters,
            "validation_schema": model_cls.model_json_schema() if model_cls else None,
            "examples": capability["examples"] if capability else [],
        }
    }


@mcp.tool()
@tool_endpoint(source="system")
async def get_server_health() -> Dict[str, Any]:
    """Server health: database reachable and the automatic schedule present."""
    schedule = ScheduleService.get_schedule()
    return {
        "data": {
            "status": "ok" if schedule.get("success") else "degraded",
            "schedule_error": None if schedule.get("success") else schedule.get("error"),
            "uptime_seconds": METRICS.snapshot()["uptime_seconds"],
            "transport": MCP_TRANSPORT,
        }
    }


@mcp.tool()
@tool_endpoint(source="system")
async def get_server_metrics(output_format: str = "json") -> Dict[str, Any]:
    """Tool call metrics since startup, as JSON or Prometheus text."""
    if output_format.lower() == "prometheus":
        return {"data": {"format": "prometheus", "payload": METRICS.prometheus()}}
    return {"data": {"format": "json", "payload": METRICS.snapshot()}}


# ============================================================================
# Schedule Tools
# ============================================================================

@mcp.tool()
@tool_endpoint(source="scheduler")
async def get_depreciation_schedule() -> Dict[str, Any]:
    """
    Get the automatic depreciation schedule: frequency, execution time, timezone,
    active flag, last run and the stored result of the last run.
    """
    return ScheduleService.get_schedule()


@mcp.tool()
@tool_endpoint(source="scheduler")
async def explain_depreciation_schedule() -> Dict[str, Any]:
    """
    Explain whether the depreciation schedule would fire right now and why.

    Returns the current local time in the schedule's timezone, should_run_now,
    the reason, any configuration error, and the next run time.
    """
    return ScheduleService.get_status()


@mcp.tool()
@tool_endpoint(source="scheduler")
async def toggle_depreciation_schedule(active: bool) -> Dict[str, Any]:
    """
    Enable or disable automatic depreciation.

    Parameters:
        active: True to enable, False to disable
    """
    return ScheduleService.toggle_schedule(active)


# ============================================================================
# Run Tools
# ============================================================================

@mcp.tool()
@tool_endpoint(source="scheduler")
async def trigger_depreciation_run(mode: str = "catch_up") -> Dict[str, Any]:
    """
    Run depreciation now for every asset and return the full result.

    Parameters:
        mode: 'catch_up' records every missed month (default);
              'current_period_only' records only the latest month per asset.

    Example: trigger_depreciation_run() returns totals plus per-asset details and errors
    """
    RunInput.model_validate({"mode": mode})
    return ScheduleService.trigger_run(mode=mode, trigger="mcp")


@mcp.tool()
@tool_endpoint(source="scheduler")
async def get_depreciation_runs(limit: int = 10) -> Dict[str, Any]:
    """
    Recent depreciation runs, newest first, with status, counters and errors.

    Parameters:
        limit: Number of runs to return (1-200, default 10)
    """
    RunHistoryInput.model_validate({"limit": limit})
    return ScheduleService.get_run_history(limit=limit)


# ============================================================================
# Asset Tools
# ============================================================================

@mcp.tool()
@tool_endpoint(source="ledger")
async def get_asset_depreciation(asset_id: int) -> Dict[str, Any]:
    """
    Depreciation status of one asset: monthly amount, accumulated depreciation,
    book value, pending months, completion percentage and history.
    """
    return DepreciationService.get_asset_summary(asset_id)


@mcp.tool()
@tool_endpoint(source="ledger")
async def preview_asset_depreciation(asset_id: int) -> Dict[str, Any]:
    """Projected depreciation for the months an asset has not recorded yet. Nothing is saved."""
    return DepreciationService.preview_asset(asset_id)


@mcp.tool()
@tool_endpoint(source="ledger")
async def get_depreciation_overview() -> Dict[str, Any]:
    """Fleet-wide counts: assets by status, assets with pending months, total depreciated."""
    return DepreciationService.get_system_summary()


# ============================================================================
# Lifecycle
# ============================================================================

def main():
    """CLI entrypoint for mcp-fixed-assets."""
    logger.info(
        "[SERVER] Starting MCP Fixed Assets Server "
        f"(transport={MCP_TRANSPORT}, host={MCP_HOST}, port={MCP_PORT})"
    )
    init_db()
    try:
        mcp.run(transport=MCP_TRANSPORT)
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
