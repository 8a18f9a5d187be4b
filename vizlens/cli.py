"""Administrative refresh commands for cron jobs and operators."""
from __future__ import annotations

import os
import sys

from vizlens import services
from vizlens.refresh import HISTORY_DEFAULT, RefreshSummary

# ---------------------------------------------------------------------------
# Terminal formatting
# ---------------------------------------------------------------------------

_USE_COLOR = sys.stdout.isatty() and not os.environ.get("NO_COLOR")


def _green(t: str) -> str: return f"\033[32m{t}\033[0m" if _USE_COLOR else t
def _red(t: str) -> str: return f"\033[31m{t}\033[0m" if _USE_COLOR else t
def _yellow(t: str) -> str: return f"\033[33m{t}\033[0m" if _USE_COLOR else t
def _bold(t: str) -> str: return f"\033[1m{t}\033[0m" if _USE_COLOR else t


OK = _green("OK")
FAIL = _red("FAIL")
SKIP = _yellow("SKIP")
STALE = _yellow("STALE")

_STATUS = {"success": OK, "failed": FAIL, "skipped": SKIP}

USAGE = """\
Usage: vizlens-refresh <command> [options]

Commands:
  init              First-time population of every aggregate relation (blocking)
  refresh           Refresh relations older than VIZLENS_STALE_THRESHOLD
  refresh --force   Refresh every relation now
  status            Per-relation staleness and overall health
  history [N]       Last N refresh runs (default 20)

Database and thresholds come from VIZLENS_* environment variables.
"""


def _print_summary(summary: RefreshSummary) -> None:
    for r in summary.results:
        rows = f"{r.row_count} rows" if r.row_count is not None else ""
        detail = f"  ({r.error})" if r.error else ""
        print(f"  {_STATUS.get(r.status, r.status)} {r.relation:<24} {r.duration_ms:8.0f}ms  {rows}{detail}")
    print()
    print(f"  {summary.successful}/{summary.total} successful, {summary.failed} failed, "
          f"{summary.skipped} skipped in {summary.total_duration_ms:.0f}ms")


def _fmt_staleness(seconds: float | None) -> str:
    if seconds is None:
        return "never computed"
    if seconds < 120:
        return f"{seconds:.0f}s"
    if seconds < 7200:
        return f"{seconds / 60:.0f}m"
    return f"{seconds / 3600:.1f}h"


def cmd_init(runtime: services.Runtime) -> int:
    print(_bold("Initializing aggregate relations"))
    summary = runtime.manager.initialize()
    _print_summary(summary)
    return 0 if summary.failed == 0 else 1


def cmd_refresh(runtime: services.Runtime, force: bool) -> int:
    print(_bold("Refreshing aggregate relations" + (" (forced)" if force else "")))
    if force:
        summary = runtime.manager.refresh_all()
    else:
        summary = runtime.manager.smart_refresh(runtime.settings.stale_threshold)
    if summary is None:
        print(f"  {OK} Everything is fresher than {runtime.settings.stale_threshold}s")
        return 0
    _print_summary(summary)
    return 0 if summary.failed == 0 else 1


def cmd_status(runtime: services.Runtime) -> int:
    report = runtime.manager.health(runtime.settings.health_threshold)
    print(_bold(f"Aggregate health: {report['status']}"))
    for rel in report["relations"]:
        if rel["error"]:
            mark, detail = FAIL, rel["error"]
        else:
            mark, detail = (STALE if rel["stale"] else OK), _fmt_staleness(rel["staleness"])
        print(f"  {mark} {rel['relation']:<24} {detail}")
    return 0 if report["status"] == "healthy" else 1


def cmd_history(runtime: services.Runtime, limit: int) -> int:
    history = runtime.manager.get_history(limit)
    if not history:
        print("  No refresh runs recorded yet")
        return 0
    for entry in history:
        print(f"  {entry['timestamp']:%Y-%m-%d %H:%M:%S}  "
              f"{entry['successful']}/{entry['total']} ok  "
              f"{entry['duration_ms']:8.0f}ms  {entry['success_rate']:.0%}")
    return 0


def main() -> None:
    args = sys.argv[1:]

    if not args or "--help" in args or "-h" in args:
        print(USAGE)
        sys.exit(0)

    command, rest = args[0], args[1:]
    if command not in ("init", "refresh", "status", "history"):
        print(f"{FAIL} Unknown command: {command}")
        print(USAGE)
        sys.exit(2)

    limit = HISTORY_DEFAULT
    if command == "history" and rest:
        try:
            limit = int(rest[0])
        except ValueError:
            print(f"{FAIL} history expects a number, got {rest[0]!r}")
            sys.exit(2)

    runtime = services.build_runtime()
    try:
        if command == "init":
            code = cmd_init(runtime)
        elif command == "refresh":
            code = cmd_refresh(runtime, force="--force" in rest)
        elif command == "status":
            code = cmd_status(runtime)
        else:
            code = cmd_history(runtime, limit)
    finally:
        runtime.close()
    sys.exit(code)


if __name__ == "__main__":
    main()
