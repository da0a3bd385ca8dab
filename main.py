"""
Bedrock Codex - command-line front end of the coding-agent execution core.
Output rendered with Rich.
"""

import asyncio
import argparse
import difflib
import json
import logging
import os
import sys
import time
from typing import List, Optional

from rich.console import Console
from rich.markdown import Markdown
from rich.markup import escape as rich_escape
from rich.table import Table
from rich.text import Text

from agent import AgentEvent, CodeChange, ExecutionCallbacks, ExecutionResult, Mode, Status, Strategy, Tier
from agent.core import CodingAgent, RunOptions
from bedrock_service import BedrockError, BedrockService
from config import app_config, model_config
from execution_store import JsonExecutionStore
from jobs import FileJobQueue
from tools import load_project, write_changes

# Configure logging to file so it doesn't interfere with the console output
logging.basicConfig(
    filename="bedrock_codex.log",
    level=getattr(logging, app_config.log_level),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

console = Console()


# ============================================================
# Constants
# ============================================================

TOOL_ICONS = {
    "read_file":          "\U0001f4c4 ",
    "search_replace":     "\U0001f527 ",
    "edit_lines":         "\U0001f527 ",
    "propose_code_edit":  "✏️ ",
    "create_file":        "✏️ ",
    "delete_file":        "\U0001f5d1 ",
    "grep_content":       "\U0001f50d ",
    "search_files":       "\U0001f50e ",
    "list_files":         "\U0001f4c2 ",
    "run_specialist":     "\U0001f464 ",
    "run_review":         "✔ ",
    "ask_clarification":  "❓ ",
}

STATUS_STYLES = {
    Status.COMPLETED.value: "#3fb950",
    Status.CLARIFICATION.value: "#d29922",
    Status.CHECKPOINTED.value: "#58a6ff",
    Status.FAILED.value: "#f85149",
    Status.CANCELLED.value: "#8b949e",
    Status.RUNNING.value: "#c9d1d9",
}

DATA_DIR = app_config.data_directory


def _store() -> JsonExecutionStore:
    return JsonExecutionStore(os.path.join(DATA_DIR, "executions"))


def _queue() -> FileJobQueue:
    return FileJobQueue(os.path.join(DATA_DIR, "jobs"))


# ============================================================
# Rendering
# ============================================================

def _make_callbacks(show_text: bool) -> ExecutionCallbacks:
    async def on_progress(event: AgentEvent) -> None:
        phase = (event.data or {}).get("phase", "")
        if event.content.startswith("Iteration"):
            return
        console.print(Text.from_markup(
            f"   [#8957e5]●[/#8957e5] [#8b949e]{rich_escape(phase)}[/#8b949e] {rich_escape(event.content)}"
        ))

    async def on_content(event: AgentEvent) -> None:
        if event.type == "text" and show_text:
            console.print(event.content, end="", style="#c9d1d9", soft_wrap=True)
        elif event.type == "stream_retry":
            console.print(Text(f"\n   {event.content}", style="#d29922"))

    async def on_tool(event: AgentEvent) -> None:
        data = event.data or {}
        icon = TOOL_ICONS.get(event.content, "▶ ")
        if event.type == "tool_start":
            return
        if event.type == "tool_error":
            console.print(Text.from_markup(
                f"\n   {icon}[#f85149]{rich_escape(event.content)}[/#f85149] "
                f"[#6e7681]{rich_escape(str(data.get('preview', ''))[:120])}[/#6e7681]"
            ))
        else:
            note = " (cached)" if data.get("redundant") else ""
            console.print(Text.from_markup(
                f"\n   {icon}[#3fb950]{rich_escape(event.content)}[/#3fb950][#6e7681]{note}[/#6e7681]"
            ))

    return ExecutionCallbacks(on_progress=on_progress, on_content_chunk=on_content, on_tool_event=on_tool)


def render_change(change: CodeChange) -> None:
    rel_path = change.path or change.file_name
    old_lines = change.original_content.splitlines(keepends=True)
    new_lines = change.proposed_content.splitlines(keepends=True)
    if change.is_creation:
        label, label_color = "new file", "#3fb950"
    elif change.deleted:
        label, label_color = "deleted", "#f85149"
    else:
        label, label_color = "modified", "#d29922"

    diff_lines = list(difflib.unified_diff(
        old_lines, new_lines,
        fromfile=f"a/{rel_path}",
        tofile=f"b/{rel_path}",
        lineterm="",
    ))
    additions = sum(1 for l in diff_lines if l.startswith("+") and not l.startswith("+++"))
    deletions = sum(1 for l in diff_lines if l.startswith("-") and not l.startswith("---"))

    console.print(Text.from_markup(
        f"\n   [bold #c9d1d9]{rich_escape(rel_path)}[/bold #c9d1d9] [{label_color}]{label}[/{label_color}] "
        f"[#3fb950]+{additions}[/#3fb950] [#f85149]-{deletions}[/#f85149]"
    ))
    colored_diff = Text()
    for line in diff_lines:
        line_str = line.rstrip("\n")
        if line_str.startswith("+++") or line_str.startswith("---"):
            colored_diff.append(line_str + "\n", style="bold #8b949e")
        elif line_str.startswith("@@"):
            colored_diff.append(line_str + "\n", style="#79c0ff")
        elif line_str.startswith("+"):
            colored_diff.append(line_str + "\n", style="#3fb950")
        elif line_str.startswith("-"):
            colored_diff.append(line_str + "\n", style="#f85149")
        else:
            colored_diff.append(line_str + "\n", style="#6e7681")
    console.print(colored_diff)


def render_result(result: ExecutionResult, elapsed: float) -> None:
    style = STATUS_STYLES.get(result.status.value, "#c9d1d9")
    console.print()
    console.print(Markdown(result.analysis or "(no analysis)"))
    for change in result.changes:
        render_change(change)
    for issue in result.validation_issues[:10]:
        where = f"{issue.file}:{issue.line}" if issue.line else issue.file
        console.print(Text(f"   ! {where} ({issue.category}) {issue.description}", style="#d29922"))
    u = result.usage
    console.print(Text.from_markup(
        f"\n   [{style}]{result.status.value}[/{style}] [#6e7681]{result.execution_id} · "
        f"tier {result.tier.value} · {result.strategy.value} · {result.iterations} iteration(s) · "
        f"{len(result.changes)} change(s) · {u.input_tokens:,} in / {u.output_tokens:,} out · "
        f"{elapsed:.1f}s[/#6e7681]"
    ))


# ============================================================
# Commands
# ============================================================

def _apply(root: str, changes: List[CodeChange]) -> None:
    written = write_changes(root, changes)
    for rel in written:
        console.print(Text(f"   ✓ wrote {rel}", style="#3fb950"))


async def _run(args) -> int:
    root = os.path.abspath(args.directory)
    snapshots = load_project(root)
    store = _store()
    agent = CodingAgent(
        BedrockService(model_id=args.model),
        store=store,
        job_queue=_queue(),
    )
    options = RunOptions(
        mode=Mode(args.mode),
        tier=Tier(args.tier) if args.tier else None,
        strategy=Strategy(args.strategy) if args.strategy else None,
        max_iterations=args.max_iterations,
        timeout_seconds=args.timeout,
        model_id=args.model,
        callbacks=_make_callbacks(show_text=not args.json),
    )
    console.print(Text.from_markup(f"[bold #f0f6fc]❯ [/bold #f0f6fc][#c9d1d9]{rich_escape(args.request)}[/#c9d1d9]"))
    started = time.monotonic()
    result = await agent.run(
        args.execution_id, root, os.getenv("USER", "local"), args.request,
        [s.to_dict() for s in snapshots], options=options,
    )
    if args.json:
        print(json.dumps(result.to_dict(), indent=2))
    else:
        render_result(result, time.monotonic() - started)
    if args.apply and result.status == Status.COMPLETED and result.changes:
        _apply(root, result.changes)
    return 0 if result.status != Status.FAILED else 1


async def _worker(args) -> int:
    """Drain the continuation queue, resuming each checkpointed execution."""
    job_queue = _queue()
    store = _store()
    agent = CodingAgent(BedrockService(), store=store, job_queue=job_queue)
    processed = 0
    while True:
        job = job_queue.dequeue()
        if job is None:
            if args.once:
                break
            await asyncio.sleep(args.poll_interval)
            continue
        console.print(Text(f"   resuming {job.execution_id}: {job.user_request[:80]}", style="#58a6ff"))
        started = time.monotonic()
        options = RunOptions.from_dict(job.options, callbacks=_make_callbacks(show_text=False))
        try:
            result = await agent.run(job.execution_id, job.project_id, job.user_id, job.user_request,
                                     job.file_snapshots, preferences=job.preferences, options=options)
        except BedrockError as e:
            logger.error(f"Worker failed on {job.execution_id}: {e}")
            console.print(Text(f"   ✗ {e}", style="#f85149"))
            continue
        render_result(result, time.monotonic() - started)
        if args.apply and result.status == Status.COMPLETED and os.path.isdir(job.project_id):
            _apply(job.project_id, result.changes)
        processed += 1
    console.print(Text(f"   {processed} job(s) processed", style="#8b949e"))
    return 0


def _show(args) -> int:
    record = _store().get(args.execution_id)
    if record is None:
        console.print(Text(f"   No execution {args.execution_id}", style="#f85149"))
        return 1
    if args.json:
        print(json.dumps(record.to_dict(), indent=2))
        return 0
    style = STATUS_STYLES.get(record.status, "#c9d1d9")
    console.print(Text.from_markup(
        f"[bold]{rich_escape(record.execution_id)}[/bold] [{style}]{record.status}[/{style}] "
        f"[#8b949e]phase {record.phase} · {len(record.messages)} message(s) · "
        f"{len(record.changes)} change(s)[/#8b949e]"
    ))
    console.print(Text(record.user_request, style="#c9d1d9"))
    if record.error:
        console.print(Text(f"error: {record.error}", style="#f85149"))
    if record.review:
        console.print(Markdown(record.review.get("summary", "")))
    for data in record.changes:
        render_change(CodeChange(**data))
    return 0


def _list(args) -> int:
    records = _store().list_executions(args.project)
    if not records:
        console.print(Text("   No executions found.", style="#8b949e"))
        return 0
    tbl = Table(padding=(0, 1), expand=False, box=None, show_header=True, header_style="bold #8b949e")
    tbl.add_column("ID", style="#58a6ff")
    tbl.add_column("Status")
    tbl.add_column("Changes", style="#8b949e", justify="right")
    tbl.add_column("Request", style="#c9d1d9")
    tbl.add_column("Updated", style="#6e7681")
    for rec in records[: args.limit]:
        updated = rec.updated_at[:16].replace("T", " ") if rec.updated_at else "?"
        tbl.add_row(
            rec.execution_id,
            Text(rec.status, style=STATUS_STYLES.get(rec.status, "#c9d1d9")),
            str(len(rec.changes)),
            rec.user_request[:60],
            updated,
        )
    console.print(tbl)
    return 0


# ============================================================
# Entry Point
# ============================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Bedrock Codex - Coding Agent Engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py run "make the button blue"            Propose changes for the current directory
  python main.py run -d ~/theme --apply "fix the footer" Apply verified changes to disk
  python main.py worker --once                         Resume checkpointed executions
  python main.py show 3f2a9c1b7d04                     Inspect a stored execution
        """,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run the agent on a request")
    run.add_argument("request", help="Natural-language change request")
    run.add_argument("-d", "--directory", default=".", help="Project directory (default: current directory)")
    run.add_argument("--mode", default=Mode.CODE.value, choices=[m.value for m in Mode])
    run.add_argument("--tier", choices=[t.value for t in Tier], help="Force a complexity tier")
    run.add_argument("--strategy", choices=[s.value for s in Strategy], help="Force a context strategy")
    run.add_argument("--max-iterations", type=int, default=None)
    run.add_argument("--timeout", type=float, default=None, help="Execution time budget in seconds")
    run.add_argument("--model", default=None, help=f"Model id (default: {model_config.model_id})")
    run.add_argument("--execution-id", default=None, help="Resume or name an execution")
    run.add_argument("--apply", action="store_true", help="Write completed changes to disk")
    run.add_argument("--json", action="store_true", help="Print the result as JSON")

    worker = sub.add_parser("worker", help="Resume checkpointed executions from the job queue")
    worker.add_argument("--once", action="store_true", help="Exit when the queue is empty")
    worker.add_argument("--poll-interval", type=float, default=5.0)
    worker.add_argument("--apply", action="store_true", help="Write completed changes to the project directory")

    show = sub.add_parser("show", help="Show a stored execution")
    show.add_argument("execution_id")
    show.add_argument("--json", action="store_true")

    ls = sub.add_parser("list", help="List stored executions")
    ls.add_argument("--project", default=None, help="Filter by project id (directory)")
    ls.add_argument("--limit", type=int, default=20)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    if args.command == "run":
        if not os.path.isdir(args.directory):
            console.print(Text(f"Error: {args.directory} is not a directory", style="#f85149"))
            return 1
        try:
            return asyncio.run(_run(args))
        except BedrockError as e:
            console.print(Text(f"✗ {e}", style="bold #f85149"))
            return 1
        except KeyboardInterrupt:
            console.print(Text("\n   interrupted", style="#8b949e"))
            return 130
    if args.command == "worker":
        return asyncio.run(_worker(args))
    if args.command == "show":
        return _show(args)
    return _list(args)


if __name__ == "__main__":
    sys.exit(main())
