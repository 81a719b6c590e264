"""
TaskPilot - Main Entry Point
============================

Command line interface. It:
1. Loads configuration
2. Builds the orchestrator (persistence, tools, model backend)
3. Runs the crash-recovery sweep
4. Runs a task, or inspects tasks, routing and events

Run with:
    python -m taskpilot.main run qa "Check the utils package"

Or after installing:
    taskpilot run refactor "Split the config module" --file taskpilot/utils/config.py
    taskpilot classify "Plot the monthly revenue trend" --image chart.png
    taskpilot recent --limit 5
    taskpilot events <task-id>
"""

import asyncio
import json
import sys

import click

from taskpilot.agent.events import AgentEvent, AgentEventType
from taskpilot.orchestrator import Orchestrator
from taskpilot.routing.router import (
    ChatRequest,
    RoutingOptions,
    get_route_for_request,
    provider_for_model,
)
from taskpilot.tasks.models import TaskOptions, TaskPriority, TaskStatus, TaskTarget, TaskType
from taskpilot.utils.config import get_config
from taskpilot.utils.errors import TaskPilotError
from taskpilot.utils.logger import Logger

main_logger = Logger("Main")

STATUS_ICONS = {
    TaskStatus.PENDING: "○",
    TaskStatus.QUEUED: "◔",
    TaskStatus.RUNNING: "●",
    TaskStatus.AWAITING_APPROVAL: "?",
    TaskStatus.APPROVED: "◕",
    TaskStatus.COMPLETED: "✓",
    TaskStatus.FAILED: "✗",
    TaskStatus.CANCELLED: "-",
}


def _approver(orchestrator: Orchestrator, auto_approve: bool):
    """Observer that asks on the terminal when a task waits for approval."""
    async def on_event(event: AgentEvent) -> None:
        if event.type != AgentEventType.AWAITING_APPROVAL:
            return

        while event.task_id not in orchestrator.manager.pending_approvals():
            await asyncio.sleep(0.05)

        tools = ", ".join(event.data.get("tools", []))
        if auto_approve:
            approved = True
        else:
            approved = await asyncio.to_thread(click.confirm, f"Allow {tools}?", default=False)

        if approved:
            await orchestrator.manager.approve(event.task_id)
        else:
            await orchestrator.manager.reject(event.task_id, "Rejected from the command line")

    return on_event


def _progress(event: AgentEvent) -> None:
    if event.type == AgentEventType.TOOL_CALL:
        click.echo(f"  → {event.data.get('tool_name')}")
    elif event.type == AgentEventType.TOOL_RESULT:
        result = event.data.get("tool_result", {})
        mark = "✓" if result.get("success") else "✗"
        click.echo(f"    {mark} {event.data.get('tool_name')} ({event.data.get('duration_ms', 0)}ms)")


@click.group()
def cli():
    """taskpilot - autonomous coding agent tasks"""
    pass


# ── Tasks ─────────────────────────────────────────────────────────────────────


@cli.command("run")
@click.argument("task_type", type=click.Choice([t.value for t in TaskType]))
@click.argument("title")
@click.option("--description", "-d", default="", help="What the agent should do")
@click.option("--file", "files", multiple=True, help="Target file (repeatable)")
@click.option("--dir", "directories", multiple=True, help="Target directory (repeatable)")
@click.option("--priority", "-p", default="normal", type=click.Choice([p.value for p in TaskPriority]))
@click.option("--autonomy", default=None, type=click.Choice(["full", "supervised", "manual"]))
@click.option("--dry-run", is_flag=True, help="Describe changes without writing files")
@click.option("--commit", is_flag=True, help="Allow the agent to commit")
@click.option("--yes", "-y", "auto_approve", is_flag=True, help="Approve every gated action")
def run_task(task_type, title, description, files, directories, priority, autonomy, dry_run, commit, auto_approve):
    """Create a task and run it to completion."""
    async def run():
        orchestrator = Orchestrator.from_config()
        await orchestrator.start()
        orchestrator.events.subscribe(_progress)
        orchestrator.events.subscribe(_approver(orchestrator, auto_approve))

        try:
            task = await orchestrator.submit(
                task_type,
                title,
                description=description,
                target=TaskTarget(
                    files=list(files),
                    directories=list(directories),
                    scope="file" if files else "directory" if directories else "project",
                ),
                options=TaskOptions(dry_run=dry_run, enable_commit=commit),
                priority=priority,
                autonomy_level=autonomy,
            )
            click.echo(f"Created task: {task.id} ({task.type.value}, {task.autonomy_level.value})")

            task = await orchestrator.run_task(task.id)
            while task.status == TaskStatus.PENDING:
                click.echo(f"Retrying ({task.retry_count}/{task.max_retries})...")
                task = await orchestrator.run_task(task.id)
            return task
        finally:
            await orchestrator.close()

    try:
        task = asyncio.run(run())
    except TaskPilotError as e:
        main_logger.error("Task run failed", e)
        sys.exit(1)

    icon = STATUS_ICONS.get(task.status, "?")
    click.echo(f"{icon} {task.status.value}: {task.result.summary if task.result else ''}")
    if task.result and task.result.changes:
        for change in task.result.changes:
            click.echo(f"  {change['type']}: {change['path']}")
    if task.status != TaskStatus.COMPLETED:
        sys.exit(1)


@cli.command("recent")
@click.option("--limit", "-n", default=10, help="How many tasks")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def recent(limit, json_output):
    """List the most recent tasks."""
    async def fetch():
        orchestrator = Orchestrator.from_config(backend=_NoBackend())
        try:
            await orchestrator.manager.recover_interrupted()
            return await orchestrator.manager.get_recent_tasks(limit)
        finally:
            await orchestrator.manager.adapter.close()

    tasks = asyncio.run(fetch())

    if json_output:
        click.echo(json.dumps([t.to_dict() for t in tasks], indent=2))
        return

    if not tasks:
        click.echo("No tasks found.")
        return

    for task in tasks:
        icon = STATUS_ICONS.get(task.status, "?")
        retries = f" [retry {task.retry_count}/{task.max_retries}]" if task.retry_count else ""
        click.echo(f"  {icon} {task.id}: {task.title} ({task.type.value}, {task.status.value}){retries}")


@cli.command("events")
@click.argument("task_id")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def events(task_id, json_output):
    """Show the agent events recorded for a task."""
    async def fetch():
        orchestrator = Orchestrator.from_config(backend=_NoBackend())
        try:
            return await orchestrator.manager.get_task_events(task_id)
        finally:
            await orchestrator.manager.adapter.close()

    recorded = asyncio.run(fetch())

    if json_output:
        click.echo(json.dumps([e.to_dict() for e in recorded], indent=2))
        return

    if not recorded:
        click.echo("No events recorded.")
        return

    for event in recorded:
        details = event.data.get("tool_name") or event.data.get("message") or ""
        click.echo(f"  {event.timestamp} {event.type.value} {details}".rstrip())


# ── Routing ───────────────────────────────────────────────────────────────────


@cli.command("classify")
@click.argument("text")
@click.option("--model", default=None, help="Model the caller asked for")
@click.option("--image", "images", multiple=True, help="Attached image (repeatable)")
@click.option("--file", "files", multiple=True, help="Attached file (repeatable)")
@click.option("--threshold", default=None, type=float, help="Confidence threshold")
def classify(text, model, images, files, threshold):
    """Classify a message and show where it would be routed."""
    model = model or get_config().model.model
    message = {"role": "user", "content": text}
    if images:
        message["images"] = [{"name": name} for name in images]
    if files:
        message["files"] = [{"name": name} for name in files]

    request = ChatRequest(model=model, provider=provider_for_model(model), messages=[message])
    route = asyncio.run(get_route_for_request(
        request,
        RoutingOptions(auto_routing=True, confidence_threshold=threshold),
    ))
    click.echo(json.dumps(route.to_dict(), indent=2))


class _NoBackend:
    """Placeholder backend for commands that never run the agent."""

    async def complete(self, system, messages, tools):
        raise RuntimeError("This command does not call the model")


if __name__ == "__main__":
    cli()
