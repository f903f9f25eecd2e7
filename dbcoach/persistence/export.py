"""Captured session export formatters.

Provides JSON and Markdown export functions for captured sessions.
"""

from __future__ import annotations

from dbcoach.schemas.streaming import CapturedSession, TaskState


def export_json(captured: CapturedSession) -> str:
    """Export a captured session as a formatted JSON string.

    Returns:
        Pretty-printed JSON of the session, its chunk log and insights.
    """
    return captured.model_dump_json(indent=2)


def export_markdown(captured: CapturedSession) -> str:
    """Export a captured session as a human-readable Markdown report.

    Generates a structured Markdown document with sections for session
    metadata, each generation task's output and the insight timeline.

    Returns:
        Markdown-formatted string.
    """
    session = captured.session
    lines: list[str] = []

    lines.append(f"# Generation Report: {session.id}")
    lines.append("")

    # Metadata
    lines.append("## Metadata")
    lines.append("")
    lines.append(f"- **Prompt:** {session.prompt}")
    lines.append(f"- **Schema Flavor:** {session.schema_flavor}")
    lines.append(f"- **Status:** {session.status}")
    lines.append(f"- **Started:** {captured.started_at.isoformat()}")
    if captured.ended_at:
        lines.append(f"- **Ended:** {captured.ended_at.isoformat()}")
        lines.append(f"- **Duration:** {captured.duration_ms / 1000:.1f}s")
    if session.project_id:
        lines.append(f"- **Project:** {session.project_id}")
    lines.append(f"- **Chunks:** {len(captured.chunks):,}")
    if session.error_message:
        lines.append(f"- **Error:** {session.error_message}")
    lines.append("")

    # Tasks
    if session.tasks:
        lines.append("## Generation Tasks")
        lines.append("")
        for task in session.tasks:
            content = captured.task_content(task.id) or task.content
            label = "Fallback" if task.used_fallback else str(task.state).title()
            lines.append(f"### {task.title} ({label})")
            lines.append("")
            lines.append(f"- **Agent:** {task.agent}")
            lines.append(f"- **Chunks:** {len(captured.chunks_for(task.id))}")
            if task.error:
                lines.append(f"- **Error:** {task.error}")
            lines.append("")
            if content:
                lines.append("<details>")
                lines.append(f"<summary>Task output ({len(content):,} chars)</summary>")
                lines.append("")
                lines.append(content)
                lines.append("")
                lines.append("</details>")
                lines.append("")
            elif task.state == TaskState.FAILED:
                lines.append("_No output._")
                lines.append("")

    # Insights
    if captured.insights:
        lines.append("## Insights")
        lines.append("")
        lines.append("| Time | Agent | Kind | Message |")
        lines.append("|------|-------|------|---------|")
        for insight in captured.insights:
            message = insight.message.replace("|", "\\|")
            lines.append(
                f"| {insight.timestamp.strftime('%H:%M:%S')} | {insight.agent} | "
                f"{insight.kind} | {message} |"
            )
        lines.append("")

    lines.append("---")
    lines.append("*Generated by DB.Coach*")
    lines.append("")

    return "\n".join(lines)
