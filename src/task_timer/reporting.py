"""Simple reporting utilities for CLI output."""

from __future__ import annotations

from pathlib import Path
from typing import Iterable

from .db import TaskStore, compute_stats
from .models import TaskRecord, TaskStats
from .time_codec import DurationError, format_duration


class SummaryPrinter:
    """Render human-readable task summaries in the console."""

    def __init__(self, db_path: Path) -> None:
        self.store = TaskStore(db_path)

    def print_summary(self, include_completed: bool = False) -> None:
        tasks = self.store.active_tasks()
        if not tasks:
            print("No active tasks.")
        else:
            stats = collect_stats(tasks)
            total_actual = sum(item.actual_seconds for _, item in stats)
            total_estimated = sum(item.estimated_seconds for _, item in stats)

            print("Active tasks")
            print("-" * 60)
            for task, item in stats:
                print(
                    f"  {task.id:>4} {task.title[:30]:<30} "
                    f"{task.actual_time:>9} / {task.estimated_time:<9} {_efficiency(item)}"
                )
            print()
            print(f"Tracked:   {format_duration(total_actual)}")
            print(f"Estimated: {format_duration(total_estimated)}")

        if include_completed:
            rows = self.store.completed_tasks()
            print()
            print("Completed tasks")
            print("-" * 60)
            if not rows:
                print("  (none)")
            for row in rows:
                print(
                    f"  {row['id']:>4} {row['title'][:30]:<30} "
                    f"{row['actual_time']:>9} / {row['estimated_time']:<9} "
                    f"{row['efficiency']:.1f}%"
                )


def collect_stats(tasks: Iterable[TaskRecord]) -> list[tuple[TaskRecord, TaskStats]]:
    """Pair tasks with their statistics, skipping rows whose durations do not parse."""
    result: list[tuple[TaskRecord, TaskStats]] = []
    for task in tasks:
        try:
            result.append((task, compute_stats(task)))
        except DurationError:
            continue
    return sorted(result, key=lambda item: item[1].actual_seconds, reverse=True)


def _efficiency(stats: TaskStats) -> str:
    if stats.estimated_seconds == 0 or stats.actual_seconds == 0:
        return "-"
    return f"{stats.efficiency:.1f}%"
