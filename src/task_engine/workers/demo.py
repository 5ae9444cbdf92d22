"""Demo worker that walks through a fixed number of steps."""

from __future__ import annotations

import csv
import time
from pathlib import Path

from task_engine.engine.contracts import ActionContext, BaseWorker, action


class DemoWorker(BaseWorker):
    """Reports step-by-step progress; ``export`` also writes a CSV artifact."""

    def identifier(self) -> str:
        return "demo"

    def icon(self) -> str:
        return "fa-flask"

    def title(self) -> str:
        return "Demo worker"

    def description(self) -> str:
        return "Runs a configurable number of no-op steps and reports progress."

    @action("make")
    def make(self, context: ActionContext) -> None:
        total = self._steps(context)
        delay = float(self.get_config("step_delay_seconds", 0) or 0)
        if context.meta.get("fail"):
            raise RuntimeError(str(context.meta.get("fail_message") or "Demo failure requested"))

        for step in range(1, total + 1):
            if delay:
                time.sleep(delay)
            context.push_progress(
                progress=int(step * 100 / total),
                processed=step,
                total=total,
                message=f"Step {step}/{total}",
            )
        context.finish(result={"steps": total}, message=f"Completed {total} step(s)")

    @action("export")
    def export(self, context: ActionContext) -> None:
        total = self._steps(context)
        output_dir = Path(
            context.meta.get("output_dir") or self.get_config("output_dir", ".task_engine/exports"),
        )
        output_dir.mkdir(parents=True, exist_ok=True)
        path = output_dir / f"demo-{context.task_id}.csv"

        with path.open("w", encoding="utf-8", newline="") as handle:
            writer = csv.writer(handle)
            writer.writerow(["step", "label"])
            for step in range(1, total + 1):
                writer.writerow([step, f"Step {step}"])
                context.push_progress(
                    progress=int(step * 100 / total),
                    processed=step,
                    total=total,
                    message=f"Exported row {step}/{total}",
                )

        context.finish(
            result={"path": str(path), "filename": path.name, "rows": total},
            message=f"Exported {total} row(s)",
        )

    def _steps(self, context: ActionContext) -> int:
        raw = context.meta.get("steps", self.get_config("steps", 5))
        return max(1, int(raw))
