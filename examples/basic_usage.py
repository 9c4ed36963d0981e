#!/usr/bin/env python3
"""Programmatic usage example.

This drives the engine components directly:

* load settings from `.env`
* publish a two-task template
* instantiate it for a client and walk it to completion

State is written under `ENGINE_STATE_PATH` (default `engine_state/`).
"""

from __future__ import annotations

import argparse
from typing import Sequence

from workflow_assignment_engine.engine.config import EngineSettings
from workflow_assignment_engine.engine.logging import configure_logging
from workflow_assignment_engine.engine.service import WorkflowService
from workflow_assignment_engine.engine.templates.models import (
    ChecklistItemSpec,
    NotifyAction,
    TemplateStage,
    TemplateStep,
    TemplateTask,
    WorkflowTemplate,
)
from workflow_assignment_engine.engine.workflow.events import CompletionEvidence


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run a small onboarding workflow end to end.")
    parser.add_argument("--client", required=True, help="Client id to assign the workflow to")
    return parser.parse_args(argv)


def _template() -> WorkflowTemplate:
    return WorkflowTemplate(
        id="onboarding",
        name="Client onboarding",
        scope="global",
        stages=[
            TemplateStage(
                id="setup",
                name="Setup",
                order=1,
                steps=[
                    TemplateStep(
                        id="kyc",
                        name="KYC",
                        order=1,
                        tasks=[
                            TemplateTask(
                                id="collect_id",
                                name="Collect ID",
                                order=1,
                                checklists=[ChecklistItemSpec(id="passport", name="Passport")],
                            ),
                            TemplateTask(
                                id="welcome",
                                name="Send welcome pack",
                                order=2,
                                on_complete_actions=[
                                    NotifyAction(recipient="client", template_key="welcome")
                                ],
                            ),
                        ],
                    )
                ],
            )
        ],
    )


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)

    settings = EngineSettings()
    configure_logging(settings.log_level, settings.log_format)

    service = WorkflowService.from_settings(settings, inline_actions=True)
    try:
        service.save_template_draft(_template())
        version = service.publish_template("onboarding")
        assignment_id = service.instantiate_assignment("onboarding", args.client)
        print(f"Created assignment {assignment_id} from onboarding v{version}")

        snapshot = service.report_completion(
            service.get_assignment_snapshot(assignment_id).current_task_id or "",
            CompletionEvidence(checked_items=("passport",)),
        )
        print(f"Progress after ID check: {snapshot.progress}%")

        snapshot = service.report_completion(snapshot.current_task_id or "")
        print(f"Assignment status: {snapshot.status.value} ({snapshot.progress}%)")
    finally:
        service.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
