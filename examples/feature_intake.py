"""Example workflow definition module.

Runs the built-in clarify handlers as a nested workflow, then branches on
how many ambiguities were found. No LLM node is involved, so no API key is
needed:

    atomic-workflow validate examples/feature_intake.py
    atomic-workflow run examples/feature_intake.py --project demo
    atomic-workflow status <session-id>
"""

from __future__ import annotations

from typing import Any

from atomic_workflow import END, CodeNode, DynamicCommandNode, EvalNode, WorkflowNode, define_workflow

FEATURES = [
    {
        "id": "checkout",
        "description": "Checkout should be fast and simple",
        "business": {"userStory": "As a shopper I want to pay in one step", "acceptanceCriteria": ["card payments"]},
    },
    {"id": "export", "description": "Export orders as CSV"},
]


def count_open(data: dict[str, Any], ctx: Any) -> dict[str, Any]:
    summary = data.get("clarifySummary") or {}
    settled = summary.get("resolved", 0) + summary.get("deferred", 0)
    return {"openAmbiguities": summary.get("totalAmbiguities", 0) - settled}


handlers = {"count_open": count_open}

clarify = define_workflow(
    "clarify-phase",
    {
        "init": CodeNode(handler="init_clarify", next="detect"),
        "detect": CodeNode(handler="detect_ambiguities", next="summary"),
        "summary": CodeNode(handler="generate_clarify_summary", next=END),
    },
)

workflow = define_workflow(
    "feature-intake",
    {
        "clarify": WorkflowNode(
            workflow_id="clarify-phase",
            input_mapping={"features": "features"},
            output_mapping={"summary": "clarifySummary"},
            next="triage",
        ),
        "triage": CodeNode(handler="count_open", next=lambda s: "flag" if s.data["openAmbiguities"] else "done"),
        "flag": DynamicCommandNode(
            command=lambda s: f"echo {s.data['openAmbiguities']} ambiguities need review",
            next="done",
        ),
        "done": EvalNode(fn=lambda s: {"reviewed": True}, next=END),
    },
    initial_data={"features": FEATURES},
)

workflows = [clarify]
