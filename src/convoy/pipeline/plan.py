"""Implementation-plan parsing.

The planning phase writes ``implementation-plan.md`` as a sequence of task
blocks::

    ### Task: task-001 - Add parser
    **Description:** What changes and why.
    **Files:** src/parser.py, tests/test_parser.py
    **Dependencies:** none
    **Acceptance Criteria:**
    - parses the header
    - rejects bad input

The same parse feeds the planning gate and the implementation executor.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from convoy.scheduler import DependencyGraph

PLAN_FILENAME = "implementation-plan.md"

_TASK_SPLIT = re.compile(r"^#{2,3}\s+Task:\s+", re.MULTILINE)
_HEADER = re.compile(r"^(task-\d+)\s*-\s*(.+)")
_FIELD_END = r"(?=\n\*\*|\n#{2,}|\Z)"
_ITEM_STRIP = re.compile(r"^[\s`*-]+|[\s`*]+$")


@dataclass
class PlanTask:
    id: str
    name: str
    description: str = ""
    files: list[str] = field(default_factory=list)
    dependencies: list[str] = field(default_factory=list)
    acceptance_criteria: list[str] = field(default_factory=list)


def _field(block: str, label: str) -> str:
    match = re.search(rf"\*\*{label}:\*\*\s*(.*?){_FIELD_END}", block, re.DOTALL)
    return match.group(1).strip() if match else ""


def _split_items(value: str) -> list[str]:
    items = (_ITEM_STRIP.sub("", part).strip() for part in re.split(r"[,\n]", value))
    return [item for item in items if item]


def parse_implementation_plan(content: str) -> list[PlanTask]:
    """Parse task blocks from plan markdown.  Unparsable headers get a placeholder id."""
    tasks: list[PlanTask] = []
    for block in _TASK_SPLIT.split(content)[1:]:
        header = block.split("\n", 1)[0].strip()
        match = _HEADER.match(header)
        task_id = match.group(1) if match else f"task-unknown-{len(tasks) + 1}"
        name = match.group(2).strip() if match else header

        deps_raw = _field(block, "Dependencies") or "none"
        dependencies = [] if deps_raw.lower() == "none" else _split_items(deps_raw)

        criteria = [
            re.sub(r"^[\s*-]+", "", line).strip()
            for line in _field(block, "Acceptance Criteria").splitlines()
        ]

        tasks.append(
            PlanTask(
                id=task_id,
                name=name,
                description=_field(block, "Description"),
                files=_split_items(_field(block, "Files")),
                dependencies=dependencies,
                acceptance_criteria=[c for c in criteria if c],
            )
        )
    return tasks


def build_task_graph(tasks: list[PlanTask]) -> DependencyGraph:
    """Dependency graph over task ids.

    Raises:
        DependencyResolutionError: a task depends on an unknown task.
        CyclicDependencyError: the plan's dependencies form a cycle.
    """
    return DependencyGraph.from_mapping({task.id: task.dependencies for task in tasks})
