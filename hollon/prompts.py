"""Prompt templates for every Brain call the orchestrator makes."""

from typing import List, Optional

from .models import Role, Task

BASE_SYSTEM_PROMPT = """\
You are a hollon: an autonomous member of an engineering organization.
You receive one task at a time, do it completely, and report the result.

## Rules:
- Stay within the scope of the task you were given.
- For code work, return the complete change inside fenced code blocks.
- For analysis work, structure the answer with markdown headings.
"""

EXECUTE_PROMPT = """\
# Task: {title}

Type: {type}  Priority: {priority}

{description}
{extra}"""

DECOMPOSE_PROMPT = """\
You are breaking a large task into subtasks for temporary specialist workers.

Task: {title}
Type: {type}  Priority: {priority}

{description}

Available roles (use the id as "roleId"):
{roles_description}

Output ONLY a JSON object of this shape:
```json
{{
  "subtasks": [
    {{
      "title": "unique short title",
      "description": "what to do, specific and actionable",
      "type": "implementation | bug_fix | analysis | research | documentation | review",
      "priority": "P1 | P2 | P3 | P4",
      "roleId": "one of the role ids above",
      "affectedFiles": ["path/to/file"],
      "dependencies": ["title of an earlier subtask"]
    }}
  ],
  "reasoning": "why this breakdown"
}}
```

Rules:
- Between 1 and {max_subtasks} subtasks.
- Dependencies refer to titles of subtasks listed EARLIER in the array.
- Keep each subtask completable by a single worker.
"""

REVIEW_PROMPT = """\
You are reviewing delegated work for the task below.

Task: {title}

{description}

Subtasks:
{subtasks}

Decide what happens next and answer with a ```json block:
- {{"action": "complete", "reasoning": "..."}}
- {{"action": "rework", "reasoning": "...", "subtaskIds": ["..."], "reworkInstructions": "..."}}
- {{"action": "add_tasks", "reasoning": "...", "newSubtasks": [<same shape as decomposition subtasks>]}}
- {{"action": "redirect", "reasoning": "...", "cancelSubtaskIds": ["..."], "newDirection": "..."}}
"""

PARENT_COMPLETION_PROMPT = """\
All subtasks of the task below are completed.

Task: {title}

{description}

Completed subtasks:
{subtasks}

Is the parent task fully done, or is more work needed?
Answer with a ```json block: {{"action": "complete" | "add_tasks", "reason": "..."}}
"""

CODE_REVIEW_PROMPT = """\
Review the pull request for the task below.

Task: {title}

{description}

Pull request: {pr_title} (branch {branch})

{body}

Answer with a ```json block: {{"verdict": "approved" | "changes_requested", "comments": "..."}}
"""


def build_system_prompt(role: Optional[Role]) -> str:
    prompt = BASE_SYSTEM_PROMPT
    if role is not None:
        prompt += f"\n## Your role: {role.name}\n"
        if role.capabilities:
            prompt += f"Capabilities: {', '.join(role.capabilities)}\n"
        if role.system_prompt:
            prompt += f"\n{role.system_prompt}\n"
    return prompt


def _subtask_lines(children: List[Task], with_output: bool = False, results=None) -> str:
    lines = []
    for child in children:
        lines.append(f"- [{child.id}] {child.title} ({child.status.value})")
        if with_output and results is not None:
            doc = results(child.id)
            if doc is not None:
                lines.append(f"  Result: {doc.content[:500]}")
    return "\n".join(lines) or "(none)"


def execution_prompt(task: Task, dependency_context: str = "",
                     feedback: Optional[str] = None) -> str:
    extra = ""
    if dependency_context:
        extra += f"\n## Results from dependencies:\n{dependency_context}\n"
    if feedback:
        extra += f"\n## Feedback on your previous attempt (please address):\n{feedback}\n"
    return EXECUTE_PROMPT.format(
        title=task.title, type=task.type.value, priority=task.priority.value,
        description=task.description, extra=extra,
    )


def decomposition_prompt(task: Task, roles: List[Role], max_subtasks: int) -> str:
    roles_description = "\n".join(
        f"- {r.id}: {r.name} ({', '.join(r.capabilities) or 'general'})" for r in roles
    )
    return DECOMPOSE_PROMPT.format(
        title=task.title, type=task.type.value, priority=task.priority.value,
        description=task.description, roles_description=roles_description,
        max_subtasks=max_subtasks,
    )


def review_prompt(task: Task, children: List[Task], results=None) -> str:
    return REVIEW_PROMPT.format(
        title=task.title, description=task.description,
        subtasks=_subtask_lines(children, with_output=True, results=results),
    )


def parent_completion_prompt(parent: Task, children: List[Task], results=None) -> str:
    return PARENT_COMPLETION_PROMPT.format(
        title=parent.title, description=parent.description,
        subtasks=_subtask_lines(children, with_output=True, results=results),
    )


def code_review_prompt(task: Task, pr) -> str:
    return CODE_REVIEW_PROMPT.format(
        title=task.title, description=task.description,
        pr_title=pr.title, branch=pr.branch, body=pr.body[:4000],
    )
