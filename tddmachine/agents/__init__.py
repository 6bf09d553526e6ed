"""
TDD Machine Agents

An agent turns a StepContext into a Proposal:
  - a free-text plan (written to the plan directory by the controller)
  - an EditPlan (applied to the working tree by the controller)

Agents never touch the filesystem. One RoleAgent class serves all
three roles; prompts and scope rules come from ROLE_PROFILES.
"""

from __future__ import annotations

from typing import Protocol

from loguru import logger
from pydantic import BaseModel, ConfigDict

from tddmachine.agents.edit_plan import AgentError, EditPlan, EditPlanError
from tddmachine.agents.roles import ROLE_PROFILES, RoleProfile, ScopeViolation
from tddmachine.router import Router, RouterError
from tddmachine.step import Role, StepContext

__all__ = [
    "Agent",
    "AgentError",
    "EditPlan",
    "EditPlanError",
    "Proposal",
    "RoleAgent",
    "ScopeViolation",
    "build_agents",
]

EDIT_PLAN_INSTRUCTIONS = """Return **only** JSON matching this schema:
{
  "commit_message": "conventional commit summary",
  "notes": "bullet list or paragraph summarizing edits",
  "files": [
    { "path": "relative/path.py", "contents": "entire file contents" }
  ]
}
Do not include prose outside of the JSON object."""

KATA_LIMIT = 1200
COMMIT_LIMIT = 600
DIFF_LIMIT = 1200
MAX_LISTED_FILES = 30


class Proposal(BaseModel):
    """What an agent wants done for one attempt."""

    model_config = ConfigDict(frozen=True)

    plan: str
    edits: EditPlan
    provider: str = ""
    model: str = ""


class Agent(Protocol):
    role: Role

    def propose(self, context: StepContext, attempt: int) -> Proposal:
        ...


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "…"


def format_context(instruction: str, ctx: StepContext) -> str:
    parts = [
        f"Instruction:\n{instruction}\n",
        f"Role: {ctx.role.value}",
        f"Step: {ctx.step_index}",
        f"Kata description:\n{_truncate(ctx.kata_description, KATA_LIMIT)}\n",
    ]
    if ctx.last_commit_message.strip():
        parts.append(f"Last commit message:\n{_truncate(ctx.last_commit_message, COMMIT_LIMIT)}\n")
    if ctx.last_diff.strip():
        parts.append(f"Last diff snippet:\n{_truncate(ctx.last_diff, DIFF_LIMIT)}\n")
    if ctx.repo_snapshot_paths:
        listed = "\n".join(f"- {p}" for p in ctx.repo_snapshot_paths[:MAX_LISTED_FILES])
        parts.append(f"Tracked files (first {MAX_LISTED_FILES}):\n{listed}\n")
    return "\n".join(parts)


class RoleAgent:
    """
    Two-phase agent: a planning call, then an edit call that sees the plan.

    On retries the prompt notes that the previous attempt was discarded
    so the model does not assume its earlier edits exist.
    """

    def __init__(self, router: Router, role: Role):
        self.router = router
        self.role = role
        self.profile: RoleProfile = ROLE_PROFILES[role]

    def _system_msg(self, prompt: str) -> dict[str, str]:
        return {"role": "system", "content": prompt}

    def _user_msg(self, content: str) -> dict[str, str]:
        return {"role": "user", "content": content}

    def plan_messages(self, ctx: StepContext, attempt: int) -> list[dict[str, str]]:
        instruction = self.profile.plan_instruction
        if attempt > 1:
            instruction += (
                f"\nThis is attempt {attempt}. The previous attempt failed CI or was "
                "rejected and its edits were discarded."
            )
        return [
            self._system_msg(self.profile.plan_prompt),
            self._user_msg(format_context(instruction, ctx)),
        ]

    def edit_messages(self, ctx: StepContext, plan: str) -> list[dict[str, str]]:
        instruction = (
            f"Previously proposed plan:\n{plan}\n\n"
            f"{EDIT_PLAN_INSTRUCTIONS}\n\n"
            "Apply edits now using the repository context below."
        )
        return [
            self._system_msg(self.profile.edit_prompt),
            self._user_msg(format_context(instruction, ctx)),
        ]

    def propose(self, context: StepContext, attempt: int) -> Proposal:
        if context.role != self.role:
            raise AgentError(f"{self.role.value} agent received a {context.role.value} context")

        try:
            plan_resp = self.router.complete(self.role, self.plan_messages(context, attempt))
            plan = plan_resp.content.strip()
            edit_resp = self.router.complete(self.role, self.edit_messages(context, plan), max_tokens=8192)
        except RouterError as e:
            raise AgentError(str(e)) from e

        edits = EditPlan.parse(edit_resp.content)
        self.profile.check_scope(edits)

        logger.info(
            f"[AGENT] {self.role.value} proposes {len(edits.files)} file(s): "
            f"{', '.join(edits.paths)}"
        )
        return Proposal(
            plan=plan,
            edits=edits,
            provider=edit_resp.provider,
            model=edit_resp.model,
        )


def build_agents(router: Router) -> dict[Role, Agent]:
    return {role: RoleAgent(router, role) for role in Role}
