"""Step executors for the incident workflow."""

from sre.agents.patch_agent import PatchAgent
from sre.agents.pr_agent import PullRequestAgent
from sre.agents.rca_agent import RootCauseAgent
from sre.agents.verify_agent import VerifyAgent

__all__ = [
    "RootCauseAgent",
    "PatchAgent",
    "VerifyAgent",
    "PullRequestAgent",
]
