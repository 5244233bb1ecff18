"""Registry of known coding-agent CLIs and their command lines."""

import logging
import sys
from dataclasses import dataclass
from typing import List, Optional, Tuple

from ..session.base import quote_posix, quote_windows
from ..utils.subprocess_utils import check_command_exists

logger = logging.getLogger(__name__)

IS_WINDOWS = sys.platform == "win32"

PROCEED_INSTRUCTION = "proceed with implementation"


@dataclass(frozen=True)
class AgentDefinition:
    """A coding agent we know how to launch."""
    name: str
    command: str
    description: str
    co_author: str
    # Arguments placed between the executable and the prompt
    prompt_args: Tuple[str, ...] = ()
    # Shows an interactive yes/no gate on start that the watcher can answer
    has_acceptance_prompt: bool = False


KNOWN_AGENTS: List[AgentDefinition] = [
    AgentDefinition(
        name="claude",
        command="claude",
        description="Anthropic's Claude Code CLI",
        co_author="Claude <noreply@anthropic.com>",
        prompt_args=("--dangerously-skip-permissions",),
        has_acceptance_prompt=True,
    ),
    AgentDefinition(
        name="aider",
        command="aider",
        description="AI pair programming in your terminal",
        co_author="Aider <noreply@aider.chat>",
        prompt_args=("--message",),
    ),
    AgentDefinition(
        name="codex",
        command="codex",
        description="OpenAI's Codex CLI",
        co_author="Codex <noreply@openai.com>",
    ),
    AgentDefinition(
        name="gh-copilot",
        command="gh",
        description="GitHub Copilot CLI",
        co_author="GitHub Copilot <noreply@github.com>",
        prompt_args=("copilot", "suggest"),
    ),
    AgentDefinition(
        name="opencode",
        command="opencode",
        description="AI-powered coding assistant",
        co_author="OpenCode <noreply@opencode.ai>",
    ),
    AgentDefinition(
        name="cline",
        command="cline",
        description="AI coding assistant for VS Code",
        co_author="Cline <noreply@cline.bot>",
    ),
    AgentDefinition(
        name="q",
        command="q",
        description="Amazon Q Developer CLI",
        co_author="Amazon Q <noreply@amazon.com>",
        prompt_args=("chat",),
    ),
]


@dataclass
class AgentStatus:
    agent: AgentDefinition
    available: bool


def known_agents() -> List[AgentDefinition]:
    return list(KNOWN_AGENTS)


def get_agent(name: str) -> Optional[AgentDefinition]:
    for agent in KNOWN_AGENTS:
        if agent.name == name:
            return agent
    return None


def resolve_agent(name: str) -> AgentDefinition:
    """Known agent by name, or a bare definition that runs `name <prompt>`."""
    agent = get_agent(name)
    if agent is None:
        logger.debug(f"Unknown agent '{name}', launching it as a plain command")
        agent = AgentDefinition(
            name=name,
            command=name,
            description="Custom agent",
            co_author="",
        )
    return agent


def is_available(agent: AgentDefinition) -> bool:
    return check_command_exists(agent.command)


def detect_available_agents() -> List[AgentDefinition]:
    return [agent for agent in KNOWN_AGENTS if is_available(agent)]


def all_agent_status() -> List[AgentStatus]:
    return [AgentStatus(agent=agent, available=is_available(agent)) for agent in KNOWN_AGENTS]


def build_interactive_command(
    agent: AgentDefinition,
    prompt: str,
    windows: Optional[bool] = None,
) -> str:
    """Shell command line that starts the agent with a prompt.

    POSIX shells get single-quote escaping, cmd.exe gets doubled quotes.
    """
    if windows is None:
        windows = IS_WINDOWS
    quoted = quote_windows(prompt) if windows else quote_posix(prompt)
    return " ".join([agent.command, *agent.prompt_args, quoted])


def build_planning_prompt(title: str, description: Optional[str] = None) -> str:
    """Prompt asking the agent to analyse and plan, not implement."""
    prompt = f"Plan the implementation for: {title}"
    if description:
        prompt += f"\n\nDetails: {description}"
    prompt += "\n\nAnalyze the codebase and create a detailed plan. Do NOT implement yet."
    return prompt
