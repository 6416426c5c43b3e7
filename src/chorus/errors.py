"""Exception hierarchy for chorus."""


class ChorusError(Exception):
    """Base exception for all chorus errors."""

    pass


class ConfigurationError(ChorusError):
    """An agent or the application is misconfigured."""

    pass


class AgentNotFoundError(ChorusError):
    """No agent with the requested id is registered."""

    def __init__(self, agent_id: str) -> None:
        self.agent_id = agent_id
        super().__init__(f"Agent not found: {agent_id}")


class AgentPolicyError(ChorusError):
    """The requested change is not allowed for this kind of agent."""

    pass


class CommandError(ChorusError):
    """A slash command could not be executed."""

    pass
