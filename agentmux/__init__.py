"""agentmux - drive interactive agent sessions in tmux through stateless commands."""

__version__ = "0.1.0"
