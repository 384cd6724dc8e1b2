"""agentmux command line interface."""
