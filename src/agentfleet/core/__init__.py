"""Core building blocks shared by every agentfleet subsystem.

Modules:
    - models: Immutable task, agent, environment and log record types
    - result: Result type and error hierarchy
    - config: Layered application configuration
    - console: Rich console and logging setup
"""
