"""
TaskPilot - Autonomous Coding Agent Tasks
=========================================

Runs coding tasks (tests, QA, features, refactors, docs, security) by
looping a language model against a registry of file, test, lint and git
tools, with approval gates and a persisted task lifecycle.

This package provides:
- Agent loop that drives the model through iterative tool use
- Task lifecycle state machine with retries, approvals and crash recovery
- Tool registry and executor with schema validation
- Streaming transport for chat responses with timeouts
- Intent classification and model routing
- Rate limiting and retry with backoff for outbound calls
"""

__version__ = "1.0.0"
