"""Restoring snapshots onto the live filesystem."""
from .orchestrator import (
    CommitNotFound,
    RestoreError,
    RestoreOrchestrator,
    RestoreSession,
    RestoreState,
    UnknownComponent,
)
from .prompter import AssumeYesPrompter, ConsolePrompter, Prompter, ScriptedPrompter

__all__ = [
    "CommitNotFound",
    "RestoreError",
    "RestoreOrchestrator",
    "RestoreSession",
    "RestoreState",
    "UnknownComponent",
    "AssumeYesPrompter",
    "ConsolePrompter",
    "Prompter",
    "ScriptedPrompter",
]
