"""
Stacks Module

Compose stack definitions managed by this instance and re-convergence of a
stack through the compose CLI.
"""

from stacks.compose_runner import ComposeError, ComposeRunner, ConvergeResult
from stacks.stack_storage import StackDefinition, StackStore, get_stack_store

__all__ = [
    'ComposeError',
    'ComposeRunner',
    'ConvergeResult',
    'StackDefinition',
    'StackStore',
    'get_stack_store',
]
