# Executor package
from .cooldown import CooldownStore
from .executor_service import execute, execute_action

__all__ = [
    'CooldownStore',
    'execute',
    'execute_action',
]
