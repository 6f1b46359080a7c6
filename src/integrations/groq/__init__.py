from .client import CompletionResult, EnhancedGroqClient, GroqCompletionError

__all__ = [
    'EnhancedGroqClient',
    'GroqCompletionError',
    'CompletionResult'
]
