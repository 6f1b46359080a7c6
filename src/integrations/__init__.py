from .graph.client import GraphClient
from .groq.client import EnhancedGroqClient

__all__ = [
    'GraphClient',
    'EnhancedGroqClient',
]
