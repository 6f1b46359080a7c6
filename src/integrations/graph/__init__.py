from src.integrations.graph.client import (
    DraftResult,
    GraphAPIError,
    GraphClient,
    GraphNotFoundError,
    SweepResult,
)

__all__ = ["GraphClient", "GraphAPIError", "GraphNotFoundError", "DraftResult", "SweepResult"]
