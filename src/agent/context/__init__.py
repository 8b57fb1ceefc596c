"""Schema context selection for prompts."""

from agent.context.aliases import AliasDictionary, EntityMatch
from agent.context.builder import ContextBuilder, ContextBuilderSettings, RankedContext
from agent.context.mru import MRUTableList

__all__ = [
    "AliasDictionary",
    "ContextBuilder",
    "ContextBuilderSettings",
    "EntityMatch",
    "MRUTableList",
    "RankedContext",
]
