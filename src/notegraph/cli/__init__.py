"""
NoteGraph CLI - inspect a vault's knowledge graph from the terminal

Provides terminal commands for:
- Viewing sync and projection statistics
- Hybrid search over notes and entities
- Listing a node's neighbors
- Ranking nodes by centrality
"""

from .main import cli

__all__ = ["cli"]
