"""
Game-data sources.
"""
from .game_api import GameApiClient, extract_game_id

__all__ = ['GameApiClient', 'extract_game_id']
