"""Services package: exposes all concrete services from one import."""
from .steam_stats_service import (
    SteamStatsService,
    FetchResult,
    sort_and_limit_games,
    generate_parental_recommendations,
)
from .account_service import AccountService, form_text

__all__ = [
    'SteamStatsService',
    'FetchResult',
    'sort_and_limit_games',
    'generate_parental_recommendations',
    'AccountService',
    'form_text',
]
