"""Aggregation of Steam profile, library and recent-activity data."""
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, List, Optional

from safeplay import ValidationError, minutes_to_hours, validate_steam_id

# Lifetime playtime buckets, in minutes
INTENSIVE_MINUTES = 6000   # > 100 hours
CASUAL_MINUTES = 600       # <= 10 hours

# Daily-average thresholds, in hours
WARNING_HOURS_PER_DAY = 4
CAUTION_HOURS_PER_DAY = 2
LARGE_LIBRARY_GAMES = 100

RECENT_WINDOW_DAYS = 14
SUMMARY_RECENT_COUNT = 3
PARENTAL_RECENT_COUNT = 10
TOP_GAMES_COUNT = 5

SORT_KEYS = ('playtime', 'name', 'recent')

_EMPTY_LIBRARY = {'game_count': 0, 'games': []}
_EMPTY_RECENT = {'total_count': 0, 'games': []}


class FetchResult:
    """Outcome of one upstream fetch: either ``value`` or ``error`` is set."""

    __slots__ = ('value', 'error')

    def __init__(self, value=None, error: Optional[Exception] = None):
        self.value = value
        self.error = error

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self):
        """Return the value or re-raise the captured error."""
        if self.error is not None:
            raise self.error
        return self.value

    def value_or(self, default):
        return self.value if self.error is None else default


def _capture(fn: Callable, *args) -> FetchResult:
    try:
        return FetchResult(value=fn(*args))
    except Exception as e:  # noqa: BLE001 - the caller decides which errors are fatal
        return FetchResult(error=e)


def sort_and_limit_games(games: List[Dict], sort_by: str = 'playtime',
                         limit: Optional[int] = None) -> List[Dict]:
    """Return *games* ordered by *sort_by* and truncated to *limit*.

    Args:
        games:   OwnedGame dicts.
        sort_by: ``playtime`` (lifetime, descending), ``name`` (A-Z,
                 case-insensitive) or ``recent`` (two-week playtime,
                 descending). Sorting is stable.
        limit:   Maximum number of games, or None for all.

    Raises:
        ValidationError: Unknown *sort_by* or a non-positive *limit*.
    """
    if sort_by not in SORT_KEYS:
        raise ValidationError(f"sortBy must be one of: {', '.join(SORT_KEYS)}")
    if limit is not None and limit <= 0:
        raise ValidationError('limit must be a positive integer')

    if sort_by == 'name':
        ordered = sorted(games, key=lambda g: (g.get('name') or '').lower())
    elif sort_by == 'recent':
        ordered = sorted(games, key=lambda g: g.get('playtime_2weeks') or 0, reverse=True)
    else:
        ordered = sorted(games, key=lambda g: g.get('playtime_forever') or 0, reverse=True)
    return ordered[:limit] if limit is not None else ordered


def most_played_game(games: List[Dict]) -> Dict:
    """Return the first game with maximal lifetime playtime.

    An empty library yields a ``'None'`` placeholder with zero playtime.
    """
    best = None
    for game in games:
        if best is None or (game.get('playtime_forever') or 0) > (best.get('playtime_forever') or 0):
            best = game
    if best is None:
        return {'appid': None, 'name': 'None', 'playtime': 0, 'playtimeHours': 0}
    playtime = best.get('playtime_forever') or 0
    return {
        'appid': best.get('appid'),
        'name': best.get('name') or 'None',
        'playtime': playtime,
        'playtimeHours': minutes_to_hours(playtime),
    }


def categorize_games(games: List[Dict]) -> Dict[str, int]:
    """Count games per lifetime-playtime bucket."""
    counts = {'intensive': 0, 'moderate': 0, 'casual': 0}
    for game in games:
        minutes = game.get('playtime_forever') or 0
        if minutes > INTENSIVE_MINUTES:
            counts['intensive'] += 1
        elif minutes > CASUAL_MINUTES:
            counts['moderate'] += 1
        else:
            counts['casual'] += 1
    return counts


def daily_average_hours(recent_minutes: int) -> float:
    return round(recent_minutes / 60 / RECENT_WINDOW_DAYS, 2)


def generate_parental_recommendations(recent_minutes: int, total_games: int) -> List[Dict]:
    """Return advisory messages for a supervisor.

    Args:
        recent_minutes: Total playtime over the last two weeks.
        total_games:    Size of the player's library.

    Returns:
        List of ``{'type', 'message'}`` dicts. The first entry is always one
        of ``warning``, ``caution`` or ``good``.
    """
    hours_per_day = recent_minutes / 60 / RECENT_WINDOW_DAYS
    recommendations = []

    if hours_per_day > WARNING_HOURS_PER_DAY:
        recommendations.append({
            'type': 'warning',
            'message': 'High playtime (>4h/day). Consider setting limits.',
        })
    elif hours_per_day > CAUTION_HOURS_PER_DAY:
        recommendations.append({
            'type': 'caution',
            'message': 'Moderately high playtime. Keep an eye on activity.',
        })
    else:
        recommendations.append({
            'type': 'good',
            'message': 'Playtime is within a healthy range.',
        })

    if total_games > LARGE_LIBRARY_GAMES:
        recommendations.append({
            'type': 'info',
            'message': 'Large game library. Check that content is age-appropriate.',
        })
    return recommendations


class SteamStatsService:
    """Combines several Steam API calls into dashboard views.

    Sub-fetches are issued concurrently and joined. Which of them are required
    is part of each method's contract:

    * :meth:`get_user_summary` requires the profile; owned and recent games
      are optional.
    * :meth:`get_parental_stats` treats both owned and recent games as
      optional.

    Optional sections that failed are listed under ``unavailableSections``
    and rendered empty.
    """

    def __init__(self, client, max_workers: int = 3) -> None:
        """
        Args:
            client:      A :class:`safeplay.SteamAPIClient` (or compatible).
            max_workers: Thread pool size for concurrent sub-fetches.
        """
        self._client = client
        self._max_workers = max_workers
        self._log = logging.getLogger('safeplay.stats')

    def _fetch_all(self, calls: Dict[str, tuple]) -> Dict[str, FetchResult]:
        with ThreadPoolExecutor(max_workers=self._max_workers) as pool:
            futures = {name: pool.submit(_capture, fn, *args)
                       for name, (fn, *args) in calls.items()}
            return {name: future.result() for name, future in futures.items()}

    def _optional(self, results: Dict[str, FetchResult], name: str, default,
                  steam_id: str, unavailable: List[str]):
        result = results[name]
        if not result.ok:
            self._log.warning("%s unavailable for %s: %s", name, steam_id, result.error)
            unavailable.append(name)
        return result.value_or(default)

    def get_user_summary(self, steam_id: str) -> Dict:
        """Return profile, library totals and top games for *steam_id*.

        Raises:
            The profile fetch's error when the profile cannot be loaded.
        """
        validate_steam_id(steam_id)
        results = self._fetch_all({
            'profile': (self._client.get_player_summary, steam_id),
            'games': (self._client.get_owned_games, steam_id),
            'recentGames': (self._client.get_recently_played_games, steam_id, SUMMARY_RECENT_COUNT),
        })
        profile = results['profile'].unwrap()

        unavailable: List[str] = []
        library = self._optional(results, 'games', _EMPTY_LIBRARY, steam_id, unavailable)
        recent = self._optional(results, 'recentGames', _EMPTY_RECENT, steam_id, unavailable)

        games = library['games']
        total_minutes = sum(g.get('playtime_forever') or 0 for g in games)

        return {
            'displayName': profile['personaname'],
            'avatar': profile.get('avatarfull') or profile.get('avatarmedium') or profile.get('avatar'),
            'profile': profile,
            'games': games,
            'statistics': {
                'totalGames': library['game_count'],
                'totalPlaytimeMinutes': total_minutes,
                'totalPlaytimeHours': minutes_to_hours(total_minutes),
                'mostPlayedGame': most_played_game(games),
            },
            'recentGames': recent['games'],
            'topGames': sort_and_limit_games(games, 'playtime', TOP_GAMES_COUNT),
            'unavailableSections': unavailable,
        }

    def get_parental_stats(self, steam_id: str) -> Dict:
        """Return recent-activity heuristics for a supervisor."""
        validate_steam_id(steam_id)
        results = self._fetch_all({
            'games': (self._client.get_owned_games, steam_id),
            'recentGames': (self._client.get_recently_played_games, steam_id, PARENTAL_RECENT_COUNT),
        })

        unavailable: List[str] = []
        library = self._optional(results, 'games', _EMPTY_LIBRARY, steam_id, unavailable)
        recent = self._optional(results, 'recentGames', _EMPTY_RECENT, steam_id, unavailable)

        recent_minutes = sum(g.get('playtime_2weeks') or 0 for g in recent['games'])

        return {
            'totalGames': library['game_count'],
            'recentPlaytimeMinutes': recent_minutes,
            'recentPlaytimeHours': minutes_to_hours(recent_minutes),
            'dailyAverageHours': daily_average_hours(recent_minutes),
            'gameCategories': categorize_games(library['games']),
            'recentGames': [{
                'name': g.get('name'),
                'playtime_2weeks_hours': minutes_to_hours(g.get('playtime_2weeks') or 0),
                'playtime_forever_hours': minutes_to_hours(g.get('playtime_forever') or 0),
            } for g in recent['games']],
            'recommendations': generate_parental_recommendations(recent_minutes, library['game_count']),
            'unavailableSections': unavailable,
        }
