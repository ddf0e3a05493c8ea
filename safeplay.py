#!/usr/bin/env python3
"""
SafePlay - Parental oversight for Steam libraries.
Core module: logging setup, error taxonomy, Steam Web API client and CLI.
"""

import argparse
import enum
import logging
import os
import re
import sys
import time
from typing import Dict, List, Optional

import requests
from colorama import init, Fore, Style
from dotenv import load_dotenv

# Initialize colorama for cross-platform colored terminal output
init(autoreset=True)

# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------

def setup_logging(level: str = 'WARNING') -> logging.Logger:
    """Configure the root SafePlay logger.

    Args:
        level: Log level string (DEBUG, INFO, WARNING, ERROR, CRITICAL).
               Defaults to WARNING so normal CLI use is quiet.

    Returns:
        Configured logger instance.
    """
    numeric = getattr(logging, level.upper(), logging.WARNING)
    logger = logging.getLogger('safeplay')
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter('[%(levelname)s] %(name)s: %(message)s'))
        logger.addHandler(handler)
    logger.setLevel(numeric)
    return logger


logger = setup_logging(os.getenv('SAFEPLAY_LOG_LEVEL', 'WARNING'))

STEAM_API_BASE_URL = 'https://api.steampowered.com'
# Public account probed by the health check
HEALTH_CHECK_STEAM_ID = '76561197960435530'
# Offset between 32-bit account ids and 64-bit Steam IDs
STEAM_ID64_BASE = 76561197960265728

_STEAM_ID_RE = re.compile(r'^\d{17}$')
_STEAM_ID32_RE = re.compile(r'^\d{8,10}$')
_STEAM_LEGACY_RE = re.compile(r'^STEAM_([0-5]):([01]):(\d+)$')
_PROFILE_URL_RE = re.compile(r'/profiles/(\d{17})')
_VANITY_URL_RE = re.compile(r'/id/([^/]+)')


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class SafePlayError(Exception):
    """Base class for every error raised by SafePlay."""


class ConfigurationError(SafePlayError):
    """Raised when required configuration (e.g. the Steam API key) is missing."""


class ValidationError(SafePlayError):
    """Raised when caller-supplied input is malformed."""


class InvalidSteamId(ValidationError):
    """Raised when a Steam ID is not a 17-digit numeric string."""


class InvalidAppId(ValidationError):
    """Raised when an app id does not parse as an integer."""


class SteamAPIError(SafePlayError):
    """Raised when the Steam Web API call fails.

    Args:
        message:     Human readable description.
        status_code: HTTP status returned by Steam, if any.
    """

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class SteamUnauthorized(SteamAPIError):
    """HTTP 401: the API key is invalid or missing."""


class SteamForbidden(SteamAPIError):
    """HTTP 403 or empty data: the profile or library is private."""


class SteamRateLimited(SteamAPIError):
    """HTTP 429: too many requests."""


class SteamUpstreamError(SteamAPIError):
    """HTTP 5xx, malformed body, or network failure after retries."""


class DuplicateAccount(SafePlayError):
    """Raised when a unique account field (login, email, Steam ID) is taken."""


class NotAuthenticated(SafePlayError):
    """Raised when an operation requires a logged-in session."""


class NotAuthorized(SafePlayError):
    """Raised when the logged-in account may not access the resource."""


# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------

class Role(enum.Enum):
    """Account roles."""
    PLAYER = 'player'
    SUPERVISOR = 'supervisor'


class AuthContext:
    """Identity of the caller, passed explicitly into handlers.

    Args:
        account_id: Primary key of the logged-in account (may be None for a
                    Steam session whose account row could not be read).
        role:       :class:`Role` of the account.
        steam_id:   Linked 17-digit Steam ID, or None.
    """

    def __init__(self, account_id: Optional[int], role: Role, steam_id: Optional[str] = None):
        self.account_id = account_id
        self.role = role
        self.steam_id = steam_id

    @property
    def is_supervisor(self) -> bool:
        return self.role is Role.SUPERVISOR

    def owns(self, steam_id: str) -> bool:
        return bool(self.steam_id) and self.steam_id == steam_id

    def __repr__(self) -> str:
        return (f"AuthContext(account_id={self.account_id!r}, "
                f"role={self.role.value!r}, steam_id={self.steam_id!r})")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def minutes_to_hours(minutes: int) -> int:
    """Convert playtime minutes to whole hours, rounding halves up."""
    return int((minutes or 0) / 60 + 0.5)


def is_valid_steam_id(steam_id) -> bool:
    """Return True when *steam_id* is a 17-digit numeric string."""
    return isinstance(steam_id, str) and bool(_STEAM_ID_RE.match(steam_id))


def validate_steam_id(steam_id) -> str:
    """Return *steam_id* unchanged or raise :class:`InvalidSteamId`."""
    if not is_valid_steam_id(steam_id):
        raise InvalidSteamId('Invalid Steam ID - must be a 17-digit number')
    return steam_id


def parse_app_id(app_id) -> int:
    """Return *app_id* as an int or raise :class:`InvalidAppId`."""
    try:
        return int(app_id)
    except (ValueError, TypeError):
        raise InvalidAppId(f'Invalid app id: {app_id!r}')


def convert_steam_id(value: str) -> str:
    """Normalise a Steam identifier to its 17-digit 64-bit form.

    Accepts a 64-bit ID, a 32-bit account ID, or the legacy
    ``STEAM_X:Y:Z`` notation.

    Raises:
        InvalidSteamId: If the format is not recognised.
    """
    value = (value or '').strip()
    if _STEAM_ID_RE.match(value):
        return value
    if _STEAM_ID32_RE.match(value):
        return str(int(value) + STEAM_ID64_BASE)
    match = _STEAM_LEGACY_RE.match(value)
    if match:
        y, z = int(match.group(2)), int(match.group(3))
        return str(z * 2 + y + STEAM_ID64_BASE)
    raise InvalidSteamId(f'Unrecognised Steam ID format: {value!r}')


def extract_steam_id_from_url(url: str) -> str:
    """Return the 64-bit Steam ID embedded in a community profile URL.

    Raises:
        InvalidSteamId: For vanity (``/id/<name>``) URLs, which need an extra
            API lookup that SafePlay does not perform, and for anything that
            is not a Steam profile URL.
    """
    match = _PROFILE_URL_RE.search(url or '')
    if match:
        return match.group(1)
    if _VANITY_URL_RE.search(url or ''):
        raise InvalidSteamId('Custom Steam profile URLs are not supported; use the 64-bit Steam ID')
    raise InvalidSteamId('Not a valid Steam profile URL')


# ---------------------------------------------------------------------------
# Steam Web API client
# ---------------------------------------------------------------------------

class SteamConfig:
    """Connection settings for :class:`SteamAPIClient`.

    Args:
        api_key:     Steam Web API key. Required.
        base_url:    API root, without trailing slash.
        timeout:     Per-attempt HTTP timeout in seconds.
        max_retries: Total attempts for transient network failures.
        retry_delay: Fixed sleep between attempts, in seconds.
        language:    Language passed to localised endpoints.

    Raises:
        ConfigurationError: If *api_key* is empty.
    """

    def __init__(self, api_key: str, base_url: str = STEAM_API_BASE_URL,
                 timeout: float = 10, max_retries: int = 3,
                 retry_delay: float = 1.0, language: str = 'english'):
        api_key = (api_key or '').strip()
        if not api_key:
            raise ConfigurationError('Steam API key is not configured')
        if max_retries < 1:
            raise ConfigurationError('max_retries must be at least 1')
        self.api_key = api_key
        self.base_url = (base_url or STEAM_API_BASE_URL).rstrip('/')
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.language = language

    @classmethod
    def from_env(cls) -> 'SteamConfig':
        """Build a config from ``STEAM_API_KEY`` and friends."""
        return cls(
            api_key=os.getenv('STEAM_API_KEY', ''),
            base_url=os.getenv('STEAM_API_BASE_URL', STEAM_API_BASE_URL),
            timeout=float(os.getenv('STEAM_API_TIMEOUT', '10')),
        )

    @property
    def masked_key(self) -> str:
        return self.api_key[:8] + '...'


class SteamAPIClient:
    """Client for the subset of the Steam Web API SafePlay relies on."""

    def __init__(self, config: SteamConfig):
        self.config = config
        self.session = requests.Session()
        self.session.headers.update({
            'User-Agent': 'SafePlay/1.0',
            'Accept': 'application/json',
        })
        self._log = logging.getLogger('safeplay.steam')

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _request(self, endpoint: str, params: Optional[Dict] = None) -> Dict:
        """GET *endpoint* and return the decoded JSON body.

        Connection resets and timeouts are retried with a fixed delay; HTTP
        error statuses are classified and raised immediately.
        """
        url = f"{self.config.base_url}{endpoint}"
        query = {'key': self.config.api_key, 'format': 'json'}
        query.update(params or {})
        self._log.debug("Calling Steam API %s (key %s)", endpoint, self.config.masked_key)

        attempt = 0
        while True:
            attempt += 1
            try:
                response = self.session.get(url, params=query, timeout=self.config.timeout)
                break
            except (requests.ConnectionError, requests.Timeout) as e:
                if attempt >= self.config.max_retries:
                    self._log.error("Steam API %s unreachable after %d attempts: %s",
                                    endpoint, attempt, e.__class__.__name__)
                    raise SteamUpstreamError('Steam API is unreachable') from e
                self._log.warning("Transient error calling %s (attempt %d/%d), retrying",
                                  endpoint, attempt, self.config.max_retries)
                time.sleep(self.config.retry_delay)

        status = response.status_code
        if status == 401:
            raise SteamUnauthorized('Steam API key is invalid or unauthorized', status)
        if status == 403:
            raise SteamForbidden('Access denied - profile is private or data unavailable', status)
        if status == 429:
            raise SteamRateLimited('Steam API rate limit exceeded', status)
        if status >= 500:
            raise SteamUpstreamError('Steam API internal server error', status)
        if status < 200 or status >= 300:
            raise SteamUpstreamError(f'Steam API responded with status {status}', status)

        try:
            return response.json()
        except ValueError:
            self._log.error("Steam API returned a non-JSON body for %s", endpoint)
            raise SteamUpstreamError('Invalid response from Steam API (not JSON)', status)

    # ------------------------------------------------------------------
    # Profiles and libraries
    # ------------------------------------------------------------------

    def get_player_summary(self, steam_id: str) -> Dict:
        """Return the public profile for *steam_id*.

        Raises:
            InvalidSteamId: Malformed ID, checked before any request.
            SteamForbidden: Steam returned no player for this ID.
            SteamAPIError:  Any other classified upstream failure.
        """
        validate_steam_id(steam_id)
        data = self._request('/ISteamUser/GetPlayerSummaries/v0002/', {'steamids': steam_id})
        if not isinstance(data, dict) or 'response' not in data:
            raise SteamUpstreamError('Invalid response from Steam API')

        players = data['response'].get('players') or []
        if not players:
            raise SteamForbidden('Player not found or profile unavailable')

        player = players[0]
        return {
            'steamid': player.get('steamid'),
            'personaname': player.get('personaname') or 'Steam User',
            'profileurl': player.get('profileurl'),
            'avatar': player.get('avatar'),
            'avatarmedium': player.get('avatarmedium'),
            'avatarfull': player.get('avatarfull'),
            'personastate': player.get('personastate'),
            'communityvisibilitystate': player.get('communityvisibilitystate'),
            'profilestate': player.get('profilestate'),
            'lastlogoff': player.get('lastlogoff'),
            'realname': player.get('realname'),
            'timecreated': player.get('timecreated'),
            'gameid': player.get('gameid'),
            'gameextrainfo': player.get('gameextrainfo'),
            'loccountrycode': player.get('loccountrycode'),
        }

    def get_owned_games(self, steam_id: str, include_appinfo: bool = True,
                        include_free_games: bool = True) -> Dict:
        """Return ``{'game_count': int, 'games': [...]}`` for *steam_id*.

        Steam omits ``game_count`` entirely for private libraries, so an empty
        list without a count raises :class:`SteamForbidden`; an explicit count
        of 0 is a genuinely empty library.
        """
        validate_steam_id(steam_id)
        data = self._request('/IPlayerService/GetOwnedGames/v0001/', {
            'steamid': steam_id,
            'include_appinfo': 1 if include_appinfo else 0,
            'include_played_free_games': 1 if include_free_games else 0,
        })
        if not isinstance(data, dict) or not isinstance(data.get('response'), dict):
            raise SteamUpstreamError('Could not read owned games - invalid response')

        body = data['response']
        games = body.get('games') or []
        if not games and body.get('game_count') is None:
            raise SteamForbidden('Game list unavailable - the profile may be private')

        return {
            'game_count': body.get('game_count') or 0,
            'games': [self._normalize_owned_game(g) for g in games],
        }

    @staticmethod
    def _normalize_owned_game(game: Dict) -> Dict:
        appid = game.get('appid')
        return {
            'appid': appid,
            'name': game.get('name') or f'Game {appid}',
            'playtime_forever': game.get('playtime_forever') or 0,
            'playtime_windows_forever': game.get('playtime_windows_forever') or 0,
            'playtime_mac_forever': game.get('playtime_mac_forever') or 0,
            'playtime_linux_forever': game.get('playtime_linux_forever') or 0,
            'playtime_2weeks': game.get('playtime_2weeks') or 0,
            'img_icon_url': game.get('img_icon_url'),
            'img_logo_url': game.get('img_logo_url'),
            'has_community_visible_stats': game.get('has_community_visible_stats'),
        }

    def get_recently_played_games(self, steam_id: str, count: int = 5) -> Dict:
        """Return games played in the last two weeks.

        Recent activity is best-effort: any Steam failure yields an empty
        result instead of an exception.
        """
        validate_steam_id(steam_id)
        empty = {'total_count': 0, 'games': []}
        try:
            data = self._request('/IPlayerService/GetRecentlyPlayedGames/v0001/', {
                'steamid': steam_id,
                'count': count,
            })
        except SteamAPIError as e:
            self._log.warning("Recently played fetch failed for %s: %s", steam_id, e)
            return empty

        body = data.get('response') if isinstance(data, dict) else None
        if not isinstance(body, dict):
            return empty

        games = body.get('games') or []
        return {
            'total_count': body.get('total_count') or 0,
            'games': [{
                'appid': g.get('appid'),
                'name': g.get('name') or f"Game {g.get('appid')}",
                'playtime_2weeks': g.get('playtime_2weeks') or 0,
                'playtime_forever': g.get('playtime_forever') or 0,
                'img_icon_url': g.get('img_icon_url'),
                'img_logo_url': g.get('img_logo_url'),
            } for g in games],
        }

    # ------------------------------------------------------------------
    # Per-game stats
    # ------------------------------------------------------------------

    def get_player_stats_for_game(self, steam_id: str, app_id) -> Dict:
        """Return raw stats and achievement flags for one game."""
        validate_steam_id(steam_id)
        app_id_int = parse_app_id(app_id)
        data = self._request('/ISteamUserStats/GetUserStatsForGame/v0002/', {
            'steamid': steam_id,
            'appid': app_id_int,
        })
        stats = data.get('playerstats') if isinstance(data, dict) else None
        if not isinstance(stats, dict):
            raise SteamUpstreamError('Could not read game stats')
        return {
            'steamID': stats.get('steamID'),
            'gameName': stats.get('gameName') or f'Game {app_id_int}',
            'stats': stats.get('stats') or [],
            'achievements': stats.get('achievements') or [],
        }

    def get_player_achievements(self, steam_id: str, app_id) -> Dict:
        """Return achievements for one game, with completion counters."""
        validate_steam_id(steam_id)
        app_id_int = parse_app_id(app_id)
        data = self._request('/ISteamUserStats/GetPlayerAchievements/v0001/', {
            'steamid': steam_id,
            'appid': app_id_int,
            'l': self.config.language,
        })
        stats = data.get('playerstats') if isinstance(data, dict) else None
        if not isinstance(stats, dict):
            raise SteamUpstreamError('Could not read achievements')

        achievements = stats.get('achievements') or []
        total = len(achievements)
        achieved = sum(1 for a in achievements if a.get('achieved'))
        return {
            'steamID': stats.get('steamID'),
            'gameName': stats.get('gameName') or f'Game {app_id_int}',
            'achievements': achievements,
            'success': bool(stats.get('success', False)),
            'total': total,
            'achieved': achieved,
            'percent': round(achieved / total * 100, 1) if total else 0,
        }

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def check_api_health(self) -> Dict:
        """Probe the API with a live profile lookup.

        Returns:
            Dict with ``status`` (``healthy``/``unhealthy``),
            ``apiKeyConfigured`` and either ``responseTime`` (ms) or ``error``.
        """
        started = time.monotonic()
        try:
            self._request('/ISteamUser/GetPlayerSummaries/v0002/',
                          {'steamids': HEALTH_CHECK_STEAM_ID})
        except SteamAPIError as e:
            self._log.warning("Steam API health check failed: %s", e)
            return {'status': 'unhealthy', 'apiKeyConfigured': True, 'error': str(e)}
        return {
            'status': 'healthy',
            'apiKeyConfigured': True,
            'responseTime': int((time.monotonic() - started) * 1000),
        }


# ---------------------------------------------------------------------------
# Command line
# ---------------------------------------------------------------------------

def _print_header(title: str) -> None:
    print(f"\n{Fore.GREEN}{'=' * 60}")
    print(f"{Fore.CYAN}{Style.BRIGHT}{title}")
    print(f"{Fore.GREEN}{'=' * 60}")


def _print_field(label: str, value) -> None:
    print(f"{Fore.YELLOW}{label}: {Fore.WHITE}{value}")


def _print_games(games: List[Dict]) -> None:
    for game in games:
        hours = minutes_to_hours(game.get('playtime_forever', 0))
        print(f"{Fore.WHITE}  {game.get('name')} {Fore.CYAN}({hours}h)")


def _run_command(args, client: SteamAPIClient) -> int:
    # Imported here to avoid a cycle: the services package imports this module.
    from app.services import SteamStatsService, sort_and_limit_games

    stats = SteamStatsService(client)
    steam_id = convert_steam_id(args.steam_id) if getattr(args, 'steam_id', None) else None

    if args.command == 'profile':
        profile = client.get_player_summary(steam_id)
        _print_header(profile['personaname'])
        _print_field('Steam ID', profile['steamid'])
        _print_field('Profile', profile['profileurl'])
        _print_field('Country', profile.get('loccountrycode') or '-')
    elif args.command == 'games':
        library = client.get_owned_games(steam_id)
        games = sort_and_limit_games(library['games'], args.sort, args.limit)
        _print_header(f"{library['game_count']} games")
        _print_games(games)
    elif args.command == 'summary':
        summary = stats.get_user_summary(steam_id)
        totals = summary['statistics']
        _print_header(summary['displayName'])
        _print_field('Games', totals['totalGames'])
        _print_field('Total playtime', f"{totals['totalPlaytimeHours']} hours")
        _print_field('Most played', f"{totals['mostPlayedGame']['name']} "
                                    f"({totals['mostPlayedGame']['playtimeHours']}h)")
        print(f"\n{Fore.YELLOW}Top games:")
        _print_games(summary['topGames'])
    elif args.command == 'parental':
        report = stats.get_parental_stats(steam_id)
        _print_header('Parental report')
        _print_field('Played last 2 weeks', f"{report['recentPlaytimeHours']} hours")
        _print_field('Daily average', f"{report['dailyAverageHours']} hours")
        cats = report['gameCategories']
        _print_field('Intensive / moderate / casual',
                     f"{cats['intensive']} / {cats['moderate']} / {cats['casual']}")
        colours = {'warning': Fore.RED, 'caution': Fore.YELLOW, 'good': Fore.GREEN}
        for rec in report['recommendations']:
            print(f"{colours.get(rec['type'], Fore.CYAN)}[{rec['type']}] {rec['message']}")
    elif args.command == 'health':
        health = client.check_api_health()
        colour = Fore.GREEN if health['status'] == 'healthy' else Fore.RED
        print(f"{colour}Steam API: {health['status']}")
        if 'responseTime' in health:
            _print_field('Response time', f"{health['responseTime']} ms")
        return 0 if health['status'] == 'healthy' else 1
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point"""
    parser = argparse.ArgumentParser(
        description='SafePlay - Steam activity reports for supervisors',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python3 safeplay.py summary 76561197960435530
  python3 safeplay.py games 76561197960435530 --sort name --limit 20
  python3 safeplay.py convert STEAM_0:1:12345
  python3 safeplay.py health
        """
    )
    parser.add_argument('--log-level', default=os.getenv('SAFEPLAY_LOG_LEVEL', 'WARNING'),
                        help='Logging level (default: WARNING)')
    sub = parser.add_subparsers(dest='command', required=True)

    for name, help_text in (('profile', 'Show a Steam profile'),
                            ('summary', 'Show a library summary'),
                            ('parental', 'Show the parental activity report')):
        p = sub.add_parser(name, help=help_text)
        p.add_argument('steam_id', help='Steam ID (64-bit, 32-bit or STEAM_X:Y:Z)')

    games = sub.add_parser('games', help='List owned games')
    games.add_argument('steam_id', help='Steam ID (64-bit, 32-bit or STEAM_X:Y:Z)')
    games.add_argument('--sort', default='playtime', choices=['playtime', 'name', 'recent'])
    games.add_argument('--limit', type=int, default=None)

    sub.add_parser('health', help='Check Steam API connectivity')

    convert = sub.add_parser('convert', help='Convert any Steam ID form or profile URL')
    convert.add_argument('value')

    args = parser.parse_args(argv)
    setup_logging(args.log_level)

    try:
        if args.command == 'convert':
            value = args.value
            steam_id = (extract_steam_id_from_url(value) if '/' in value
                        else convert_steam_id(value))
            print(f"{Fore.GREEN}{steam_id}")
            return 0

        load_dotenv()
        client = SteamAPIClient(SteamConfig.from_env())
        return _run_command(args, client)
    except ConfigurationError as e:
        print(f"{Fore.RED}Error: {e}")
        print(f"{Fore.YELLOW}Set STEAM_API_KEY in your environment or .env file.")
        print(f"{Fore.YELLOW}Get a free key at: https://steamcommunity.com/dev/apikey")
        return 2
    except SafePlayError as e:
        print(f"{Fore.RED}Error: {e}")
        return 1


if __name__ == '__main__':
    sys.exit(main())
