#!/usr/bin/env python3
"""
SafePlay Web - JSON API for supervisor and player dashboards.
Serves Steam library summaries and parental reports, plus local and
Steam sign-in.
"""

import argparse
import logging
import os
import threading
from datetime import datetime, timezone
from functools import wraps
from typing import Dict, Optional, Tuple

from dotenv import load_dotenv
from flask import Flask, jsonify, redirect, request, session, url_for
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.exceptions import HTTPException

import database
import safeplay
from safeplay import (
    AuthContext, ConfigurationError, DuplicateAccount, NotAuthenticated,
    NotAuthorized, Role, SafePlayError, SteamAPIClient, SteamConfig,
    SteamForbidden, SteamRateLimited, SteamUnauthorized, ValidationError,
    convert_steam_id, extract_steam_id_from_url, validate_steam_id,
)
from app.services import AccountService, SteamStatsService, form_text, sort_and_limit_games
from app.services.steam_stats_service import SORT_KEYS
from openapi_spec import build_spec
from steam_openid import SteamOpenID

load_dotenv()

log_level = os.getenv('SAFEPLAY_LOG_LEVEL', 'INFO')
safeplay.setup_logging(log_level)
web_logger = logging.getLogger('safeplay.web')
try:
    os.makedirs('logs', exist_ok=True)
    fh = logging.FileHandler('logs/safeplay_web.log')
    fh.setFormatter(logging.Formatter('[%(asctime)s] %(levelname)s %(name)s: %(message)s'))
    fh.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    web_logger.addHandler(fh)
except OSError:
    web_logger.warning('Could not create log file handler')

app = Flask(__name__)
app.secret_key = os.getenv('SECRET_KEY') or os.urandom(24)

DB_AVAILABLE = False

_account_service = AccountService(database)

# Built on first use so the server starts without an API key
_steam_client: Optional[SteamAPIClient] = None
_steam_client_lock = threading.Lock()

# First matching class wins, so subclasses come before their bases.
ERROR_STATUS = (
    (ValidationError, 400),
    (NotAuthenticated, 401),
    (SteamForbidden, 403),
    (NotAuthorized, 403),
    (DuplicateAccount, 409),
    (SteamRateLimited, 429),
    (SteamUnauthorized, 500),
    (ConfigurationError, 500),
)

_SERVER_SIDE_MESSAGES = {
    SteamUnauthorized: 'Steam API key is invalid or unauthorized',
    ConfigurationError: 'Steam API is not configured',
}


def is_production() -> bool:
    return os.getenv('SAFEPLAY_ENV', 'development').lower() == 'production'


def ensure_db_available() -> bool:
    """Try to (re)initialize DB if it was previously unavailable."""
    global DB_AVAILABLE
    if DB_AVAILABLE:
        return True
    DB_AVAILABLE = bool(database.init_db())
    if DB_AVAILABLE:
        web_logger.info('Database connected successfully')
    return DB_AVAILABLE


def get_steam_client() -> SteamAPIClient:
    """Return the shared Steam client, creating it on first use.

    Raises:
        ConfigurationError: If ``STEAM_API_KEY`` is not set.
    """
    global _steam_client
    with _steam_client_lock:
        if _steam_client is None:
            _steam_client = SteamAPIClient(SteamConfig.from_env())
        return _steam_client


def get_stats_service() -> SteamStatsService:
    return SteamStatsService(get_steam_client())


def get_openid() -> SteamOpenID:
    realm = os.getenv('STEAM_OPENID_REALM') or request.host_url
    return_to = (os.getenv('STEAM_OPENID_RETURN_URL')
                 or url_for('auth_steam_return', _external=True))
    return SteamOpenID(realm, return_to)


# ===========================================================================================
# Envelope helpers
# ===========================================================================================

def _success(data=None, status: int = 200, **extra):
    body: Dict = {'success': True}
    if data is not None:
        body['data'] = data
    body.update(extra)
    return jsonify(body), status


def _failure(message: str, status: int, exc: Optional[Exception] = None):
    body: Dict = {'success': False, 'message': message}
    if exc is not None and not is_production():
        body['error'] = str(exc)
    return jsonify(body), status


def _status_for(exc: Exception) -> int:
    for cls, status in ERROR_STATUS:
        if isinstance(exc, cls):
            return status
    return 500


@app.errorhandler(Exception)
def handle_error(exc):
    """Render every failure as a JSON envelope."""
    if isinstance(exc, HTTPException):
        return _failure(exc.description or exc.name, exc.code or 500)
    if isinstance(exc, SafePlayError):
        status = _status_for(exc)
        message = _SERVER_SIDE_MESSAGES.get(type(exc), str(exc))
        if status >= 500:
            web_logger.error('%s: %s', exc.__class__.__name__, exc)
        return _failure(message, status, exc)
    web_logger.exception('Unhandled error on %s %s', request.method, request.path)
    return _failure('Internal server error', 500, exc)


def _request_data() -> Dict:
    return request.get_json(silent=True) or request.form.to_dict()


def _database_unavailable():
    return _failure('Database not available', 503)


# ===========================================================================================
# Identity
# ===========================================================================================

def current_auth_context() -> Optional[AuthContext]:
    """Build the caller's identity from the session, or None if anonymous."""
    role = session.get('role')
    if not role:
        return None
    try:
        return AuthContext(session.get('account_id'), Role(role), session.get('steam_id'))
    except ValueError:
        web_logger.warning('Ignoring session with unknown role %r', role)
        return None


def _start_session(account) -> Dict:
    """Store *account*'s identity in the session and return its public view."""
    user = database.account_to_dict(account)
    session.clear()
    session['account_id'] = user['id']
    session['role'] = user['role']
    session['steam_id'] = user['steam_id']
    session['display_name'] = user['display_name']
    return user


def resolve_steam_id(path_value: Optional[str], auth: Optional[AuthContext]) -> str:
    """Pick the subject Steam ID: path, then query string, then session.

    Raises:
        ValidationError: No Steam ID could be found.
        InvalidSteamId:  The chosen value is not 17 digits.
    """
    candidates = (
        path_value,
        request.args.get('steam_id') or request.args.get('steamId'),
        auth.steam_id if auth else None,
    )
    for candidate in candidates:
        if candidate:
            return validate_steam_id(candidate.strip())
    raise ValidationError('Steam ID is required')


def require_login(f):
    """Decorator to require an authenticated session"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if current_auth_context() is None:
            return _failure('Not logged in', 401)
        return f(*args, **kwargs)
    return decorated_function


# ===========================================================================================
# Steam data endpoints
# ===========================================================================================

@app.route('/api/steam/auth-url')
def api_steam_auth_url():
    """Local path that starts Steam sign-in"""
    return _success(url=url_for('auth_steam'))


@app.route('/api/steam/profile', defaults={'steam_id': None})
@app.route('/api/steam/profile/<steam_id>')
def api_steam_profile(steam_id):
    """Public Steam profile"""
    steam_id = resolve_steam_id(steam_id, current_auth_context())
    return _success(get_steam_client().get_player_summary(steam_id))


def _parse_games_query() -> Tuple[str, Optional[int]]:
    sort_by = request.args.get('sortBy', 'playtime')
    if sort_by not in SORT_KEYS:
        raise ValidationError(f"sortBy must be one of: {', '.join(SORT_KEYS)}")
    raw_limit = request.args.get('limit')
    if raw_limit in (None, ''):
        return sort_by, None
    try:
        limit = int(raw_limit)
    except ValueError:
        raise ValidationError('limit must be a positive integer')
    if limit <= 0:
        raise ValidationError('limit must be a positive integer')
    return sort_by, limit


@app.route('/api/steam/games', defaults={'steam_id': None})
@app.route('/api/steam/games/<steam_id>')
def api_steam_games(steam_id):
    """Owned games, sorted and limited in-process"""
    steam_id = resolve_steam_id(steam_id, current_auth_context())
    sort_by, limit = _parse_games_query()

    library = get_steam_client().get_owned_games(steam_id)
    games = sort_and_limit_games(library['games'], sort_by, limit)
    return _success({
        'total_count': library['game_count'],
        'returned_count': len(games),
        'games': games,
    })


@app.route('/api/steam/summary', defaults={'steam_id': None})
@app.route('/api/steam/summary/<steam_id>')
def api_steam_summary(steam_id):
    """Profile, totals and top games"""
    steam_id = resolve_steam_id(steam_id, current_auth_context())
    return _success(get_stats_service().get_user_summary(steam_id))


@app.route('/api/steam/stats/<steam_id>/<app_id>')
def api_steam_game_stats(steam_id, app_id):
    """Per-game stats"""
    steam_id = resolve_steam_id(steam_id, current_auth_context())
    safeplay.parse_app_id(app_id)
    return _success(get_steam_client().get_player_stats_for_game(steam_id, app_id))


@app.route('/api/steam/achievements/<steam_id>/<app_id>')
def api_steam_achievements(steam_id, app_id):
    """Per-game achievements"""
    steam_id = resolve_steam_id(steam_id, current_auth_context())
    safeplay.parse_app_id(app_id)
    return _success(get_steam_client().get_player_achievements(steam_id, app_id))


@app.route('/api/steam/parental-stats', defaults={'steam_id': None})
@app.route('/api/steam/parental-stats/<steam_id>')
def api_steam_parental_stats(steam_id):
    """Parental report; visible to the player themself or any supervisor"""
    auth = current_auth_context()
    if auth is None:
        raise NotAuthenticated('Login required')
    steam_id = resolve_steam_id(steam_id, auth)
    if not (auth.is_supervisor or auth.owns(steam_id)):
        raise NotAuthorized('You are not allowed to view this player\'s statistics')
    return _success(get_stats_service().get_parental_stats(steam_id))


@app.route('/api/steam/health')
def api_steam_health():
    """Steam API connectivity"""
    try:
        client = get_steam_client()
    except ConfigurationError as e:
        data = {'status': 'unhealthy', 'apiKeyConfigured': False, 'error': str(e)}
    else:
        data = client.check_api_health()
    healthy = data['status'] == 'healthy'
    return jsonify({'success': healthy, 'data': data}), 200 if healthy else 503


@app.route('/api/steam/resolve')
def api_steam_resolve():
    """Normalise a Steam ID in any supported notation, or a profile URL"""
    value = (request.args.get('input') or '').strip()
    if not value:
        raise ValidationError('input is required')
    steam_id = extract_steam_id_from_url(value) if '/' in value else convert_steam_id(value)
    return _success({'input': value, 'steamId': steam_id})


# ===========================================================================================
# Authentication Endpoints
# ===========================================================================================

@app.route('/login', methods=['POST'])
def login():
    """Supervisor login with username and password"""
    data = _request_data()
    username = form_text(data.get('username'))
    password = form_text(data.get('password'))
    web_logger.info('Login endpoint called for username=%s', username)

    if not username or not password:
        return _failure('Username and password required', 400)
    if not ensure_db_available():
        return _database_unavailable()

    db = database.SessionLocal()
    try:
        account = _account_service.login(db, username, password)
        user = _start_session(account) if account else None
    finally:
        db.close()

    if user is None:
        return _failure('Invalid username or password', 401)
    web_logger.info('User logged in: %s', username)
    return _success(user=user, message='Login successful',
                    redirectUrl='/dashboard-supervisor.html')


@app.route('/registro', methods=['POST'])
def register():
    """Register a new supervisor"""
    data = _request_data()
    web_logger.info('Register endpoint called for username=%s', data.get('username'))
    if not ensure_db_available():
        return _database_unavailable()

    db = database.SessionLocal()
    try:
        account = _account_service.register_supervisor(db, data)
        user = database.account_to_dict(account)
    finally:
        db.close()

    return _success(user, 201, message='Registration successful', redirectUrl='/login.html')


@app.route('/api/logout', methods=['POST'])
def logout():
    """Log out the current user"""
    web_logger.info('User logged out: %s', session.get('display_name'))
    session.clear()
    return _success(message='Logged out successfully')


@app.route('/api/auth/current')
def api_auth_current():
    """Identity stored in the session"""
    auth = current_auth_context()
    if auth is None:
        return _failure('Not logged in', 401)
    return _success({
        'account_id': auth.account_id,
        'role': auth.role.value,
        'steam_id': auth.steam_id,
        'display_name': session.get('display_name'),
    })


@app.route('/auth/steam')
def auth_steam():
    """Redirect to Steam's OpenID login page"""
    return redirect(get_openid().build_auth_url())


@app.route('/auth/steam/return')
def auth_steam_return():
    """OpenID callback: verify, provision the player and start a session"""
    steam_id = get_openid().verify(request.args.to_dict())
    if not steam_id:
        return redirect('/login.html?error=steam-auth-failed')

    display_name, avatar = steam_id, None
    try:
        profile = get_steam_client().get_player_summary(steam_id)
        display_name = profile['personaname']
        avatar = profile.get('avatarfull') or profile.get('avatar')
    except SafePlayError as e:
        web_logger.warning('Could not load Steam profile for %s: %s', steam_id, e)

    if not ensure_db_available():
        return redirect('/login.html?error=database-unavailable')

    db = database.SessionLocal()
    try:
        account = _account_service.sign_in_with_steam(db, steam_id, display_name, avatar)
        _start_session(account)
    except (SafePlayError, SQLAlchemyError) as e:
        web_logger.exception('Steam sign-in failed for %s: %s', steam_id, e)
        return redirect('/login.html?error=steam-error')
    finally:
        db.close()

    web_logger.info('Steam session started for %s', steam_id)
    return redirect(f'/dashboard-player.html?steam_id={steam_id}')


# ===========================================================================================
# Account Endpoints
# ===========================================================================================

@app.route('/api/dashboard/player')
@require_login
def api_dashboard_player():
    """Account details plus the Steam summary when a Steam ID is linked"""
    auth = current_auth_context()
    user = None
    if auth.account_id is not None and ensure_db_available():
        db = database.SessionLocal()
        try:
            account = database.get_account_by_id(db, auth.account_id)
            user = database.account_to_dict(account) if account else None
        finally:
            db.close()
    if user is None:
        user = {'display_name': session.get('display_name'), 'role': auth.role.value,
                'steam_id': auth.steam_id}

    steam_data = None
    if auth.steam_id:
        try:
            steam_data = get_stats_service().get_user_summary(auth.steam_id)
        except SafePlayError as e:
            web_logger.warning('Dashboard Steam data unavailable for %s: %s', auth.steam_id, e)

    return _success({'user': user, 'steamData': steam_data})


@app.route('/api/dashboard/supervisor')
@require_login
def api_dashboard_supervisor():
    """Every linked player with their Steam summary; supervisors only"""
    auth = current_auth_context()
    if not auth.is_supervisor:
        raise NotAuthorized('Supervisor access required')
    if not ensure_db_available():
        return _database_unavailable()

    db = database.SessionLocal()
    try:
        players = [database.account_to_dict(a) for a in database.list_players(db)]
    finally:
        db.close()

    entries = []
    for player in players:
        steam_data = None
        try:
            steam_data = get_stats_service().get_user_summary(player['steam_id'])
        except SafePlayError as e:
            web_logger.warning('Supervisor dashboard: Steam data unavailable for %s: %s',
                               player['steam_id'], e)
        entries.append({'user': player, 'steamData': steam_data})

    return _success({
        'supervisor': {'display_name': session.get('display_name')},
        'players': entries,
        'totalPlayers': len(entries),
    })


@app.route('/api/account/link-steam', methods=['POST'])
@require_login
def api_link_steam():
    """Attach a Steam ID to the logged-in account"""
    auth = current_auth_context()
    data = _request_data()
    steam_id = validate_steam_id(form_text(data.get('steamId') or data.get('steam_id')))
    if auth.account_id is None:
        raise NotAuthenticated('Account session is incomplete; please log in again')
    if not ensure_db_available():
        return _database_unavailable()

    profile = get_steam_client().get_player_summary(steam_id)
    avatar = profile.get('avatarfull') or profile.get('avatar')

    db = database.SessionLocal()
    try:
        account = _account_service.link_steam(db, auth.account_id, steam_id, avatar)
        user = database.account_to_dict(account) if account else None
    finally:
        db.close()

    if user is None:
        raise NotAuthenticated('Account no longer exists; please log in again')
    session['steam_id'] = steam_id
    return _success({'user': user, 'profile': profile}, message='Steam account linked')


# ===========================================================================================
# Misc
# ===========================================================================================

@app.route('/health')
def health():
    """Liveness probe"""
    return jsonify({'status': 'OK', 'timestamp': datetime.now(timezone.utc).isoformat()})


@app.route('/api/openapi.json')
def api_openapi():
    """OpenAPI description of this server"""
    return jsonify(build_spec(server_url=request.host_url))


def main():
    """Run the development server"""
    parser = argparse.ArgumentParser(description='SafePlay web server')
    parser.add_argument('--host', default='127.0.0.1', help='Bind address (default: 127.0.0.1)')
    parser.add_argument('--port', type=int, default=int(os.getenv('PORT', '5000')),
                        help='Port (default: 5000 or $PORT)')
    parser.add_argument('--debug', action='store_true', help='Enable Flask debug mode')
    args = parser.parse_args()

    if ensure_db_available():
        web_logger.info('Database initialized successfully')
    else:
        web_logger.warning('Database initialization reported failure')

    web_logger.info('Starting SafePlay on %s:%s', args.host, args.port)
    app.run(host=args.host, port=args.port, debug=args.debug)


if __name__ == '__main__':
    main()
