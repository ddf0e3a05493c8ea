"""
steam_openid.py
===============
Steam sign-in through OpenID 2.0.

Steam does not speak OAuth2 for end-user sign-in; it is an OpenID 2.0
provider at ``https://steamcommunity.com/openid/login``.  The flow has two
steps, exposed as two helpers used by the Flask routes in ``safeplay_web.py``:

* ``build_auth_url()``  → URL to redirect the browser to
* ``verify(args)``      → the 17-digit Steam ID, or ``None``

``verify`` replays the signed assertion back to Steam with
``openid.mode=check_authentication``; Steam answers ``is_valid:true`` only
for assertions it issued itself.

Configuration (environment)::

    STEAM_OPENID_REALM=http://localhost:5000/
    STEAM_OPENID_RETURN_URL=http://localhost:5000/auth/steam/return
"""
from __future__ import annotations

import logging
import re
import urllib.parse
from typing import Mapping, Optional

import requests

logger = logging.getLogger('safeplay.openid')

_OPENID_ENDPOINT = "https://steamcommunity.com/openid/login"
_OPENID_NS = "http://specs.openid.net/auth/2.0"
_IDENTIFIER_SELECT = "http://specs.openid.net/auth/2.0/identifier_select"
_CLAIMED_ID_RE = re.compile(r'^https?://steamcommunity\.com/openid/id/(\d{17})/?$')


class SteamOpenID:
    """OpenID 2.0 relying party for Steam.

    Args:
        realm:     Site root Steam shows to the user (``openid.realm``).
        return_to: Absolute callback URL (``openid.return_to``).
        timeout:   HTTP timeout for the verification request, in seconds.
    """

    def __init__(self, realm: str, return_to: str, timeout: int = 10) -> None:
        self._realm = realm
        self._return_to = return_to
        self._timeout = timeout
        self._session = requests.Session()

    def build_auth_url(self) -> str:
        """Return the Steam login URL to redirect the user to."""
        params = {
            'openid.ns':         _OPENID_NS,
            'openid.mode':       'checkid_setup',
            'openid.return_to':  self._return_to,
            'openid.realm':      self._realm,
            'openid.identity':   _IDENTIFIER_SELECT,
            'openid.claimed_id': _IDENTIFIER_SELECT,
        }
        return f"{_OPENID_ENDPOINT}?{urllib.parse.urlencode(params)}"

    def verify(self, args: Mapping[str, str]) -> Optional[str]:
        """Validate the callback query string and return the Steam ID.

        Args:
            args: Query parameters received on the return URL.

        Returns:
            The 17-digit Steam ID on success; ``None`` when the assertion is
            malformed, was cancelled, or Steam rejects it.
        """
        if args.get('openid.mode') != 'id_res':
            logger.info("Steam sign-in not completed (mode=%s)", args.get('openid.mode'))
            return None
        if args.get('openid.op_endpoint') != _OPENID_ENDPOINT:
            logger.warning("Unexpected OpenID endpoint: %s", args.get('openid.op_endpoint'))
            return None
        if args.get('openid.return_to') != self._return_to:
            logger.warning("OpenID return_to mismatch")
            return None

        match = _CLAIMED_ID_RE.match(args.get('openid.claimed_id', ''))
        if not match:
            logger.warning("Malformed OpenID claimed_id")
            return None

        payload = {key: value for key, value in args.items() if key.startswith('openid.')}
        payload['openid.mode'] = 'check_authentication'
        try:
            resp = self._session.post(_OPENID_ENDPOINT, data=payload, timeout=self._timeout)
            resp.raise_for_status()
        except requests.RequestException as e:
            logger.error("Steam OpenID verification request failed: %s", e)
            return None

        if 'is_valid:true' not in resp.text:
            logger.warning("Steam rejected the OpenID assertion")
            return None
        return match.group(1)
