"""
SafePlay application package.

  app/services/: business logic for Steam data aggregation and account rules.

``safeplay.py`` holds the Steam API client and error types, ``database.py``
the account store. Route handlers in ``safeplay_web.py`` create the service
instances and call them with an explicit ``AuthContext`` and DB session,
keeping the HTTP layer separate from the domain.
"""
