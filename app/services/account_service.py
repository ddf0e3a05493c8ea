"""Business logic for supervisor registration and sign-in."""
import logging
import re
from typing import Dict, Optional

from werkzeug.security import generate_password_hash

from safeplay import DuplicateAccount, ValidationError

_EMAIL_RE = re.compile(r'^[^\s@]+@[^\s@]+\.[^\s@]+$')
MIN_PASSWORD_LENGTH = 6
MIN_LOGIN_LENGTH = 3

REGISTRATION_FIELDS = ('name', 'username', 'email', 'phone', 'national_id', 'password')


def form_text(value) -> str:
    """Return a submitted field as stripped text.

    JSON bodies may carry numbers or booleans where a form would send
    strings; those scalars are converted. Lists and objects are rejected.

    Raises:
        ValidationError: If *value* is a list or an object.
    """
    if value is None:
        return ''
    if isinstance(value, (dict, list)):
        raise ValidationError('Form fields must be plain values')
    return str(value).strip()


class AccountService:
    """Validates account input and delegates persistence to the ``database``
    module's helper functions.

    All methods accept a *db* SQLAlchemy session as the first argument so
    that callers (Flask route handlers) control the session lifecycle.
    """

    def __init__(self, db_module) -> None:
        """
        Args:
            db_module: The imported ``database`` module (or any object that
                exposes ``check_user_exists``, ``insert_supervisor``,
                ``insert_or_touch_player``, ``login_local`` and
                ``link_steam_account``).
        """
        self._db = db_module
        self._log = logging.getLogger('safeplay.accounts')

    @staticmethod
    def hash_password(password: str) -> str:
        """Return a salted hash suitable for ``password_hash``."""
        return generate_password_hash(password)

    def validate_registration(self, form: Dict) -> Dict[str, str]:
        """Return the cleaned registration fields.

        Raises:
            ValidationError: On the first missing or malformed field.
        """
        cleaned = {key: form_text(form.get(key)) for key in REGISTRATION_FIELDS}
        missing = [key for key in REGISTRATION_FIELDS if not cleaned[key]]
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")
        if len(cleaned['username']) < MIN_LOGIN_LENGTH:
            raise ValidationError('Username must be at least 3 characters')
        if not _EMAIL_RE.match(cleaned['email']):
            raise ValidationError('Please enter a valid email address')
        if len(cleaned['password']) < MIN_PASSWORD_LENGTH:
            raise ValidationError('Password must be at least 6 characters')
        confirm = form.get('confirm_password')
        if confirm is not None and form_text(confirm) != cleaned['password']:
            raise ValidationError('Passwords do not match')
        cleaned['email'] = cleaned['email'].lower()
        return cleaned

    def register_supervisor(self, db, form: Dict):
        """Validate *form* and create a supervisor account.

        Raises:
            ValidationError:  Invalid input.
            DuplicateAccount: Username, email or national ID already in use.
        """
        data = self.validate_registration(form)
        for field, value in (('login_name', data['username']),
                             ('email', data['email']),
                             ('national_id', data['national_id'])):
            if self._db.check_user_exists(db, field, value):
                raise DuplicateAccount('An account with these details already exists')

        account = self._db.insert_supervisor(
            db,
            display_name=data['name'],
            login_name=data['username'],
            email=data['email'],
            phone=data['phone'],
            national_id=data['national_id'],
            password_hash=self.hash_password(data['password']),
        )
        self._log.info('Registered supervisor: %s', account.login_name)
        return account

    def login(self, db, username: str, password: str):
        """Return the supervisor account for valid credentials, else None."""
        return self._db.login_local(db, (username or '').strip(), password or '')

    def sign_in_with_steam(self, db, steam_id: str, display_name: str,
                           avatar_url: Optional[str] = None):
        """Provision or refresh the player linked to *steam_id*."""
        return self._db.insert_or_touch_player(db, steam_id, display_name, avatar_url)

    def link_steam(self, db, account_id: int, steam_id: str,
                   avatar_url: Optional[str] = None):
        """Attach *steam_id* to *account_id*; None when the account is gone."""
        return self._db.link_steam_account(db, account_id, steam_id, avatar_url)
