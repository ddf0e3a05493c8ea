#!/usr/bin/env python3
"""
Unit tests for app/services/account_service.py.

Run with:
    python -m pytest tests/test_account_service.py
"""
import os
import sys
import unittest
from unittest.mock import MagicMock

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from werkzeug.security import check_password_hash

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import database
from app.services import AccountService, form_text
from safeplay import DuplicateAccount, ValidationError


def make_sessionmaker():
    engine = create_engine(
        'sqlite://',
        connect_args={'check_same_thread': False},
        poolclass=StaticPool,
    )
    database.Base.metadata.create_all(bind=engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


FORM = {
    'name': 'Pat Parent',
    'username': 'parent',
    'email': 'Parent@Example.com',
    'phone': '555-0100',
    'national_id': 'ID-1',
    'password': 'secret1',
}


class TestValidateRegistration(unittest.TestCase):

    def setUp(self):
        self.service = AccountService(MagicMock())

    def test_valid_form_is_cleaned(self):
        cleaned = self.service.validate_registration(dict(FORM, name='  Pat Parent '))
        self.assertEqual(cleaned['name'], 'Pat Parent')
        self.assertEqual(cleaned['email'], 'parent@example.com')

    def test_missing_fields_listed(self):
        with self.assertRaises(ValidationError) as ctx:
            self.service.validate_registration({'name': 'x'})
        self.assertIn('username', str(ctx.exception))
        self.assertIn('national_id', str(ctx.exception))

    def test_short_username(self):
        with self.assertRaises(ValidationError):
            self.service.validate_registration(dict(FORM, username='ab'))

    def test_bad_email(self):
        with self.assertRaises(ValidationError):
            self.service.validate_registration(dict(FORM, email='not-an-email'))

    def test_short_password(self):
        with self.assertRaises(ValidationError):
            self.service.validate_registration(dict(FORM, password='12345'))

    def test_confirmation_mismatch(self):
        with self.assertRaises(ValidationError):
            self.service.validate_registration(dict(FORM, confirm_password='other'))

    def test_numeric_json_values_become_text(self):
        cleaned = self.service.validate_registration(
            dict(FORM, phone=5550100, national_id=1234, password=123456, confirm_password=123456))
        self.assertEqual(cleaned['phone'], '5550100')
        self.assertEqual(cleaned['national_id'], '1234')
        self.assertEqual(cleaned['password'], '123456')

    def test_nested_value_rejected(self):
        for value in ({'number': '555'}, ['555']):
            with self.assertRaises(ValidationError):
                self.service.validate_registration(dict(FORM, phone=value))


class TestFormText(unittest.TestCase):

    def test_values(self):
        self.assertEqual(form_text(None), '')
        self.assertEqual(form_text('  parent '), 'parent')
        self.assertEqual(form_text(42), '42')
        self.assertEqual(form_text(True), 'True')


class TestRegisterSupervisor(unittest.TestCase):

    def setUp(self):
        self.db = make_sessionmaker()()
        self.service = AccountService(database)

    def tearDown(self):
        self.db.close()

    def test_register_then_login(self):
        account = self.service.register_supervisor(self.db, FORM)
        self.assertEqual(account.role, 'supervisor')
        self.assertTrue(check_password_hash(account.password_hash, 'secret1'))
        self.assertNotEqual(account.password_hash, 'secret1')
        self.assertEqual(self.service.login(self.db, ' parent ', 'secret1').id, account.id)

    def test_duplicate_username(self):
        self.service.register_supervisor(self.db, FORM)
        with self.assertRaises(DuplicateAccount):
            self.service.register_supervisor(self.db, dict(FORM, email='b@example.com',
                                                           national_id='ID-2'))

    def test_duplicate_national_id(self):
        self.service.register_supervisor(self.db, FORM)
        with self.assertRaises(DuplicateAccount):
            self.service.register_supervisor(self.db, dict(FORM, username='other',
                                                           email='b@example.com'))

    def test_race_past_the_precheck(self):
        self.service.register_supervisor(self.db, FORM)
        db_module = MagicMock(wraps=database)
        db_module.check_user_exists.return_value = None
        racing = AccountService(db_module)
        with self.assertRaises(DuplicateAccount):
            racing.register_supervisor(self.db, dict(FORM, national_id='ID-2'))

    def test_national_id_race_past_the_precheck(self):
        self.service.register_supervisor(self.db, FORM)
        db_module = MagicMock(wraps=database)
        db_module.check_user_exists.return_value = None
        racing = AccountService(db_module)
        with self.assertRaises(DuplicateAccount):
            racing.register_supervisor(self.db, dict(FORM, username='other',
                                                     email='b@example.com'))

    def test_invalid_form_touches_nothing(self):
        db_module = MagicMock()
        with self.assertRaises(ValidationError):
            AccountService(db_module).register_supervisor(self.db, {})
        db_module.insert_supervisor.assert_not_called()


class TestSteamAccounts(unittest.TestCase):

    def setUp(self):
        self.db = make_sessionmaker()()
        self.service = AccountService(database)

    def tearDown(self):
        self.db.close()

    def test_sign_in_with_steam(self):
        account = self.service.sign_in_with_steam(self.db, '76561197960435530', 'Gamer')
        self.assertEqual(account.role, 'player')

    def test_link_steam(self):
        account = self.service.register_supervisor(self.db, FORM)
        linked = self.service.link_steam(self.db, account.id, '76561197960435530')
        self.assertEqual(linked.steam_id, '76561197960435530')


if __name__ == '__main__':
    unittest.main()
