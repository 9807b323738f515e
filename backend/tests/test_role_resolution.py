import time
import unittest

import jwt

from riahunter.core.errors import AuthError
from riahunter.core.security import ADMIN_ROLE, SupabaseAuthVerifier, _decide_role
from riahunter.models.profile import Profile

from support import make_settings, memory_database


class TestRoleResolution(unittest.TestCase):
    def test_db_admin_wins(self):
        role, reason = _decide_role(email_is_admin=False, claim_is_admin=False, db_role="admin", supabase_role="user")
        self.assertEqual(role, "admin")
        self.assertEqual(reason, "db_profile")

    def test_admin_emails(self):
        role, reason = _decide_role(email_is_admin=True, claim_is_admin=False, db_role="user", supabase_role=None)
        self.assertEqual(role, "admin")
        self.assertEqual(reason, "admin_emails")

    def test_jwt_claim(self):
        role, reason = _decide_role(email_is_admin=False, claim_is_admin=True, db_role="user", supabase_role=None)
        self.assertEqual(role, "admin")
        self.assertEqual(reason, "jwt_claim")

    def test_supabase_profiles_admin(self):
        role, reason = _decide_role(email_is_admin=False, claim_is_admin=False, db_role="user", supabase_role="admin")
        self.assertEqual(role, "admin")
        self.assertEqual(reason, "supabase_profiles")

    def test_db_role_non_admin(self):
        role, reason = _decide_role(email_is_admin=False, claim_is_admin=False, db_role="support", supabase_role=None)
        self.assertEqual(role, "support")
        self.assertEqual(reason, "db_profile")

    def test_default_user(self):
        role, reason = _decide_role(email_is_admin=False, claim_is_admin=False, db_role=None, supabase_role=None)
        self.assertEqual(role, "user")
        self.assertEqual(reason, "default")


class TestSupabaseAuthVerifier(unittest.TestCase):
    def setUp(self):
        self.engine, self.session_factory = memory_database()
        self.settings = make_settings(supabase_jwt_secret="jwt-secret", admin_emails={"boss@example.com"})
        self.verifier = SupabaseAuthVerifier(self.settings, self.session_factory)

    def tearDown(self):
        self.engine.dispose()

    def _token(self, sub="user-1", email="u@example.com", secret="jwt-secret", exp_delta=600, **extra):
        claims = {"sub": sub, "email": email, "aud": "authenticated", "exp": int(time.time()) + exp_delta, **extra}
        return jwt.encode(claims, secret, algorithm="HS256")

    def test_verify_hs256(self):
        user = self.verifier.verify(self._token())
        self.assertEqual(user.id, "user-1")
        self.assertEqual(user.email, "u@example.com")

    def test_rejects_bad_tokens(self):
        for token in (self._token(secret="other"), self._token(exp_delta=-60), "garbage", ""):
            with self.assertRaises(AuthError):
                self.verifier.verify(token)

    def test_profile_admin(self):
        with self.session_factory.begin() as db:
            db.add(Profile(id="user-1", email="u@example.com", role="admin"))
        self.assertTrue(self.verifier.has_role("user-1", ADMIN_ROLE))

    def test_admin_email(self):
        self.verifier.verify(self._token(sub="user-2", email="Boss@example.com"))
        self.assertTrue(self.verifier.has_role("user-2", ADMIN_ROLE))

    def test_app_metadata_claim(self):
        self.verifier.verify(self._token(sub="user-3", app_metadata={"role": "admin"}))
        self.assertTrue(self.verifier.has_role("user-3", ADMIN_ROLE))

    def test_plain_user_is_not_admin(self):
        self.verifier.verify(self._token(sub="user-4", role="authenticated"))
        self.assertFalse(self.verifier.has_role("user-4", ADMIN_ROLE))


if __name__ == "__main__":
    unittest.main()
