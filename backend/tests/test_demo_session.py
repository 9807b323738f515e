import unittest

import jwt

from riahunter.services.demo_session import DemoQuotaCounter


NOW = 1_700_000_000


class TestDemoQuotaCounter(unittest.TestCase):
    def setUp(self):
        self.counter = DemoQuotaCounter("demo-secret", allowed=3, ttl_s=3600)

    def test_fresh_session(self):
        status = self.counter.check(None, now=NOW)
        self.assertTrue(status.is_new)
        self.assertTrue(status.allowed)
        self.assertEqual(status.used, 0)
        self.assertEqual(status.remaining, 3)
        self.assertEqual(status.expires_at, NOW + 3600)

    def test_exhaustion(self):
        cookie = None
        for i in range(3):
            cookie, status = self.counter.increment(cookie, now=NOW + i)
            self.assertEqual(status.used, i + 1)
        status = self.counter.check(cookie, now=NOW + 10)
        self.assertFalse(status.allowed)
        self.assertEqual(status.remaining, 0)
        self.assertEqual(status.to_dict()["searchesUsed"], 3)

    def test_increment_keeps_original_expiry(self):
        cookie, first = self.counter.increment(None, now=NOW)
        _, second = self.counter.increment(cookie, now=NOW + 1800)
        self.assertEqual(second.expires_at, first.expires_at)
        self.assertFalse(second.is_new)

    def test_expired_session_resets(self):
        cookie, _ = self.counter.increment(None, now=NOW)
        cookie, _ = self.counter.increment(cookie, now=NOW + 1)
        status = self.counter.check(cookie, now=NOW + 3601)
        self.assertTrue(status.is_new)
        self.assertEqual(status.used, 0)
        self.assertEqual(status.expires_at, NOW + 3601 + 3600)

    def test_tampered_cookie_is_ignored(self):
        forged = jwt.encode({"type": "rh_demo", "used": 0, "exp": NOW + 100}, "other-secret", algorithm="HS256")
        self.assertTrue(self.counter.check(forged, now=NOW).is_new)
        self.assertTrue(self.counter.check("not-a-token", now=NOW).is_new)

    def test_wrong_token_type_is_ignored(self):
        token = jwt.encode({"type": "session", "used": 0, "exp": NOW + 100}, "demo-secret", algorithm="HS256")
        self.assertTrue(self.counter.check(token, now=NOW).is_new)

    def test_secret_required(self):
        with self.assertRaises(ValueError):
            DemoQuotaCounter("")


if __name__ == "__main__":
    unittest.main()
