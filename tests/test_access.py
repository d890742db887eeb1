import unittest
from urllib.parse import parse_qs, urlsplit

from filevault.access import (
    AccessDecision,
    DenyReason,
    FileAccessState,
    Identity,
    check_entitlement,
    decide_file_access,
)
from filevault.signing import CapabilitySigner, FileRef


class FileAccessGateTests(unittest.TestCase):
    def setUp(self):
        self.signer = CapabilitySigner("gate-secret")
        self.identity_calls = 0
        self.identity = None

    def _resolve_identity(self):
        self.identity_calls += 1
        return self.identity

    def _decide(self, path, query, verified=True, warehouse_id="w-1", now=1000):
        return decide_file_access(
            warehouse_id=warehouse_id,
            path=path,
            query=query,
            file_state=FileAccessState(is_verified=verified),
            signer=self.signer,
            resolve_identity=self._resolve_identity,
            now=now,
        )

    def _signed(self, filename="a/b.png", warehouse_id="w-1", ttl=3600, now=1000):
        url = self.signer.issue(FileRef(warehouse_id, filename), ttl, now)
        parts = urlsplit(url)
        query = {key: values[0] for key, values in parse_qs(parts.query).items()}
        return f"/api/files/{warehouse_id}/{filename}", query

    def test_valid_signature_allows_unverified_file_without_identity(self):
        path, query = self._signed()
        decision = self._decide(path, query, verified=False)

        self.assertTrue(decision.allowed)
        self.assertEqual(decision.via, "signature")
        self.assertEqual(self.identity_calls, 0)

    def test_invalid_signature_never_falls_back_to_identity(self):
        self.identity = Identity.build("admin-1", "superadmin")
        path, query = self._signed()
        query["signature"] = "0" * 64

        decision = self._decide(path, query)

        self.assertFalse(decision.allowed)
        self.assertEqual(decision.reason, DenyReason.BAD_OR_EXPIRED_SIGNATURE)
        self.assertEqual(decision.status_code, 403)
        self.assertEqual(self.identity_calls, 0)

    def test_expired_signature_is_denied(self):
        path, query = self._signed(ttl=10, now=1000)
        decision = self._decide(path, query, now=1011)
        self.assertEqual(decision.reason, DenyReason.BAD_OR_EXPIRED_SIGNATURE)

    def test_signature_for_other_warehouse_route_is_denied(self):
        path, query = self._signed(warehouse_id="w-2")
        decision = self._decide(path, query, warehouse_id="w-1")
        self.assertEqual(decision.reason, DenyReason.BAD_OR_EXPIRED_SIGNATURE)

    def test_oversized_expires_is_denied(self):
        decision = self._decide(
            "/api/files/w-1/a/b.png", {"expires": "9" * 5000, "signature": "a" * 64}
        )
        self.assertFalse(decision.allowed)
        self.assertEqual(decision.reason, DenyReason.BAD_OR_EXPIRED_SIGNATURE)
        self.assertEqual(self.identity_calls, 0)

    def test_empty_signature_parameter_still_takes_signature_path(self):
        decision = self._decide("/api/files/w-1/a/b.png", {"signature": ""})
        self.assertEqual(decision.reason, DenyReason.BAD_OR_EXPIRED_SIGNATURE)

    def test_unverified_file_without_signature_is_denied_before_identity(self):
        self.identity = Identity.build("admin-1", "admin")
        decision = self._decide("/api/files/w-1/a/b.png", {}, verified=False)

        self.assertEqual(decision.reason, DenyReason.NOT_VERIFIED)
        self.assertEqual(self.identity_calls, 0)

    def test_verified_file_requires_identity(self):
        decision = self._decide("/api/files/w-1/a/b.png", {})
        self.assertEqual(decision.reason, DenyReason.AUTH_REQUIRED)
        self.assertEqual(decision.status_code, 401)
        self.assertEqual(self.identity_calls, 1)

    def test_entitled_user_is_allowed(self):
        self.identity = Identity.build("user-1", "user", ["w-1"])
        decision = self._decide("/api/files/w-1/a/b.png", {})
        self.assertTrue(decision.allowed)
        self.assertEqual(decision.via, "entitlement")

    def test_unentitled_user_is_forbidden(self):
        self.identity = Identity.build("user-1", "user", ["w-2"])
        decision = self._decide("/api/files/w-1/a/b.png", {})
        self.assertEqual(decision.reason, DenyReason.NOT_ENTITLED)
        self.assertEqual(
            decision.to_payload(),
            {"error": "Access denied: You do not have permission to access this warehouse"},
        )

    def test_admin_roles_bypass_entitlement(self):
        for role in ("admin", "superadmin"):
            with self.subTest(role=role):
                self.identity = Identity.build("admin-1", role)
                decision = self._decide("/api/files/w-9/x.txt", {}, warehouse_id="w-9")
                self.assertTrue(decision.allowed)
                self.assertEqual(decision.via, "admin")


class EntitlementTests(unittest.TestCase):
    def test_api_key_identity_is_scoped_to_its_warehouse(self):
        identity = Identity.build("apikey:1", "apikey", ["w-1"])
        self.assertTrue(check_entitlement(identity, "w-1").allowed)
        self.assertEqual(check_entitlement(identity, "w-2").reason, DenyReason.NOT_ENTITLED)

    def test_missing_identity_requires_authentication(self):
        self.assertEqual(check_entitlement(None, "w-1").reason, DenyReason.AUTH_REQUIRED)

    def test_empty_warehouse_ids_are_ignored(self):
        identity = Identity.build("user-1", "user", ["", "w-1"])
        self.assertEqual(identity.entitled_warehouse_ids, frozenset({"w-1"}))

    def test_decision_helpers(self):
        allowed = AccessDecision.allow("admin")
        self.assertEqual(allowed.status_code, 200)
        self.assertEqual(allowed.to_payload(), {})
        denied = AccessDecision.deny(DenyReason.MALFORMED_CAPABILITY_INPUT)
        self.assertEqual(denied.status_code, 400)


if __name__ == "__main__":
    unittest.main()
