from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import jwt
from django.conf import settings
from django.test import Client, SimpleTestCase, override_settings

from apps.api.dependencies.security import JWT_ALGORITHM
from apps.api.routes.tests.urls import runtime


@override_settings(ROOT_URLCONF="apps.api.routes.tests.urls")
class BrokerWebhookTests(SimpleTestCase):
    def setUp(self) -> None:
        self.client = Client()

    def _post(self, url: str, body) -> dict:
        data = body if isinstance(body, str) else json.dumps(body)
        response = self.client.post(url, data=data, content_type="application/json")
        self.assertEqual(response.status_code, 200)
        return response.json()

    def test_acl_allow(self) -> None:
        body = self._post(
            "/api/v1/emqx/acl",
            {"clientid": "acme_d1_1", "username": "acme_d1", "topic": "iot/acme/rtu/d1/telemetry", "action": "publish"},
        )

        self.assertEqual(body, {"result": "allow"})

    def test_acl_deny_carries_reason(self) -> None:
        body = self._post(
            "/api/v1/emqx/acl",
            {"clientid": "acme_d1_1", "username": "acme_d1", "topic": "iot/acme/rtu/d2/cmd", "action": "subscribe"},
        )

        self.assertEqual(body, {"result": "deny", "reason": "device mismatch"})

    def test_malformed_acl_request_is_denied(self) -> None:
        body = self._post("/api/v1/emqx/acl", "{broken")

        self.assertEqual(body["result"], "deny")

    def test_auth_with_issued_token(self) -> None:
        token = runtime.token_store.issue("acme", "meter-7")

        allowed = self._post("/api/v1/emqx/auth", {"clientid": "acme:meter-7", "username": "meter-7", "password": token})
        denied = self._post("/api/v1/emqx/auth", {"clientid": "acme:meter-7", "username": "meter-7", "password": "nope"})

        self.assertEqual(allowed, {"result": "allow", "is_superuser": False})
        self.assertEqual(denied, {"result": "deny", "reason": "invalid credentials"})


@override_settings(ROOT_URLCONF="apps.api.routes.tests.urls")
class AclPolicyViewTests(SimpleTestCase):
    URL = "/api/v1/emqx/acl/policy/acme/gateway/gw1"

    def setUp(self) -> None:
        self.client = Client()

    def _auth_headers(self, roles=("admin",)) -> dict:
        now = datetime.now(timezone.utc)
        payload = {
            "sub": "ops-1",
            "type": "access",
            "roles": list(roles),
            "iat": now,
            "exp": now + timedelta(hours=1),
        }
        token = jwt.encode(payload, settings.JWT_SECRET, algorithm=JWT_ALGORITHM)
        return {"HTTP_AUTHORIZATION": f"Bearer {token}"}

    def test_requires_token(self) -> None:
        self.assertEqual(self.client.get(self.URL).status_code, 401)

    def test_requires_admin_role(self) -> None:
        response = self.client.get(self.URL, **self._auth_headers(roles=()))

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["error_code"], "FORBIDDEN")

    def test_describes_gateway_acl(self) -> None:
        response = self.client.get(self.URL, **self._auth_headers())

        self.assertEqual(response.status_code, 200)
        acl = response.json()["acl"]
        self.assertIn("iot/acme/gateway/gw1/subdev/+/telemetry", acl["publish"])
        self.assertIn("iot/acme/gateway/gw1/subdev/+/cmd", acl["subscribe"])

    def test_invalid_segment_is_a_validation_error(self) -> None:
        response = self.client.get("/api/v1/emqx/acl/policy/acme/gateway/gw_1", **self._auth_headers())

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error_code"], "VALIDATION_ERROR")
