from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import jwt
from django.conf import settings
from django.test import Client, SimpleTestCase, override_settings

from apps.api.dependencies.security import JWT_ALGORITHM
from apps.api.routes.tests.urls import runtime


@override_settings(ROOT_URLCONF="apps.api.routes.tests.urls")
class OpsRouteTests(SimpleTestCase):
    def setUp(self) -> None:
        self.client = Client()

    def _auth_headers(self, roles=("admin",), token_type: str = "access") -> dict:
        now = datetime.now(timezone.utc)
        payload = {
            "sub": "ops-1",
            "type": token_type,
            "roles": list(roles),
            "iat": now,
            "exp": now + timedelta(hours=1),
        }
        token = jwt.encode(payload, settings.JWT_SECRET, algorithm=JWT_ALGORITHM)
        return {"HTTP_AUTHORIZATION": f"Bearer {token}"}

    def test_health_is_public(self) -> None:
        response = self.client.get("/api/v1/ops/health")

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["status"], "ok")
        self.assertEqual(body["config_version"], runtime.registry.config.version)
        self.assertTrue(body["adapters"]["http"]["connected"])

    def test_metrics_exposition(self) -> None:
        self.client.get("/api/v1/ops/health")

        response = self.client.get("/api/v1/ops/metrics")

        self.assertEqual(response.status_code, 200)
        self.assertIn(b"devicehub_adapter_connected", response.content)
        self.assertTrue(response["Content-Type"].startswith("text/plain"))

    def test_policy_stats_require_admin(self) -> None:
        self.assertEqual(self.client.get("/api/v1/ops/policies").status_code, 401)
        self.assertEqual(self.client.get("/api/v1/ops/policies", **self._auth_headers(roles=())).status_code, 403)

        response = self.client.get("/api/v1/ops/policies", **self._auth_headers())

        self.assertEqual(response.status_code, 200)
        self.assertIn("total_resolvers", response.json())

    def test_device_credentials_are_not_admin_tokens(self) -> None:
        response = self.client.get("/api/v1/ops/policies", **self._auth_headers(token_type="device"))

        self.assertEqual(response.status_code, 403)

    def test_expired_token(self) -> None:
        now = datetime.now(timezone.utc)
        token = jwt.encode(
            {"sub": "ops-1", "roles": ["admin"], "exp": now - timedelta(minutes=1)},
            settings.JWT_SECRET,
            algorithm=JWT_ALGORITHM,
        )

        response = self.client.get("/api/v1/ops/policies", HTTP_AUTHORIZATION=f"Bearer {token}")

        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["message"], "Token expired")

    def test_reload_rebuilds_registry(self) -> None:
        runtime.registry.get_or_create_resolver("acme", "dtu")

        response = self.client.post("/api/v1/ops/policies/reload", **self._auth_headers())

        self.assertEqual(response.status_code, 200)
        self.assertIsNotNone(runtime.registry.get_resolver("acme", "dtu"))

    def test_invalidate(self) -> None:
        runtime.registry.get_or_create_resolver("acme", "ftu")

        response = self.client.post(
            "/api/v1/ops/policies/invalidate",
            data=json.dumps({"tenantId": "acme", "deviceType": "ftu"}),
            content_type="application/json",
            **self._auth_headers(),
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"success": True, "tenantId": "acme", "deviceType": "ftu"})
        self.assertIsNone(runtime.registry.get_resolver("acme", "ftu"))
