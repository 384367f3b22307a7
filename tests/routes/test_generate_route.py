"""
End-to-end tests for POST /api/generate through the FastAPI app.
"""

import asyncio
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from src.main import create_app
from src.routes.generate import generate_image
from src.security.deps import GenerationInputs, get_optional_user_id
from src.services.admission_controller import AdmissionRequest
from src.services.client_identity import ClientIdentity
from src.services.image_generation import ImageInput
from src.services.privileged_bypass import ADMIN_TOKEN_HEADER, TEST_MODE_HEADER
from src.services.usage_ledger import ModelType
from tests.helpers.fakes import TEST_MODE_SECRET, FakeGenerator, build_controller, build_test_services
from tests.helpers.fakes import upload


def add_free_user(profile_store, clock, user_id="user-1", used=0, credits=0):
    profile_store.add_profile(
        user_id,
        generation_count=used,
        monthly_generation_count=used,
        monthly_reset_at=(clock.datetime() + timedelta(days=5)).isoformat(),
        credit_balance=credits,
        quick_count=used,
        premium_count=0,
    )


class TestAnonymousGeneration:
    def test_first_generation_succeeds_and_sets_cookie(self, client, anon_backend):
        response = client.post("/api/generate", **upload())
        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["image"].startswith("data:image/png;base64,")
        assert body["photoId"] == "beach-01.jpg"
        assert body["modelType"] == "quick"
        assert body["usage"]["used"] == 1
        assert body["usage"]["remaining"] == 0
        assert body["usage"]["tierName"] == "Anonymous"
        assert "anon_id=" in response.headers["set-cookie"]
        assert response.headers["RateLimit-Limit"] == "100"
        assert len(anon_backend.rows) == 1

    def test_second_generation_hits_quota(self, client):
        assert client.post("/api/generate", **upload()).status_code == 200

        response = client.post("/api/generate", **upload())
        assert response.status_code == 429
        body = response.json()
        assert body["code"] == "RATE_LIMITED"
        assert body["tier"] == "anonymous"
        assert body["limit"] == 1
        assert body["used"] == 1
        assert body["remaining"] == 0
        assert body["upgradeUrl"] == "/pricing"
        assert body["message"] == "Sign up for free to get 3 more generations!"
        assert body["resetAt"] is not None

    def test_failed_generation_is_not_charged(self, client, generator, anon_backend):
        generator.success = False
        response = client.post("/api/generate", **upload())
        assert response.status_code == 502
        assert all(usage.total == 0 for usage in anon_backend.rows.values())


class TestAuthenticatedGeneration:
    def test_free_user(self, client, login_as, profile_store, clock):
        add_free_user(profile_store, clock, used=1)
        login_as("user-1")
        response = client.post("/api/generate", **upload())
        assert response.status_code == 200
        usage = response.json()["usage"]
        assert usage["used"] == 2
        assert usage["remaining"] == 1
        assert usage["tier"] == "free"
        assert "set-cookie" not in response.headers

    def test_premium_paid_with_credits(self, client, login_as, profile_store, clock):
        add_free_user(profile_store, clock, used=3, credits=5)
        login_as("user-1")
        response = client.post("/api/generate", **upload(model_type="premium"))
        assert response.status_code == 200
        usage = response.json()["usage"]
        assert usage["creditsUsed"] == 2
        assert usage["credits"] == 3
        assert profile_store.record_for("user-1").credit_balance == 3

    def test_exhausted_free_user(self, client, login_as, profile_store, clock):
        add_free_user(profile_store, clock, used=3)
        login_as("user-1")
        response = client.post("/api/generate", **upload())
        assert response.status_code == 429
        body = response.json()
        assert body["tier"] == "free"
        assert body["message"] == "Upgrade to Pro for unlimited generations!"

    def test_failed_generation_leaves_profile_untouched(self, client, login_as, generator, profile_store, clock):
        add_free_user(profile_store, clock, used=1, credits=2)
        before = profile_store.record_for("user-1")
        generator.success = False
        login_as("user-1")
        assert client.post("/api/generate", **upload()).status_code == 502
        assert profile_store.record_for("user-1") == before


class TestGuards:
    def test_global_capacity(self, profile_store, anon_backend, clock, reference_dir):
        controller = build_controller(profile_store, anon_backend, clock, global_limit=1)
        client = TestClient(create_app(services=build_test_services(controller, FakeGenerator())))

        assert client.post("/api/generate", **upload()).status_code == 200
        response = client.post("/api/generate", **upload())
        assert response.status_code == 429
        assert response.json() == {
            "error": "Service temporarily at capacity. Please try again later.",
            "code": "SERVICE_AT_CAPACITY",
        }
        assert response.headers["RateLimit-Remaining"] == "0"
        assert "Retry-After" in response.headers

    def test_saturated_window_skips_token_verification(self, profile_store, anon_backend, clock, reference_dir):
        controller = build_controller(profile_store, anon_backend, clock, global_limit=1)
        app = create_app(services=build_test_services(controller, FakeGenerator()))
        verified = []

        def verify_token():
            verified.append(True)
            return None

        app.dependency_overrides[get_optional_user_id] = verify_token
        client = TestClient(app)

        assert client.post("/api/generate", **upload()).status_code == 200
        assert len(verified) == 1
        response = client.post("/api/generate", **upload())
        assert response.status_code == 429
        assert response.json()["code"] == "SERVICE_AT_CAPACITY"
        assert len(verified) == 1

    def test_admin_passes_saturated_window(self, profile_store, anon_backend, clock, reference_dir):
        controller = build_controller(profile_store, anon_backend, clock, global_limit=1)
        services = build_test_services(controller, FakeGenerator())
        client = TestClient(create_app(services=services))
        assert client.post("/api/generate", **upload()).status_code == 200

        token, _ = services.admin_sessions.create_session()
        response = client.post("/api/generate", headers={ADMIN_TOKEN_HEADER: token}, **upload())
        assert response.status_code == 200

        assert "Retry-After" in response.headers

    def test_abuse_guard(self, profile_store, anon_backend, clock, reference_dir):
        controller = build_controller(profile_store, anon_backend, clock, abuse_threshold=1)
        client = TestClient(create_app(services=build_test_services(controller, FakeGenerator())))

        client.post("/api/generate", **upload())
        response = client.post("/api/generate", **upload())
        assert response.status_code == 429
        assert response.json()["code"] == "TOO_MANY_REQUESTS"
        assert "limit" not in response.json()
        assert int(response.headers["Retry-After"]) > 0

    def test_test_mode_bypass(self, client, anon_backend):
        for _ in range(3):
            response = client.post(
                "/api/generate", headers={TEST_MODE_HEADER: TEST_MODE_SECRET}, **upload()
            )
            assert response.status_code == 200
            assert response.json()["usage"]["tier"] == "test"
        assert anon_backend.rows == {}

    def test_admin_bypass(self, client, services, login_as, profile_store, clock):
        add_free_user(profile_store, clock, used=3)
        login_as("user-1")
        token, _ = services.admin_sessions.create_session()
        response = client.post("/api/generate", headers={ADMIN_TOKEN_HEADER: token}, **upload())
        assert response.status_code == 200
        assert response.json()["usage"]["remaining"] == "unlimited"
        assert profile_store.record_for("user-1").monthly_count == 3


class TestValidationAndFailures:
    def test_invalid_model_type(self, client):
        response = client.post("/api/generate", **upload(model_type="ultra"))
        assert response.status_code == 400

    def test_unknown_reference_photo(self, client):
        response = client.post("/api/generate", **upload(photo_id="nope.jpg"))
        assert response.status_code == 404

    def test_unsupported_upload_type(self, client):
        response = client.post("/api/generate", **upload(content_type="application/pdf"))
        assert response.status_code == 400

    def test_rejected_input_does_not_touch_guards(self, client):
        client.post("/api/generate", **upload(model_type="ultra"))
        response = client.post("/api/generate", **upload())
        assert response.headers["RateLimit-Remaining"] == "99"

    def test_usage_store_down(self, client, login_as, profile_store):
        profile_store.fail_reads = True
        login_as("user-1")
        response = client.post("/api/generate", **upload())
        assert response.status_code == 503
        assert response.json()["code"] == "USAGE_UNAVAILABLE"

    def test_unexpected_admission_error_fails_open(self, client, controller, monkeypatch):
        async def broken(request):
            raise RuntimeError("guard bug")

        monkeypatch.setattr(controller, "admit", broken)
        response = client.post("/api/generate", **upload())
        assert response.status_code == 200
        assert response.json()["usage"] is None


class TestCancellation:
    """A request cancelled mid-generation must not be charged."""

    @staticmethod
    def inputs():
        return GenerationInputs(
            photo=ImageInput(b"photo", "image/jpeg"),
            reference=ImageInput(b"reference", "image/jpeg"),
            reference_name="beach-01.jpg",
            model_type=ModelType.QUICK,
        )

    @staticmethod
    async def admit(controller, user_id=None, anon_id=None):
        client = ClientIdentity(
            user_id=user_id, source_ip="203.0.113.10", anon_id=anon_id, user_agent="pytest"
        )
        return await controller.admit(
            AdmissionRequest(client=client, model_type=ModelType.QUICK, headers={}, path="/api/generate")
        )

    @pytest.mark.asyncio
    async def test_cancelled_generation_leaves_profile_untouched(self, controller, profile_store, clock):
        add_free_user(profile_store, clock, used=1, credits=2)
        before = profile_store.record_for("user-1")
        generator = FakeGenerator(raises=asyncio.CancelledError())
        services = build_test_services(controller, generator)

        admission = await self.admit(controller, user_id="user-1")
        assert admission.admitted
        with pytest.raises(asyncio.CancelledError):
            await generate_image(inputs=self.inputs(), admission=admission, services=services)

        assert len(generator.calls) == 1
        assert profile_store.record_for("user-1") == before
        assert profile_store.apply_calls == 0

    @pytest.mark.asyncio
    async def test_cancelled_anonymous_generation_is_not_counted(self, controller, anon_backend):
        services = build_test_services(controller, FakeGenerator(raises=asyncio.CancelledError()))

        admission = await self.admit(controller)
        assert admission.admitted
        with pytest.raises(asyncio.CancelledError):
            await generate_image(inputs=self.inputs(), admission=admission, services=services)

        assert all(usage.total == 0 for usage in anon_backend.rows.values())
        # The visitor still has their full allowance
        retry = await self.admit(controller, anon_id=admission.minted_anon_id)
        assert retry.admitted
        assert retry.minted_anon_id is None
        assert retry.decision.remaining == 1
